import re

import pytest
from bson import ObjectId

import movies
from metadata_functions import EnrichmentCache, MetadataEnricher
from movies_functions import MovieStore


def matches(document: dict, query: dict):
    for key, condition in query.items():
        if key == "$or":
            if not any(matches(document, sub) for sub in condition):
                return False
        elif isinstance(condition, dict) and "$regex" in condition:
            flags = re.IGNORECASE if "i" in condition.get("$options", "") else 0
            if not re.search(condition["$regex"], str(document.get(key, "")), flags):
                return False
        elif document.get(key) != condition:
            return False
    return True


class FakeCollection:
    def __init__(self, documents=None):
        self.documents = list(documents or [])
        self.queries = []
        self.years = []

    def find(self, query=None):
        self.queries.append(query)
        return [doc for doc in self.documents if matches(doc, query or {})]

    def find_one(self, query=None):
        self.queries.append(query)
        return next(iter(self.find(query)), None)


class FakeRedis:
    def __init__(self):
        self.store = {}
        self.ttls = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl


class RecordingProvider:
    def __init__(self, results=None, error=None):
        self.results = results or {}
        self.error = error
        self.queries = []
        self.years = []

    def lookup(self, query, year=None):
        self.queries.append(query)
        self.years.append(year)
        if self.error is not None:
            raise self.error
        return self.results.get(query)


MOVIE_DOCUMENTS = [
    {"_id": ObjectId("65f000000000000000000001"), "file_id": "BAAD-1", "file_name": "Inception.2010.1080p.BluRay.x264.mkv", "file_size": 2147483648, "caption": "Inception"},
    {"_id": ObjectId("65f000000000000000000002"), "file_id": "BAAD-2", "file_name": "The.Matrix.720p.WEB-DL.mp4", "file_size": 1073741824, "caption": "The Matrix"},
    {"_id": ObjectId("65f000000000000000000003"), "file_id": "BAAD-3", "file_name": "Matrix.Reloaded.480p.mkv", "file_size": 536870912, "caption": "Reloaded"},
]


@pytest.fixture
def collection():
    return FakeCollection([dict(doc) for doc in MOVIE_DOCUMENTS])


@pytest.fixture
def provider():
    return RecordingProvider({"The Matrix": {"Title": "The Matrix", "Year": "1999"}})


@pytest.fixture
def client(monkeypatch, collection, provider):
    monkeypatch.setattr(movies, "movie_store", MovieStore(collection))
    monkeypatch.setattr(movies, "enricher", MetadataEnricher(provider, EnrichmentCache(), max_workers=4))
    movies.app.config["TESTING"] = True
    return movies.app.test_client()
