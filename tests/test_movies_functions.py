import json
import re

import redis
from bson import ObjectId

from conftest import FakeRedis
from movies_functions import (
    ALL_MOVIES_CACHE_KEY,
    MOVIE_DETAIL_CACHE_PREFIX,
    MovieStore,
    build_id_query,
    build_name_pattern,
    serialize_document,
)


def test_serialize_document_stringifies_id():
    oid = ObjectId("65f000000000000000000001")
    assert serialize_document({"_id": oid, "file_name": "a.mkv"}) == {"_id": str(oid), "file_name": "a.mkv"}
    assert serialize_document(None) == {}


def test_build_id_query():
    query = build_id_query("65f000000000000000000001")
    assert query == {"$or": [{"_id": ObjectId("65f000000000000000000001")}, {"_id": "65f000000000000000000001"}]}
    assert build_id_query("not-an-object-id") == {"_id": "not-an-object-id"}


def test_build_name_pattern_escapes_regex_characters():
    assert build_name_pattern("a.b(c)") == r"a\.b\(c\)"
    assert re.search(build_name_pattern(" Matrix"), "The.Matrix.mkv") is None
    assert re.search(build_name_pattern(" Matrix"), "The Matrix.mkv")


def test_find_all(collection):
    records = MovieStore(collection).find_all()
    assert [r["file_id"] for r in records] == ["BAAD-1", "BAAD-2", "BAAD-3"]
    assert records[0]["_id"] == "65f000000000000000000001"


def test_find_by_id(collection):
    store = MovieStore(collection)
    assert store.find_by_id("65f000000000000000000002")["caption"] == "The Matrix"
    assert store.find_by_id("65f0000000000000000000ff") is None
    assert store.find_by_id("garbage") is None


def test_find_by_name_match_is_case_insensitive(collection):
    records = MovieStore(collection).find_by_name_match(build_name_pattern("MATRIX"))
    assert [r["file_id"] for r in records] == ["BAAD-2", "BAAD-3"]
    assert collection.queries[-1] == {"file_name": {"$regex": "MATRIX", "$options": "i"}}


def test_find_all_uses_redis_cache(collection):
    cache = FakeRedis()
    store = MovieStore(collection, cache, cache_ttl=30)

    first = store.find_all()
    collection.documents.clear()
    second = store.find_all()

    assert first == second
    assert json.loads(cache.store[ALL_MOVIES_CACHE_KEY]) == first
    assert cache.ttls[ALL_MOVIES_CACHE_KEY] == 30


def test_find_by_id_caches_only_hits(collection):
    cache = FakeRedis()
    store = MovieStore(collection, cache)

    store.find_by_id("65f000000000000000000001")
    store.find_by_id("missing")

    assert f"{MOVIE_DETAIL_CACHE_PREFIX}65f000000000000000000001" in cache.store
    assert f"{MOVIE_DETAIL_CACHE_PREFIX}missing" not in cache.store


def test_search_is_never_cached(collection):
    cache = FakeRedis()
    MovieStore(collection, cache).find_by_name_match("matrix")
    assert cache.store == {}


class BrokenRedis:
    def get(self, key):
        raise redis.ConnectionError("down")

    def setex(self, key, ttl, value):
        raise redis.ConnectionError("down")


def test_redis_failures_fall_back_to_mongo(collection, caplog):
    records = MovieStore(collection, BrokenRedis()).find_all()
    assert len(records) == 3
    assert "Redis read failed" in caplog.text
