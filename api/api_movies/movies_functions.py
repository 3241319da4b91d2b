import json
import logging
import re

from bson import ObjectId
from bson.errors import InvalidId
import redis

logger = logging.getLogger(__name__)

ALL_MOVIES_CACHE_KEY = "movies_all"
MOVIE_DETAIL_CACHE_PREFIX = "movie_detail:"


def serialize_document(document: dict | None):
    """
    Convert a MongoDB document into a dict for JSON output.

    Args:
        document (dict | None): Document from the collection.

    Returns:
        dict: Copy with `_id` stored as a string.
    """
    if not document:
        return {}

    serialized = {}
    for key, value in document.items():
        if key == "_id":
            serialized[key] = str(value)
        else:
            serialized[key] = value
    return serialized


def build_name_pattern(search: str):
    """
    Turn raw search text into a literal regex for the `file_name` field.

    Args:
        search (str): Text typed by the client, surrounding spaces included.

    Returns:
        str: Escaped pattern.
    """
    return re.escape(search)


def build_id_query(movie_id: str):
    """
    Build the lookup filter for an identifier from the path.

    Args:
        movie_id (str): Identifier from the path segment.

    Returns:
        dict: Filter matching either the ObjectId form or the raw string.
    """
    try:
        return {"$or": [{"_id": ObjectId(movie_id)}, {"_id": movie_id}]}
    except (InvalidId, TypeError):
        return {"_id": movie_id}


class MovieStore:
    """Read-only access to the movie records collection."""

    def __init__(self, collection: object, redis_client: object | None = None, cache_ttl: int = 600):
        self.collection = collection
        self.redis_client = redis_client
        self.cache_ttl = cache_ttl

    def find_all(self):
        """
        Return every movie record.

        Returns:
            list[dict]: Serialized records.
        """
        cached = self._cache_get(ALL_MOVIES_CACHE_KEY)
        if cached is not None:
            return cached

        items = [serialize_document(doc) for doc in self.collection.find({})]
        self._cache_set(ALL_MOVIES_CACHE_KEY, items)
        return items

    def find_by_id(self, movie_id: str):
        """
        Return a single record or None when nothing matches.

        Args:
            movie_id (str): ObjectId hex string or raw `_id` value.

        Returns:
            dict | None: Serialized record.
        """
        cache_key = f"{MOVIE_DETAIL_CACHE_PREFIX}{movie_id}"
        cached = self._cache_get(cache_key)
        if cached is not None:
            return cached

        document = self.collection.find_one(build_id_query(movie_id))
        if not document:
            return None

        serialized = serialize_document(document)
        self._cache_set(cache_key, serialized)
        return serialized

    def find_by_name_match(self, pattern: str):
        """
        Return records whose file name matches the pattern, ignoring case.

        Args:
            pattern (str): Regular expression applied to `file_name`.

        Returns:
            list[dict]: Serialized records.
        """
        cursor = self.collection.find({"file_name": {"$regex": pattern, "$options": "i"}})
        return [serialize_document(doc) for doc in cursor]

    def _cache_get(self, key: str):
        if self.redis_client is None:
            return None
        try:
            cached = self.redis_client.get(key)
        except redis.RedisError as exc:
            logger.warning("Redis read failed for %s: %s", key, exc)
            return None
        if not cached:
            return None
        try:
            return json.loads(cached)
        except json.JSONDecodeError:
            return None

    def _cache_set(self, key: str, value: object):
        if self.redis_client is None:
            return
        try:
            self.redis_client.setex(key, self.cache_ttl, json.dumps(value))
        except redis.RedisError as exc:
            logger.warning("Redis write failed for %s: %s", key, exc)
