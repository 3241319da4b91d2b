import logging
import os

from dotenv import load_dotenv
from flask import Flask, Response, jsonify, request, stream_with_context
from flask_cors import CORS
from pymongo import MongoClient
from pymongo.errors import PyMongoError
import redis
import requests

from metadata_functions import EnrichmentCache, MetadataEnricher, attach_metadata, build_provider
from movies_functions import MovieStore, build_name_pattern
from stream_functions import FileResolutionError, TelegramFileRelay

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("movies")

app = Flask(__name__)
app.config["JSON_SORT_KEYS"] = False
CORS(app)

CACHE_TTL_SECONDS = int(os.environ.get("CACHE_TTL_SECONDS", 600))
ENRICH_MAX_WORKERS = int(os.environ.get("ENRICH_MAX_WORKERS", 8))
REQUEST_TIMEOUT_SECONDS = float(os.environ.get("REQUEST_TIMEOUT_SECONDS", 10))
STREAM_CHUNK_SIZE = int(os.environ.get("STREAM_CHUNK_SIZE", 64 * 1024))

client = MongoClient(os.getenv("MONGO_URI", "mongodb://localhost:27017"))
db = client[os.getenv("MONGO_DB", "movies")]
movies_collection = db[os.getenv("MONGO_COLLECTION", "vjcollection")]

r = None
if os.environ.get("REDIS_HOST"):
    r = redis.Redis(
        host=os.environ.get("REDIS_HOST"),
        port=int(os.environ.get("REDIS_PORT", 6379)),
        db=int(os.environ.get("REDIS_DB", 0)),
    )

METADATA_PROVIDER = os.getenv("METADATA_PROVIDER", "omdb").lower()
METADATA_API_KEY = os.getenv("TMDB_API_KEY") if METADATA_PROVIDER == "tmdb" else os.getenv("OMDB_API_KEY")

movie_store = MovieStore(movies_collection, r, CACHE_TTL_SECONDS)
enricher = MetadataEnricher(
    build_provider(METADATA_PROVIDER, METADATA_API_KEY, REQUEST_TIMEOUT_SECONDS),
    EnrichmentCache(),
    ENRICH_MAX_WORKERS,
)
relay = TelegramFileRelay(os.getenv("TELEGRAM_BOT_TOKEN"), timeout=REQUEST_TIMEOUT_SECONDS, chunk_size=STREAM_CHUNK_SIZE)


def enrich_records(records: list[dict]):
    """
    Attach metadata to each record, looked up in parallel.

    Args:
        records (list[dict]): Serialized movie records.

    Returns:
        list[dict]: Records with a `metadata` field.
    """
    outcomes = enricher.enrich_many([record.get("file_name") or "" for record in records])
    return [attach_metadata(record, outcome) for record, outcome in zip(records, outcomes)]


@app.route("/movies", methods=["GET"])
def get_movies():
    """
    Handle GET requests for every available movie.

    Returns:
        Response: Flask response with enriched records.
    """
    try:
        records = movie_store.find_all()
    except PyMongoError:
        logger.exception("Error fetching movies")
        return jsonify({"error": "Failed to fetch movies"}), 500

    return jsonify(enrich_records(records))


@app.route("/search", methods=["GET"])
def search_movies():
    """
    Handle GET requests that match movies by file name.

    Returns:
        Response: Flask response with enriched matches or error payload.
    """
    search = request.args.get("q") or ""
    if not search.strip():
        return jsonify({"error": "Query parameter 'q' is required"}), 400

    try:
        records = movie_store.find_by_name_match(build_name_pattern(search))
    except PyMongoError:
        logger.exception("Error searching movies for %r", search)
        return jsonify({"error": "Failed to search movies"}), 500

    return jsonify(enrich_records(records))


@app.route("/movie/<movie_id>", methods=["GET"])
def get_movie_detail(movie_id: str):
    """
    Handle GET requests for a single movie.

    Args:
        movie_id (str): Identifier from the path segment.

    Returns:
        Response: Flask response with the enriched record or error payload.
    """
    try:
        record = movie_store.find_by_id(movie_id)
    except PyMongoError:
        logger.exception("Error fetching movie details for %s", movie_id)
        return jsonify({"error": "Failed to fetch movie details"}), 500

    if not record:
        return jsonify({"error": "Movie not found"}), 404

    return jsonify(attach_metadata(record, enricher.enrich(record.get("file_name") or "")))


@app.route("/stream/<movie_id>", methods=["GET"])
def stream_movie(movie_id: str):
    """
    Handle GET requests that relay a movie file from Telegram.

    Args:
        movie_id (str): Identifier from the path segment.

    Returns:
        Response: Streamed file body or error payload.
    """
    try:
        record = movie_store.find_by_id(movie_id)
    except PyMongoError:
        logger.exception("Error fetching movie %s for streaming", movie_id)
        return jsonify({"error": "Failed to stream movie"}), 500

    if not record:
        return jsonify({"error": "Movie not found"}), 404

    try:
        download_url = relay.resolve_file_url(record.get("file_id"))
        upstream = relay.open_stream(download_url, request.headers.get("Range"))
    except (FileResolutionError, requests.RequestException):
        logger.exception("Error streaming movie %s", movie_id)
        return jsonify({"error": "Failed to stream movie"}), 500

    response = Response(
        stream_with_context(upstream.chunks),
        status=upstream.status_code,
        content_type=upstream.headers["Content-Type"],
    )
    for name, value in upstream.headers.items():
        if name != "Content-Type":
            response.headers[name] = value
    return response


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", 3000)), threaded=True)
