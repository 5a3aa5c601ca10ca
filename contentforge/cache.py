"""Caching utilities for query embeddings using Redis.

Provides:
- get_redis: Cached Redis client from REDIS_URL with decode_responses.
- _key_for_embedding: Stable cache key derived from model + dimension + text.
- get_cached_embedding: Fetch a cached vector if present.
- set_cached_embedding: Store a vector with TTL from settings.CACHE_TTL_SECONDS.

Only used when settings.EMBEDDING_CACHE_ENABLED is true. Cache errors are logged
and treated as misses; they never fail an embedding call.
"""
import hashlib
import json
import logging
from typing import List, Optional

import redis

from contentforge.config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Return a cached Redis client configured from settings.REDIS_URL.

    Returns:
        redis.Redis: Client with decode_responses=True.
    """
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


def _key_for_embedding(model: str, dimension: int, text: str) -> str:
    """Compute a stable cache key for a text embedded by one model at one size."""
    h = hashlib.sha256(f"{model}|{dimension}|{text}".encode("utf-8")).hexdigest()
    return f"cf:emb:v1:{h}"


def get_cached_embedding(model: str, dimension: int, text: str) -> Optional[List[float]]:
    """Get a cached vector for the text if present and of the expected length.

    Returns:
        Optional[List[float]]: The vector, or None on miss/invalid entry/cache error.
    """
    try:
        raw = get_redis().get(_key_for_embedding(model, dimension, text))
    except redis.RedisError as e:
        logger.warning("Embedding cache read failed: %s", e)
        return None
    if not raw:
        return None
    try:
        vec = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(vec, list) or len(vec) != dimension:
        return None
    return [float(x) for x in vec]


def set_cached_embedding(model: str, dimension: int, text: str, vector: List[float]) -> None:
    """Store a vector under the computed key with TTL."""
    try:
        get_redis().setex(
            _key_for_embedding(model, dimension, text), settings.CACHE_TTL_SECONDS, json.dumps(vector)
        )
    except redis.RedisError as e:
        logger.warning("Embedding cache write failed: %s", e)
