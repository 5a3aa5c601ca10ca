"""Embedding provider adapter wrapping OpenAI's embeddings API.

Provides:
- get_client: Cached OpenAI client using the configured API key.
- Embedder: text -> fixed-dimension vector for a given model/dimension.
- embed_texts: batch helper bound to the default Embedder at the index dimension.

The adapter returns vectors of exactly the requested dimension (or the model's
default). It never checks against a particular index: callers compare the
result with settings.EMBEDDING_DIM before searching. Upstream failures surface
as ProviderError; retries belong to callers.
"""
import logging
from typing import List, Optional

from openai import OpenAI, OpenAIError

from contentforge.cache import get_cached_embedding, set_cached_embedding
from contentforge.config import default_dimension, settings
from contentforge.errors import ProviderError

logger = logging.getLogger(__name__)

_client: OpenAI | None = None


def get_client() -> OpenAI:
    """Return a cached OpenAI client initialized with the configured API key.

    Returns:
        OpenAI: A singleton-like client instance reused across calls.
    """
    global _client
    if _client is None:
        _client = OpenAI(api_key=settings.OPENAI_API_KEY)
    return _client


class Embedder:
    """Converts text to vectors with a configured embedding model.

    Args:
        client: OpenAI-compatible client; defaults to the shared client.
        model: Default model id; defaults to settings.OPENAI_EMBEDDING_MODEL.
        use_cache: Consult the Redis embedding cache; defaults to
            settings.EMBEDDING_CACHE_ENABLED.
    """

    def __init__(self, client: Optional[OpenAI] = None, model: Optional[str] = None, use_cache: Optional[bool] = None):
        self._client = client
        self.model = model or settings.OPENAI_EMBEDDING_MODEL
        self.use_cache = settings.EMBEDDING_CACHE_ENABLED if use_cache is None else use_cache

    @property
    def client(self) -> OpenAI:
        return self._client or get_client()

    def embed(self, text: str, model: Optional[str] = None, dimension: Optional[int] = None) -> List[float]:
        """Embed one string.

        Args:
            text: Input text.
            model: Model id; defaults to the adapter's model.
            dimension: Requested output dimension; defaults to the model's default.

        Returns:
            List[float]: Vector of length `dimension` (or the model default).

        Raises:
            ProviderError: upstream failure or a response of the wrong length.
        """
        return self.embed_many([text], model=model, dimension=dimension)[0]

    def embed_many(self, texts: List[str], model: Optional[str] = None, dimension: Optional[int] = None) -> List[List[float]]:
        """Embed a batch of strings with one provider request (cache misses only)."""
        if not texts:
            return []
        model = model or self.model
        expected = dimension or default_dimension(model)

        vectors: List[Optional[List[float]]] = [None] * len(texts)
        if self.use_cache:
            for i, t in enumerate(texts):
                vectors[i] = get_cached_embedding(model, expected, t)
        missing = [i for i, v in enumerate(vectors) if v is None]
        if not missing:
            return vectors  # type: ignore[return-value]

        params = {"model": model, "input": [texts[i] for i in missing]}
        # ada-002 rejects the dimensions parameter, so send it only on request
        if dimension is not None:
            params["dimensions"] = dimension
        try:
            resp = self.client.embeddings.create(**params)
        except OpenAIError as e:
            logger.warning("Embedding request failed for model %s: %s", model, e)
            raise ProviderError(f"Embedding provider error: {e}") from e

        data = list(getattr(resp, "data", None) or [])
        if len(data) != len(missing):
            raise ProviderError(
                f"Malformed embedding response: expected {len(missing)} vectors, got {len(data)}"
            )
        for i, item in zip(missing, sorted(data, key=lambda d: getattr(d, "index", 0))):
            vec = list(item.embedding or [])
            if len(vec) != expected:
                raise ProviderError(
                    f"Malformed embedding response: expected {expected} dimensions, got {len(vec)}"
                )
            vectors[i] = vec
            if self.use_cache:
                set_cached_embedding(model, expected, texts[i], vec)
        return vectors  # type: ignore[return-value]


_default: Embedder | None = None


def get_embedder() -> Embedder:
    """Shared Embedder configured from settings."""
    global _default
    if _default is None:
        _default = Embedder()
    return _default


def embed_texts(texts: List[str]) -> List[List[float]]:
    """Embed a batch of texts at the index dimension.

    Args:
        texts: List of input strings to embed.

    Returns:
        List[List[float]]: One embedding vector per input text.
    """
    return get_embedder().embed_many(texts, dimension=_index_dimension_param())


def _index_dimension_param() -> Optional[int]:
    # Ask for an explicit size only when the index overrides the model default
    return settings.EMBEDDING_DIMENSIONS or None
