"""Vector similarity search and query-level retrieval.

This module implements:
- search: top-K chunks above a confidence threshold ranked by cosine similarity
  (similarity = 1 - cosine distance), ties broken by ascending chunk id.
- Retriever: embeds a query, checks the vector against the index dimension and
  searches on its own session.
- Retriever.fan_out: one retrieval per logical section, run concurrently and
  joined all-or-nothing.

On PostgreSQL the ranking runs in SQL through pgvector's cosine distance
operator. Other dialects (local SQLite tests) filter in SQL and rank in-process
with numpy.
"""
import logging
import math
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

import numpy as np
from sqlalchemy import select
from sqlalchemy.orm import Session

from contentforge.config import default_dimension, settings
from contentforge.db import SessionFactory, SessionLocal, is_postgres
from contentforge.embedding import Embedder, get_embedder
from contentforge.errors import DimensionMismatch, InvalidParameter
from contentforge.models import Chunk, Document
from contentforge.obs import span
from contentforge.schemas import ScoredChunk

logger = logging.getLogger(__name__)

MAX_TOP_K = 100


def _validate(query_embedding: Sequence[float], top_k: int, min_confidence: float, dimension: int) -> None:
    """Reject malformed search input before touching the store."""
    if len(query_embedding) != dimension:
        raise DimensionMismatch(dimension, len(query_embedding))
    if isinstance(top_k, bool) or not isinstance(top_k, int) or not 1 <= top_k <= MAX_TOP_K:
        raise InvalidParameter(f"topK must be an integer in [1, {MAX_TOP_K}], got {top_k!r}")
    if isinstance(min_confidence, bool) or not isinstance(min_confidence, (int, float)) or not 0 <= min_confidence <= 100:
        raise InvalidParameter(f"minConfidence must be a number in [0, 100], got {min_confidence!r}")


def _to_scored(chunk: Chunk, document_name: str, similarity: float) -> ScoredChunk:
    return ScoredChunk(
        id=chunk.id,
        content=chunk.content,
        metadata=chunk.meta or {},
        document_id=chunk.document_id,
        document_name=document_name,
        confidence_score=float(chunk.confidence_score),
        similarity=float(similarity),
    )


def _similarity_or_zero(value: Optional[float]) -> float:
    """pgvector yields NULL or NaN for zero-norm vectors; those score 0."""
    if value is None or math.isnan(value):
        return 0.0
    return float(value)


def cosine_similarities(query: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of `query` against each row of `matrix`.

    Rows (or a query) with zero norm score 0.0 rather than NaN.
    """
    q = np.asarray(query, dtype=np.float64)
    m = np.asarray(matrix, dtype=np.float64)
    norms = np.linalg.norm(m, axis=1) * np.linalg.norm(q)
    dots = m @ q
    out = np.zeros(len(m), dtype=np.float64)
    np.divide(dots, norms, out=out, where=norms > 0)
    return out


def search(
    db: Session,
    query_embedding: Sequence[float],
    top_k: int,
    min_confidence: float,
    dimension: Optional[int] = None,
) -> List[ScoredChunk]:
    """Return the top_k chunks most similar to the query embedding.

    Args:
        db: SQLAlchemy session.
        query_embedding: Query vector; its length must equal the index dimension.
        top_k: Maximum number of results, in [1, 100].
        min_confidence: Minimum chunk confidence_score, in [0, 100].
        dimension: Index dimension; defaults to settings.EMBEDDING_DIM.

    Returns:
        List[ScoredChunk]: Sorted by similarity descending, then chunk id ascending.
            Empty when no chunk meets the confidence threshold.

    Raises:
        DimensionMismatch: query vector length differs from the index dimension.
        InvalidParameter: top_k or min_confidence out of range.
    """
    dimension = dimension or settings.EMBEDDING_DIM
    _validate(query_embedding, top_k, min_confidence, dimension)
    qvec = [float(x) for x in query_embedding]

    with span("retrieval.search", {"top_k": top_k, "min_confidence": float(min_confidence)}):
        if is_postgres(db):
            distance = Chunk.embedding.cosine_distance(qvec)
            stmt = (
                select(Chunk, Document.name, (1 - distance).label("similarity"))
                .join(Document, Chunk.document_id == Document.id)
                .where(Chunk.confidence_score >= min_confidence)
                .order_by(distance, Chunk.id)
                .limit(top_k)
            )
            rows = db.execute(stmt).all()
            return [_to_scored(c, name, _similarity_or_zero(sim)) for c, name, sim in rows]

        stmt = (
            select(Chunk, Document.name)
            .join(Document, Chunk.document_id == Document.id)
            .where(Chunk.confidence_score >= min_confidence)
        )
        rows = db.execute(stmt).all()
        if not rows:
            return []
        sims = cosine_similarities(qvec, np.vstack([np.asarray(c.embedding, dtype=np.float64) for c, _ in rows]))
        ranked = sorted(zip(rows, sims), key=lambda item: (-item[1], item[0][0].id))
        return [_to_scored(c, name, sim) for (c, name), sim in ranked[:top_k]]


@dataclass
class SectionQuery:
    """One fan-out retrieval: a label for the section plus the query text."""
    label: str
    query: str
    top_k: int = 5
    min_confidence: Optional[float] = None


@dataclass
class SectionResult:
    label: str
    chunks: List[ScoredChunk] = field(default_factory=list)


class Retriever:
    """Query-level retrieval: embed, check dimension, search.

    Every call opens its own session so fan-out calls can run on worker threads.
    """

    def __init__(
        self,
        session_factory: SessionFactory = SessionLocal,
        embedder: Optional[Embedder] = None,
        dimension: Optional[int] = None,
        max_workers: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self._embedder = embedder
        self.dimension = dimension or settings.EMBEDDING_DIM
        self.max_workers = max_workers or settings.FANOUT_MAX_WORKERS

    @property
    def embedder(self) -> Embedder:
        return self._embedder or get_embedder()

    def retrieve(self, query: str, top_k: Optional[int] = None, min_confidence: Optional[float] = None) -> List[ScoredChunk]:
        """Embed `query` and return matching chunks.

        Raises:
            InvalidParameter: empty query or out-of-range parameters.
            DimensionMismatch: embedder output length differs from the index.
            ProviderError: embedding provider failure.
        """
        if not query or not query.strip():
            raise InvalidParameter("Query is required")
        top_k = settings.RAG_DEFAULT_TOP_K if top_k is None else top_k
        min_confidence = settings.RAG_DEFAULT_MIN_CONFIDENCE if min_confidence is None else min_confidence

        model = getattr(self.embedder, "model", settings.OPENAI_EMBEDDING_MODEL)
        requested = None if self.dimension == default_dimension(model) else self.dimension
        qvec = self.embedder.embed(query, dimension=requested)
        if len(qvec) != self.dimension:
            raise DimensionMismatch(self.dimension, len(qvec))

        db = self.session_factory()
        try:
            chunks = search(db, qvec, top_k, min_confidence, dimension=self.dimension)
        finally:
            db.close()
        logger.debug("Retrieved %d chunks (top_k=%d, min_confidence=%s)", len(chunks), top_k, min_confidence)
        return chunks

    def fan_out(self, queries: Iterable[SectionQuery]) -> List[SectionResult]:
        """Run one retrieval per section concurrently and join them all.

        Results keep the input order. The first failure is re-raised after
        cancelling calls that have not started; results of calls already
        running are discarded.
        """
        queries = list(queries)
        if not queries:
            return []
        workers = max(1, min(self.max_workers, len(queries)))
        with span("retrieval.fan_out", {"sections": len(queries)}):
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rag_fanout") as pool:
                futures = [pool.submit(self.retrieve, q.query, q.top_k, q.min_confidence) for q in queries]
                done, not_done = wait(futures, return_when=FIRST_EXCEPTION)
                failed = next((f for f in futures if f in done and f.exception() is not None), None)
                if failed is not None:
                    for f in not_done:
                        f.cancel()
                    raise failed.exception()
        return [SectionResult(label=q.label, chunks=f.result()) for q, f in zip(queries, futures)]


def collect_provenance(results: Iterable[SectionResult]) -> tuple[List[int], List[int]]:
    """Union of chunk ids and their owning document ids across fan-out results.

    Returns:
        (chunk_ids, document_ids), each unique and ascending.
    """
    chunk_ids: set[int] = set()
    document_ids: set[int] = set()
    for r in results:
        for c in r.chunks:
            chunk_ids.add(c.id)
            document_ids.add(c.document_id)
    return sorted(chunk_ids), sorted(document_ids)


def format_context(chunks: Sequence[ScoredChunk]) -> str:
    """Render retrieved chunks as a prompt context block."""
    return "\n\n---\n\n".join(f"Document: {c.document_name}\nContent: {c.content}" for c in chunks)
