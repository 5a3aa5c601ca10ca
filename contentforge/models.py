"""Database ORM models.

Defines persistent entities used by retrieval and the content pipeline:
- Document: a source text unit owning zero-or-more chunks.
- Chunk: a retrievable slice of a document with a pgvector embedding and a
  confidence score (quality rating, independent of any query).
- PipelineTask: a unit of work moving content through idea -> outline -> draft,
  carrying provenance (source chunk/document ids) and a typed payload.
- AgentConfiguration: prompt template and model defaults for one agent type.
"""
from datetime import datetime, timezone

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, validates

from contentforge.config import settings
from contentforge.db import Base
from contentforge.errors import DimensionMismatch

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp, the storage convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TaskStatus:
    """Pipeline task states.

    pending -> in_progress -> {completed | pending_review | error}
    """
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PENDING_REVIEW = "pending_review"
    ERROR = "error"

    ALL = (PENDING, IN_PROGRESS, COMPLETED, PENDING_REVIEW, ERROR)


class TaskType:
    """Known pipeline stages. The column itself accepts any tag."""
    BLOG_IDEA = "blog_idea"
    BLOG_OUTLINE = "blog_outline"
    BLOG_DRAFT = "blog_draft"


class Document(Base):
    """Source document; immutable once ingested."""
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(512), nullable=False)
    type = Column(String(64), nullable=True)
    meta = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    chunks = relationship("Chunk", back_populates="document", cascade="all, delete-orphan")


class Chunk(Base):
    """Vector-embedded document chunk used for retrieval.

    Notes:
        The embedding dimension is derived from settings.EMBEDDING_DIM and must
        match the embedding model configured in contentforge.config.Settings.
        Assigning a vector of any other length raises DimensionMismatch.
    """
    __tablename__ = "chunks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(Integer, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    content = Column(Text, nullable=False)
    embedding = Column(Vector(dim=settings.EMBEDDING_DIM), nullable=False)
    meta = Column("metadata", JSONType, nullable=False, default=dict)
    confidence_score = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    document = relationship("Document", back_populates="chunks")

    __table_args__ = (
        Index("idx_chunks_document_id", "document_id"),
        Index("idx_chunks_confidence", "confidence_score"),
    )

    @validates("embedding")
    def _check_dimension(self, key, value):
        if value is not None and len(value) != settings.EMBEDDING_DIM:
            raise DimensionMismatch(settings.EMBEDDING_DIM, len(value))
        return value


class PipelineTask(Base):
    """One unit of work in the content pipeline.

    related_pipeline_id weakly references the predecessor task (at most one),
    so lineage chains form a forest. source_chunk_ids/source_document_ids are
    snapshots and stay valid if chunks are re-embedded or deleted.
    """
    __tablename__ = "pipeline_tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_type = Column(String(64), nullable=False)
    status = Column(String(32), nullable=False, default=TaskStatus.PENDING)
    priority = Column(Integer, nullable=False, default=0)
    related_pipeline_id = Column(Integer, ForeignKey("pipeline_tasks.id", ondelete="SET NULL"), nullable=True)

    title = Column(String(512), nullable=True)
    summary = Column(Text, nullable=True)
    target_audience = Column(String(512), nullable=True)
    keywords = Column(JSONType, nullable=False, default=list)
    data = Column(JSONType, nullable=False, default=dict)

    source_chunk_ids = Column(JSONType, nullable=False, default=list)
    source_document_ids = Column(JSONType, nullable=False, default=list)

    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_pipeline_tasks_type_status", "task_type", "status"),
        Index("idx_pipeline_tasks_related", "related_pipeline_id"),
        Index("idx_pipeline_tasks_status_updated", "status", "updated_at"),
    )


class AgentConfiguration(Base):
    """Prompt template and model defaults for one agent type (e.g. 'scribe')."""
    __tablename__ = "agent_configurations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    agent_type = Column(String(64), nullable=False, unique=True)
    base_prompt = Column(Text, nullable=False)
    llm_model_name = Column(String(128), nullable=False)
    default_parameters = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
