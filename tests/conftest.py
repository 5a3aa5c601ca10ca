"""Test fixtures for ContentForge.

Settings are read at import time, so the environment is prepared before any
contentforge module is imported: a 3-dimensional vector index, a throwaway
SQLite default database and no tracing backends.
"""

from __future__ import annotations

import os
import tempfile
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

_TMP_DIR = tempfile.mkdtemp(prefix="contentforge-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR}/default.db"
os.environ["EMBEDDING_DIMENSIONS"] = "3"
os.environ["OPENAI_API_KEY"] = "test-key"
os.environ["EMBEDDING_CACHE_ENABLED"] = "false"
os.environ["OTEL_CONSOLE_EXPORT"] = "false"
os.environ["CRON_SECRET"] = ""
for _key in ("LANGFUSE_HOST", "LANGFUSE_PUBLIC_KEY", "LANGFUSE_SECRET_KEY"):
    os.environ.pop(_key, None)

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from contentforge.db import init_db, session_scope
from contentforge.errors import ProviderError
from contentforge.generation import GenerationResult
from contentforge.models import AgentConfiguration, Chunk, Document, PipelineTask, TaskStatus
from contentforge.repository import create_task
from contentforge.retrieval import Retriever

IDEA_DATA = {
    "suggested_title": "Why Ceramic Pans Outlast Teflon",
    "source_focus": "ceramic cookware",
    "key_points_suggestion": ["durability", "easy care"],
}

OUTLINE_DATA = {
    "final_title": "Ceramic Pans: A Buyer's Guide",
    "introduction_summary": "What makes ceramic cookware worth it.",
    "sections": [
        {"title": "Durability", "key_points": ["coating life"]},
        {"title": "Care", "key_points": ["hand washing"]},
    ],
    "seo_keywords": ["ceramic pans", "cookware"],
}


class FakeEmbedder:
    """Maps query text to fixed vectors by substring; can fail on demand."""

    def __init__(
        self,
        vectors: Optional[Dict[str, Sequence[float]]] = None,
        default: Sequence[float] = (1.0, 0.0, 0.0),
        fail_on: Optional[str] = None,
    ):
        self.vectors = dict(vectors or {})
        self.default = list(default)
        self.fail_on = fail_on
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def embed(self, text: str, model: Optional[str] = None, dimension: Optional[int] = None) -> List[float]:
        with self._lock:
            self.calls.append(text)
        if self.fail_on and self.fail_on in text:
            raise ProviderError(f"Embedding provider error: quota exceeded for '{self.fail_on}'")
        for key, vec in self.vectors.items():
            if key in text:
                return list(vec)
        return list(self.default)


Output = Union[str, Exception, Callable[[str], Union[str, Exception]]]


class FakeGenerator:
    """Returns canned text (or raises) and records every prompt."""

    def __init__(self, output: Output = "{}"):
        self.output = output
        self.prompts: List[str] = []
        self.calls: List[Dict[str, Any]] = []

    def generate(self, prompt, model=None, temperature=None, max_tokens=None) -> GenerationResult:
        self.prompts.append(prompt)
        self.calls.append({"model": model, "temperature": temperature, "max_tokens": max_tokens})
        out = self.output(prompt) if callable(self.output) else self.output
        if isinstance(out, Exception):
            raise out
        return GenerationResult(
            text=out,
            model=model or "fake-model",
            usage={"prompt_tokens": 10, "completion_tokens": 20, "total_tokens": 30},
            finish_reason="stop",
        )


class Store:
    """Seeding and inspection helpers over a test session factory."""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self._documents: Dict[str, int] = {}

    def add_chunk(self, content: str, embedding: Sequence[float], confidence: float = 90.0, document: str = "Guide") -> int:
        with session_scope(self.session_factory) as db:
            doc_id = self._documents.get(document)
            if doc_id is None:
                doc = Document(name=document, type="text", meta={})
                db.add(doc)
                db.flush()
                doc_id = self._documents[document] = doc.id
            chunk = Chunk(
                document_id=doc_id,
                content=content,
                embedding=list(embedding),
                meta={"source": document},
                confidence_score=confidence,
            )
            db.add(chunk)
            db.flush()
            return chunk.id

    def document_id(self, name: str) -> int:
        return self._documents[name]

    def add_config(self, agent_type: str, base_prompt: str, model: str = "gpt-test", **params: Any) -> None:
        with session_scope(self.session_factory) as db:
            db.add(
                AgentConfiguration(
                    agent_type=agent_type,
                    base_prompt=base_prompt,
                    llm_model_name=model,
                    default_parameters=params,
                )
            )

    def add_task(
        self,
        task_type: str,
        data: Optional[Dict[str, Any]] = None,
        status: str = TaskStatus.PENDING,
        related: Optional[int] = None,
        title: Optional[str] = None,
        target_audience: str = "home cooks",
        priority: int = 0,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ) -> int:
        with session_scope(self.session_factory) as db:
            task = create_task(
                db,
                task_type=task_type,
                status=status,
                title=title,
                target_audience=target_audience,
                data=data,
                priority=priority,
                related_pipeline_id=related,
            )
            if created_at is not None:
                task.created_at = created_at
            if updated_at is not None:
                task.updated_at = updated_at
            return task.id

    def task(self, task_id: int) -> Optional[PipelineTask]:
        db = self.session_factory()
        try:
            task = db.get(PipelineTask, task_id)
            if task is not None:
                db.expunge(task)
            return task
        finally:
            db.close()

    def tasks(self, task_type: Optional[str] = None) -> List[PipelineTask]:
        db = self.session_factory()
        try:
            q = db.query(PipelineTask)
            if task_type:
                q = q.filter(PipelineTask.task_type == task_type)
            rows = q.order_by(PipelineTask.id).all()
            for r in rows:
                db.expunge(r)
            return rows
        finally:
            db.close()


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(
        f"sqlite:///{tmp_path / 'contentforge.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        future=True,
    )
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def store(session_factory) -> Store:
    return Store(session_factory)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder(vectors={"Durability": (1.0, 0.0, 0.0), "Care": (0.0, 1.0, 0.0)})


@pytest.fixture
def retriever(session_factory, embedder) -> Retriever:
    return Retriever(session_factory=session_factory, embedder=embedder, dimension=3, max_workers=4)
