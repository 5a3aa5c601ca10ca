"""FastAPI application entrypoint and routes.

Exposes retrieval, generation and pipeline control endpoints, configures CORS
and logging, and initializes the database schema at startup. Application
errors are returned as {"success": false, "error", "details"} envelopes.

Collaborators (session factory, retriever, generator, orchestrator, blog
client) are provided through dependencies so they can be overridden.
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from contentforge.config import settings
from contentforge.db import SessionFactory, SessionLocal, get_db, init_db
from contentforge.errors import ContentForgeError
from contentforge.generation import Generator
from contentforge.innovator import IdeaSeeder
from contentforge.obs import Trace, span
from contentforge.orchestrator import PipelineOrchestrator, StaleTaskSweeper, default_agents, pipeline_status
from contentforge.publishing import BlogPlatformClient, publish_draft
from contentforge.repository import create_task, promote_task, reset_task, task_view
from contentforge.retrieval import Retriever
from contentforge.schemas import (
    AgentOutcome,
    CreateTaskRequest,
    ErrorEnvelope,
    GenerateTextRequest,
    GenerateTextResponse,
    IdeaRequest,
    PipelineRunReport,
    PublishRequest,
    RagQueryRequest,
    RagQueryResponse,
    TaskView,
    Usage,
)

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="ContentForge API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_credentials=True,
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    """Initialize database schema and indexes at application startup."""
    init_db()


# --- Error envelopes -----------------------------------------------------------

def _envelope(status_code: int, error: str, details: Any = None) -> JSONResponse:
    body = ErrorEnvelope(error=error, details=details).model_dump()
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


@app.exception_handler(ContentForgeError)
def handle_app_error(request: Request, exc: ContentForgeError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.__class__.__name__, request.url.path, exc.message)
    return _envelope(exc.status_code, exc.message, exc.details)


@app.exception_handler(RequestValidationError)
def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _envelope(400, "Invalid request", exc.errors())


@app.exception_handler(Exception)
def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s", request.url.path)
    return _envelope(500, "Internal server error", {"type": exc.__class__.__name__})


# --- Dependencies ------------------------------------------------------------

def get_session_factory() -> SessionFactory:
    return SessionLocal


def get_retriever(factory: SessionFactory = Depends(get_session_factory)) -> Retriever:
    return Retriever(session_factory=factory)


def get_generator() -> Generator:
    return Generator()


def get_orchestrator(
    factory: SessionFactory = Depends(get_session_factory),
    retriever: Retriever = Depends(get_retriever),
    generator: Generator = Depends(get_generator),
) -> PipelineOrchestrator:
    return PipelineOrchestrator(default_agents(factory, retriever, generator), session_factory=factory)


def get_blog_client() -> BlogPlatformClient:
    return BlogPlatformClient()


# --- Routes --------------------------------------------------------------------

@app.get("/health")
def health():
    """Liveness probe endpoint.

    Returns:
        dict: {"status": "ok"} when the service is running.
    """
    return {"status": "ok"}


@app.post("/api/rag/query", response_model=RagQueryResponse)
def rag_query(req: RagQueryRequest, retriever: Retriever = Depends(get_retriever)) -> RagQueryResponse:
    """Embed the query and return the most similar chunks above the confidence floor."""
    trace = Trace("rag_query", input={"query": req.query, "top_k": req.top_k})
    try:
        with span("api.rag_query"):
            chunks = retriever.retrieve(req.query, top_k=req.top_k, min_confidence=req.min_confidence)
    except Exception as e:
        trace.end(output={"success": False, "error": str(e)})
        raise
    trace.end(output={"chunks": len(chunks)})
    return RagQueryResponse(chunks=chunks)


@app.post("/api/generate/text", response_model=GenerateTextResponse)
def generate_text(req: GenerateTextRequest, generator: Generator = Depends(get_generator)) -> GenerateTextResponse:
    """Single-prompt text generation. Empty model output is a 500 envelope."""
    result = generator.generate(req.prompt, model=req.model, temperature=req.temperature, max_tokens=req.max_tokens)
    return GenerateTextResponse(generated_text=result.text, model=result.model, usage=Usage(**result.usage))


@app.post("/api/pipeline/tasks", response_model=TaskView, status_code=201)
def create_pipeline_task(req: CreateTaskRequest, db: Session = Depends(get_db)) -> TaskView:
    """Queue a new pending task; the payload and lineage are validated first."""
    task = create_task(
        db,
        task_type=req.task_type,
        title=req.title,
        summary=req.summary,
        target_audience=req.target_audience,
        keywords=req.keywords,
        data=req.data,
        priority=req.priority,
        related_pipeline_id=req.related_pipeline_id,
    )
    db.commit()
    db.refresh(task)
    logger.info("Created %s task %s", task.task_type, task.id)
    return task_view(task)


@app.post("/api/pipeline/tasks/{task_id}/run", response_model=AgentOutcome)
def run_pipeline_task(task_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)) -> AgentOutcome:
    return orchestrator.run_task(task_id)


@app.post("/api/pipeline/tasks/{task_id}/promote", response_model=TaskView)
def promote_pipeline_task(task_id: int, db: Session = Depends(get_db)) -> TaskView:
    """Release a reviewed task (pending_review -> pending)."""
    return task_view(promote_task(db, task_id))


@app.post("/api/pipeline/tasks/{task_id}/reset", response_model=TaskView)
def reset_pipeline_task(task_id: int, db: Session = Depends(get_db)) -> TaskView:
    """Retry a failed task (error -> pending)."""
    return task_view(reset_task(db, task_id))


@app.post("/api/pipeline/tasks/{task_id}/publish")
def publish_pipeline_task(
    task_id: int,
    req: Optional[PublishRequest] = None,
    db: Session = Depends(get_db),
    client: BlogPlatformClient = Depends(get_blog_client),
) -> Dict[str, Any]:
    req = req or PublishRequest()
    result = publish_draft(db, task_id, client, blog_id=req.blog_id, author=req.author, published=req.published)
    return {"success": True, **result}


@app.get("/api/pipeline/status")
def get_pipeline_status(factory: SessionFactory = Depends(get_session_factory)) -> Dict[str, Any]:
    return {"success": True, **pipeline_status(factory)}


@app.post("/api/cron/process-pipeline")
def process_pipeline(
    authorization: Optional[str] = Header(default=None),
    factory: SessionFactory = Depends(get_session_factory),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Scheduled batch pass: reset stale claims, then run pending tasks.

    Requires `Authorization: Bearer <CRON_SECRET>` when CRON_SECRET is set.
    """
    if settings.CRON_SECRET and authorization != f"Bearer {settings.CRON_SECRET}":
        logger.warning("Rejected unauthorized pipeline cron call")
        return _envelope(401, "Unauthorized")

    stale = StaleTaskSweeper(session_factory=factory).sweep()
    report: PipelineRunReport = orchestrator.process_pending()
    report.stale_tasks_reset = stale
    logger.info("Pipeline cron pass finished: %s", report.model_dump())
    return {"success": True, "results": report.model_dump(by_alias=True)}


@app.post("/api/ideas")
def seed_ideas(
    req: IdeaRequest,
    factory: SessionFactory = Depends(get_session_factory),
    retriever: Retriever = Depends(get_retriever),
    generator: Generator = Depends(get_generator),
) -> Dict[str, Any]:
    """Brainstorm blog ideas for a focus value and queue them as blog_idea tasks."""
    seeder = IdeaSeeder(session_factory=factory, retriever=retriever, generator=generator)
    task_ids: List[int] = seeder.propose(req.focus_value, req.target_audience)
    return {"success": True, "taskIds": task_ids}
