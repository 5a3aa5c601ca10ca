"""Pipeline orchestration: dispatch tasks to agents and process pending batches.

- PipelineOrchestrator.dispatch: route a task id to the agent for its type.
- PipelineOrchestrator.run_task: look up a task's type, then dispatch.
- PipelineOrchestrator.process_pending: run pending tasks of every registered
  type concurrently (one worker per task id) and summarize the pass.
- StaleTaskSweeper: return abandoned in_progress tasks to pending.
- pipeline_status: counts per type/status and recent activity.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Mapping, Optional, Tuple

from contentforge.agents import ArchitectAgent, PipelineAgent, ScribeAgent
from contentforge.config import settings
from contentforge.db import SessionFactory, SessionLocal
from contentforge.errors import InvalidParameter, NotFound
from contentforge.generation import Generator
from contentforge.obs import span
from contentforge.repository import get_task, pending_task_ids, reset_stale_tasks, status_summary
from contentforge.retrieval import Retriever
from contentforge.schemas import AgentOutcome, PipelineRunReport

logger = logging.getLogger(__name__)


def default_agents(
    session_factory: SessionFactory = SessionLocal,
    retriever: Optional[Retriever] = None,
    generator: Optional[Generator] = None,
) -> Dict[str, PipelineAgent]:
    """Task type -> agent mapping for the built-in stages."""
    retriever = retriever or Retriever(session_factory=session_factory)
    generator = generator or Generator()
    agents = [
        ArchitectAgent(session_factory, retriever=retriever, generator=generator),
        ScribeAgent(session_factory, retriever=retriever, generator=generator),
    ]
    return {a.task_type: a for a in agents}


class PipelineOrchestrator:
    """Routes tasks to stage agents.

    Args:
        agents: Mapping of task_type to agent. Defaults to the built-in stages.
        session_factory: Session factory for task lookups.
        max_workers: Concurrent task runs in process_pending.
    """

    def __init__(
        self,
        agents: Optional[Mapping[str, PipelineAgent]] = None,
        session_factory: SessionFactory = SessionLocal,
        max_workers: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.agents: Dict[str, PipelineAgent] = dict(agents) if agents is not None else default_agents(session_factory)
        self.max_workers = max_workers or settings.PIPELINE_MAX_WORKERS

    def dispatch(self, task_id: int, task_type: str) -> AgentOutcome:
        """Run the agent registered for `task_type` on `task_id`.

        Raises:
            InvalidParameter: no agent handles `task_type`.
        """
        agent = self.agents.get(task_type)
        if agent is None:
            raise InvalidParameter(f"No agent registered for task type '{task_type}'")
        return agent.run(task_id)

    def run_task(self, task_id: int) -> AgentOutcome:
        """Dispatch a task by id.

        Raises:
            NotFound: unknown task id.
            InvalidParameter: the task's type has no agent.
        """
        db = self.session_factory()
        try:
            task = get_task(db, task_id)
            if task is None:
                raise NotFound(f"Pipeline task {task_id} not found")
            task_type = task.task_type
        finally:
            db.close()
        return self.dispatch(task_id, task_type)

    def process_pending(self, limit_per_type: Optional[int] = None) -> PipelineRunReport:
        """Run up to `limit_per_type` pending tasks of each registered type.

        Tasks are picked by priority (desc) then age (oldest first). A failing
        task is reported and never stops the rest of the batch.
        """
        limit = limit_per_type or settings.PIPELINE_BATCH_LIMIT
        db = self.session_factory()
        try:
            batch: List[Tuple[str, int]] = [
                (task_type, task_id)
                for task_type in self.agents
                for task_id in pending_task_ids(db, task_type, limit)
            ]
        finally:
            db.close()

        report = PipelineRunReport(
            processed={t: 0 for t in self.agents},
            succeeded={t: 0 for t in self.agents},
        )
        if not batch:
            logger.info("No pending pipeline tasks")
            return report

        logger.info("Processing %d pending pipeline task(s)", len(batch))
        workers = max(1, min(self.max_workers, len(batch)))
        with span("pipeline.process_pending", {"tasks": len(batch)}):
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pipeline") as pool:
                futures = [(task_type, task_id, pool.submit(self.dispatch, task_id, task_type)) for task_type, task_id in batch]
                for task_type, task_id, fut in futures:
                    report.processed[task_type] += 1
                    try:
                        outcome = fut.result()
                    except Exception as e:
                        logger.exception("Pipeline run crashed for task %s", task_id)
                        report.errors.append(f"Task {task_id} ({task_type}): {e}")
                        continue
                    if outcome.success:
                        report.succeeded[task_type] += 1
                    else:
                        report.errors.append(f"Task {task_id} ({task_type}): {outcome.message}")
        return report


class StaleTaskSweeper:
    """Resets in_progress tasks whose worker died before finishing."""

    def __init__(self, session_factory: SessionFactory = SessionLocal, threshold_seconds: Optional[int] = None):
        self.session_factory = session_factory
        self.threshold_seconds = threshold_seconds or settings.STALE_TASK_THRESHOLD_SECONDS

    def sweep(self, threshold_seconds: Optional[int] = None) -> int:
        """Return the number of tasks moved back to pending."""
        threshold = self.threshold_seconds if threshold_seconds is None else threshold_seconds
        db = self.session_factory()
        try:
            return reset_stale_tasks(db, threshold)
        finally:
            db.close()


def pipeline_status(session_factory: SessionFactory = SessionLocal) -> Dict[str, Any]:
    db = session_factory()
    try:
        return status_summary(db)
    finally:
        db.close()
