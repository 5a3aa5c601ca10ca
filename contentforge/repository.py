"""Persistence operations for pipeline tasks and agent configurations.

Status changes are compare-and-set UPDATEs guarded by the expected current
status, so the persisted status field acts as the per-task mutex:
- claim_task: pending -> in_progress (exactly one concurrent caller wins)
- complete_with_downstream: in_progress -> completed plus the downstream insert,
  in one transaction
- mark_error: in_progress -> error
- reset_stale_tasks: in_progress (older than a threshold) -> pending
- promote_task / reset_task: pending_review -> pending, error -> pending
- compare_and_set_status: any guarded move (used by publishing)

Functions that change status commit their own transaction; create_task only
flushes so callers can batch inserts.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from contentforge.errors import ClaimLost, InvalidParameter, NotFound
from contentforge.models import AgentConfiguration, PipelineTask, TaskStatus, TaskType, utcnow
from contentforge.schemas import AgentConfig, TaskView, payload_schema

logger = logging.getLogger(__name__)

# Stage -> the only task type its related_pipeline_id may point at
EXPECTED_PREDECESSOR = {
    TaskType.BLOG_OUTLINE: TaskType.BLOG_IDEA,
    TaskType.BLOG_DRAFT: TaskType.BLOG_OUTLINE,
}

MAX_ERROR_MESSAGE_CHARS = 2000


def get_task(db: Session, task_id: int) -> Optional[PipelineTask]:
    return db.get(PipelineTask, task_id)


def validate_payload(task_type: str, data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate a stage payload against its schema and return it normalized.

    Unknown task types pass through unchanged.

    Raises:
        InvalidParameter: payload does not match the stage schema.
    """
    schema = payload_schema(task_type)
    if schema is None:
        return dict(data or {})
    try:
        return schema.model_validate(data or {}).model_dump(mode="json")
    except ValidationError as e:
        raise InvalidParameter(f"Invalid payload for task type '{task_type}'", details=str(e)) from e


def check_lineage(db: Session, task_type: str, related_pipeline_id: Optional[int]) -> None:
    """Type-check the predecessor link of a task about to be written.

    Raises:
        InvalidParameter: predecessor missing or of the wrong stage.
    """
    if related_pipeline_id is None:
        return
    predecessor = db.get(PipelineTask, related_pipeline_id)
    if predecessor is None:
        raise InvalidParameter(f"Related pipeline task {related_pipeline_id} does not exist")
    expected = EXPECTED_PREDECESSOR.get(task_type)
    if expected is not None and predecessor.task_type != expected:
        raise InvalidParameter(
            f"A '{task_type}' task must follow a '{expected}' task, "
            f"but task {related_pipeline_id} is '{predecessor.task_type}'"
        )


def create_task(
    db: Session,
    *,
    task_type: str,
    status: str = TaskStatus.PENDING,
    title: Optional[str] = None,
    summary: Optional[str] = None,
    target_audience: Optional[str] = None,
    keywords: Optional[Iterable[str]] = None,
    data: Optional[Dict[str, Any]] = None,
    priority: int = 0,
    related_pipeline_id: Optional[int] = None,
    source_chunk_ids: Optional[Iterable[int]] = None,
    source_document_ids: Optional[Iterable[int]] = None,
) -> PipelineTask:
    """Insert a task after validating its payload and lineage (flush, no commit)."""
    if status not in TaskStatus.ALL:
        raise InvalidParameter(f"Unknown task status '{status}'")
    payload = validate_payload(task_type, data)
    check_lineage(db, task_type, related_pipeline_id)
    now = utcnow()
    task = PipelineTask(
        task_type=task_type,
        status=status,
        title=title,
        summary=summary,
        target_audience=target_audience,
        keywords=list(keywords or []),
        data=payload,
        priority=priority,
        related_pipeline_id=related_pipeline_id,
        source_chunk_ids=sorted(set(source_chunk_ids or [])),
        source_document_ids=sorted(set(source_document_ids or [])),
        created_at=now,
        updated_at=now,
    )
    db.add(task)
    db.flush()
    return task


def claim_task(db: Session, task_id: int, task_type: str) -> bool:
    """Atomically move a pending task of the given type to in_progress.

    Returns:
        bool: True if this caller claimed the task; False if no pending task of
            that type exists (wrong id, wrong type, or already claimed/finished).
    """
    result = db.execute(
        update(PipelineTask)
        .where(
            PipelineTask.id == task_id,
            PipelineTask.task_type == task_type,
            PipelineTask.status == TaskStatus.PENDING,
        )
        .values(status=TaskStatus.IN_PROGRESS, updated_at=utcnow(), error_message=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def complete_with_downstream(db: Session, task_id: int, downstream: Dict[str, Any]) -> PipelineTask:
    """Mark an in_progress task completed and insert its downstream task together.

    Args:
        db: Session with no pending changes.
        task_id: The task being completed.
        downstream: Keyword arguments for create_task; related_pipeline_id is
            forced to task_id.

    Raises:
        ClaimLost: the task is no longer in_progress; nothing is written.
        InvalidParameter: downstream payload/lineage invalid; nothing is written.
    """
    now = utcnow()
    try:
        result = db.execute(
            update(PipelineTask)
            .where(PipelineTask.id == task_id, PipelineTask.status == TaskStatus.IN_PROGRESS)
            .values(status=TaskStatus.COMPLETED, completed_at=now, updated_at=now, error_message=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ClaimLost(f"Task {task_id} is no longer in progress")
        new_task = create_task(db, **{**downstream, "related_pipeline_id": task_id})
        db.commit()
    except Exception:
        db.rollback()
        raise
    return new_task


def mark_error(db: Session, task_id: int, message: str) -> bool:
    """Record a failed run. Only applies while the task is still in_progress."""
    result = db.execute(
        update(PipelineTask)
        .where(PipelineTask.id == task_id, PipelineTask.status == TaskStatus.IN_PROGRESS)
        .values(
            status=TaskStatus.ERROR,
            error_message=(message or "Unknown error")[:MAX_ERROR_MESSAGE_CHARS],
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def reset_stale_tasks(db: Session, older_than_seconds: int) -> int:
    """Reset in_progress tasks not updated for `older_than_seconds` back to pending.

    Returns:
        int: Number of tasks reset.
    """
    cutoff = utcnow() - timedelta(seconds=older_than_seconds)
    result = db.execute(
        update(PipelineTask)
        .where(PipelineTask.status == TaskStatus.IN_PROGRESS, PipelineTask.updated_at < cutoff)
        .values(status=TaskStatus.PENDING, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.warning("Reset %d stale in_progress task(s) older than %ss", result.rowcount, older_than_seconds)
    return result.rowcount


def compare_and_set_status(
    db: Session,
    task_id: int,
    from_status: str,
    to_status: str,
    task_type: Optional[str] = None,
    **values: Any,
) -> bool:
    """Move a task from `from_status` to `to_status` (plus extra column values).

    Returns:
        bool: True if the row was still in `from_status` (and of `task_type`,
            when given) and has been updated.
    """
    conditions = [PipelineTask.id == task_id, PipelineTask.status == from_status]
    if task_type is not None:
        conditions.append(PipelineTask.task_type == task_type)
    result = db.execute(
        update(PipelineTask)
        .where(*conditions)
        .values(status=to_status, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def _transition(db: Session, task_id: int, from_status: str, to_status: str) -> PipelineTask:
    task = db.get(PipelineTask, task_id)
    if task is None:
        raise NotFound(f"Pipeline task {task_id} not found")
    result = db.execute(
        update(PipelineTask)
        .where(PipelineTask.id == task_id, PipelineTask.status == from_status)
        .values(status=to_status, updated_at=utcnow(), error_message=None)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise InvalidParameter(f"Task {task_id} is '{task.status}', expected '{from_status}'")
    db.commit()
    db.refresh(task)
    return task


def promote_task(db: Session, task_id: int) -> PipelineTask:
    """Release a reviewed task (pending_review -> pending)."""
    return _transition(db, task_id, TaskStatus.PENDING_REVIEW, TaskStatus.PENDING)


def reset_task(db: Session, task_id: int) -> PipelineTask:
    """Make a failed task retryable (error -> pending)."""
    return _transition(db, task_id, TaskStatus.ERROR, TaskStatus.PENDING)


def pending_task_ids(db: Session, task_type: str, limit: int) -> List[int]:
    """Pending task ids of one type, highest priority first, then oldest first."""
    stmt = (
        select(PipelineTask.id)
        .where(PipelineTask.task_type == task_type, PipelineTask.status == TaskStatus.PENDING)
        .order_by(PipelineTask.priority.desc(), PipelineTask.created_at.asc(), PipelineTask.id.asc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


def load_agent_config(db: Session, agent_type: str) -> AgentConfig:
    """Load the configuration for an agent type.

    Raises:
        NotFound: no configuration row exists for the agent type.
    """
    row = db.execute(
        select(AgentConfiguration).where(AgentConfiguration.agent_type == agent_type)
    ).scalar_one_or_none()
    if row is None:
        raise NotFound(f"{agent_type.capitalize()} agent configuration not found.")
    return AgentConfig.from_row(row)


def task_view(task: PipelineTask) -> TaskView:
    return TaskView(
        id=task.id,
        task_type=task.task_type,
        status=task.status,
        priority=task.priority or 0,
        related_pipeline_id=task.related_pipeline_id,
        title=task.title,
        summary=task.summary,
        target_audience=task.target_audience,
        keywords=list(task.keywords or []),
        data=dict(task.data or {}),
        source_chunk_ids=list(task.source_chunk_ids or []),
        source_document_ids=list(task.source_document_ids or []),
        error_message=task.error_message,
        created_at=task.created_at,
        updated_at=task.updated_at,
        completed_at=task.completed_at,
    )


def status_summary(db: Session, recent_limit: int = 10) -> Dict[str, Any]:
    """Task counts per type/status, health totals and recent activity."""
    rows = db.execute(
        select(PipelineTask.task_type, PipelineTask.status, func.count())
        .group_by(PipelineTask.task_type, PipelineTask.status)
        .order_by(PipelineTask.task_type)
    ).all()
    by_type: Dict[str, Dict[str, int]] = {}
    totals = {s: 0 for s in TaskStatus.ALL}
    for task_type, status, count in rows:
        by_type.setdefault(task_type, {})[status] = int(count)
        totals[status] = totals.get(status, 0) + int(count)

    recent = db.execute(
        select(PipelineTask).order_by(PipelineTask.updated_at.desc(), PipelineTask.id.desc()).limit(recent_limit)
    ).scalars().all()
    return {
        "health": {
            "totalTasks": sum(totals.values()),
            "pendingTasks": totals[TaskStatus.PENDING],
            "inProgressTasks": totals[TaskStatus.IN_PROGRESS],
            "completedTasks": totals[TaskStatus.COMPLETED],
            "pendingReviewTasks": totals[TaskStatus.PENDING_REVIEW],
            "failedTasks": totals[TaskStatus.ERROR],
        },
        "tasksByType": by_type,
        "recentActivity": [
            {
                "id": t.id,
                "type": t.task_type,
                "status": t.status,
                "title": t.title,
                "createdAt": t.created_at.isoformat() if t.created_at else None,
                "updatedAt": t.updated_at.isoformat() if t.updated_at else None,
            }
            for t in recent
        ],
    }
