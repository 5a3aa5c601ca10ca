"""Task persistence and state transition tests."""

from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace

import pytest

from conftest import IDEA_DATA, OUTLINE_DATA
from contentforge.errors import ClaimLost, InvalidParameter, NotFound
from contentforge.models import TaskStatus, TaskType, utcnow
from contentforge.repository import (
    claim_task,
    complete_with_downstream,
    create_task,
    load_agent_config,
    mark_error,
    pending_task_ids,
    promote_task,
    reset_stale_tasks,
    reset_task,
    status_summary,
)
from contentforge.schemas import AgentConfig


def test_create_task_normalizes_payload(store) -> None:
    task_id = store.add_task(TaskType.BLOG_IDEA, {"suggested_title": "Only a title"})
    task = store.task(task_id)
    assert task.status == TaskStatus.PENDING
    assert task.data["key_points_suggestion"] == []
    assert task.data["source_focus"] == ""


def test_outline_payload_requires_sections(db) -> None:
    with pytest.raises(InvalidParameter):
        create_task(db, task_type=TaskType.BLOG_OUTLINE, data={"final_title": "No sections", "sections": []})


def test_unknown_task_type_payload_passes_through(store) -> None:
    task_id = store.add_task("social_post", {"anything": [1, 2]})
    assert store.task(task_id).data == {"anything": [1, 2]}


def test_lineage_is_type_checked(store, db) -> None:
    idea = store.add_task(TaskType.BLOG_IDEA, IDEA_DATA)
    outline = store.add_task(TaskType.BLOG_OUTLINE, OUTLINE_DATA, related=idea)
    assert store.task(outline).related_pipeline_id == idea

    with pytest.raises(InvalidParameter, match="must follow a 'blog_idea'"):
        create_task(db, task_type=TaskType.BLOG_OUTLINE, data=OUTLINE_DATA, related_pipeline_id=outline)
    with pytest.raises(InvalidParameter, match="does not exist"):
        create_task(db, task_type=TaskType.BLOG_OUTLINE, data=OUTLINE_DATA, related_pipeline_id=999)


def test_provenance_ids_are_unique_and_sorted(db) -> None:
    task = create_task(
        db,
        task_type=TaskType.BLOG_IDEA,
        data=IDEA_DATA,
        source_chunk_ids=[9, 3, 9, 1],
        source_document_ids=[2, 2, 1],
    )
    assert task.source_chunk_ids == [1, 3, 9]
    assert task.source_document_ids == [1, 2]


def test_claim_is_single_winner(store, db) -> None:
    task_id = store.add_task(TaskType.BLOG_IDEA, IDEA_DATA)
    assert claim_task(db, task_id, TaskType.BLOG_IDEA) is True
    assert claim_task(db, task_id, TaskType.BLOG_IDEA) is False
    assert store.task(task_id).status == TaskStatus.IN_PROGRESS


def test_claim_requires_matching_type(store, db) -> None:
    task_id = store.add_task(TaskType.BLOG_IDEA, IDEA_DATA)
    assert claim_task(db, task_id, TaskType.BLOG_OUTLINE) is False
    assert store.task(task_id).status == TaskStatus.PENDING


def test_complete_with_downstream_is_atomic(store, db) -> None:
    idea = store.add_task(TaskType.BLOG_IDEA, IDEA_DATA)
    claim_task(db, idea, TaskType.BLOG_IDEA)

    bad = {"task_type": TaskType.BLOG_OUTLINE, "data": {"final_title": "x", "sections": []}}
    with pytest.raises(InvalidParameter):
        complete_with_downstream(db, idea, bad)
    assert store.task(idea).status == TaskStatus.IN_PROGRESS
    assert store.tasks(TaskType.BLOG_OUTLINE) == []

    good = {"task_type": TaskType.BLOG_OUTLINE, "data": OUTLINE_DATA, "source_chunk_ids": [4, 2]}
    outline = complete_with_downstream(db, idea, good)
    source = store.task(idea)
    assert source.status == TaskStatus.COMPLETED
    assert source.completed_at is not None
    created = store.task(outline.id)
    assert created.related_pipeline_id == idea
    assert created.source_chunk_ids == [2, 4]


def test_complete_requires_in_progress(store, db) -> None:
    idea = store.add_task(TaskType.BLOG_IDEA, IDEA_DATA)
    with pytest.raises(ClaimLost):
        complete_with_downstream(db, idea, {"task_type": TaskType.BLOG_OUTLINE, "data": OUTLINE_DATA})
    assert store.tasks(TaskType.BLOG_OUTLINE) == []
    assert store.task(idea).status == TaskStatus.PENDING


def test_mark_error_only_from_in_progress(store, db) -> None:
    task_id = store.add_task(TaskType.BLOG_IDEA, IDEA_DATA)
    assert mark_error(db, task_id, "boom") is False
    claim_task(db, task_id, TaskType.BLOG_IDEA)
    assert mark_error(db, task_id, "x" * 5000) is True
    task = store.task(task_id)
    assert task.status == TaskStatus.ERROR
    assert len(task.error_message) == 2000


def test_reset_stale_tasks(store, db) -> None:
    old = store.add_task(
        TaskType.BLOG_IDEA, IDEA_DATA, status=TaskStatus.IN_PROGRESS, updated_at=utcnow() - timedelta(hours=2)
    )
    fresh = store.add_task(TaskType.BLOG_IDEA, IDEA_DATA, status=TaskStatus.IN_PROGRESS)

    assert reset_stale_tasks(db, 1800) == 1
    assert store.task(old).status == TaskStatus.PENDING
    assert store.task(fresh).status == TaskStatus.IN_PROGRESS


def test_promote_and_reset_transitions(store, db) -> None:
    review = store.add_task(TaskType.BLOG_IDEA, IDEA_DATA, status=TaskStatus.PENDING_REVIEW)
    failed = store.add_task(TaskType.BLOG_IDEA, IDEA_DATA, status=TaskStatus.ERROR)

    assert promote_task(db, review).status == TaskStatus.PENDING
    assert reset_task(db, failed).status == TaskStatus.PENDING

    with pytest.raises(InvalidParameter):
        promote_task(db, review)
    with pytest.raises(NotFound):
        reset_task(db, 12345)


def test_pending_order_priority_then_age(store, db) -> None:
    now = utcnow()
    low_old = store.add_task(TaskType.BLOG_IDEA, IDEA_DATA, priority=0, created_at=now - timedelta(days=2))
    high_new = store.add_task(TaskType.BLOG_IDEA, IDEA_DATA, priority=5, created_at=now)
    low_new = store.add_task(TaskType.BLOG_IDEA, IDEA_DATA, priority=0, created_at=now - timedelta(days=1))
    store.add_task(TaskType.BLOG_IDEA, IDEA_DATA, status=TaskStatus.COMPLETED, priority=9)

    assert pending_task_ids(db, TaskType.BLOG_IDEA, 10) == [high_new, low_old, low_new]
    assert pending_task_ids(db, TaskType.BLOG_IDEA, 1) == [high_new]


def test_load_agent_config(store, db) -> None:
    store.add_config("scribe", "Write {{BLOG_TITLE}}", model="gpt-4o", temperature=0.3, maxTokens=4000)
    config = load_agent_config(db, "scribe")
    assert config.llm_model_name == "gpt-4o"
    assert config.temperature == 0.3
    assert config.max_tokens == 4000

    with pytest.raises(NotFound, match="Architect agent configuration not found."):
        load_agent_config(db, "architect")


def test_agent_config_is_immutable() -> None:
    row = SimpleNamespace(agent_type="architect", base_prompt="p", llm_model_name="m", default_parameters=None)
    config = AgentConfig.from_row(row)
    with pytest.raises(Exception):
        config.base_prompt = "changed"


def test_status_summary(store, db) -> None:
    store.add_task(TaskType.BLOG_IDEA, IDEA_DATA)
    store.add_task(TaskType.BLOG_IDEA, IDEA_DATA, status=TaskStatus.ERROR)
    store.add_task(TaskType.BLOG_IDEA, IDEA_DATA, status=TaskStatus.COMPLETED)

    summary = status_summary(db)

    assert summary["health"]["totalTasks"] == 3
    assert summary["health"]["failedTasks"] == 1
    assert summary["tasksByType"]["blog_idea"] == {"pending": 1, "error": 1, "completed": 1}
    assert len(summary["recentActivity"]) == 3
