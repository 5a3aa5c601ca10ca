"""Orchestrator dispatch, batch processing and sweeping."""

from __future__ import annotations

import json
from datetime import timedelta

import pytest

from conftest import IDEA_DATA, OUTLINE_DATA, FakeGenerator
from contentforge.errors import InvalidParameter, NotFound
from contentforge.models import TaskStatus, TaskType, utcnow
from contentforge.orchestrator import PipelineOrchestrator, StaleTaskSweeper, default_agents, pipeline_status

ARTICLE = {"title": "Draft", "body_html": "<p>body</p>"}


def _by_prompt(prompt: str) -> str:
    if prompt.startswith("OUTLINE"):
        if "Broken Idea" in prompt:
            return "no json here"
        return json.dumps(OUTLINE_DATA)
    return json.dumps(ARTICLE)


@pytest.fixture
def orchestrator(store, session_factory, retriever) -> PipelineOrchestrator:
    store.add_config("architect", "OUTLINE {{BLOG_IDEA_TITLE}}")
    store.add_config("scribe", "ARTICLE {{BLOG_TITLE}}")
    store.add_chunk("context", [1.0, 0.0, 0.0])
    agents = default_agents(session_factory, retriever=retriever, generator=FakeGenerator(_by_prompt))
    return PipelineOrchestrator(agents, session_factory=session_factory, max_workers=4)


def test_registered_stages(orchestrator) -> None:
    assert set(orchestrator.agents) == {TaskType.BLOG_IDEA, TaskType.BLOG_OUTLINE}


def test_dispatch_unknown_type(orchestrator) -> None:
    with pytest.raises(InvalidParameter):
        orchestrator.dispatch(1, "podcast_episode")


def test_run_task_unknown_id(orchestrator) -> None:
    with pytest.raises(NotFound):
        orchestrator.run_task(4242)


def test_run_task_routes_by_type(store, orchestrator) -> None:
    idea = store.add_task(TaskType.BLOG_IDEA, IDEA_DATA)
    outcome = orchestrator.run_task(idea)
    assert outcome.success is True
    assert store.task(outcome.downstream_task_id).task_type == TaskType.BLOG_OUTLINE


def test_process_pending_isolates_failures(store, orchestrator) -> None:
    good = store.add_task(TaskType.BLOG_IDEA, IDEA_DATA)
    broken = store.add_task(TaskType.BLOG_IDEA, {**IDEA_DATA, "suggested_title": "Broken Idea"})
    parent = store.add_task(TaskType.BLOG_IDEA, IDEA_DATA, status=TaskStatus.COMPLETED)
    outline = store.add_task(TaskType.BLOG_OUTLINE, OUTLINE_DATA, related=parent)

    report = orchestrator.process_pending(limit_per_type=5)

    assert report.processed == {TaskType.BLOG_IDEA: 2, TaskType.BLOG_OUTLINE: 1}
    assert report.succeeded == {TaskType.BLOG_IDEA: 1, TaskType.BLOG_OUTLINE: 1}
    assert len(report.errors) == 1 and f"Task {broken}" in report.errors[0]
    assert store.task(good).status == TaskStatus.COMPLETED
    assert store.task(broken).status == TaskStatus.ERROR
    assert store.task(outline).status == TaskStatus.COMPLETED
    assert len(store.tasks(TaskType.BLOG_DRAFT)) == 1


def test_process_pending_respects_limit_and_priority(store, orchestrator) -> None:
    low = store.add_task(TaskType.BLOG_IDEA, IDEA_DATA, priority=0)
    high = store.add_task(TaskType.BLOG_IDEA, IDEA_DATA, priority=10)

    report = orchestrator.process_pending(limit_per_type=1)

    assert report.processed[TaskType.BLOG_IDEA] == 1
    assert store.task(high).status == TaskStatus.COMPLETED
    assert store.task(low).status == TaskStatus.PENDING


def test_process_pending_with_nothing_to_do(orchestrator) -> None:
    report = orchestrator.process_pending()
    assert report.processed == {TaskType.BLOG_IDEA: 0, TaskType.BLOG_OUTLINE: 0}
    assert report.errors == []


def test_sweeper_returns_abandoned_claims(store, session_factory) -> None:
    stale = store.add_task(
        TaskType.BLOG_IDEA, IDEA_DATA, status=TaskStatus.IN_PROGRESS, updated_at=utcnow() - timedelta(minutes=45)
    )
    assert StaleTaskSweeper(session_factory, threshold_seconds=1800).sweep() == 1
    assert store.task(stale).status == TaskStatus.PENDING
    assert StaleTaskSweeper(session_factory).sweep(threshold_seconds=1800) == 0


def test_pipeline_status(store, session_factory) -> None:
    store.add_task(TaskType.BLOG_IDEA, IDEA_DATA)
    status = pipeline_status(session_factory)
    assert status["health"]["pendingTasks"] == 1
    assert status["recentActivity"][0]["type"] == TaskType.BLOG_IDEA
