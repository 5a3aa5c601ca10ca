"""Generic pipeline agent: the run sequence every stage agent follows.

PipelineAgent.run(task_id):
1. Claim the task (pending -> in_progress, compare-and-set). No match is a
   successful no-op, so re-invocation and races are harmless.
2. Gather inputs: the task payload, the predecessor payload and a concurrent
   fan-out of retrieval calls (all-or-nothing).
3. Load the agent configuration (missing configuration fails the run).
4. Render the prompt template, call the generator, parse the structured output.
5. Insert the downstream task and complete this one in a single transaction.
Any failure in 2-5 is recorded on the task (status 'error' + message) and
reported through AgentOutcome; nothing is raised to the caller.

Subclasses provide the stage-specific pieces: retrieval_queries,
prompt_values and build_downstream.
"""
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Type

from pydantic import BaseModel, ValidationError

from contentforge.db import SessionFactory, SessionLocal
from contentforge.errors import ClaimLost, InvalidParameter
from contentforge.generation import Generator, parse_json_output
from contentforge.models import TaskStatus
from contentforge.obs import Trace, span
from contentforge.repository import (
    claim_task,
    complete_with_downstream,
    get_task,
    load_agent_config,
    mark_error,
)
from contentforge.retrieval import Retriever, SectionQuery, SectionResult, collect_provenance
from contentforge.schemas import AgentOutcome, payload_schema

logger = logging.getLogger(__name__)

NO_TASK_MESSAGE = "No task found or not in correct state."

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")


def render_prompt(template: str, values: Mapping[str, Any]) -> str:
    """Substitute {{NAME}} placeholders; unknown names stay as literal text."""
    def _sub(m: re.Match) -> str:
        name = m.group(1)
        if name not in values:
            return m.group(0)
        value = values[name]
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_sub, template)


@dataclass
class RunContext:
    """Plain-data snapshot of the claimed task and its predecessor."""
    task_id: int
    title: str
    summary: str
    target_audience: str
    keywords: List[str]
    priority: int
    payload: Any
    predecessor_data: Optional[Dict[str, Any]] = None


class PipelineAgent:
    """Base class for stage agents.

    Attributes:
        agent_type: AgentConfiguration key (e.g. 'scribe').
        task_type: Stage this agent consumes.
        next_task_type: Stage of the task it produces.
        next_status: Initial status of the produced task.
        output_schema: Model the generated JSON must match.
    """
    agent_type: str = ""
    task_type: str = ""
    next_task_type: str = ""
    next_status: str = TaskStatus.PENDING
    output_schema: Type[BaseModel] = BaseModel

    def __init__(
        self,
        session_factory: SessionFactory = SessionLocal,
        retriever: Optional[Retriever] = None,
        generator: Optional[Generator] = None,
    ):
        self.session_factory = session_factory
        self.retriever = retriever or Retriever(session_factory=session_factory)
        self.generator = generator or Generator()

    # Stage-specific hooks
    def retrieval_queries(self, ctx: RunContext) -> List[SectionQuery]:
        return []

    def prompt_values(self, ctx: RunContext, sections: List[SectionResult]) -> Dict[str, Any]:
        raise NotImplementedError

    def build_downstream(self, ctx: RunContext, output: Any) -> Dict[str, Any]:
        """Fields of the downstream task (title, summary, keywords, data, ...)."""
        raise NotImplementedError

    def success_message(self, task_id: int, downstream_id: int) -> str:
        return f"{self.next_task_type} task {downstream_id} created from task {task_id}."

    def run(self, task_id: int) -> AgentOutcome:
        """Run this agent on one task. Never raises for run failures."""
        name = self.agent_type.capitalize()
        logger.info("%s agent started for %s task ID %s", name, self.task_type, task_id)
        db = self.session_factory()
        try:
            if not claim_task(db, task_id, self.task_type):
                logger.info("No pending %s found for task ID %s", self.task_type, task_id)
                return AgentOutcome(success=True, message=NO_TASK_MESSAGE, task_id=task_id)

            trace = Trace(f"agent.{self.agent_type}", input={"task_id": task_id})
            try:
                with span(f"agent.{self.agent_type}", {"task_id": task_id}):
                    downstream_id = self._execute(db, task_id, trace)
            except ClaimLost as e:
                db.rollback()
                logger.warning("%s agent lost the claim on task ID %s: %s", name, task_id, e.message)
                trace.end(output={"success": False, "error": e.message})
                return AgentOutcome(success=False, message=e.message, task_id=task_id)
            except Exception as e:
                db.rollback()
                message = str(e) or e.__class__.__name__
                logger.exception("%s agent error for task ID %s", name, task_id)
                if not mark_error(db, task_id, message):
                    logger.warning("Task %s left in_progress before its error could be recorded", task_id)
                trace.end(output={"success": False, "error": message})
                return AgentOutcome(success=False, message=message, task_id=task_id)

            logger.info("%s agent finished for task ID %s; created task %s", name, task_id, downstream_id)
            trace.end(output={"success": True, "downstream_task_id": downstream_id})
            return AgentOutcome(
                success=True,
                message=self.success_message(task_id, downstream_id),
                task_id=task_id,
                downstream_task_id=downstream_id,
            )
        finally:
            db.close()

    def _load_context(self, db, task_id: int) -> RunContext:
        task = get_task(db, task_id)
        if task is None:
            raise ClaimLost(f"Task {task_id} disappeared after being claimed")
        schema = payload_schema(self.task_type)
        try:
            payload = schema.model_validate(task.data or {}) if schema else dict(task.data or {})
        except ValidationError as e:
            raise InvalidParameter(f"Task {task_id} has an invalid '{self.task_type}' payload: {e}") from e

        predecessor_data = None
        if task.related_pipeline_id is not None:
            predecessor = get_task(db, task.related_pipeline_id)
            if predecessor is not None:
                predecessor_data = dict(predecessor.data or {})

        ctx = RunContext(
            task_id=task.id,
            title=task.title or "",
            summary=task.summary or "",
            target_audience=task.target_audience or "",
            keywords=list(task.keywords or []),
            priority=task.priority or 0,
            payload=payload,
            predecessor_data=predecessor_data,
        )
        # End the read transaction before slow network calls
        db.commit()
        return ctx

    def _execute(self, db, task_id: int, trace: Trace) -> int:
        ctx = self._load_context(db, task_id)

        queries = self.retrieval_queries(ctx)
        sections = self.retriever.fan_out(queries)
        trace.event("retrieval", {"sections": len(sections), "chunks": sum(len(s.chunks) for s in sections)})

        config = load_agent_config(db, self.agent_type)
        db.commit()

        prompt = render_prompt(config.base_prompt, self.prompt_values(ctx, sections))
        result = self.generator.generate(
            prompt,
            model=config.llm_model_name,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )
        trace.generation(self.agent_type, prompt=prompt, output=result.text, model=result.model, metadata=result.usage)
        output = parse_json_output(result.text, self.output_schema)

        chunk_ids, document_ids = collect_provenance(sections)
        downstream = self.build_downstream(ctx, output)
        downstream.update(
            task_type=self.next_task_type,
            status=self.next_status,
            source_chunk_ids=chunk_ids,
            source_document_ids=document_ids,
        )
        new_task = complete_with_downstream(db, task_id, downstream)
        return new_task.id
