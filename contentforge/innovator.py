"""Idea seeding: propose blog ideas for a focus area and queue them as tasks."""
import logging
from typing import List, Optional

from contentforge.agents.base import render_prompt
from contentforge.db import SessionFactory, SessionLocal, session_scope
from contentforge.generation import Generator, parse_json_output
from contentforge.models import TaskStatus, TaskType
from contentforge.obs import Trace
from contentforge.repository import create_task, load_agent_config
from contentforge.retrieval import Retriever, collect_provenance, format_context, SectionResult
from contentforge.schemas import BlogIdeaData, IdeaProposal

logger = logging.getLogger(__name__)

IDEA_TOP_K = 10


class IdeaSeeder:
    """Generates blog_idea tasks from retrieved context.

    Unlike the stage agents, failures propagate to the caller; there is no
    task to record them on.
    """

    agent_type = "innovator"

    def __init__(
        self,
        session_factory: SessionFactory = SessionLocal,
        retriever: Optional[Retriever] = None,
        generator: Optional[Generator] = None,
    ):
        self.session_factory = session_factory
        self.retriever = retriever or Retriever(session_factory=session_factory)
        self.generator = generator or Generator()

    def propose(self, focus_value: str, target_audience: str) -> List[int]:
        """Create one pending blog_idea task per proposed angle.

        Args:
            focus_value: Product, topic or theme to brainstorm around.
            target_audience: Default audience when the model does not suggest one.

        Returns:
            List[int]: Ids of the created tasks, in proposal order.
        """
        trace = Trace("innovator.propose", input={"focus_value": focus_value, "target_audience": target_audience})
        try:
            created = self._propose(trace, focus_value, target_audience)
        except Exception as e:
            trace.end(output={"success": False, "error": str(e)})
            raise
        logger.info("Innovator created %d blog idea(s) for focus '%s'", len(created), focus_value)
        trace.end(output={"created": created})
        return created

    def _propose(self, trace: Trace, focus_value: str, target_audience: str) -> List[int]:
        query = f"Applications, benefits and use cases of {focus_value} for {target_audience}"
        chunks = self.retriever.retrieve(query, top_k=IDEA_TOP_K)
        chunk_ids, document_ids = collect_provenance([SectionResult(label=focus_value, chunks=chunks)])

        with session_scope(self.session_factory) as db:
            config = load_agent_config(db, self.agent_type)

        prompt = render_prompt(
            config.base_prompt,
            {"FOCUS_VALUE": focus_value, "TARGET_AUDIENCE": target_audience, "RAG_CONTEXT": format_context(chunks)},
        )
        result = self.generator.generate(
            prompt, model=config.llm_model_name, temperature=config.temperature, max_tokens=config.max_tokens
        )
        trace.generation(self.agent_type, prompt=prompt, output=result.text, model=result.model, metadata=result.usage)
        proposals = parse_json_output(result.text, List[IdeaProposal])

        created: List[int] = []
        with session_scope(self.session_factory) as db:
            for proposal in proposals:
                audience = proposal.target_audience_suggestion or target_audience
                for angle in proposal.potential_blog_angles:
                    if not angle.strip():
                        continue
                    data = BlogIdeaData(
                        original_application=proposal.application,
                        suggested_title=angle,
                        key_points_suggestion=[],
                        source_focus=focus_value,
                    )
                    task = create_task(
                        db,
                        task_type=TaskType.BLOG_IDEA,
                        status=TaskStatus.PENDING,
                        title=angle,
                        target_audience=audience,
                        data=data.model_dump(mode="json"),
                        source_chunk_ids=chunk_ids,
                        source_document_ids=document_ids,
                    )
                    created.append(task.id)
        return created
