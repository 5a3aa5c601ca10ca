"""Architect agent: turns a pending blog idea into a blog outline task."""
from typing import Any, Dict, List

from contentforge.agents.base import PipelineAgent, RunContext
from contentforge.models import TaskStatus, TaskType
from contentforge.retrieval import SectionQuery, SectionResult, format_context
from contentforge.schemas import BlogIdeaData, OutlineOutput

IDEA_TOP_K = 10


class ArchitectAgent(PipelineAgent):
    agent_type = "architect"
    task_type = TaskType.BLOG_IDEA
    next_task_type = TaskType.BLOG_OUTLINE
    next_status = TaskStatus.PENDING
    output_schema = OutlineOutput

    def _idea_title(self, ctx: RunContext) -> str:
        idea: BlogIdeaData = ctx.payload
        return idea.suggested_title or ctx.title

    def retrieval_queries(self, ctx: RunContext) -> List[SectionQuery]:
        idea: BlogIdeaData = ctx.payload
        title = self._idea_title(ctx)
        query = (
            f'Detailed information supporting a blog post titled "{title}" '
            f"about {idea.source_focus} for {ctx.target_audience}"
        )
        return [SectionQuery(label=title, query=query, top_k=IDEA_TOP_K)]

    def prompt_values(self, ctx: RunContext, sections: List[SectionResult]) -> Dict[str, Any]:
        idea: BlogIdeaData = ctx.payload
        chunks = [c for s in sections for c in s.chunks]
        return {
            "BLOG_IDEA_TITLE": self._idea_title(ctx),
            "TARGET_AUDIENCE": ctx.target_audience,
            "KEY_POINTS_FROM_IDEA": ", ".join(idea.key_points_suggestion),
            "RAG_CONTEXT": format_context(chunks),
        }

    def build_downstream(self, ctx: RunContext, output: OutlineOutput) -> Dict[str, Any]:
        return {
            "title": output.final_title or self._idea_title(ctx),
            "summary": output.introduction_summary,
            "target_audience": ctx.target_audience,
            "keywords": output.seo_keywords,
            "data": output.model_dump(mode="json"),
            "priority": ctx.priority,
        }

    def success_message(self, task_id: int, downstream_id: int) -> str:
        return "Blog outline created successfully."
