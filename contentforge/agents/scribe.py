"""Scribe agent: writes a full article draft from a pending blog outline.

Retrieval fans out one query per outline section; the draft lands in
'pending_review' for a human to promote or publish.
"""
import json
from typing import Any, Dict, List

from contentforge.agents.base import PipelineAgent, RunContext
from contentforge.models import TaskStatus, TaskType
from contentforge.retrieval import SectionQuery, SectionResult
from contentforge.schemas import ArticleOutput, BlogDraftData, BlogOutlineData

SECTION_TOP_K = 5


class ScribeAgent(PipelineAgent):
    agent_type = "scribe"
    task_type = TaskType.BLOG_OUTLINE
    next_task_type = TaskType.BLOG_DRAFT
    next_status = TaskStatus.PENDING_REVIEW
    output_schema = ArticleOutput

    def retrieval_queries(self, ctx: RunContext) -> List[SectionQuery]:
        outline: BlogOutlineData = ctx.payload
        return [
            SectionQuery(
                label=section.title,
                query=(
                    f'Detailed information about "{section.title}" in the context of '
                    f"{outline.final_title} for {ctx.target_audience}"
                ),
                top_k=SECTION_TOP_K,
            )
            for section in outline.sections
        ]

    def prompt_values(self, ctx: RunContext, sections: List[SectionResult]) -> Dict[str, Any]:
        outline: BlogOutlineData = ctx.payload
        section_context = [
            {
                "section": s.label,
                "chunks": [
                    {"id": c.id, "document_name": c.document_name, "content": c.content}
                    for c in s.chunks
                ],
            }
            for s in sections
        ]
        return {
            "BLOG_TITLE": outline.final_title,
            "TARGET_AUDIENCE": ctx.target_audience,
            "OUTLINE_JSON": json.dumps(outline.model_dump(mode="json")),
            "SECTION_RAG_CONTEXT": json.dumps(section_context),
        }

    def build_downstream(self, ctx: RunContext, output: ArticleOutput) -> Dict[str, Any]:
        outline: BlogOutlineData = ctx.payload
        draft = BlogDraftData(
            title=output.title,
            body_html=output.body_html,
            meta_description=output.meta_description,
            tags=output.tags,
            suggested_blog_id=output.suggested_blog_id,
            source_outline=outline.model_dump(mode="json"),
            source_idea=ctx.predecessor_data,
        )
        return {
            "title": output.title or outline.final_title,
            "summary": output.meta_description or outline.introduction_summary,
            "target_audience": ctx.target_audience,
            "keywords": output.tags or outline.seo_keywords,
            "data": draft.model_dump(mode="json"),
            "priority": ctx.priority,
        }

    def success_message(self, task_id: int, downstream_id: int) -> str:
        return f"Draft created for task {task_id}."
