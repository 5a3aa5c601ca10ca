"""Stage agents of the content pipeline.

Each agent consumes one task type and produces the next:
- ArchitectAgent: blog_idea -> blog_outline
- ScribeAgent: blog_outline -> blog_draft (pending_review)
"""
from contentforge.agents.architect import ArchitectAgent
from contentforge.agents.base import NO_TASK_MESSAGE, PipelineAgent, render_prompt
from contentforge.agents.scribe import ScribeAgent

__all__ = ["ArchitectAgent", "ScribeAgent", "PipelineAgent", "NO_TASK_MESSAGE", "render_prompt"]
