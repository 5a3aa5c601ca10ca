"""Pydantic request/response schemas and typed pipeline payloads.

API contracts (camelCase on the wire, snake_case in Python):
- RagQueryRequest / RagQueryResponse / ScoredChunk: the retrieval endpoint.
- GenerateTextRequest / GenerateTextResponse: the generation endpoint.
- CreateTaskRequest / TaskView / AgentOutcome / PipelineRunReport: pipeline routes.
- ErrorEnvelope: structured JSON error body.

Stage payloads (PipelineTask.data), validated per task_type:
- BlogIdeaData, BlogOutlineData, BlogDraftData

Model outputs parsed by agents:
- OutlineOutput, ArticleOutput, IdeaProposal
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Type

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base for wire models: accepts and emits camelCase, allows snake_case input."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Retrieval ---------------------------------------------------------------

class ScoredChunk(CamelModel):
    """A chunk returned by similarity search, annotated with its document.

    Attributes:
        similarity: cosine similarity (1 - cosine distance) to the query.
        confidence_score: ingestion-time quality rating, independent of the query.
    """
    id: int
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    document_id: int
    document_name: str
    confidence_score: float
    similarity: float


class RagQueryRequest(CamelModel):
    """Request body for the retrieval endpoint."""
    query: str = Field(..., min_length=1, description="Free-text query to embed and search")
    top_k: Optional[int] = Field(default=None, ge=1, le=100)
    min_confidence: Optional[float] = Field(default=None, ge=0, le=100)


class RagQueryResponse(CamelModel):
    chunks: List[ScoredChunk]


# --- Generation --------------------------------------------------------------

class GenerateTextRequest(CamelModel):
    """Request body for the generation endpoint.

    Out-of-range temperature/maxTokens are clamped by the generator, not rejected.
    """
    prompt: str = Field(..., min_length=1)
    model: Optional[str] = None
    max_tokens: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("maxTokens", "max_tokens")
    )
    temperature: Optional[float] = None


class Usage(CamelModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class GenerateTextResponse(CamelModel):
    success: bool = True
    generated_text: str
    model: str
    usage: Usage


class ErrorEnvelope(BaseModel):
    """Structured error body returned by every API boundary."""
    success: bool = False
    error: str
    details: Optional[Any] = None


# --- Stage payloads ------------------------------------------------------------

class BlogIdeaData(BaseModel):
    model_config = ConfigDict(extra="allow")

    suggested_title: str = ""
    source_focus: str = ""
    key_points_suggestion: List[str] = Field(default_factory=list)
    original_application: Optional[str] = None


class OutlineSection(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: str
    key_points: List[str] = Field(default_factory=list)


class BlogOutlineData(BaseModel):
    model_config = ConfigDict(extra="allow")

    final_title: str
    introduction_summary: str = ""
    sections: List[OutlineSection] = Field(..., min_length=1)
    seo_keywords: List[str] = Field(default_factory=list)


# The architect's model output is the outline payload itself
OutlineOutput = BlogOutlineData


class ArticleOutput(BaseModel):
    """Article object the scribe expects from the model.

    Accepts the blog platform's field names as aliases (shopify_title, ...).
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str = Field(..., min_length=1, validation_alias=AliasChoices("title", "shopify_title"))
    body_html: str = Field(..., min_length=1, validation_alias=AliasChoices("body_html", "html_content"))
    meta_description: str = ""
    tags: List[str] = Field(default_factory=list, validation_alias=AliasChoices("tags", "shopify_tags"))
    suggested_blog_id: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("suggested_blog_id", "suggested_shopify_blog_id")
    )


class BlogDraftData(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: str
    body_html: str
    meta_description: str = ""
    tags: List[str] = Field(default_factory=list)
    suggested_blog_id: Optional[int] = None
    source_outline: Dict[str, Any] = Field(default_factory=dict)
    source_idea: Optional[Dict[str, Any]] = None
    published_article_id: Optional[int] = None


class IdeaProposal(BaseModel):
    model_config = ConfigDict(extra="ignore")

    application: str
    potential_blog_angles: List[str] = Field(default_factory=list)
    target_audience_suggestion: Optional[str] = None


PAYLOAD_SCHEMAS: Dict[str, Type[BaseModel]] = {
    "blog_idea": BlogIdeaData,
    "blog_outline": BlogOutlineData,
    "blog_draft": BlogDraftData,
}


def payload_schema(task_type: str) -> Optional[Type[BaseModel]]:
    """Payload model for a task type, or None for untyped (future) stages."""
    return PAYLOAD_SCHEMAS.get(task_type)


# --- Pipeline ------------------------------------------------------------------

class AgentConfig(BaseModel):
    """Immutable snapshot of an AgentConfiguration row, loaded once per run."""
    model_config = ConfigDict(frozen=True)

    agent_type: str
    base_prompt: str
    llm_model_name: str
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    @classmethod
    def from_row(cls, row: Any) -> "AgentConfig":
        params = dict(row.default_parameters or {})
        max_tokens = params.get("max_tokens", params.get("maxTokens"))
        return cls(
            agent_type=row.agent_type,
            base_prompt=row.base_prompt,
            llm_model_name=row.llm_model_name,
            temperature=params.get("temperature"),
            max_tokens=max_tokens,
        )


class CreateTaskRequest(CamelModel):
    task_type: str = Field(..., min_length=1)
    title: Optional[str] = None
    summary: Optional[str] = None
    target_audience: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    related_pipeline_id: Optional[int] = None


class TaskView(CamelModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    task_type: str
    status: str
    priority: int = 0
    related_pipeline_id: Optional[int] = None
    title: Optional[str] = None
    summary: Optional[str] = None
    target_audience: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    data: Dict[str, Any] = Field(default_factory=dict)
    source_chunk_ids: List[int] = Field(default_factory=list)
    source_document_ids: List[int] = Field(default_factory=list)
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class AgentOutcome(CamelModel):
    """Result of one agent run. Failures are reported here, never raised."""
    success: bool
    message: str
    task_id: Optional[int] = None
    downstream_task_id: Optional[int] = None


class PipelineRunReport(CamelModel):
    """Summary of one batch pass over pending tasks."""
    stale_tasks_reset: int = 0
    processed: Dict[str, int] = Field(default_factory=dict)
    succeeded: Dict[str, int] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)


class IdeaRequest(CamelModel):
    focus_value: str = Field(..., min_length=1)
    target_audience: str = Field(..., min_length=1)


class PublishRequest(CamelModel):
    blog_id: Optional[int] = None
    author: Optional[str] = None
    published: bool = True
