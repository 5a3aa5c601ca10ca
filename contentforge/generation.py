"""Generation capability port using OpenAI chat completions.

Provides:
- get_client: Cached OpenAI client
- clamp_temperature / clamp_max_tokens: caller-side bounds applied before any call
- Generator.generate: prompt -> GenerationResult(text, usage, model, finish_reason)
- parse_json_output: turn model text into a validated pydantic object

Empty or whitespace-only output raises EmptyGeneration with the finish reason and
any refusal annotation attached; callers must not parse it.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Type, TypeVar

from openai import OpenAI, OpenAIError
from pydantic import BaseModel, TypeAdapter, ValidationError

from contentforge.config import settings
from contentforge.errors import EmptyGeneration, ParseFailure, ProviderError
from contentforge.obs import span

logger = logging.getLogger(__name__)

_client: OpenAI | None = None

T = TypeVar("T")

_FENCE = re.compile(r"^\s*```(?:json|JSON)?\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


def get_client() -> OpenAI:
    """Return a cached OpenAI Chat Completions client using the configured API key.

    Returns:
        OpenAI: Client instance reused across calls.
    """
    global _client
    if _client is None:
        _client = OpenAI(api_key=settings.OPENAI_API_KEY)
    return _client


def clamp_temperature(value: Optional[float]) -> float:
    """Clamp temperature to [0, 1]; None means the configured default."""
    if value is None:
        value = settings.GENERATION_DEFAULT_TEMPERATURE
    return min(max(float(value), 0.0), 1.0)


def clamp_max_tokens(value: Optional[int]) -> int:
    """Clamp the token budget to [1, GENERATION_MAX_TOKENS_CEILING]."""
    if value is None:
        value = settings.GENERATION_DEFAULT_MAX_TOKENS
    return min(max(int(value), 1), settings.GENERATION_MAX_TOKENS_CEILING)


@dataclass
class GenerationResult:
    """Generated text and token accounting for one completion."""
    text: str
    model: str
    usage: Dict[str, int] = field(default_factory=dict)
    finish_reason: Optional[str] = None


class Generator:
    """Text-completion capability behind a fixed interface.

    Args:
        client: OpenAI-compatible client; defaults to the shared client.
        default_model: Model used when a call does not name one.
    """

    def __init__(self, client: Optional[OpenAI] = None, default_model: Optional[str] = None):
        self._client = client
        self.default_model = default_model or settings.OPENAI_MODEL

    @property
    def client(self) -> OpenAI:
        return self._client or get_client()

    def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> GenerationResult:
        """Generate a completion for a single user prompt.

        Args:
            prompt: Fully rendered prompt text.
            model: Model id; defaults to the generator's default model.
            temperature: Sampling temperature, clamped to [0, 1].
            max_tokens: Output token budget, clamped to the provider ceiling.

        Returns:
            GenerationResult: Non-empty generated text with usage counts.

        Raises:
            ProviderError: the provider call failed or returned no choices.
            EmptyGeneration: the provider returned empty/whitespace-only text.
        """
        model = model or self.default_model
        temperature = clamp_temperature(temperature)
        max_tokens = clamp_max_tokens(max_tokens)
        logger.info(
            "Generating with model=%s temperature=%.2f max_tokens=%d prompt_chars=%d",
            model, temperature, max_tokens, len(prompt),
        )

        with span("generation.generate", {"model": model, "max_tokens": max_tokens}):
            try:
                resp = self.client.chat.completions.create(
                    model=model,
                    messages=[{"role": "user", "content": prompt}],
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
            except OpenAIError as e:
                logger.warning("Generation request failed for model %s: %s", model, e)
                raise ProviderError(f"Generation provider error: {e}") from e

        if not getattr(resp, "choices", None):
            raise ProviderError("Malformed generation response: no choices returned")
        choice = resp.choices[0]
        text = choice.message.content or ""
        finish_reason = getattr(choice, "finish_reason", None)
        usage = _usage(resp)

        if not text.strip():
            details: Dict[str, Any] = {"finishReason": finish_reason, "model": model}
            refusal = getattr(choice.message, "refusal", None)
            if refusal:
                details["safety"] = refusal
            logger.error("Model %s returned empty output (finish_reason=%s)", model, finish_reason)
            raise EmptyGeneration("Model returned empty or whitespace-only response", details=details)

        return GenerationResult(text=text, model=getattr(resp, "model", None) or model, usage=usage, finish_reason=finish_reason)


def _usage(resp: Any) -> Dict[str, int]:
    u = getattr(resp, "usage", None)
    return {
        "prompt_tokens": int(getattr(u, "prompt_tokens", 0) or 0),
        "completion_tokens": int(getattr(u, "completion_tokens", 0) or 0),
        "total_tokens": int(getattr(u, "total_tokens", 0) or 0),
    }


def strip_code_fence(text: str) -> str:
    """Remove a surrounding ```json fence if the model added one."""
    m = _FENCE.match(text)
    return m.group(1) if m else text.strip()


def parse_json_output(text: str, schema: Type[T] | Any) -> T:
    """Parse model output as JSON and validate it against `schema`.

    Args:
        text: Raw generated text (optionally fenced).
        schema: A pydantic model class or any type TypeAdapter accepts
            (e.g. List[IdeaProposal]).

    Raises:
        ParseFailure: output is not JSON or does not match the schema.
    """
    raw = strip_code_fence(text)
    try:
        data = json.loads(raw)
    except ValueError as e:
        logger.error("Failed to parse model JSON output: %.500s", text)
        raise ParseFailure("Model output was not valid JSON.", details=str(e)) from e
    try:
        if isinstance(schema, type) and issubclass(schema, BaseModel):
            return schema.model_validate(data)
        return TypeAdapter(schema).validate_python(data)
    except ValidationError as e:
        logger.error("Model JSON output did not match expected structure: %s", e)
        raise ParseFailure("Model output did not match the expected structure.", details=str(e)) from e
