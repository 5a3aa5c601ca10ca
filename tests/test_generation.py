"""Generation port tests: clamping, empty output, structured parsing."""

from __future__ import annotations

from types import SimpleNamespace
from typing import List
from unittest.mock import MagicMock

import httpx
import openai
import pytest

from contentforge.agents import render_prompt
from contentforge.errors import EmptyGeneration, ParseFailure, ProviderError
from contentforge.generation import (
    Generator,
    clamp_max_tokens,
    clamp_temperature,
    parse_json_output,
    strip_code_fence,
)
from contentforge.schemas import ArticleOutput, IdeaProposal


def completion(content, finish_reason="stop", refusal=None):
    return SimpleNamespace(
        model="gpt-4o-mini",
        choices=[
            SimpleNamespace(
                message=SimpleNamespace(content=content, refusal=refusal),
                finish_reason=finish_reason,
            )
        ],
        usage=SimpleNamespace(prompt_tokens=12, completion_tokens=5, total_tokens=17),
    )


def _generator(resp) -> tuple[Generator, MagicMock]:
    client = MagicMock()
    client.chat.completions.create.return_value = resp
    return Generator(client=client, default_model="gpt-4o-mini"), client


def test_clamping() -> None:
    assert clamp_temperature(None) == 0.7
    assert clamp_temperature(1.8) == 1.0
    assert clamp_temperature(-0.3) == 0.0
    assert clamp_max_tokens(None) == 8000
    assert clamp_max_tokens(0) == 1
    assert clamp_max_tokens(1_000_000) == 16384


def test_generate_passes_clamped_values() -> None:
    gen, client = _generator(completion("Hello there"))

    result = gen.generate("Say hi", temperature=3, max_tokens=99999)

    assert result.text == "Hello there"
    assert result.usage == {"prompt_tokens": 12, "completion_tokens": 5, "total_tokens": 17}
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["temperature"] == 1.0
    assert kwargs["max_tokens"] == 16384
    assert kwargs["model"] == "gpt-4o-mini"
    assert kwargs["messages"] == [{"role": "user", "content": "Say hi"}]


def test_whitespace_output_is_empty_generation() -> None:
    gen, _ = _generator(completion("  \n ", finish_reason="content_filter", refusal="I can't help with that."))

    with pytest.raises(EmptyGeneration) as exc:
        gen.generate("prompt")

    assert exc.value.details["finishReason"] == "content_filter"
    assert exc.value.details["safety"] == "I can't help with that."


def test_no_choices_is_provider_error() -> None:
    gen, _ = _generator(SimpleNamespace(choices=[], usage=None, model="m"))
    with pytest.raises(ProviderError):
        gen.generate("prompt")


def test_sdk_error_is_provider_error() -> None:
    client = MagicMock()
    client.chat.completions.create.side_effect = openai.APIConnectionError(
        request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    )
    with pytest.raises(ProviderError):
        Generator(client=client).generate("prompt")


def test_strip_code_fence() -> None:
    assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fence('  {"a": 1}  ') == '{"a": 1}'


def test_parse_article_with_platform_field_names() -> None:
    text = '```json\n{"shopify_title": "T", "html_content": "<p>x</p>", "shopify_tags": ["a"]}\n```'
    article = parse_json_output(text, ArticleOutput)
    assert article.title == "T"
    assert article.body_html == "<p>x</p>"
    assert article.tags == ["a"]


def test_parse_list_output() -> None:
    ideas = parse_json_output('[{"application": "Searing", "potential_blog_angles": ["A", "B"]}]', List[IdeaProposal])
    assert ideas[0].potential_blog_angles == ["A", "B"]


@pytest.mark.parametrize("text", ["not json at all", '{"title": "missing body"}'])
def test_parse_failures(text) -> None:
    with pytest.raises(ParseFailure):
        parse_json_output(text, ArticleOutput)


def test_render_prompt_leaves_unknown_placeholders() -> None:
    template = "Write about {{BLOG_TITLE}} for {{ TARGET_AUDIENCE }}. {{BLOG_TITLE}}! {{UNKNOWN}}"
    out = render_prompt(template, {"BLOG_TITLE": "Pans", "TARGET_AUDIENCE": "cooks"})
    assert out == "Write about Pans for cooks. Pans! {{UNKNOWN}}"
