"""Tests for the generator path: prompt building, acceptance, fallback and the OpenAI wrapper."""

from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import VALID_GENERATED_HTML, FakeGenerator

from leadbrief.brief.generator import (
    SYSTEM_PROMPT,
    USER_PROMPT_HEADER,
    build_generator_messages,
    generator_from_settings,
    render_summary,
)
from leadbrief.brief.qa import finalize_summary_html, validate_summary_html
from leadbrief.brief.renderer import render_deterministic_html
from leadbrief.clients.openai_client import GeneratorError, OpenAIGenerator, is_reasoning_model
from leadbrief.config import Settings

NARRATIVE = {
    "keyReasons": ["They directly requested follow-up (inbound intent)."],
    "intent": {"strength": "Strong"},
    "recentEngagement": [{"date": "2026-02-28", "highlight": "Inbound request", "importance": "high"}],
}
LINKS = (
    '<p><strong>Links</strong></p>\n<ul><li><a href="https://crm.example.com/0065e000001AbCdAAA" '
    'target="_blank" rel="noopener">Opportunity: Renewal</a></li></ul>'
)


def _deterministic(links: str = "") -> str:
    return finalize_summary_html(render_deterministic_html(NARRATIVE), links)


class TestMessages:
    def test_payload_is_compact_json(self):
        system, user = build_generator_messages(NARRATIVE)
        assert system == SYSTEM_PROMPT
        assert user.startswith(USER_PROMPT_HEADER)
        payload = user[len(USER_PROMPT_HEADER) + 1:]
        assert json.loads(payload) == NARRATIVE
        assert ", " not in payload

    def test_prompt_forbids_internal_details(self):
        assert "field names" in SYSTEM_PROMPT
        assert "numeric scores" in SYSTEM_PROMPT


class TestRenderSummary:
    @pytest.mark.asyncio
    async def test_no_generator(self):
        html, source, outcome = await render_summary(NARRATIVE, None, LINKS)
        assert source == "deterministic"
        assert html == _deterministic(LINKS)
        assert outcome.ok is False
        assert outcome.error == "unconfigured"

    @pytest.mark.asyncio
    async def test_valid_output_accepted(self):
        generator = FakeGenerator(content=f"```html\n{VALID_GENERATED_HTML}\n```")
        html, source, outcome = await render_summary(NARRATIVE, generator, LINKS)
        assert source == "generator"
        assert outcome.ok is True
        assert outcome.model == "fake-model"
        assert outcome.usage == {"total_tokens": 42}
        assert "Call back within a day" in html
        assert "https://crm.example.com/0065e000001AbCdAAA" in html
        assert "```" not in html
        assert validate_summary_html(html).ok
        assert len(generator.calls) == 1

    @pytest.mark.asyncio
    async def test_field_name_leak_rejected(self):
        leaky = VALID_GENERATED_HTML.replace(
            "Fit looks good.", "Contact_Fit_Threshold__c was exceeded."
        )
        html, source, outcome = await render_summary(NARRATIVE, FakeGenerator(content=leaky), LINKS)
        assert source == "deterministic"
        assert html == _deterministic(LINKS)
        assert outcome.ok is False
        assert outcome.error == "invalid_html"
        assert "field_or_id_leak" in outcome.validation

    @pytest.mark.asyncio
    async def test_href_lookalike_text_leak_rejected(self):
        leaky = VALID_GENERATED_HTML.replace(
            "<li>Fit looks good.</li>", '<li>Record href="0035e00000AbCdEAAZ" is hot</li>'
        )
        html, source, outcome = await render_summary(NARRATIVE, FakeGenerator(content=leaky), LINKS)
        assert source == "deterministic"
        assert html == _deterministic(LINKS)
        assert "field_or_id_leak" in outcome.validation

    @pytest.mark.asyncio
    async def test_protocol_relative_anchor_dropped(self):
        content = VALID_GENERATED_HTML.replace(
            "Fit looks good.", 'Fit looks <a href="//evil.example/phish">good</a>.'
        )
        html, source, _ = await render_summary(NARRATIVE, FakeGenerator(content=content))
        assert source == "generator"
        assert "evil.example" not in html
        assert "<a>good</a>" in html

    @pytest.mark.asyncio
    async def test_missing_heading_rejected(self):
        partial = VALID_GENERATED_HTML.split("<p><strong>Suggested Next Step")[0]
        _, source, outcome = await render_summary(NARRATIVE, FakeGenerator(content=partial))
        assert source == "deterministic"
        assert outcome.validation == ["missing_heading:Suggested Next Step"]

    @pytest.mark.asyncio
    async def test_empty_content(self):
        html, source, outcome = await render_summary(NARRATIVE, FakeGenerator(content="```\n```"))
        assert source == "deterministic"
        assert html == _deterministic()
        assert outcome.error == "empty_content"
        assert "empty_html" in outcome.validation

    @pytest.mark.asyncio
    async def test_generator_error_falls_back(self):
        generator = FakeGenerator(error=GeneratorError("OpenAI error: rate limited"))
        html, source, outcome = await render_summary(NARRATIVE, generator)
        assert source == "deterministic"
        assert html == _deterministic()
        assert outcome.error == "OpenAI error: rate limited"

    @pytest.mark.asyncio
    async def test_timeout_falls_back(self):
        generator = FakeGenerator(content=VALID_GENERATED_HTML, delay=1.0)
        html, source, outcome = await render_summary(NARRATIVE, generator, timeout=0.01)
        assert source == "deterministic"
        assert outcome.error == "timeout"
        assert html == _deterministic()

    @pytest.mark.asyncio
    async def test_oversized_output_truncated(self):
        generator = FakeGenerator(content=VALID_GENERATED_HTML)
        html, source, _ = await render_summary(NARRATIVE, generator, max_chars=50000)
        assert source == "generator"
        html, source, outcome = await render_summary(NARRATIVE, generator, max_chars=200)
        # Truncation can cut the last heading, which the validator then rejects.
        assert source == "deterministic"
        assert "missing_heading:Suggested Next Step" in outcome.validation


def _fake_response(content="<p>x</p>", finish_reason="stop"):
    usage = MagicMock()
    usage.model_dump.return_value = {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}
    choice = SimpleNamespace(message=SimpleNamespace(content=content), finish_reason=finish_reason)
    return SimpleNamespace(choices=[choice], usage=usage)


def _mock_client(response=None, side_effect=None):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=response, side_effect=side_effect)
    return client


class TestOpenAIGenerator:
    def test_reasoning_model_detection(self):
        assert is_reasoning_model("gpt-5-mini")
        assert is_reasoning_model("GPT-5")
        assert not is_reasoning_model("gpt-4o-mini")
        assert not is_reasoning_model(None)

    def test_chat_model_kwargs(self):
        gen = OpenAIGenerator(model="gpt-4o-mini", temperature=0.2, max_tokens=1400, client=MagicMock())
        kwargs = gen.completion_kwargs("sys", "user")
        assert kwargs["temperature"] == 0.2
        assert kwargs["max_tokens"] == 1400
        assert "max_completion_tokens" not in kwargs
        assert "reasoning_effort" not in kwargs
        assert kwargs["messages"][0] == {"role": "system", "content": "sys"}

    def test_reasoning_model_kwargs(self):
        gen = OpenAIGenerator(model="gpt-5-mini", max_tokens=4000, client=MagicMock())
        kwargs = gen.completion_kwargs("sys", "user")
        assert "temperature" not in kwargs
        assert "max_tokens" not in kwargs
        assert kwargs["max_completion_tokens"] == 1600
        assert kwargs["reasoning_effort"] == "minimal"

    def test_reasoning_budget_floor(self):
        gen = OpenAIGenerator(model="gpt-5", max_tokens=100, reasoning_effort="low", client=MagicMock())
        assert gen.token_budget() == 800
        assert gen.completion_kwargs("s", "u")["reasoning_effort"] == "low"

    @pytest.mark.asyncio
    async def test_generate(self):
        client = _mock_client(_fake_response("<p>hello</p>"))
        gen = OpenAIGenerator(model="gpt-4o-mini", client=client)
        output = await gen.generate("sys", "user")
        assert output.content == "<p>hello</p>"
        assert output.finish_reason == "stop"
        assert output.usage["total_tokens"] == 15
        client.chat.completions.create.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_generate_empty_choices(self):
        response = SimpleNamespace(choices=[], usage=None)
        gen = OpenAIGenerator(model="gpt-4o-mini", client=_mock_client(response))
        output = await gen.generate("sys", "user")
        assert output.content == ""
        assert output.usage is None

    @pytest.mark.asyncio
    async def test_openai_error_wrapped(self):
        from openai import OpenAIError

        gen = OpenAIGenerator(model="gpt-4o-mini", client=_mock_client(side_effect=OpenAIError("boom")))
        with pytest.raises(GeneratorError, match="boom"):
            await gen.generate("sys", "user")

    @pytest.mark.asyncio
    async def test_missing_client(self):
        gen = OpenAIGenerator(api_key="", model="gpt-4o-mini")
        assert gen.client is None
        with pytest.raises(GeneratorError):
            await gen.generate("sys", "user")


class TestGeneratorFromSettings:
    def test_unconfigured(self):
        assert generator_from_settings(Settings(openai_api_key="")) is None

    def test_configured(self):
        gen = generator_from_settings(Settings(openai_api_key="sk-test", openai_model="gpt-5-mini"))
        assert isinstance(gen, OpenAIGenerator)
        assert gen.model == "gpt-5-mini"
        assert gen.client is not None
