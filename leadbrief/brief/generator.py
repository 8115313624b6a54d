"""Summary generation: deterministic by default, generator output when it passes the guard.

State machine:

    no generator         -> deterministic (final)
    generator configured -> attempt -> accepted
                                     -> rejected, fall back to deterministic (final)

The generator only ever sees the compacted narrative input. Its output is
untrusted: it is fence-stripped, sanitised, capped, given the Links section
and validated exactly like the deterministic summary before acceptance.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional, Protocol

from leadbrief.brief.qa import (
    MAX_SUMMARY_CHARS,
    finalize_summary_html,
    strip_code_fences,
    validate_summary_html,
)
from leadbrief.brief.renderer import render_deterministic_html
from leadbrief.clients.openai_client import OpenAIGenerator
from leadbrief.config import Settings, settings
from leadbrief.models import GeneratorOutcome, GeneratorOutput

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Prompt templates
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = "\n".join([
    "You are writing for Sales reps (non-technical).",
    "Use only the provided JSON; do not invent details.",
    "Return an HTML fragment only (no doctype/html/head/body).",
    "Use simple HTML only: <p>, <strong>, <ul>, <li>, <br/>, <em>.",
    "Do not include hyperlinks; record links are appended automatically.",
    "No CSS or styling (<style>, style=, class=, link/meta/script).",
    "Do not include CRM or marketing-platform field names, object names, IDs, or JSON keys in the output.",
    "Do not include raw numeric scores; keep score language qualitative (Strong/Moderate/Light).",
])

USER_PROMPT_HEADER = "\n".join([
    "Write an HTML summary with these sections (use <p><strong>Section</strong></p> headings):",
    "1) Why Sales Should Care",
    "   - 3-6 bullets.",
    "   - Each bullet explains a SALES signal and why it matters (value-based).",
    "   - Avoid technical phrasing; write like a rep-to-rep handoff.",
    "   - If product-interest signals are present, include 1-2 bullets stating what they are likely evaluating and why (cite the evidence in plain language).",
    "   - If open opportunities include product names, call out the product(s) tied to those opportunities.",
    "2) Score Interpretation",
    "   - 3-6 bullets interpreting Fit and Intent qualitatively (Strong/Moderate/Light).",
    "   - If an inbound request exists, treat as time-sensitive, but still flag any fit concerns.",
    "3) Most Recent Engagement",
    "   - 5-12 bullets, newest-first (most recent first).",
    "   - Each bullet MUST start with a date (YYYY-MM-DD) then a short plain-English highlight.",
    "   - If an engagement is tied to a specific opportunity/product, mention that product in the highlight.",
    "4) Suggested Next Step",
    "   - 1-2 bullets: best outreach angle + what to verify + urgency.",
    "   - If product-interest signals exist, tailor the outreach angle to those likely interests.",
    "",
    "Important constraints:",
    "- Do not include any field names, IDs, JSON keys, or system names.",
    "- Do not include numeric scores or threshold values; describe them qualitatively only.",
    "- If something is unclear/missing, say so plainly (do not guess).",
    "",
    "Structured input JSON (do not echo keys):",
])


class SummaryGenerator(Protocol):
    model: str

    async def generate(self, system_prompt: str, user_prompt: str) -> GeneratorOutput: ...


def build_generator_messages(narrative: dict[str, Any]) -> tuple[str, str]:
    """System/user instruction pair with the narrative JSON embedded."""
    payload = json.dumps(narrative or {}, ensure_ascii=False, separators=(",", ":"), default=str)
    return SYSTEM_PROMPT, f"{USER_PROMPT_HEADER}\n{payload}"


def generator_from_settings(cfg: Settings = settings) -> Optional[OpenAIGenerator]:
    """The configured generator, or None (deterministic is the default path)."""
    if not cfg.generator_configured:
        return None
    return OpenAIGenerator(
        api_key=cfg.openai_api_key,
        model=cfg.openai_model,
        base_url=cfg.openai_base_url,
        timeout=cfg.generator_timeout_seconds,
        temperature=cfg.openai_temperature,
        max_tokens=cfg.openai_max_tokens,
        reasoning_effort=cfg.openai_reasoning_effort,
    )


async def render_summary(
    narrative: dict[str, Any],
    generator: Optional[SummaryGenerator] = None,
    links_html: str = "",
    max_chars: int = MAX_SUMMARY_CHARS,
    timeout: Optional[float] = None,
) -> tuple[str, str, GeneratorOutcome]:
    """Return ``(summary_html, source, outcome)`` where source is generator|deterministic."""
    deterministic = finalize_summary_html(render_deterministic_html(narrative), links_html, max_chars)

    if generator is None:
        return deterministic, "deterministic", GeneratorOutcome(ok=False, error="unconfigured")

    model = getattr(generator, "model", None)
    timeout = timeout if timeout is not None else settings.generator_timeout_seconds
    system_prompt, user_prompt = build_generator_messages(narrative)

    try:
        output = await asyncio.wait_for(generator.generate(system_prompt, user_prompt), timeout)
    except asyncio.TimeoutError:
        logger.warning("Generator timed out after %.1fs: using deterministic summary", timeout)
        return deterministic, "deterministic", GeneratorOutcome(ok=False, model=model, error="timeout")
    except Exception as exc:
        logger.exception("Generator call failed: using deterministic summary")
        return deterministic, "deterministic", GeneratorOutcome(
            ok=False, model=model, error=str(exc) or exc.__class__.__name__,
        )

    cleaned = strip_code_fences(output.content)
    final = finalize_summary_html(cleaned, links_html, max_chars) if cleaned else ""
    validation = validate_summary_html(final)
    if validation.ok:
        logger.info("Generator summary accepted (%d chars)", len(final))
        return final, "generator", GeneratorOutcome(
            ok=True, model=model, usage=output.usage, finish_reason=output.finish_reason,
        )

    logger.warning("Generator summary rejected: %s", ", ".join(validation.reasons))
    return deterministic, "deterministic", GeneratorOutcome(
        ok=False,
        model=model,
        error="invalid_html" if cleaned else "empty_content",
        validation=validation.reasons,
        finish_reason=output.finish_reason,
        usage=output.usage,
    )
