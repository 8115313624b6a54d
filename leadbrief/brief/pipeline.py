"""End-to-end pipeline: sources -> normalise -> timeline -> evidence -> narrative -> summary.

This is the main orchestrator that wires all modules together. It never
raises for data problems: every failure mode degrades to a safe summary
with the reason recorded in ``SummaryResult.meta``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from leadbrief.brief.evidence import collect_evidence
from leadbrief.brief.generator import SummaryGenerator, render_summary
from leadbrief.brief.narrative import build_narrative_input, build_opportunity_context
from leadbrief.brief.product_interest import infer_product_interest
from leadbrief.brief.qa import finalize_summary_html
from leadbrief.brief.renderer import build_placeholder_summary_html, build_related_records_html
from leadbrief.clients.hubspot import MARKETING_CONTACT_ID_FIELDS, HubSpotClient
from leadbrief.config import settings
from leadbrief.ingest.collector import SourceFetch, collect_sources
from leadbrief.models import (
    ProductInterestRules,
    SourceBundle,
    SummaryMeta,
    SummaryResult,
    TimelinePolicy,
)
from leadbrief.normalize.events import normalize_bundle
from leadbrief.policy import load_rules, load_timeline_policy
from leadbrief.retrieve.timeline import assemble_timeline

logger = logging.getLogger(__name__)

MIN_SINCE_DAYS = 1
MAX_SINCE_DAYS = 365


def resolve_since_days(value: Optional[int]) -> int:
    """Request-level lookback: configured default, clamped to 1..365 days."""
    days = int(value or settings.since_days)
    return max(MIN_SINCE_DAYS, min(MAX_SINCE_DAYS, days))


async def build_summary(
    bundle: SourceBundle,
    rules: Optional[ProductInterestRules] = None,
    policy: Optional[TimelinePolicy] = None,
    generator: Optional[SummaryGenerator] = None,
    record_base_url: Optional[str] = None,
    since_days: Optional[int] = None,
    now: Optional[datetime] = None,
    failed_sources: Optional[list[str]] = None,
    max_chars: Optional[int] = None,
) -> SummaryResult:
    """Build the sales-facing summary for one lead.

    ``since_days`` overrides the policy's recency window; ``now`` pins the
    clock for windowing and intent classification.
    """
    rules = rules or load_rules()
    policy = policy or load_timeline_policy()
    now = now or datetime.now(timezone.utc)
    max_chars = max_chars or settings.summary_max_chars
    base_url = record_base_url if record_base_url is not None else settings.record_base_url

    meta = SummaryMeta(
        generated_at=now,
        failed_sources=list(failed_sources or []),
        product_rules_version=rules.version,
    )
    links_html = build_related_records_html(
        base_url, bundle.mql, bundle.opportunities, bundle.opportunity_contact_roles
    )

    try:
        events = normalize_bundle(bundle, policy)
        timeline = assemble_timeline(events, policy, since_days=since_days, now=now)
        evidence = collect_evidence(bundle)
        interest = infer_product_interest(evidence, rules)
        context = build_opportunity_context(bundle.opportunities, bundle.opportunity_line_items)
        narrative = build_narrative_input(bundle, timeline.events, interest, context, now=now)
    except Exception as exc:
        logger.exception("Narrative build failed: returning placeholder summary")
        meta.error = str(exc) or exc.__class__.__name__
        html = finalize_summary_html(build_placeholder_summary_html(), links_html, max_chars)
        return SummaryResult(summary_html=html, source="placeholder", meta=meta)

    meta.timeline = timeline.metadata
    html, source, outcome = await render_summary(narrative, generator, links_html, max_chars)
    meta.llm = outcome
    logger.info("Summary built: source=%s chars=%d", source, len(html))
    return SummaryResult(summary_html=html, source=source, meta=meta, narrative=narrative)


async def enrich_marketing_properties(
    bundle: SourceBundle,
    client: Optional[HubSpotClient] = None,
) -> SourceBundle:
    """Fill ``marketing_properties`` from the marketing platform when absent."""
    if bundle.marketing_properties is not None:
        return bundle
    contact = bundle.contact or {}
    email = contact.get("Email")
    stored_id = next(
        (str(contact[f]).strip() for f in MARKETING_CONTACT_ID_FIELDS if contact.get(f)), None
    )
    if not (email or stored_id) or (client is None and not settings.hubspot_token):
        return bundle
    client = client or HubSpotClient()
    props = await client.properties_for_email(email, contact_id=stored_id)
    if not props:
        return bundle
    return bundle.model_copy(update={"marketing_properties": props})


def build_summary_sync(bundle: SourceBundle, **kwargs: Any) -> SummaryResult:
    """Synchronous wrapper for scripts and the CLI."""
    return asyncio.run(build_summary(bundle, **kwargs))


async def summarize_from_providers(
    fetchers: dict[str, SourceFetch],
    base: Optional[dict[str, Any]] = None,
    timeout: Optional[float] = None,
    **kwargs: Any,
) -> SummaryResult:
    """Collect every source concurrently, then build the summary."""
    collected = await collect_sources(fetchers, base=base, timeout=timeout)
    return await build_summary(
        collected.bundle, failed_sources=collected.failed_sources, **kwargs
    )
