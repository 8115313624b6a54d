"""Narrative compaction: timeline + scoring facts -> the renderer's input object.

The narrative input is the only payload handed to the summary renderer (and
to the external generator). It carries qualitative, business-language facts
only: raw scoring values, field names and record identifiers never survive
this step.

Keys are camelCase because the object is serialised as JSON for the
generator prompt.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from leadbrief.clients.records import is_record_id
from leadbrief.models import Event, EventType, Importance, ProductInterest, SourceBundle
from leadbrief.normalize.events import OpportunityIndex, to_utc_datetime
from leadbrief.normalize.redaction import mask_internal_tokens, redact_inline_text

logger = logging.getLogger(__name__)

MAX_RECENT_ENGAGEMENT = 12
MAX_STAGE_NAMES = 5
MAX_CONTEXT_OPPORTUNITIES = 5
MAX_CONTEXT_PRODUCTS = 4
MAX_FALLBACK_PRODUCTS = 2

EVENT_LABELS: dict[EventType, str] = {
    EventType.contact_us_submitted: "Inbound request (Contact Us)",
    EventType.mql_created: "Marketing qualified lead created",
    EventType.mql_converted: "Converted to opportunity",
    EventType.mql_rejected: "Marked not a fit / not ready",
    EventType.open_opportunity_detected: "Already associated with an open opportunity",
    EventType.opportunity_stage_changed: "Opportunity moved stages",
    EventType.meeting_logged: "Meeting logged",
    EventType.task_completed: "Sales activity completed",
    EventType.email_engagement: "Email activity",
    EventType.campaign_touch: "Marketing touch",
}

REASON_INBOUND = "They directly requested follow-up (inbound intent)."
REASON_ENGAGEMENT = "Recent engagement meets the marketing engagement threshold."
REASON_FIT = "Role/person-level fit meets the fit threshold."
REASON_BEHAVIOR = "They have accumulated meaningful engagement over time (behavior score increased)."
REASON_CONVERSION = "They recently converted on a high-intent offer."

CONCERN_CONTACT_FLAGGED = "Contact is flagged as not eligible for private-sector outreach."
CONCERN_ACCOUNT_FLAGGED = "Account is flagged as not eligible for private-sector outreach."
CONCERN_CONTACT_UNCLEAR = "Contact eligibility checks are missing or unclear."
CONCERN_ACCOUNT_UNCLEAR = "Account eligibility checks are missing or unclear."
CONCERN_PLACEHOLDER_ACCOUNT = "Company details may be incomplete (new or placeholder account)."


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------

def compact_object(obj: Any) -> Any:
    """Drop None and blank-string leaves recursively; lists map element-wise."""
    if isinstance(obj, list):
        return [compact_object(v) for v in obj]
    if isinstance(obj, dict):
        out = {}
        for k, v in obj.items():
            if v is None:
                continue
            if isinstance(v, str) and not v.strip():
                continue
            out[k] = compact_object(v)
        return out
    return obj


def mask_strings(obj: Any) -> Any:
    """Apply internal-token masking to every string leaf."""
    if isinstance(obj, str):
        return mask_internal_tokens(obj)
    if isinstance(obj, list):
        return [mask_strings(v) for v in obj]
    if isinstance(obj, dict):
        return {k: mask_strings(v) for k, v in obj.items()}
    return obj


def yyyy_mm_dd(value: Any) -> Optional[str]:
    dt = to_utc_datetime(value)
    return dt.strftime("%Y-%m-%d") if dt else None


def _number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    return n if math.isfinite(n) else None


def _meets(score: Any, threshold: Any) -> bool:
    s, t = _number(score), _number(threshold)
    return s is not None and t is not None and s >= t


# ---------------------------------------------------------------------------
# Derivations
# ---------------------------------------------------------------------------

def build_sales_event_label(event: Event) -> str:
    base = EVENT_LABELS.get(event.event_type) or (event.title or "").strip() or "Engagement activity"
    detail = (event.detail or "").strip()
    if not detail:
        return base
    return mask_internal_tokens(f"{base} - {redact_inline_text(detail)}")


def assess_fit(contact: Optional[dict], account: Optional[dict]) -> dict[str, Any]:
    contact = contact or {}
    account = account or {}
    contact_flag = contact.get("Private_Sector_Non_Qual__c")
    account_flag = account.get("Private_Sector_Non_Qual__c")

    concerns: list[str] = []
    if contact_flag is True:
        concerns.append(CONCERN_CONTACT_FLAGGED)
    if account_flag is True:
        concerns.append(CONCERN_ACCOUNT_FLAGGED)
    if contact_flag is None:
        concerns.append(CONCERN_CONTACT_UNCLEAR)
    if account_flag is None:
        concerns.append(CONCERN_ACCOUNT_UNCLEAR)
    if account.get("Placeholder_Account__c") is True:
        concerns.append(CONCERN_PLACEHOLDER_ACCOUNT)

    return {
        "looksGood": contact_flag is False and account_flag is False,
        "concerns": concerns,
    }


def count_recent_significant(events: Iterable[Event], now: datetime, days: int) -> int:
    """High/medium-importance events within the last ``days`` days."""
    cutoff = now - timedelta(days=days)
    return sum(
        1 for e in events
        if e.occurred_at >= cutoff and e.importance in (Importance.high, Importance.medium)
    )


def classify_intent(engagement_met: bool, events: list[Event], now: datetime) -> str:
    if engagement_met or count_recent_significant(events, now, 14) >= 3:
        return "Strong"
    if count_recent_significant(events, now, 30) >= 2:
        return "Moderate"
    return "Light"


def has_inbound_request(events: Iterable[Event], mql: Optional[dict]) -> bool:
    if any(e.event_type == EventType.contact_us_submitted for e in events):
        return True
    return "contact" in str((mql or {}).get("Lead_Source__c") or "").lower()


def build_key_reasons(
    inbound: bool,
    engagement_met: bool,
    fit_met: bool,
    behavior_score: Any,
    recent_conversion: Any,
) -> list[str]:
    reasons: list[str] = []
    if inbound:
        reasons.append(REASON_INBOUND)
    if engagement_met:
        reasons.append(REASON_ENGAGEMENT)
    if fit_met:
        reasons.append(REASON_FIT)
    behavior = _number(behavior_score)
    if behavior is not None and behavior > 0:
        reasons.append(REASON_BEHAVIOR)
    if recent_conversion:
        reasons.append(REASON_CONVERSION)
    return list(dict.fromkeys(reasons))


def build_score_signals(contact: Optional[dict], inbound: bool) -> list[dict[str, Any]]:
    """Qualitative per-score signals. Raw scores and thresholds are left out."""
    contact = contact or {}
    signals: list[dict[str, Any]] = []

    engagement = contact.get("HubSpot_Engagement_Score__c")
    engagement_threshold = contact.get("HubSpot_Engagement_Score_Threshold__c")
    if _number(engagement) is not None and _number(engagement_threshold) is not None:
        met = _meets(engagement, engagement_threshold)
        signals.append({
            "signal": "Engagement score",
            "qualitative": "Strong" if met else "Developing",
            "contributes": met,
            "implication": (
                "Recent activity is high enough to justify timely outreach while intent is active."
                if met else
                "Engagement is building but has not reached the marketing threshold yet."
            ),
        })

    fit = contact.get("HubSpot_Private_Sector_Contact_Fit__c")
    fit_threshold = contact.get("Contact_Fit_Threshold__c")
    if _number(fit) is not None and _number(fit_threshold) is not None:
        met = _meets(fit, fit_threshold)
        signals.append({
            "signal": "Fit score",
            "qualitative": "Strong" if met else "Partial",
            "contributes": met,
            "implication": (
                "Their role and profile match the audience this offer is built for."
                if met else
                "Role or profile fit is partial; confirm what they own before a full pitch."
            ),
        })

    behavior = _number(contact.get("HubSpot_Private_Sector_Behavior_Score__c"))
    if behavior is not None and behavior > 0:
        signals.append({
            "signal": "Behavior score",
            "qualitative": "Active",
            "contributes": True,
            "implication": "Engagement has built up over time rather than coming from a single touch.",
        })

    if inbound:
        signals.append({
            "signal": "Inbound request",
            "qualitative": "Urgent",
            "contributes": True,
            "implication": "They asked for follow-up directly, so speed-to-contact is critical to preserve momentum.",
        })
    return signals


def build_score_interpretation(fit_looks_good: bool, intent: str, inbound: bool) -> list[str]:
    bullets = [
        "Fit: Looks good based on eligibility checks."
        if fit_looks_good else
        "Fit: Review needed due to eligibility concerns.",
        f"Intent: {intent}, based on recent engagement and conversions.",
    ]
    if inbound:
        bullets.append("Inbound request makes this time-sensitive, but still verify fit.")
    return bullets


def build_recent_engagement(events: Iterable[Event]) -> list[dict[str, Any]]:
    """Newest-first ``{date, highlight, importance}``; dateless items are dropped."""
    items: list[dict[str, Any]] = []
    for event in sorted(events, key=lambda e: e.occurred_at, reverse=True):
        date = yyyy_mm_dd(event.occurred_at)
        highlight = build_sales_event_label(event)
        if not date or not highlight:
            continue
        items.append({"date": date, "highlight": highlight, "importance": event.importance.value})
        if len(items) >= MAX_RECENT_ENGAGEMENT:
            break
    return items


def build_opportunity_signals(
    roles: Iterable[dict],
    opportunities: Iterable[dict],
) -> dict[str, Any]:
    roles = [r for r in roles or [] if isinstance(r, dict)]
    opp_ids = list(dict.fromkeys(str(r["OpportunityId"]) for r in roles if r.get("OpportunityId")))
    stages = list(dict.fromkeys(
        str(o["StageName"]) for o in opportunities or []
        if isinstance(o, dict) and o.get("StageName")
    ))
    return {
        "hasOpenOpportunity": any(r.get("Open_Opportunity__c") is True for r in roles),
        "openOpportunityCount": len(opp_ids),
        "stageNames": stages[:MAX_STAGE_NAMES],
    }


def build_opportunity_context(
    opportunities: Iterable[dict],
    line_items: Iterable[dict] = (),
) -> dict[str, Any]:
    """Up to five opportunities with name, stage and sold products."""
    index = OpportunityIndex.build(opportunities, line_items)
    context = []
    for opp_id, opp in list(index.by_id.items())[:MAX_CONTEXT_OPPORTUNITIES]:
        products = [str(p).strip() for p in index.products_by_id.get(opp_id, [])]
        products = [p for p in products if p][:MAX_CONTEXT_PRODUCTS]
        if not products:
            fallback = [
                opp.get("Opportunity_Product__c"),
                opp.get("Primary_Product__c"),
                opp.get("Product_Name__c"),
                opp.get("Product__c"),
            ]
            products = [
                str(p).strip() for p in fallback
                if p and str(p).strip() and not is_record_id(p)
            ][:MAX_FALLBACK_PRODUCTS]
        context.append(compact_object({
            "name": opp.get("Name"),
            "stage": opp.get("StageName"),
            "products": products or None,
        }))
    return {"openOpportunities": context}


def _product_label(mql: dict) -> Optional[str]:
    name = mql.get("Product_Name__c")
    if name:
        return str(name)
    product = mql.get("Product__c")
    if product and not is_record_id(product):
        return str(product)
    return None


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def build_narrative_input(
    bundle: SourceBundle,
    events: Iterable[Event],
    product_interest: Optional[ProductInterest] = None,
    opportunity_context: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Build the compacted, token-free narrative input for one lead."""
    now = now or datetime.now(timezone.utc)
    mql = bundle.mql or {}
    contact = bundle.contact or {}
    events = sorted(events, key=lambda e: e.occurred_at, reverse=True)

    fit = assess_fit(bundle.contact, bundle.account)
    engagement_met = _meets(
        contact.get("HubSpot_Engagement_Score__c"),
        contact.get("HubSpot_Engagement_Score_Threshold__c"),
    )
    fit_met = _meets(
        contact.get("HubSpot_Private_Sector_Contact_Fit__c"),
        contact.get("Contact_Fit_Threshold__c"),
    )
    recent_conversion = contact.get("HubSpot_Recent_Conversion__c") or None
    intent = classify_intent(engagement_met, events, now)
    inbound = has_inbound_request(events, mql)
    key_reasons = build_key_reasons(
        inbound,
        engagement_met,
        fit_met,
        contact.get("HubSpot_Private_Sector_Behavior_Score__c"),
        recent_conversion,
    )

    narrative = {
        "product": _product_label(mql),
        "productInterest": product_interest.as_narrative() if product_interest else None,
        "opportunityContext": opportunity_context or None,
        "mqlStatus": mql.get("MQL_Status__c"),
        "mqlCreatedDate": yyyy_mm_dd(mql.get("MQL_Date__c") or mql.get("CreatedDate")),
        "fit": fit,
        "intent": {
            "strength": intent,
            "drivers": key_reasons,
            "lastEngagementDate": yyyy_mm_dd(contact.get("HubSpot_Last_Engagement_Date__c")),
            "recentConversion": redact_inline_text(recent_conversion),
            "recentConversionDate": yyyy_mm_dd(contact.get("HubSpot_Recent_Conversion_Date__c")),
        },
        "opportunity": build_opportunity_signals(
            bundle.opportunity_contact_roles, bundle.opportunities
        ),
        "keyReasons": key_reasons,
        "scoreSignals": build_score_signals(contact, inbound),
        "scoreInterpretation": build_score_interpretation(fit["looksGood"], intent, inbound),
        "recentEngagement": build_recent_engagement(events),
    }
    logger.info(
        "Narrative input: intent=%s inbound=%s fit_ok=%s reasons=%d engagement=%d",
        intent, inbound, fit["looksGood"], len(key_reasons), len(narrative["recentEngagement"]),
    )
    return compact_object(mask_strings(narrative))
