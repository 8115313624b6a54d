"""Render a narrative input as the sales-facing HTML summary.

Deterministic path only: four fixed sections, each an unordered list with a
placeholder bullet when nothing qualifies. Also builds the Links section
and the placeholder summary used when the narrative step itself fails.
"""

from __future__ import annotations

from html import escape
from typing import Any, Iterable, Optional

from leadbrief.brief.qa import (
    HEADING_ENGAGEMENT,
    HEADING_NEXT_STEP,
    HEADING_SCORE,
    HEADING_WHY,
    SECTION_CAPS,
    heading_html,
)
from leadbrief.clients.records import safe_record_url
from leadbrief.normalize.redaction import mask_internal_tokens

PLACEHOLDER_BULLET = "Not enough information available."

WHY_FALLBACK = (
    "Engagement and marketing signals suggest they may be evaluating solutions; "
    "review recent activity and prioritize outreach accordingly."
)
NEXT_STEP_INBOUND = (
    "Follow up quickly and reference their inbound request; confirm what prompted "
    "them to reach out and what timeline they are working on."
)
NEXT_STEP_OUTBOUND = (
    "Use recent engagement as the opener and propose a short discovery call; "
    "confirm what they are evaluating and who else is involved."
)
NEXT_STEP_VERIFY_FIT = (
    "Verify fit early (industry/eligibility, role, and company details) before "
    "investing a full-cycle effort."
)
NEXT_STEP_OPEN_OPPORTUNITY = (
    "Check whether there is already an active opportunity and align outreach to "
    "the current stage and owner."
)

MAX_LINKED_OPPORTUNITIES = 5


def _list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _ul(items: Iterable[Any]) -> str:
    """Escaped ``<ul>``; a single placeholder bullet when empty."""
    kept = [mask_internal_tokens(str(i).strip()) for i in items if i and str(i).strip()]
    if not kept:
        return f"<ul><li>{PLACEHOLDER_BULLET}</li></ul>"
    return "<ul>" + "".join(f"<li>{escape(i)}</li>" for i in kept) + "</ul>"


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------

def why_sales_bullets(narrative: dict) -> list[str]:
    bullets: list[str] = []

    products = _list(_dict(narrative.get("productInterest")).get("topProducts"))
    names = [str(p.get("name") or "").strip() for p in products if isinstance(p, dict)]
    names = [n for n in names if n][:3]
    if names:
        bullets.append(
            f"Likely areas of interest based on recent web/marketing signals: {', '.join(names)}."
        )

    opportunities = _list(_dict(narrative.get("opportunityContext")).get("openOpportunities"))
    opp_products: list[str] = []
    for opp in opportunities:
        for product in _list(_dict(opp).get("products")):
            if product and str(product) not in opp_products:
                opp_products.append(str(product))
    if opp_products:
        bullets.append(
            f"Open opportunity product(s) on the account include: {', '.join(opp_products[:5])}."
        )

    for reason in _list(narrative.get("keyReasons")):
        if len(bullets) >= SECTION_CAPS[HEADING_WHY]:
            break
        if reason:
            bullets.append(str(reason))

    return bullets or [WHY_FALLBACK]


def score_bullets(narrative: dict) -> list[str]:
    """Fit/intent interpretation, then fit concerns, then qualitative score signals."""
    bullets = [str(b) for b in _list(narrative.get("scoreInterpretation")) if b][:5]
    bullets.extend(str(c) for c in _list(_dict(narrative.get("fit")).get("concerns"))[:3] if c)
    for signal in _list(narrative.get("scoreSignals")):
        signal = _dict(signal)
        if not signal.get("signal") or not signal.get("qualitative"):
            continue
        text = f"{signal['signal']}: {signal['qualitative']}."
        if signal.get("implication"):
            text = f"{text} {signal['implication']}"
        bullets.append(text)
    return bullets[: SECTION_CAPS[HEADING_SCORE]]


def engagement_bullets(narrative: dict) -> list[str]:
    bullets = []
    for item in _list(narrative.get("recentEngagement")):
        item = _dict(item)
        if item.get("date") and item.get("highlight"):
            bullets.append(f"{item['date']} - {item['highlight']}")
    return bullets[: SECTION_CAPS[HEADING_ENGAGEMENT]]


def next_step_bullets(narrative: dict) -> list[str]:
    inbound = any("inbound" in str(r).lower() for r in _list(narrative.get("keyReasons")))
    steps = [NEXT_STEP_INBOUND if inbound else NEXT_STEP_OUTBOUND]
    if _list(_dict(narrative.get("fit")).get("concerns")):
        steps.append(NEXT_STEP_VERIFY_FIT)
    if _dict(narrative.get("opportunity")).get("hasOpenOpportunity") is True:
        steps.append(NEXT_STEP_OPEN_OPPORTUNITY)
    return steps[: SECTION_CAPS[HEADING_NEXT_STEP]]


def render_deterministic_html(narrative: Optional[dict]) -> str:
    """The four mandatory sections, in fixed order."""
    narrative = _dict(narrative)
    return "\n".join([
        heading_html(HEADING_WHY),
        _ul(why_sales_bullets(narrative)),
        heading_html(HEADING_SCORE),
        _ul(score_bullets(narrative)),
        heading_html(HEADING_ENGAGEMENT),
        _ul(engagement_bullets(narrative)),
        heading_html(HEADING_NEXT_STEP),
        _ul(next_step_bullets(narrative)),
    ])


# ---------------------------------------------------------------------------
# Links & placeholder
# ---------------------------------------------------------------------------

def _linked_opportunity_ids(mql: dict, roles: list[dict]) -> list[str]:
    candidates = []
    if mql.get("Opportunity__c"):
        candidates.append(str(mql["Opportunity__c"]))
    # Orgs without the open-opportunity flag fall back to every known role.
    has_open_flag = any("Open_Opportunity__c" in r for r in roles)
    for role in roles:
        if not role.get("OpportunityId"):
            continue
        if has_open_flag and role.get("Open_Opportunity__c") is not True:
            continue
        candidates.append(str(role["OpportunityId"]))
    return list(dict.fromkeys(candidates))[:MAX_LINKED_OPPORTUNITIES]


def build_related_records_html(
    base_url: Optional[str],
    mql: Optional[dict],
    opportunities: Iterable[dict] = (),
    roles: Iterable[dict] = (),
) -> str:
    """Links to the product and linked opportunities, or "" when none qualify."""
    mql = _dict(mql)
    roles = [r for r in roles or [] if isinstance(r, dict)]
    links: list[tuple[str, str]] = []

    product_url = safe_record_url(base_url, mql.get("Product__c"))
    if product_url:
        name = str(mql.get("Product_Name__c") or "").strip()
        links.append((f"Product: {name}" if name else "Product record", product_url))

    by_id = {str(o.get("Id")): o for o in opportunities or [] if isinstance(o, dict) and o.get("Id")}
    for opp_id in _linked_opportunity_ids(mql, roles):
        url = safe_record_url(base_url, opp_id)
        if not url:
            continue
        opp = by_id.get(opp_id) or {}
        name = str(opp.get("Name") or "").strip()
        stage = str(opp.get("StageName") or "").strip()
        if name and stage:
            label = f"Opportunity: {name} ({stage})"
        elif name:
            label = f"Opportunity: {name}"
        else:
            label = "Opportunity record"
        links.append((label, url))

    if not links:
        return ""
    items = "".join(
        f'<li><a href="{escape(href)}" target="_blank" rel="noopener">'
        f"{escape(mask_internal_tokens(label))}</a></li>"
        for label, href in links
    )
    return f"{heading_html('Links')}\n<ul>{items}</ul>"


def build_placeholder_summary_html(message: Optional[str] = None) -> str:
    """Summary used when the narrative could not be built at all."""
    body = message or (
        "Automated engagement narrative is temporarily unavailable. "
        "Review recent activity directly before reaching out."
    )
    return "\n".join([
        heading_html(HEADING_WHY),
        _ul([body]),
        heading_html(HEADING_SCORE),
        _ul([]),
        heading_html(HEADING_ENGAGEMENT),
        _ul([]),
        heading_html(HEADING_NEXT_STEP),
        _ul([NEXT_STEP_OUTBOUND]),
    ])
