"""Evidence extraction: URL and short text signals for product-interest scoring.

Sources:
1. Web-activity alert summaries (free text with visited URLs)
2. Campaign memberships (campaign names)
3. Marketing-platform contact properties (first/last URLs, referrers,
   converting campaigns, UTM values, conversion event names)
4. Conversion names recorded on the contact

Every snippet is redacted before an ``Evidence`` is built, and URLs lose
their query string and fragment since both routinely carry PII.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable, Optional
from urllib.parse import urlsplit, urlunsplit

from leadbrief.models import Evidence, EvidenceCategory, SourceBundle
from leadbrief.normalize.events import to_utc_datetime
from leadbrief.normalize.redaction import redact_inline_text

logger = logging.getLogger(__name__)

MAX_URL_CHARS = 240
MAX_URLS_PER_BLOCK = 30
MAX_EVIDENCE_CHARS = 280
MAX_WEB_ACTIVITY_RECORDS = 3
MAX_CAMPAIGN_RECORDS = 30

URL_PATTERN = re.compile(r"\bhttps?://[^\s<>\"')\]]+", re.IGNORECASE)

MARKETING_URL_PROPERTIES = (
    "hs_analytics_first_url",
    "hs_analytics_last_url",
    "hs_analytics_first_referrer",
    "hs_analytics_last_referrer",
)

MARKETING_TEXT_PROPERTIES = (
    "hs_analytics_first_touch_converting_campaign",
    "hs_analytics_last_touch_converting_campaign",
    "hs_analytics_source",
    "hs_analytics_source_data_1",
    "hs_analytics_source_data_2",
    "utm_campaign",
    "utm_source",
    "utm_medium",
    "first_conversion_event_name",
    "recent_conversion_event_name",
)

MARKETING_PROPERTIES = MARKETING_URL_PROPERTIES + MARKETING_TEXT_PROPERTIES


# ---------------------------------------------------------------------------
# URLs
# ---------------------------------------------------------------------------

def sanitize_url(raw: Any) -> Optional[str]:
    """Drop query/fragment/credentials, lower-case the host, cap the length.

    Returns None for anything that does not parse as an absolute URL.
    """
    if not raw:
        return None
    try:
        parts = urlsplit(str(raw).strip())
        host = parts.hostname
        port = parts.port
    except ValueError:
        return None
    if not parts.scheme or not host:
        return None
    netloc = host.lower()
    if port is not None:
        netloc = f"{netloc}:{port}"
    path = parts.path or "/"
    cleaned = urlunsplit((parts.scheme.lower(), netloc, path, "", ""))
    return cleaned[:MAX_URL_CHARS]


def extract_urls_from_text(text: Any) -> list[str]:
    """Pull sanitised, de-duplicated http(s) URLs out of a free-text block."""
    s = str(text or "")
    if not s.strip():
        return []
    urls: list[str] = []
    for match in URL_PATTERN.finditer(s):
        cleaned = sanitize_url(match.group(0))
        if cleaned and cleaned not in urls:
            urls.append(cleaned)
        if len(urls) >= MAX_URLS_PER_BLOCK:
            break
    return urls


# ---------------------------------------------------------------------------
# Evidence items
# ---------------------------------------------------------------------------

def category_for_kind(kind: str) -> EvidenceCategory:
    return EvidenceCategory.url if "url" in str(kind or "") else EvidenceCategory.text


def build_evidence_item(kind: str, raw_text: Any, occurred_at: Any = None) -> Optional[Evidence]:
    text = redact_inline_text(raw_text)
    if not text or not text.strip():
        return None
    return Evidence(
        kind=str(kind or "text"),
        category=category_for_kind(kind),
        text=text[:MAX_EVIDENCE_CHARS],
        occurred_at=to_utc_datetime(occurred_at),
    )


def _collect(items: Iterable[Optional[Evidence]]) -> list[Evidence]:
    return [i for i in items if i is not None]


def evidence_from_web_activity(sales_leads: Iterable[dict]) -> list[Evidence]:
    """URLs from the visited-page summaries on web-activity alert records."""
    evidence: list[Evidence] = []
    for lead in list(sales_leads or [])[:MAX_WEB_ACTIVITY_RECORDS]:
        if not isinstance(lead, dict):
            continue
        occurred_at = lead.get("Lead_Date__c") or lead.get("CreatedDate")
        for url in extract_urls_from_text(lead.get("Web_Activity_Summary__c")):
            evidence.extend(_collect([build_evidence_item("web_activity_url", url, occurred_at)]))
    return evidence


def evidence_from_campaign_members(campaign_members: Iterable[dict]) -> list[Evidence]:
    evidence: list[Evidence] = []
    for member in list(campaign_members or [])[:MAX_CAMPAIGN_RECORDS]:
        if not isinstance(member, dict):
            continue
        campaign = member.get("Campaign")
        name = campaign.get("Name") if isinstance(campaign, dict) else None
        if not name:
            continue
        occurred_at = member.get("FirstRespondedDate") or member.get("CreatedDate")
        evidence.extend(_collect([build_evidence_item("campaign_name", name, occurred_at)]))
    return evidence


def evidence_from_marketing_properties(props: Optional[dict]) -> list[Evidence]:
    """URL and low-cardinality text properties from the marketing platform."""
    if not isinstance(props, dict):
        return []
    evidence: list[Evidence] = []
    for name in MARKETING_URL_PROPERTIES:
        value = props.get(name)
        if not value:
            continue
        cleaned = sanitize_url(value) or str(value)
        evidence.extend(_collect([build_evidence_item("marketing_url", cleaned)]))
    for name in MARKETING_TEXT_PROPERTIES:
        value = props.get(name)
        if not value:
            continue
        evidence.extend(_collect([build_evidence_item("marketing_text_signal", value)]))
    return evidence


def evidence_from_conversions(contact: Optional[dict]) -> list[Evidence]:
    if not isinstance(contact, dict):
        return []
    pairs = (
        ("HubSpot_First_Conversion__c", "HubSpot_First_Conversion_Date__c"),
        ("HubSpot_Recent_Conversion__c", "HubSpot_Recent_Conversion_Date__c"),
    )
    return _collect(
        build_evidence_item("conversion", contact.get(name), contact.get(date_field))
        for name, date_field in pairs
        if contact.get(name)
    )


def collect_evidence(bundle: SourceBundle) -> list[Evidence]:
    """All evidence for one lead, in a stable source order."""
    evidence = [
        *evidence_from_web_activity(bundle.sales_leads),
        *evidence_from_campaign_members(bundle.campaign_members),
        *evidence_from_marketing_properties(bundle.marketing_properties),
        *evidence_from_conversions(bundle.contact),
    ]
    logger.info("Collected %d evidence snippets", len(evidence))
    return evidence
