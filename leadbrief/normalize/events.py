"""Event normaliser: heterogeneous source records -> canonical ``Event``.

One narrow function per source record type. Each takes the raw, weakly
typed record and returns an ``Event`` (or ``None`` when the record does
not qualify or has no derivable timestamp). All shape-specific branching
stays in this module.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Iterable, Optional

from leadbrief.models import Event, EventType, Importance, SourceBundle, TimelinePolicy
from leadbrief.normalize.redaction import (
    normalize_text_snippet,
    redact_email_address,
)
from leadbrief.store.capabilities import Capabilities

logger = logging.getLogger(__name__)

SOURCE_SYSTEM = "crm"
MAX_DETAIL_CHARS = 280
UNKNOWN_RECORD_ID = "unknown"

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_WAREHOUSE_TS = re.compile(r"^(\d{4}-\d{2}-\d{2})\s+(\d{2}:\d{2}:\d{2}(?:\.\d+)?)$")
_FALLBACK_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M%z",
)


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

def to_utc_datetime(value: Any) -> Optional[datetime]:
    """Parse a source timestamp into an aware UTC datetime.

    Accepts ISO-8601 instants, bare ``YYYY-MM-DD`` days (promoted to
    start-of-day UTC), warehouse ``YYYY-MM-DD HH:MM:SS`` strings (assumed
    UTC), RFC 2822 dates and epoch milliseconds. Returns None otherwise.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)):
        try:
            dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        dt = _parse_timestamp_string(str(value).strip())
        if dt is None:
            return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _parse_timestamp_string(s: str) -> Optional[datetime]:
    if not s:
        return None
    if _DATE_ONLY.match(s):
        try:
            return datetime.strptime(s, "%Y-%m-%d")
        except ValueError:
            return None
    m = _WAREHOUSE_TS.match(s)
    if m:
        s = f"{m.group(1)}T{m.group(2)}"
    iso = s[:-1] + "+00:00" if s.endswith(("Z", "z")) else s
    try:
        return datetime.fromisoformat(iso)
    except ValueError:
        pass
    for fmt in _FALLBACK_FORMATS:
        try:
            return datetime.strptime(s, fmt)
        except ValueError:
            continue
    try:
        return parsedate_to_datetime(s)
    except (TypeError, ValueError, IndexError):
        return None


def first_timestamp(*candidates: Any) -> Optional[datetime]:
    """Try candidate fields in priority order; first parseable one wins."""
    for c in candidates:
        dt = to_utc_datetime(c)
        if dt is not None:
            return dt
    return None


# ---------------------------------------------------------------------------
# Importance & opportunity lookups
# ---------------------------------------------------------------------------

class ImportanceMap:
    """Event type -> importance tier, from the timeline policy recipe."""

    def __init__(self, mapping: Optional[dict[str, Importance]] = None):
        self._mapping = mapping or {}

    @classmethod
    def from_policy(cls, policy: TimelinePolicy) -> "ImportanceMap":
        recipe = policy.timeline_recipe.importance
        mapping: dict[str, Importance] = {}
        for level, types in (
            (Importance.high, recipe.high),
            (Importance.medium, recipe.medium),
            (Importance.low, recipe.low),
        ):
            for event_type in types:
                mapping[event_type] = level
        return cls(mapping)

    def for_type(self, event_type: EventType) -> Importance:
        return self._mapping.get(event_type.value, Importance.low)


@dataclass
class OpportunityIndex:
    """Opportunities by id plus the product names sold on each."""
    by_id: dict[str, dict] = field(default_factory=dict)
    products_by_id: dict[str, list[str]] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        opportunities: Iterable[dict],
        line_items: Iterable[dict] = (),
    ) -> "OpportunityIndex":
        index = cls()
        for opp in opportunities or []:
            if isinstance(opp, dict) and opp.get("Id"):
                index.by_id[str(opp["Id"])] = opp
        for oli in line_items or []:
            if not isinstance(oli, dict):
                continue
            opp_id = oli.get("OpportunityId")
            name = (((oli.get("PricebookEntry") or {}).get("Product2")) or {}).get("Name")
            if not opp_id or not name:
                continue
            names = index.products_by_id.setdefault(str(opp_id), [])
            if name not in names:
                names.append(name)
        return index

    def linked(self, record_id: Any) -> Optional[str]:
        if record_id and str(record_id) in self.by_id:
            return str(record_id)
        return None

    def products_label(self, opp_id: str, limit: int = 3) -> Optional[str]:
        names = [str(n).strip() for n in self.products_by_id.get(opp_id, [])]
        names = [n for n in names if n][:limit]
        return ", ".join(names) if names else None

    def context_label(self, opp_id: str) -> Optional[str]:
        opp = self.by_id.get(opp_id)
        if not opp:
            return None
        parts = [str(opp[k]) for k in ("Name", "StageName") if opp.get(k)]
        products = self.products_label(opp_id)
        if products:
            parts.append(products)
        return " | ".join(parts) if parts else None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _join(parts: Iterable[Any], sep: str) -> Optional[str]:
    kept = [str(p) for p in parts if p]
    return sep.join(kept) if kept else None


def _detail(text: Optional[str]) -> Optional[str]:
    return normalize_text_snippet(text, MAX_DETAIL_CHARS) if text else None


def _make_event(
    occurred_at: Optional[datetime],
    object_type: str,
    record_id: Any,
    event_type: EventType,
    title: str,
    detail: Optional[str],
    importance: ImportanceMap,
) -> Optional[Event]:
    if occurred_at is None:
        logger.debug("Dropping %s from %s: no derivable timestamp", event_type.value, object_type)
        return None
    return Event(
        occurred_at=occurred_at,
        source_system=SOURCE_SYSTEM,
        source_object_type=object_type,
        source_object_id=str(record_id or UNKNOWN_RECORD_ID),
        event_type=event_type,
        title=title,
        detail=_detail(detail),
        importance=importance.for_type(event_type),
    )


def _opportunity_suffix(opps: OpportunityIndex, *record_ids: Any) -> Optional[str]:
    for rid in record_ids:
        linked = opps.linked(rid)
        if linked:
            ctx = opps.context_label(linked)
            return f"Opportunity: {ctx}" if ctx else None
    return None


# ---------------------------------------------------------------------------
# Per-source normalisers
# ---------------------------------------------------------------------------

def normalize_mql(
    mql: Optional[dict],
    mql_history: Iterable[dict],
    importance: ImportanceMap,
    caps: Capabilities,
) -> list[Event]:
    """Lifecycle milestones of the marketing-qualified lead record."""
    if not mql or not mql.get("Id"):
        return []
    obj = "MQL__c"
    events: list[Event] = []
    created_at = first_timestamp(caps.get(mql, obj, "MQL_Date__c"), mql.get("CreatedDate"))

    created = _make_event(
        created_at, obj, mql["Id"], EventType.mql_created, "MQL created",
        _join([
            caps.get(mql, obj, "Lead_Source__c"),
            caps.get(mql, obj, "Product_Name__c") or caps.get(mql, obj, "Product__c"),
        ], " | "),
        importance,
    )
    if created:
        events.append(created)

    status = caps.get(mql, obj, "MQL_Status__c")
    if status == "Converted":
        converted_at = first_timestamp(
            caps.get(mql, obj, "Conversion_Date__c"),
            mql.get("LastModifiedDate"),
        ) or created_at
        converted = _make_event(
            converted_at, obj, mql["Id"], EventType.mql_converted, "MQL converted",
            caps.get(mql, obj, "Conversion_Type__c"),
            importance,
        )
        if converted:
            events.append(converted)

    if status == "Rejected":
        rejections = [
            h for h in mql_history or []
            if isinstance(h, dict)
            and h.get("Field") == "MQL_Status__c"
            and str(h.get("NewValue") or "") == "Rejected"
            and to_utc_datetime(h.get("CreatedDate")) is not None
        ]
        rejections.sort(key=lambda h: to_utc_datetime(h["CreatedDate"]), reverse=True)
        rejected_at = first_timestamp(
            rejections[0]["CreatedDate"] if rejections else None,
            mql.get("LastModifiedDate"),
        ) or created_at
        rejected = _make_event(
            rejected_at, obj, mql["Id"], EventType.mql_rejected, "MQL rejected",
            None, importance,
        )
        if rejected:
            events.append(rejected)

    return events


def normalize_open_opportunity_role(
    role: dict,
    opps: OpportunityIndex,
    importance: ImportanceMap,
    caps: Capabilities,
) -> Optional[Event]:
    obj = "OpportunityContactRole"
    if caps.get(role, obj, "Open_Opportunity__c") is not True:
        return None
    opp = opps.by_id.get(str(role.get("OpportunityId") or ""))
    detail = None
    if opp:
        products = opps.products_label(str(opp["Id"]))
        detail = _join([
            opp.get("Name"),
            opp.get("StageName"),
            f"Products: {products}" if products else None,
        ], " | ")
    return _make_event(
        first_timestamp(role.get("CreatedDate"), (opp or {}).get("CreatedDate")),
        obj, role.get("Id"), EventType.open_opportunity_detected,
        "Open opportunity detected", detail, importance,
    )


def normalize_stage_change(row: dict, importance: ImportanceMap) -> Optional[Event]:
    if row.get("Field") != "StageName":
        return None
    return _make_event(
        first_timestamp(row.get("CreatedDate")),
        "Opportunity", row.get("OpportunityId"), EventType.opportunity_stage_changed,
        "Opportunity stage changed",
        _join([row.get("OldValue"), "->", row.get("NewValue")], " "),
        importance,
    )


def normalize_task(
    task: dict,
    opps: OpportunityIndex,
    importance: ImportanceMap,
    caps: Capabilities,
) -> Optional[Event]:
    if str(task.get("Status") or "").lower() != "completed":
        return None
    obj = "Task"
    detail = _join([
        task.get("Subject"),
        normalize_text_snippet(caps.get(task, obj, "Description"), 140),
        _opportunity_suffix(opps, task.get("WhatId")),
    ], " - ")
    return _make_event(
        first_timestamp(task.get("ActivityDate"), task.get("CreatedDate")),
        obj, task.get("Id"), EventType.task_completed, "Task completed", detail, importance,
    )


def normalize_meeting(
    meeting: dict,
    opps: OpportunityIndex,
    importance: ImportanceMap,
    caps: Capabilities,
) -> Optional[Event]:
    obj = "Event"
    detail = _join([
        meeting.get("Subject"),
        normalize_text_snippet(caps.get(meeting, obj, "Description"), 140),
        _opportunity_suffix(opps, meeting.get("WhatId")),
    ], " - ")
    return _make_event(
        first_timestamp(
            caps.get(meeting, obj, "StartDateTime"),
            meeting.get("ActivityDate"),
            meeting.get("CreatedDate"),
        ),
        obj, meeting.get("Id"), EventType.meeting_logged, "Meeting logged", detail, importance,
    )


def normalize_email_message(
    message: dict,
    opps: OpportunityIndex,
    importance: ImportanceMap,
    caps: Capabilities,
) -> Optional[Event]:
    obj = "EmailMessage"
    snippet = normalize_text_snippet(caps.get(message, obj, "TextBody"), 160)
    incoming = caps.get(message, obj, "Incoming")
    sender = redact_email_address(caps.get(message, obj, "FromAddress"))
    detail = _join([
        message.get("Subject"),
        f"Snippet: {snippet}" if snippet else None,
        "incoming" if incoming is True else "outgoing" if incoming is False else None,
        f"From: {sender}" if sender else None,
        _opportunity_suffix(opps, message.get("RelatedToId"), message.get("ParentId")),
    ], " | ")
    return _make_event(
        first_timestamp(message.get("MessageDate"), message.get("CreatedDate")),
        obj, message.get("Id"), EventType.email_engagement, "Email", detail, importance,
    )


def normalize_campaign_member(
    member: dict,
    importance: ImportanceMap,
    caps: Capabilities,
) -> Optional[Event]:
    obj = "CampaignMember"
    campaign = member.get("Campaign") or {}
    detail = _join([
        campaign.get("Name") if isinstance(campaign, dict) else None,
        member.get("Status"),
        "responded" if caps.get(member, obj, "HasResponded") is True else None,
    ], " | ")
    return _make_event(
        first_timestamp(caps.get(member, obj, "FirstRespondedDate"), member.get("CreatedDate")),
        obj, member.get("Id"), EventType.campaign_touch, "Campaign touch", detail, importance,
    )


def normalize_contact_us(
    submission: dict,
    importance: ImportanceMap,
    caps: Capabilities,
) -> Optional[Event]:
    obj = "Contact_Us__c"
    detail = _join([
        caps.get(submission, obj, "Topic__c"),
        caps.get(submission, obj, "Source__c"),
    ], " | ")
    return _make_event(
        first_timestamp(submission.get("CreatedDate")),
        obj, submission.get("Id"), EventType.contact_us_submitted,
        "Contact Us submitted", detail, importance,
    )


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

def normalize_bundle(bundle: SourceBundle, policy: TimelinePolicy) -> list[Event]:
    """Run every per-source normaliser over a bundle, in a stable order."""
    importance = ImportanceMap.from_policy(policy)
    caps = Capabilities.from_mapping(bundle.capabilities)
    opps = OpportunityIndex.build(bundle.opportunities, bundle.opportunity_line_items)

    events: list[Event] = list(
        normalize_mql(bundle.mql, bundle.history.mql_history, importance, caps)
    )

    def _extend(records: Iterable[Any], fn, *args) -> None:
        for position, record in enumerate(records):
            if not isinstance(record, dict):
                continue
            event = fn(record, *args)
            if event is None:
                continue
            if event.source_object_id == UNKNOWN_RECORD_ID:
                # ID-less records stay distinct in dedup by their source position
                event = event.model_copy(
                    update={"source_object_id": f"{UNKNOWN_RECORD_ID}-{position}"}
                )
            events.append(event)

    _extend(bundle.opportunity_contact_roles, normalize_open_opportunity_role, opps, importance, caps)
    _extend(bundle.history.opportunity_field_history, normalize_stage_change, importance)
    _extend(bundle.tasks, normalize_task, opps, importance, caps)
    _extend(bundle.meetings, normalize_meeting, opps, importance, caps)
    _extend(bundle.email_messages, normalize_email_message, opps, importance, caps)
    _extend(bundle.campaign_members, normalize_campaign_member, importance, caps)
    _extend(bundle.contact_us_submissions, normalize_contact_us, importance, caps)

    logger.info("Normalised %d events from source bundle", len(events))
    return events
