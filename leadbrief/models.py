"""Pydantic models for the lead engagement brief.

These models define the canonical shapes that flow through the engine:
raw source bundles in, normalised timeline events, evidence snippets and
product-interest rules in the middle, and the summary result out.

Raw CRM / marketing records stay weakly typed (plain dicts) on purpose:
every source-specific branch lives in ``leadbrief.normalize.events`` and
nothing downstream of it ever reads a raw record field.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Timeline events
# ---------------------------------------------------------------------------

class EventType(str, Enum):
    mql_created = "mqlCreated"
    mql_converted = "mqlConverted"
    mql_rejected = "mqlRejected"
    open_opportunity_detected = "openOpportunityDetected"
    opportunity_stage_changed = "opportunityStageChanged"
    task_completed = "taskCompleted"
    meeting_logged = "meetingLogged"
    email_engagement = "emailEngagement"
    campaign_touch = "campaignTouch"
    contact_us_submitted = "contactUsSubmitted"


class Importance(str, Enum):
    high = "high"
    medium = "medium"
    low = "low"


# Lifecycle milestones: exempt from the recency window, not from caps.
ALWAYS_EVENT_TYPES: frozenset[EventType] = frozenset({
    EventType.mql_created,
    EventType.mql_converted,
    EventType.mql_rejected,
    EventType.open_opportunity_detected,
    EventType.opportunity_stage_changed,
})


class Event(BaseModel):
    """One canonical timeline event, created once per qualifying source record."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    occurred_at: datetime = Field(..., alias="occurredAt")
    source_system: str = Field("crm", alias="sourceSystem")
    source_object_type: str = Field(..., alias="sourceObjectType")
    source_object_id: str = Field(..., alias="sourceObjectId")
    event_type: EventType = Field(..., alias="eventType")
    title: str
    detail: Optional[str] = None
    importance: Importance = Importance.low

    @field_validator("occurred_at")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @property
    def minute_bucket(self) -> int:
        return int(self.occurred_at.timestamp() // 60)

    @property
    def dedup_key(self) -> tuple[str, str, int]:
        return (self.event_type.value, self.source_object_id, self.minute_bucket)

    @property
    def is_always(self) -> bool:
        return self.event_type in ALWAYS_EVENT_TYPES


class TimelineMetadata(BaseModel):
    generated_at: datetime
    policy_version: Optional[str] = None
    recency_window_days: int
    max_optional_events: int
    included_counts: dict[str, int] = Field(default_factory=dict)


class Timeline(BaseModel):
    """Final bounded timeline. ``events`` is newest-first."""
    events: list[Event] = Field(default_factory=list)
    always: list[Event] = Field(default_factory=list)
    optional: list[Event] = Field(default_factory=list)
    metadata: TimelineMetadata


# ---------------------------------------------------------------------------
# Timeline policy document
# ---------------------------------------------------------------------------

class TimelineDefaults(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    recency_window_days: int = Field(365, alias="recencyWindowDays")
    max_events: int = Field(25, alias="maxEvents")
    caps_by_event_type: dict[str, int] = Field(default_factory=dict, alias="capsByEventType")


class ImportanceRecipe(BaseModel):
    high: list[str] = Field(default_factory=list)
    medium: list[str] = Field(default_factory=list)
    low: list[str] = Field(default_factory=list)


class TimelineRecipe(BaseModel):
    importance: ImportanceRecipe = Field(default_factory=ImportanceRecipe)


class TimelinePolicy(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    version: Optional[str] = None
    defaults: TimelineDefaults = Field(default_factory=TimelineDefaults)
    timeline_recipe: TimelineRecipe = Field(default_factory=TimelineRecipe, alias="timelineRecipe")

    def cap_for(self, event_type: EventType) -> Optional[int]:
        """Per-type cap, or None when the policy leaves the type uncapped."""
        cap = self.defaults.caps_by_event_type.get(event_type.value)
        if isinstance(cap, bool) or not isinstance(cap, int):
            return None
        return cap


# ---------------------------------------------------------------------------
# Evidence & product-interest rules
# ---------------------------------------------------------------------------

class EvidenceCategory(str, Enum):
    url = "url"
    text = "text"


class Evidence(BaseModel):
    """A redacted, categorised snippet used for product-interest scoring."""
    kind: str
    category: EvidenceCategory
    text: str = Field(..., max_length=280)
    occurred_at: Optional[datetime] = None


class Rule(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field("", alias="productId")
    product_name: str = Field("", alias="productName")
    weight: float = 0.0
    evidence_categories: list[EvidenceCategory] = Field(
        default_factory=lambda: [EvidenceCategory.text, EvidenceCategory.url],
        alias="evidenceCategories",
    )
    pattern: str = Field("", validation_alias=AliasChoices("pattern", "regex"))


class ProductInterestRules(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    version: Optional[str] = None
    rules: list[Rule] = Field(default_factory=list)
    max_products: int = Field(4, alias="maxProducts")
    max_evidence_per_product: int = Field(3, alias="maxEvidencePerProduct")


class ProductMatch(BaseModel):
    """Per-product aggregate: summed rule weights plus cited snippets."""
    product_id: str
    product_name: str
    score: float = 0.0
    evidence: list[str] = Field(default_factory=list)


class TopProduct(BaseModel):
    name: str
    confidence: str
    evidence: list[str] = Field(default_factory=list)


class ProductInterest(BaseModel):
    top_products: list[TopProduct] = Field(default_factory=list)
    has_evidence: bool = False

    def as_narrative(self) -> dict[str, Any]:
        return {
            "topProducts": [p.model_dump() for p in self.top_products],
            "hasEvidence": self.has_evidence,
        }


# ---------------------------------------------------------------------------
# Source bundle (raw, weakly typed records per source)
# ---------------------------------------------------------------------------

def _keep_records(value: Any) -> Any:
    """None becomes an empty list; malformed (non-object) items are skipped."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [item for item in value if isinstance(item, dict)]
    return value


class SourceHistory(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    mql_history: list[dict[str, Any]] = Field(default_factory=list, alias="mqlHistory")
    opportunity_field_history: list[dict[str, Any]] = Field(
        default_factory=list, alias="opportunityFieldHistory"
    )
    contact_history: list[dict[str, Any]] = Field(default_factory=list, alias="contactHistory")

    @field_validator("*", mode="before")
    @classmethod
    def _records_only(cls, value: Any) -> Any:
        return _keep_records(value)


class SourceBundle(BaseModel):
    """Everything fetched for one lead. Any source may be empty or null."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    mql: Optional[dict[str, Any]] = None
    contact: Optional[dict[str, Any]] = None
    account: Optional[dict[str, Any]] = None
    opportunity_contact_roles: list[dict[str, Any]] = Field(
        default_factory=list, alias="opportunityContactRoles"
    )
    opportunities: list[dict[str, Any]] = Field(default_factory=list)
    opportunity_line_items: list[dict[str, Any]] = Field(
        default_factory=list, alias="opportunityLineItems"
    )
    tasks: list[dict[str, Any]] = Field(default_factory=list)
    meetings: list[dict[str, Any]] = Field(default_factory=list)
    email_messages: list[dict[str, Any]] = Field(default_factory=list, alias="emailMessages")
    campaign_members: list[dict[str, Any]] = Field(default_factory=list, alias="campaignMembers")
    contact_us_submissions: list[dict[str, Any]] = Field(
        default_factory=list, alias="contactUsSubmissions"
    )
    sales_leads: list[dict[str, Any]] = Field(default_factory=list, alias="salesLeads")
    history: SourceHistory = Field(default_factory=SourceHistory)
    marketing_properties: Optional[dict[str, Any]] = Field(None, alias="marketingProperties")
    # object type -> fields present in this environment; absent type = unknown
    capabilities: dict[str, list[str]] = Field(default_factory=dict)

    @field_validator(
        "opportunity_contact_roles",
        "opportunities",
        "opportunity_line_items",
        "tasks",
        "meetings",
        "email_messages",
        "campaign_members",
        "contact_us_submissions",
        "sales_leads",
        mode="before",
    )
    @classmethod
    def _records_only(cls, value: Any) -> Any:
        return _keep_records(value)

    @field_validator("capabilities", mode="before")
    @classmethod
    def _none_to_capabilities(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("history", mode="before")
    @classmethod
    def _none_to_history(cls, value: Any) -> Any:
        return {} if value is None else value


# ---------------------------------------------------------------------------
# Summary result
# ---------------------------------------------------------------------------

class GeneratorOutput(BaseModel):
    """Raw text returned by a summary generator, before any guarding."""
    content: str = ""
    usage: Optional[dict[str, Any]] = None
    finish_reason: Optional[str] = None


class GeneratorOutcome(BaseModel):
    """What happened on the generator path; never rendered into the summary."""
    ok: bool = False
    provider: str = "openai"
    model: Optional[str] = None
    error: Optional[str] = None
    validation: list[str] = Field(default_factory=list)
    finish_reason: Optional[str] = None
    usage: Optional[dict[str, Any]] = None


class SummaryMeta(BaseModel):
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    llm: Optional[GeneratorOutcome] = None
    timeline: Optional[TimelineMetadata] = None
    failed_sources: list[str] = Field(default_factory=list)
    product_rules_version: Optional[str] = None
    error: Optional[str] = None


class SummaryResult(BaseModel):
    summary_html: str
    source: str = Field("deterministic", description="generator | deterministic | placeholder")
    meta: SummaryMeta = Field(default_factory=SummaryMeta)
    narrative: Optional[dict[str, Any]] = None
