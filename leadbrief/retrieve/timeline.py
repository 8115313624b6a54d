"""Timeline assembly: dedup, window, cap and order normalised events.

Two tiers:

* always:   lifecycle milestones (created / converted / rejected, open
             opportunity, stage changes). Never windowed; per-type caps keep
             the *oldest* occurrences so the origin of the lead survives.
* optional: day-to-day activity. Windowed to the recency window, then
             greedily selected newest-first under per-type caps and the
             aggregate ``max_events`` ceiling.

The final list is newest-first. Ties keep input order (stable sorts only).
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from leadbrief.models import Event, Timeline, TimelineMetadata, TimelinePolicy

logger = logging.getLogger(__name__)


def dedupe_events(events: Iterable[Event]) -> list[Event]:
    """Collapse reports sharing (event type, source record, minute bucket)."""
    seen: set[tuple[str, str, int]] = set()
    out: list[Event] = []
    for event in events:
        key = event.dedup_key
        if key in seen:
            continue
        seen.add(key)
        out.append(event)
    return out


def apply_per_type_caps(events: Iterable[Event], policy: TimelinePolicy) -> list[Event]:
    """Keep at most ``cap`` events of each type, in the order given."""
    counts: dict[str, int] = {}
    out: list[Event] = []
    for event in events:
        cap = policy.cap_for(event.event_type)
        n = counts.get(event.event_type.value, 0)
        if cap is not None and n >= cap:
            continue
        counts[event.event_type.value] = n + 1
        out.append(event)
    return out


def select_optional(
    events: Iterable[Event],
    policy: TimelinePolicy,
    max_events: int,
) -> list[Event]:
    """Greedy newest-first pick under per-type caps and an aggregate ceiling."""
    counts: dict[str, int] = {}
    selected: list[Event] = []
    for event in events:
        if len(selected) >= max_events:
            break
        cap = policy.cap_for(event.event_type)
        n = counts.get(event.event_type.value, 0)
        if cap is not None and n >= cap:
            continue
        counts[event.event_type.value] = n + 1
        selected.append(event)
    return selected


def newest_first(events: Iterable[Event]) -> list[Event]:
    return sorted(events, key=lambda e: e.occurred_at, reverse=True)


def assemble_timeline(
    events: Iterable[Event],
    policy: TimelinePolicy,
    since_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Timeline:
    """Produce the bounded, newest-first timeline for one lead."""
    now = now or datetime.now(timezone.utc)
    window_days = int(since_days or policy.defaults.recency_window_days)
    max_optional = max(0, int(policy.defaults.max_events))
    window_start = now - timedelta(days=window_days)

    all_events = list(events)
    always_candidates = [e for e in all_events if e.is_always]
    optional_candidates = [e for e in all_events if not e.is_always]

    always_sorted = sorted(dedupe_events(always_candidates), key=lambda e: e.occurred_at)
    always = apply_per_type_caps(always_sorted, policy)

    in_window = [e for e in dedupe_events(optional_candidates) if e.occurred_at >= window_start]
    optional = select_optional(newest_first(in_window), policy, max_optional)

    final = newest_first(always + optional)

    logger.info(
        "Timeline assembled: %d always, %d optional (of %d in window), window=%dd",
        len(always), len(optional), len(in_window), window_days,
    )

    return Timeline(
        events=final,
        always=always,
        optional=optional,
        metadata=TimelineMetadata(
            generated_at=now,
            policy_version=policy.version,
            recency_window_days=window_days,
            max_optional_events=max_optional,
            included_counts={
                "always": len(always),
                "optional": len(optional),
                "total": len(final),
            },
        ),
    )
