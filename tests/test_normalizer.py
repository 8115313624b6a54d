"""Tests for the per-source event normaliser."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from leadbrief.models import EventType, Importance, SourceBundle
from leadbrief.normalize.events import (
    ImportanceMap,
    OpportunityIndex,
    first_timestamp,
    normalize_bundle,
    normalize_campaign_member,
    normalize_email_message,
    normalize_mql,
    normalize_stage_change,
    normalize_task,
    to_utc_datetime,
)
from leadbrief.retrieve.timeline import dedupe_events
from leadbrief.store.capabilities import Capabilities


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def importance(policy) -> ImportanceMap:
    return ImportanceMap.from_policy(policy)


class TestTimestamps:
    @pytest.mark.parametrize("raw,expected", [
        ("2026-02-10", _utc(2026, 2, 10)),
        ("2026-02-10T15:00:00Z", _utc(2026, 2, 10, 15)),
        ("2026-02-10T15:00:00.000+0000", _utc(2026, 2, 10, 15)),
        ("2026-02-10T10:00:00-05:00", _utc(2026, 2, 10, 15)),
        ("2026-02-10 15:00:00", _utc(2026, 2, 10, 15)),
        ("Tue, 10 Feb 2026 15:00:00 +0000", _utc(2026, 2, 10, 15)),
        (1770735600000, _utc(2026, 2, 10, 15)),
    ])
    def test_accepted_shapes(self, raw, expected):
        assert to_utc_datetime(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "not a date", True, "2026-13-45"])
    def test_rejected_shapes(self, raw):
        assert to_utc_datetime(raw) is None

    def test_first_timestamp_priority(self):
        assert first_timestamp(None, "garbage", "2026-01-01") == _utc(2026, 1, 1)
        assert first_timestamp(None, None) is None


class TestMql:
    def test_created_prefers_mql_date(self, importance):
        mql = {
            "Id": "a0X5e000001AbCdEAF",
            "CreatedDate": "2026-02-10T15:00:00Z",
            "MQL_Date__c": "2026-02-09",
            "Lead_Source__c": "Web",
            "Product_Name__c": "Navigator",
        }
        events = normalize_mql(mql, [], importance, Capabilities())
        assert len(events) == 1
        assert events[0].event_type == EventType.mql_created
        assert events[0].occurred_at == _utc(2026, 2, 9)
        assert events[0].detail == "Web | Navigator"

    def test_missing_capability_falls_back_to_created_date(self, importance):
        mql = {"Id": "a0X1", "CreatedDate": "2026-02-10T15:00:00Z", "MQL_Date__c": "2026-02-09"}
        caps = Capabilities.from_mapping({"MQL__c": ["Lead_Source__c"]})
        events = normalize_mql(mql, [], importance, caps)
        assert events[0].occurred_at == _utc(2026, 2, 10, 15)

    def test_converted(self, importance):
        mql = {
            "Id": "a0X1",
            "CreatedDate": "2026-01-01T00:00:00Z",
            "MQL_Status__c": "Converted",
            "Conversion_Date__c": "2026-02-01",
            "Conversion_Type__c": "Opportunity",
        }
        events = normalize_mql(mql, [], importance, Capabilities())
        converted = [e for e in events if e.event_type == EventType.mql_converted]
        assert len(converted) == 1
        assert converted[0].occurred_at == _utc(2026, 2, 1)
        assert converted[0].detail == "Opportunity"
        assert converted[0].importance == Importance.high

    def test_rejected_uses_latest_history_row(self, importance):
        mql = {"Id": "a0X1", "CreatedDate": "2026-01-01T00:00:00Z", "MQL_Status__c": "Rejected"}
        history = [
            {"Field": "MQL_Status__c", "NewValue": "Rejected", "CreatedDate": "2026-01-05T00:00:00Z"},
            {"Field": "MQL_Status__c", "NewValue": "Rejected", "CreatedDate": "2026-01-20T00:00:00Z"},
            {"Field": "MQL_Status__c", "NewValue": "Open", "CreatedDate": "2026-02-01T00:00:00Z"},
        ]
        events = normalize_mql(mql, history, importance, Capabilities())
        rejected = [e for e in events if e.event_type == EventType.mql_rejected]
        assert rejected[0].occurred_at == _utc(2026, 1, 20)

    def test_no_record(self, importance):
        assert normalize_mql(None, [], importance, Capabilities()) == []
        assert normalize_mql({"CreatedDate": "2026-01-01"}, [], importance, Capabilities()) == []


class TestActivityRecords:
    def test_task_must_be_completed(self, importance):
        task = {"Id": "00T1", "Status": "In Progress", "ActivityDate": "2026-02-01"}
        assert normalize_task(task, OpportunityIndex(), importance, Capabilities()) is None

    def test_task_detail_redacted_and_linked(self, importance):
        opps = OpportunityIndex.build(
            [{"Id": "006A", "Name": "Renewal", "StageName": "Discovery"}],
            [{"OpportunityId": "006A", "PricebookEntry": {"Product2": {"Name": "Navigator"}}}],
        )
        task = {
            "Id": "00T1",
            "Status": "Completed",
            "Subject": "Call",
            "Description": "Reached bob@example.com at 555-123-4567",
            "ActivityDate": "2026-02-01",
            "WhatId": "006A",
        }
        event = normalize_task(task, opps, importance, Capabilities())
        assert event.title == "Task completed"
        assert event.detail == (
            "Call - Reached *@redacted at [redacted] - "
            "Opportunity: Renewal | Discovery | Navigator"
        )

    def test_task_without_timestamp_is_dropped(self, importance):
        task = {"Id": "00T1", "Status": "Completed", "Subject": "Call"}
        assert normalize_task(task, OpportunityIndex(), importance, Capabilities()) is None

    def test_email_direction_and_sender(self, importance):
        message = {
            "Id": "02s1",
            "Subject": "Pricing",
            "TextBody": "Hello",
            "Incoming": False,
            "FromAddress": "rep@vendor.com",
            "MessageDate": "2026-02-01T10:00:00Z",
        }
        event = normalize_email_message(message, OpportunityIndex(), importance, Capabilities())
        assert event.detail == "Pricing | Snippet: Hello | outgoing | From: *@vendor.com"

    def test_campaign_member_prefers_first_response(self, importance):
        member = {
            "Id": "00v1",
            "Status": "Attended",
            "HasResponded": True,
            "FirstRespondedDate": "2026-02-05",
            "CreatedDate": "2026-01-01T00:00:00Z",
            "Campaign": {"Name": "Spring Summit"},
        }
        event = normalize_campaign_member(member, importance, Capabilities())
        assert event.occurred_at == _utc(2026, 2, 5)
        assert event.detail == "Spring Summit | Attended | responded"
        assert event.importance == Importance.low

    def test_stage_change_ignores_other_fields(self, importance):
        row = {"Field": "Amount", "OldValue": 1, "NewValue": 2, "CreatedDate": "2026-01-01"}
        assert normalize_stage_change(row, importance) is None


class TestNormalizeBundle:
    def test_sample_bundle(self, sample_bundle, policy):
        events = normalize_bundle(sample_bundle, policy)
        types = [e.event_type for e in events]
        assert types == [
            EventType.mql_created,
            EventType.open_opportunity_detected,
            EventType.opportunity_stage_changed,
            EventType.task_completed,
            EventType.meeting_logged,
            EventType.email_engagement,
            EventType.campaign_touch,
            EventType.contact_us_submitted,
        ]

    def test_details_never_carry_raw_contact_data(self, sample_bundle, policy):
        for event in normalize_bundle(sample_bundle, policy):
            assert "jane.doe@" not in (event.detail or "")
            assert "555-123-4567" not in (event.detail or "")

    def test_importance_from_policy(self, sample_bundle, policy):
        by_type = {e.event_type: e.importance for e in normalize_bundle(sample_bundle, policy)}
        assert by_type[EventType.contact_us_submitted] == Importance.high
        assert by_type[EventType.task_completed] == Importance.medium
        assert by_type[EventType.campaign_touch] == Importance.low

    def test_empty_bundle(self, policy):
        assert normalize_bundle(SourceBundle(), policy) == []

    def test_null_sources_are_empty(self, policy):
        bundle = SourceBundle.model_validate({"tasks": None, "meetings": None, "history": None})
        assert normalize_bundle(bundle, policy) == []

    def test_malformed_items_skipped_and_null_capabilities_empty(self, policy):
        bundle = SourceBundle.model_validate({
            "tasks": [None, "junk", {"Id": "00T1", "Status": "Completed", "ActivityDate": "2026-02-01"}],
            "history": {"mqlHistory": [1, {"Field": "MQL_Status__c"}]},
            "capabilities": None,
        })
        assert bundle.tasks == [{"Id": "00T1", "Status": "Completed", "ActivityDate": "2026-02-01"}]
        assert bundle.history.mql_history == [{"Field": "MQL_Status__c"}]
        assert bundle.capabilities == {}
        assert [e.source_object_id for e in normalize_bundle(bundle, policy)] == ["00T1"]

    def test_id_less_records_stay_distinct(self, policy):
        tasks = [
            {"Status": "Completed", "Subject": "Call", "CreatedDate": "2026-02-01T10:00:05Z"},
            {"Status": "Completed", "Subject": "Email", "CreatedDate": "2026-02-01T10:00:40Z"},
        ]
        events = normalize_bundle(SourceBundle(tasks=tasks), policy)
        assert [e.source_object_id for e in events] == ["unknown-0", "unknown-1"]
        assert len(dedupe_events(events)) == 2
