"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import os
from datetime import datetime, timezone

import pytest

os.environ["OPENAI_API_KEY"] = ""
os.environ["HUBSPOT_TOKEN"] = ""
os.environ["RECORD_BASE_URL"] = ""
os.environ["BRIEFING_API_KEY"] = ""  # disable auth for tests

from leadbrief.models import GeneratorOutput, SourceBundle
from leadbrief.policy import load_rules, load_timeline_policy

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

OPP_ID = "0065e000001AbCdAAA"
PRODUCT_ID = "01t5e000000AbCdAAK"

VALID_GENERATED_HTML = "\n".join([
    "<p><strong>Why Sales Should Care</strong></p>",
    "<ul><li>They asked for a pricing conversation this week.</li>"
    "<li>Recent visits focus on the navigator pages.</li></ul>",
    "<p><strong>Score Interpretation</strong></p>",
    "<ul><li>Fit looks good.</li><li>Intent is Strong.</li></ul>",
    "<p><strong>Most Recent Engagement</strong></p>",
    "<ul><li>2026-02-28 - Inbound request</li><li>2026-02-27 - Discovery meeting</li></ul>",
    "<p><strong>Suggested Next Step</strong></p>",
    "<ul><li>Call back within a day and confirm timeline.</li></ul>",
])


class FakeGenerator:
    """Stand-in for the OpenAI generator."""

    def __init__(self, content: str = "", error: Exception | None = None,
                 delay: float = 0.0, model: str = "fake-model"):
        self.content = content
        self.error = error
        self.delay = delay
        self.model = model
        self.calls: list[tuple[str, str]] = []

    async def generate(self, system_prompt: str, user_prompt: str) -> GeneratorOutput:
        self.calls.append((system_prompt, user_prompt))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return GeneratorOutput(content=self.content, finish_reason="stop", usage={"total_tokens": 42})


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def policy():
    return load_timeline_policy()


@pytest.fixture
def rules():
    return load_rules()


@pytest.fixture
def sample_bundle_dict() -> dict:
    """A realistic bundle for one lead, as the request handler receives it."""
    return {
        "mql": {
            "Id": "a0X5e000001AbCdEAF",
            "CreatedDate": "2026-02-10T15:00:00.000+0000",
            "MQL_Date__c": "2026-02-10",
            "MQL_Status__c": "Open",
            "Lead_Source__c": "Web",
            "Product__c": PRODUCT_ID,
            "Product_Name__c": "Navigator",
        },
        "contact": {
            "Id": "0035e00000AbCdEAAZ",
            "Email": "jane.doe@agency.gov",
            "Private_Sector_Non_Qual__c": False,
            "HubSpot_Engagement_Score__c": 12,
            "HubSpot_Engagement_Score_Threshold__c": 10,
            "HubSpot_Private_Sector_Contact_Fit__c": 8,
            "Contact_Fit_Threshold__c": 7,
            "HubSpot_Private_Sector_Behavior_Score__c": 14,
            "HubSpot_Recent_Conversion__c": "Navigator Guide",
            "HubSpot_Recent_Conversion_Date__c": "2026-02-20",
        },
        "account": {
            "Id": "0015e00000AbCdEAAA",
            "Private_Sector_Non_Qual__c": False,
        },
        "opportunityContactRoles": [
            {
                "Id": "00K5e000001AbCdEAA",
                "OpportunityId": OPP_ID,
                "Open_Opportunity__c": True,
                "CreatedDate": "2026-01-15T10:00:00Z",
            }
        ],
        "opportunities": [
            {
                "Id": OPP_ID,
                "Name": "Agency Navigator Renewal",
                "StageName": "Discovery",
                "CreatedDate": "2026-01-10T09:00:00Z",
            }
        ],
        "opportunityLineItems": [
            {"OpportunityId": OPP_ID, "PricebookEntry": {"Product2": {"Name": "Navigator"}}}
        ],
        "tasks": [
            {
                "Id": "00T5e00000AbCdEAAA",
                "Status": "Completed",
                "Subject": "Call",
                "Description": "Spoke with jane.doe@agency.gov, call back at 555-123-4567",
                "ActivityDate": "2026-02-25",
                "WhatId": OPP_ID,
            },
            {
                "Id": "00T5e00000AbCdEAAB",
                "Status": "Not Started",
                "Subject": "Follow up",
                "ActivityDate": "2026-03-05",
            },
        ],
        "meetings": [
            {
                "Id": "00U5e000001AbCdEAA",
                "Subject": "Discovery meeting",
                "StartDateTime": "2026-02-27T16:00:00Z",
            }
        ],
        "emailMessages": [
            {
                "Id": "02s5e000001AbCdAAA",
                "Subject": "Re: pricing",
                "TextBody": "Thanks, see attached.",
                "Incoming": True,
                "FromAddress": "jane.doe@agency.gov",
                "MessageDate": "2026-02-26T14:30:00Z",
            }
        ],
        "campaignMembers": [
            {
                "Id": "00v5e000001AbCdAAA",
                "Status": "Responded",
                "HasResponded": True,
                "FirstRespondedDate": "2026-02-05",
                "CreatedDate": "2026-02-01T00:00:00Z",
                "Campaign": {"Name": "Navigator Webinar 2026"},
            }
        ],
        "contactUsSubmissions": [
            {
                "Id": "a1B5e000001AbCdEAA",
                "CreatedDate": "2026-02-28T09:15:00Z",
                "Topic__c": "Pricing",
                "Source__c": "Website",
            }
        ],
        "salesLeads": [
            {
                "Lead_Date__c": "2026-02-24",
                "Web_Activity_Summary__c": (
                    "2/24/2026 10:02 - visit - "
                    "https://www.Example.com/navigator/pricing?email=jane.doe@agency.gov#top\n"
                    "2/24/2026 10:05 - visit - https://www.example.com/events/summit\n"
                ),
            }
        ],
        "history": {
            "mqlHistory": [],
            "opportunityFieldHistory": [
                {
                    "OpportunityId": OPP_ID,
                    "Field": "StageName",
                    "OldValue": "Qualification",
                    "NewValue": "Discovery",
                    "CreatedDate": "2026-02-15T12:00:00Z",
                }
            ],
        },
        "marketingProperties": {
            "hs_analytics_first_url": "https://www.example.com/navigator?utm_source=x",
            "hs_analytics_source": "ORGANIC_SEARCH",
        },
    }


@pytest.fixture
def sample_bundle(sample_bundle_dict) -> SourceBundle:
    return SourceBundle.model_validate(sample_bundle_dict)


@pytest.fixture
def empty_bundle() -> SourceBundle:
    return SourceBundle()
