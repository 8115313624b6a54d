"""Source collection: concurrent fetch -> SourceBundle.

Every source fetch is independent. They are issued together, each under its
own timeout, and awaited together before anything downstream runs. A fetch
that raises, times out or returns an unusable payload contributes nothing
and is recorded in ``failed_sources``; it never fails the batch.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from leadbrief.config import settings
from leadbrief.models import SourceBundle
from leadbrief.store.capabilities import (
    CapabilityCache,
    CapabilityKey,
    get_or_load,
    pick_existing_fields,
)

logger = logging.getLogger(__name__)

SourceFetch = Callable[[], Awaitable[Any]]
DescribeFetch = Callable[[str], Awaitable[Optional[dict]]]

# Fields the normaliser treats as optional, per object type.
OPTIONAL_FIELDS: dict[str, list[str]] = {
    "MQL__c": [
        "MQL_Date__c",
        "MQL_Status__c",
        "Lead_Source__c",
        "Product__c",
        "Product_Name__c",
        "Conversion_Date__c",
        "Conversion_Type__c",
    ],
    "OpportunityContactRole": ["Open_Opportunity__c"],
    "Task": ["Description"],
    "Event": ["Description", "StartDateTime"],
    "EmailMessage": ["TextBody", "Incoming", "FromAddress"],
    "CampaignMember": ["HasResponded", "FirstRespondedDate"],
    "Contact_Us__c": ["Topic__c", "Source__c"],
}


@dataclass
class CollectionResult:
    bundle: SourceBundle
    failed_sources: list[str] = field(default_factory=list)


async def fetch_source(name: str, fetch: SourceFetch, timeout: float) -> tuple[Any, bool]:
    """Run one fetch under a timeout. Returns ``(value, ok)``; failures give ``(None, False)``."""
    try:
        return await asyncio.wait_for(fetch(), timeout), True
    except asyncio.TimeoutError:
        logger.warning("Source %s timed out after %.1fs: treating as empty", name, timeout)
    except Exception:
        logger.exception("Source %s failed: treating as empty", name)
    return None, False


def _source_is_valid(name: str, value: Any) -> bool:
    """Check one fetched value against its bundle field in isolation."""
    try:
        SourceBundle.model_validate({name: value})
    except ValidationError as exc:
        logger.warning("Source %s returned an unusable payload: treating as empty (%d errors)",
                       name, exc.error_count())
        return False
    return True


async def collect_sources(
    fetchers: dict[str, SourceFetch],
    base: Optional[dict[str, Any]] = None,
    timeout: Optional[float] = None,
) -> CollectionResult:
    """Fan out every fetcher, fan in, and build the bundle.

    ``fetchers`` is keyed by bundle field (``tasks``, ``emailMessages``,
    ``marketingProperties`` ...). ``base`` holds values already known,
    e.g. the lead record itself.
    """
    timeout = timeout if timeout is not None else settings.source_timeout_seconds
    names = list(fetchers)
    results = await asyncio.gather(*(fetch_source(n, fetchers[n], timeout) for n in names))

    data: dict[str, Any] = dict(base or {})
    failed: list[str] = []
    for name, (value, ok) in zip(names, results):
        if ok and not _source_is_valid(name, value):
            ok = False
        if not ok:
            failed.append(name)
            data.setdefault(name, None)
            continue
        data[name] = value

    bundle = SourceBundle.model_validate(data)
    logger.info(
        "Collected %d sources (%d failed%s)",
        len(names), len(failed), f": {', '.join(failed)}" if failed else "",
    )
    return CollectionResult(bundle=bundle, failed_sources=failed)


async def load_capabilities(
    cache: CapabilityCache,
    describe: DescribeFetch,
    environment: str,
    version: str,
    object_types: Optional[dict[str, list[str]]] = None,
    timeout: Optional[float] = None,
) -> dict[str, list[str]]:
    """Optional fields present per object type, read through the capability cache.

    Object types whose describe fails are left out, so the normaliser
    treats every field on them as available.
    """
    object_types = object_types or OPTIONAL_FIELDS
    timeout = timeout if timeout is not None else settings.source_timeout_seconds

    async def _one(object_type: str) -> Optional[dict]:
        key = CapabilityKey(environment, version, object_type)
        value, ok = await fetch_source(
            f"describe:{object_type}",
            lambda: get_or_load(cache, key, lambda: describe(object_type)),
            timeout,
        )
        return value if ok else None

    names = list(object_types)
    describes = await asyncio.gather(*(_one(n) for n in names))
    return {
        name: pick_existing_fields(payload, object_types[name])
        for name, payload in zip(names, describes)
        if payload
    }
