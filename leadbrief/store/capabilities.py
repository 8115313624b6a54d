"""Schema capability descriptors and the read-through cache that holds them.

A capability descriptor says which optional fields exist for each source
object type in the current environment. Descriptors change only when the
upstream schema changes, so they are cached across requests keyed by
environment + API version + object type. Values are immutable once known;
there is no invalidation and last-writer-wins on population is fine.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapabilityKey:
    environment: str
    version: str
    object_type: str

    def __str__(self) -> str:
        return f"{self.environment}|v{self.version}|{self.object_type}"


class CapabilityCache(Protocol):
    def get(self, key: CapabilityKey) -> Optional[Any]: ...

    def set(self, key: CapabilityKey, value: Any) -> None: ...


class InMemoryCapabilityCache:
    """Process-local cache; safe for concurrent lookups on one event loop."""

    def __init__(self) -> None:
        self._values: dict[CapabilityKey, Any] = {}

    def get(self, key: CapabilityKey) -> Optional[Any]:
        return self._values.get(key)

    def set(self, key: CapabilityKey, value: Any) -> None:
        self._values[key] = value

    def __len__(self) -> int:
        return len(self._values)


async def get_or_load(
    cache: CapabilityCache,
    key: CapabilityKey,
    loader: Callable[[], Awaitable[Any]],
) -> Any:
    """Return the cached value for ``key``, loading and storing it on a miss."""
    cached = cache.get(key)
    if cached is not None:
        return cached
    value = await loader()
    if value is not None:
        cache.set(key, value)
        logger.debug("Cached capability descriptor %s", key)
    return value


def pick_existing_fields(describe: Optional[dict], desired: Iterable[str]) -> list[str]:
    """Keep only the desired fields that a describe payload says exist."""
    names = {f.get("name") for f in (describe or {}).get("fields", []) if isinstance(f, dict)}
    return [f for f in desired if f in names]


@dataclass
class Capabilities:
    """Which fields exist per object type. Unknown object types allow every field."""
    fields_by_object: dict[str, frozenset[str]] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, mapping: Optional[dict[str, Iterable[str]]]) -> "Capabilities":
        return cls({k: frozenset(v or []) for k, v in (mapping or {}).items()})

    def allows(self, object_type: str, field_name: str) -> bool:
        known = self.fields_by_object.get(object_type)
        if known is None:
            return True
        return field_name in known

    def get(self, record: Optional[dict], object_type: str, field_name: str) -> Any:
        """Read an optional field, honouring what this environment exposes."""
        if not record or not self.allows(object_type, field_name):
            return None
        return record.get(field_name)
