"""Record-URL provider: safe absolute links to CRM records."""

from __future__ import annotations

import re
from typing import Any, Optional

RECORD_ID_PATTERN = re.compile(r"^[A-Za-z0-9]{15,18}$")


def is_record_id(value: Any) -> bool:
    return bool(RECORD_ID_PATTERN.match(str(value or "").strip()))


def safe_record_url(base_url: Optional[str], record_id: Any) -> Optional[str]:
    """``base/id`` when the base is https and the id has the record-ID shape, else None."""
    base = str(base_url or "").strip().rstrip("/")
    if not base.startswith("https://"):
        return None
    if not is_record_id(record_id):
        return None
    return f"{base}/{str(record_id).strip()}"
