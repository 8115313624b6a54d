"""Inline PII redaction and internal-token masking.

Everything that may end up in a timeline detail, an evidence snippet or a
sales-facing bullet passes through here first.
"""

from __future__ import annotations

import re

EMAIL_PATTERN = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)
# Eight or more characters of digits and separators, starting and ending on a digit.
PHONE_PATTERN = re.compile(r"\+?\d[\d\s().-]{6,}\d")
_WHITESPACE = re.compile(r"\s+")

EMAIL_PLACEHOLDER = "*@redacted"
PHONE_PLACEHOLDER = "[redacted]"
TOKEN_PLACEHOLDER = "[redacted]"

# Field/object naming conventions, system names and record-ID shapes that must
# never appear in visible sales-facing text.
INTERNAL_TOKEN_PATTERNS: list[re.Pattern] = [
    re.compile(r"__c\b"),
    re.compile(r"__r\b"),
    re.compile(r"\bHubSpot_"),
    re.compile(r"\bOpportunityContactRole\b"),
    re.compile(r"\bMQL__c\b"),
    re.compile(r"\bSalesforce\b", re.IGNORECASE),
    re.compile(r"\bHubSpot\b", re.IGNORECASE),
    re.compile(r"\b(?:003|00Q|00T|006|a0X)[A-Za-z0-9]{12,15}\b"),
]

# Whole-token variants of the patterns above, used for masking.
_MASK_PATTERNS: list[re.Pattern] = [
    re.compile(r"\w*__[cr]\b"),
    re.compile(r"\bHubSpot_\w*"),
    re.compile(r"\bOpportunityContactRole\b"),
    re.compile(r"\bSalesforce\b", re.IGNORECASE),
    re.compile(r"\bHubSpot\b", re.IGNORECASE),
    re.compile(r"\b(?:003|00Q|00T|006|a0X)[A-Za-z0-9]{12,15}\b"),
]


def redact_inline_text(value: object) -> str | None:
    """Replace email addresses and phone-like digit runs in free text."""
    if value is None or value == "":
        return None
    out = str(value)
    out = EMAIL_PATTERN.sub(EMAIL_PLACEHOLDER, out)
    out = PHONE_PATTERN.sub(PHONE_PLACEHOLDER, out)
    return out


def redact_email_address(email: object) -> str | None:
    """Mask the local part of an address: ``jane@acme.com`` -> ``*@acme.com``."""
    if not email or not isinstance(email, str):
        return None
    local, sep, domain = email.strip().partition("@")
    if not sep or not local or not domain:
        return redact_inline_text(email)
    return f"*@{domain.lower()}"


def normalize_text_snippet(value: object, max_len: int = 140) -> str | None:
    """Redact, flatten whitespace and cap a free-text snippet."""
    raw = redact_inline_text(value)
    if not raw:
        return None
    flat = _WHITESPACE.sub(" ", raw).strip()
    if not flat:
        return None
    return f"{flat[:max_len]}..." if len(flat) > max_len else flat


def contains_internal_token(text: str) -> bool:
    return any(p.search(text) for p in INTERNAL_TOKEN_PATTERNS)


def mask_internal_tokens(text: str) -> str:
    for pattern in _MASK_PATTERNS:
        text = pattern.sub(TOKEN_PLACEHOLDER, text)
    return text
