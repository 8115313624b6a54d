"""Output guard for sales-facing summary HTML.

Implements:
1. Code-fence stripping for generator output
2. Allow-list sanitizer (tags p/strong/ul/li/br/em/a, safe anchors only)
3. Section caps: trims list items under each mandatory heading
4. Leak detector: field-name conventions, system names, record-ID shapes
   in visible text or any attribute other than an anchor ``href``
5. Validator: empty content, leaks, unsafe anchors, missing headings
6. Truncation to the storage ceiling, and the finalize chain
   (sanitize -> caps -> links -> sanitize -> truncate)

Every summary, deterministic or generated, goes through the same chain.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from bs4 import BeautifulSoup
from bs4.element import Comment, Declaration, Doctype, ProcessingInstruction

from leadbrief.normalize.redaction import INTERNAL_TOKEN_PATTERNS

logger = logging.getLogger(__name__)

HEADING_WHY = "Why Sales Should Care"
HEADING_SCORE = "Score Interpretation"
HEADING_ENGAGEMENT = "Most Recent Engagement"
HEADING_NEXT_STEP = "Suggested Next Step"

REQUIRED_HEADINGS: tuple[str, ...] = (
    HEADING_WHY,
    HEADING_SCORE,
    HEADING_ENGAGEMENT,
    HEADING_NEXT_STEP,
)

SECTION_CAPS: dict[str, int] = {
    HEADING_WHY: 6,
    HEADING_SCORE: 6,
    HEADING_ENGAGEMENT: 12,
    HEADING_NEXT_STEP: 2,
}

MAX_SUMMARY_CHARS = 32000
TRUNCATION_NOTICE = "\n<p><em>Summary truncated for storage limits.</em></p>"

ALLOWED_TAGS = frozenset({"p", "strong", "ul", "li", "br", "em", "a"})
DROPPED_TAGS = ["script", "style", "head", "title", "link", "meta"]

_PUNCTUATION = str.maketrans({
    "\u2014": "-",
    "\u2013": "-",
    "\u2018": "'",
    "\u2019": "'",
    "\u201c": '"',
    "\u201d": '"',
})

_FENCE_OPEN = re.compile(r"^```[a-zA-Z]*\s*")
_FENCE_CLOSE = re.compile(r"\s*```$")
_UNSAFE_SCHEME = re.compile(r"^\s*(javascript|data):", re.IGNORECASE)


@dataclass
class ValidationResult:
    """Outcome of the summary validator."""
    ok: bool = True
    reasons: list[str] = field(default_factory=list)


def heading_html(heading: str) -> str:
    return f"<p><strong>{heading}</strong></p>"


# ---------------------------------------------------------------------------
# Sanitising
# ---------------------------------------------------------------------------

def strip_code_fences(text: str) -> str:
    s = (text or "").strip()
    s = _FENCE_OPEN.sub("", s)
    s = _FENCE_CLOSE.sub("", s)
    return s.strip()


def safe_href(href: str) -> bool:
    href = (href or "").strip()
    if not href or _UNSAFE_SCHEME.match(href):
        return False
    if href.startswith("https://"):
        return True
    # root-relative only; "//host" and "/\host" resolve off-origin
    return href.startswith("/") and not href.startswith(("//", "/\\"))


def sanitize_html(html: str) -> str:
    """Reduce arbitrary HTML to the allow-listed fragment grammar.

    Disallowed tags are unwrapped (their text survives, escaped), document
    cruft is dropped with its content, non-anchor tags lose every attribute,
    and anchors keep only a safe ``href`` plus forced ``target``/``rel``.
    """
    s = (html or "").translate(_PUNCTUATION)
    soup = BeautifulSoup(s, "html.parser")

    for node in soup.find_all(
        string=lambda t: isinstance(t, (Comment, Doctype, Declaration, ProcessingInstruction))
    ):
        node.extract()
    for tag in soup.find_all(DROPPED_TAGS):
        tag.decompose()

    for tag in soup.find_all(True):
        if tag.name not in ALLOWED_TAGS:
            tag.unwrap()
        elif tag.name == "a":
            href = tag.get("href")
            href = href.strip() if isinstance(href, str) else ""
            if safe_href(href):
                tag.attrs = {"href": href, "target": "_blank", "rel": "noopener"}
            else:
                tag.attrs = {}
        else:
            tag.attrs = {}

    return str(soup).replace("\r\n", "\n").strip()


def enforce_section_caps(html: str, caps: dict[str, int] | None = None) -> str:
    """Keep at most ``cap`` list items under the first occurrence of each heading."""
    caps = SECTION_CAPS if caps is None else caps
    soup = BeautifulSoup(html or "", "html.parser")
    seen: set[str] = set()
    for strong in soup.find_all("strong"):
        heading = strong.get_text(strip=True)
        if heading not in caps or heading in seen or strong.parent is None or strong.parent.name != "p":
            continue
        seen.add(heading)
        ul = strong.parent.find_next("ul")
        if ul is None:
            continue
        for li in ul.find_all("li", recursive=False)[caps[heading]:]:
            li.decompose()
    return str(soup)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _exposed_strings(soup: BeautifulSoup) -> list[str]:
    """Visible text plus every attribute name and value except anchor hrefs."""
    exposed = [soup.get_text(" ")]
    for tag in soup.find_all(True):
        for name, value in tag.attrs.items():
            exposed.append(name)
            if tag.name == "a" and name == "href":
                continue
            exposed.append(" ".join(value) if isinstance(value, list) else str(value))
    return exposed


def looks_like_internal_leak(html: str) -> bool:
    """True when an internal token appears anywhere except inside an anchor's href."""
    if not html:
        return False
    scan = "\n".join(_exposed_strings(BeautifulSoup(html, "html.parser")))
    return any(p.search(scan) for p in INTERNAL_TOKEN_PATTERNS)


def has_unsafe_anchor(html: str) -> bool:
    soup = BeautifulSoup(html or "", "html.parser")
    return any(
        a.has_attr("href") and not safe_href(str(a["href"]))
        for a in soup.find_all("a")
    )


def validate_summary_html(html: str) -> ValidationResult:
    s = html or ""
    reasons: list[str] = []
    if not s.strip():
        reasons.append("empty_html")
    if looks_like_internal_leak(s):
        reasons.append("field_or_id_leak")
    if has_unsafe_anchor(s):
        reasons.append("unsafe_anchor_href")
    for heading in REQUIRED_HEADINGS:
        if heading_html(heading) not in s:
            reasons.append(f"missing_heading:{heading}")
    return ValidationResult(ok=not reasons, reasons=reasons)


# ---------------------------------------------------------------------------
# Finalising
# ---------------------------------------------------------------------------

def truncate_html(html: str, max_chars: int = MAX_SUMMARY_CHARS) -> str:
    s = html or ""
    if len(s) <= max_chars:
        return s
    logger.warning("Summary truncated from %d to %d characters", len(s), max_chars)
    return f"{s[:max_chars]}{TRUNCATION_NOTICE}"


def finalize_summary_html(
    html: str,
    links_html: str = "",
    max_chars: int = MAX_SUMMARY_CHARS,
) -> str:
    out = enforce_section_caps(sanitize_html(html))
    if links_html:
        out = f"{out}\n{links_html}"
    return truncate_html(sanitize_html(out), max_chars)
