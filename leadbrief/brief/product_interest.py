"""Rule-based product-interest inference over evidence snippets."""

from __future__ import annotations

import logging
import re
from typing import Iterable, Optional

from leadbrief.models import (
    Evidence,
    ProductInterest,
    ProductInterestRules,
    ProductMatch,
    Rule,
    TopProduct,
)

logger = logging.getLogger(__name__)

# Matching never looks past this many characters of a snippet.
MAX_MATCH_CHARS = 280


def score_to_confidence(score: float) -> str:
    s = float(score or 0)
    if s >= 14:
        return "High"
    if s >= 7:
        return "Moderate"
    return "Light"


def compile_rule(rule: Rule) -> Optional[re.Pattern]:
    """Compile a rule pattern case-insensitively. Invalid or empty patterns give None."""
    if not rule.pattern:
        return None
    try:
        return re.compile(rule.pattern, re.IGNORECASE)
    except re.error as exc:
        logger.warning(
            "Skipping product rule %s: invalid pattern (%s)",
            rule.product_id or rule.product_name or "?", exc,
        )
        return None


def _citation(evidence: Evidence) -> str:
    tag = "URL" if evidence.category.value == "url" else "Signal"
    return f"{tag}: {evidence.text}"


def rank_matches(
    evidence: Iterable[Evidence],
    rules: ProductInterestRules,
) -> list[ProductMatch]:
    """Aggregate rule hits per product, ranked by descending score.

    ``sorted`` is stable, so equal scores keep first-hit order and the
    ranking is reproducible for identical inputs.
    """
    compiled = [(rule, compile_rule(rule)) for rule in rules.rules]
    compiled = [(rule, pattern) for rule, pattern in compiled if pattern is not None]
    max_evidence = max(0, rules.max_evidence_per_product)

    by_id: dict[str, ProductMatch] = {}
    for item in evidence:
        text = (item.text or "")[:MAX_MATCH_CHARS]
        if not text:
            continue
        for rule, pattern in compiled:
            if item.category not in rule.evidence_categories:
                continue
            if not pattern.search(text):
                continue
            product_id = rule.product_id or rule.product_name or "Unknown"
            match = by_id.get(product_id)
            if match is None:
                match = ProductMatch(
                    product_id=product_id,
                    product_name=rule.product_name or product_id,
                )
                by_id[product_id] = match
            match.score += rule.weight
            citation = _citation(item)
            if len(match.evidence) < max_evidence and citation not in match.evidence:
                match.evidence.append(citation)

    return sorted(by_id.values(), key=lambda m: m.score, reverse=True)


def infer_product_interest(
    evidence: Iterable[Evidence],
    rules: ProductInterestRules,
) -> ProductInterest:
    ranked = rank_matches(evidence, rules)[: max(0, rules.max_products)]
    top = [
        TopProduct(
            name=m.product_name,
            confidence=score_to_confidence(m.score),
            evidence=list(m.evidence),
        )
        for m in ranked
    ]
    logger.info("Product interest: %s", ", ".join(f"{t.name}={t.confidence}" for t in top) or "none")
    return ProductInterest(top_products=top, has_evidence=bool(top))
