"""Load the product-interest rules and timeline policy documents."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional, Union

from leadbrief.config import settings
from leadbrief.models import ProductInterestRules, TimelinePolicy

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _read_json(path: Path) -> Optional[dict]:
    if not path.exists():
        logger.warning("Policy document not found at %s: using built-in defaults", path)
        return None
    with path.open(encoding="utf-8") as fh:
        return json.load(fh)


def load_rules(path: Optional[PathLike] = None) -> ProductInterestRules:
    doc = _read_json(Path(path or settings.rules_path))
    rules = ProductInterestRules.model_validate(doc or {})
    logger.debug("Loaded %d product rules (%s)", len(rules.rules), rules.version)
    return rules


def load_timeline_policy(path: Optional[PathLike] = None) -> TimelinePolicy:
    doc = _read_json(Path(path or settings.timeline_policy_path))
    return TimelinePolicy.model_validate(doc or {})
