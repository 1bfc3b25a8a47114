"""Tension detection between principles or axioms.

Pairs are judged by the classification capability's ``generate``. The
candidate set is capped (highest weight first) because the pair count is
quadratic.

Reply handling:
- an explicit conflict word (conflict, tension, contradict, ...) means
  tension, whatever the reply length; negated forms ("no conflict") do not
- "none" and other clear negatives mean no tension
- anything else is read as a description of the tension
- severity is taken from the reply; without one, a heuristic applies
  (same dimension high, both core tier medium, otherwise low)
"""

from __future__ import annotations

import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple, Union

from neon_soul.protocols import ClassificationCapability, ConfigurationError
from neon_soul.sanitize import INJECTION_NOTICE, delimit
from neon_soul.types import (
    Axiom,
    AxiomTier,
    Dimension,
    Principle,
    Severity,
    Tension,
    new_id,
    tier_for_count,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITEMS = 25
DEFAULT_CONCURRENCY = 5
MAX_DESCRIPTION_LENGTH = 300

TENSION_TEMPLATE = (
    "Do these two values conflict or create tension?\n\n"
    "{first}\n{second}\n\n"
    "{notice}\n\n"
    "If they conflict, describe the tension briefly (1-2 sentences) and end with "
    '"Severity: high", "Severity: medium" or "Severity: low".\n'
    'If they don\'t conflict, respond with exactly "none".'
)

CONFLICT_WORDS = (
    "conflict",
    "tension",
    "contradict",
    "incompatible",
    "opposed",
    "opposing",
    "opposite",
    "clash",
    "inconsistent",
    "at odds",
    "mutually exclusive",
)

_CONFLICT_RE = re.compile(r"\b(" + "|".join(re.escape(w) for w in CONFLICT_WORDS) + r")")
_NEGATED_RE = re.compile(
    r"\b(?:no|not|don't|do not|doesn't|does not|never|without|isn't|is no|aren't|are not)"
    r"\s+(?:any\s+|real\s+|genuine\s+|direct\s+|a\s+|in\s+)*"
    r"(?:" + "|".join(re.escape(w) for w in CONFLICT_WORDS) + r")\w*"
)
_NEGATIVE_RE = re.compile(
    r"^(?:none|no|nope|compatible|aligned|consistent|complementary|not really)\b"
)
_SEVERITY_RE = re.compile(
    r"severity\W{0,3}(high|medium|low)\b|\b(high|medium|low)[\s-]+severity\b"
)
_SEVERITY_ONLY_RE = re.compile(r"^(high|medium|low)$")


@dataclass(frozen=True)
class TensionVerdict:
    conflict: bool
    severity: Optional[Severity] = None
    description: str = ""


def parse_tension_reply(reply: str) -> TensionVerdict:
    """Interpret a tension-check reply."""
    raw = (reply or "").strip()
    text = raw.lower()
    if not text:
        return TensionVerdict(False)

    severity = None
    labelled = _SEVERITY_RE.search(text)
    if labelled:
        severity = Severity(labelled.group(1) or labelled.group(2))
    elif _SEVERITY_ONLY_RE.match(text.strip(" .!")):
        severity = Severity(text.strip(" .!"))

    description = re.sub(r"(?i)\s*severity\W{0,3}(high|medium|low)\W*", " ", raw).strip()
    description = description[:MAX_DESCRIPTION_LENGTH]

    unnegated = _NEGATED_RE.sub(" ", text)
    if _CONFLICT_RE.search(unnegated):
        return TensionVerdict(True, severity, description)
    if _NEGATIVE_RE.match(text) or _NEGATED_RE.search(text):
        return TensionVerdict(False)
    return TensionVerdict(True, severity, description)


# =============================================================================
# Detector
# =============================================================================


@dataclass(frozen=True)
class TensionItem:
    """The fields tension detection needs from a principle or an axiom."""

    id: str
    text: str
    dimension: Dimension
    tier: AxiomTier
    weight: float

    @classmethod
    def of(cls, item: Union[Principle, Axiom, "TensionItem"]) -> "TensionItem":
        if isinstance(item, TensionItem):
            return item
        if isinstance(item, Axiom):
            return cls(item.id, item.text, item.dimension, item.tier, item.weight)
        return cls(
            item.id,
            item.representative_text,
            item.dimension,
            tier_for_count(item.n_count),
            item.weight,
        )


def fallback_severity(a: TensionItem, b: TensionItem) -> Severity:
    if a.dimension is b.dimension:
        return Severity.HIGH
    if a.tier is AxiomTier.CORE and b.tier is AxiomTier.CORE:
        return Severity.MEDIUM
    return Severity.LOW


class TensionDetector:
    def __init__(
        self,
        capability: ClassificationCapability,
        *,
        max_items: int = DEFAULT_MAX_ITEMS,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        for name, value in (("max_items", max_items), ("concurrency", concurrency)):
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")
        self._capability = capability
        self._max_items = max_items
        self._concurrency = concurrency
        self._lock = threading.Lock()
        self.pairs_checked = 0
        self.unavailable = 0

    def detect_tensions(
        self, items: Iterable[Union[Principle, Axiom, TensionItem]]
    ) -> List[Tension]:
        candidates = [TensionItem.of(i) for i in items]
        if len(candidates) > self._max_items:
            logger.warning(
                "Tension check limited to the %d heaviest of %d items",
                self._max_items,
                len(candidates),
            )
            # sorted() is stable, so equal weights keep input order
            candidates = sorted(candidates, key=lambda c: -c.weight)[: self._max_items]
        if len(candidates) < 2:
            return []

        pairs = [
            (a, b) for i, a in enumerate(candidates) for b in candidates[i + 1 :]
        ]
        logger.info("Checking %d pairs for tensions", len(pairs))
        with ThreadPoolExecutor(max_workers=self._concurrency) as pool:
            results = list(pool.map(lambda pair: self._check_pair(*pair), pairs))

        tensions = [t for t in results if t is not None]
        if tensions:
            logger.info("Detected %d tension(s)", len(tensions))
        return tensions

    def _check_pair(self, a: TensionItem, b: TensionItem) -> Optional[Tension]:
        prompt = TENSION_TEMPLATE.format(
            first=delimit(a.text, "value1"),
            second=delimit(b.text, "value2"),
            notice=INJECTION_NOTICE,
        )
        reply = self._capability.generate(prompt)
        with self._lock:
            self.pairs_checked += 1
            if reply is None:
                self.unavailable += 1
        if reply is None:
            logger.warning("Tension check unavailable for %s / %s", a.id, b.id)
            return None

        verdict = parse_tension_reply(reply)
        if not verdict.conflict:
            return None
        return Tension(
            id=new_id("ten"),
            principle_a=a.id,
            principle_b=b.id,
            severity=verdict.severity or fallback_severity(a, b),
            description=verdict.description,
        )


# =============================================================================
# Attaching
# =============================================================================


def attach_tensions(
    axioms: Sequence[Axiom], tensions: Iterable[Tension], *, replace: bool = False
) -> List[Axiom]:
    """Return copies of ``axioms`` carrying the tensions that involve them.

    By default tensions already on an axiom are kept and new ones are added
    unless the same pair is already present. ``replace=True`` discards the
    existing tensions first.
    """
    by_axiom: Dict[str, List[Tension]] = {}
    for tension in tensions:
        by_axiom.setdefault(tension.principle_a, []).append(tension)
        by_axiom.setdefault(tension.principle_b, []).append(tension)

    updated = []
    for axiom in axioms:
        current: Tuple[Tension, ...] = () if replace else axiom.tensions
        pairs: Set[FrozenSet[str]] = {t.pair_key for t in current}
        merged = list(current)
        for tension in by_axiom.get(axiom.id, []):
            if tension.pair_key not in pairs:
                merged.append(tension)
                pairs.add(tension.pair_key)
        updated.append(axiom.with_tensions(tuple(merged)))
    return updated
