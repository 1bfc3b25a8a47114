"""Principle store: clusters signals into principles by similarity.

Each principle keeps the phrasing of one member signal as its
representative text. A heavier signal joining the cluster replaces the
representative; a merge never does.

All mutation happens under one lock. The set of incorporated signal ids
is the dedup guard: re-adding a signal is a no-op that returns the
principle it already belongs to.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from neon_soul.persistence import principle_from_dict, principle_to_dict
from neon_soul.protocols import ConfigurationError, ScoringStrategy, SimilarityStrategy
from neon_soul.scoring import WeightedScoring
from neon_soul.sanitize import validate_fraction
from neon_soul.types import (
    Dimension,
    Principle,
    PrincipleEvent,
    Signal,
    SignalRef,
    new_id,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_MATCH_THRESHOLD = 0.85


@dataclass
class AddOutcome:
    action: str  # "created", "reinforced", "duplicate"
    principle: Principle
    similarity: float


@dataclass
class MergeReport:
    """What one merge_similar_principles() call did."""

    merges: List[Tuple[str, str, float]] = field(default_factory=list)  # (survivor, absorbed, score)
    comparisons: int = 0
    principles_before: int = 0
    principles_after: int = 0

    @property
    def merged_count(self) -> int:
        return len(self.merges)


@dataclass
class StoreStats:
    created: int = 0
    reinforced: int = 0
    duplicates: int = 0


class PrincipleStore:
    def __init__(
        self,
        similarity: SimilarityStrategy,
        scoring: Optional[ScoringStrategy] = None,
        match_threshold: float = DEFAULT_MATCH_THRESHOLD,
    ) -> None:
        self._similarity = similarity
        self._scoring = scoring if scoring is not None else WeightedScoring()
        self._threshold = self._check_threshold(match_threshold, "match_threshold")
        self._principles: Dict[str, Principle] = {}
        # Text each principle is matched on (generalized text when available)
        self._match_text: Dict[str, str] = {}
        self._incorporated: Dict[str, str] = {}  # signal id -> principle id
        self._lock = threading.RLock()
        self.stats = StoreStats()

    @staticmethod
    def _check_threshold(value: Any, name: str) -> float:
        try:
            return validate_fraction(value, name)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

    # ---- Queries ----

    @property
    def principles(self) -> List[Principle]:
        with self._lock:
            return list(self._principles.values())

    @property
    def match_threshold(self) -> float:
        return self._threshold

    @property
    def signal_count(self) -> int:
        with self._lock:
            return len(self._incorporated)

    def get(self, principle_id: str) -> Optional[Principle]:
        with self._lock:
            return self._principles.get(principle_id)

    def principle_for_signal(self, signal_id: str) -> Optional[Principle]:
        with self._lock:
            pid = self._incorporated.get(signal_id)
            return self._principles.get(pid) if pid else None

    def principles_above(self, n: int) -> List[Principle]:
        """Principles with at least ``n`` member signals."""
        with self._lock:
            return [p for p in self._principles.values() if p.n_count >= n]

    def set_threshold(self, threshold: float) -> None:
        self._threshold = self._check_threshold(threshold, "match_threshold")

    # ---- Adding signals ----

    def add_signal(self, signal: Signal) -> Principle:
        return self.add_signal_with_outcome(signal).principle

    def add_signal_with_outcome(self, signal: Signal) -> AddOutcome:
        with self._lock:
            existing = self._incorporated.get(signal.id)
            if existing is not None:
                self.stats.duplicates += 1
                logger.debug("Signal %s already incorporated into %s", signal.id, existing)
                return AddOutcome("duplicate", self._principles[existing], 1.0)

            weight = self._scoring.signal_weight(signal)
            text = signal.comparable_text
            order = list(self._principles.values())
            match = (
                self._similarity.best_match(text, [self._match_text[p.id] for p in order])
                if order
                else None
            )

            if match is not None and match[0] >= 0 and match[1] >= self._threshold:
                index, score = match
                principle = order[index]
                self._reinforce(principle, signal, score, weight)
                self.stats.reinforced += 1
                logger.debug(
                    "MATCH similarity=%.3f threshold=%.2f principle=%s",
                    score,
                    self._threshold,
                    principle.id,
                )
                return AddOutcome("reinforced", principle, score)

            principle = self._create(signal, weight)
            self.stats.created += 1
            best = match[1] if match is not None and match[0] >= 0 else 0.0
            logger.debug(
                "NO_MATCH best=%.3f threshold=%.2f new principle=%s",
                best,
                self._threshold,
                principle.id,
            )
            return AddOutcome("created", principle, best)

    def add_signals(self, signals: Iterable[Signal]) -> List[AddOutcome]:
        """Add signals in the given order (extraction order)."""
        return [self.add_signal_with_outcome(s) for s in signals]

    def _create(self, signal: Signal, weight: float) -> Principle:
        ref = SignalRef.from_signal(signal, similarity=1.0, weight=weight)
        principle = Principle(
            id=new_id("pri"),
            representative_text=signal.text,
            representative_signal_id=signal.id,
            representative_weight=weight,
            dimension=signal.dimension,
            derived_from=[ref],
            history=[PrincipleEvent(kind="created", at=utc_now(), signal_id=signal.id)],
        )
        self._rescore(principle)
        self._principles[principle.id] = principle
        self._match_text[principle.id] = signal.comparable_text
        self._incorporated[signal.id] = principle.id
        return principle

    def _reinforce(self, principle: Principle, signal: Signal, score: float, weight: float) -> None:
        principle.derived_from.append(SignalRef.from_signal(signal, similarity=score, weight=weight))
        principle.history.append(
            PrincipleEvent(kind="reinforced", at=utc_now(), signal_id=signal.id)
        )
        if weight > principle.representative_weight:
            principle.representative_text = signal.text
            principle.representative_signal_id = signal.id
            principle.representative_weight = weight
            self._match_text[principle.id] = signal.comparable_text
            if signal.dimension is not Dimension.UNCLASSIFIED:
                principle.dimension = signal.dimension
        elif principle.dimension is Dimension.UNCLASSIFIED:
            principle.dimension = signal.dimension
        self._rescore(principle)
        self._incorporated[signal.id] = principle.id

    def _rescore(self, principle: Principle) -> None:
        principle.weight = self._scoring.weighted_strength(principle.derived_from)
        principle.centrality = self._scoring.centrality(principle.weight)

    # ---- Merging ----

    def merge_similar_principles(self, threshold: Optional[float] = None) -> MergeReport:
        """Merge principle pairs scoring >= threshold until none remain.

        The survivor is the heavier principle (the earlier one on ties) and
        keeps its representative text. Running it twice changes nothing the
        second time.
        """
        limit = self._threshold if threshold is None else self._check_threshold(
            threshold, "merge threshold"
        )
        scores: Dict[Tuple[str, str], float] = {}

        with self._lock:
            report = MergeReport(principles_before=len(self._principles))
            merged = True
            while merged:
                merged = False
                order = list(self._principles.values())
                for i, first in enumerate(order):
                    for second in order[i + 1 :]:
                        key = (self._match_text[first.id], self._match_text[second.id])
                        if key not in scores:
                            scores[key] = self._similarity.compare(*key)
                            report.comparisons += 1
                        score = scores[key]
                        if score < limit:
                            continue
                        survivor, absorbed = (
                            (second, first) if second.weight > first.weight else (first, second)
                        )
                        self._absorb(survivor, absorbed)
                        report.merges.append((survivor.id, absorbed.id, score))
                        merged = True
                        break
                    if merged:
                        break
            report.principles_after = len(self._principles)

        if report.merges:
            logger.info(
                "Merged %d principle pair(s): %d -> %d principles",
                report.merged_count,
                report.principles_before,
                report.principles_after,
            )
        return report

    def _absorb(self, survivor: Principle, absorbed: Principle) -> None:
        known = set(survivor.signal_ids)
        for ref in absorbed.derived_from:
            if ref.signal_id not in known:
                survivor.derived_from.append(ref)
                known.add(ref.signal_id)
            self._incorporated[ref.signal_id] = survivor.id
        survivor.history.append(
            PrincipleEvent(kind="merged", at=utc_now(), merged_from=absorbed.id)
        )
        if survivor.dimension is Dimension.UNCLASSIFIED:
            survivor.dimension = absorbed.dimension
        self._rescore(survivor)
        del self._principles[absorbed.id]
        del self._match_text[absorbed.id]

    # ---- Serialization ----

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "match_threshold": self._threshold,
                "principles": [principle_to_dict(p) for p in self._principles.values()],
            }

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        similarity: SimilarityStrategy,
        scoring: Optional[ScoringStrategy] = None,
        match_threshold: Optional[float] = None,
    ) -> "PrincipleStore":
        threshold = data.get("match_threshold", DEFAULT_MATCH_THRESHOLD)
        store = cls(similarity, scoring, threshold if match_threshold is None else match_threshold)
        store.load(principle_from_dict(p) for p in data.get("principles") or [])
        return store

    def load(self, principles: Iterable[Principle]) -> None:
        """Seed the store with previously persisted principles."""
        with self._lock:
            for principle in principles:
                self._principles[principle.id] = principle
                self._match_text[principle.id] = principle.representative_text
                for signal_id in principle.signal_ids:
                    self._incorporated[signal_id] = principle.id
                self._rescore(principle)
