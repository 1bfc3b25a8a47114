"""Single-pass synthesis: extract -> cluster -> merge -> compress -> tensions.

One run adds every signal exactly once, merges once, compresses once and
detects tensions once. Repetition belongs to the cycle manager's
run-to-run cadence, not to this loop.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from neon_soul.compressor import CompressionResult, Compressor
from neon_soul.config import SynthesisConfig
from neon_soul.extractor import ExtractionResult, SignalExtractor
from neon_soul.metrics import SynthesisMetrics, calculate_metrics
from neon_soul.principle_store import MergeReport, PrincipleStore
from neon_soul.protocols import ClassificationCapability, FixtureMissingError
from neon_soul.provenance import provenance_distribution
from neon_soul.scoring import CentralityThresholds, WeightedScoring
from neon_soul.similarity import EmbeddingCache, create_similarity
from neon_soul.tensions import TensionDetector, attach_tensions
from neon_soul.types import Axiom, Principle, Signal, SourceBlock, Tension

logger = logging.getLogger(__name__)


@dataclass
class PromotionStats:
    promoted: int = 0
    blocked: int = 0
    reasons: Dict[str, int] = field(default_factory=dict)


@dataclass
class ReflectionResult:
    signals: List[Signal] = field(default_factory=list)
    principles: List[Principle] = field(default_factory=list)
    axioms: List[Axiom] = field(default_factory=list)
    blocked_candidates: List[Axiom] = field(default_factory=list)
    tensions: List[Tension] = field(default_factory=list)
    extraction: ExtractionResult = field(default_factory=ExtractionResult)
    merge: MergeReport = field(default_factory=MergeReport)
    compression: CompressionResult = field(default_factory=CompressionResult)
    metrics: SynthesisMetrics = field(default_factory=SynthesisMetrics)
    provenance_distribution: Dict[str, int] = field(default_factory=dict)
    promotion: PromotionStats = field(default_factory=PromotionStats)
    signal_errors: List[str] = field(default_factory=list)
    tension_checks_unavailable: int = 0
    duration_seconds: float = 0.0

    @property
    def degraded(self) -> int:
        """Items that fell back to a default because the model was unavailable."""
        return self.extraction.degraded + self.tension_checks_unavailable

    @property
    def errors(self) -> List[str]:
        return self.extraction.errors + self.signal_errors


class ReflectionLoop:
    def __init__(
        self,
        extractor: SignalExtractor,
        store: PrincipleStore,
        compressor: Compressor,
        tension_detector: TensionDetector,
        *,
        n_threshold: int = 3,
        merge_threshold: Optional[float] = None,
    ) -> None:
        self.extractor = extractor
        self.store = store
        self.compressor = compressor
        self.tension_detector = tension_detector
        self.n_threshold = n_threshold
        self.merge_threshold = merge_threshold

    @classmethod
    def from_config(
        cls,
        config: SynthesisConfig,
        capability: ClassificationCapability,
        *,
        embedding_cache: Optional[EmbeddingCache] = None,
    ) -> "ReflectionLoop":
        scoring = WeightedScoring(
            thresholds=CentralityThresholds(
                foundational=config.foundational_threshold, core=config.core_threshold
            )
        )
        similarity = create_similarity(config.similarity, capability, cache=embedding_cache)
        return cls(
            SignalExtractor(
                capability,
                concurrency=config.concurrency,
                detection_confidence=config.detection_confidence,
                generalize=config.generalize,
            ),
            PrincipleStore(similarity, scoring, config.match_threshold),
            Compressor(
                capability,
                cognitive_load_cap=config.cognitive_load_cap,
                cascade=config.cascade,
                min_axiom_target=config.min_axiom_target,
                generate_notation=config.generate_notation,
            ),
            TensionDetector(
                capability, max_items=config.tension_max_items, concurrency=config.concurrency
            ),
            n_threshold=config.n_threshold,
            merge_threshold=config.merge_threshold,
        )

    def run(self, blocks: Iterable[SourceBlock]) -> ReflectionResult:
        started = time.monotonic()
        extraction = self.extractor.extract(blocks)
        result = self.synthesize(extraction.signals)
        result.extraction = extraction
        result.duration_seconds = time.monotonic() - started
        return result

    def synthesize(
        self, signals: Sequence[Signal], *, prior_signals: Sequence[Signal] = ()
    ) -> ReflectionResult:
        """Cluster, merge, compress and check tensions for already-extracted signals.

        ``prior_signals`` are already incorporated in a pre-seeded store; they
        count toward metrics and provenance but are not added again.
        """
        started = time.monotonic()
        result = ReflectionResult(signals=list(prior_signals) + list(signals))

        reinforced = 0
        for signal in signals:
            try:
                outcome = self.store.add_signal_with_outcome(signal)
            except FixtureMissingError:
                raise
            except Exception as e:
                logger.warning("Could not cluster signal %s: %s", signal.id, e, exc_info=True)
                result.signal_errors.append(f"{signal.id}: {type(e).__name__}: {e}")
                continue
            if outcome.action == "reinforced":
                reinforced += 1

        result.merge = self.store.merge_similar_principles(self.merge_threshold)
        result.principles = self.store.principles

        compression = self.compressor.compress(result.principles, self.n_threshold)
        result.compression = compression
        result.blocked_candidates = list(compression.blocked_candidates)

        unavailable_before = self.tension_detector.unavailable
        result.tensions = self.tension_detector.detect_tensions(compression.axioms)
        result.tension_checks_unavailable = self.tension_detector.unavailable - unavailable_before
        result.axioms = attach_tensions(compression.axioms, result.tensions)

        result.provenance_distribution = provenance_distribution(result.signals)
        result.promotion = PromotionStats(promoted=len(result.axioms))
        for candidate in result.blocked_candidates:
            reason = candidate.block_reason or "unknown"
            result.promotion.blocked += 1
            result.promotion.reasons[reason] = result.promotion.reasons.get(reason, 0) + 1

        result.metrics = calculate_metrics(
            result.signals, result.principles, result.axioms, reinforced
        )
        result.duration_seconds = time.monotonic() - started

        logger.info(
            "Synthesis complete: %d signals -> %d principles -> %d axioms (%d blocked) in %.1fs",
            len(result.signals),
            len(result.principles),
            len(result.axioms),
            len(result.blocked_candidates),
            result.duration_seconds,
        )
        return result
