"""Signal weighting and principle centrality.

The weighting is a strategy object so it can be tuned and tested on its
own. ``WeightedScoring`` multiplies three per-signal factors:

    weight = importance_factor * provenance_factor * elicitation_factor

and a principle's weighted strength is the sum over its signals. Factors
are relative: doubling every factor leaves rankings unchanged but shifts
centrality, so thresholds and factors are tuned together.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable

from neon_soul.protocols import ConfigurationError
from neon_soul.types import (
    Centrality,
    Elicitation,
    Importance,
    Signal,
    SignalRef,
    SourceCategory,
)


# Provenance: external evidence exists independently of the agent and
# counts most; self-authored text counts least for diversity.
DEFAULT_PROVENANCE_FACTORS: Dict[SourceCategory, float] = {
    SourceCategory.EXTERNAL: 1.0,
    SourceCategory.CURATED: 0.5,
    SourceCategory.SELF: 0.25,
}

# Elicitation: volunteered statements say more than answers to a request.
DEFAULT_ELICITATION_FACTORS: Dict[Elicitation, float] = {
    Elicitation.AGENT_INITIATED: 1.0,
    Elicitation.USER_ELICITED: 1.0 / 3.0,
}

DEFAULT_IMPORTANCE_FACTORS: Dict[Importance, float] = {
    Importance.CORE: 1.0,
    Importance.SUPPORTING: 0.5,
    Importance.PERIPHERAL: 0.25,
}


@dataclass
class CentralityThresholds:
    """Weighted-strength cut-offs for principle centrality."""

    foundational: float = 0.5
    core: float = 0.2

    def validate(self) -> None:
        if self.core < 0 or self.foundational < 0:
            raise ConfigurationError("centrality thresholds must be non-negative")
        if self.foundational < self.core:
            raise ConfigurationError(
                f"foundational threshold ({self.foundational}) must be >= "
                f"core threshold ({self.core})"
            )


@dataclass
class WeightedScoring:
    """Default ScoringStrategy: importance x provenance x elicitation."""

    importance_factors: Dict[Importance, float] = field(
        default_factory=lambda: dict(DEFAULT_IMPORTANCE_FACTORS)
    )
    provenance_factors: Dict[SourceCategory, float] = field(
        default_factory=lambda: dict(DEFAULT_PROVENANCE_FACTORS)
    )
    elicitation_factors: Dict[Elicitation, float] = field(
        default_factory=lambda: dict(DEFAULT_ELICITATION_FACTORS)
    )
    thresholds: CentralityThresholds = field(default_factory=CentralityThresholds)

    def __post_init__(self) -> None:
        self.thresholds.validate()
        for name, table in (
            ("importance", self.importance_factors),
            ("provenance", self.provenance_factors),
            ("elicitation", self.elicitation_factors),
        ):
            negative = [k for k, v in table.items() if v < 0]
            if negative:
                raise ConfigurationError(f"{name} factors must be non-negative: {negative}")

    def factor_weight(
        self,
        importance: Importance,
        source_category: SourceCategory,
        elicitation: Elicitation,
    ) -> float:
        return (
            self.importance_factors.get(importance, 0.0)
            * self.provenance_factors.get(source_category, 0.0)
            * self.elicitation_factors.get(elicitation, 0.0)
        )

    def signal_weight(self, signal: Signal) -> float:
        return self.factor_weight(
            signal.importance,
            signal.provenance.source_category,
            signal.provenance.elicitation,
        )

    def weighted_strength(self, refs: Iterable[SignalRef]) -> float:
        return sum(
            self.factor_weight(ref.importance, ref.source_category, ref.elicitation)
            for ref in refs
        )

    def centrality(self, strength: float) -> Centrality:
        if strength >= self.thresholds.foundational:
            return Centrality.FOUNDATIONAL
        if strength >= self.thresholds.core:
            return Centrality.CORE
        return Centrality.SUPPORTING


class CountScoring:
    """Every signal weighs 1.0; strength is the member count.

    Useful as a baseline when tuning ``WeightedScoring``.
    """

    def __init__(self, thresholds: CentralityThresholds) -> None:
        thresholds.validate()
        self.thresholds = thresholds

    def signal_weight(self, signal: Signal) -> float:
        return 1.0

    def weighted_strength(self, refs: Iterable[SignalRef]) -> float:
        return float(sum(1 for _ in refs))

    def centrality(self, strength: float) -> Centrality:
        if strength >= self.thresholds.foundational:
            return Centrality.FOUNDATIONAL
        if strength >= self.thresholds.core:
            return Centrality.CORE
        return Centrality.SUPPORTING
