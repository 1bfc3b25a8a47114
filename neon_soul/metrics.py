"""Compression and coverage metrics for a synthesis run."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List, Sequence

from neon_soul.types import CLASSIFIABLE_DIMENSIONS, Axiom, Principle, Signal


def count_tokens(text: str) -> int:
    """Approximate token count: words x 1.3, rounded up."""
    return math.ceil(len((text or "").split()) * 1.3)


def compression_ratio(original_tokens: int, compressed_tokens: int) -> float:
    return original_tokens / max(1, compressed_tokens)


def semantic_density(principle_count: int, token_count: int) -> float:
    """Principles per 100 tokens."""
    if token_count <= 0:
        return 0.0
    return principle_count / token_count * 100


@dataclass
class DimensionCoverage:
    dimension: str
    signal_count: int = 0
    principle_count: int = 0
    axiom_count: int = 0


def dimension_coverage(
    signals: Sequence[Signal], principles: Sequence[Principle], axioms: Sequence[Axiom]
) -> List[DimensionCoverage]:
    coverage = []
    for dimension in CLASSIFIABLE_DIMENSIONS:
        coverage.append(
            DimensionCoverage(
                dimension=dimension,
                signal_count=sum(1 for s in signals if s.dimension.value == dimension),
                principle_count=sum(1 for p in principles if p.dimension.value == dimension),
                axiom_count=sum(
                    1 for a in axioms if a.dimension.value == dimension and not a.blocked
                ),
            )
        )
    return coverage


@dataclass
class SynthesisMetrics:
    original_tokens: int = 0
    compressed_tokens: int = 0
    compression_ratio: float = 0.0
    semantic_density: float = 0.0
    signal_count: int = 0
    principle_count: int = 0
    axiom_count: int = 0
    convergence_rate: float = 0.0  # Share of signals that reinforced a principle
    coverage: List[DimensionCoverage] = field(default_factory=list)

    @property
    def dimensions_covered(self) -> int:
        return sum(1 for c in self.coverage if c.axiom_count > 0)


def calculate_metrics(
    signals: Sequence[Signal],
    principles: Sequence[Principle],
    axioms: Sequence[Axiom],
    reinforced_count: int = 0,
) -> SynthesisMetrics:
    promoted = [a for a in axioms if not a.blocked]
    original = count_tokens(" ".join(s.text for s in signals))
    compressed = count_tokens(" ".join(a.text for a in promoted))
    return SynthesisMetrics(
        original_tokens=original,
        compressed_tokens=compressed,
        compression_ratio=compression_ratio(original, compressed),
        semantic_density=semantic_density(len(principles), compressed),
        signal_count=len(signals),
        principle_count=len(principles),
        axiom_count=len(promoted),
        convergence_rate=reinforced_count / len(signals) if signals else 0.0,
        coverage=dimension_coverage(signals, principles, axioms),
    )


def format_metrics_report(metrics: SynthesisMetrics) -> str:
    lines = [
        "## Compression Metrics",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Original tokens | {metrics.original_tokens} |",
        f"| Compressed tokens | {metrics.compressed_tokens} |",
        f"| **Compression ratio** | **{metrics.compression_ratio:.2f}:1** |",
        f"| Semantic density | {metrics.semantic_density:.2f} principles/100 tokens |",
        f"| Signals extracted | {metrics.signal_count} |",
        f"| Principles formed | {metrics.principle_count} |",
        f"| Axioms promoted | {metrics.axiom_count} |",
        f"| Convergence rate | {metrics.convergence_rate * 100:.1f}% |",
        "",
        "### Dimension Coverage",
        "",
        "| Dimension | Signals | Principles | Axioms |",
        "|-----------|---------|------------|--------|",
    ]
    for c in metrics.coverage:
        lines.append(
            f"| {c.dimension} | {c.signal_count} | {c.principle_count} | {c.axiom_count} |"
        )
    return "\n".join(lines)
