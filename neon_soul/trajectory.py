"""Run-to-run stability of the axiom set.

Each run records the hashes of its promoted axiom texts. Stability is the
share of hashes carried over from the previous run:

    stability = unchanged / max(len(current), len(previous))

A trajectory is stable once the latest point reaches 0.85.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from neon_soul.types import TrajectoryPoint, utc_now

MAX_TRAJECTORY_POINTS = 100
STABILITY_THRESHOLD = 0.85


def hash_text(text: str) -> str:
    normalized = " ".join(text.lower().split())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


@dataclass
class TrajectoryMetrics:
    stabilization_run: int = 0  # Run index after which stability held; 0 if never
    attractor_strength: float = 0.0  # Latest stability
    variance: float = 0.0  # Spread of stability before stabilization
    history: List[float] = field(default_factory=list)
    is_stable: bool = False


class TrajectoryTracker:
    def __init__(
        self,
        points: Optional[Iterable[TrajectoryPoint]] = None,
        *,
        threshold: float = STABILITY_THRESHOLD,
        max_points: int = MAX_TRAJECTORY_POINTS,
    ) -> None:
        self.threshold = threshold
        self.max_points = max_points
        self._points: List[TrajectoryPoint] = list(points or [])[-max_points:]

    @property
    def points(self) -> List[TrajectoryPoint]:
        return list(self._points)

    def record(
        self, axiom_texts: Iterable[str], principle_count: int, run_at: Optional[str] = None
    ) -> TrajectoryPoint:
        current = sorted({hash_text(t) for t in axiom_texts})
        previous = set(self._points[-1].axiom_hashes) if self._points else set()
        largest = max(len(current), len(previous))
        if not self._points:
            stability = 0.0
        elif largest == 0:
            stability = 1.0
        else:
            stability = sum(1 for h in current if h in previous) / largest

        point = TrajectoryPoint(
            run_at=run_at or utc_now(),
            axiom_count=len(current),
            principle_count=principle_count,
            stability=stability,
            axiom_hashes=current,
        )
        self._points.append(point)
        if len(self._points) > self.max_points:
            self._points = self._points[-self.max_points :]
        return point

    def metrics(self) -> TrajectoryMetrics:
        if len(self._points) < 2:
            return TrajectoryMetrics(history=[p.stability for p in self._points])

        history = [p.stability for p in self._points]
        stabilized_at = 0
        for i in range(1, len(history)):
            if all(s >= self.threshold for s in history[i:]):
                stabilized_at = i
                break

        before = history[1:stabilized_at] if stabilized_at else history[1:]
        mean = sum(before) / len(before) if before else 0.0
        variance = sum((s - mean) ** 2 for s in before) / len(before) if before else 0.0

        return TrajectoryMetrics(
            stabilization_run=stabilized_at,
            attractor_strength=history[-1],
            variance=variance,
            history=history,
            is_stable=history[-1] >= self.threshold,
        )


def format_trajectory_report(metrics: TrajectoryMetrics) -> str:
    lines = [
        "## Trajectory",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Stabilized after run | {metrics.stabilization_run or '-'} |",
        f"| Attractor strength | {metrics.attractor_strength:.3f} |",
        f"| Variance | {metrics.variance:.4f} |",
        f"| Stable | {'Yes' if metrics.is_stable else 'No'} |",
        "",
    ]
    for i, stability in enumerate(metrics.history, start=1):
        bar = "█" * min(20, round(stability * 20))
        lines.append(f"{i}. {round(stability * 100)}% {bar}")
    return "\n".join(lines)
