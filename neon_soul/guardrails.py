"""Advisory checks on a compression outcome. Warnings never block promotion."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List

logger = logging.getLogger(__name__)

# Upper bound on statements a reader can hold as one identity
RESEARCH_LOAD_LIMIT = 30


@dataclass
class GuardrailWarnings:
    expansion: bool = False
    cognitive_load: bool = False
    fallback_threshold: bool = False
    messages: List[str] = field(default_factory=list)

    @property
    def any(self) -> bool:
        return bool(self.messages)


def check_guardrails(
    axiom_count: int,
    signal_count: int,
    effective_threshold: int,
    configured_threshold: int = 3,
) -> GuardrailWarnings:
    """Flag expansion, overload and sparse-evidence fallback."""
    warnings = GuardrailWarnings()

    if axiom_count > signal_count:
        warnings.expansion = True
        warnings.messages.append(
            f"Expansion instead of compression: {axiom_count} axioms > {signal_count} signals"
        )

    limit = min(signal_count * 0.5, RESEARCH_LOAD_LIMIT)
    if axiom_count > limit:
        warnings.cognitive_load = True
        warnings.messages.append(
            f"Exceeds cognitive load limit: {axiom_count} axioms > {limit:.0f} "
            f"(min(signals*0.5, {RESEARCH_LOAD_LIMIT}))"
        )

    if effective_threshold < configured_threshold and effective_threshold <= 1:
        warnings.fallback_threshold = True
        warnings.messages.append(
            "Fell back to minimum threshold (N>=1): sparse evidence in input"
        )

    for message in warnings.messages:
        logger.warning("Guardrail: %s", message)
    return warnings
