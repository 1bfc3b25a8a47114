"""Promotion of principles into axioms.

Steps, in order:
1. Candidates: principles with n_count >= threshold and a classified dimension.
2. Anti-echo-chamber: a candidate needs at least one external-provenance
   signal or one question-stance signal. Others are blocked with a reason.
3. Cognitive-load cap: qualifying candidates are ranked by weighted
   strength (then n_count, then id) and the excess is deferred with
   reason "cap exceeded".
4. Canonical forms: native text plus an optional compact notation from
   one generate call per promoted axiom.

Cascade: when fewer than ``min_axiom_target`` axioms would be promoted at
the configured threshold, lower thresholds are tried in turn and the
first that reaches the target is used. If none does, the configured
threshold stands.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from neon_soul.guardrails import GuardrailWarnings, check_guardrails
from neon_soul.metrics import compression_ratio, count_tokens
from neon_soul.protocols import ClassificationCapability, ConfigurationError
from neon_soul.sanitize import INJECTION_NOTICE, delimit
from neon_soul.types import (
    Axiom,
    CanonicalForms,
    Dimension,
    Principle,
    new_id,
    tier_for_count,
)

logger = logging.getLogger(__name__)

DEFAULT_N_THRESHOLD = 3
DEFAULT_COGNITIVE_LOAD_CAP = 25
MIN_AXIOM_TARGET = 3

REASON_ECHO_CHAMBER = (
    "anti-echo-chamber: requires external provenance or a questioning stance"
)
REASON_CAP_EXCEEDED = "cap exceeded"

NOTATION_TEMPLATE = (
    "Express this principle in compact notation with:\n"
    "1. An emoji indicator that captures the essence\n"
    "2. A single CJK character anchor (e.g. 誠 for honesty, 安 for safety)\n"
    '3. Mathematical notation if there is a relationship (e.g. "A > B", "¬X")\n\n'
    "{content}\n\n"
    "{notice}\n\n"
    "Format your response as: [emoji] [CJK]: [math or brief summary]\n"
    'Example: "🎯 誠: honesty > performance"\n'
    "If there is no clear mathematical relationship, use a 2-3 word summary.\n"
    "Respond with ONLY the formatted notation, nothing else."
)

_NOTATION_RE = re.compile(r"^\s*(\S+)\s+(\S)\s*[:：]\s*(.+?)\s*$")
_MATH_MARKERS = set("<>=≥≤¬∧∨→↔≠∀∃+×÷")


def _is_cjk(char: str) -> bool:
    return "CJK" in unicodedata.name(char, "") or "぀" <= char <= "ヿ"


def _is_emoji(token: str) -> bool:
    return all(not ch.isalnum() or unicodedata.category(ch) == "So" for ch in token) and any(
        unicodedata.category(ch) in ("So", "Sk") for ch in token
    )


def parse_notation(reply: Optional[str], native: str) -> CanonicalForms:
    """Canonical forms from a notation reply; native only when it does not parse."""
    lines = (reply or "").strip().splitlines()
    if not lines:
        return CanonicalForms(native=native)
    line = lines[0].strip().strip('"').strip()
    match = _NOTATION_RE.match(line)
    if match is None:
        return CanonicalForms(native=native)
    emoji, cjk, rest = match.groups()
    if not _is_emoji(emoji) or not _is_cjk(cjk):
        return CanonicalForms(native=native)
    math_form = rest if any(ch in _MATH_MARKERS for ch in rest) else None
    return CanonicalForms(native=native, notated=line, cjk=cjk, emoji=emoji, math=math_form)


def echo_chamber_blocker(principle: Principle) -> Optional[str]:
    """Reason the principle may not be promoted, or None."""
    if principle.has_external or principle.has_question:
        return None
    return REASON_ECHO_CHAMBER


def rank_key(principle: Principle) -> Tuple[float, int, str]:
    return (-principle.weight, -principle.n_count, principle.id)


# =============================================================================
# Results
# =============================================================================


@dataclass
class CompressionMetrics:
    principles_processed: int = 0
    candidates: int = 0
    promoted: int = 0
    blocked: int = 0
    deferred: int = 0
    unconverged: int = 0
    original_tokens: int = 0
    compressed_tokens: int = 0
    compression_ratio: float = 0.0
    effective_threshold: int = DEFAULT_N_THRESHOLD
    axiom_count_by_threshold: Dict[int, int] = field(default_factory=dict)


@dataclass
class CompressionResult:
    axioms: List[Axiom] = field(default_factory=list)
    blocked_candidates: List[Axiom] = field(default_factory=list)
    metrics: CompressionMetrics = field(default_factory=CompressionMetrics)
    warnings: List[str] = field(default_factory=list)
    guardrails: GuardrailWarnings = field(default_factory=GuardrailWarnings)


# =============================================================================
# Compressor
# =============================================================================


class Compressor:
    def __init__(
        self,
        capability: Optional[ClassificationCapability] = None,
        *,
        cognitive_load_cap: int = DEFAULT_COGNITIVE_LOAD_CAP,
        cascade: bool = False,
        min_axiom_target: int = MIN_AXIOM_TARGET,
        generate_notation: bool = True,
    ) -> None:
        for name, value in (
            ("cognitive_load_cap", cognitive_load_cap),
            ("min_axiom_target", min_axiom_target),
        ):
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")
        self._capability = capability
        self._cap = cognitive_load_cap
        self._cascade = cascade
        self._min_target = min_axiom_target
        self._notation = generate_notation and capability is not None

    def compress(
        self, principles: Sequence[Principle], n_threshold: int = DEFAULT_N_THRESHOLD
    ) -> CompressionResult:
        if isinstance(n_threshold, bool) or not isinstance(n_threshold, int) or n_threshold < 1:
            raise ConfigurationError(f"n_threshold must be a positive integer, got {n_threshold!r}")

        classified = [p for p in principles if p.dimension is not Dimension.UNCLASSIFIED]
        by_threshold = {
            t: sum(1 for p in classified if p.n_count >= t and echo_chamber_blocker(p) is None)
            for t in range(n_threshold, 0, -1)
        }
        threshold = self._effective_threshold(n_threshold, by_threshold)

        candidates = [p for p in classified if p.n_count >= threshold]
        result = CompressionResult()
        metrics = result.metrics
        metrics.principles_processed = len(principles)
        metrics.candidates = len(candidates)
        metrics.unconverged = len(principles) - len(candidates)
        metrics.effective_threshold = threshold
        metrics.axiom_count_by_threshold = by_threshold

        qualifying: List[Principle] = []
        for principle in candidates:
            reason = echo_chamber_blocker(principle)
            if reason is None:
                qualifying.append(principle)
            else:
                result.blocked_candidates.append(self._axiom(principle).as_blocked(reason))
                metrics.blocked += 1

        qualifying.sort(key=rank_key)
        promoted, deferred = qualifying[: self._cap], qualifying[self._cap :]
        for principle in deferred:
            result.blocked_candidates.append(
                self._axiom(principle).as_blocked(REASON_CAP_EXCEEDED)
            )
        metrics.deferred = len(deferred)
        if deferred:
            logger.info(
                "Deferred %d candidate(s) over the cognitive load cap (%d)", len(deferred), self._cap
            )

        for principle in promoted:
            result.axioms.append(self._axiom(principle, with_notation=self._notation))
        metrics.promoted = len(result.axioms)

        metrics.original_tokens = count_tokens(" ".join(p.representative_text for p in principles))
        metrics.compressed_tokens = count_tokens(
            " ".join(a.canonical_forms.notated or a.text for a in result.axioms)
        )
        metrics.compression_ratio = compression_ratio(
            metrics.original_tokens, metrics.compressed_tokens
        )

        signal_count = sum(p.n_count for p in principles)
        result.guardrails = check_guardrails(
            len(result.axioms), signal_count, threshold, n_threshold
        )
        result.warnings.extend(result.guardrails.messages)

        logger.info(
            "Compressed %d principles: %d promoted, %d blocked, %d deferred (N>=%d)",
            len(principles),
            metrics.promoted,
            metrics.blocked,
            metrics.deferred,
            threshold,
        )
        return result

    def _effective_threshold(self, configured: int, by_threshold: Dict[int, int]) -> int:
        if not self._cascade or by_threshold.get(configured, 0) >= self._min_target:
            return configured
        for threshold in range(configured - 1, 0, -1):
            if by_threshold[threshold] >= self._min_target:
                logger.info(
                    "Cascade: %d axiom(s) at N>=%d, using N>=%d (%d axioms)",
                    by_threshold[configured],
                    configured,
                    threshold,
                    by_threshold[threshold],
                )
                return threshold
        return configured

    def _axiom(self, principle: Principle, *, with_notation: bool = False) -> Axiom:
        forms = CanonicalForms(native=principle.representative_text)
        if with_notation:
            forms = self._notate(principle.representative_text)
        return Axiom(
            id=new_id("ax"),
            canonical_forms=forms,
            derived_from_principles=(principle.id,),
            dimension=principle.dimension,
            tier=tier_for_count(principle.n_count),
            weight=principle.weight,
            n_count=principle.n_count,
            provenance_diversity=principle.provenance_diversity,
            provenance_summary=principle.provenance_summary(),
        )

    def _notate(self, native: str) -> CanonicalForms:
        prompt = NOTATION_TEMPLATE.format(
            content=delimit(native, "principle"), notice=INJECTION_NOTICE
        )
        reply = self._capability.generate(prompt) if self._capability else None
        forms = parse_notation(reply, native)
        if reply is not None and forms.notated is None:
            logger.warning("Notation reply did not parse; keeping native form only")
        return forms
