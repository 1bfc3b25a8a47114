"""ClassificationService: the narrow capability every stage consumes.

Wraps a ModelProtocol into classify() / generate() / compare_similarity().
Stages never see the model directly.

Failure policy: provider errors and invalid replies are retried a bounded
number of times (transient errors with backoff, invalid classifications
with a corrective re-prompt). When attempts run out the call returns its
"unavailable" value (``ClassificationResult(None)`` or ``None``) and logs a
warning. Nothing here raises on provider failure.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from neon_soul.protocols import (
    TRANSIENT_ERROR_CLASSES,
    ClassificationResult,
    FixtureMissingError,
    ModelMessage,
    ModelProtocol,
    ProviderError,
)
from neon_soul.sanitize import (
    INJECTION_NOTICE,
    delimit,
    quote_for_prompt,
    sanitize_categories,
    sanitize_for_prompt,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 2
DEFAULT_BACKOFF_SECONDS = 0.5

# Verbal confidence labels to scores
CONFIDENCE_SCORES: Dict[str, float] = {"high": 0.9, "medium": 0.7, "low": 0.5}

# Confidence when the category had to be recovered from free text
_EXACT_TEXT_CONFIDENCE = 0.8
_WORD_MATCH_CONFIDENCE = 0.6
_PARTIAL_MATCH_CONFIDENCE = 0.4

REFUSAL_PATTERNS = (
    "cannot compare",
    "unable to determine",
    "not enough information",
    "i cannot",
    "i'm unable",
    "i am unable",
)


# =============================================================================
# Prompts
# =============================================================================

CLASSIFY_SYSTEM = (
    "You are a precise text classifier. You choose exactly one category from "
    "the list you are given and never invent new categories."
)

CLASSIFY_TEMPLATE = (
    "{instruction}\n\n"
    "{content}\n\n"
    "{notice}\n\n"
    "Valid categories: {categories}\n\n"
    'Respond with ONLY a JSON object: {{"category": "<one of the valid categories>", '
    '"confidence": <0.0-1.0>, "reasoning": "<short reason>"}}'
)

CORRECTIVE_TEMPLATE = (
    "Your previous response {previous} was invalid. "
    "You MUST respond with exactly one of: {categories}. "
    'Respond with ONLY a JSON object: {{"category": "...", "confidence": 0.0-1.0}}'
)

COMPARE_TEMPLATE = (
    "Compare these two statements for semantic equivalence. Do they express the "
    "same core meaning, even if worded differently?\n\n"
    "Statement A:\n{text_a}\n\n"
    "Statement B:\n{text_b}\n\n"
    "{notice}\n\n"
    "Respond with ONLY a JSON object in this exact format:\n"
    '{{"equivalent": true/false, "confidence": "high"/"medium"/"low"}}\n'
    "where confidence reflects how certain you are of your assessment."
)


# =============================================================================
# Reply parsing
# =============================================================================


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence if present."""
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        lines = lines[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        text = "\n".join(lines).strip()
    return text


def parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Parse the first JSON object in a model reply, or None."""
    cleaned = strip_code_fences(text)
    try:
        data = json.loads(cleaned)
    except (json.JSONDecodeError, ValueError):
        match = re.search(r"\{.*\}", cleaned, re.DOTALL)
        if not match:
            return None
        try:
            data = json.loads(match.group(0))
        except (json.JSONDecodeError, ValueError):
            return None
    return data if isinstance(data, dict) else None


def is_refusal(text: str) -> bool:
    lowered = text.lower()
    return any(pattern in lowered for pattern in REFUSAL_PATTERNS)


def _coerce_confidence(value: Any, default: float) -> float:
    if isinstance(value, str):
        label = value.strip().lower()
        if label in CONFIDENCE_SCORES:
            return CONFIDENCE_SCORES[label]
        try:
            value = float(label)
        except ValueError:
            return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if value != value:
        return default
    return max(0.0, min(1.0, float(value)))


def _match_category_text(reply: str, categories: Sequence[str]) -> Optional[ClassificationResult]:
    """Recover a category from a free-text reply.

    Tries, in order: the whole reply equals a category; a category appears
    as a whole word; every part of a hyphenated category appears.
    """
    lowered = reply.strip().strip("\"'`.!").lower()
    by_lower = {c.lower(): c for c in categories}
    if lowered in by_lower:
        return ClassificationResult(by_lower[lowered], _EXACT_TEXT_CONFIDENCE, "exact text")

    # Longest first so "identity-core" wins over "core"
    for cat in sorted(categories, key=len, reverse=True):
        pattern = r"(?<![\w-])" + re.escape(cat.lower()) + r"(?![\w-])"
        if re.search(pattern, lowered):
            return ClassificationResult(cat, _WORD_MATCH_CONFIDENCE, "word match")

    words = set(re.findall(r"[a-z0-9]+", lowered))
    for cat in sorted(categories, key=len, reverse=True):
        parts = [p for p in re.split(r"[-_\s]+", cat.lower()) if p]
        if len(parts) > 1 and all(p in words for p in parts):
            return ClassificationResult(cat, _PARTIAL_MATCH_CONFIDENCE, "partial match")
    return None


def parse_classification(reply: str, categories: Sequence[str]) -> Optional[ClassificationResult]:
    """Parse a classify reply. None means the reply was invalid."""
    if not reply or is_refusal(reply):
        return None

    data = parse_json_object(reply)
    if data is not None:
        raw_category = data.get("category")
        if not isinstance(raw_category, str):
            return None
        by_lower = {c.lower(): c for c in categories}
        category = by_lower.get(raw_category.strip().lower())
        if category is None:
            recovered = _match_category_text(raw_category, categories)
            if recovered is None:
                return None
            category = recovered.category
        reasoning = data.get("reasoning")
        return ClassificationResult(
            category=category,
            confidence=_coerce_confidence(data.get("confidence"), _EXACT_TEXT_CONFIDENCE),
            reasoning=reasoning if isinstance(reasoning, str) else "",
        )

    return _match_category_text(reply, categories)


def parse_equivalence(reply: str) -> Optional[float]:
    """Parse a compare reply into a similarity score in [0, 1]."""
    if not reply or is_refusal(reply):
        return None
    data = parse_json_object(reply)
    if data is None or not isinstance(data.get("equivalent"), bool):
        return None
    confidence = _coerce_confidence(data.get("confidence"), CONFIDENCE_SCORES["low"])
    return confidence if data["equivalent"] else 1.0 - confidence


# =============================================================================
# Service
# =============================================================================


@dataclass
class ClassificationStats:
    """Call counters, shared across extractor threads."""

    classify_calls: int = 0
    classify_unavailable: int = 0
    generate_calls: int = 0
    generate_unavailable: int = 0
    compare_calls: int = 0
    compare_unavailable: int = 0
    retries: int = 0
    corrective_reprompts: int = 0

    @property
    def unavailable(self) -> int:
        return self.classify_unavailable + self.generate_unavailable + self.compare_unavailable


class ClassificationService:
    """ClassificationCapability implementation over a ModelProtocol.

    Thread-safe: the extractor calls it from a worker pool.
    """

    def __init__(
        self,
        model: ModelProtocol,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")
        self._model = model
        self._max_retries = max_retries
        self._backoff = backoff_seconds
        self._sleep = sleep
        self._stats = ClassificationStats()
        self._stats_lock = threading.Lock()

    @property
    def model_id(self) -> str:
        return self._model.model_id

    @property
    def stats(self) -> ClassificationStats:
        with self._stats_lock:
            return ClassificationStats(**asdict(self._stats))

    # ---- Capability operations ----

    def classify(
        self,
        text: str,
        categories: Sequence[str],
        *,
        instruction: Optional[str] = None,
    ) -> ClassificationResult:
        """Pick one of ``categories`` for ``text``.

        Returns ``ClassificationResult(None)`` when unavailable.
        """
        valid = sanitize_categories(categories)
        self._bump("classify_calls")
        prompt = CLASSIFY_TEMPLATE.format(
            instruction=instruction or "Classify the statement below.",
            content=delimit(text, "statement"),
            notice=INJECTION_NOTICE,
            categories=", ".join(valid),
        )

        def corrective(previous: str) -> str:
            self._bump("corrective_reprompts")
            return CORRECTIVE_TEMPLATE.format(
                previous=quote_for_prompt(previous, max_length=200),
                categories=", ".join(valid),
            )

        result = self._run(
            "classify",
            [ModelMessage(role="user", content=prompt)],
            system=CLASSIFY_SYSTEM,
            parse=lambda reply: parse_classification(reply, valid),
            corrective=corrective,
        )
        return result if result is not None else ClassificationResult(None, 0.0, "unavailable")

    def generate(self, prompt: str, *, system: Optional[str] = None) -> Optional[str]:
        """Free-text generation; None when unavailable.

        Callers are responsible for delimiting untrusted text in ``prompt``.
        """
        self._bump("generate_calls")
        return self._run(
            "generate",
            [ModelMessage(role="user", content=prompt)],
            system=system,
            parse=lambda reply: reply or None,
        )

    def compare_similarity(self, text_a: str, text_b: str) -> Optional[float]:
        """Semantic equivalence score in [0, 1]; None when unavailable."""
        if not (text_a or "").strip() or not (text_b or "").strip():
            return 0.0
        self._bump("compare_calls")
        prompt = COMPARE_TEMPLATE.format(
            text_a=delimit(text_a, "statement_a"),
            text_b=delimit(text_b, "statement_b"),
            notice=INJECTION_NOTICE,
        )
        return self._run(
            "compare",
            [ModelMessage(role="user", content=prompt)],
            system=None,
            parse=parse_equivalence,
        )

    # ---- Internal helpers ----

    def _bump(self, counter: str) -> None:
        with self._stats_lock:
            setattr(self._stats, counter, getattr(self._stats, counter) + 1)

    def _run(
        self,
        op: str,
        messages: List[ModelMessage],
        *,
        system: Optional[str],
        parse: Callable[[str], Any],
        corrective: Optional[Callable[[str], str]] = None,
    ) -> Any:
        """Bounded attempt loop shared by every operation."""
        messages = list(messages)
        last_problem = "no attempts made"
        attempts = self._max_retries + 1

        for attempt in range(attempts):
            if attempt:
                self._bump("retries")
            try:
                response = self._model.generate(messages, system=system, temperature=0.0)
            except FixtureMissingError:
                raise
            except ProviderError as e:
                last_problem = f"{e.error_class}: {e}"
                if e.error_class not in TRANSIENT_ERROR_CLASSES:
                    break
                if attempt + 1 < attempts:
                    self._sleep(self._backoff * (2**attempt))
                continue
            except Exception as e:
                # Provider bugs are treated as unavailability, not as fatal
                logger.debug("Model %s raised during %s", self.model_id, op, exc_info=True)
                last_problem = f"{type(e).__name__}: {e}"
                break

            reply = (response.content or "").strip()
            value = parse(reply)
            if value is not None:
                return value
            last_problem = f"invalid reply {sanitize_for_prompt(reply, 80)!r}"
            if corrective is not None:
                messages.append(ModelMessage(role="assistant", content=reply))
                messages.append(ModelMessage(role="user", content=corrective(reply)))

        self._bump(f"{op}_unavailable")
        logger.warning(
            "Classification capability unavailable: op=%s model=%s attempts=%d reason=%s",
            op,
            self.model_id,
            attempt + 1,
            last_problem,
        )
        return None


class NullCapability:
    """Capability used when no model is configured: everything is unavailable.

    The pipeline still runs and reports every item as degraded.
    """

    model_id = "none"

    def __init__(self) -> None:
        self.stats = ClassificationStats()

    def classify(
        self,
        text: str,
        categories: Sequence[str],
        *,
        instruction: Optional[str] = None,
    ) -> ClassificationResult:
        self.stats.classify_calls += 1
        self.stats.classify_unavailable += 1
        return ClassificationResult(None, 0.0, "no model configured")

    def generate(self, prompt: str, *, system: Optional[str] = None) -> Optional[str]:
        self.stats.generate_calls += 1
        self.stats.generate_unavailable += 1
        return None

    def compare_similarity(self, text_a: str, text_b: str) -> Optional[float]:
        self.stats.compare_calls += 1
        self.stats.compare_unavailable += 1
        return None


def create_classification_service(
    model: Optional[ModelProtocol], *, max_retries: int = DEFAULT_MAX_RETRIES
):
    """Factory used by the CLI and the cycle manager."""
    if model is None:
        logger.warning("No model configured; classification will degrade to defaults")
        return NullCapability()
    return ClassificationService(model, max_retries=max_retries)
