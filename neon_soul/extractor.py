"""Signal extraction: raw text blocks -> classified, immutable signals.

Phases per run:
1. Split every block into candidate lines (markdown markers stripped,
   code fences and short lines skipped). Duplicate candidates are rejected
   here against a lock-guarded seen set.
2. For each candidate, on a bounded thread pool: identity check, then
   dimension / stance / importance / type classification, then optional
   generalization.

Output order always equals candidate order. A candidate that raises is
recorded in ``errors`` and never aborts the batch.
"""

from __future__ import annotations

import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set, Tuple

from neon_soul.protocols import (
    ClassificationCapability,
    ConfigurationError,
    FixtureMissingError,
)
from neon_soul.sanitize import INJECTION_NOTICE, delimit
from neon_soul.types import (
    CLASSIFIABLE_DIMENSIONS,
    Dimension,
    Importance,
    Signal,
    SignalProvenance,
    SignalType,
    SourceBlock,
    Stance,
    new_id,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

MIN_CANDIDATE_LENGTH = 10
DEFAULT_DETECTION_CONFIDENCE = 0.5

MAX_GENERALIZED_LENGTH = 150
MAX_GENERALIZE_INPUT = 500
PRONOUN_PATTERN = re.compile(
    r"\b(i|we|you|my|our|your|me|us|myself|ourselves|yourself|yourselves)\b", re.IGNORECASE
)

_BULLET_RE = re.compile(r"^(?:[-*+]\s+|\d+[.)]\s+)")
_HEADING_RE = re.compile(r"^#+\s*")
_QUOTE_RE = re.compile(r"^>\s*")
_CHECKBOX_RE = re.compile(r"^\[[ xX]\]\s+")
_SPACE_RE = re.compile(r"\s+")


# =============================================================================
# Prompts
# =============================================================================

IDENTITY_INSTRUCTION = (
    "Is this statement an identity signal? An identity signal reveals core "
    "values, beliefs or principles; preferences; goals; boundaries or "
    "constraints; relationship patterns; or behavioral habits. Answer yes or no."
)

DIMENSION_INSTRUCTION = (
    "Which identity dimension does this statement belong to?\n"
    "- identity-core: fundamental self-conception\n"
    "- character-traits: behavioral patterns, personality\n"
    "- voice-presence: communication style\n"
    "- honesty-framework: truth-telling, transparency\n"
    "- boundaries-ethics: ethical limits, what is refused\n"
    "- relationship-dynamics: how others are related to\n"
    "- continuity-growth: learning and change over time"
)

STANCE_INSTRUCTION = (
    "How is this statement held?\n"
    '- assert: stated as true ("I always...", "I believe...")\n'
    '- deny: stated as false ("I never...", "I don\'t...")\n'
    '- question: uncertain or exploratory ("I wonder if...", "Maybe...")\n'
    '- qualify: conditional ("Sometimes...", "When X, I...")\n'
    '- tensioning: holds conflicting values ("I want X but also Y")'
)

IMPORTANCE_INSTRUCTION = (
    "How central is this statement to the writer's identity?\n"
    '- core: fundamental, shapes everything ("Above all...")\n'
    '- supporting: evidence or example of a value ("For instance...")\n'
    '- peripheral: context or a passing mention ("Also...")'
)

SIGNAL_TYPE_INSTRUCTION = "What kind of identity signal is this statement?"

GENERALIZE_TEMPLATE = (
    "Transform this specific statement into an abstract principle.\n\n"
    "The principle should:\n"
    "- Capture the core value or preference\n"
    "- Be general enough to match similar statements\n"
    "- Stay under {max_length} characters\n"
    '- Use imperative form (e.g. "Values X over Y")\n'
    "- Not use pronouns (I, we, you); abstract the actor\n"
    "- Not add concepts absent from the original\n\n"
    "{content}\n\n"
    "<dimension_context>{dimension}</dimension_context>\n\n"
    "{notice}\n\n"
    "Output ONLY the generalized principle, nothing else."
)

_STANCE_VALUES = [s.value for s in Stance]
_IMPORTANCE_VALUES = [i.value for i in Importance]
_SIGNAL_TYPE_VALUES = [t.value for t in SignalType]


# =============================================================================
# Candidates
# =============================================================================


@dataclass(frozen=True)
class Candidate:
    text: str
    line: int
    block: SourceBlock


def clean_line(line: str) -> str:
    """Strip bullet, heading, quote and checkbox markers from one line."""
    text = line.strip()
    text = _HEADING_RE.sub("", text)
    text = _QUOTE_RE.sub("", text)
    text = _BULLET_RE.sub("", text)
    text = _CHECKBOX_RE.sub("", text)
    return text.strip()


def split_candidates(block: SourceBlock) -> List[Candidate]:
    """Candidate lines of one block, in order."""
    candidates = []
    in_fence = False
    for line_number, raw in enumerate(block.text.splitlines(), start=1):
        stripped = raw.strip()
        if stripped.startswith("```") or stripped.startswith("~~~"):
            in_fence = not in_fence
            continue
        if in_fence or not stripped:
            continue
        # Horizontal rules and table rows carry no statements
        if set(stripped) <= set("-*_=| :"):
            continue
        text = clean_line(stripped)
        if len(text) < MIN_CANDIDATE_LENGTH:
            continue
        candidates.append(Candidate(text=text, line=line_number, block=block))
    return candidates


def candidate_key(candidate: Candidate) -> Tuple[str, str]:
    normalized = _SPACE_RE.sub(" ", candidate.text.lower()).strip()
    return (candidate.block.source_file, normalized)


def validate_generalization(original: str, generalized: Optional[str]) -> Optional[str]:
    """Reason the paraphrase is unusable, or None when it is fine."""
    if not generalized or not generalized.strip():
        return "empty output"
    if len(generalized) > MAX_GENERALIZED_LENGTH:
        return f"exceeds {MAX_GENERALIZED_LENGTH} chars (got {len(generalized)})"
    match = PRONOUN_PATTERN.search(generalized)
    if match:
        return f'contains pronoun "{match.group(0)}"'
    if len(generalized) > len(original) * 3 and len(generalized) > 100:
        return "output too long relative to input"
    return None


# =============================================================================
# Extractor
# =============================================================================


@dataclass
class DegradedItem:
    stage: str  # identity, dimension, stance, importance, signal_type, generalize
    item: str  # signal id, or the candidate location when no signal was made
    reason: str


@dataclass
class ExtractionResult:
    signals: List[Signal] = field(default_factory=list)
    degraded: int = 0
    dropped: int = 0
    duplicates: int = 0
    candidates: int = 0
    errors: List[str] = field(default_factory=list)
    degraded_items: List[DegradedItem] = field(default_factory=list)


@dataclass
class _Outcome:
    signal: Optional[Signal] = None
    dropped: bool = False
    degraded: List[DegradedItem] = field(default_factory=list)
    error: Optional[str] = None


class SignalExtractor:
    """Turn SourceBlocks into Signals through the classification capability."""

    def __init__(
        self,
        capability: ClassificationCapability,
        *,
        concurrency: int = 10,
        detection_confidence: float = DEFAULT_DETECTION_CONFIDENCE,
        generalize: bool = False,
    ) -> None:
        if isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency < 1:
            message = f"concurrency must be a positive integer, got {concurrency!r}"
            logger.error(message)
            raise ConfigurationError(message)
        if not 0.0 <= detection_confidence <= 1.0:
            raise ConfigurationError(
                f"detection_confidence must be between 0 and 1, got {detection_confidence!r}"
            )
        self._capability = capability
        self._concurrency = concurrency
        self._detection_confidence = detection_confidence
        self._generalize = generalize
        self._seen: Set[Tuple[str, str]] = set()
        self._seen_lock = threading.Lock()

    @property
    def concurrency(self) -> int:
        return self._concurrency

    def claim(self, key: Tuple[str, str]) -> bool:
        """Record a candidate key; False if it was already seen this run."""
        with self._seen_lock:
            if key in self._seen:
                return False
            self._seen.add(key)
            return True

    def reset(self) -> None:
        with self._seen_lock:
            self._seen.clear()

    def extract(self, blocks: Iterable[SourceBlock]) -> ExtractionResult:
        result = ExtractionResult()
        candidates: List[Candidate] = []
        for block in blocks:
            for candidate in split_candidates(block):
                result.candidates += 1
                if self.claim(candidate_key(candidate)):
                    candidates.append(candidate)
                else:
                    result.duplicates += 1

        if not candidates:
            return result

        with ThreadPoolExecutor(max_workers=self._concurrency) as pool:
            outcomes = list(pool.map(self._process, candidates))

        for candidate, outcome in zip(candidates, outcomes):
            if outcome.error is not None:
                result.errors.append(
                    f"{candidate.block.source_file}:{candidate.line}: {outcome.error}"
                )
                continue
            if outcome.dropped:
                result.dropped += 1
            result.degraded += len(outcome.degraded)
            result.degraded_items.extend(outcome.degraded)
            if outcome.signal is not None:
                result.signals.append(outcome.signal)

        logger.info(
            "Extracted %d signals from %d candidates (%d dropped, %d duplicates, "
            "%d degraded, %d errors)",
            len(result.signals),
            result.candidates,
            result.dropped,
            result.duplicates,
            result.degraded,
            len(result.errors),
        )
        return result

    # ---- Per-candidate work ----

    def _process(self, candidate: Candidate) -> _Outcome:
        try:
            return self._classify_candidate(candidate)
        except FixtureMissingError:
            raise
        except Exception as e:
            logger.warning(
                "Candidate %s:%d failed: %s",
                candidate.block.source_file,
                candidate.line,
                e,
                exc_info=True,
            )
            return _Outcome(error=f"{type(e).__name__}: {e}")

    def _classify_candidate(self, candidate: Candidate) -> _Outcome:
        outcome = _Outcome()
        location = f"{candidate.block.source_file}:{candidate.line}"

        identity = self._capability.classify(
            candidate.text, ["yes", "no"], instruction=IDENTITY_INSTRUCTION
        )
        if identity.category is None:
            logger.warning("Identity check unavailable for %s; candidate skipped", location)
            outcome.degraded.append(DegradedItem("identity", location, "unavailable"))
            return outcome
        if identity.category != "yes" or identity.confidence < self._detection_confidence:
            outcome.dropped = True
            return outcome

        signal_id = new_id("sig")

        def pick(stage: str, categories: List[str], instruction: str, default: str) -> str:
            answer = self._capability.classify(candidate.text, categories, instruction=instruction)
            if answer.category is None:
                logger.warning(
                    "%s classification unavailable for %s; defaulting to %s",
                    stage,
                    signal_id,
                    default,
                )
                outcome.degraded.append(DegradedItem(stage, signal_id, f"defaulted to {default}"))
                return default
            return answer.category

        dimension = pick(
            "dimension",
            list(CLASSIFIABLE_DIMENSIONS),
            DIMENSION_INSTRUCTION,
            Dimension.UNCLASSIFIED.value,
        )
        stance = pick("stance", _STANCE_VALUES, STANCE_INSTRUCTION, Stance.ASSERT.value)
        importance = pick(
            "importance", _IMPORTANCE_VALUES, IMPORTANCE_INSTRUCTION, Importance.SUPPORTING.value
        )
        signal_type = pick(
            "signal_type", _SIGNAL_TYPE_VALUES, SIGNAL_TYPE_INSTRUCTION, SignalType.VALUE.value
        )

        generalized = None
        if self._generalize:
            generalized = self._generalize_text(candidate.text, dimension)
            if generalized is None:
                outcome.degraded.append(
                    DegradedItem("generalize", signal_id, "kept original text")
                )

        block = candidate.block
        outcome.signal = Signal(
            id=signal_id,
            text=candidate.text,
            generalized_text=generalized,
            dimension=Dimension(dimension),
            stance=Stance(stance),
            importance=Importance(importance),
            signal_type=SignalType(signal_type),
            confidence=identity.confidence,
            provenance=SignalProvenance(
                source_category=block.source_category,
                source_file=block.source_file,
                extracted_at=utc_now(),
                elicitation=block.elicitation,
                line=candidate.line,
                source_timestamp=to_iso(block.timestamp),
            ),
        )
        return outcome

    def _generalize_text(self, text: str, dimension: str) -> Optional[str]:
        cleaned = " ".join(text.replace("`", "'").split())
        prompt = GENERALIZE_TEMPLATE.format(
            max_length=MAX_GENERALIZED_LENGTH,
            content=delimit(cleaned, "signal_text", MAX_GENERALIZE_INPUT),
            dimension=dimension,
            notice=INJECTION_NOTICE,
        )
        reply = self._capability.generate(prompt)
        if reply is not None:
            reply = reply.strip().strip('"').strip()
        problem = validate_generalization(text, reply)
        if problem is not None:
            logger.warning("Generalization rejected (%s); keeping original text", problem)
            return None
        return reply
