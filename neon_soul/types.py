"""Data types for the synthesis pipeline.

Signal -> Principle -> Axiom, plus Tension and the persisted CycleState.
Signals, tensions and axioms are frozen: downstream stages derive new
records instead of mutating what they were given.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple, Union


def utc_now() -> str:
    """Get current timestamp as ISO string in UTC."""
    return datetime.now(timezone.utc).isoformat()


class ParseDatetimeError(ValueError):
    """Structured parse failure for ISO datetime strings."""

    def __init__(self, value: str, cause: Exception):
        super().__init__(f"Invalid ISO datetime string: {value!r}")
        self.value = value
        self.cause = cause


def parse_datetime(s: Optional[str], *, strict: bool = False) -> Optional[datetime]:
    """Parse ISO datetime string. Naive values are assumed to be UTC.

    Returns None for empty or unparseable input unless ``strict`` is set.
    """
    if not s:
        return None
    try:
        parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except (TypeError, ValueError) as exc:
        if strict:
            raise ParseDatetimeError(s, exc) from exc
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_iso(value: Union[str, datetime, None]) -> Optional[str]:
    """Canonical textual form for every persisted timestamp.

    Accepts datetimes or ISO strings (including a trailing ``Z``) and
    always returns an ISO-8601 string normalized to UTC.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc).isoformat()
    parsed = parse_datetime(value)
    if parsed is None:
        return None
    return parsed.astimezone(timezone.utc).isoformat()


def new_id(prefix: str) -> str:
    """Collision-resistant id (uuid4) with a readable type prefix."""
    return f"{prefix}_{uuid.uuid4().hex}"


# === Enums ===


class Dimension(str, Enum):
    """Identity dimension taxonomy."""

    IDENTITY_CORE = "identity-core"
    CHARACTER_TRAITS = "character-traits"
    VOICE_PRESENCE = "voice-presence"
    HONESTY_FRAMEWORK = "honesty-framework"
    BOUNDARIES_ETHICS = "boundaries-ethics"
    RELATIONSHIP_DYNAMICS = "relationship-dynamics"
    CONTINUITY_GROWTH = "continuity-growth"
    UNCLASSIFIED = "unclassified"  # Fallback bucket, excluded from promotion


VALID_DIMENSION_VALUES = frozenset(d.value for d in Dimension)

# Dimensions a classifier may choose and that count toward promotion
CLASSIFIABLE_DIMENSIONS: Tuple[str, ...] = tuple(
    d.value for d in Dimension if d is not Dimension.UNCLASSIFIED
)


class Stance(str, Enum):
    """How a signal is held."""

    ASSERT = "assert"  # Stated as true
    DENY = "deny"  # Stated as false
    QUESTION = "question"  # Uncertainty or exploration
    QUALIFY = "qualify"  # Conditional
    TENSIONING = "tensioning"  # Holds a value in conflict with another


VALID_STANCE_VALUES = frozenset(s.value for s in Stance)


class Importance(str, Enum):
    """How central a signal is to the text it came from."""

    CORE = "core"
    SUPPORTING = "supporting"
    PERIPHERAL = "peripheral"


VALID_IMPORTANCE_VALUES = frozenset(i.value for i in Importance)


class SourceCategory(str, Enum):
    """Where the text behind a signal came from."""

    SELF = "self"  # Written by the agent itself
    CURATED = "curated"  # Chosen or adopted by the agent
    EXTERNAL = "external"  # Exists independently (feedback, third parties)


VALID_SOURCE_CATEGORY_VALUES = frozenset(c.value for c in SourceCategory)


class Elicitation(str, Enum):
    """Whether the statement was volunteered or prompted."""

    USER_ELICITED = "user-elicited"
    AGENT_INITIATED = "agent-initiated"


VALID_ELICITATION_VALUES = frozenset(e.value for e in Elicitation)


class SignalType(str, Enum):
    VALUE = "value"
    BELIEF = "belief"
    PREFERENCE = "preference"
    GOAL = "goal"
    CONSTRAINT = "constraint"
    RELATIONSHIP = "relationship"
    PATTERN = "pattern"
    CORRECTION = "correction"
    BOUNDARY = "boundary"
    REINFORCEMENT = "reinforcement"


class Centrality(str, Enum):
    """Structural importance of a principle (not a signal's importance)."""

    FOUNDATIONAL = "foundational"
    CORE = "core"
    SUPPORTING = "supporting"


class AxiomTier(str, Enum):
    CORE = "core"  # n_count >= 5
    DOMAIN = "domain"  # n_count >= 3
    EMERGING = "emerging"


def tier_for_count(n_count: int) -> AxiomTier:
    """Tier from the number of supporting signals."""
    if n_count >= 5:
        return AxiomTier.CORE
    if n_count >= 3:
        return AxiomTier.DOMAIN
    return AxiomTier.EMERGING


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


VALID_SEVERITY_VALUES = frozenset(s.value for s in Severity)


class CycleMode(str, Enum):
    INITIAL = "initial"
    INCREMENTAL = "incremental"
    FULL_RESYNTHESIS = "full-resynthesis"


# === Inputs ===


@dataclass(frozen=True)
class SourceBlock:
    """One block of raw text handed to the extractor by a source reader."""

    text: str
    source_category: SourceCategory = SourceCategory.SELF
    source_file: str = ""
    timestamp: Optional[str] = None
    elicitation: Elicitation = Elicitation.AGENT_INITIATED


# === Signals ===


@dataclass(frozen=True)
class SignalProvenance:
    source_category: SourceCategory
    source_file: str
    extracted_at: str
    elicitation: Elicitation = Elicitation.AGENT_INITIATED
    line: Optional[int] = None
    # When the source block was written, if the source carries a date
    source_timestamp: Optional[str] = None


@dataclass(frozen=True)
class Signal:
    """An atomic identity-bearing statement. Immutable after extraction."""

    id: str
    text: str
    dimension: Dimension
    provenance: SignalProvenance
    stance: Stance = Stance.ASSERT
    importance: Importance = Importance.SUPPORTING
    signal_type: SignalType = SignalType.VALUE
    confidence: float = 0.0
    generalized_text: Optional[str] = None

    @property
    def comparable_text(self) -> str:
        """Text used for similarity matching."""
        return self.generalized_text or self.text


# === Principles ===


@dataclass
class SignalRef:
    """A principle's record of one contributing signal."""

    signal_id: str
    original_text: str
    similarity: float
    source_file: str
    source_category: SourceCategory
    stance: Stance
    importance: Importance
    elicitation: Elicitation
    weight: float
    extracted_at: Optional[str] = None

    @classmethod
    def from_signal(cls, signal: Signal, similarity: float, weight: float) -> "SignalRef":
        return cls(
            signal_id=signal.id,
            original_text=signal.text,
            similarity=similarity,
            source_file=signal.provenance.source_file,
            source_category=signal.provenance.source_category,
            stance=signal.stance,
            importance=signal.importance,
            elicitation=signal.provenance.elicitation,
            weight=weight,
            extracted_at=signal.provenance.extracted_at,
        )


@dataclass
class PrincipleEvent:
    """Audit trail entry on a principle."""

    kind: str  # "created", "reinforced", "merged"
    at: str
    signal_id: Optional[str] = None
    merged_from: Optional[str] = None


@dataclass
class Principle:
    """A cluster of signals expressing the same underlying value.

    ``representative_text`` is always the phrasing of one member signal.
    It only changes when a strictly heavier signal joins or via merge.
    """

    id: str
    representative_text: str
    dimension: Dimension
    representative_signal_id: str
    representative_weight: float
    centrality: Centrality = Centrality.SUPPORTING
    weight: float = 0.0
    derived_from: List[SignalRef] = field(default_factory=list)
    history: List[PrincipleEvent] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)

    @property
    def n_count(self) -> int:
        return len(self.derived_from)

    @property
    def signal_ids(self) -> List[str]:
        return [ref.signal_id for ref in self.derived_from]

    @property
    def source_categories(self) -> FrozenSet[SourceCategory]:
        return frozenset(ref.source_category for ref in self.derived_from)

    @property
    def provenance_diversity(self) -> int:
        return len(self.source_categories)

    @property
    def has_external(self) -> bool:
        return SourceCategory.EXTERNAL in self.source_categories

    @property
    def has_question(self) -> bool:
        return any(ref.stance is Stance.QUESTION for ref in self.derived_from)

    def provenance_summary(self) -> Dict[str, int]:
        summary: Dict[str, int] = {}
        for ref in self.derived_from:
            key = ref.source_category.value
            summary[key] = summary.get(key, 0) + 1
        return summary


# === Tensions ===


@dataclass(frozen=True)
class Tension:
    id: str
    principle_a: str
    principle_b: str
    severity: Severity
    description: str = ""
    detected_at: str = field(default_factory=utc_now)

    @property
    def pair_key(self) -> FrozenSet[str]:
        """Unordered identity of the pair, for deduplication."""
        return frozenset((self.principle_a, self.principle_b))


# === Axioms ===


@dataclass(frozen=True)
class CanonicalForms:
    native: str
    notated: Optional[str] = None
    cjk: Optional[str] = None
    emoji: Optional[str] = None
    math: Optional[str] = None


@dataclass(frozen=True)
class Axiom:
    """A promoted (or blocked) identity statement derived from one principle."""

    id: str
    canonical_forms: CanonicalForms
    derived_from_principles: Tuple[str, ...]
    dimension: Dimension
    tier: AxiomTier
    weight: float
    n_count: int
    provenance_diversity: int
    provenance_summary: Dict[str, int] = field(default_factory=dict)
    tensions: Tuple[Tension, ...] = ()
    blocked: bool = False
    block_reason: Optional[str] = None
    created_at: str = field(default_factory=utc_now)

    @property
    def text(self) -> str:
        return self.canonical_forms.native

    def with_tensions(self, tensions: Tuple[Tension, ...]) -> "Axiom":
        return replace(self, tensions=tuple(tensions))

    def as_blocked(self, reason: str) -> "Axiom":
        return replace(self, blocked=True, block_reason=reason)


# === Cycle state ===


@dataclass
class TrajectoryPoint:
    run_at: str
    axiom_count: int
    principle_count: int
    stability: float
    axiom_hashes: List[str] = field(default_factory=list)


@dataclass
class CycleState:
    """Persisted across runs. Only the lock holder writes it."""

    last_run_timestamp: str
    mode: CycleMode
    content_hash: str = ""
    principle_texts: List[str] = field(default_factory=list)
    contradiction_count: int = 0
    lock_owner_pid: Optional[int] = None
    cycle_count: int = 0
    axiom_ids: List[str] = field(default_factory=list)
    trajectory: List[TrajectoryPoint] = field(default_factory=list)
    # Directory under runs/ holding this state's records
    generation: Optional[str] = None
