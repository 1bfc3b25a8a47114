"""
neon_soul Protocol Definitions
==============================

Interface contracts for the synthesis pipeline.

Components and their roles:
- Model:          The text engine. Interchangeable (local, remote, recorded).
- Classification: Narrow capability over a model. classify / generate / compare.
- Similarity:     Pluggable text comparison used for clustering and merging.
- Scoring:        Pluggable signal weighting and principle centrality.

Everything above the classification capability depends only on these
protocols, never on a concrete vendor SDK.

Error handling philosophy:
- Classification failures degrade to documented defaults (never raised)
- Invalid configuration raises ConfigurationError at startup
- A live lock holder raises LockHeldError (caller may retry later)
- An unreachable workspace raises PersistenceError (run-aborting)
- Provider failures carry an ``error_class`` so callers can decide on retry
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Iterable,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

if TYPE_CHECKING:
    from neon_soul.types import Centrality, Signal, SignalRef

# =============================================================================
# ERRORS
# =============================================================================


class NeonSoulError(Exception):
    """Base for all neon_soul errors."""

    pass


class ConfigurationError(NeonSoulError, ValueError):
    """Raised when configuration is malformed (fail fast at startup)."""

    pass


class LockHeldError(NeonSoulError):
    """Raised when another live process holds the synthesis lock."""

    def __init__(self, message: str, owner_pid: Optional[int] = None) -> None:
        super().__init__(message)
        self.owner_pid = owner_pid


class PersistenceError(NeonSoulError):
    """Raised when the workspace state cannot be read or written."""

    pass


class ProviderError(NeonSoulError):
    """Raised by model providers. ``error_class`` drives retry decisions.

    Error classes: ``timeout``, ``rate_limit``, ``server``, ``auth``, ``unknown``.
    """

    def __init__(self, error_class: str, message: str) -> None:
        super().__init__(message)
        self.error_class = error_class


class FixtureMissingError(NeonSoulError):
    """Raised by FixtureModel in replay mode when no recording exists.

    Never degraded to a default: a missing fixture is a test setup error.
    """

    def __init__(self, fixture_path: str, key: str) -> None:
        super().__init__(
            f"Fixture not found: {fixture_path} (key {key}). "
            "Re-run with NEON_SOUL_FIXTURE_MODE=record to create it."
        )
        self.fixture_path = fixture_path
        self.key = key


# Provider error classes worth retrying
TRANSIENT_ERROR_CLASSES = frozenset({"timeout", "rate_limit", "server"})


# =============================================================================
# MODEL TYPES
# =============================================================================


@dataclass
class ModelCapabilities:
    """What a model implementation can do."""

    model_id: str
    provider: str  # "anthropic", "openai", "ollama", "fixture"
    context_window: int
    max_output_tokens: int = 4096


@dataclass
class ModelMessage:
    """A message in a conversation."""

    role: str  # "system", "user", "assistant"
    content: str


@dataclass
class ModelResponse:
    """Complete response from a model."""

    content: str
    usage: dict[str, int] = field(default_factory=dict)
    stop_reason: Optional[str] = None
    model_id: Optional[str] = None


@dataclass
class ClassificationResult:
    """Outcome of a classify() call.

    ``category`` is None when the capability was unavailable after retries
    or the model never produced a valid category.
    """

    category: Optional[str]
    confidence: float = 0.0
    reasoning: str = ""

    @property
    def available(self) -> bool:
        return self.category is not None


# =============================================================================
# PROTOCOLS
# =============================================================================


@runtime_checkable
class ModelProtocol(Protocol):
    """Interface for the text engine.

    Implementations: AnthropicModel, OpenAIModel, OllamaModel, FixtureModel.
    """

    @property
    def model_id(self) -> str:
        """Identifier (e.g., 'claude-haiku-4-5-20251001', 'llama3.2:latest')."""
        ...

    @property
    def capabilities(self) -> ModelCapabilities:
        """What this model can do."""
        ...

    def generate(
        self,
        messages: list[ModelMessage],
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        system: Optional[str] = None,
    ) -> ModelResponse:
        """Generate a complete response."""
        ...


@runtime_checkable
class ClassificationCapability(Protocol):
    """Narrow capability every pipeline stage consumes.

    Classification and free-text generation are distinct operations:
    ``classify`` selects from a closed category set, ``generate`` returns
    free text. None of these methods raise on provider failure.
    """

    def classify(
        self,
        text: str,
        categories: Sequence[str],
        *,
        instruction: Optional[str] = None,
    ) -> ClassificationResult:
        """Select one of ``categories`` for ``text``."""
        ...

    def generate(self, prompt: str, *, system: Optional[str] = None) -> Optional[str]:
        """Free-text generation. None when unavailable."""
        ...

    def compare_similarity(self, text_a: str, text_b: str) -> Optional[float]:
        """Semantic similarity in [0, 1]. None when unavailable."""
        ...


@runtime_checkable
class SimilarityStrategy(Protocol):
    """Pluggable text comparison used by the principle store."""

    @property
    def strategy_id(self) -> str:
        """Stable identifier, e.g. 'llm', 'embedding:ngram-v1', 'lexical'."""
        ...

    def compare(self, text_a: str, text_b: str) -> float:
        """Score in [0, 1]. Unavailable comparisons score 0.0."""
        ...

    def best_match(self, text: str, candidates: Sequence[str]) -> Optional[Tuple[int, float]]:
        """Index and score of the closest candidate, or None."""
        ...


@runtime_checkable
class ScoringStrategy(Protocol):
    """Pluggable weighting for signals and centrality for principles."""

    def signal_weight(self, signal: "Signal") -> float:
        """Weight of a single signal."""
        ...

    def weighted_strength(self, refs: Iterable["SignalRef"]) -> float:
        """Aggregate weight of the signals backing a principle."""
        ...

    def centrality(self, strength: float) -> "Centrality":
        """Centrality tier for a weighted strength."""
        ...


@runtime_checkable
class Embedder(Protocol):
    """Text-to-vector function used by EmbeddingSimilarity."""

    @property
    def provider_id(self) -> str:
        ...

    def embed(self, text: str) -> List[float]:
        ...


__all__ = [
    "NeonSoulError",
    "ConfigurationError",
    "LockHeldError",
    "PersistenceError",
    "ProviderError",
    "FixtureMissingError",
    "TRANSIENT_ERROR_CLASSES",
    "ModelCapabilities",
    "ModelMessage",
    "ModelResponse",
    "ClassificationResult",
    "ModelProtocol",
    "ClassificationCapability",
    "SimilarityStrategy",
    "ScoringStrategy",
    "Embedder",
]
