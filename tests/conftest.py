"""
Pytest fixtures and test configuration for neon-soul tests.
"""

import logging
import threading
from typing import Dict, List, Optional, Sequence

import pytest

from neon_soul.classification import ClassificationStats
from neon_soul.config import SynthesisConfig
from neon_soul.protocols import ClassificationResult
from neon_soul.similarity import jaccard
from neon_soul.types import (
    Dimension,
    Elicitation,
    Importance,
    Signal,
    SignalProvenance,
    SourceCategory,
    Stance,
    new_id,
    utc_now,
)


class ScriptedCapability:
    """Deterministic stand-in for ClassificationService.

    Answers are derived from the statement text:

    - identity: "no" when the text contains any ``non_identity`` marker
    - stance: "question" for questions, "deny" for "never ..." statements
    - dimension: first keyword match in ``dimensions``, else honesty-framework
    - anything containing an ``unavailable`` marker gets no answer at all

    ``generate`` answers tension checks with ``tension_reply`` and notation
    requests with ``notation_reply``; other prompts get ``None``.
    """

    model_id = "scripted"

    def __init__(
        self,
        *,
        non_identity: Sequence[str] = ("weather", "lunch"),
        unavailable: Sequence[str] = (),
        dimensions: Optional[Dict[str, str]] = None,
        importance: str = "core",
        tension_reply: Optional[str] = "none",
        notation_reply: Optional[str] = "🎯 誠: honesty > comfort",
    ):
        self.non_identity = tuple(non_identity)
        self.unavailable = tuple(unavailable)
        self.dimensions = dimensions or {}
        self.importance = importance
        self.tension_reply = tension_reply
        self.notation_reply = notation_reply
        self.stats = ClassificationStats()
        self.prompts: List[str] = []
        self._lock = threading.Lock()

    def classify(self, text, categories, *, instruction=None):
        with self._lock:
            self.stats.classify_calls += 1
        lowered = text.lower()
        if any(marker in lowered for marker in self.unavailable):
            with self._lock:
                self.stats.classify_unavailable += 1
            return ClassificationResult(None, 0.0, "unavailable")

        if list(categories) == ["yes", "no"]:
            answer = "no" if any(m in lowered for m in self.non_identity) else "yes"
            return ClassificationResult(answer, 0.9)
        if "question" in categories and "assert" in categories:
            if lowered.rstrip().endswith("?") or "wonder" in lowered:
                return ClassificationResult("question", 0.9)
            if lowered.startswith("never") or " never " in lowered:
                return ClassificationResult("deny", 0.9)
            return ClassificationResult("assert", 0.9)
        if "honesty-framework" in categories:
            for keyword, dimension in self.dimensions.items():
                if keyword in lowered:
                    return ClassificationResult(dimension, 0.9)
            return ClassificationResult("honesty-framework", 0.9)
        if "core" in categories and "peripheral" in categories:
            return ClassificationResult(self.importance, 0.9)
        return ClassificationResult(list(categories)[0], 0.9)

    def generate(self, prompt, *, system=None):
        with self._lock:
            self.stats.generate_calls += 1
            self.prompts.append(prompt)
        if "Do these two values conflict" in prompt:
            return self.tension_reply
        if "compact notation" in prompt:
            return self.notation_reply
        return None

    def compare_similarity(self, text_a, text_b):
        with self._lock:
            self.stats.compare_calls += 1
        return jaccard(text_a, text_b)


@pytest.fixture(autouse=True)
def clean_neon_soul_logger():
    """Drop handlers that setup_neon_soul_logging attached during a test."""
    logger = logging.getLogger("neon_soul")
    level = logger.level
    yield
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(level)


@pytest.fixture
def scripted_capability():
    """The ScriptedCapability class, for tests that tweak or subclass it."""
    return ScriptedCapability


@pytest.fixture
def capability():
    """A ScriptedCapability with default answers."""
    return ScriptedCapability()


@pytest.fixture
def lexical_config():
    """Config with model-free similarity and sequential extraction."""
    return SynthesisConfig(similarity="lexical", concurrency=2)


@pytest.fixture
def make_signal():
    """Factory for Signals with sensible defaults."""

    def _make(
        text: str,
        *,
        category: SourceCategory = SourceCategory.SELF,
        stance: Stance = Stance.ASSERT,
        importance: Importance = Importance.CORE,
        dimension: Dimension = Dimension.HONESTY_FRAMEWORK,
        elicitation: Elicitation = Elicitation.AGENT_INITIATED,
        source_file: str = "journal.md",
        line: int = 1,
        signal_id: Optional[str] = None,
    ) -> Signal:
        return Signal(
            id=signal_id or new_id("sig"),
            text=text,
            dimension=dimension,
            stance=stance,
            importance=importance,
            confidence=0.9,
            provenance=SignalProvenance(
                source_category=category,
                source_file=source_file,
                extracted_at=utc_now(),
                elicitation=elicitation,
                line=line,
            ),
        )

    return _make


@pytest.fixture
def workspace(tmp_path):
    """Empty workspace with a memory directory."""
    (tmp_path / "memory").mkdir()
    return tmp_path


def write_memory(workspace, relative: str, lines: Sequence[str]) -> None:
    path = workspace / "memory" / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


@pytest.fixture
def memory_writer(workspace):
    """Write markdown memory files into the workspace."""

    def _write(relative: str, lines: Sequence[str]):
        write_memory(workspace, relative, lines)
        return workspace / "memory" / relative

    return _write
