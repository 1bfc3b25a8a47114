"""Tests for signal extraction.

Tests cover:
- Candidate splitting (markdown markers, code fences, short lines, rules)
- Identity filtering and classification into signals
- Degradation: unavailable identity skips, unavailable labels default
- Duplicate candidates rejected within a run
- Output order equals candidate order under concurrency
- Per-candidate failures isolated; FixtureMissingError propagates
- Concurrency validation
"""

from __future__ import annotations

import threading

import pytest

from neon_soul.extractor import (
    SignalExtractor,
    candidate_key,
    clean_line,
    split_candidates,
    validate_generalization,
)
from neon_soul.protocols import ClassificationResult, ConfigurationError, FixtureMissingError
from neon_soul.types import (
    Dimension,
    Elicitation,
    Importance,
    SourceBlock,
    SourceCategory,
    Stance,
)


def _block(*lines, source_file="memory/journal.md", **kwargs):
    return SourceBlock(text="\n".join(lines), source_file=source_file, **kwargs)


class TestCandidates:
    @pytest.mark.parametrize(
        "line,expected",
        [
            ("- I value honesty", "I value honesty"),
            ("## Core values", "Core values"),
            ("> I never lie to people", "I never lie to people"),
            ("3. Curiosity drives me", "Curiosity drives me"),
            ("- [x] Ship with care", "Ship with care"),
        ],
    )
    def test_clean_line(self, line, expected):
        assert clean_line(line) == expected

    def test_split_skips_fences_rules_and_short_lines(self):
        block = _block(
            "# Notes",
            "I value honesty above comfort",
            "```",
            "print('I value code in fences')",
            "```",
            "---",
            "| a | b |",
            "ok",
            "- I prefer direct feedback",
        )
        candidates = split_candidates(block)
        assert [c.text for c in candidates] == [
            "I value honesty above comfort",
            "I prefer direct feedback",
        ]
        assert [c.line for c in candidates] == [2, 9]

    def test_candidate_key_normalizes_case_and_space(self):
        a, b = (
            split_candidates(_block("I  value   Honesty deeply"))[0],
            split_candidates(_block("i value honesty DEEPLY"))[0],
        )
        assert candidate_key(a) == candidate_key(b)

    def test_candidate_key_includes_source(self):
        a = split_candidates(_block("I value honesty deeply", source_file="a.md"))[0]
        b = split_candidates(_block("I value honesty deeply", source_file="b.md"))[0]
        assert candidate_key(a) != candidate_key(b)


class TestValidateGeneralization:
    def test_accepts_abstract_principle(self):
        assert validate_generalization("I value honesty", "Values honesty over comfort") is None

    @pytest.mark.parametrize(
        "generalized,problem",
        [
            ("", "empty"),
            ("I value honesty", "pronoun"),
            ("x" * 151, "exceeds"),
        ],
    )
    def test_rejects(self, generalized, problem):
        assert problem in validate_generalization("I value honesty", generalized)


class TestExtract:
    def test_signals_classified(self, capability):
        extractor = SignalExtractor(capability, concurrency=2)
        block = _block(
            "I value honesty above comfort",
            "The weather was nice today",
            "I wonder whether silence is kind",
            "I never pretend to know things",
            source_category=SourceCategory.EXTERNAL,
            elicitation=Elicitation.USER_ELICITED,
            timestamp="2026-03-01T10:00:00Z",
        )

        result = extractor.extract([block])

        assert result.candidates == 4
        assert result.dropped == 1
        assert [s.text for s in result.signals] == [
            "I value honesty above comfort",
            "I wonder whether silence is kind",
            "I never pretend to know things",
        ]
        assert [s.stance for s in result.signals] == [Stance.ASSERT, Stance.QUESTION, Stance.DENY]
        first = result.signals[0]
        assert first.dimension is Dimension.HONESTY_FRAMEWORK
        assert first.importance is Importance.CORE
        assert first.provenance.source_category is SourceCategory.EXTERNAL
        assert first.provenance.elicitation is Elicitation.USER_ELICITED
        assert first.provenance.source_timestamp == "2026-03-01T10:00:00+00:00"
        assert first.provenance.extracted_at != first.provenance.source_timestamp
        assert first.provenance.line == 1
        assert result.degraded == 0

    def test_duplicates_rejected_across_blocks(self, capability):
        extractor = SignalExtractor(capability)
        result = extractor.extract(
            [_block("I value honesty above comfort"), _block("i value  honesty above comfort")]
        )
        assert len(result.signals) == 1
        assert result.duplicates == 1

    def test_reset_clears_seen(self, capability):
        extractor = SignalExtractor(capability)
        extractor.extract([_block("I value honesty above comfort")])
        assert extractor.extract([_block("I value honesty above comfort")]).signals == []
        extractor.reset()
        assert len(extractor.extract([_block("I value honesty above comfort")]).signals) == 1

    def test_unavailable_identity_skips_and_degrades(self, scripted_capability):
        capability = scripted_capability(unavailable=("flaky",))
        result = SignalExtractor(capability).extract(
            [_block("A flaky statement about values", "I value honesty above comfort")]
        )
        assert len(result.signals) == 1
        assert result.degraded == 1
        assert result.degraded_items[0].stage == "identity"
        assert result.degraded_items[0].item == "memory/journal.md:1"

    def test_unavailable_label_defaults(self, scripted_capability):
        class NoDimension(scripted_capability):
            def classify(self, text, categories, *, instruction=None):
                if "honesty-framework" in categories:
                    return ClassificationResult(None, 0.0, "unavailable")
                return super().classify(text, categories, instruction=instruction)

        result = SignalExtractor(NoDimension()).extract([_block("I value honesty above comfort")])

        [signal] = result.signals
        assert signal.dimension is Dimension.UNCLASSIFIED
        assert result.degraded == 1
        assert result.degraded_items[0].stage == "dimension"
        assert result.degraded_items[0].item == signal.id

    def test_low_confidence_identity_dropped(self, scripted_capability):
        class Unsure(scripted_capability):
            def classify(self, text, categories, *, instruction=None):
                if list(categories) == ["yes", "no"]:
                    return ClassificationResult("yes", 0.3)
                return super().classify(text, categories, instruction=instruction)

        result = SignalExtractor(Unsure(), detection_confidence=0.5).extract(
            [_block("I value honesty above comfort")]
        )
        assert result.signals == []
        assert result.dropped == 1

    def test_generalization_fallback_degrades(self, capability):
        result = SignalExtractor(capability, generalize=True).extract(
            [_block("I value honesty above comfort")]
        )
        [signal] = result.signals
        assert signal.generalized_text is None
        assert signal.comparable_text == signal.text
        assert result.degraded_items[0].stage == "generalize"

    def test_generalization_accepted(self, scripted_capability):
        class Generalizing(scripted_capability):
            def generate(self, prompt, *, system=None):
                return '"Values honesty over comfort"'

        result = SignalExtractor(Generalizing(), generalize=True).extract(
            [_block("I value honesty above comfort")]
        )
        assert result.signals[0].comparable_text == "Values honesty over comfort"

    def test_failure_isolated(self, scripted_capability):
        class Exploding(scripted_capability):
            def classify(self, text, categories, *, instruction=None):
                if "explode" in text:
                    raise RuntimeError("boom")
                return super().classify(text, categories, instruction=instruction)

        result = SignalExtractor(Exploding()).extract(
            [_block("This line will explode now", "I value honesty above comfort")]
        )
        assert len(result.signals) == 1
        assert result.errors == ["memory/journal.md:1: RuntimeError: boom"]

    def test_fixture_missing_propagates(self, scripted_capability):
        class Missing(scripted_capability):
            def classify(self, text, categories, *, instruction=None):
                raise FixtureMissingError("/fixtures/x.json", "x")

        with pytest.raises(FixtureMissingError):
            SignalExtractor(Missing()).extract([_block("I value honesty above comfort")])

    def test_order_preserved_under_concurrency(self, scripted_capability):
        barrier = threading.Barrier(4, timeout=5)

        class Slow(scripted_capability):
            def classify(self, text, categories, *, instruction=None):
                if list(categories) == ["yes", "no"]:
                    # Force all four identity checks to overlap
                    barrier.wait()
                return super().classify(text, categories, instruction=instruction)

        lines = [f"Statement number {i} about honesty" for i in range(4)]
        result = SignalExtractor(Slow(), concurrency=4).extract([_block(*lines)])

        assert [s.text for s in result.signals] == lines

    def test_empty_input(self, capability):
        result = SignalExtractor(capability).extract([])
        assert result.signals == []
        assert result.candidates == 0


class TestConcurrencyValidation:
    @pytest.mark.parametrize("value", [0, -5, True, 1.5])
    def test_rejected(self, capability, value):
        with pytest.raises(ConfigurationError, match="concurrency"):
            SignalExtractor(capability, concurrency=value)

    def test_detection_confidence_range(self, capability):
        with pytest.raises(ConfigurationError):
            SignalExtractor(capability, detection_confidence=1.5)
