"""End-to-end tests for the single-pass synthesis loop.

Tests cover:
- Near-duplicate self-authored signals cluster but are blocked (echo chamber)
- Questioning signals in the same cluster make it promotable
- Tensions detected between promoted axioms and attached to both
- Per-signal failures isolated and reported
- Pre-seeded stores: prior signals count toward metrics, not re-added
- Metrics, provenance distribution and promotion stats
"""

from __future__ import annotations

import pytest

from neon_soul.compressor import REASON_ECHO_CHAMBER
from neon_soul.protocols import FixtureMissingError
from neon_soul.reflection import ReflectionLoop
from neon_soul.types import AxiomTier, Dimension, SourceBlock, SourceCategory, Stance

HONESTY_VARIANTS = [
    "I value honesty above comfort",
    "I value honesty above comfort.",
    "I value honesty above comfort!",
    "i value honesty above comfort...",
    "I value honesty, above comfort",
    "I VALUE HONESTY ABOVE COMFORT",
]

DISTINCT = [
    "Curiosity drives my learning",
    "Kindness shapes every reply",
    "Patience with slow progress pays off",
    "Precision matters in code reviews",
]


@pytest.fixture
def loop(lexical_config, capability):
    return ReflectionLoop.from_config(lexical_config, capability)


class TestEchoChamberScenarios:
    def test_self_authored_duplicates_blocked(self, loop, make_signal):
        signals = [make_signal(t) for t in HONESTY_VARIANTS] + [make_signal(t) for t in DISTINCT]

        result = loop.synthesize(signals)

        assert len(result.principles) == 5
        assert sorted(p.n_count for p in result.principles) == [1, 1, 1, 1, 6]
        assert result.axioms == []
        [blocked] = result.blocked_candidates
        assert blocked.n_count == 6
        assert blocked.block_reason == REASON_ECHO_CHAMBER
        assert result.promotion.promoted == 0
        assert result.promotion.reasons == {REASON_ECHO_CHAMBER: 1}

    def test_questioning_duplicates_promoted(self, loop, make_signal):
        signals = [
            make_signal(t, stance=Stance.QUESTION if i < 2 else Stance.ASSERT)
            for i, t in enumerate(HONESTY_VARIANTS)
        ] + [make_signal(t) for t in DISTINCT]

        result = loop.synthesize(signals)

        [axiom] = result.axioms
        assert axiom.n_count == 6
        assert axiom.tier is AxiomTier.CORE
        assert axiom.text == "I value honesty above comfort"
        assert result.blocked_candidates == []

    def test_external_signal_promotes(self, loop, make_signal):
        signals = [
            make_signal(t, category=SourceCategory.EXTERNAL if i == 0 else SourceCategory.SELF)
            for i, t in enumerate(HONESTY_VARIANTS[:3])
        ]
        result = loop.synthesize(signals)
        assert len(result.axioms) == 1
        assert result.provenance_distribution == {"self": 2, "curated": 0, "external": 1}


class TestTensions:
    def test_tensions_attached_to_axioms(self, lexical_config, scripted_capability, make_signal):
        capability = scripted_capability(tension_reply="These conflict. Severity: medium")
        loop = ReflectionLoop.from_config(lexical_config, capability)
        honesty = [
            make_signal(t, category=SourceCategory.EXTERNAL) for t in HONESTY_VARIANTS[:3]
        ]
        kindness = [
            make_signal(t, category=SourceCategory.EXTERNAL, dimension=Dimension.RELATIONSHIP_DYNAMICS)
            for t in ("Kindness shapes every reply", "Kindness shapes every reply.", "kindness shapes every reply!")
        ]

        result = loop.synthesize(honesty + kindness)

        assert len(result.axioms) == 2
        [tension] = result.tensions
        for axiom in result.axioms:
            assert axiom.tensions == (tension,)
        assert {tension.principle_a, tension.principle_b} == {a.id for a in result.axioms}

    def test_unavailable_tension_checks_degrade(self, lexical_config, scripted_capability, make_signal):
        capability = scripted_capability(tension_reply=None)
        loop = ReflectionLoop.from_config(lexical_config, capability)
        signals = [make_signal(t, category=SourceCategory.EXTERNAL) for t in HONESTY_VARIANTS[:3]]
        signals += [
            make_signal(t, category=SourceCategory.EXTERNAL)
            for t in ("Curiosity drives my learning", "Curiosity drives my learning.", "curiosity drives my learning!")
        ]

        result = loop.synthesize(signals)

        assert result.tensions == []
        assert result.tension_checks_unavailable == 1
        assert result.degraded == 1


class TestFailureIsolation:
    def test_signal_failure_recorded(self, loop, make_signal, monkeypatch):
        original = loop.store.add_signal_with_outcome

        def flaky(signal):
            if "Kindness" in signal.text:
                raise RuntimeError("store hiccup")
            return original(signal)

        monkeypatch.setattr(loop.store, "add_signal_with_outcome", flaky)
        signals = [make_signal(t) for t in DISTINCT]

        result = loop.synthesize(signals)

        assert len(result.principles) == 3
        assert len(result.signal_errors) == 1
        assert "RuntimeError: store hiccup" in result.signal_errors[0]
        assert result.errors == result.signal_errors

    def test_fixture_missing_propagates(self, loop, make_signal, monkeypatch):
        def missing(signal):
            raise FixtureMissingError("/fixtures/x.json", "x")

        monkeypatch.setattr(loop.store, "add_signal_with_outcome", missing)
        with pytest.raises(FixtureMissingError):
            loop.synthesize([make_signal("I value honesty above comfort")])


class TestPriorSignals:
    def test_prior_signals_counted_not_readded(self, loop, make_signal):
        prior = [make_signal(t, category=SourceCategory.EXTERNAL) for t in HONESTY_VARIANTS[:2]]
        loop.store.add_signals(prior)
        new = [make_signal(HONESTY_VARIANTS[2])]

        result = loop.synthesize(new, prior_signals=prior)

        assert len(result.signals) == 3
        [principle] = result.principles
        assert principle.n_count == 3
        assert result.metrics.signal_count == 3
        assert len(result.axioms) == 1


class TestRun:
    def test_run_extracts_then_synthesizes(self, loop):
        block = SourceBlock(
            text="\n".join(HONESTY_VARIANTS[:3] + ["The weather was lovely today"]),
            source_category=SourceCategory.EXTERNAL,
            source_file="feedback/review.md",
        )

        result = loop.run([block])

        assert result.extraction.candidates == 4
        assert result.extraction.dropped == 1
        assert len(result.signals) == 3
        assert len(result.axioms) == 1
        assert result.axioms[0].canonical_forms.cjk == "誠"
        assert result.degraded == 0
        assert result.duration_seconds >= 0.0

    def test_metrics_and_coverage(self, loop, make_signal):
        signals = [make_signal(t, category=SourceCategory.EXTERNAL) for t in HONESTY_VARIANTS[:3]]
        result = loop.synthesize(signals)
        metrics = result.metrics
        assert metrics.signal_count == 3
        assert metrics.principle_count == 1
        assert metrics.axiom_count == 1
        assert metrics.convergence_rate == pytest.approx(2 / 3)
        covered = {c.dimension: c.axiom_count for c in metrics.coverage}
        assert covered["honesty-framework"] == 1
        assert metrics.dimensions_covered == 1
