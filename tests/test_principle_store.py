"""Tests for PrincipleStore clustering and merging.

Tests cover:
- Signals above the match threshold reinforce, below create
- Re-adding a signal is a no-op (dedup by signal id)
- Representative text only changes for a strictly heavier signal
- Merge picks the heavier survivor, keeps its text, and is idempotent
- Seeding from persisted principles
- Threshold validation
"""

from __future__ import annotations

import pytest

from neon_soul.principle_store import PrincipleStore
from neon_soul.protocols import ConfigurationError
from neon_soul.scoring import WeightedScoring
from neon_soul.similarity import LexicalSimilarity
from neon_soul.types import (
    Centrality,
    Dimension,
    Importance,
    SourceCategory,
)


@pytest.fixture
def store():
    return PrincipleStore(LexicalSimilarity(), WeightedScoring(), match_threshold=0.6)


class TestAddSignal:
    def test_first_signal_creates(self, store, make_signal):
        outcome = store.add_signal_with_outcome(make_signal("I value honesty above comfort"))
        assert outcome.action == "created"
        assert outcome.principle.n_count == 1
        assert store.stats.created == 1

    def test_similar_signal_reinforces(self, store, make_signal):
        first = store.add_signal(make_signal("I value honesty above comfort"))
        outcome = store.add_signal_with_outcome(make_signal("I value honesty above comfort!"))
        assert outcome.action == "reinforced"
        assert outcome.principle is first
        assert first.n_count == 2
        assert outcome.similarity == 1.0

    def test_dissimilar_signal_creates(self, store, make_signal):
        store.add_signal(make_signal("I value honesty above comfort"))
        outcome = store.add_signal_with_outcome(make_signal("Curiosity drives my learning"))
        assert outcome.action == "created"
        assert len(store.principles) == 2

    def test_readding_same_signal_is_noop(self, store, make_signal):
        signal = make_signal("I value honesty above comfort")
        principle = store.add_signal(signal)
        outcome = store.add_signal_with_outcome(signal)
        assert outcome.action == "duplicate"
        assert outcome.principle is principle
        assert principle.n_count == 1
        assert store.signal_count == 1

    def test_heavier_signal_replaces_representative(self, store, make_signal):
        light = make_signal("honesty above comfort always", category=SourceCategory.SELF)
        heavy = make_signal("honesty above comfort, always.", category=SourceCategory.EXTERNAL)
        principle = store.add_signal(light)
        store.add_signal(heavy)
        assert principle.representative_text == heavy.text
        assert principle.representative_signal_id == heavy.id

    def test_lighter_signal_keeps_representative(self, store, make_signal):
        heavy = make_signal("honesty above comfort always", category=SourceCategory.EXTERNAL)
        light = make_signal(
            "Honesty above comfort, always", importance=Importance.PERIPHERAL
        )
        principle = store.add_signal(heavy)
        store.add_signal(light)
        assert principle.representative_text == heavy.text

    def test_weight_and_centrality_rescored(self, store, make_signal):
        principle = store.add_signal(
            make_signal("honesty above comfort always", category=SourceCategory.SELF)
        )
        assert principle.weight == pytest.approx(0.25)
        assert principle.centrality is Centrality.CORE
        store.add_signal(
            make_signal("honesty above comfort always!", category=SourceCategory.EXTERNAL)
        )
        assert principle.weight == pytest.approx(1.25)
        assert principle.centrality is Centrality.FOUNDATIONAL

    def test_unclassified_principle_adopts_dimension(self, store, make_signal):
        principle = store.add_signal(
            make_signal("honesty above comfort always", dimension=Dimension.UNCLASSIFIED)
        )
        store.add_signal(
            make_signal(
                "honesty above comfort always.",
                dimension=Dimension.BOUNDARIES_ETHICS,
                importance=Importance.PERIPHERAL,
            )
        )
        assert principle.dimension is Dimension.BOUNDARIES_ETHICS

    def test_lookup_helpers(self, store, make_signal):
        signal = make_signal("I value honesty above comfort")
        principle = store.add_signal(signal)
        assert store.get(principle.id) is principle
        assert store.principle_for_signal(signal.id) is principle
        assert store.principles_above(1) == [principle]
        assert store.principles_above(2) == []


class TestMerge:
    def _two_clusters(self, store, make_signal):
        store.set_threshold(1.0)
        a = store.add_signal(make_signal("honesty above comfort always matters"))
        b = store.add_signal(
            make_signal("honesty above comfort always", category=SourceCategory.EXTERNAL)
        )
        return a, b

    def test_merge_heavier_survives_with_its_text(self, store, make_signal):
        a, b = self._two_clusters(store, make_signal)

        report = store.merge_similar_principles(0.6)

        assert report.merged_count == 1
        assert report.merges[0][:2] == (b.id, a.id)
        [survivor] = store.principles
        assert survivor is b
        assert survivor.representative_text == "honesty above comfort always"
        assert survivor.n_count == 2
        assert survivor.history[-1].merged_from == a.id

    def test_merge_reassigns_signal_ownership(self, store, make_signal):
        a, b = self._two_clusters(store, make_signal)
        signal_id = a.signal_ids[0]
        store.merge_similar_principles(0.6)
        assert store.principle_for_signal(signal_id) is b

    def test_merge_idempotent(self, store, make_signal):
        self._two_clusters(store, make_signal)
        store.merge_similar_principles(0.6)
        again = store.merge_similar_principles(0.6)
        assert again.merged_count == 0
        assert again.principles_before == again.principles_after == 1

    def test_merge_runs_to_fixed_point(self, store, make_signal):
        store.set_threshold(1.0)
        for text in (
            "honesty above comfort always",
            "honesty above comfort always now",
            "honesty above comfort always here",
        ):
            store.add_signal(make_signal(text))
        report = store.merge_similar_principles(0.6)
        assert report.merged_count == 2
        assert len(store.principles) == 1
        assert store.principles[0].n_count == 3

    def test_nothing_to_merge(self, store, make_signal):
        store.add_signal(make_signal("I value honesty above comfort"))
        store.add_signal(make_signal("Curiosity drives my learning"))
        assert store.merge_similar_principles().merged_count == 0

    def test_invalid_merge_threshold(self, store):
        with pytest.raises(ConfigurationError):
            store.merge_similar_principles(1.5)


class TestSeedingAndSerialization:
    def test_round_trip_keeps_dedup_guard(self, store, make_signal):
        signal = make_signal("I value honesty above comfort")
        store.add_signal(signal)

        restored = PrincipleStore.from_dict(store.to_dict(), LexicalSimilarity())

        assert restored.match_threshold == 0.6
        outcome = restored.add_signal_with_outcome(signal)
        assert outcome.action == "duplicate"

    def test_seeded_principles_attract_new_signals(self, store, make_signal):
        store.add_signal(make_signal("I value honesty above comfort"))
        seeded = PrincipleStore(LexicalSimilarity(), match_threshold=0.6)
        seeded.load(store.principles)

        outcome = seeded.add_signal_with_outcome(make_signal("I value honesty above comfort."))

        assert outcome.action == "reinforced"
        assert outcome.principle.n_count == 2


class TestValidation:
    @pytest.mark.parametrize("value", [-0.1, 1.1, "high", None])
    def test_bad_match_threshold(self, value):
        with pytest.raises(ConfigurationError):
            PrincipleStore(LexicalSimilarity(), match_threshold=value)
