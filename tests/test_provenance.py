"""Tests for provenance tracing.

Tests cover:
- trace_axiom walks axiom -> principles -> signals with file:line locations
- Missing principle and signal records are reported, not raised
- find_axiom by exact id, unique prefix and CJK anchor
- provenance_distribution always lists every category
- format_provenance_chain tree output
"""

import pytest

from neon_soul.provenance import (
    find_axiom,
    format_provenance_chain,
    provenance_distribution,
    trace_axiom,
)
from neon_soul.principle_store import PrincipleStore
from neon_soul.scoring import WeightedScoring
from neon_soul.similarity import LexicalSimilarity
from neon_soul.types import (
    Axiom,
    AxiomTier,
    CanonicalForms,
    Dimension,
    SourceCategory,
    Stance,
)


@pytest.fixture
def cluster(make_signal):
    store = PrincipleStore(LexicalSimilarity(), WeightedScoring(), 0.85)
    signals = [
        make_signal(
            "I value honesty above comfort",
            category=SourceCategory.EXTERNAL,
            source_file="feedback/review.md",
            line=4,
        ),
        make_signal(
            "I value honesty above comfort.",
            stance=Stance.QUESTION,
            source_file="journal.md",
            line=12,
        ),
    ]
    store.add_signals(signals)
    [principle] = store.principles
    return principle, signals


def _axiom(principle_ids, *, axiom_id="ax_0123abcd", cjk=None):
    return Axiom(
        id=axiom_id,
        canonical_forms=CanonicalForms(
            native="I value honesty above comfort",
            notated="🎯 誠: honesty > comfort" if cjk else None,
            cjk=cjk,
        ),
        derived_from_principles=tuple(principle_ids),
        dimension=Dimension.HONESTY_FRAMEWORK,
        tier=AxiomTier.EMERGING,
        weight=1.25,
        n_count=2,
        provenance_diversity=2,
    )


class TestTraceAxiom:
    def test_full_chain(self, cluster):
        principle, signals = cluster
        chain = trace_axiom(_axiom([principle.id]), [principle], signals)

        [link] = chain.principles
        assert link.principle is principle
        assert [s.location for s in link.signals] == ["feedback/review.md:4", "journal.md:12"]
        assert chain.signal_count == 2
        assert chain.source_files == ["feedback/review.md", "journal.md"]
        assert chain.missing_principles == []

    def test_accepts_mappings(self, cluster):
        principle, signals = cluster
        chain = trace_axiom(
            _axiom([principle.id]), {principle.id: principle}, {s.id: s for s in signals}
        )
        assert chain.signal_count == 2

    def test_missing_signal_records_fall_back_to_file(self, cluster):
        principle, _ = cluster
        chain = trace_axiom(_axiom([principle.id]), [principle])
        assert [s.location for s in chain.principles[0].signals] == [
            "feedback/review.md",
            "journal.md",
        ]

    def test_missing_principle_reported(self, cluster):
        principle, signals = cluster
        chain = trace_axiom(_axiom([principle.id, "pri_gone"]), [principle], signals)
        assert chain.missing_principles == ["pri_gone"]
        assert "pri_gone (principle record not found)" in format_provenance_chain(chain)


class TestFindAxiom:
    def test_by_id_prefix_and_cjk(self):
        first = _axiom([], axiom_id="ax_aaa111", cjk="誠")
        second = _axiom([], axiom_id="ax_aab222")
        axioms = [first, second]

        assert find_axiom(axioms, "ax_aab222") is second
        assert find_axiom(axioms, "ax_aaa") is first
        assert find_axiom(axioms, "誠") is first

    def test_ambiguous_prefix(self):
        axioms = [_axiom([], axiom_id="ax_aaa111"), _axiom([], axiom_id="ax_aab222")]
        assert find_axiom(axioms, "ax_aa") is None

    def test_no_match(self):
        assert find_axiom([], "ax_1") is None


class TestDistribution:
    def test_every_category_present(self, make_signal):
        signals = [
            make_signal("one value statement", category=SourceCategory.CURATED),
            make_signal("another value statement", category=SourceCategory.CURATED),
        ]
        assert provenance_distribution(signals) == {"self": 0, "curated": 2, "external": 0}

    def test_empty(self):
        assert provenance_distribution([]) == {"self": 0, "curated": 0, "external": 0}


class TestFormat:
    def test_tree(self, cluster):
        principle, signals = cluster
        text = format_provenance_chain(trace_axiom(_axiom([principle.id], cjk="誠"), [principle], signals))
        lines = text.splitlines()
        assert lines[0] == "🎯 誠: honesty > comfort"
        assert lines[1] == "  I value honesty above comfort"
        assert lines[2] == '└── "I value honesty above comfort" (N=2)'
        assert lines[3] == "    ├── feedback/review.md:4 [external, assert]"
        assert lines[4] == "    └── journal.md:12 [self, question]"
