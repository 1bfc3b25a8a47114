"""Tests for neon_soul.types helpers."""

from datetime import datetime, timezone

import pytest

from neon_soul.types import (
    AxiomTier,
    ParseDatetimeError,
    Principle,
    SignalRef,
    Dimension,
    Elicitation,
    Importance,
    SourceCategory,
    Stance,
    new_id,
    parse_datetime,
    tier_for_count,
    to_iso,
)


def test_parse_datetime_valid_iso_string():
    parsed = parse_datetime("2026-02-13T12:00:00+00:00")
    assert parsed == datetime(2026, 2, 13, 12, 0, tzinfo=timezone.utc)


def test_parse_datetime_accepts_z_suffix():
    assert parse_datetime("2026-02-13T12:00:00Z") == datetime(2026, 2, 13, 12, 0, tzinfo=timezone.utc)


def test_parse_datetime_naive_is_utc():
    assert parse_datetime("2026-02-13T12:00:00").tzinfo == timezone.utc


def test_parse_datetime_invalid_returns_none():
    assert parse_datetime("not-a-datetime") is None


def test_parse_datetime_invalid_raises_in_strict_mode():
    with pytest.raises(ParseDatetimeError) as exc_info:
        parse_datetime("not-a-datetime", strict=True)
    assert exc_info.value.value == "not-a-datetime"


def test_parse_datetime_empty_is_none():
    assert parse_datetime("") is None
    assert parse_datetime(None) is None


def test_to_iso_normalizes_to_utc():
    assert to_iso("2026-02-13T14:00:00+02:00") == "2026-02-13T12:00:00+00:00"
    assert to_iso(datetime(2026, 2, 13, 12, 0)) == "2026-02-13T12:00:00+00:00"
    assert to_iso(None) is None


def test_new_id_prefix_and_uniqueness():
    first, second = new_id("sig"), new_id("sig")
    assert first.startswith("sig_")
    assert first != second


@pytest.mark.parametrize(
    "n_count,tier",
    [(1, AxiomTier.EMERGING), (2, AxiomTier.EMERGING), (3, AxiomTier.DOMAIN),
     (4, AxiomTier.DOMAIN), (5, AxiomTier.CORE), (12, AxiomTier.CORE)],
)
def test_tier_for_count(n_count, tier):
    assert tier_for_count(n_count) is tier


def _ref(signal_id, category, stance=Stance.ASSERT):
    return SignalRef(
        signal_id=signal_id,
        original_text="text",
        similarity=1.0,
        source_file="journal.md",
        source_category=category,
        stance=stance,
        importance=Importance.CORE,
        elicitation=Elicitation.AGENT_INITIATED,
        weight=1.0,
    )


def test_principle_provenance_properties():
    principle = Principle(
        id="pri_1",
        representative_text="text",
        dimension=Dimension.HONESTY_FRAMEWORK,
        representative_signal_id="sig_1",
        representative_weight=1.0,
        derived_from=[
            _ref("sig_1", SourceCategory.SELF),
            _ref("sig_2", SourceCategory.SELF, Stance.QUESTION),
            _ref("sig_3", SourceCategory.CURATED),
        ],
    )
    assert principle.n_count == 3
    assert principle.signal_ids == ["sig_1", "sig_2", "sig_3"]
    assert principle.provenance_diversity == 2
    assert not principle.has_external
    assert principle.has_question
    assert principle.provenance_summary() == {"self": 2, "curated": 1}
