"""
Tests for schemas.py

Run with: pytest tests/test_schemas.py -v
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from combo_edge.schemas import HistoricalBet, LegRecord, split_bet_to_legs, to_utc


class TestTimestamps:
    """Every record timestamp is timezone-aware UTC."""

    def test_naive_is_taken_as_utc(self):
        bet = HistoricalBet(id="b1", timestamp=datetime(2025, 3, 1, 19, 30))
        assert bet.timestamp == datetime(2025, 3, 1, 19, 30, tzinfo=timezone.utc)

    def test_offset_is_converted(self):
        bet = HistoricalBet(id="b1", timestamp="2025-03-01T19:30:00+02:00")
        assert bet.timestamp.tzinfo == timezone.utc
        assert bet.timestamp.hour == 17

    def test_mixed_records_sort(self):
        bets = [
            HistoricalBet(id="naive", timestamp=datetime(2025, 3, 1, 12, 0)),
            HistoricalBet(id="aware", timestamp=datetime(2025, 3, 1, 13, 0, tzinfo=timezone(timedelta(hours=3)))),
        ]
        assert [b.id for b in sorted(bets, key=lambda b: b.timestamp)] == ["aware", "naive"]

    def test_leg_timestamp_wins_and_is_utc(self):
        leg = LegRecord(confidence=0.6, timestamp="2025-03-02T08:00:00-05:00")
        bet = HistoricalBet(id="b1", timestamp=datetime(2025, 3, 1), legs=[leg])
        (alloc,) = split_bet_to_legs(bet)
        assert alloc.timestamp == datetime(2025, 3, 2, 13, 0, tzinfo=timezone.utc)

    def test_to_utc_passes_none(self):
        assert to_utc(None) is None


class TestLegConfidence:
    @pytest.mark.parametrize("conf", [0.0, 1.0, -0.1, 1.2])
    def test_bounds_are_open(self, conf):
        with pytest.raises(ValidationError):
            LegRecord(confidence=conf)

    def test_missing_confidence_defaults(self):
        assert LegRecord(confidence=None).confidence == 0.5

    def test_interior_value_kept(self):
        assert LegRecord(confidence=0.999).confidence == pytest.approx(0.999)
