"""
Tests for services/session.py

Run with: pytest tests/test_session.py -v
"""

from datetime import datetime

import pytest

from combo_edge.core.engine_config import EngineConfig
from combo_edge.schemas import HistoricalBet, LegRecord
from combo_edge.services.session import SnapshotCache, fingerprint


def _bet(i, conf=0.6):
    return HistoricalBet(
        id=f"s{i}", timestamp=datetime(2025, 4, 1, i), stake_amount=10.0, realized_profit=10.0,
        outcome_status="win", legs=[LegRecord(confidence=conf, odds=2.0, outcome_correct=True)],
    )


class TestFingerprint:
    def test_same_inputs_same_key(self):
        history = [_bet(1), _bet(2)]
        assert fingerprint("calibration", history) == fingerprint("calibration", list(history))

    def test_history_edit_changes_key(self):
        assert fingerprint("calibration", [_bet(1)]) != fingerprint("calibration", [_bet(1, conf=0.61)])

    def test_config_and_kind_change_key(self):
        history = [_bet(1)]
        base = fingerprint("calibration", history, config=EngineConfig.default())
        tuned = fingerprint("calibration", history, config=EngineConfig(kelly_divisor=6.0))
        assert base != tuned
        assert fingerprint("validation", history) != fingerprint("calibration", history)


class TestSnapshotCache:
    def test_builds_once(self):
        cache = SnapshotCache()
        calls = []

        def builder():
            calls.append(1)
            return {"value": 42}

        first = cache.get_or_build("k", builder)
        second = cache.get_or_build("k", builder)
        assert first is second
        assert len(calls) == 1
        assert cache.stats()["hits"] == 1
        assert cache.stats()["misses"] == 1

    def test_invalidate_bumps_revision(self):
        cache = SnapshotCache()
        cache.get_or_build("k", lambda: 1)
        assert cache.invalidate() == 1
        assert len(cache) == 0
        assert "k" not in cache

    def test_lru_eviction(self):
        cache = SnapshotCache(max_entries=2)
        cache.get_or_build("a", lambda: 1)
        cache.get_or_build("b", lambda: 2)
        cache.get_or_build("a", lambda: 1)
        cache.get_or_build("c", lambda: 3)
        assert "a" in cache
        assert "b" not in cache

    def test_builder_error_not_cached(self):
        cache = SnapshotCache()

        def boom():
            raise RuntimeError("fit failed")

        with pytest.raises(RuntimeError):
            cache.get_or_build("k", boom)
        assert "k" not in cache
