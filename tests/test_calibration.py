"""
Tests for services/calibration.py

Run with: pytest tests/test_calibration.py -v
"""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from combo_edge.core.engine_config import EngineConfig
from combo_edge.core.odds_math import implied_probability
from combo_edge.exceptions import InsufficientSampleError
from combo_edge.schemas import EntityProfile, HistoricalBet, LegRecord
from combo_edge.services.calibration import (
    CalibrationContext,
    CalibrationSample,
    ResidualStat,
    extract_binary_rows,
    extract_samples,
    fit_calibration,
    fit_global_curve,
    learn_multipliers,
    samples_from_binary_rows,
)

TEAMS = ["Arsenal", "Chelsea", "Liverpool", "Everton", "Fulham", "Brentford"]


def _bet(i, conf, won, odds=2.0, home=None, away=None, status=None, archived=False, rep=None, quality=None,
         when=None):
    home = home or TEAMS[i % len(TEAMS)]
    away = away or TEAMS[(i + 1) % len(TEAMS)]
    leg = LegRecord(
        home_entity=home,
        away_entity=away,
        confidence=conf,
        odds=odds,
        outcome_correct=won,
        quality_score=quality,
        rep=rep,
    )
    stake = 10.0
    return HistoricalBet(
        id=f"b{i}",
        timestamp=when or datetime(2025, 1, 1) + timedelta(hours=i),
        stake_amount=stake,
        realized_profit=stake * ((odds or 2.0) - 1.0) if won else -stake,
        outcome_status=status or ("win" if won else "lose"),
        legs=[leg],
        is_archived=archived,
    )


def make_history(n, overconfidence=0.2, seed=0):
    """Single-leg bets from an analyst whose hit rate trails their confidence."""
    rng = np.random.default_rng(seed)
    out = []
    for i in range(n):
        conf = float(0.35 + 0.55 * rng.random())
        won = bool(rng.random() < conf - overconfidence)
        out.append(_bet(i, round(conf, 3), won, odds=round(1.0 / conf + 0.15, 2)))
    return out


class TestSampleExtraction:
    """Test how history becomes weighted samples."""

    def test_skips_pending_and_archived(self):
        history = [
            _bet(0, 0.6, True),
            _bet(1, 0.6, True, status="pending"),
            _bet(2, 0.6, False, archived=True),
        ]
        samples = extract_samples(history, EngineConfig.default())
        assert len(samples) == 1

    def test_most_recent_first(self):
        samples = extract_samples(make_history(10), EngineConfig.default())
        stamps = [s.timestamp for s in samples]
        assert stamps == sorted(stamps, reverse=True)

    def test_quality_score_is_the_target(self):
        samples = extract_samples([_bet(0, 0.6, False, quality=0.7)], EngineConfig.default())
        assert samples[0].actual == pytest.approx(0.7)
        assert samples[0].outcome == 0

    def test_rep_lowers_weight(self):
        cfg = EngineConfig.default()
        calm = extract_samples([_bet(0, 0.6, True, rep=0.1)], cfg)[0]
        noisy = extract_samples([_bet(0, 0.6, True, rep=0.95)], cfg)[0]
        assert noisy.weight < calm.weight

    def test_binary_rows_oldest_first_and_clamped(self):
        rows = extract_binary_rows([_bet(1, 0.99, True), _bet(0, 0.5, False)])
        assert [r.actual for r in rows] == [0, 1]
        assert rows[1].confidence == pytest.approx(0.98)

    def test_binary_rows_need_odds(self):
        history = [_bet(0, 0.6, True, odds=None)]
        assert extract_binary_rows(history) == []
        assert len(extract_samples(history, EngineConfig.default())) == 1

    def test_mixed_naive_and_aware_timestamps(self):
        plus_two = timezone(timedelta(hours=2))
        history = [
            _bet(i, 0.5 + (i % 5) * 0.05, i % 3 == 0,
                 when=datetime(2025, 1, 1, tzinfo=plus_two) + timedelta(hours=i) if i % 2 == 0 else None)
            for i in range(30)
        ]
        samples = extract_samples(history, EngineConfig.default())
        assert all(s.timestamp.tzinfo is not None for s in samples)
        assert samples[0].timestamp == datetime(2025, 1, 2, 5, tzinfo=timezone.utc)
        assert fit_calibration(history).ready


class TestGlobalCurve:
    """Test the regression/isotonic curve."""

    def test_identity_below_three_samples(self):
        cfg = EngineConfig.default()
        curve = fit_global_curve(extract_samples(make_history(2), cfg), cfg)
        assert curve.is_identity
        assert curve(0.63) == pytest.approx(0.63)

    def test_isotonic_curve_is_monotone(self):
        cfg = EngineConfig.default()
        rows = extract_binary_rows(make_history(150))
        curve = fit_global_curve(samples_from_binary_rows(rows, cfg), cfg)
        assert len(curve.iso_y) >= 2
        assert all(b >= a - 1e-12 for a, b in zip(curve.iso_y, curve.iso_y[1:]))
        assert 0.0 < curve.iso_weight <= cfg.isotonic_blend_max

    def test_output_band(self):
        cfg = EngineConfig.default()
        curve = fit_global_curve(extract_samples(make_history(80), cfg), cfg)
        assert 0.1 <= curve.parametric(0.01) <= 0.95
        assert 0.1 <= curve.parametric(0.99) <= 0.95


class TestFitCalibration:
    """Test the fitted context end to end."""

    def test_not_ready_below_minimum(self):
        ctx = fit_calibration(make_history(10))
        assert not ctx.ready
        assert ctx.calibrate(0.6) == pytest.approx(0.6)
        assert ctx.diagnostics.sample_count == 10

    def test_require_ready_raises(self):
        with pytest.raises(InsufficientSampleError) as excinfo:
            fit_calibration(make_history(5)).require_ready()
        assert excinfo.value.error_code == "INSUFFICIENT_SAMPLE"

    def test_overconfident_history_pulls_down(self):
        ctx = fit_calibration(make_history(200))
        assert ctx.ready
        assert ctx.calibrate(0.8) < 0.75
        assert ctx.calibrate(0.3) < ctx.calibrate(0.8)

    def test_output_in_open_interval(self):
        ctx = fit_calibration(make_history(120))
        for conf in (0.0, 0.001, 0.5, 0.999, 1.0, float("nan")):
            p = ctx.calibrate(conf, 1.5, "Arsenal", "Chelsea")
            assert 0.0 < p < 1.0

    def test_deterministic(self):
        history = make_history(90, seed=3)
        a, b = fit_calibration(history), fit_calibration(list(history))
        for conf in (0.3, 0.55, 0.8):
            assert a.calibrate(conf, 2.1, "Fulham", "Everton") == b.calibrate(conf, 2.1, "Fulham", "Everton")

    def test_entity_with_surplus_gets_positive_shift(self):
        history = make_history(60)
        history += [_bet(100 + i, 0.5, True, home="Arsenal", away="Wolves") for i in range(30)]
        ctx = fit_calibration(history)
        shift, reliability = ctx.entity_adjustment("Arsenal", None)
        assert shift > 0
        assert reliability > 0

    def test_aliases_resolve_to_same_entity(self):
        history = make_history(60)
        profiles = [EntityProfile(name="Arsenal", aliases=["Gunners", "AFC"])]
        ctx = fit_calibration(history, entity_profiles=profiles)
        assert ctx.calibrate(0.5, None, "Gunners") == ctx.calibrate(0.5, None, "Arsenal")

    def test_overconfident_market_earns_no_extra_weight(self):
        cfg = EngineConfig.default()
        ctx = fit_calibration(make_history(120), cfg)
        assert ctx.market_lean < 0
        assert ctx.market_weight(0.0) < cfg.weight_odds

    def test_diagnostics_report(self):
        ctx = fit_calibration(make_history(80))
        report = ctx.diagnostics.to_dict()
        assert report["sample_count"] == 80
        assert sum(b["samples"] for b in report["bands"]) == 80
        assert {b["band"] for b in report["bands"]} == {"recent", "mid", "base"}
        assert len(report["scatter"]) == 80
        assert isinstance(report["walk_forward"], list)


class TestNotReadyContext:
    def test_match_correction_passthrough(self):
        ctx = CalibrationContext.not_ready()
        assert ctx.match_correction(0.42, 2.0, "A", "B") == pytest.approx(0.42)
        assert ctx.global_probability(0.42) == pytest.approx(0.42)

    def test_empty_history_is_identity(self):
        ctx = fit_calibration([])
        assert not ctx.ready
        assert ctx.calibrate(0.6) == 0.6


def _sample(conf, quality=None, fse=None, weight=1.0):
    return CalibrationSample(
        timestamp=datetime(2025, 1, 1, tzinfo=timezone.utc),
        confidence=conf,
        actual=quality if quality is not None else 1.0,
        weight=weight,
        recency_band="recent",
        rep=None,
        quality=quality,
        fse=fse,
    )


class TestLearnedMultipliers:
    """Test the quality / confidence ratio multipliers."""

    def test_no_quality_scores_is_neutral(self):
        assert learn_multipliers([_sample(0.6), _sample(0.7)]) == (1.0, 1.0)

    def test_ratio_and_form_baseline(self):
        # fse 0.5 has a form baseline of exactly 1.0
        conf, fse = learn_multipliers([_sample(0.6, quality=0.48, fse=0.5)] * 4)
        assert conf == pytest.approx(0.8)
        assert fse == pytest.approx(0.8)

    def test_weighted_mean(self):
        conf, fse = learn_multipliers([_sample(0.5, quality=0.4, weight=3.0), _sample(0.5, quality=0.6)])
        assert conf == pytest.approx(0.9)
        assert fse == 1.0

    def test_clamped_to_band(self):
        conf, _ = learn_multipliers([_sample(0.3, quality=0.9)])
        assert conf == pytest.approx(1.25)
        conf, _ = learn_multipliers([_sample(0.9, quality=0.1)])
        assert conf == pytest.approx(0.75)

    def test_learned_from_thin_history(self):
        history = [_bet(i, 0.6, True, quality=0.5) for i in range(10)]
        ctx = fit_calibration(history)
        assert not ctx.ready
        assert ctx.conf_multiplier == pytest.approx(0.5 / 0.6)
        assert ctx.diagnostics.to_dict()["multipliers"]["conf"] == pytest.approx(0.833)

    def test_carried_on_ready_context(self):
        confs = (0.5, 0.6, 0.7, 0.8)
        history = [_bet(i, confs[i % 4], i % 2 == 0, quality=(0.45, 0.54, 0.63, 0.72)[i % 4]) for i in range(40)]
        ctx = fit_calibration(history)
        assert ctx.ready
        assert ctx.conf_multiplier == pytest.approx(0.9)
        assert ctx.fse_multiplier == 1.0


class TestOddsBucketCorrection:
    def test_longshot_surplus_shifts_its_bucket(self):
        cfg = EngineConfig.default()
        history = make_history(60)
        history += [
            _bet(200 + i, 0.45, True, odds=4.0, home=f"Home{i}", away=f"Away{i}") for i in range(40)
        ]
        ctx = fit_calibration(history, cfg)
        assert 0.0 < ctx.bucket_shift(4.0) <= cfg.entity_shift_cap
        assert ctx.bucket_shift(None) == 0.0
        table = {row["bucket"]: row for row in ctx.diagnostics.odds_bucket_table}
        assert table["3.2+"]["samples"] == 40
        assert table["3.2+"]["shift"] > 0

    def test_unseen_bucket_has_no_shift(self):
        ctx = CalibrationContext(ready=True, bucket_stats={"1.6-2.2": ResidualStat(count=30, shift=0.04)})
        assert ctx.bucket_shift(2.0) == pytest.approx(0.04)
        assert ctx.bucket_shift(5.0) == 0.0


class TestMarketBlend:
    """Test the convex blend with the market-implied probability."""

    def _context(self, **kw):
        return CalibrationContext(ready=True, market_lean=1.0, weight_odds=0.06,
                                  max_market_weight=0.6, market_lean_scale=0.35, **kw)

    def test_blend_moves_toward_implied(self):
        ctx = self._context()
        implied = implied_probability(4.0)
        blended = ctx.calibrate(0.7, 4.0)
        assert abs(blended - implied) < abs(0.7 - implied)
        assert blended == pytest.approx(0.59 * 0.7 + 0.41 * implied)

    def test_no_odds_no_blend(self):
        assert self._context().calibrate(0.7) == pytest.approx(0.7)

    def test_weight_shrinks_with_entity_reliability(self):
        ctx = self._context()
        weights = [ctx.market_weight(rel) for rel in (0.0, 0.5, 1.0)]
        assert weights == sorted(weights, reverse=True)
        assert weights[-1] == pytest.approx(0.06)

    def test_reliable_entities_lean_less_on_market(self):
        stat = ResidualStat(count=60, reliability=0.9, shift=0.0)
        ctx = self._context(entity_stats={"arsenal": stat, "chelsea": stat})
        implied = implied_probability(4.0)
        known = ctx.calibrate(0.7, 4.0, "Arsenal", "Chelsea")
        unknown = ctx.calibrate(0.7, 4.0)
        assert abs(known - 0.7) < abs(unknown - 0.7)
        assert known > implied
