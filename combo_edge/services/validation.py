"""
Out-of-sample validation of the confidence calibration.

Only legs with a binary outcome and valid odds take part.  Rows are kept in
chronological order so every test window lies strictly after its training
window.

Two reports are produced, and the walk-forward windows also feed back into
tuning (Kelly divisor, odds weight, confidence tiers):

    walk-forward windows
        Train on the first 55% / 70% / 82% of rows, test on the next
        ``max(8, 12%)`` rows.  Windows with fewer than 12 training or 6 test
        rows are skipped.

    validation snapshot
        One 70/30 chronological split with train/test Brier, log-loss,
        reliability-diagram MAE and a sequential Kelly strategy run for the
        raw and the calibrated predictions, plus a drift-based stability
        flag (``stable`` / ``watch`` / ``risk``).
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Sequence

from combo_edge.core.engine_config import EngineConfig
from combo_edge.core.odds_math import implied_probability
from combo_edge.core.signal import brier_score, calibration_mae, clamp, log_loss
from combo_edge.schemas import EntityProfile, HistoricalBet
from combo_edge.services.backtest import simulate_strategy
from combo_edge.services.calibration import (
    BinaryRow,
    extract_binary_rows,
    fit_global_curve,
    samples_from_binary_rows,
)
from combo_edge.services.team_mapping import EntityResolver

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Tuning constants
# ---------------------------------------------------------------------------

WALK_FORWARD_CHECKPOINTS = (0.55, 0.70, 0.82)
_TEST_FRACTION = 0.12
_MIN_TEST_WINDOW = 8
_MIN_TRAIN_ROWS, _MIN_TEST_ROWS = 12, 6

MIN_VALIDATION_SAMPLES = 24
_TRAIN_FRACTION = 0.70
_MIN_HOLDOUT = 8

# Stability thresholds: Brier drift (test − train) and Brier gain (%)
_RISK_DRIFT, _WATCH_DRIFT = 0.03, 0.015
_RISK_GAIN, _WATCH_GAIN = -2.0, 1.0

# Walk-forward feedback: bounded nudges to the tuning knobs
MIN_FEEDBACK_WINDOWS = 2
_KELLY_DIVISOR_SWING = 0.15
_ODDS_WEIGHT_SWING = 0.015
_TIER_SHIFT_CAP = 0.03
_ROI_FULL_SIGNAL = 20.0
_GAIN_FULL_SIGNAL = 10.0
_MARKET_GAP_FULL_SIGNAL = 0.02
_TIER_SHIFT_SCALE = 0.25

#: Base confidence tiers and the band each may move within.
CONFIDENCE_TIERS = (
    ("strong", 0.72, 0.60, 0.85),
    ("moderate", 0.55, 0.42, 0.70),
    ("weak", 0.40, 0.28, 0.55),
)


def _gain_pct(raw: float, calibrated: float) -> float:
    return (raw - calibrated) / raw * 100.0 if raw > 0 else 0.0


def _scores(rows: Sequence[BinaryRow], predict: Callable[[BinaryRow], float]) -> Dict[str, float]:
    ps = [predict(r) for r in rows]
    ys = [r.actual for r in rows]
    return {
        "brier": brier_score(ps, ys),
        "log_loss": log_loss(ps, ys),
        "mae": calibration_mae(ps, ys),
    }


def stability_flag(drift: float, brier_gain_pct: float) -> str:
    if drift > _RISK_DRIFT or brier_gain_pct < _RISK_GAIN:
        return "risk"
    if drift > _WATCH_DRIFT or brier_gain_pct < _WATCH_GAIN:
        return "watch"
    return "stable"


def evaluate_walk_forward(rows: Sequence[BinaryRow], config: Optional[EngineConfig] = None) -> List[dict]:
    """Walk-forward windows over chronologically ordered binary rows."""
    config = config or EngineConfig.default()
    n = len(rows)
    windows = []
    for idx, ratio in enumerate(WALK_FORWARD_CHECKPOINTS):
        split = int(n * ratio)
        test_size = max(_MIN_TEST_WINDOW, int(n * _TEST_FRACTION))
        train = rows[:split]
        test = rows[split:min(n, split + test_size)]
        if len(train) < _MIN_TRAIN_ROWS or len(test) < _MIN_TEST_ROWS:
            continue

        curve = fit_global_curve(samples_from_binary_rows(train, config), config)
        raw = _scores(test, lambda r: r.confidence)
        cal = _scores(test, lambda r: curve(r.confidence))
        market_brier = brier_score([implied_probability(r.odds) for r in test], [r.actual for r in test])
        bias = sum(r.confidence - r.actual for r in test) / len(test)
        strategy = simulate_strategy(
            [(curve(r.confidence), r.odds, r.actual) for r in test], config, config.kelly_divisor
        )
        windows.append({
            "label": f"W{idx + 1}",
            "train_samples": len(train),
            "test_samples": len(test),
            "raw_brier": round(raw["brier"], 4),
            "calibrated_brier": round(cal["brier"], 4),
            "raw_log_loss": round(raw["log_loss"], 4),
            "calibrated_log_loss": round(cal["log_loss"], 4),
            "raw_mae": round(raw["mae"], 4),
            "calibrated_mae": round(cal["mae"], 4),
            "gain_pct": round(_gain_pct(raw["brier"], cal["brier"]), 2),
            "market_brier": round(market_brier, 4),
            "confidence_bias": round(bias, 4),
            "strategy_roi": round(strategy["roi"], 2),
        })
    return windows


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def walk_forward_adjustments(windows: Sequence[dict], config: Optional[EngineConfig] = None) -> dict:
    """Turn walk-forward windows into bounded tuning adjustments.

    * Kelly divisor moves at most 15% either way: profitable windows that
      also beat the raw Brier lower it, losing windows raise it.
    * Odds weight moves at most 0.015: up when the market-implied Brier beats
      the calibrated Brier, down when calibration beats the market.
    * Confidence tiers shift together by at most 0.03: up when the analyst's
      raw confidence runs ahead of the hit rate.

    Every nudge scales with the share of checkpoints that produced a window.
    Below ``MIN_FEEDBACK_WINDOWS`` windows nothing moves and ``ready`` is
    ``False``.
    """
    config = config or EngineConfig.default()
    n = len(windows)
    ready = n >= MIN_FEEDBACK_WINDOWS
    strength = min(1.0, n / len(WALK_FORWARD_CHECKPOINTS)) if ready else 0.0

    roi_signal = clamp(_mean([w["strategy_roi"] for w in windows]) / _ROI_FULL_SIGNAL, -1.0, 1.0)
    gain_signal = clamp(_mean([w["gain_pct"] for w in windows]) / _GAIN_FULL_SIGNAL, -1.0, 1.0)
    market_gap = _mean([w["calibrated_brier"] - w["market_brier"] for w in windows])
    market_signal = clamp(market_gap / _MARKET_GAP_FULL_SIGNAL, -1.0, 1.0)
    bias = _mean([w["confidence_bias"] for w in windows])

    divisor_factor = 1.0 - _KELLY_DIVISOR_SWING * strength * (roi_signal + gain_signal) / 2.0
    odds_delta = _ODDS_WEIGHT_SWING * strength * market_signal
    tier_shift = clamp(bias * _TIER_SHIFT_SCALE, -_TIER_SHIFT_CAP, _TIER_SHIFT_CAP) * strength

    return {
        "ready": ready,
        "windows": n,
        "kelly_divisor_factor": round(divisor_factor, 4),
        "kelly_divisor": round(max(1.0, config.kelly_divisor * divisor_factor), 4),
        "odds_weight_delta": round(odds_delta, 4),
        "weight_odds": round(clamp(config.weight_odds + odds_delta, 0.0, config.max_market_weight), 4),
        "tier_shift": round(tier_shift, 4),
        "confidence_tiers": {
            name: round(clamp(base + tier_shift, lo, hi), 4) for name, base, lo, hi in CONFIDENCE_TIERS
        },
    }


def apply_walk_forward_feedback(config: EngineConfig, feedback: dict) -> EngineConfig:
    """Config with the feedback's Kelly divisor and odds weight, once ready."""
    if not feedback.get("ready"):
        return config
    return config.with_overrides(
        kelly_divisor=feedback["kelly_divisor"],
        weight_odds=feedback["weight_odds"],
    )


def validate_calibration(
    history: Sequence[HistoricalBet],
    config: Optional[EngineConfig] = None,
    entity_profiles: Optional[Sequence[EntityProfile]] = None,
) -> dict:
    """Chronological holdout validation of the calibration.

    Returns:
        dict with keys:
            status          "ok" | "insufficient_data"
            stability       "stable" | "watch" | "risk" | "insufficient"
            sample_count    int
            brier / log_loss / calibration_mae / strategy   nested metrics
            walk_forward    list of window dicts
            positive_walk_forward  windows where calibration beat raw
            feedback        bounded tuning adjustments, see
                            :func:`walk_forward_adjustments`
    """
    config = config or EngineConfig.default()
    rows = extract_binary_rows(history, EntityResolver(entity_profiles or ()))
    n = len(rows)

    if n < MIN_VALIDATION_SAMPLES:
        return {
            "status": "insufficient_data",
            "stability": "insufficient",
            "message": f"Need {MIN_VALIDATION_SAMPLES} settled legs with outcomes and odds; have {n}.",
            "sample_count": n,
            "min_required": MIN_VALIDATION_SAMPLES,
            "walk_forward": [],
            "positive_walk_forward": 0,
            "feedback": walk_forward_adjustments([], config),
        }

    split = min(n - _MIN_HOLDOUT, max(_MIN_TRAIN_ROWS, int(n * _TRAIN_FRACTION)))
    train, test = rows[:split], rows[split:]
    curve = fit_global_curve(samples_from_binary_rows(train, config), config)

    def raw_predict(r):
        return r.confidence

    def cal_predict(r):
        return curve(r.confidence)

    train_raw, train_cal = _scores(train, raw_predict), _scores(train, cal_predict)
    test_raw, test_cal = _scores(test, raw_predict), _scores(test, cal_predict)

    divisor = max(1.0, config.kelly_divisor)
    strategy_raw = simulate_strategy([(r.confidence, r.odds, r.actual) for r in test], config, divisor)
    strategy_cal = simulate_strategy([(cal_predict(r), r.odds, r.actual) for r in test], config, divisor)

    brier_gain = _gain_pct(test_raw["brier"], test_cal["brier"])
    drift = test_cal["brier"] - train_cal["brier"]
    stability = stability_flag(drift, brier_gain)
    walk_forward = evaluate_walk_forward(rows, config)

    logger.info(
        "Calibration validation: n=%d train=%d test=%d brier_gain=%.2f%% drift=%.4f -> %s",
        n, len(train), len(test), brier_gain, drift, stability,
    )

    def strategy_summary(s):
        return {
            "roi": round(s["roi"], 2),
            "max_drawdown": round(s["max_drawdown"], 2),
            "hit_rate": round(s["hit_rate"], 1),
            "samples": s["samples"],
        }

    return {
        "status": "ok",
        "stability": stability,
        "sample_count": n,
        "train_samples": len(train),
        "test_samples": len(test),
        "divisor": divisor,
        "regression_reliability": round(curve.reliability, 4),
        "brier": {
            "train_raw": round(train_raw["brier"], 4),
            "train_calibrated": round(train_cal["brier"], 4),
            "test_raw": round(test_raw["brier"], 4),
            "test_calibrated": round(test_cal["brier"], 4),
            "gain_pct": round(brier_gain, 2),
            "drift": round(drift, 4),
        },
        "log_loss": {
            "train_raw": round(train_raw["log_loss"], 4),
            "train_calibrated": round(train_cal["log_loss"], 4),
            "test_raw": round(test_raw["log_loss"], 4),
            "test_calibrated": round(test_cal["log_loss"], 4),
            "gain_pct": round(_gain_pct(test_raw["log_loss"], test_cal["log_loss"]), 2),
        },
        "calibration_mae": {
            "test_raw": round(test_raw["mae"], 4),
            "test_calibrated": round(test_cal["mae"], 4),
            "gain_pct": round(_gain_pct(test_raw["mae"], test_cal["mae"]), 2),
        },
        "strategy": {
            "raw": strategy_summary(strategy_raw),
            "calibrated": strategy_summary(strategy_cal),
        },
        "walk_forward": walk_forward,
        "positive_walk_forward": sum(1 for w in walk_forward if w["gain_pct"] > 0),
        "feedback": walk_forward_adjustments(walk_forward, config),
    }
