"""
Monte Carlo Kelly backtest.

Chooses the fractional-Kelly divisor from the analyst's own history.  Each
settled bet becomes a simulation row (calibrated win probability, decimal
odds, realised win/loss).  For every candidate divisor the rows are sized
with :func:`~combo_edge.core.kelly.kelly_stake` and bootstrap-resampled many
times; the per-run ROI, drawdown, hit rate and Sharpe ratio are averaged and
scored.  The best-scoring divisor is then pulled toward a fallback divisor
in proportion to how little history supports it.

Determinism: the resampling seed is derived from the rows and a caller salt,
and every divisor replays the same stream of index draws (common random
numbers), so divisors are compared on identical resamples and two calls with
the same inputs agree exactly.

Also here:

* :func:`simulate_strategy`: one sequential pass (no resampling), used by
  calibration validation;
* :func:`mode_kelly_recommendations` and :func:`kelly_divisor_matrix`: the
  same divisor pick on per-mode and mode × confidence × odds subsets, with
  the global recommendation as the fallback.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from combo_edge.core.engine_config import DEFAULT_KELLY_DIVISORS, EngineConfig
from combo_edge.core.kelly import kelly_stake
from combo_edge.core.odds_math import confidence_bucket, kelly_odds_bucket
from combo_edge.core.signal import SeededRng, clamp, derive_seed
from combo_edge.schemas import LEG_MODES, HistoricalBet, split_bet_to_legs
from combo_edge.services.calibration import CalibrationContext

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Tuning constants
# ---------------------------------------------------------------------------

# Simulated probabilities stay inside this band
_SIM_PROB_MIN, _SIM_PROB_MAX = 0.05, 0.95
_STRATEGY_PROB_MIN, _STRATEGY_PROB_MAX = 0.02, 0.98
_MIN_SIM_ODDS = 1.01

# Divisor score: roi − 0.72·drawdown + 8·sharpe − sample penalty
_DRAWDOWN_PENALTY = 0.72
_SHARPE_BONUS = 8.0
_SAMPLE_PENALTY_NUMERATOR = 12.0

# Reliability of the best divisor: clamp((samples − 6) / 22)
_RELIABILITY_OFFSET, _RELIABILITY_SPAN = 6, 22


def _round_half_up(x: float) -> float:
    return float(math.floor(x + 0.5))


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SimulationRow:
    """One settled bet, ready to be sized and resampled."""

    probability: float
    odds: float
    won: bool
    mode: str = "regular"

    @property
    def unit_return(self) -> float:
        return self.odds - 1.0 if self.won else -1.0


def _dominant_mode(bet: HistoricalBet) -> str:
    if not bet.legs:
        return "regular"
    counts = Counter(leg.mode for leg in bet.legs)
    top = max(counts.values())
    return next(mode for mode in LEG_MODES if counts.get(mode) == top)


def build_simulation_rows(
    history: Iterable[HistoricalBet],
    config: EngineConfig,
    calibration: Optional[CalibrationContext] = None,
) -> List[SimulationRow]:
    """Simulation rows from settled bets with a positive stake, oldest first.

    The bet probability is the product of the calibrated leg probabilities;
    without a fitted calibration the raw confidences are used.
    """
    calibration = calibration or CalibrationContext.not_ready()
    bets = sorted((b for b in history if b.is_settled and b.stake_amount > 0 and b.legs),
                  key=lambda b: b.timestamp)
    rows = []
    for bet in bets:
        p = 1.0
        for leg in bet.legs:
            p *= calibration.calibrate(leg.confidence, leg.odds, leg.home_entity, leg.away_entity)
        odds = bet.effective_odds(config.default_odds)
        if odds <= 1.0:
            continue
        rows.append(
            SimulationRow(
                probability=clamp(p, _SIM_PROB_MIN, _SIM_PROB_MAX),
                odds=odds,
                won=bet.outcome_status == "win",
                mode=_dominant_mode(bet),
            )
        )
    return rows


def monte_carlo_runs(n: int, config: EngineConfig) -> int:
    """``clamp(min(target, budget // n), floor, target)``."""
    if n <= 0:
        return 0
    target = config.mc_target_runs
    floor = min(config.mc_min_runs, target)
    return int(min(target, max(floor, min(target, config.mc_operation_budget // n))))


# ---------------------------------------------------------------------------
# Sequential strategy
# ---------------------------------------------------------------------------

def simulate_strategy(
    rows: Sequence[Tuple[float, float, int]],
    config: EngineConfig,
    divisor: float,
) -> dict:
    """One chronological pass over ``(probability, odds, actual)`` rows.

    Stakes are Kelly-sized and rounded to whole currency units; rows whose
    stake rounds to zero are skipped.
    """
    balance = config.initial_capital
    peak = balance
    max_drawdown = total_invest = total_profit = 0.0
    samples = wins = 0
    for p, odds, actual in rows:
        p = clamp(p, _STRATEGY_PROB_MIN, _STRATEGY_PROB_MAX)
        odds = max(_MIN_SIM_ODDS, odds)
        stake = _round_half_up(kelly_stake(p, odds, divisor, config.initial_capital, config.risk_cap))
        if stake <= 0:
            continue
        profit = stake * (odds - 1.0 if actual == 1 else -1.0)
        total_invest += stake
        total_profit += profit
        samples += 1
        if profit > 0:
            wins += 1
        balance += profit
        peak = max(peak, balance)
        if peak > 0:
            max_drawdown = max(max_drawdown, (peak - balance) / peak * 100.0)
    return {
        "samples": samples,
        "total_invest": total_invest,
        "total_profit": total_profit,
        "roi": total_profit / total_invest * 100.0 if total_invest > 0 else 0.0,
        "hit_rate": wins / samples * 100.0 if samples else 0.0,
        "max_drawdown": max_drawdown,
    }


# ---------------------------------------------------------------------------
# Monte Carlo
# ---------------------------------------------------------------------------

@dataclass
class DivisorMetrics:
    """Mean Monte Carlo metrics for one divisor."""

    divisor: float
    samples: int = 0
    runs: int = 0
    roi: float = 0.0
    max_drawdown: float = 0.0
    hit_rate: float = 0.0
    sharpe: float = 0.0
    mean_stake: float = 0.0
    score: float = 0.0


@dataclass
class KellyBacktest:
    """Result of a divisor sweep."""

    divisors: Tuple[float, ...]
    metrics: List[DivisorMetrics] = field(default_factory=list)
    best: Optional[DivisorMetrics] = None
    raw_best: Optional[DivisorMetrics] = None
    reliability: float = 0.0
    recommended_divisor: float = 4.0
    fallback_divisor: float = 4.0
    sample_count: int = 0
    drawdown_alert: bool = False

    def to_dict(self) -> dict:
        return {
            "divisors": list(self.divisors),
            "metrics": [asdict(m) for m in self.metrics],
            "best": asdict(self.best) if self.best else None,
            "raw_best": asdict(self.raw_best) if self.raw_best else None,
            "reliability": round(self.reliability, 3),
            "recommended_divisor": self.recommended_divisor,
            "fallback_divisor": self.fallback_divisor,
            "sample_count": self.sample_count,
            "drawdown_alert": self.drawdown_alert,
        }


def sample_penalty(samples: int) -> float:
    if samples <= 0:
        return _SAMPLE_PENALTY_NUMERATOR
    return clamp(_SAMPLE_PENALTY_NUMERATOR / samples, 0.0, _SAMPLE_PENALTY_NUMERATOR)


def divisor_score(roi: float, max_drawdown: float, sharpe: float, samples: int) -> float:
    return roi - _DRAWDOWN_PENALTY * max_drawdown + _SHARPE_BONUS * sharpe - sample_penalty(samples)


def _run_sharpe(returns: np.ndarray) -> np.ndarray:
    """Per-run mean / sample std of unit returns, zero-variance guarded."""
    mean = returns.mean(axis=1)
    if returns.shape[1] < 2:
        std = np.zeros_like(mean)
    else:
        std = returns.std(axis=1, ddof=1)
    safe = std > 1e-12
    out = np.where(mean > 0, 1.0, 0.0)
    np.divide(mean, std, out=out, where=safe)
    return out


def simulate_divisor(
    rows: Sequence[SimulationRow],
    divisor: float,
    config: EngineConfig,
    seed: int,
) -> DivisorMetrics:
    """Bootstrap Monte Carlo of Kelly-sized ``rows`` at one divisor."""
    stakes = np.array(
        [_round_half_up(kelly_stake(r.probability, max(_MIN_SIM_ODDS, r.odds), divisor,
                                    config.initial_capital, config.risk_cap)) for r in rows],
        dtype=float,
    )
    returns = np.array([r.unit_return for r in rows], dtype=float)
    active = stakes > 0
    stakes, returns = stakes[active], returns[active]
    n = int(stakes.size)
    if n == 0:
        return DivisorMetrics(divisor=divisor, score=divisor_score(0.0, 0.0, 0.0, 0))

    runs = monte_carlo_runs(n, config)
    rng = SeededRng(seed)
    chunk = max(1, config.mc_operation_budget // n)
    capital = config.initial_capital

    roi_sum = dd_sum = hit_sum = sharpe_sum = 0.0
    done = 0
    while done < runs:
        size = min(chunk, runs - done)
        idx = rng.integers(n, (size, n))
        run_stakes = stakes[idx]
        run_returns = returns[idx]
        run_profit = run_stakes * run_returns

        balance = capital + np.cumsum(run_profit, axis=1)
        peak = np.maximum.accumulate(np.concatenate([np.full((size, 1), capital), balance], axis=1), axis=1)[:, 1:]
        with np.errstate(divide="ignore", invalid="ignore"):
            drawdown = np.where(peak > 0, (peak - balance) / peak * 100.0, 0.0)
        invested = run_stakes.sum(axis=1)

        roi_sum += float((run_profit.sum(axis=1) / invested * 100.0).sum())
        dd_sum += float(drawdown.max(axis=1).sum())
        hit_sum += float(((run_returns > 0).mean(axis=1) * 100.0).sum())
        sharpe_sum += float(_run_sharpe(run_returns).sum())
        done += size

    roi, max_dd = roi_sum / runs, dd_sum / runs
    hit_rate, sharpe = hit_sum / runs, sharpe_sum / runs
    return DivisorMetrics(
        divisor=divisor,
        samples=n,
        runs=runs,
        roi=roi,
        max_drawdown=max_dd,
        hit_rate=hit_rate,
        sharpe=sharpe,
        mean_stake=float(stakes.mean()),
        score=divisor_score(roi, max_dd, sharpe, n),
    )


def closest_divisor(divisors: Sequence[float], target: float) -> float:
    """Candidate nearest ``target``; ties go to the smaller divisor."""
    return min(divisors, key=lambda d: (abs(d - target), d))


def pick_divisor(
    rows: Sequence[SimulationRow],
    config: EngineConfig,
    divisors: Sequence[float] = DEFAULT_KELLY_DIVISORS,
    fallback_divisor: Optional[float] = None,
    seed_salt: str = "kelly",
) -> KellyBacktest:
    """Sweep ``divisors`` over ``rows`` and pick the recommended divisor."""
    divisors = tuple(float(d) for d in divisors)
    if not divisors:
        raise ValueError("divisors must not be empty")
    fallback = closest_divisor(divisors, fallback_divisor if fallback_divisor is not None else config.kelly_divisor)
    seed = derive_seed(((r.probability, r.odds, float(r.won)) for r in rows), seed_salt)

    metrics = [simulate_divisor(rows, d, config, seed) for d in divisors]
    valid = [m for m in metrics if m.samples > 0]
    if not valid:
        return KellyBacktest(divisors=divisors, metrics=metrics, recommended_divisor=fallback,
                             fallback_divisor=fallback)

    raw_best = sorted(valid, key=lambda m: (-m.score, -m.samples, m.divisor))[0]
    reliability = clamp((raw_best.samples - _RELIABILITY_OFFSET) / _RELIABILITY_SPAN)
    blended = raw_best.divisor * reliability + fallback * (1.0 - reliability)
    recommended = closest_divisor(divisors, blended)
    best = next((m for m in valid if m.divisor == recommended), raw_best)

    return KellyBacktest(
        divisors=divisors,
        metrics=metrics,
        best=best,
        raw_best=raw_best,
        reliability=reliability,
        recommended_divisor=recommended,
        fallback_divisor=fallback,
        sample_count=best.samples,
        drawdown_alert=best.max_drawdown > config.max_worst_drawdown_alert_pct,
    )


def backtest_kelly_divisors(
    history: Sequence[HistoricalBet],
    config: Optional[EngineConfig] = None,
    candidate_divisors: Sequence[float] = DEFAULT_KELLY_DIVISORS,
    calibration: Optional[CalibrationContext] = None,
    seed_salt: str = "kelly",
) -> KellyBacktest:
    """Recommend a fractional-Kelly divisor from settled history."""
    config = config or EngineConfig.default()
    rows = build_simulation_rows(history, config, calibration)
    result = pick_divisor(rows, config, candidate_divisors, config.kelly_divisor, seed_salt)
    logger.info(
        "Kelly backtest: %d rows, raw best %s, reliability %.2f -> divisor %s",
        len(rows),
        result.raw_best.divisor if result.raw_best else None,
        result.reliability,
        result.recommended_divisor,
    )
    if result.drawdown_alert:
        logger.warning(
            "Kelly backtest drawdown %.1f%% exceeds alert threshold %.1f%%",
            result.best.max_drawdown, config.max_worst_drawdown_alert_pct,
        )
    return result


# ---------------------------------------------------------------------------
# Subset recommendations
# ---------------------------------------------------------------------------

def mode_kelly_recommendations(
    history: Sequence[HistoricalBet],
    config: Optional[EngineConfig] = None,
    calibration: Optional[CalibrationContext] = None,
    candidate_divisors: Sequence[float] = DEFAULT_KELLY_DIVISORS,
    seed_salt: str = "kelly",
) -> List[dict]:
    """Divisor recommendation per dominant bet mode (global pick as fallback)."""
    config = config or EngineConfig.default()
    rows = build_simulation_rows(history, config, calibration)
    global_pick = pick_divisor(rows, config, candidate_divisors, config.kelly_divisor, seed_salt)

    frame = pd.DataFrame(
        {"mode": [r.mode for r in rows], "row": rows},
        columns=["mode", "row"],
    )
    grouped = {mode: list(group["row"]) for mode, group in frame.groupby("mode", sort=False)}

    out = []
    for mode in LEG_MODES:
        mode_rows = grouped.get(mode, [])
        pick = pick_divisor(mode_rows, config, candidate_divisors,
                            global_pick.recommended_divisor, f"{seed_salt}|{mode}")
        out.append({
            "mode": mode,
            "samples": len(mode_rows),
            "hit_rate": (sum(r.won for r in mode_rows) / len(mode_rows) * 100.0) if mode_rows else 0.0,
            "kelly_divisor": pick.recommended_divisor,
            "reliability": round(pick.reliability, 3),
        })
    return out


def kelly_divisor_matrix(
    history: Sequence[HistoricalBet],
    config: Optional[EngineConfig] = None,
    calibration: Optional[CalibrationContext] = None,
    candidate_divisors: Sequence[float] = DEFAULT_KELLY_DIVISORS,
    seed_salt: str = "kelly",
) -> List[dict]:
    """Divisor per mode × confidence bucket × odds bucket, from leg-level rows.

    Sorted by sample count, largest first.
    """
    config = config or EngineConfig.default()
    calibration = calibration or CalibrationContext.not_ready()
    global_pick = pick_divisor(
        build_simulation_rows(history, config, calibration),
        config, candidate_divisors, config.kelly_divisor, seed_salt,
    )

    records = []
    for bet in history:
        if not bet.is_settled:
            continue
        for alloc in split_bet_to_legs(bet):
            leg = alloc.leg
            if leg.odds is None:
                continue
            won = leg.outcome_correct if leg.outcome_correct is not None else alloc.allocated_profit > 0
            p = calibration.calibrate(leg.confidence, leg.odds, leg.home_entity, leg.away_entity)
            records.append({
                "mode": leg.mode,
                "conf_bucket": confidence_bucket(leg.confidence),
                "odds_bucket": kelly_odds_bucket(leg.odds),
                "input": alloc.allocated_input,
                "profit": alloc.allocated_profit,
                "hit": bool(leg.outcome_correct),
                "row": SimulationRow(clamp(p, _SIM_PROB_MIN, _SIM_PROB_MAX), max(_MIN_SIM_ODDS, leg.odds),
                                     bool(won), leg.mode),
            })
    if not records:
        return []

    frame = pd.DataFrame.from_records(records)
    out = []
    for (mode, conf_b, odds_b), group in frame.groupby(["mode", "conf_bucket", "odds_bucket"], sort=True):
        inputs = float(group["input"].sum())
        profit = float(group["profit"].sum())
        pick = pick_divisor(list(group["row"]), config, candidate_divisors,
                            global_pick.recommended_divisor, f"{seed_salt}|{mode}|{conf_b}|{odds_b}")
        out.append({
            "mode": mode,
            "conf_bucket": conf_b,
            "odds_bucket": odds_b,
            "key": f"{mode}|{conf_b}|{odds_b}",
            "samples": int(len(group)),
            "inputs": inputs,
            "profit": profit,
            "roi": profit / inputs * 100.0 if inputs > 0 else 0.0,
            "hit_rate": float(group["hit"].mean() * 100.0),
            "kelly_divisor": pick.recommended_divisor,
            "reliability": round(pick.reliability, 3),
        })
    out.sort(key=lambda r: -r["samples"])
    return out
