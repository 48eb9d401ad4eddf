"""
Monte Carlo of a funded recommendation set.

Each run draws every distinct leg once; a combo pays ``stake · (odds − 1)``
only when all of its legs hit, otherwise it loses its stake.  Combos sharing
a leg therefore win and lose together, which is exactly the exposure the
optimizer's covariance tries to price.

Draws come from :class:`~combo_edge.core.signal.SeededRng` seeded from the
slate itself, so the same slate always reports the same distribution.
"""

from __future__ import annotations

import logging
import math
from typing import Optional

import numpy as np

from combo_edge.core.engine_config import EngineConfig
from combo_edge.core.signal import SeededRng, clamp, derive_seed
from combo_edge.services.combo_optimizer import RecommendationSet

logger = logging.getLogger(__name__)

_LEG_PROB_MIN, _LEG_PROB_MAX = 0.01, 0.99
HISTOGRAM_BUCKETS = 5
_CHUNK_RUNS = 5_000


def _histogram(pnl: np.ndarray) -> list:
    lo, hi = float(pnl.min()), float(pnl.max())
    width = (hi - lo) / HISTOGRAM_BUCKETS if hi > lo else 1.0
    idx = np.minimum(((pnl - lo) / width).astype(np.int64), HISTOGRAM_BUCKETS - 1)
    counts = np.bincount(idx, minlength=HISTOGRAM_BUCKETS)
    top = max(1, int(counts.max()))
    return [
        {
            "lower": lo + i * width,
            "upper": lo + (i + 1) * width,
            "count": int(counts[i]),
            "pct": int(counts[i]) / top,
        }
        for i in range(HISTOGRAM_BUCKETS)
    ]


def simulate_portfolio(
    recommendation_set: RecommendationSet,
    config: Optional[EngineConfig] = None,
    seed_salt: str = "portfolio",
    runs: Optional[int] = None,
) -> dict:
    """Distribution of slate PnL across ``runs`` simulated outcomes.

    Returns:
        dict with keys:
            status          "ok" | "empty"
            runs            int
            profit_prob     share of runs with PnL > 0
            all_lose_prob   share of runs where no combo won
            mean / median / var95 / max / min   PnL statistics
            histogram       5 equal-width buckets, ``pct`` relative to the
                            fullest bucket
            seed            the seed used
    """
    config = config or EngineConfig.default()
    runs = int(runs if runs is not None else config.portfolio_mc_runs)
    recs = [r for r in recommendation_set.recommendations if r.cash_amount > 0]
    if not recs or runs <= 0:
        return {"status": "empty", "runs": 0, "histogram": []}

    leg_ids = sorted({leg_id for r in recs for leg_id in r.leg_ids})
    col = {leg_id: j for j, leg_id in enumerate(leg_ids)}
    probs = np.array(
        [clamp(recommendation_set.leg_probabilities.get(leg_id, 0.5), _LEG_PROB_MIN, _LEG_PROB_MAX)
         for leg_id in leg_ids],
        dtype=float,
    )
    membership = np.zeros((len(recs), len(leg_ids)), dtype=bool)
    for i, r in enumerate(recs):
        for leg_id in r.leg_ids:
            membership[i, col[leg_id]] = True
    stakes = np.array([r.cash_amount for r in recs], dtype=float)
    payouts = stakes * (np.array([r.combined_odds for r in recs], dtype=float) - 1.0)
    leg_counts = membership.sum(axis=1)

    seed = derive_seed(
        ((float(r.cash_amount), float(r.combined_odds), float(len(r.leg_ids))) for r in recs), seed_salt
    )
    rng = SeededRng(seed)

    pnl_parts, any_win_parts = [], []
    done = 0
    while done < runs:
        size = min(_CHUNK_RUNS, runs - done)
        hits = rng.uniform((size, len(leg_ids))) < probs
        legs_hit = hits.astype(np.int64) @ membership.T.astype(np.int64)
        won = legs_hit == leg_counts
        pnl_parts.append(np.where(won, payouts, -stakes).sum(axis=1))
        any_win_parts.append(won.any(axis=1))
        done += size

    pnl = np.concatenate(pnl_parts)
    any_win = np.concatenate(any_win_parts)
    ordered = np.sort(pnl)

    result = {
        "status": "ok",
        "runs": runs,
        "seed": seed,
        "total_stake": float(stakes.sum()),
        "profit_prob": float((pnl > 0).mean()),
        "all_lose_prob": float((~any_win).mean()),
        "mean": float(pnl.mean()),
        "median": float(ordered[int(math.floor(0.5 * runs))]),
        "var95": float(ordered[int(math.floor(0.05 * runs))]),
        "max": float(ordered[-1]),
        "min": float(ordered[0]),
        "histogram": _histogram(pnl),
    }
    logger.info(
        "Portfolio MC: %d runs over %d combos / %d legs, profit_prob=%.3f var95=%.1f",
        runs, len(recs), len(leg_ids), result["profit_prob"], result["var95"],
    )
    return result
