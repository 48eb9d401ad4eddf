"""
Combinatorial portfolio optimizer.

Builds a ranked, weighted, cash-allocated set of combos (parlays) from the
analyst's currently selected candidates.

Pipeline:

1. Leg probability: calibrated confidence × context lift (mode, tempo,
   fidelity, form factors), then the match-level calibration step.
2. Enumerate every non-empty subset up to ``max_subset_size`` legs and score
   it: joint probability (legs independent), combined odds, EV, variance,
   Sharpe, risk-preference utility and source concentration.  A parlay bonus
   and a confidence-surplus bonus are added to the utility for ranking.
3. Drop combos below ``min_legs`` (unless none remain), then rank by strategy
   (threshold-strict, soft-penalty or manual-coverage).
4. Maximal-marginal-relevance rerank of the top of the ranking picks the
   optimizer universe, trading score against leg overlap, coverage and
   reuse of the same anchor leg.
5. Mean-variance weights over the universe: projected gradient ascent on
   ``α·μ·w − (1−α)·wᵀCw − λ·|w|²`` over a capped simplex, where ``C`` is a
   subset-overlap covariance.
6. Coverage injection, then a per-candidate concentration cap on the kept
   combos.
7. Whole-unit cash allocation under the risk cap (largest remainder).
8. Layering for presentation: primary / secondary / tail.

Combos compound edge but also variance; the risk cap bounds the whole slate,
never an individual combo.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from combo_edge.core.engine_config import EngineConfig
from combo_edge.core.kelly import kelly_stake
from combo_edge.core.odds_math import combined_odds
from combo_edge.core.signal import clamp
from combo_edge.exceptions import NoQualifyingComboError
from combo_edge.schemas import Candidate, QualityFilter
from combo_edge.services.calibration import CalibrationContext, fse_baseline, fse_match

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Factor maps
# ---------------------------------------------------------------------------

MODE_FACTORS: Dict[str, float] = {
    "regular": 1.0,
    "stable": 1.05,
    "leverage": 0.95,
    "half-lottery": 0.92,
    "insurance": 1.08,
    "gamble": 0.88,
}

FID_FACTORS: Dict[float, float] = {0.0: 0.92, 0.25: 0.99, 0.4: 1.02, 0.5: 1.05, 0.6: 1.07, 0.75: 1.1}

TYS_FACTORS: Dict[str, float] = {"S": 0.94, "M": 1.0, "L": 1.04, "H": 1.08}

# ---------------------------------------------------------------------------
# Tuning constants
# ---------------------------------------------------------------------------

STRATEGIES = ("threshold_strict", "soft_penalty", "manual_coverage")
ALLOCATION_MODES = ("balanced", "precision")

_LEG_PROB_MIN, _LEG_PROB_MAX = 0.05, 0.95
_FACTOR_WEIGHT_MIN, _FACTOR_WEIGHT_MAX = 0.01, 1.5
_FSE_FACTOR_MIN, _FSE_FACTOR_MAX = 0.72, 1.35

_MIN_VARIANCE = 1e-4

# Soft penalty scales: base + (1 − α) · alpha_term
_EV_GAP_BASE, _EV_GAP_ALPHA = 1.15, 0.55
_WIN_GAP_BASE, _WIN_GAP_ALPHA = 0.85, 0.45
_CORR_GAP_BASE, _CORR_GAP_ALPHA = 0.72, 0.28

# Pair correlation: base + overlap_ratio · w1 + jaccard · w2, capped
_CORR_BASE, _CORR_OVERLAP_W, _CORR_JACCARD_W, _CORR_MAX = 0.1, 0.58, 0.24, 0.96

# Weight cap and concentration penalty
_MAX_WEIGHT_BASE, _MAX_WEIGHT_ALPHA, _MAX_WEIGHT_CEIL = 0.32, 0.45, 0.78
_LAMBDA_RISK, _LAMBDA_BASE = 0.16, 0.03
_LAMBDA_MIN, _LAMBDA_MAX = 0.01, 0.3
_PROJECTION_ITERS = 100

# Selection and allocation
_KEEP_WEIGHT = 0.045
_COVERAGE_BOOST = 0.05

# Structural bonuses
_PARLAY_OFFSET = 0.15
_SURPLUS_BONUS_MIN, _SURPLUS_BONUS_MAX = -0.08, 0.12
_STRONG_SURPLUS, _STRONG_SURPLUS_BONUS = 0.12, 0.03
_IMPLIED_MIN, _IMPLIED_MAX = 0.02, 0.98

# Diversity rerank and concentration
_MMR_POOL_MIN, _MMR_POOL_EXTRA = 18, 6
_MMR_CONCENTRATION_BASE, _MMR_CONCENTRATION_ETA = 0.18, 0.08
_MMR_ANCHOR_PENALTY = 0.12
_REBALANCE_GUARD = 40


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class LegView:
    """A candidate with its adjusted probability."""

    candidate: Candidate
    probability: float
    odds: float

    @property
    def id(self) -> str:
        return self.candidate.id


@dataclass
class ComboScore:
    """One scored subset of candidates."""

    legs: Tuple[LegView, ...]
    joint_probability: float
    combined_odds: float
    expected_value: float
    variance: float
    sigma: float
    sharpe: float
    utility: float
    source_correlation: float
    threshold_penalty: float = 0.0
    soft_utility: float = 0.0
    passes_filter: bool = True
    weight: float = 0.0
    coverage_injected: bool = False
    parlay_bonus: float = 0.0
    surplus_bonus: float = 0.0
    rebalanced: bool = False

    @property
    def score(self) -> float:
        """Ranking value: utility plus the structural bonuses."""
        return self.utility + self.parlay_bonus + self.surplus_bonus

    @property
    def leg_ids(self) -> Tuple[str, ...]:
        return tuple(leg.id for leg in self.legs)

    @property
    def signature(self) -> str:
        return "|".join(sorted(self.leg_ids))


@dataclass
class ComboRecommendation:
    """A funded combo in the final output."""

    combo_id: str
    rank: int
    layer: str
    leg_ids: List[str]
    legs: int
    weight: float
    cash_amount: float
    joint_probability: float
    combined_odds: float
    expected_value: float
    sigma: float
    sharpe: float
    utility: float
    source_correlation: float
    kelly_stake: float
    parlay_bonus: float = 0.0
    surplus_bonus: float = 0.0
    coverage_injected: bool = False
    concentration_rebalanced: bool = False
    passes_filter: bool = True


@dataclass
class RecommendationSet:
    """Everything :func:`generate_recommendations` returns."""

    recommendations: List[ComboRecommendation] = field(default_factory=list)
    layer_summary: List[dict] = field(default_factory=list)
    total_cash: float = 0.0
    expected_value: float = 0.0
    raw_weights: List[float] = field(default_factory=list)
    risk_cap: float = 0.0
    allocation_unit: int = 10
    leg_probabilities: Dict[str, float] = field(default_factory=dict)
    diagnostics: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "recommendations": [asdict(r) for r in self.recommendations],
            "layer_summary": self.layer_summary,
            "total_cash": self.total_cash,
            "expected_value": self.expected_value,
            "raw_weights": self.raw_weights,
            "risk_cap": self.risk_cap,
            "allocation_unit": self.allocation_unit,
            "leg_probabilities": self.leg_probabilities,
            "diagnostics": self.diagnostics,
        }


# ---------------------------------------------------------------------------
# Leg probability
# ---------------------------------------------------------------------------

def _factor_weight(value: float) -> float:
    return clamp(value, _FACTOR_WEIGHT_MIN, _FACTOR_WEIGHT_MAX)


def _fid_factor(fid: Optional[float]) -> float:
    if fid is None:
        return 1.0
    return FID_FACTORS.get(round(fid, 2), 1.0)


def _tys_factor(home: Optional[str], away: Optional[str]) -> float:
    return (TYS_FACTORS.get(home or "", 1.0) + TYS_FACTORS.get(away or "", 1.0)) / 2.0


def _fse_factor(home: Optional[float], away: Optional[float], multiplier: float = 1.0) -> float:
    fse = fse_match(home, away)
    if fse is None:
        return 1.0
    return clamp(fse_baseline(fse) * multiplier, _FSE_FACTOR_MIN, _FSE_FACTOR_MAX)


def context_lift(candidate: Candidate, config: EngineConfig, fse_multiplier: float = 1.0) -> float:
    """Product of the context factors raised to their configured weights.

    ``fse_multiplier`` is the learned form multiplier; it scales the form
    factor before that factor is clamped.
    """
    return (
        MODE_FACTORS.get(candidate.mode, 1.0) ** _factor_weight(config.weight_mode)
        * _tys_factor(candidate.tys_home, candidate.tys_away) ** _factor_weight(config.weight_tys)
        * _fid_factor(candidate.fid) ** _factor_weight(config.weight_fid)
        * _fse_factor(candidate.fse_home, candidate.fse_away, fse_multiplier) ** _factor_weight(config.weight_fse)
    )


def leg_probability(candidate: Candidate, config: EngineConfig, calibration: CalibrationContext) -> float:
    """Adjusted win probability of a single candidate, in ``[0.05, 0.95]``.

    Without a ready calibration the raw confidence is scaled by the learned
    confidence multiplier instead of the global curve.
    """
    odds = candidate.odds_or(config.default_odds)
    if calibration.ready:
        base = calibration.global_probability(candidate.confidence)
    else:
        base = candidate.confidence * calibration.conf_multiplier
    base = clamp(base, _LEG_PROB_MIN, _LEG_PROB_MAX)
    lift = context_lift(candidate, config, calibration.fse_multiplier)
    lifted = clamp(base * lift, _LEG_PROB_MIN, _LEG_PROB_MAX)
    corrected = calibration.match_correction(lifted, odds, candidate.home_entity, candidate.away_entity)
    return clamp(corrected, _LEG_PROB_MIN, _LEG_PROB_MAX)


# ---------------------------------------------------------------------------
# Enumeration and scoring
# ---------------------------------------------------------------------------

def enumerate_subsets(n: int, max_size: int) -> List[Tuple[int, ...]]:
    """All non-empty index subsets of ``range(n)`` with at most ``max_size`` items.

    Depth-first order with an explicit stack: ``(0,), (0, 1), (0, 1, 2), ...``.
    """
    out: List[Tuple[int, ...]] = []
    stack: List[Tuple[Tuple[int, ...], int]] = [((), 0)]
    while stack:
        path, start = stack.pop()
        if path:
            out.append(path)
        if len(path) == max_size:
            continue
        for i in range(n - 1, start - 1, -1):
            stack.append((path + (i,), i + 1))
    return out


def source_correlation(legs: Sequence[LegView]) -> float:
    """Normalized Herfindahl concentration of source ids (0 = all distinct)."""
    size = len(legs)
    if size <= 1:
        return 0.0
    counts = Counter(leg.candidate.source_key for leg in legs)
    hhi = sum((c / size) ** 2 for c in counts.values())
    baseline = 1.0 / size
    return clamp((hhi - baseline) / (1.0 - baseline))


def parlay_bonus(legs: int, beta: float) -> float:
    """Concave reward for multi-leg combos; zero for singles."""
    if legs <= 1:
        return 0.0
    return beta * (math.sqrt(legs - 1) - _PARLAY_OFFSET)


def confidence_surplus(probability: float, odds: float, vig: float) -> float:
    """Model probability minus the vig-free market-implied probability."""
    implied = clamp(1.0 / max(odds, 1.01) * (1.0 - vig), _IMPLIED_MIN, _IMPLIED_MAX)
    return probability - implied


def surplus_bonus(surpluses: Sequence[float], scale: float) -> float:
    if not surpluses:
        return 0.0
    avg = sum(surpluses) / len(surpluses)
    bonus = clamp(avg * scale, _SURPLUS_BONUS_MIN, _SURPLUS_BONUS_MAX)
    if max(surpluses) >= _STRONG_SURPLUS:
        bonus += _STRONG_SURPLUS_BONUS
    return bonus


def score_combo(
    legs: Sequence[LegView],
    alpha: float,
    config: Optional[EngineConfig] = None,
) -> Optional[ComboScore]:
    """Score one subset; ``None`` for degenerate subsets.

    ``utility`` is ``α·EV − (1−α)·σ``.  With a ``config`` the parlay and
    confidence-surplus bonuses are attached as well; they move the ranking
    (:attr:`ComboScore.score`) but never the utility itself.
    """
    if not legs:
        return None
    p = 1.0
    for leg in legs:
        p *= leg.probability
    odds = combined_odds(leg.odds for leg in legs)
    ev = p * (odds - 1.0) - (1.0 - p)
    variance = p * (1.0 - p) * odds ** 2
    if not (math.isfinite(variance) and variance > 0.0 and math.isfinite(ev)):
        return None
    sigma = math.sqrt(max(variance, _MIN_VARIANCE))
    p_bonus = s_bonus = 0.0
    if config is not None:
        p_bonus = parlay_bonus(len(legs), config.parlay_beta)
        s_bonus = surplus_bonus(
            [confidence_surplus(leg.probability, leg.odds, config.surplus_vig) for leg in legs],
            config.surplus_bonus_scale,
        )
    return ComboScore(
        legs=tuple(legs),
        joint_probability=p,
        combined_odds=odds,
        expected_value=ev,
        variance=variance,
        sigma=sigma,
        sharpe=ev / sigma,
        utility=alpha * ev - (1.0 - alpha) * sigma,
        source_correlation=source_correlation(legs),
        parlay_bonus=p_bonus,
        surplus_bonus=s_bonus,
    )


def passes_quality_filter(combo: ComboScore, qf: QualityFilter) -> bool:
    return (
        combo.expected_value >= qf.min_ev
        and combo.joint_probability >= qf.min_win_rate
        and combo.source_correlation <= qf.max_corr
    )


def apply_soft_penalty(combos: Sequence[ComboScore], qf: QualityFilter, alpha: float) -> List[ComboScore]:
    """Rank by score minus graduated penalties for missed thresholds."""
    ev_scale = _EV_GAP_BASE + (1.0 - alpha) * _EV_GAP_ALPHA
    win_scale = _WIN_GAP_BASE + (1.0 - alpha) * _WIN_GAP_ALPHA
    corr_scale = _CORR_GAP_BASE + (1.0 - alpha) * _CORR_GAP_ALPHA
    for c in combos:
        ev_gap = max(0.0, qf.min_ev - c.expected_value)
        win_gap = max(0.0, qf.min_win_rate - c.joint_probability)
        corr_gap = max(0.0, c.source_correlation - qf.max_corr)
        c.threshold_penalty = ev_gap * ev_scale + win_gap * win_scale + corr_gap * corr_scale
        c.soft_utility = c.score - c.threshold_penalty
    return sorted(combos, key=lambda c: (-c.soft_utility, -c.score, -c.sharpe))


def _by_score(combos: Sequence[ComboScore]) -> List[ComboScore]:
    return sorted(combos, key=lambda c: (-c.score, -c.sharpe))


# ---------------------------------------------------------------------------
# Diversity rerank
# ---------------------------------------------------------------------------

def combo_jaccard(left: ComboScore, right: ComboScore) -> float:
    a, b = set(left.leg_ids), set(right.leg_ids)
    union = len(a | b)
    return len(a & b) / union if union else 0.0


def anchor_leg(combo: ComboScore) -> str:
    """Id of the combo's highest-confidence leg (first such leg on ties)."""
    return max(combo.legs, key=lambda leg: leg.candidate.confidence).id


def mmr_rerank(
    combos: Sequence[ComboScore],
    lam: float,
    max_pick: int,
    targets: Optional[Sequence[str]] = None,
    eta: float = 0.15,
    utility=None,
) -> List[ComboScore]:
    """Maximal-marginal-relevance reorder of a ranked list.

    Greedily picks the combo maximising::

        λ·u − (1−λ)·max_sim + η·coverage_gain − c·concentration − anchor_share

    where ``u`` is the min-max normalised ``utility`` (``ComboScore.score`` by
    default), ``max_sim`` the largest leg Jaccard against already picked
    combos, ``coverage_gain`` the share of ``targets`` a combo newly covers,
    ``concentration`` a quadratic penalty on legs already used by the picks
    and ``anchor_share`` a penalty for reusing an already used
    highest-confidence leg.  Ties keep the input order.
    """
    combos = list(combos)
    if len(combos) <= 1:
        return combos[:max(0, max_pick)]
    utility = utility or (lambda c: c.score)
    lam = clamp(lam)
    eta = clamp(eta)
    concentration_weight = _MMR_CONCENTRATION_BASE + eta * _MMR_CONCENTRATION_ETA
    target_set = set(targets or ())

    values = [utility(c) for c in combos]
    lo, hi = min(values), max(values)
    span = (hi - lo) or 1.0

    selected: List[ComboScore] = []
    remaining = list(range(len(combos)))
    covered = set()
    use_count: Counter = Counter()

    for _ in range(min(max_pick, len(combos))):
        best_idx, best_score = -1, -math.inf
        for idx in remaining:
            cand = combos[idx]
            max_sim = max((combo_jaccard(cand, sel) for sel in selected), default=0.0)
            gain = 0.0
            if target_set:
                gain = sum(1 for leg_id in cand.leg_ids if leg_id in target_set and leg_id not in covered)
                gain /= len(target_set)

            concentration = anchor_penalty = 0.0
            if selected:
                acc = 0.0
                for leg_id in cand.leg_ids:
                    used = use_count[leg_id]
                    if used <= 0:
                        continue
                    ratio = used / len(selected)
                    acc += ratio * ratio + (0.5 * ratio if used >= 2 else 0.0)
                concentration = acc / len(cand.leg_ids)
                anchor_used = use_count[anchor_leg(cand)]
                if anchor_used >= 1:
                    anchor_penalty = _MMR_ANCHOR_PENALTY * anchor_used / len(selected)

            score = (
                lam * (values[idx] - lo) / span
                - (1.0 - lam) * max_sim
                + eta * gain
                - concentration_weight * concentration
                - anchor_penalty
            )
            if score > best_score:
                best_idx, best_score = idx, score

        if best_idx < 0:
            break
        picked = combos[best_idx]
        selected.append(picked)
        remaining.remove(best_idx)
        covered.update(picked.leg_ids)
        use_count.update(picked.leg_ids)
    return selected


# ---------------------------------------------------------------------------
# Covariance and weights
# ---------------------------------------------------------------------------

def pair_correlation(left: Sequence[str], right: Sequence[str]) -> float:
    """Overlap-based correlation of two combos' leg sets."""
    a, b = set(left), set(right)
    if not a or not b:
        return 0.0
    overlap = len(a & b)
    overlap_ratio = overlap / max(1, min(len(a), len(b)))
    jaccard = overlap / len(a | b)
    return clamp(_CORR_BASE + overlap_ratio * _CORR_OVERLAP_W + jaccard * _CORR_JACCARD_W, 0.0, _CORR_MAX)


def build_covariance(combos: Sequence[ComboScore]) -> np.ndarray:
    """Subset covariance: ``max(var, 1e-4)`` diagonal, ``ρ·σᵢσⱼ`` off-diagonal."""
    k = len(combos)
    leg_ids = sorted({leg_id for c in combos for leg_id in c.leg_ids})
    col = {leg_id: j for j, leg_id in enumerate(leg_ids)}
    membership = np.zeros((k, len(leg_ids)), dtype=float)
    for i, c in enumerate(combos):
        for leg_id in c.leg_ids:
            membership[i, col[leg_id]] = 1.0

    overlap = membership @ membership.T
    sizes = membership.sum(axis=1)
    min_size = np.maximum(1.0, np.minimum.outer(sizes, sizes))
    union = np.add.outer(sizes, sizes) - overlap
    jaccard = np.divide(overlap, union, out=np.zeros_like(overlap), where=union > 0)
    corr = np.clip(_CORR_BASE + overlap / min_size * _CORR_OVERLAP_W + jaccard * _CORR_JACCARD_W, 0.0, _CORR_MAX)

    variances = np.maximum(_MIN_VARIANCE, np.array([c.variance for c in combos], dtype=float))
    sd = np.sqrt(variances)
    cov = corr * np.outer(sd, sd)
    np.fill_diagonal(cov, variances)
    return cov


def max_weight_for(alpha: float) -> float:
    return clamp(_MAX_WEIGHT_BASE + _MAX_WEIGHT_ALPHA * alpha, _MAX_WEIGHT_BASE, _MAX_WEIGHT_CEIL)


def project_capped_simplex(v: np.ndarray, cap: float) -> np.ndarray:
    """Euclidean projection of ``v`` onto ``{w : Σw = 1, 0 ≤ w ≤ cap}``.

    The cap is raised to ``1/n`` when ``n · cap < 1`` (otherwise infeasible).
    Solved by bisection on the shift ``τ`` in ``w = clip(v − τ, 0, cap)``.
    """
    v = np.asarray(v, dtype=float)
    n = v.size
    if n == 0:
        return v
    cap = max(cap, 1.0 / n)
    lo, hi = float(v.min()) - cap, float(v.max())
    for _ in range(_PROJECTION_ITERS):
        tau = 0.5 * (lo + hi)
        total = np.clip(v - tau, 0.0, cap).sum()
        if total > 1.0:
            lo = tau
        else:
            hi = tau
    w = np.clip(v - 0.5 * (lo + hi), 0.0, cap)
    total = w.sum()
    if total <= 0.0:
        return np.full(n, 1.0 / n)
    return w / total


def optimize_weights(
    combos: Sequence[ComboScore],
    alpha: float,
    config: EngineConfig,
    max_weight: Optional[float] = None,
) -> np.ndarray:
    """Projected gradient ascent on the mean-variance objective."""
    k = len(combos)
    if k == 0:
        return np.zeros(0)
    if k == 1:
        return np.ones(1)

    mu = np.array([c.expected_value for c in combos], dtype=float)
    cov = build_covariance(combos)
    risk_weight = 1.0 - alpha
    lam = clamp(risk_weight * _LAMBDA_RISK + _LAMBDA_BASE, _LAMBDA_MIN, _LAMBDA_MAX)
    cap = max_weight if max_weight is not None else max_weight_for(alpha)
    iterations = max(1, config.optimizer_iterations)
    lr = config.optimizer_learning_rate

    w = project_capped_simplex(np.full(k, 1.0 / k), cap)
    for it in range(iterations):
        step = lr * (0.1 + 0.9 * (1.0 + math.cos(math.pi * it / iterations)) / 2.0)
        gradient = alpha * mu - 2.0 * risk_weight * (cov @ w) - 2.0 * lam * w
        w = project_capped_simplex(w + step * gradient, cap)
    return w


# ---------------------------------------------------------------------------
# Coverage and cash
# ---------------------------------------------------------------------------

def ensure_coverage(
    base: Sequence[ComboScore],
    fallback: Sequence[ComboScore],
    candidate_ids: Sequence[str],
    max_rows: int,
    seed_quota: int = 8,
) -> Tuple[List[ComboScore], int]:
    """Make every candidate appear in some kept combo where possible.

    Keeps the top ``seed_quota`` of ``base``, injects the best ``fallback``
    combo containing each uncovered candidate, then fills up to ``max_rows``
    from ``base`` and ``fallback``.  Returns the rows and the count of
    candidates still uncovered.
    """
    targets = list(dict.fromkeys(candidate_ids))
    if not targets:
        return list(base[:max_rows]), 0

    ranked: List[ComboScore] = []
    used = set()
    covered = set()

    def try_push(item: Optional[ComboScore], injected: bool = False) -> bool:
        if item is None or len(ranked) >= max_rows or item.signature in used:
            return False
        used.add(item.signature)
        if injected:
            item.coverage_injected = True
        ranked.append(item)
        covered.update(item.leg_ids)
        return True

    for item in base[:min(seed_quota, max_rows)]:
        try_push(item)
    for target in targets:
        if target in covered:
            continue
        try_push(next((c for c in fallback if target in c.leg_ids and c.signature not in used), None), True)
    for item in base:
        try_push(item)
    for item in fallback:
        try_push(item)

    return ranked, sum(1 for t in targets if t not in covered)


def rebalance_match_concentration(
    rows: Sequence[ComboScore],
    fallback: Sequence[ComboScore],
    max_rows: int,
    max_share: float = 0.6,
) -> Tuple[List[ComboScore], int]:
    """Swap out combos until no candidate sits in more than ``max_share`` of them.

    The allowance is ``max(2, ceil(len(rows) · max_share))``.  The most used
    candidate is relieved first by replacing one of its combos (the lowest
    ranked, preferring combos not injected for coverage) with the best
    unused ``fallback`` combo that avoids it.  A replacement must keep every
    candidate that only the replaced combo covered.  Returns the rows and the
    number of swaps.
    """
    ranked = list(rows[:max_rows])
    if len(ranked) <= 1:
        return ranked, 0
    allowed = max(2, math.ceil(len(ranked) * max_share))
    used = {c.signature for c in ranked}
    swaps = 0

    for _ in range(_REBALANCE_GUARD):
        usage = Counter(leg_id for c in ranked for leg_id in c.leg_ids)
        offenders = sorted((item for item in usage.items() if item[1] > allowed), key=lambda kv: (-kv[1], kv[0]))
        if not offenders:
            break
        offender = offenders[0][0]

        holders = [i for i, c in enumerate(ranked) if offender in c.leg_ids]
        holders.sort(key=lambda i: (ranked[i].coverage_injected, -i))
        swap = None
        for i in holders:
            sole = {leg_id for leg_id in ranked[i].leg_ids if usage[leg_id] == 1}
            replacement = next(
                (c for c in fallback
                 if c.signature not in used and offender not in c.leg_ids and sole <= set(c.leg_ids)),
                None,
            )
            if replacement is not None:
                swap = (i, replacement)
                break
        if swap is None:
            break

        i, replacement = swap
        used.discard(ranked[i].signature)
        used.add(replacement.signature)
        replacement.rebalanced = True
        ranked[i] = replacement
        swaps += 1
    return ranked, swaps


def _max_leg_share(combos: Sequence[ComboScore]) -> float:
    if not combos:
        return 0.0
    usage = Counter(leg_id for c in combos for leg_id in c.leg_ids)
    return max(usage.values()) / len(combos)


def count_uncovered(combos: Sequence[ComboScore], candidate_ids: Sequence[str]) -> int:
    covered = {leg_id for c in combos for leg_id in c.leg_ids}
    return sum(1 for t in dict.fromkeys(candidate_ids) if t not in covered)


def allocate_cash(weights: Sequence[float], risk_cap: float, unit: int, min_active: int = 0) -> List[float]:
    """Whole-unit cash per weight, total at most ``floor(risk_cap / unit) · unit``.

    The ``min_active`` largest weights get one unit first; the remaining
    units go out by floor share, then by largest remainder (ties: larger
    weight, then earlier index).
    """
    k = len(weights)
    if k == 0:
        return []
    step = max(1, int(round(unit)))
    cap_units = int(math.floor(max(0.0, risk_cap) / step))
    if cap_units <= 0:
        return [0.0] * k

    safe = [max(0.0, w) if math.isfinite(w) else 0.0 for w in weights]
    total = sum(safe)
    if total <= 1e-9:
        out = [0.0] * k
        out[0] = float(step)
        return out

    by_weight = sorted(range(k), key=lambda i: (-safe[i], i))
    active = min(k, cap_units, max(0, int(min_active)))
    units = [0] * k
    remaining = cap_units
    for i in by_weight[:active]:
        units[i] += 1
        remaining -= 1

    raw = [w / total * remaining for w in safe]
    base = [int(math.floor(r)) for r in raw]
    for i, b in enumerate(base):
        units[i] += b
    remaining -= sum(base)

    order = sorted(range(k), key=lambda i: (-(raw[i] - base[i]), -safe[i], i))
    cursor = 0
    while remaining > 0:
        units[order[cursor % k]] += 1
        remaining -= 1
        cursor += 1
    return [float(u * step) for u in units]


def layer_for_rank(rank: int) -> str:
    if rank == 1:
        return "primary"
    if rank <= 3:
        return "secondary"
    return "tail"


def summarize_layers(recs: Sequence[ComboRecommendation]) -> List[dict]:
    out = []
    for layer in ("primary", "secondary", "tail"):
        rows = [r for r in recs if r.layer == layer]
        cash = sum(r.cash_amount for r in rows)
        ev = sum(r.cash_amount / cash * r.expected_value for r in rows) if cash > 0 else 0.0
        out.append({
            "layer": layer,
            "count": len(rows),
            "total_cash": cash,
            "expected_value": ev,
            "avg_sharpe": sum(r.sharpe for r in rows) / len(rows) if rows else 0.0,
        })
    return out


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def generate_recommendations(
    candidates: Sequence[Candidate],
    risk_preference: float = 50.0,
    risk_cap: Optional[float] = None,
    config: Optional[EngineConfig] = None,
    calibration: Optional[CalibrationContext] = None,
    quality_filter: Optional[QualityFilter] = None,
    strategy: str = "soft_penalty",
    allocation_mode: str = "balanced",
    kelly_divisor: Optional[float] = None,
) -> RecommendationSet:
    """Rank, weight and fund combos of ``candidates``.

    Args:
        candidates: Selected events (at most ``config.max_candidates``,
            unique ids).
        risk_preference: 0 (defensive) to 100 (aggressive); ``α = pref/100``.
        risk_cap: Cash ceiling for the slate; defaults to ``config.risk_cap``.
        config: Engine configuration.
        calibration: Fitted context; raw confidences are used when omitted.
        quality_filter: Thresholds on EV, win rate and source concentration.
        strategy: ``"threshold_strict"``, ``"soft_penalty"`` or
            ``"manual_coverage"``.
        allocation_mode: ``"balanced"`` (unit 10, minimum funded combos) or
            ``"precision"`` (unit 1).
        kelly_divisor: Divisor for the reference Kelly stake of each combo;
            defaults to ``config.kelly_divisor``.

    Raises:
        NoQualifyingComboError: threshold-strict mode and nothing passes.
        ValueError: unknown strategy / allocation mode, too many candidates
            or duplicate candidate ids.
    """
    config = config or EngineConfig.default()
    calibration = calibration or CalibrationContext.not_ready()
    qf = quality_filter or QualityFilter()
    if strategy not in STRATEGIES:
        raise ValueError(f"Unknown strategy {strategy!r}; expected one of {STRATEGIES}")
    if allocation_mode not in ALLOCATION_MODES:
        raise ValueError(f"Unknown allocation_mode {allocation_mode!r}; expected one of {ALLOCATION_MODES}")
    if len(candidates) > config.max_candidates:
        raise ValueError(f"At most {config.max_candidates} candidates allowed, got {len(candidates)}")
    ids = [c.id for c in candidates]
    if len(set(ids)) != len(ids):
        raise ValueError("Candidate ids must be unique")

    cap_cash = config.risk_cap if risk_cap is None else max(0.0, risk_cap)
    unit = config.precision_unit if allocation_mode == "precision" else config.balanced_unit
    if not candidates:
        return RecommendationSet(risk_cap=cap_cash, allocation_unit=unit,
                                 diagnostics={"candidate_combos": 0, "qualified_combos": 0})

    alpha = clamp(risk_preference / 100.0)
    divisor = kelly_divisor if kelly_divisor is not None else config.kelly_divisor

    views = [
        LegView(c, leg_probability(c, config, calibration), c.odds_or(config.default_odds))
        for c in candidates
    ]
    subsets = enumerate_subsets(len(views), min(config.max_subset_size, len(views)))
    scored = [s for s in (score_combo([views[i] for i in idx], alpha, config) for idx in subsets) if s is not None]
    pool = [c for c in scored if len(c.legs) >= config.min_legs]
    min_legs_fallback = not pool
    if min_legs_fallback:
        pool = scored
    for c in pool:
        c.passes_filter = passes_quality_filter(c, qf)

    ranked_all = _by_score(pool)
    qualified = [c for c in ranked_all if c.passes_filter]

    if strategy == "threshold_strict":
        ranked = qualified
        if not ranked:
            raise NoQualifyingComboError(len(pool), qf.model_dump())
    elif strategy == "soft_penalty":
        ranked = apply_soft_penalty(ranked_all, qf, alpha)
    else:
        ranked = qualified or ranked_all
    if not ranked:
        ranked = ranked_all

    strict = strategy == "threshold_strict"
    mmr_pool = ranked[:max(_MMR_POOL_MIN, config.max_recommendations + _MMR_POOL_EXTRA)]
    universe = mmr_rerank(
        mmr_pool,
        config.mmr_lambda,
        config.optimizer_universe_cap,
        targets=None if strict else ids,
        eta=config.coverage_eta,
        utility=(lambda c: c.soft_utility) if strategy == "soft_penalty" else None,
    )
    raw_weights = optimize_weights(universe, alpha, config)
    for c, w in zip(universe, raw_weights):
        c.weight = float(w)

    max_rows = config.max_recommendations
    selected = [c for i, c in enumerate(universe) if c.weight >= _KEEP_WEIGHT or i < max_rows]
    selected = sorted(selected, key=lambda c: (-c.weight, -c.score))[:max_rows]

    in_universe = {c.signature for c in universe}
    fallback = sorted(universe, key=lambda c: (-c.weight, -c.score))
    fallback += [c for c in (ranked if strict else ranked_all) if c.signature not in in_universe]

    uncovered = 0
    if not strict:
        selected, uncovered = ensure_coverage(selected, fallback, ids, max_rows, config.seed_quota)
    selected, swaps = rebalance_match_concentration(selected, fallback, max_rows, config.match_concentration_cap)

    seeds = [
        max(0.0, c.weight) + (_COVERAGE_BOOST if (c.coverage_injected and not strict) or c.rebalanced else 0.0)
        for c in selected
    ]
    seed_total = sum(seeds)
    norm_weights = [s / seed_total if seed_total > 0 else 1.0 / len(seeds) for s in seeds]

    if allocation_mode == "precision":
        min_active = 0
    else:
        min_active = min(len(selected), max(1, int(cap_cash // unit)), config.balanced_min_active)
    amounts = allocate_cash(norm_weights, cap_cash, unit, min_active)

    funded = [(c, w, a) for c, w, a in zip(selected, norm_weights, amounts) if a > 0]
    if not funded and selected and cap_cash > 0:
        fallback_cash = float(unit) if cap_cash >= unit else float(cap_cash)
        funded = [(selected[0], norm_weights[0], fallback_cash)]

    recs = []
    for rank, (c, w, amount) in enumerate(funded, start=1):
        recs.append(
            ComboRecommendation(
                combo_id=f"combo-{rank}",
                rank=rank,
                layer=layer_for_rank(rank),
                leg_ids=list(c.leg_ids),
                legs=len(c.legs),
                weight=w,
                cash_amount=amount,
                joint_probability=c.joint_probability,
                combined_odds=c.combined_odds,
                expected_value=c.expected_value,
                sigma=c.sigma,
                sharpe=c.sharpe,
                utility=c.utility,
                source_correlation=c.source_correlation,
                kelly_stake=kelly_stake(c.joint_probability, c.combined_odds, divisor,
                                        config.initial_capital, cap_cash),
                parlay_bonus=c.parlay_bonus,
                surplus_bonus=c.surplus_bonus,
                coverage_injected=c.coverage_injected,
                concentration_rebalanced=c.rebalanced,
                passes_filter=c.passes_filter,
            )
        )

    total_cash = sum(r.cash_amount for r in recs)
    weighted_ev = sum(r.cash_amount / total_cash * r.expected_value for r in recs) if total_cash > 0 else 0.0
    diagnostics = {
        "candidate_combos": len(pool),
        "below_min_legs_combos": len(scored) - len(pool),
        "min_legs_fallback": min_legs_fallback,
        "qualified_combos": len(qualified),
        "filtered_out_combos": max(0, len(pool) - len(qualified)),
        "coverage_injected_combos": sum(1 for r in recs if r.coverage_injected),
        "uncovered_candidates": count_uncovered([c for c, _, _ in funded], ids),
        "uncovered_before_allocation": uncovered,
        "concentration_swaps": swaps,
        "max_leg_share": _max_leg_share(selected),
        "legs_distribution": dict(Counter(r.legs for r in recs)),
        "alpha": alpha,
        "max_weight": max_weight_for(alpha),
        "strategy": strategy,
        "allocation_mode": allocation_mode,
        "calibration_ready": calibration.ready,
    }
    logger.info(
        "Combo recommendations: %d candidates, %d combos (%d qualified), %d funded, cash %.0f / cap %.0f",
        len(candidates), len(pool), len(qualified), len(recs), total_cash, cap_cash,
    )
    return RecommendationSet(
        recommendations=recs,
        layer_summary=summarize_layers(recs),
        total_cash=total_cash,
        expected_value=weighted_ev,
        raw_weights=[float(w) for w in raw_weights],
        risk_cap=cap_cash,
        allocation_unit=unit,
        leg_probabilities={v.id: v.probability for v in views},
        diagnostics=diagnostics,
    )
