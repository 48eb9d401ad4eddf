"""
Confidence calibration service.

Turns the analyst's settled history into a :class:`CalibrationContext`, a
frozen snapshot whose :meth:`CalibrationContext.calibrate` maps a raw
pre-event confidence onto a calibrated probability.

The pipeline, in order of application:

    global curve
        Weighted least squares of the post-event quality score on the raw
        confidence, blended with a mean-ratio multiplier and shrunk toward
        the identity by a reliability gate (sample count and fit quality).
        A weighted isotonic curve (scipy) is blended in once enough samples
        exist to trust a non-parametric shape.

    entity residual correction
        Per canonical entity, the weighted mean residual against the global
        curve, shrunk by sample count and residual variance and capped.
        Entities never seen in history fall back to the population average.

    odds-bucket correction
        The same shrinkage applied to residuals grouped by decimal-odds
        bucket, applied after the entity correction.

    market blend
        When odds are supplied, a convex blend with the market-implied
        probability.  The weight grows with a market "lean" learned from
        binary outcomes and shrinks as entity evidence accumulates.

    learned multipliers
        Weighted mean of quality-score / confidence ratios, and of the same
        ratio over the form baseline.  Learned even from thin history: the
        combo optimizer scales raw confidence by the first while the context
        is not ready, and folds the second into its form factor.

Samples are weighted by recency tier and REP (noise) score; see
:class:`~combo_edge.core.engine_config.EngineConfig`.

Thin history never raises: below ``min_calibration_samples`` the context is
not ready and :meth:`CalibrationContext.calibrate` returns the raw
confidence.  Callers that need a fitted model call
:meth:`CalibrationContext.require_ready`.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import isotonic_regression

from combo_edge.core.engine_config import EngineConfig
from combo_edge.core.odds_math import (
    ODDS_BUCKET_LABELS,
    implied_probability,
    is_valid_odds,
    odds_bucket,
)
from combo_edge.core.signal import (
    PROB_EPSILON,
    RegressionFit,
    brier_score,
    clamp,
    weighted_linear_regression,
)
from combo_edge.exceptions import InsufficientSampleError
from combo_edge.schemas import EntityProfile, HistoricalBet, split_bet_to_legs
from combo_edge.services.team_mapping import EntityResolver

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Tuning constants
# ---------------------------------------------------------------------------

# Global curve: linear vs multiplier mix and output band
_LINEAR_SHARE = 0.72
_MULTIPLIER_MIN, _MULTIPLIER_MAX = 0.7, 1.3
_CURVE_MIN, _CURVE_MAX = 0.1, 0.95

# Reliability gate: 0.72 from sample count, 0.28 from fit quality
_REL_SAMPLE_OFFSET, _REL_SAMPLE_SPAN = 8, 52
_REL_R2_OFFSET, _REL_R2_SPAN = 0.02, 0.28
_REL_SAMPLE_SHARE = 0.72

# Below this many samples the global curve is the identity
_MIN_CURVE_SAMPLES = 3

# Binary-outcome rows clamp raw confidence into this band
_BINARY_CONF_MIN, _BINARY_CONF_MAX = 0.02, 0.98

# Market lean: Brier gap that maps to a full lean, and sample shrinkage
_LEAN_BRIER_SCALE = 0.05
_LEAN_PRIOR_K = 24

# Pre-market probability band
_PRE_MARKET_MIN, _PRE_MARKET_MAX = 0.02, 0.98

# Learned multipliers: per-sample ratio band and final band
_RATIO_MIN, _RATIO_MAX = 0.6, 1.4
LEARNED_MULTIPLIER_MIN, LEARNED_MULTIPLIER_MAX = 0.75, 1.25

# Form (FSE) baseline: base + slope * sqrt(home * away), sides floored
FSE_FLOOR = 0.05
FSE_BASE, FSE_SLOPE = 0.88, 0.24


# ---------------------------------------------------------------------------
# Samples
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CalibrationSample:
    """One weighted (confidence, actual) point, most recent first."""

    timestamp: datetime
    confidence: float
    actual: float
    weight: float
    recency_band: str
    rep: Optional[float]
    home_key: str = ""
    away_key: str = ""
    odds: Optional[float] = None
    outcome: Optional[int] = None
    label: str = ""
    quality: Optional[float] = None
    fse: Optional[float] = None


@dataclass(frozen=True)
class BinaryRow:
    """Leg with a binary outcome and valid odds, oldest first."""

    timestamp: datetime
    confidence: float
    actual: int
    odds: float
    rep: Optional[float] = None
    home_key: str = ""
    away_key: str = ""


def fse_match(home: Optional[float], away: Optional[float]) -> Optional[float]:
    """Geometric mean of the two form scores; ``None`` unless both are known."""
    if home is None or away is None:
        return None
    return math.sqrt(clamp(home, FSE_FLOOR, 1.0) * clamp(away, FSE_FLOOR, 1.0))


def fse_baseline(fse: float) -> float:
    return FSE_BASE + fse * FSE_SLOPE


def _recency_band(index: int, count: int, config: EngineConfig) -> str:
    block = max(1, count // max(1, config.recency_block_size))
    names = ("recent", "mid")
    for (blocks, _), name in zip(config.recency_tiers, names):
        if index < blocks * block:
            return name
    return "base"


def _rep_bucket(rep: Optional[float], config: EngineConfig) -> str:
    if rep is None:
        return "medium"
    low_bound = config.rep_tiers[0][0]
    mid_bound = config.rep_tiers[-1][0]
    if rep <= low_bound:
        return "low"
    if rep <= mid_bound:
        return "medium"
    return "high"


def extract_samples(
    history: Iterable[HistoricalBet],
    config: EngineConfig,
    resolver: Optional[EntityResolver] = None,
) -> List[CalibrationSample]:
    """Weighted calibration samples from settled history, most recent first.

    Legs without a usable target (no quality score and no binary outcome) or
    with a non-positive confidence are skipped before weights are assigned.
    """
    resolver = resolver or EntityResolver()
    rows = []
    for bet in history:
        if not bet.is_settled:
            continue
        for alloc in split_bet_to_legs(bet):
            leg = alloc.leg
            actual = leg.actual
            if actual is None or leg.confidence <= 0.0:
                continue
            rows.append((alloc, actual))

    rows.sort(key=lambda r: r[0].timestamp, reverse=True)
    count = len(rows)

    samples = []
    for index, (alloc, actual) in enumerate(rows):
        leg = alloc.leg
        weight = config.recency_weight(index, count) * config.rep_weight(alloc.rep)
        outcome = None
        if leg.outcome_correct is not None:
            outcome = 1 if leg.outcome_correct else 0
        samples.append(
            CalibrationSample(
                timestamp=alloc.timestamp,
                confidence=leg.confidence,
                actual=actual,
                weight=weight,
                recency_band=_recency_band(index, count, config),
                rep=alloc.rep,
                home_key=resolver.key(leg.home_entity),
                away_key=resolver.key(leg.away_entity),
                odds=leg.odds,
                outcome=outcome,
                label=f"{leg.home_entity or '-'} vs {leg.away_entity or '-'}",
                quality=leg.quality_score,
                fse=fse_match(leg.fse_home, leg.fse_away),
            )
        )
    return samples


def extract_binary_rows(
    history: Iterable[HistoricalBet],
    resolver: Optional[EntityResolver] = None,
) -> List[BinaryRow]:
    """Legs with a boolean outcome and odds > 1, oldest first."""
    resolver = resolver or EntityResolver()
    rows = []
    for bet in history:
        if not bet.is_settled:
            continue
        for alloc in split_bet_to_legs(bet):
            leg = alloc.leg
            if leg.outcome_correct is None or leg.odds is None or leg.confidence <= 0.0:
                continue
            rows.append(
                BinaryRow(
                    timestamp=alloc.timestamp,
                    confidence=clamp(leg.confidence, _BINARY_CONF_MIN, _BINARY_CONF_MAX),
                    actual=1 if leg.outcome_correct else 0,
                    odds=leg.odds,
                    rep=alloc.rep,
                    home_key=resolver.key(leg.home_entity),
                    away_key=resolver.key(leg.away_entity),
                )
            )
    rows.sort(key=lambda r: r.timestamp)
    return rows


def samples_from_binary_rows(rows: Sequence[BinaryRow], config: EngineConfig) -> List[CalibrationSample]:
    """Re-weight binary rows as calibration samples (actual = 0/1)."""
    ordered = sorted(rows, key=lambda r: r.timestamp, reverse=True)
    count = len(ordered)
    return [
        CalibrationSample(
            timestamp=row.timestamp,
            confidence=row.confidence,
            actual=float(row.actual),
            weight=config.recency_weight(i, count) * config.rep_weight(row.rep),
            recency_band=_recency_band(i, count, config),
            rep=row.rep,
            home_key=row.home_key,
            away_key=row.away_key,
            odds=row.odds,
            outcome=row.actual,
        )
        for i, row in enumerate(ordered)
    ]


# ---------------------------------------------------------------------------
# Global curve
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GlobalCurve:
    """Regression + multiplier + isotonic map from raw confidence."""

    regression: RegressionFit = field(default_factory=RegressionFit)
    multiplier: float = 1.0
    reliability: float = 0.0
    iso_x: Tuple[float, ...] = ()
    iso_y: Tuple[float, ...] = ()
    iso_weight: float = 0.0

    @property
    def is_identity(self) -> bool:
        return self.regression.n == 0

    def parametric(self, conf: float) -> float:
        if self.is_identity:
            return conf
        linear = self.regression.predict(conf)
        blended = _LINEAR_SHARE * linear + (1.0 - _LINEAR_SHARE) * conf * self.multiplier
        stabilized = conf * (1.0 - self.reliability) + blended * self.reliability
        return clamp(stabilized, _CURVE_MIN, _CURVE_MAX)

    def isotonic(self, conf: float) -> float:
        if not self.iso_x:
            return conf
        return float(np.interp(conf, self.iso_x, self.iso_y))

    def __call__(self, conf: float) -> float:
        p = self.parametric(conf)
        if self.iso_weight > 0.0 and self.iso_x:
            p = (1.0 - self.iso_weight) * p + self.iso_weight * self.isotonic(conf)
        return p


def _fit_isotonic(xs: np.ndarray, ys: np.ndarray, ws: np.ndarray) -> Tuple[Tuple[float, ...], Tuple[float, ...]]:
    """Weighted monotone fit over unique x values (ties pooled)."""
    order = np.argsort(xs, kind="stable")
    xs, ys, ws = xs[order], ys[order], ws[order]
    unique_x, inverse = np.unique(xs, return_inverse=True)
    pooled_w = np.bincount(inverse, weights=ws)
    pooled_y = np.bincount(inverse, weights=ws * ys) / np.where(pooled_w > 0, pooled_w, 1.0)
    keep = pooled_w > 0
    if keep.sum() < 2:
        return (), ()
    fitted = isotonic_regression(pooled_y[keep], weights=pooled_w[keep], increasing=True).x
    return tuple(float(v) for v in unique_x[keep]), tuple(float(v) for v in fitted)


def fit_global_curve(samples: Sequence[CalibrationSample], config: EngineConfig) -> GlobalCurve:
    """Fit the regression/isotonic curve; identity below three samples."""
    if len(samples) < _MIN_CURVE_SAMPLES:
        return GlobalCurve()

    xs = np.array([s.confidence for s in samples], dtype=float)
    ys = np.array([s.actual for s in samples], dtype=float)
    ws = np.array([s.weight for s in samples], dtype=float)

    regression = weighted_linear_regression(xs, ys, ws)
    total = float(ws.sum())
    avg_x = float(np.dot(ws, xs) / total)
    avg_y = float(np.dot(ws, ys) / total)
    multiplier = clamp(avg_y / avg_x, _MULTIPLIER_MIN, _MULTIPLIER_MAX) if avg_x > 0 else 1.0

    by_samples = clamp((len(samples) - _REL_SAMPLE_OFFSET) / _REL_SAMPLE_SPAN)
    by_fit = clamp((regression.r2 - _REL_R2_OFFSET) / _REL_R2_SPAN)
    reliability = clamp(_REL_SAMPLE_SHARE * by_samples + (1.0 - _REL_SAMPLE_SHARE) * by_fit)

    iso_x, iso_y = _fit_isotonic(xs, ys, ws)
    ramp = max(1, config.isotonic_ramp_samples)
    iso_reliability = clamp((len(samples) - config.min_calibration_samples) / ramp)
    iso_weight = config.isotonic_blend_max * iso_reliability if iso_x else 0.0

    return GlobalCurve(
        regression=regression,
        multiplier=multiplier,
        reliability=reliability,
        iso_x=iso_x,
        iso_y=iso_y,
        iso_weight=iso_weight,
    )


# ---------------------------------------------------------------------------
# Residual shrinkage
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResidualStat:
    """Shrunk residual correction for one group (entity or odds bucket)."""

    count: int = 0
    mean: float = 0.0
    variance: float = 0.0
    reliability: float = 0.0
    shift: float = 0.0


def _shrink_residuals(
    groups: Mapping[str, List[Tuple[float, float]]],
    config: EngineConfig,
) -> Dict[str, ResidualStat]:
    out = {}
    for key, points in groups.items():
        weights = np.array([w for _, w in points], dtype=float)
        residuals = np.array([r for r, _ in points], dtype=float)
        total = float(weights.sum())
        if total <= 0.0:
            continue
        mean = float(np.dot(weights, residuals) / total)
        variance = float(np.dot(weights, (residuals - mean) ** 2) / total)
        k = len(points)
        reliability = (k / (k + config.entity_prior_k)) / (1.0 + variance / config.entity_variance_scale)
        shift = clamp(mean * reliability, -config.entity_shift_cap, config.entity_shift_cap)
        out[key] = ResidualStat(count=k, mean=mean, variance=variance, reliability=reliability, shift=shift)
    return out


def _population(stats: Mapping[str, ResidualStat]) -> ResidualStat:
    if not stats:
        return ResidualStat()
    values = list(stats.values())
    return ResidualStat(
        count=0,
        mean=sum(s.mean for s in values) / len(values),
        variance=sum(s.variance for s in values) / len(values),
        reliability=sum(s.reliability for s in values) / len(values),
        shift=sum(s.shift for s in values) / len(values),
    )


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CalibrationDiagnostics:
    """Read-only report of how a context was fitted."""

    sample_count: int = 0
    binary_count: int = 0
    min_samples: int = 24
    multiplier: float = 1.0
    reliability: float = 0.0
    isotonic_weight: float = 0.0
    isotonic_nodes: int = 0
    regression: RegressionFit = field(default_factory=RegressionFit)
    market_lean: float = 0.0
    conf_multiplier: float = 1.0
    fse_multiplier: float = 1.0
    bands: Tuple[dict, ...] = ()
    rep_buckets: Tuple[dict, ...] = ()
    scatter: Tuple[dict, ...] = ()
    entity_table: Tuple[dict, ...] = ()
    odds_bucket_table: Tuple[dict, ...] = ()
    walk_forward: Tuple[dict, ...] = ()

    def to_dict(self) -> dict:
        r = self.regression
        return {
            "sample_count": self.sample_count,
            "binary_count": self.binary_count,
            "min_samples": self.min_samples,
            "regression": {
                "slope": r.slope, "intercept": r.intercept, "r2": r.r2, "rmse": r.rmse, "n": r.n,
            },
            "multiplier": self.multiplier,
            "reliability": self.reliability,
            "isotonic_weight": self.isotonic_weight,
            "isotonic_nodes": self.isotonic_nodes,
            "market_lean": self.market_lean,
            "multipliers": {"conf": round(self.conf_multiplier, 3), "fse": round(self.fse_multiplier, 3)},
            "bands": list(self.bands),
            "rep_buckets": list(self.rep_buckets),
            "scatter": list(self.scatter),
            "entity_table": list(self.entity_table),
            "odds_bucket_table": list(self.odds_bucket_table),
            "walk_forward": list(self.walk_forward),
        }


@dataclass(frozen=True)
class CalibrationContext:
    """Frozen calibration snapshot.  Rebuilt when history changes."""

    ready: bool
    curve: GlobalCurve = field(default_factory=GlobalCurve)
    entity_stats: Mapping[str, ResidualStat] = field(default_factory=dict)
    population: ResidualStat = field(default_factory=ResidualStat)
    bucket_stats: Mapping[str, ResidualStat] = field(default_factory=dict)
    market_lean: float = 0.0
    weight_odds: float = 0.06
    max_market_weight: float = 0.6
    market_lean_scale: float = 0.35
    conf_multiplier: float = 1.0
    fse_multiplier: float = 1.0
    resolver: EntityResolver = field(default_factory=EntityResolver, compare=False, repr=False)
    diagnostics: CalibrationDiagnostics = field(default_factory=CalibrationDiagnostics, compare=False)

    @classmethod
    def not_ready(
        cls,
        diagnostics: Optional[CalibrationDiagnostics] = None,
        conf_multiplier: float = 1.0,
        fse_multiplier: float = 1.0,
    ) -> "CalibrationContext":
        return cls(
            ready=False,
            conf_multiplier=conf_multiplier,
            fse_multiplier=fse_multiplier,
            diagnostics=diagnostics or CalibrationDiagnostics(),
        )

    def require_ready(self) -> "CalibrationContext":
        if not self.ready:
            d = self.diagnostics
            raise InsufficientSampleError(d.min_samples, d.sample_count)
        return self

    # ------------------------------------------------------------------
    # Pieces
    # ------------------------------------------------------------------

    def entity_adjustment(self, home: Optional[str], away: Optional[str]) -> Tuple[float, float]:
        """``(shift, reliability)`` for a pairing; ``(0, 0)`` without names."""
        keys = [self.resolver.key(name) for name in (home, away)]
        keys = [k for k in keys if k]
        if not keys:
            return 0.0, 0.0
        stats = [self.entity_stats.get(k, self.population) for k in keys]
        rel_total = sum(s.reliability for s in stats)
        mean_rel = rel_total / len(stats)
        if rel_total <= 0.0:
            return 0.0, mean_rel
        shift = sum(s.shift * s.reliability for s in stats) / rel_total
        return shift, mean_rel

    def bucket_shift(self, odds: Optional[float]) -> float:
        if not is_valid_odds(odds):
            return 0.0
        stat = self.bucket_stats.get(odds_bucket(odds))
        return stat.shift if stat else 0.0

    def market_weight(self, entity_reliability: float) -> float:
        lifted = self.weight_odds + self.market_lean * (1.0 - entity_reliability) * self.market_lean_scale
        return clamp(lifted, 0.0, self.max_market_weight)

    def pre_market(
        self,
        probability: float,
        odds: Optional[float] = None,
        home: Optional[str] = None,
        away: Optional[str] = None,
    ) -> Tuple[float, float]:
        """Entity and odds-bucket corrected probability, plus entity reliability."""
        shift, entity_rel = self.entity_adjustment(home, away)
        p = probability + shift + self.bucket_shift(odds)
        return clamp(p, _PRE_MARKET_MIN, _PRE_MARKET_MAX), entity_rel

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def match_correction(
        self,
        probability: float,
        odds: Optional[float] = None,
        home: Optional[str] = None,
        away: Optional[str] = None,
    ) -> float:
        """Apply the entity, odds-bucket and market steps to a global probability.

        A context that is not ready returns ``probability`` unchanged (clamped
        into ``(0, 1)``).
        """
        p = clamp(probability, PROB_EPSILON, 1.0 - PROB_EPSILON)
        if not self.ready:
            return p
        p, entity_rel = self.pre_market(p, odds, home, away)
        if is_valid_odds(odds):
            w = self.market_weight(entity_rel)
            p = (1.0 - w) * p + w * implied_probability(odds)
        return clamp(p, PROB_EPSILON, 1.0 - PROB_EPSILON)

    def global_probability(self, confidence: float) -> float:
        """Global-curve probability only (no entity, bucket or market step)."""
        if confidence is None or not math.isfinite(confidence):
            confidence = 0.5
        c = clamp(confidence, PROB_EPSILON, 1.0 - PROB_EPSILON)
        if not self.ready:
            return c
        return clamp(self.curve(c), PROB_EPSILON, 1.0 - PROB_EPSILON)

    def calibrate(
        self,
        confidence: float,
        odds: Optional[float] = None,
        home: Optional[str] = None,
        away: Optional[str] = None,
    ) -> float:
        """Calibrated probability in ``(0, 1)`` for a raw confidence."""
        return self.match_correction(self.global_probability(confidence), odds, home, away)


# ---------------------------------------------------------------------------
# Fitting
# ---------------------------------------------------------------------------

def _residual_groups(samples, predict) -> Dict[str, List[Tuple[float, float]]]:
    groups: Dict[str, List[Tuple[float, float]]] = {}
    for s in samples:
        residual = s.actual - predict(s)
        for key in {s.home_key, s.away_key}:
            if key:
                groups.setdefault(key, []).append((residual, s.weight))
    return groups


def _learn_market_lean(rows: Sequence[BinaryRow], context: CalibrationContext) -> float:
    """Positive when market-implied probabilities beat the internal model."""
    if not rows:
        return 0.0
    ys = [r.actual for r in rows]
    internal = [context.pre_market(context.curve(r.confidence), r.odds, r.home_key, r.away_key)[0] for r in rows]
    market = [implied_probability(r.odds) for r in rows]
    gap = brier_score(internal, ys) - brier_score(market, ys)
    shrink = len(rows) / (len(rows) + _LEAN_PRIOR_K)
    return clamp(gap / _LEAN_BRIER_SCALE, -1.0, 1.0) * shrink


def learn_multipliers(samples: Sequence[CalibrationSample]) -> Tuple[float, float]:
    """``(conf, fse)`` multipliers from weighted quality-score / confidence ratios.

    Only samples carrying a post-event quality score count.  The form
    multiplier divides each ratio by the form baseline and uses the samples
    that have both form scores.  Either multiplier is 1.0 without evidence.
    """
    conf_sum = conf_total = fse_sum = fse_total = 0.0
    for s in samples:
        if s.quality is None or s.confidence <= 0.0:
            continue
        ratio = clamp(s.quality / s.confidence, _RATIO_MIN, _RATIO_MAX)
        conf_sum += ratio * s.weight
        conf_total += s.weight
        if s.fse is None:
            continue
        fse_sum += clamp(ratio / fse_baseline(s.fse), _RATIO_MIN, _RATIO_MAX) * s.weight
        fse_total += s.weight

    def settle(total_ratio, total_weight):
        if total_weight <= 0.0:
            return 1.0
        return clamp(total_ratio / total_weight, LEARNED_MULTIPLIER_MIN, LEARNED_MULTIPLIER_MAX)

    return settle(conf_sum, conf_total), settle(fse_sum, fse_total)


def _band_report(samples: Sequence[CalibrationSample], config: EngineConfig) -> Tuple[dict, ...]:
    weights = {"recent": config.recency_tiers[0][1], "mid": config.recency_tiers[-1][1], "base": 1.0}
    counts = {name: 0 for name in weights}
    for s in samples:
        counts[s.recency_band] += 1
    return tuple({"band": name, "weight": weights[name], "samples": counts[name]} for name in weights)


def _rep_report(samples: Sequence[CalibrationSample], config: EngineConfig) -> Tuple[dict, ...]:
    weights = {
        "low": config.rep_tiers[0][1],
        "medium": config.rep_tiers[-1][1],
        "high": config.rep_high_weight,
    }
    counts = {name: 0 for name in weights}
    for s in samples:
        counts[_rep_bucket(s.rep, config)] += 1
    return tuple({"bucket": name, "weight": weights[name], "samples": counts[name]} for name in weights)


def fit_calibration(
    history: Sequence[HistoricalBet],
    config: Optional[EngineConfig] = None,
    entity_profiles: Optional[Sequence[EntityProfile]] = None,
) -> CalibrationContext:
    """Fit a :class:`CalibrationContext` from settled history.

    Pure function of its inputs: fitting the same history twice yields
    contexts whose :meth:`~CalibrationContext.calibrate` agree exactly.
    """
    from combo_edge.services.validation import evaluate_walk_forward

    config = config or EngineConfig.default()
    resolver = EntityResolver(entity_profiles or ())
    samples = extract_samples(history, config, resolver)
    binary_rows = extract_binary_rows(history, resolver)
    n = len(samples)
    conf_multiplier, fse_multiplier = learn_multipliers(samples)

    base_diag = dict(
        sample_count=n,
        binary_count=len(binary_rows),
        min_samples=config.min_calibration_samples,
        conf_multiplier=conf_multiplier,
        fse_multiplier=fse_multiplier,
        bands=_band_report(samples, config),
        rep_buckets=_rep_report(samples, config),
    )

    if n < config.min_calibration_samples:
        logger.info(
            "Calibration not ready: %d samples (need %d)", n, config.min_calibration_samples
        )
        return CalibrationContext.not_ready(CalibrationDiagnostics(**base_diag), conf_multiplier, fse_multiplier)

    curve = fit_global_curve(samples, config)

    entity_stats = _shrink_residuals(_residual_groups(samples, lambda s: curve(s.confidence)), config)
    population = _population(entity_stats)
    staged = CalibrationContext(
        ready=True,
        curve=curve,
        entity_stats=MappingProxyType(entity_stats),
        population=population,
        resolver=resolver,
    )

    bucket_groups: Dict[str, List[Tuple[float, float]]] = {}
    for s in samples:
        if s.odds is None:
            continue
        shift, _ = staged.entity_adjustment(s.home_key, s.away_key)
        residual = s.actual - (curve(s.confidence) + shift)
        bucket_groups.setdefault(odds_bucket(s.odds), []).append((residual, s.weight))
    bucket_stats = _shrink_residuals(bucket_groups, config)

    staged = CalibrationContext(
        ready=True,
        curve=curve,
        entity_stats=MappingProxyType(entity_stats),
        population=population,
        bucket_stats=MappingProxyType(bucket_stats),
        resolver=resolver,
    )
    market_lean = _learn_market_lean(binary_rows, staged)

    scatter = tuple(
        {
            "timestamp": s.timestamp.isoformat(),
            "label": s.label,
            "confidence": round(s.confidence, 3),
            "actual": round(s.actual, 3),
            "fitted": round(curve(s.confidence), 3),
            "residual": round(s.actual - curve.regression.predict(s.confidence), 3),
            "weight": round(s.weight, 2),
            "recency_band": s.recency_band,
            "rep": s.rep,
        }
        for s in samples
    )
    entity_table = tuple(
        {"entity": key, "samples": st.count, "mean_residual": round(st.mean, 4),
         "reliability": round(st.reliability, 4), "shift": round(st.shift, 4)}
        for key, st in sorted(entity_stats.items(), key=lambda kv: -kv[1].count)
    )
    odds_bucket_table = tuple(
        {"bucket": label, "samples": bucket_stats[label].count,
         "reliability": round(bucket_stats[label].reliability, 4),
         "shift": round(bucket_stats[label].shift, 4)}
        for label in ODDS_BUCKET_LABELS
        if label in bucket_stats
    )

    diagnostics = CalibrationDiagnostics(
        **base_diag,
        multiplier=curve.multiplier,
        reliability=curve.reliability,
        isotonic_weight=curve.iso_weight,
        isotonic_nodes=len(curve.iso_x),
        regression=curve.regression,
        market_lean=market_lean,
        scatter=scatter,
        entity_table=entity_table,
        odds_bucket_table=odds_bucket_table,
        walk_forward=tuple(evaluate_walk_forward(binary_rows, config)),
    )

    context = CalibrationContext(
        ready=True,
        curve=curve,
        entity_stats=MappingProxyType(entity_stats),
        population=population,
        bucket_stats=MappingProxyType(bucket_stats),
        market_lean=market_lean,
        weight_odds=config.weight_odds,
        max_market_weight=config.max_market_weight,
        market_lean_scale=config.market_lean_scale,
        conf_multiplier=conf_multiplier,
        fse_multiplier=fse_multiplier,
        resolver=resolver,
        diagnostics=diagnostics,
    )
    logger.info(
        "Calibration fitted: n=%d slope=%.3f r2=%.3f reliability=%.2f iso_w=%.2f "
        "entities=%d market_lean=%.3f conf_x=%.3f fse_x=%.3f",
        n, curve.regression.slope, curve.regression.r2, curve.reliability,
        curve.iso_weight, len(entity_stats), market_lean, conf_multiplier, fse_multiplier,
    )
    return context
