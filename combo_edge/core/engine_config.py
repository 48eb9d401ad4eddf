"""Engine configuration: every tunable constant in one place.

This module is the **registry** for the constants the calibration pipeline,
the Monte Carlo backtest and the combo optimizer share.  Nowhere else in the
codebase should the initial capital, the recency tiers or the factor weights
be hard-coded.

Architecture
------------
:class:`EngineConfig` is a frozen dataclass.  :meth:`EngineConfig.default`
returns the stock instance; :meth:`EngineConfig.from_env` overlays
``COMBO_EDGE_<FIELD>`` environment variables (a ``.env`` file is honoured via
python-dotenv).  Every field has a default.

Typical usage::

    from combo_edge.core.engine_config import EngineConfig

    cfg = EngineConfig.default()

    # Override a single constant for an experiment:
    from dataclasses import replace
    aggressive = replace(cfg, kelly_divisor=2.5)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Final, Optional, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

#: Prefix for environment overrides, e.g. ``COMBO_EDGE_INITIAL_CAPITAL=1000``.
ENV_PREFIX: Final[str] = "COMBO_EDGE_"

#: Divisors evaluated by the Kelly backtest when the caller passes none.
DEFAULT_KELLY_DIVISORS: Final[Tuple[float, ...]] = (
    2.0, 2.5, 3.0, 3.5, 4.0, 4.5, 5.0, 6.0, 7.0, 8.0, 9.0, 10.0,
)


@dataclass(frozen=True)
class EngineConfig:
    """Immutable configuration bundle for one engine run.

    Attributes:
        --- Bankroll ---
        initial_capital: Starting balance of every simulated run and the
            capital base for Kelly stakes.
        risk_cap_ratio: Fraction of ``initial_capital`` that may be deployed
            on one slate.  See :attr:`risk_cap`.
        default_odds: Decimal odds assumed for legs and candidates whose
            odds are missing or invalid.
        kelly_divisor: Fallback fractional-Kelly divisor used when the
            backtest is not reliable yet.
        max_worst_drawdown_alert_pct: Drawdown (percent) above which a
            backtest is flagged in diagnostics.

        --- Factor weights ---
        weight_mode / weight_tys / weight_fid / weight_fse: Exponents applied
            to the mode / tempo / fidelity / form context factors.
        weight_odds: Base weight of the market-implied probability.

        --- Sample weighting ---
        recency_block_size: Samples per recency block; the block count is
            ``max(1, n // recency_block_size)``.
        recency_tiers: ``(blocks, weight)`` pairs, most recent first.
            Samples past the last tier get weight 1.0.
        rep_tiers: ``(upper_bound, weight)`` pairs for the REP noise score.
        rep_high_weight: Weight for REP above the last tier bound.

        --- Calibration ---
        min_calibration_samples: Samples required before the calibration
            context is ready.
        entity_prior_k: Shrinkage pseudo-count for entity and odds-bucket
            residual corrections.
        entity_variance_scale: Residual variance at which reliability halves.
        entity_shift_cap: Absolute cap on any residual shift.
        isotonic_blend_max: Maximum weight of the isotonic curve.
        isotonic_ramp_samples: Extra samples (past the minimum) needed for
            the isotonic curve to reach full reliability.
        max_market_weight: Ceiling of the market-implied blend weight.
        market_lean_scale: How strongly the learned market lean raises the
            market weight when entity evidence is thin.

        --- Monte Carlo ---
        mc_target_runs / mc_operation_budget / mc_min_runs: Run count is
            ``clamp(min(target, budget // n), min_runs, target)``.
        portfolio_mc_runs: Runs of the recommendation-set Monte Carlo.

        --- Optimizer ---
        max_candidates: Largest candidate list accepted.
        max_subset_size: Largest combo size enumerated.
        optimizer_iterations / optimizer_learning_rate: Projected gradient
            ascent schedule (learning rate is cosine-annealed).
        optimizer_universe_cap: Combos entering the weight optimizer.
        max_recommendations: Combos returned to the caller.
        seed_quota: Top combos kept before coverage injection.
        balanced_unit / precision_unit: Cash allocation unit per mode.
        balanced_min_active: Minimum funded combos in balanced mode.

        --- Combo structure ---
        parlay_beta: Scale of the concave multi-leg bonus
            ``β·(√(legs−1) − 0.15)``.
        min_legs: Smallest combo size ranked; falls back to every size when
            nothing that large exists.
        surplus_bonus_scale: Weight of the mean confidence surplus (model
            probability over vig-free implied probability) in the ranking.
        surplus_vig: Overround removed from ``1/odds`` before the surplus.
        mmr_lambda: Utility share of the diversity rerank; ``1 − λ`` goes to
            dissimilarity.
        coverage_eta: Weight of newly covered candidates in the rerank.
        match_concentration_cap: Largest share of kept combos one candidate
            may appear in (never below two combos).
    """

    # Bankroll
    initial_capital: float = 600.0
    risk_cap_ratio: float = 0.12
    default_odds: float = 2.5
    kelly_divisor: float = 4.0
    max_worst_drawdown_alert_pct: float = 22.0

    # Factor weights
    weight_mode: float = 0.16
    weight_tys: float = 0.12
    weight_fid: float = 0.14
    weight_odds: float = 0.06
    weight_fse: float = 0.07

    # Sample weighting
    recency_block_size: int = 50
    recency_tiers: Tuple[Tuple[int, float], ...] = ((6, 1.4), (11, 1.15))
    rep_tiers: Tuple[Tuple[float, float], ...] = ((0.4, 1.15), (0.8, 1.0))
    rep_high_weight: float = 0.78

    # Calibration
    min_calibration_samples: int = 24
    entity_prior_k: float = 12.0
    entity_variance_scale: float = 0.04
    entity_shift_cap: float = 0.18
    isotonic_blend_max: float = 0.6
    isotonic_ramp_samples: int = 96
    max_market_weight: float = 0.6
    market_lean_scale: float = 0.35

    # Monte Carlo
    mc_target_runs: int = 100_000
    mc_operation_budget: int = 2_000_000
    mc_min_runs: int = 200
    portfolio_mc_runs: int = 10_000

    # Optimizer
    max_candidates: int = 12
    max_subset_size: int = 5
    optimizer_iterations: int = 180
    optimizer_learning_rate: float = 0.16
    optimizer_universe_cap: int = 14
    max_recommendations: int = 15
    seed_quota: int = 8
    balanced_unit: int = 10
    precision_unit: int = 1
    balanced_min_active: int = 6

    # Combo structure
    parlay_beta: float = 0.12
    min_legs: int = 1
    surplus_bonus_scale: float = 0.15
    surplus_vig: float = 0.05
    mmr_lambda: float = 0.55
    coverage_eta: float = 0.15
    match_concentration_cap: float = 0.6

    def __post_init__(self) -> None:
        if self.initial_capital < 0:
            raise ValueError(f"initial_capital must be >= 0, got {self.initial_capital!r}")
        if not (0.0 <= self.risk_cap_ratio <= 1.0):
            raise ValueError(f"risk_cap_ratio must be in [0, 1], got {self.risk_cap_ratio!r}")
        if self.default_odds <= 1.0:
            raise ValueError(f"default_odds must be > 1, got {self.default_odds!r}")
        if self.max_subset_size < 1:
            raise ValueError(f"max_subset_size must be >= 1, got {self.max_subset_size!r}")
        for name in ("balanced_unit", "precision_unit"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0, got {getattr(self, name)!r}")
        if not (1 <= self.min_legs <= self.max_subset_size):
            raise ValueError(f"min_legs must be in [1, max_subset_size], got {self.min_legs!r}")
        for name in ("mmr_lambda", "coverage_eta", "match_concentration_cap", "surplus_vig"):
            if not (0.0 <= getattr(self, name) <= 1.0):
                raise ValueError(f"{name} must be in [0, 1], got {getattr(self, name)!r}")

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def risk_cap(self) -> float:
        """Maximum cash deployable on one slate."""
        return self.initial_capital * self.risk_cap_ratio

    def recency_weight(self, index: int, count: int) -> float:
        """Weight of the ``index``-th most recent of ``count`` samples."""
        block = max(1, count // max(1, self.recency_block_size))
        for blocks, weight in self.recency_tiers:
            if index < blocks * block:
                return weight
        return 1.0

    def rep_weight(self, rep) -> float:
        """Weight for a REP noise score; missing REP weighs 1.0."""
        if rep is None or rep != rep:
            return 1.0
        for bound, weight in self.rep_tiers:
            if rep <= bound:
                return weight
        return self.rep_high_weight

    # ------------------------------------------------------------------
    # Named constructors
    # ------------------------------------------------------------------

    @classmethod
    def default(cls) -> "EngineConfig":
        return cls()

    @classmethod
    def from_env(cls, base: Optional["EngineConfig"] = None) -> "EngineConfig":
        """Overlay ``COMBO_EDGE_*`` environment variables on ``base``.

        Only scalar fields can be overridden; tuple-valued tiers stay at
        their ``base`` values.
        """
        load_dotenv()
        cfg = base or cls()
        overrides = {}
        for f in fields(cls):
            current = getattr(cfg, f.name)
            if isinstance(current, tuple):
                continue
            raw = os.getenv(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            try:
                overrides[f.name] = type(current)(float(raw)) if isinstance(current, int) else float(raw)
            except ValueError:
                logger.warning("Ignoring %s%s=%r: not a number", ENV_PREFIX, f.name.upper(), raw)
        if overrides:
            logger.info("EngineConfig env overrides: %s", sorted(overrides))
            cfg = replace(cfg, **overrides)
        return cfg

    def with_overrides(self, **overrides) -> "EngineConfig":
        """Return a copy with ``overrides`` applied; unknown keys raise ``ValueError``."""
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ValueError(f"Unknown EngineConfig fields: {unknown}")
        coerced = {}
        for name, value in overrides.items():
            current = getattr(self, name)
            if isinstance(current, tuple) and not isinstance(value, tuple):
                raise ValueError(f"{name} expects a tuple of tiers, got {value!r}")
            if isinstance(current, int) and not isinstance(current, bool) and isinstance(value, float):
                if not value.is_integer():
                    raise ValueError(f"{name} must be a whole number, got {value!r}")
                value = int(value)
            coerced[name] = value
        return replace(self, **coerced)
