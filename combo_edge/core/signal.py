"""Signal primitives, the numeric leaf layer of the engine.

All functions here are **pure**: no I/O, no logging, no global state.
Calibration, backtest and optimizer code import from this module; never
reimplement a regression or a scoring rule locally in services.

The pieces exposed are:

1. **Weighted statistics**: :func:`weighted_pearson` and
   :func:`weighted_linear_regression` (closed-form WLS for one predictor).
2. **Scoring rules**: :func:`brier_score`, :func:`log_loss` and
   :func:`calibration_mae` for binary probability forecasts.
3. **Deterministic randomness**: :class:`SeededRng` and :func:`derive_seed`.

Design decisions
----------------
* Regression degenerate cases return the identity map (slope 1, intercept 0)
  instead of raising.  Thin history is the normal state of a new account;
  callers gate on ``n`` and ``r2`` rather than catching exceptions.
* :class:`SeededRng` is counter-based: the ``k``-th draw is a pure function of
  ``(seed, k)``.  That makes a vectorised batch of draws bit-identical to the
  same number of scalar :meth:`SeededRng.next` calls, so Monte Carlo code can
  switch between the two without changing results.
* Seeds are derived from the data being simulated (:func:`derive_seed`), never
  from the wall clock.  Two runs over the same history agree exactly.

Run tests with::

    pytest tests/test_signal.py -v
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Final, Iterable, Optional, Sequence

import numpy as np

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Probabilities handed to log-loss / Brier are clipped to this band so a
#: single confident miss cannot produce an infinite penalty.
SCORE_PROB_FLOOR: Final[float] = 1e-3

#: Generic epsilon used to keep calibrated probabilities inside (0, 1).
PROB_EPSILON: Final[float] = 1e-4

#: Number of equal-width bins in the reliability diagram behind
#: :func:`calibration_mae`.
DEFAULT_CALIBRATION_BINS: Final[int] = 8

#: Only the first rows feed the seed hash; long histories stay cheap to hash.
SEED_PREFIX_ROWS: Final[int] = 64

_MASK32: Final[int] = 0xFFFFFFFF
_GOLDEN32: Final[int] = 0x9E3779B9
_MIX_A: Final[int] = 0x85EBCA6B
_MIX_B: Final[int] = 0xC2B2AE35
_FNV_OFFSET: Final[int] = 0x811C9DC5
_FNV_PRIME: Final[int] = 0x01000193


def clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    """Clip ``value`` into ``[lo, hi]``; NaN maps to ``lo``."""
    if value != value:  # NaN
        return lo
    return max(lo, min(hi, value))


# ---------------------------------------------------------------------------
# Weighted statistics
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RegressionFit:
    """Result of a one-predictor weighted least-squares fit."""

    slope: float = 1.0
    intercept: float = 0.0
    r2: float = 0.0
    rmse: float = 0.0
    n: int = 0

    def predict(self, x: float) -> float:
        return self.intercept + self.slope * x


def _as_weights(n: int, weights: Optional[Sequence[float]]) -> np.ndarray:
    if weights is None:
        return np.ones(n, dtype=float)
    w = np.asarray(weights, dtype=float)
    if w.shape != (n,):
        raise ValueError(f"weights must have length {n}, got shape {w.shape}")
    w = np.where(np.isfinite(w) & (w > 0.0), w, 0.0)
    return w


def weighted_pearson(
    xs: Sequence[float],
    ys: Sequence[float],
    weights: Optional[Sequence[float]] = None,
) -> float:
    """Weighted Pearson correlation of ``xs`` and ``ys``.

    Returns 0.0 for fewer than two points, mismatched lengths, or when
    either series has zero weighted variance.
    """
    if len(xs) != len(ys) or len(xs) < 2:
        return 0.0
    x = np.asarray(xs, dtype=float)
    y = np.asarray(ys, dtype=float)
    w = _as_weights(len(x), weights)
    total = w.sum()
    if total <= 0.0:
        return 0.0
    mx = float(np.dot(w, x) / total)
    my = float(np.dot(w, y) / total)
    cov = float(np.dot(w, (x - mx) * (y - my)))
    vx = float(np.dot(w, (x - mx) ** 2))
    vy = float(np.dot(w, (y - my) ** 2))
    if vx <= 0.0 or vy <= 0.0:
        return 0.0
    return cov / math.sqrt(vx * vy)


def weighted_linear_regression(
    xs: Sequence[float],
    ys: Sequence[float],
    weights: Optional[Sequence[float]] = None,
) -> RegressionFit:
    """Closed-form weighted least squares ``y ≈ intercept + slope · x``.

    Degenerate inputs never raise:

    * fewer than two points or mismatched lengths → identity fit with ``n=0``;
    * zero weighted variance in ``x`` → slope 1, intercept ``ȳ − x̄``.

    ``r2`` is clamped to ``[0, 1]``; ``rmse`` is the weighted root-mean-square
    residual (``sqrt(SS_res / Σw)``).
    """
    if len(xs) != len(ys) or len(xs) < 2:
        return RegressionFit()

    x = np.asarray(xs, dtype=float)
    y = np.asarray(ys, dtype=float)
    w = _as_weights(len(x), weights)
    total = float(w.sum())
    if total <= 0.0:
        return RegressionFit()

    mx = float(np.dot(w, x) / total)
    my = float(np.dot(w, y) / total)
    var_x = float(np.dot(w, (x - mx) ** 2))
    cov_xy = float(np.dot(w, (x - mx) * (y - my)))

    slope = cov_xy / var_x if var_x > 0.0 else 1.0
    intercept = my - slope * mx

    residuals = y - (intercept + slope * x)
    ss_res = float(np.dot(w, residuals ** 2))
    ss_tot = float(np.dot(w, (y - my) ** 2))
    r2 = 1.0 - ss_res / ss_tot if ss_tot > 0.0 else 0.0

    return RegressionFit(
        slope=slope,
        intercept=intercept,
        r2=clamp(r2, 0.0, 1.0),
        rmse=math.sqrt(ss_res / total),
        n=len(x),
    )


# ---------------------------------------------------------------------------
# Scoring rules
# ---------------------------------------------------------------------------


def _clipped(ps: Sequence[float]) -> np.ndarray:
    return np.clip(np.asarray(ps, dtype=float), SCORE_PROB_FLOOR, 1.0 - SCORE_PROB_FLOOR)


def brier_score(ps: Sequence[float], ys: Sequence[float]) -> float:
    """Mean squared error between forecasts and 0/1 outcomes (0.0 if empty)."""
    if len(ps) == 0:
        return 0.0
    p = _clipped(ps)
    y = np.asarray(ys, dtype=float)
    return float(np.mean((p - y) ** 2))


def log_loss(ps: Sequence[float], ys: Sequence[float]) -> float:
    """Mean binary cross-entropy (0.0 if empty)."""
    if len(ps) == 0:
        return 0.0
    p = _clipped(ps)
    y = np.asarray(ys, dtype=float)
    return float(-np.mean(y * np.log(p) + (1.0 - y) * np.log(1.0 - p)))


def calibration_mae(
    ps: Sequence[float],
    ys: Sequence[float],
    bins: int = DEFAULT_CALIBRATION_BINS,
) -> float:
    """Count-weighted mean |avg forecast − hit rate| over equal-width bins."""
    if len(ps) == 0:
        return 0.0
    p = _clipped(ps)
    y = np.asarray(ys, dtype=float)
    idx = np.minimum((p * bins).astype(int), bins - 1)
    total_error = 0.0
    for b in range(bins):
        mask = idx == b
        count = int(mask.sum())
        if count == 0:
            continue
        total_error += abs(float(p[mask].mean()) - float(y[mask].mean())) * count
    return total_error / len(p)


# ---------------------------------------------------------------------------
# Deterministic randomness
# ---------------------------------------------------------------------------


def _mix32(x: int) -> int:
    x &= _MASK32
    x ^= x >> 16
    x = (x * _MIX_A) & _MASK32
    x ^= x >> 13
    x = (x * _MIX_B) & _MASK32
    x ^= x >> 16
    return x


def _mix32_array(x: np.ndarray) -> np.ndarray:
    mask = np.uint64(_MASK32)
    x = x & mask
    x ^= x >> np.uint64(16)
    x = (x * np.uint64(_MIX_A)) & mask
    x ^= x >> np.uint64(13)
    x = (x * np.uint64(_MIX_B)) & mask
    x ^= x >> np.uint64(16)
    return x


class SeededRng:
    """Counter-based 32-bit generator with explicit ``(seed, counter)`` state.

    Every draw advances ``counter`` by one.  Two instances built with the same
    seed produce the same sequence, whether drawn one at a time with
    :meth:`next` or in batches with :meth:`uniform`.
    """

    def __init__(self, seed: int, counter: int = 0):
        self.seed = int(seed) & _MASK32
        self.counter = int(counter)

    def _word(self, k: int) -> int:
        return _mix32(self.seed ^ ((k * _GOLDEN32) & _MASK32))

    def next(self) -> float:
        """One uniform draw in ``[0, 1)``."""
        value = self._word(self.counter) / 4294967296.0
        self.counter += 1
        return value

    def uniform(self, size) -> np.ndarray:
        """Array of uniform draws in ``[0, 1)`` with the given shape."""
        shape = (size,) if isinstance(size, int) else tuple(size)
        count = int(np.prod(shape)) if shape else 1
        ks = np.arange(self.counter, self.counter + count, dtype=np.uint64)
        golden = (ks * np.uint64(_GOLDEN32)) & np.uint64(_MASK32)
        words = _mix32_array(golden ^ np.uint64(self.seed))
        self.counter += count
        return (words.astype(np.float64) / 4294967296.0).reshape(shape)

    def integers(self, high: int, size) -> np.ndarray:
        """Uniform integers in ``[0, high)`` with the given shape."""
        if high <= 0:
            raise ValueError(f"high must be positive, got {high!r}")
        draws = self.uniform(size)
        return np.minimum((draws * high).astype(np.int64), high - 1)

    def __repr__(self) -> str:
        return f"SeededRng(seed={self.seed}, counter={self.counter})"


def derive_seed(rows: Iterable[Sequence[float]], salt: str = "") -> int:
    """Fold a bounded prefix of numeric rows plus ``salt`` into a 32-bit seed.

    Each value is quantised to 1e-6 before hashing so harmless float noise
    does not change the seed.  The total row count is folded in as well, so
    appending rows past the prefix still yields a different seed.
    """
    h = _FNV_OFFSET
    count = 0
    for row in rows:
        if count < SEED_PREFIX_ROWS:
            for value in row:
                v = float(value)
                q = int(round(v * 1e6)) if math.isfinite(v) else 0
                h ^= q & _MASK32
                h = (h * _FNV_PRIME) & _MASK32
        count += 1
    h ^= count & _MASK32
    h = (h * _FNV_PRIME) & _MASK32
    for ch in salt:
        h ^= ord(ch)
        h = (h * _FNV_PRIME) & _MASK32
    return _mix32(h)
