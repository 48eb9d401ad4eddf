"""Kelly criterion sizing, the single source of truth for stake math.

All functions here are **pure**: no I/O, no logging.
Import from this module; never reimplement Kelly locally in services.

Two sizing contexts exist in the engine:

1. :func:`kelly_fraction`: strict fractional Kelly for a win/loss bet.
   Rejects impossible inputs with :class:`~combo_edge.exceptions.DegenerateInputError`.
2. :func:`kelly_stake`: cash stake used by the Monte Carlo backtest and the
   combo optimizer.  Tolerant: out-of-range inputs clamp to a zero stake
   instead of raising, so a single bad history row cannot abort a backtest.

Design decisions
----------------
* **Fractional Kelly** (1/N of full Kelly) is used everywhere.  The divisor is
  not fixed: :mod:`combo_edge.services.backtest` chooses it from history by
  Monte Carlo, which is why it is a plain argument here.
* Stakes are capped by a per-slate **risk cap** (a fraction of capital), not
  by a per-bet fraction.  A divisor below 1 is treated as 1: the engine never
  sizes above full Kelly.

Run tests with::

    pytest tests/test_kelly.py -v
"""

from __future__ import annotations

import math
from typing import Final

from combo_edge.exceptions import DegenerateInputError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Hard cap on any single fractional Kelly output from :func:`kelly_fraction`.
MAX_KELLY_FRACTION: Final[float] = 0.20

#: Smallest divisor honoured by :func:`kelly_stake`.
MIN_DIVISOR: Final[float] = 1.0


# ---------------------------------------------------------------------------
# Strict Kelly
# ---------------------------------------------------------------------------


def full_kelly(win_prob: float, decimal_odds: float) -> float:
    """Unconstrained Kelly fraction ``(p·o − 1) / (o − 1)`` (may be negative)."""
    return (win_prob * decimal_odds - 1.0) / (decimal_odds - 1.0)


def kelly_fraction(
    win_prob: float,
    decimal_odds: float,
    *,
    fractional_divisor: float = 4.0,
    max_fraction: float = MAX_KELLY_FRACTION,
) -> float:
    """Compute fractional Kelly bet size for a simple win/loss outcome.

    The closed form (Kelly 1956) with ``b = decimal_odds − 1``::

        f*  =  (p · b − q) / b  =  (p · o − 1) / (o − 1)           (1)

    and the fractional recommendation is ``f* / fractional_divisor``.

    Args:
        win_prob: Calibrated probability of winning, in ``(0, 1)``.
        decimal_odds: Decimal odds (total payout per unit), ``> 1``.
        fractional_divisor: Divisor applied to full Kelly.  Values below 1
            are treated as 1.
        max_fraction: Hard cap on the output fraction.

    Returns:
        Fractional Kelly in ``[0, max_fraction]``; 0.0 for non-positive edge.

    Raises:
        DegenerateInputError: If ``win_prob`` is outside ``(0, 1)`` or
            ``decimal_odds <= 1``.

    Examples::

        kelly_fraction(0.60, 2.0)                          →  0.05
        kelly_fraction(0.40, 2.0)                          →  0.00
        kelly_fraction(0.60, 2.0, fractional_divisor=2.0)  →  0.10
    """
    if not (0.0 < win_prob < 1.0):
        raise DegenerateInputError(
            f"win_prob must be in (0, 1), got {win_prob!r}",
            details={"win_prob": win_prob},
        )
    if not decimal_odds > 1.0:
        raise DegenerateInputError(
            f"decimal_odds must be > 1.0, got {decimal_odds!r}",
            details={"decimal_odds": decimal_odds},
        )

    f_star = full_kelly(win_prob, decimal_odds)
    if f_star <= 0.0:
        return 0.0
    return min(f_star / max(MIN_DIVISOR, fractional_divisor), max_fraction)


# ---------------------------------------------------------------------------
# Cash stake
# ---------------------------------------------------------------------------


def kelly_stake(
    win_prob: float,
    decimal_odds: float,
    divisor: float,
    capital: float,
    risk_cap: float,
) -> float:
    """Cash stake ``capital · max(0, f*) / max(1, divisor)`` clipped to ``[0, risk_cap]``.

    Never raises and never returns NaN: odds at or below 1, non-finite
    inputs and non-positive capital all produce a zero stake.
    """
    if not all(math.isfinite(v) for v in (win_prob, decimal_odds, divisor, capital, risk_cap)):
        return 0.0
    if decimal_odds <= 1.0 or capital <= 0.0 or risk_cap <= 0.0:
        return 0.0
    p = min(1.0, max(0.0, win_prob))
    f_star = max(0.0, full_kelly(p, decimal_odds))
    stake = capital * f_star / max(MIN_DIVISOR, divisor)
    return min(risk_cap, max(0.0, stake))
