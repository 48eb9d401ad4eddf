"""Decimal-odds helpers and the bucket definitions shared across services.

Every function here is **pure**: no I/O, no logging, no side effects.

Design decisions
----------------
* Only decimal odds exist inside the engine.  Conversion from other formats
  happens at the boundary, before records are built.
* Bucket edges live here (not in the services) because the calibration
  odds-bucket correction, the Kelly divisor matrix and the diagnostics all
  need to agree on them.

Run tests with::

    pytest tests/test_odds_math.py -v
"""

from __future__ import annotations

import math
from typing import Final, Iterable, Tuple

# ---------------------------------------------------------------------------
# Module-level constants
# ---------------------------------------------------------------------------

#: Implied probabilities from market odds are clipped to this band.
IMPLIED_PROB_MIN: Final[float] = 0.02
IMPLIED_PROB_MAX: Final[float] = 0.98

#: Lower edges of the calibration odds buckets.  Bucket ``i`` covers
#: ``[ODDS_BUCKET_EDGES[i], ODDS_BUCKET_EDGES[i + 1])``; the last is open.
ODDS_BUCKET_EDGES: Final[Tuple[float, ...]] = (1.0, 1.6, 2.2, 3.2)

#: Labels for :data:`ODDS_BUCKET_EDGES`, in the same order.
ODDS_BUCKET_LABELS: Final[Tuple[str, ...]] = ("1.0-1.6", "1.6-2.2", "2.2-3.2", "3.2+")


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


def implied_probability(decimal_odds: float) -> float:
    """Market-implied probability ``1 / odds`` clipped to ``[0.02, 0.98]``.

    Non-finite or non-positive odds map to 0.5 (no market information).
    """
    if not math.isfinite(decimal_odds) or decimal_odds <= 0.0:
        return 0.5
    return min(IMPLIED_PROB_MAX, max(IMPLIED_PROB_MIN, 1.0 / decimal_odds))


def combined_odds(odds: Iterable[float]) -> float:
    """Parlay odds: the product of the leg odds (1.0 for no legs)."""
    product = 1.0
    for o in odds:
        product *= o
    return product


def is_valid_odds(decimal_odds) -> bool:
    """True for finite decimal odds strictly above 1."""
    try:
        value = float(decimal_odds)
    except (TypeError, ValueError):
        return False
    return math.isfinite(value) and value > 1.0


# ---------------------------------------------------------------------------
# Buckets
# ---------------------------------------------------------------------------


def odds_bucket(decimal_odds: float) -> str:
    """Calibration odds bucket label for ``decimal_odds``."""
    label = ODDS_BUCKET_LABELS[0]
    for edge, name in zip(ODDS_BUCKET_EDGES, ODDS_BUCKET_LABELS):
        if decimal_odds >= edge:
            label = name
    return label


def kelly_odds_bucket(decimal_odds: float) -> str:
    """Coarse odds bucket used by the Kelly divisor matrix."""
    if decimal_odds >= 3.0:
        return "3+"
    if decimal_odds >= 2.0:
        return "2-3"
    return "<2"


def confidence_bucket(confidence: float) -> str:
    """Confidence bucket used by the Kelly divisor matrix."""
    if confidence >= 0.7:
        return "0.7+"
    if confidence >= 0.4:
        return "0.4-0.7"
    return "<0.4"
