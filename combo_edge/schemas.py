"""
Pydantic record types and request/response schemas for Combo Edge.

Records are frozen: history is treated as an immutable input, and every
derived snapshot is rebuilt from it rather than patched in place.  Optional
fields are explicit and carry documented defaults, so downstream code never
has to guess what a missing value means.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from combo_edge.core.odds_math import combined_odds, is_valid_odds

#: Canonical leg modes.  Unknown modes are mapped to ``"regular"``.
LEG_MODES = ("regular", "stable", "leverage", "half-lottery", "insurance", "gamble")

#: Legacy mode spellings accepted on input.
_MODE_ALIASES = {"aggressive": "leverage", "regular-aggressive": "leverage"}

#: Tempo-style codes accepted for ``tys_home`` / ``tys_away``.
TYS_CODES = ("S", "M", "L", "H")

Strategy = Literal["threshold_strict", "soft_penalty", "manual_coverage"]
AllocationMode = Literal["balanced", "precision"]


def normalize_mode(mode: Optional[str]) -> str:
    key = (mode or "").strip().lower()
    key = _MODE_ALIASES.get(key, key)
    return key if key in LEG_MODES else "regular"


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive times are taken as UTC; aware times are converted to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Historical records
# ---------------------------------------------------------------------------

class LegRecord(BaseModel):
    """One event inside a settled bet."""

    home_entity: str = Field("", max_length=120)
    away_entity: str = Field("", max_length=120)
    confidence: float = Field(0.5, gt=0.0, lt=1.0, description="Pre-event subjective probability")
    odds: Optional[float] = Field(None, description="Decimal odds; invalid values are dropped")
    outcome_correct: Optional[bool] = Field(None, description="Binary outcome of the leg")
    quality_score: Optional[float] = Field(
        None, ge=0.0, le=1.0, description="Post-event quality score, the regression target"
    )
    rep: Optional[float] = Field(None, ge=0.0, le=1.0, description="Noise/variance score of the leg")
    mode: str = "regular"
    timestamp: Optional[datetime] = None

    # Auxiliary context factors
    fid: Optional[float] = Field(None, ge=0.0, le=1.0)
    tys_home: Optional[str] = None
    tys_away: Optional[str] = None
    fse_home: Optional[float] = Field(None, ge=0.0, le=1.0)
    fse_away: Optional[float] = Field(None, ge=0.0, le=1.0)

    model_config = {"frozen": True}

    @field_validator("confidence", mode="before")
    @classmethod
    def default_confidence(cls, v):
        return 0.5 if v is None else v

    @field_validator("odds", mode="before")
    @classmethod
    def drop_invalid_odds(cls, v):
        return float(v) if is_valid_odds(v) else None

    @field_validator("timestamp")
    @classmethod
    def utc_timestamp(cls, v):
        return to_utc(v)

    @field_validator("mode", mode="before")
    @classmethod
    def canonical_mode(cls, v):
        return normalize_mode(v)

    @field_validator("tys_home", "tys_away", mode="before")
    @classmethod
    def canonical_tys(cls, v):
        if v is None:
            return None
        code = str(v).strip().upper()
        return code if code in TYS_CODES else None

    def odds_or(self, default: float) -> float:
        return self.odds if self.odds is not None else default

    @property
    def actual(self) -> Optional[float]:
        """Regression target: the quality score, else the binary outcome."""
        if self.quality_score is not None:
            return self.quality_score
        if self.outcome_correct is not None:
            return 1.0 if self.outcome_correct else 0.0
        return None


class HistoricalBet(BaseModel):
    """A placed (possibly multi-leg) bet from the analyst's history."""

    id: str
    timestamp: datetime
    stake_amount: float = Field(0.0, ge=0.0)
    realized_profit: float = 0.0
    combined_odds: Optional[float] = None
    outcome_status: Literal["win", "lose", "pending"] = "pending"
    legs: List[LegRecord] = Field(default_factory=list)
    rep: Optional[float] = Field(None, ge=0.0, le=1.0, description="Bet-level noise fallback")
    is_archived: bool = False

    model_config = {
        "frozen": True,
        "json_schema_extra": {
            "example": {
                "id": "b-102",
                "timestamp": "2025-03-01T19:30:00",
                "stake_amount": 40.0,
                "realized_profit": 60.0,
                "outcome_status": "win",
                "legs": [
                    {
                        "home_entity": "Arsenal",
                        "away_entity": "Chelsea",
                        "confidence": 0.62,
                        "odds": 2.5,
                        "outcome_correct": True,
                        "quality_score": 0.7,
                    }
                ],
            }
        },
    }

    @field_validator("combined_odds", mode="before")
    @classmethod
    def drop_invalid_combined(cls, v):
        return float(v) if is_valid_odds(v) else None

    @field_validator("timestamp")
    @classmethod
    def utc_timestamp(cls, v):
        return to_utc(v)

    @property
    def is_settled(self) -> bool:
        """Active bet with a terminal status."""
        return not self.is_archived and self.outcome_status in ("win", "lose")

    def effective_odds(self, default: float) -> float:
        """Combined odds, else the product of valid leg odds, else ``default``."""
        if self.combined_odds is not None:
            return self.combined_odds
        leg_odds = [leg.odds for leg in self.legs if leg.odds is not None]
        if not leg_odds:
            return default
        return combined_odds(leg_odds)

    def mean_confidence(self) -> float:
        if not self.legs:
            return 0.5
        return sum(leg.confidence for leg in self.legs) / len(self.legs)


class LegAllocation(BaseModel):
    """A leg with its share of the parent bet's stake and profit."""

    bet_id: str
    timestamp: datetime
    leg: LegRecord
    rep: Optional[float] = None
    allocated_input: float = 0.0
    allocated_profit: float = 0.0

    model_config = {"frozen": True}

    @field_validator("timestamp")
    @classmethod
    def utc_timestamp(cls, v):
        return to_utc(v)


def split_bet_to_legs(bet: HistoricalBet) -> List[LegAllocation]:
    """Split a bet's stake evenly and its payout by odds weight across legs.

    Legs without odds take no share of the payout.  The leg-level REP falls
    back to the bet-level REP.
    """
    if not bet.legs:
        return []
    per_input = bet.stake_amount / len(bet.legs)
    revenue = max(0.0, bet.stake_amount + bet.realized_profit)
    odds = [leg.odds or 0.0 for leg in bet.legs]
    odds_sum = sum(odds)

    out = []
    for leg, o in zip(bet.legs, odds):
        share = revenue * o / odds_sum if revenue > 0 and odds_sum > 0 else 0.0
        out.append(
            LegAllocation(
                bet_id=bet.id,
                timestamp=leg.timestamp or bet.timestamp,
                leg=leg,
                rep=leg.rep if leg.rep is not None else bet.rep,
                allocated_input=per_input,
                allocated_profit=share - per_input,
            )
        )
    return out


# ---------------------------------------------------------------------------
# Entity metadata
# ---------------------------------------------------------------------------

class EntityProfile(BaseModel):
    """Canonical entity name plus the aliases it is recorded under."""

    name: str = Field(..., min_length=1, max_length=120)
    aliases: List[str] = Field(default_factory=list)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Candidates and filters
# ---------------------------------------------------------------------------

class Candidate(BaseModel):
    """A currently selected event that may enter a combo."""

    id: str
    confidence: float = Field(0.5, gt=0.0, lt=1.0)
    odds: Optional[float] = Field(None, gt=1.0, description="Decimal odds; default odds when absent")
    home_entity: str = ""
    away_entity: str = ""
    mode: str = "regular"
    fid: Optional[float] = Field(None, ge=0.0, le=1.0)
    tys_home: Optional[str] = None
    tys_away: Optional[str] = None
    fse_home: Optional[float] = Field(None, ge=0.0, le=1.0)
    fse_away: Optional[float] = Field(None, ge=0.0, le=1.0)
    source_id: Optional[str] = Field(None, description="Parent ticket; shared sources are concentrated exposure")

    model_config = {"frozen": True}

    @field_validator("confidence", mode="before")
    @classmethod
    def default_confidence(cls, v):
        return 0.5 if v is None else v

    @field_validator("mode", mode="before")
    @classmethod
    def canonical_mode(cls, v):
        return normalize_mode(v)

    @field_validator("tys_home", "tys_away", mode="before")
    @classmethod
    def canonical_tys(cls, v):
        if v is None:
            return None
        code = str(v).strip().upper()
        return code if code in TYS_CODES else None

    @property
    def source_key(self) -> str:
        return self.source_id or self.id

    def odds_or(self, default: float) -> float:
        return self.odds if self.odds is not None else default


class QualityFilter(BaseModel):
    """Per-combo thresholds, all as fractions."""

    min_ev: float = Field(0.0, description="Minimum expected value per unit staked")
    min_win_rate: float = Field(0.05, ge=0.0, le=1.0)
    max_corr: float = Field(0.85, ge=0.0, le=1.0)

    model_config = {"frozen": True}

    @field_validator("min_ev")
    @classmethod
    def finite_ev(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("min_ev must be finite")
        return v


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------

class _HistoryPayload(BaseModel):
    history: List[HistoricalBet] = Field(default_factory=list)
    entity_profiles: List[EntityProfile] = Field(default_factory=list)
    config_overrides: Dict[str, float] = Field(default_factory=dict)


class CalibrationFitRequest(_HistoryPayload):
    """Payload for POST /api/calibration/fit and /api/calibration/validate."""

    sample_confidences: List[float] = Field(
        default_factory=lambda: [0.3, 0.5, 0.6, 0.7],
        description="Confidences to run through the fitted calibration",
    )


class KellyBacktestRequest(_HistoryPayload):
    """Payload for POST /api/kelly/backtest."""

    divisors: Optional[List[float]] = None
    seed_salt: str = "kelly"
    include_modes: bool = False
    include_matrix: bool = False

    @field_validator("divisors")
    @classmethod
    def positive_divisors(cls, v):
        if v is None:
            return v
        if not v or any(d <= 0 for d in v):
            raise ValueError("divisors must be a non-empty list of positive numbers")
        return v


class RecommendRequest(_HistoryPayload):
    """Payload for POST /api/combos/recommend."""

    candidates: List[Candidate] = Field(..., min_length=1)
    risk_preference: float = Field(50.0, ge=0.0, le=100.0)
    risk_cap: Optional[float] = Field(None, ge=0.0, description="Defaults to the configured risk cap")
    quality_filter: QualityFilter = Field(default_factory=QualityFilter)
    strategy: Strategy = "soft_penalty"
    allocation_mode: AllocationMode = "balanced"
    kelly_divisor: Optional[float] = Field(None, gt=0.0)
    simulate: bool = False


class HealthResponse(BaseModel):
    status: str
    version: str
    cache_revision: int
