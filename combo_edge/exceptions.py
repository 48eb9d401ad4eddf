"""
Exception hierarchy for the Combo Edge engine.

Every error the engine raises on purpose derives from :class:`EngineError`,
which carries a machine-readable ``error_code`` and a ``details`` dict that
the HTTP layer serialises verbatim.
"""

from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base exception for all engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code or "ENGINE_ERROR"
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class InsufficientSampleError(EngineError):
    """Raised when a caller requires a fitted model but history is too thin."""

    def __init__(self, required: int, actual: int, what: str = "calibration samples", **kwargs):
        message = f"Need at least {required} {what} (got {actual})"
        super().__init__(message, error_code="INSUFFICIENT_SAMPLE", **kwargs)
        self.details.update({"required": required, "actual": actual})


class NoQualifyingComboError(EngineError):
    """Raised when threshold-strict filtering leaves no combo."""

    def __init__(self, candidate_combos: int, quality_filter: Optional[Dict[str, float]] = None, **kwargs):
        message = f"No combo out of {candidate_combos} passed the quality filter"
        super().__init__(message, error_code="NO_QUALIFYING_COMBO", **kwargs)
        self.details["candidate_combos"] = candidate_combos
        if quality_filter:
            self.details["quality_filter"] = dict(quality_filter)


class DegenerateInputError(EngineError, ValueError):
    """Raised by strict primitives for impossible inputs (odds <= 1, p outside (0, 1))."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="DEGENERATE_INPUT", **kwargs)
