"""
FastAPI application for the Combo Edge engine.

Stateless request/response surface over the calibration, Kelly backtest and
combo optimizer services.  Every request carries its own history; fitted
calibration snapshots are memoized in a :class:`SnapshotCache` on
``app.state`` keyed by a content fingerprint of their inputs.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from combo_edge import __version__
from combo_edge.core.engine_config import DEFAULT_KELLY_DIVISORS, EngineConfig
from combo_edge.exceptions import (
    DegenerateInputError,
    EngineError,
    InsufficientSampleError,
    NoQualifyingComboError,
)
from combo_edge.schemas import (
    CalibrationFitRequest,
    HealthResponse,
    KellyBacktestRequest,
    RecommendRequest,
    _HistoryPayload,
)
from combo_edge.services.backtest import (
    backtest_kelly_divisors,
    kelly_divisor_matrix,
    mode_kelly_recommendations,
)
from combo_edge.services.calibration import CalibrationContext, fit_calibration
from combo_edge.services.combo_optimizer import generate_recommendations
from combo_edge.services.portfolio_sim import simulate_portfolio
from combo_edge.services.session import SnapshotCache, fingerprint
from combo_edge.services.validation import validate_calibration

# Logging setup
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    app.state.base_config = EngineConfig.from_env()
    app.state.cache = SnapshotCache()
    logger.info("Starting Combo Edge engine v%s (risk cap %.0f)", __version__, app.state.base_config.risk_cap)
    yield
    logger.info("Shutting down Combo Edge engine")


app = FastAPI(
    title="Combo Edge",
    description="Confidence calibration, Kelly divisor backtests and combo portfolio optimization",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# HELPERS
# ============================================================================

def _config_for(request: Request, payload: _HistoryPayload) -> EngineConfig:
    base = getattr(request.app.state, "base_config", None) or EngineConfig.from_env()
    try:
        return base.with_overrides(**payload.config_overrides)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=422, detail=str(exc))


def _cache(request: Request) -> SnapshotCache:
    cache = getattr(request.app.state, "cache", None)
    if cache is None:
        cache = request.app.state.cache = SnapshotCache()
    return cache


def _calibration_for(request: Request, payload: _HistoryPayload, config: EngineConfig) -> CalibrationContext:
    key = fingerprint("calibration", payload.history, payload.entity_profiles, config)
    return _cache(request).get_or_build(
        key, lambda: fit_calibration(payload.history, config, payload.entity_profiles)
    )


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint"""
    return HealthResponse(status="healthy", version=__version__, cache_revision=_cache(request).revision)


@app.post("/api/calibration/fit")
def calibration_fit(payload: CalibrationFitRequest, request: Request):
    """Fit (or reuse) the calibration snapshot and evaluate it at sample confidences."""
    config = _config_for(request, payload)
    context = _calibration_for(request, payload, config)
    return {
        "ready": context.ready,
        "points": [
            {"confidence": c, "calibrated": round(context.calibrate(c), 4)}
            for c in payload.sample_confidences
        ],
        "diagnostics": context.diagnostics.to_dict(),
    }


@app.post("/api/calibration/validate")
def calibration_validate(payload: CalibrationFitRequest, request: Request):
    """Chronological holdout and walk-forward validation report."""
    config = _config_for(request, payload)
    key = fingerprint("validation", payload.history, payload.entity_profiles, config)
    return _cache(request).get_or_build(
        key, lambda: validate_calibration(payload.history, config, payload.entity_profiles)
    )


@app.post("/api/kelly/backtest")
def kelly_backtest(payload: KellyBacktestRequest, request: Request):
    """Monte Carlo sweep of fractional-Kelly divisors."""
    config = _config_for(request, payload)
    calibration = _calibration_for(request, payload, config)
    divisors = tuple(payload.divisors) if payload.divisors else DEFAULT_KELLY_DIVISORS

    result = backtest_kelly_divisors(payload.history, config, divisors, calibration, payload.seed_salt).to_dict()
    if payload.include_modes:
        result["modes"] = mode_kelly_recommendations(
            payload.history, config, calibration, divisors, payload.seed_salt
        )
    if payload.include_matrix:
        result["matrix"] = kelly_divisor_matrix(payload.history, config, calibration, divisors, payload.seed_salt)
    return result


@app.post("/api/combos/recommend")
def recommend_combos(payload: RecommendRequest, request: Request):
    """Ranked, weighted and funded combos for the selected candidates."""
    config = _config_for(request, payload)
    calibration = _calibration_for(request, payload, config)
    try:
        result = generate_recommendations(
            payload.candidates,
            risk_preference=payload.risk_preference,
            risk_cap=payload.risk_cap,
            config=config,
            calibration=calibration,
            quality_filter=payload.quality_filter,
            strategy=payload.strategy,
            allocation_mode=payload.allocation_mode,
            kelly_divisor=payload.kelly_divisor,
        )
    except DegenerateInputError:
        raise
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    body = result.to_dict()
    if payload.simulate:
        body["simulation"] = simulate_portfolio(result, config)
    return body


# ============================================================================
# ADMIN ENDPOINTS
# ============================================================================

@app.post("/admin/cache/invalidate")
async def invalidate_cache(request: Request):
    """Drop every memoized snapshot."""
    revision = _cache(request).invalidate()
    return {"status": "ok", "cache_revision": revision}


# ============================================================================
# ERROR HANDLERS
# ============================================================================

_ERROR_STATUS = {
    NoQualifyingComboError: 422,
    InsufficientSampleError: 422,
    DegenerateInputError: 400,
}


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    status_code = next((code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)), 400)
    logger.warning("%s on %s: %s", exc.error_code, request.url.path, exc)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Catch-all exception handler"""
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "type": type(exc).__name__}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
