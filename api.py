"""
FastAPI server for the ZIP-to-Jurisdiction Resolution Engine.

Loads the reference dataset (and district boundaries, when configured) on
startup, then answers the app's ZIP verification step from the cache or the
reference table in milliseconds. Designed as a long-lived process.
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from jurisdiction_engine.classifier import applicable_levels, area_description
from jurisdiction_engine.config import Config
from jurisdiction_engine.engine import ResolutionEngine
from jurisdiction_engine.exceptions import (
    InvalidZipFormat,
    JurisdictionEngineError,
    OutOfCoverageArea,
    ReferenceDataError,
    ResolutionUnavailable,
    ZipNotRecognized,
)
from jurisdiction_engine.models import ZipLookupResult

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("api")

# ---------------------------------------------------------------------------
# Global engine (loaded once at startup)
# ---------------------------------------------------------------------------
engine: Optional[ResolutionEngine] = None


def _load_env_file(env_path: Path):
    if not env_path.exists():
        return
    for line in env_path.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            key, val = line.split("=", 1)
            os.environ.setdefault(key.strip(), val.strip())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the engine on startup, close the cache on shutdown."""
    global engine
    if engine is None:
        logger.info("Loading resolution engine...")
        t0 = time.time()
        _load_env_file(Path(__file__).parent / ".env")
        engine = ResolutionEngine(Config.from_env())
        logger.info(f"Engine ready in {time.time() - t0:.1f}s")

    yield

    if engine:
        engine.close()
    logger.info("Shutdown complete.")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="ZIP Jurisdiction API",
    description="Resolve a ZIP code to its city, county, state and legislative districts.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------
class HealthResponse(BaseModel):
    status: str
    engine_loaded: bool
    uptime_seconds: float
    dataset_version: Optional[str] = None


class VerifyZipRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    zip_code: str = Field(..., alias="zipCode", description="5-digit ZIP or ZIP+4")


class BatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    zip_codes: list[str] = Field(..., alias="zipCodes", description="ZIP codes to resolve", max_length=100)


class InvalidateRequest(BaseModel):
    zip_code: Optional[str] = None
    state: Optional[str] = None
    chamber: Optional[str] = None
    district: Optional[int] = None
    all: bool = False


class CorrectionRequest(BaseModel):
    zip_code: str
    fields: Dict[str, Any]
    note: str = ""
    corrected_by: str = "admin"


class ReloadRequest(BaseModel):
    path: Optional[str] = None


_start_time = time.time()

# Error code -> HTTP status for the verify endpoints
_ERROR_STATUS = (
    (ZipNotRecognized, 404),
    (InvalidZipFormat, 400),
    (OutOfCoverageArea, 422),
    (ResolutionUnavailable, 503),
)


def _require_engine() -> ResolutionEngine:
    if not engine:
        raise HTTPException(status_code=503, detail="Engine is still loading. Try again shortly.")
    return engine


def _result_payload(result: ZipLookupResult) -> dict:
    payload = {"valid": True, **result.to_dict()}
    payload["local_government"] = area_description(result)
    payload["government_levels"] = applicable_levels(result, result.jurisdiction_level)
    return payload


def _error_payload(error: JurisdictionEngineError) -> dict:
    return {
        "valid": False,
        "error": getattr(error, "code", "LOOKUP_FAILED"),
        "message": getattr(error, "message", str(error)),
    }


def _status_for(error: JurisdictionEngineError) -> int:
    for exc_type, status in _ERROR_STATUS:
        if isinstance(error, exc_type):
            return status
    return 500


def _verify(zip_code: str) -> JSONResponse:
    eng = _require_engine()
    try:
        result = eng.resolve(zip_code)
    except JurisdictionEngineError as e:
        status = _status_for(e)
        if status == 500:
            logger.error(f"Verify error for '{zip_code}': {e}")
        headers = None
        if isinstance(e, ResolutionUnavailable) and e.retry_after:
            headers = {"Retry-After": str(max(1, int(e.retry_after)))}
        return JSONResponse(status_code=status, content=_error_payload(e), headers=headers)
    return JSONResponse(content=_result_payload(result))


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@app.get("/health", response_model=HealthResponse)
async def health():
    """Health check for the hosting platform."""
    return HealthResponse(
        status="ok" if engine else "loading",
        engine_loaded=engine is not None,
        uptime_seconds=round(time.time() - _start_time, 1),
        dataset_version=engine.reference.version if engine else None,
    )


# Resolution may block on the geocoder, so these run in the threadpool
@app.get("/verify-zip")
def verify_zip(zip: str = Query(..., description="5-digit ZIP or ZIP+4")):
    """
    Resolve a ZIP code for the app's onboarding step.

    Returns the jurisdiction bundle with ``valid: true``, or ``valid: false``
    with an error code and a user-facing message.
    """
    return _verify(zip)


@app.post("/verify-zip")
def verify_zip_post(req: VerifyZipRequest):
    """POST variant of verify-zip (body: {"zipCode": "95814"})."""
    return _verify(req.zip_code)


@app.post("/verify-zip/batch")
def verify_zip_batch(req: BatchRequest):
    """
    Batch verification, up to 100 ZIP codes at once.

    Per-ZIP errors are returned inline instead of failing the request.
    """
    eng = _require_engine()
    if not req.zip_codes:
        raise HTTPException(status_code=400, detail="No ZIP codes provided.")

    t0 = time.time()
    results = []
    for raw, outcome in eng.resolve_many(z.strip() for z in req.zip_codes):
        if isinstance(outcome, JurisdictionEngineError):
            results.append({"input": raw, **_error_payload(outcome)})
        else:
            results.append({"input": raw, **_result_payload(outcome)})

    return JSONResponse(content={
        "results": results,
        "total": len(results),
        "valid": sum(1 for r in results if r["valid"]),
        "lookup_time_ms": int((time.time() - t0) * 1000),
    })


@app.post("/admin/invalidate")
def admin_invalidate(req: InvalidateRequest):
    """Drop cached results by ZIP, state, or chamber + district; ``all`` clears everything."""
    eng = _require_engine()
    try:
        if req.all:
            removed = eng.clear_cache()
        else:
            removed = eng.invalidate(
                zip_code=req.zip_code, state=req.state, chamber=req.chamber, district=req.district,
            )
    except InvalidZipFormat as e:
        raise HTTPException(status_code=400, detail=e.message)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info(f"Admin invalidate {req.model_dump(exclude_none=True)}: {removed} entries")
    return {"invalidated": removed}


@app.post("/admin/corrections")
def admin_corrections(req: CorrectionRequest):
    """Record a manual correction and return the re-resolved result."""
    eng = _require_engine()
    try:
        result = eng.apply_correction(req.zip_code, req.fields, note=req.note, corrected_by=req.corrected_by)
    except JurisdictionEngineError as e:
        return JSONResponse(status_code=_status_for(e), content=_error_payload(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return JSONResponse(content=_result_payload(result))


@app.post("/admin/reload-reference")
def admin_reload_reference(req: ReloadRequest):
    """Swap in a new reference dataset without restarting."""
    eng = _require_engine()
    try:
        version = eng.reload_reference(req.path)
    except ReferenceDataError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"dataset_version": version, "zip_codes": len(eng.reference)}


@app.get("/districts/{chamber}/{number}")
async def district_zip_codes(chamber: str, number: int, state: str = Query("CA", max_length=2)):
    """ZIP codes in the reference table that fall (wholly or partly) in a district."""
    eng = _require_engine()
    try:
        zips = eng.zip_codes_for_district(chamber, number, state)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"chamber": chamber, "district": number, "state": state.upper(), "zip_codes": zips}


@app.get("/stats")
async def stats():
    """Lookup, cache, geocoder and district-resolution counters."""
    eng = _require_engine()
    return JSONResponse(content=eng.stats)
