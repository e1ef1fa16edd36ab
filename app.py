# app.py - evolution alert service
# - POST /detect-patterns runs the batch detector (scheduler hook)
# - GET /alerts lists a user's stored alerts with totals

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response

import db
from engines.alerts import alert_stats
from engines.pattern_detection import DetectionConfig, run_detection
from schemas import AlertListResponse, DetectionFailure, DetectionResponse

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        from env_validation import validate_environment
        validate_environment()

        db.init()
        logger.info("Detection service ready (db=%s)", db.DB_PATH)
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Evolution Alerts", version="1.0.0", lifespan=_lifespan)


@app.middleware("http")
async def _cors(request: Request, call_next):
    if request.method == "OPTIONS":
        return Response(status_code=200, headers=CORS_HEADERS)
    response = await call_next(request)
    response.headers.update(CORS_HEADERS)
    return response


@app.get("/")
def root():
    return {"status": "ok"}


# ---------- Pattern detection ----------
@app.post("/detect-patterns", response_model=DetectionResponse)
def detect_patterns():
    """Run every detection pass and store the resulting alerts."""
    try:
        report = run_detection(config=DetectionConfig.from_env())
    except Exception as e:
        logger.exception("Unexpected error in pattern detection")
        failure = DetectionFailure(error=str(e) or "Unknown error")
        return JSONResponse(status_code=500, content=failure.model_dump())

    body = DetectionResponse.model_validate(report.to_response())
    return JSONResponse(content=body.model_dump(by_alias=True))


# ---------- Alerts ----------
@app.get("/alerts", response_model=AlertListResponse)
def list_alerts(user_id: Optional[str] = None, include_dismissed: bool = False, limit: int = 50):
    if not user_id:
        raise HTTPException(status_code=400, detail="user_id required")
    if limit < 1 or limit > 200:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 200")
    try:
        alerts = db.list_alerts(user_id, include_dismissed=include_dismissed, limit=limit)
    except db.StoreError as exc:
        logger.error("Failed to list alerts for user %s: %s", user_id, exc)
        raise HTTPException(status_code=503, detail="alert store unavailable") from exc
    return AlertListResponse(alerts=alerts, stats=alert_stats(alerts))
