from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

from visit_tracker.config import settings
from visit_tracker.errors import ValidationError, VisitTrackerError
from visit_tracker.infrastructure.resilience import HealthChecker, RequestValidator
from visit_tracker.locations import load_catalog
from visit_tracker.obs.context import bind_visit
from visit_tracker.obs.logger import log_event
from visit_tracker.obs.metrics import get_metrics_snapshot
from visit_tracker.obs.middleware import ObservabilityMiddleware
from visit_tracker.service import VisitService
from visit_tracker.session.engine import SessionAction, Transition
from visit_tracker.store import create_store
from visit_tracker.types import (
    CHECKIN_ANCHOR_TYPES,
    EXIT_ANCHOR_TYPES,
    AnchorType,
    SessionCandidate,
)
from visit_tracker.utils.times import now_ms, parse_timestamp, to_iso

load_dotenv()

DEFAULT_HISTORY_LIMIT = 20


def configure(app: FastAPI, service: VisitService) -> None:
    """Attach a service (and what hangs off it) to the app state."""
    app.state.service = service
    app.state.validator = RequestValidator(service.catalog)
    health = HealthChecker()
    health.register_check("store", service.store.ping, interval_seconds=10)
    app.state.health = health


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tests configure the app before startup; keep what they set
    if getattr(app.state, "service", None) is None:
        configure(app, VisitService(create_store(settings), load_catalog()))
    log_event("startup", storage=app.state.service.storage, env=settings.APP_ENV)
    yield
    log_event("shutdown")


api = FastAPI(
    title="Visit Tracker",
    version="1.0.0",
    lifespan=lifespan
)

# Callers are automation clients, not browsers
api.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@api.exception_handler(VisitTrackerError)
async def visit_error_handler(request: Request, exc: VisitTrackerError):
    if exc.status_code >= 500:
        log_event("request_failed", level="ERROR", error=exc.message, kind=type(exc).__name__)
    return JSONResponse(exc.to_payload(), status_code=exc.status_code)


@api.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    log_event("internal_error", level="ERROR", error=repr(exc), path=request.url.path)
    return JSONResponse({"success": False, "error": "Internal server error"}, status_code=500)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _read_body(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _check(result) -> None:
    ok, error, extra = result
    if not ok:
        raise ValidationError(error, **extra)


def _anchor_view(record: SessionCandidate) -> List[Dict[str, Any]]:
    return [
        {
            "type": a.type.value,
            "boost": a.confidence_increment,
            "timestamp": to_iso(a.observed_at),
        }
        for a in record.anchors
    ]


def _session_view(record: SessionCandidate) -> Dict[str, Any]:
    return {
        "sessionId": record.id,
        "location": {"id": record.location_id, "name": record.location_name},
        "anchors": _anchor_view(record),
        "confidenceScore": record.confidence_score,
        "status": record.status.value,
        "startedAt": to_iso(record.created_at),
        "endedAt": to_iso(record.ended_at),
        "expiresAt": to_iso(record.expires_at),
        "durationMinutes": record.duration_minutes,
    }


def _transition_response(request: Request, transition: Transition, message: str) -> Dict[str, Any]:
    record = transition.record
    body = {"success": True, "action": transition.action.value}
    body.update(_session_view(record))
    if not transition.finalized:
        body.pop("endedAt")
        body.pop("durationMinutes")
    body["message"] = message
    body["storage"] = request.app.state.service.storage
    return body


def _anchor_summary(record: SessionCandidate) -> str:
    return " + ".join(a.type.value for a in record.anchors)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@api.get("/")
async def root():
    return {
        "service": "Visit Tracker",
        "version": "1.0.0",
        "status": "running",
        "endpoints": ["/checkin", "/checkout", "/tap", "/sessions", "/sessions/current",
                      "/sessions/cleanup", "/locations"],
    }


@api.get("/health")
async def health():
    return {"status": "healthy", "service": "visit-tracker"}


@api.get("/health/detailed")
async def detailed_health(request: Request):
    results = await request.app.state.health.run_checks()
    results["storage"] = request.app.state.service.storage
    status_code = 200 if results["status"] == "healthy" else 503
    return JSONResponse(results, status_code=status_code)


@api.get("/metrics")
async def metrics():
    return get_metrics_snapshot()


@api.get("/locations")
async def locations(request: Request):
    catalog = request.app.state.service.catalog
    return {
        "success": True,
        "locations": [loc.model_dump() for loc in catalog.all()],
    }


@api.post("/checkin")
async def checkin(request: Request):
    body = await _read_body(request)
    _check(request.app.state.validator.validate_checkin(body, CHECKIN_ANCHOR_TYPES))
    user_id, location_id = body["userId"], body["locationId"]
    bind_visit(user_id, location_id)
    anchor_type = AnchorType(body["anchorType"])

    service: VisitService = request.app.state.service
    transition = await service.checkin(user_id, location_id, anchor_type, parse_timestamp(body.get("timestamp")))

    record = transition.record
    if transition.action == SessionAction.CREATED:
        message = (f"Checked in at {record.location_name}. Session created with "
                   f"+{record.confidence_score} confidence ({anchor_type.value}).")
    elif transition.action == SessionAction.UPGRADED:
        message = (f"Session upgraded at {record.location_name}. Now +{record.confidence_score} "
                   f"confidence ({_anchor_summary(record)}).")
    else:
        message = f"Already checked in with {anchor_type.value} at {record.location_name}. Session unchanged."
    return _transition_response(request, transition, message)


@api.post("/checkout")
async def checkout(request: Request):
    body = await _read_body(request)
    _check(request.app.state.validator.validate_checkout(body, EXIT_ANCHOR_TYPES))
    user_id, location_id = body["userId"], body["locationId"]
    bind_visit(user_id, location_id)
    exit_anchor = AnchorType(body["anchorType"]) if body.get("anchorType") else None

    service: VisitService = request.app.state.service
    transition = await service.checkout(user_id, location_id, parse_timestamp(body.get("timestamp")), exit_anchor)

    record = transition.record
    message = f"Session finalized at {record.location_name}. Duration: {record.duration_minutes} minutes."
    return _transition_response(request, transition, message)


@api.post("/tap")
async def tap(request: Request):
    body = await _read_body(request)
    _check(request.app.state.validator.validate_tap(body))
    user_id, location_id = body["userId"], body["locationId"]
    bind_visit(user_id, location_id)

    service: VisitService = request.app.state.service
    transition = await service.tap(user_id, location_id, parse_timestamp(body.get("timestamp")))

    record = transition.record
    if transition.action == SessionAction.NFC_CHECKIN:
        message = f"NFC check-in at {record.location_name}. Session created with +{record.confidence_score} confidence."
    elif transition.action == SessionAction.NFC_UPGRADE:
        message = f"NFC upgrade at {record.location_name}. Session now +{record.confidence_score} confidence."
    else:
        message = (f"NFC checkout at {record.location_name}. Session finalized. "
                   f"Duration: {record.duration_minutes} minutes.")
    return _transition_response(request, transition, message)


def _parse_limit(value: Optional[str]) -> int:
    try:
        limit = int(value) if value is not None else DEFAULT_HISTORY_LIMIT
    except ValueError:
        return DEFAULT_HISTORY_LIMIT
    return limit if limit > 0 else DEFAULT_HISTORY_LIMIT


@api.get("/sessions")
async def sessions(request: Request, userId: Optional[str] = None, limit: Optional[str] = None):
    if not userId:
        raise ValidationError("Missing required query parameter: userId")
    bind_visit(userId, None)
    service: VisitService = request.app.state.service
    history = await service.recent_sessions(userId, _parse_limit(limit))
    return {
        "success": True,
        "userId": userId,
        "count": len(history),
        "sessions": [_session_view(s) for s in history],
        "storage": service.storage,
    }


@api.get("/sessions/current")
async def current_session(request: Request, userId: Optional[str] = None, locationId: Optional[str] = None):
    if not userId:
        raise ValidationError("Missing required query parameter: userId")
    if not locationId:
        raise ValidationError("Missing required query parameter: locationId")
    bind_visit(userId, locationId)
    service: VisitService = request.app.state.service
    record = await service.current(userId, locationId)
    if record is None:
        return {"success": True, "session": None, "live": False}
    try:
        at = parse_timestamp(request.query_params.get("at"))
    except ValueError:
        raise ValidationError(f"Invalid timestamp: {request.query_params.get('at')!r}")
    live = record.is_live(at if at is not None else now_ms())
    return {"success": True, "session": _session_view(record), "live": live}


@api.post("/sessions/cleanup")
async def cleanup_sessions(request: Request):
    body = await _read_body(request)
    _check(request.app.state.validator.validate_cleanup(body))
    bind_visit(body["userId"], None)
    service: VisitService = request.app.state.service
    result = await service.cleanup_history(body["userId"], body["keepSessionIds"])
    return {
        "success": True,
        "before": result.before,
        "after": len(result.kept),
        "removed": result.removed,
        "kept": [
            {"id": s.id, "location": s.location_name, "durationMinutes": s.duration_minutes}
            for s in result.kept
        ],
    }


# Apply middleware
app = ObservabilityMiddleware(api)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8001,
        reload=True,
        log_level="info"
    )
