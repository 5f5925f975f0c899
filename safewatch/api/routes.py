"""
HTTP API for the SafeWatch engine.

Every engine operation is exposed as an individually callable endpoint.
Engine errors map to status codes: unknown ids 404, state machine misuse
409, concurrency conflicts that outlived internal retries 503 (still
processing, retry), configuration errors 422. A duplicate emergency
trigger is an idempotent success carrying the existing emergency.
"""

from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from safewatch.core.errors import (
    AlreadyActiveError, ConcurrencyConflictError, ConfigurationError, InvalidTransitionError,
    NotFoundError, SafetyEngineError
)
from safewatch.core.models import (
    AttemptStatus, Channel, EmergencyReason, Geofence, GeoPoint, Geometry, LocationUpdate,
    Priority, RiskLevel, ScheduleWindow
)
from safewatch.orchestrators.orchestrator import SafetyEngine
from safewatch.observability.logging_setup import get_logger

log = get_logger("safewatch.api")


class ProfileIn(BaseModel):
    home_timezone: str = "UTC"


class GeofenceIn(BaseModel):
    name: Optional[str] = None
    geometry: Geometry
    risk_level: RiskLevel = "safe"
    schedule: List[ScheduleWindow] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
    max_dwell_sec: Optional[int] = None


class CheckinScheduleIn(BaseModel):
    deadline: datetime
    grace_sec: Optional[int] = None
    opens_at: Optional[datetime] = None


class JourneyIn(BaseModel):
    route: List[GeoPoint]
    expected_arrival: datetime
    max_deviation_m: Optional[float] = None
    arrival_radius_m: Optional[float] = None
    grace_sec: Optional[int] = None


class TriggerIn(BaseModel):
    reason: EmergencyReason = "manual"
    note: Optional[str] = None


class AcknowledgeIn(BaseModel):
    by_contact_id: str


class ResolveIn(BaseModel):
    outcome: Literal["resolved", "false_alarm"] = "resolved"
    note: Optional[str] = None


class SendIn(BaseModel):
    user_id: str
    title: str
    body: str = ""
    priority: Priority = "medium"
    channels: Optional[List[Channel]] = None
    contact_ids: Optional[List[str]] = None


class DeliveryStatusIn(BaseModel):
    status: AttemptStatus
    error: Optional[str] = None


def _error_response(status_code: int, exc: SafetyEngineError) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=exc.context())


def install_error_handlers(app: FastAPI) -> None:
    """엔진 예외를 HTTP 응답으로 매핑합니다."""

    @app.exception_handler(AlreadyActiveError)
    async def already_active(request: Request, exc: AlreadyActiveError):
        return JSONResponse(status_code=200, content={
            "emergency": exc.existing.model_dump(mode="json"),
            "created": False,
        })

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return _error_response(404, exc)

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition(request: Request, exc: InvalidTransitionError):
        return _error_response(409, exc)

    @app.exception_handler(ConcurrencyConflictError)
    async def conflict(request: Request, exc: ConcurrencyConflictError):
        log.warning("재시도 한도 후에도 동시성 충돌", entity_id=exc.entity_id, error=str(exc))
        response = _error_response(503, exc)
        response.headers["Retry-After"] = "1"
        return response

    @app.exception_handler(ConfigurationError)
    async def configuration(request: Request, exc: ConfigurationError):
        return _error_response(422, exc)


def create_router(engine: SafetyEngine) -> APIRouter:
    """엔진 작업 라우터를 생성합니다."""
    router = APIRouter()

    @router.put("/users/{user_id}/profile")
    async def upsert_profile(user_id: str, body: ProfileIn):
        profile = await engine.upsert_profile(user_id, body.home_timezone)
        return profile.model_dump(mode="json")

    @router.get("/users/{user_id}/profile")
    async def get_profile(user_id: str):
        return (await engine.get_profile(user_id)).model_dump(mode="json")

    @router.post("/users/{user_id}/geofences", status_code=201)
    async def add_geofence(user_id: str, body: GeofenceIn):
        geofence = Geofence(user_id=user_id, **body.model_dump())
        return (await engine.add_geofence(geofence)).model_dump(mode="json")

    @router.delete("/geofences/{geofence_id}")
    async def remove_geofence(geofence_id: str):
        return (await engine.remove_geofence(geofence_id)).model_dump(mode="json")

    @router.post("/users/{user_id}/checkins", status_code=201)
    async def schedule_checkin(user_id: str, body: CheckinScheduleIn):
        obligation = await engine.schedule_checkin(
            user_id, body.deadline, grace_sec=body.grace_sec, opens_at=body.opens_at,
        )
        return obligation.model_dump(mode="json")

    @router.post("/users/{user_id}/journeys", status_code=201)
    async def start_journey(user_id: str, body: JourneyIn):
        obligation = await engine.start_journey(
            user_id, body.route, body.expected_arrival,
            max_deviation_m=body.max_deviation_m,
            arrival_radius_m=body.arrival_radius_m,
            grace_sec=body.grace_sec,
        )
        return obligation.model_dump(mode="json")

    @router.post("/obligations/{obligation_id}/cancel")
    async def cancel_obligation(obligation_id: str):
        return (await engine.cancel_obligation(obligation_id)).model_dump(mode="json")

    @router.post("/ingest")
    async def ingest(update: LocationUpdate):
        return (await engine.ingest(update)).model_dump(mode="json")

    @router.post("/users/{user_id}/emergencies")
    async def trigger_emergency(user_id: str, body: TriggerIn):
        emergency, created = await engine.trigger_emergency(user_id, body.reason, note=body.note)
        return JSONResponse(status_code=201 if created else 200, content={
            "emergency": emergency.model_dump(mode="json"),
            "created": created,
        })

    @router.get("/emergencies/{emergency_id}")
    async def get_emergency(emergency_id: str):
        return (await engine.get_emergency(emergency_id)).model_dump(mode="json")

    @router.post("/emergencies/{emergency_id}/escalate")
    async def escalate(emergency_id: str):
        return (await engine.escalate(emergency_id)).model_dump(mode="json")

    @router.post("/emergencies/{emergency_id}/acknowledge")
    async def acknowledge(emergency_id: str, body: AcknowledgeIn):
        return (await engine.acknowledge(emergency_id, body.by_contact_id)).model_dump(mode="json")

    @router.post("/emergencies/{emergency_id}/resolve")
    async def resolve(emergency_id: str, body: ResolveIn):
        return (await engine.resolve(emergency_id, body.outcome, body.note)).model_dump(mode="json")

    @router.post("/notifications")
    async def send_notification(body: SendIn):
        report = await engine.send_notification(
            body.user_id, body.title, body.body,
            priority=body.priority, channels=body.channels, contact_ids=body.contact_ids,
        )
        return report.model_dump(mode="json")

    @router.get("/notifications/{notification_id}/attempts")
    async def list_attempts(notification_id: str):
        return [a.model_dump(mode="json") for a in await engine.list_attempts(notification_id)]

    @router.post("/attempts/{attempt_id}/status")
    async def report_delivery_status(attempt_id: str, body: DeliveryStatusIn):
        attempt = await engine.report_delivery_status(attempt_id, body.status, body.error)
        return attempt.model_dump(mode="json")

    @router.get("/entities/{entity_id}/history")
    async def history(entity_id: str):
        return [e.model_dump(mode="json") for e in await engine.history(entity_id)]

    @router.post("/timers/run")
    async def run_due_timers():
        return {"processed": await engine.run_due_timers()}

    return router
