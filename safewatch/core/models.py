"""
Core domain models for SafeWatch.

This module defines the canonical entities of the safety coordination
engine using Pydantic v2 for type safety and validation.
"""

import uuid
from datetime import datetime, time, timedelta, timezone
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, Field


def _ensure_utc(value: datetime) -> datetime:
    # naive 값은 UTC로 간주
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UTCDatetime = Annotated[datetime, AfterValidator(_ensure_utc)]

# 열거형 타입 정의
RiskLevel = Literal["safe", "caution", "risk"]
ObligationKind = Literal["scheduled_checkin", "geofence_dwell", "journey_deviation"]
ObligationStatus = Literal["pending", "satisfied", "violated", "cancelled"]
EmergencyReason = Literal["manual", "obligation_violation", "duress"]
EmergencyStatus = Literal["active", "acknowledged", "resolved", "false_alarm"]
Channel = Literal["push", "sms", "email", "call"]
AttemptStatus = Literal["queued", "sent", "delivered", "failed", "confirmed"]
Priority = Literal["critical", "high", "medium", "low"]
NotificationKind = Literal["emergency_alert", "stand_down", "obligation_alert", "generic"]

OPEN_EMERGENCY_STATUSES = ("active", "acknowledged")
TERMINAL_EMERGENCY_STATUSES = ("resolved", "false_alarm")
TERMINAL_OBLIGATION_STATUSES = ("satisfied", "violated", "cancelled")


def new_id(prefix: str) -> str:
    """접두사가 붙은 고유 ID를 생성합니다."""
    return f"{prefix}_{uuid.uuid4().hex}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class GeoPoint(BaseModel):
    """위경도 좌표"""
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)


class CircleGeometry(BaseModel):
    """원형 지오펜스 형상"""
    type: Literal["circle"] = "circle"
    center: GeoPoint
    radius_m: float


class PolygonGeometry(BaseModel):
    """다각형 지오펜스 형상"""
    type: Literal["polygon"] = "polygon"
    vertices: List[GeoPoint]


Geometry = Annotated[Union[CircleGeometry, PolygonGeometry], Field(discriminator="type")]


class ScheduleWindow(BaseModel):
    """지오펜스 적용 시간대 (사용자 홈 타임존 기준, 월=0)"""
    days: List[int] = Field(default_factory=lambda: list(range(7)))
    start: time = time(0, 0)
    end: time = time(23, 59, 59)


class Entity(BaseModel):
    """버전 필드를 가진 영속 엔티티 공통 모델"""
    entity_type: ClassVar[str] = "entity"

    id: str
    user_id: str
    status: str
    version: int = 0

    @property
    def parent_id(self) -> Optional[str]:
        return None


class UserProfile(Entity):
    """사용자 안전 프로필 (영속 부분)"""
    entity_type: ClassVar[str] = "profile"

    status: Literal["active"] = "active"
    home_timezone: str = "UTC"


class Geofence(Entity):
    """지오펜스"""
    entity_type: ClassVar[str] = "geofence"

    id: str = Field(default_factory=lambda: new_id("gf"))
    status: Literal["active", "deleted"] = "active"
    name: Optional[str] = None
    geometry: Geometry
    risk_level: RiskLevel = "safe"
    schedule: List[ScheduleWindow] = Field(default_factory=list)
    expires_at: Optional[UTCDatetime] = None
    max_dwell_sec: Optional[int] = None


class JourneyPlan(BaseModel):
    """여정 경로 및 이탈 추적 상태"""
    route: List[GeoPoint]
    max_deviation_m: float
    arrival_radius_m: float
    off_route_since: Optional[UTCDatetime] = None


class Obligation(Entity):
    """안전 의무 (체크인, 체류 제한, 경로 준수)"""
    entity_type: ClassVar[str] = "obligation"

    id: str = Field(default_factory=lambda: new_id("ob"))
    kind: ObligationKind
    status: ObligationStatus = "pending"
    deadline: UTCDatetime
    grace_sec: int = 0
    created_at: UTCDatetime = Field(default_factory=_now)
    opens_at: Optional[UTCDatetime] = None
    geofence_id: Optional[str] = None
    journey: Optional[JourneyPlan] = None
    resolved_at: Optional[UTCDatetime] = None
    resolution_reason: Optional[str] = None

    @property
    def threshold(self) -> datetime:
        """위반 판정 기준 시각 (deadline + grace)"""
        return self.deadline + timedelta(seconds=self.grace_sec)

    @property
    def parent_id(self) -> Optional[str]:
        return self.geofence_id


class NotifiedContact(BaseModel):
    """비상 상황에서 알림을 받은 연락처"""
    contact_id: str
    level: int
    channels: List[Channel] = Field(default_factory=list)
    delivery_status: str = "queued"
    notified_at: UTCDatetime = Field(default_factory=_now)


class Emergency(Entity):
    """비상 상황"""
    entity_type: ClassVar[str] = "emergency"

    id: str = Field(default_factory=lambda: new_id("em"))
    reason: EmergencyReason
    status: EmergencyStatus = "active"
    created_at: UTCDatetime = Field(default_factory=_now)
    escalation_level: int = 1
    escalation_count: int = 0
    notified_contacts: List[NotifiedContact] = Field(default_factory=list)
    acknowledged_by: Optional[str] = None
    causation_id: Optional[str] = None
    note: Optional[str] = None
    closed_at: Optional[UTCDatetime] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_EMERGENCY_STATUSES


class Contact(BaseModel):
    """비상 연락처 (연락처 디렉터리 제공)"""
    contact_id: str
    channel_addresses: Dict[str, str] = Field(default_factory=dict)
    priority_tier: int = 1
    name: Optional[str] = None


class Notification(Entity):
    """발송 요청 단위 알림"""
    entity_type: ClassVar[str] = "notification"

    id: str = Field(default_factory=lambda: new_id("nt"))
    status: Literal["created"] = "created"
    kind: NotificationKind = "generic"
    priority: Priority = "medium"
    title: str
    body: str = ""
    emergency_id: Optional[str] = None
    obligation_id: Optional[str] = None
    escalation_level: Optional[int] = None
    ladders: Dict[str, List[Channel]] = Field(default_factory=dict)
    addresses: Dict[str, Dict[str, str]] = Field(default_factory=dict)
    created_at: UTCDatetime = Field(default_factory=_now)

    @property
    def parent_id(self) -> Optional[str]:
        return self.emergency_id or self.obligation_id


class NotificationAttempt(Entity):
    """(수신자, 채널) 단위 발송 시도"""
    entity_type: ClassVar[str] = "attempt"

    id: str = Field(default_factory=lambda: new_id("at"))
    notification_id: str
    emergency_id: Optional[str] = None
    obligation_id: Optional[str] = None
    recipient_id: str
    channel: Channel
    address: str
    status: AttemptStatus = "queued"
    attempt_count: int = 0
    created_at: UTCDatetime = Field(default_factory=_now)
    last_attempt_at: Optional[UTCDatetime] = None
    provider_ref: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def parent_id(self) -> Optional[str]:
        return self.notification_id


class DeliveryReport(BaseModel):
    """send() 결과"""
    notification_id: str
    attempts: List[NotificationAttempt] = Field(default_factory=list)
    suppressed: List[str] = Field(default_factory=list)
    unreachable: List[str] = Field(default_factory=list)


class EventRecord(BaseModel):
    """이벤트 로그 레코드 (불변)"""
    seq: Optional[int] = None
    event_id: str = Field(default_factory=lambda: new_id("ev"))
    entity_type: str
    entity_id: str
    from_state: Optional[str] = None
    to_state: str
    timestamp: UTCDatetime
    causation_id: Optional[str] = None
    snapshot: Dict[str, Any] = Field(default_factory=dict)


class Timer(BaseModel):
    """영속 타이머"""
    id: str = Field(default_factory=lambda: new_id("tm"))
    kind: str
    entity_id: str
    dedupe_key: str
    fire_at: UTCDatetime
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: Literal["pending", "claimed", "done"] = "pending"
    lease_until: Optional[UTCDatetime] = None
    attempts: int = 0


class LocationUpdate(BaseModel):
    """위치/체크인 수집 페이로드"""
    user_id: str
    timestamp: UTCDatetime
    location: Optional[GeoPoint] = None
    checkin_message: Optional[str] = None
    duress: bool = False


class Classification(BaseModel):
    """지오펜스 분류 결과"""
    entered: List[str] = Field(default_factory=list)
    exited: List[str] = Field(default_factory=list)
    dwelling: List[str] = Field(default_factory=list)


class UserSafetyProfile(BaseModel):
    """사용자 안전 프로필 조회 모델"""
    user_id: str
    home_timezone: str = "UTC"
    geofences: List[Geofence] = Field(default_factory=list)
    obligations: List[Obligation] = Field(default_factory=list)
    current_emergency: Optional[Emergency] = None


ENTITY_MODELS: Dict[str, type] = {
    model.entity_type: model
    for model in (UserProfile, Geofence, Obligation, Emergency, Notification, NotificationAttempt)
}


class IngestResult(BaseModel):
    """ingest() 처리 결과"""
    user_id: str
    duplicate: bool = False
    classification: Classification = Field(default_factory=Classification)
    obligations: List[Obligation] = Field(default_factory=list)
    emergency: Optional[Emergency] = None
