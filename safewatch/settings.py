# safewatch/settings.py
from __future__ import annotations
from typing import Dict, List
from pydantic import BaseModel, Field

class MqttCommon(BaseModel):
    host: str = "localhost"
    port: int = 1883
    username: str | None = None
    password: str | None = None
    tls: bool = False
    client_id: str | None = None
    keepalive: int = 30
    clean_session: bool = False
    lwt_topic: str = "safewatch/state"
    lwt_payload: str = "offline"
    lwt_qos: int = 1
    lwt_retain: bool = True

class RemoteMQTT(MqttCommon):
    enabled: bool = False
    topic: str = "safewatch/updates/#"
    qos: int = 1

class LocalMQTT(MqttCommon):
    topic_prefix: str = "safewatch/push"
    qos: int = 1
    retain: bool = False

class Persistence(BaseModel):
    db_path: str = "/data/safewatch.db"
    busy_timeout_sec: float = 30.0

class ObligationDefaults(BaseModel):
    checkin_grace_sec: int = 900
    max_dwell_sec: int = 1800
    dwell_grace_sec: int = 0
    journey_grace_sec: int = 600
    journey_max_deviation_m: float = 250.0
    journey_arrival_radius_m: float = 100.0

class EscalationTier(BaseModel):
    level: int
    max_priority_tier: int | None = None     # None이면 모든 연락처
    channels: List[str] = Field(default_factory=lambda: ["push"])
    priority: str = "critical"
    escalate_after_sec: int = 300

class EscalationLadderConfig(BaseModel):
    tiers: List[EscalationTier] = Field(default_factory=lambda: [
        EscalationTier(level=1, channels=["push"], escalate_after_sec=300, max_priority_tier=1),
        EscalationTier(level=2, channels=["push", "sms"], escalate_after_sec=300),
        EscalationTier(level=3, channels=["sms", "call"], escalate_after_sec=600),
    ])
    stand_down_on_false_alarm: bool = False
    stand_down_priority: str = "medium"

    def tier_for(self, level: int) -> EscalationTier:
        ordered = sorted(self.tiers, key=lambda t: t.level)
        for tier in ordered:
            if tier.level == level:
                return tier
        return ordered[-1] if level > ordered[-1].level else ordered[0]

    @property
    def max_level(self) -> int:
        return max(t.level for t in self.tiers)

class PriorityPolicy(BaseModel):
    channels: List[str]
    parallel: bool = False
    max_attempts: int = 3
    backoff_initial_sec: float = 5.0
    backoff_max_sec: float = 120.0
    suppressible: bool = True

def _default_policies() -> Dict[str, PriorityPolicy]:
    return {
        "critical": PriorityPolicy(channels=["push", "sms", "call"], parallel=True, max_attempts=5,
                                   backoff_initial_sec=2.0, backoff_max_sec=60.0, suppressible=False),
        "high": PriorityPolicy(channels=["push", "sms"], max_attempts=3, suppressible=False),
        "medium": PriorityPolicy(channels=["push", "email"], max_attempts=3),
        "low": PriorityPolicy(channels=["email"], max_attempts=2),
    }

class DispatchConfig(BaseModel):
    policies: Dict[str, PriorityPolicy] = Field(default_factory=_default_policies)
    confirmation_timeout_sec: int = 120        # 폴백 대기 창
    quiet_hours_start: str | None = "22:00"    # 사용자 홈 타임존 기준
    quiet_hours_end: str | None = "07:00"

class TimerConfig(BaseModel):
    poll_interval_sec: float = 1.0
    batch_size: int = 100
    lease_sec: int = 60
    handler_retry_sec: int = 5

class Concurrency(BaseModel):
    max_conflict_retries: int = 5

class Providers(BaseModel):
    sms_url: str | None = None
    email_url: str | None = None
    call_url: str | None = None
    token: str = ""
    timeout_sec: int = 10
    push_via_mqtt: bool = True

class ContactDirectoryConfig(BaseModel):
    base_url: str | None = None
    token: str = ""
    timeout_sec: int = 5
    static_contacts: Dict[str, List[dict]] = Field(default_factory=dict)

class Observability(BaseModel):
    http_port: int = 8099
    metrics_enabled: bool = True
    service_name: str = "SafeWatch"
    build_version: str = "0.1.0"
    build_date: str = "2026-10-01"
    log_level: str = "INFO"
    json_logs: bool = False

class Reliability(BaseModel):
    idempotency_ttl_sec: int = 86400
    idem_path: str = "/data/idem.db"
    queue_maxsize: int = 1000
    drop_on_full: bool = False

class Settings(BaseModel):
    dry_run: bool = False

    remote_mqtt: RemoteMQTT = Field(default_factory=RemoteMQTT)
    local_mqtt: LocalMQTT = Field(default_factory=LocalMQTT)
    persistence: Persistence = Field(default_factory=Persistence)
    obligations: ObligationDefaults = Field(default_factory=ObligationDefaults)
    escalation: EscalationLadderConfig = Field(default_factory=EscalationLadderConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    timers: TimerConfig = Field(default_factory=TimerConfig)
    concurrency: Concurrency = Field(default_factory=Concurrency)
    providers: Providers = Field(default_factory=Providers)
    contacts: ContactDirectoryConfig = Field(default_factory=ContactDirectoryConfig)
    observability: Observability = Field(default_factory=Observability)
    reliability: Reliability = Field(default_factory=Reliability)
