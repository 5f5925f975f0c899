# safewatch/main.py
import os, asyncio, json, signal
from typing import Dict, Optional
import uvicorn
from safewatch.settings import Settings
from safewatch.observability.health import create_app
from safewatch.observability.logging_setup import setup_logging, get_logger
from safewatch.adapters.contacts import HttpContactDirectory, StaticContactDirectory
from safewatch.adapters.ingestion import MqttUpdateIngestor
from safewatch.adapters.providers import HttpWebhookProvider, MqttPushProvider
from safewatch.adapters.storage import SQLiteIdemStore, SQLiteSafetyStore
from safewatch.orchestrators.orchestrator import SafetyEngine
from safewatch.ports.providers import ChannelProviderPort

def _b(name, default=False): return os.getenv(name, str(default)).lower() in ("1","true","yes","on")

def build_settings() -> Settings:
    s = Settings()
    # 플래그
    s.dry_run = _b("DRY_RUN", s.dry_run)

    # REMOTE MQTT (수집)
    s.remote_mqtt.enabled = _b("REMOTE_MQTT_ENABLED", s.remote_mqtt.enabled)
    s.remote_mqtt.host = os.getenv("REMOTE_MQTT_HOST", s.remote_mqtt.host)
    s.remote_mqtt.port = int(os.getenv("REMOTE_MQTT_PORT", s.remote_mqtt.port))
    s.remote_mqtt.username = os.getenv("REMOTE_MQTT_USERNAME", s.remote_mqtt.username)
    s.remote_mqtt.password = os.getenv("REMOTE_MQTT_PASSWORD", s.remote_mqtt.password)
    s.remote_mqtt.client_id = os.getenv("REMOTE_MQTT_CLIENT_ID", s.remote_mqtt.client_id)
    s.remote_mqtt.keepalive = int(os.getenv("REMOTE_MQTT_KEEPALIVE", s.remote_mqtt.keepalive))
    s.remote_mqtt.clean_session = _b("REMOTE_MQTT_CLEAN_SESSION", s.remote_mqtt.clean_session)
    s.remote_mqtt.tls = _b("REMOTE_MQTT_TLS", s.remote_mqtt.tls)
    s.remote_mqtt.topic = os.getenv("REMOTE_TOPIC", s.remote_mqtt.topic)

    # LOCAL MQTT (푸시)
    s.local_mqtt.host = os.getenv("LOCAL_MQTT_HOST", s.local_mqtt.host)
    s.local_mqtt.port = int(os.getenv("LOCAL_MQTT_PORT", s.local_mqtt.port))
    s.local_mqtt.username = os.getenv("LOCAL_MQTT_USERNAME", s.local_mqtt.username)
    s.local_mqtt.password = os.getenv("LOCAL_MQTT_PASSWORD", s.local_mqtt.password)
    s.local_mqtt.topic_prefix = os.getenv("LOCAL_TOPIC_PREFIX", s.local_mqtt.topic_prefix)

    # 저장소
    s.persistence.db_path = os.getenv("DB_PATH", s.persistence.db_path)

    # 의무 기본값
    s.obligations.checkin_grace_sec = int(os.getenv("CHECKIN_GRACE_SEC", s.obligations.checkin_grace_sec))
    s.obligations.max_dwell_sec = int(os.getenv("MAX_DWELL_SEC", s.obligations.max_dwell_sec))
    s.obligations.journey_grace_sec = int(os.getenv("JOURNEY_GRACE_SEC", s.obligations.journey_grace_sec))

    # 발송
    s.dispatch.confirmation_timeout_sec = int(os.getenv("CONFIRMATION_TIMEOUT_SEC", s.dispatch.confirmation_timeout_sec))
    s.dispatch.quiet_hours_start = os.getenv("QUIET_HOURS_START", s.dispatch.quiet_hours_start) or None
    s.dispatch.quiet_hours_end = os.getenv("QUIET_HOURS_END", s.dispatch.quiet_hours_end) or None
    s.escalation.stand_down_on_false_alarm = _b("STAND_DOWN_ON_FALSE_ALARM", s.escalation.stand_down_on_false_alarm)

    # 제공자
    s.providers.sms_url = os.getenv("SMS_WEBHOOK_URL", s.providers.sms_url)
    s.providers.email_url = os.getenv("EMAIL_WEBHOOK_URL", s.providers.email_url)
    s.providers.call_url = os.getenv("CALL_WEBHOOK_URL", s.providers.call_url)
    s.providers.token = os.getenv("PROVIDER_TOKEN", s.providers.token)
    s.providers.push_via_mqtt = _b("PUSH_VIA_MQTT", s.providers.push_via_mqtt)

    # 연락처
    s.contacts.base_url = os.getenv("CONTACTS_BASE_URL", s.contacts.base_url)
    s.contacts.token = os.getenv("CONTACTS_TOKEN", s.contacts.token)
    static_contacts = os.getenv("STATIC_CONTACTS_JSON")
    if static_contacts:
        s.contacts.static_contacts = json.loads(static_contacts)

    # 관측성
    s.observability.metrics_enabled = _b("METRICS_ENABLED", s.observability.metrics_enabled)
    s.observability.http_port = int(os.getenv("HTTP_PORT", s.observability.http_port))
    s.observability.log_level = os.getenv("LOG_LEVEL", s.observability.log_level)
    s.observability.json_logs = _b("JSON_LOGS", s.observability.json_logs)

    # 신뢰성
    s.reliability.queue_maxsize = int(os.getenv("QUEUE_MAXSIZE", s.reliability.queue_maxsize))
    s.reliability.idem_path = os.getenv("IDEM_PATH", s.reliability.idem_path)

    return s

def build_providers(s: Settings) -> Dict[str, ChannelProviderPort]:
    providers: Dict[str, ChannelProviderPort] = {}
    if s.providers.push_via_mqtt:
        providers["push"] = MqttPushProvider(
            broker_host=s.local_mqtt.host,
            broker_port=s.local_mqtt.port,
            topic_prefix=s.local_mqtt.topic_prefix,
            username=s.local_mqtt.username,
            password=s.local_mqtt.password,
            tls=s.local_mqtt.tls,
            client_id=s.local_mqtt.client_id,
            keepalive=s.local_mqtt.keepalive,
            lwt_topic=s.local_mqtt.lwt_topic,
            qos=s.local_mqtt.qos,
            retain=s.local_mqtt.retain,
        )
    for channel, url in (("sms", s.providers.sms_url), ("email", s.providers.email_url), ("call", s.providers.call_url)):
        if url:
            providers[channel] = HttpWebhookProvider(channel, url, s.providers.token, s.providers.timeout_sec)
    return providers

async def start_http(settings: Settings, engine: SafetyEngine) -> Optional[asyncio.Task]:
    app = create_app(settings, engine)
    return asyncio.create_task(uvicorn.Server(
        uvicorn.Config(app, host="0.0.0.0", port=settings.observability.http_port, log_level="info")
    ).serve())

async def main():
    s = build_settings()
    setup_logging(s.observability.log_level, s.observability.json_logs)
    log = get_logger("safewatch.main")
    log.info("설정 로드 완료", dry_run=s.dry_run)

    store = SQLiteSafetyStore(s.persistence.db_path, s.persistence.busy_timeout_sec)
    idem = SQLiteIdemStore(s.reliability.idem_path, s.reliability.idempotency_ttl_sec)

    if s.contacts.base_url:
        contacts = HttpContactDirectory(s.contacts.base_url, s.contacts.token, s.contacts.timeout_sec)
    else:
        contacts = StaticContactDirectory(s.contacts.static_contacts)
        log.warning("연락처 디렉터리 URL 없음, 정적 연락처 사용", users=len(s.contacts.static_contacts))

    # dry_run이면 제공자 없이 시도 기록만 남김
    providers = {} if s.dry_run else build_providers(s)
    log.info("채널 제공자 구성 완료", channels=sorted(providers))

    ingest = None
    if s.remote_mqtt.enabled:
        ingest = MqttUpdateIngestor(
            host=s.remote_mqtt.host,
            port=s.remote_mqtt.port,
            topic=s.remote_mqtt.topic,
            username=s.remote_mqtt.username,
            password=s.remote_mqtt.password,
            tls=s.remote_mqtt.tls,
            client_id=s.remote_mqtt.client_id,
            keepalive=s.remote_mqtt.keepalive,
            clean_session=s.remote_mqtt.clean_session,
            lwt_topic=s.remote_mqtt.lwt_topic,
            lwt_payload=s.remote_mqtt.lwt_payload,
            lwt_qos=s.remote_mqtt.lwt_qos,
            lwt_retain=s.remote_mqtt.lwt_retain,
        )
        log.info("MQTT 수집기 생성 완료")

    engine = SafetyEngine(store, providers, contacts, s, idem=idem, ingest_port=ingest)

    http_task = await start_http(s, engine)
    log.info("HTTP 서버 시작됨", port=s.observability.http_port)

    stop = asyncio.Future()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try: loop.add_signal_handler(sig, lambda: (not stop.done()) and stop.set_result(True))
        except NotImplementedError: pass

    log.info("안전 엔진 시작")
    engine_task = asyncio.create_task(engine.start())
    await stop

    await engine.stop()
    if ingest is not None:
        await ingest.stop()
    engine_task.cancel()
    http_task.cancel()
    for provider in providers.values():
        if isinstance(provider, MqttPushProvider):
            await provider.stop()
        elif isinstance(provider, HttpWebhookProvider):
            await provider.close()
    if isinstance(contacts, HttpContactDirectory):
        await contacts.close()

def run():
    asyncio.run(main())

if __name__ == "__main__":
    run()
