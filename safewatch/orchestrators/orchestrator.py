"""
Safety engine orchestrator for SafeWatch.

This module wires the geospatial evaluator, obligation scheduler,
emergency state machine, notification dispatcher, timer worker and event
log around one shared store, and exposes every engine operation as an
individually callable coroutine. start() runs the ingestion
producer/consumer pipeline, the durable timer loop and the metrics loop.
"""

import asyncio
import time
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from safewatch.adapters.storage.sqlite_idem import SQLiteIdemStore, update_key
from safewatch.common.clock import Clock, utcnow
from safewatch.core.errors import DeliveryFailureError, NotFoundError
from safewatch.core.geo_eval import classify, validate_geofence
from safewatch.core.models import (
    OPEN_EMERGENCY_STATUSES, DeliveryReport, Emergency, EventRecord, Geofence, GeoPoint,
    IngestResult, LocationUpdate, Notification, NotificationAttempt, Obligation, UserProfile,
    UserSafetyProfile
)
from safewatch.dispatch.dispatcher import NotificationDispatcher
from safewatch.ports.contacts import ContactDirectoryPort
from safewatch.ports.ingest import UpdateIngestPort
from safewatch.ports.persistence import SafetyStorePort
from safewatch.ports.providers import ChannelProviderPort
from safewatch.services.cas import apply_change
from safewatch.services.emergencies import EmergencyStateMachine
from safewatch.services.event_log import EventLog
from safewatch.services.obligations import ObligationScheduler
from safewatch.services.timers import TimerWorker
from safewatch.settings import Settings
from safewatch.normalize import UpdateNormalizer
from safewatch.observability import metrics
from safewatch.observability.logging_setup import get_logger

log = get_logger("safewatch.engine")

# 중지 신호 확인 주기 (초)
CONSUMER_POLL_SEC = 0.5


class SafetyEngine:
    """안전 조정 엔진"""

    def __init__(self,
                 store: SafetyStorePort,
                 providers: Dict[str, ChannelProviderPort],
                 contacts: ContactDirectoryPort,
                 settings: Optional[Settings] = None,
                 *,
                 clock: Clock = utcnow,
                 idem: Optional[SQLiteIdemStore] = None,
                 ingest_port: Optional[UpdateIngestPort] = None):
        """
        초기화합니다.

        Args:
            store: 저장소 (유일한 상태 원천)
            providers: 채널 → 제공자
            contacts: 연락처 디렉터리
            settings: 설정
            clock: 시계
            idem: 수집 중복 제거 저장소
            ingest_port: 위치/체크인 수집 포트 (start()에서 사용)
        """
        self.settings = settings or Settings()
        self.store = store
        self.providers = providers
        self.contacts = contacts
        self.clock = clock
        self.idem = idem
        self.ingest_port = ingest_port

        retries = self.settings.concurrency.max_conflict_retries
        self.timers = TimerWorker(store, self.settings.timers, clock=clock)
        self.dispatcher = NotificationDispatcher(
            store, self.timers, providers, self.settings.dispatch,
            clock=clock, on_exhausted=self._on_delivery_exhausted,
            max_conflict_retries=retries,
        )
        self.emergencies = EmergencyStateMachine(
            store, self.timers, self.dispatcher, contacts, self.settings.escalation,
            clock=clock, max_conflict_retries=retries,
        )
        self.obligations = ObligationScheduler(
            store, self.timers, self.settings.obligations,
            clock=clock, on_violation=self._on_obligation_violated,
            max_conflict_retries=retries,
        )
        self.event_log = EventLog(store)
        self.normalizer = UpdateNormalizer()

        self.q: asyncio.Queue = asyncio.Queue(maxsize=self.settings.reliability.queue_maxsize)
        self._stop = asyncio.Event()
        self.start_time = time.time()
        self.ready = False

        log.info("안전 엔진 초기화됨", providers=sorted(providers))

    async def init(self) -> None:
        """저장소를 초기화합니다."""
        await self.store.init()
        if self.idem is not None:
            await self.idem.init()

    # ---- 콜백 ----

    async def _on_obligation_violated(self, obligation: Obligation) -> None:
        emergency, created = await self.emergencies.trigger_idempotent(
            obligation.user_id, "obligation_violation", causation_id=obligation.id,
        )
        log.info("의무 위반으로 비상 상황 연결", obligation_id=obligation.id,
                 emergency_id=emergency.id, created=created)

    async def _on_delivery_exhausted(self, error: DeliveryFailureError) -> None:
        notification = error.notification
        if notification.kind != "emergency_alert" or not notification.emergency_id:
            return
        if notification.priority != "critical":
            return
        await self.emergencies.on_delivery_failure(notification.emergency_id)

    # ---- 프로필/지오펜스 ----

    async def upsert_profile(self, user_id: str, home_timezone: str = "UTC") -> UserProfile:
        """사용자 프로필(홈 타임존)을 생성하거나 갱신합니다."""
        existing = await self.store.get("profile", user_id)
        if existing is None:
            profile = UserProfile(id=user_id, user_id=user_id, home_timezone=home_timezone)
            return await self.store.insert(profile, at=self.clock())

        def change(current: UserProfile) -> Optional[UserProfile]:
            if current.home_timezone == home_timezone:
                return None
            return current.model_copy(update={"home_timezone": home_timezone})

        result, _ = await apply_change(
            self.store, "profile", user_id, change, at=self.clock(), operation="profile_update",
            max_retries=self.settings.concurrency.max_conflict_retries,
        )
        return result

    async def _timezone(self, user_id: str) -> str:
        profile = await self.store.get("profile", user_id)
        return profile.home_timezone if profile is not None else "UTC"

    async def get_profile(self, user_id: str) -> UserSafetyProfile:
        """사용자 안전 프로필 (지오펜스, 대기 의무, 열린 비상 상황)을 조회합니다."""
        return UserSafetyProfile(
            user_id=user_id,
            home_timezone=await self._timezone(user_id),
            geofences=await self.store.list_entities("geofence", user_id=user_id, status="active"),
            obligations=await self.obligations.list_pending(user_id),
            current_emergency=await self.store.get_open_emergency(user_id),
        )

    async def add_geofence(self, geofence: Geofence) -> Geofence:
        """
        지오펜스를 추가합니다.

        Raises:
            ConfigurationError: 퇴화된 형상
        """
        validate_geofence(geofence)
        stored = await self.store.insert(geofence, at=self.clock())
        log.info("지오펜스 추가", geofence_id=stored.id, user_id=stored.user_id,
                 risk_level=stored.risk_level)
        return stored

    async def remove_geofence(self, geofence_id: str) -> Geofence:
        """
        지오펜스를 삭제 처리하고 관련 체류 의무를 취소합니다.

        Raises:
            NotFoundError: 지오펜스가 없는 경우
        """
        def change(current: Geofence) -> Optional[Geofence]:
            if current.status == "deleted":
                return None
            return current.model_copy(update={"status": "deleted"})

        result, _ = await apply_change(
            self.store, "geofence", geofence_id, change, at=self.clock(), operation="geofence_delete",
            max_retries=self.settings.concurrency.max_conflict_retries,
        )
        for ob in await self.store.list_entities("obligation", parent_id=geofence_id, status="pending"):
            await self.obligations.cancel(ob.id, reason="geofence_removed")
        await self.store.update_presence(result.user_id, {}, [geofence_id])
        log.info("지오펜스 삭제", geofence_id=geofence_id, user_id=result.user_id)
        return result

    # ---- 의무 ----

    async def schedule_checkin(self, user_id: str, deadline: datetime, *,
                               grace_sec: Optional[int] = None,
                               opens_at: Optional[datetime] = None) -> Obligation:
        return await self.obligations.schedule_checkin(
            user_id, deadline, grace_sec=grace_sec, opens_at=opens_at,
        )

    async def start_journey(self, user_id: str, route: List[GeoPoint], expected_arrival: datetime, *,
                            max_deviation_m: Optional[float] = None,
                            arrival_radius_m: Optional[float] = None,
                            grace_sec: Optional[int] = None) -> Obligation:
        return await self.obligations.start_journey(
            user_id, route, expected_arrival,
            max_deviation_m=max_deviation_m, arrival_radius_m=arrival_radius_m, grace_sec=grace_sec,
        )

    async def cancel_obligation(self, obligation_id: str) -> Obligation:
        return await self.obligations.cancel(obligation_id)

    # ---- 수집 ----

    async def ingest(self, update: LocationUpdate) -> IngestResult:
        """
        위치/체크인 업데이트를 처리합니다.

        중복 제거 → duress 발동 → 체크인 만족 → 지오펜스 분류/체류 의무 →
        여정 평가 순으로 처리합니다.

        Args:
            update: 위치/체크인 업데이트

        Returns:
            처리 결과
        """
        t0 = time.perf_counter()
        result = IngestResult(user_id=update.user_id)

        if self.idem is not None and not await self.idem.add_if_absent(update_key(update)):
            metrics.updates_duplicate.inc()
            log.debug("중복 업데이트 필터링됨", user_id=update.user_id,
                      timestamp=update.timestamp.isoformat())
            result.duplicate = True
            return result

        if update.duress:
            emergency, _ = await self.emergencies.trigger_idempotent(
                update.user_id, "duress", note=update.checkin_message,
            )
            result.emergency = emergency

        if update.checkin_message is not None:
            result.obligations.extend(await self.obligations.record_checkin(update.user_id, update.timestamp))

        if update.location is not None:
            result.classification, changed = await self._evaluate_location(update)
            result.obligations.extend(changed)

        metrics.end_to_end_seconds.observe(time.perf_counter() - t0)
        return result

    async def _evaluate_location(self, update: LocationUpdate):
        user_id, at = update.user_id, update.timestamp
        geofences = await self.store.list_entities("geofence", user_id=user_id, status="active")
        presence = await self.store.get_presence(user_id)
        # 삭제된 지오펜스는 presence에서 이탈 처리
        active_ids = {gf.id for gf in geofences}
        stale = [gid for gid in presence if gid not in active_ids]

        classification = classify(
            update.location, geofences, [gid for gid in presence if gid in active_ids],
            at=at, tz_name=await self._timezone(user_id),
        )
        await self.store.update_presence(
            user_id, {gid: at for gid in classification.entered}, classification.exited + stale,
        )

        changed = await self.obligations.on_classification(
            user_id, classification, {gf.id: gf for gf in geofences}, at,
        )
        changed.extend(await self.obligations.on_location(user_id, update.location, at))
        return classification, changed

    async def ingest_raw(self, raw: Union[bytes, str, dict]) -> Optional[IngestResult]:
        """원시 페이로드를 정규화/검증 후 처리합니다 (검증 실패 시 None)."""
        try:
            update = LocationUpdate.model_validate(self.normalizer.to_update(raw))
        except (ValueError, ValidationError) as e:
            log.error("업데이트 검증 실패", error=str(e))
            return None
        return await self.ingest(update)

    # ---- 비상 상황 ----

    async def trigger_emergency(self, user_id: str, reason: str = "manual",
                                causation_id: Optional[str] = None,
                                note: Optional[str] = None) -> Tuple[Emergency, bool]:
        """비상 상황을 발동합니다 (이미 열려 있으면 기존 것을 반환)."""
        return await self.emergencies.trigger_idempotent(user_id, reason, causation_id, note)

    async def escalate(self, emergency_id: str) -> Emergency:
        return await self.emergencies.escalate(emergency_id)

    async def acknowledge(self, emergency_id: str, by_contact_id: str) -> Emergency:
        return await self.emergencies.acknowledge(emergency_id, by_contact_id)

    async def resolve(self, emergency_id: str, outcome: str = "resolved",
                      note: Optional[str] = None) -> Emergency:
        return await self.emergencies.resolve(emergency_id, outcome, note)

    async def get_emergency(self, emergency_id: str) -> Emergency:
        emergency = await self.store.get("emergency", emergency_id)
        if emergency is None:
            raise NotFoundError("emergency", emergency_id)
        return emergency

    # ---- 알림 ----

    async def send_notification(self, user_id: str, title: str, body: str = "", *,
                                priority: str = "medium",
                                channels: Optional[List[str]] = None,
                                contact_ids: Optional[List[str]] = None) -> DeliveryReport:
        """사용자의 연락처에게 일반 알림을 보냅니다."""
        recipients = await self.contacts.get_contacts_for_user(user_id)
        if contact_ids is not None:
            recipients = [c for c in recipients if c.contact_id in contact_ids]
        notification = Notification(user_id=user_id, kind="generic", priority=priority,
                                    title=title, body=body)
        return await self.dispatcher.send(notification, recipients, priority,
                                          channels=channels, timezone=await self._timezone(user_id))

    async def report_delivery_status(self, attempt_id: str, status: str,
                                     error: Optional[str] = None) -> NotificationAttempt:
        """제공자 전달 상태 콜백을 처리합니다."""
        attempt = await self.dispatcher.report_delivery_status(attempt_id, status, error)
        if attempt.emergency_id:
            await self.emergencies.refresh_delivery_status(attempt.emergency_id)
        return attempt

    async def list_attempts(self, notification_id: str) -> List[NotificationAttempt]:
        return await self.store.list_entities("attempt", parent_id=notification_id)

    # ---- 타이머/복구 ----

    async def run_due_timers(self, now: Optional[datetime] = None) -> int:
        return await self.timers.run_due(now)

    async def history(self, entity_id: str) -> List[EventRecord]:
        return await self.event_log.history(entity_id)

    async def recover(self) -> dict:
        """
        재시작 후 복구를 수행합니다.

        이벤트 로그와 저장소 상태를 대조하고, 대기 의무와 열린 비상 상황의
        타이머를 다시 보장합니다 (중복 키로 멱등).

        Returns:
            복구 요약
        """
        divergent = await self.event_log.verify()
        breaks = await self.event_log.audit_chain()

        pending = await self.store.list_entities("obligation", status="pending")
        for ob in pending:
            await self.obligations.ensure_timers(ob)

        active = await self.store.list_entities("emergency", status="active")
        for emergency in active:
            await self.emergencies.schedule_escalation(emergency)

        summary = {
            "divergent": divergent,
            "chain_breaks": len(breaks),
            "pending_obligations": len(pending),
            "active_emergencies": len(active),
        }
        log.info("복구 완료", **summary)
        return summary

    # ---- 실행 루프 ----

    async def start(self) -> None:
        """
        엔진을 시작합니다.

        수집 -> 큐 -> 검증 -> 중복제거 -> 평가 파이프라인과 타이머/메트릭 루프를 실행합니다.
        """
        await self.init()
        await self.recover()
        self.ready = True

        tasks = [
            asyncio.create_task(self._consumer()),
            asyncio.create_task(self.timers.run_forever(self._stop)),
            asyncio.create_task(self._update_metrics()),
        ]
        # 프로듀서는 수신 대기 중일 수 있으므로 중지 후 취소
        producer = None
        if self.ingest_port is not None:
            producer = asyncio.create_task(self._producer())

        log.info("안전 엔진 시작됨")
        try:
            await asyncio.gather(*tasks)
        finally:
            if producer is not None:
                producer.cancel()
                await asyncio.gather(producer, return_exceptions=True)
        log.info("안전 엔진 종료")

    async def stop(self) -> None:
        self._stop.set()
        self.ready = False
        log.info("안전 엔진 중지")

    async def _producer(self) -> None:
        """원시 데이터를 큐에 추가하는 프로듀서"""
        source: AsyncIterator[dict] = self.ingest_port.recv()
        async for raw in source:
            metrics.updates_received.labels(source="mqtt").inc()
            if self.settings.reliability.drop_on_full:
                try:
                    self.q.put_nowait(raw)
                except asyncio.QueueFull:
                    log.warning("큐가 가득 찼습니다. 메시지를 드롭합니다.")
                    continue
            else:
                await self.q.put(raw)
            metrics.queue_depth.set(self.q.qsize())

    async def _consumer(self) -> None:
        """큐에서 데이터를 소비하는 컨슈머"""
        while not self._stop.is_set():
            try:
                raw = await asyncio.wait_for(self.q.get(), timeout=CONSUMER_POLL_SEC)
            except asyncio.TimeoutError:
                continue
            try:
                await self.ingest_raw(raw)
            except Exception as e:
                log.error("업데이트 처리 오류", error=str(e), user_id=raw.get("user_id", "unknown"))
            finally:
                self.q.task_done()
                metrics.queue_depth.set(self.q.qsize())

    async def _update_metrics(self) -> None:
        """메트릭을 주기적으로 업데이트합니다."""
        while not self._stop.is_set():
            try:
                metrics.uptime_seconds.set(time.time() - self.start_time)
                metrics.queue_depth.set(self.q.qsize())
                metrics.open_emergencies.set(
                    await self.store.count_entities("emergency", list(OPEN_EMERGENCY_STATUSES))
                )
                metrics.pending_timers.set(await self.store.count_pending_timers())
                if self.idem is not None:
                    await self.idem.gc()
                    metrics.idem_store_size.set(await self.idem.get_count())
            except Exception as e:
                log.error("메트릭 업데이트 오류", error=str(e))
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=10)
            except asyncio.TimeoutError:
                pass
