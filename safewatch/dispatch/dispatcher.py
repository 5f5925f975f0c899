"""
Notification dispatcher for SafeWatch.

This module fans a notification out to recipients over channel providers.
Every (recipient, channel) send is a persisted NotificationAttempt created
before the provider is called. Failures start the next channel of the
recipient's ladder and schedule a durable retry with exponential backoff.
A sent attempt that is not delivered within the confirmation window also
starts the next channel. When a recipient's ladder is exhausted the
failure callback receives a DeliveryFailureError.
"""

import asyncio
import hashlib
from datetime import datetime, time, timedelta
from typing import Awaitable, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from safewatch.common.clock import Clock, utcnow
from safewatch.common.retry import backoff_delay
from safewatch.core.errors import ConcurrencyConflictError, DeliveryFailureError, NotFoundError
from safewatch.core.models import (
    Contact, DeliveryReport, Notification, NotificationAttempt, Priority, Timer
)
from safewatch.core.transitions import ATTEMPT_RANK, attempt_status_accepts
from safewatch.ports.persistence import SafetyStorePort
from safewatch.ports.providers import ChannelProviderPort
from safewatch.services.cas import apply_change
from safewatch.services.timers import TimerWorker
from safewatch.settings import DispatchConfig, PriorityPolicy
from safewatch.observability import metrics
from safewatch.observability.logging_setup import get_logger

log = get_logger("safewatch.dispatch")

FailureCallback = Callable[[DeliveryFailureError], Awaitable[None]]

TIMER_RETRY = "attempt_retry"
TIMER_CONFIRM = "attempt_confirm"

REACHED_STATUSES = ("delivered", "confirmed")


def attempt_id_for(notification_id: str, recipient_id: str, channel: str) -> str:
    """(알림, 수신자, 채널)별 결정적 시도 ID"""
    digest = hashlib.sha256(f"{notification_id}:{recipient_id}:{channel}".encode()).hexdigest()
    return f"at_{digest[:32]}"


def _parse_hhmm(value: str) -> time:
    hour, minute = value.split(":")
    return time(int(hour), int(minute))


class NotificationDispatcher:
    """다중 채널 알림 발송기"""

    def __init__(self,
                 store: SafetyStorePort,
                 timers: TimerWorker,
                 providers: Dict[str, ChannelProviderPort],
                 config: Optional[DispatchConfig] = None,
                 *,
                 clock: Clock = utcnow,
                 on_exhausted: Optional[FailureCallback] = None,
                 max_conflict_retries: int = 5):
        """
        초기화합니다.

        Args:
            store: 저장소
            timers: 타이머 워커 (재시도/확인 핸들러 등록)
            providers: 채널 → 제공자
            config: 발송 정책
            clock: 시계
            on_exhausted: 수신자의 모든 채널 소진 시 콜백
            max_conflict_retries: CAS 충돌 재시도 한도
        """
        self.store = store
        self.timers = timers
        self.providers = providers
        self.config = config or DispatchConfig()
        self.clock = clock
        self.on_exhausted = on_exhausted
        self.max_conflict_retries = max_conflict_retries

        timers.register(TIMER_RETRY, self._on_retry_timer)
        timers.register(TIMER_CONFIRM, self._on_confirm_timer)

    # ---- 정책 ----

    def policy_for(self, priority: str) -> PriorityPolicy:
        return self.config.policies.get(priority) or self.config.policies["medium"]

    def in_quiet_hours(self, at: datetime, tz_name: Optional[str]) -> bool:
        """사용자 타임존 기준 방해 금지 시간대인지 확인합니다."""
        start, end = self.config.quiet_hours_start, self.config.quiet_hours_end
        if not start or not end:
            return False
        try:
            local = at.astimezone(ZoneInfo(tz_name or "UTC"))
        except ZoneInfoNotFoundError:
            local = at.astimezone(ZoneInfo("UTC"))

        t = local.time().replace(tzinfo=None)
        qs, qe = _parse_hhmm(start), _parse_hhmm(end)
        if qs <= qe:
            return qs <= t < qe
        return t >= qs or t < qe

    def ladder_for(self, recipient: Contact, policy: PriorityPolicy,
                   channels: Optional[List[str]] = None) -> List[str]:
        """
        수신자의 채널 사다리를 만듭니다.

        요청 채널을 먼저, 나머지 정책 채널을 뒤에 두고 주소와 제공자가 모두
        있는 채널만 남깁니다.
        """
        preferred = list(channels or policy.channels)
        ordered = preferred + [c for c in policy.channels if c not in preferred]
        return [
            c for c in ordered
            if recipient.channel_addresses.get(c) and c in self.providers
        ]

    def _initial_channels(self, ladder: List[str], policy: PriorityPolicy,
                          channels: Optional[List[str]]) -> List[str]:
        if not policy.parallel:
            return ladder[:1]
        wanted = set(channels or policy.channels)
        initial = [c for c in ladder if c in wanted]
        return initial or ladder[:1]

    # ---- 발송 ----

    async def send(self, notification: Notification, recipients: List[Contact],
                   priority: Priority, channels: Optional[List[str]] = None,
                   timezone: Optional[str] = None) -> DeliveryReport:
        """
        알림을 수신자들에게 발송합니다.

        알림과 초기 채널의 queued 시도를 먼저 영속화한 뒤 제공자를 호출합니다.

        Args:
            notification: 알림
            recipients: 수신자 목록
            priority: 우선순위
            channels: 우선 사용할 채널 (None이면 정책 채널)
            timezone: 방해 금지 판단용 수신 사용자 타임존

        Returns:
            발송 보고서
        """
        policy = self.policy_for(priority)
        now = self.clock()
        report = DeliveryReport(notification_id=notification.id)

        suppress = policy.suppressible and self.in_quiet_hours(now, timezone)
        ladders: Dict[str, List[str]] = {}
        addresses: Dict[str, Dict[str, str]] = {}
        for recipient in recipients:
            if suppress:
                report.suppressed.append(recipient.contact_id)
                continue
            ladder = self.ladder_for(recipient, policy, channels)
            if not ladder:
                report.unreachable.append(recipient.contact_id)
                log.warning("도달 가능한 채널 없음", notification_id=notification.id,
                            recipient_id=recipient.contact_id)
                continue
            ladders[recipient.contact_id] = ladder
            addresses[recipient.contact_id] = {c: recipient.channel_addresses[c] for c in ladder}

        notification = notification.model_copy(update={
            "priority": priority,
            "ladders": ladders,
            "addresses": addresses,
            "created_at": now,
        })
        notification = await self.store.insert(
            notification, at=now,
            causation_id=notification.emergency_id or notification.obligation_id,
        )

        queued: List[NotificationAttempt] = []
        for recipient_id, ladder in ladders.items():
            for channel in self._initial_channels(ladder, policy, channels):
                attempt = await self._create_attempt(notification, recipient_id, channel)
                if attempt is not None:
                    queued.append(attempt)

        if suppress:
            log.info("방해 금지 시간대로 발송 억제", notification_id=notification.id,
                     priority=priority, suppressed=len(report.suppressed))

        await asyncio.gather(*(self._deliver(a, notification) for a in queued))

        report.attempts = [
            await self.store.get("attempt", a.id) for a in queued
        ]
        log.info("알림 발송", notification_id=notification.id, kind=notification.kind,
                 priority=priority, recipients=len(ladders), attempts=len(queued))
        return report

    async def _create_attempt(self, notification: Notification, recipient_id: str,
                              channel: str) -> Optional[NotificationAttempt]:
        attempt = NotificationAttempt(
            id=attempt_id_for(notification.id, recipient_id, channel),
            user_id=notification.user_id,
            notification_id=notification.id,
            emergency_id=notification.emergency_id,
            obligation_id=notification.obligation_id,
            recipient_id=recipient_id,
            channel=channel,
            address=notification.addresses[recipient_id][channel],
            created_at=self.clock(),
        )
        try:
            stored = await self.store.insert(attempt, at=self.clock(), causation_id=notification.id)
        except ConcurrencyConflictError:
            # 다른 경로에서 이미 시작한 채널
            log.debug("이미 시작된 채널", attempt_id=attempt.id, channel=channel)
            return None
        metrics.notification_attempts.labels(channel=channel, status="queued").inc()
        return stored

    async def _deliver(self, attempt: NotificationAttempt, notification: Notification) -> None:
        provider = self.providers.get(attempt.channel)
        content = {
            "attempt_id": attempt.id,
            "notification_id": notification.id,
            "kind": notification.kind,
            "priority": notification.priority,
            "title": notification.title,
            "body": notification.body,
            "emergency_id": notification.emergency_id,
        }
        try:
            if provider is None:
                raise RuntimeError(f"no provider for channel {attempt.channel}")
            provider_ref = await provider.send(attempt.address, content)
        except Exception as e:
            log.warning("채널 발송 실패", attempt_id=attempt.id, channel=attempt.channel,
                        recipient_id=attempt.recipient_id, error=str(e))
            failed = await self._record_send(attempt.id, "failed", error=str(e))
            if failed.status == "failed":
                await self._handle_failure(failed, notification)
            return

        sent = await self._record_send(attempt.id, "sent", provider_ref=provider_ref)
        if sent.status == "sent":
            await self.timers.schedule(
                TIMER_CONFIRM, sent.id,
                self.clock() + timedelta(seconds=self.config.confirmation_timeout_sec),
                dedupe_key=f"confirm:{sent.id}:{sent.attempt_count}",
                payload={"attempt_count": sent.attempt_count},
            )

    async def _record_send(self, attempt_id: str, status: str, *,
                           provider_ref: Optional[str] = None,
                           error: Optional[str] = None) -> NotificationAttempt:
        now = self.clock()

        def change(current: NotificationAttempt) -> NotificationAttempt:
            update = {
                "attempt_count": current.attempt_count + 1,
                "last_attempt_at": now,
            }
            if attempt_status_accepts(current.status, status) or current.status == "failed":
                update["status"] = status
            if provider_ref is not None:
                update["provider_ref"] = provider_ref
            if error is not None:
                update["last_error"] = error
            return current.model_copy(update=update)

        result, _ = await apply_change(
            self.store, "attempt", attempt_id, change,
            at=now, operation=f"attempt_{status}",
            max_retries=self.max_conflict_retries,
        )
        metrics.notification_attempts.labels(channel=result.channel, status=status).inc()
        return result

    # ---- 실패/폴백 ----

    async def _handle_failure(self, attempt: NotificationAttempt, notification: Notification) -> None:
        policy = self.policy_for(notification.priority)

        if attempt.attempt_count < policy.max_attempts:
            delay = backoff_delay(attempt.attempt_count, policy.backoff_initial_sec, policy.backoff_max_sec)
            await self.timers.schedule(
                TIMER_RETRY, attempt.id,
                self.clock() + timedelta(seconds=delay),
                dedupe_key=f"retry:{attempt.id}:{attempt.attempt_count}",
                payload={"attempt_count": attempt.attempt_count},
            )

        started = await self._start_next_channel(notification, attempt.recipient_id)
        if not started:
            await self._check_exhausted(notification, attempt.recipient_id)

    async def _recipient_attempts(self, notification_id: str, recipient_id: str) -> List[NotificationAttempt]:
        attempts = await self.store.list_entities("attempt", parent_id=notification_id)
        return [a for a in attempts if a.recipient_id == recipient_id]

    async def _start_next_channel(self, notification: Notification, recipient_id: str) -> bool:
        """수신자 사다리의 다음 미시작 채널을 시작합니다."""
        attempts = await self._recipient_attempts(notification.id, recipient_id)
        if any(a.status in REACHED_STATUSES for a in attempts):
            return False

        used = {a.channel for a in attempts}
        for channel in notification.ladders.get(recipient_id, []):
            if channel in used:
                continue
            attempt = await self._create_attempt(notification, recipient_id, channel)
            if attempt is None:
                continue
            log.info("다음 채널로 폴백", notification_id=notification.id,
                     recipient_id=recipient_id, channel=channel)
            await self._deliver(attempt, notification)
            return True
        return False

    async def _check_exhausted(self, notification: Notification, recipient_id: str) -> None:
        policy = self.policy_for(notification.priority)
        ladder = notification.ladders.get(recipient_id, [])
        attempts = await self._recipient_attempts(notification.id, recipient_id)

        if {a.channel for a in attempts} != set(ladder):
            return
        if not all(a.status == "failed" and a.attempt_count >= policy.max_attempts for a in attempts):
            return

        metrics.delivery_failures.labels(priority=notification.priority).inc()
        error = DeliveryFailureError(notification, recipient_id, ladder)
        log.error("모든 채널 소진", notification_id=notification.id, recipient_id=recipient_id,
                  channels=ladder, priority=notification.priority)
        if self.on_exhausted is not None:
            await self.on_exhausted(error)

    # ---- 제공자 콜백 ----

    async def report_delivery_status(self, attempt_id: str, status: str,
                                     error: Optional[str] = None) -> NotificationAttempt:
        """
        제공자의 비동기 전달 상태 보고를 반영합니다.

        긍정 상태는 역행하지 않고, failed는 재시도/폴백을 시작합니다.

        Raises:
            NotFoundError: 시도가 없는 경우
        """
        if status not in ATTEMPT_RANK:
            raise ValueError(f"unknown attempt status: {status}")

        def change(current: NotificationAttempt) -> Optional[NotificationAttempt]:
            if not attempt_status_accepts(current.status, status):
                return None
            update = {"status": status}
            if error is not None:
                update["last_error"] = error
            return current.model_copy(update=update)

        result, changed = await apply_change(
            self.store, "attempt", attempt_id, change,
            at=self.clock(), operation=f"attempt_report_{status}",
            max_retries=self.max_conflict_retries,
        )
        if not changed:
            log.debug("전달 상태 보고 무시", attempt_id=attempt_id,
                      current=result.status, reported=status)
            return result

        metrics.notification_attempts.labels(channel=result.channel, status=status).inc()
        log.info("전달 상태 갱신", attempt_id=attempt_id, channel=result.channel, status=status)

        if status == "failed":
            notification = await self.store.get("notification", result.notification_id)
            if notification is None:
                raise NotFoundError("notification", result.notification_id)
            await self._handle_failure(result, notification)
        return result

    # ---- 타이머 핸들러 ----

    async def _still_relevant(self, attempt: NotificationAttempt) -> Optional[Notification]:
        notification = await self.store.get("notification", attempt.notification_id)
        if notification is None:
            return None
        if notification.kind == "emergency_alert" and notification.emergency_id:
            emergency = await self.store.get("emergency", notification.emergency_id)
            # 확인 또는 종료된 비상 상황은 재시도/폴백 중단
            if emergency is None or emergency.status != "active":
                log.debug("비활성 비상 상황의 발송 타이머 무시",
                          attempt_id=attempt.id, emergency_id=notification.emergency_id)
                return None
        attempts = await self._recipient_attempts(notification.id, attempt.recipient_id)
        if any(a.status in REACHED_STATUSES for a in attempts):
            return None
        return notification

    async def _on_retry_timer(self, timer: Timer) -> None:
        attempt = await self.store.get("attempt", timer.entity_id)
        if attempt is None or attempt.status != "failed":
            return
        if attempt.attempt_count != timer.payload.get("attempt_count"):
            return
        notification = await self._still_relevant(attempt)
        if notification is None:
            return
        log.info("채널 재시도", attempt_id=attempt.id, channel=attempt.channel,
                 attempt_count=attempt.attempt_count + 1)
        await self._deliver(attempt, notification)

    async def _on_confirm_timer(self, timer: Timer) -> None:
        attempt = await self.store.get("attempt", timer.entity_id)
        if attempt is None or attempt.status != "sent":
            return
        if attempt.attempt_count != timer.payload.get("attempt_count"):
            return
        notification = await self._still_relevant(attempt)
        if notification is None:
            return
        log.warning("전달 확인 시간 초과", attempt_id=attempt.id, channel=attempt.channel,
                    recipient_id=attempt.recipient_id)
        await self._start_next_channel(notification, attempt.recipient_id)
