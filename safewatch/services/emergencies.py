"""
Emergency state machine for SafeWatch.

One canonical Emergency per incident with states active, acknowledged,
resolved and false_alarm. The one-open-emergency-per-user rule is the
store's unique index; concurrent triggers for the same user resolve to a
single row and every loser receives AlreadyActiveError carrying it.
While an emergency stays active, a durable timer walks the escalation
ladder; the last tier repeats until someone acknowledges or resolves.
"""

from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from safewatch.common.clock import Clock, utcnow
from safewatch.common.retry import retry_on_conflict
from safewatch.core.errors import AlreadyActiveError, InvalidTransitionError, NotFoundError
from safewatch.core.models import (
    TERMINAL_EMERGENCY_STATUSES, Contact, Emergency, Notification, NotificationAttempt,
    NotifiedContact, Timer
)
from safewatch.core.transitions import ATTEMPT_RANK, check_emergency_transition
from safewatch.dispatch.dispatcher import NotificationDispatcher
from safewatch.ports.contacts import ContactDirectoryPort
from safewatch.ports.persistence import SafetyStorePort
from safewatch.services.cas import apply_change
from safewatch.services.timers import TimerWorker
from safewatch.settings import EscalationLadderConfig
from safewatch.observability import metrics
from safewatch.observability.logging_setup import get_logger

log = get_logger("safewatch.emergency")

TIMER_ESCALATE = "emergency_escalate"
TIMER_NOTIFY = "emergency_notify"

REASON_TITLES = {
    "manual": "Emergency alert",
    "obligation_violation": "Missed safety check",
    "duress": "Duress signal",
}


def fold_delivery_status(statuses: List[str]) -> str:
    """연락처 단위 전달 상태: 가장 앞선 긍정 상태, 없으면 queued, 모두 실패면 failed"""
    positive = [s for s in statuses if s not in ("queued", "failed")]
    if positive:
        return max(positive, key=lambda s: ATTEMPT_RANK[s])
    if "queued" in statuses or not statuses:
        return "queued"
    return "failed"


class EmergencyStateMachine:
    """비상 상황 상태 머신"""

    def __init__(self,
                 store: SafetyStorePort,
                 timers: TimerWorker,
                 dispatcher: NotificationDispatcher,
                 contacts: ContactDirectoryPort,
                 ladder: Optional[EscalationLadderConfig] = None,
                 *,
                 clock: Clock = utcnow,
                 max_conflict_retries: int = 5):
        self.store = store
        self.timers = timers
        self.dispatcher = dispatcher
        self.contacts = contacts
        self.ladder = ladder or EscalationLadderConfig()
        self.clock = clock
        self.max_conflict_retries = max_conflict_retries

        timers.register(TIMER_ESCALATE, self._on_escalate_timer)
        timers.register(TIMER_NOTIFY, self._on_notify_timer)

    async def _get(self, emergency_id: str) -> Emergency:
        emergency = await self.store.get("emergency", emergency_id)
        if emergency is None:
            raise NotFoundError("emergency", emergency_id)
        return emergency

    async def _apply(self, emergency_id: str, change, operation: str,
                     causation_id: Optional[str] = None) -> Tuple[Emergency, bool]:
        return await apply_change(
            self.store, "emergency", emergency_id, change,
            at=self.clock(), operation=operation,
            max_retries=self.max_conflict_retries, causation_id=causation_id,
        )

    async def _timezone(self, user_id: str) -> str:
        profile = await self.store.get("profile", user_id)
        return profile.home_timezone if profile is not None else "UTC"

    # ---- 발동 ----

    async def trigger(self, user_id: str, reason: str, causation_id: Optional[str] = None,
                      note: Optional[str] = None) -> Emergency:
        """
        비상 상황을 발동합니다.

        Args:
            user_id: 사용자 ID
            reason: manual / obligation_violation / duress
            causation_id: 원인 (위반 의무 ID 등)
            note: 메모

        Returns:
            생성된 비상 상황 (레벨 1 통지 후)

        Raises:
            AlreadyActiveError: 이미 열린 비상 상황이 있는 경우 (existing 포함)
        """
        now = self.clock()
        emergency = Emergency(user_id=user_id, reason=reason, created_at=now,
                              causation_id=causation_id, note=note)

        async def insert() -> Emergency:
            # 고유 인덱스 경합에서 진 뒤 승자가 이미 종료된 경우 재시도
            return await self.store.insert(emergency, at=now, causation_id=causation_id)

        try:
            stored = await retry_on_conflict(insert, max_retries=self.max_conflict_retries,
                                             operation="emergency_trigger")
        except AlreadyActiveError as e:
            metrics.emergency_duplicates.inc()
            log.info("이미 열린 비상 상황", user_id=user_id, emergency_id=e.existing.id, reason=reason)
            raise

        metrics.emergencies_triggered.labels(reason=reason).inc()
        log.warning("비상 상황 발동", emergency_id=stored.id, user_id=user_id,
                    reason=reason, causation_id=causation_id)

        await self.schedule_escalation(stored)
        return await self._notify_or_defer(stored)

    async def trigger_idempotent(self, user_id: str, reason: str,
                                 causation_id: Optional[str] = None,
                                 note: Optional[str] = None) -> Tuple[Emergency, bool]:
        """
        비상 상황을 발동하거나 기존 열린 비상 상황을 반환합니다.

        Returns:
            (비상 상황, 새로 생성 여부)
        """
        try:
            return await self.trigger(user_id, reason, causation_id, note), True
        except AlreadyActiveError as e:
            return e.existing, False

    # ---- 에스컬레이션 ----

    async def schedule_escalation(self, emergency: Emergency, delay_sec: Optional[int] = None,
                                  tag: str = "ladder") -> None:
        tier = self.ladder.tier_for(emergency.escalation_level)
        delay = tier.escalate_after_sec if delay_sec is None else delay_sec
        await self.timers.schedule(
            TIMER_ESCALATE, emergency.id,
            self.clock() + timedelta(seconds=delay),
            dedupe_key=f"escalate:{emergency.id}:{emergency.escalation_count}:{tag}",
            payload={"expected_count": emergency.escalation_count},
        )

    async def escalate(self, emergency_id: str, causation_id: Optional[str] = None,
                       expected_count: Optional[int] = None) -> Emergency:
        """
        다음 에스컬레이션 단계로 올리고 해당 단계 연락처에 통지합니다.

        마지막 단계에서는 레벨을 유지한 채 같은 단계를 반복합니다.

        Raises:
            NotFoundError: 비상 상황이 없는 경우
            InvalidTransitionError: active 상태가 아닌 경우
        """
        max_level = self.ladder.max_level

        def change(current: Emergency) -> Optional[Emergency]:
            if current.status != "active":
                if expected_count is not None:
                    return None
                raise InvalidTransitionError("emergency", current.id, current.status, "escalated")
            if expected_count is not None and current.escalation_count != expected_count:
                return None
            return current.model_copy(update={
                "escalation_level": min(current.escalation_level + 1, max_level),
                "escalation_count": current.escalation_count + 1,
            })

        result, changed = await self._apply(emergency_id, change, "emergency_escalate", causation_id)
        if not changed:
            log.debug("오래된 에스컬레이션 무시", emergency_id=emergency_id, status=result.status)
            return result

        metrics.escalations.labels(level=str(result.escalation_level)).inc()
        log.warning("비상 상황 에스컬레이션", emergency_id=result.id, user_id=result.user_id,
                    level=result.escalation_level, count=result.escalation_count)

        await self.schedule_escalation(result)
        return await self._notify_or_defer(result)

    async def _on_escalate_timer(self, timer: Timer) -> None:
        emergency = await self.store.get("emergency", timer.entity_id)
        if emergency is None or emergency.status != "active":
            # 지연 취소: 확인/종료된 비상 상황
            return
        expected = timer.payload.get("expected_count")
        if emergency.escalation_count != expected:
            return
        await self.escalate(emergency.id, causation_id=timer.id, expected_count=expected)

    async def on_delivery_failure(self, emergency_id: str) -> None:
        """
        긴급 알림의 채널 소진을 에스컬레이션 입력으로 처리합니다.

        마지막 단계가 아니면 즉시, 마지막 단계면 단계 간격 후 반복합니다.
        """
        emergency = await self.store.get("emergency", emergency_id)
        if emergency is None or emergency.status != "active":
            return
        at_max = emergency.escalation_level >= self.ladder.max_level
        delay = self.ladder.tier_for(emergency.escalation_level).escalate_after_sec if at_max else 0
        log.warning("전달 실패로 에스컬레이션 예약", emergency_id=emergency_id,
                    level=emergency.escalation_level, delay_sec=delay)
        await self.schedule_escalation(emergency, delay_sec=delay, tag="delivery_failure")

    # ---- 통지 ----

    async def _notify_or_defer(self, emergency: Emergency) -> Emergency:
        """현재 단계를 통지하고, 실패하면 재통지 타이머로 넘깁니다."""
        try:
            return await self.notify_tier(emergency)
        except Exception as e:
            log.error("단계 통지 실패, 재시도 예약", emergency_id=emergency.id,
                      level=emergency.escalation_level, error=str(e))
            await self.timers.schedule(
                TIMER_NOTIFY, emergency.id, self.clock(),
                dedupe_key=f"notify:{emergency.id}:{emergency.escalation_count}",
                payload={"expected_count": emergency.escalation_count},
            )
            return emergency

    async def _on_notify_timer(self, timer: Timer) -> None:
        emergency = await self.store.get("emergency", timer.entity_id)
        if emergency is None or not emergency.is_open:
            return
        if emergency.escalation_count != timer.payload.get("expected_count"):
            return
        await self.notify_tier(emergency)

    def _tier_recipients(self, contacts: List[Contact], max_priority_tier: Optional[int]) -> List[Contact]:
        if max_priority_tier is None:
            return contacts
        selected = [c for c in contacts if c.priority_tier <= max_priority_tier]
        return selected or contacts

    async def notify_tier(self, emergency: Emergency) -> Emergency:
        """현재 에스컬레이션 단계의 연락처에 긴급 알림을 보냅니다."""
        level = emergency.escalation_level
        tier = self.ladder.tier_for(level)
        contacts = await self.contacts.get_contacts_for_user(emergency.user_id)
        recipients = self._tier_recipients(contacts, tier.max_priority_tier)
        if not recipients:
            log.error("비상 연락처 없음", emergency_id=emergency.id, user_id=emergency.user_id)
            return emergency

        notification = Notification(
            user_id=emergency.user_id,
            kind="emergency_alert",
            priority=tier.priority,
            title=REASON_TITLES.get(emergency.reason, "Emergency alert"),
            body=f"{emergency.user_id} needs help (level {level})",
            emergency_id=emergency.id,
            escalation_level=level,
        )
        report = await self.dispatcher.send(
            notification, recipients, tier.priority,
            channels=tier.channels, timezone=await self._timezone(emergency.user_id),
        )

        by_recipient: Dict[str, List[NotificationAttempt]] = {}
        for attempt in report.attempts:
            by_recipient.setdefault(attempt.recipient_id, []).append(attempt)

        now = self.clock()
        entries = [
            NotifiedContact(
                contact_id=contact_id,
                level=level,
                channels=[a.channel for a in attempts],
                delivery_status=fold_delivery_status([a.status for a in attempts]),
                notified_at=now,
            )
            for contact_id, attempts in by_recipient.items()
        ]

        def change(current: Emergency) -> Emergency:
            return current.model_copy(update={
                "notified_contacts": current.notified_contacts + entries,
            })

        result, _ = await self._apply(emergency.id, change, "emergency_notified", report.notification_id)
        return result

    # ---- 확인/종료 ----

    async def acknowledge(self, emergency_id: str, by_contact_id: str) -> Emergency:
        """
        비상 상황을 확인 처리합니다 (이미 확인된 경우 멱등).

        Raises:
            NotFoundError: 비상 상황이 없는 경우
            InvalidTransitionError: 이미 종료된 경우
        """
        def change(current: Emergency) -> Optional[Emergency]:
            if current.status == "acknowledged":
                return None
            check_emergency_transition(current.id, current.status, "acknowledged")
            return current.model_copy(update={
                "status": "acknowledged",
                "acknowledged_by": by_contact_id,
            })

        result, changed = await self._apply(emergency_id, change, "emergency_acknowledge", by_contact_id)
        if changed:
            metrics.emergency_transitions.labels(status="acknowledged").inc()
            log.info("비상 상황 확인", emergency_id=emergency_id, by=by_contact_id)
        return result

    async def resolve(self, emergency_id: str, outcome: str = "resolved",
                      note: Optional[str] = None) -> Emergency:
        """
        비상 상황을 종료합니다.

        Args:
            emergency_id: 비상 상황 ID
            outcome: resolved 또는 false_alarm
            note: 메모

        Raises:
            NotFoundError: 비상 상황이 없는 경우
            InvalidTransitionError: 이미 종료되었거나 허용되지 않는 결과
        """
        now = self.clock()

        def change(current: Emergency) -> Emergency:
            if outcome not in TERMINAL_EMERGENCY_STATUSES:
                raise InvalidTransitionError("emergency", current.id, current.status, outcome)
            check_emergency_transition(current.id, current.status, outcome)
            update = {"status": outcome, "closed_at": now}
            if note is not None:
                update["note"] = note
            return current.model_copy(update=update)

        result, _ = await self._apply(emergency_id, change, f"emergency_{outcome}")
        metrics.emergency_transitions.labels(status=outcome).inc()
        log.info("비상 상황 종료", emergency_id=emergency_id, outcome=outcome)

        if outcome == "false_alarm" and self.ladder.stand_down_on_false_alarm:
            await self._stand_down(result)
        return result

    async def _stand_down(self, emergency: Emergency) -> None:
        notified = {c.contact_id for c in emergency.notified_contacts}
        if not notified:
            return
        contacts = await self.contacts.get_contacts_for_user(emergency.user_id)
        recipients = [c for c in contacts if c.contact_id in notified]
        notification = Notification(
            user_id=emergency.user_id,
            kind="stand_down",
            priority=self.ladder.stand_down_priority,
            title="False alarm",
            body=f"The emergency for {emergency.user_id} was a false alarm",
            emergency_id=emergency.id,
        )
        await self.dispatcher.send(notification, recipients, self.ladder.stand_down_priority,
                                   timezone=await self._timezone(emergency.user_id))

    async def refresh_delivery_status(self, emergency_id: str) -> Emergency:
        """시도 상태를 notified_contacts의 전달 상태로 접어 반영합니다."""
        emergency = await self._get(emergency_id)
        notifications = await self.store.list_entities("notification", parent_id=emergency_id)

        statuses: Dict[Tuple[str, int], List[str]] = {}
        for notification in notifications:
            if notification.kind != "emergency_alert":
                continue
            for attempt in await self.store.list_entities("attempt", parent_id=notification.id):
                key = (attempt.recipient_id, notification.escalation_level or 1)
                statuses.setdefault(key, []).append(attempt.status)

        def change(current: Emergency) -> Optional[Emergency]:
            refreshed = []
            for entry in current.notified_contacts:
                folded = fold_delivery_status(statuses.get((entry.contact_id, entry.level), []))
                refreshed.append(entry.model_copy(update={"delivery_status": folded}))
            if refreshed == current.notified_contacts:
                return None
            return current.model_copy(update={"notified_contacts": refreshed})

        result, _ = await self._apply(emergency.id, change, "emergency_refresh")
        return result
