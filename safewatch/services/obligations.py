"""
Obligation scheduler for SafeWatch.

Tracks scheduled check-ins, risk-zone dwell limits and journey route
adherence. Each obligation owns durable timers; timers re-read the
obligation before acting, and every transition out of pending is a
compare-and-swap on the obligation version.
"""

from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional

from safewatch.common.clock import Clock, utcnow
from safewatch.core.errors import ConfigurationError
from safewatch.core.geo_eval import distance_to, route_deviation
from safewatch.core.models import (
    Classification, Geofence, GeoPoint, JourneyPlan, Obligation, Timer
)
from safewatch.core.transitions import check_obligation_transition
from safewatch.ports.persistence import SafetyStorePort
from safewatch.services.cas import apply_change
from safewatch.services.timers import TimerWorker
from safewatch.settings import ObligationDefaults
from safewatch.observability import metrics
from safewatch.observability.logging_setup import get_logger

log = get_logger("safewatch.obligations")

ViolationCallback = Callable[[Obligation], Awaitable[None]]

TIMER_DEADLINE = "obligation_deadline"
TIMER_OFF_ROUTE = "journey_off_route"

# 의무 종류별 위반 사유
VIOLATION_REASONS = {
    "scheduled_checkin": "missed_checkin",
    "geofence_dwell": "dwell_exceeded",
    "journey_deviation": "arrival_overdue",
}


class ObligationScheduler:
    """안전 의무 스케줄러"""

    def __init__(self,
                 store: SafetyStorePort,
                 timers: TimerWorker,
                 defaults: Optional[ObligationDefaults] = None,
                 *,
                 clock: Clock = utcnow,
                 on_violation: Optional[ViolationCallback] = None,
                 max_conflict_retries: int = 5):
        """
        초기화합니다.

        Args:
            store: 저장소
            timers: 타이머 워커 (핸들러 등록)
            defaults: 의무 기본값
            clock: 시계
            on_violation: 위반 시 호출할 콜백 (비상 상황 발동)
            max_conflict_retries: CAS 충돌 재시도 한도
        """
        self.store = store
        self.timers = timers
        self.defaults = defaults or ObligationDefaults()
        self.clock = clock
        self.on_violation = on_violation
        self.max_conflict_retries = max_conflict_retries

        timers.register(TIMER_DEADLINE, self._on_deadline_timer)
        timers.register(TIMER_OFF_ROUTE, self._on_off_route_timer)

    # ---- 생성 ----

    async def _create(self, obligation: Obligation, causation_id: Optional[str] = None) -> Obligation:
        stored = await self.store.insert(obligation, at=self.clock(), causation_id=causation_id)
        await self.ensure_timers(stored)
        metrics.obligations_created.labels(kind=stored.kind).inc()
        log.info("의무 생성", obligation_id=stored.id, user_id=stored.user_id,
                 kind=stored.kind, threshold=stored.threshold.isoformat())
        return stored

    async def ensure_timers(self, obligation: Obligation) -> None:
        """대기 중인 의무의 타이머가 등록되어 있도록 보장합니다 (멱등)."""
        if obligation.status != "pending":
            return
        await self.timers.schedule(
            TIMER_DEADLINE, obligation.id, obligation.threshold,
            dedupe_key=f"deadline:{obligation.id}",
        )
        journey = obligation.journey
        if journey is not None and journey.off_route_since is not None:
            await self._schedule_off_route(obligation, journey.off_route_since)

    async def _schedule_off_route(self, obligation: Obligation, since: datetime) -> None:
        await self.timers.schedule(
            TIMER_OFF_ROUTE, obligation.id,
            since + timedelta(seconds=obligation.grace_sec),
            dedupe_key=f"offroute:{obligation.id}:{since.isoformat()}",
            payload={"off_route_since": since.isoformat()},
        )

    async def schedule_checkin(self, user_id: str, deadline: datetime, *,
                               grace_sec: Optional[int] = None,
                               opens_at: Optional[datetime] = None) -> Obligation:
        """
        체크인 의무를 예약합니다.

        Args:
            user_id: 사용자 ID
            deadline: 체크인 마감 시각
            grace_sec: 유예 시간 (초), None이면 기본값
            opens_at: 이 시각 이후의 체크인만 인정

        Returns:
            생성된 의무
        """
        obligation = Obligation(
            user_id=user_id,
            kind="scheduled_checkin",
            deadline=deadline,
            grace_sec=self.defaults.checkin_grace_sec if grace_sec is None else grace_sec,
            opens_at=opens_at,
            created_at=self.clock(),
        )
        return await self._create(obligation)

    async def start_journey(self, user_id: str, route: List[GeoPoint], expected_arrival: datetime, *,
                            max_deviation_m: Optional[float] = None,
                            arrival_radius_m: Optional[float] = None,
                            grace_sec: Optional[int] = None) -> Obligation:
        """
        여정 의무를 시작합니다.

        Raises:
            ConfigurationError: 경로가 비어 있는 경우
        """
        if not route:
            raise ConfigurationError("journey route is empty")

        obligation = Obligation(
            user_id=user_id,
            kind="journey_deviation",
            deadline=expected_arrival,
            grace_sec=self.defaults.journey_grace_sec if grace_sec is None else grace_sec,
            created_at=self.clock(),
            journey=JourneyPlan(
                route=route,
                max_deviation_m=max_deviation_m or self.defaults.journey_max_deviation_m,
                arrival_radius_m=arrival_radius_m or self.defaults.journey_arrival_radius_m,
            ),
        )
        return await self._create(obligation)

    async def list_pending(self, user_id: str, kind: Optional[str] = None) -> List[Obligation]:
        """사용자의 대기 중인 의무를 조회합니다."""
        pending = await self.store.list_entities("obligation", user_id=user_id, status="pending")
        if kind is not None:
            pending = [ob for ob in pending if ob.kind == kind]
        return pending

    # ---- 전이 ----

    async def _transition(self, obligation_id: str, to_state: str, *,
                          reason: str,
                          guard: Optional[Callable[[Obligation], bool]] = None,
                          strict: bool = False,
                          causation_id: Optional[str] = None) -> Optional[Obligation]:
        """
        pending에서 종료 상태로 전이합니다.

        이미 종료된 의무는 strict가 아니면 조용히 건너뜁니다 (지연 취소).
        """
        now = self.clock()

        def change(current: Obligation) -> Optional[Obligation]:
            if current.status != "pending":
                if strict:
                    check_obligation_transition(current.id, current.status, to_state)
                return None
            if guard is not None and not guard(current):
                return None
            check_obligation_transition(current.id, current.status, to_state)
            return current.model_copy(update={
                "status": to_state,
                "resolved_at": now,
                "resolution_reason": reason,
            })

        result, changed = await apply_change(
            self.store, "obligation", obligation_id, change,
            at=now, operation=f"obligation_{to_state}",
            max_retries=self.max_conflict_retries, causation_id=causation_id,
        )
        if not changed:
            return None

        metrics.obligation_transitions.labels(kind=result.kind, status=to_state).inc()
        log.info("의무 전이", obligation_id=result.id, user_id=result.user_id,
                 kind=result.kind, status=to_state, reason=reason)
        return result

    async def cancel(self, obligation_id: str, reason: str = "cancelled") -> Obligation:
        """
        의무를 취소합니다.

        Raises:
            NotFoundError: 의무가 없는 경우
            InvalidTransitionError: 이미 종료된 의무인 경우
        """
        return await self._transition(obligation_id, "cancelled", reason=reason, strict=True)

    async def _violate(self, obligation: Obligation, reason: str,
                       guard: Optional[Callable[[Obligation], bool]] = None,
                       causation_id: Optional[str] = None) -> Optional[Obligation]:
        violated = await self._transition(obligation.id, "violated", reason=reason,
                                          guard=guard, causation_id=causation_id)
        if violated is not None:
            log.warning("의무 위반", obligation_id=violated.id, user_id=violated.user_id,
                        kind=violated.kind, reason=reason)
            await self._notify_violation(violated)
        return violated

    async def _notify_violation(self, obligation: Obligation) -> None:
        if self.on_violation is not None:
            await self.on_violation(obligation)

    # ---- 입력 처리 ----

    async def record_checkin(self, user_id: str, at: datetime) -> List[Obligation]:
        """
        체크인을 기록하고 충족되는 체크인 의무를 만족 처리합니다.

        기준 시각(deadline + grace)이 지나지 않았고 opens_at에 도달한
        의무만 만족됩니다.

        Returns:
            만족 처리된 의무 목록
        """
        def matches(ob: Obligation) -> bool:
            if at > ob.threshold:
                return False
            return ob.opens_at is None or ob.opens_at <= at

        satisfied = []
        for ob in await self.list_pending(user_id, "scheduled_checkin"):
            if not matches(ob):
                continue
            result = await self._transition(ob.id, "satisfied", reason="checked_in", guard=matches)
            if result is not None:
                satisfied.append(result)
        return satisfied

    async def on_classification(self, user_id: str, classification: Classification,
                                geofences: Dict[str, Geofence], at: datetime) -> List[Obligation]:
        """
        지오펜스 분류 결과로 체류 의무를 생성/만족합니다.

        Args:
            user_id: 사용자 ID
            classification: 분류 결과
            geofences: ID → 지오펜스
            at: 위치 측정 시각

        Returns:
            생성되거나 만족된 의무 목록
        """
        changed: List[Obligation] = []
        if not classification.entered and not classification.exited:
            return changed

        dwell = await self.list_pending(user_id, "geofence_dwell")
        pending_by_geofence = {ob.geofence_id: ob for ob in dwell}

        for geofence_id in classification.entered:
            geofence = geofences.get(geofence_id)
            if geofence is None or geofence.risk_level != "risk":
                continue
            if geofence_id in pending_by_geofence:
                continue
            max_dwell = geofence.max_dwell_sec or self.defaults.max_dwell_sec
            created = await self._create(Obligation(
                user_id=user_id,
                kind="geofence_dwell",
                deadline=at + timedelta(seconds=max_dwell),
                grace_sec=self.defaults.dwell_grace_sec,
                geofence_id=geofence_id,
                created_at=self.clock(),
            ))
            changed.append(created)

        for geofence_id in classification.exited:
            ob = pending_by_geofence.get(geofence_id)
            if ob is None:
                continue
            result = await self._satisfy_in_time(ob, at, reason="exited")
            if result is not None:
                changed.append(result)

        return changed

    async def _satisfy_in_time(self, obligation: Obligation, at: datetime, *,
                               reason: str) -> Optional[Obligation]:
        """
        기준 시각 이전의 이벤트면 만족, 이후면 즉시 위반 처리합니다.

        기준 시각이 지난 뒤의 이탈/도착은 위반 타이머보다 먼저 처리되더라도
        위반을 덮어쓰지 않습니다.
        """
        def in_time(current: Obligation) -> bool:
            return at <= current.threshold

        if not in_time(obligation):
            log.info("기준 시각 이후 이벤트, 위반 처리", obligation_id=obligation.id,
                     reason=reason, at=at.isoformat(), threshold=obligation.threshold.isoformat())
            return await self._violate(obligation, VIOLATION_REASONS[obligation.kind])
        return await self._transition(obligation.id, "satisfied", reason=reason, guard=in_time)

    async def on_location(self, user_id: str, location: GeoPoint, at: datetime) -> List[Obligation]:
        """
        여정 의무에 대해 위치를 평가합니다.

        도착 반경 안이면 만족, 허용 이탈 거리 초과면 off_route_since를 기록하고
        유예 후 타이머를 예약, 경로로 복귀하면 이탈 기록을 지웁니다.
        """
        changed: List[Obligation] = []
        for ob in await self.list_pending(user_id, "journey_deviation"):
            plan = ob.journey
            if plan is None or not plan.route:
                log.warning("경로 없는 여정 의무 무시", obligation_id=ob.id)
                metrics.configuration_warnings.labels(kind="empty_route").inc()
                continue

            if distance_to(location, plan.route[-1]) <= plan.arrival_radius_m:
                result = await self._satisfy_in_time(ob, at, reason="arrived")
                if result is not None:
                    changed.append(result)
                continue

            try:
                deviation = route_deviation(location, plan.route)
            except ConfigurationError as e:
                log.warning("여정 평가 실패", obligation_id=ob.id, error=str(e))
                continue

            off_route = deviation > plan.max_deviation_m
            if off_route and plan.off_route_since is None:
                updated = await self._set_off_route(ob.id, at)
            elif not off_route and plan.off_route_since is not None:
                updated = await self._set_off_route(ob.id, None)
            else:
                continue

            if updated is not None:
                changed.append(updated)
                if updated.journey.off_route_since is not None:
                    log.info("경로 이탈 감지", obligation_id=ob.id, user_id=user_id,
                             deviation_m=round(deviation, 1))
                    await self._schedule_off_route(updated, updated.journey.off_route_since)
                else:
                    log.info("경로 복귀", obligation_id=ob.id, user_id=user_id)
        return changed

    async def _set_off_route(self, obligation_id: str, since: Optional[datetime]) -> Optional[Obligation]:
        def change(current: Obligation) -> Optional[Obligation]:
            if current.status != "pending" or current.journey is None:
                return None
            if (current.journey.off_route_since is None) == (since is None):
                return None
            journey = current.journey.model_copy(update={"off_route_since": since})
            return current.model_copy(update={"journey": journey})

        result, changed = await apply_change(
            self.store, "obligation", obligation_id, change,
            at=self.clock(), operation="journey_off_route",
            max_retries=self.max_conflict_retries,
        )
        return result if changed else None

    # ---- 타이머 핸들러 ----

    async def _on_deadline_timer(self, timer: Timer) -> None:
        ob = await self.store.get("obligation", timer.entity_id)
        if ob is None:
            log.warning("타이머 대상 의무 없음", obligation_id=timer.entity_id)
            return
        if ob.status in ("satisfied", "cancelled"):
            log.debug("종료된 의무 타이머 무시", obligation_id=ob.id, status=ob.status)
            return
        if ob.status == "violated":
            # 위반 후 콜백 전에 중단된 경우를 위해 콜백을 다시 실행 (멱등)
            await self._notify_violation(ob)
            return

        await self._violate(ob, VIOLATION_REASONS[ob.kind], causation_id=timer.id)

    async def _on_off_route_timer(self, timer: Timer) -> None:
        ob = await self.store.get("obligation", timer.entity_id)
        if ob is None or ob.status != "pending":
            return

        expected = datetime.fromisoformat(timer.payload["off_route_since"])

        def still_off_route(current: Obligation) -> bool:
            journey = current.journey
            return journey is not None and journey.off_route_since == expected

        if not still_off_route(ob):
            log.debug("경로 복귀로 이탈 타이머 무시", obligation_id=ob.id)
            return

        await self._violate(ob, "route_deviation", guard=still_off_route, causation_id=timer.id)
