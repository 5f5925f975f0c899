"""
Durable timer worker for SafeWatch.

Obligation thresholds, journey off-route checks, escalation steps, attempt
retries and delivery-confirmation timeouts are all rows in the store's
timers table. Workers claim due rows under a lease, run the handler
registered for the row's kind and mark it done. Handlers re-read current
state before acting, so a stale timer is a no-op.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from safewatch.common.clock import Clock, utcnow
from safewatch.core.models import Timer
from safewatch.ports.persistence import SafetyStorePort
from safewatch.settings import TimerConfig
from safewatch.observability import metrics
from safewatch.observability.logging_setup import get_logger

log = get_logger("safewatch.timers")

TimerHandler = Callable[[Timer], Awaitable[None]]


class TimerWorker:
    """영속 타이머 워커"""

    def __init__(self, store: SafetyStorePort, config: Optional[TimerConfig] = None,
                 clock: Clock = utcnow):
        self.store = store
        self.config = config or TimerConfig()
        self.clock = clock
        self.handlers: Dict[str, TimerHandler] = {}

    def register(self, kind: str, handler: TimerHandler) -> None:
        """타이머 종류별 핸들러를 등록합니다."""
        self.handlers[kind] = handler

    async def schedule(self, kind: str, entity_id: str, fire_at: datetime, *,
                       dedupe_key: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        """
        타이머를 등록합니다.

        Args:
            kind: 타이머 종류
            entity_id: 대상 엔티티 ID
            fire_at: 실행 시각
            dedupe_key: 중복 방지 키
            payload: 핸들러 전달 데이터

        Returns:
            새로 등록되었으면 True
        """
        timer = Timer(kind=kind, entity_id=entity_id, dedupe_key=dedupe_key,
                      fire_at=fire_at, payload=payload or {})
        created = await self.store.schedule_timer(timer)
        if created:
            log.debug("타이머 등록", kind=kind, entity_id=entity_id, fire_at=fire_at.isoformat())
        return created

    async def run_due(self, now: Optional[datetime] = None) -> int:
        """
        만기 타이머를 처리합니다.

        Args:
            now: 기준 시각, None이면 clock 사용

        Returns:
            처리(완료)된 타이머 수
        """
        now = now or self.clock()
        timers = await self.store.claim_due_timers(now, self.config.batch_size, self.config.lease_sec)
        done = 0

        for timer in timers:
            metrics.timer_lag_seconds.observe(max(0.0, (now - timer.fire_at).total_seconds()))
            handler = self.handlers.get(timer.kind)
            if handler is None:
                log.warning("핸들러 없는 타이머 종료", kind=timer.kind, timer_id=timer.id)
                metrics.timers_fired.labels(kind=timer.kind, outcome="unhandled").inc()
                await self.store.complete_timer(timer.id)
                continue

            try:
                await handler(timer)
            except Exception as e:
                retry_at = now + timedelta(seconds=self.config.handler_retry_sec)
                log.error("타이머 처리 실패, 재시도 예약",
                          kind=timer.kind, entity_id=timer.entity_id,
                          attempts=timer.attempts, error=str(e))
                metrics.timers_fired.labels(kind=timer.kind, outcome="error").inc()
                await self.store.release_timer(timer.id, retry_at)
                continue

            await self.store.complete_timer(timer.id)
            metrics.timers_fired.labels(kind=timer.kind, outcome="ok").inc()
            done += 1

        return done

    async def run_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        """주기적으로 만기 타이머를 처리합니다."""
        log.info("타이머 워커 시작", poll_interval=self.config.poll_interval_sec)
        while stop is None or not stop.is_set():
            try:
                await self.run_due()
            except Exception as e:
                log.error("타이머 루프 오류", error=str(e))
            if stop is None:
                await asyncio.sleep(self.config.poll_interval_sec)
                continue
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.config.poll_interval_sec)
            except asyncio.TimeoutError:
                pass
