"""
Event log services for SafeWatch.

The store appends an event record in the same transaction as every state
change. This module reads that log back: per-entity history, replay into
current-state snapshots, restore of an empty store, divergence checks and
chain audits that surface lost optimistic-concurrency races.
"""

from typing import Dict, Iterable, List

from safewatch.core.models import EventRecord
from safewatch.ports.persistence import SafetyStorePort
from safewatch.observability.logging_setup import get_logger

log = get_logger("safewatch.eventlog")


def entity_key(entity_type: str, entity_id: str) -> str:
    return f"{entity_type}:{entity_id}"


class EventLog:
    """이벤트 로그 조회/재생기"""

    def __init__(self, store: SafetyStorePort):
        self.store = store

    async def history(self, entity_id: str) -> List[EventRecord]:
        """엔티티의 전이 이력을 순서대로 반환합니다."""
        return await self.store.list_events(entity_id=entity_id)

    @staticmethod
    def replay(events: Iterable[EventRecord]) -> Dict[str, dict]:
        """
        이벤트를 순서대로 접어 현재 상태 스냅샷을 만듭니다.

        Args:
            events: seq 순 이벤트

        Returns:
            'type:id' → 마지막 스냅샷
        """
        state: Dict[str, dict] = {}
        for event in events:
            state[entity_key(event.entity_type, event.entity_id)] = event.snapshot
        return state

    async def rebuild_into(self, target: SafetyStorePort) -> int:
        """
        이 로그로 빈 저장소를 복원합니다.

        Args:
            target: 초기화된 빈 저장소

        Returns:
            복원된 엔티티 수
        """
        events = await self.store.list_events()
        snapshots = self.replay(events)
        await target.restore(snapshots, events)
        log.info("이벤트 로그로 저장소 재구성", entities=len(snapshots), events=len(events))
        return len(snapshots)

    async def verify(self) -> List[str]:
        """
        재생 결과와 저장소 현재 상태를 비교합니다.

        Returns:
            불일치 엔티티 키 목록 (빈 목록이면 일치)
        """
        replayed = self.replay(await self.store.list_events())
        current = await self.store.snapshot()

        divergent = sorted(
            key for key in set(replayed) | set(current)
            if replayed.get(key) != current.get(key)
        )
        if divergent:
            log.error("이벤트 로그와 저장소 상태 불일치", count=len(divergent), keys=divergent[:10])
        return divergent

    async def audit_chain(self) -> List[dict]:
        """
        엔티티별 전이 사슬(from_state == 직전 to_state)이 끊긴 지점을 찾습니다.

        Returns:
            끊긴 지점 목록 (entity, seq, expected, found)
        """
        last_state: Dict[str, str] = {}
        breaks: List[dict] = []
        for event in await self.store.list_events():
            key = entity_key(event.entity_type, event.entity_id)
            expected = last_state.get(key)
            if event.from_state != expected:
                breaks.append({
                    "entity": key,
                    "seq": event.seq,
                    "expected": expected,
                    "found": event.from_state,
                })
            last_state[key] = event.to_state

        if breaks:
            log.warning("이벤트 사슬 단절 발견", count=len(breaks))
        return breaks
