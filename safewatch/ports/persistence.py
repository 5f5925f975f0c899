"""
Persistence port interface.

This module defines the protocol for the shared store that is the sole
source of truth for the engine: optimistic compare-and-swap on entities,
one open emergency per user, an append-only event log written in the same
transaction as each state change, durable timers and geofence presence.
"""

from datetime import datetime
from typing import Dict, List, Optional, Protocol

from safewatch.core.models import Emergency, Entity, EventRecord, Timer

class SafetyStorePort(Protocol):
    """안전 엔진 저장소 포트 인터페이스"""

    async def init(self) -> None:
        """스키마를 초기화합니다."""
        ...

    async def insert(self, entity: Entity, *, at: datetime,
                     causation_id: Optional[str] = None) -> Entity:
        """
        엔티티를 생성하고 이벤트를 같은 트랜잭션에 기록합니다.

        Raises:
            AlreadyActiveError: 사용자에게 이미 열린 비상 상황이 있는 경우
        """
        ...

    async def compare_and_set(self, entity: Entity, expected_version: int, *,
                              from_state: str, at: datetime,
                              causation_id: Optional[str] = None) -> Entity:
        """
        버전이 일치할 때만 엔티티를 갱신하고 이벤트를 기록합니다.

        Raises:
            NotFoundError: 엔티티가 없는 경우
            ConcurrencyConflictError: 버전 불일치
        """
        ...

    async def get(self, entity_type: str, entity_id: str) -> Optional[Entity]:
        """엔티티를 조회합니다."""
        ...

    async def list_entities(self, entity_type: str, *, user_id: Optional[str] = None,
                            parent_id: Optional[str] = None,
                            status: Optional[str] = None) -> List[Entity]:
        """조건에 맞는 엔티티 목록을 조회합니다."""
        ...

    async def get_open_emergency(self, user_id: str) -> Optional[Emergency]:
        """사용자의 열린 비상 상황을 조회합니다."""
        ...

    async def list_events(self, *, entity_id: Optional[str] = None,
                          after_seq: int = 0) -> List[EventRecord]:
        """이벤트 로그를 순서대로 조회합니다."""
        ...

    async def snapshot(self) -> Dict[str, dict]:
        """현재 상태 스냅샷을 'type:id' 키로 반환합니다."""
        ...

    async def restore(self, snapshots: Dict[str, dict], events: List[EventRecord]) -> None:
        """빈 저장소를 스냅샷과 이벤트로 복원합니다."""
        ...

    async def schedule_timer(self, timer: Timer) -> bool:
        """타이머를 등록합니다 (dedupe_key 중복 시 False)."""
        ...

    async def claim_due_timers(self, now: datetime, limit: int, lease_sec: int) -> List[Timer]:
        """만기 타이머를 리스와 함께 점유합니다."""
        ...

    async def complete_timer(self, timer_id: str) -> None:
        """타이머를 완료 처리합니다."""
        ...

    async def release_timer(self, timer_id: str, retry_at: datetime) -> None:
        """처리 실패한 타이머를 재시도 시각으로 되돌립니다."""
        ...

    async def list_timers(self, *, entity_id: Optional[str] = None,
                          status: Optional[str] = None) -> List[Timer]:
        """타이머 목록을 조회합니다."""
        ...

    async def count_pending_timers(self) -> int:
        """완료되지 않은 타이머 수를 반환합니다."""
        ...

    async def count_entities(self, entity_type: str, statuses: List[str]) -> int:
        """상태별 엔티티 수를 반환합니다."""
        ...

    async def get_presence(self, user_id: str) -> Dict[str, datetime]:
        """사용자가 현재 내부에 있는 지오펜스와 진입 시각을 조회합니다."""
        ...

    async def update_presence(self, user_id: str, entered: Dict[str, datetime],
                              exited: List[str]) -> None:
        """지오펜스 진입/이탈을 반영합니다."""
        ...
