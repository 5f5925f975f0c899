"""
Read-modify-write helper over the store's compare-and-swap.
"""

from datetime import datetime
from typing import Callable, Optional, Tuple

from safewatch.common.retry import retry_on_conflict
from safewatch.core.errors import NotFoundError
from safewatch.core.models import Entity
from safewatch.ports.persistence import SafetyStorePort
from safewatch.observability import metrics
from safewatch.observability.logging_setup import get_logger

log = get_logger("safewatch.cas")

Change = Callable[[Entity], Optional[Entity]]


async def apply_change(store: SafetyStorePort,
                       entity_type: str,
                       entity_id: str,
                       change: Change,
                       *,
                       at: datetime,
                       operation: str,
                       max_retries: int = 5,
                       causation_id: Optional[str] = None) -> Tuple[Entity, bool]:
    """
    엔티티를 다시 읽고 변경 함수를 적용한 뒤 CAS로 기록합니다.

    change가 None을 반환하면 기록하지 않습니다. 충돌 후 재조회에서 None이
    나오면 다른 작성자가 이긴 것이므로 경합으로 기록하고 폐기합니다.

    Args:
        store: 저장소
        entity_type: 엔티티 종류
        entity_id: 엔티티 ID
        change: 현재 엔티티 → 갱신 엔티티 (또는 None)
        at: 이벤트 시각
        operation: 로그/메트릭용 작업 이름
        max_retries: 충돌 재시도 한도
        causation_id: 원인 ID

    Returns:
        (현재 또는 갱신된 엔티티, 기록 여부)

    Raises:
        NotFoundError: 엔티티가 없는 경우
        ConcurrencyConflictError: 재시도 한도 초과
    """
    reads = 0

    async def attempt() -> Tuple[Entity, bool]:
        nonlocal reads
        reads += 1
        current = await store.get(entity_type, entity_id)
        if current is None:
            raise NotFoundError(entity_type, entity_id)

        updated = change(current)
        if updated is None:
            if reads > 1:
                metrics.races_detected.labels(entity_type=entity_type).inc()
                log.warning("경합 패배, 전이 폐기",
                            entity_type=entity_type, entity_id=entity_id,
                            status=current.status, operation=operation)
            return current, False

        stored = await store.compare_and_set(
            updated, current.version,
            from_state=current.status, at=at, causation_id=causation_id,
        )
        return stored, True

    return await retry_on_conflict(attempt, max_retries=max_retries, operation=operation)
