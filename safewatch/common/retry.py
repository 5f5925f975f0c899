"""
Retry utilities for SafeWatch.

This module provides retry and backoff utilities
for reliable operation in distributed systems, including the bounded
re-read-and-retry loop used for optimistic concurrency conflicts.
"""

import asyncio
import random
from typing import Awaitable, Callable, Optional, TypeVar

from safewatch.core.errors import ConcurrencyConflictError
from safewatch.observability import metrics
from safewatch.observability.logging_setup import get_logger

T = TypeVar('T')

log = get_logger("safewatch.retry")


def backoff_delay(attempt: int, base: float, max_delay: float) -> float:
    """
    지수 백오프 지연 시간을 계산합니다.

    Args:
        attempt: 현재 시도 횟수 (1부터 시작)
        base: 기본 지연 시간 (초)
        max_delay: 최대 지연 시간 (초)

    Returns:
        지연 시간 (초)
    """
    return min(max_delay, base * (2 ** max(0, attempt - 1)))


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    jitter: bool = True
) -> T:
    """
    지수 백오프와 함께 함수를 재시도합니다.

    Args:
        func: 재시도할 비동기 함수
        max_retries: 최대 재시도 횟수
        base_delay: 기본 지연 시간 (초)
        max_delay: 최대 지연 시간 (초)
        jitter: 지터 적용 여부

    Returns:
        함수 실행 결과

    Raises:
        마지막 시도에서 발생한 예외
    """
    last_exception: Optional[Exception] = None

    for attempt in range(1, max_retries + 2):  # 최초 1회 + max_retries
        try:
            return await func()
        except Exception as e:
            last_exception = e

            if attempt > max_retries:
                break

            delay = backoff_delay(attempt, base_delay, max_delay)
            if jitter:
                delay = delay * (0.5 + random.random() * 0.5)

            await asyncio.sleep(delay)

    raise last_exception


async def retry_on_conflict(
    func: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 5,
    operation: str = "operation",
) -> T:
    """
    낙관적 동시성 충돌 시 재조회-재시도를 수행합니다.

    func는 매 호출마다 엔티티를 다시 읽고 전이를 재평가해야 합니다.
    지연 없이 즉시 재시도하며, 한도를 넘으면 마지막 충돌을 전파합니다.

    Args:
        func: 읽기-수정-쓰기를 수행하는 비동기 함수
        max_retries: 최대 재시도 횟수
        operation: 로그용 작업 이름

    Returns:
        함수 실행 결과

    Raises:
        ConcurrencyConflictError: 재시도 한도 초과
    """
    attempt = 0
    while True:
        try:
            return await func()
        except ConcurrencyConflictError as e:
            attempt += 1
            metrics.concurrency_retries.labels(operation=operation).inc()
            if attempt > max_retries:
                log.error("동시성 충돌 재시도 한도 초과",
                          operation=operation, entity_id=e.entity_id, attempts=attempt)
                raise
            log.debug("동시성 충돌, 재시도", operation=operation,
                      entity_id=e.entity_id, attempt=attempt)
