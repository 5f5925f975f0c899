"""
Error kinds for the SafeWatch engine.

Every error carries the entity it concerns and, where relevant, the
transition that was attempted so callers and logs get full context.
"""

from typing import Any, Optional


class SafetyEngineError(Exception):
    """엔진 공통 예외"""

    def __init__(self, message: str, *, entity_id: Optional[str] = None,
                 transition: Optional[str] = None):
        super().__init__(message)
        self.entity_id = entity_id
        self.transition = transition

    def context(self) -> dict:
        """로그/응답용 컨텍스트를 반환합니다."""
        return {
            "error": type(self).__name__,
            "message": str(self),
            "entity_id": self.entity_id,
            "transition": self.transition,
        }


class AlreadyActiveError(SafetyEngineError):
    """사용자에게 이미 진행 중인 비상 상황이 있음 (멱등 호출자는 성공으로 취급)"""

    def __init__(self, existing: Any):
        super().__init__(
            f"user {existing.user_id} already has open emergency {existing.id}",
            entity_id=existing.id,
            transition="none->active",
        )
        self.existing = existing


class NotFoundError(SafetyEngineError):
    """알 수 없는 엔티티 ID"""

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type} {entity_id} not found", entity_id=entity_id)
        self.entity_type = entity_type


class InvalidTransitionError(SafetyEngineError):
    """상태 머신 오용 (예: 이미 종료된 비상 상황 해제)"""

    def __init__(self, entity_type: str, entity_id: str, from_state: str, to_state: str):
        super().__init__(
            f"{entity_type} {entity_id}: transition {from_state}->{to_state} not allowed",
            entity_id=entity_id,
            transition=f"{from_state}->{to_state}",
        )
        self.entity_type = entity_type
        self.from_state = from_state
        self.to_state = to_state


class ConcurrencyConflictError(SafetyEngineError):
    """낙관적 CAS 경합에서 패배 (재조회 후 재시도)"""

    def __init__(self, entity_type: str, entity_id: str, expected_version: int):
        super().__init__(
            f"{entity_type} {entity_id}: version {expected_version} is stale",
            entity_id=entity_id,
        )
        self.entity_type = entity_type
        self.expected_version = expected_version


class DeliveryFailureError(SafetyEngineError):
    """수신자에 대한 모든 채널/재시도 소진"""

    def __init__(self, notification: Any, recipient_id: str, channels: list):
        super().__init__(
            f"notification {notification.id}: all channels exhausted for {recipient_id} ({','.join(channels)})",
            entity_id=notification.id,
        )
        self.notification = notification
        self.recipient_id = recipient_id
        self.channels = channels


class ConfigurationError(SafetyEngineError):
    """잘못된 설정 (퇴화된 지오펜스, 잘못된 경로 등)"""


class ChannelProviderError(SafetyEngineError):
    """채널 제공자 전송 실패 (일시적 오류 포함)"""

    def __init__(self, channel: str, message: str):
        super().__init__(f"{channel} provider: {message}")
        self.channel = channel
