"""
테스트 설정 및 픽스처

이 모듈은 pytest 설정과 공통 픽스처(가짜 시계, 기록용 채널 제공자,
정적 연락처, 임시 SQLite 저장소 기반 엔진 팩토리)를 제공합니다.
"""

import inspect
import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from safewatch.adapters.contacts import StaticContactDirectory
from safewatch.adapters.storage import SQLiteIdemStore, SQLiteSafetyStore
from safewatch.core.errors import ChannelProviderError
from safewatch.orchestrators.orchestrator import SafetyEngine
from safewatch.settings import Settings

# 월요일 정오 (UTC): 기본 방해 금지 시간대 밖
T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """수동으로 진행하는 테스트용 시계"""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


class RecordingProvider:
    """발송 내역을 기록하는 채널 제공자"""

    def __init__(self, channel: str, fail: bool = False):
        self.channel = channel
        self.fail = fail
        self.sent: List[dict] = []

    async def send(self, recipient: str, content: dict) -> str:
        if self.fail:
            raise ChannelProviderError(self.channel, "simulated outage")
        self.sent.append({"to": recipient, **content})
        return f"{self.channel}-{len(self.sent)}"


def _cleanup(path: str) -> None:
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(path + suffix):
            os.unlink(path + suffix)


@pytest.fixture
def temp_db_path():
    """임시 데이터베이스 파일 경로"""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        temp_path = f.name
    yield temp_path
    # 테스트 후 파일 정리 (WAL 파일 포함)
    _cleanup(temp_path)


@pytest.fixture
def second_db_path():
    """복원 대상용 두 번째 임시 데이터베이스 경로"""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        temp_path = f.name
    yield temp_path
    _cleanup(temp_path)


@pytest.fixture
def clock():
    """테스트용 가짜 시계"""
    return FakeClock()


@pytest.fixture
def sample_settings():
    """테스트용 설정"""
    settings = Settings()
    settings.observability.service_name = "test-service"
    settings.observability.build_version = "1.0.0"
    settings.observability.log_level = "INFO"
    settings.observability.http_port = 8080
    settings.obligations.checkin_grace_sec = 900
    settings.obligations.max_dwell_sec = 600
    settings.obligations.journey_grace_sec = 120
    return settings


@pytest.fixture
def sample_polygon():
    """테스트용 폴리곤 (경도, 위도)"""
    return [
        (126.0, 37.0),  # 좌하
        (127.0, 37.0),  # 우하
        (127.0, 38.0),  # 우상
        (126.0, 38.0)   # 좌상
    ]


@pytest.fixture
def sample_contacts():
    """테스트용 비상 연락처 (user-1)"""
    return {
        "user-1": [
            {
                "contact_id": "c-1",
                "name": "보호자",
                "priority_tier": 1,
                "channel_addresses": {"push": "tok-1", "sms": "+821000000001", "email": "c1@example.com"},
            },
            {
                "contact_id": "c-2",
                "name": "친구",
                "priority_tier": 2,
                "channel_addresses": {"push": "tok-2", "sms": "+821000000002"},
            },
        ],
    }


@pytest.fixture
def contacts(sample_contacts):
    """정적 연락처 디렉터리"""
    return StaticContactDirectory(sample_contacts)


@pytest.fixture
def providers():
    """모든 채널의 기록용 제공자"""
    return {channel: RecordingProvider(channel) for channel in ("push", "sms", "email", "call")}


@pytest.fixture
def make_engine(temp_db_path, clock, contacts, providers, sample_settings):
    """
    초기화된 엔진을 만드는 팩토리

    기본값으로 공용 시계/제공자/연락처/설정을 사용하며 인자로 교체할 수 있습니다.
    """
    async def _make(*, settings: Optional[Settings] = None,
                    providers_override: Optional[Dict[str, RecordingProvider]] = None,
                    path: Optional[str] = None,
                    idem_path: Optional[str] = None) -> SafetyEngine:
        store = SQLiteSafetyStore(path or temp_db_path)
        idem = SQLiteIdemStore(idem_path, 3600) if idem_path else None
        engine = SafetyEngine(
            store,
            providers if providers_override is None else providers_override,
            contacts,
            settings or sample_settings,
            clock=clock,
            idem=idem,
        )
        await engine.init()
        return engine

    return _make


# pytest 설정
def pytest_configure(config):
    """pytest 설정"""
    config.addinivalue_line(
        "markers", "asyncio: 비동기 테스트 마커"
    )
    config.addinivalue_line(
        "markers", "slow: 느린 테스트 마커"
    )
    config.addinivalue_line(
        "markers", "integration: 통합 테스트 마커"
    )


def pytest_collection_modifyitems(config, items):
    """테스트 아이템 수정"""
    for item in items:
        # 비동기 테스트에 asyncio 마커 추가
        if inspect.iscoroutinefunction(getattr(item, "function", None)):
            item.add_marker(pytest.mark.asyncio)

        # 통합 테스트 마커 추가
        if "scenario" in item.name or "integration" in item.name:
            item.add_marker(pytest.mark.integration)
