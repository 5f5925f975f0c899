"""
Observability 모듈 단위 테스트

엔진 없이 생성한 헬스 앱, 메트릭 정의, 로깅 설정을 테스트합니다.
"""

import logging

import pytest
from fastapi.testclient import TestClient
from loguru import logger

from safewatch.observability.health import create_app
from safewatch.observability.logging_setup import InterceptHandler, get_logger, setup_logging
from safewatch.observability.metrics import escalations, notification_attempts, open_emergencies
from safewatch.settings import Settings


class TestHealthEndpoints:
    """헬스 체크 엔드포인트 테스트"""

    @pytest.fixture
    def settings(self):
        """테스트용 설정"""
        settings = Settings()
        settings.observability.service_name = "test-service"
        settings.observability.build_version = "1.0.0"
        return settings

    @pytest.fixture
    def client(self, settings):
        return TestClient(create_app(settings))

    def test_health_endpoint(self, client):
        data = client.get("/health").json()

        assert data["status"] == "ok"
        assert data["service"] == "test-service"
        assert "timestamp" in data

    def test_not_ready_without_engine(self, client):
        response = client.get("/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "starting"

    def test_metrics_endpoint(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "# HELP safewatch_" in response.text

    def test_metrics_disabled(self, settings):
        settings.observability.metrics_enabled = False
        client = TestClient(create_app(settings))

        assert client.get("/metrics").status_code == 503

    def test_info_endpoint(self, client):
        data = client.get("/info").json()

        assert data["service"] == "test-service"
        assert data["version"] == "1.0.0"
        assert data["dry_run"] is False
        assert "uptime_seconds" in data

    def test_engine_api_not_mounted(self, client):
        assert client.get("/api/emergencies/em_1").status_code == 404


class TestMetricsCollection:
    """메트릭 수집 테스트"""

    def test_attempt_counter(self):
        notification_attempts.clear()

        notification_attempts.labels(channel="push", status="sent").inc()
        notification_attempts.labels(channel="push", status="sent").inc(2)
        notification_attempts.labels(channel="sms", status="failed").inc()

        assert notification_attempts.labels(channel="push", status="sent")._value.get() == 3
        assert notification_attempts.labels(channel="sms", status="failed")._value.get() == 1

    def test_escalation_counter(self):
        escalations.clear()
        escalations.labels(level="2").inc()

        assert escalations.labels(level="2")._value.get() == 1

    def test_open_emergencies_gauge(self):
        open_emergencies.set(3)
        assert open_emergencies._value.get() == 3
        open_emergencies.set(0)


class TestLogging:
    """로깅 설정 테스트"""

    def test_bound_logger_carries_name(self):
        records = []
        sink_id = logger.add(lambda m: records.append(m.record), level="INFO")
        try:
            get_logger("safewatch.test", user_id="user-1").info("테스트 로그", attempt_id="at_1")
        finally:
            logger.remove(sink_id)

        assert records[0]["extra"]["name"] == "safewatch.test"
        assert records[0]["extra"]["user_id"] == "user-1"
        assert records[0]["extra"]["attempt_id"] == "at_1"

    def test_setup_intercepts_stdlib_logging(self):
        setup_logging("DEBUG", json_logs=False)

        handlers = logging.getLogger("uvicorn").handlers
        assert len(handlers) == 1
        assert isinstance(handlers[0], InterceptHandler)
