"""
HTTP API 테스트

엔진 작업 엔드포인트와 엔진 예외의 상태 코드 매핑을 검증합니다.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from safewatch.adapters.storage import SQLiteSafetyStore
from safewatch.observability.health import create_app
from safewatch.orchestrators.orchestrator import SafetyEngine

USER = "user-1"


@pytest.fixture
def engine(temp_db_path, providers, contacts, sample_settings, clock):
    engine = SafetyEngine(SQLiteSafetyStore(temp_db_path), providers, contacts, sample_settings, clock=clock)
    asyncio.run(engine.init())
    return engine


@pytest.fixture
def client(engine, sample_settings):
    return TestClient(create_app(sample_settings, engine))


def _trigger(client, user_id=USER):
    return client.post(f"/api/users/{user_id}/emergencies", json={"reason": "manual"})


class TestReadiness:
    """헬스/레디니스 테스트"""

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "ok"

    def test_ready_follows_engine(self, client, engine):
        assert client.get("/ready").status_code == 503
        engine.ready = True
        assert client.get("/ready").status_code == 200


class TestProfileAndGeofences:
    """프로필/지오펜스 엔드포인트 테스트"""

    def test_profile_roundtrip(self, client):
        response = client.put(f"/api/users/{USER}/profile", json={"home_timezone": "Asia/Seoul"})
        assert response.status_code == 200

        profile = client.get(f"/api/users/{USER}/profile").json()
        assert profile["home_timezone"] == "Asia/Seoul"
        assert profile["current_emergency"] is None

    def test_create_and_remove_geofence(self, client):
        response = client.post(f"/api/users/{USER}/geofences", json={
            "name": "공사 현장",
            "risk_level": "risk",
            "max_dwell_sec": 600,
            "geometry": {"type": "circle", "center": {"lat": 40.0, "lon": -73.0}, "radius_m": 100},
        })
        assert response.status_code == 201
        geofence_id = response.json()["id"]

        removed = client.delete(f"/api/geofences/{geofence_id}")
        assert removed.json()["status"] == "deleted"

    def test_degenerate_geofence(self, client):
        response = client.post(f"/api/users/{USER}/geofences", json={
            "geometry": {"type": "circle", "center": {"lat": 40.0, "lon": -73.0}, "radius_m": 0},
        })
        assert response.status_code == 422
        assert response.json()["error"] == "ConfigurationError"

    def test_unknown_geofence(self, client):
        assert client.delete("/api/geofences/gf_missing").status_code == 404


class TestEmergencies:
    """비상 상황 엔드포인트 테스트"""

    def test_trigger_is_idempotent(self, client):
        first = _trigger(client)
        assert first.status_code == 201
        assert first.json()["created"] is True

        second = _trigger(client)
        assert second.status_code == 200
        assert second.json()["created"] is False
        assert second.json()["emergency"]["id"] == first.json()["emergency"]["id"]

    def test_acknowledge_and_resolve(self, client):
        emergency_id = _trigger(client).json()["emergency"]["id"]

        acked = client.post(f"/api/emergencies/{emergency_id}/acknowledge", json={"by_contact_id": "c-1"})
        assert acked.json()["status"] == "acknowledged"

        resolved = client.post(f"/api/emergencies/{emergency_id}/resolve", json={"outcome": "resolved"})
        assert resolved.json()["status"] == "resolved"

        again = client.post(f"/api/emergencies/{emergency_id}/resolve", json={})
        assert again.status_code == 409
        assert again.json()["error"] == "InvalidTransitionError"

    def test_escalate_acknowledged_conflicts(self, client):
        emergency_id = _trigger(client).json()["emergency"]["id"]
        client.post(f"/api/emergencies/{emergency_id}/acknowledge", json={"by_contact_id": "c-1"})

        assert client.post(f"/api/emergencies/{emergency_id}/escalate").status_code == 409

    def test_unknown_emergency(self, client):
        assert client.get("/api/emergencies/em_missing").status_code == 404

    def test_history(self, client):
        emergency_id = _trigger(client).json()["emergency"]["id"]
        client.post(f"/api/emergencies/{emergency_id}/resolve", json={"outcome": "false_alarm"})

        history = client.get(f"/api/entities/{emergency_id}/history").json()
        assert history[0]["from_state"] is None
        assert history[-1]["to_state"] == "false_alarm"


class TestObligationsAndIngest:
    """의무/수집 엔드포인트 테스트"""

    def test_checkin_cancel_twice(self, client, clock):
        deadline = clock().replace(hour=18).isoformat()
        created = client.post(f"/api/users/{USER}/checkins", json={"deadline": deadline})
        assert created.status_code == 201
        obligation_id = created.json()["id"]

        assert client.post(f"/api/obligations/{obligation_id}/cancel").json()["status"] == "cancelled"
        assert client.post(f"/api/obligations/{obligation_id}/cancel").status_code == 409

    def test_empty_journey_rejected(self, client, clock):
        response = client.post(f"/api/users/{USER}/journeys", json={
            "route": [], "expected_arrival": clock().isoformat(),
        })
        assert response.status_code == 422

    def test_ingest_duress(self, client, clock):
        response = client.post("/api/ingest", json={
            "user_id": USER, "timestamp": clock().isoformat(), "duress": True,
        })
        assert response.status_code == 200
        assert response.json()["emergency"]["reason"] == "duress"

    def test_ingest_validation(self, client):
        assert client.post("/api/ingest", json={"user_id": USER}).status_code == 422


class TestNotifications:
    """알림 엔드포인트 테스트"""

    def test_send_and_report(self, client):
        report = client.post("/api/notifications", json={
            "user_id": USER, "title": "안부", "contact_ids": ["c-1"],
        }).json()
        attempt_id = report["attempts"][0]["id"]

        updated = client.post(f"/api/attempts/{attempt_id}/status", json={"status": "delivered"})
        assert updated.json()["status"] == "delivered"

        attempts = client.get(f"/api/notifications/{report['notification_id']}/attempts").json()
        assert [a["status"] for a in attempts] == ["delivered"]

    def test_report_unknown_status(self, client):
        response = client.post("/api/attempts/at_missing/status", json={"status": "exploded"})
        assert response.status_code == 422

    def test_run_due_timers(self, client):
        assert client.post("/api/timers/run").json() == {"processed": 0}

    def test_metrics(self, client):
        _trigger(client)
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "safewatch_emergencies_triggered_total" in response.text
