"""
Storage Adapter 모듈 단위 테스트

이 모듈은 SQLite 기반 저장소 어댑터(안전 엔진 저장소, 멱등 저장소)의
기능을 테스트합니다.
"""

import asyncio
import os
from datetime import datetime, timedelta, timezone

import aiosqlite
import pytest

from safewatch.adapters.storage import SQLiteIdemStore, SQLiteSafetyStore, update_key
from safewatch.core.errors import AlreadyActiveError, ConcurrencyConflictError, NotFoundError
from safewatch.core.models import (
    CircleGeometry, Emergency, Geofence, GeoPoint, LocationUpdate, Obligation, Timer
)

AT = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _emergency(user_id: str = "user-1") -> Emergency:
    return Emergency(user_id=user_id, reason="manual", created_at=AT)


class TestSQLiteSafetyStore:
    """SQLite 안전 엔진 저장소 테스트"""

    @pytest.fixture
    def store(self, temp_db_path):
        """테스트용 저장소"""
        return SQLiteSafetyStore(temp_db_path)

    @pytest.mark.asyncio
    async def test_store_init_schema(self, store):
        """스키마 초기화 테스트 (재실행 가능)"""
        await store.init()
        await store.init()

        assert os.path.exists(store.path)

    @pytest.mark.asyncio
    async def test_insert_sets_version_and_logs_event(self, store):
        """생성 시 버전 1과 생성 이벤트 기록"""
        await store.init()
        emergency = await store.insert(_emergency(), at=AT, causation_id="test")

        assert emergency.version == 1
        loaded = await store.get("emergency", emergency.id)
        assert loaded == emergency

        events = await store.list_events(entity_id=emergency.id)
        assert len(events) == 1
        assert events[0].from_state is None
        assert events[0].to_state == "active"
        assert events[0].causation_id == "test"
        assert events[0].snapshot["version"] == 1

    @pytest.mark.asyncio
    async def test_compare_and_set(self, store):
        """버전 일치 시 갱신, 불일치 시 충돌"""
        await store.init()
        emergency = await store.insert(_emergency(), at=AT)

        acked = emergency.model_copy(update={"status": "acknowledged", "acknowledged_by": "c-1"})
        stored = await store.compare_and_set(acked, 1, from_state="active", at=AT)
        assert stored.version == 2

        stale = emergency.model_copy(update={"status": "resolved"})
        with pytest.raises(ConcurrencyConflictError) as exc_info:
            await store.compare_and_set(stale, 1, from_state="active", at=AT)
        assert exc_info.value.expected_version == 1

        current = await store.get("emergency", emergency.id)
        assert current.status == "acknowledged"
        assert len(await store.list_events(entity_id=emergency.id)) == 2

    @pytest.mark.asyncio
    async def test_compare_and_set_unknown_entity(self, store):
        await store.init()
        with pytest.raises(NotFoundError):
            await store.compare_and_set(_emergency(), 1, from_state="active", at=AT)

    @pytest.mark.asyncio
    async def test_one_open_emergency_per_user(self, store):
        """사용자당 열린 비상 상황은 하나"""
        await store.init()
        first = await store.insert(_emergency(), at=AT)

        with pytest.raises(AlreadyActiveError) as exc_info:
            await store.insert(_emergency(), at=AT)
        assert exc_info.value.existing.id == first.id

        # 다른 사용자는 영향 없음
        await store.insert(_emergency("user-2"), at=AT)

        # 종료 후에는 새로 생성 가능
        resolved = first.model_copy(update={"status": "resolved"})
        await store.compare_and_set(resolved, 1, from_state="active", at=AT)
        second = await store.insert(_emergency(), at=AT)
        assert (await store.get_open_emergency("user-1")).id == second.id

    @pytest.mark.asyncio
    async def test_concurrent_inserts_single_winner(self, store):
        """동시 생성 시 하나만 성공"""
        await store.init()
        results = await asyncio.gather(
            *(store.insert(_emergency(), at=AT) for _ in range(5)),
            return_exceptions=True,
        )

        created = [r for r in results if isinstance(r, Emergency)]
        rejected = [r for r in results if isinstance(r, AlreadyActiveError)]
        assert len(created) == 1
        assert len(rejected) == 4
        assert all(r.existing.id == created[0].id for r in rejected)

    @pytest.mark.asyncio
    async def test_duplicate_id_is_conflict(self, store):
        await store.init()
        geofence = Geofence(
            user_id="user-1",
            geometry=CircleGeometry(center=GeoPoint(lat=0, lon=0), radius_m=50),
        )
        await store.insert(geofence, at=AT)
        with pytest.raises(ConcurrencyConflictError):
            await store.insert(geofence, at=AT)

    @pytest.mark.asyncio
    async def test_event_log_is_append_only(self, store):
        """이벤트 로그 UPDATE/DELETE 거부"""
        await store.init()
        await store.insert(_emergency(), at=AT)

        async with aiosqlite.connect(store.path) as db:
            with pytest.raises(aiosqlite.DatabaseError):
                await db.execute("UPDATE event_log SET to_state = 'resolved'")
            with pytest.raises(aiosqlite.DatabaseError):
                await db.execute("DELETE FROM event_log")

        assert len(await store.list_events()) == 1

    @pytest.mark.asyncio
    async def test_list_entities_filters(self, store):
        """사용자/부모/상태 필터"""
        await store.init()
        ob = Obligation(user_id="user-1", kind="geofence_dwell", deadline=AT, geofence_id="gf_1")
        other = Obligation(user_id="user-1", kind="scheduled_checkin", deadline=AT)
        await store.insert(ob, at=AT)
        await store.insert(other, at=AT)

        by_parent = await store.list_entities("obligation", parent_id="gf_1")
        assert [o.id for o in by_parent] == [ob.id]

        pending = await store.list_entities("obligation", user_id="user-1", status="pending")
        assert [o.id for o in pending] == [ob.id, other.id]

        assert await store.list_entities("obligation", user_id="user-2") == []
        assert await store.count_entities("obligation", ["pending"]) == 2

    @pytest.mark.asyncio
    async def test_timer_dedupe_and_claim(self, store):
        """타이머 중복 방지, 만기 점유, 리스 만료 재점유"""
        await store.init()
        due = Timer(kind="k", entity_id="e1", dedupe_key="k:e1", fire_at=AT)
        later = Timer(kind="k", entity_id="e2", dedupe_key="k:e2", fire_at=AT + timedelta(minutes=5))

        assert await store.schedule_timer(due) is True
        assert await store.schedule_timer(due.model_copy(update={"id": "tm_other"})) is False
        assert await store.schedule_timer(later) is True

        claimed = await store.claim_due_timers(AT, limit=10, lease_sec=30)
        assert [t.id for t in claimed] == [due.id]
        assert claimed[0].attempts == 1

        # 리스 중에는 다시 점유되지 않음
        assert await store.claim_due_timers(AT + timedelta(seconds=10), limit=10, lease_sec=30) == []

        # 리스 만료 후 재점유 (중단된 워커)
        reclaimed = await store.claim_due_timers(AT + timedelta(seconds=31), limit=10, lease_sec=30)
        assert [t.id for t in reclaimed] == [due.id]
        assert reclaimed[0].attempts == 2

        await store.complete_timer(due.id)
        assert await store.count_pending_timers() == 1
        assert [t.id for t in await store.list_timers(status="done")] == [due.id]

    @pytest.mark.asyncio
    async def test_release_timer(self, store):
        await store.init()
        timer = Timer(kind="k", entity_id="e1", dedupe_key="k:e1", fire_at=AT)
        await store.schedule_timer(timer)
        await store.claim_due_timers(AT, limit=10, lease_sec=30)

        await store.release_timer(timer.id, AT + timedelta(seconds=5))

        assert await store.claim_due_timers(AT + timedelta(seconds=4), limit=10, lease_sec=30) == []
        assert len(await store.claim_due_timers(AT + timedelta(seconds=5), limit=10, lease_sec=30)) == 1

    @pytest.mark.asyncio
    async def test_presence(self, store):
        await store.init()
        await store.update_presence("user-1", {"gf_a": AT, "gf_b": AT}, [])
        await store.update_presence("user-1", {"gf_a": AT + timedelta(minutes=1)}, ["gf_b"])

        presence = await store.get_presence("user-1")
        assert presence == {"gf_a": AT}

    @pytest.mark.asyncio
    async def test_snapshot_and_restore(self, store, second_db_path):
        """스냅샷과 이벤트로 빈 저장소 복원"""
        await store.init()
        emergency = await store.insert(_emergency(), at=AT)
        resolved = emergency.model_copy(update={"status": "resolved"})
        await store.compare_and_set(resolved, 1, from_state="active", at=AT)

        target = SQLiteSafetyStore(second_db_path)
        await target.init()
        await target.restore(await store.snapshot(), await store.list_events())

        assert await target.snapshot() == await store.snapshot()
        assert [e.event_id for e in await target.list_events()] == \
            [e.event_id for e in await store.list_events()]


class TestSQLiteIdemStore:
    """SQLite Idempotency 저장소 테스트"""

    @pytest.fixture
    def idem_store(self, temp_db_path):
        """테스트용 멱등 저장소"""
        return SQLiteIdemStore(temp_db_path, ttl_sec=60)

    @pytest.mark.asyncio
    async def test_add_if_absent(self, idem_store):
        await idem_store.init()

        assert await idem_store.add_if_absent("key", now=1000) is True
        assert await idem_store.add_if_absent("key", now=1001) is False
        assert await idem_store.get_count() == 1

    @pytest.mark.asyncio
    async def test_expired_key_is_new(self, idem_store):
        await idem_store.init()
        await idem_store.add_if_absent("key", now=1000)

        assert await idem_store.add_if_absent("key", now=1061) is True

    @pytest.mark.asyncio
    async def test_gc(self, idem_store):
        await idem_store.init()
        await idem_store.add_if_absent("old", now=1000)
        await idem_store.add_if_absent("new", now=2000)

        assert await idem_store.gc(now=1500) == 1
        assert await idem_store.get_count() == 1

    def test_update_key(self):
        """같은 업데이트는 같은 키, 내용이 다르면 다른 키"""
        update = LocationUpdate(user_id="user-1", timestamp=AT, location=GeoPoint(lat=1, lon=2))
        same = LocationUpdate(user_id="user-1", timestamp=AT, location=GeoPoint(lat=1, lon=2))
        moved = LocationUpdate(user_id="user-1", timestamp=AT, location=GeoPoint(lat=1, lon=3))

        assert update_key(update) == update_key(same)
        assert update_key(update) != update_key(moved)
        assert len(update_key(update)) == 64
