"""
SQLite-based safety store for SafeWatch.

This module implements the persistence port on SQLite: versioned entities
with compare-and-swap writes, a partial unique index that allows one open
emergency per user, an append-only event log committed in the same
transaction as every state change, leased durable timers and presence.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import aiosqlite

from safewatch.core.errors import AlreadyActiveError, ConcurrencyConflictError, NotFoundError
from safewatch.core.models import ENTITY_MODELS, Emergency, Entity, EventRecord, Timer
from safewatch.observability.logging_setup import get_logger

log = get_logger("safewatch.store")

# SQLite 스키마
SCHEMA = """
CREATE TABLE IF NOT EXISTS entities (
    entity_type TEXT NOT NULL,
    id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    parent_id TEXT,
    status TEXT NOT NULL,
    version INTEGER NOT NULL,
    data TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (entity_type, id)
);
CREATE INDEX IF NOT EXISTS idx_entities_user ON entities(entity_type, user_id, status);
CREATE INDEX IF NOT EXISTS idx_entities_parent ON entities(entity_type, parent_id);
CREATE UNIQUE INDEX IF NOT EXISTS ux_open_emergency ON entities(user_id)
    WHERE entity_type = 'emergency' AND status IN ('active', 'acknowledged');

CREATE TABLE IF NOT EXISTS event_log (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id TEXT NOT NULL UNIQUE,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    causation_id TEXT,
    snapshot TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_event_entity ON event_log(entity_id, seq);
CREATE TRIGGER IF NOT EXISTS event_log_no_update BEFORE UPDATE ON event_log
BEGIN
    SELECT RAISE(ABORT, 'event_log is append-only');
END;
CREATE TRIGGER IF NOT EXISTS event_log_no_delete BEFORE DELETE ON event_log
BEGIN
    SELECT RAISE(ABORT, 'event_log is append-only');
END;

CREATE TABLE IF NOT EXISTS timers (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    dedupe_key TEXT NOT NULL UNIQUE,
    fire_at TEXT NOT NULL,
    payload TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    lease_until TEXT,
    attempts INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_timers_due ON timers(status, fire_at);

CREATE TABLE IF NOT EXISTS presence (
    user_id TEXT NOT NULL,
    geofence_id TEXT NOT NULL,
    entered_at TEXT NOT NULL,
    PRIMARY KEY (user_id, geofence_id)
);
"""

_TIMER_COLUMNS = "id, kind, entity_id, dedupe_key, fire_at, payload, status, lease_until, attempts"


def _ts(value: datetime) -> str:
    """사전순 비교가 가능한 고정 형식 UTC 문자열"""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _parse_ts(value: str) -> datetime:
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


def _dump(entity: Entity) -> dict:
    return entity.model_dump(mode="json")


def _load(entity_type: str, data: str) -> Entity:
    return ENTITY_MODELS[entity_type].model_validate(json.loads(data))


def _row_to_timer(row) -> Timer:
    return Timer(
        id=row[0],
        kind=row[1],
        entity_id=row[2],
        dedupe_key=row[3],
        fire_at=_parse_ts(row[4]),
        payload=json.loads(row[5]),
        status=row[6],
        lease_until=_parse_ts(row[7]) if row[7] else None,
        attempts=row[8],
    )


class SQLiteSafetyStore:
    """SQLite 기반 안전 엔진 저장소"""

    def __init__(self, path: str, busy_timeout_sec: float = 30.0):
        """
        초기화합니다.

        Args:
            path: SQLite 데이터베이스 파일 경로
            busy_timeout_sec: 잠금 대기 시간 (초)
        """
        self.path = path
        self.busy_timeout = busy_timeout_sec
        log.info(f"SQLiteSafetyStore 초기화: {path}")

    def _connect(self):
        # 트랜잭션은 BEGIN IMMEDIATE / COMMIT으로 직접 관리
        return aiosqlite.connect(self.path, timeout=self.busy_timeout, isolation_level=None)

    async def init(self) -> None:
        """데이터베이스를 초기화합니다."""
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.executescript(SCHEMA)
        log.info(f"SQLiteSafetyStore 스키마 초기화 완료: {self.path}")

    async def _append_event(self, db, entity: Entity, *, from_state: Optional[str],
                            at: datetime, causation_id: Optional[str]) -> EventRecord:
        event = EventRecord(
            entity_type=entity.entity_type,
            entity_id=entity.id,
            from_state=from_state,
            to_state=entity.status,
            timestamp=at,
            causation_id=causation_id,
            snapshot=_dump(entity),
        )
        cursor = await db.execute(
            "INSERT INTO event_log (event_id, entity_type, entity_id, from_state, to_state, "
            "timestamp, causation_id, snapshot) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (event.event_id, event.entity_type, event.entity_id, event.from_state,
             event.to_state, _ts(at), causation_id, json.dumps(event.snapshot, sort_keys=True))
        )
        event.seq = cursor.lastrowid
        return event

    async def insert(self, entity: Entity, *, at: datetime,
                     causation_id: Optional[str] = None) -> Entity:
        """
        엔티티를 생성하고 생성 이벤트를 같은 트랜잭션에 기록합니다.

        Args:
            entity: 생성할 엔티티 (version 0)
            at: 이벤트 시각
            causation_id: 원인 엔티티/이벤트 ID

        Returns:
            저장된 엔티티

        Raises:
            AlreadyActiveError: 사용자에게 이미 열린 비상 상황이 있는 경우
            ConcurrencyConflictError: 같은 ID의 엔티티가 이미 있는 경우
        """
        stored = entity.model_copy(update={"version": 1})
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                await db.execute(
                    "INSERT INTO entities (entity_type, id, user_id, parent_id, status, version, data, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (stored.entity_type, stored.id, stored.user_id, stored.parent_id,
                     stored.status, stored.version, json.dumps(_dump(stored), sort_keys=True), _ts(at))
                )
                await self._append_event(db, stored, from_state=None, at=at, causation_id=causation_id)
                await db.execute("COMMIT")
            except aiosqlite.IntegrityError:
                await db.execute("ROLLBACK")
                if stored.entity_type == "emergency":
                    existing = await self._open_emergency(db, stored.user_id)
                    if existing is not None:
                        raise AlreadyActiveError(existing)
                # 같은 ID를 다른 작성자가 먼저 생성함
                raise ConcurrencyConflictError(stored.entity_type, stored.id, 0)
            except BaseException:
                await db.execute("ROLLBACK")
                raise
        return stored

    async def compare_and_set(self, entity: Entity, expected_version: int, *,
                              from_state: str, at: datetime,
                              causation_id: Optional[str] = None) -> Entity:
        """
        버전이 일치할 때만 엔티티를 갱신하고 전이 이벤트를 기록합니다.

        Args:
            entity: 갱신된 엔티티
            expected_version: 읽을 당시의 버전
            from_state: 전이 전 상태
            at: 이벤트 시각
            causation_id: 원인 엔티티/이벤트 ID

        Returns:
            새 버전이 반영된 엔티티

        Raises:
            NotFoundError: 엔티티가 없는 경우
            ConcurrencyConflictError: 다른 작성자가 먼저 갱신한 경우
        """
        stored = entity.model_copy(update={"version": expected_version + 1})
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute(
                    "UPDATE entities SET status = ?, parent_id = ?, version = ?, data = ?, updated_at = ? "
                    "WHERE entity_type = ? AND id = ? AND version = ?",
                    (stored.status, stored.parent_id, stored.version,
                     json.dumps(_dump(stored), sort_keys=True), _ts(at),
                     stored.entity_type, stored.id, expected_version)
                )
                if cursor.rowcount == 0:
                    await db.execute("ROLLBACK")
                    exists = await db.execute(
                        "SELECT 1 FROM entities WHERE entity_type = ? AND id = ?",
                        (stored.entity_type, stored.id)
                    )
                    if await exists.fetchone() is None:
                        raise NotFoundError(stored.entity_type, stored.id)
                    raise ConcurrencyConflictError(stored.entity_type, stored.id, expected_version)
                await self._append_event(db, stored, from_state=from_state, at=at,
                                         causation_id=causation_id)
                await db.execute("COMMIT")
            except (NotFoundError, ConcurrencyConflictError):
                raise
            except BaseException:
                await db.execute("ROLLBACK")
                raise
        return stored

    async def get(self, entity_type: str, entity_id: str) -> Optional[Entity]:
        """엔티티를 조회합니다."""
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT data FROM entities WHERE entity_type = ? AND id = ?",
                (entity_type, entity_id)
            )
            row = await cursor.fetchone()
            return _load(entity_type, row[0]) if row else None

    async def list_entities(self, entity_type: str, *, user_id: Optional[str] = None,
                            parent_id: Optional[str] = None,
                            status: Optional[str] = None) -> List[Entity]:
        """
        조건에 맞는 엔티티 목록을 생성 순서대로 조회합니다.

        Args:
            entity_type: 엔티티 종류
            user_id: 사용자 ID 필터
            parent_id: 부모 ID 필터
            status: 상태 필터

        Returns:
            엔티티 목록
        """
        query = "SELECT data FROM entities WHERE entity_type = ?"
        params: list = [entity_type]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        if parent_id is not None:
            query += " AND parent_id = ?"
            params.append(parent_id)
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY rowid ASC"

        async with self._connect() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            return [_load(entity_type, row[0]) for row in rows]

    async def _open_emergency(self, db, user_id: str) -> Optional[Emergency]:
        cursor = await db.execute(
            "SELECT data FROM entities WHERE entity_type = 'emergency' AND user_id = ? "
            "AND status IN ('active', 'acknowledged')",
            (user_id,)
        )
        row = await cursor.fetchone()
        return _load("emergency", row[0]) if row else None

    async def get_open_emergency(self, user_id: str) -> Optional[Emergency]:
        """사용자의 열린(active/acknowledged) 비상 상황을 조회합니다."""
        async with self._connect() as db:
            return await self._open_emergency(db, user_id)

    async def count_entities(self, entity_type: str, statuses: List[str]) -> int:
        """상태별 엔티티 수를 반환합니다."""
        placeholders = ", ".join("?" for _ in statuses)
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT COUNT(*) FROM entities WHERE entity_type = ? AND status IN ({placeholders})",
                [entity_type, *statuses]
            )
            result = await cursor.fetchone()
            return result[0] if result else 0

    async def list_events(self, *, entity_id: Optional[str] = None,
                          after_seq: int = 0) -> List[EventRecord]:
        """
        이벤트 로그를 순서대로 조회합니다.

        Args:
            entity_id: 특정 엔티티만 조회
            after_seq: 이 순번 이후만 조회

        Returns:
            이벤트 목록
        """
        query = ("SELECT seq, event_id, entity_type, entity_id, from_state, to_state, timestamp, "
                 "causation_id, snapshot FROM event_log WHERE seq > ?")
        params: list = [after_seq]
        if entity_id is not None:
            query += " AND entity_id = ?"
            params.append(entity_id)
        query += " ORDER BY seq ASC"

        async with self._connect() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()

        return [
            EventRecord(
                seq=row[0],
                event_id=row[1],
                entity_type=row[2],
                entity_id=row[3],
                from_state=row[4],
                to_state=row[5],
                timestamp=_parse_ts(row[6]),
                causation_id=row[7],
                snapshot=json.loads(row[8]),
            )
            for row in rows
        ]

    async def snapshot(self) -> Dict[str, dict]:
        """현재 상태 스냅샷을 'type:id' 키로 반환합니다."""
        async with self._connect() as db:
            cursor = await db.execute("SELECT entity_type, id, data FROM entities")
            rows = await cursor.fetchall()
        return {f"{row[0]}:{row[1]}": json.loads(row[2]) for row in rows}

    async def restore(self, snapshots: Dict[str, dict], events: List[EventRecord]) -> None:
        """
        빈 저장소를 스냅샷과 이벤트로 복원합니다.

        Args:
            snapshots: 'type:id' 키의 엔티티 스냅샷
            events: 원본 이벤트 로그 (순서대로)
        """
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                for key, data in snapshots.items():
                    entity_type = key.split(":", 1)[0]
                    entity = ENTITY_MODELS[entity_type].model_validate(data)
                    await db.execute(
                        "INSERT INTO entities (entity_type, id, user_id, parent_id, status, version, data, updated_at) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                        (entity_type, entity.id, entity.user_id, entity.parent_id, entity.status,
                         entity.version, json.dumps(data, sort_keys=True),
                         _ts(datetime.now(timezone.utc)))
                    )
                for event in events:
                    await db.execute(
                        "INSERT INTO event_log (event_id, entity_type, entity_id, from_state, to_state, "
                        "timestamp, causation_id, snapshot) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                        (event.event_id, event.entity_type, event.entity_id, event.from_state,
                         event.to_state, _ts(event.timestamp), event.causation_id,
                         json.dumps(event.snapshot, sort_keys=True))
                    )
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise
        log.info("저장소 복원 완료", entities=len(snapshots), events=len(events))

    async def schedule_timer(self, timer: Timer) -> bool:
        """
        타이머를 등록합니다.

        Args:
            timer: 등록할 타이머

        Returns:
            새로 등록되었으면 True, 같은 dedupe_key가 이미 있으면 False
        """
        async with self._connect() as db:
            cursor = await db.execute(
                f"INSERT OR IGNORE INTO timers ({_TIMER_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (timer.id, timer.kind, timer.entity_id, timer.dedupe_key, _ts(timer.fire_at),
                 json.dumps(timer.payload, sort_keys=True), "pending", None, 0)
            )
            return cursor.rowcount > 0

    async def claim_due_timers(self, now: datetime, limit: int, lease_sec: int) -> List[Timer]:
        """
        만기 타이머를 리스와 함께 점유합니다.

        리스가 만료된 점유 타이머(중단된 워커)도 다시 점유합니다.

        Args:
            now: 현재 시각
            limit: 최대 점유 수
            lease_sec: 리스 시간 (초)

        Returns:
            점유된 타이머 목록 (fire_at 순)
        """
        now_s = _ts(now)
        lease_until = now + timedelta(seconds=lease_sec)
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute(
                    f"SELECT {_TIMER_COLUMNS} FROM timers "
                    "WHERE (status = 'pending' AND fire_at <= ?) "
                    "OR (status = 'claimed' AND lease_until <= ?) "
                    "ORDER BY fire_at ASC LIMIT ?",
                    (now_s, now_s, limit)
                )
                rows = await cursor.fetchall()
                timers = [_row_to_timer(row) for row in rows]
                for timer in timers:
                    await db.execute(
                        "UPDATE timers SET status = 'claimed', lease_until = ?, attempts = attempts + 1 "
                        "WHERE id = ?",
                        (_ts(lease_until), timer.id)
                    )
                    timer.status = "claimed"
                    timer.lease_until = lease_until
                    timer.attempts += 1
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise
        return timers

    async def complete_timer(self, timer_id: str) -> None:
        """타이머를 완료 처리합니다."""
        async with self._connect() as db:
            await db.execute(
                "UPDATE timers SET status = 'done', lease_until = NULL WHERE id = ?",
                (timer_id,)
            )

    async def release_timer(self, timer_id: str, retry_at: datetime) -> None:
        """처리 실패한 타이머를 재시도 시각으로 되돌립니다."""
        async with self._connect() as db:
            await db.execute(
                "UPDATE timers SET status = 'pending', fire_at = ?, lease_until = NULL WHERE id = ?",
                (_ts(retry_at), timer_id)
            )

    async def list_timers(self, *, entity_id: Optional[str] = None,
                          status: Optional[str] = None) -> List[Timer]:
        """타이머 목록을 조회합니다."""
        query = f"SELECT {_TIMER_COLUMNS} FROM timers WHERE 1 = 1"
        params: list = []
        if entity_id is not None:
            query += " AND entity_id = ?"
            params.append(entity_id)
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY fire_at ASC"
        async with self._connect() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        return [_row_to_timer(row) for row in rows]

    async def count_pending_timers(self) -> int:
        """대기 중인 타이머 수를 반환합니다."""
        async with self._connect() as db:
            cursor = await db.execute("SELECT COUNT(*) FROM timers WHERE status != 'done'")
            result = await cursor.fetchone()
            return result[0] if result else 0

    async def get_presence(self, user_id: str) -> Dict[str, datetime]:
        """사용자가 현재 내부에 있는 지오펜스와 진입 시각을 조회합니다."""
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT geofence_id, entered_at FROM presence WHERE user_id = ?",
                (user_id,)
            )
            rows = await cursor.fetchall()
        return {row[0]: _parse_ts(row[1]) for row in rows}

    async def update_presence(self, user_id: str, entered: Dict[str, datetime],
                              exited: List[str]) -> None:
        """
        지오펜스 진입/이탈을 반영합니다.

        Args:
            user_id: 사용자 ID
            entered: 진입한 지오펜스 ID → 진입 시각
            exited: 이탈한 지오펜스 ID 목록
        """
        if not entered and not exited:
            return
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                for geofence_id, entered_at in entered.items():
                    await db.execute(
                        "INSERT OR IGNORE INTO presence (user_id, geofence_id, entered_at) VALUES (?, ?, ?)",
                        (user_id, geofence_id, _ts(entered_at))
                    )
                for geofence_id in exited:
                    await db.execute(
                        "DELETE FROM presence WHERE user_id = ? AND geofence_id = ?",
                        (user_id, geofence_id)
                    )
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise
