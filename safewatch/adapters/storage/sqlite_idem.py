"""
SQLite-based idempotency store for SafeWatch.

This module implements a SQLite-based idempotency store
for deduplication of location/check-in updates delivered more than once
by the ingestion transport.
"""

import hashlib
import json
import time
from typing import Optional

import aiosqlite

from safewatch.core.models import LocationUpdate
from safewatch.observability.logging_setup import get_logger

log = get_logger("safewatch.idem")

# SQLite 스키마
SCHEMA = """
CREATE TABLE IF NOT EXISTS idem (
    k TEXT PRIMARY KEY,
    exp INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_idem_exp ON idem(exp);
"""


def update_key(update: LocationUpdate) -> str:
    """
    업데이트의 멱등 키를 생성합니다.

    sha256(user_id:timestamp:payload) 형식이며 payload는 위치/체크인/duress를
    정렬된 JSON으로 직렬화한 값입니다.
    """
    payload = json.dumps(
        update.model_dump(mode="json", exclude={"user_id", "timestamp"}),
        sort_keys=True,
        separators=(",", ":"),
    )
    raw = f"{update.user_id}:{update.timestamp.isoformat()}:{payload}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class SQLiteIdemStore:
    """SQLite 기반 Idempotency 저장소"""

    def __init__(self, path: str, ttl_sec: int):
        """
        초기화합니다.

        Args:
            path: SQLite 데이터베이스 파일 경로
            ttl_sec: TTL 만료 시간 (초)
        """
        self.path = path
        self.ttl = ttl_sec
        log.info(f"SQLiteIdemStore 초기화: {path}, TTL: {ttl_sec}초")

    async def init(self) -> None:
        """데이터베이스를 초기화합니다."""
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(SCHEMA)
            await db.commit()

    async def add_if_absent(self, key: str, now: Optional[int] = None) -> bool:
        """
        키가 없으면 추가하고 True를 반환, 있으면 False를 반환합니다.

        만료된 키는 새 키로 취급합니다.

        Args:
            key: 추가할 키
            now: 현재 시간 (Unix timestamp), None이면 현재 시간 사용

        Returns:
            추가 성공 여부
        """
        if now is None:
            now = int(time.time())

        async with aiosqlite.connect(self.path) as db:
            await db.execute("DELETE FROM idem WHERE k = ? AND exp < ?", (key, now))
            try:
                await db.execute(
                    "INSERT INTO idem (k, exp) VALUES (?, ?)",
                    (key, now + self.ttl)
                )
            except aiosqlite.IntegrityError:
                await db.commit()
                return False
            await db.commit()
            return True

    async def gc(self, now: Optional[int] = None) -> int:
        """
        만료된 항목들을 정리합니다.

        Args:
            now: 현재 시간 (Unix timestamp), None이면 현재 시간 사용

        Returns:
            삭제된 항목 수
        """
        if now is None:
            now = int(time.time())

        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute("DELETE FROM idem WHERE exp < ?", (now,))
            await db.commit()
            deleted = cursor.rowcount
        if deleted > 0:
            log.info(f"만료된 멱등 키 {deleted}개 정리됨")
        return deleted

    async def get_count(self) -> int:
        """현재 저장된 항목 수를 반환합니다."""
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute("SELECT COUNT(*) FROM idem")
            result = await cursor.fetchone()
            return result[0] if result else 0
