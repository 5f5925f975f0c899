"""
HTTP contact directory client for SafeWatch.

This module reads a user's emergency contacts from the account service.
The directory is a read-only collaborator; transient errors are retried
with backoff and then surface to the caller.
"""

from typing import List, Optional

import aiohttp

from safewatch.common.retry import retry_with_backoff
from safewatch.core.models import Contact
from safewatch.observability.logging_setup import get_logger

log = get_logger("safewatch.contacts")


class HttpContactDirectory:
    """HTTP 연락처 디렉터리 클라이언트"""

    def __init__(self, base_url: str, token: str = "", timeout: int = 5, max_retries: int = 2):
        """
        초기화합니다.

        Args:
            base_url: 디렉터리 API 기본 URL
            token: Bearer 토큰
            timeout: 요청 타임아웃 (초)
            max_retries: 최대 재시도 횟수
        """
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = timeout
        self.max_retries = max_retries
        self.session: Optional[aiohttp.ClientSession] = None

        log.info(f"연락처 디렉터리 클라이언트 초기화됨: {self.base_url}")

    async def __aenter__(self):
        """비동기 컨텍스트 매니저 진입"""
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """비동기 컨텍스트 매니저 종료"""
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            headers = {"Accept": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self.session = aiohttp.ClientSession(
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self.session

    async def _get_json(self, endpoint: str):
        session = self._ensure_session()
        url = f"{self.base_url}{endpoint}"

        async def _request():
            async with session.get(url) as response:
                response.raise_for_status()
                return await response.json()

        return await retry_with_backoff(_request, max_retries=self.max_retries, base_delay=0.5, max_delay=5.0)

    async def get_contacts_for_user(self, user_id: str) -> List[Contact]:
        """
        사용자의 비상 연락처를 조회합니다.

        응답은 연락처 목록 또는 {"contacts": [...]} 형식을 허용합니다.

        Args:
            user_id: 사용자 ID

        Returns:
            연락처 목록
        """
        data = await self._get_json(f"/users/{user_id}/contacts")
        entries = data.get("contacts", []) if isinstance(data, dict) else data
        contacts = [
            Contact(
                contact_id=str(entry.get("contactId") or entry.get("contact_id")),
                channel_addresses=entry.get("channelAddresses") or entry.get("channel_addresses") or {},
                priority_tier=int(entry.get("priorityTier") or entry.get("priority_tier") or 1),
                name=entry.get("name"),
            )
            for entry in entries or []
        ]
        log.debug("연락처 조회", user_id=user_id, count=len(contacts))
        return contacts

    async def close(self) -> None:
        """세션을 종료합니다."""
        if self.session is not None and not self.session.closed:
            await self.session.close()
