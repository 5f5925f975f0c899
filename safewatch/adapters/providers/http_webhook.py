"""
HTTP webhook channel provider for SafeWatch.

SMS, email and call gateways are reached through a JSON webhook. The
gateway answers with its own message id and later reports delivery to the
engine's delivery-status endpoint.
"""

import asyncio
import json
from typing import Optional

import aiohttp

from safewatch.core.errors import ChannelProviderError
from safewatch.observability.logging_setup import get_logger

log = get_logger("safewatch.webhook")


class HttpWebhookProvider:
    """HTTP 웹훅 채널 제공자"""

    def __init__(self, channel: str, url: str, token: str = "", timeout: int = 10):
        """
        초기화합니다.

        Args:
            channel: sms / email / call
            url: 게이트웨이 웹훅 URL
            token: Bearer 토큰
            timeout: 요청 타임아웃 (초)
        """
        self.channel = channel
        self.url = url
        self.token = token
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None

        log.info(f"{channel} 웹훅 제공자 초기화됨: {url}")

    def _session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            headers = {"Content-Type": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self.session = aiohttp.ClientSession(
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self.session

    async def send(self, recipient: str, content: dict) -> str:
        """
        게이트웨이로 메시지를 발송합니다.

        Args:
            recipient: 전화번호 또는 이메일 주소
            content: 발송 내용 (attempt_id 포함)

        Returns:
            게이트웨이 메시지 ID (없으면 attempt_id)

        Raises:
            ChannelProviderError: HTTP 오류 또는 타임아웃
        """
        body = {"channel": self.channel, "to": recipient, **content}
        try:
            async with self._session().post(self.url, json=body) as response:
                response.raise_for_status()
                text = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ChannelProviderError(self.channel, f"{type(e).__name__}: {e}") from e

        try:
            data = json.loads(text) if text else None
        except json.JSONDecodeError:
            log.warning("웹훅 응답 JSON 파싱 실패", channel=self.channel)
            data = None
        provider_ref = data.get("id") if isinstance(data, dict) else None
        provider_ref = provider_ref or content.get("attempt_id", "")
        log.debug("웹훅 발송", channel=self.channel, provider_ref=provider_ref)
        return str(provider_ref)

    async def close(self) -> None:
        """세션을 종료합니다."""
        if self.session is not None and not self.session.closed:
            await self.session.close()
