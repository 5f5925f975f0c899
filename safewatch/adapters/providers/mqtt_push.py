"""
MQTT push provider for SafeWatch.

This module publishes push notifications to per-device topics on the local
MQTT broker. Device gateways subscribed to the topic deliver to handsets and
report back through the delivery-status webhook.
"""

import json
import ssl
from contextlib import AsyncExitStack
from typing import Optional

from aiomqtt import Client, MqttError, Will

from safewatch.core.errors import ChannelProviderError
from safewatch.observability.logging_setup import get_logger

log = get_logger("safewatch.push")


class MqttPushProvider:
    """로컬 MQTT 푸시 발송 어댑터"""

    channel = "push"

    def __init__(self,
                 *,
                 broker_host: str,
                 broker_port: int,
                 topic_prefix: str,
                 username: str | None = None,
                 password: str | None = None,
                 tls: bool = False,
                 client_id: str | None = None,
                 keepalive: int = 30,
                 lwt_topic: str = "safewatch/state",
                 lwt_payload_online: str = "online",
                 qos: int = 1,
                 retain: bool = False):
        """
        초기화합니다.

        Args:
            broker_host: MQTT 브로커 호스트
            broker_port: MQTT 브로커 포트
            topic_prefix: 토픽 접두사 (토픽은 {prefix}/{device_token})
            username: 사용자명
            password: 비밀번호
            tls: TLS 사용 여부
            client_id: 클라이언트 ID
            keepalive: keepalive 시간
            lwt_topic: Last Will and Testament 토픽
            lwt_payload_online: 온라인 상태 페이로드
            qos: 발송 QoS
            retain: retain 플래그
        """
        self.broker_host = broker_host
        self.broker_port = broker_port
        self.topic_prefix = topic_prefix.rstrip("/")
        self.username = username
        self.password = password
        self.tls = tls
        self.client_id = client_id
        self.keepalive = keepalive
        self.lwt_topic = lwt_topic
        self.lwt_payload_online = lwt_payload_online
        self.qos = qos
        self.retain = retain

        self.client: Optional[Client] = None
        self._stack: Optional[AsyncExitStack] = None

    async def _connect(self) -> Client:
        """MQTT 브로커에 연결합니다."""
        if self.client is not None:
            return self.client

        stack = AsyncExitStack()
        client = Client(
            hostname=self.broker_host,
            port=self.broker_port,
            username=self.username,
            password=self.password,
            identifier=self.client_id,
            keepalive=self.keepalive,
            tls_context=ssl.create_default_context() if self.tls else None,
            will=Will(topic=self.lwt_topic, payload=b"offline", qos=1, retain=True),
        )
        await stack.enter_async_context(client)
        await client.publish(self.lwt_topic, self.lwt_payload_online, qos=1, retain=True)

        self._stack = stack
        self.client = client
        log.info(f"푸시 MQTT 브로커 연결됨: {self.broker_host}:{self.broker_port}")
        return client

    async def send(self, recipient: str, content: dict) -> str:
        """
        디바이스 토픽으로 푸시를 발송합니다.

        Args:
            recipient: 디바이스 토큰
            content: 발송 내용

        Returns:
            제공자 참조 (attempt_id)

        Raises:
            ChannelProviderError: 브로커 오류
        """
        topic = f"{self.topic_prefix}/{recipient}"
        payload = json.dumps(content, ensure_ascii=False).encode("utf-8")
        try:
            client = await self._connect()
            await client.publish(topic, payload, qos=self.qos, retain=self.retain)
        except MqttError as e:
            await self.stop()
            raise ChannelProviderError(self.channel, str(e)) from e

        log.debug("푸시 발송", topic=topic, attempt_id=content.get("attempt_id"))
        return content.get("attempt_id", topic)

    async def stop(self) -> None:
        """연결을 종료합니다."""
        stack, self._stack, self.client = self._stack, None, None
        if stack is not None:
            try:
                await stack.aclose()
            except MqttError as e:
                log.warning("푸시 MQTT 연결 종료 오류", error=str(e))
            log.info("푸시 MQTT 연결 종료됨")
