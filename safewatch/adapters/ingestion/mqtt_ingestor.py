"""
MQTT update ingestor for SafeWatch.

Subscribes to the device gateway broker and yields JSON location/check-in
payloads. Reconnects with a fixed delay on broker errors.
"""

import asyncio
import json
import ssl
from typing import AsyncIterator, Dict

from aiomqtt import Client, MqttError, Will

from safewatch.observability.logging_setup import get_logger

log = get_logger("safewatch.ingest")


class MqttUpdateIngestor:
    """MQTT 위치/체크인 수집 어댑터"""

    def __init__(
        self,
        host: str,
        port: int,
        topic: str,
        *,
        username: str | None = None,
        password: str | None = None,
        tls: bool = False,
        client_id: str | None = None,
        keepalive: int = 30,
        clean_session: bool = False,
        lwt_topic: str = "safewatch/state",
        lwt_payload: str = "offline",
        lwt_qos: int = 1,
        lwt_retain: bool = True,
        reconnect_delay: float = 5.0,
    ):
        self.host = host
        self.port = port
        self.topic = topic
        self.username = username
        self.password = password
        self.tls = tls
        self.client_id = client_id
        self.keepalive = keepalive
        self.clean_session = clean_session
        self.lwt_topic = lwt_topic
        self.lwt_payload = lwt_payload
        self.lwt_qos = lwt_qos
        self.lwt_retain = lwt_retain
        self.reconnect_delay = reconnect_delay

        self._running = False

    def _client(self) -> Client:
        will = Will(
            topic=self.lwt_topic,
            payload=self.lwt_payload.encode("utf-8"),
            qos=self.lwt_qos,
            retain=self.lwt_retain,
        )
        return Client(
            hostname=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
            identifier=self.client_id,
            keepalive=self.keepalive,
            clean_session=self.clean_session,
            tls_context=ssl.create_default_context() if self.tls else None,
            will=will,
        )

    @staticmethod
    def decode(payload: bytes) -> Dict | None:
        """메시지 페이로드를 JSON 객체로 디코딩합니다 (실패 시 None)."""
        try:
            data = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            log.error(f"페이로드 디코딩 오류: {e}")
            return None
        if not isinstance(data, dict):
            log.error("페이로드가 JSON 객체가 아님", type=type(data).__name__)
            return None
        return data

    async def recv(self) -> AsyncIterator[Dict]:
        self._running = True
        while self._running:
            try:
                async with self._client() as client:
                    await client.subscribe(self.topic)
                    log.info(f"MQTT 브로커 연결 및 구독: {self.host}:{self.port} {self.topic}")
                    async for message in client.messages:
                        if not self._running:
                            break
                        data = self.decode(message.payload)
                        if data is not None:
                            yield data
            except MqttError as e:
                log.error(f"MQTT 오류: {e}")
                if self._running:
                    await asyncio.sleep(self.reconnect_delay)

    async def stop(self) -> None:
        self._running = False
        log.info("MQTT 수집 중지")
