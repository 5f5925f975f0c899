"""
엔진 실행 루프 테스트

수집 포트 -> 큐 -> 검증 -> 평가 파이프라인과 시작/중지를 테스트합니다.
"""

import asyncio

import pytest

USER = "user-1"


class ListIngest:
    """주어진 원시 업데이트를 순서대로 내보내는 수집 포트"""

    def __init__(self, items):
        self.items = items

    async def recv(self):
        for item in self.items:
            yield item


async def _drain(engine):
    consumer = asyncio.create_task(engine._consumer())
    await asyncio.wait_for(engine.q.join(), timeout=5)
    consumer.cancel()
    await asyncio.gather(consumer, return_exceptions=True)


@pytest.mark.asyncio
async def test_pipeline_processes_raw_updates(make_engine, clock):
    engine = await make_engine()
    engine.ingest_port = ListIngest([
        {"user_id": USER},  # timestamp 누락
        {"user_id": USER, "timestamp": clock().isoformat(), "duress": True},
    ])

    await engine._producer()
    assert engine.q.qsize() == 2

    await _drain(engine)

    emergency = await engine.store.get_open_emergency(USER)
    assert emergency.reason == "duress"
    assert engine.q.qsize() == 0


@pytest.mark.asyncio
async def test_full_queue_drops_when_configured(make_engine, sample_settings, clock):
    sample_settings.reliability.queue_maxsize = 1
    sample_settings.reliability.drop_on_full = True
    engine = await make_engine(settings=sample_settings)
    raw = {"user_id": USER, "timestamp": clock().isoformat()}
    engine.ingest_port = ListIngest([raw, raw, raw])

    await engine._producer()

    assert engine.q.qsize() == 1


class IdleIngest:
    """메시지를 보내지 않고 대기만 하는 수집 포트"""

    async def recv(self):
        await asyncio.Event().wait()
        yield {}


async def _wait_ready(engine):
    for _ in range(100):
        if engine.ready:
            break
        await asyncio.sleep(0.01)
    assert engine.ready is True


@pytest.mark.asyncio
async def test_start_recovers_then_stops(make_engine):
    engine = await make_engine()
    task = asyncio.create_task(engine.start())
    await _wait_ready(engine)

    await engine.stop()

    # 취소 없이 스스로 종료
    await asyncio.wait_for(task, timeout=5)
    assert engine.ready is False


@pytest.mark.asyncio
async def test_stop_ends_idle_producer(make_engine):
    engine = await make_engine()
    engine.ingest_port = IdleIngest()
    task = asyncio.create_task(engine.start())
    await _wait_ready(engine)

    await engine.stop()

    await asyncio.wait_for(task, timeout=5)
    assert task.exception() is None
