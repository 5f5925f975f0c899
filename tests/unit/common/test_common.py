"""
Common 모듈 단위 테스트

이 모듈은 지리 유틸리티와 재시도 로직의 기능을 테스트합니다.
"""

import pytest
from unittest.mock import AsyncMock

from safewatch.common.geo import (
    haversine_distance, normalize_antimeridian, point_in_polygon, point_segment_distance
)
from safewatch.common.retry import backoff_delay, retry_on_conflict, retry_with_backoff
from safewatch.core.errors import ConcurrencyConflictError, NotFoundError


class TestHaversineDistance:
    """Haversine 거리 계산 테스트 (미터)"""

    def test_haversine_distance_same_point(self):
        """같은 지점 간 거리 테스트"""
        assert haversine_distance(37.5665, 126.9780, 37.5665, 126.9780) == 0.0

    def test_haversine_distance_seoul_to_busan(self):
        """서울에서 부산까지 거리 테스트"""
        distance = haversine_distance(37.5665, 126.9780, 35.1796, 129.0756)

        # 실제 거리는 약 325km
        assert 320_000 <= distance <= 330_000

    def test_haversine_distance_meridian(self):
        """자오선상의 1도 거리 테스트"""
        distance = haversine_distance(0, 0, 1, 0)
        assert abs(distance - 111_195) < 1

    def test_haversine_distance_symmetric(self):
        """거리 대칭성 테스트"""
        a = haversine_distance(40.0, -73.0, 40.5, -73.4)
        b = haversine_distance(40.5, -73.4, 40.0, -73.0)
        assert a == pytest.approx(b)


class TestPointInPolygon:
    """폴리곤 포함 판정 테스트"""

    def test_point_inside(self, sample_polygon):
        """내부 점 테스트"""
        assert point_in_polygon((126.5, 37.5), sample_polygon) is True

    def test_point_outside(self, sample_polygon):
        """외부 점 테스트"""
        assert point_in_polygon((128.0, 37.5), sample_polygon) is False

    def test_point_on_edge_is_inside(self, sample_polygon):
        """경계선 위의 점은 내부로 판정"""
        assert point_in_polygon((126.5, 37.0), sample_polygon) is True

    def test_point_on_vertex_is_inside(self, sample_polygon):
        """꼭짓점 위의 점은 내부로 판정"""
        assert point_in_polygon((127.0, 38.0), sample_polygon) is True

    def test_closed_ring_accepted(self, sample_polygon):
        """닫힌 링 (첫 점 == 마지막 점) 테스트"""
        ring = sample_polygon + [sample_polygon[0]]
        assert point_in_polygon((126.5, 37.5), ring) is True

    def test_degenerate_polygon(self):
        """꼭짓점이 3개 미만인 폴리곤은 항상 False"""
        assert point_in_polygon((0.0, 0.0), [(0.0, 0.0), (1.0, 1.0)]) is False

    def test_antimeridian_polygon(self):
        """날짜변경선을 가로지르는 폴리곤 테스트"""
        polygon = [(179.0, -1.0), (-179.0, -1.0), (-179.0, 1.0), (179.0, 1.0)]

        assert point_in_polygon((179.5, 0.0), polygon) is True
        assert point_in_polygon((-179.5, 0.0), polygon) is True
        assert point_in_polygon((0.0, 0.0), polygon) is False

    def test_normalize_antimeridian_leaves_small_polygons(self, sample_polygon):
        """경도 폭 180도 이하 폴리곤은 그대로 유지"""
        point, polygon = normalize_antimeridian((126.5, 37.5), sample_polygon)
        assert point == (126.5, 37.5)
        assert polygon == sample_polygon


class TestSegmentDistance:
    """점-선분 거리 테스트"""

    def test_perpendicular_distance(self):
        """선분 중앙 수직 거리"""
        distance = point_segment_distance((0.001, 0.0), (0.0, -1.0), (0.0, 1.0))
        assert distance == pytest.approx(111.2, abs=0.5)

    def test_clamped_to_endpoint(self):
        """선분 밖 투영은 끝점까지의 거리"""
        distance = point_segment_distance((0.0, 2.0), (0.0, -1.0), (0.0, 1.0))
        assert distance == pytest.approx(haversine_distance(0.0, 2.0, 0.0, 1.0), rel=0.01)

    def test_zero_length_segment(self):
        """길이 0 선분은 점 거리"""
        distance = point_segment_distance((1.0, 0.0), (0.0, 0.0), (0.0, 0.0))
        assert distance == pytest.approx(haversine_distance(1.0, 0.0, 0.0, 0.0))


class TestBackoff:
    """백오프 계산 테스트"""

    def test_backoff_grows_exponentially(self):
        assert backoff_delay(1, 2.0, 60.0) == 2.0
        assert backoff_delay(2, 2.0, 60.0) == 4.0
        assert backoff_delay(3, 2.0, 60.0) == 8.0

    def test_backoff_capped(self):
        assert backoff_delay(10, 2.0, 60.0) == 60.0


class TestRetryWithBackoff:
    """재시도 로직 테스트"""

    @pytest.mark.asyncio
    async def test_retry_eventually_succeeds(self):
        """두 번 실패 후 성공"""
        func = AsyncMock(side_effect=[RuntimeError("1"), RuntimeError("2"), "ok"])

        result = await retry_with_backoff(func, max_retries=3, base_delay=0.001, jitter=False)

        assert result == "ok"
        assert func.call_count == 3

    @pytest.mark.asyncio
    async def test_retry_raises_last_exception(self):
        """재시도 한도 초과 시 마지막 예외 전파"""
        func = AsyncMock(side_effect=RuntimeError("down"))

        with pytest.raises(RuntimeError, match="down"):
            await retry_with_backoff(func, max_retries=2, base_delay=0.001, jitter=False)

        assert func.call_count == 3


class TestRetryOnConflict:
    """동시성 충돌 재시도 테스트"""

    @pytest.mark.asyncio
    async def test_conflict_then_success(self):
        func = AsyncMock(side_effect=[
            ConcurrencyConflictError("emergency", "em_1", 1),
            "done",
        ])

        assert await retry_on_conflict(func, max_retries=3, operation="test") == "done"
        assert func.call_count == 2

    @pytest.mark.asyncio
    async def test_conflict_limit_exceeded(self):
        func = AsyncMock(side_effect=ConcurrencyConflictError("emergency", "em_1", 1))

        with pytest.raises(ConcurrencyConflictError):
            await retry_on_conflict(func, max_retries=2, operation="test")

        assert func.call_count == 3

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self):
        func = AsyncMock(side_effect=NotFoundError("emergency", "em_1"))

        with pytest.raises(NotFoundError):
            await retry_on_conflict(func, max_retries=5, operation="test")

        assert func.call_count == 1
