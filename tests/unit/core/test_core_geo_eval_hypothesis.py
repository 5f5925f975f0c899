"""
hypothesis를 활용한 geo_eval 모듈 테스트

이 모듈은 hypothesis 패키지를 사용하여 원/다각형 포함 판정,
지오펜스 분류, 경로 이탈 거리의 속성 기반 테스트를 수행합니다.
"""

import math
from datetime import datetime, timezone

from hypothesis import given, settings, strategies as st

from safewatch.common.geo import EARTH_RADIUS_M
from safewatch.core.geo_eval import classify, contains, inside_set, route_deviation
from safewatch.core.models import CircleGeometry, Geofence, GeoPoint, PolygonGeometry

AT = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _north_of(lat: float, lon: float, meters: float) -> GeoPoint:
    """같은 경도에서 북쪽으로 meters만큼 떨어진 점"""
    return GeoPoint(lat=lat + math.degrees(meters / EARTH_RADIUS_M), lon=lon)


def _circle(lat: float, lon: float, radius_m: float, geofence_id: str = "gf_test") -> Geofence:
    return Geofence(
        id=geofence_id,
        user_id="user-1",
        geometry=CircleGeometry(center=GeoPoint(lat=lat, lon=lon), radius_m=radius_m),
    )


class TestCircleContainment:
    """원형 지오펜스 포함 판정 속성 테스트"""

    @given(
        lat=st.floats(min_value=-60, max_value=60),
        lon=st.floats(min_value=-170, max_value=170),
        radius=st.floats(min_value=10, max_value=5000),
        fraction=st.floats(min_value=0.0, max_value=0.99),
    )
    def test_points_within_radius_are_inside(self, lat, lon, radius, fraction):
        """반경 안쪽 점은 항상 내부"""
        geofence = _circle(lat, lon, radius)
        assert contains(geofence, _north_of(lat, lon, radius * fraction)) is True

    @given(
        lat=st.floats(min_value=-60, max_value=60),
        lon=st.floats(min_value=-170, max_value=170),
        radius=st.floats(min_value=10, max_value=5000),
        margin=st.floats(min_value=0.01, max_value=1000),
    )
    def test_points_beyond_radius_are_outside(self, lat, lon, radius, margin):
        """경계에서 0.01m 이상 바깥인 점은 항상 외부"""
        geofence = _circle(lat, lon, radius)
        assert contains(geofence, _north_of(lat, lon, radius + margin)) is False

    @given(
        lat=st.floats(min_value=-60, max_value=60),
        lon=st.floats(min_value=-170, max_value=170),
        radius=st.floats(min_value=10, max_value=5000),
    )
    def test_boundary_jitter_inside(self, lat, lon, radius):
        """경계 바로 안쪽(0.01m)은 내부"""
        geofence = _circle(lat, lon, radius)
        assert contains(geofence, _north_of(lat, lon, radius - 0.01)) is True

    @given(
        lat=st.floats(min_value=-60, max_value=60),
        lon=st.floats(min_value=-170, max_value=170),
        radius=st.floats(min_value=10, max_value=5000),
        fraction=st.one_of(st.floats(min_value=0.0, max_value=0.9), st.floats(min_value=1.1, max_value=3.0)),
        dlat=st.floats(min_value=-1e-9, max_value=1e-9),
        dlon=st.floats(min_value=-1e-9, max_value=1e-9),
    )
    def test_invariant_under_tiny_jitter(self, lat, lon, radius, fraction, dlat, dlon):
        """경계에서 떨어진 점은 1e-9도 미만 흔들림에 판정 불변"""
        geofence = _circle(lat, lon, radius)
        point = _north_of(lat, lon, radius * fraction)
        jittered = GeoPoint(lat=point.lat + dlat, lon=point.lon + dlon)
        assert contains(geofence, jittered) is contains(geofence, point)


class TestPolygonContainment:
    """다각형 지오펜스 포함 판정 속성 테스트"""

    @given(
        min_lat=st.floats(min_value=-60, max_value=59),
        min_lon=st.floats(min_value=-170, max_value=169),
        height=st.floats(min_value=0.001, max_value=1.0),
        width=st.floats(min_value=0.001, max_value=1.0),
        fx=st.floats(min_value=0.01, max_value=0.99),
        fy=st.floats(min_value=0.01, max_value=0.99),
    )
    def test_interior_points_inside(self, min_lat, min_lon, height, width, fx, fy):
        """사각형 내부 점은 내부"""
        vertices = [
            GeoPoint(lat=min_lat, lon=min_lon),
            GeoPoint(lat=min_lat, lon=min_lon + width),
            GeoPoint(lat=min_lat + height, lon=min_lon + width),
            GeoPoint(lat=min_lat + height, lon=min_lon),
        ]
        geofence = Geofence(user_id="user-1", geometry=PolygonGeometry(vertices=vertices))
        point = GeoPoint(lat=min_lat + height * fy, lon=min_lon + width * fx)

        assert contains(geofence, point) is True

    @given(
        min_lat=st.floats(min_value=-60, max_value=59),
        min_lon=st.floats(min_value=-170, max_value=169),
        height=st.floats(min_value=0.001, max_value=1.0),
        width=st.floats(min_value=0.001, max_value=1.0),
        offset=st.floats(min_value=0.001, max_value=2.0),
    )
    def test_exterior_points_outside(self, min_lat, min_lon, height, width, offset):
        """사각형 오른쪽 바깥 점은 외부"""
        vertices = [
            GeoPoint(lat=min_lat, lon=min_lon),
            GeoPoint(lat=min_lat, lon=min_lon + width),
            GeoPoint(lat=min_lat + height, lon=min_lon + width),
            GeoPoint(lat=min_lat + height, lon=min_lon),
        ]
        geofence = Geofence(user_id="user-1", geometry=PolygonGeometry(vertices=vertices))
        point = GeoPoint(lat=min_lat + height / 2, lon=min_lon + width + offset)

        assert contains(geofence, point) is False


class TestClassification:
    """분류 결과 속성 테스트"""

    @settings(max_examples=50)
    @given(
        distances=st.lists(st.floats(min_value=0, max_value=2000), min_size=1, max_size=6),
        previous_mask=st.lists(st.booleans(), min_size=6, max_size=6),
    )
    def test_classification_partitions_presence(self, distances, previous_mask):
        """entered/exited/dwelling은 현재/직전 내부 집합과 일치"""
        location = GeoPoint(lat=40.0, lon=-73.0)
        # 각 지오펜스는 반경 1000m, 중심은 위치에서 distance만큼 북쪽
        geofences = [
            Geofence(
                id=f"gf_{i}",
                user_id="user-1",
                geometry=CircleGeometry(center=_north_of(40.0, -73.0, d), radius_m=1000.0),
            )
            for i, d in enumerate(distances)
        ]
        previous = {gf.id for gf, flag in zip(geofences, previous_mask) if flag}

        result = classify(location, geofences, previous, at=AT)
        current = inside_set(location, geofences, AT)

        assert set(result.entered) == current - previous
        assert set(result.exited) == previous - current
        assert set(result.dwelling) == current & previous
        assert not set(result.entered) & set(result.dwelling)


class TestRouteDeviation:
    """경로 이탈 거리 속성 테스트"""

    @given(
        lat=st.floats(min_value=-50, max_value=50),
        meters=st.floats(min_value=1, max_value=2000),
    )
    def test_perpendicular_offset_matches_distance(self, lat, meters):
        """동서 방향 경로에서 북쪽으로 벗어난 거리"""
        route = [GeoPoint(lat=lat, lon=0.0), GeoPoint(lat=lat, lon=0.1)]
        current = _north_of(lat, 0.05, meters)

        assert math.isclose(route_deviation(current, route), meters, rel_tol=1e-3)

    @given(
        lat=st.floats(min_value=-50, max_value=50),
        lon=st.floats(min_value=-170, max_value=170),
        index=st.integers(min_value=0, max_value=2),
    )
    def test_route_vertices_have_zero_deviation(self, lat, lon, index):
        """경로 꼭짓점 위에서는 이탈 거리 0"""
        route = [
            GeoPoint(lat=lat, lon=lon),
            GeoPoint(lat=lat + 0.01, lon=lon + 0.01),
            GeoPoint(lat=lat + 0.02, lon=lon),
        ]
        assert route_deviation(route[index], route) < 0.01
