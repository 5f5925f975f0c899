"""
Geospatial evaluation for SafeWatch.

Pure functions that classify a location against a user's geofences and
score deviation from a planned route. No I/O and no state; degenerate
geofences are logged as configuration warnings and never match.
"""

from datetime import datetime
from typing import Iterable, List, Optional, Set
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from safewatch.common.geo import haversine_distance, point_in_polygon, point_segment_distance
from safewatch.core.errors import ConfigurationError
from safewatch.core.models import (
    CircleGeometry, Classification, GeoPoint, Geofence, PolygonGeometry, ScheduleWindow
)
from safewatch.observability import metrics
from safewatch.observability.logging_setup import get_logger

log = get_logger("safewatch.geo")


def _local_time(at: datetime, tz_name: str) -> datetime:
    try:
        return at.astimezone(ZoneInfo(tz_name))
    except ZoneInfoNotFoundError:
        log.warning("알 수 없는 타임존, UTC로 평가", timezone=tz_name)
        return at.astimezone(ZoneInfo("UTC"))


def _in_window(window: ScheduleWindow, local: datetime) -> bool:
    t = local.time().replace(tzinfo=None)
    weekday = local.weekday()

    if window.start <= window.end:
        return weekday in window.days and window.start <= t <= window.end

    # 자정을 넘기는 시간대 (예: 22:00-06:00): 새벽 구간은 전날 요일 기준
    if t >= window.start:
        return weekday in window.days
    if t <= window.end:
        return (weekday - 1) % 7 in window.days
    return False


def geofence_applies(geofence: Geofence, at: datetime, tz_name: str = "UTC") -> bool:
    """
    지오펜스가 주어진 시각에 적용되는지 확인합니다.

    Args:
        geofence: 지오펜스
        at: 평가 시각
        tz_name: 사용자 홈 타임존

    Returns:
        상태, 만료, 스케줄 시간대를 모두 만족하면 True
    """
    if geofence.status != "active":
        return False
    if geofence.expires_at is not None and at >= geofence.expires_at:
        return False
    if not geofence.schedule:
        return True

    local = _local_time(at, tz_name)
    return any(_in_window(w, local) for w in geofence.schedule)


def validate_geofence(geofence: Geofence) -> None:
    """
    지오펜스 형상이 퇴화되지 않았는지 검사합니다.

    Raises:
        ConfigurationError: 반경이 0 이하이거나 꼭짓점이 3개 미만인 경우
    """
    geometry = geofence.geometry
    if isinstance(geometry, CircleGeometry):
        if geometry.radius_m <= 0:
            raise ConfigurationError(
                f"geofence {geofence.id} has non-positive radius {geometry.radius_m}",
                entity_id=geofence.id,
            )
    elif isinstance(geometry, PolygonGeometry):
        distinct = {(v.lat, v.lon) for v in geometry.vertices}
        if len(distinct) < 3:
            raise ConfigurationError(
                f"geofence {geofence.id} polygon needs at least 3 distinct vertices",
                entity_id=geofence.id,
            )


def contains(geofence: Geofence, location: GeoPoint) -> bool:
    """
    위치가 지오펜스 내부(경계 포함)인지 확인합니다.

    퇴화된 지오펜스는 경고를 남기고 False를 반환합니다.
    """
    try:
        validate_geofence(geofence)
    except ConfigurationError as e:
        metrics.configuration_warnings.labels(kind="degenerate_geofence").inc()
        log.warning("퇴화된 지오펜스 무시", geofence_id=geofence.id, error=str(e))
        return False

    geometry = geofence.geometry
    if isinstance(geometry, CircleGeometry):
        distance = haversine_distance(location.lat, location.lon,
                                      geometry.center.lat, geometry.center.lon)
        return distance <= geometry.radius_m

    polygon = [(v.lon, v.lat) for v in geometry.vertices]
    return point_in_polygon((location.lon, location.lat), polygon)


def inside_set(location: GeoPoint, geofences: Iterable[Geofence],
               at: datetime, tz_name: str = "UTC") -> Set[str]:
    """위치를 포함하는 적용 중 지오펜스 ID 집합을 반환합니다."""
    return {
        gf.id for gf in geofences
        if geofence_applies(gf, at, tz_name) and contains(gf, location)
    }


def classify(location: GeoPoint,
             geofences: Iterable[Geofence],
             previously_inside: Optional[Iterable[str]] = None,
             *,
             at: datetime,
             tz_name: str = "UTC") -> Classification:
    """
    위치를 지오펜스 집합에 대해 분류합니다.

    Args:
        location: 현재 위치
        geofences: 사용자 지오펜스 목록
        previously_inside: 직전 평가에서 내부였던 지오펜스 ID
        at: 위치 측정 시각
        tz_name: 사용자 홈 타임존

    Returns:
        entered / exited / dwelling 지오펜스 ID (정렬됨)
    """
    with metrics.classify_seconds.time():
        previous = set(previously_inside or ())
        current = inside_set(location, geofences, at, tz_name)

    return Classification(
        entered=sorted(current - previous),
        exited=sorted(previous - current),
        dwelling=sorted(current & previous),
    )


def route_deviation(current: GeoPoint, planned_route: List[GeoPoint]) -> float:
    """
    계획 경로 폴리라인에서 현재 위치까지의 최소 거리를 계산합니다.

    Args:
        current: 현재 위치
        planned_route: 계획 경로 (순서 있는 지점 목록)

    Returns:
        최소 거리 (미터)

    Raises:
        ConfigurationError: 경로가 비어 있는 경우
    """
    if not planned_route:
        raise ConfigurationError("planned route is empty")

    point = (current.lat, current.lon)
    if len(planned_route) == 1:
        only = planned_route[0]
        return haversine_distance(current.lat, current.lon, only.lat, only.lon)

    return min(
        point_segment_distance(point, (a.lat, a.lon), (b.lat, b.lon))
        for a, b in zip(planned_route, planned_route[1:])
    )


def distance_to(current: GeoPoint, target: GeoPoint) -> float:
    """두 지점 간 거리 (미터)"""
    return haversine_distance(current.lat, current.lon, target.lat, target.lon)
