"""
Geographic utilities for SafeWatch.

This module provides geographic calculations including
distance calculation, point-in-polygon testing, antimeridian
normalisation and point-to-segment distance. All distances are in meters.
"""

import math
from typing import List, Tuple

# 평균 지구 반지름 (미터)
EARTH_RADIUS_M = 6371008.8

# 경계 판정 허용 오차 (도 단위)
BOUNDARY_EPSILON = 1e-12


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    두 지점 간의 Haversine 거리를 계산합니다 (미터).

    Args:
        lat1: 첫 번째 지점의 위도
        lon1: 첫 번째 지점의 경도
        lat2: 두 번째 지점의 위도
        lon2: 두 번째 지점의 경도

    Returns:
        두 지점 간의 거리 (미터)
    """
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = lat2_rad - lat1_rad
    dlon = math.radians(lon2 - lon1)

    a = (math.sin(dlat / 2) ** 2 +
         math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2)
    # 부동소수점 오차로 1을 넘는 경우 방지
    c = 2 * math.asin(math.sqrt(min(1.0, a)))

    return c * EARTH_RADIUS_M


def normalize_antimeridian(point: Tuple[float, float],
                           polygon: List[Tuple[float, float]]) -> Tuple[Tuple[float, float], List[Tuple[float, float]]]:
    """
    날짜변경선을 가로지르는 폴리곤을 [0, 360) 경도 체계로 정규화합니다.

    경도 폭이 180도를 넘는 폴리곤은 날짜변경선을 가로지르는 것으로 간주합니다.

    Args:
        point: 확인할 점 (경도, 위도)
        polygon: 폴리곤의 꼭짓점들 [(경도, 위도), ...]

    Returns:
        정규화된 (점, 폴리곤)
    """
    if not polygon:
        return point, polygon

    lons = [p[0] for p in polygon]
    if max(lons) - min(lons) <= 180:
        return point, polygon

    def shift(lon: float) -> float:
        return lon + 360 if lon < 0 else lon

    return (shift(point[0]), point[1]), [(shift(x), y) for x, y in polygon]


def _on_segment(point: Tuple[float, float], a: Tuple[float, float], b: Tuple[float, float]) -> bool:
    px, py = point
    ax, ay = a
    bx, by = b
    cross = (bx - ax) * (py - ay) - (by - ay) * (px - ax)
    if abs(cross) > BOUNDARY_EPSILON * max(1.0, abs(bx - ax) + abs(by - ay)):
        return False
    return (min(ax, bx) - BOUNDARY_EPSILON <= px <= max(ax, bx) + BOUNDARY_EPSILON and
            min(ay, by) - BOUNDARY_EPSILON <= py <= max(ay, by) + BOUNDARY_EPSILON)


def point_in_polygon(point: Tuple[float, float], polygon: List[Tuple[float, float]]) -> bool:
    """
    점이 폴리곤 내부에 있는지 Ray casting 알고리즘으로 확인합니다.

    경계선과 꼭짓점 위의 점은 내부로 판정합니다.

    Args:
        point: 확인할 점 (경도, 위도)
        polygon: 폴리곤의 꼭짓점들 [(경도, 위도), ...]

    Returns:
        점이 폴리곤 내부(경계 포함)에 있으면 True
    """
    ring = list(polygon)
    if len(ring) > 1 and ring[0] == ring[-1]:
        ring = ring[:-1]
    if len(ring) < 3:
        return False

    point, ring = normalize_antimeridian(point, ring)
    x, y = point
    n = len(ring)

    for i in range(n):
        if _on_segment(point, ring[i], ring[(i + 1) % n]):
            return True

    inside = False
    j = n - 1
    for i in range(n):
        xi, yi = ring[i]
        xj, yj = ring[j]
        if (yi > y) != (yj > y):
            xinters = (xj - xi) * (y - yi) / (yj - yi) + xi
            if x < xinters:
                inside = not inside
        j = i

    return inside


def _project(lat0: float, lon0: float, lat: float, lon: float) -> Tuple[float, float]:
    # lat0/lon0 기준 등장방형 투영 (미터)
    dlon = (lon - lon0 + 540.0) % 360.0 - 180.0
    x = math.radians(dlon) * EARTH_RADIUS_M * math.cos(math.radians(lat0))
    y = math.radians(lat - lat0) * EARTH_RADIUS_M
    return x, y


def point_segment_distance(point: Tuple[float, float],
                           a: Tuple[float, float],
                           b: Tuple[float, float]) -> float:
    """
    점에서 선분까지의 최소 거리를 계산합니다 (미터).

    점 주변의 등장방형 투영을 사용하므로 100km 이내에서 오차는 0.5% 미만입니다.

    Args:
        point: 기준 점 (위도, 경도)
        a: 선분 시작점 (위도, 경도)
        b: 선분 끝점 (위도, 경도)

    Returns:
        최소 거리 (미터)
    """
    lat0, lon0 = point
    ax, ay = _project(lat0, lon0, *a)
    bx, by = _project(lat0, lon0, *b)
    dx, dy = bx - ax, by - ay
    seg_len_sq = dx * dx + dy * dy

    if seg_len_sq == 0:
        return haversine_distance(lat0, lon0, a[0], a[1])

    # 원점(기준 점)을 선분에 투영
    t = max(0.0, min(1.0, -(ax * dx + ay * dy) / seg_len_sq))
    cx, cy = ax + t * dx, ay + t * dy
    return math.hypot(cx, cy)
