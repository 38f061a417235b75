from __future__ import annotations

import math

EARTH_RADIUS_KM = 6371.0


def distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """两点间大圆距离（Haversine，单位公里）。

    不做范围校验，非法输入按浮点语义传播 NaN；调用方需先调用
    validate_coordinates。
    """
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    if h > 1.0:
        # 近对跖点时浮点误差可能使 h 略大于 1
        h = 1.0
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def validate_coordinates(lat: float, lng: float) -> None:
    if not -90.0 <= lat <= 90.0:
        raise ValueError(f"纬度超出范围 [-90, 90]: {lat}")
    if not -180.0 <= lng <= 180.0:
        raise ValueError(f"经度超出范围 [-180, 180]: {lng}")
