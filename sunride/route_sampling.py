import math
import logging
from datetime import datetime, timezone
from typing import List, Dict, Any, Union

import gpxpy
from gpxpy.gpx import GPX, GPXException

from sunride.errors import RouteParseError, ValidationError
from sunride.models import ForecastPoint, RouteData, RoutePoint

log = logging.getLogger('sunride.route')

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute haversine distance between two lat/lon points in kilometers."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def _collect_raw_points(gpx: GPX) -> list:
    raw = []
    for track in gpx.tracks:
        for seg in track.segments:
            raw.extend(seg.points)
    if not raw:
        for route in gpx.routes:
            raw.extend(route.points)
    if not raw:
        raw.extend(gpx.waypoints)
    return raw


def _route_name(gpx: GPX) -> str:
    if gpx.name:
        return gpx.name.strip()
    for track in gpx.tracks:
        if track.name:
            return track.name.strip()
    for route in gpx.routes:
        if route.name:
            return route.name.strip()
    return 'Unnamed Route'


def parse_gpx(content: str) -> RouteData:
    """Parse GPX text into route points with cumulative distance and elevation stats.

    Points come from track segments, falling back to route points and then
    waypoints. Missing elevations are treated as 0 m.
    """
    if not content or not content.strip():
        raise RouteParseError('Empty GPX file content')
    try:
        gpx: GPX = gpxpy.parse(content.strip())
    except (GPXException, ValueError, TypeError) as e:
        raise RouteParseError(f'Failed to parse GPX file: {e}') from e

    raw = _collect_raw_points(gpx)
    if not raw:
        raise RouteParseError('No track or route points found in GPX file')

    points: List[RoutePoint] = []
    total = 0.0
    gain = 0.0
    loss = 0.0
    prev = None
    for p in raw:
        lat, lon = p.latitude, p.longitude
        if lat is None or lon is None or not (-90.0 <= lat <= 90.0) or not (-180.0 <= lon <= 180.0):
            raise RouteParseError(f'Invalid coordinates in GPX file: lat={lat} lon={lon}')
        ele = float(p.elevation) if p.elevation is not None else 0.0
        if prev is not None:
            total += haversine_km(prev.lat, prev.lon, lat, lon)
            diff = ele - prev.elevation
            if diff > 0:
                gain += diff
            else:
                loss -= diff
        rp = RoutePoint(lat=float(lat), lon=float(lon), elevation=ele, distance_from_start=total, time=p.time)
        points.append(rp)
        prev = rp

    elevations = [rp.elevation for rp in points]
    route = RouteData(
        name=_route_name(gpx),
        points=points,
        total_distance_km=total,
        elevation_gain_m=gain,
        elevation_loss_m=loss,
        max_elevation_m=max(elevations) if elevations else 0.0,
        min_elevation_m=min(elevations) if elevations else 0.0,
    )
    log.info('[GPX] parsed name=%s points=%d distance=%.2f km', route.name, len(points), total)
    return route


def load_gpx(gpx_path: str) -> RouteData:
    """Load a GPX file from disk."""
    with open(gpx_path, 'r', encoding='utf-8') as f:
        return parse_gpx(f.read())


def _is_positive(x: Any) -> bool:
    try:
        return math.isfinite(x) and x > 0
    except TypeError:
        return False


def _start_seconds(start_time: Union[datetime, int, float]) -> float:
    if isinstance(start_time, datetime):
        if start_time.tzinfo is None:
            start_time = start_time.replace(tzinfo=timezone.utc)
        return start_time.timestamp()
    return float(start_time)


def generate_forecast_points(
    points: List[RoutePoint],
    interval_km: float,
    start_time: Union[datetime, int, float],
    avg_speed_kmh: float,
) -> List[ForecastPoint]:
    """Pick route points spaced at least `interval_km` apart and time them by average speed.

    The first point is always emitted. Walking the route, the haversine distance
    since the last emitted point is accumulated; once it reaches `interval_km`
    the current point is emitted and the accumulator resets. The last route
    point is appended unless it is the last emitted one, or a repeat of it
    (same coordinates and same distance). A loop ending where it started
    still gets its arrival point.

    Each point's timestamp is ``start_time + distance_from_start / avg_speed_kmh`` hours,
    in whole Unix seconds.
    """
    if not points:
        raise ValidationError('Route must contain at least one point')
    if not _is_positive(interval_km):
        raise ValidationError('interval_km must be positive', fields=['interval_km'])
    if not _is_positive(avg_speed_kmh):
        raise ValidationError('avg_speed_kmh must be positive', fields=['avg_speed_kmh'])

    start_s = _start_seconds(start_time)

    def _emit(i: int) -> ForecastPoint:
        rp = points[i]
        ts = start_s + (rp.distance_from_start / avg_speed_kmh) * 3600.0
        return ForecastPoint(
            lat=rp.lat,
            lon=rp.lon,
            timestamp=int(round(ts)),
            distance_from_start=rp.distance_from_start,
            elevation=rp.elevation,
            index=i,
        )

    out: List[ForecastPoint] = [_emit(0)]
    accumulated = 0.0
    for i in range(1, len(points)):
        prev, cur = points[i - 1], points[i]
        accumulated += haversine_km(prev.lat, prev.lon, cur.lat, cur.lon)
        if accumulated >= interval_km:
            out.append(_emit(i))
            accumulated = 0.0

    last_i = len(points) - 1
    last, tail = points[last_i], out[-1]
    repeated = (tail.lat, tail.lon, tail.distance_from_start) == (last.lat, last.lon, last.distance_from_start)
    if tail.index != last_i and not repeated:
        out.append(_emit(last_i))

    log.debug('[SAMPLE] %d route points -> %d forecast points (interval=%.2f km)', len(points), len(out), interval_km)
    return out


def route_geojson(points: List[RoutePoint]) -> Dict[str, Any]:
    """GeoJSON Feature with the route as a LineString."""
    line_coords = [[p.lon, p.lat] for p in points]
    return {
        "type": "Feature",
        "geometry": {"type": "LineString", "coordinates": line_coords},
        "properties": {}
    }
