import random
from datetime import datetime, timezone

import pytest

from sunride.errors import RouteParseError, ValidationError
from sunride.route_sampling import (
    generate_forecast_points,
    haversine_km,
    load_gpx,
    parse_gpx,
    route_geojson,
)
from sunride.models import RoutePoint

from fakes import EXAMPLE_GPX, T0

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def build_route(coords):
    """RoutePoints with cumulative haversine distance, elevation 0."""
    pts = []
    total = 0.0
    for i, (lat, lon) in enumerate(coords):
        if i:
            total += haversine_km(coords[i - 1][0], coords[i - 1][1], lat, lon)
        pts.append(RoutePoint(lat=lat, lon=lon, elevation=0.0, distance_from_start=total))
    return pts


def random_route(seed, n):
    rng = random.Random(seed)
    lat, lon = 45.0, 7.0
    coords = [(lat, lon)]
    for _ in range(n - 1):
        lat += rng.uniform(0.0005, 0.01)
        lon += rng.uniform(0.0005, 0.01)
        coords.append((round(lat, 6), round(lon, 6)))
    return build_route(coords)


def test_haversine_one_degree_longitude_at_equator():
    assert haversine_km(0, 0, 0, 1) == pytest.approx(111.195, abs=0.01)
    assert haversine_km(10, 10, 10, 10) == 0.0


def test_three_point_route_at_5km_interval():
    route = [
        RoutePoint(0.0, 0.0, distance_from_start=0.0),
        RoutePoint(0.0, 0.045, distance_from_start=5.0),
        RoutePoint(0.0, 0.09, distance_from_start=10.0),
    ]
    out = generate_forecast_points(route, 5.0, START, 20.0)
    assert [p.distance_from_start for p in out] == [0.0, 5.0, 10.0]
    assert [p.timestamp for p in out] == [T0, T0 + 900, T0 + 1800]
    assert [p.index for p in out] == [0, 1, 2]


def test_start_time_accepts_unix_seconds_and_naive_datetime():
    route = build_route([(0.0, 0.0), (0.0, 0.09)])
    a = generate_forecast_points(route, 5.0, T0, 20.0)
    b = generate_forecast_points(route, 5.0, datetime(2024, 1, 1), 20.0)
    assert [p.timestamp for p in a] == [p.timestamp for p in b]


def test_single_point_route():
    route = [RoutePoint(45.0, 7.0, elevation=300.0)]
    out = generate_forecast_points(route, 5.0, START, 20.0)
    assert len(out) == 1
    assert out[0].timestamp == T0
    assert out[0].elevation == 300.0


LOOP = [(45.0, 7.0), (45.01, 7.0), (45.01, 7.01), (45.0, 7.0)]


def test_closed_loop_keeps_arrival_point():
    route = build_route(LOOP)
    out = generate_forecast_points(route, 100.0, START, 20.0)
    assert [p.index for p in out] == [0, 3]
    assert (out[1].lat, out[1].lon) == (45.0, 7.0)
    assert out[1].distance_from_start == pytest.approx(route[-1].distance_from_start)
    assert out[1].timestamp > out[0].timestamp


def test_trailing_duplicate_point_not_emitted_twice():
    route = build_route([(0.0, 0.0), (0.0, 0.045), (0.0, 0.045)])
    out = generate_forecast_points(route, 5.0, START, 20.0)
    assert [p.index for p in out] == [0, 1]


def test_last_point_not_repeated_when_emitted_by_interval():
    route = build_route([(0.0, 0.0), (0.0, 0.045), (0.0, 0.09)])
    out = generate_forecast_points(route, 5.0, START, 20.0)
    assert [p.index for p in out] == [0, 1, 2]


@pytest.mark.parametrize('seed', [1, 2, 3, 4, 5])
@pytest.mark.parametrize('interval', [0.5, 2.0, 7.5])
def test_sampling_properties(seed, interval):
    route = random_route(seed, 60)
    out = generate_forecast_points(route, interval, START, 18.0)

    assert (out[0].lat, out[0].lon) == (route[0].lat, route[0].lon)
    assert (out[-1].lat, out[-1].lon) == (route[-1].lat, route[-1].lon)
    assert len(out) <= len(route)
    for a, b in zip(out, out[1:]):
        assert a.distance_from_start < b.distance_from_start
        assert a.timestamp <= b.timestamp
        assert a.index < b.index
    for p in out:
        expected = T0 + p.distance_from_start / 18.0 * 3600
        assert abs(p.timestamp - expected) <= 0.5


@pytest.mark.parametrize('route', [
    random_route(42, 2),
    random_route(42, 3),
    random_route(42, 10),
    build_route(LOOP),
])
def test_interval_longer_than_route_gives_endpoints_only(route):
    n = len(route)
    total = route[-1].distance_from_start
    out = generate_forecast_points(route, total + 1.0, START, 20.0)
    assert len(out) == min(2, n)


def test_sampling_is_deterministic():
    route = random_route(7, 40)
    a = generate_forecast_points(route, 1.0, START, 25.0)
    b = generate_forecast_points(route, 1.0, START, 25.0)
    assert a == b


@pytest.mark.parametrize('interval,speed', [
    (0, 20.0), (-1.0, 20.0), (5.0, 0), (5.0, -3.0),
    (float('nan'), 20.0), (5.0, float('nan')), (float('inf'), 20.0), (None, 20.0),
])
def test_bad_interval_or_speed_rejected(interval, speed):
    route = build_route([(0.0, 0.0), (0.0, 0.09)])
    with pytest.raises(ValidationError):
        generate_forecast_points(route, interval, START, speed)


def test_empty_route_rejected():
    with pytest.raises(ValidationError):
        generate_forecast_points([], 5.0, START, 20.0)


# -------------------- GPX parsing --------------------

def test_load_gpx_computes_stats():
    route = load_gpx(str(EXAMPLE_GPX))
    assert route.name == 'Equator Test Ride'
    assert len(route.points) == 5
    assert route.points[0].distance_from_start == 0.0
    assert route.total_distance_km == pytest.approx(10.0, abs=0.05)
    assert route.elevation_gain_m == pytest.approx(60.0)
    assert route.elevation_loss_m == pytest.approx(20.0)
    assert route.max_elevation_m == 150.0
    assert route.min_elevation_m == 100.0
    assert route.points[0].time is not None
    dists = [p.distance_from_start for p in route.points]
    assert dists == sorted(dists)


def test_parse_gpx_missing_elevation_defaults_to_zero():
    text = """<?xml version="1.0"?>
<gpx version="1.1" creator="t"><trk><trkseg>
<trkpt lat="10.0" lon="20.0"></trkpt>
<trkpt lat="10.01" lon="20.01"><ele>50</ele></trkpt>
</trkseg></trk></gpx>"""
    route = parse_gpx(text)
    assert route.points[0].elevation == 0.0
    assert route.elevation_gain_m == 50.0
    assert route.name == 'Unnamed Route'


def test_parse_gpx_falls_back_to_route_points():
    text = """<?xml version="1.0"?>
<gpx version="1.1" creator="t"><rte><name>Planned</name>
<rtept lat="1.0" lon="1.0"/><rtept lat="1.0" lon="1.1"/><rtept lat="1.0" lon="1.2"/>
</rte></gpx>"""
    route = parse_gpx(text)
    assert route.name == 'Planned'
    assert len(route.points) == 3


@pytest.mark.parametrize('text', [
    '',
    '   \n ',
    '<gpx><trk><trkseg><trkpt lat="1" lon="1"></trkseg>',
    '<?xml version="1.0"?><gpx version="1.1" creator="t"></gpx>',
    '<?xml version="1.0"?><gpx version="1.1" creator="t"><trk><trkseg>'
    '<trkpt lat="95.0" lon="1.0"/></trkseg></trk></gpx>',
    '<?xml version="1.0"?><gpx version="1.1" creator="t"><trk><trkseg>'
    '<trkpt lat="invalid" lon="1.0"/></trkseg></trk></gpx>',
])
def test_parse_gpx_rejects_bad_content(text):
    with pytest.raises(RouteParseError):
        parse_gpx(text)


def test_route_geojson_is_lon_lat_linestring():
    route = build_route([(1.0, 2.0), (3.0, 4.0)])
    gj = route_geojson(route)
    assert gj['geometry']['type'] == 'LineString'
    assert gj['geometry']['coordinates'] == [[2.0, 1.0], [4.0, 3.0]]
