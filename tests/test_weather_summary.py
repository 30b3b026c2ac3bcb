import pytest

from sunride.models import ForecastPoint
from sunride.weather import (
    ALERT_COLUMNS,
    WEATHER_COLUMNS,
    alerts_for,
    compute_route_weather_summary,
    forecast_table,
)

from fakes import T0, make_record


def test_summary_ignores_missing_records():
    records = [
        make_record(10.0, wind_speed=2.0, wind_gust=4.0, precipitation=0.5, precipitation_probability=0.2,
                    uv_index=3.0),
        None,
        make_record(20.0, wind_speed=6.0, wind_gust=9.0, precipitation=1.5, precipitation_probability=0.7),
    ]
    s = compute_route_weather_summary(records)
    assert s['points'] == 3
    assert s['missing'] == 1
    assert s['temperature_min_c'] == 10.0
    assert s['temperature_max_c'] == 20.0
    assert s['temperature_mean_c'] == pytest.approx(15.0)
    assert s['wind_speed_mean_ms'] == pytest.approx(4.0)
    assert s['wind_speed_max_ms'] == 6.0
    assert s['wind_gust_max_ms'] == 9.0
    assert s['precipitation_total_mm'] == pytest.approx(2.0)
    assert s['precipitation_probability_max'] == 0.7
    # only one record reports a UV index
    assert s['uv_index_mean'] == 3.0
    assert s['uv_index_max'] == 3.0
    assert s['alerts'] == {name: 0 for name in ALERT_COLUMNS}


def test_summary_without_any_weather():
    s = compute_route_weather_summary([None, None])
    assert s['missing'] == 2
    assert s['temperature_mean_c'] is None
    assert s['wind_speed_mean_ms'] is None
    assert s['uv_index_max'] is None
    assert s['precipitation_total_mm'] is None
    assert s['alerts'] == {name: 0 for name in ALERT_COLUMNS}


@pytest.mark.parametrize('overrides,flag', [
    ({'wind_speed': 10.5}, 'high_wind'),
    ({'temperature': 36.0}, 'extreme_heat'),
    ({'temperature': -0.5}, 'freezing'),
    ({'precipitation': 5.1}, 'heavy_rain'),
])
def test_alert_flags(overrides, flag):
    flags = alerts_for(make_record(**overrides))
    assert flags[flag] is True
    assert [k for k, v in flags.items() if v] == [flag]


def test_alert_thresholds_are_exclusive():
    flags = alerts_for(make_record(temperature=35.0, wind_speed=10.0, precipitation=5.0))
    assert not any(flags.values())
    assert not alerts_for(make_record(temperature=0.0))['freezing']
    assert not any(alerts_for(None).values())


def test_summary_counts_alerts():
    records = [
        make_record(-2.0, wind_speed=12.0),
        make_record(-1.0),
        None,
        make_record(38.0, precipitation=7.0),
    ]
    s = compute_route_weather_summary(records)
    assert s['alerts'] == {'high_wind': 1, 'extreme_heat': 1, 'freezing': 2, 'heavy_rain': 1}


def test_forecast_table_rows_follow_points():
    points = [
        ForecastPoint(45.0, 7.0, T0, 0.0, elevation=200.0, index=0),
        ForecastPoint(45.05, 7.05, T0 + 900, 5.0, elevation=250.0, index=4),
    ]
    df = forecast_table(points, [make_record(11.0, wind_speed=11.0), None])

    assert list(df.columns[:7]) == ['index', 'distance_km', 'lat', 'lon', 'elevation_m', 'time_utc', 'has_weather']
    assert list(df.columns[7:]) == WEATHER_COLUMNS + ALERT_COLUMNS
    assert list(df['has_weather']) == [True, False]
    assert list(df['high_wind']) == [True, False]
    assert df.loc[0, 'temperature'] == 11.0
    assert df.loc[0, 'time_utc'] == '2024-01-01T00:00:00+00:00'
    assert df.loc[1, 'index'] == 4


def test_forecast_table_length_mismatch():
    with pytest.raises(ValueError):
        forecast_table([ForecastPoint(45.0, 7.0, T0, 0.0)], [])
