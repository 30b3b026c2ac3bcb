from typing import Dict, Any, List, Optional, Sequence
from datetime import datetime, timezone
import logging

import numpy as np
import pandas as pd

from sunride.models import ForecastPoint, WeatherRecord

log = logging.getLogger('sunride.weather')

WEATHER_COLUMNS = [
    'temperature', 'feels_like', 'humidity', 'pressure', 'wind_speed', 'wind_direction',
    'wind_gust', 'precipitation', 'precipitation_probability', 'uv_index', 'cloud_cover',
    'visibility', 'condition_code', 'description', 'icon',
]

# Alert thresholds, metric units
HIGH_WIND_MS = 10.0
EXTREME_HEAT_C = 35.0
FREEZING_C = 0.0
HEAVY_RAIN_MM = 5.0

ALERT_COLUMNS = ['high_wind', 'extreme_heat', 'freezing', 'heavy_rain']


def alerts_for(record: Optional[WeatherRecord]) -> Dict[str, bool]:
    """Alert flags for one record; all False when there is no data."""
    if record is None:
        return {name: False for name in ALERT_COLUMNS}
    return {
        'high_wind': record.wind_speed > HIGH_WIND_MS,
        'extreme_heat': record.temperature > EXTREME_HEAT_C,
        'freezing': record.temperature < FREEZING_C,
        'heavy_rain': record.precipitation > HEAVY_RAIN_MM,
    }


def _values(records: Sequence[Optional[WeatherRecord]], attr: str) -> np.ndarray:
    vals = [getattr(r, attr) for r in records if r is not None and getattr(r, attr) is not None]
    return np.array(vals, dtype=float)


def _stat(fn, arr: np.ndarray) -> Optional[float]:
    if arr.size == 0 or np.all(np.isnan(arr)):
        return None
    return float(fn(arr))


def compute_route_weather_summary(records: Sequence[Optional[WeatherRecord]]) -> Dict[str, Any]:
    """Route-level aggregates over the weather records, ignoring points without data."""
    temps = _values(records, 'temperature')
    wind = _values(records, 'wind_speed')
    gust = _values(records, 'wind_gust')
    precip = _values(records, 'precipitation')
    pop = _values(records, 'precipitation_probability')
    uv = _values(records, 'uv_index')
    missing = sum(1 for r in records if r is None)
    flags = [alerts_for(r) for r in records if r is not None]
    summary = {
        'points': len(records),
        'missing': missing,
        'temperature_min_c': _stat(np.nanmin, temps),
        'temperature_max_c': _stat(np.nanmax, temps),
        'temperature_mean_c': _stat(np.nanmean, temps),
        'wind_speed_mean_ms': _stat(np.nanmean, wind),
        'wind_speed_max_ms': _stat(np.nanmax, wind),
        'wind_gust_max_ms': _stat(np.nanmax, gust),
        'precipitation_total_mm': _stat(np.nansum, precip),
        'precipitation_probability_max': _stat(np.nanmax, pop),
        'uv_index_mean': _stat(np.nanmean, uv),
        'uv_index_max': _stat(np.nanmax, uv),
        'alerts': {name: sum(1 for f in flags if f[name]) for name in ALERT_COLUMNS},
    }
    log.info('[WEATHER] summary points=%d missing=%d', len(records), missing)
    return summary


def forecast_table(points: Sequence[ForecastPoint], records: Sequence[Optional[WeatherRecord]]) -> pd.DataFrame:
    """One row per forecast point with its weather columns; rows without data keep them empty."""
    if len(points) != len(records):
        raise ValueError('points and records must have the same length')
    rows: List[Dict[str, Any]] = []
    for p, r in zip(points, records):
        row: Dict[str, Any] = {
            'index': p.index,
            'distance_km': round(p.distance_from_start, 3),
            'lat': p.lat,
            'lon': p.lon,
            'elevation_m': p.elevation,
            'time_utc': datetime.fromtimestamp(p.timestamp, tz=timezone.utc).isoformat(),
            'has_weather': r is not None,
        }
        for col in WEATHER_COLUMNS:
            row[col] = getattr(r, col) if r is not None else None
        row.update(alerts_for(r))
        rows.append(row)
    columns = ['index', 'distance_km', 'lat', 'lon', 'elevation_m', 'time_utc', 'has_weather'] + WEATHER_COLUMNS + ALERT_COLUMNS
    return pd.DataFrame(rows, columns=columns)
