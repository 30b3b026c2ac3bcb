"""Weather providers: the live OpenWeather HTTP API and a deterministic synthetic stand-in.

Both turn a ForecastPoint into a WeatherRecord in metric units
(°C, hPa, m/s, mm, metres). The service decides which endpoint to use;
providers only fetch and normalize.
"""
from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional, Protocol

import requests

from sunride.errors import NetworkError, ProviderError, WeatherTimeoutError
from sunride.models import ForecastPoint, WeatherRecord

log = logging.getLogger('sunride.weather.provider')

ENDPOINT_CURRENT = 'current'
ENDPOINT_FORECAST = 'forecast'

_STATUS_MESSAGES = {
    401: 'API authentication failed. Please check your API key.',
    404: 'Weather data not found for this location.',
    429: 'API rate limit exceeded. Please try again later.',
}


class WeatherProvider(Protocol):
    name: str
    rate_limited: bool

    def fetch(self, point: ForecastPoint, endpoint: str) -> WeatherRecord: ...


def select_closest_entry(entries: List[Dict[str, Any]], timestamp: float) -> Dict[str, Any]:
    """Forecast entry whose `dt` is closest to `timestamp`; ties go to the earlier entry."""
    return min(entries, key=lambda e: (abs(float(e.get('dt', 0)) - timestamp), float(e.get('dt', 0))))


def normalize_entry(entry: Dict[str, Any], precip_window: str) -> WeatherRecord:
    """Map one OpenWeather observation/forecast entry onto a WeatherRecord.

    `precip_window` is the key inside the rain/snow objects: '1h' for the
    current endpoint, '3h' for forecast entries.
    """
    main = entry.get('main') or {}
    if 'temp' not in main:
        raise ProviderError('Provider payload has no temperature', 502)
    wind = entry.get('wind') or {}
    cond = (entry.get('weather') or [{}])[0]
    rain = (entry.get('rain') or {}).get(precip_window, 0.0)
    snow = (entry.get('snow') or {}).get(precip_window, 0.0)
    temp = float(main['temp'])
    speed = float(wind.get('speed', 0.0))
    return WeatherRecord(
        temperature=temp,
        feels_like=float(main.get('feels_like', temp)),
        humidity=float(main.get('humidity', 0.0)),
        pressure=float(main.get('pressure', 0.0)),
        wind_speed=speed,
        wind_direction=float(wind.get('deg', 0.0)),
        wind_gust=float(wind.get('gust', speed)),
        precipitation=float(rain) + float(snow),
        precipitation_probability=float(entry.get('pop', 0.0)),
        cloud_cover=float((entry.get('clouds') or {}).get('all', 0.0)),
        visibility=float(entry.get('visibility', 10000.0)),
        condition_code=int(cond.get('id', 0)),
        description=str(cond.get('description', 'Unknown')),
        icon=str(cond.get('icon', '01d')),
        uv_index=None,
        observed_at=int(entry['dt']) if 'dt' in entry else None,
    )


class OpenWeatherProvider:
    name = 'openweather'
    rate_limited = True

    def __init__(self, api_key: str, base_url: str = 'https://api.openweathermap.org/data/2.5',
                 timeout_s: float = 5.0, session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.timeout_s = timeout_s
        self.session = session or requests.Session()

    def _get(self, path: str, point: ForecastPoint) -> Dict[str, Any]:
        url = f"{self.base_url}/{path}"
        params = {'lat': point.lat, 'lon': point.lon, 'units': 'metric', 'appid': self.api_key}
        log.debug('[API] GET %s lat=%.4f lon=%.4f', url, point.lat, point.lon)
        try:
            resp = self.session.get(url, params=params, timeout=self.timeout_s)
        except requests.exceptions.Timeout as e:
            raise WeatherTimeoutError(
                'Request timeout: Weather API did not respond in time.') from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f'Network error: Unable to connect to the weather service ({e})') from e

        if not (200 <= resp.status_code < 300):
            log.warning('[API] %s returned HTTP %d', path, resp.status_code)
            if resp.status_code in _STATUS_MESSAGES:
                msg = _STATUS_MESSAGES[resp.status_code]
            elif resp.status_code >= 500:
                msg = 'Weather service is currently unavailable. Please try again later.'
            else:
                msg = f'OpenWeather API error: {resp.status_code}'
            raise ProviderError(msg, resp.status_code)
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError('Invalid JSON received from weather API', 502) from e

    def fetch(self, point: ForecastPoint, endpoint: str) -> WeatherRecord:
        if endpoint == ENDPOINT_CURRENT:
            return normalize_entry(self._get('weather', point), '1h')
        data = self._get('forecast', point)
        entries = data.get('list') if isinstance(data, dict) else None
        if not entries or not isinstance(entries, list):
            raise ProviderError('Invalid forecast data received from API', 502)
        return normalize_entry(select_closest_entry(entries, point.timestamp), '3h')


_CONDITIONS = [
    (800, '01', 'clear sky'),
    (801, '02', 'few clouds'),
    (802, '03', 'scattered clouds'),
    (803, '04', 'broken clouds'),
    (521, '09', 'shower rain'),
    (500, '10', 'rain'),
    (211, '11', 'thunderstorm'),
    (601, '13', 'snow'),
    (701, '50', 'mist'),
]


class SyntheticWeatherProvider:
    """Deterministic fake weather derived from position and hour.

    The same (lat, lon, hour) always yields the same record, so the output is
    stable across processes and test runs.
    """
    name = 'synthetic'
    rate_limited = False

    def fetch(self, point: ForecastPoint, endpoint: str) -> WeatherRecord:
        hour_bucket = point.timestamp // 3600
        seed = (point.lat * 10 + point.lon * 5 + hour_bucket) % 100
        idx = int(seed) % len(_CONDITIONS)
        code, icon, desc = _CONDITIONS[idx]
        hour_of_day = int(hour_bucket % 24)
        suffix = 'd' if 6 <= hour_of_day < 18 else 'n'
        temp = round(15 + math.sin(seed) * 15, 1)
        rain = float((idx - 3) * 2) if 4 <= idx <= 7 else 0.0
        wind = round(2 + seed % 8, 1)
        return WeatherRecord(
            temperature=temp,
            feels_like=round(temp - 2 + (seed % 4), 1),
            humidity=float(int(40 + seed % 60)),
            pressure=float(int(980 + seed % 40)),
            wind_speed=wind,
            wind_direction=float(int(seed * 3.6) % 360),
            wind_gust=round(wind + 2 + seed % 6, 1),
            precipitation=rain,
            precipitation_probability=int(seed) / 100.0,
            cloud_cover=float(int(seed * 7) % 101),
            visibility=10000.0 if idx != 8 else 2000.0,
            condition_code=code,
            description=desc,
            icon=f'{icon}{suffix}',
            uv_index=float(max(0, min(11, int((6 - abs(hour_of_day - 12)) * 1.5)))),
            observed_at=int(hour_bucket * 3600),
        )
