"""Runtime configuration read from environment variables."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from sunride.errors import ConfigError

log = logging.getLogger('sunride.config')

DEFAULT_BASE_URL = 'https://api.openweathermap.org/data/2.5'
PLACEHOLDER_KEYS = ('', 'placeholder_key')


def _env_flag(env: Mapping[str, str], name: str) -> bool:
    return str(env.get(name, '')).strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or str(raw).strip() == '':
        return default
    try:
        return int(str(raw).strip())
    except ValueError:
        log.warning('[CONFIG] %s=%r is not an integer; using %d', name, raw, default)
        return default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or str(raw).strip() == '':
        return default
    try:
        return float(str(raw).strip())
    except ValueError:
        log.warning('[CONFIG] %s=%r is not a number; using %s', name, raw, default)
        return default


@dataclass(frozen=True)
class Settings:
    api_key: Optional[str] = None
    mock_weather: bool = False
    cache_ttl_ms: int = 3_600_000
    rate_limit_max_calls: int = 60
    rate_limit_window_ms: int = 60_000
    debug: bool = False
    base_url: str = DEFAULT_BASE_URL
    request_timeout_s: float = 5.0
    data_dir: Path = Path('data')
    port: int = 5000

    @staticmethod
    def from_env(env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        key = env.get('OPENWEATHER_API_KEY')
        if key is not None and key.strip() in PLACEHOLDER_KEYS:
            key = None
        return Settings(
            api_key=key,
            mock_weather=_env_flag(env, 'SUNRIDE_MOCK_WEATHER'),
            cache_ttl_ms=_env_int(env, 'CACHE_DURATION', 3_600_000),
            rate_limit_max_calls=_env_int(env, 'API_RATE_LIMIT', 60),
            rate_limit_window_ms=_env_int(env, 'API_RATE_LIMIT_WINDOW_MS', 60_000),
            debug=_env_flag(env, 'SUNRIDE_DEBUG') or _env_flag(env, 'DEBUG'),
            base_url=(env.get('OPENWEATHER_BASE_URL') or DEFAULT_BASE_URL).rstrip('/'),
            request_timeout_s=_env_float(env, 'WEATHER_TIMEOUT_SECONDS', 5.0),
            data_dir=Path(env.get('SUNRIDE_DATA_DIR') or 'data'),
            port=_env_int(env, 'PORT', 5000),
        )

    def validate(self) -> "Settings":
        """Fail fast on settings the weather service cannot run with."""
        if not self.mock_weather and not self.api_key:
            raise ConfigError(
                'Missing required environment variable: OPENWEATHER_API_KEY '
                '(set SUNRIDE_MOCK_WEATHER=1 to use synthetic weather instead)'
            )
        if self.cache_ttl_ms <= 0:
            raise ConfigError('CACHE_DURATION must be positive')
        if self.rate_limit_max_calls <= 0 or self.rate_limit_window_ms <= 0:
            raise ConfigError('API_RATE_LIMIT and API_RATE_LIMIT_WINDOW_MS must be positive')
        if self.request_timeout_s <= 0:
            raise ConfigError('WEATHER_TIMEOUT_SECONDS must be positive')
        return self


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=logging.INFO, format='[%(levelname)s] %(message)s')
    logging.getLogger('sunride').setLevel(logging.DEBUG if settings.debug else logging.INFO)
