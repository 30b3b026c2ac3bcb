"""WeatherService: cache-first, rate-limited weather retrieval for forecast points.
- Memory cache keyed by rounded position and hour bucket, lazy TTL expiry
- Fixed-window admission control for live provider calls
- Pending request de-duplication
- Batches of points fetched in parallel, retried with exponential backoff
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import requests

from sunride.config import Settings
from sunride.errors import RateLimitExceeded, ValidationError
from sunride.models import CacheEntry, ForecastPoint, WeatherRecord
from sunride.weather_providers import (
    ENDPOINT_CURRENT,
    ENDPOINT_FORECAST,
    OpenWeatherProvider,
    SyntheticWeatherProvider,
    WeatherProvider,
)

log = logging.getLogger('sunride.weather.service')

CURRENT_WINDOW_SECONDS = 3 * 3600
BATCH_SIZE = 5
BATCH_PAUSE_SECONDS = 0.2
MAX_ATTEMPTS = 3
BACKOFF_BASE_SECONDS = 1.0

CacheKey = Tuple[str, str, int]
PointLike = Union[ForecastPoint, Mapping[str, Any]]


def choose_endpoint(timestamp: float, now_s: float) -> str:
    """Current conditions within three hours of now, otherwise the forecast list."""
    return ENDPOINT_CURRENT if abs(timestamp - now_s) < CURRENT_WINDOW_SECONDS else ENDPOINT_FORECAST


class WeatherCache:
    """Unbounded in-memory cache; entries expire when read after the TTL."""

    def __init__(self, ttl_ms: int, clock: Callable[[], float] = time.time):
        self.ttl_ms = int(ttl_ms)
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._lock = threading.Lock()

    @staticmethod
    def key(point: ForecastPoint) -> CacheKey:
        hour = (int(point.timestamp) // 3600) * 3600
        return (f"{point.lat:.4f}", f"{point.lon:.4f}", hour)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def get(self, key: CacheKey) -> Optional[WeatherRecord]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._now_ms() - entry.inserted_at_ms >= self.ttl_ms:
                del self._entries[key]
                return None
            return entry.record

    def put(self, key: CacheKey, record: WeatherRecord) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(record=record, inserted_at_ms=self._now_ms())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class FixedWindowRateLimiter:
    """At most `max_calls` admissions per `window_ms`, shared by every caller in the process."""

    def __init__(self, max_calls: int, window_ms: int, clock: Callable[[], float] = time.time):
        self.max_calls = int(max_calls)
        self.window_ms = int(window_ms)
        self._clock = clock
        self._lock = threading.Lock()
        self._window_start_ms = int(clock() * 1000)
        self._count = 0

    def _roll(self, now_ms: int) -> None:
        if now_ms - self._window_start_ms >= self.window_ms:
            self._window_start_ms = now_ms
            self._count = 0
            log.debug('[RATE] window reset')

    def _admit(self) -> Tuple[bool, float]:
        """(admitted, seconds until the window resets)."""
        # check and increment under one lock so concurrent callers cannot overshoot
        with self._lock:
            now = self._clock()
            self._roll(int(now * 1000))
            if self._count >= self.max_calls:
                return False, max(0.0, (self._window_start_ms + self.window_ms) / 1000.0 - now)
            self._count += 1
            return True, 0.0

    def try_acquire(self) -> bool:
        return self._admit()[0]

    def acquire(self) -> None:
        admitted, retry_after = self._admit()
        if not admitted:
            log.warning('[RATE] limit of %d calls per %d ms exhausted', self.max_calls, self.window_ms)
            raise RateLimitExceeded(retry_after_s=retry_after)

    def remaining(self) -> int:
        with self._lock:
            self._roll(int(self._clock() * 1000))
            return self.max_calls - self._count


@dataclass
class _Pending:
    event: threading.Event
    result: Optional[WeatherRecord] = None
    error: Optional[BaseException] = None


class WeatherService:
    def __init__(
        self,
        provider: WeatherProvider,
        cache_ttl_ms: int = 3_600_000,
        rate_limit_max_calls: int = 60,
        rate_limit_window_ms: int = 60_000,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        batch_size: int = BATCH_SIZE,
        batch_pause_s: float = BATCH_PAUSE_SECONDS,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_base_s: float = BACKOFF_BASE_SECONDS,
    ):
        self.provider = provider
        self.clock = clock
        self.sleep = sleep
        self.cache = WeatherCache(cache_ttl_ms, clock=clock)
        self.rate_limiter = FixedWindowRateLimiter(rate_limit_max_calls, rate_limit_window_ms, clock=clock)
        self.batch_size = max(1, int(batch_size))
        self.batch_pause_s = batch_pause_s
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base_s = backoff_base_s
        self._pending: Dict[CacheKey, _Pending] = {}
        self._pending_lock = threading.Lock()
        log.info('[SERVICE] provider=%s ttl=%dms limit=%d/%dms',
                 provider.name, cache_ttl_ms, rate_limit_max_calls, rate_limit_window_ms)

    @classmethod
    def from_settings(cls, settings: Settings, session: Optional[requests.Session] = None, **kwargs) -> "WeatherService":
        settings.validate()
        if settings.mock_weather:
            log.warning('[SERVICE] using synthetic weather data (mock mode)')
            provider: WeatherProvider = SyntheticWeatherProvider()
        else:
            provider = OpenWeatherProvider(
                settings.api_key or '',
                base_url=settings.base_url,
                timeout_s=settings.request_timeout_s,
                session=session,
            )
        return cls(
            provider,
            cache_ttl_ms=settings.cache_ttl_ms,
            rate_limit_max_calls=settings.rate_limit_max_calls,
            rate_limit_window_ms=settings.rate_limit_window_ms,
            **kwargs,
        )

    @staticmethod
    def _coerce(point: PointLike) -> ForecastPoint:
        if isinstance(point, ForecastPoint):
            point.validate()
            return point
        return ForecastPoint.from_dict(point)

    def get_weather(self, point: PointLike) -> WeatherRecord:
        """Resolve one point. Cache-first, deduplicated, rate limited.

        Raises ValidationError, RateLimitExceeded, NetworkError,
        WeatherTimeoutError or ProviderError; failures are never cached.
        """
        fp = self._coerce(point)
        key = WeatherCache.key(fp)
        cached = self.cache.get(key)
        if cached is not None:
            log.debug('[CACHE] hit key=%s', key)
            return cached

        with self._pending_lock:
            pending = self._pending.get(key)
            leader = pending is None
            if leader:
                cached = self.cache.get(key)
                if cached is not None:
                    return cached
                pending = _Pending(event=threading.Event())
                self._pending[key] = pending

        if not leader:
            log.debug('[QUEUE] duplicate wait key=%s', key)
            pending.event.wait()
            if pending.error is not None:
                raise pending.error
            return pending.result

        try:
            record = self._fetch(fp, key)
            pending.result = record
            return record
        except Exception as e:
            pending.error = e
            raise
        finally:
            with self._pending_lock:
                self._pending.pop(key, None)
            pending.event.set()

    def _fetch(self, point: ForecastPoint, key: CacheKey) -> WeatherRecord:
        if self.provider.rate_limited:
            self.rate_limiter.acquire()
        endpoint = choose_endpoint(point.timestamp, self.clock())
        log.debug('[CACHE] miss key=%s endpoint=%s', key, endpoint)
        record = self.provider.fetch(point, endpoint)
        self.cache.put(key, record)
        return record

    def _get_with_retry(self, point: ForecastPoint, index: int) -> Optional[WeatherRecord]:
        for attempt in range(self.max_attempts):
            try:
                return self.get_weather(point)
            except Exception as e:
                if attempt == self.max_attempts - 1:
                    log.warning('[API] point %d failed after %d attempts: %s', index, self.max_attempts, e)
                    return None
                delay = self.backoff_base_s * (2 ** attempt)
                log.info('[API] retry %d/%d for point %d in %.1fs (%s)',
                         attempt + 1, self.max_attempts, index, delay, e)
                self.sleep(delay)
        return None

    def get_weather_batch(self, points: Sequence[PointLike]) -> List[Optional[WeatherRecord]]:
        """Resolve a list of points, preserving order and length.

        Every point is validated before any fetch; a malformed or empty list
        raises ValidationError. After that nothing raises: a point that still
        fails after all retries gets None in its slot.
        """
        if points is None or isinstance(points, (str, bytes, Mapping)) or not isinstance(points, Sequence):
            raise ValidationError('Points must be an array')
        if len(points) == 0:
            raise ValidationError('Points array cannot be empty')
        coerced: List[ForecastPoint] = []
        for i, p in enumerate(points):
            try:
                coerced.append(self._coerce(p))
            except ValidationError as e:
                raise ValidationError(f'Invalid point at index {i}: {e}', fields=e.fields) from e

        results: List[Optional[WeatherRecord]] = [None] * len(coerced)
        with ThreadPoolExecutor(max_workers=self.batch_size, thread_name_prefix='weather-batch') as pool:
            for start in range(0, len(coerced), self.batch_size):
                batch = coerced[start:start + self.batch_size]
                futures = [pool.submit(self._get_with_retry, p, start + j) for j, p in enumerate(batch)]
                for j, fut in enumerate(futures):
                    results[start + j] = fut.result()
                if start + self.batch_size < len(coerced):
                    self.sleep(self.batch_pause_s)

        ok = sum(1 for r in results if r is not None)
        rate = round(100.0 * ok / len(results))
        log.info('[BATCH] weather fetch complete: %d%% (%d/%d)', rate, ok, len(results))
        if rate < 50 and len(results) > 5:
            log.warning('[BATCH] low weather success rate (%d%%); provider may be degraded', rate)
        return results
