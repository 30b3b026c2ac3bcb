"""Exception types raised by the route and weather layers."""
from __future__ import annotations

from typing import Iterable, Optional


class ConfigError(RuntimeError):
    pass


class RouteParseError(ValueError):
    """GPX content could not be turned into a route."""


class WeatherServiceError(Exception):
    pass


class ValidationError(WeatherServiceError, ValueError):
    """Bad input shape or range. Never retried."""

    def __init__(self, message: str, fields: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.fields = list(fields or [])


class RateLimitExceeded(WeatherServiceError):
    def __init__(self, message: str = "Rate limit exceeded. Please try again later.", retry_after_s: float = 0.0):
        super().__init__(message)
        self.retry_after_s = retry_after_s


class NetworkError(WeatherServiceError):
    pass


class WeatherTimeoutError(NetworkError):
    pass


class ProviderError(WeatherServiceError):
    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = int(status_code)

    @property
    def is_transient(self) -> bool:
        return self.status_code >= 500 or self.status_code == 429
