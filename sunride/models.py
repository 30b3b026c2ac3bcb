"""Value types shared by the route sampler, the weather service and the web layer."""
from __future__ import annotations

import math
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from sunride.errors import ValidationError


@dataclass(frozen=True)
class RoutePoint:
    lat: float
    lon: float
    elevation: float = 0.0
    distance_from_start: float = 0.0  # km
    time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lat": self.lat,
            "lon": self.lon,
            "elevation": self.elevation,
            "distance": self.distance_from_start,
            "time": self.time.isoformat() if self.time else None,
        }


@dataclass
class RouteData:
    """Parsed route plus the summary statistics computed while parsing."""
    name: str
    points: List[RoutePoint]
    total_distance_km: float = 0.0
    elevation_gain_m: float = 0.0
    elevation_loss_m: float = 0.0
    max_elevation_m: float = 0.0
    min_elevation_m: float = 0.0

    def summary(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "points": len(self.points),
            "total_distance_km": self.total_distance_km,
            "elevation_gain_m": self.elevation_gain_m,
            "elevation_loss_m": self.elevation_loss_m,
            "max_elevation_m": self.max_elevation_m,
            "min_elevation_m": self.min_elevation_m,
        }


def _is_number(v: Any) -> bool:
    # bool is an int subclass; reject it explicitly
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return False
    return math.isfinite(v)


@dataclass(frozen=True)
class ForecastPoint:
    lat: float
    lon: float
    timestamp: int  # Unix seconds
    distance_from_start: float  # km
    elevation: float = 0.0
    index: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lat": self.lat,
            "lon": self.lon,
            "elevation": self.elevation,
            "distance": self.distance_from_start,
            "timestamp": self.timestamp,
            "index": self.index,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ForecastPoint":
        """Build a point from a client payload, validating shape and ranges.

        Accepts either ``distance`` or ``distance_from_start``; ``elevation`` and
        ``index`` are optional.
        """
        if not isinstance(raw, Mapping):
            raise ValidationError("Invalid point data: expected an object")
        distance = raw.get("distance", raw.get("distance_from_start"))
        values = {
            "lat": raw.get("lat"),
            "lon": raw.get("lon"),
            "timestamp": raw.get("timestamp"),
            "distance": distance,
        }
        bad = [k for k, v in values.items() if not _is_number(v)]
        if bad:
            raise ValidationError(
                "Invalid point data. Each point must have lat, lon, timestamp, and distance as numbers.",
                fields=bad,
            )
        elevation = raw.get("elevation", 0.0)
        index = raw.get("index", 0)
        point = cls(
            lat=float(values["lat"]),
            lon=float(values["lon"]),
            timestamp=int(values["timestamp"]),
            distance_from_start=float(distance),
            elevation=float(elevation) if _is_number(elevation) else 0.0,
            index=int(index) if _is_number(index) else 0,
        )
        point.validate()
        return point

    def validate(self) -> None:
        for name in ("lat", "lon", "timestamp", "distance_from_start"):
            if not _is_number(getattr(self, name)):
                raise ValidationError(f"Invalid point data: {name} must be a number", fields=[name])
        if not (-90.0 <= self.lat <= 90.0) or not (-180.0 <= self.lon <= 180.0):
            raise ValidationError(
                "Invalid coordinates. Latitude must be between -90 and 90, longitude between -180 and 180.",
                fields=["lat", "lon"],
            )
        if self.distance_from_start < 0:
            raise ValidationError("Invalid point data: distance must not be negative", fields=["distance"])


@dataclass(frozen=True)
class WeatherRecord:
    temperature: float  # °C
    feels_like: float  # °C
    humidity: float  # %
    pressure: float  # hPa
    wind_speed: float  # m/s
    wind_direction: float  # degrees
    wind_gust: float  # m/s
    precipitation: float  # mm
    precipitation_probability: float  # 0..1
    cloud_cover: float  # %
    visibility: float  # m
    condition_code: int
    description: str
    icon: str
    uv_index: Optional[float] = None
    observed_at: Optional[int] = None  # provider timestamp, Unix seconds

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CacheEntry:
    record: WeatherRecord
    inserted_at_ms: int
