from flask import Flask, jsonify, request, Response
from pathlib import Path
from typing import Dict, Any, Optional, Tuple, List
from datetime import datetime, timezone
import json
import math
import re
import logging
import threading
import time

from sunride.config import Settings, configure_logging
from sunride.errors import (
    ConfigError,
    NetworkError,
    ProviderError,
    RateLimitExceeded,
    RouteParseError,
    ValidationError,
    WeatherServiceError,
    WeatherTimeoutError,
)
from sunride.models import ForecastPoint, RouteData
from sunride.route_sampling import generate_forecast_points, load_gpx, parse_gpx, route_geojson
from sunride.weather import alerts_for, compute_route_weather_summary, forecast_table
from sunride.weather_service import WeatherService

SETTINGS = Settings.from_env()
configure_logging(SETTINGS)
log = logging.getLogger('sunride.app')

app = Flask(__name__)

UPLOAD_DIR = SETTINGS.data_dir
SESSION_FILE = UPLOAD_DIR / 'session_state.json'
MAX_UPLOAD_BYTES = 10 * 1024 * 1024

DEFAULT_INTERVAL_KM = 5.0
DEFAULT_SPEED_KMH = 20.0
INTERVAL_RANGE = (0.1, 50.0)
SPEED_RANGE = (1.0, 100.0)

SESSION_STATE: Dict[str, Any] = {
    "last_gpx_path": "",
    "interval_km": DEFAULT_INTERVAL_KM,
    "avg_speed_kmh": DEFAULT_SPEED_KMH,
    "start_time": "",
}
_SESSION_LOCK = threading.Lock()

_SERVICE: Optional[WeatherService] = None
_SERVICE_LOCK = threading.Lock()


def get_weather_service() -> WeatherService:
    """Build the process-wide WeatherService on first use."""
    global _SERVICE
    with _SERVICE_LOCK:
        if _SERVICE is None:
            _SERVICE = WeatherService.from_settings(SETTINGS)
        return _SERVICE


def set_weather_service(service: Optional[WeatherService]) -> None:
    global _SERVICE
    with _SERVICE_LOCK:
        _SERVICE = service


# -------------------- Error mapping --------------------
def _status_for(e: Exception) -> int:
    if isinstance(e, (ValidationError, RouteParseError)):
        return 400
    if isinstance(e, RateLimitExceeded):
        return 429
    if isinstance(e, WeatherTimeoutError):
        return 504
    if isinstance(e, (NetworkError, ProviderError)):
        return 502
    return 500


@app.errorhandler(WeatherServiceError)
@app.errorhandler(RouteParseError)
def handle_service_error(e: Exception):
    status = _status_for(e)
    log.warning('[API] %s -> %d: %s', type(e).__name__, status, e)
    resp = jsonify({"error": str(e)})
    if isinstance(e, RateLimitExceeded) and e.retry_after_s > 0:
        resp.headers['Retry-After'] = str(int(e.retry_after_s) + 1)
    return resp, status


@app.errorhandler(ConfigError)
def handle_config_error(e: ConfigError):
    log.error('[CONFIG] %s', e)
    return jsonify({"error": str(e)}), 500


# -------------------- Session persistence --------------------
def load_session_state() -> Dict[str, Any]:
    with _SESSION_LOCK:
        try:
            if SESSION_FILE.exists():
                with open(SESSION_FILE, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                if isinstance(data, dict):
                    SESSION_STATE.update(data)
        except (OSError, ValueError):
            log.warning('[SESSION] Corrupted session JSON; starting fresh')
        return dict(SESSION_STATE)


def save_session_state(updates: Dict[str, Any]) -> None:
    with _SESSION_LOCK:
        SESSION_STATE.update({k: v for k, v in updates.items() if v is not None})
        try:
            SESSION_FILE.parent.mkdir(parents=True, exist_ok=True)
            with open(SESSION_FILE, 'w', encoding='utf-8') as f:
                json.dump(SESSION_STATE, f, ensure_ascii=False, indent=2)
            log.info('[SESSION] Saved state')
        except OSError as e:
            log.warning('[SESSION] Save failed: %s', e)


# -------------------- Request parsing --------------------
def _float_arg(name: str, default: float, bounds: Tuple[float, float]) -> float:
    raw = request.args.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValidationError(f"'{name}' must be a number", fields=[name])
    lo, hi = bounds
    if not (lo <= value <= hi):
        raise ValidationError(f"'{name}' must be between {lo} and {hi}", fields=[name])
    return value


def _parse_start_time(raw: Optional[str]) -> datetime:
    if raw is None or raw.strip() == '':
        return datetime.now(timezone.utc).replace(microsecond=0)
    s = raw.strip()
    try:
        seconds: Optional[float] = float(s)
    except ValueError:
        seconds = None
    if seconds is not None:
        if not math.isfinite(seconds):
            raise ValidationError("'start_time' must be a finite number", fields=['start_time'])
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            raise ValidationError("'start_time' is out of range", fields=['start_time'])
    try:
        dt = datetime.fromisoformat(s.replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError("'start_time' must be ISO-8601 or Unix seconds", fields=['start_time'])
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _route_request() -> Tuple[RouteData, List[ForecastPoint], Dict[str, Any]]:
    gpx_path = request.args.get('gpx_path') or load_session_state().get('last_gpx_path')
    if not gpx_path:
        raise ValidationError("No GPX route available; upload one or pass 'gpx_path'", fields=['gpx_path'])
    path = Path(gpx_path)
    if not path.exists():
        raise ValidationError(f"GPX file not found: {gpx_path}", fields=['gpx_path'])
    interval_km = _float_arg('interval_km', DEFAULT_INTERVAL_KM, INTERVAL_RANGE)
    avg_speed = _float_arg('avg_speed_kmh', DEFAULT_SPEED_KMH, SPEED_RANGE)
    start = _parse_start_time(request.args.get('start_time'))

    route = load_gpx(str(path))
    points = generate_forecast_points(route.points, interval_km, start, avg_speed)
    settings = {
        "gpx_path": str(path),
        "interval_km": interval_km,
        "avg_speed_kmh": avg_speed,
        "start_time": start.isoformat(),
    }
    save_session_state({**settings, "last_gpx_path": str(path)})
    return route, points, settings


# -------------------- Routes --------------------
@app.route('/api/upload_gpx', methods=['POST'])
def upload_gpx():
    f = request.files.get('file')
    if not f:
        return jsonify({"error": "No file uploaded"}), 400
    name = f.filename or 'route.gpx'
    if not name.lower().endswith('.gpx'):
        ext = Path(name).suffix.lower() or '(none)'
        return jsonify({"error": f"Invalid file type. Expected .gpx but received {ext}"}), 400
    data = f.read()
    if len(data) == 0:
        return jsonify({"error": "File is empty"}), 400
    if len(data) > MAX_UPLOAD_BYTES:
        size_mb = len(data) / (1024 * 1024)
        return jsonify({"error": f"File is too large ({size_mb:.2f}MB). Maximum size is 10MB"}), 400
    try:
        text = data.decode('utf-8')
    except UnicodeDecodeError:
        return jsonify({"error": "GPX file must be UTF-8 encoded"}), 400

    route = parse_gpx(text)

    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    safe_name = f"uploaded_{int(time.time() * 1000)}.gpx"
    out_path = UPLOAD_DIR / safe_name
    out_path.write_bytes(data)
    log.info('[UPLOAD] Saved %s (%d points)', out_path, len(route.points))
    save_session_state({"last_gpx_path": str(out_path)})
    return jsonify({"path": str(out_path), "name": safe_name, "route": route.summary()})


@app.route('/api/forecast_points')
def api_forecast_points():
    route, points, settings = _route_request()
    return jsonify({
        "route": route.summary(),
        "geojson": route_geojson(route.points),
        "settings": settings,
        "points": [p.to_dict() for p in points],
    })


@app.route('/api/weather', methods=['POST'])
def api_weather_batch():
    body = request.get_json(silent=True)
    points = body.get('points') if isinstance(body, dict) else None
    if not isinstance(points, list) or len(points) == 0:
        return jsonify({"error": "Invalid request. Points array is required."}), 400
    records = get_weather_service().get_weather_batch(points)
    return jsonify({"success": True, "data": [r.to_dict() if r is not None else None for r in records]})


@app.route('/api/weather', methods=['GET'])
def api_weather_point():
    raw: Dict[str, Any] = {}
    for name in ('lat', 'lon', 'timestamp', 'distance'):
        val = request.args.get(name)
        try:
            raw[name] = float(val) if val is not None else None
        except ValueError:
            raw[name] = None
    if any(v is None for v in raw.values()):
        return jsonify({"error": "Invalid parameters. lat, lon, timestamp, and distance are required and must be numbers."}), 400
    record = get_weather_service().get_weather(raw)
    return jsonify({"success": True, "data": record.to_dict()})


@app.route('/api/route_forecast')
def api_route_forecast():
    route, points, settings = _route_request()
    records = get_weather_service().get_weather_batch(points)
    return jsonify({
        "route": route.summary(),
        "geojson": route_geojson(route.points),
        "settings": settings,
        "points": [p.to_dict() for p in points],
        "weather": [r.to_dict() if r is not None else None for r in records],
        "alerts": [alerts_for(r) for r in records],
        "summary": compute_route_weather_summary(records),
    })


@app.route('/api/export.csv')
def api_export_csv():
    route, points, _ = _route_request()
    records = get_weather_service().get_weather_batch(points)
    df = forecast_table(points, records)
    filename = f"{re.sub(r'[^A-Za-z0-9_-]+', '_', route.name).strip('_') or 'route'}_forecast.csv"
    return Response(
        df.to_csv(index=False),
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename="{filename}"'},
    )


@app.route('/api/session', methods=['GET'])
def api_session():
    """Return persisted session state. Includes a convenience flag if the GPX file still exists."""
    st = load_session_state()
    p = st.get('last_gpx_path')
    exists = bool(p) and Path(p).exists()
    return jsonify({**st, 'gpx_exists': exists})


def main() -> None:
    SETTINGS.validate()
    st = load_session_state()
    if st.get('last_gpx_path'):
        log.info('[SESSION] Restored previous session gpx=%s', st['last_gpx_path'])
    get_weather_service()
    app.run(host='0.0.0.0', port=SETTINGS.port, debug=SETTINGS.debug, use_reloader=False)


if __name__ == '__main__':
    main()
