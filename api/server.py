"""HTTP query surface - JSON endpoints over the InfluxDB sink"""
import asyncio
import contextlib
import logging
import re
from datetime import datetime, timedelta, timezone

import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

# Flux duration literal, e.g. 30s, 5m, 1h, 1d, 1mo
INTERVAL_RE = re.compile(r"^\d+(ns|us|ms|s|m|h|d|w|mo|y)$")

RANGES = {
    "5m": timedelta(minutes=5),
    "1h": timedelta(hours=1),
    "3h": timedelta(hours=3),
    "12h": timedelta(hours=12),
    "24h": timedelta(hours=24),
}


class BadRequest(Exception):
    """Invalid query parameters, reported as HTTP 400."""


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def parse_time(name: str, value: str | None) -> datetime:
    if not value:
        raise BadRequest("start and stop parameters are required (ISO 8601 format)")
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise BadRequest(f"{name} must be an ISO 8601 timestamp, got {value!r}")


def check_interval(interval: str) -> str:
    if not INTERVAL_RE.match(interval):
        raise BadRequest(f"Invalid interval {interval!r}. Use a duration like 1m, 15m or 1h")
    return interval


def local_now() -> datetime:
    return datetime.now().astimezone()


def start_of_today(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def create_app(sink, supervisor=None) -> FastAPI:
    """
    Build the API app.

    Args:
        sink: InfluxSink (or anything with the same query methods)
        supervisor: ConnectionSupervisor reported by /api/health, optional
    """
    app = FastAPI(title="Tibber Power Monitor")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(BadRequest)
    async def bad_request_handler(request: Request, exc: BadRequest):
        return error_response(400, str(exc))

    async def query(method, *args) -> dict:
        """Run a blocking sink query in a thread, wrapping the result."""
        data = await asyncio.to_thread(method, *args)
        return {"success": True, "data": data}

    @app.middleware("http")
    async def store_errors(request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"API: {request.url.path} failed: {e}")
            return error_response(500, str(e))

    @app.get("/api/current")
    async def current():
        data = await asyncio.to_thread(sink.get_current_power)
        return {"success": True, "data": data or {"value": None, "timestamp": None}}

    @app.get("/api/power/history")
    async def power_history(start: str | None = None, stop: str | None = None,
                            interval: str = "1m", aggregation: str = "max"):
        start_dt, stop_dt = parse_time("start", start), parse_time("stop", stop)
        return await query(sink.get_power_history, start_dt, stop_dt, check_interval(interval), aggregation)

    @app.get("/api/energy/history")
    async def energy_history(start: str | None = None, stop: str | None = None, interval: str = "1h"):
        start_dt, stop_dt = parse_time("start", start), parse_time("stop", stop)
        return await query(sink.get_energy_history, start_dt, stop_dt, check_interval(interval))

    @app.get("/api/power")
    async def power(range_: str = Query("1h", alias="range"), interval: str = "1m"):
        if range_ not in RANGES:
            raise BadRequest(f"Invalid range. Must be one of: {', '.join(RANGES)}")
        check_interval(interval)

        stop = datetime.now(timezone.utc)
        start = stop - RANGES[range_]
        logger.info(f"API: Fetching power data: range={range_}, interval={interval}")
        data = await asyncio.to_thread(sink.get_power_history, start, stop, interval)
        return {
            "success": True,
            "data": data,
            "meta": {
                "range": range_,
                "interval": interval,
                "start": start.isoformat(),
                "stop": stop.isoformat(),
                "count": len(data),
            },
        }

    # Convenience endpoints with common time ranges

    @app.get("/api/power/today")
    async def power_today():
        now = local_now()
        return await query(sink.get_power_history, start_of_today(now), now, "5m")

    @app.get("/api/power/today/1m")
    async def power_today_1m():
        now = local_now()
        return await query(sink.get_power_history, start_of_today(now), now, "1m")

    @app.get("/api/power/today/minmax")
    async def power_today_minmax():
        now = local_now()
        return await query(sink.get_min_max_power, start_of_today(now), now)

    @app.get("/api/power/week")
    async def power_week():
        now = local_now()
        return await query(sink.get_power_history, now - timedelta(days=7), now, "1h")

    @app.get("/api/energy/today")
    async def energy_today():
        now = local_now()
        return await query(sink.get_energy_history, start_of_today(now), now, "15m")

    @app.get("/api/energy/today/hourly")
    async def energy_today_hourly():
        now = local_now()
        return await query(sink.get_energy_history, start_of_today(now), now, "1h")

    @app.get("/api/energy/today/1m")
    async def energy_today_1m():
        now = local_now()
        return await query(sink.get_energy_history, start_of_today(now), now, "1m")

    @app.get("/api/energy/today/cumulative")
    async def energy_today_cumulative():
        now = local_now()
        return await query(sink.get_cumulative_energy, start_of_today(now), now, "5m")

    @app.get("/api/energy/week")
    async def energy_week():
        now = local_now()
        return await query(sink.get_energy_history, now - timedelta(days=7), now, "1h")

    @app.get("/api/energy/daily/12months")
    async def energy_daily_12months():
        # First day of the same month last year, up to the last full day
        stop = start_of_today(local_now())
        start = stop.replace(year=stop.year - 1, day=1)
        logger.info(f"API: Fetching daily energy data from {start.isoformat()} to {stop.isoformat()}")
        return await query(sink.get_daily_energy_history, start, stop)

    @app.get("/api/health")
    async def health():
        body = {
            "success": True,
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if supervisor is not None:
            body["feed"] = supervisor.status()
        return body

    return app


class ApiServer(uvicorn.Server):
    """uvicorn server that leaves SIGINT/SIGTERM to the monitor's own handlers."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    def install_signal_handlers(self) -> None:
        pass


def build_server(app: FastAPI, port: int, host: str = "0.0.0.0") -> ApiServer:
    config = uvicorn.Config(app, host=host, port=port, log_level="warning")
    return ApiServer(config)
