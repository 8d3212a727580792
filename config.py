"""Startup configuration, read once from the environment"""
import logging
import os
import sys
from dataclasses import dataclass

logger = logging.getLogger(__name__)

ENV_FILE = "tibber-power-monitor.env"


@dataclass(frozen=True)
class Config:
    tibber_token: str
    tibber_home_id: str | None = None
    tibber_query_url: str = "https://api.tibber.com/v1-beta/gql"
    tibber_timeout: float = 5.0
    influxdb_url: str = "http://localhost:8086"
    influxdb_token: str | None = None
    influxdb_org: str = "Home"
    influxdb_bucket: str = "Tibber"
    api_port: int = 3000


def _number(name: str, default, cast):
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.error(f"{name} must be a number, got {raw!r} in {ENV_FILE}")
        sys.exit(1)


def load_config() -> Config:
    """Build the Config with hard fail on misconfiguration"""
    token = os.getenv("TIBBER_TOKEN")
    if not token:
        logger.error(f"Tibber: TIBBER_TOKEN not configured in {ENV_FILE}")
        sys.exit(1)

    influx_ip = os.getenv("INFLUXDB_IP", "localhost")
    influx_port = os.getenv("INFLUXDB_PORT", "8086")
    influx_token = os.getenv("INFLUXDB_TOKEN")
    if not influx_token:
        logger.warning(f"InfluxDB: INFLUXDB_TOKEN not configured in {ENV_FILE}, writes may be rejected")

    return Config(
        tibber_token=token,
        tibber_home_id=os.getenv("TIBBER_HOME_ID") or None,
        tibber_query_url=os.getenv("TIBBER_QUERY_URL") or Config.tibber_query_url,
        tibber_timeout=_number("TIBBER_TIMEOUT", Config.tibber_timeout, float),
        influxdb_url=f"http://{influx_ip}:{influx_port}",
        influxdb_token=influx_token,
        influxdb_org=os.getenv("INFLUXDB_ORG", Config.influxdb_org),
        influxdb_bucket=os.getenv("INFLUXDB_BUCKET", Config.influxdb_bucket),
        api_port=_number("API_PORT", Config.api_port, int),
    )
