"""InfluxDB egress module - persists power readings and answers range queries"""
import logging
import math
import re
from datetime import datetime, timezone

from influxdb_client import InfluxDBClient, Point, WritePrecision
from influxdb_client.client.write_api import WriteOptions

from sinks.base import SinkUnavailableError
from sources.base import PowerReading

logger = logging.getLogger(__name__)

MEASUREMENT = "Power"
FIELD = "value"
AGGREGATIONS = ("max", "mean", "min")

_INTERVAL_RE = re.compile(r"^(\d+)([smh])$")


def interval_to_hours(interval: str) -> float:
    """Convert a simple Flux duration (30s, 5m, 1h) to hours. Defaults to 5m."""
    match = _INTERVAL_RE.match(interval)
    if not match:
        return 1 / 12
    value, unit = int(match.group(1)), match.group(2)
    if unit == "s":
        return value / 3600
    if unit == "m":
        return value / 60
    return float(value)


def flux_time(value: datetime | str) -> str:
    """Render a datetime as an RFC3339 UTC literal usable in range()."""
    if isinstance(value, str):
        return value
    if value.tzinfo is None:
        value = value.astimezone()
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class InfluxSink:
    """
    Sample sink backed by InfluxDB 2.x.

    Writes go through the client's batching write API, so write() never
    blocks the event loop. Query methods are blocking and are meant to be
    run in a worker thread.
    """

    def __init__(self, url: str, token: str | None, org: str, bucket: str):
        self.url = url
        self.token = token
        self.org = org
        self.bucket = bucket
        self.client = None
        self.write_api = None
        self.query_api = None
        self.connected = False

    def connect(self) -> None:
        try:
            self.client = InfluxDBClient(url=self.url, token=self.token, org=self.org)
            self.write_api = self.client.write_api(
                write_options=WriteOptions(batch_size=1, flush_interval=1_000),
                error_callback=self._on_write_error
            )
            self.query_api = self.client.query_api()
            self.connected = True
            logger.info(f"InfluxDB: Connected to {self.url} (bucket {self.bucket})")
        except Exception as e:
            logger.error(f"InfluxDB: Connection failed: {e}")
            self.connected = False

    def close(self) -> None:
        """Flush pending writes and close the client."""
        if not self.connected:
            return
        self.connected = False
        try:
            self.write_api.close()
            self.client.close()
            logger.info("InfluxDB: Disconnected")
        except Exception as e:
            logger.warning(f"InfluxDB: Error while closing: {e}")

    def _on_write_error(self, conf, data, exception) -> None:
        logger.error(f"InfluxDB: Write failed, sample dropped: {exception}")

    def write(self, reading: PowerReading) -> None:
        """Queue one Power sample. Errors are logged, never raised."""
        if not self.connected or self.write_api is None:
            logger.debug("InfluxDB: Not connected, skipping write")
            return

        if not math.isfinite(reading.power_watts):
            logger.warning(f"InfluxDB: Invalid power value: {reading.power_watts}")
            return

        try:
            point = (
                Point(MEASUREMENT)
                .field(FIELD, float(reading.power_watts))
                .time(reading.timestamp or datetime.now(timezone.utc), WritePrecision.MS)
            )
            self.write_api.write(bucket=self.bucket, org=self.org, record=point)
        except Exception as e:
            logger.error(f"InfluxDB: Write error: {e}")

    # =========================================================================
    # Query methods
    # =========================================================================

    def _require_connection(self) -> None:
        if not self.connected or self.query_api is None:
            raise SinkUnavailableError("InfluxDB not connected")

    def _source(self, start, stop) -> str:
        return f'''
            from(bucket: "{self.bucket}")
                |> range(start: {flux_time(start)}, stop: {flux_time(stop)})
                |> filter(fn: (r) => r._measurement == "{MEASUREMENT}")
                |> filter(fn: (r) => r._field == "{FIELD}")'''

    def _query_points(self, query: str, skip_invalid: bool = False) -> list[dict]:
        tables = self.query_api.query(query, org=self.org)
        results = []
        for table in tables:
            for record in table.records:
                value = record.get_value()
                if skip_invalid and (value is None or (isinstance(value, float) and math.isnan(value))):
                    continue
                results.append({"value": value, "timestamp": record.get_time()})
        return results

    def get_current_power(self) -> dict | None:
        """Latest power sample from the past hour."""
        self._require_connection()
        query = f'''
            from(bucket: "{self.bucket}")
                |> range(start: -1h)
                |> filter(fn: (r) => r._measurement == "{MEASUREMENT}")
                |> filter(fn: (r) => r._field == "{FIELD}")
                |> last()
        '''
        results = self._query_points(query)
        return results[0] if results else None

    def get_min_max_power(self, start, stop) -> dict:
        self._require_connection()
        query = f'''
            minData = {self._source(start, stop)}
                |> min()
                |> set(key: "stat", value: "min")

            maxData = {self._source(start, stop)}
                |> max()
                |> set(key: "stat", value: "max")

            union(tables: [minData, maxData])
        '''
        stats = {"min": None, "max": None}
        for table in self.query_api.query(query, org=self.org):
            for record in table.records:
                stat = record.values.get("stat")
                if stat in stats:
                    stats[stat] = record.get_value()
        return stats

    def get_power_history(self, start, stop, interval: str = "1m", aggregation: str = "max") -> list[dict]:
        """Power in W, aggregated per window with max, mean or min."""
        self._require_connection()
        agg_fn = aggregation if aggregation in AGGREGATIONS else "max"
        query = f'''{self._source(start, stop)}
                |> aggregateWindow(every: {interval}, fn: {agg_fn}, createEmpty: false)
                |> yield(name: "{agg_fn}")
        '''
        return self._query_points(query)

    def get_energy_history(self, start, stop, interval: str = "1h") -> list[dict]:
        """Energy in kWh per window: mean power in kW integrated over hours."""
        self._require_connection()
        query = f'''{self._source(start, stop)}
                |> aggregateWindow(every: {interval}, fn: mean, createEmpty: false)
                |> map(fn: (r) => ({{ r with _value: r._value / 1000.0 }}))
                |> group(columns: ["_start", "_stop", "_field", "_measurement"])
                |> integral(unit: 1h)
                |> yield(name: "mean")
        '''
        return self._query_points(query, skip_invalid=True)

    def get_cumulative_energy(self, start, stop, interval: str = "5m") -> list[dict]:
        """Running energy total in kWh at the end of every window."""
        self._require_connection()
        query = f'''{self._source(start, stop)}
                |> aggregateWindow(every: {interval}, fn: mean, createEmpty: false)
                |> map(fn: (r) => ({{ r with _value: r._value / 1000.0 }}))
                |> cumulativeSum()
                |> map(fn: (r) => ({{ r with _value: r._value * {interval_to_hours(interval)} }}))
        '''
        return self._query_points(query, skip_invalid=True)

    def get_daily_energy_history(self, start, stop) -> list[dict]:
        """Energy in kWh per calendar day (partial days included)."""
        self._require_connection()
        query = f'''{self._source(start, stop)}
                |> map(fn: (r) => ({{ r with _value: r._value / 1000.0 }}))
                |> aggregateWindow(every: 1d, fn: (tables=<-, column) => tables |> integral(unit: 1h), createEmpty: false)
        '''
        results = self._query_points(query, skip_invalid=True)
        logger.debug(f"InfluxDB: Daily energy query returned {len(results)} results")
        return results
