import argparse
import asyncio
import dataclasses
import logging
import signal

from dotenv import load_dotenv

from config import ENV_FILE, Config, load_config

# Load configuration from single .env file
load_dotenv(ENV_FILE)

from api.server import build_server, create_app
from sinks.influxdb import InfluxSink
from sources.tibber import TibberFeed
from supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)


def feed_factory(config: Config):
    """Return a callable building a fresh TibberFeed per connection attempt"""
    def make_feed():
        return TibberFeed(
            token=config.tibber_token,
            home_id=config.tibber_home_id,
            endpoint=config.tibber_query_url,
            timeout=config.tibber_timeout
        )
    return make_feed


def log_unhandled(loop, context):
    """Log exceptions nobody awaited; the supervisor heals itself, so keep running"""
    exc = context.get("exception")
    logger.error(f"Unhandled error: {context.get('message')}: {exc!r}")


async def main(config: Config):
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(log_unhandled)

    sink = InfluxSink(
        url=config.influxdb_url,
        token=config.influxdb_token,
        org=config.influxdb_org,
        bucket=config.influxdb_bucket
    )
    sink.connect()

    supervisor = ConnectionSupervisor(feed_factory=feed_factory(config), sink=sink)
    server = build_server(create_app(sink, supervisor), port=config.api_port)

    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    await supervisor.connect()
    server_task = asyncio.create_task(server.serve())
    logger.info(f"API server running on http://0.0.0.0:{config.api_port}")

    await stop.wait()
    logger.info("Shutting down...")
    await supervisor.disconnect()
    sink.close()
    server.should_exit = True
    await server_task


if __name__ == "__main__":
    # Parse command line arguments
    parser = argparse.ArgumentParser(description="Tibber Power Monitor")
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="HTTP port for the API (default: API_PORT or 3000)"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)"
    )
    args = parser.parse_args()

    # Setup logging
    logging.basicConfig(
        level=args.log_level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )

    config = load_config()
    if args.port is not None:
        config = dataclasses.replace(config, api_port=args.port)

    try:
        asyncio.run(main(config))
    except KeyboardInterrupt:
        logger.info("Monitor stopped by user.")
