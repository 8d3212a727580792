"""Base definitions for power feeds - data contracts and protocols"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)

# Lifecycle events every feed connection may emit
FEED_EVENTS = ("connected", "disconnected", "error", "data")


class FeedAuthError(Exception):
    """Upstream rejected our credentials (bad or revoked token)."""


@dataclass
class PowerReading:
    """
    Uniform data structure for power measurements from the feed.

    Attributes:
        power_watts: Power in Watts. Positive = consuming.
        timestamp: Measurement time, optional. None means "time of receipt".
    """
    power_watts: float
    timestamp: datetime | None = None


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO8601 timestamp, returning None when it can't be used."""
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        logger.debug(f"Unparseable timestamp {value!r}, using time of receipt")
        return None


def parse_reading(payload: Any) -> PowerReading | None:
    """
    Build a PowerReading from a raw feed payload.

    Returns None when power is missing or not a real number. Strings are
    rejected even when they look numeric.
    """
    if not isinstance(payload, dict):
        return None

    power = payload.get("power")
    if isinstance(power, bool) or not isinstance(power, (int, float)):
        return None
    if not math.isfinite(power):
        return None

    return PowerReading(
        power_watts=float(power),
        timestamp=parse_timestamp(payload.get("timestamp"))
    )


class FeedConnection(Protocol):
    """
    Protocol for one streaming session to the upstream provider.

    Uses Protocol for duck typing - implementations don't need to inherit,
    just implement the methods with matching signatures. A connection
    must also offer close() or disconnect(); the supervisor probes for
    whichever exists.
    """

    def on(self, event: str, handler: Callable[..., None]) -> None:
        """Register a handler for one of FEED_EVENTS."""
        ...

    def remove_all_listeners(self) -> None:
        """Detach every registered handler."""
        ...

    def connect(self) -> None:
        """
        Start the session without blocking.

        Progress is reported through events only. May raise if the
        session can't even be started.
        """
        ...
