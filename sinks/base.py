"""Base definitions for sample sinks"""
from typing import Protocol

from sources.base import PowerReading


class SinkUnavailableError(Exception):
    """The time-series store has no usable connection."""


class SampleSink(Protocol):
    """
    Protocol for egress sinks that persist power readings.

    write() must return immediately; the supervisor calls it from the
    event loop and never awaits an acknowledgement.
    """

    def write(self, reading: PowerReading) -> None:
        ...

    def close(self) -> None:
        ...
