"""Connection supervisor - keeps one live feed session and recovers from failures"""
import asyncio
import enum
import functools
import inspect
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Callable

from sinks.base import SampleSink
from sources.base import FEED_EVENTS, FeedAuthError, FeedConnection, parse_reading

logger = logging.getLogger(__name__)

# Teardown grace period before opening a new session (seconds)
GRACE_PERIOD = 1.0
# Health check cadence and staleness threshold (seconds)
HEALTH_CHECK_INTERVAL = 2 * 60
STALE_DATA_TIMEOUT = 3 * 60


class Phase(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    LIVE = "live"
    RECONNECT_WAIT = "reconnect_wait"
    BACKOFF = "backoff"


@dataclass(frozen=True)
class BackoffPolicy:
    """Reconnect delays in seconds: floor * factor^(attempt-1), capped."""
    floor: float = 5.0
    factor: float = 1.5
    cap: float = 60.0
    max_attempts: int = 10
    cooldown: float = 5 * 60.0

    def delay(self, attempt: int) -> float:
        return min(self.floor * self.factor ** (attempt - 1), self.cap)


@dataclass
class SupervisorState:
    current_epoch: int | None = None
    phase: Phase = Phase.IDLE
    is_connected: bool = False
    reconnect_attempts: int = 0
    reconnect_delay: float = 5.0
    last_data_time: float | None = None
    pending_reconnect_timer: asyncio.TimerHandle | None = None
    health_check_timer: asyncio.TimerHandle | None = None


class ConnectionSupervisor:
    """
    Owns at most one current feed connection.

    Every connection attempt gets a fresh epoch. Listeners are bound to
    the epoch they were registered under, and events carrying any other
    epoch are dropped, so a superseded session can never write samples
    or move the state machine even if it delivers events after its
    listeners were removed.
    """

    def __init__(
        self,
        feed_factory: Callable[[], FeedConnection],
        sink: SampleSink,
        policy: BackoffPolicy = BackoffPolicy(),
        clock: Callable[[], float] = time.monotonic,
        grace_period: float = GRACE_PERIOD,
        health_check_interval: float = HEALTH_CHECK_INTERVAL,
        stale_timeout: float = STALE_DATA_TIMEOUT
    ):
        self.feed_factory = feed_factory
        self.sink = sink
        self.policy = policy
        self.clock = clock
        self.grace_period = grace_period
        self.health_check_interval = health_check_interval
        self.stale_timeout = stale_timeout
        self.state = SupervisorState(reconnect_delay=policy.floor)
        self.connection = None
        self._epochs = itertools.count(1)
        self._generation = 0
        self._connect_task = None
        self._closed_at = None
        self._shutdown = False

    # =========================================================================
    # Public API
    # =========================================================================

    async def connect(self) -> None:
        """Tear down the current session (if any) and start a new one."""
        self._generation += 1
        generation = self._generation

        await self._teardown()
        # Let the last closed session release upstream resources first,
        # even when an earlier connect() did the closing
        if self._closed_at is not None:
            remaining = self._closed_at + self.grace_period - asyncio.get_running_loop().time()
            if remaining > 0:
                await asyncio.sleep(remaining)

        # A newer connect() or a shutdown won the race during the grace period
        if generation != self._generation or self._shutdown:
            return

        epoch = next(self._epochs)
        self.state.current_epoch = epoch
        self.state.phase = Phase.CONNECTING
        logger.info(f"Supervisor: Connecting (epoch {epoch})...")

        try:
            connection = self.feed_factory()
            self.connection = connection
            for event in FEED_EVENTS:
                connection.on(event, functools.partial(self._dispatch, epoch, event))
            connection.connect()
        except Exception as e:
            logger.error(f"Supervisor: Failed to create feed connection: {e}")
            self._enter_reconnect_wait()

    def reconnect(self) -> None:
        """Force a full reconnect from outside the event handlers."""
        if self._shutdown:
            return
        self._spawn_connect()

    async def disconnect(self) -> None:
        """Stop for good: cancel timers, drop the session, never reconnect."""
        self._shutdown = True
        self._generation += 1
        task = self._connect_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        await self._teardown()
        self.state.phase = Phase.IDLE
        logger.info("Supervisor: Stopped")

    def status(self) -> dict:
        last = self.state.last_data_time
        return {
            "state": self.state.phase.value,
            "connected": self.state.is_connected,
            "epoch": self.state.current_epoch,
            "reconnect_attempts": self.state.reconnect_attempts,
            "seconds_since_data": None if last is None else round(self.clock() - last, 1),
        }

    # =========================================================================
    # Event handling
    # =========================================================================

    def _dispatch(self, epoch: int, event: str, *args) -> None:
        if epoch != self.state.current_epoch:
            logger.debug(f"Supervisor: Ignoring '{event}' from superseded epoch {epoch}")
            return

        if event == "connected":
            self._on_connected()
        elif event == "disconnected":
            self._on_disconnected(*args)
        elif event == "error":
            self._on_error(*args)
        elif event == "data":
            self._on_data(*args)

    def _on_connected(self) -> None:
        logger.info("Supervisor: Feed connected")
        state = self.state
        state.phase = Phase.LIVE
        state.is_connected = True
        state.reconnect_attempts = 0
        state.reconnect_delay = self.policy.floor
        state.last_data_time = self.clock()
        self._cancel_reconnect_timer()
        self._start_health_check()

    def _on_disconnected(self, reason=None) -> None:
        logger.warning(f"Supervisor: Feed disconnected: {reason or 'unknown reason'}")
        self._enter_reconnect_wait()

    def _on_error(self, error=None) -> None:
        if isinstance(error, FeedAuthError):
            logger.error(f"Supervisor: Feed rejected credentials, will keep retrying: {error}")
        else:
            logger.error(f"Supervisor: Feed error: {error}")

    def _on_data(self, payload=None) -> None:
        self.state.last_data_time = self.clock()

        reading = parse_reading(payload)
        if reading is None:
            logger.warning(f"Supervisor: Dropping sample with invalid power: {payload!r}")
            return

        logger.info(f"[{reading.timestamp}] Power: {reading.power_watts} W")
        try:
            self.sink.write(reading)
        except Exception as e:
            logger.error(f"Supervisor: Sample sink write failed: {e}")

    # =========================================================================
    # Reconnect and health check timers
    # =========================================================================

    def _enter_reconnect_wait(self) -> None:
        state = self.state
        state.is_connected = False
        self._stop_health_check()

        if state.pending_reconnect_timer is not None:
            return

        loop = asyncio.get_running_loop()
        epoch = state.current_epoch

        if state.reconnect_attempts >= self.policy.max_attempts:
            logger.error(
                f"Supervisor: Max reconnect attempts ({self.policy.max_attempts}) reached. "
                f"Waiting {self.policy.cooldown:.0f}s before trying again..."
            )
            state.phase = Phase.BACKOFF
            state.pending_reconnect_timer = loop.call_later(
                self.policy.cooldown, self._on_cooldown_elapsed, epoch
            )
            return

        state.reconnect_attempts += 1
        state.reconnect_delay = self.policy.delay(state.reconnect_attempts)
        state.phase = Phase.RECONNECT_WAIT
        logger.info(
            f"Supervisor: Reconnecting in {state.reconnect_delay:.1f}s "
            f"(attempt {state.reconnect_attempts}/{self.policy.max_attempts})..."
        )
        state.pending_reconnect_timer = loop.call_later(
            state.reconnect_delay, self._on_reconnect_timer, epoch
        )

    def _on_reconnect_timer(self, epoch: int | None) -> None:
        if self._shutdown or epoch != self.state.current_epoch:
            return
        self.state.pending_reconnect_timer = None
        self._spawn_connect()

    def _on_cooldown_elapsed(self, epoch: int | None) -> None:
        if self._shutdown or epoch != self.state.current_epoch:
            return
        self.state.pending_reconnect_timer = None
        self.state.reconnect_attempts = 0
        self.state.reconnect_delay = self.policy.floor
        self._spawn_connect()

    def _start_health_check(self) -> None:
        self._stop_health_check()
        self.state.health_check_timer = asyncio.get_running_loop().call_later(
            self.health_check_interval, self._on_health_check, self.state.current_epoch
        )

    def _stop_health_check(self) -> None:
        if self.state.health_check_timer is not None:
            self.state.health_check_timer.cancel()
            self.state.health_check_timer = None

    def _on_health_check(self, epoch: int | None) -> None:
        if self._shutdown or epoch != self.state.current_epoch:
            return
        self.state.health_check_timer = None

        since_data = self.clock() - (self.state.last_data_time or 0)
        if since_data > self.stale_timeout:
            logger.warning(f"Supervisor: No data received for {since_data:.0f}s, forcing reconnect...")
            self._spawn_connect()
            return

        self._start_health_check()

    def _cancel_reconnect_timer(self) -> None:
        if self.state.pending_reconnect_timer is not None:
            self.state.pending_reconnect_timer.cancel()
            self.state.pending_reconnect_timer = None

    def _spawn_connect(self) -> None:
        self._connect_task = asyncio.get_running_loop().create_task(self.connect())

    # =========================================================================
    # Teardown
    # =========================================================================

    async def _teardown(self) -> None:
        """
        Retire the current epoch and close the current connection, if any.

        Order: timers, listeners, epoch, close. The close time is recorded;
        connect() waits out the grace period from it, shutdown skips it.
        """
        self._stop_health_check()
        self._cancel_reconnect_timer()
        self.state.is_connected = False

        old = self.connection
        self.connection = None
        if old is None:
            self.state.current_epoch = None
            return

        try:
            old.remove_all_listeners()
        except Exception as e:
            logger.warning(f"Supervisor: Error detaching listeners: {e}")

        self.state.current_epoch = None

        try:
            closer = getattr(old, "close", None) or getattr(old, "disconnect", None)
            if callable(closer):
                result = closer()
                if inspect.isawaitable(result):
                    await result
        except Exception as e:
            logger.warning(f"Supervisor: Error closing old connection: {e}")

        self._closed_at = asyncio.get_running_loop().time()
