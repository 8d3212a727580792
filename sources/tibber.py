"""Tibber feed module - one GraphQL WebSocket session emitting lifecycle events"""
import asyncio
import json
import logging
from collections import defaultdict
from typing import Callable

import requests
import websockets

from sources.base import FEED_EVENTS, FeedAuthError

logger = logging.getLogger(__name__)


class TibberFeed:
    """
    Tibber Pulse live measurement feed.

    Each instance is a single session: HTTP bootstrap, WebSocket
    subscription, then data until the session ends. Progress is reported
    through 'connected', 'disconnected', 'error' and 'data' events.
    Reconnecting is the caller's job; a new session needs a new instance.
    """

    def __init__(
        self,
        token: str,
        home_id: str | None = None,
        endpoint: str = "https://api.tibber.com/v1-beta/gql",
        user_agent: str = "Tibber-Power-Monitor/0.1.0",
        timeout: float = 5.0
    ):
        """
        Initialize Tibber feed.

        Args:
            token: Tibber API token
            home_id: Home to subscribe to. Discovered when None.
            endpoint: GraphQL HTTP endpoint for bootstrap
            user_agent: User-Agent header for requests
            timeout: Seconds to wait for bootstrap and connection_ack
        """
        self.token = token
        self.home_id = home_id
        self.endpoint = endpoint
        self.user_agent = user_agent
        self.timeout = timeout
        self.wss_url = None
        self._listeners = defaultdict(list)
        self._task = None
        self._closed = False

    def on(self, event: str, handler: Callable[..., None]) -> None:
        if event not in FEED_EVENTS:
            raise ValueError(f"Unknown feed event: {event}")
        self._listeners[event].append(handler)

    def remove_all_listeners(self) -> None:
        self._listeners.clear()

    def emit(self, event: str, *args) -> None:
        for handler in list(self._listeners.get(event, ())):
            try:
                handler(*args)
            except Exception:
                logger.exception(f"Tibber API: '{event}' handler failed")

    def connect(self) -> None:
        """Start the session on the running event loop."""
        if self._task is not None:
            raise RuntimeError("TibberFeed sessions can't be restarted")
        self._task = asyncio.get_running_loop().create_task(self._run())

    def close(self) -> None:
        """Stop the session. No 'disconnected' event follows a close."""
        self._closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def _bootstrap(self) -> None:
        """
        Phase 1: HTTP Bootstrap (blocking, run in a thread).
        Fetch the WebSocket URL and resolve the home with a real-time meter.
        """
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "User-Agent": self.user_agent
        }

        query = """
        {
          viewer {
            websocketSubscriptionUrl
            homes {
              id
              appNickname
              features {
                realTimeConsumptionEnabled
              }
            }
          }
        }
        """

        response = requests.post(
            self.endpoint,
            json={"query": query},
            headers=headers,
            timeout=self.timeout
        )
        if response.status_code in (401, 403):
            raise FeedAuthError(f"Tibber API rejected token (HTTP {response.status_code})")
        response.raise_for_status()
        data = response.json()

        viewer = (data.get('data') or {}).get('viewer') or {}
        self.wss_url = viewer.get('websocketSubscriptionUrl')
        homes = viewer.get('homes') or []

        if not self.wss_url:
            raise ConnectionError("Tibber API: No WebSocket URL received.")

        if self.home_id:
            if not any(home.get('id') == self.home_id for home in homes):
                logger.warning(f"Tibber API: Configured home {self.home_id} not listed for this token")
            return

        # Find the first home with an active Pulse
        for home in homes:
            if (home.get('features') or {}).get('realTimeConsumptionEnabled'):
                self.home_id = home['id']
                logger.info(f"Found home: {home.get('appNickname') or 'Home'} ({self.home_id})")
                return

        raise ConnectionError("Tibber API: No home with Pulse found (realTimeConsumptionEnabled=True).")

    async def _run(self) -> None:
        reason = "session ended"
        try:
            await asyncio.to_thread(self._bootstrap)
            reason = await self._stream()
        except asyncio.CancelledError:
            raise
        except websockets.ConnectionClosed as e:
            logger.warning(f"Tibber API: Connection closed: {e}")
            reason = f"connection closed: {e}"
        except Exception as e:
            self.emit("error", e)
            reason = str(e) or type(e).__name__

        if not self._closed:
            self.emit("disconnected", reason)

    async def _stream(self) -> str:
        """
        Phase 2: WebSocket Stream (graphql-transport-ws protocol).

        Returns the reason the session ended.
        """
        sub_query = f"""
        subscription {{
          liveMeasurement(homeId: "{self.home_id}") {{
            timestamp
            power
          }}
        }}
        """

        logger.info(f"Tibber API: Connect WebSocket {self.wss_url}")

        async with websockets.connect(
            self.wss_url,
            subprotocols=["graphql-transport-ws"],
            additional_headers={"User-Agent": self.user_agent},
            open_timeout=self.timeout
        ) as websocket:
            # --- STEP A: Connection Init ---
            init_msg = {
                "type": "connection_init",
                "payload": {"token": self.token}
            }
            await websocket.send(json.dumps(init_msg))

            # --- STEP B: Wait for Ack ---
            # We may only subscribe when we receive a 'connection_ack'.
            async with asyncio.timeout(self.timeout):
                while True:
                    msg = json.loads(await websocket.recv())
                    if msg.get("type") == "connection_ack":
                        logger.info("Tibber API: Authentication passed (connection_ack).")
                        break
                    elif msg.get("type") == "connection_error":
                        raise FeedAuthError(f"Tibber API: Authentication error: {msg.get('payload')}")

            # --- STEP C: Subscribe ---
            sub_msg = {
                "id": "1",
                "type": "subscribe",
                "payload": {
                    "query": sub_query
                }
            }
            await websocket.send(json.dumps(sub_msg))
            logger.info("Tibber API: Subscription started. Waiting for data...")
            self.emit("connected")

            # --- STEP D: Data Loop ---
            async for message in websocket:
                data = json.loads(message)
                msg_type = data.get("type")

                if msg_type == "next":
                    payload = ((data.get("payload") or {}).get("data") or {}).get("liveMeasurement")
                    if payload is not None:
                        self.emit("data", payload)

                elif msg_type == "error":
                    self.emit("error", RuntimeError(f"Tibber API: Stream error: {data.get('payload')}"))

                elif msg_type == "complete":
                    logger.info("Tibber API: Server stopped the stream.")
                    return "server completed the subscription"

        return "websocket closed"
