"""Relay transport: filtered subscriptions over a websocket connection.

The RPC layer only depends on the ``Transport`` interface; ``Relay`` is the
websocket implementation speaking the relay wire protocol::

    client -> relay   ["EVENT", <event>] | ["REQ", <sub_id>, <filter>] | ["CLOSE", <sub_id>]
    relay -> client   ["EVENT", <sub_id>, <event>] | ["EOSE", <sub_id>]
                      ["OK", <event_id>, <accepted>, <message>] | ["NOTICE", <message>]
                      ["CLOSED", <sub_id>, <message>]
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from .event import Event
from .exceptions import PublishError, RelayConnectionError

logger = logging.getLogger(__name__)


@dataclass
class Filter:
    """Subscription filter (all set fields must match)."""
    kinds: Optional[list[int]] = None
    authors: Optional[list[str]] = None
    p_tags: Optional[list[str]] = None
    since: Optional[int] = None
    limit: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.kinds is not None:
            data["kinds"] = self.kinds
        if self.authors is not None:
            data["authors"] = self.authors
        if self.p_tags is not None:
            data["#p"] = self.p_tags
        if self.since is not None:
            data["since"] = self.since
        if self.limit is not None:
            data["limit"] = self.limit
        return data

    def matches(self, event: Event) -> bool:
        if self.kinds is not None and event.kind not in self.kinds:
            return False
        if self.authors is not None and event.pubkey not in self.authors:
            return False
        if self.p_tags is not None and not set(self.p_tags) & set(event.tag_values("p")):
            return False
        if self.since is not None and event.created_at < self.since:
            return False
        return True


class Subscription:
    """Lazy, unbounded stream of events matching a filter.

    Iterate with ``async for``; iteration ends once the subscription is
    closed locally or the relay goes away.
    """

    def __init__(self, transport: "Transport", sub_id: str, filter: Filter):
        self.id = sub_id
        self.filter = filter
        self._transport = transport
        self._queue: asyncio.Queue[Optional[Event]] = asyncio.Queue()
        self._closed = False
        self._ended = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, event: Event) -> None:
        """Deliver an event (called by the transport)."""
        if not self._ended:
            self._queue.put_nowait(event)

    def end(self) -> None:
        """Stop iteration once queued events are drained."""
        if not self._ended:
            self._ended = True
            self._queue.put_nowait(None)

    async def next_event(self) -> Optional[Event]:
        """Wait for the next event; None once the subscription has ended."""
        if self._closed and self._queue.empty():
            return None
        event = await self._queue.get()
        if event is None:
            # keep the sentinel for other waiters
            self._queue.put_nowait(None)
        return event

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        event = await self.next_event()
        if event is None:
            raise StopAsyncIteration
        return event

    async def close(self) -> None:
        """Cancel the subscription on the relay. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self.end()
        await self._transport.unsubscribe(self.id)


def new_subscription_id() -> str:
    return secrets.token_hex(8)


class Transport(ABC):
    """A logical channel to one relay."""

    url: str

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def connect(self) -> None:
        """Open the channel; no-op when already connected."""
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Close the channel and end its subscriptions; safe to call twice."""
        raise NotImplementedError

    @abstractmethod
    async def publish(self, event: Event) -> None:
        raise NotImplementedError

    @abstractmethod
    async def subscribe(self, filter: Filter) -> Subscription:
        raise NotImplementedError

    @abstractmethod
    async def unsubscribe(self, sub_id: str) -> None:
        raise NotImplementedError


class Relay(Transport):
    """Websocket connection to a single relay."""

    def __init__(
        self,
        url: str,
        connection_timeout: float = 10.0,
        wait_for_ok: bool = False,
        publish_timeout: float = 10.0
    ):
        """Initialize the relay client.

        Args:
            url: Relay websocket URL (ws:// or wss://)
            connection_timeout: Connect deadline in seconds
            wait_for_ok: Wait for the relay's OK message after each publish
            publish_timeout: Deadline for the OK message in seconds
        """
        self.url = url
        self.connection_timeout = connection_timeout
        self.wait_for_ok = wait_for_ok
        self.publish_timeout = publish_timeout

        self._websocket = None
        self._reader: Optional[asyncio.Task] = None
        self._subscriptions: Dict[str, Subscription] = {}
        self._pending_ok: Dict[str, asyncio.Future] = {}
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._websocket is not None

    async def connect(self) -> None:
        """Establish the websocket connection.

        Raises:
            RelayConnectionError: If the relay cannot be reached in time
        """
        async with self._lock:
            if self._websocket is not None:
                return
            try:
                self._websocket = await asyncio.wait_for(
                    websockets.connect(self.url),
                    timeout=self.connection_timeout
                )
            except asyncio.TimeoutError:
                raise RelayConnectionError(
                    f"Connection timed out after {self.connection_timeout}s",
                    url=self.url
                )
            except Exception as e:
                raise RelayConnectionError(f"Failed to connect to {self.url}: {e}", url=self.url) from e

            logger.debug("Connected to relay %s", self.url)
            self._reader = asyncio.create_task(self._read_loop(self._websocket))

    async def close(self) -> None:
        """Close the connection. Idempotent."""
        websocket, self._websocket = self._websocket, None
        reader, self._reader = self._reader, None
        if websocket is not None:
            try:
                await websocket.close()
            except Exception as e:
                logger.debug("Error closing relay %s: %s", self.url, e)
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        self._shutdown()

    async def publish(self, event: Event) -> None:
        """Send an event to the relay.

        Raises:
            RelayConnectionError: If not connected or the connection drops
            PublishError: If the relay rejects the event or never acknowledges it
        """
        websocket = self._require_connection()
        ack: Optional[asyncio.Future] = None
        if self.wait_for_ok:
            ack = asyncio.get_running_loop().create_future()
            self._pending_ok[event.id] = ack

        try:
            await websocket.send(json.dumps(["EVENT", event.to_dict()]))
            if ack is None:
                return
            try:
                accepted, message = await asyncio.wait_for(ack, timeout=self.publish_timeout)
            except asyncio.TimeoutError:
                raise PublishError(
                    f"No acknowledgement after {self.publish_timeout}s",
                    url=self.url,
                    event_id=event.id
                )
            if not accepted:
                raise PublishError(f"Event rejected: {message}", url=self.url, event_id=event.id)
        except ConnectionClosed as e:
            raise RelayConnectionError(f"Connection to {self.url} closed: {e}", url=self.url) from e
        finally:
            self._pending_ok.pop(event.id, None)

    async def subscribe(self, filter: Filter) -> Subscription:
        websocket = self._require_connection()
        subscription = Subscription(self, new_subscription_id(), filter)
        self._subscriptions[subscription.id] = subscription
        try:
            await websocket.send(json.dumps(["REQ", subscription.id, filter.to_dict()]))
        except ConnectionClosed as e:
            self._subscriptions.pop(subscription.id, None)
            raise RelayConnectionError(f"Connection to {self.url} closed: {e}", url=self.url) from e
        return subscription

    async def unsubscribe(self, sub_id: str) -> None:
        subscription = self._subscriptions.pop(sub_id, None)
        if subscription is None:
            return
        subscription.end()
        if self._websocket is None:
            return
        try:
            await self._websocket.send(json.dumps(["CLOSE", sub_id]))
        except ConnectionClosed:
            logger.debug("Relay %s closed before CLOSE %s", self.url, sub_id)

    def _require_connection(self):
        if self._websocket is None:
            raise RelayConnectionError(f"Not connected to {self.url}", url=self.url)
        return self._websocket

    async def _read_loop(self, websocket) -> None:
        try:
            async for raw in websocket:
                try:
                    self._handle_message(raw)
                except Exception as e:
                    logger.warning("Dropping frame from %s: %s", self.url, e)
        except ConnectionClosed as e:
            logger.info("Relay %s closed the connection: %s", self.url, e)
        finally:
            if self._websocket is websocket:
                self._websocket = None
                self._shutdown()

    def _shutdown(self) -> None:
        for subscription in list(self._subscriptions.values()):
            subscription.end()
        self._subscriptions.clear()
        for ack in self._pending_ok.values():
            if not ack.done():
                ack.set_exception(RelayConnectionError(f"Connection to {self.url} closed", url=self.url))
        self._pending_ok.clear()

    def _handle_message(self, raw) -> None:
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.debug("Ignoring non-JSON frame from %s", self.url)
            return
        if not isinstance(message, list) or not message:
            return

        msg_type = message[0]
        if len(message) >= 2 and not isinstance(message[1], str):
            logger.debug("Ignoring %s frame without a string id from %s", msg_type, self.url)
            return
        if msg_type == "EVENT" and len(message) >= 3:
            subscription = self._subscriptions.get(message[1])
            if subscription is None:
                return
            try:
                event = Event.from_dict(message[2])
            except (KeyError, TypeError, ValueError, AttributeError, OverflowError) as e:
                logger.debug("Dropping malformed event from %s: %s", self.url, e)
                return
            if not event.verify():
                logger.debug("Dropping event %s with invalid signature", event.id)
                return
            if not subscription.filter.matches(event):
                return
            subscription.push(event)
        elif msg_type == "OK" and len(message) >= 3:
            ack = self._pending_ok.get(message[1])
            if ack is not None and not ack.done():
                ack.set_result((bool(message[2]), message[3] if len(message) > 3 else ""))
        elif msg_type == "EOSE":
            logger.debug("End of stored events for %s", message[1:2])
        elif msg_type == "NOTICE":
            logger.info("Notice from %s: %s", self.url, message[1:2])
        elif msg_type == "CLOSED" and len(message) >= 2:
            subscription = self._subscriptions.pop(message[1], None)
            if subscription is not None:
                logger.info("Relay %s closed subscription %s: %s", self.url, message[1], message[2:3])
                subscription.end()
