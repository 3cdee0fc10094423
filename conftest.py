"""Shared fixtures: in-memory and websocket relays implementing the relay protocol."""

import json

import pytest
import websockets
from websockets.exceptions import ConnectionClosed

from nostr_connect.event import Event
from nostr_connect.exceptions import PublishError, RelayConnectionError
from nostr_connect.keys import generate_secret_key
from nostr_connect.relay import Filter, Subscription, Transport, new_subscription_id


class MemoryHub:
    """A relay shared by every MemoryRelay created from it.

    Events are delivered live to matching subscriptions; nothing is replayed.
    """

    def __init__(self):
        self.relays: list["MemoryRelay"] = []
        self.events = []

    def transport_factory(self, url: str) -> "MemoryRelay":
        relay = MemoryRelay(self, url)
        self.relays.append(relay)
        return relay

    def deliver(self, event) -> None:
        self.events.append(event)
        for relay in list(self.relays):
            for subscription in list(relay.subscriptions.values()):
                if subscription.filter.matches(event):
                    subscription.push(event)

    @property
    def publish_count(self) -> int:
        return sum(len(relay.published) for relay in self.relays)


class MemoryRelay(Transport):
    def __init__(self, hub: MemoryHub, url: str):
        self.hub = hub
        self.url = url
        self.subscriptions: dict[str, Subscription] = {}
        self.published = []
        self.connect_count = 0
        self.close_count = 0
        self.fail_publish = False
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self.connect_count += 1
        self._connected = True

    async def close(self) -> None:
        self.close_count += 1
        self._connected = False
        for subscription in list(self.subscriptions.values()):
            subscription.end()
        self.subscriptions.clear()

    async def publish(self, event) -> None:
        if not self._connected:
            raise RelayConnectionError("Not connected", url=self.url)
        if self.fail_publish:
            raise PublishError("Event rejected: blocked", url=self.url, event_id=event.id)
        self.published.append(event)
        self.hub.deliver(event)

    async def subscribe(self, filter: Filter) -> Subscription:
        if not self._connected:
            raise RelayConnectionError("Not connected", url=self.url)
        subscription = Subscription(self, new_subscription_id(), filter)
        self.subscriptions[subscription.id] = subscription
        return subscription

    async def unsubscribe(self, sub_id: str) -> None:
        subscription = self.subscriptions.pop(sub_id, None)
        if subscription is not None:
            subscription.end()


@pytest.fixture
def hub():
    return MemoryHub()


@pytest.fixture
def transport_factory(hub):
    return hub.transport_factory


@pytest.fixture
def app_secret():
    return generate_secret_key()


@pytest.fixture
def signer_secret():
    return generate_secret_key()


RELAY_URL = "wss://relay.test"


@pytest.fixture
def relay_url():
    return RELAY_URL


class WebsocketRelayServer:
    """Minimal relay on a local port.

    Acknowledges every EVENT and fans it out to matching open subscriptions;
    nothing is stored or replayed. Use as ``async with server:``.
    """

    def __init__(self, reject: bool = False):
        self.reject = reject
        self.received: list[Event] = []
        self.subscriptions: dict = {}
        self.url = ""
        self._server = None

    async def __aenter__(self) -> "WebsocketRelayServer":
        self._server = await websockets.serve(self._handle, "127.0.0.1", 0)
        port = list(self._server.sockets)[0].getsockname()[1]
        self.url = f"ws://127.0.0.1:{port}"
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self._server.close()
        await self._server.wait_closed()

    async def _handle(self, websocket):
        subscriptions = self.subscriptions.setdefault(websocket, {})
        try:
            async for raw in websocket:
                message = json.loads(raw)
                if message[0] == "EVENT":
                    await self._on_event(websocket, Event.from_dict(message[1]))
                elif message[0] == "REQ":
                    raw_filter = message[2]
                    subscriptions[message[1]] = Filter(
                        kinds=raw_filter.get("kinds"),
                        authors=raw_filter.get("authors"),
                        p_tags=raw_filter.get("#p"),
                        since=raw_filter.get("since"),
                    )
                    await websocket.send(json.dumps(["EOSE", message[1]]))
                elif message[0] == "CLOSE":
                    subscriptions.pop(message[1], None)
        except ConnectionClosed:
            pass
        finally:
            self.subscriptions.pop(websocket, None)

    async def _on_event(self, websocket, event: Event) -> None:
        self.received.append(event)
        if self.reject:
            await websocket.send(json.dumps(["OK", event.id, False, "blocked: test relay"]))
            return
        await websocket.send(json.dumps(["OK", event.id, True, ""]))
        for peer, subscriptions in list(self.subscriptions.items()):
            for sub_id, filter in list(subscriptions.items()):
                if not filter.matches(event):
                    continue
                try:
                    await peer.send(json.dumps(["EVENT", sub_id, event.to_dict()]))
                except ConnectionClosed:
                    break


@pytest.fixture
def websocket_relay():
    return WebsocketRelayServer()
