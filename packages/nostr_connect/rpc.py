"""RPC engine: request/response correlation over a relay.

``NostrRPC`` owns two channels to the same relay, opened lazily: one for
outbound calls (``call``) and one for inbound requests (``listen``). Calls are
correlated by request id on a short-lived subscription; inbound requests are
routed through an explicit dispatch table keyed by ``ConnectMethod``.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Union

from . import envelope
from .constants import NOSTR_CONNECT_KIND, ConnectMethod
from .event import Event, now
from .exceptions import (
    DecodingError,
    EncodingError,
    RelayConnectionError,
    RelayError,
    RemoteError,
    RequestTimeoutError,
    UnsupportedMethodError,
)
from .keys import SecretKey, get_public_key, signing_key
from .protocol import Request, Response, is_valid_request, is_valid_response, random_id
from .relay import Filter, Relay, Subscription, Transport

logger = logging.getLogger(__name__)

DEFAULT_CALL_TIMEOUT = 30.0

TransportFactory = Callable[[str], Transport]


@dataclass(frozen=True)
class RequestContext:
    """Transport context of the request being handled."""
    event: Event

    @property
    def sender(self) -> str:
        """Identity of the party that sent the request."""
        return self.event.pubkey


# Handlers take the request context followed by the request params
Handler = Callable[..., Union[Any, Awaitable[Any]]]


class NostrRPC:
    """Call/response engine bound to one local identity and one relay."""

    def __init__(
        self,
        relay: str,
        secret_key: SecretKey,
        call_timeout: Optional[float] = DEFAULT_CALL_TIMEOUT,
        transport_factory: TransportFactory = Relay,
    ):
        """Initialize the engine.

        Args:
            relay: Relay URL
            secret_key: Local secret (hex string or SigningKey)
            call_timeout: Default deadline for ``call`` in seconds; None waits forever
            transport_factory: Builds a Transport for a relay URL
        """
        self.relay = relay
        self.call_timeout = call_timeout
        self._secret_key = signing_key(secret_key)
        self.public_key = get_public_key(self._secret_key)
        self._transport_factory = transport_factory

        self._handlers: Dict[ConnectMethod, Handler] = {}
        self._call_transport: Optional[Transport] = None
        self._listen_transport: Optional[Transport] = None
        self._listen_subscription: Optional[Subscription] = None
        self._listen_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Dispatch table
    # ------------------------------------------------------------------

    def register(self, method: Union[ConnectMethod, str], handler: Handler) -> None:
        """Register the handler for a protocol method.

        Raises:
            UnsupportedMethodError: If ``method`` is not a protocol method
        """
        try:
            method = ConnectMethod(method)
        except ValueError:
            raise UnsupportedMethodError(str(method))
        self._handlers[method] = handler

    def unregister(self, method: Union[ConnectMethod, str]) -> None:
        try:
            self._handlers.pop(ConnectMethod(method), None)
        except ValueError:
            pass

    @property
    def methods(self) -> list[str]:
        """Names of the methods this engine answers."""
        return sorted(method.value for method in self._handlers)

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    async def _ensure_call_transport(self) -> Transport:
        if self._call_transport is None:
            self._call_transport = self._transport_factory(self.relay)
        transport = self._call_transport
        if not transport.is_connected:
            await transport.connect()
        return transport

    async def _ensure_listen_transport(self) -> Transport:
        if self._listen_transport is None:
            self._listen_transport = self._transport_factory(self.relay)
        transport = self._listen_transport
        if not transport.is_connected:
            await transport.connect()
        return transport

    async def disconnect_relays(self) -> None:
        """Stop listening and close both channels. Safe to call more than once."""
        task, self._listen_task = self._listen_task, None
        subscription, self._listen_subscription = self._listen_subscription, None
        if subscription is not None:
            await subscription.close()
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        call_transport, self._call_transport = self._call_transport, None
        listen_transport, self._listen_transport = self._listen_transport, None
        for transport in (call_transport, listen_transport):
            if transport is not None:
                await transport.close()

    @property
    def is_listening(self) -> bool:
        return self._listen_task is not None and not self._listen_task.done()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def call(
        self,
        target: str,
        method: Union[ConnectMethod, str],
        params: Optional[Iterable[Any]] = None,
        request_id: Optional[str] = None,
        skip_response: bool = False,
        timeout: Optional[float] = None,
    ) -> Any:
        """Send a request to ``target`` and wait for the matching response.

        Args:
            target: Identity of the responder
            method: Protocol method name
            params: Positional params
            request_id: Request id (generated when omitted)
            skip_response: Return as soon as the request is published
            timeout: Deadline override in seconds (defaults to ``call_timeout``)

        Returns:
            The response result (None when ``skip_response`` is set)

        Raises:
            RemoteError: If the responder answered with an error
            RequestTimeoutError: If no matching response arrived in time
            RelayError: If the relay is unreachable or the channel closed
            EncodingError: If the request could not be encrypted or signed
        """
        transport = await self._ensure_call_transport()

        method_name = method.value if isinstance(method, ConnectMethod) else str(method)
        request = Request(
            id=request_id or random_id(),
            method=method_name,
            params=list(params or [])
        )
        event = envelope.encode(self._secret_key, target, request.to_json())

        subscription = await transport.subscribe(Filter(
            kinds=[NOSTR_CONNECT_KIND],
            authors=[target],
            p_tags=[self.public_key],
            since=now(),
            limit=1,
        ))
        try:
            await transport.publish(event)
            logger.debug("Sent %s request %s to %s", method_name, request.id, target)
            if skip_response:
                return None

            deadline = self.call_timeout if timeout is None else timeout
            try:
                return await asyncio.wait_for(
                    self._wait_for_response(subscription, request),
                    timeout=deadline or None
                )
            except asyncio.TimeoutError:
                raise RequestTimeoutError(
                    f"No response to {method_name} after {deadline}s",
                    method=method_name,
                    request_id=request.id,
                    timeout=deadline or 0.0
                )
        finally:
            await subscription.close()

    async def _wait_for_response(self, subscription: Subscription, request: Request) -> Any:
        async for event in subscription:
            try:
                payload = envelope.decode_payload(self._secret_key, event)
            except DecodingError as e:
                logger.debug("Dropping undecodable event %s: %s", event.id, e)
                continue

            if not is_valid_response(payload):
                logger.debug("Dropping event %s: not a response", event.id)
                continue

            response = Response.from_payload(payload)
            if response.id != request.id:
                logger.debug("Dropping response %s while waiting for %s", response.id, request.id)
                continue

            if response.error:
                raise RemoteError(response.error, method=request.method, request_id=request.id)
            return response.result

        raise RelayConnectionError(
            f"Subscription ended before a response to {request.method} arrived",
            url=self.relay
        )

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def listen(self) -> Subscription:
        """Start answering requests addressed to the local identity.

        Only requests created from now on are considered. Returns the
        long-lived inbound subscription.
        """
        if self._listen_subscription is not None and not self._listen_subscription.closed:
            return self._listen_subscription

        transport = await self._ensure_listen_transport()
        subscription = await transport.subscribe(Filter(
            kinds=[NOSTR_CONNECT_KIND],
            p_tags=[self.public_key],
            since=now(),
        ))
        self._listen_subscription = subscription
        self._listen_task = asyncio.create_task(self._serve(transport, subscription))
        return subscription

    async def _serve(self, transport: Transport, subscription: Subscription) -> None:
        async for event in subscription:
            await self.process_event(transport, event)

    async def process_event(self, transport: Transport, event: Event) -> Optional[Response]:
        """Decode one inbound event, dispatch it and publish the response.

        Undecodable events and non-request payloads are dropped (returns None).
        """
        try:
            payload = envelope.decode_payload(self._secret_key, event)
        except DecodingError as e:
            logger.debug("Dropping undecodable event %s: %s", event.id, e)
            return None

        if not is_valid_request(payload):
            logger.debug("Dropping event %s: not a request", event.id)
            return None

        request = Request.from_payload(payload)
        response = await self.handle_request(request, RequestContext(event=event))

        try:
            reply = envelope.encode(self._secret_key, event.pubkey, response.to_json())
            await transport.publish(reply)
        except (EncodingError, RelayError) as e:
            logger.warning("Failed to send response %s to %s: %s", response.id, event.pubkey, e)
        return response

    async def handle_request(self, request: Request, context: RequestContext) -> Response:
        """Run the handler for ``request``; always returns exactly one Response."""
        try:
            handler = self._handlers.get(ConnectMethod(request.method))
        except ValueError:
            handler = None
        if handler is None:
            return Response(id=request.id, error=str(UnsupportedMethodError(request.method)))

        if not isinstance(request.params, list):
            return Response(id=request.id, error=f"{request.method}: params must be an array")

        try:
            result = handler(context, *request.params)
            if inspect.isawaitable(result):
                result = await result
            # result must survive the trip back over the wire
            json.dumps(result)
        except Exception as e:
            logger.info("Handler %s raised %s: %s", request.method, type(e).__name__, e)
            return Response(id=request.id, error=str(e) or "unknown error")

        return Response(id=request.id, result=result)
