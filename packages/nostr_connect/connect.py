"""Application-side session with a remote signer.

``Connect`` tracks which signer (if any) the application is paired with and
exposes the signer's capabilities as async methods. Pairing happens when the
signer sends ``connect`` (usually after approving a ``ConnectURI``); it ends
on ``disconnect`` from either side.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from .config import ConnectConfig
from .constants import ConnectMethod
from .event import Event
from .exceptions import DisconnectError, NotConnectedError, RemoteError
from .keys import SecretKey, load_private_key, signing_key
from .models import DelegationConditions
from .nip26 import Delegation, resolve_conditions
from .relay import Relay, Subscription
from .rpc import DEFAULT_CALL_TIMEOUT, NostrRPC, RequestContext, TransportFactory
from .uri import ConnectURI

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNPAIRED = "unpaired"
    PAIRED = "paired"


@dataclass(frozen=True)
class SessionEvent:
    """A pairing state transition delivered to observers."""
    state: SessionState
    counterparty: Optional[str] = None


SessionObserver = Callable[[SessionEvent], Union[None, Awaitable[None]]]


def malformed_result(method: ConnectMethod, error: Exception) -> RemoteError:
    return RemoteError(f"{method.value}: malformed result: {error}", method=method.value)


class Nip04:
    """Encryption capabilities of the paired signer."""

    def __init__(self, session: "Connect"):
        self._session = session

    async def encrypt(self, pubkey: str, plaintext: str) -> str:
        return await self._session.request(ConnectMethod.NIP04_ENCRYPT, [pubkey, plaintext])

    async def decrypt(self, pubkey: str, ciphertext: str) -> str:
        return await self._session.request(ConnectMethod.NIP04_DECRYPT, [pubkey, ciphertext])


class Connect:
    """Session between an application and its remote signer."""

    def __init__(
        self,
        secret_key: SecretKey,
        relay: str,
        target: Optional[str] = None,
        call_timeout: Optional[float] = DEFAULT_CALL_TIMEOUT,
        notify_before_disconnect: bool = True,
        transport_factory: TransportFactory = Relay,
    ):
        """Initialize the session.

        Args:
            secret_key: The application's secret key
            relay: Relay URL shared with the signer
            target: Signer identity when already paired
            call_timeout: Deadline for capability calls in seconds
            notify_before_disconnect: Emit the unpaired event before the
                disconnect notification is sent (rolled back if sending fails)
            transport_factory: Builds a Transport for a relay URL
        """
        self._secret_key = signing_key(secret_key)
        self._transport_factory = transport_factory
        self.rpc = NostrRPC(
            relay,
            self._secret_key,
            call_timeout=call_timeout,
            transport_factory=transport_factory
        )
        self.target = target
        self.notify_before_disconnect = notify_before_disconnect
        self.nip04 = Nip04(self)
        self._observers: list[SessionObserver] = []

        self.rpc.register(ConnectMethod.CONNECT, self._handle_connect)
        self.rpc.register(ConnectMethod.DISCONNECT, self._handle_disconnect)

    @classmethod
    def from_config(cls, config: ConnectConfig, **kwargs) -> "Connect":
        kwargs.setdefault(
            "transport_factory",
            partial(Relay, connection_timeout=config.connection_timeout)
        )
        return cls(
            secret_key=load_private_key(config.private_key_path),
            relay=config.relay_url,
            call_timeout=config.call_timeout,
            notify_before_disconnect=config.notify_before_disconnect,
            **kwargs
        )

    @property
    def public_key(self) -> str:
        return self.rpc.public_key

    async def init(self) -> Subscription:
        """Start listening for ``connect``/``disconnect`` from signers."""
        return await self.rpc.listen()

    async def close(self) -> None:
        """Release both relay channels."""
        await self.rpc.disconnect_relays()

    async def __aenter__(self):
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, observer: SessionObserver) -> Callable[[], None]:
        """Register an observer of pairing transitions.

        Returns:
            A callable that unregisters the observer
        """
        self._observers.append(observer)
        return lambda: self.unsubscribe(observer)

    def unsubscribe(self, observer: SessionObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    async def _notify(self, state: SessionState, counterparty: Optional[str] = None) -> None:
        event = SessionEvent(state=state, counterparty=counterparty)
        for observer in list(self._observers):
            try:
                result = observer(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning("Session observer %r failed: %s", observer, e)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return SessionState.PAIRED if self.is_connected() else SessionState.UNPAIRED

    def is_connected(self) -> bool:
        return bool(self.target)

    def get_target(self) -> str:
        """Identity of the paired signer.

        Raises:
            NotConnectedError: If no signer is paired
        """
        if not self.is_connected():
            raise NotConnectedError("Not connected")
        return self.target

    async def _handle_connect(self, context: RequestContext, *params: Any) -> str:
        if len(params) != 1 or not isinstance(params[0], str) or not params[0]:
            raise ValueError("connect: missing pubkey")
        pubkey = params[0]
        self.target = pubkey
        logger.info("Paired with %s", pubkey)
        await self._notify(SessionState.PAIRED, pubkey)
        return "ack"

    async def _handle_disconnect(self, context: RequestContext, *params: Any) -> str:
        previous, self.target = self.target, None
        logger.info("Unpaired from %s", previous)
        await self._notify(SessionState.UNPAIRED, previous)
        return "ack"

    async def approve(self, uri: ConnectURI) -> None:
        """Accept a pairing offer by sending ``connect`` with our identity.

        Local state flips only when the counterparty's own ``connect`` arrives.
        """
        await uri.approve(self._secret_key, transport_factory=self._transport_factory, rpc=self._rpc_for(uri))

    async def reject(self, uri: ConnectURI) -> None:
        """Decline a pairing offer. Local state is left untouched."""
        await uri.reject(self._secret_key, transport_factory=self._transport_factory, rpc=self._rpc_for(uri))

    def _rpc_for(self, uri: ConnectURI) -> Optional[NostrRPC]:
        return self.rpc if uri.relay == self.rpc.relay else None

    async def disconnect(self) -> None:
        """Unpair from the signer and tell it so.

        Raises:
            NotConnectedError: If no signer is paired
            DisconnectError: If the disconnect notification could not be sent;
                the session stays paired
        """
        target = self.get_target()
        if self.notify_before_disconnect:
            await self._notify(SessionState.UNPAIRED, target)

        try:
            await self.request(ConnectMethod.DISCONNECT, [], skip_response=True)
        except Exception as e:
            if self.notify_before_disconnect:
                # roll back the optimistic notification
                await self._notify(SessionState.PAIRED, target)
            raise DisconnectError("Failed to disconnect") from e

        self.target = None
        if not self.notify_before_disconnect:
            await self._notify(SessionState.UNPAIRED, target)

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    async def request(
        self,
        method: ConnectMethod,
        params: list[Any],
        skip_response: bool = False,
        timeout: Optional[float] = None
    ) -> Any:
        target = self.get_target()
        return await self.rpc.call(
            target,
            method,
            params,
            skip_response=skip_response,
            timeout=timeout
        )

    async def get_public_key(self) -> str:
        return await self.request(ConnectMethod.GET_PUBLIC_KEY, [])

    async def sign_event(self, event: Union[Event, Mapping[str, Any]]) -> Event:
        """Ask the signer to sign an event draft.

        The draft needs ``kind``, ``tags``, ``content`` and ``created_at``;
        the signer fills in ``pubkey``, ``id`` and ``sig``.

        Raises:
            RemoteError: If the signer refused or returned something that is
                not an event
        """
        draft = event.to_dict() if isinstance(event, Event) else dict(event)
        signed = await self.request(ConnectMethod.SIGN_EVENT, [draft])
        try:
            return Event.from_dict(signed)
        except (KeyError, TypeError, ValueError, AttributeError, OverflowError) as e:
            raise malformed_result(ConnectMethod.SIGN_EVENT, e) from e

    async def sign_psbt(self, psbt: str, descriptor: str, network: str) -> str:
        return await self.request(ConnectMethod.SIGN_PSBT, [psbt, descriptor, network])

    async def describe(self) -> list[str]:
        """Method names the signer supports."""
        return await self.request(ConnectMethod.DESCRIBE, [])

    async def delegate(
        self,
        delegatee: Optional[str] = None,
        conditions: Union[DelegationConditions, Mapping[str, Any], None] = None
    ) -> Delegation:
        """Ask the signer for a delegation token.

        ``since``/``until`` may be Unix timestamps or relative time tokens,
        resolved against the current time at each call.

        Raises:
            InvalidConditionError: If the conditions are malformed
            RemoteError: If the signer refused or returned something that is
                not a delegation token
        """
        self.get_target()
        resolved = resolve_conditions(conditions)
        payload = await self.request(
            ConnectMethod.DELEGATE,
            [delegatee or self.public_key, resolved]
        )
        try:
            return Delegation.from_payload(payload)
        except (KeyError, TypeError) as e:
            raise malformed_result(ConnectMethod.DELEGATE, e) from e
