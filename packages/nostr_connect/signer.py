"""Signer-side responder: holds the key and answers application requests.

``Signer`` registers a handler for every method of the dispatch table on its
own ``NostrRPC``. Applications pair with it when the signer approves their
``ConnectURI``; afterwards only the paired application is served. A
``connect`` is accepted only from an approved application naming itself, and
nothing else is served while unpaired unless the ``authorize`` hook allows it.
"""

from __future__ import annotations

import inspect
import logging
from functools import partial
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from . import nip04
from .config import ConnectConfig
from .constants import ConnectMethod
from .event import Event, now
from .exceptions import UnsupportedMethodError
from .keys import SecretKey, load_private_key, signing_key
from .nip26 import create_delegation
from .relay import Relay, Subscription
from .rpc import DEFAULT_CALL_TIMEOUT, NostrRPC, RequestContext, TransportFactory
from .uri import ConnectURI

logger = logging.getLogger(__name__)

# authorize(method, context) -> allowed?
Authorizer = Callable[[ConnectMethod, RequestContext], Union[bool, Awaitable[bool]]]
PsbtSigner = Callable[[str, str, str], Awaitable[str]]


class Signer:
    """Remote signer answering NostrConnect requests with a local key."""

    def __init__(
        self,
        secret_key: SecretKey,
        relay: str,
        authorize: Optional[Authorizer] = None,
        psbt_signer: Optional[PsbtSigner] = None,
        call_timeout: Optional[float] = DEFAULT_CALL_TIMEOUT,
        transport_factory: TransportFactory = Relay,
    ):
        """Initialize the signer.

        Args:
            secret_key: The key whose custody the signer provides
            relay: Relay URL to listen on
            authorize: Optional hook consulted before serving a request; when
                set it also decides what is served while no application is paired
            psbt_signer: Optional async callback implementing ``sign_psbt``
            call_timeout: Deadline for outbound calls in seconds
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
        self.app: Optional[str] = None
        self.approved: set[str] = set()
        self.authorize = authorize
        self.psbt_signer = psbt_signer

        handlers = {
            ConnectMethod.CONNECT: self.connect,
            ConnectMethod.DISCONNECT: self.disconnect,
            ConnectMethod.GET_PUBLIC_KEY: self.get_public_key,
            ConnectMethod.SIGN_EVENT: self.sign_event,
            ConnectMethod.DESCRIBE: self.describe,
            ConnectMethod.DELEGATE: self.delegate,
            ConnectMethod.NIP04_ENCRYPT: self.nip04_encrypt,
            ConnectMethod.NIP04_DECRYPT: self.nip04_decrypt,
        }
        if psbt_signer is not None:
            handlers[ConnectMethod.SIGN_PSBT] = self.sign_psbt
        for method, handler in handlers.items():
            self.rpc.register(method, partial(self._guarded, method, handler))

    @classmethod
    def from_config(cls, config: ConnectConfig, **kwargs) -> "Signer":
        kwargs.setdefault(
            "transport_factory",
            partial(Relay, connection_timeout=config.connection_timeout)
        )
        return cls(
            secret_key=load_private_key(config.private_key_path),
            relay=config.relay_url,
            call_timeout=config.call_timeout,
            **kwargs
        )

    @property
    def public_key(self) -> str:
        return self.rpc.public_key

    async def listen(self) -> Subscription:
        return await self.rpc.listen()

    async def close(self) -> None:
        await self.rpc.disconnect_relays()

    async def __aenter__(self):
        await self.listen()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ------------------------------------------------------------------
    # Pairing
    # ------------------------------------------------------------------

    async def approve(self, uri: ConnectURI) -> None:
        """Accept an application's pairing offer."""
        self.approved.add(uri.target)
        await uri.approve(self._secret_key, transport_factory=self._transport_factory, rpc=self._rpc_for(uri))
        self.app = uri.target
        logger.info("Approved %s (%s)", uri.metadata.name, uri.target)

    async def reject(self, uri: ConnectURI) -> None:
        """Decline an application's pairing offer."""
        self.approved.discard(uri.target)
        if self.app == uri.target:
            self.app = None
        await uri.reject(self._secret_key, transport_factory=self._transport_factory, rpc=self._rpc_for(uri))
        logger.info("Rejected %s (%s)", uri.metadata.name, uri.target)

    def _rpc_for(self, uri: ConnectURI) -> Optional[NostrRPC]:
        # offers on another relay go through a short-lived engine
        return self.rpc if uri.relay == self.rpc.relay else None

    async def _guarded(self, method: ConnectMethod, handler, context: RequestContext, *params: Any) -> Any:
        if method is ConnectMethod.CONNECT:
            if context.sender not in self.approved:
                raise PermissionError(f"{method.value}: {context.sender} has not been approved")
        elif self.app is not None:
            if context.sender != self.app:
                raise PermissionError(f"{method.value}: {context.sender} is not the paired application")
        elif self.authorize is None:
            raise PermissionError(f"{method.value}: no application is paired")
        if self.authorize is not None:
            allowed = self.authorize(method, context)
            if inspect.isawaitable(allowed):
                allowed = await allowed
            if not allowed:
                raise PermissionError(f"{method.value}: request refused")
        return await handler(context, *params)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def connect(self, context: RequestContext, *params: Any) -> str:
        if len(params) != 1 or not isinstance(params[0], str):
            raise ValueError("connect: missing pubkey")
        if params[0] != context.sender:
            raise PermissionError("connect: pubkey does not match sender")
        self.app = params[0]
        return "ack"

    async def disconnect(self, context: RequestContext, *params: Any) -> str:
        self.app = None
        return "ack"

    async def get_public_key(self, context: RequestContext) -> str:
        return self.public_key

    async def sign_event(self, context: RequestContext, draft: Mapping[str, Any]) -> dict[str, Any]:
        if not isinstance(draft, Mapping):
            raise ValueError("sign_event: event must be an object")
        try:
            event = Event(
                pubkey=self.public_key,
                kind=int(draft["kind"]),
                content=str(draft.get("content", "")),
                tags=[[str(v) for v in tag] for tag in draft.get("tags", [])],
                created_at=int(draft.get("created_at") or now()),
            )
        except KeyError:
            raise ValueError("sign_event: missing kind")
        if draft.get("pubkey") and draft["pubkey"] != self.public_key:
            raise ValueError("sign_event: pubkey does not match signer")
        return event.sign(self._secret_key).to_dict()

    async def sign_psbt(self, context: RequestContext, psbt: str, descriptor: str, network: str) -> str:
        if self.psbt_signer is None:
            raise UnsupportedMethodError(ConnectMethod.SIGN_PSBT.value)
        return await self.psbt_signer(psbt, descriptor, network)

    async def describe(self, context: RequestContext) -> list[str]:
        return self.rpc.methods

    async def delegate(
        self,
        context: RequestContext,
        delegatee: str,
        conditions: Optional[Mapping[str, Any]] = None
    ) -> dict[str, str]:
        return create_delegation(self._secret_key, delegatee, conditions).to_payload()

    async def nip04_encrypt(self, context: RequestContext, pubkey: str, plaintext: str) -> str:
        return nip04.encrypt(self._secret_key, pubkey, plaintext)

    async def nip04_decrypt(self, context: RequestContext, pubkey: str, ciphertext: str) -> str:
        return nip04.decrypt(self._secret_key, pubkey, ciphertext)
