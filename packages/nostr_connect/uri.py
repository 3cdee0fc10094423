"""Pairing URIs: ``nostrconnect://<target>?relay=<url>&metadata=<json>``."""

import json
from dataclasses import dataclass
from typing import Any, Optional, Union
from urllib.parse import parse_qs, quote, urlsplit

from pydantic import ValidationError

from .constants import URI_SCHEME, ConnectMethod
from .exceptions import MalformedURIError
from .keys import SecretKey, get_public_key
from .models import Metadata
from .rpc import NostrRPC, TransportFactory
from .relay import Relay


@dataclass
class ConnectURI:
    """Out-of-band pairing offer published by an application."""
    target: str
    relay: str
    metadata: Metadata

    @classmethod
    def from_uri(cls, uri: str) -> "ConnectURI":
        """Parse a pairing URI.

        Raises:
            MalformedURIError: If the target, relay or metadata is missing or invalid
        """
        try:
            parts = urlsplit(uri)
        except ValueError as e:
            raise MalformedURIError(f"Invalid connect URI: {e}", uri=uri)
        if parts.scheme != URI_SCHEME:
            raise MalformedURIError(f"Invalid connect URI: scheme must be {URI_SCHEME}", uri=uri)

        target = parts.netloc or parts.path.lstrip("/")
        if not target:
            raise MalformedURIError("Invalid connect URI: missing target", uri=uri)

        query = parse_qs(parts.query)
        relay = query.get("relay", [""])[0]
        if not relay:
            raise MalformedURIError("Invalid connect URI: missing relay", uri=uri)
        raw_metadata = query.get("metadata", [""])[0]
        if not raw_metadata:
            raise MalformedURIError("Invalid connect URI: missing metadata", uri=uri)

        try:
            metadata = Metadata.model_validate(json.loads(raw_metadata))
        except (json.JSONDecodeError, ValidationError) as e:
            raise MalformedURIError(f"Invalid connect URI: metadata is not valid JSON: {e}", uri=uri)

        return cls(target=target, relay=relay, metadata=metadata)

    @classmethod
    def create(cls, target: str, relay: str, metadata: Union[Metadata, dict[str, Any]]) -> "ConnectURI":
        if not isinstance(metadata, Metadata):
            try:
                metadata = Metadata.model_validate(metadata)
            except ValidationError as e:
                raise MalformedURIError(f"Invalid metadata: {e}")
        return cls(target=target, relay=relay, metadata=metadata)

    def to_uri(self) -> str:
        metadata = json.dumps(self.metadata.to_payload(), separators=(',', ':'))
        return (
            f"{URI_SCHEME}://{self.target}"
            f"?relay={quote(self.relay, safe='')}"
            f"&metadata={quote(metadata, safe='')}"
        )

    def __str__(self) -> str:
        return self.to_uri()

    async def approve(
        self,
        secret_key: SecretKey,
        transport_factory: TransportFactory = Relay,
        rpc: Optional[NostrRPC] = None
    ) -> None:
        """Accept the offer: send a one-way ``connect`` carrying our identity."""
        await self._notify(
            ConnectMethod.CONNECT, [get_public_key(secret_key)], secret_key, transport_factory, rpc
        )

    async def reject(
        self,
        secret_key: SecretKey,
        transport_factory: TransportFactory = Relay,
        rpc: Optional[NostrRPC] = None
    ) -> None:
        """Decline the offer: send a one-way ``disconnect``."""
        await self._notify(ConnectMethod.DISCONNECT, [], secret_key, transport_factory, rpc)

    async def _notify(self, method, params, secret_key, transport_factory, rpc) -> None:
        if rpc is not None:
            await rpc.call(self.target, method, params, skip_response=True)
            return
        rpc = NostrRPC(self.relay, secret_key, transport_factory=transport_factory)
        try:
            await rpc.call(self.target, method, params, skip_response=True)
        finally:
            await rpc.disconnect_relays()
