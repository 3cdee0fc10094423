"""Wrap RPC bodies into signed, encrypted relay events and back."""

import json
from typing import Any

from . import nip04
from .constants import NOSTR_CONNECT_KIND
from .event import Event, now
from .exceptions import DecodingError, EncodingError, KeyLoadError
from .keys import SecretKey, get_public_key


def encode(secret: SecretKey, recipient: str, body: str) -> Event:
    """Encrypt ``body`` to ``recipient`` and sign it as a NostrConnect event.

    Raises:
        EncodingError: If encryption or signing fails
    """
    ciphertext = nip04.encrypt(secret, recipient, body)
    try:
        event = Event(
            pubkey=get_public_key(secret),
            kind=NOSTR_CONNECT_KIND,
            content=ciphertext,
            tags=[["p", recipient]],
            created_at=now(),
        ).sign(secret)
    except KeyLoadError as e:
        raise EncodingError(f"Signing failed: {e}") from e

    if not event.verify():
        raise EncodingError("Event is not valid")
    return event


def decode(secret: SecretKey, event: Event) -> str:
    """Verify ``event`` and decrypt its content with the sender as peer.

    Raises:
        DecodingError: If the event does not verify or cannot be decrypted
    """
    if event.kind != NOSTR_CONNECT_KIND:
        raise DecodingError(f"Unexpected event kind: {event.kind}")
    if not event.verify():
        raise DecodingError(f"Invalid event signature: {event.id}")
    plaintext = nip04.decrypt(secret, event.pubkey, event.content)
    if not plaintext:
        raise DecodingError("Empty plaintext")
    return plaintext


def decode_payload(secret: SecretKey, event: Event) -> Any:
    """Decode ``event`` and parse its plaintext as JSON.

    Raises:
        DecodingError: If decoding fails or the plaintext is not JSON
    """
    plaintext = decode(secret, event)
    try:
        return json.loads(plaintext)
    except json.JSONDecodeError as e:
        raise DecodingError(f"Payload is not valid JSON: {e}") from e
