"""Signed relay events.

An event id is the sha256 of the canonical serialization
``[0, pubkey, created_at, kind, tags, content]``; the signature is an Ed25519
signature by ``pubkey`` over the raw id bytes.
"""

import hashlib
import json
import time
from dataclasses import dataclass, field
from typing import Any

from nacl.exceptions import BadSignatureError, CryptoError

from .keys import SecretKey, get_public_key, public_key_from_hex, signing_key
from .exceptions import KeyLoadError


def now() -> int:
    """Get current Unix timestamp."""
    return int(time.time())


@dataclass
class Event:
    """A relay event (the transport envelope)."""
    pubkey: str
    kind: int
    content: str
    tags: list[list[str]] = field(default_factory=list)
    created_at: int = field(default_factory=now)
    id: str = ""
    sig: str = ""

    def serialize(self) -> bytes:
        """Canonical bytes hashed into the event id."""
        data = [0, self.pubkey, self.created_at, self.kind, self.tags, self.content]
        return json.dumps(data, separators=(',', ':'), ensure_ascii=False).encode('utf-8')

    def compute_id(self) -> str:
        return hashlib.sha256(self.serialize()).hexdigest()

    def tag_values(self, name: str) -> list[str]:
        """Values of every tag called ``name`` (e.g. ``"p"``)."""
        return [tag[1] for tag in self.tags if len(tag) >= 2 and tag[0] == name]

    def sign(self, secret: SecretKey) -> "Event":
        """Set pubkey, id and signature from ``secret``. Returns self."""
        key = signing_key(secret)
        self.pubkey = get_public_key(key)
        self.id = self.compute_id()
        self.sig = key.sign(bytes.fromhex(self.id)).signature.hex()
        return self

    def verify(self) -> bool:
        """Check that the id matches the content and the signature matches the id."""
        if not self.id or not self.sig or self.id != self.compute_id():
            return False
        try:
            public_key_from_hex(self.pubkey).verify(bytes.fromhex(self.id), bytes.fromhex(self.sig))
            return True
        except (BadSignatureError, CryptoError, KeyLoadError, ValueError):
            return False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": self.tags,
            "content": self.content,
            "sig": self.sig,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        """Build an event from its wire form.

        Raises:
            KeyError: If a required field is missing
            TypeError / ValueError: If a field has the wrong type
        """
        tags = data["tags"]
        if not isinstance(tags, list) or not all(isinstance(t, list) for t in tags):
            raise TypeError("tags must be a list of lists")
        return cls(
            id=str(data["id"]),
            pubkey=str(data["pubkey"]),
            created_at=int(data["created_at"]),
            kind=int(data["kind"]),
            tags=[[str(v) for v in tag] for tag in tags],
            content=str(data["content"]),
            sig=str(data["sig"]),
        )
