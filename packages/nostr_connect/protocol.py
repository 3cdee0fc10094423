"""Request/response bodies of the NostrConnect RPC protocol."""

import json
import secrets
from dataclasses import dataclass, field
from typing import Any


def random_id() -> str:
    """Generate an opaque request id."""
    return secrets.token_hex(8)


def is_valid_request(payload: Any) -> bool:
    """A request body carries ``id``, ``method`` and ``params`` keys.

    Only key presence is checked; handlers validate their own params.
    """
    if not isinstance(payload, dict):
        return False
    return all(key in payload for key in ("id", "method", "params"))


def is_valid_response(payload: Any) -> bool:
    """A response body carries ``id``, ``result`` and ``error`` keys."""
    if not isinstance(payload, dict):
        return False
    return all(key in payload for key in ("id", "result", "error"))


@dataclass
class Request:
    """An RPC call addressed to the remote side."""
    method: str
    params: list[Any] = field(default_factory=list)
    id: str = field(default_factory=random_id)

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "method": self.method,
            "params": self.params
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Request":
        return cls(
            id=str(payload["id"]),
            method=str(payload["method"]),
            params=payload["params"]
        )

    def to_json(self) -> str:
        return json.dumps(self.to_payload())


@dataclass
class Response:
    """Answer to a Request; exactly one of result/error is meaningful."""
    id: str
    result: Any = None
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "result": self.result,
            "error": self.error
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Response":
        # id kept as sent so a numeric id never matches a string request id
        error = payload["error"]
        return cls(
            id=payload["id"],
            result=payload["result"],
            error=str(error) if error else None
        )

    def to_json(self) -> str:
        return json.dumps(self.to_payload())
