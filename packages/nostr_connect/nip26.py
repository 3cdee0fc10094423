"""Delegation tokens: let another identity publish on behalf of the delegator.

The delegator signs ``sha256("nostr:delegation:<delegatee>:<conditions>")``
where conditions is a query string such as
``kind=1&created_at>1700000000&created_at<1700086400``.
"""

import hashlib
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from nacl.exceptions import BadSignatureError, CryptoError
from pydantic import ValidationError

from .constants import TIME_RANGE_SECONDS, TimeRange
from .event import now
from .exceptions import InvalidConditionError, KeyLoadError
from .keys import SecretKey, get_public_key, public_key_from_hex, signing_key
from .models import DelegationConditions


@dataclass
class Delegation:
    """A signed delegation token."""
    from_pubkey: str
    to_pubkey: str
    cond: str
    sig: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "from": self.from_pubkey,
            "to": self.to_pubkey,
            "cond": self.cond,
            "sig": self.sig
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Delegation":
        return cls(
            from_pubkey=payload["from"],
            to_pubkey=payload["to"],
            cond=payload["cond"],
            sig=payload["sig"]
        )

    def tag(self) -> list[str]:
        """The ``delegation`` tag a delegatee attaches to its events."""
        return ["delegation", self.from_pubkey, self.cond, self.sig]


def resolve_time(value: Union[int, str, TimeRange], field: str, at: Optional[int] = None) -> int:
    """Turn a timestamp or relative time token into a Unix timestamp.

    Tokens are resolved against ``at`` (defaults to the current time).

    Raises:
        InvalidConditionError: If ``value`` is neither a timestamp nor a known token
    """
    if isinstance(value, bool):
        raise InvalidConditionError(f"conditions.{field} must be a number or a valid TimeRange", field=field)
    if isinstance(value, int):
        return value
    try:
        token = TimeRange(value)
    except ValueError:
        raise InvalidConditionError(
            f"conditions.{field} must be either a number or a valid TimeRange",
            field=field
        )
    base = now() if at is None else at
    return base + TIME_RANGE_SECONDS[token]


def resolve_conditions(
    conditions: Union[DelegationConditions, Mapping[str, Any], None],
    at: Optional[int] = None
) -> dict[str, int]:
    """Validate conditions and resolve relative time tokens.

    Returns a dict with only the conditions that are set.

    Raises:
        InvalidConditionError: If the conditions are malformed
    """
    if conditions is None:
        return {}
    if not isinstance(conditions, DelegationConditions):
        try:
            conditions = DelegationConditions.model_validate(dict(conditions))
        except ValidationError as e:
            loc = e.errors()[0].get("loc") or ("",)
            raise InvalidConditionError(
                f"Invalid delegation conditions: {e.errors()[0].get('msg')}",
                field=str(loc[0])
            ) from e

    resolved: dict[str, int] = {}
    if conditions.kind is not None:
        resolved["kind"] = conditions.kind
    if conditions.since is not None:
        resolved["since"] = resolve_time(conditions.since, "since", at)
    if conditions.until is not None:
        resolved["until"] = resolve_time(conditions.until, "until", at)
    return resolved


def condition_string(conditions: Mapping[str, int]) -> str:
    parts = []
    if conditions.get("kind") is not None:
        parts.append(f"kind={conditions['kind']}")
    if conditions.get("since") is not None:
        parts.append(f"created_at>{conditions['since']}")
    if conditions.get("until") is not None:
        parts.append(f"created_at<{conditions['until']}")
    return "&".join(parts)


def _delegation_digest(delegatee: str, cond: str) -> bytes:
    return hashlib.sha256(f"nostr:delegation:{delegatee}:{cond}".encode('utf-8')).digest()


def create_delegation(
    secret: SecretKey,
    delegatee: str,
    conditions: Union[DelegationConditions, Mapping[str, Any], None] = None
) -> Delegation:
    """Sign a delegation from the owner of ``secret`` to ``delegatee``."""
    public_key_from_hex(delegatee)
    cond = condition_string(resolve_conditions(conditions))
    key = signing_key(secret)
    sig = key.sign(_delegation_digest(delegatee, cond)).signature.hex()
    return Delegation(
        from_pubkey=get_public_key(key),
        to_pubkey=delegatee,
        cond=cond,
        sig=sig
    )


def verify_delegation(delegation: Delegation) -> bool:
    """Check the delegator's signature on a token."""
    try:
        public_key_from_hex(delegation.from_pubkey).verify(
            _delegation_digest(delegation.to_pubkey, delegation.cond),
            bytes.fromhex(delegation.sig)
        )
        return True
    except (BadSignatureError, CryptoError, KeyLoadError, ValueError):
        return False
