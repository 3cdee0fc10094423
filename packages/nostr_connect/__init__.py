"""NostrConnect remote signing.

An application asks a remote signer to use a key it never sees (get public
key, sign events, delegate, encrypt/decrypt) through encrypted request/response
events exchanged over a relay.

Public API:
- Connect: application-side session with a paired signer
- Signer: signer-side responder holding the key
- ConnectURI: out-of-band pairing offer
- NostrRPC: request/response engine under both
- Relay, Transport, Filter, Subscription: relay transport
"""

from .connect import Connect, SessionEvent, SessionState
from .constants import NOSTR_CONNECT_KIND, ConnectMethod, TimeRange
from .event import Event
from .models import DelegationConditions, Metadata
from .nip26 import Delegation
from .protocol import Request, Response
from .relay import Filter, Relay, Subscription, Transport
from .rpc import NostrRPC, RequestContext
from .signer import Signer
from .uri import ConnectURI

__all__ = [
    "Connect",
    "SessionEvent",
    "SessionState",
    "Signer",
    "ConnectURI",
    "NostrRPC",
    "RequestContext",
    "Request",
    "Response",
    "Event",
    "Metadata",
    "DelegationConditions",
    "Delegation",
    "Relay",
    "Transport",
    "Filter",
    "Subscription",
    "ConnectMethod",
    "TimeRange",
    "NOSTR_CONNECT_KIND",
]

__version__ = "0.1.0"
