"""Protocol constants for NostrConnect."""

from enum import Enum


# Event kind reserved for NostrConnect request/response traffic
NOSTR_CONNECT_KIND = 24133

URI_SCHEME = "nostrconnect"


class ConnectMethod(str, Enum):
    """Methods of the NostrConnect dispatch table."""
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    GET_PUBLIC_KEY = "get_public_key"
    SIGN_EVENT = "sign_event"
    SIGN_PSBT = "sign_psbt"
    DESCRIBE = "describe"
    DELEGATE = "delegate"
    NIP04_ENCRYPT = "nip04_encrypt"
    NIP04_DECRYPT = "nip04_decrypt"


class TimeRange(str, Enum):
    """Relative time tokens accepted in delegation conditions."""
    FIVE_MINS = "5mins"
    ONE_HOUR = "1hour"
    ONE_DAY = "1day"
    ONE_WEEK = "1week"
    ONE_MONTH = "1month"
    ONE_YEAR = "1year"


TIME_RANGE_SECONDS = {
    TimeRange.FIVE_MINS: 60 * 5,
    TimeRange.ONE_HOUR: 60 * 60,
    TimeRange.ONE_DAY: 60 * 60 * 24,
    TimeRange.ONE_WEEK: 60 * 60 * 24 * 7,
    TimeRange.ONE_MONTH: 60 * 60 * 24 * 30,
    TimeRange.ONE_YEAR: 60 * 60 * 24 * 365,
}
