"""Custom exceptions for nostr-connect."""


class NostrConnectError(Exception):
    """Base exception for nostr-connect."""
    pass


class MalformedURIError(NostrConnectError):
    """Raised when a pairing URI is missing fields or carries invalid metadata."""

    def __init__(self, message: str, uri: str = ""):
        super().__init__(message)
        self.uri = uri


class EncodingError(NostrConnectError):
    """Raised when an outbound envelope cannot be encrypted or signed."""
    pass


class DecodingError(NostrConnectError):
    """Raised when an inbound envelope cannot be verified, decrypted or parsed.

    Never surfaced to callers: inbound traffic that fails to decode is dropped.
    """
    pass


class DecryptionError(DecodingError):
    """Raised when authenticated decryption fails."""
    pass


class ProtocolError(NostrConnectError):
    """A response that does not belong to the request being awaited.

    Never raised to callers: the engine drops such responses and keeps waiting.
    """

    def __init__(self, message: str, request_id: str = ""):
        super().__init__(message)
        self.request_id = request_id


class RemoteError(NostrConnectError):
    """Raised when the remote side answered a call with an error."""

    def __init__(self, message: str, method: str = "", request_id: str = ""):
        super().__init__(message)
        self.method = method
        self.request_id = request_id


class RequestTimeoutError(NostrConnectError, TimeoutError):
    """Raised when no matching response arrived before the call deadline."""

    def __init__(self, message: str, method: str = "", request_id: str = "", timeout: float = 0.0):
        super().__init__(message)
        self.method = method
        self.request_id = request_id
        self.timeout = timeout


class UnsupportedMethodError(NostrConnectError):
    """Raised when a request names a method with no registered handler."""

    def __init__(self, method: str):
        super().__init__(f"Unsupported method: {method}")
        self.method = method


class NotConnectedError(NostrConnectError):
    """Raised when a capability is invoked while no counterparty is paired."""
    pass


class InvalidConditionError(NostrConnectError):
    """Raised when delegation conditions are malformed."""

    def __init__(self, message: str, field: str = ""):
        super().__init__(message)
        self.field = field


class DisconnectError(NostrConnectError):
    """Raised when the outbound disconnect notification could not be sent."""
    pass


class RelayError(NostrConnectError):
    """Base exception for relay transport failures."""

    def __init__(self, message: str, url: str = ""):
        super().__init__(message)
        self.url = url


class RelayConnectionError(RelayError):
    """Raised when the relay cannot be reached or the connection was lost."""
    pass


class PublishError(RelayError):
    """Raised when the relay rejected or did not acknowledge a published event."""

    def __init__(self, message: str, url: str = "", event_id: str = ""):
        super().__init__(message, url=url)
        self.event_id = event_id


class KeyLoadError(NostrConnectError):
    """Error loading a key from file."""
    pass


class ConfigurationError(NostrConnectError):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, missing_key: str = ""):
        super().__init__(message)
        self.missing_key = missing_key
