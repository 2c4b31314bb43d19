"""
Trashcan Relay — Error taxonomy

Errors raised at the collaborator boundaries (bus, store, authenticator) and
turned into log lines or session-local events by the relay engine.
"""


class RelayError(Exception):
    """Base class for relay errors."""

    # Session event used when the error is reported to a requester
    event = "error_message"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class DecodeError(RelayError):
    """Inbound bus payload is not valid structured data."""


class Unauthorized(RelayError):
    """Missing, malformed, expired or badly signed token."""

    event = "authorization_error"

    def __init__(self, message: str = "Unauthorized: invalid token"):
        super().__init__(message)


class InvalidRequest(RelayError):
    """Command or feedback value outside the allowed set."""

    event = "validation_error"


class NotFound(RelayError):
    """Feedback references an unknown detection."""

    event = "store_error"


class StoreFailure(RelayError):
    """Persistence unavailable or timed out."""

    event = "store_error"


class PublishFailure(RelayError):
    """Bus unreachable at publish time."""

    event = "publish_error"
