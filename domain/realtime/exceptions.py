"""Realtime error taxonomy.

Every error raised by the event-delivery layer is a BusinessException so
that HTTP routes and WebSocket frames render it through the same code
table. Which errors the client may retry is decided by the error itself
(see ``AuthErrorKind.retryable``), not by string matching on messages.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional

from domain.common.exceptions import BusinessException
from shared.codes import BusinessCode


class AuthErrorKind(str, Enum):
    EXPIRED = "expired"
    MALFORMED = "malformed"
    INVALID = "invalid"

    @property
    def retryable(self) -> bool:
        """Only an expired credential can be fixed by refreshing it."""
        return self is AuthErrorKind.EXPIRED


_AUTH_CODES = {
    AuthErrorKind.EXPIRED: BusinessCode.TOKEN_EXPIRED,
    AuthErrorKind.MALFORMED: BusinessCode.TOKEN_MALFORMED,
    AuthErrorKind.INVALID: BusinessCode.TOKEN_INVALID,
}


class RealtimeAuthException(BusinessException):
    """Credential rejected.

    The message is the same for every cause inside a kind, so a caller
    cannot tell an unknown user apart from a bad signature.
    """

    def __init__(self, kind: AuthErrorKind):
        self.kind = AuthErrorKind(kind)
        super().__init__(
            code=_AUTH_CODES[self.kind],
            message=f"Authentication failed: {self.kind.value}",
            error_type="AuthError",
            details={"kind": self.kind.value},
        )


class ChannelForbiddenException(BusinessException):
    def __init__(self, channel: str):
        super().__init__(
            code=BusinessCode.FORBIDDEN,
            message="Not allowed to join channel",
            error_type="Forbidden",
            details={"channel": channel},
            field="channel",
        )


class InvalidChannelException(BusinessException):
    def __init__(self, channel: str):
        super().__init__(
            code=BusinessCode.CHANNEL_INVALID,
            message="Invalid channel name",
            error_type="InvalidChannel",
            details={"channel": channel},
            field="channel",
        )


class ConnectionNotFoundException(BusinessException):
    def __init__(self, connection_id: str):
        super().__init__(
            code=BusinessCode.CONNECTION_NOT_FOUND,
            message="Connection not found",
            error_type="ConnectionNotFound",
            details={"connection_id": connection_id},
        )


class ConnectionNotAuthenticatedException(BusinessException):
    def __init__(self, connection_id: str):
        super().__init__(
            code=BusinessCode.UNAUTHORIZED,
            message="Connection is not authenticated",
            error_type="Unauthenticated",
            details={"connection_id": connection_id},
        )


class RealtimeRateLimitException(BusinessException):
    def __init__(self, retry_after: float):
        self.retry_after = max(0.0, float(retry_after))
        super().__init__(
            code=BusinessCode.TOO_MANY_REQUESTS,
            message="Too many connection attempts, please try again later",
            error_type="RateLimit",
            details={"retry_after": round(self.retry_after, 3)},
        )


class TransportClosedException(BusinessException):
    def __init__(self, connection_id: str, reason: Optional[str] = None):
        details = {"connection_id": connection_id}
        if reason:
            details["reason"] = reason
        super().__init__(
            code=BusinessCode.NETWORK_ERROR,
            message="Connection closed",
            error_type="TransportError",
            details=details,
        )


class DuplicateEventException(BusinessException):
    """Internal only: raised when an event id is seen twice."""

    def __init__(self, event_id: str):
        super().__init__(
            code=BusinessCode.DUPLICATE_EVENT,
            message="Duplicate event",
            error_type="DuplicateEvent",
            details={"event_id": event_id},
        )


__all__ = [
    "AuthErrorKind",
    "RealtimeAuthException",
    "ChannelForbiddenException",
    "InvalidChannelException",
    "ConnectionNotFoundException",
    "ConnectionNotAuthenticatedException",
    "RealtimeRateLimitException",
    "TransportClosedException",
    "DuplicateEventException",
]
