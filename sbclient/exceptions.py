"""
Service Bus Client Exception Hierarchy

Exception types raised by entity listing and message settlement, each carrying
an error code, an ``ErrorKind`` and structured details.

Author: sbclient contributors
Date: 2026-10-17
"""

from enum import Enum
from typing import Optional, Dict, Any

from .constants import (
    ERROR_INVALID_CONTINUATION_TOKEN,
    ERROR_LINK_SEVERED,
    ERROR_MESSAGE_ALREADY_SETTLED,
)


class ErrorKind(str, Enum):
    """Stable classification of a failure, independent of the exception class."""
    PARSE = "Parse"
    INVALID_CONTINUATION_TOKEN = "InvalidContinuationToken"
    LINK_SEVERED = "LinkSevered"
    LOCK_LOST = "LockLost"
    ALREADY_SETTLED = "AlreadySettled"
    TRANSPORT = "Transport"
    INVALID_OPERATION = "InvalidOperation"


class ServiceBusError(Exception):
    """
    Base exception for all Service Bus client errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., 'ParseError')
        kind: ErrorKind classification
        details: Additional context (entity path, status code, etc.)
    """

    error_code: str = "ServiceBusError"
    kind: ErrorKind = ErrorKind.TRANSPORT

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format."""
        return {
            "error": {
                "code": self.error_code,
                "kind": self.kind.value,
                "message": self.message,
                "details": self.details
            }
        }


# ========== Listing Errors ==========

class ParseError(ServiceBusError):
    """Raised when a response body cannot be turned into the expected shape."""
    error_code = "ParseError"
    kind = ErrorKind.PARSE

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = dict(details or {})
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details=details)
        self.status_code = status_code


class InvalidContinuationTokenError(ServiceBusError, ValueError):
    """Raised when a caller-supplied continuation token is not a non-negative integer."""
    error_code = "InvalidContinuationToken"
    kind = ErrorKind.INVALID_CONTINUATION_TOKEN

    def __init__(self, token: Any, message: Optional[str] = None):
        message = message or ERROR_INVALID_CONTINUATION_TOKEN.format(token=token)
        super().__init__(message, details={"continuation_token": token})
        self.token = token


# ========== Transport Errors ==========

class TransportError(ServiceBusError):
    """
    Raised by a transport when the remote side rejects a request.

    Attributes:
        status_code: HTTP status code, if the failure came from an HTTP response
        code: Error code reported by the service body, if any
    """
    error_code = "TransportError"
    kind = ErrorKind.TRANSPORT

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = dict(details or {})
        if status_code is not None:
            details["status_code"] = status_code
        if code:
            details["service_code"] = code
        super().__init__(message, details=details)
        self.status_code = status_code
        self.code = code


class EntityNotFoundError(TransportError):
    """Raised when an entity (queue, topic, subscription, rule) is not found."""
    error_code = "EntityNotFound"

    def __init__(
        self,
        entity_type: str,
        entity_name: str,
        message: Optional[str] = None
    ):
        message = message or f"{entity_type.capitalize()} '{entity_name}' not found"
        details = {"entity_type": entity_type, "entity_name": entity_name}
        super().__init__(message, status_code=404, code="EntityNotFound", details=details)


class EntityAlreadyExistsError(TransportError):
    """Raised when creating an entity whose name is already taken."""
    error_code = "EntityAlreadyExists"

    def __init__(self, entity_type: str, entity_name: str):
        message = f"{entity_type.capitalize()} '{entity_name}' already exists"
        details = {"entity_type": entity_type, "entity_name": entity_name}
        super().__init__(message, status_code=409, code="EntityAlreadyExists", details=details)


# ========== Settlement Errors ==========

class SettlementError(ServiceBusError):
    """Base class for failures of a disposition or lock renewal."""
    error_code = "SettlementError"


class MessageLinkSeveredError(SettlementError):
    """Raised when the link a message was received on is closed and settlement cannot proceed."""
    error_code = "MessageLinkSevered"
    kind = ErrorKind.LINK_SEVERED

    def __init__(self, disposition: str, message_id: Optional[str] = None):
        message = ERROR_LINK_SEVERED.format(verb=disposition)
        details: Dict[str, Any] = {"disposition": disposition}
        if message_id:
            details["message_id"] = message_id
        super().__init__(message, details=details)
        self.disposition = disposition


class MessageLockLostError(SettlementError):
    """Raised when a message lock has expired or is invalid."""
    error_code = "MessageLockLost"
    kind = ErrorKind.LOCK_LOST

    def __init__(
        self,
        message_id: str,
        lock_token: Optional[str] = None,
        message: Optional[str] = None
    ):
        message = message or f"Message lock lost for message '{message_id}'"
        details = {"message_id": message_id}
        if lock_token:
            details["lock_token"] = lock_token
        super().__init__(message, details=details)


class SessionLockLostError(SettlementError):
    """Raised when a session lock has expired or is held by another link."""
    error_code = "SessionLockLost"
    kind = ErrorKind.LOCK_LOST

    def __init__(
        self,
        session_id: str,
        entity_name: str,
        message: Optional[str] = None
    ):
        message = message or f"Session lock lost for session '{session_id}' in '{entity_name}'"
        details = {"session_id": session_id, "entity_name": entity_name}
        super().__init__(message, details=details)


class MessageAlreadySettledError(SettlementError):
    """Raised when a disposition is requested for a message that was already settled."""
    error_code = "MessageAlreadySettled"
    kind = ErrorKind.ALREADY_SETTLED

    def __init__(
        self,
        message_id: str,
        disposition: Optional[str] = None,
        message: Optional[str] = None
    ):
        message = message or ERROR_MESSAGE_ALREADY_SETTLED.format(message_id=message_id)
        details = {"message_id": message_id}
        if disposition:
            details["disposition"] = disposition
        super().__init__(message, details=details)


class InvalidOperationError(ServiceBusError):
    """Raised when an operation is invalid in the current state."""
    error_code = "InvalidOperation"
    kind = ErrorKind.INVALID_OPERATION

    def __init__(
        self,
        operation: str,
        reason: str,
        message: Optional[str] = None
    ):
        message = message or f"Invalid operation '{operation}': {reason}"
        details = {"operation": operation, "reason": reason}
        super().__init__(message, details=details)


# ========== Dead Letter Reasons ==========

class DeadLetterReason:
    """Standard dead letter reasons."""
    MAX_DELIVERY_COUNT_EXCEEDED = "MaxDeliveryCountExceeded"


# ========== Utility Functions ==========

TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}


def is_transient_error(error: Exception) -> bool:
    """
    Determine if an error is transient and can be retried by the caller.

    Args:
        error: Exception to check

    Returns:
        True if error is transient and operation could be retried
    """
    if isinstance(error, TransportError):
        return error.status_code in TRANSIENT_STATUS_CODES

    if isinstance(error, ServiceBusError):
        return False

    # Standard transient exceptions
    if isinstance(error, (
        ConnectionError,
        ConnectionRefusedError,
        ConnectionResetError,
        TimeoutError,
    )):
        return True

    return False
