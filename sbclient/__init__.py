"""
sbclient: Service Bus management listing and peek-lock settlement

Paged, restartable enumeration of queues, topics, subscriptions and rules,
link-aware message settlement, and an in-memory emulator for local use.
"""

__version__ = "0.1.0"

from .exceptions import (
    EntityNotFoundError,
    ErrorKind,
    InvalidContinuationTokenError,
    InvalidOperationError,
    MessageAlreadySettledError,
    MessageLinkSeveredError,
    MessageLockLostError,
    ParseError,
    ServiceBusError,
    SessionLockLostError,
    TransportError,
)
from .links import LinkHandle, ReceiverLink
from .management import ServiceBusAdministrationClient
from .messages import ReceivedMessage
from .paging import EntitiesResponse, PagedAsyncIterator, PagedLister
from .receiver import ServiceBusReceiver
from .settlement import DispositionType, MessageTransport, SettlementGuard, SettlementState
from .transport import AtomXmlTransport, Transport, TransportResponse

__all__ = [
    "__version__",
    "AtomXmlTransport",
    "DispositionType",
    "EntitiesResponse",
    "EntityNotFoundError",
    "ErrorKind",
    "InvalidContinuationTokenError",
    "InvalidOperationError",
    "LinkHandle",
    "MessageAlreadySettledError",
    "MessageLinkSeveredError",
    "MessageLockLostError",
    "MessageTransport",
    "PagedAsyncIterator",
    "PagedLister",
    "ParseError",
    "ReceivedMessage",
    "ReceiverLink",
    "ServiceBusAdministrationClient",
    "ServiceBusError",
    "ServiceBusReceiver",
    "SessionLockLostError",
    "SettlementGuard",
    "SettlementState",
    "Transport",
    "TransportError",
    "TransportResponse",
]
