"""
Message Settlement

``SettlementGuard`` sits between a received message's disposition methods and
the message transport. Before anything is sent it checks the link the message
was received on:

- session entities: the session lock lives on that link, so a closed link
  makes every disposition fail for good (``LINK_SEVERED``);
- non-session entities: the lock lives on the server and can be settled over
  any link, except lock renewal which needs the original receive link.

Transport failures are never wrapped; they only drive the message state.

Author: sbclient contributors
Date: 2026-10-17
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from .constants import ERROR_SESSION_LOCK_RENEWAL
from .exceptions import (
    InvalidOperationError,
    MessageAlreadySettledError,
    MessageLinkSeveredError,
    MessageLockLostError,
    SessionLockLostError,
)
from .links import LinkHandle
from .logging_utils import StructuredLogger, track_operation_time

if TYPE_CHECKING:
    from .messages import ReceivedMessage


logger = StructuredLogger('sbclient.settlement')


class DispositionType(str, Enum):
    """Settlement verbs; the value is the verb used in error messages."""
    COMPLETE = "complete"
    ABANDON = "abandon"
    DEFER = "defer"
    DEAD_LETTER = "deadletter"
    RENEW_LOCK = "renewlock"


class SettlementState(str, Enum):
    """Lifecycle of a peek-locked message."""
    LOCKED = "Locked"
    SETTLED = "Settled"
    LOCK_LOST = "LockLost"
    LINK_SEVERED = "LinkSevered"


class MessageTransport(ABC):
    """Receive and settlement operations provided by the messaging layer."""

    @abstractmethod
    async def open_link(self, entity_path: str, session_id: Optional[str] = None) -> LinkHandle:
        """Open a receive link (acquiring the session lock for session entities)."""

    @abstractmethod
    async def receive_messages(self, link: LinkHandle, max_message_count: int) -> List[Dict[str, Any]]:
        """Receive up to ``max_message_count`` messages in peek-lock mode."""

    @abstractmethod
    async def receive_deferred_messages(
        self, link: LinkHandle, sequence_numbers: Sequence[int]
    ) -> List[Dict[str, Any]]:
        """Receive deferred messages by sequence number."""

    @abstractmethod
    async def peek_messages(self, entity_path: str, max_message_count: int) -> List[Dict[str, Any]]:
        """Browse messages without locking them."""

    @abstractmethod
    async def settle(
        self,
        link: Optional[LinkHandle],
        message: "ReceivedMessage",
        disposition: DispositionType,
        options: Dict[str, Any],
    ) -> None:
        """Apply complete/abandon/defer/deadletter to a message."""

    @abstractmethod
    async def renew_lock(self, link: Optional[LinkHandle], message: "ReceivedMessage") -> datetime:
        """Extend a message lock; returns the new locked-until time."""


class SettlementGuard:
    """
    Gates dispositions on link liveness.

    Concurrent dispositions of the same message are not serialized: the second
    call sees whatever state the first one left.
    """

    def __init__(self, transport: MessageTransport):
        self._transport = transport

    def check_link(self, message: "ReceivedMessage", disposition: DispositionType) -> None:
        """
        Fail fast when the message's link is closed and the verb needs it.

        Raises:
            MessageLinkSeveredError: Session message on a closed link, or lock
                renewal on a closed link
        """
        link = message.link
        if link is not None and link.is_open():
            return

        if not (message.requires_session or disposition == DispositionType.RENEW_LOCK):
            return

        if message.requires_session:
            message.mark(SettlementState.LINK_SEVERED)

        logger.warning(
            f"link_severed: cannot {disposition.value} message={message.message_id}",
            operation="link_severed",
            disposition=disposition.value,
            entity_path=message.entity_path,
            message_id=message.message_id,
            session_id=message.session_id,
        )
        raise MessageLinkSeveredError(disposition.value, message.message_id)

    @track_operation_time(logger, "settle")
    async def settle(
        self,
        message: "ReceivedMessage",
        disposition: DispositionType,
        **options: Any,
    ) -> Optional[datetime]:
        """
        Dispatch a disposition (or lock renewal) for ``message``.

        Args:
            message: Message received in peek-lock mode
            disposition: Verb to apply
            **options: Verb options (``properties_to_modify``, ``reason``, ``description``)

        Returns:
            New locked-until time for ``RENEW_LOCK``, otherwise ``None``

        Raises:
            MessageAlreadySettledError: The message was settled before
            MessageLinkSeveredError: The link the disposition depends on is closed
            InvalidOperationError: Lock renewal of a session message
            MessageLockLostError / SessionLockLostError / TransportError: From the transport
        """
        disposition = DispositionType(disposition)

        if message.state == SettlementState.SETTLED:
            raise MessageAlreadySettledError(message.message_id, disposition.value)
        if message.state == SettlementState.LINK_SEVERED:
            raise MessageLinkSeveredError(disposition.value, message.message_id)

        self.check_link(message, disposition)

        if disposition == DispositionType.RENEW_LOCK and message.requires_session:
            raise InvalidOperationError(
                disposition.value,
                "session messages are locked through their session",
                message=ERROR_SESSION_LOCK_RENEWAL,
            )

        try:
            if disposition == DispositionType.RENEW_LOCK:
                locked_until = await self._transport.renew_lock(message.link, message)
            else:
                await self._transport.settle(message.link, message, disposition, options)
                locked_until = None
        except (MessageLockLostError, SessionLockLostError):
            message.mark(SettlementState.LOCK_LOST)
            raise
        except MessageAlreadySettledError:
            message.mark(SettlementState.SETTLED)
            raise

        if disposition == DispositionType.RENEW_LOCK:
            message.locked_until_utc = locked_until
            logger.log_lock_operation(
                operation="lock_renewed",
                entity_path=message.entity_path,
                message_id=message.message_id,
                lock_token=message.lock_token,
                locked_until=locked_until.isoformat() if locked_until else None,
            )
            return locked_until

        message.mark(SettlementState.SETTLED)
        logger.log_message_operation(
            operation=f"message_{disposition.value}",
            entity_path=message.entity_path,
            message_id=message.message_id,
            sequence_number=message.sequence_number,
            lock_token=message.lock_token,
        )
        return None
