"""
Service Bus Receiver

Peek-lock receiver over a ``MessageTransport``. It owns one receive link;
every message it hands out is bound to that link and to a shared
``SettlementGuard``.

Author: sbclient contributors
Date: 2026-10-17
"""

from typing import List, Optional, Sequence

from .exceptions import InvalidOperationError
from .links import LinkHandle
from .logging_utils import StructuredLogger
from .messages import ReceivedMessage
from .settlement import MessageTransport, SettlementGuard


logger = StructuredLogger('sbclient.receiver')


class ServiceBusReceiver:
    """
    Receives messages from a queue, a subscription (``topic/Subscriptions/sub``)
    or a dead-letter sub-queue.

    Args:
        transport: Messaging transport
        entity_path: Entity to receive from
        requires_session: True for session-enabled entities
        session_id: Session to lock; ``None`` lets the transport pick one
    """

    def __init__(
        self,
        transport: MessageTransport,
        entity_path: str,
        requires_session: bool = False,
        session_id: Optional[str] = None,
    ):
        self._transport = transport
        self._guard = SettlementGuard(transport)
        self.entity_path = entity_path
        self.requires_session = requires_session
        self.session_id = session_id
        self._link: Optional[LinkHandle] = None
        self._closed = False

    @property
    def link(self) -> Optional[LinkHandle]:
        return self._link

    def is_open(self) -> bool:
        return self._link is not None and self._link.is_open()

    async def open(self) -> "ServiceBusReceiver":
        """Open the receive link if it is not open yet."""
        if self._closed:
            raise InvalidOperationError("open", "receiver has been closed")
        if self.is_open():
            return self

        self._link = await self._transport.open_link(
            self.entity_path,
            session_id=self.session_id if self.requires_session else None,
        )
        if self.requires_session:
            self.session_id = self._link.session_id

        logger.debug(
            f"receiver_opened: {self.entity_path}",
            operation="receiver_opened",
            entity_path=self.entity_path,
            session_id=self.session_id,
        )
        return self

    async def _ensure_open(self, operation: str) -> LinkHandle:
        if self._closed:
            raise InvalidOperationError(operation, "receiver has been closed")
        await self.open()
        return self._link

    def _wrap(self, records: List[dict], link: LinkHandle) -> List[ReceivedMessage]:
        return [
            ReceivedMessage.received(record, link, self._guard, requires_session=self.requires_session)
            for record in records
        ]

    async def receive_messages(self, max_message_count: int = 1) -> List[ReceivedMessage]:
        """
        Receive up to ``max_message_count`` messages in peek-lock mode.

        Raises:
            ValueError: ``max_message_count`` is less than 1
            InvalidOperationError: The receiver has been closed
        """
        if max_message_count < 1:
            raise ValueError("max_message_count must be at least 1")
        link = await self._ensure_open("receive_messages")
        records = await self._transport.receive_messages(link, max_message_count)
        return self._wrap(records, link)

    async def receive_deferred_messages(self, sequence_numbers: Sequence[int]) -> List[ReceivedMessage]:
        """Receive previously deferred messages by sequence number."""
        link = await self._ensure_open("receive_deferred_messages")
        records = await self._transport.receive_deferred_messages(link, list(sequence_numbers))
        return self._wrap(records, link)

    async def peek_messages(self, max_message_count: int = 1) -> List[dict]:
        """Browse messages without locking them."""
        if self._closed:
            raise InvalidOperationError("peek_messages", "receiver has been closed")
        return await self._transport.peek_messages(self.entity_path, max_message_count)

    def adopt(self, message: ReceivedMessage) -> ReceivedMessage:
        """
        Bind a message received on a closed link to this receiver's live link.

        Raises:
            InvalidOperationError: The receiver is not open, or the message is session-bound
        """
        if not self.is_open():
            raise InvalidOperationError("adopt", "receiver link is not open")
        message.bind_link(self._link)
        return message

    async def close(self) -> None:
        """Close the receive link; session locks held by it are released."""
        self._closed = True
        if self._link is not None and self._link.is_open():
            self._link.close()
        logger.debug(
            f"receiver_closed: {self.entity_path}",
            operation="receiver_closed",
            entity_path=self.entity_path,
            session_id=self.session_id,
        )

    async def __aenter__(self) -> "ServiceBusReceiver":
        return await self.open()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
