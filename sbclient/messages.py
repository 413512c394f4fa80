"""
Received Messages

Pydantic model of a message delivered in peek-lock mode, with its disposition
entry points. Every disposition goes through the ``SettlementGuard`` the
message was attached to at receive time.

Author: sbclient contributors
Date: 2026-10-17
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from .exceptions import InvalidOperationError
from .links import LinkHandle
from .settlement import DispositionType, SettlementGuard, SettlementState


class ReceivedMessage(BaseModel):
    """
    Message received under a peek-lock or session contract.

    The link reference is an association used only for liveness checks; the
    message never opens or closes it.
    """
    model_config = ConfigDict(extra='ignore')

    message_id: str
    entity_path: str
    body: Any = None
    session_id: Optional[str] = None
    correlation_id: Optional[str] = None
    content_type: Optional[str] = None
    subject: Optional[str] = None
    application_properties: Dict[str, Any] = Field(default_factory=dict)

    sequence_number: int = 0
    delivery_count: int = 0
    enqueued_time_utc: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    lock_token: Optional[str] = None
    locked_until_utc: Optional[datetime] = None
    requires_session: bool = False

    dead_letter_reason: Optional[str] = None
    dead_letter_error_description: Optional[str] = None

    _link: Optional[LinkHandle] = PrivateAttr(default=None)
    _guard: Optional[SettlementGuard] = PrivateAttr(default=None)
    _state: SettlementState = PrivateAttr(default=SettlementState.LOCKED)

    @classmethod
    def received(
        cls,
        record: Dict[str, Any],
        link: LinkHandle,
        guard: SettlementGuard,
        requires_session: bool = False,
    ) -> "ReceivedMessage":
        """Build a message from a transport record and bind it to its link."""
        message = cls.model_validate({**record, "requires_session": requires_session})
        message._link = link
        message._guard = guard
        return message

    @property
    def link(self) -> Optional[LinkHandle]:
        return self._link

    @property
    def state(self) -> SettlementState:
        return self._state

    def mark(self, state: SettlementState) -> None:
        """Record a settlement state transition (driven by the guard)."""
        self._state = state

    def bind_link(self, link: LinkHandle) -> None:
        """
        Associate the message with a freshly opened link.

        Only non-session messages can move: a session message's lock belongs
        to the link it was received on.

        Raises:
            InvalidOperationError: The message belongs to a session entity
        """
        if self.requires_session:
            raise InvalidOperationError(
                "bind_link",
                "session messages stay bound to the link that holds the session lock",
            )
        self._link = link

    async def _settle(self, disposition: DispositionType, **options: Any) -> Optional[datetime]:
        if self._guard is None:
            raise InvalidOperationError(
                disposition.value,
                "message was not received in peek-lock mode",
            )
        return await self._guard.settle(self, disposition, **options)

    async def complete(self) -> None:
        """Remove the message from the entity."""
        await self._settle(DispositionType.COMPLETE)

    async def abandon(self, properties_to_modify: Optional[Dict[str, Any]] = None) -> None:
        """Release the lock so the message can be received again."""
        await self._settle(DispositionType.ABANDON, properties_to_modify=properties_to_modify)

    async def defer(self, properties_to_modify: Optional[Dict[str, Any]] = None) -> None:
        """Set the message aside; it can only be received again by sequence number."""
        await self._settle(DispositionType.DEFER, properties_to_modify=properties_to_modify)

    async def dead_letter(
        self,
        reason: Optional[str] = None,
        description: Optional[str] = None,
    ) -> None:
        """Move the message to the dead-letter sub-queue."""
        await self._settle(DispositionType.DEAD_LETTER, reason=reason, description=description)

    async def renew_lock(self) -> datetime:
        """Extend the message lock; returns the new locked-until time."""
        return await self._settle(DispositionType.RENEW_LOCK)
