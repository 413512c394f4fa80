"""
Receive Links

A received message keeps a reference to the link that delivered it. The
settlement guard only asks that link whether it is still open; opening,
closing and recovering links belongs to whoever created them.

Author: sbclient contributors
Date: 2026-10-17
"""

import uuid
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from .logging_utils import StructuredLogger


logger = StructuredLogger('sbclient.links')


class LinkHandle(ABC):
    """Liveness view of a receive link."""

    name: str
    entity_path: str
    session_id: Optional[str] = None

    @abstractmethod
    def is_open(self) -> bool:
        """True while the link can carry dispositions."""

    @abstractmethod
    def close(self) -> None:
        """Close the link."""


class ReceiverLink(LinkHandle):
    """
    Receive link bound to an entity (and, for session entities, to one session).

    Close callbacks run once, in registration order, when the link closes.
    """

    def __init__(self, entity_path: str, session_id: Optional[str] = None, name: Optional[str] = None):
        self.name = name or f"{entity_path}-{uuid.uuid4()}"
        self.entity_path = entity_path
        self.session_id = session_id
        self._open = True
        self._on_close: List[Callable[["ReceiverLink"], None]] = []

    def is_open(self) -> bool:
        return self._open

    def on_close(self, callback: Callable[["ReceiverLink"], None]) -> None:
        """Register a callback invoked when the link closes."""
        self._on_close.append(callback)

    def close(self) -> None:
        if not self._open:
            return
        self._open = False
        logger.debug(
            f"link_closed: {self.entity_path}",
            operation="link_closed",
            link_name=self.name,
            entity_path=self.entity_path,
            session_id=self.session_id,
        )
        callbacks, self._on_close = self._on_close, []
        for callback in callbacks:
            callback(self)

    def __repr__(self) -> str:
        state = "open" if self._open else "closed"
        return f"ReceiverLink(name={self.name!r}, session_id={self.session_id!r}, {state})"
