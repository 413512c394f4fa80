"""
Paged Entity Listing

Turns the skip/top listing endpoints into restartable async sequences.

``PagedLister`` owns the single-round-trip step (``list_page``) and the looping
policy (``by_page`` / ``list_all``); an entity kind only supplies a decoder.
Every scan starts from its own marker, so nothing is shared between scans.

Author: sbclient contributors
Date: 2026-10-17
"""

from typing import Any, AsyncIterator, Generic, Iterable, List, Optional, TypeVar
from urllib.parse import parse_qs, urlsplit

from .constants import (
    ERROR_LIST_NOT_ARRAY,
    ERROR_NEXT_LINK_SKIP,
    SKIP_QUERY_KEY,
    TOP_QUERY_KEY,
)
from .decoders import Decoder
from .exceptions import InvalidContinuationTokenError, ParseError
from .logging_utils import StructuredLogger, track_operation_time
from .transport import Transport, TransportResponse


logger = StructuredLogger('sbclient.paging')

T = TypeVar('T')


class EntitiesResponse(List[T]):
    """
    One page of decoded entities.

    Attributes:
        continuation_token: Marker of the next page, ``None`` when the scan is exhausted
        response: Raw transport response the page was decoded from
    """

    def __init__(
        self,
        items: Iterable[T] = (),
        continuation_token: Optional[str] = None,
        response: Optional[TransportResponse] = None,
    ):
        super().__init__(items)
        self.continuation_token = continuation_token
        self.response = response

    def __repr__(self) -> str:
        return (
            f"EntitiesResponse({list.__repr__(self)}, "
            f"continuation_token={self.continuation_token!r})"
        )


def _is_valid_token(token: Any) -> bool:
    return isinstance(token, str) and token.isascii() and token.isdigit()


def validate_continuation_token(token: Optional[str]) -> None:
    """
    Check a caller-supplied continuation token.

    ``None`` is valid (start of a scan); anything else must be a string holding
    a non-negative integer.

    Raises:
        InvalidContinuationTokenError: The token is not usable
    """
    if token is None:
        return
    if not _is_valid_token(token):
        raise InvalidContinuationTokenError(token)


def marker_from_next_link(next_link: Optional[str]) -> Optional[str]:
    """
    Extract the continuation marker from a feed's ``next`` link.

    Args:
        next_link: Href of the next link, if the feed carried one

    Returns:
        The ``$skip`` value, or ``None`` when there is no further page

    Raises:
        ParseError: The link has a ``$skip`` that is not a non-negative integer
    """
    if not next_link:
        return None

    try:
        query = parse_qs(urlsplit(next_link).query, keep_blank_values=True)
    except ValueError as e:
        raise ParseError(f"{ERROR_NEXT_LINK_SKIP}: {e}", details={"next_link": next_link})

    values = query.get(SKIP_QUERY_KEY)
    if not values:
        return None

    marker = values[0]
    if not _is_valid_token(marker):
        raise ParseError(
            f"{ERROR_NEXT_LINK_SKIP}: {marker!r}",
            details={"next_link": next_link},
        )
    return marker


class PagedLister(Generic[T]):
    """
    Paging algorithm shared by every entity kind.

    Args:
        transport: Management transport
        decoder: Raw record -> entity (``None`` to skip the record)
        entity_kind: Name used in logs and error messages (e.g. ``"queue"``)
    """

    def __init__(self, transport: Transport, decoder: Decoder, entity_kind: str):
        self._transport = transport
        self._decoder = decoder
        self.entity_kind = entity_kind

    @track_operation_time(logger, "list_page")
    async def list_page(
        self,
        parent_path: str,
        marker: Optional[str] = None,
        max_page_size: Optional[int] = None,
    ) -> EntitiesResponse[T]:
        """
        Fetch and decode a single page.

        Args:
            parent_path: Collection path (e.g. ``$Resources/Queues``)
            marker: Continuation token of the page, ``None`` for the first page
            max_page_size: Upper bound on the number of entities returned

        Returns:
            EntitiesResponse holding the page's entities and the next marker

        Raises:
            InvalidContinuationTokenError: ``marker`` is not a non-negative integer
            ParseError: The response is not a list, or its next link is malformed
            TransportError: Propagated unchanged from the transport
        """
        validate_continuation_token(marker)
        skip = int(marker or "0")

        query_params = {}
        if skip:
            query_params[SKIP_QUERY_KEY] = str(skip)
        if max_page_size:
            query_params[TOP_QUERY_KEY] = str(max_page_size)

        response = await self._transport.send_request("GET", parent_path, query_params)
        page = self._build_page(parent_path, response)

        logger.log_page_fetched(
            entity_kind=self.entity_kind,
            path=parent_path,
            skip=skip,
            top=max_page_size,
            item_count=len(page),
            continuation_token=page.continuation_token,
        )
        return page

    def _build_page(self, parent_path: str, response: TransportResponse) -> EntitiesResponse[T]:
        body = response.parsed_body
        if not isinstance(body, list):
            logger.warning(
                "Failure parsing response from service",
                operation="list_page",
                entity_kind=self.entity_kind,
                path=parent_path,
                body_type=type(body).__name__,
            )
            raise ParseError(
                ERROR_LIST_NOT_ARRAY.format(kind=self.entity_kind),
                status_code=response.status,
                details={"path": parent_path},
            )

        continuation_token = marker_from_next_link(getattr(body, "next_link", None))

        items: List[T] = []
        for index, raw in enumerate(body):
            try:
                entity = self._decoder(raw)
            except (ValueError, TypeError, KeyError) as e:
                logger.log_record_dropped(self.entity_kind, parent_path, str(e), index=index)
                continue
            if entity is None:
                logger.log_record_dropped(self.entity_kind, parent_path, "not decodable", index=index)
                continue
            items.append(entity)

        return EntitiesResponse(items, continuation_token=continuation_token, response=response)

    async def _pages(
        self,
        parent_path: str,
        marker: Optional[str],
        max_page_size: Optional[int],
    ) -> AsyncIterator[EntitiesResponse[T]]:
        while True:
            page = await self.list_page(parent_path, marker, max_page_size)
            yield page
            marker = page.continuation_token
            if marker is None:
                break

    async def _items(self, parent_path: str, max_page_size: Optional[int]) -> AsyncIterator[T]:
        async for page in self._pages(parent_path, None, max_page_size):
            for item in page:
                yield item

    def by_page(
        self,
        parent_path: str,
        continuation_token: Optional[str] = None,
        max_page_size: Optional[int] = None,
    ) -> AsyncIterator[EntitiesResponse[T]]:
        """
        Iterate whole pages, optionally resuming from a previously seen token.

        The token is validated here, before the iterator is returned and
        before any request is made.

        Raises:
            InvalidContinuationTokenError: ``continuation_token`` is not usable
        """
        validate_continuation_token(continuation_token)
        return self._pages(parent_path, continuation_token, max_page_size)

    def list_all(self, parent_path: str, max_page_size: Optional[int] = None) -> "PagedAsyncIterator[T]":
        """Lazy sequence of every entity under ``parent_path``."""
        return PagedAsyncIterator(self, parent_path, max_page_size)


class PagedAsyncIterator(Generic[T]):
    """
    Async iterable over all entities of a collection.

    Each ``async for`` starts a fresh scan; ``by_page`` exposes the page-level view.
    """

    def __init__(self, lister: PagedLister[T], parent_path: str, max_page_size: Optional[int] = None):
        self._lister = lister
        self._parent_path = parent_path
        self._max_page_size = max_page_size

    def __aiter__(self) -> AsyncIterator[T]:
        return self._lister._items(self._parent_path, self._max_page_size)

    def by_page(
        self,
        continuation_token: Optional[str] = None,
        max_page_size: Optional[int] = None,
    ) -> AsyncIterator[EntitiesResponse[T]]:
        return self._lister.by_page(
            self._parent_path,
            continuation_token,
            max_page_size or self._max_page_size,
        )

    async def to_list(self) -> List[T]:
        """Drain a fresh scan into a list."""
        return [item async for item in self]
