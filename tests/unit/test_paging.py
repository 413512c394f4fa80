"""
Unit Tests for Paged Entity Listing

Tests for page fetching, continuation tokens, restartable scans and
malformed-record handling.

Author: sbclient contributors
Date: 2026-10-17
"""

import math
import pytest

from sbclient.atom import AtomFeed, parse_atom
from sbclient.constants import QUEUES_PATH
from sbclient.decoders import build_queue, build_rule
from sbclient.exceptions import InvalidContinuationTokenError, ParseError, TransportError
from sbclient.paging import (
    EntitiesResponse,
    PagedLister,
    marker_from_next_link,
    validate_continuation_token,
)
from sbclient.transport import Transport, TransportResponse


def queue_record(name: str, **fields) -> dict:
    return {
        "Title": name,
        "Id": f"https://fake.servicebus.windows.net/{name}?api-version=2017-04",
        "QueueDescription": fields,
    }


class FakeListTransport(Transport):
    """Serves a fixed record list with skip/top paging and records every request."""

    def __init__(self, records, default_top=100):
        self.records = records
        self.default_top = default_top
        self.calls = []
        self.body_override = None
        self.next_link_override = None

    async def send_request(self, method, path, query_params=None):
        query = dict(query_params or {})
        self.calls.append((method, path, query))
        if self.body_override is not None:
            return TransportResponse(status=200, parsed_body=self.body_override)

        skip = int(query.get("$skip", 0))
        top = int(query.get("$top", self.default_top))
        page = self.records[skip:skip + top]
        next_link = None
        if skip + len(page) < len(self.records):
            next_link = (
                f"https://fake.servicebus.windows.net/{path}"
                f"?$skip={skip + len(page)}&$top={top}&api-version=2017-04"
            )
        if self.next_link_override is not None:
            next_link = self.next_link_override
        return TransportResponse(status=200, parsed_body=AtomFeed(page, next_link=next_link))


@pytest.fixture
def records():
    return [queue_record(f"queue-{i:03d}") for i in range(25)]


@pytest.fixture
def transport(records):
    return FakeListTransport(records)


@pytest.fixture
def lister(transport):
    return PagedLister(transport, build_queue, "queue")


class TestContinuationTokens:
    """Tests for token validation and next-link parsing."""

    @pytest.mark.parametrize("token", [None, "0", "10", "12345"])
    def test_valid_tokens(self, token):
        """Test that non-negative integer strings are accepted."""
        validate_continuation_token(token)

    @pytest.mark.parametrize("token", ["-1", "abc", "", "1.5", " 3", "１２", 7])
    def test_invalid_tokens(self, token):
        """Test that anything but a non-negative integer string is rejected."""
        with pytest.raises(InvalidContinuationTokenError):
            validate_continuation_token(token)

    def test_invalid_token_message(self):
        """Test the error message carries the token."""
        with pytest.raises(InvalidContinuationTokenError) as exc_info:
            validate_continuation_token("-1")
        assert str(exc_info.value) == "Invalid continuationToken -1 provided"
        assert isinstance(exc_info.value, ValueError)

    def test_marker_from_next_link(self):
        """Test extracting $skip from a next link."""
        link = "https://ns.servicebus.windows.net/$Resources/Queues?$skip=100&$top=100&api-version=2017-04"
        assert marker_from_next_link(link) == "100"

    def test_marker_from_missing_link(self):
        """Test that no link means no further page."""
        assert marker_from_next_link(None) is None
        assert marker_from_next_link("") is None

    def test_marker_from_link_without_skip(self):
        """Test that a link without $skip ends the scan."""
        assert marker_from_next_link("https://ns/$Resources/Queues?$top=10") is None

    def test_marker_from_link_with_bad_skip(self):
        """Test that a non-integer $skip is a parse error."""
        with pytest.raises(ParseError):
            marker_from_next_link("https://ns/$Resources/Queues?$skip=abc")


class TestListPage:
    """Tests for single page round trips."""

    @pytest.mark.asyncio
    async def test_first_page_has_no_skip(self, lister, transport):
        """Test that the first request omits $skip and sends $top."""
        page = await lister.list_page(QUEUES_PATH, None, 10)

        assert isinstance(page, EntitiesResponse)
        assert len(page) == 10
        assert page.continuation_token == "10"
        assert transport.calls == [("GET", QUEUES_PATH, {"$top": "10"})]

    @pytest.mark.asyncio
    async def test_no_page_size_sends_no_top(self, lister, transport):
        """Test that $top is only sent when a page size is given."""
        page = await lister.list_page(QUEUES_PATH)

        assert len(page) == 25
        assert page.continuation_token is None
        assert transport.calls == [("GET", QUEUES_PATH, {})]

    @pytest.mark.asyncio
    async def test_marker_becomes_skip(self, lister, transport):
        """Test that a marker is sent as $skip."""
        page = await lister.list_page(QUEUES_PATH, "20", 10)

        assert [q.name for q in page] == [f"queue-{i:03d}" for i in range(20, 25)]
        assert page.continuation_token is None
        assert transport.calls[0][2] == {"$skip": "20", "$top": "10"}

    @pytest.mark.asyncio
    async def test_invalid_marker_makes_no_request(self, lister, transport):
        """Test that a bad marker fails before the transport is called."""
        with pytest.raises(InvalidContinuationTokenError):
            await lister.list_page(QUEUES_PATH, "abc")
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_response_is_kept(self, lister):
        """Test that the raw transport response is attached to the page."""
        page = await lister.list_page(QUEUES_PATH, None, 5)
        assert page.response is not None
        assert page.response.status == 200

    @pytest.mark.asyncio
    async def test_body_not_a_list(self, lister, transport):
        """Test that a non-list body raises ParseError."""
        transport.body_override = {"Error": {"Code": "Oops"}}

        with pytest.raises(ParseError) as exc_info:
            await lister.list_page(QUEUES_PATH)
        assert "queue" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_bad_next_link(self, lister, transport):
        """Test that a malformed next link raises ParseError."""
        transport.next_link_override = "https://ns/$Resources/Queues?$skip=-5"

        with pytest.raises(ParseError):
            await lister.list_page(QUEUES_PATH, None, 10)

    @pytest.mark.asyncio
    async def test_malformed_records_are_dropped(self, caplog):
        """Test that undecodable records are skipped with a warning."""
        records = [
            queue_record("good-1"),
            {"Title": "not-a-queue", "TopicDescription": {}},
            queue_record("bad-duration", LockDuration="sixty"),
            queue_record("bad-bool", RequiresSession="maybe"),
            "garbage",
            queue_record("good-2"),
        ]
        lister = PagedLister(FakeListTransport(records), build_queue, "queue")

        with caplog.at_level("WARNING", logger="sbclient.paging"):
            page = await lister.list_page(QUEUES_PATH)

        assert [q.name for q in page] == ["good-1", "good-2"]
        dropped = [r for r in caplog.records if getattr(r, "operation", None) == "record_dropped"]
        assert len(dropped) == 4

    @pytest.mark.asyncio
    async def test_typed_rule_values_are_kept(self, caplog):
        """Test that rules with typed property values decode instead of being dropped."""
        feed = parse_atom(
            '<feed xmlns="http://www.w3.org/2005/Atom"><title>Rules</title>'
            '<entry><title>by-color</title><content>'
            '<RuleDescription xmlns="http://schemas.microsoft.com/netservices/2010/10/servicebus/connect"'
            ' xmlns:i="http://www.w3.org/2001/XMLSchema-instance" xmlns:d="http://www.w3.org/2001/XMLSchema">'
            '<Filter i:type="CorrelationFilter"><Properties><KeyValueOfstringanyType>'
            '<Key>color</Key><Value i:type="d:string">red</Value>'
            '</KeyValueOfstringanyType></Properties></Filter>'
            '<Action i:type="EmptyRuleAction"/>'
            '</RuleDescription></content></entry></feed>'
        )
        transport = FakeListTransport([])
        transport.body_override = feed
        lister = PagedLister(transport, build_rule, "rule")

        with caplog.at_level("WARNING", logger="sbclient.paging"):
            page = await lister.list_page("events/Subscriptions/audit/Rules/")

        assert len(page) == 1
        assert page[0].filter.properties == {"color": "red"}
        assert not [r for r in caplog.records if getattr(r, "operation", None) == "record_dropped"]

    @pytest.mark.asyncio
    async def test_transport_error_propagates_unchanged(self, lister, transport):
        """Test that transport failures are not wrapped."""
        error = TransportError("boom", status_code=503)

        async def failing(*args, **kwargs):
            raise error

        transport.send_request = failing

        with pytest.raises(TransportError) as exc_info:
            await lister.list_page(QUEUES_PATH)
        assert exc_info.value is error


class TestPagedIteration:
    """Tests for full scans."""

    @pytest.mark.parametrize("total,page_size", [(0, 10), (1, 10), (10, 10), (25, 10), (25, 7), (3, 1)])
    @pytest.mark.asyncio
    async def test_fetch_count(self, total, page_size):
        """Test that a scan of N entities with page size P makes max(1, ceil(N/P)) requests."""
        transport = FakeListTransport([queue_record(f"q{i}") for i in range(total)])
        lister = PagedLister(transport, build_queue, "queue")

        items = await lister.list_all(QUEUES_PATH, page_size).to_list()

        assert [q.name for q in items] == [f"q{i}" for i in range(total)]
        assert len(transport.calls) == max(1, math.ceil(total / page_size))

    @pytest.mark.asyncio
    async def test_skips_are_monotonic(self, lister, transport):
        """Test that each request starts where the previous page ended."""
        pages = [page async for page in lister.by_page(QUEUES_PATH, None, 10)]

        assert [len(p) for p in pages] == [10, 10, 5]
        assert [p.continuation_token for p in pages] == ["10", "20", None]
        skips = [int(call[2].get("$skip", 0)) for call in transport.calls]
        assert skips == [0, 10, 20]

    @pytest.mark.asyncio
    async def test_scans_are_restartable(self, lister, transport):
        """Test that iterating twice yields the same entities from a fresh start."""
        iterator = lister.list_all(QUEUES_PATH, 10)

        first = [q.name async for q in iterator]
        second = [q.name async for q in iterator]

        assert first == second
        assert len(first) == 25
        assert len(transport.calls) == 6
        assert "$skip" not in transport.calls[3][2]

    @pytest.mark.asyncio
    async def test_concurrent_scans_do_not_share_state(self, lister):
        """Test that two interleaved scans each see every entity."""
        iterator = lister.list_all(QUEUES_PATH, 4)
        scan_a = iterator.__aiter__()
        scan_b = iterator.__aiter__()

        first_a = await scan_a.__anext__()
        names_b = [q.name async for q in scan_b]
        rest_a = [q.name async for q in scan_a]

        assert [first_a.name] + rest_a == names_b

    @pytest.mark.asyncio
    async def test_resume_from_token(self, lister, transport):
        """Test resuming a scan from a previously returned token."""
        pages = [page async for page in lister.list_all(QUEUES_PATH, 10).by_page("20")]

        assert len(pages) == 1
        assert [q.name for q in pages[0]] == [f"queue-{i:03d}" for i in range(20, 25)]
        assert transport.calls[0][2]["$skip"] == "20"

    @pytest.mark.parametrize("token", ["-1", "abc"])
    def test_by_page_rejects_token_before_any_request(self, lister, transport, token):
        """Test that by_page validates the token synchronously."""
        with pytest.raises(InvalidContinuationTokenError):
            lister.list_all(QUEUES_PATH).by_page(token)
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_by_page_page_size_override(self, lister, transport):
        """Test that by_page can override the iterator's page size."""
        pages = [page async for page in lister.list_all(QUEUES_PATH, 10).by_page(None, 20)]

        assert [len(p) for p in pages] == [20, 5]
        assert transport.calls[0][2]["$top"] == "20"
