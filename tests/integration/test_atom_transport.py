"""
Integration Tests for the HTTP Transport

Runs the administration client over ``AtomXmlTransport`` against the
emulator app, so every page goes through Atom rendering, HTTP and parsing.

Author: sbclient contributors
Date: 2026-10-17
"""

import httpx
import pytest

from sbclient.emulator import InMemoryBroker, create_app
from sbclient.exceptions import EntityNotFoundError, InvalidContinuationTokenError
from sbclient.logging_utils import CorrelationContext
from sbclient.management import ServiceBusAdministrationClient
from sbclient.models import FilterType, RuleFilter
from sbclient.transport import AtomXmlTransport


QUEUE_NAMES = [f"queue-{i:02d}" for i in range(5)]


@pytest.fixture
async def broker():
    """Create a broker with five queues and one topic."""
    b = InMemoryBroker(namespace="http.servicebus.windows.net")
    for name in QUEUE_NAMES:
        await b.create_queue(name)
    await b.create_topic("events")
    await b.create_subscription("events", "audit")
    await b.create_subscription("events", "billing", requires_session=True)
    await b.create_rule(
        "events",
        "audit",
        "by-region",
        RuleFilter(
            filter_type=FilterType.CORRELATION_FILTER,
            correlation_id="abc",
            properties={"region": "eu"},
        ),
    )
    yield b
    await b.reset()


@pytest.fixture
async def http_client(broker):
    """Create an httpx client routed to the emulator app."""
    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=create_app(broker)))
    yield client
    await client.aclose()


@pytest.fixture
def admin(http_client):
    """Create an administration client with two entities per page."""
    transport = AtomXmlTransport("testserver", client=http_client, scheme="http")
    return ServiceBusAdministrationClient(transport, max_page_size=2)


class TestListingOverHttp:
    """Tests for full listings over HTTP."""

    @pytest.mark.asyncio
    async def test_list_all_queues(self, admin):
        """Test that every queue is returned once across pages."""
        queues = await admin.list_queues().to_list()

        assert [q.name for q in queues] == QUEUE_NAMES

    @pytest.mark.asyncio
    async def test_pages(self, admin):
        """Test page sizes and continuation tokens."""
        pages = [page async for page in admin.list_queues().by_page()]

        assert [len(page) for page in pages] == [2, 2, 1]
        assert [page.continuation_token for page in pages] == ["2", "4", None]
        assert pages[0].response.status == 200

    @pytest.mark.asyncio
    async def test_resume_from_token(self, admin):
        """Test resuming a scan from a continuation token."""
        pages = [page async for page in admin.list_queues().by_page(continuation_token="4")]

        assert [[q.name for q in page] for page in pages] == [["queue-04"]]

    @pytest.mark.asyncio
    async def test_invalid_token(self, admin):
        """Test that an invalid token fails before any request."""
        with pytest.raises(InvalidContinuationTokenError):
            admin.list_queues().by_page(continuation_token="two")

    @pytest.mark.asyncio
    async def test_runtime_properties(self, admin, broker):
        """Test runtime counters over HTTP."""
        await broker.send_message("queue-01", "a")
        await broker.send_message("events", "b", session_id="s1")

        queues = {q.name: q async for q in admin.list_queues_runtime_properties()}
        subscriptions = {
            s.subscription_name: s
            async for s in admin.list_subscriptions_runtime_properties("events")
        }

        assert queues["queue-01"].total_message_count == 1
        assert queues["queue-00"].total_message_count == 0
        assert subscriptions["audit"].total_message_count == 1
        assert subscriptions["billing"].total_message_count == 1

    @pytest.mark.asyncio
    async def test_subscriptions(self, admin):
        """Test that subscriptions decode with their topic."""
        subscriptions = await admin.list_subscriptions("events").to_list()

        assert [(s.topic_name, s.subscription_name) for s in subscriptions] == [
            ("events", "audit"),
            ("events", "billing"),
        ]
        assert subscriptions[1].requires_session is True

    @pytest.mark.asyncio
    async def test_rules(self, admin):
        """Test that correlation filters survive the round trip."""
        rules = await admin.list_rules("events", "audit").to_list()

        assert [r.name for r in rules] == ["$Default", "by-region"]
        correlation = rules[1].filter
        assert correlation.filter_type == FilterType.CORRELATION_FILTER
        assert correlation.correlation_id == "abc"
        assert correlation.properties == {"region": "eu"}

    @pytest.mark.asyncio
    async def test_missing_topic(self, admin):
        """Test that a 404 becomes EntityNotFoundError."""
        with pytest.raises(EntityNotFoundError):
            await admin.list_subscriptions("missing").to_list()

    @pytest.mark.asyncio
    async def test_correlation_id_round_trip(self, admin):
        """Test that the current correlation id reaches the emulator and comes back."""
        with CorrelationContext.scope("trace-7"):
            pages = [page async for page in admin.list_topics().by_page()]

        assert pages[0].response.headers["x-correlation-id"] == "trace-7"


class TestTransportLifecycle:
    """Tests for client ownership."""

    @pytest.mark.asyncio
    async def test_shared_client_not_closed(self, http_client):
        """Test that closing the transport leaves a caller's client open."""
        transport = AtomXmlTransport("testserver", client=http_client, scheme="http")

        await transport.close()

        assert http_client.is_closed is False

    @pytest.mark.asyncio
    async def test_own_client_closed(self):
        """Test that a transport closes the client it created."""
        transport = AtomXmlTransport("testserver")

        await transport.close()

        assert transport._client.is_closed is True

    def test_url(self):
        """Test namespace-relative URLs."""
        transport = AtomXmlTransport("contoso.servicebus.windows.net/")

        assert transport.get_url("/$Resources/Topics") == "https://contoso.servicebus.windows.net/$Resources/Topics"
