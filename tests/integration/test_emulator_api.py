"""
Integration Tests for the Emulator HTTP API

Exercises the FastAPI listing endpoints end-to-end with TestClient.

Author: sbclient contributors
Date: 2026-10-17
"""

import asyncio
import logging
import pytest
from fastapi.testclient import TestClient

from sbclient.atom import parse_atom
from sbclient.emulator import InMemoryBroker, create_app
from sbclient.emulator.error_handlers import get_status_code_for_exception
from sbclient.exceptions import (
    EntityAlreadyExistsError,
    EntityNotFoundError,
    InvalidOperationError,
    MessageLockLostError,
    TransportError,
)
from sbclient.models import FilterType, RuleFilter


async def seed_broker() -> InMemoryBroker:
    broker = InMemoryBroker(namespace="api.servicebus.windows.net")
    for name in ("alpha", "bravo", "charlie"):
        await broker.create_queue(name)
    await broker.create_topic("events")
    await broker.create_subscription("events", "audit")
    await broker.create_subscription("events", "billing")
    await broker.create_rule(
        "events",
        "audit",
        "errors",
        RuleFilter(filter_type=FilterType.SQL_FILTER, sql_expression="level = 'error'"),
        action="SET handled = true",
    )
    return broker


@pytest.fixture
def client():
    """Create a test client over a seeded broker."""
    broker = asyncio.run(seed_broker())
    return TestClient(create_app(broker))


class TestQueueListing:
    """Tests for GET /$Resources/Queues."""

    def test_first_page(self, client):
        """Test that a partial page carries a next link."""
        response = client.get("/$Resources/Queues", params={"$top": 2})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/atom+xml")
        feed = parse_atom(response.text)
        assert [entry["Title"] for entry in feed] == ["alpha", "bravo"]
        assert "$skip=2" in feed.next_link
        assert "$top=2" in feed.next_link

    def test_last_page(self, client):
        """Test that the final page has no next link."""
        response = client.get("/$Resources/Queues", params={"$skip": 2, "$top": 2})

        feed = parse_atom(response.text)
        assert [entry["Title"] for entry in feed] == ["charlie"]
        assert feed.next_link is None

    def test_skip_past_end(self, client):
        """Test that skipping past the end yields an empty feed."""
        feed = parse_atom(client.get("/$Resources/Queues", params={"$skip": 10}).text)

        assert feed == []
        assert feed.next_link is None

    def test_queue_description(self, client):
        """Test the description fields of a queue entry."""
        feed = parse_atom(client.get("/$Resources/Queues").text)

        description = feed[0]["QueueDescription"]
        assert description["LockDuration"] == "PT60S"
        assert description["RequiresSession"] == "false"
        assert description["CountDetails"]["ActiveMessageCount"] == "0"

    @pytest.mark.parametrize("params", [{"$top": 0}, {"$top": 1001}, {"$skip": -1}, {"$skip": "x"}])
    def test_invalid_paging(self, client, params):
        """Test that invalid paging parameters are rejected."""
        response = client.get("/$Resources/Queues", params=params)

        assert response.status_code == 422


class TestTopicListings:
    """Tests for topic, subscription and rule listings."""

    def test_topics(self, client):
        """Test listing topics."""
        feed = parse_atom(client.get("/$Resources/Topics").text)

        assert [entry["Title"] for entry in feed] == ["events"]
        assert feed[0]["TopicDescription"]["SubscriptionCount"] == "2"

    def test_subscriptions(self, client):
        """Test listing subscriptions of a topic."""
        feed = parse_atom(client.get("/events/Subscriptions/", params={"$top": 1}).text)

        assert [entry["Title"] for entry in feed] == ["audit"]
        assert "/events/Subscriptions/audit" in feed[0]["Id"]
        assert "$skip=1" in feed.next_link

    def test_rules(self, client):
        """Test listing rules of a subscription."""
        feed = parse_atom(client.get("/events/Subscriptions/audit/Rules/").text)

        assert [entry["Title"] for entry in feed] == ["$Default", "errors"]
        rule = feed[1]["RuleDescription"]
        assert rule["Filter"] == {"@type": "SqlFilter", "SqlExpression": "level = 'error'"}
        assert rule["Action"] == {"@type": "SqlRuleAction", "SqlExpression": "SET handled = true"}

    def test_unknown_topic(self, client):
        """Test that a missing topic yields an EntityNotFound error body."""
        response = client.get("/missing/Subscriptions/")

        assert response.status_code == 404
        assert "<Code>EntityNotFound</Code>" in response.text
        assert parse_atom(response.text)["Error"]["Code"] == "EntityNotFound"

    def test_unknown_subscription(self, client):
        """Test that a missing subscription yields 404."""
        response = client.get("/events/Subscriptions/missing/Rules/")

        assert response.status_code == 404


class TestHealth:
    """Tests for the health endpoint."""

    def test_health(self, client):
        """Test the health check reports the namespace."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "namespace": "api.servicebus.windows.net"}


class TestCorrelation:
    """Tests for correlation id propagation."""

    def test_echoes_caller_id(self, client):
        """Test that the caller's correlation id is returned."""
        response = client.get("/$Resources/Queues", headers={"x-correlation-id": "caller-42"})

        assert response.headers["x-correlation-id"] == "caller-42"

    def test_accepts_client_request_id(self, client):
        """Test the alternative request id header."""
        response = client.get("/$Resources/Topics", headers={"x-ms-client-request-id": "ms-7"})

        assert response.headers["x-correlation-id"] == "ms-7"

    def test_generates_id(self, client):
        """Test that requests without an id get a fresh one each."""
        first = client.get("/health").headers["x-correlation-id"]
        second = client.get("/health").headers["x-correlation-id"]

        assert len(first) == 36
        assert first != second

    def test_error_log_carries_request_id(self, client, caplog):
        """Test that errors are logged under the request's correlation id."""
        with caplog.at_level(logging.ERROR, logger="sbclient.emulator.errors"):
            response = client.get("/missing/Subscriptions/", headers={"x-correlation-id": "trace-404"})

        assert response.status_code == 404
        assert response.headers["x-correlation-id"] == "trace-404"
        errors = [r for r in caplog.records if r.name == "sbclient.emulator.errors"]
        assert [r.correlation_id for r in errors] == ["trace-404"]
        assert errors[0].status_code == 404


class TestStatusCodes:
    """Tests for exception to status code mapping."""

    @pytest.mark.parametrize("exc, expected", [
        (EntityNotFoundError("queue", "orders"), 404),
        (EntityAlreadyExistsError("queue", "orders"), 409),
        (InvalidOperationError("defer", "not allowed"), 400),
        (TransportError("busy", status_code=503), 503),
        (MessageLockLostError("m1"), 500),
    ])
    def test_status_codes(self, exc, expected):
        """Test the status code chosen for each exception."""
        assert get_status_code_for_exception(exc) == expected
