"""
Service Bus Administration Client

Listing façade over the management endpoint. Each entity kind is one
``PagedLister`` configured with its decoder; the methods below only choose
the collection path.

Author: sbclient contributors
Date: 2026-10-17
"""

from typing import Optional

from .config import ClientConfig, parse_connection_string
from .constants import QUEUES_PATH, RULES_SEGMENT, SUBSCRIPTIONS_SEGMENT, TOPICS_PATH
from .decoders import (
    build_queue,
    build_queue_runtime_properties,
    build_rule,
    build_subscription,
    build_subscription_runtime_properties,
    build_topic,
    build_topic_runtime_properties,
)
from .logging_utils import StructuredLogger
from .models import (
    QueueProperties,
    QueueRuntimeProperties,
    RuleProperties,
    SubscriptionProperties,
    SubscriptionRuntimeProperties,
    TopicProperties,
    TopicRuntimeProperties,
)
from .paging import PagedAsyncIterator, PagedLister
from .transport import AtomXmlTransport, Transport


logger = StructuredLogger('sbclient.management')


def subscriptions_path(topic_name: str) -> str:
    return f"{topic_name}/{SUBSCRIPTIONS_SEGMENT}/"


def rules_path(topic_name: str, subscription_name: str) -> str:
    return f"{topic_name}/{SUBSCRIPTIONS_SEGMENT}/{subscription_name}/{RULES_SEGMENT}/"


class ServiceBusAdministrationClient:
    """
    Enumerates queues, topics, subscriptions and rules of a namespace.

    Args:
        transport: Management transport (HTTP or in-memory)
        max_page_size: Default ``$top`` for every listing
    """

    def __init__(self, transport: Transport, max_page_size: Optional[int] = None):
        self._transport = transport
        self._max_page_size = max_page_size

        self._queues: PagedLister[QueueProperties] = PagedLister(transport, build_queue, "queue")
        self._queues_runtime: PagedLister[QueueRuntimeProperties] = PagedLister(
            transport, build_queue_runtime_properties, "queue"
        )
        self._topics: PagedLister[TopicProperties] = PagedLister(transport, build_topic, "topic")
        self._topics_runtime: PagedLister[TopicRuntimeProperties] = PagedLister(
            transport, build_topic_runtime_properties, "topic"
        )
        self._subscriptions: PagedLister[SubscriptionProperties] = PagedLister(
            transport, build_subscription, "subscription"
        )
        self._subscriptions_runtime: PagedLister[SubscriptionRuntimeProperties] = PagedLister(
            transport, build_subscription_runtime_properties, "subscription"
        )
        self._rules: PagedLister[RuleProperties] = PagedLister(transport, build_rule, "rule")

    @classmethod
    def from_connection_string(cls, connection_string: str, **kwargs) -> "ServiceBusAdministrationClient":
        """
        Create a client that talks HTTP to the namespace named by a connection string.

        Keyword arguments are passed to ``AtomXmlTransport`` except ``max_page_size``.
        """
        parts = parse_connection_string(connection_string)
        max_page_size = kwargs.pop("max_page_size", None)
        transport = AtomXmlTransport(parts["endpoint"], **kwargs)
        return cls(transport, max_page_size=max_page_size)

    @classmethod
    def from_config(cls, config: ClientConfig, **kwargs) -> "ServiceBusAdministrationClient":
        """Create an HTTP client from loaded settings."""
        if not config.endpoint:
            raise ValueError("Client configuration has no endpoint")
        transport = AtomXmlTransport(
            config.endpoint,
            api_version=config.api_version,
            timeout=config.request_timeout,
            **kwargs
        )
        return cls(transport, max_page_size=config.max_page_size)

    def _page_size(self, max_page_size: Optional[int]) -> Optional[int]:
        return max_page_size or self._max_page_size

    def list_queues(self, max_page_size: Optional[int] = None) -> PagedAsyncIterator[QueueProperties]:
        """All queues of the namespace."""
        logger.debug("Performing management operation - list_queues()", operation="list_queues")
        return self._queues.list_all(QUEUES_PATH, self._page_size(max_page_size))

    def list_queues_runtime_properties(
        self, max_page_size: Optional[int] = None
    ) -> PagedAsyncIterator[QueueRuntimeProperties]:
        """Runtime counters of all queues."""
        logger.debug(
            "Performing management operation - list_queues_runtime_properties()",
            operation="list_queues_runtime_properties",
        )
        return self._queues_runtime.list_all(QUEUES_PATH, self._page_size(max_page_size))

    def list_topics(self, max_page_size: Optional[int] = None) -> PagedAsyncIterator[TopicProperties]:
        """All topics of the namespace."""
        logger.debug("Performing management operation - list_topics()", operation="list_topics")
        return self._topics.list_all(TOPICS_PATH, self._page_size(max_page_size))

    def list_topics_runtime_properties(
        self, max_page_size: Optional[int] = None
    ) -> PagedAsyncIterator[TopicRuntimeProperties]:
        """Runtime counters of all topics."""
        logger.debug(
            "Performing management operation - list_topics_runtime_properties()",
            operation="list_topics_runtime_properties",
        )
        return self._topics_runtime.list_all(TOPICS_PATH, self._page_size(max_page_size))

    def list_subscriptions(
        self, topic_name: str, max_page_size: Optional[int] = None
    ) -> PagedAsyncIterator[SubscriptionProperties]:
        """All subscriptions of a topic."""
        logger.debug(
            "Performing management operation - list_subscriptions()",
            operation="list_subscriptions",
            topic_name=topic_name,
        )
        return self._subscriptions.list_all(subscriptions_path(topic_name), self._page_size(max_page_size))

    def list_subscriptions_runtime_properties(
        self, topic_name: str, max_page_size: Optional[int] = None
    ) -> PagedAsyncIterator[SubscriptionRuntimeProperties]:
        """Runtime counters of all subscriptions of a topic."""
        logger.debug(
            "Performing management operation - list_subscriptions_runtime_properties()",
            operation="list_subscriptions_runtime_properties",
            topic_name=topic_name,
        )
        return self._subscriptions_runtime.list_all(
            subscriptions_path(topic_name), self._page_size(max_page_size)
        )

    def list_rules(
        self, topic_name: str, subscription_name: str, max_page_size: Optional[int] = None
    ) -> PagedAsyncIterator[RuleProperties]:
        """All rules of a subscription."""
        logger.debug(
            "Performing management operation - list_rules()",
            operation="list_rules",
            topic_name=topic_name,
            subscription_name=subscription_name,
        )
        return self._rules.list_all(
            rules_path(topic_name, subscription_name), self._page_size(max_page_size)
        )

    async def close(self) -> None:
        await self._transport.close()

    async def __aenter__(self) -> "ServiceBusAdministrationClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
