"""
In-Memory Service Bus Broker

Local stand-in for a Service Bus namespace. It keeps queues, topics,
subscriptions and rules in memory and implements both client seams:

- ``Transport``: answers the paged Atom listing requests with ``$skip``/``$top``
  and a ``next`` link while more entities remain;
- ``MessageTransport``: peek-lock receive, settlement, lock renewal and
  session locks owned by the receiving link.

Author: sbclient contributors
Date: 2026-10-17
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from ..atom import AtomFeed, entry_record
from ..config import EmulatorConfig
from ..constants import (
    CURRENT_API_VERSION,
    DEAD_LETTER_QUEUE_SUFFIX,
    DEFAULT_LOCK_DURATION,
    DEFAULT_MAX_DELIVERY_COUNT,
    DEFAULT_PAGE_SIZE,
    QUEUES_PATH,
    RULES_SEGMENT,
    SKIP_QUERY_KEY,
    SUBSCRIPTIONS_SEGMENT,
    TOP_QUERY_KEY,
    TOPICS_PATH,
)
from ..decoders import format_duration
from ..exceptions import (
    DeadLetterReason,
    EntityAlreadyExistsError,
    EntityNotFoundError,
    InvalidOperationError,
    MessageAlreadySettledError,
    MessageLockLostError,
    SessionLockLostError,
    TransportError,
)
from ..links import LinkHandle, ReceiverLink
from ..logging_utils import StructuredLogger
from ..models import (
    EntityNameValidator,
    FilterType,
    QueueProperties,
    RuleFilter,
    RuleProperties,
    SubscriptionProperties,
    TopicProperties,
)
from ..settlement import DispositionType, MessageTransport
from ..transport import Transport, TransportResponse


logger = StructuredLogger('sbclient.emulator')

Entry = Tuple[str, str, str, Dict[str, Any]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class BrokerMessage(BaseModel):
    """Message as stored by the broker."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    body: Any = None
    session_id: Optional[str] = None
    correlation_id: Optional[str] = None
    content_type: Optional[str] = None
    subject: Optional[str] = None
    application_properties: Dict[str, Any] = Field(default_factory=dict)
    sequence_number: int = 0
    delivery_count: int = 0
    enqueued_time_utc: datetime = Field(default_factory=_now)
    lock_token: Optional[str] = None
    locked_until_utc: Optional[datetime] = None
    dead_letter_reason: Optional[str] = None
    dead_letter_error_description: Optional[str] = None

    def to_record(self, entity_path: str, include_lock: bool = True) -> Dict[str, Any]:
        record = self.model_dump()
        record["entity_path"] = entity_path
        if not include_lock:
            record["lock_token"] = None
            record["locked_until_utc"] = None
        return record


@dataclass
class _Lock:
    message: BrokerMessage
    locked_until: datetime
    link: Optional[LinkHandle]


@dataclass
class _EntityState:
    """Message store of one receivable entity (queue, subscription or dead-letter queue)."""
    path: str
    requires_session: bool = False
    lock_duration: int = DEFAULT_LOCK_DURATION
    max_delivery_count: int = DEFAULT_MAX_DELIVERY_COUNT
    dead_letter: Optional["_EntityState"] = None
    active: List[BrokerMessage] = field(default_factory=list)
    locked: Dict[str, _Lock] = field(default_factory=dict)
    deferred: Dict[int, BrokerMessage] = field(default_factory=dict)
    # Settled lock token -> the lock's expiry; pruned once the lock would have lapsed.
    settled_tokens: Dict[str, datetime] = field(default_factory=dict)
    next_sequence: int = 1
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    accessed_at: datetime = field(default_factory=_now)

    def count_details(self) -> Dict[str, int]:
        dead_letter_count = self.dead_letter.message_count() if self.dead_letter else 0
        return {
            "ActiveMessageCount": len(self.active) + len(self.locked),
            "DeadLetterMessageCount": dead_letter_count,
            "ScheduledMessageCount": 0,
            "TransferMessageCount": 0,
            "TransferDeadLetterMessageCount": 0,
        }

    def message_count(self) -> int:
        own = len(self.active) + len(self.locked) + len(self.deferred)
        return own + (self.dead_letter.message_count() if self.dead_letter else 0)

    def size_in_bytes(self) -> int:
        messages = self.active + [lock.message for lock in self.locked.values()]
        messages += list(self.deferred.values())
        return sum(len(str(m.body).encode('utf-8')) for m in messages if m.body is not None)


def _sum_counts(details: Iterable[Dict[str, int]]) -> Dict[str, int]:
    """Add up per-subscription count details into a topic's."""
    totals = dict.fromkeys(_EntityState(path="").count_details(), 0)
    for counts in details:
        for key, value in counts.items():
            totals[key] += value
    return totals


@dataclass
class FeedPage:
    """One page of a listing, ready to be rendered or turned into records."""
    title: str
    feed_id: str
    entries: List[Entry]
    next_link: Optional[str] = None


class InMemoryBroker(Transport, MessageTransport):
    """
    In-memory Service Bus namespace.

    Args:
        namespace: Host name used in entry ids and ``next`` links
        default_page_size: ``$top`` applied when a listing request has none
    """

    def __init__(self, namespace: str = "localhost", default_page_size: int = DEFAULT_PAGE_SIZE):
        self.namespace = namespace
        self.default_page_size = default_page_size

        self._queues: Dict[str, QueueProperties] = {}
        self._topics: Dict[str, TopicProperties] = {}
        self._topic_created: Dict[str, datetime] = {}
        self._subscriptions: Dict[str, Dict[str, SubscriptionProperties]] = {}
        self._rules: Dict[Tuple[str, str], Dict[str, RuleProperties]] = {}
        self._entities: Dict[str, _EntityState] = {}
        self._session_owners: Dict[Tuple[str, str], LinkHandle] = {}
        self._lock = asyncio.Lock()

        logger.info(
            f"Initialized in-memory broker for namespace '{namespace}'",
            operation="broker_initialized",
            namespace=namespace,
        )

    @classmethod
    async def from_config(cls, config: EmulatorConfig) -> "InMemoryBroker":
        """Create a broker and the entities seeded in the configuration."""
        broker = cls(namespace=config.namespace, default_page_size=config.default_page_size)
        for queue in config.queues:
            await broker.create_queue(
                queue.name,
                requires_session=queue.requires_session,
                lock_duration=queue.lock_duration,
                max_delivery_count=queue.max_delivery_count,
            )
        for topic in config.topics:
            await broker.create_topic(topic.name)
            for subscription in topic.subscriptions:
                await broker.create_subscription(
                    topic.name,
                    subscription.name,
                    requires_session=subscription.requires_session,
                    lock_duration=subscription.lock_duration,
                    max_delivery_count=subscription.max_delivery_count,
                    default_rule=not subscription.rules,
                )
                for rule in subscription.rules:
                    rule_filter = None
                    if rule.sql_filter:
                        rule_filter = RuleFilter(filter_type=FilterType.SQL_FILTER, sql_expression=rule.sql_filter)
                    await broker.create_rule(topic.name, subscription.name, rule.name, rule_filter)
        return broker

    # ========== Entity Registry ==========

    def _register_state(self, path: str, requires_session: bool, lock_duration: int, max_delivery_count: int) -> None:
        dead_letter = _EntityState(
            path=f"{path}/{DEAD_LETTER_QUEUE_SUFFIX}",
            lock_duration=lock_duration,
            max_delivery_count=max_delivery_count,
        )
        self._entities[dead_letter.path] = dead_letter
        self._entities[path] = _EntityState(
            path=path,
            requires_session=requires_session,
            lock_duration=lock_duration,
            max_delivery_count=max_delivery_count,
            dead_letter=dead_letter,
        )

    def _drop_state(self, path: str) -> None:
        self._entities.pop(path, None)
        self._entities.pop(f"{path}/{DEAD_LETTER_QUEUE_SUFFIX}", None)
        for key in [k for k in self._session_owners if k[0] == path]:
            del self._session_owners[key]

    async def create_queue(
        self,
        name: str,
        requires_session: bool = False,
        lock_duration: int = DEFAULT_LOCK_DURATION,
        max_delivery_count: int = DEFAULT_MAX_DELIVERY_COUNT,
        **properties: Any,
    ) -> QueueProperties:
        """
        Create a queue.

        Raises:
            EntityAlreadyExistsError: A queue or topic with that name exists
            ValueError: Invalid name or properties
        """
        queue = QueueProperties(
            name=name,
            requires_session=requires_session,
            lock_duration=lock_duration,
            max_delivery_count=max_delivery_count,
            **properties,
        )
        async with self._lock:
            if name in self._queues or name in self._topics:
                raise EntityAlreadyExistsError("queue", name)
            self._queues[name] = queue
            self._register_state(name, requires_session, lock_duration, max_delivery_count)

        logger.info(f"queue_created: {name}", operation="queue_created", entity_path=name)
        return queue

    async def delete_queue(self, name: str) -> None:
        async with self._lock:
            if name not in self._queues:
                raise EntityNotFoundError("queue", name)
            del self._queues[name]
            self._drop_state(name)
        logger.info(f"queue_deleted: {name}", operation="queue_deleted", entity_path=name)

    async def create_topic(self, name: str, **properties: Any) -> TopicProperties:
        """Create a topic."""
        is_valid, error = EntityNameValidator.validate(name)
        if not is_valid:
            raise ValueError(error)
        topic = TopicProperties(name=name, **properties)
        async with self._lock:
            if name in self._queues or name in self._topics:
                raise EntityAlreadyExistsError("topic", name)
            self._topics[name] = topic
            self._topic_created[name] = _now()
            self._subscriptions[name] = {}

        logger.info(f"topic_created: {name}", operation="topic_created", entity_path=name)
        return topic

    async def delete_topic(self, name: str) -> None:
        """Delete a topic together with its subscriptions and rules."""
        async with self._lock:
            if name not in self._topics:
                raise EntityNotFoundError("topic", name)
            for subscription_name in self._subscriptions.pop(name, {}):
                self._rules.pop((name, subscription_name), None)
                self._drop_state(self.subscription_path(name, subscription_name))
            del self._topics[name]
            del self._topic_created[name]
        logger.info(f"topic_deleted: {name}", operation="topic_deleted", entity_path=name)

    @staticmethod
    def subscription_path(topic_name: str, subscription_name: str) -> str:
        """Receive path of a subscription."""
        return f"{topic_name}/{SUBSCRIPTIONS_SEGMENT}/{subscription_name}"

    async def create_subscription(
        self,
        topic_name: str,
        name: str,
        requires_session: bool = False,
        lock_duration: int = DEFAULT_LOCK_DURATION,
        max_delivery_count: int = DEFAULT_MAX_DELIVERY_COUNT,
        default_rule: bool = True,
        **properties: Any,
    ) -> SubscriptionProperties:
        """
        Create a subscription; ``default_rule`` adds the ``$Default`` true-filter rule.

        Raises:
            EntityNotFoundError: The topic does not exist
            EntityAlreadyExistsError: The subscription exists
        """
        is_valid, error = EntityNameValidator.validate(name, max_length=50)
        if not is_valid:
            raise ValueError(error)
        subscription = SubscriptionProperties(
            topic_name=topic_name,
            subscription_name=name,
            requires_session=requires_session,
            lock_duration=lock_duration,
            max_delivery_count=max_delivery_count,
            **properties,
        )
        async with self._lock:
            if topic_name not in self._topics:
                raise EntityNotFoundError("topic", topic_name)
            if name in self._subscriptions[topic_name]:
                raise EntityAlreadyExistsError("subscription", name)
            self._subscriptions[topic_name][name] = subscription
            self._rules[(topic_name, name)] = {}
            if default_rule:
                self._rules[(topic_name, name)]["$Default"] = RuleProperties()
            self._register_state(
                self.subscription_path(topic_name, name),
                requires_session,
                lock_duration,
                max_delivery_count,
            )

        logger.info(
            f"subscription_created: {topic_name}/{name}",
            operation="subscription_created",
            entity_path=self.subscription_path(topic_name, name),
        )
        return subscription

    async def delete_subscription(self, topic_name: str, name: str) -> None:
        async with self._lock:
            if name not in self._subscriptions.get(topic_name, {}):
                raise EntityNotFoundError("subscription", f"{topic_name}/{name}")
            del self._subscriptions[topic_name][name]
            self._rules.pop((topic_name, name), None)
            self._drop_state(self.subscription_path(topic_name, name))

    async def create_rule(
        self,
        topic_name: str,
        subscription_name: str,
        name: str,
        rule_filter: Optional[RuleFilter] = None,
        action: Optional[str] = None,
    ) -> RuleProperties:
        """Add a rule to a subscription (true filter when ``rule_filter`` is omitted)."""
        is_valid, error = EntityNameValidator.validate(name.lstrip("$"), max_length=50)
        if not is_valid:
            raise ValueError(error)
        if rule_filter is None:
            rule = RuleProperties(name=name, action=action)
        else:
            rule = RuleProperties(name=name, filter=rule_filter, action=action)
        async with self._lock:
            rules = self._rules.get((topic_name, subscription_name))
            if rules is None:
                raise EntityNotFoundError("subscription", f"{topic_name}/{subscription_name}")
            if name in rules:
                raise EntityAlreadyExistsError("rule", name)
            rules[name] = rule
        return rule

    async def delete_rule(self, topic_name: str, subscription_name: str, name: str) -> None:
        async with self._lock:
            rules = self._rules.get((topic_name, subscription_name), {})
            if name not in rules:
                raise EntityNotFoundError("rule", name)
            del rules[name]

    def _entity(self, entity_path: str) -> _EntityState:
        state = self._entities.get(entity_path.strip("/"))
        if state is None:
            raise EntityNotFoundError("entity", entity_path)
        return state

    # ========== Listing (Transport) ==========

    def _entry_id(self, path: str) -> str:
        return f"https://{self.namespace}/{path}?api-version={CURRENT_API_VERSION}"

    def _queue_entry(self, queue: QueueProperties) -> Entry:
        state = self._entities[queue.name]
        fields = {
            "LockDuration": format_duration(queue.lock_duration),
            "MaxSizeInMegabytes": queue.max_size_in_megabytes,
            "RequiresDuplicateDetection": queue.requires_duplicate_detection,
            "RequiresSession": queue.requires_session,
            "DefaultMessageTimeToLive": format_duration(queue.default_message_time_to_live),
            "DeadLetteringOnMessageExpiration": queue.dead_lettering_on_message_expiration,
            "MaxDeliveryCount": queue.max_delivery_count,
            "EnableBatchedOperations": queue.enable_batched_operations,
            "SizeInBytes": state.size_in_bytes(),
            "MessageCount": state.message_count(),
            "Status": queue.status.value,
            "ForwardTo": queue.forward_to,
            "CreatedAt": state.created_at,
            "UpdatedAt": state.updated_at,
            "AccessedAt": state.accessed_at,
            "EnablePartitioning": queue.enable_partitioning,
            "CountDetails": state.count_details(),
        }
        return queue.name, self._entry_id(queue.name), "QueueDescription", fields

    def _topic_entry(self, topic: TopicProperties) -> Entry:
        created = self._topic_created[topic.name]
        states = [
            self._entities[self.subscription_path(topic.name, name)]
            for name in self._subscriptions[topic.name]
        ]
        fields = {
            "DefaultMessageTimeToLive": format_duration(topic.default_message_time_to_live),
            "MaxSizeInMegabytes": topic.max_size_in_megabytes,
            "RequiresDuplicateDetection": topic.requires_duplicate_detection,
            "EnableBatchedOperations": topic.enable_batched_operations,
            "SizeInBytes": sum(state.size_in_bytes() for state in states),
            "Status": topic.status.value,
            "SupportOrdering": topic.support_ordering,
            "CreatedAt": created,
            "UpdatedAt": created,
            "AccessedAt": max([created] + [state.accessed_at for state in states]),
            "SubscriptionCount": len(states),
            "CountDetails": _sum_counts(state.count_details() for state in states),
            "EnablePartitioning": topic.enable_partitioning,
        }
        return topic.name, self._entry_id(topic.name), "TopicDescription", fields

    def _subscription_entry(self, subscription: SubscriptionProperties) -> Entry:
        path = self.subscription_path(subscription.topic_name, subscription.subscription_name)
        state = self._entities[path]
        fields = {
            "LockDuration": format_duration(subscription.lock_duration),
            "RequiresSession": subscription.requires_session,
            "DefaultMessageTimeToLive": format_duration(subscription.default_message_time_to_live),
            "DeadLetteringOnMessageExpiration": subscription.dead_lettering_on_message_expiration,
            "MessageCount": state.message_count(),
            "MaxDeliveryCount": subscription.max_delivery_count,
            "EnableBatchedOperations": subscription.enable_batched_operations,
            "Status": subscription.status.value,
            "ForwardTo": subscription.forward_to,
            "CreatedAt": state.created_at,
            "UpdatedAt": state.updated_at,
            "AccessedAt": state.accessed_at,
            "CountDetails": state.count_details(),
        }
        return subscription.subscription_name, self._entry_id(path), "SubscriptionDescription", fields

    def _rule_entry(self, topic_name: str, subscription_name: str, rule: RuleProperties) -> Entry:
        rule_filter: Dict[str, Any] = {"@type": rule.filter.filter_type.value}
        if rule.filter.filter_type == FilterType.CORRELATION_FILTER:
            rule_filter.update({
                "CorrelationId": rule.filter.correlation_id,
                "MessageId": rule.filter.message_id,
                "To": rule.filter.to,
                "ReplyTo": rule.filter.reply_to,
                "Label": rule.filter.subject,
                "SessionId": rule.filter.session_id,
                "ContentType": rule.filter.content_type,
            })
            if rule.filter.properties:
                rule_filter["Properties"] = {
                    "KeyValueOfstringanyType": [
                        {"Key": key, "Value": {"@type": "d:string", "#text": value}}
                        for key, value in rule.filter.properties.items()
                    ]
                }
        elif rule.filter.filter_type == FilterType.TRUE_FILTER:
            rule_filter["SqlExpression"] = "1=1"
        elif rule.filter.filter_type == FilterType.FALSE_FILTER:
            rule_filter["SqlExpression"] = "1=0"
        else:
            rule_filter["SqlExpression"] = rule.filter.sql_expression

        if rule.action:
            action: Dict[str, Any] = {"@type": "SqlRuleAction", "SqlExpression": rule.action}
        else:
            action = {"@type": "EmptyRuleAction"}

        path = f"{self.subscription_path(topic_name, subscription_name)}/{RULES_SEGMENT}/{rule.name}"
        fields = {"Filter": rule_filter, "Action": action, "Name": rule.name}
        return rule.name, self._entry_id(path), "RuleDescription", fields

    def _collection(self, path: str) -> Tuple[str, List[Entry]]:
        segments = path.split("/")

        if path == QUEUES_PATH:
            return "Queues", [self._queue_entry(self._queues[n]) for n in sorted(self._queues)]

        if path == TOPICS_PATH:
            return "Topics", [self._topic_entry(self._topics[n]) for n in sorted(self._topics)]

        if len(segments) >= 2 and segments[-1] == SUBSCRIPTIONS_SEGMENT:
            topic_name = "/".join(segments[:-1])
            if topic_name not in self._topics:
                raise EntityNotFoundError("topic", topic_name)
            subscriptions = self._subscriptions[topic_name]
            return "Subscriptions", [self._subscription_entry(subscriptions[n]) for n in sorted(subscriptions)]

        if len(segments) >= 4 and segments[-1] == RULES_SEGMENT and segments[-3] == SUBSCRIPTIONS_SEGMENT:
            topic_name = "/".join(segments[:-3])
            subscription_name = segments[-2]
            rules = self._rules.get((topic_name, subscription_name))
            if rules is None:
                raise EntityNotFoundError("subscription", f"{topic_name}/{subscription_name}")
            return "Rules", [
                self._rule_entry(topic_name, subscription_name, rules[n]) for n in sorted(rules)
            ]

        raise EntityNotFoundError("entity", path)

    async def list_feed(self, path: str, skip: int = 0, top: Optional[int] = None) -> FeedPage:
        """
        Produce one page of a listing.

        Args:
            path: Collection path (``$Resources/Queues``, ``<topic>/Subscriptions/`` ...)
            skip: Number of entities to skip
            top: Page size, ``default_page_size`` when omitted

        Raises:
            EntityNotFoundError: Unknown collection or parent entity
            TransportError: Negative ``skip`` or non-positive ``top`` (400)
        """
        if skip < 0 or (top is not None and top < 1):
            raise TransportError(
                f"Invalid paging parameters skip={skip} top={top}",
                status_code=400,
                code="BadRequest",
            )
        top = top or self.default_page_size
        normalized = path.strip("/")

        async with self._lock:
            title, entries = self._collection(normalized)

        page = entries[skip:skip + top]
        next_link = None
        if skip + len(page) < len(entries):
            next_link = (
                f"https://{self.namespace}/{normalized}?{SKIP_QUERY_KEY}={skip + len(page)}"
                f"&{TOP_QUERY_KEY}={top}&api-version={CURRENT_API_VERSION}"
            )

        return FeedPage(title=title, feed_id=self._entry_id(normalized), entries=page, next_link=next_link)

    async def send_request(
        self,
        method: str,
        path: str,
        query_params: Optional[Dict[str, str]] = None,
    ) -> TransportResponse:
        if method.upper() != "GET":
            raise TransportError(f"Method {method} is not supported", status_code=405, code="MethodNotAllowed")

        query_params = query_params or {}
        try:
            skip = int(query_params.get(SKIP_QUERY_KEY, 0))
            top = int(query_params[TOP_QUERY_KEY]) if TOP_QUERY_KEY in query_params else None
        except ValueError as e:
            raise TransportError(f"Invalid paging parameters: {e}", status_code=400, code="BadRequest") from e

        page = await self.list_feed(path, skip, top)
        records = [entry_record(*entry) for entry in page.entries]
        return TransportResponse(
            status=200,
            parsed_body=AtomFeed(records, next_link=page.next_link, title=page.title),
            url=page.feed_id,
        )

    # ========== Messaging ==========

    def _accepts(self, topic_name: str, subscription_name: str) -> bool:
        rules = self._rules.get((topic_name, subscription_name), {})
        return any(rule.filter.filter_type != FilterType.FALSE_FILTER for rule in rules.values())

    def _enqueue(self, state: _EntityState, message: BrokerMessage) -> int:
        message.sequence_number = state.next_sequence
        state.next_sequence += 1
        state.active.append(message)
        state.updated_at = _now()
        return message.sequence_number

    async def send_message(
        self,
        entity_path: str,
        body: Any = None,
        session_id: Optional[str] = None,
        message_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        content_type: Optional[str] = None,
        subject: Optional[str] = None,
        application_properties: Optional[Dict[str, Any]] = None,
    ) -> List[int]:
        """
        Enqueue a message to a queue, or to every matching subscription of a topic.

        Returns:
            Sequence numbers assigned, one per receiving entity

        Raises:
            EntityNotFoundError: Unknown queue or topic
            InvalidOperationError: ``session_id`` missing for a session-enabled entity
        """
        template = BrokerMessage(
            message_id=message_id or str(uuid.uuid4()),
            body=body,
            session_id=session_id,
            correlation_id=correlation_id,
            content_type=content_type,
            subject=subject,
            application_properties=application_properties or {},
        )

        async with self._lock:
            if entity_path in self._topics:
                targets = [
                    self._entities[self.subscription_path(entity_path, name)]
                    for name in sorted(self._subscriptions[entity_path])
                    if self._accepts(entity_path, name)
                ]
            elif entity_path in self._queues:
                targets = [self._entities[entity_path]]
            else:
                raise EntityNotFoundError("entity", entity_path)

            for state in targets:
                if state.requires_session and session_id is None:
                    raise InvalidOperationError(
                        "send_message",
                        f"'{state.path}' requires a session id",
                    )

            sequence_numbers = [self._enqueue(state, template.model_copy(deep=True)) for state in targets]

        logger.log_message_operation(
            operation="message_sent",
            entity_path=entity_path,
            message_id=template.message_id,
            session_id=session_id,
            recipients=len(sequence_numbers),
        )
        return sequence_numbers

    def _expire_locks(self, state: _EntityState) -> None:
        now = _now()
        state.settled_tokens = {
            token: until for token, until in state.settled_tokens.items() if now < until
        }
        expired = [token for token, lock in state.locked.items() if now >= lock.locked_until]
        for token in expired:
            lock = state.locked.pop(token)
            logger.log_lock_operation(
                operation="lock_expired",
                entity_path=state.path,
                message_id=lock.message.message_id,
                lock_token=token,
                delivery_count=lock.message.delivery_count,
            )
            self._release_message(state, lock.message)

    def _release_message(self, state: _EntityState, message: BrokerMessage) -> None:
        """Put a message back after its lock ended without settlement."""
        message.lock_token = None
        message.locked_until_utc = None
        message.delivery_count += 1

        if state.dead_letter is not None and message.delivery_count >= state.max_delivery_count:
            self._dead_letter(
                state,
                message,
                DeadLetterReason.MAX_DELIVERY_COUNT_EXCEEDED,
                "The message has exceeded the maximum delivery count",
            )
            return

        state.active.append(message)
        state.active.sort(key=lambda m: m.sequence_number)

    def _dead_letter(
        self,
        state: _EntityState,
        message: BrokerMessage,
        reason: Optional[str],
        description: Optional[str],
    ) -> None:
        message.lock_token = None
        message.locked_until_utc = None
        message.dead_letter_reason = reason
        message.dead_letter_error_description = description
        state.dead_letter.active.append(message)
        state.dead_letter.active.sort(key=lambda m: m.sequence_number)
        logger.log_message_operation(
            operation="message_dead_lettered",
            entity_path=state.path,
            message_id=message.message_id,
            reason=reason,
        )

    def _lock_message(self, state: _EntityState, message: BrokerMessage, link: LinkHandle) -> Dict[str, Any]:
        token = str(uuid.uuid4())
        locked_until = _now() + timedelta(seconds=state.lock_duration)
        message.lock_token = token
        message.locked_until_utc = locked_until
        state.locked[token] = _Lock(message, locked_until, link)
        logger.log_lock_operation(
            operation="message_locked",
            entity_path=state.path,
            message_id=message.message_id,
            lock_token=token,
            delivery_count=message.delivery_count,
        )
        return message.to_record(state.path)

    def _owns_session(self, state: _EntityState, link: Optional[LinkHandle], session_id: Optional[str]) -> bool:
        if link is None or not link.is_open() or session_id is None:
            return False
        return self._session_owners.get((state.path, session_id)) is link

    def _check_receive_link(self, state: _EntityState, link: LinkHandle, operation: str) -> None:
        if not link.is_open():
            raise InvalidOperationError(operation, f"link '{link.name}' is closed")
        if state.requires_session and not self._owns_session(state, link, link.session_id):
            raise SessionLockLostError(link.session_id, state.path)

    def _next_free_session(self, state: _EntityState) -> Optional[str]:
        for message in state.active:
            if message.session_id is None:
                continue
            owner = self._session_owners.get((state.path, message.session_id))
            if owner is None or not owner.is_open():
                return message.session_id
        return None

    async def open_link(self, entity_path: str, session_id: Optional[str] = None) -> LinkHandle:
        async with self._lock:
            state = self._entity(entity_path)
            if not state.requires_session:
                return ReceiverLink(state.path)

            self._expire_locks(state)
            if session_id is None:
                session_id = self._next_free_session(state)
                if session_id is None:
                    raise TransportError(
                        f"No unlocked session is available on '{state.path}'",
                        status_code=408,
                        code="SessionCannotBeLocked",
                    )

            owner = self._session_owners.get((state.path, session_id))
            if owner is not None and owner.is_open():
                raise TransportError(
                    f"Session '{session_id}' on '{state.path}' is locked by another receiver",
                    status_code=409,
                    code="SessionCannotBeLocked",
                )

            link = ReceiverLink(state.path, session_id=session_id)
            self._session_owners[(state.path, session_id)] = link
            link.on_close(self._release_session)

        logger.log_lock_operation(
            operation="session_locked",
            entity_path=state.path,
            message_id="",
            session_id=session_id,
            link_name=link.name,
        )
        return link

    def _release_session(self, link: ReceiverLink) -> None:
        """Close callback of a session link: drop the session lock and its message locks."""
        state = self._entities.get(link.entity_path)
        if state is None:
            return
        key = (state.path, link.session_id)
        if self._session_owners.get(key) is link:
            del self._session_owners[key]

        for token, lock in list(state.locked.items()):
            if lock.link is link:
                del state.locked[token]
                self._release_message(state, lock.message)

        logger.log_lock_operation(
            operation="session_released",
            entity_path=state.path,
            message_id="",
            session_id=link.session_id,
            link_name=link.name,
        )

    async def receive_messages(self, link: LinkHandle, max_message_count: int) -> List[Dict[str, Any]]:
        async with self._lock:
            state = self._entity(link.entity_path)
            self._check_receive_link(state, link, "receive_messages")
            self._expire_locks(state)

            candidates = [
                m for m in state.active
                if not state.requires_session or m.session_id == link.session_id
            ][:max_message_count]

            records = []
            for message in candidates:
                state.active.remove(message)
                records.append(self._lock_message(state, message, link))
            state.accessed_at = _now()
            return records

    async def receive_deferred_messages(
        self, link: LinkHandle, sequence_numbers: Sequence[int]
    ) -> List[Dict[str, Any]]:
        async with self._lock:
            state = self._entity(link.entity_path)
            self._check_receive_link(state, link, "receive_deferred_messages")

            for sequence_number in sequence_numbers:
                message = state.deferred.get(sequence_number)
                if message is None or (state.requires_session and message.session_id != link.session_id):
                    raise TransportError(
                        f"Deferred message with sequence number {sequence_number} "
                        f"was not found in '{state.path}'",
                        status_code=404,
                        code="MessageNotFound",
                    )

            return [
                self._lock_message(state, state.deferred.pop(sequence_number), link)
                for sequence_number in sequence_numbers
            ]

    async def peek_messages(self, entity_path: str, max_message_count: int) -> List[Dict[str, Any]]:
        async with self._lock:
            state = self._entity(entity_path)
            self._expire_locks(state)
            messages = state.active + [lock.message for lock in state.locked.values()]
            messages += list(state.deferred.values())
            messages.sort(key=lambda m: m.sequence_number)
            return [m.to_record(state.path, include_lock=False) for m in messages[:max_message_count]]

    def _find_lock(self, state: _EntityState, link: Optional[LinkHandle], message: Any, verb: str) -> _Lock:
        token = message.lock_token
        if token in state.settled_tokens:
            raise MessageAlreadySettledError(message.message_id, verb)

        lock = state.locked.get(token) if token else None
        if state.requires_session:
            if lock is None or lock.link is not link or not self._owns_session(state, link, message.session_id):
                raise SessionLockLostError(message.session_id, state.path)
        elif lock is None:
            raise MessageLockLostError(message.message_id, token)
        return lock

    async def settle(
        self,
        link: Optional[LinkHandle],
        message: Any,
        disposition: DispositionType,
        options: Dict[str, Any],
    ) -> None:
        async with self._lock:
            state = self._entity(message.entity_path)
            self._expire_locks(state)
            lock = self._find_lock(state, link, message, disposition.value)

            if disposition == DispositionType.DEAD_LETTER and state.dead_letter is None:
                raise InvalidOperationError(
                    disposition.value,
                    "messages in a dead-letter queue cannot be dead-lettered again",
                )

            del state.locked[message.lock_token]
            state.settled_tokens[message.lock_token] = lock.locked_until
            stored = lock.message

            properties_to_modify = options.get("properties_to_modify")
            if properties_to_modify:
                stored.application_properties.update(properties_to_modify)

            if disposition == DispositionType.ABANDON:
                self._release_message(state, stored)
            elif disposition == DispositionType.DEFER:
                stored.lock_token = None
                stored.locked_until_utc = None
                state.deferred[stored.sequence_number] = stored
            elif disposition == DispositionType.DEAD_LETTER:
                self._dead_letter(state, stored, options.get("reason"), options.get("description"))
            state.updated_at = _now()

        logger.log_lock_operation(
            operation=f"lock_released_{disposition.value}",
            entity_path=state.path,
            message_id=message.message_id,
            lock_token=message.lock_token,
        )

    async def renew_lock(self, link: Optional[LinkHandle], message: Any) -> datetime:
        async with self._lock:
            state = self._entity(message.entity_path)
            self._expire_locks(state)
            lock = self._find_lock(state, link, message, DispositionType.RENEW_LOCK.value)
            lock.locked_until = _now() + timedelta(seconds=state.lock_duration)
            lock.message.locked_until_utc = lock.locked_until
            return lock.locked_until

    async def reset(self) -> None:
        """Remove every entity and message."""
        async with self._lock:
            self._queues.clear()
            self._topics.clear()
            self._topic_created.clear()
            self._subscriptions.clear()
            self._rules.clear()
            self._entities.clear()
            self._session_owners.clear()
        logger.info("broker_reset", operation="broker_reset", namespace=self.namespace)
