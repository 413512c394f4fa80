"""
Entity Decoders

One decoder per entity kind, turning a raw Atom record (see ``atom.py``) into a
typed model. A decoder returns ``None`` when the record does not describe an
entity of its kind, and raises ``ValueError`` (or ``pydantic.ValidationError``)
when a field is malformed; the lister drops the record in both cases.

Author: sbclient contributors
Date: 2026-10-17
"""

import re
from datetime import datetime
from typing import Any, Callable, Dict, Optional, TypeVar
from urllib.parse import unquote, urlsplit

from .constants import SUBSCRIPTIONS_SEGMENT
from .models import (
    EntityStatus,
    FilterType,
    MessageCountDetails,
    QueueProperties,
    QueueRuntimeProperties,
    RuleFilter,
    RuleProperties,
    SubscriptionProperties,
    SubscriptionRuntimeProperties,
    TopicProperties,
    TopicRuntimeProperties,
)


T = TypeVar('T')

Decoder = Callable[[Any], Optional[T]]

# TimeSpan.MaxValue as serialized by the service; treated as "no limit"
MAX_DURATION_SECONDS = 10675199 * 86400

_DURATION_RE = re.compile(
    r'^P(?:(?P<years>\d+)Y)?(?:(?P<months>\d+)M)?(?:(?P<days>\d+)D)?'
    r'(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$'
)


def parse_duration(value: Optional[str]) -> Optional[int]:
    """
    Parse an ISO 8601 duration into whole seconds.

    Supports formats like PT60S, PT1M, PT1H, P14D and P10675199DT2H48M5.4775807S
    (the last one, and anything longer, maps to ``None``).

    Raises:
        ValueError: Not an ISO 8601 duration
    """
    if value is None or value == "":
        return None

    match = _DURATION_RE.match(value)
    if not match or value in ("P", "PT"):
        raise ValueError(f"Invalid ISO 8601 duration: {value}")

    parts = match.groupdict()
    total = 0
    total += int(parts["years"] or 0) * 365 * 86400
    total += int(parts["months"] or 0) * 30 * 86400
    total += int(parts["days"] or 0) * 86400
    total += int(parts["hours"] or 0) * 3600
    total += int(parts["minutes"] or 0) * 60
    total += int(float(parts["seconds"] or 0))

    if total >= MAX_DURATION_SECONDS:
        return None
    return total


def format_duration(seconds: Optional[int]) -> str:
    """Format seconds as an ISO 8601 duration (``None`` means unbounded)."""
    if seconds is None:
        return "P10675199DT2H48M5.4775807S"
    return f"PT{seconds}S"


def _bool(value: Any, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "1"):
        return True
    if text in ("false", "0"):
        return False
    raise ValueError(f"Invalid boolean: {value}")


def _int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    return int(value)


def _datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(str(value))


def _optional_text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _description(raw: Any, tag: str) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, dict):
        return None
    description = raw.get(tag)
    if not isinstance(description, dict):
        return None
    return description


def _path_segments(entry_id: Optional[str]) -> list:
    if not entry_id:
        return []
    path = urlsplit(entry_id).path
    return [unquote(segment) for segment in path.split("/") if segment]


def _topic_from_id(entry_id: Optional[str]) -> Optional[str]:
    segments = _path_segments(entry_id)
    for i, segment in enumerate(segments):
        if segment.lower() == SUBSCRIPTIONS_SEGMENT.lower() and i > 0:
            return "/".join(segments[:i])
    return None


def _count_details(raw: Any) -> MessageCountDetails:
    details = raw if isinstance(raw, dict) else {}
    return MessageCountDetails(
        active_message_count=_int(details.get("ActiveMessageCount")),
        dead_letter_message_count=_int(details.get("DeadLetterMessageCount")),
        scheduled_message_count=_int(details.get("ScheduledMessageCount")),
        transfer_message_count=_int(details.get("TransferMessageCount")),
        transfer_dead_letter_message_count=_int(details.get("TransferDeadLetterMessageCount")),
    )


# ========== Queues ==========

def build_queue(raw: Any) -> Optional[QueueProperties]:
    """Decode a queue entry."""
    description = _description(raw, "QueueDescription")
    if description is None:
        return None

    return QueueProperties(
        name=raw.get("Title"),
        lock_duration=parse_duration(description.get("LockDuration")) or 60,
        max_size_in_megabytes=_int(description.get("MaxSizeInMegabytes"), 1024),
        requires_duplicate_detection=_bool(description.get("RequiresDuplicateDetection")),
        requires_session=_bool(description.get("RequiresSession")),
        default_message_time_to_live=parse_duration(description.get("DefaultMessageTimeToLive")),
        dead_lettering_on_message_expiration=_bool(description.get("DeadLetteringOnMessageExpiration")),
        max_delivery_count=_int(description.get("MaxDeliveryCount"), 10),
        enable_batched_operations=_bool(description.get("EnableBatchedOperations"), True),
        enable_partitioning=_bool(description.get("EnablePartitioning")),
        auto_delete_on_idle=parse_duration(description.get("AutoDeleteOnIdle")),
        status=EntityStatus(description.get("Status") or EntityStatus.ACTIVE.value),
        forward_to=_optional_text(description.get("ForwardTo")),
        forward_dead_lettered_messages_to=_optional_text(description.get("ForwardDeadLetteredMessagesTo")),
        user_metadata=_optional_text(description.get("UserMetadata")),
    )


def build_queue_runtime_properties(raw: Any) -> Optional[QueueRuntimeProperties]:
    """Decode the runtime counters of a queue entry."""
    description = _description(raw, "QueueDescription")
    if description is None:
        return None

    return QueueRuntimeProperties(
        name=raw.get("Title"),
        total_message_count=_int(description.get("MessageCount")),
        size_in_bytes=_int(description.get("SizeInBytes")),
        count_details=_count_details(description.get("CountDetails")),
        created_at=_datetime(description.get("CreatedAt")),
        modified_at=_datetime(description.get("UpdatedAt")),
        accessed_at=_datetime(description.get("AccessedAt")),
    )


# ========== Topics ==========

def build_topic(raw: Any) -> Optional[TopicProperties]:
    """Decode a topic entry."""
    description = _description(raw, "TopicDescription")
    if description is None:
        return None

    return TopicProperties(
        name=raw.get("Title"),
        max_size_in_megabytes=_int(description.get("MaxSizeInMegabytes"), 1024),
        default_message_time_to_live=parse_duration(description.get("DefaultMessageTimeToLive")),
        requires_duplicate_detection=_bool(description.get("RequiresDuplicateDetection")),
        enable_batched_operations=_bool(description.get("EnableBatchedOperations"), True),
        support_ordering=_bool(description.get("SupportOrdering")),
        enable_partitioning=_bool(description.get("EnablePartitioning")),
        auto_delete_on_idle=parse_duration(description.get("AutoDeleteOnIdle")),
        status=EntityStatus(description.get("Status") or EntityStatus.ACTIVE.value),
        user_metadata=_optional_text(description.get("UserMetadata")),
    )


def build_topic_runtime_properties(raw: Any) -> Optional[TopicRuntimeProperties]:
    """Decode the runtime counters of a topic entry."""
    description = _description(raw, "TopicDescription")
    if description is None:
        return None

    counts = _count_details(description.get("CountDetails"))
    return TopicRuntimeProperties(
        name=raw.get("Title"),
        subscription_count=_int(description.get("SubscriptionCount")),
        size_in_bytes=_int(description.get("SizeInBytes")),
        scheduled_message_count=counts.scheduled_message_count,
        created_at=_datetime(description.get("CreatedAt")),
        modified_at=_datetime(description.get("UpdatedAt")),
        accessed_at=_datetime(description.get("AccessedAt")),
    )


# ========== Subscriptions ==========

def build_subscription(raw: Any) -> Optional[SubscriptionProperties]:
    """Decode a subscription entry; the topic name comes from the entry id."""
    description = _description(raw, "SubscriptionDescription")
    if description is None:
        return None

    topic_name = _topic_from_id(raw.get("Id"))
    if topic_name is None:
        raise ValueError(f"Cannot determine topic from entry id {raw.get('Id')!r}")

    return SubscriptionProperties(
        topic_name=topic_name,
        subscription_name=raw.get("Title"),
        lock_duration=parse_duration(description.get("LockDuration")) or 60,
        requires_session=_bool(description.get("RequiresSession")),
        default_message_time_to_live=parse_duration(description.get("DefaultMessageTimeToLive")),
        dead_lettering_on_message_expiration=_bool(description.get("DeadLetteringOnMessageExpiration")),
        max_delivery_count=_int(description.get("MaxDeliveryCount"), 10),
        enable_batched_operations=_bool(description.get("EnableBatchedOperations"), True),
        auto_delete_on_idle=parse_duration(description.get("AutoDeleteOnIdle")),
        status=EntityStatus(description.get("Status") or EntityStatus.ACTIVE.value),
        forward_to=_optional_text(description.get("ForwardTo")),
        user_metadata=_optional_text(description.get("UserMetadata")),
    )


def build_subscription_runtime_properties(raw: Any) -> Optional[SubscriptionRuntimeProperties]:
    """Decode the runtime counters of a subscription entry."""
    description = _description(raw, "SubscriptionDescription")
    if description is None:
        return None

    topic_name = _topic_from_id(raw.get("Id"))
    if topic_name is None:
        raise ValueError(f"Cannot determine topic from entry id {raw.get('Id')!r}")

    return SubscriptionRuntimeProperties(
        topic_name=topic_name,
        subscription_name=raw.get("Title"),
        total_message_count=_int(description.get("MessageCount")),
        count_details=_count_details(description.get("CountDetails")),
        created_at=_datetime(description.get("CreatedAt")),
        modified_at=_datetime(description.get("UpdatedAt")),
        accessed_at=_datetime(description.get("AccessedAt")),
    )


# ========== Rules ==========

def _build_filter(raw: Any) -> RuleFilter:
    if not isinstance(raw, dict):
        return RuleFilter(filter_type=FilterType.TRUE_FILTER)

    filter_type = FilterType(raw.get("@type") or FilterType.SQL_FILTER.value)
    if filter_type == FilterType.CORRELATION_FILTER:
        properties: Dict[str, str] = {}
        entries = (raw.get("Properties") or {})
        if isinstance(entries, dict):
            pairs = entries.get("KeyValueOfstringanyType") or []
            if isinstance(pairs, dict):
                pairs = [pairs]
            for pair in pairs:
                properties[pair["Key"]] = pair.get("Value") or ""
        return RuleFilter(
            filter_type=filter_type,
            correlation_id=_optional_text(raw.get("CorrelationId")),
            content_type=_optional_text(raw.get("ContentType")),
            subject=_optional_text(raw.get("Label")),
            message_id=_optional_text(raw.get("MessageId")),
            reply_to=_optional_text(raw.get("ReplyTo")),
            session_id=_optional_text(raw.get("SessionId")),
            to=_optional_text(raw.get("To")),
            properties=properties,
        )

    return RuleFilter(
        filter_type=filter_type,
        sql_expression=_optional_text(raw.get("SqlExpression")),
    )


def build_rule(raw: Any) -> Optional[RuleProperties]:
    """Decode a rule entry."""
    description = _description(raw, "RuleDescription")
    if description is None:
        return None

    action = description.get("Action")
    sql_action = None
    if isinstance(action, dict) and action.get("@type") == "SqlRuleAction":
        sql_action = _optional_text(action.get("SqlExpression"))

    return RuleProperties(
        name=raw.get("Title") or description.get("Name"),
        filter=_build_filter(description.get("Filter")),
        action=sql_action,
    )
