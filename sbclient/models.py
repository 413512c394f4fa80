"""
Service Bus Entity Models

Pydantic models for the management entities returned by listing operations:
queues, topics, subscriptions and rules, plus their runtime properties.

Author: sbclient contributors
Date: 2026-10-17
"""

import re
from datetime import datetime
from enum import Enum
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class EntityNameValidator:
    """
    Validates Service Bus entity names according to Azure rules:
    - 1-260 characters (50 for subscriptions and rules)
    - Alphanumeric characters, hyphens (-), underscores (_), periods (.) and slashes (/)
    - Must start and end with alphanumeric character
    """

    @staticmethod
    def validate(name: str, max_length: int = 260) -> tuple[bool, Optional[str]]:
        """
        Validate an entity name.

        Args:
            name: Entity name to validate
            max_length: Maximum allowed length

        Returns:
            Tuple of (is_valid, error_message)
        """
        if not name:
            return False, "Entity name cannot be empty"

        if len(name) > max_length:
            return False, f"Entity name must be 1-{max_length} characters, got {len(name)}"

        if not name[0].isalnum():
            return False, "Entity name must start with alphanumeric character"

        if not name[-1].isalnum():
            return False, "Entity name must end with alphanumeric character"

        if not re.match(r'^[a-zA-Z0-9\-_./$]+$', name):
            return False, "Entity name can only contain alphanumeric, hyphens, underscores, periods and slashes"

        return True, None


class EntityStatus(str, Enum):
    """Entity availability status."""
    ACTIVE = "Active"
    DISABLED = "Disabled"
    SEND_DISABLED = "SendDisabled"
    RECEIVE_DISABLED = "ReceiveDisabled"


class QueueProperties(BaseModel):
    """Queue description as returned by the management endpoint."""
    model_config = ConfigDict(extra='forbid')

    name: str
    lock_duration: int = Field(default=60, ge=0)  # seconds
    max_size_in_megabytes: int = Field(default=1024, ge=0)
    requires_duplicate_detection: bool = False
    requires_session: bool = False
    default_message_time_to_live: Optional[int] = None  # seconds, None means unbounded
    dead_lettering_on_message_expiration: bool = False
    max_delivery_count: int = Field(default=10, ge=1)
    enable_batched_operations: bool = True
    enable_partitioning: bool = False
    auto_delete_on_idle: Optional[int] = None
    status: EntityStatus = EntityStatus.ACTIVE
    forward_to: Optional[str] = None
    forward_dead_lettered_messages_to: Optional[str] = None
    user_metadata: Optional[str] = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate queue name."""
        is_valid, error = EntityNameValidator.validate(v)
        if not is_valid:
            raise ValueError(error)
        return v


class MessageCountDetails(BaseModel):
    """Per-state message counts of an entity."""
    model_config = ConfigDict(extra='forbid')

    active_message_count: int = Field(default=0, ge=0)
    dead_letter_message_count: int = Field(default=0, ge=0)
    scheduled_message_count: int = Field(default=0, ge=0)
    transfer_message_count: int = Field(default=0, ge=0)
    transfer_dead_letter_message_count: int = Field(default=0, ge=0)


class QueueRuntimeProperties(BaseModel):
    """Queue runtime information."""
    model_config = ConfigDict(extra='forbid')

    name: str
    total_message_count: int = Field(default=0, ge=0)
    size_in_bytes: int = Field(default=0, ge=0)
    count_details: MessageCountDetails = Field(default_factory=MessageCountDetails)
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None
    accessed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, int]:
        """Convert runtime counters to dictionary."""
        return {
            "MessageCount": self.total_message_count,
            "ActiveMessageCount": self.count_details.active_message_count,
            "DeadLetterMessageCount": self.count_details.dead_letter_message_count,
            "ScheduledMessageCount": self.count_details.scheduled_message_count,
            "TransferMessageCount": self.count_details.transfer_message_count,
            "TransferDeadLetterMessageCount": self.count_details.transfer_dead_letter_message_count,
            "SizeInBytes": self.size_in_bytes,
        }


class TopicProperties(BaseModel):
    """Properties for a Service Bus topic."""
    model_config = ConfigDict(extra='forbid')

    name: str
    max_size_in_megabytes: int = Field(default=1024, ge=0)
    default_message_time_to_live: Optional[int] = None
    requires_duplicate_detection: bool = False
    enable_batched_operations: bool = True
    support_ordering: bool = False
    enable_partitioning: bool = False
    auto_delete_on_idle: Optional[int] = None
    status: EntityStatus = EntityStatus.ACTIVE
    user_metadata: Optional[str] = None


class TopicRuntimeProperties(BaseModel):
    """Runtime information for a Service Bus topic."""
    model_config = ConfigDict(extra='forbid')

    name: str
    subscription_count: int = Field(default=0, ge=0)
    size_in_bytes: int = Field(default=0, ge=0)
    scheduled_message_count: int = Field(default=0, ge=0)
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None
    accessed_at: Optional[datetime] = None


class SubscriptionProperties(BaseModel):
    """Properties for a Service Bus subscription."""
    model_config = ConfigDict(extra='forbid')

    topic_name: str
    subscription_name: str
    lock_duration: int = Field(default=60, ge=0)
    requires_session: bool = False
    default_message_time_to_live: Optional[int] = None
    dead_lettering_on_message_expiration: bool = False
    max_delivery_count: int = Field(default=10, ge=1)
    enable_batched_operations: bool = True
    auto_delete_on_idle: Optional[int] = None
    status: EntityStatus = EntityStatus.ACTIVE
    forward_to: Optional[str] = None
    user_metadata: Optional[str] = None


class SubscriptionRuntimeProperties(BaseModel):
    """Runtime information for a subscription."""
    model_config = ConfigDict(extra='forbid')

    topic_name: str
    subscription_name: str
    total_message_count: int = Field(default=0, ge=0)
    count_details: MessageCountDetails = Field(default_factory=MessageCountDetails)
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None
    accessed_at: Optional[datetime] = None


class FilterType(str, Enum):
    """Types of rule filters."""
    TRUE_FILTER = "TrueFilter"
    FALSE_FILTER = "FalseFilter"
    SQL_FILTER = "SqlFilter"
    CORRELATION_FILTER = "CorrelationFilter"


class RuleFilter(BaseModel):
    """Filter of a subscription rule."""
    model_config = ConfigDict(extra='forbid')

    filter_type: FilterType
    sql_expression: Optional[str] = None  # For SqlFilter
    correlation_id: Optional[str] = None  # For CorrelationFilter
    content_type: Optional[str] = None
    subject: Optional[str] = None
    message_id: Optional[str] = None
    reply_to: Optional[str] = None
    session_id: Optional[str] = None
    to: Optional[str] = None
    properties: Dict[str, str] = Field(default_factory=dict)


class RuleProperties(BaseModel):
    """Rule of a subscription: a filter plus an optional SQL action."""
    model_config = ConfigDict(extra='forbid')

    name: str = "$Default"
    filter: RuleFilter = Field(default_factory=lambda: RuleFilter(filter_type=FilterType.TRUE_FILTER))
    action: Optional[str] = None
