"""Shared dataclasses describing broker entities and messages."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from typing import Any, Literal, Mapping, assert_never

EntityKind = Literal["queue", "topic", "subscription"]

ENTITY_KINDS: tuple[EntityKind, ...] = ("queue", "topic", "subscription")


@dataclass(frozen=True, slots=True)
class QueueEntity:
    """A queue in the namespace."""

    name: str


@dataclass(frozen=True, slots=True)
class TopicEntity:
    """A topic; only its subscriptions carry a message stream."""

    name: str


@dataclass(frozen=True, slots=True)
class SubscriptionEntity:
    """A subscription attached to ``topic_name``."""

    name: str
    topic_name: str


EntityDescriptor = QueueEntity | TopicEntity | SubscriptionEntity


def entity_kind(entity: EntityDescriptor) -> EntityKind:
    """Return the kind tag for a descriptor."""

    match entity:
        case QueueEntity():
            return "queue"
        case TopicEntity():
            return "topic"
        case SubscriptionEntity():
            return "subscription"
        case _:
            assert_never(entity)


def entity_label(entity: EntityDescriptor) -> str:
    """Display label used by the sidebar and the command palette."""

    match entity:
        case QueueEntity(name=name):
            return f"Queue: {name}"
        case TopicEntity(name=name):
            return f"Topic: {name}"
        case SubscriptionEntity(name=name, topic_name=topic):
            return f"Subscription: {topic}/{name}"
        case _:
            assert_never(entity)


@dataclass(frozen=True, slots=True)
class QueueProperties:
    """Broker-configured attributes of a queue."""

    name: str
    lock_duration: timedelta | None = None
    max_delivery_count: int | None = None
    default_message_time_to_live: timedelta | None = None
    requires_duplicate_detection: bool = False
    duplicate_detection_history_time_window: timedelta | None = None
    dead_lettering_on_message_expiration: bool = False
    enable_batched_operations: bool = False
    requires_session: bool = False
    enable_partitioning: bool = False
    auto_delete_on_idle: timedelta | None = None


@dataclass(frozen=True, slots=True)
class TopicProperties:
    """Broker-configured attributes of a topic."""

    name: str
    default_message_time_to_live: timedelta | None = None
    requires_duplicate_detection: bool = False
    duplicate_detection_history_time_window: timedelta | None = None
    enable_batched_operations: bool = False
    enable_partitioning: bool = False
    auto_delete_on_idle: timedelta | None = None


@dataclass(frozen=True, slots=True)
class SubscriptionProperties:
    """Broker-configured attributes of a topic subscription."""

    name: str
    topic_name: str
    lock_duration: timedelta | None = None
    max_delivery_count: int | None = None
    default_message_time_to_live: timedelta | None = None
    dead_lettering_on_message_expiration: bool = False
    requires_session: bool = False
    enable_batched_operations: bool = False
    auto_delete_on_idle: timedelta | None = None


EntityProperties = QueueProperties | TopicProperties | SubscriptionProperties


def properties_rows(properties: EntityProperties) -> tuple[tuple[str, str], ...]:
    """Flatten a properties snapshot into ``(label, value)`` pairs for display."""

    rows: list[tuple[str, str]] = []
    for item in fields(properties):
        value = getattr(properties, item.name)
        label = item.name.replace("_", " ").capitalize()
        if value is None:
            text = "—"
        elif isinstance(value, bool):
            text = "Yes" if value else "No"
        else:
            text = str(value)
        rows.append((label, text))
    return tuple(rows)


@dataclass(frozen=True, slots=True)
class MessageDetail:
    """A message as returned by peek or receive."""

    message_id: str
    body: str
    content_type: str
    enqueued_time_utc: datetime | None
    application_properties: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class MessagePage:
    """One page of peeked messages plus a flag telling whether more remain."""

    messages: tuple[MessageDetail, ...]
    has_more: bool = False

    @classmethod
    def empty(cls) -> MessagePage:
        return cls(messages=(), has_more=False)


@dataclass(frozen=True, slots=True)
class OutgoingMessage:
    """Message handed to a sender."""

    message_id: str
    body: str
    content_type: str
    application_properties: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ReceivedMessage:
    """A received message plus the backend token needed to complete it."""

    detail: MessageDetail
    token: Any = None


__all__ = [
    "ENTITY_KINDS",
    "EntityDescriptor",
    "EntityKind",
    "EntityProperties",
    "MessageDetail",
    "MessagePage",
    "OutgoingMessage",
    "QueueEntity",
    "QueueProperties",
    "ReceivedMessage",
    "SubscriptionEntity",
    "SubscriptionProperties",
    "TopicEntity",
    "TopicProperties",
    "entity_kind",
    "entity_label",
    "properties_rows",
]
