"""Broker backends wrapped by the connection session."""

from __future__ import annotations

from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, ContextManager, Iterable, Iterator, Mapping, Protocol, Sequence, runtime_checkable

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.servicebus import ServiceBusClient, ServiceBusMessage, ServiceBusReceiveMode
from azure.servicebus.management import ServiceBusAdministrationClient

from .errors import AcknowledgementFailed, BrokerError, EntityNotFound, InvalidConnectionString
from .models import (
    EntityDescriptor,
    EntityProperties,
    MessageDetail,
    OutgoingMessage,
    QueueEntity,
    QueueProperties,
    ReceivedMessage,
    SubscriptionEntity,
    SubscriptionProperties,
    TopicEntity,
    TopicProperties,
)

DEFAULT_CONTENT_TYPE = "text/plain"


@runtime_checkable
class BrokerReceiver(Protocol):
    """Receiver bound to one queue or subscription for the duration of a call."""

    def peek(self, count: int, *, timeout: float | None = None) -> list[MessageDetail]:
        """Return up to ``count`` messages without locking or removing them."""

    def receive_one(self, max_wait: float) -> ReceivedMessage | None:
        """Lock and return one message, or ``None`` when nothing arrives in time."""

    def complete(self, message: ReceivedMessage) -> None:
        """Acknowledge a received message so it is removed from the entity."""


@runtime_checkable
class BrokerSender(Protocol):
    """Sender bound to one queue or topic for the duration of a call."""

    def send(self, message: OutgoingMessage, *, timeout: float | None = None) -> None:
        """Publish a single message."""


@runtime_checkable
class BrokerBackend(Protocol):
    """Protocol implemented by broker backends."""

    def open_connection(self, connection_string: str) -> Any:
        """Create the data-plane client handle."""

    def open_admin_connection(self, admin_connection_string: str) -> Any:
        """Create the management-plane handle."""

    def list_queues(self, admin: Any, *, timeout: float | None = None) -> Sequence[QueueProperties]:
        """List queues in broker order."""

    def list_topics(self, admin: Any, *, timeout: float | None = None) -> Sequence[TopicProperties]:
        """List topics in broker order."""

    def list_subscriptions(
        self, admin: Any, topic_name: str, *, timeout: float | None = None
    ) -> Sequence[SubscriptionProperties]:
        """List subscriptions of ``topic_name`` in broker order."""

    def get_entity_properties(
        self, admin: Any, entity: EntityDescriptor, *, timeout: float | None = None
    ) -> EntityProperties:
        """Fetch a fresh properties snapshot; raises ``EntityNotFound``."""

    def open_receiver(
        self, client: Any, entity_name: str, subscription_name: str | None = None
    ) -> ContextManager[BrokerReceiver]:
        """Open a peek-lock receiver released when the block exits."""

    def open_sender(self, client: Any, entity_name: str, *, topic: bool = False) -> ContextManager[BrokerSender]:
        """Open a sender released when the block exits."""

    def close_handle(self, handle: Any) -> None:
        """Release a handle; ``None`` and already-closed handles are accepted."""


class AzureServiceBusBackend:
    """Backend that talks to Azure Service Bus through the azure-servicebus SDK."""

    def __init__(self, *, retry_total: int = 0, client_options: Mapping[str, Any] | None = None) -> None:
        # Retries stay off so every call succeeds or fails exactly once.
        self._retry_total = retry_total
        self._client_options = dict(client_options or {})

    def open_connection(self, connection_string: str) -> ServiceBusClient:
        try:
            return ServiceBusClient.from_connection_string(
                connection_string,
                retry_total=self._retry_total,
                **self._client_options,
            )
        except ValueError as exc:
            raise InvalidConnectionString(f"Invalid Service Bus connection string: {exc}") from exc
        except AzureError as exc:
            raise BrokerError(f"Failed to create Service Bus client: {exc}", cause=exc) from exc

    def open_admin_connection(self, admin_connection_string: str) -> ServiceBusAdministrationClient:
        try:
            return ServiceBusAdministrationClient.from_connection_string(admin_connection_string)
        except ValueError as exc:
            raise InvalidConnectionString(f"Invalid administrative connection string: {exc}") from exc
        except AzureError as exc:
            raise BrokerError(f"Failed to create administration client: {exc}", cause=exc) from exc

    def list_queues(
        self, admin: ServiceBusAdministrationClient, *, timeout: float | None = None
    ) -> list[QueueProperties]:
        try:
            return [_queue_properties(entry) for entry in admin.list_queues(**_timeout_kwargs(timeout))]
        except AzureError as exc:
            raise BrokerError(f"Failed to list queues: {exc}", cause=exc) from exc

    def list_topics(
        self, admin: ServiceBusAdministrationClient, *, timeout: float | None = None
    ) -> list[TopicProperties]:
        try:
            return [_topic_properties(entry) for entry in admin.list_topics(**_timeout_kwargs(timeout))]
        except AzureError as exc:
            raise BrokerError(f"Failed to list topics: {exc}", cause=exc) from exc

    def list_subscriptions(
        self,
        admin: ServiceBusAdministrationClient,
        topic_name: str,
        *,
        timeout: float | None = None,
    ) -> list[SubscriptionProperties]:
        try:
            return [
                _subscription_properties(entry, topic_name)
                for entry in admin.list_subscriptions(topic_name, **_timeout_kwargs(timeout))
            ]
        except AzureError as exc:
            raise BrokerError(f"Failed to list subscriptions of '{topic_name}': {exc}", cause=exc) from exc

    def get_entity_properties(
        self,
        admin: ServiceBusAdministrationClient,
        entity: EntityDescriptor,
        *,
        timeout: float | None = None,
    ) -> EntityProperties:
        kwargs = _timeout_kwargs(timeout)
        try:
            match entity:
                case QueueEntity(name=name):
                    return _queue_properties(admin.get_queue(name, **kwargs))
                case TopicEntity(name=name):
                    return _topic_properties(admin.get_topic(name, **kwargs))
                case SubscriptionEntity(name=name, topic_name=topic_name):
                    return _subscription_properties(
                        admin.get_subscription(topic_name, name, **kwargs),
                        topic_name,
                    )
        except ResourceNotFoundError as exc:
            raise EntityNotFound(f"Entity '{entity.name}' was not found.") from exc
        except AzureError as exc:
            raise BrokerError(f"Failed to fetch properties of '{entity.name}': {exc}", cause=exc) from exc
        raise TypeError(f"Unsupported entity descriptor: {entity!r}")

    @contextmanager
    def open_receiver(
        self,
        client: ServiceBusClient,
        entity_name: str,
        subscription_name: str | None = None,
    ) -> Iterator[BrokerReceiver]:
        try:
            if subscription_name:
                receiver = client.get_subscription_receiver(
                    topic_name=entity_name,
                    subscription_name=subscription_name,
                    receive_mode=ServiceBusReceiveMode.PEEK_LOCK,
                )
            else:
                receiver = client.get_queue_receiver(
                    queue_name=entity_name,
                    receive_mode=ServiceBusReceiveMode.PEEK_LOCK,
                )
        except AzureError as exc:
            raise BrokerError(f"Failed to open receiver for '{entity_name}': {exc}", cause=exc) from exc
        try:
            with receiver:
                yield _AzureReceiver(receiver)
        except AzureError as exc:
            raise BrokerError(f"Receiver for '{entity_name}' failed: {exc}", cause=exc) from exc

    @contextmanager
    def open_sender(
        self,
        client: ServiceBusClient,
        entity_name: str,
        *,
        topic: bool = False,
    ) -> Iterator[BrokerSender]:
        try:
            if topic:
                sender = client.get_topic_sender(topic_name=entity_name)
            else:
                sender = client.get_queue_sender(queue_name=entity_name)
        except AzureError as exc:
            raise BrokerError(f"Failed to open sender for '{entity_name}': {exc}", cause=exc) from exc
        try:
            with sender:
                yield _AzureSender(sender)
        except AzureError as exc:
            raise BrokerError(f"Sender for '{entity_name}' failed: {exc}", cause=exc) from exc

    def close_handle(self, handle: Any) -> None:
        if handle is None:
            return
        try:
            handle.close()
        except AzureError as exc:
            raise BrokerError(f"Failed to close broker handle: {exc}", cause=exc) from exc


class _AzureReceiver:
    def __init__(self, receiver: Any) -> None:
        self._receiver = receiver

    def peek(self, count: int, *, timeout: float | None = None) -> list[MessageDetail]:
        try:
            messages = self._receiver.peek_messages(max_message_count=count, timeout=timeout)
        except AzureError as exc:
            raise BrokerError(f"Failed to peek messages: {exc}", cause=exc) from exc
        return [message_detail(message) for message in messages]

    def receive_one(self, max_wait: float) -> ReceivedMessage | None:
        try:
            messages = self._receiver.receive_messages(max_message_count=1, max_wait_time=max_wait)
        except AzureError as exc:
            raise BrokerError(f"Failed to receive a message: {exc}", cause=exc) from exc
        if not messages:
            return None
        message = messages[0]
        return ReceivedMessage(detail=message_detail(message), token=message)

    def complete(self, message: ReceivedMessage) -> None:
        try:
            self._receiver.complete_message(message.token)
        except AzureError as exc:
            raise AcknowledgementFailed(
                f"Message '{message.detail.message_id}' was received but could not be completed: {exc}",
                cause=exc,
            ) from exc


class _AzureSender:
    def __init__(self, sender: Any) -> None:
        self._sender = sender

    def send(self, message: OutgoingMessage, *, timeout: float | None = None) -> None:
        outgoing = ServiceBusMessage(
            message.body,
            content_type=message.content_type,
            message_id=message.message_id,
            application_properties=dict(message.application_properties) or None,
        )
        try:
            self._sender.send_messages(outgoing, timeout=timeout)
        except AzureError as exc:
            raise BrokerError(f"Failed to send message '{message.message_id}': {exc}", cause=exc) from exc


def message_detail(message: Any) -> MessageDetail:
    """Convert an SDK received message into a ``MessageDetail``."""

    message_id = getattr(message, "message_id", None)
    return MessageDetail(
        message_id=str(message_id) if message_id is not None else "",
        body=_body_text(getattr(message, "body", b"")),
        content_type=getattr(message, "content_type", None) or DEFAULT_CONTENT_TYPE,
        enqueued_time_utc=getattr(message, "enqueued_time_utc", None),
        application_properties=_decode_properties(getattr(message, "application_properties", None)),
    )


def _body_text(body: Any) -> str:
    if body is None:
        return ""
    if isinstance(body, str):
        return body
    if isinstance(body, (bytes, bytearray)):
        return bytes(body).decode("utf-8", errors="replace")
    if isinstance(body, Iterable) and not isinstance(body, Mapping):
        sections = list(body)
        if all(isinstance(section, (bytes, bytearray)) for section in sections):
            return b"".join(bytes(section) for section in sections).decode("utf-8", errors="replace")
        return str(sections)
    return str(body)


def _decode_properties(properties: Mapping[Any, Any] | None) -> dict[str, Any]:
    decoded: dict[str, Any] = {}
    for key, value in (properties or {}).items():
        if isinstance(key, (bytes, bytearray)):
            key = bytes(key).decode("utf-8", errors="replace")
        if isinstance(value, (bytes, bytearray)):
            value = bytes(value).decode("utf-8", errors="replace")
        decoded[str(key)] = value
    return decoded


def _timeout_kwargs(timeout: float | None) -> dict[str, float]:
    return {"timeout": timeout} if timeout is not None else {}


def _queue_properties(entry: Any) -> QueueProperties:
    return QueueProperties(
        name=entry.name,
        lock_duration=getattr(entry, "lock_duration", None),
        max_delivery_count=getattr(entry, "max_delivery_count", None),
        default_message_time_to_live=getattr(entry, "default_message_time_to_live", None),
        requires_duplicate_detection=bool(getattr(entry, "requires_duplicate_detection", False)),
        duplicate_detection_history_time_window=getattr(entry, "duplicate_detection_history_time_window", None),
        dead_lettering_on_message_expiration=bool(getattr(entry, "dead_lettering_on_message_expiration", False)),
        enable_batched_operations=bool(getattr(entry, "enable_batched_operations", False)),
        requires_session=bool(getattr(entry, "requires_session", False)),
        enable_partitioning=bool(getattr(entry, "enable_partitioning", False)),
        auto_delete_on_idle=getattr(entry, "auto_delete_on_idle", None),
    )


def _topic_properties(entry: Any) -> TopicProperties:
    return TopicProperties(
        name=entry.name,
        default_message_time_to_live=getattr(entry, "default_message_time_to_live", None),
        requires_duplicate_detection=bool(getattr(entry, "requires_duplicate_detection", False)),
        duplicate_detection_history_time_window=getattr(entry, "duplicate_detection_history_time_window", None),
        enable_batched_operations=bool(getattr(entry, "enable_batched_operations", False)),
        enable_partitioning=bool(getattr(entry, "enable_partitioning", False)),
        auto_delete_on_idle=getattr(entry, "auto_delete_on_idle", None),
    )


def _subscription_properties(entry: Any, topic_name: str) -> SubscriptionProperties:
    return SubscriptionProperties(
        name=entry.name,
        topic_name=topic_name,
        lock_duration=getattr(entry, "lock_duration", None),
        max_delivery_count=getattr(entry, "max_delivery_count", None),
        default_message_time_to_live=getattr(entry, "default_message_time_to_live", None),
        dead_lettering_on_message_expiration=bool(getattr(entry, "dead_lettering_on_message_expiration", False)),
        requires_session=bool(getattr(entry, "requires_session", False)),
        enable_batched_operations=bool(getattr(entry, "enable_batched_operations", False)),
        auto_delete_on_idle=getattr(entry, "auto_delete_on_idle", None),
    )


DEMO_NAMESPACE_PRESET: Mapping[str, Mapping[str, Sequence[str]]] = {
    "queues": {
        "orders": (
            '{"orderId": 1001, "status": "created"}',
            '{"orderId": 1002, "status": "paid"}',
            '{"orderId": 1003, "status": "shipped"}',
        ),
        "invoices": ('{"invoiceId": "INV-7", "total": 120.5}',),
        "empty": (),
    },
    "topics": {
        "events": ("audit", "billing"),
        "notifications": ("email",),
    },
}


@dataclass(slots=True, eq=False)
class _StoredMessage:
    detail: MessageDetail
    locked: bool = False


@dataclass(slots=True)
class _DemoNamespace:
    queues: dict[str, deque[_StoredMessage]] = field(default_factory=dict)
    topics: dict[str, dict[str, deque[_StoredMessage]]] = field(default_factory=dict)


@dataclass(slots=True)
class _DemoHandle:
    namespace: _DemoNamespace
    administrative: bool = False
    closed: bool = False

    def close(self) -> None:
        self.closed = True


class DemoBrokerBackend:
    """In-memory namespace used by the demo profile and by tests."""

    def __init__(self, preset: Mapping[str, Mapping[str, Sequence[str]]] | None = None) -> None:
        source = DEMO_NAMESPACE_PRESET if preset is None else preset
        self._namespace = _DemoNamespace()
        self._sequence = 0
        for queue, bodies in source.get("queues", {}).items():
            self._namespace.queues[queue] = deque(self._store(body) for body in bodies)
        for topic, subscriptions in source.get("topics", {}).items():
            self._namespace.topics[topic] = {name: deque() for name in subscriptions}
        self.closed_handles = 0

    def open_connection(self, connection_string: str) -> _DemoHandle:
        return _DemoHandle(self._namespace)

    def open_admin_connection(self, admin_connection_string: str) -> _DemoHandle:
        return _DemoHandle(self._namespace, administrative=True)

    def list_queues(self, admin: _DemoHandle, *, timeout: float | None = None) -> list[QueueProperties]:
        self._ensure_open(admin)
        return [self._queue_defaults(name) for name in self._namespace.queues]

    def list_topics(self, admin: _DemoHandle, *, timeout: float | None = None) -> list[TopicProperties]:
        self._ensure_open(admin)
        return [TopicProperties(name=name) for name in self._namespace.topics]

    def list_subscriptions(
        self, admin: _DemoHandle, topic_name: str, *, timeout: float | None = None
    ) -> list[SubscriptionProperties]:
        self._ensure_open(admin)
        subscriptions = self._namespace.topics.get(topic_name)
        if subscriptions is None:
            raise BrokerError(f"Topic '{topic_name}' does not exist.")
        return [self._subscription_defaults(name, topic_name) for name in subscriptions]

    def get_entity_properties(
        self, admin: _DemoHandle, entity: EntityDescriptor, *, timeout: float | None = None
    ) -> EntityProperties:
        self._ensure_open(admin)
        match entity:
            case QueueEntity(name=name) if name in self._namespace.queues:
                return self._queue_defaults(name)
            case TopicEntity(name=name) if name in self._namespace.topics:
                return TopicProperties(name=name)
            case SubscriptionEntity(name=name, topic_name=topic) if name in self._namespace.topics.get(topic, {}):
                return self._subscription_defaults(name, topic)
        raise EntityNotFound(f"Entity '{entity.name}' was not found.")

    @contextmanager
    def open_receiver(
        self,
        client: _DemoHandle,
        entity_name: str,
        subscription_name: str | None = None,
    ) -> Iterator[BrokerReceiver]:
        self._ensure_open(client)
        receiver = _DemoReceiver(self._messages_for(entity_name, subscription_name))
        try:
            yield receiver
        finally:
            receiver.release()

    @contextmanager
    def open_sender(self, client: _DemoHandle, entity_name: str, *, topic: bool = False) -> Iterator[BrokerSender]:
        self._ensure_open(client)
        if topic:
            subscriptions = self._namespace.topics.get(entity_name)
            if subscriptions is None:
                raise BrokerError(f"Topic '{entity_name}' does not exist.")
            targets = list(subscriptions.values())
        else:
            queue = self._namespace.queues.get(entity_name)
            if queue is None:
                raise BrokerError(f"Queue '{entity_name}' does not exist.")
            targets = [queue]
        yield _DemoSender(self._store, targets)

    def close_handle(self, handle: Any) -> None:
        if handle is None or handle.closed:
            return
        handle.close()
        self.closed_handles += 1

    def _messages_for(self, entity_name: str, subscription_name: str | None) -> deque[_StoredMessage]:
        if subscription_name:
            subscriptions = self._namespace.topics.get(entity_name, {})
            messages = subscriptions.get(subscription_name)
        else:
            messages = self._namespace.queues.get(entity_name)
        if messages is None:
            target = f"{entity_name}/{subscription_name}" if subscription_name else entity_name
            raise BrokerError(f"Messaging entity '{target}' could not be found.")
        return messages

    def _store(
        self,
        body: str,
        *,
        message_id: str | None = None,
        content_type: str = DEFAULT_CONTENT_TYPE,
        properties: Mapping[str, Any] | None = None,
    ) -> _StoredMessage:
        self._sequence += 1
        detail = MessageDetail(
            message_id=message_id or f"demo-{self._sequence}",
            body=body,
            content_type=content_type,
            enqueued_time_utc=datetime.now(tz=timezone.utc),
            application_properties=dict(properties or {}),
        )
        return _StoredMessage(detail)

    @staticmethod
    def _ensure_open(handle: _DemoHandle) -> None:
        if handle is None or handle.closed:
            raise BrokerError("The broker handle has been closed.")

    @staticmethod
    def _queue_defaults(name: str) -> QueueProperties:
        return QueueProperties(
            name=name,
            lock_duration=timedelta(seconds=60),
            max_delivery_count=10,
            default_message_time_to_live=timedelta(days=14),
            enable_batched_operations=True,
        )

    @staticmethod
    def _subscription_defaults(name: str, topic_name: str) -> SubscriptionProperties:
        return SubscriptionProperties(
            name=name,
            topic_name=topic_name,
            lock_duration=timedelta(seconds=60),
            max_delivery_count=10,
            default_message_time_to_live=timedelta(days=14),
            enable_batched_operations=True,
        )


class _DemoReceiver:
    def __init__(self, messages: deque[_StoredMessage]) -> None:
        self._messages = messages
        self._locked: list[_StoredMessage] = []

    def peek(self, count: int, *, timeout: float | None = None) -> list[MessageDetail]:
        return [stored.detail for stored in list(self._messages)[:count]]

    def receive_one(self, max_wait: float) -> ReceivedMessage | None:
        for stored in self._messages:
            if not stored.locked:
                stored.locked = True
                self._locked.append(stored)
                return ReceivedMessage(detail=stored.detail, token=stored)
        return None

    def complete(self, message: ReceivedMessage) -> None:
        stored = message.token
        if stored not in self._locked:
            raise AcknowledgementFailed(f"Message '{message.detail.message_id}' is not locked by this receiver.")
        self._locked.remove(stored)
        self._messages.remove(stored)

    def release(self) -> None:
        for stored in self._locked:
            stored.locked = False
        self._locked.clear()


class _DemoSender:
    def __init__(self, store: Callable[..., _StoredMessage], targets: list[deque[_StoredMessage]]) -> None:
        self._store = store
        self._targets = targets

    def send(self, message: OutgoingMessage, *, timeout: float | None = None) -> None:
        for target in self._targets:
            target.append(
                self._store(
                    message.body,
                    message_id=message.message_id,
                    content_type=message.content_type,
                    properties=message.application_properties,
                )
            )


__all__ = [
    "AzureServiceBusBackend",
    "BrokerBackend",
    "BrokerReceiver",
    "BrokerSender",
    "DEFAULT_CONTENT_TYPE",
    "DEMO_NAMESPACE_PRESET",
    "DemoBrokerBackend",
    "message_detail",
]
