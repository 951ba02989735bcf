"""Connection session: the single broker connection and its active entity."""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from .connections import AzureServiceBusBackend, BrokerBackend
from .errors import (
    AdministrationUnavailable,
    AlreadyConnected,
    InvalidConnectionString,
    MissingEntityName,
    NotConnected,
    TopicNotSelectable,
    UnknownEntityKind,
)
from .models import (
    EntityDescriptor,
    EntityProperties,
    MessageDetail,
    MessagePage,
    OutgoingMessage,
    QueueEntity,
    SubscriptionEntity,
    TopicEntity,
)

CONNECTION_STRING_PREFIX = "Endpoint=sb://"
DEFAULT_PAGE_SIZE = 50
PEEK_BY_ID_WINDOW = 250
DEFAULT_RECEIVE_WAIT = 5.0
DEFAULT_OPERATION_TIMEOUT = 30.0

SessionListener = Callable[["SessionState"], None]


def parse_host(connection_string: str) -> str:
    """Extract the namespace host from an ``Endpoint=sb://`` connection string."""

    prefix_length = len(CONNECTION_STRING_PREFIX)
    if connection_string[:prefix_length].lower() != CONNECTION_STRING_PREFIX.lower():
        raise InvalidConnectionString("Invalid Service Bus connection string.")
    end = connection_string.find(";", prefix_length)
    if end < 0:
        end = len(connection_string)
    return connection_string[prefix_length:end].rstrip("/")


def descriptor_from_kind(kind: str, name: str, topic_name: str | None = None) -> EntityDescriptor:
    """Build a descriptor from UI-supplied kind text."""

    match (kind or "").strip().lower():
        case "queue":
            return QueueEntity(name)
        case "topic":
            return TopicEntity(name)
        case "subscription" if topic_name:
            return SubscriptionEntity(name, topic_name)
        case "subscription":
            raise UnknownEntityKind("A subscription needs its topic name.")
        case _:
            raise UnknownEntityKind(f"Unknown entity type: {kind!r}")


@dataclass(frozen=True, slots=True)
class SessionState:
    """Snapshot of the session published to listeners."""

    connected: bool
    host: str
    active_entity_name: str
    active_subscription_name: str | None
    is_administrative: bool
    available_entities: tuple[EntityDescriptor, ...]
    updated_at: datetime
    status: str = "Disconnected"
    profile_name: str | None = None


class ConnectionSession:
    """Owns at most one broker connection and the entity it is pointed at."""

    def __init__(
        self,
        backend: BrokerBackend | None = None,
        *,
        operation_timeout: float | None = DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        self._default_backend: BrokerBackend = backend or AzureServiceBusBackend()
        self._operation_timeout = operation_timeout
        self._lock = threading.Lock()
        self._listeners: set[SessionListener] = set()
        self._backend: BrokerBackend = self._default_backend
        self._client: Any = None
        self._admin: Any = None
        self._connected = False
        self._host = ""
        self._entity_name = ""
        self._subscription_name: str | None = None
        self._entities: tuple[EntityDescriptor, ...] = ()
        self._profile_name: str | None = None
        self._status = "Disconnected"

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def host(self) -> str:
        return self._host

    @property
    def active_entity_name(self) -> str:
        return self._entity_name

    @property
    def active_subscription_name(self) -> str | None:
        return self._subscription_name

    @property
    def is_administrative(self) -> bool:
        """True when management-plane credentials were supplied."""

        return self._admin is not None

    @property
    def available_entities(self) -> tuple[EntityDescriptor, ...]:
        return self._entities

    @property
    def profile_name(self) -> str | None:
        return self._profile_name

    @property
    def state(self) -> SessionState:
        """Current session snapshot."""

        with self._lock:
            return self._snapshot()

    def connect(
        self,
        connection_string: str,
        admin_connection_string: str | None = None,
        entity_name: str | None = None,
        subscription_name: str | None = None,
        *,
        backend: BrokerBackend | None = None,
        profile_name: str | None = None,
        timeout: float | None = None,
    ) -> SessionState:
        """Open the connection and resolve the entity inventory.

        Without administrative credentials the inventory is seeded from
        ``entity_name``/``subscription_name``; with them the live listing
        replaces any seed. Nothing is committed unless every step succeeds.
        """

        with self._lock:
            if self._connected:
                raise AlreadyConnected("Already connected to a Service Bus instance.")
            host = parse_host(connection_string)
            administrative = bool(admin_connection_string and admin_connection_string.strip())
            entity_name = (entity_name or "").strip()
            subscription_name = (subscription_name or "").strip() or None
            if subscription_name and not entity_name:
                raise MissingEntityName("A subscription needs the name of its topic.")
            if not administrative and not entity_name:
                raise MissingEntityName("The queue or topic name is required without an administrative connection.")

            active_backend = backend or self._default_backend
            client = None
            admin = None
            try:
                client = active_backend.open_connection(connection_string)
                if administrative:
                    admin = active_backend.open_admin_connection(admin_connection_string)  # type: ignore[arg-type]
                    entities = self._list_entities(active_backend, admin, self._timeout(timeout))
                elif subscription_name:
                    entities = (TopicEntity(entity_name), SubscriptionEntity(subscription_name, entity_name))
                else:
                    entities = (QueueEntity(entity_name),)
            except BaseException:
                _close_quietly(active_backend, admin)
                _close_quietly(active_backend, client)
                raise

            self._backend = active_backend
            self._client = client
            self._admin = admin
            self._host = host
            self._entity_name = entity_name
            self._subscription_name = subscription_name
            self._entities = entities
            self._profile_name = profile_name
            self._connected = True
            self._status = "Connected"
            state = self._snapshot()
        self._notify(state)
        return state

    def disconnect(self) -> None:
        """Release the broker handles and reset every field.

        Listeners see the reset even when closing a handle fails; the first
        close error is raised afterwards.
        """

        error: BaseException | None = None
        with self._lock:
            if not self._connected:
                raise NotConnected("Not connected to any Service Bus instance.")
            backend = self._backend
            for handle in (self._client, self._admin):
                try:
                    backend.close_handle(handle)
                except Exception as exc:
                    error = error or exc
            self._reset()
            state = self._snapshot()
        self._notify(state)
        if error is not None:
            raise error

    def refresh_entities(self, *, timeout: float | None = None) -> tuple[EntityDescriptor, ...]:
        """Rebuild the inventory from the administrative listing.

        Sessions without administrative credentials keep their seeded list.
        """

        with self._lock:
            self._require_connected()
            if self._admin is None:
                return self._entities
            self._entities = self._list_entities(self._backend, self._admin, self._timeout(timeout))
            self._status = "Entities refreshed"
            state = self._snapshot()
        self._notify(state)
        return state.available_entities

    def select_entity(self, entity: EntityDescriptor) -> SessionState:
        """Point peek/receive/send at another queue or subscription."""

        with self._lock:
            self._require_connected()
            match entity:
                case QueueEntity(name=name):
                    self._entity_name = name
                    self._subscription_name = None
                case SubscriptionEntity(name=name, topic_name=topic_name):
                    self._entity_name = topic_name
                    self._subscription_name = name
                case TopicEntity(name=name):
                    raise TopicNotSelectable(f"Please select a subscription of the topic '{name}'.")
                case _:
                    raise UnknownEntityKind(f"Unknown entity type: {type(entity).__qualname__}")
            self._status = "Entity selected"
            state = self._snapshot()
        self._notify(state)
        return state

    def get_entity_properties(self, entity: EntityDescriptor, *, timeout: float | None = None) -> EntityProperties:
        """Fetch a fresh properties snapshot for ``entity``."""

        with self._lock:
            self._require_connected()
            backend, admin = self._backend, self._admin
        if admin is None:
            raise AdministrationUnavailable("Entity properties need an administrative connection string.")
        return backend.get_entity_properties(admin, entity, timeout=self._timeout(timeout))

    def peek(self, max_messages: int = DEFAULT_PAGE_SIZE, *, timeout: float | None = None) -> MessagePage:
        """Non-destructive read of the first ``max_messages`` of the active entity."""

        if max_messages < 1:
            raise ValueError("max_messages must be at least 1.")
        backend, client, entity_name, subscription_name = self._target()
        if not entity_name:
            return MessagePage.empty()
        with backend.open_receiver(client, entity_name, subscription_name) as receiver:
            # One extra message tells whether another page exists.
            messages = receiver.peek(max_messages + 1, timeout=self._timeout(timeout))
        has_more = len(messages) > max_messages
        return MessagePage(messages=tuple(messages[:max_messages]), has_more=has_more)

    def peek_by_message_id(self, message_id: str, *, timeout: float | None = None) -> MessageDetail | None:
        """Find a message by id within the first ``PEEK_BY_ID_WINDOW`` messages.

        The broker has no lookup by id, so this is a bounded scan; messages
        past the window are reported as not found.
        """

        backend, client, entity_name, subscription_name = self._target()
        if not entity_name or not message_id:
            return None
        with backend.open_receiver(client, entity_name, subscription_name) as receiver:
            messages = receiver.peek(PEEK_BY_ID_WINDOW, timeout=self._timeout(timeout))
        for message in messages:
            if message.message_id == message_id:
                return message
        return None

    def receive_one(self, *, max_wait: float = DEFAULT_RECEIVE_WAIT) -> MessageDetail | None:
        """Receive and complete one message; ``None`` when the entity is empty."""

        backend, client, entity_name, subscription_name = self._target()
        if not entity_name:
            return None
        with backend.open_receiver(client, entity_name, subscription_name) as receiver:
            received = receiver.receive_one(max_wait)
            if received is None:
                return None
            receiver.complete(received)
        return received.detail

    def send(
        self,
        body: str,
        content_type: str = "application/json",
        properties: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> str:
        """Send one message to the active entity and return its generated id."""

        backend, client, entity_name, subscription_name = self._target()
        if not entity_name:
            raise NotConnected("No queue or topic is selected.")
        message = OutgoingMessage(
            message_id=str(uuid.uuid4()),
            body=body,
            content_type=content_type,
            application_properties={key: value for key, value in (properties or {}).items() if key},
        )
        with backend.open_sender(client, entity_name, topic=subscription_name is not None) as sender:
            sender.send(message, timeout=self._timeout(timeout))
        return message.message_id

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Subscribe to session updates; returns an unsubscribe handle."""

        self._listeners.add(listener)
        listener(self.state)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def _target(self) -> tuple[BrokerBackend, Any, str, str | None]:
        with self._lock:
            self._require_connected()
            return self._backend, self._client, self._entity_name, self._subscription_name

    def _require_connected(self) -> None:
        if not self._connected or self._client is None:
            raise NotConnected("Service Bus is not connected.")

    def _timeout(self, timeout: float | None) -> float | None:
        return timeout if timeout is not None else self._operation_timeout

    @staticmethod
    def _list_entities(
        backend: BrokerBackend,
        admin: Any,
        timeout: float | None,
    ) -> tuple[EntityDescriptor, ...]:
        entities: list[EntityDescriptor] = [
            QueueEntity(queue.name) for queue in backend.list_queues(admin, timeout=timeout)
        ]
        for topic in backend.list_topics(admin, timeout=timeout):
            entities.append(TopicEntity(topic.name))
            for subscription in backend.list_subscriptions(admin, topic.name, timeout=timeout):
                entities.append(SubscriptionEntity(subscription.name, topic.name))
        return tuple(entities)

    def _reset(self) -> None:
        self._backend = self._default_backend
        self._client = None
        self._admin = None
        self._connected = False
        self._host = ""
        self._entity_name = ""
        self._subscription_name = None
        self._entities = ()
        self._profile_name = None
        self._status = "Disconnected"

    def _snapshot(self) -> SessionState:
        return SessionState(
            connected=self._connected,
            host=self._host,
            active_entity_name=self._entity_name,
            active_subscription_name=self._subscription_name,
            is_administrative=self._admin is not None,
            available_entities=self._entities,
            updated_at=datetime.now(tz=timezone.utc),
            status=self._status,
            profile_name=self._profile_name,
        )

    def _notify(self, state: SessionState) -> None:
        for listener in tuple(self._listeners):
            listener(state)


def _close_quietly(backend: BrokerBackend, handle: Any) -> None:
    try:
        backend.close_handle(handle)
    except Exception:  # pragma: no cover - best effort cleanup
        pass


__all__ = [
    "CONNECTION_STRING_PREFIX",
    "ConnectionSession",
    "DEFAULT_PAGE_SIZE",
    "PEEK_BY_ID_WINDOW",
    "SessionListener",
    "SessionState",
    "descriptor_from_kind",
    "parse_host",
]
