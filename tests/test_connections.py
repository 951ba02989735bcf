"""Tests for the broker backends."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any

import pytest
from azure.core.exceptions import AzureError, ResourceNotFoundError

from sbviewer.connections import AzureServiceBusBackend, BrokerBackend, DemoBrokerBackend, message_detail
from sbviewer.errors import AcknowledgementFailed, BrokerError, EntityNotFound, InvalidConnectionString
from sbviewer.models import OutgoingMessage, QueueEntity, QueueProperties, SubscriptionEntity, SubscriptionProperties

CONNECTION_STRING = "Endpoint=sb://ns.servicebus.windows.net/;SharedAccessKeyName=k;SharedAccessKey=v"


def test_backends_satisfy_protocol() -> None:
    assert isinstance(DemoBrokerBackend(), BrokerBackend)
    assert isinstance(AzureServiceBusBackend(), BrokerBackend)


def test_demo_backend_lists_preset_in_order() -> None:
    backend = DemoBrokerBackend()
    admin = backend.open_admin_connection("ignored")

    assert [q.name for q in backend.list_queues(admin)] == ["orders", "invoices", "empty"]
    assert [t.name for t in backend.list_topics(admin)] == ["events", "notifications"]
    assert [s.name for s in backend.list_subscriptions(admin, "events")] == ["audit", "billing"]
    with pytest.raises(BrokerError):
        backend.list_subscriptions(admin, "missing")


def test_demo_backend_rejects_closed_handles() -> None:
    backend = DemoBrokerBackend()
    client = backend.open_connection("ignored")
    backend.close_handle(client)
    backend.close_handle(client)
    backend.close_handle(None)

    assert backend.closed_handles == 1
    with pytest.raises(BrokerError):
        with backend.open_receiver(client, "orders"):
            pass


def test_demo_receiver_releases_uncompleted_locks() -> None:
    backend = DemoBrokerBackend()
    client = backend.open_connection("ignored")

    with backend.open_receiver(client, "invoices") as receiver:
        first = receiver.receive_one(0.1)
        assert first is not None
        assert receiver.receive_one(0.1) is None

    with backend.open_receiver(client, "invoices") as receiver:
        again = receiver.receive_one(0.1)
        assert again is not None and again.detail == first.detail
        receiver.complete(again)
        assert receiver.peek(10) == []


def test_demo_complete_requires_lock_from_same_receiver() -> None:
    backend = DemoBrokerBackend()
    client = backend.open_connection("ignored")

    with backend.open_receiver(client, "orders") as receiver:
        received = receiver.receive_one(0.1)
    assert received is not None

    with backend.open_receiver(client, "orders") as receiver:
        with pytest.raises(AcknowledgementFailed):
            receiver.complete(received)


def test_demo_sender_fans_out_to_subscriptions() -> None:
    backend = DemoBrokerBackend()
    client = backend.open_connection("ignored")
    message = OutgoingMessage(message_id="m-1", body="hi", content_type="text/plain", application_properties={"a": 1})

    with backend.open_sender(client, "events", topic=True) as sender:
        sender.send(message)

    for subscription in ("audit", "billing"):
        with backend.open_receiver(client, "events", subscription) as receiver:
            peeked = receiver.peek(5)
        assert [(m.message_id, m.body, dict(m.application_properties)) for m in peeked] == [("m-1", "hi", {"a": 1})]
    with pytest.raises(BrokerError):
        with backend.open_sender(client, "events"):
            pass


def test_demo_entity_properties() -> None:
    backend = DemoBrokerBackend()
    admin = backend.open_admin_connection("ignored")

    properties = backend.get_entity_properties(admin, SubscriptionEntity("audit", "events"))

    assert isinstance(properties, SubscriptionProperties)
    assert properties.topic_name == "events"
    assert properties.lock_duration == timedelta(seconds=60)
    with pytest.raises(EntityNotFound):
        backend.get_entity_properties(admin, SubscriptionEntity("audit", "notifications"))


def test_message_detail_decodes_sdk_message() -> None:
    enqueued = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    sdk_message = SimpleNamespace(
        message_id="abc",
        body=iter([b'{"a": ', b"1}"]),
        content_type=None,
        enqueued_time_utc=enqueued,
        application_properties={b"tenant": b"contoso", "attempt": 2},
    )

    detail = message_detail(sdk_message)

    assert detail.message_id == "abc"
    assert detail.body == '{"a": 1}'
    assert detail.content_type == "text/plain"
    assert detail.enqueued_time_utc == enqueued
    assert detail.application_properties == {"tenant": "contoso", "attempt": 2}


def test_message_detail_handles_missing_fields() -> None:
    detail = message_detail(SimpleNamespace(message_id=None, body=None, content_type="application/json"))

    assert detail.message_id == ""
    assert detail.body == ""
    assert detail.enqueued_time_utc is None
    assert detail.application_properties == {}


class _FakeReceiver:
    def __init__(self, messages: list[Any], *, fail_complete: bool = False) -> None:
        self.messages = messages
        self.fail_complete = fail_complete
        self.peek_calls: list[tuple[int, float | None]] = []
        self.completed: list[Any] = []
        self.closed = False

    def __enter__(self) -> _FakeReceiver:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.closed = True

    def peek_messages(self, max_message_count: int, timeout: float | None = None) -> list[Any]:
        self.peek_calls.append((max_message_count, timeout))
        return self.messages[:max_message_count]

    def receive_messages(self, max_message_count: int, max_wait_time: float) -> list[Any]:
        return self.messages[:max_message_count]

    def complete_message(self, message: Any) -> None:
        if self.fail_complete:
            raise AzureError("lock lost")
        self.completed.append(message)


class _FakeSender:
    def __init__(self) -> None:
        self.sent: list[tuple[Any, float | None]] = []
        self.closed = False

    def __enter__(self) -> _FakeSender:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.closed = True

    def send_messages(self, message: Any, timeout: float | None = None) -> None:
        self.sent.append((message, timeout))


class _FakeClient:
    def __init__(self, receiver: _FakeReceiver | None = None) -> None:
        self.receiver = receiver or _FakeReceiver([])
        self.sender = _FakeSender()
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.closed = False

    def get_queue_receiver(self, **kwargs: Any) -> _FakeReceiver:
        self.calls.append(("queue_receiver", kwargs))
        return self.receiver

    def get_subscription_receiver(self, **kwargs: Any) -> _FakeReceiver:
        self.calls.append(("subscription_receiver", kwargs))
        return self.receiver

    def get_queue_sender(self, **kwargs: Any) -> _FakeSender:
        self.calls.append(("queue_sender", kwargs))
        return self.sender

    def get_topic_sender(self, **kwargs: Any) -> _FakeSender:
        self.calls.append(("topic_sender", kwargs))
        return self.sender

    def close(self) -> None:
        self.closed = True


class _FakeAdmin:
    def __init__(self) -> None:
        self.timeouts: list[Any] = []

    def list_queues(self, **kwargs: Any) -> list[Any]:
        self.timeouts.append(kwargs.get("timeout"))
        return [SimpleNamespace(name="q1", max_delivery_count=3, requires_session=None)]

    def list_topics(self, **kwargs: Any) -> list[Any]:
        raise AzureError("unauthorized")

    def list_subscriptions(self, topic_name: str, **kwargs: Any) -> list[Any]:
        return [SimpleNamespace(name="s1")]

    def get_queue(self, name: str, **kwargs: Any) -> Any:
        raise ResourceNotFoundError(f"{name} missing")


class _RecordedMessage:
    def __init__(self, body: str, **kwargs: Any) -> None:
        self.body = body
        self.kwargs = kwargs


def _patch_client(monkeypatch: pytest.MonkeyPatch, client: _FakeClient) -> list[dict[str, Any]]:
    calls: list[dict[str, Any]] = []

    def _from_connection_string(connection_string: str, **kwargs: Any) -> _FakeClient:
        calls.append({"connection_string": connection_string, **kwargs})
        return client

    monkeypatch.setattr(
        "sbviewer.connections.ServiceBusClient",
        SimpleNamespace(from_connection_string=_from_connection_string),
    )
    return calls


def test_azure_backend_disables_retries(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _FakeClient()
    calls = _patch_client(monkeypatch, client)

    assert AzureServiceBusBackend().open_connection(CONNECTION_STRING) is client
    assert calls == [{"connection_string": CONNECTION_STRING, "retry_total": 0}]


def test_azure_backend_wraps_invalid_connection_string(monkeypatch: pytest.MonkeyPatch) -> None:
    def _raise(connection_string: str, **kwargs: Any) -> None:
        raise ValueError("Connection string is malformed")

    monkeypatch.setattr("sbviewer.connections.ServiceBusClient", SimpleNamespace(from_connection_string=_raise))

    with pytest.raises(InvalidConnectionString):
        AzureServiceBusBackend().open_connection("Endpoint=sb://x")


def test_azure_backend_peeks_through_queue_receiver() -> None:
    messages = [SimpleNamespace(message_id=str(i), body=b"x", content_type="text/plain") for i in range(3)]
    client = _FakeClient(_FakeReceiver(messages))
    backend = AzureServiceBusBackend()

    with backend.open_receiver(client, "q1") as receiver:
        peeked = receiver.peek(2, timeout=4.0)

    assert [m.message_id for m in peeked] == ["0", "1"]
    assert client.receiver.peek_calls == [(2, 4.0)]
    assert client.receiver.closed is True
    assert client.calls[0][0] == "queue_receiver"
    assert client.calls[0][1]["queue_name"] == "q1"


def test_azure_backend_uses_subscription_receiver_and_completes() -> None:
    message = SimpleNamespace(message_id="m", body=b"hello", content_type=None)
    client = _FakeClient(_FakeReceiver([message]))
    backend = AzureServiceBusBackend()

    with backend.open_receiver(client, "events", "audit") as receiver:
        received = receiver.receive_one(1.0)
        assert received is not None
        receiver.complete(received)

    assert client.calls[0] == (
        "subscription_receiver",
        {"topic_name": "events", "subscription_name": "audit", "receive_mode": client.calls[0][1]["receive_mode"]},
    )
    assert client.receiver.completed == [message]
    assert received.detail.body == "hello"


def test_azure_backend_complete_failure_is_acknowledgement_error() -> None:
    message = SimpleNamespace(message_id="m", body=b"hello", content_type=None)
    client = _FakeClient(_FakeReceiver([message], fail_complete=True))
    backend = AzureServiceBusBackend()

    with pytest.raises(AcknowledgementFailed) as excinfo:
        with backend.open_receiver(client, "q1") as receiver:
            received = receiver.receive_one(1.0)
            assert received is not None
            receiver.complete(received)

    assert isinstance(excinfo.value.cause, AzureError)


def test_azure_backend_sends_to_topic(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("sbviewer.connections.ServiceBusMessage", _RecordedMessage)
    client = _FakeClient()
    backend = AzureServiceBusBackend()
    message = OutgoingMessage(message_id="id-1", body="{}", content_type="application/json", application_properties={})

    with backend.open_sender(client, "events", topic=True) as sender:
        sender.send(message, timeout=2.0)

    assert client.calls == [("topic_sender", {"topic_name": "events"})]
    sent, timeout = client.sender.sent[0]
    assert timeout == 2.0
    assert sent.body == "{}"
    assert sent.kwargs == {"content_type": "application/json", "message_id": "id-1", "application_properties": None}
    assert client.sender.closed is True


def test_azure_backend_admin_calls_wrap_errors() -> None:
    admin = _FakeAdmin()
    backend = AzureServiceBusBackend()

    queues = backend.list_queues(admin, timeout=3.0)  # type: ignore[arg-type]

    assert queues == [QueueProperties(name="q1", max_delivery_count=3)]
    assert admin.timeouts == [3.0]
    with pytest.raises(BrokerError) as excinfo:
        backend.list_topics(admin)  # type: ignore[arg-type]
    assert "unauthorized" in str(excinfo.value)
    with pytest.raises(EntityNotFound):
        backend.get_entity_properties(admin, QueueEntity("ghost"))  # type: ignore[arg-type]
    assert [s.topic_name for s in backend.list_subscriptions(admin, "t")] == ["t"]  # type: ignore[arg-type]


def test_azure_backend_close_handle() -> None:
    client = _FakeClient()
    backend = AzureServiceBusBackend()

    backend.close_handle(None)
    backend.close_handle(client)

    assert client.closed is True
