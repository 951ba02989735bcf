"""Tests for entity descriptors and display helpers."""

from __future__ import annotations

from datetime import timedelta

from sbviewer.models import (
    ENTITY_KINDS,
    MessagePage,
    QueueEntity,
    QueueProperties,
    SubscriptionEntity,
    TopicEntity,
    TopicProperties,
    entity_kind,
    entity_label,
    properties_rows,
)


def test_entity_kind_is_exhaustive() -> None:
    entities = (QueueEntity("q"), TopicEntity("t"), SubscriptionEntity("s", "t"))

    assert tuple(entity_kind(entity) for entity in entities) == ENTITY_KINDS


def test_entity_labels() -> None:
    assert entity_label(QueueEntity("orders")) == "Queue: orders"
    assert entity_label(TopicEntity("events")) == "Topic: events"
    assert entity_label(SubscriptionEntity("audit", "events")) == "Subscription: events/audit"


def test_descriptors_compare_by_value() -> None:
    assert SubscriptionEntity("audit", "events") == SubscriptionEntity("audit", "events")
    assert SubscriptionEntity("audit", "events") != SubscriptionEntity("audit", "other")
    assert len({QueueEntity("a"), QueueEntity("a"), TopicEntity("a")}) == 2


def test_properties_rows_formats_values() -> None:
    rows = dict(
        properties_rows(
            QueueProperties(name="orders", lock_duration=timedelta(seconds=30), requires_session=True)
        )
    )

    assert rows["Name"] == "orders"
    assert rows["Lock duration"] == "0:00:30"
    assert rows["Requires session"] == "Yes"
    assert rows["Enable partitioning"] == "No"
    assert rows["Max delivery count"] == "—"


def test_properties_rows_keeps_field_order() -> None:
    labels = [label for label, _ in properties_rows(TopicProperties(name="events"))]

    assert labels[0] == "Name"
    assert labels[-1] == "Auto delete on idle"


def test_empty_page() -> None:
    page = MessagePage.empty()

    assert page.messages == ()
    assert page.has_more is False
