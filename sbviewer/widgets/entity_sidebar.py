"""Sidebar widget listing connection profiles and the entity inventory."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Callable, Sequence

from textual import events, on
from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Container
from textual.message import Message
from textual.widget import Widget
from textual.widgets import Button, Label, ListItem, ListView, Static

from sbviewer.errors import SessionError
from sbviewer.models import (
    EntityDescriptor,
    QueueEntity,
    SubscriptionEntity,
    TopicEntity,
    entity_label,
    properties_rows,
)
from sbviewer.session import ConnectionSession, SessionState
from sbviewer.widgets.session_listener import loop_listener

LOG = logging.getLogger(__name__)


class EntitySidebar(Container):
    """Displays profiles, the entity inventory and the highlighted entity's properties."""

    DEFAULT_CSS = """
    EntitySidebar {
        width: 34;
        min-width: 26;
        border-right: solid $surface-darken-1;
        padding: 1;
        height: 1fr;
        background: $surface-darken-2;
    }

    EntitySidebar .sidebar-heading {
        text-style: bold;
        margin-bottom: 1;
    }

    EntitySidebar .sidebar-section {
        margin-bottom: 1;
    }

    #profile-list {
        height: 5;
        border: round $primary 30%;
        margin-bottom: 1;
    }

    #entity-list {
        height: 1fr;
        min-height: 6;
        border: round $primary 30%;
        margin-bottom: 1;
    }

    #profile-list .active, #entity-list .active {
        text-style: bold;
    }

    #entity-list .topic {
        color: $text-muted;
    }

    #entity-properties {
        padding-top: 1;
        border-top: solid $surface-darken-1;
        color: $text-muted;
        min-height: 4;
    }
    """

    def __init__(self, session: ConnectionSession, profile_names: Sequence[str]) -> None:
        super().__init__(id="entity-sidebar")
        self._session = session
        self._profile_names = tuple(profile_names)
        self._profile_list: ListView | None = None
        self._profile_items: dict[str, _ProfileListItem] = {}
        self._entity_list: ListView | None = None
        self._entities: tuple[EntityDescriptor, ...] = ()
        self._properties: Static | None = None
        self._context_menu: _EntityContextMenu | None = None
        self._unsubscribe: Callable[[], None] | None = None

    def compose(self) -> ComposeResult:
        yield Static("Connections", classes="sidebar-heading")
        items = [_ProfileListItem(name) for name in self._profile_names]
        self._profile_items = {item.profile_name: item for item in items}
        self._profile_list = ListView(*items, id="profile-list")
        yield self._profile_list
        yield Static("Entities", classes="sidebar-heading")
        self._entity_list = _EntityListView(id="entity-list")
        yield self._entity_list
        self._context_menu = _EntityContextMenu(self._handle_entity_action)
        yield self._context_menu
        self._properties = Static("Not connected.", id="entity-properties", classes="sidebar-section")
        yield self._properties

    async def on_mount(self) -> None:
        self._unsubscribe = self._session.subscribe(loop_listener(self, self._handle_session_update))

    def on_unmount(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def _handle_session_update(self, state: SessionState) -> None:
        self._render_profiles(state)
        self._render_entities(state)
        if not state.connected and self._properties:
            self._properties.update("Not connected.")

    def _render_profiles(self, state: SessionState) -> None:
        for name, item in self._profile_items.items():
            item.set_class(state.connected and name == state.profile_name, "active")

    def _render_entities(self, state: SessionState) -> None:
        if not self._entity_list:
            return
        if state.available_entities != self._entities:
            self._entities = state.available_entities
            self._entity_list.clear()
            self._entity_list.extend(_EntityListItem(entity) for entity in self._entities)
        for item in self._entity_list.query(_EntityListItem):
            item.set_class(_is_active(item.entity, state), "active")

    @on(ListView.Selected)
    async def _handle_selected(self, event: ListView.Selected) -> None:
        item = event.item
        if isinstance(item, _ProfileListItem):
            event.stop()
            self._dismiss_context_menu()
            await self._request("connect_profile", item.profile_name)
        elif isinstance(item, _EntityListItem):
            event.stop()
            self._dismiss_context_menu()
            await self._request("select_entity", item.entity)

    @on(ListView.Highlighted)
    async def _handle_highlighted(self, event: ListView.Highlighted) -> None:
        item = event.item
        if isinstance(item, _EntityListItem) and self._session.is_administrative:
            await self.show_properties(item.entity)

    async def show_properties(self, entity: EntityDescriptor) -> None:
        """Fetch and render the broker properties of ``entity``."""

        if not self._properties:
            return
        self._properties.update(f"Loading {entity_label(entity)}…")
        try:
            properties = await asyncio.to_thread(self._session.get_entity_properties, entity)
        except SessionError as exc:
            self._properties.update(exc.describe())
            return
        except Exception:
            LOG.exception("Failed to load entity properties", extra={"entity": entity.name})
            self._properties.update("Failed to load properties.")
            return
        lines = [entity_label(entity)]
        lines.extend(f"{label}: {value}" for label, value in properties_rows(properties)[1:])
        self._properties.update("\n".join(lines))

    async def _request(self, action: str, argument: object) -> None:
        handler = getattr(self.app, action, None)
        if handler is None:
            return
        result = handler(argument)
        if inspect.isawaitable(result):
            await result

    async def _handle_entity_action(self, action: str, entity: EntityDescriptor) -> None:
        if action == "select":
            await self._request("select_entity", entity)
        elif action == "properties":
            await self.show_properties(entity)

    def on_mouse_down(self, event: events.MouseDown) -> None:
        if event.button == 1 and self._context_menu and self._context_menu.is_visible:
            if not self._context_menu.owns(event.control):
                self._context_menu.hide()

    def on_entity_context_requested(self, event: "EntityContextRequested") -> None:
        if not self._context_menu:
            return
        self._context_menu.show(event.entity)
        event.stop()

    def _dismiss_context_menu(self) -> None:
        if self._context_menu and self._context_menu.is_visible:
            self._context_menu.hide()


def _is_active(entity: EntityDescriptor, state: SessionState) -> bool:
    match entity:
        case QueueEntity(name=name):
            return state.active_subscription_name is None and name == state.active_entity_name
        case SubscriptionEntity(name=name, topic_name=topic_name):
            return name == state.active_subscription_name and topic_name == state.active_entity_name
        case TopicEntity():
            return False
    return False


class _ProfileListItem(ListItem):
    """List item storing a profile name for selection callbacks."""

    def __init__(self, name: str) -> None:
        super().__init__(Label(name))
        self.profile_name = name


class _EntityListView(ListView):
    """ListView with a binding to surface the entity menu via keyboard."""

    BINDINGS = ListView.BINDINGS + [
        Binding("m", "entity_menu", "Entity menu", show=False),
        Binding("shift+f10", "entity_menu", "Entity menu", show=False),
    ]

    def action_entity_menu(self) -> None:
        item = self.highlighted_child
        if isinstance(item, _EntityListItem):
            self.post_message(EntityContextRequested(item.entity))


class _EntityListItem(ListItem):
    """List item holding an entity descriptor; topics are indented headers."""

    def __init__(self, entity: EntityDescriptor) -> None:
        match entity:
            case QueueEntity(name=name):
                text = f"▪ {name}"
            case TopicEntity(name=name):
                text = f"▸ {name}"
            case SubscriptionEntity(name=name):
                text = f"    ◦ {name}"
            case _:
                text = entity_label(entity)
        super().__init__(Label(text), classes="topic" if isinstance(entity, TopicEntity) else "")
        self.entity = entity

    def on_mouse_down(self, event: events.MouseDown) -> None:
        if event.button == 3:
            event.stop()
            self.post_message(EntityContextRequested(self.entity))


class _EntityContextMenu(Container):
    """Inline menu offering actions for the highlighted entity."""

    DEFAULT_CSS = """
    #entity-context-menu {
        border: round $surface-darken-1;
        padding: 1;
        margin-bottom: 1;
        background: $surface-darken-2;
        height: auto;
    }

    #entity-context-menu .context-title {
        text-style: bold;
    }

    #entity-context-menu Button {
        width: 1fr;
        margin-top: 1;
    }
    """

    def __init__(self, action_handler: Callable[[str, EntityDescriptor], object]) -> None:
        super().__init__(id="entity-context-menu", classes="sidebar-section")
        self._on_action = action_handler
        self._entity: EntityDescriptor | None = None
        self._title = Label("", classes="context-title")
        self._select_button = Button("Open messages", id="context-select", flat=True, compact=True)
        self._properties_button = Button("Show properties", id="context-properties", flat=True, compact=True)
        self.display = False

    @property
    def is_visible(self) -> bool:
        return bool(self.display)

    def compose(self) -> ComposeResult:
        yield self._title
        yield self._select_button
        yield self._properties_button

    def show(self, entity: EntityDescriptor) -> None:
        self._entity = entity
        self._title.update(entity_label(entity))
        self._select_button.disabled = isinstance(entity, TopicEntity)
        self.display = True
        self.call_later(self._properties_button.focus)

    def hide(self) -> None:
        self.display = False
        self._entity = None

    def owns(self, widget: Widget | None) -> bool:
        node = widget
        while node is not None:
            if node is self:
                return True
            node = getattr(node, "parent", None)
        return False

    @on(Button.Pressed)
    async def _handle_button_pressed(self, event: Button.Pressed) -> None:
        entity = self._entity
        if entity is None:
            return
        action = {"context-select": "select", "context-properties": "properties"}.get(event.button.id or "")
        if action:
            event.stop()
            self.hide()
            result = self._on_action(action, entity)
            if asyncio.iscoroutine(result):
                await result

    def on_key(self, event: events.Key) -> None:
        if event.key == "escape":
            self.hide()
            event.stop()


class EntityContextRequested(Message):
    """Message emitted when an entity is right-clicked or the menu key is pressed."""

    def __init__(self, entity: EntityDescriptor) -> None:
        super().__init__()
        self.entity = entity


__all__ = ["EntitySidebar"]
