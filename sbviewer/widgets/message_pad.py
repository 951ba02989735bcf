"""Message pad: peek table, message detail, receive and send controls."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Callable, Mapping

from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Container, Horizontal
from textual.widgets import Button, DataTable, Input, Static

from sbviewer.errors import SessionError
from sbviewer.models import MessageDetail, MessagePage
from sbviewer.session import DEFAULT_PAGE_SIZE, ConnectionSession, SessionState
from sbviewer.widgets.session_listener import loop_listener

LOG = logging.getLogger(__name__)

BODY_PREVIEW = 60


def parse_properties(text: str) -> dict[str, str]:
    """Parse ``key=value; key=value`` text into application properties."""

    properties: dict[str, str] = {}
    for chunk in text.split(";"):
        if "=" not in chunk:
            continue
        key, value = chunk.split("=", 1)
        key = key.strip()
        if key:
            properties[key] = value.strip()
    return properties


def format_detail(message: MessageDetail) -> str:
    """Multi-line rendering of one message for the detail panel."""

    enqueued = message.enqueued_time_utc.isoformat() if message.enqueued_time_utc else "—"
    lines = [
        f"Message ID: {message.message_id or '—'}",
        f"Content type: {message.content_type}",
        f"Enqueued (UTC): {enqueued}",
    ]
    if message.application_properties:
        lines.append("Properties:")
        lines.extend(f"  {key} = {value}" for key, value in message.application_properties.items())
    lines.append("")
    lines.append(_pretty_body(message))
    return "\n".join(lines)


def _pretty_body(message: MessageDetail) -> str:
    if "json" not in message.content_type.lower() and not message.body.lstrip().startswith(("{", "[")):
        return message.body
    try:
        return json.dumps(json.loads(message.body), indent=2, ensure_ascii=False)
    except ValueError:
        return message.body


class MessagePad(Container):
    """Peek, receive and send against the session's active entity."""

    DEFAULT_CSS = """
    MessagePad {
        layout: vertical;
        border: round $primary 40%;
        padding: 1 2;
        height: 1fr;
        background: $surface;
    }

    MessagePad .panel-title {
        text-style: bold;
    }

    MessagePad .pad-actions {
        height: auto;
        margin-top: 1;
        align-horizontal: left;
    }

    MessagePad .pad-actions > * {
        margin-right: 1;
    }

    MessagePad #message-table {
        height: 1fr;
        min-height: 6;
        margin-top: 1;
        border-top: solid $surface-darken-2;
    }

    #page-info, #pad-status {
        color: $text-muted;
    }

    #message-detail {
        height: auto;
        max-height: 12;
        border-top: solid $surface-darken-2;
        padding-top: 1;
        overflow-y: auto;
    }

    MessagePad Input {
        border: heavy $primary;
    }
    """

    BINDINGS = Container.BINDINGS + [
        Binding("f5", "peek", "Peek messages", show=False),
    ]

    def __init__(
        self,
        session: ConnectionSession,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        receive_wait: float = 5.0,
    ) -> None:
        super().__init__(id="message-pad")
        self._session = session
        self._page_size = page_size
        self._receive_wait = receive_wait
        self._page: MessagePage = MessagePage.empty()
        self._table: DataTable | None = None
        self._title: Static | None = None
        self._page_info: Static | None = None
        self._detail: Static | None = None
        self._status: Static | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._last_target: tuple[bool, str, str | None] | None = None

    @property
    def page(self) -> MessagePage:
        """Most recently peeked page (testing helper)."""

        return self._page

    def compose(self) -> ComposeResult:
        yield Static("Messages", id="pad-title", classes="panel-title")
        yield Horizontal(
            Button("Peek", id="peek-messages", variant="primary"),
            Button("Receive one", id="receive-message", variant="warning"),
            Input(placeholder="Find by message id", id="find-id"),
            Button("Find", id="find-message"),
            classes="pad-actions",
        )
        yield Static("", id="page-info")
        yield DataTable(id="message-table", zebra_stripes=True, cursor_type="row")
        yield Static("Select a message to see its details.", id="message-detail")
        yield Input(placeholder='Message body, e.g. {"hello": "world"}', id="send-body")
        yield Horizontal(
            Input(placeholder="Properties: key=value; key=value", id="send-properties"),
            Input(value="application/json", placeholder="Content type", id="send-content-type"),
            Button("Send", id="send-message", variant="success"),
            classes="pad-actions",
        )
        yield Static("", id="pad-status")

    async def on_mount(self) -> None:
        self._title = self.query_one("#pad-title", Static)
        self._page_info = self.query_one("#page-info", Static)
        self._table = self.query_one("#message-table", DataTable)
        self._detail = self.query_one("#message-detail", Static)
        self._status = self.query_one("#pad-status", Static)
        self._table.add_columns("Message ID", "Enqueued (UTC)", "Content type", "Body")
        self._unsubscribe = self._session.subscribe(loop_listener(self, self._handle_session_update))

    def on_unmount(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def request_reload(self) -> None:
        """Schedule a peek of the active entity."""

        if not self.is_mounted:
            return
        self.run_worker(self.reload(), exclusive=True, group="peek")

    async def action_peek(self) -> None:
        await self.reload()

    async def reload(self) -> None:
        """Peek the first page of the active entity."""

        if not self._session.connected:
            self._render_page(MessagePage.empty())
            return
        self._set_status("Peeking…", severity="information")
        try:
            page = await asyncio.to_thread(self._session.peek, self._page_size)
        except SessionError as exc:
            self._set_status(exc.describe(), severity="error")
            return
        except Exception:
            LOG.exception("Peek failed", extra={"entity": self._session.active_entity_name})
            self._set_status("Peek failed unexpectedly.", severity="error")
            return
        self._render_page(page)
        self._set_status(f"Peeked {len(page.messages)} message(s).", severity="success")

    async def receive(self) -> MessageDetail | None:
        """Receive and complete one message, then refresh the page."""

        self._set_status("Receiving…", severity="information")
        try:
            message = await asyncio.to_thread(self._session.receive_one, max_wait=self._receive_wait)
        except SessionError as exc:
            self._set_status(exc.describe(), severity="error")
            return None
        if message is None:
            self._set_status("No message available.", severity="warning")
            return None
        self._show_detail(message)
        await self.reload()
        self._set_status(f"Received and completed {message.message_id}.", severity="success")
        return message

    async def send(self, body: str, properties: Mapping[str, str], content_type: str) -> str | None:
        """Send one message and refresh the page."""

        if not body.strip():
            self._set_status("Message body cannot be empty.", severity="warning")
            return None
        try:
            message_id = await asyncio.to_thread(
                self._session.send,
                body,
                content_type or "application/json",
                dict(properties),
            )
        except SessionError as exc:
            self._set_status(exc.describe(), severity="error")
            return None
        await self.reload()
        self._set_status(f"Message {message_id} sent successfully.", severity="success")
        return message_id

    async def find(self, message_id: str) -> MessageDetail | None:
        """Look a message up by id within the bounded peek window."""

        message_id = message_id.strip()
        if not message_id:
            self._set_status("Enter a message id to find.", severity="warning")
            return None
        try:
            message = await asyncio.to_thread(self._session.peek_by_message_id, message_id)
        except SessionError as exc:
            self._set_status(exc.describe(), severity="error")
            return None
        if message is None:
            self._set_status(f"Message {message_id} not found in the peek window.", severity="warning")
            return None
        self._show_detail(message)
        self._set_status(f"Found {message_id}.", severity="success")
        return message

    async def on_button_pressed(self, event: Button.Pressed) -> None:
        button_id = event.button.id
        if button_id == "peek-messages":
            await self.reload()
        elif button_id == "receive-message":
            await self.receive()
        elif button_id == "find-message":
            await self.find(self.query_one("#find-id", Input).value)
        elif button_id == "send-message":
            body_input = self.query_one("#send-body", Input)
            properties_input = self.query_one("#send-properties", Input)
            content_type = self.query_one("#send-content-type", Input).value.strip()
            if await self.send(body_input.value, parse_properties(properties_input.value), content_type):
                body_input.value = ""
                properties_input.value = ""
        else:
            return
        event.stop()

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        index = event.cursor_row
        if 0 <= index < len(self._page.messages):
            self._show_detail(self._page.messages[index])

    def _handle_session_update(self, state: SessionState) -> None:
        target = (state.connected, state.active_entity_name, state.active_subscription_name)
        if self._title:
            if not state.connected:
                self._title.update("Messages")
            elif state.active_subscription_name:
                self._title.update(f"Messages · {state.active_entity_name}/{state.active_subscription_name}")
            else:
                self._title.update(f"Messages · {state.active_entity_name or 'no entity selected'}")
        if target != self._last_target:
            self._last_target = target
            if state.connected:
                self.request_reload()
            else:
                self._render_page(MessagePage.empty())

    def _render_page(self, page: MessagePage) -> None:
        self._page = page
        if self._table:
            self._table.clear()
            for message in page.messages:
                enqueued = message.enqueued_time_utc.strftime("%Y-%m-%d %H:%M:%S") if message.enqueued_time_utc else "—"
                preview = " ".join(message.body.split())[:BODY_PREVIEW]
                self._table.add_row(message.message_id or "—", enqueued, message.content_type, preview)
        if self._page_info:
            suffix = " · more messages available" if page.has_more else ""
            self._page_info.update(f"{len(page.messages)} message(s){suffix}")
        if self._detail and not page.messages:
            self._detail.update("Select a message to see its details.")

    def _show_detail(self, message: MessageDetail) -> None:
        if self._detail:
            self._detail.update(format_detail(message))

    def _set_status(self, message: str, *, severity: str) -> None:
        if not self._status:
            return
        prefix = {
            "information": "ℹ",
            "warning": "⚠",
            "error": "✖",
            "success": "✔",
        }.get(severity, "•")
        self._status.update(f"{prefix} {message}")


__all__ = ["MessagePad", "format_detail", "parse_properties"]
