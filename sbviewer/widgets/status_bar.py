"""Status bar widget that mirrors session information."""

from __future__ import annotations

from typing import Callable

from textual.widgets import Static

from sbviewer.session import ConnectionSession, SessionState
from sbviewer.widgets.session_listener import loop_listener


class StatusBar(Static):
    """Compact status strip rendered above Textual's footer."""

    DEFAULT_CSS = """
    StatusBar {
        height: 1;
        padding: 0 1;
        background: $surface-darken-3;
        color: $text;
    }
    """

    def __init__(self, session: ConnectionSession) -> None:
        super().__init__("", id="status-bar")
        self._session = session
        self._unsubscribe: Callable[[], None] | None = None

    async def on_mount(self) -> None:
        self._unsubscribe = self._session.subscribe(loop_listener(self, self._handle_session_update))

    def on_unmount(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def _handle_session_update(self, state: SessionState) -> None:
        self.update(render_status(state))


def render_status(state: SessionState) -> str:
    """Single-line summary of a session snapshot."""

    if not state.connected:
        return f"Disconnected | Status: {state.status}"
    mode = "Administrative" if state.is_administrative else "Entity-scoped"
    if state.active_subscription_name:
        entity = f"{state.active_entity_name}/{state.active_subscription_name}"
    else:
        entity = state.active_entity_name or "—"
    updated = state.updated_at.astimezone().strftime("%H:%M:%S")
    parts = [
        f"Profile: {state.profile_name or '—'}",
        f"Host: {state.host}",
        f"Mode: {mode}",
        f"Entity: {entity}",
        f"Entities: {len(state.available_entities)}",
        f"Status: {state.status}",
        f"Updated: {updated}",
    ]
    return " | ".join(parts)


__all__ = ["StatusBar", "render_status"]
