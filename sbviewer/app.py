"""Textual application entry point for sbviewer."""

from __future__ import annotations

import asyncio
import logging
from typing import Mapping

from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal
from textual.widgets import Footer, Header

from .config import AppConfig, ConnectionProfileConfig, load_config, save_config
from .connections import AzureServiceBusBackend, BrokerBackend, DemoBrokerBackend
from .errors import NotConnected, SessionError
from .models import EntityDescriptor, entity_label
from .providers import EntitySelectProvider, ProfileConnectProvider, SessionActionsProvider
from .session import ConnectionSession, SessionState
from .widgets import EntitySidebar, MessagePad, StatusBar

LOG = logging.getLogger(__name__)


def _load_app_config() -> AppConfig:
    """Load configuration with a small wrapper for future overrides."""

    return load_config()


def _default_backends() -> dict[str, BrokerBackend]:
    return {"azure": AzureServiceBusBackend(), "demo": DemoBrokerBackend()}


class ServiceBusViewerApp(App[None]):
    """Console for peeking, receiving and sending Service Bus messages."""

    TITLE = "Service Bus Viewer"
    COMMANDS = App.COMMANDS | {ProfileConnectProvider, EntitySelectProvider, SessionActionsProvider}
    CSS = """
    Screen {
        layout: vertical;
    }
    #content {
        layout: horizontal;
        height: 1fr;
    }
    #main-column {
        layout: vertical;
        padding: 1 2;
        height: 1fr;
        border-left: solid $surface-darken-1;
    }
    """

    BINDINGS = [
        ("ctrl+c", "quit", "Quit"),
        ("ctrl+r", "refresh", "Refresh"),
        ("ctrl+d", "disconnect", "Disconnect"),
        ("ctrl+p", "command_palette", "Command Palette"),
    ]

    def __init__(
        self,
        *,
        backends: Mapping[str, BrokerBackend] | None = None,
        session: ConnectionSession | None = None,
    ) -> None:
        super().__init__()
        self._config = _load_app_config()
        self._backends = dict(backends) if backends is not None else _default_backends()
        self._session = session or ConnectionSession(
            self._backends.get("azure"),
            operation_timeout=self._config.operation_timeout,
        )
        self._pending_notifications: list[tuple[str, str]] = []
        self._message_pad: MessagePad | None = None
        initial = self._config.active_profile or (self._config.profiles[0].name if self._config.profiles else None)
        if initial:
            self._open_profile(initial)

    def compose(self) -> ComposeResult:
        """Compose the root layout."""

        yield Header(show_clock=True)
        sidebar = EntitySidebar(self._session, self.profile_names)
        self._message_pad = MessagePad(
            self._session,
            page_size=self._config.peek_page_size,
            receive_wait=self._config.receive_wait_seconds,
        )
        main_column = Container(self._message_pad, id="main-column")
        yield Horizontal(sidebar, main_column, id="content")
        yield StatusBar(self._session)
        yield Footer()

    async def on_mount(self) -> None:
        self._flush_pending_notifications()

    async def action_refresh(self) -> None:
        await self.refresh_session()

    async def action_disconnect(self) -> None:
        await self.disconnect()

    @property
    def session(self) -> ConnectionSession:
        """Expose the connection session for providers and tests."""

        return self._session

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def profile_names(self) -> tuple[str, ...]:
        return tuple(profile.name for profile in self._config.profiles)

    async def connect_profile(self, name: str) -> bool:
        """Connect with the named profile, replacing any current connection.

        Broker calls run on a worker thread so listings do not stall the UI.
        """

        resolved = self._resolve_profile(name)
        if resolved is None:
            return False
        if self._session.connected:
            try:
                await asyncio.to_thread(self._session.disconnect)
            except SessionError as exc:
                self._safe_notify(exc.describe(), severity="warning")
        try:
            await asyncio.to_thread(self._connect, *resolved)
        except Exception as exc:
            self._report_connect_failure(name, exc)
            return False
        self._config = self._config.with_active_profile(name)
        save_config(self._config)
        self._safe_notify(f"Connected with profile: {name}", severity="information")
        return True

    def select_entity(self, entity: EntityDescriptor) -> bool:
        """Make ``entity`` the active queue or subscription."""

        try:
            self._session.select_entity(entity)
        except SessionError as exc:
            self._safe_notify(exc.describe(), severity="warning")
            return False
        self._safe_notify(f"Opened {entity_label(entity)}", severity="information")
        return True

    async def refresh_session(self) -> None:
        """Refresh the entity inventory and re-peek the active entity."""

        try:
            await asyncio.to_thread(self._session.refresh_entities)
        except SessionError as exc:
            self._safe_notify(f"Refresh failed: {exc.describe()}", severity="error")
            return
        if self._message_pad is not None:
            self._message_pad.request_reload()

    async def disconnect(self) -> None:
        try:
            await asyncio.to_thread(self._session.disconnect)
        except NotConnected:
            self._safe_notify("Not connected.", severity="warning")
            return
        except SessionError as exc:
            self._safe_notify(f"Disconnect failed: {exc.describe()}", severity="error")
            return
        self._safe_notify("Disconnected.", severity="information")

    def _open_profile(self, name: str) -> bool:
        resolved = self._resolve_profile(name)
        if resolved is None:
            return False
        try:
            self._connect(*resolved)
        except Exception as exc:
            self._report_connect_failure(name, exc)
            return False
        return True

    def _resolve_profile(self, name: str) -> tuple[ConnectionProfileConfig, BrokerBackend] | None:
        try:
            profile = self._config.profile(name)
        except ValueError as exc:
            self._safe_notify(str(exc), severity="error")
            return None
        backend = self._backends.get(profile.backend)
        if backend is None:
            self._safe_notify(f"{name}: backend '{profile.backend}' is not available.", severity="error")
            return None
        return profile, backend

    def _report_connect_failure(self, name: str, exc: Exception) -> None:
        if isinstance(exc, SessionError):
            self._safe_notify(f"{name}: connection failed. {exc.describe()}", severity="error")
            return
        LOG.error("Unexpected connection failure", exc_info=exc, extra={"profile": name})
        self._safe_notify(f"{name}: connection failed unexpectedly.", severity="error")

    def _connect(self, profile: ConnectionProfileConfig, backend: BrokerBackend) -> SessionState:
        return self._session.connect(
            profile.connection_string,
            profile.admin_connection_string,
            profile.entity_name,
            profile.subscription_name,
            backend=backend,
            profile_name=profile.name,
        )

    def _safe_notify(self, message: str, *, severity: str = "information") -> None:
        if self.is_running:
            try:
                self.notify(message, severity=severity)  # type: ignore[arg-type]
            except Exception:
                LOG.exception("Failed to display notification", extra={"notification": message})
        else:
            self._pending_notifications.append((message, severity))

    def _flush_pending_notifications(self) -> None:
        if not self._pending_notifications:
            return
        pending = list(self._pending_notifications)
        self._pending_notifications.clear()
        for message, severity in pending:
            try:
                self.notify(message, severity=severity)  # type: ignore[arg-type]
            except Exception:
                LOG.exception("Failed to display queued notification", extra={"notification": message})

    @property
    def pending_notifications(self) -> tuple[tuple[str, str], ...]:
        """Notifications queued before the app started (testing helper)."""

        return tuple(self._pending_notifications)


def main() -> None:
    """Invoke the Textual application."""

    ServiceBusViewerApp().run()


if __name__ == "__main__":
    main()
