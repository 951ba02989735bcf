"""Command palette providers for core app features."""

from __future__ import annotations

from textual.command import DiscoveryHit, Hit, Hits, Provider
from textual.types import IgnoreReturnCallbackType

from .models import EntityDescriptor, TopicEntity, entity_label
from .session import ConnectionSession


class ProfileConnectProvider(Provider):
    """Expose connection profiles to the command palette."""

    async def search(self, query: str) -> Hits:
        matcher = self.matcher(query)
        for name in self._profile_names():
            match = matcher.match(name)
            if match > 0:
                yield Hit(
                    score=match,
                    match_display=f"Connect to profile: {matcher.highlight(name)}",
                    command=self._build_callback(name),
                    help="Disconnect and connect with this profile.",
                )

    async def discover(self) -> Hits:
        for name in self._profile_names():
            yield DiscoveryHit(
                display=f"Connect to profile: {name}",
                command=self._build_callback(name),
                help="Disconnect and connect with this profile.",
            )

    def _profile_names(self) -> tuple[str, ...]:
        names = getattr(self.app, "profile_names", None)
        if names is None:
            return ()
        return tuple(names)

    def _build_callback(self, name: str) -> IgnoreReturnCallbackType:
        async def _run() -> None:
            connector = getattr(self.app, "connect_profile", None)
            if connector is None:
                return
            await connector(name)

        return _run


class EntitySelectProvider(Provider):
    """Expose queues and subscriptions of the connected namespace."""

    async def search(self, query: str) -> Hits:
        session = self._session
        if session is None:
            return
        matcher = self.matcher(query)
        for entity in self._selectable(session):
            label = entity_label(entity)
            match = matcher.match(label)
            if match > 0:
                yield Hit(
                    score=match,
                    match_display=f"Open {matcher.highlight(label)}",
                    command=self._build_callback(entity),
                    help="Make this the active entity.",
                )

    async def discover(self) -> Hits:
        session = self._session
        if session is None:
            return
        for entity in self._selectable(session):
            yield DiscoveryHit(
                display=f"Open {entity_label(entity)}",
                command=self._build_callback(entity),
                help="Make this the active entity.",
            )

    @property
    def _session(self) -> ConnectionSession | None:
        session = getattr(self.app, "session", None)
        if isinstance(session, ConnectionSession) and session.connected:
            return session
        return None

    @staticmethod
    def _selectable(session: ConnectionSession) -> tuple[EntityDescriptor, ...]:
        return tuple(entity for entity in session.available_entities if not isinstance(entity, TopicEntity))

    def _build_callback(self, entity: EntityDescriptor) -> IgnoreReturnCallbackType:
        async def _run() -> None:
            selector = getattr(self.app, "select_entity", None)
            if selector is None:
                return
            selector(entity)

        return _run


class SessionActionsProvider(Provider):
    """Expose refresh and disconnect actions for the active session."""

    _ACTIONS = (
        ("Refresh entities and messages", "refresh_session", "Trigger Ctrl+R equivalent refresh."),
        ("Disconnect", "disconnect", "Close the current connection."),
    )

    async def search(self, query: str) -> Hits:
        if not self._connected:
            return
        matcher = self.matcher(query)
        for label, action, help_text in self._ACTIONS:
            score = matcher.match(label)
            if score > 0:
                yield Hit(
                    score=score,
                    match_display=matcher.highlight(label),
                    command=self._build_callback(action),
                    help=help_text,
                )

    async def discover(self) -> Hits:
        if not self._connected:
            return
        for label, action, help_text in self._ACTIONS:
            yield DiscoveryHit(
                display=label,
                command=self._build_callback(action),
                help=help_text,
            )

    @property
    def _connected(self) -> bool:
        session = getattr(self.app, "session", None)
        return isinstance(session, ConnectionSession) and session.connected

    def _build_callback(self, action: str) -> IgnoreReturnCallbackType:
        async def _run() -> None:
            handler = getattr(self.app, action, None)
            if handler is None:
                return
            await handler()

        return _run


__all__ = ["EntitySelectProvider", "ProfileConnectProvider", "SessionActionsProvider"]
