"""Error taxonomy shared by the session and the broker backends."""

from __future__ import annotations


class SessionError(RuntimeError):
    """Base error; ``kind`` names the failure for the UI."""

    kind = "SessionError"

    def describe(self) -> str:
        """Human-readable message bundled with the error kind."""

        message = str(self) or self.kind
        return f"{self.kind}: {message}"


class AlreadyConnected(SessionError):
    kind = "AlreadyConnected"


class NotConnected(SessionError):
    kind = "NotConnected"


class InvalidConnectionString(SessionError):
    kind = "InvalidConnectionString"


class MissingEntityName(SessionError):
    kind = "MissingEntityName"


class TopicNotSelectable(SessionError):
    kind = "TopicNotSelectable"


class UnknownEntityKind(SessionError):
    kind = "UnknownEntityKind"


class EntityNotFound(SessionError):
    kind = "EntityNotFound"


class AdministrationUnavailable(SessionError):
    """Raised for management-plane calls on a session without admin credentials."""

    kind = "AdministrationUnavailable"


class BrokerError(SessionError):
    """Opaque pass-through failure from the broker (network, auth, timeout)."""

    kind = "BrokerError"

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class AcknowledgementFailed(BrokerError):
    """A received message could not be completed; its state on the broker is unknown."""

    kind = "AcknowledgementFailed"


__all__ = [
    "AcknowledgementFailed",
    "AdministrationUnavailable",
    "AlreadyConnected",
    "BrokerError",
    "EntityNotFound",
    "InvalidConnectionString",
    "MissingEntityName",
    "NotConnected",
    "SessionError",
    "TopicNotSelectable",
    "UnknownEntityKind",
]
