"""Widget library for the Textual UI."""

from __future__ import annotations

from .entity_sidebar import EntitySidebar
from .message_pad import MessagePad
from .status_bar import StatusBar

__all__ = ["EntitySidebar", "MessagePad", "StatusBar"]
