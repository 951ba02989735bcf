"""Bridge session notifications onto the Textual event loop."""

from __future__ import annotations

import asyncio
from typing import Callable

from textual.widget import Widget

from sbviewer.session import SessionListener, SessionState


def loop_listener(widget: Widget, handler: Callable[[SessionState], None]) -> SessionListener:
    """Wrap ``handler`` so updates published from worker threads run on the app loop."""

    def _listener(state: SessionState) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No loop in this thread: the session call ran via asyncio.to_thread.
            widget.app.call_from_thread(handler, state)
        else:
            handler(state)

    return _listener


__all__ = ["loop_listener"]
