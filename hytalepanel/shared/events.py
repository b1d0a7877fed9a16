"""
Event emitter used by backend services to notify presentation layers
(HTTP polling endpoints, WebSocket relays, the CLI) without knowing about them.
"""

import logging
import threading
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

AUTH_REQUEST_EVENT = "auth_request"
INSTALL_COMPLETE_EVENT = "install_complete"

Listener = Callable[[Any], None]


class EventEmitter:
    """Named-event subscription list. Safe to use from worker threads."""

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}
        self._lock = threading.Lock()

    def on(self, event: str, listener: Listener) -> None:
        with self._lock:
            self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: Listener) -> None:
        with self._lock:
            listeners = self._listeners.get(event, [])
            if listener in listeners:
                listeners.remove(listener)

    def listener_count(self, event: str) -> int:
        with self._lock:
            return len(self._listeners.get(event, []))

    def emit(self, event: str, payload: Any = None) -> None:
        """
        Call every listener registered for event.

        A failing listener is logged and skipped; it never propagates into
        the emitting service.
        """
        with self._lock:
            listeners = list(self._listeners.get(event, []))

        for listener in listeners:
            try:
                listener(payload)
            except Exception as e:
                logger.error(f"Listener for '{event}' failed: {e}", exc_info=True)
