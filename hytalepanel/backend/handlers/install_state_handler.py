"""
Install State Handler

Owns the installer status record. Every read and write goes through the
tracker's lock because HTTP handlers poll the record while process-output
threads mutate it.
"""

import logging
import threading
from collections import deque
from datetime import datetime
from typing import Any, Dict, Optional

from hytalepanel.backend.handlers.output_parser import apply_progress_ratchet
from hytalepanel.shared.install_models import (
    ACTIVE_STATES,
    DEFAULT_MAX_DEBUG_LOG_ENTRIES,
    DEFAULT_MAX_LOG_ENTRIES,
    PROGRESS_RESET_STATES,
    IllegalTransitionError,
    InstallState,
    InstallStatus,
    is_transition_allowed,
)

logger = logging.getLogger(__name__)


class InstallStatusTracker:
    """
    Thread-safe owner of a single InstallStatus.

    Created once per panel process and handed to every service that reports
    installer progress.
    """

    def __init__(self, max_log_entries: int = DEFAULT_MAX_LOG_ENTRIES,
                 max_debug_log_entries: int = DEFAULT_MAX_DEBUG_LOG_ENTRIES):
        self._lock = threading.RLock()
        self._status = InstallStatus(
            logs=deque(maxlen=max_log_entries),
            debug_logs=deque(maxlen=max_debug_log_entries),
        )

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @property
    def state(self) -> InstallState:
        with self._lock:
            return self._status.state

    @property
    def progress(self) -> int:
        with self._lock:
            return self._status.progress

    @property
    def detected_archive_name(self) -> Optional[str]:
        with self._lock:
            return self._status.detected_archive_name

    def snapshot(self) -> Dict[str, Any]:
        """Copy of the status in its presentation shape."""
        with self._lock:
            return self._status.to_dict()

    def can_transition(self, target: InstallState) -> bool:
        with self._lock:
            return is_transition_allowed(self._status.state, target)

    def transition(self, target: InstallState, error: Optional[str] = None) -> None:
        """
        Move to target, applying the per-state side effects.

        Raises:
            IllegalTransitionError: target is not reachable from the current state
        """
        with self._lock:
            current = self._status.state
            if not is_transition_allowed(current, target):
                raise IllegalTransitionError(current, target)

            self._status.state = target
            if target in ACTIVE_STATES:
                self._status.error = None
            if target != InstallState.AUTHENTICATING:
                self._status.device_code = None
                self._status.verification_url = None
            if target in PROGRESS_RESET_STATES and target != current:
                self._status.progress = 0
            if target == InstallState.ERROR:
                self._status.error = error

        if current != target:
            self.add_debug_log(f"State {current.value} -> {target.value}")

    def fail(self, message: str) -> None:
        """Enter the error state with message and record it in the operator log."""
        with self._lock:
            self.transition(InstallState.ERROR, error=message)
            self._status.logs.append(f"Error: {message}")

    def reset_run(self) -> None:
        """Clear per-run fields ahead of a fresh install run."""
        with self._lock:
            self._status.progress = 0
            self._status.device_code = None
            self._status.verification_url = None
            self._status.detected_archive_name = None
            self._status.error = None
            self._status.logs.clear()

    def clear_logs(self) -> None:
        with self._lock:
            self._status.logs.clear()

    def ratchet_progress(self, candidate: Optional[int]) -> bool:
        """Raise progress to candidate if it moves forward. Returns True when it changed."""
        with self._lock:
            updated = apply_progress_ratchet(self._status.progress, candidate)
            changed = updated != self._status.progress
            self._status.progress = updated
            return changed

    def set_progress(self, value: int) -> None:
        """Set progress outright, clamped to 0-100. Only for phase boundaries."""
        with self._lock:
            self._status.progress = max(0, min(100, int(value)))

    def set_device_auth(self, url: Optional[str], code: Optional[str]) -> bool:
        """
        Record the first verification URL and device code seen.
        Returns True when either field was newly set.
        """
        with self._lock:
            if self._status.state != InstallState.AUTHENTICATING:
                return False
            changed = False
            if code and not self._status.device_code:
                self._status.device_code = code
                changed = True
            if url and not self._status.verification_url:
                self._status.verification_url = url
                changed = True
            return changed

    def get_device_auth(self) -> Dict[str, Optional[str]]:
        with self._lock:
            return {
                'verificationUrl': self._status.verification_url,
                'deviceCode': self._status.device_code,
            }

    def set_archive_name(self, name: str) -> bool:
        """Record the downloaded archive name; only the first one per run counts."""
        with self._lock:
            if self._status.detected_archive_name:
                return False
            self._status.detected_archive_name = name
            return True

    def add_log(self, message: str) -> None:
        with self._lock:
            self._status.logs.append(message)

    def add_debug_log(self, message: str) -> None:
        stamp = datetime.now().strftime("%H:%M:%S")
        with self._lock:
            self._status.debug_logs.append(f"[{stamp}] {message}")
        logger.debug(message)
