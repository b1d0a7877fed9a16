"""
Installer Data Models

Shared data models for representing installer state.
Used by the installer services and the presentation layers that poll them.
"""

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, FrozenSet, Optional

DEFAULT_MAX_LOG_ENTRIES = 500
DEFAULT_MAX_DEBUG_LOG_ENTRIES = 200


class InstallState(Enum):
    """States of the installer. Exactly one is current at any time."""
    IDLE = "idle"
    DOWNLOADING_TOOL = "downloading_tool"
    EXTRACTING_TOOL = "extracting_tool"
    TOOL_INSTALLED = "tool_installed"
    AUTHENTICATING = "authenticating"
    DOWNLOADING_GAME = "downloading_game"
    EXTRACTING = "extracting"
    FINISHED = "finished"
    ERROR = "error"


# States in which work is in progress
ACTIVE_STATES: FrozenSet[InstallState] = frozenset({
    InstallState.DOWNLOADING_TOOL,
    InstallState.EXTRACTING_TOOL,
    InstallState.AUTHENTICATING,
    InstallState.DOWNLOADING_GAME,
    InstallState.EXTRACTING,
})

# States from which a tool download may start
TOOL_DOWNLOAD_START_STATES: FrozenSet[InstallState] = frozenset({
    InstallState.IDLE,
    InstallState.ERROR,
    InstallState.TOOL_INSTALLED,
})

# Phases whose progress counts from 0 again on entry
PROGRESS_RESET_STATES: FrozenSet[InstallState] = frozenset({
    InstallState.DOWNLOADING_TOOL,
    InstallState.DOWNLOADING_GAME,
    InstallState.EXTRACTING,
})

ALLOWED_TRANSITIONS: Dict[InstallState, FrozenSet[InstallState]] = {
    InstallState.IDLE: frozenset({
        InstallState.DOWNLOADING_TOOL,
        InstallState.AUTHENTICATING,
        InstallState.ERROR,
    }),
    InstallState.DOWNLOADING_TOOL: frozenset({
        InstallState.EXTRACTING_TOOL,
        InstallState.ERROR,
    }),
    InstallState.EXTRACTING_TOOL: frozenset({
        InstallState.TOOL_INSTALLED,
        InstallState.ERROR,
    }),
    InstallState.TOOL_INSTALLED: frozenset({
        InstallState.DOWNLOADING_TOOL,
        InstallState.AUTHENTICATING,
        InstallState.IDLE,
        InstallState.ERROR,
    }),
    InstallState.AUTHENTICATING: frozenset({
        InstallState.DOWNLOADING_GAME,
        InstallState.EXTRACTING,
        InstallState.FINISHED,
        InstallState.ERROR,
        InstallState.IDLE,
    }),
    InstallState.DOWNLOADING_GAME: frozenset({
        InstallState.EXTRACTING,
        InstallState.FINISHED,
        InstallState.ERROR,
        InstallState.IDLE,
    }),
    InstallState.EXTRACTING: frozenset({
        InstallState.FINISHED,
        InstallState.ERROR,
    }),
    InstallState.FINISHED: frozenset({
        InstallState.AUTHENTICATING,
        InstallState.IDLE,
        InstallState.ERROR,
    }),
    InstallState.ERROR: frozenset({
        InstallState.DOWNLOADING_TOOL,
        InstallState.AUTHENTICATING,
        InstallState.IDLE,
    }),
}


def is_transition_allowed(current: InstallState, target: InstallState) -> bool:
    """Check a from->to pair against the transition table. Self-transitions are legal."""
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class InstallerError(Exception):
    """Base class for installer failures surfaced to callers."""


class InstallerBusyError(InstallerError):
    """Raised when a start request arrives while another run owns the installer."""


class UnsupportedPlatformError(InstallerError):
    """Raised when no hytale-downloader build exists for this platform."""


class LaunchError(InstallerError):
    """Raised when the downloader cannot be started (missing, not executable, spawn failure)."""


class IllegalTransitionError(InstallerError):
    """Raised when a state change is not in the transition table."""

    def __init__(self, current: InstallState, target: InstallState):
        super().__init__(f"Illegal installer state transition: {current.value} -> {target.value}")
        self.current = current
        self.target = target


@dataclass
class InstallStatus:
    """Complete installer status record."""
    state: InstallState = InstallState.IDLE
    device_code: Optional[str] = None
    verification_url: Optional[str] = None
    detected_archive_name: Optional[str] = None
    progress: int = 0  # 0-100
    error: Optional[str] = None
    logs: Deque[str] = field(default_factory=lambda: deque(maxlen=DEFAULT_MAX_LOG_ENTRIES))
    debug_logs: Deque[str] = field(default_factory=lambda: deque(maxlen=DEFAULT_MAX_DEBUG_LOG_ENTRIES))

    def __post_init__(self):
        """Ensure progress is in valid range."""
        self.progress = max(0, min(100, int(self.progress)))

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    @property
    def auth_pending(self) -> bool:
        return self.state == InstallState.AUTHENTICATING and bool(self.device_code or self.verification_url)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the dictionary shape served to presentation layers."""
        return {
            'state': self.state.value,
            'deviceCode': self.device_code,
            'verificationUrl': self.verification_url,
            'detectedArchiveName': self.detected_archive_name,
            'progress': self.progress,
            'error': self.error,
            'logs': list(self.logs),
            'debugLogs': list(self.debug_logs),
        }
