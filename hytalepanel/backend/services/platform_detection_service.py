#!/usr/bin/env python3
"""
Platform Detection Service

Centralizes platform detection logic to be performed once at application startup
and shared across all components.
"""

import logging
import platform
import sys
from typing import Optional

logger = logging.getLogger(__name__)

DOWNLOADER_BINARIES = {
    'linux': 'hytale-downloader-linux-amd64',
    'windows': 'hytale-downloader-windows-amd64.exe',
}


class PlatformDetectionService:
    """
    Service for detecting platform-specific information once at startup
    """

    _instance = None
    _platform = None

    def __new__(cls):
        """Singleton pattern to ensure only one instance"""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        """Initialize platform detection if not already done"""
        if self._platform is None:
            self._detect_platform()

    def _detect_platform(self):
        """Perform platform detection once"""
        logger.debug("Performing platform detection...")

        if sys.platform.startswith('linux'):
            self._platform = 'linux'
        elif sys.platform == 'win32':
            self._platform = 'windows'
        elif sys.platform == 'darwin':
            self._platform = 'macos'
        else:
            self._platform = sys.platform

        machine = platform.machine().lower()
        if self._platform in DOWNLOADER_BINARIES and machine not in ('x86_64', 'amd64', ''):
            logger.warning(f"Downloader builds target amd64, this machine reports {machine}")

        logger.debug(f"Platform detection complete: platform={self._platform}")

    @property
    def platform(self) -> str:
        """Get the detected platform name (linux, windows, macos, ...)"""
        if self._platform is None:
            self._detect_platform()
        return self._platform

    @property
    def is_windows(self) -> bool:
        return self.platform == 'windows'

    def get_downloader_binary_name(self) -> Optional[str]:
        """Name of the hytale-downloader build for this platform, or None if there is none"""
        return DOWNLOADER_BINARIES.get(self.platform)
