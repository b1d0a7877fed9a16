"""
Tool provisioner service for the hytale-downloader CLI.

Downloads the distribution archive, unpacks it into the binary directory and
marks the platform binary executable. Progress is reported through the shared
installer status record: 0-50 download, 50-90 extraction, 100 done.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import requests

from hytalepanel.backend.handlers.archive_handler import extract_archive
from hytalepanel.backend.handlers.config_handler import ConfigHandler, DEFAULT_DOWNLOADER_URL
from hytalepanel.backend.handlers.install_state_handler import InstallStatusTracker
from hytalepanel.backend.handlers.subprocess_utils import is_executable
from hytalepanel.backend.services.platform_detection_service import PlatformDetectionService
from hytalepanel.shared.install_models import (
    TOOL_DOWNLOAD_START_STATES,
    InstallerBusyError,
    InstallState,
    UnsupportedPlatformError,
)

logger = logging.getLogger(__name__)

TOOL_ARCHIVE_NAME = "hytale-downloader.zip"
DOWNLOAD_CHUNK_SIZE = 8192


class ToolProvisionerService:
    """Service for installing the hytale-downloader binary when it is missing."""

    def __init__(self, tracker: InstallStatusTracker, bin_dir: Path,
                 config_handler: Optional[ConfigHandler] = None,
                 platform_service: Optional[PlatformDetectionService] = None):
        """
        Initialize the provisioner.

        Args:
            tracker: Shared installer status record
            bin_dir: Directory the downloader binary is installed into
            config_handler: Settings source (download URL and timeout)
            platform_service: Platform lookup, for choosing the binary name
        """
        self.tracker = tracker
        self.bin_dir = Path(bin_dir)
        self.config_handler = config_handler or ConfigHandler()
        self.platform_service = platform_service or PlatformDetectionService()

    @property
    def download_url(self) -> str:
        return self.config_handler.get('downloader_url') or DEFAULT_DOWNLOADER_URL

    def get_binary_name(self) -> Optional[str]:
        return self.platform_service.get_downloader_binary_name()

    def get_binary_path(self) -> Optional[Path]:
        name = self.get_binary_name()
        return self.bin_dir / name if name else None

    def check_tool_available(self) -> Dict[str, Any]:
        """
        Check whether the platform binary is present and executable.

        Returns:
            dict: available, platform and, when unavailable, error
        """
        platform_name = self.platform_service.platform
        binary_path = self.get_binary_path()
        if binary_path is None:
            return {'available': False, 'platform': platform_name, 'error': 'Unsupported platform'}
        if not binary_path.is_file():
            return {'available': False, 'platform': platform_name, 'error': 'Binary not found'}
        if not is_executable(binary_path):
            return {'available': False, 'platform': platform_name, 'error': 'Binary is not executable'}
        return {'available': True, 'platform': platform_name}

    def download_tool(self) -> Dict[str, Any]:
        """
        Download and install the downloader binary.

        Returns:
            dict: {'success': True} once the tool is installed

        Raises:
            InstallerBusyError: another download or install is in progress
            UnsupportedPlatformError: there is no build for this platform
            Exception: network, filesystem or extraction failure (state is error)
        """
        binary_name = self.get_binary_name()

        with self.tracker.lock:
            if self.tracker.state not in TOOL_DOWNLOAD_START_STATES:
                raise InstallerBusyError("Another process is running")
            if not binary_name:
                raise UnsupportedPlatformError("Unsupported platform")
            self.tracker.transition(InstallState.DOWNLOADING_TOOL)
            self.tracker.clear_logs()
            self.tracker.add_log("Starting download...")

        zip_path = self.bin_dir / TOOL_ARCHIVE_NAME
        try:
            self.bin_dir.mkdir(parents=True, exist_ok=True)
            self._fetch_archive(zip_path)

            self.tracker.set_progress(50)
            self.tracker.transition(InstallState.EXTRACTING_TOOL)
            self.tracker.add_log("Download complete. Extracting...")

            extract_archive(zip_path, self.bin_dir,
                            progress_callback=lambda pct: self.tracker.ratchet_progress(50 + pct * 40 // 100))
            zip_path.unlink()
            self.tracker.ratchet_progress(90)

            binary_path = self.bin_dir / binary_name
            if not binary_path.is_file():
                raise FileNotFoundError(f"{binary_name} not found in downloaded archive")
            if not self.platform_service.is_windows:
                os.chmod(binary_path, 0o755)

            self.tracker.ratchet_progress(100)
            self.tracker.transition(InstallState.TOOL_INSTALLED)
            self.tracker.add_log("Hytale Downloader installed successfully.")
            logger.info(f"Hytale Downloader installed at {binary_path}")
            return {'success': True}

        except Exception as e:
            logger.error(f"Failed to install Hytale Downloader: {e}", exc_info=True)
            self.tracker.fail(str(e))
            try:
                zip_path.unlink(missing_ok=True)
            except OSError:
                pass
            raise

    def _fetch_archive(self, zip_path: Path) -> None:
        url = self.download_url
        timeout = self.config_handler.get('download_timeout', 300)
        self.tracker.add_log(f"Downloading from {url}...")
        logger.info(f"Downloading Hytale Downloader from {url}")

        with requests.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            total_size = int(response.headers.get('content-length', 0) or 0)
            downloaded_size = 0

            with open(zip_path, 'wb') as f:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if not chunk:
                        continue
                    f.write(chunk)
                    downloaded_size += len(chunk)
                    if total_size:
                        # Download is the first half of the bar
                        self.tracker.ratchet_progress(min(50, round(downloaded_size / total_size * 50)))

        logger.debug(f"Downloaded {downloaded_size} bytes to {zip_path}")

    def download_tool_async(self, callback: Optional[Callable[[bool, Optional[str]], None]] = None) -> threading.Thread:
        """
        Run download_tool in a background thread.

        Args:
            callback: Called with (success, error_message) when done
        """
        def download_worker():
            try:
                self.download_tool()
                if callback:
                    callback(True, None)
            except Exception as e:
                logger.error(f"Error in background tool download: {e}")
                if callback:
                    callback(False, str(e))

        thread = threading.Thread(target=download_worker, daemon=True)
        thread.start()
        return thread
