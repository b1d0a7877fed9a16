"""
Installer service for Hytale dedicated server files.

Drives the hytale-downloader CLI through its device-authorization flow,
tracks download progress from its console output, then extracts the
downloaded server archive and records the installed version.

The downloader's text output is the only interface it offers; all pattern
matching lives in output_parser.
"""

import os
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from packaging.version import InvalidVersion, Version

from hytalepanel.backend.handlers.archive_handler import ExtractionError, extract_archive
from hytalepanel.backend.handlers.config_handler import ConfigHandler
from hytalepanel.backend.handlers.install_state_handler import InstallStatusTracker
from hytalepanel.backend.handlers.logging_handler import LoggingHandler
from hytalepanel.backend.handlers.output_parser import (
    LineSplitter,
    detect_archive_name,
    extract_progress,
    is_auth_success,
    is_download_indicator,
    is_up_to_date,
    last_informational_line,
    parse_device_auth,
    parse_version_from_archive,
)
from hytalepanel.backend.handlers.subprocess_utils import (
    ProcessExit,
    ProcessManager,
    get_clean_subprocess_env,
    is_executable,
)
from hytalepanel.backend.services.platform_detection_service import PlatformDetectionService
from hytalepanel.backend.services.tool_provisioner_service import ToolProvisionerService
from hytalepanel.shared.events import AUTH_REQUEST_EVENT, INSTALL_COMPLETE_EVENT, EventEmitter
from hytalepanel.shared.install_models import (
    ACTIVE_STATES,
    InstallerBusyError,
    InstallState,
    LaunchError,
    UnsupportedPlatformError,
)
from hytalepanel.shared.paths import get_bin_dir

VERSION_FILE = "version.txt"
CREDENTIALS_FILE = ".hytale-downloader-credentials.json"
SERVER_SUBDIR = "Server"
AUTH_WINDOW_SIZE = 8192
DIAGNOSTIC_TIMEOUT = 20  # seconds
PRINT_VERSION_FLAG = "-print-version"
UNKNOWN_VERSION = "unknown"

# Force unbuffered output for real-time streaming
DOWNLOADER_ENV = {
    'PYTHONUNBUFFERED': '1',
    'TERM': 'dumb',
}


@dataclass
class InstallRun:
    """Per-run parsing context for one downloader process."""
    target_path: Path
    stdout_lines: LineSplitter = field(default_factory=LineSplitter)
    stderr_lines: LineSplitter = field(default_factory=LineSplitter)
    auth_window: str = ""
    up_to_date_seen: bool = False
    # stdout and stderr readers both feed auth_window
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class InstallerService:
    """
    Installer state machine.

    Owns at most one downloader process. Status is published through the
    shared InstallStatusTracker and named events through the EventEmitter.
    """

    def __init__(self, config_handler: Optional[ConfigHandler] = None,
                 bin_dir: Optional[Union[str, Path]] = None,
                 events: Optional[EventEmitter] = None,
                 process_factory: Callable[..., ProcessManager] = ProcessManager,
                 tracker: Optional[InstallStatusTracker] = None,
                 platform_service: Optional[PlatformDetectionService] = None):
        self.config_handler = config_handler or ConfigHandler()
        self.bin_dir = Path(bin_dir) if bin_dir else get_bin_dir()
        self.events = events or EventEmitter()
        self.process_factory = process_factory
        self.tracker = tracker or InstallStatusTracker(
            max_log_entries=self.config_handler.get('max_log_entries', 500),
            max_debug_log_entries=self.config_handler.get('max_debug_log_entries', 200),
        )
        self.provisioner = ToolProvisionerService(
            self.tracker, self.bin_dir, self.config_handler, platform_service
        )

        # Set up logging
        logging_handler = LoggingHandler()
        self.logger = logging_handler.setup_logger('hytalepanel.installer', 'installer_workflow.log')

        self._process: Optional[ProcessManager] = None
        self._run: Optional[InstallRun] = None
        self._process_lock = threading.RLock()

    # ------------------------------------------------------------------
    # Status and tool provisioning
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of the installer status for polling clients."""
        return self.tracker.snapshot()

    def is_running(self) -> bool:
        with self._process_lock:
            return self._process is not None

    def check_tool_available(self) -> Dict[str, Any]:
        return self.provisioner.check_tool_available()

    def download_tool(self) -> Dict[str, Any]:
        """Install the downloader binary. Raises on failure; status ends in tool_installed or error."""
        return self.provisioner.download_tool()

    def start_tool_download(self, callback=None) -> threading.Thread:
        return self.provisioner.download_tool_async(callback)

    # ------------------------------------------------------------------
    # Install flow
    # ------------------------------------------------------------------

    def start_install(self, target_path: Union[str, Path]) -> None:
        """
        Launch the downloader for target_path.

        Returns once the process is running; further progress is observed
        through get_status() and the auth_request/install_complete events.

        Raises:
            InstallerBusyError: a run is already in progress
            UnsupportedPlatformError: no downloader build for this platform
            LaunchError: binary missing, not executable, target directory
                unusable, or the spawn itself failed
        """
        target = Path(target_path).expanduser()
        binary_path = self.provisioner.get_binary_path()

        with self._process_lock:
            with self.tracker.lock:
                if self._process is not None or self.tracker.state in ACTIVE_STATES:
                    raise InstallerBusyError("An installation process is already running")
                if binary_path is None:
                    raise UnsupportedPlatformError("Unsupported platform for automatic downloader")

                self._ensure_executable(binary_path)

                self.tracker.reset_run()
                self.tracker.transition(InstallState.AUTHENTICATING)

            try:
                target.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                message = f"Failed to create target directory: {e}"
                self.tracker.fail(message)
                raise LaunchError(message) from e

            run = InstallRun(target_path=target)
            # No CLI flags: the downloader's flags trigger unwanted self-update side effects
            handle = self.process_factory(
                [str(binary_path)],
                env=get_clean_subprocess_env(DOWNLOADER_ENV),
                cwd=str(target),
                on_stdout=lambda chunk: self._handle_output(run, chunk, is_stderr=False),
                on_stderr=lambda chunk: self._handle_output(run, chunk, is_stderr=True),
                on_exit=lambda exit_info: self._handle_exit(run, exit_info),
            )
            self._process = handle
            self._run = run

            self.logger.info(f"Starting Hytale downloader in {target}")
            self.tracker.add_debug_log(f"Spawning {binary_path} (cwd {target})")
            if not handle.start():
                raise LaunchError(f"Failed to start downloader: {handle.launch_error}")

    def _ensure_executable(self, binary_path: Path) -> None:
        """Make sure the downloader can be executed, fixing permissions when possible."""
        if not binary_path.is_file():
            message = (f"Downloader binary not found at {binary_path}. "
                       f"Download the tool first or place the CLI tool in {self.bin_dir}.")
            self.tracker.fail(message)
            raise LaunchError(message)

        if self.provisioner.platform_service.is_windows or is_executable(binary_path):
            return

        self.logger.info(f"Fixing permissions for {binary_path}")
        try:
            os.chmod(binary_path, 0o755)
        except OSError as e:
            self.logger.warning(f"chmod failed on {binary_path}: {e}")

        if not is_executable(binary_path):
            message = f'Permission Error: Cannot execute downloader. Please run: chmod +x "{binary_path}"'
            self.tracker.fail(message)
            raise LaunchError(message)

    def _owns(self, run: InstallRun) -> bool:
        with self._process_lock:
            return self._run is run

    def _handle_output(self, run: InstallRun, chunk: bytes, is_stderr: bool) -> None:
        if not self._owns(run):
            return

        splitter = run.stderr_lines if is_stderr else run.stdout_lines
        text = splitter.decode(chunk)

        # Code and URL may arrive in different chunks, so parse a rolling window
        with run.lock:
            run.auth_window = (run.auth_window + text)[-AUTH_WINDOW_SIZE:]
            self._check_device_auth(run)

        for line in splitter.split(text):
            self._process_line(run, line, is_stderr)

    def _check_device_auth(self, run: InstallRun) -> None:
        auth = parse_device_auth(run.auth_window)
        if not auth.found:
            return
        if self.tracker.set_device_auth(auth.url, auth.code):
            payload = self.tracker.get_device_auth()
            self.logger.info(f"Device authorization requested: {payload['verificationUrl']} code {payload['deviceCode']}")
            self.events.emit(AUTH_REQUEST_EVENT, payload)

    def _process_line(self, run: InstallRun, line: str, is_stderr: bool) -> None:
        line = line.strip()
        self.tracker.add_log(f"STDERR: {line}" if is_stderr else line)
        self.logger.debug(f"downloader{' stderr' if is_stderr else ''}: {line}")

        archive_name = detect_archive_name(line)
        if archive_name and self.tracker.set_archive_name(archive_name):
            self.tracker.add_debug_log(f"Detected downloaded archive: {archive_name}")

        if is_up_to_date(line) and not run.up_to_date_seen:
            run.up_to_date_seen = True
            self.tracker.add_debug_log("Downloader reports server files are up to date")

        if self.tracker.state == InstallState.AUTHENTICATING:
            if is_auth_success(line):
                self._complete_authentication("authentication success reported")
            elif is_download_indicator(line):
                self._complete_authentication("download started")

        if self.tracker.state == InstallState.DOWNLOADING_GAME:
            self.tracker.ratchet_progress(extract_progress(line))

    def _complete_authentication(self, reason: str) -> None:
        with self.tracker.lock:
            if self.tracker.state != InstallState.AUTHENTICATING:
                return
            self.tracker.transition(InstallState.DOWNLOADING_GAME)
        self.tracker.add_debug_log(f"Authenticated ({reason}), downloading server files")
        self.logger.info("Authentication successful, starting download")
        self.events.emit(AUTH_REQUEST_EVENT, {'success': True})

    def _handle_exit(self, run: InstallRun, exit_info: ProcessExit) -> None:
        with self._process_lock:
            if self._run is not run:
                self.logger.debug("Ignoring exit of a cancelled downloader run")
                return
            self._process = None

        try:
            for line in run.stdout_lines.flush():
                self._process_line(run, line, is_stderr=False)
            for line in run.stderr_lines.flush():
                self._process_line(run, line, is_stderr=True)

            if exit_info.launch_error:
                self.tracker.fail(f"Failed to start downloader: {exit_info.launch_error}")
            elif exit_info.returncode != 0:
                self.logger.error(f"Downloader exited with code {exit_info.returncode}")
                self.tracker.fail(f"Downloader exited with code {exit_info.returncode}. Check logs for details.")
            else:
                self.logger.info("Downloader exited with code 0")
                self._finalize_installation(run)
        except Exception as e:
            self.logger.error(f"Unexpected error finishing installation: {e}", exc_info=True)
            self.tracker.fail(f"Unexpected error: {e}")
        finally:
            with self._process_lock:
                if self._run is run:
                    self._run = None

        self.events.emit(INSTALL_COMPLETE_EVENT, self.tracker.snapshot())

    def _finalize_installation(self, run: InstallRun) -> None:
        archive_name = self.tracker.detected_archive_name
        if not archive_name:
            self.tracker.transition(InstallState.FINISHED)
            self.tracker.set_progress(100)
            self.tracker.add_log("Server files are up to date, no update needed.")
            self.logger.info("No archive downloaded, no update needed")
            return

        self.tracker.transition(InstallState.EXTRACTING)
        self.tracker.add_log("Extracting server files...")

        archive_path = Path(archive_name)
        if not archive_path.is_absolute():
            archive_path = run.target_path / archive_path

        try:
            if not archive_path.is_file():
                raise ExtractionError(f"Game archive not found: {archive_path}")
            extract_archive(archive_path, run.target_path, progress_callback=self.tracker.ratchet_progress)
            self.tracker.add_log("Extraction complete.")
            archive_path.unlink()
        except (ExtractionError, OSError) as e:
            self.logger.error(f"Extraction failed: {e}", exc_info=True)
            self.tracker.fail(f"Extraction failed: {e}")
            return

        self._propagate_credentials(run.target_path)
        version = self._write_version_marker(run.target_path, archive_path.name)

        self.tracker.transition(InstallState.FINISHED)
        self.tracker.set_progress(100)
        self.tracker.add_log(f"Installation finished{f' (version {version})' if version else ''}.")
        self.logger.info(f"Installation finished in {run.target_path}")

    def _propagate_credentials(self, target_path: Path) -> None:
        """Copy the downloader credentials next to the server so it can authenticate too. Best effort."""
        source = target_path / CREDENTIALS_FILE
        if not source.is_file():
            return
        try:
            server_dir = target_path / SERVER_SUBDIR
            server_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, server_dir / CREDENTIALS_FILE)
            self.tracker.add_log("Propagated authentication credentials to server.")
        except OSError as e:
            self.logger.warning(f"Could not propagate credentials: {e}")
            self.tracker.add_debug_log(f"Credential propagation failed: {e}")

    def _write_version_marker(self, target_path: Path, archive_name: str) -> Optional[str]:
        version = parse_version_from_archive(archive_name)
        if not version:
            self.tracker.add_debug_log(f"No version token in archive name {archive_name}")
            return None
        try:
            (target_path / VERSION_FILE).write_text(version, encoding='utf-8')
            self.tracker.add_debug_log(f"Recorded version {version}")
        except OSError as e:
            self.logger.warning(f"Could not write version marker: {e}")
            self.tracker.add_debug_log(f"Version marker write failed: {e}")
        return version

    def cancel_install(self) -> bool:
        """
        Stop the running downloader (SIGTERM, then SIGKILL after the grace period)
        and return to idle. Partially extracted files are left in place.

        Returns:
            bool: True if a process was cancelled, False if nothing was running
        """
        with self._process_lock:
            handle = self._process
            if handle is None:
                return False
            self._process = None
            self._run = None

        handle.terminate()
        with self.tracker.lock:
            if self.tracker.can_transition(InstallState.IDLE):
                self.tracker.transition(InstallState.IDLE)
            self.tracker.add_log("Download cancelled by user")
        self.logger.info("Download cancelled by user")
        return True

    # ------------------------------------------------------------------
    # Version information
    # ------------------------------------------------------------------

    def _resolve_server_path(self, server_path: Optional[Union[str, Path]]) -> Optional[Path]:
        path = server_path or self.config_handler.get_server_path()
        return Path(path).expanduser() if path else None

    def get_game_version(self, server_path: Optional[Union[str, Path]] = None) -> Dict[str, str]:
        """
        Read the installed version from the version marker.

        Never runs the downloader: invoking it may trigger its self-update.
        """
        path = self._resolve_server_path(server_path)
        if path is None:
            return {'version': UNKNOWN_VERSION}
        try:
            version = (path / VERSION_FILE).read_text(encoding='utf-8').strip()
        except OSError:
            return {'version': UNKNOWN_VERSION}
        return {'version': version or UNKNOWN_VERSION}

    def check_update(self, server_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
        """
        Ask the downloader for the latest available version.

        Runs independently of the install flow with a hard timeout; a
        downloader waiting on device authorization is killed after
        DIAGNOSTIC_TIMEOUT seconds and reported as requiring auth.
        """
        current_version = self.get_game_version(server_path)['version']
        result: Dict[str, Any] = {
            'current_version': current_version,
            'latest_version': None,
            'update_available': False,
            'requires_auth': False,
        }

        binary_path = self.provisioner.get_binary_path()
        if binary_path is None or not is_executable(binary_path):
            result['error'] = 'Downloader binary not available'
            return result

        lines: List[str] = []
        output: List[str] = []
        output_lock = threading.Lock()
        splitters = {'stdout': LineSplitter(), 'stderr': LineSplitter()}

        def collect(stream: str, chunk: bytes) -> None:
            with output_lock:
                text = splitters[stream].decode(chunk)
                output.append(text)
                lines.extend(splitters[stream].split(text))

        handle = self.process_factory(
            [str(binary_path), PRINT_VERSION_FLAG],
            env=get_clean_subprocess_env(DOWNLOADER_ENV),
            cwd=str(self.bin_dir),
            on_stdout=lambda chunk: collect('stdout', chunk),
            on_stderr=lambda chunk: collect('stderr', chunk),
        )
        if not handle.start():
            result['error'] = f"Failed to start downloader: {handle.launch_error}"
            return result

        timed_out = threading.Event()

        def watchdog():
            timed_out.set()
            self.logger.warning(f"Version check exceeded {DIAGNOSTIC_TIMEOUT}s, killing downloader")
            handle.kill()

        timer = threading.Timer(DIAGNOSTIC_TIMEOUT, watchdog)
        timer.daemon = True
        timer.start()
        try:
            exit_info = handle.wait(DIAGNOSTIC_TIMEOUT + 5)
        finally:
            timer.cancel()

        with output_lock:
            for splitter in splitters.values():
                lines.extend(splitter.flush())
            full_output = "".join(output)

        auth = parse_device_auth(full_output)
        if auth.found:
            result['requires_auth'] = True
            result['verification_url'] = auth.url
            result['device_code'] = auth.code

        if timed_out.is_set() or exit_info is None:
            result['error'] = f"Timed out waiting for downloader after {DIAGNOSTIC_TIMEOUT} seconds"
            return result
        if exit_info.returncode != 0:
            result['error'] = f"Downloader exited with code {exit_info.returncode}"
            return result

        latest_line = last_informational_line(lines)
        if latest_line:
            latest_version = parse_version_from_archive(latest_line) or latest_line
            result['latest_version'] = latest_version
            result['update_available'] = self._is_newer_version(latest_version, current_version)
        return result

    @staticmethod
    def _is_newer_version(latest: str, current: str) -> bool:
        """
        Compare downloader versions such as 2026.02.17-255364b8e.

        The date part is compared numerically; same-date builds differ by hash.
        """
        if current == UNKNOWN_VERSION:
            return True
        if latest == current:
            return False
        try:
            latest_date = Version(latest.split('-', 1)[0])
            current_date = Version(current.split('-', 1)[0])
        except InvalidVersion:
            return True
        if latest_date != current_date:
            return latest_date > current_date
        return True
