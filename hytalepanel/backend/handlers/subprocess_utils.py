import logging
import os
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import psutil

logger = logging.getLogger(__name__)

TERMINATE_GRACE_SECONDS = 5.0
READ_CHUNK_SIZE = 4096


def get_clean_subprocess_env(extra_env=None):
    """
    Returns a copy of os.environ with extra_env merged in.
    """
    env = os.environ.copy()
    if extra_env:
        env.update(extra_env)
    return env


def is_executable(path) -> bool:
    """Check that path is a regular file the current user may execute."""
    if not os.path.isfile(path):
        return False
    if sys.platform == 'win32':
        return True
    return os.access(path, os.X_OK)


@dataclass
class ProcessExit:
    """Terminal event of a launched process: an exit code or a launch error."""
    returncode: Optional[int] = None
    launch_error: Optional[str] = None

    @property
    def launched(self) -> bool:
        return self.launch_error is None

    @property
    def succeeded(self) -> bool:
        return self.launch_error is None and self.returncode == 0


class ProcessManager:
    """
    Shared process manager for launching, streaming and cancelling an external tool.

    Output is delivered as raw byte chunks from two reader threads; on_exit fires
    exactly once, after both streams are drained.
    """
    def __init__(self, cmd: List[str], env=None, cwd=None,
                 on_stdout: Optional[Callable[[bytes], None]] = None,
                 on_stderr: Optional[Callable[[bytes], None]] = None,
                 on_exit: Optional[Callable[[ProcessExit], None]] = None):
        self.cmd = [str(c) for c in cmd]
        # Inherit the panel environment when none is given
        if env is None:
            self.env = get_clean_subprocess_env()
        else:
            self.env = env
        self.cwd = str(cwd) if cwd is not None else None
        self.on_stdout = on_stdout
        self.on_stderr = on_stderr
        self.on_exit = on_exit
        self.proc = None
        self.exit_info: Optional[ProcessExit] = None
        self._exited = threading.Event()
        self._readers: List[threading.Thread] = []

    @property
    def pid(self) -> Optional[int]:
        return self.proc.pid if self.proc else None

    @property
    def launch_error(self) -> Optional[str]:
        return self.exit_info.launch_error if self.exit_info else None

    def start(self) -> bool:
        """
        Spawn the process. Returns False on launch failure, in which case
        on_exit has already fired with the launch error.
        """
        try:
            self.proc = subprocess.Popen(
                self.cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                env=self.env,
                cwd=self.cwd,
                bufsize=0,
                start_new_session=True
            )
        except OSError as e:
            logger.error(f"Failed to launch {self.cmd[0]}: {e}")
            self._finish(ProcessExit(launch_error=str(e)))
            return False

        logger.debug(f"Launched {self.cmd[0]} (pid {self.proc.pid})")
        self._readers = [
            threading.Thread(target=self._pump, args=(self.proc.stdout, self.on_stdout), daemon=True),
            threading.Thread(target=self._pump, args=(self.proc.stderr, self.on_stderr), daemon=True),
        ]
        for reader in self._readers:
            reader.start()
        threading.Thread(target=self._wait_for_exit, daemon=True).start()
        return True

    def _pump(self, stream, callback):
        try:
            while True:
                chunk = stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                if callback:
                    try:
                        callback(chunk)
                    except Exception as e:
                        logger.error(f"Output handler failed: {e}", exc_info=True)
        except (OSError, ValueError) as e:
            logger.debug(f"Output stream closed: {e}")
        finally:
            try:
                stream.close()
            except OSError:
                pass

    def _wait_for_exit(self):
        for reader in self._readers:
            reader.join()
        returncode = self.proc.wait()
        logger.debug(f"{self.cmd[0]} exited with code {returncode}")
        self._finish(ProcessExit(returncode=returncode))

    def _finish(self, exit_info: ProcessExit):
        self.exit_info = exit_info
        self._exited.set()
        if self.on_exit:
            try:
                self.on_exit(exit_info)
            except Exception as e:
                logger.error(f"Exit handler failed: {e}", exc_info=True)

    def _descendants(self) -> List[psutil.Process]:
        # Only descendants go through psutil waits; the direct child is reaped
        # by _wait_for_exit so its real exit status reaches on_exit
        try:
            return psutil.Process(self.proc.pid).children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return []

    def _signal_child(self, method: str):
        try:
            getattr(self.proc, method)()
        except OSError as e:
            logger.debug(f"Could not {method} {self.cmd[0]}: {e}")

    def terminate(self, grace_period: float = TERMINATE_GRACE_SECONDS):
        """
        Ask the process (and its children) to stop, then force-kill whatever is
        still alive after grace_period seconds. Returns immediately.
        """
        if not self.is_running():
            return

        children = self._descendants()
        self._signal_child('terminate')
        for child in children:
            try:
                child.terminate()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue

        def escalate():
            started = time.monotonic()
            if not self._exited.wait(grace_period) and self.proc.poll() is None:
                logger.info(f"Process {self.proc.pid} didn't terminate, force killing...")
                self._signal_child('kill')

            remaining = max(0.0, grace_period - (time.monotonic() - started))
            gone, alive = psutil.wait_procs(children, timeout=remaining)
            for child in alive:
                logger.info(f"Process {child.pid} didn't terminate, force killing...")
                try:
                    child.kill()
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    pass

        threading.Thread(target=escalate, daemon=True).start()

    def kill(self):
        """Force-kill the process and its children immediately."""
        if not self.is_running():
            return
        children = self._descendants()
        self._signal_child('kill')
        for child in children:
            try:
                child.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue

    def is_running(self):
        return self.proc is not None and self.proc.poll() is None

    def wait(self, timeout=None) -> Optional[ProcessExit]:
        """Block until on_exit has fired. Returns None on timeout."""
        if self._exited.wait(timeout):
            return self.exit_info
        return None
