import os
import stat
import zipfile
from pathlib import Path

import pytest

from hytalepanel.backend.handlers.config_handler import ConfigHandler
from hytalepanel.backend.handlers.subprocess_utils import ProcessExit

LINUX_BINARY = "hytale-downloader-linux-amd64"


@pytest.fixture(autouse=True)
def isolated_dirs(tmp_path, monkeypatch):
    """Point config and data directories at a per-test temporary tree"""
    config_dir = tmp_path / "config"
    data_dir = tmp_path / "data"
    monkeypatch.setenv("HYTALEPANEL_CONFIG_DIR", str(config_dir))
    monkeypatch.setenv("HYTALEPANEL_DATA_DIR", str(data_dir))
    ConfigHandler.reset_instance()
    yield {"config": config_dir, "data": data_dir}
    ConfigHandler.reset_instance()


@pytest.fixture
def make_zip(tmp_path):
    """Build a zip at path from a mapping of entry name to bytes (None for a directory entry)"""

    def _make_zip(path, entries):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(path, "w") as zf:
            for name, data in entries.items():
                if data is None:
                    zf.writestr(zipfile.ZipInfo(name), b"")
                else:
                    zf.writestr(name, data)
        return path

    return _make_zip


class FakePlatform:
    """Stands in for PlatformDetectionService with a fixed platform"""

    BINARIES = {
        "linux": LINUX_BINARY,
        "windows": "hytale-downloader-windows-amd64.exe",
    }

    def __init__(self, platform="linux"):
        self.platform = platform

    @property
    def is_windows(self):
        return self.platform == "windows"

    def get_downloader_binary_name(self):
        return self.BINARIES.get(self.platform)


@pytest.fixture
def linux_platform():
    return FakePlatform("linux")


class FakeProcess:
    """
    ProcessManager double. Tests drive output and exit synchronously with
    emit_stdout/emit_stderr/exit.
    """

    def __init__(self, cmd, env=None, cwd=None, on_stdout=None, on_stderr=None,
                 on_exit=None, launch_error=None, on_start=None):
        self.cmd = cmd
        self.env = env
        self.cwd = cwd
        self.on_stdout = on_stdout
        self.on_stderr = on_stderr
        self.on_exit = on_exit
        self.exit_info = None
        self.started = False
        self.terminated = False
        self.killed = False
        self._launch_error = launch_error
        self._on_start = on_start

    @property
    def launch_error(self):
        return self.exit_info.launch_error if self.exit_info else None

    def start(self):
        if self._launch_error:
            self._finish(ProcessExit(launch_error=self._launch_error))
            return False
        self.started = True
        if self._on_start:
            self._on_start(self)
        return True

    def emit_stdout(self, text):
        if self.on_stdout:
            self.on_stdout(text.encode("utf-8") if isinstance(text, str) else text)

    def emit_stderr(self, text):
        if self.on_stderr:
            self.on_stderr(text.encode("utf-8") if isinstance(text, str) else text)

    def exit(self, returncode=0):
        self._finish(ProcessExit(returncode=returncode))

    def _finish(self, exit_info):
        self.exit_info = exit_info
        if self.on_exit:
            self.on_exit(exit_info)

    def terminate(self, grace_period=5.0):
        self.terminated = True

    def kill(self):
        self.killed = True

    def is_running(self):
        return self.started and self.exit_info is None

    def wait(self, timeout=None):
        return self.exit_info


class FakeProcessFactory:
    """Callable passed as process_factory; remembers every process it built"""

    def __init__(self):
        self.processes = []
        self.launch_error = None
        self.on_start = None

    def __call__(self, cmd, **kwargs):
        process = FakeProcess(cmd, launch_error=self.launch_error, on_start=self.on_start, **kwargs)
        self.processes.append(process)
        return process

    @property
    def last(self):
        return self.processes[-1]


@pytest.fixture
def fake_process_factory():
    return FakeProcessFactory()


@pytest.fixture
def bin_dir(tmp_path):
    path = tmp_path / "bin"
    path.mkdir()
    return path


@pytest.fixture
def downloader_binary(bin_dir):
    """An executable placeholder for the Linux downloader build"""
    binary = bin_dir / LINUX_BINARY
    binary.write_text("#!/bin/sh\nexit 0\n")
    os.chmod(binary, os.stat(binary).st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return binary


@pytest.fixture
def installer(bin_dir, fake_process_factory, linux_platform):
    from hytalepanel.backend.services.installer_service import InstallerService

    return InstallerService(
        config_handler=ConfigHandler(),
        bin_dir=bin_dir,
        process_factory=fake_process_factory,
        platform_service=linux_platform,
    )


@pytest.fixture
def make_platform():
    """Build a FakePlatform for an arbitrary platform name"""
    return FakePlatform
