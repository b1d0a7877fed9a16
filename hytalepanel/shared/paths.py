"""
Path helpers for hytalepanel data locations.

The data directory holds the downloaded tool binaries and log files.
Resolution order: HYTALEPANEL_DATA_DIR environment variable, the
``data_dir`` config setting, then ~/HytalePanel.
"""

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

DATA_DIR_ENV = "HYTALEPANEL_DATA_DIR"
DEFAULT_DATA_DIR = Path.home() / "HytalePanel"


def get_data_dir() -> Path:
    """Get the hytalepanel data directory (not created here)."""
    env_dir = os.environ.get(DATA_DIR_ENV)
    if env_dir:
        return Path(env_dir).expanduser()

    try:
        from hytalepanel.backend.handlers.config_handler import ConfigHandler
        configured = ConfigHandler().get("data_dir")
        if configured:
            return Path(configured).expanduser()
    except Exception as e:
        logger.debug(f"Could not read data_dir from config, using default: {e}")

    return Path(os.path.expanduser(str(DEFAULT_DATA_DIR)))


def get_logs_dir() -> Path:
    return get_data_dir() / "logs"


def get_bin_dir() -> Path:
    """Directory where the hytale-downloader binary lives."""
    try:
        from hytalepanel.backend.handlers.config_handler import ConfigHandler
        configured = ConfigHandler().get("bin_dir")
        if configured:
            return Path(configured).expanduser()
    except Exception as e:
        logger.debug(f"Could not read bin_dir from config, using data dir: {e}")
    return get_data_dir() / "bin"
