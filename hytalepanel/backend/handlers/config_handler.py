#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Configuration Handler Module
Handles panel settings used by the installer backend
"""

import os
import json
import logging

from hytalepanel import __version__

# Initialize logger
logger = logging.getLogger(__name__)

CONFIG_DIR_ENV = "HYTALEPANEL_CONFIG_DIR"
DEFAULT_DOWNLOADER_URL = "https://downloader.hytale.com/hytale-downloader.zip"


class ConfigHandler:
    """
    Handles application configuration and settings
    Singleton pattern ensures all code shares the same instance
    """
    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(ConfigHandler, cls).__new__(cls)
        return cls._instance

    def __init__(self):
        """Initialize configuration handler with default settings"""
        # Only initialize once (singleton pattern)
        if ConfigHandler._initialized:
            return
        ConfigHandler._initialized = True

        self.config_dir = os.environ.get(CONFIG_DIR_ENV) or os.path.expanduser("~/.config/hytalepanel")
        self.config_file = os.path.join(self.config_dir, "config.json")
        self.settings = {
            "version": __version__,
            "data_dir": None,  # Default: ~/HytalePanel
            "bin_dir": None,  # Default: <data_dir>/bin
            "server_path": "",  # Target directory for server installs
            "downloader_url": DEFAULT_DOWNLOADER_URL,
            "download_timeout": 300,  # seconds, per network read
            "max_log_entries": 500,
            "max_debug_log_entries": 200,
        }

        self._load_config()

    @classmethod
    def reset_instance(cls):
        """Drop the shared instance so the next construction re-reads the environment."""
        cls._instance = None
        cls._initialized = False

    def _load_config(self):
        """
        Load configuration from file and update in-memory cache.
        """
        try:
            if os.path.exists(self.config_file):
                with open(self.config_file, 'r') as f:
                    saved_config = json.load(f)
                    # Update settings with saved values while preserving defaults
                    self.settings.update(saved_config)
                    logger.debug("Loaded configuration from file")
            else:
                logger.debug("No configuration file found, using defaults")
        except Exception as e:
            logger.error(f"Error loading configuration: {e}")

    def _read_config_from_disk(self):
        """
        Read configuration directly from disk without caching.
        Returns merged config (defaults + saved values).
        """
        try:
            config = self.settings.copy()  # Start with defaults
            if os.path.exists(self.config_file):
                with open(self.config_file, 'r') as f:
                    saved_config = json.load(f)
                    config.update(saved_config)
            return config
        except Exception as e:
            logger.error(f"Error reading configuration from disk: {e}")
            return self.settings.copy()

    def _create_config_dir(self):
        """Create configuration directory if it doesn't exist"""
        try:
            os.makedirs(self.config_dir, exist_ok=True)
            logger.debug(f"Created configuration directory: {self.config_dir}")
        except Exception as e:
            logger.error(f"Error creating configuration directory: {e}")

    def save_config(self):
        """Save current configuration to file"""
        try:
            self._create_config_dir()
            with open(self.config_file, 'w') as f:
                json.dump(self.settings, f, indent=2)
            logger.debug("Saved configuration to file")
            return True
        except Exception as e:
            logger.error(f"Error saving configuration: {e}")
            return False

    def get(self, key, default=None):
        """
        Get a configuration value by key.
        Always reads fresh from disk to avoid stale data.
        """
        config = self._read_config_from_disk()
        return config.get(key, default)

    def set(self, key, value):
        """Set a configuration value"""
        self.settings[key] = value
        return True

    def get_server_path(self):
        """Get the configured server installation directory"""
        return self.get("server_path") or ""

    def set_server_path(self, path):
        """Set the server installation directory"""
        self.settings["server_path"] = str(path)
        logger.debug(f"Set server path to: {path}")
        return True
