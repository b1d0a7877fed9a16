#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
hytalepanel CLI Frontend - Main Entry Point

Command-line interface for the installer backend services.
"""

import sys
import argparse
import logging
import threading

from tqdm import tqdm

from hytalepanel import __version__ as hytalepanel_version
from hytalepanel.backend.handlers.config_handler import ConfigHandler
from hytalepanel.backend.services.installer_service import InstallerService
from hytalepanel.shared.colors import COLOR_INFO, COLOR_ERROR, COLOR_PROMPT, COLOR_WARNING, COLOR_RESET
from hytalepanel.shared.events import AUTH_REQUEST_EVENT, INSTALL_COMPLETE_EVENT
from hytalepanel.shared.install_models import ACTIVE_STATES, InstallerError, InstallState

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.5  # seconds


class HytalePanelCLI:
    """Main application class for the hytalepanel CLI Frontend"""

    def __init__(self, installer=None):
        """Initialize the CLI frontend.

        Args:
            installer: InstallerService to drive; created on first use when omitted
        """
        self._debug_mode = False
        self.verbose = False

        # Configure logging to be quiet by default - will be adjusted after arg parsing
        self._configure_logging_early()

        self._installer = installer
        self.parser = None
        self.args = None

    @property
    def installer(self) -> InstallerService:
        if self._installer is None:
            self._installer = InstallerService()
        return self._installer

    def _debug_print(self, message):
        """Print debug message only if debug mode is enabled"""
        if self._debug_mode:
            logger.debug(message)

    def _configure_logging_early(self):
        """Configure logging to be quiet during initialization, will be adjusted after arg parsing"""
        logging.getLogger().setLevel(logging.WARNING)

        if not logging.getLogger().handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
            handler.setFormatter(formatter)
            logging.getLogger().addHandler(handler)

    def _configure_logging_final(self):
        """Configure final logging level based on parsed arguments"""
        from hytalepanel.backend.handlers.logging_handler import LoggingHandler

        logging_handler = LoggingHandler()
        logging_handler.rotate_log_for_logger('hytalepanel-cli', 'hytalepanel-cli.log')
        cli_logger = logging_handler.setup_logger('hytalepanel-cli', 'hytalepanel-cli.log')

        if self.args.debug:
            cli_logger.setLevel(logging.DEBUG)
            logging.getLogger('hytalepanel').setLevel(logging.DEBUG)
            print("Debug logging enabled for console and file")
        elif self.args.verbose:
            cli_logger.setLevel(logging.INFO)
            logging.getLogger('hytalepanel').setLevel(logging.INFO)
            print("Verbose logging enabled for console and file")
        else:
            cli_logger.setLevel(logging.WARNING)

    def run(self, argv=None):
        self.parser, self.args = self._parse_args(argv)
        self._debug_mode = self.args.debug
        self.verbose = self.args.verbose or self.args.debug

        self._configure_logging_final()
        self._debug_print(f'Parsed args: {self.args}')

        if not getattr(self.args, 'command', None):
            self.parser.print_help()
            return 1
        return self._run_command(self.args.command, self.args)

    def _parse_args(self, argv=None):
        """Parse command-line arguments"""
        parser = argparse.ArgumentParser(prog="hytalepanel",
                                         description="hytalepanel: Hytale dedicated server installer")
        parser.add_argument("-V", "--version", action="version", version=f"hytalepanel {hytalepanel_version}")
        parser.add_argument("-d", "--debug", action="store_true", help="Enable debug logging (implies verbose)")
        parser.add_argument("-v", "--verbose", action="store_true", help="Enable informational console output")

        subparsers = parser.add_subparsers(dest="command", help="Command to run")
        subparsers.add_parser("status", help="Show the installer status")
        subparsers.add_parser("prerequisites", help="Check that the Hytale downloader is available")
        subparsers.add_parser("download-tool", help="Download and install the Hytale downloader")

        install_parser = subparsers.add_parser("install", help="Download and install the server files")
        install_parser.add_argument("target", nargs="?", help="Server directory (default: configured server_path)")

        version_parser = subparsers.add_parser("version", help="Show the installed server version")
        version_parser.add_argument("path", nargs="?", help="Server directory (default: configured server_path)")

        update_parser = subparsers.add_parser("check-update", help="Ask the downloader for the latest server version")
        update_parser.add_argument("path", nargs="?", help="Server directory (default: configured server_path)")

        args = parser.parse_args(argv)
        return parser, args

    def _run_command(self, command, args):
        """Run a specific command"""
        try:
            if command == "status":
                return self._handle_status()
            elif command == "prerequisites":
                return self._handle_prerequisites()
            elif command == "download-tool":
                return self._handle_download_tool()
            elif command == "install":
                return self._handle_install(args.target)
            elif command == "version":
                return self._handle_version(args.path)
            elif command == "check-update":
                return self._handle_check_update(args.path)
            else:
                print(f"Unknown command: {command}")
                return 1
        except InstallerError as e:
            print(f"{COLOR_ERROR}{e}{COLOR_RESET}")
            return 1

    def _handle_status(self):
        status = self.installer.get_status()
        print(f"State:    {status['state']}")
        print(f"Progress: {status['progress']}%")
        if status['error']:
            print(f"{COLOR_ERROR}Error:    {status['error']}{COLOR_RESET}")
        if status['verificationUrl'] or status['deviceCode']:
            self._print_auth_prompt(status['verificationUrl'], status['deviceCode'])
        return 0

    def _handle_prerequisites(self):
        result = self.installer.check_tool_available()
        if result['available']:
            print(f"{COLOR_INFO}Hytale downloader is installed ({result['platform']}).{COLOR_RESET}")
            return 0
        print(f"{COLOR_WARNING}Hytale downloader not available on {result['platform']}: {result.get('error')}{COLOR_RESET}")
        print("Run: hytalepanel download-tool")
        return 1

    def _handle_download_tool(self):
        print("Downloading Hytale downloader...")
        thread = self.installer.start_tool_download()
        with tqdm(total=100, unit="%", desc="Downloader", leave=True) as bar:
            while thread.is_alive():
                thread.join(POLL_INTERVAL)
                self._update_bar(bar, self.installer.get_status()['progress'])
            status = self.installer.get_status()
            self._update_bar(bar, status['progress'])

        if status['state'] == InstallState.TOOL_INSTALLED.value:
            print(f"{COLOR_INFO}Hytale downloader installed.{COLOR_RESET}")
            return 0
        print(f"{COLOR_ERROR}Download failed: {status['error']}{COLOR_RESET}")
        return 1

    def _resolve_path(self, path):
        return path or ConfigHandler().get_server_path() or None

    def _handle_install(self, target):
        target = self._resolve_path(target)
        if not target:
            print(f"{COLOR_ERROR}No target directory given and no server_path configured.{COLOR_RESET}")
            return 1

        installer = self.installer
        done = threading.Event()

        def on_auth(payload):
            if payload.get('success'):
                print(f"\n{COLOR_INFO}Authentication successful, downloading server files...{COLOR_RESET}")
            else:
                self._print_auth_prompt(payload.get('verificationUrl'), payload.get('deviceCode'))

        def on_complete(_snapshot):
            done.set()

        installer.events.on(AUTH_REQUEST_EVENT, on_auth)
        installer.events.on(INSTALL_COMPLETE_EVENT, on_complete)
        try:
            print(f"Installing Hytale server into {target}")
            installer.start_install(target)
            self._wait_for_install(done)
        except KeyboardInterrupt:
            print(f"\n{COLOR_WARNING}Cancelling installation...{COLOR_RESET}")
            installer.cancel_install()
            return 1
        finally:
            installer.events.off(AUTH_REQUEST_EVENT, on_auth)
            installer.events.off(INSTALL_COMPLETE_EVENT, on_complete)

        status = installer.get_status()
        if status['state'] == InstallState.FINISHED.value:
            version = installer.get_game_version(target)['version']
            print(f"{COLOR_INFO}Installation finished (version {version}).{COLOR_RESET}")
            return 0
        print(f"{COLOR_ERROR}Installation failed: {status['error']}{COLOR_RESET}")
        return 1

    def _wait_for_install(self, done):
        phase = None
        bar = None
        try:
            while not done.is_set():
                done.wait(POLL_INTERVAL)
                status = self.installer.get_status()
                state = status['state']
                if state in (InstallState.DOWNLOADING_GAME.value, InstallState.EXTRACTING.value):
                    if state != phase:
                        if bar is not None:
                            bar.close()
                        bar = tqdm(total=100, unit="%", desc=state.replace('_', ' ').capitalize())
                        phase = state
                    self._update_bar(bar, status['progress'])
                elif InstallState(state) not in ACTIVE_STATES and not self.installer.is_running():
                    break
        finally:
            if bar is not None:
                bar.close()

    @staticmethod
    def _update_bar(bar, progress):
        if progress > bar.n:
            bar.update(progress - bar.n)

    def _print_auth_prompt(self, url, code):
        print(f"\n{COLOR_PROMPT}Authorize this server with your Hytale account:{COLOR_RESET}")
        if url:
            print(f"  Visit: {url}")
        if code:
            print(f"  Code:  {code}")

    def _handle_version(self, path):
        path = self._resolve_path(path)
        if not path:
            print(f"{COLOR_ERROR}No server directory given and no server_path configured.{COLOR_RESET}")
            return 1
        print(self.installer.get_game_version(path)['version'])
        return 0

    def _handle_check_update(self, path):
        print("Checking for updates...")
        result = self.installer.check_update(self._resolve_path(path))
        if result.get('requires_auth'):
            self._print_auth_prompt(result.get('verification_url'), result.get('device_code'))
        if result.get('error'):
            print(f"{COLOR_ERROR}Update check failed: {result['error']}{COLOR_RESET}")
            return 1

        print(f"Current version: {result['current_version']}")
        print(f"Latest version:  {result['latest_version'] or 'unknown'}")
        if result['update_available']:
            print(f"{COLOR_INFO}Update available. Run: hytalepanel install{COLOR_RESET}")
        else:
            print(f"{COLOR_INFO}Server files are up to date.{COLOR_RESET}")
        return 0


def main(argv=None):
    """Console script entry point"""
    try:
        return HytalePanelCLI().run(argv)
    except KeyboardInterrupt:
        print(f"\n{COLOR_INFO}Exiting hytalepanel...{COLOR_RESET}")
        return 130


if __name__ == "__main__":
    sys.exit(main())
