"""Manages loading, updating, and validating the application's configuration.

This module is responsible for handling the `config.ini` file. It includes
functionality to:
- Create a new configuration file from a template if one doesn't exist.
- Update an existing configuration file with new options from the template
  while preserving user-defined values.
- Parse the file into typed `AppConfig` / `ServerConfig` objects.
- Validate the configuration to ensure every server has a URL and a usable
  category map, and that numeric values are sensible.
- Reload the configuration while running, so a fixed category map is picked
  up on the next poll cycle.

A server is declared by a `[SERVER <name>]` section and its category map by a
matching `[CATEGORIES <name>]` section. Option names are case sensitive.
"""
import configparser
import logging
import os
import shutil
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Tuple

import configupdater

from .core_logic.move_ledger import ledger_file_name
from .utils import ConfigError, Timeouts, parse_size

SERVER_PREFIX = 'SERVER '
CATEGORIES_PREFIX = 'CATEGORIES '
SUPPORTED_CLIENT_TYPES = ['qbittorrent']

DEFAULT_POLL_INTERVAL = 60.0
DEFAULT_RATE_LIMIT_DELAY = 5.0
DEFAULT_LOG_FILE = 'qbit_mover.log'
DEFAULT_MAX_LOG_FILE_SIZE = '10M'
DEFAULT_LEDGER_DIR = 'ledger'


@dataclass(frozen=True)
class ServerConfig:
    """Connection details and path mapping for one torrent client instance."""
    name: str
    url: str
    username: str = ''
    password: str = ''
    categories: Dict[str, str] = field(default_factory=dict)
    root_path: Optional[str] = None
    path_prefix: Optional[str] = None
    rate_limit_delay: float = DEFAULT_RATE_LIMIT_DELAY
    verify_cert: bool = True
    remove_after_move: bool = True
    client_type: str = 'qbittorrent'
    request_timeout: int = Timeouts.REQUEST


@dataclass(frozen=True)
class AppConfig:
    """Process-wide settings plus every configured server."""
    servers: List[ServerConfig] = field(default_factory=list)
    poll_interval: float = DEFAULT_POLL_INTERVAL
    rate_limit_delay: float = DEFAULT_RATE_LIMIT_DELAY
    log_file: str = DEFAULT_LOG_FILE
    max_log_file_size: str = DEFAULT_MAX_LOG_FILE_SIZE
    ledger_dir: str = DEFAULT_LEDGER_DIR

    def get_server(self, name: str) -> Optional[ServerConfig]:
        for server in self.servers:
            if server.name == name:
                return server
        return None


def update_config(config_path: str, template_path: str) -> None:
    """Updates an existing config.ini from a template, preserving user values.

    This function compares the user's configuration file with a template. It adds
    any new sections or options present in the template to the user's config
    file. Existing user-defined values, comments, and file structure are
    preserved.

    If the configuration file is modified, a timestamped backup of the original
    file is created in a `backup` subdirectory. If no configuration file exists
    at `config_path`, one is created from the template.

    Args:
        config_path: The path to the user's configuration file (e.g., 'config.ini').
        template_path: The path to the template file (e.g., 'config.ini.template').

    Raises:
        ConfigError: If the template file cannot be found, a new config cannot
            be created, or the existing config cannot be updated.
    """
    config_file = Path(config_path)
    template_file = Path(template_path)
    logging.info("STATE: Checking for configuration updates...")

    if not template_file.is_file():
        raise ConfigError(f"Config template '{template_path}' not found.")

    if not config_file.is_file():
        logging.warning(f"Configuration file not found at '{config_path}'.")
        logging.warning("Creating a new one from the template. Please review and fill it out.")
        try:
            config_file.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(template_file, config_file)
        except OSError as e:
            raise ConfigError(f"Could not create config file: {e}") from e
        return

    try:
        updater = configupdater.ConfigUpdater()
        updater.read(config_file, encoding='utf-8')
        template_updater = configupdater.ConfigUpdater()
        template_updater.read(template_file, encoding='utf-8')

        changes_made = False
        for section_name in template_updater.sections():
            template_section = template_updater[section_name]
            if not updater.has_section(section_name):
                user_section = updater.add_section(section_name)
                for key, opt in template_section.items():
                    user_section.set(key, opt.value)
                changes_made = True
                logging.info(f"CONFIG: Added new section to config: [{section_name}]")
            else:
                user_section = updater[section_name]
                for key, opt in template_section.items():
                    if not user_section.has_option(key):
                        user_section.set(key, opt.value)
                        changes_made = True
                        logging.info(f"CONFIG: Added new option in [{section_name}]: {key}")

        if changes_made:
            backup_dir = config_file.parent / 'backup'
            backup_dir.mkdir(exist_ok=True)
            backup_path = backup_dir / f"{config_file.stem}.bak_{time.strftime('%Y%m%d-%H%M%S')}"
            shutil.copy2(config_file, backup_path)
            logging.info(f"CONFIG: Backed up existing configuration to '{backup_path}'")
            with config_file.open('w', encoding='utf-8') as f:
                updater.write(f)
            logging.info("CONFIG: Configuration file has been updated with new options.")
        else:
            logging.info("CONFIG: Configuration file is already up-to-date.")
    except (configparser.Error, OSError) as e:
        raise ConfigError(f"An error occurred during config update: {e}") from e


def read_config_file(config_path: str) -> configparser.ConfigParser:
    """Reads an .ini file into a case-sensitive, non-interpolating ConfigParser.

    Raises:
        ConfigError: If the file does not exist or cannot be parsed.
    """
    config_file = Path(config_path)
    if not config_file.is_file():
        raise ConfigError(f"Configuration file not found at '{config_path}'.")
    config = configparser.ConfigParser(interpolation=None)
    config.optionxform = str  # type: ignore[assignment]
    try:
        with config_file.open('r', encoding='utf-8') as f:
            config.read_file(f)
    except (configparser.Error, UnicodeDecodeError) as e:
        raise ConfigError(f"Could not parse configuration file '{config_path}': {e}") from e
    return config


def _own_items(config: configparser.ConfigParser, section: str) -> Dict[str, str]:
    """Returns the options of a section without the inherited [DEFAULT] values."""
    defaults = config.defaults()
    return {key: value for key, value in config.items(section, raw=True) if key not in defaults}


def _optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def server_section_names(config: configparser.ConfigParser) -> List[Tuple[str, str]]:
    """Returns (section, server name) pairs for every [SERVER <name>] section."""
    return [
        (section, section[len(SERVER_PREFIX):].strip())
        for section in config.sections()
        if section.startswith(SERVER_PREFIX)
    ]


def parse_config(config: configparser.ConfigParser) -> AppConfig:
    """Builds an AppConfig from an already validated ConfigParser."""
    settings = config['SETTINGS'] if config.has_section('SETTINGS') else {}
    global_delay = float(settings.get('rate_limit_delay', DEFAULT_RATE_LIMIT_DELAY))

    servers = []
    for section, name in server_section_names(config):
        proxy = config[section]
        categories_section = f"{CATEGORIES_PREFIX}{name}"
        categories = {}
        if config.has_section(categories_section):
            categories = {k: v.strip() for k, v in _own_items(config, categories_section).items()}
        servers.append(ServerConfig(
            name=name,
            url=proxy.get('url', '').strip(),
            username=proxy.get('username', ''),
            password=proxy.get('password', ''),
            categories=categories,
            root_path=_optional(proxy.get('root_path')),
            path_prefix=_optional(proxy.get('path_prefix')),
            rate_limit_delay=proxy.getfloat('rate_limit_delay', fallback=global_delay),
            verify_cert=proxy.getboolean('verify_cert', fallback=True),
            remove_after_move=proxy.getboolean('remove_after_move', fallback=True),
            client_type=proxy.get('client_type', 'qbittorrent').strip().lower(),
            request_timeout=proxy.getint('request_timeout', fallback=Timeouts.REQUEST),
        ))

    return AppConfig(
        servers=servers,
        poll_interval=float(settings.get('poll_interval', DEFAULT_POLL_INTERVAL)),
        rate_limit_delay=global_delay,
        log_file=settings.get('log_file', DEFAULT_LOG_FILE),
        max_log_file_size=settings.get('max_log_file_size', DEFAULT_MAX_LOG_FILE_SIZE),
        ledger_dir=settings.get('ledger_dir', DEFAULT_LEDGER_DIR),
    )


def load_config(config_path: str = "config.ini") -> AppConfig:
    """Loads and validates the configuration from the specified .ini file.

    Args:
        config_path: The path to the configuration file.

    Returns:
        The parsed `AppConfig`.

    Raises:
        ConfigError: If the file is missing, unparsable, or fails validation.
    """
    config = read_config_file(config_path)
    validator = ConfigValidator(config)
    if not validator.validate():
        raise ConfigError("; ".join(validator.errors))
    return parse_config(config)


class ConfigValidator:
    """Validates the structure and values of the application's configuration.

    This class performs a series of checks on a `ConfigParser` object to ensure
    it meets the application's requirements. It verifies that at least one
    server is configured, that every server has a URL and a category map,
    checks path formats, and ensures that numeric values are within a sensible
    range.

    Attributes:
        config (configparser.ConfigParser): The configuration object to validate.
        errors (List[str]): A list of critical error messages found. If this list
            is not empty after validation, the configuration is considered invalid.
        warnings (List[str]): A list of non-critical warning messages. These
            highlight potential issues but do not invalidate the configuration.
    """

    REQUIRED_SERVER_OPTIONS = ['url']

    def __init__(self, config: configparser.ConfigParser):
        """Initializes the ConfigValidator with a configuration object.

        Args:
            config: A `ConfigParser` object loaded with the configuration
                to be validated.
        """
        self.config = config
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def validate(self) -> bool:
        """Runs all validation checks and prints resulting errors or warnings.

        Returns:
            `True` if the configuration is valid (no errors), `False` otherwise.
        """
        self._check_servers_exist()
        self._check_server_options()
        self._check_categories()
        self._check_path_rewrite()
        self._check_numeric_values()
        self._check_orphan_category_sections()

        if self.errors:
            print("Configuration errors found:", file=sys.stderr)
            for error in self.errors:
                print(f" ❌ {error}", file=sys.stderr)
            return False

        if self.warnings:
            print("Configuration warnings:", file=sys.stderr)
            for warning in self.warnings:
                print(f" ⚠️ {warning}", file=sys.stderr)

        return True

    def _check_servers_exist(self) -> None:
        """At least one [SERVER <name>] section is required, each with its own ledger file."""
        servers = server_section_names(self.config)
        if not servers:
            self.errors.append("No servers configured. Add at least one [SERVER <name>] section.")
        # Ledger file names are compared case-insensitively for case-insensitive filesystems.
        ledger_owners: Dict[str, str] = {}
        for section, name in servers:
            if not name:
                self.errors.append(f"Section [{section.strip()}] is missing a server name")
                continue
            file_name = ledger_file_name(name).casefold()
            if file_name in ledger_owners:
                self.errors.append(
                    f"Servers '{ledger_owners[file_name]}' and '{name}' would share the ledger file "
                    f"'{ledger_file_name(name)}'. Rename one of them."
                )
            else:
                ledger_owners[file_name] = name

    def _check_server_options(self) -> None:
        for section, name in server_section_names(self.config):
            for option in self.REQUIRED_SERVER_OPTIONS:
                if not self.config.has_option(section, option):
                    self.errors.append(f"Missing option '{option}' in [{section}]")
                elif not self.config.get(section, option).strip():
                    self.errors.append(f"Option '{option}' in [{section}] is empty")
            client_type = self.config.get(section, 'client_type', fallback='qbittorrent').strip().lower()
            if client_type not in SUPPORTED_CLIENT_TYPES:
                self.errors.append(
                    f"Unsupported client_type '{client_type}' in [{section}]. "
                    f"Must be one of: {', '.join(SUPPORTED_CLIENT_TYPES)}"
                )
            for option in ('verify_cert', 'remove_after_move'):
                if self.config.has_option(section, option):
                    try:
                        self.config.getboolean(section, option)
                    except ValueError:
                        self.errors.append(f"Option '{option}' in [{section}] must be true or false")

    def _check_categories(self) -> None:
        """Every server needs a non-empty [CATEGORIES <name>] section with absolute destinations."""
        for _, name in server_section_names(self.config):
            categories_section = f"{CATEGORIES_PREFIX}{name}"
            if not self.config.has_section(categories_section):
                self.errors.append(f"Server '{name}' has no [{categories_section}] section")
                continue
            categories = _own_items(self.config, categories_section)
            if not categories:
                self.errors.append(f"[{categories_section}] does not map any category")
            for category, destination in categories.items():
                if not destination.strip():
                    self.errors.append(f"Category '{category}' in [{categories_section}] has an empty destination")
                elif not Path(destination.strip()).is_absolute():
                    self.warnings.append(
                        f"Destination '{destination.strip()}' for category '{category}' is not an absolute path"
                    )

    def _check_path_rewrite(self) -> None:
        """root_path and path_prefix only make sense as a pair."""
        for section, _ in server_section_names(self.config):
            root_path = _optional(self.config.get(section, 'root_path', fallback=None))
            path_prefix = _optional(self.config.get(section, 'path_prefix', fallback=None))
            if bool(root_path) != bool(path_prefix):
                self.errors.append(f"[{section}] must set both 'root_path' and 'path_prefix', or neither")
            elif root_path and not PurePosixPath(root_path).is_absolute() and not os.path.isabs(root_path):
                self.warnings.append(f"root_path '{root_path}' in [{section}] is not an absolute path")

    def _check_numeric_values(self) -> None:
        """Validates that delays and sizes parse and are not negative."""
        numeric_options = [('SETTINGS', 'poll_interval'), ('SETTINGS', 'rate_limit_delay')]
        numeric_options += [(section, 'rate_limit_delay') for section, _ in server_section_names(self.config)]
        numeric_options += [(section, 'request_timeout') for section, _ in server_section_names(self.config)]

        for section, option in numeric_options:
            if not self.config.has_option(section, option):
                continue
            try:
                value = self.config.getfloat(section, option)
            except ValueError:
                self.errors.append(f"Option '{option}' in [{section}] must be a number")
                continue
            if value < 0:
                self.errors.append(f"Option '{option}' in [{section}] must not be negative")

        if self.config.has_option('SETTINGS', 'poll_interval'):
            try:
                if self.config.getfloat('SETTINGS', 'poll_interval') < 5:
                    self.warnings.append("poll_interval below 5 seconds will put load on the torrent clients")
            except ValueError:
                pass

        if self.config.has_option('SETTINGS', 'max_log_file_size'):
            try:
                parse_size(self.config.get('SETTINGS', 'max_log_file_size'))
            except ValueError as e:
                self.errors.append(f"Option 'max_log_file_size' in [SETTINGS]: {e}")

    def _check_orphan_category_sections(self) -> None:
        names = {name for _, name in server_section_names(self.config)}
        for section in self.config.sections():
            if section.startswith(CATEGORIES_PREFIX) and section[len(CATEGORIES_PREFIX):].strip() not in names:
                self.warnings.append(f"[{section}] does not belong to any [SERVER ...] section")


class ConfigManager:
    """Holds the current configuration and reloads it when the file changes.

    Pollers ask for their server's settings at the start of every cycle, so an
    edited category map takes effect without a restart. A reload that fails
    validation is logged and the previous configuration stays in use.
    """

    def __init__(self, config_path: str):
        self.config_path = config_path
        self._lock = threading.Lock()
        self._mtime = self._current_mtime()
        self.config = self._load_config()

    def _current_mtime(self) -> Optional[float]:
        try:
            return os.path.getmtime(self.config_path)
        except OSError:
            return None

    def _load_config(self) -> AppConfig:
        return load_config(self.config_path)

    def reload_if_changed(self) -> bool:
        """Re-reads the file if its mtime changed. Returns True if a new config was applied."""
        with self._lock:
            mtime = self._current_mtime()
            if mtime is None or mtime == self._mtime:
                return False
            self._mtime = mtime
            try:
                new_config = self._load_config()
            except ConfigError as e:
                logging.error(f"CONFIG: Reload of '{self.config_path}' failed, keeping previous settings: {e}")
                return False
            self.config = new_config
            logging.info(f"CONFIG: Reloaded configuration from '{self.config_path}'.")
            return True

    def current_server(self, name: str) -> Optional[ServerConfig]:
        """Returns the latest settings for a server, reloading the file first if needed."""
        self.reload_if_changed()
        with self._lock:
            return self.config.get_server(name)
