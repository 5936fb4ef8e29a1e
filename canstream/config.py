"""
Configuration management for canstream.

This module provides centralized configuration management, supporting:
- Loading from JSON config files
- Environment variable fallback
- Validation of all settings
- The single logging setup point (``configure_logging``)
"""

import os
import json
import logging
from dataclasses import dataclass, asdict
from typing import Optional, List
from pathlib import Path

from canstream.constants import (
    CAN_BACKEND_DEFAULT, CAN_INTERFACE_DEFAULT, LISTEN_INTERVAL_MS_DEFAULT,
    RECEIVE_TIMEOUT_MS_DEFAULT, SEQUENCE_TIMEOUT_MS_DEFAULT,
)
from canstream.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

VALID_LOG_LEVELS = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
VALID_BACKENDS = {'socketcan', 'virtual', 'sim'}
LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'


@dataclass
class SocketSettings:
    """CAN socket and reception settings.

    Attributes:
        interface_name: CAN interface (e.g. 'can0', 'vcan0')
        backend: Native primitive to use ('socketcan', 'virtual' or 'sim')
        can_fd: Open the socket in CAN FD mode
        receive_timeout_ms: Default timeout for one-shot receive()
        sequence_timeout_ms: Default per-read timeout for frames() sequences
        listen_interval_ms: Read timeout of each listener tick
        raise_unhandled_errors: Raise 'error' events that have no observer
        log_level: Logging level ('DEBUG', 'INFO', 'WARNING', 'ERROR')
    """
    interface_name: str = CAN_INTERFACE_DEFAULT
    backend: str = CAN_BACKEND_DEFAULT
    can_fd: bool = False
    receive_timeout_ms: int = RECEIVE_TIMEOUT_MS_DEFAULT
    sequence_timeout_ms: int = SEQUENCE_TIMEOUT_MS_DEFAULT
    listen_interval_ms: int = LISTEN_INTERVAL_MS_DEFAULT
    raise_unhandled_errors: bool = True
    log_level: str = 'INFO'

    def validate(self) -> List[str]:
        """Validate settings and return list of error messages (empty if valid)."""
        errors = []
        if not self.interface_name or not isinstance(self.interface_name, str):
            errors.append("CAN interface name must be a non-empty string")
        if self.backend not in VALID_BACKENDS:
            errors.append(f"Backend must be one of {sorted(VALID_BACKENDS)}")
        for name in ('receive_timeout_ms', 'sequence_timeout_ms', 'listen_interval_ms'):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                errors.append(f"{name} must be a positive integer")
        if str(self.log_level).upper() not in VALID_LOG_LEVELS:
            errors.append(f"Log level must be one of {sorted(VALID_LOG_LEVELS)}")
        return errors


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class ConfigManager:
    """Centralized configuration manager.

    Settings are loaded from multiple sources with priority:
    1. JSON config file (highest priority)
    2. Environment variables
    3. Default values (lowest priority)

    Attributes:
        socket_settings: CAN socket and reception configuration
        _config_file: Path to JSON config file (if loaded)
    """

    ENV_INT_SETTINGS = {
        'CAN_RECEIVE_TIMEOUT_MS': 'receive_timeout_ms',
        'CAN_SEQUENCE_TIMEOUT_MS': 'sequence_timeout_ms',
        'CAN_LISTEN_INTERVAL_MS': 'listen_interval_ms',
    }

    def __init__(self, config_file: Optional[str] = None, strict: bool = False):
        """Initialize ConfigManager.

        Args:
            config_file: Optional path to JSON config file. If None, will try
                         ~/.canstream/config.json
            strict: Raise ConfigurationError instead of warning when the
                    loaded configuration is invalid
        """
        self.socket_settings = SocketSettings()
        self._config_file: Optional[str] = config_file

        self._load_from_environment()
        if config_file:
            self._load_from_file(config_file)
        else:
            self._load_from_default_locations()

        errors = self.validate()
        if errors:
            if strict:
                raise ConfigurationError(f"Invalid configuration: {'; '.join(errors)}")
            logger.warning(f"Configuration validation errors: {errors}")

    def _load_from_environment(self) -> None:
        s = self.socket_settings
        interface_name = os.environ.get('CAN_INTERFACE')
        if interface_name:
            s.interface_name = interface_name
        backend = os.environ.get('CAN_BACKEND')
        if backend:
            s.backend = backend.lower()
        can_fd = os.environ.get('CAN_FD')
        if can_fd:
            s.can_fd = _env_bool(can_fd)
        for env_name, attr in self.ENV_INT_SETTINGS.items():
            raw = os.environ.get(env_name)
            if not raw:
                continue
            try:
                setattr(s, attr, int(raw))
            except (ValueError, TypeError):
                logger.warning(f"Invalid {env_name} environment variable: {raw}")
        log_level = os.environ.get('LOG_LEVEL')
        if log_level:
            s.log_level = log_level.upper()

    def _load_from_file(self, file_path: str) -> bool:
        """Load configuration from a JSON file.

        Returns:
            True if loaded successfully, False otherwise
        """
        if not os.path.exists(file_path):
            logger.debug(f"Config file not found: {file_path}")
            return False

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load config file {file_path}: {e}")
            return False

        section = data.get('socket_settings', {})
        s = self.socket_settings
        for key, value in section.items():
            if not hasattr(s, key):
                logger.warning(f"Unknown socket setting in {file_path}: {key}")
                continue
            if key == 'log_level':
                value = str(value).upper()
            setattr(s, key, value)

        self._config_file = file_path
        logger.info(f"Loaded configuration from {file_path}")
        return True

    def _load_from_default_locations(self) -> None:
        user_config_file = Path.home() / '.canstream' / 'config.json'
        if user_config_file.exists():
            self._load_from_file(str(user_config_file))

    def save_to_file(self, file_path: Optional[str] = None) -> bool:
        """Save current configuration to a JSON file.

        Args:
            file_path: Optional path to save to. If None, uses _config_file or creates user config.

        Returns:
            True if saved successfully, False otherwise
        """
        save_path = file_path or self._config_file
        if not save_path:
            save_path = str(Path.home() / '.canstream' / 'config.json')

        try:
            os.makedirs(os.path.dirname(os.path.abspath(save_path)), exist_ok=True)
            with open(save_path, 'w', encoding='utf-8') as f:
                json.dump({'socket_settings': asdict(self.socket_settings)}, f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save config file {save_path}: {e}", exc_info=True)
            return False

        self._config_file = save_path
        logger.info(f"Saved configuration to {save_path}")
        return True

    def validate(self) -> List[str]:
        return self.socket_settings.validate()


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging once for the process.

    Uses ``level`` when given, else the LOG_LEVEL environment variable, else INFO.
    """
    name = (level or os.environ.get('LOG_LEVEL') or 'INFO').upper()
    if name not in VALID_LOG_LEVELS:
        raise ConfigurationError(f"Invalid log level: {name}", setting_name='log_level',
                                 setting_value=name, expected=', '.join(sorted(VALID_LOG_LEVELS)))
    logging.basicConfig(level=getattr(logging, name), format=LOG_FORMAT)
    logging.getLogger('canstream').setLevel(getattr(logging, name))
