import json
import logging

import pytest

from canstream.config import ConfigManager, SocketSettings, configure_logging
from canstream.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path))
    for name in ("CAN_INTERFACE", "CAN_BACKEND", "CAN_FD", "CAN_RECEIVE_TIMEOUT_MS",
                 "CAN_SEQUENCE_TIMEOUT_MS", "CAN_LISTEN_INTERVAL_MS", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


def test_defaults_are_valid():
    s = SocketSettings()
    assert s.validate() == []
    cfg = ConfigManager()
    assert cfg.socket_settings == s


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("CAN_INTERFACE", "vcan3")
    monkeypatch.setenv("CAN_BACKEND", "Virtual")
    monkeypatch.setenv("CAN_FD", "yes")
    monkeypatch.setenv("CAN_RECEIVE_TIMEOUT_MS", "250")
    monkeypatch.setenv("CAN_LISTEN_INTERVAL_MS", "not-a-number")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    s = ConfigManager().socket_settings
    assert s.interface_name == "vcan3"
    assert s.backend == "virtual"
    assert s.can_fd is True
    assert s.receive_timeout_ms == 250
    assert s.listen_interval_ms == SocketSettings().listen_interval_ms
    assert s.log_level == "DEBUG"


def test_file_overrides_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("CAN_INTERFACE", "vcan3")
    path = tmp_path / "cfg.json"
    path.write_text(json.dumps({"socket_settings": {"interface_name": "can1", "log_level": "warning",
                                                    "unknown_key": 1}}))
    s = ConfigManager(str(path)).socket_settings
    assert s.interface_name == "can1"
    assert s.log_level == "WARNING"


def test_default_location_is_read(tmp_path):
    cfg_dir = tmp_path / ".canstream"
    cfg_dir.mkdir()
    (cfg_dir / "config.json").write_text(json.dumps({"socket_settings": {"backend": "sim"}}))
    assert ConfigManager().socket_settings.backend == "sim"


def test_broken_file_is_ignored(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json")
    assert ConfigManager(str(path)).socket_settings == SocketSettings()


def test_save_and_reload(tmp_path):
    cfg = ConfigManager()
    cfg.socket_settings.interface_name = "vcan9"
    cfg.socket_settings.sequence_timeout_ms = 42
    path = tmp_path / "out" / "config.json"
    assert cfg.save_to_file(str(path)) is True
    reloaded = ConfigManager(str(path)).socket_settings
    assert reloaded.interface_name == "vcan9"
    assert reloaded.sequence_timeout_ms == 42


def test_validate_reports_each_problem():
    s = SocketSettings(interface_name="", backend="pcan", receive_timeout_ms=0,
                       listen_interval_ms=True, log_level="LOUD")
    errors = s.validate()
    assert len(errors) == 5


def test_strict_mode_raises(monkeypatch):
    monkeypatch.setenv("CAN_BACKEND", "pcan")
    ConfigManager()  # lenient: warns only
    with pytest.raises(ConfigurationError):
        ConfigManager(strict=True)


@pytest.fixture
def restore_log_level():
    logger = logging.getLogger("canstream")
    level = logger.level
    yield
    logger.setLevel(level)


def test_configure_logging_levels(monkeypatch, restore_log_level):
    configure_logging("debug")
    assert logging.getLogger("canstream").level == logging.DEBUG
    monkeypatch.setenv("LOG_LEVEL", "ERROR")
    configure_logging()
    assert logging.getLogger("canstream").level == logging.ERROR
    with pytest.raises(ConfigurationError) as exc:
        configure_logging("chatty")
    assert exc.value.setting_name == "log_level"
