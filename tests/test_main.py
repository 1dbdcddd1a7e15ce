from pathlib import Path

import pytest

from srm_state_bridge.main import ConfigError, load_config, main


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in ("SRM_IP", "SRM_PORT", "SRM_INTERVAL_SECONDS", "SRM_VERIFY_TLS", "SRM_CONNECT_RETRY", "SRM_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


def test_load_config_rejects_invalid_router_address() -> None:
    with pytest.raises(ConfigError, match="not a valid IP-Address"):
        load_config(["--ip", "256.1.1.1"])


def test_load_config_clamps_interval_and_applies_defaults(tmp_path: Path) -> None:
    config = load_config(
        ["--ip", "192.168.1.1", "--interval-seconds", "10", "--db-path", str(tmp_path / "state.db")]
    )

    assert config.bridge.interval_seconds == 60.0
    assert config.bridge.port == 8001
    assert config.bridge.connect_timeout_seconds == 5.0
    assert config.bridge.reconnect_delay_seconds == 60.0
    assert config.bridge.write_quiet_seconds == 3.0
    assert config.bridge.connect_retry == "timeout"
    assert config.verify_tls is False
    assert config.db_path == tmp_path / "state.db"


def test_load_config_reads_environment(monkeypatch) -> None:
    monkeypatch.setenv("SRM_IP", "10.0.0.1")
    monkeypatch.setenv("SRM_PORT", "8443")
    monkeypatch.setenv("SRM_INTERVAL_SECONDS", "120")
    monkeypatch.setenv("SRM_VERIFY_TLS", "yes")
    monkeypatch.setenv("SRM_CONNECT_RETRY", "always")

    config = load_config([])

    assert config.bridge.ip == "10.0.0.1"
    assert config.bridge.port == 8443
    assert config.bridge.interval_seconds == 120.0
    assert config.bridge.connect_retry == "always"
    assert config.verify_tls is True


def test_main_exits_before_connecting_on_invalid_address(caplog) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["--ip", "10.0.0"])

    assert excinfo.value.code == 2
    assert "10.0.0 is not a valid IP-Address" in caplog.text


def test_load_config_normalizes_and_validates_log_level(monkeypatch) -> None:
    assert load_config(["--ip", "192.168.1.1", "--log-level", "debug"]).log_level == "DEBUG"

    with pytest.raises(SystemExit) as excinfo:
        load_config(["--ip", "192.168.1.1", "--log-level", "chatty"])
    assert excinfo.value.code == 2

    monkeypatch.setenv("SRM_LOG_LEVEL", "chatty")
    with pytest.raises(ConfigError, match="unknown log level CHATTY"):
        load_config(["--ip", "192.168.1.1"])
