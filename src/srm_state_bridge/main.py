from __future__ import annotations

import argparse
import logging
import os
import sys
import threading
from dataclasses import dataclass
from pathlib import Path

from prometheus_client import start_http_server

from srm_state_bridge.client import SrmClient
from srm_state_bridge.controller import (
    CONNECT_RETRY_POLICIES,
    CONNECT_RETRY_TIMEOUT,
    MIN_INTERVAL_SECONDS,
    BridgeController,
    BridgeSettings,
)
from srm_state_bridge.exporter import BridgeMetricsPublisher
from srm_state_bridge.service import StateStore, is_valid_ipv4


LOGGER = logging.getLogger("srm_state_bridge")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    bridge: BridgeSettings
    verify_tls: bool
    db_path: Path
    listen_address: str
    listen_port: int
    log_level: str


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    return float(value)


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    return int(value)


def _bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mirror Synology SRM router state into a local state store")
    parser.add_argument(
        "--ip",
        default=os.getenv("SRM_IP"),
        required=os.getenv("SRM_IP") is None,
        help="router IPv4 address",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=_int_env("SRM_PORT", 8001),
        help="router HTTPS port",
    )
    parser.add_argument(
        "--username",
        default=os.getenv("SRM_USERNAME", "admin"),
        help="router account name",
    )
    parser.add_argument(
        "--password",
        default=os.getenv("SRM_PASSWORD", ""),
        help="router account password",
    )
    parser.add_argument(
        "--interval-seconds",
        type=float,
        default=_float_env("SRM_INTERVAL_SECONDS", MIN_INTERVAL_SECONDS),
        help="interval between poll cycles (minimum 60)",
    )
    parser.add_argument(
        "--connect-timeout-seconds",
        type=float,
        default=_float_env("SRM_CONNECT_TIMEOUT_SECONDS", 5.0),
        help="timeout for the login request",
    )
    parser.add_argument(
        "--reconnect-delay-seconds",
        type=float,
        default=_float_env("SRM_RECONNECT_DELAY_SECONDS", 60.0),
        help="delay before reconnecting after a timeout or a dropped session",
    )
    parser.add_argument(
        "--write-quiet-seconds",
        type=float,
        default=_float_env("SRM_WRITE_QUIET_SECONDS", 3.0),
        help="quiet period after a wifi change before further changes or polls",
    )
    parser.add_argument(
        "--connect-retry",
        choices=CONNECT_RETRY_POLICIES,
        default=os.getenv("SRM_CONNECT_RETRY", CONNECT_RETRY_TIMEOUT),
        help="which login failures are retried: only timeouts, or every error",
    )
    parser.add_argument(
        "--verify-tls",
        action=argparse.BooleanOptionalAction,
        default=_bool_env("SRM_VERIFY_TLS", False),
        help="verify the router TLS certificate",
    )
    parser.add_argument(
        "--db-path",
        default=os.getenv("SRM_DB_PATH", "./data/state.db"),
        help="sqlite database path for the state store",
    )
    parser.add_argument(
        "--listen-address",
        default=os.getenv("SRM_LISTEN_ADDRESS", "0.0.0.0"),
        help="http bind address for /metrics endpoint",
    )
    parser.add_argument(
        "--listen-port",
        type=int,
        default=_int_env("SRM_LISTEN_PORT", 9109),
        help="http bind port for /metrics endpoint",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        default=os.getenv("SRM_LOG_LEVEL", "INFO").upper(),
        help="python logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    return parser


def load_config(argv: list[str] | None = None) -> AppConfig:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    if not is_valid_ipv4(args.ip):
        raise ConfigError(f"the server address {args.ip} is not a valid IP-Address")
    if args.log_level not in LOG_LEVELS:
        raise ConfigError(f"unknown log level {args.log_level}")
    if args.interval_seconds < MIN_INTERVAL_SECONDS:
        LOGGER.warning(
            "poll interval %.0fs is below the minimum, using %.0fs",
            args.interval_seconds,
            MIN_INTERVAL_SECONDS,
        )
    bridge = BridgeSettings(
        ip=args.ip,
        port=args.port,
        username=args.username,
        password=args.password,
        interval_seconds=args.interval_seconds,
        connect_timeout_seconds=args.connect_timeout_seconds,
        reconnect_delay_seconds=args.reconnect_delay_seconds,
        write_quiet_seconds=args.write_quiet_seconds,
        connect_retry=args.connect_retry,
    )
    return AppConfig(
        bridge=bridge,
        verify_tls=bool(args.verify_tls),
        db_path=Path(args.db_path),
        listen_address=args.listen_address,
        listen_port=args.listen_port,
        log_level=args.log_level,
    )


def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        config = load_config(argv)
    except ConfigError as error:
        LOGGER.error("%s", error)
        sys.exit(2)
    logging.getLogger().setLevel(config.log_level)

    store = StateStore(config.db_path)
    LOGGER.info("state store %s holds %d states", config.db_path, len(store.list_states()))
    metrics = BridgeMetricsPublisher()
    start_http_server(
        port=config.listen_port,
        addr=config.listen_address,
        registry=metrics.registry,
    )
    LOGGER.info("metrics server listening on http://%s:%d/metrics", config.listen_address, config.listen_port)

    controller = BridgeController(
        config.bridge,
        lambda: SrmClient(verify_tls=config.verify_tls),
        store,
        metrics=metrics,
    )
    controller.start()
    worker = threading.Thread(target=controller.run_forever, name="srm-bridge", daemon=True)
    worker.start()

    try:
        while worker.is_alive():
            worker.join(1.0)
    except KeyboardInterrupt:
        LOGGER.info("shutdown requested, exiting")
    finally:
        controller.shutdown()
        if controller.stopped.is_set():
            store.close()


if __name__ == "__main__":
    main()
