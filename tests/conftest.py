from __future__ import annotations

import copy
from collections.abc import Callable
from typing import Any

import pytest

from srm_state_bridge.controller import BridgeController, BridgeSettings
from srm_state_bridge.service import StateStore


def _sample_status() -> dict[str, Any]:
    return {
        "ipv4": {"conn_status": "connected", "ip": "203.0.113.7"},
        "ipv6": {"conn_status": "disconnected", "ip": ""},
    }


def _sample_devices() -> list[dict[str, Any]]:
    return [
        {"hostname": "laptop", "mac": "aa:bb:cc:00:00:01", "is_online": True, "is_wireless": True},
        {"hostname": "nas", "mac": "aa:bb:cc:00:00:02", "is_online": True, "is_wireless": False},
        {"hostname": "phone", "mac": "aa:bb:cc:00:00:03", "is_online": False, "is_wireless": True},
    ]


def _sample_nodes() -> list[dict[str, Any]]:
    return [
        {
            "name": "Living Room",
            "band": "5G",
            "connected_devices": 4,
            "current_rate_rx": 866000,
            "current_rate_tx": 433000,
            "network_status": "good",
            "node_id": 0,
            "node_status": "online",
            "parent_node_id": -1,
            "signalstrength": 100,
        },
        {
            "name": "Office.AP",
            "band": "5G",
            "connected_devices": 1,
            "current_rate_rx": 1500,
            "current_rate_tx": 500,
            "network_status": "fair",
            "node_id": 3,
            "node_status": "online",
            "parent_node_id": 0,
            "signalstrength": 61,
        },
    ]


def _radio(ssid: str, *, enable: bool = True) -> dict[str, Any]:
    return {
        "ssid": ssid,
        "enable": enable,
        "enable_client_isolation": False,
        "hide_ssid": False,
        "mac_filter": {"profile_id": 2},
        "schedule": {"enable": False},
    }


def _sample_profiles() -> list[dict[str, Any]]:
    return [
        {"id": 0, "radio_list": [_radio("Home WiFi")]},
        {"id": 1, "radio_list": [_radio("Guest*Net", enable=False)]},
    ]


class FakeRouter:
    """In-memory router implementing the RouterClient protocol.

    ``fail_with`` maps a method name to the exception that method raises until
    the entry is removed.
    """

    def __init__(self) -> None:
        self.status = _sample_status()
        self.devices = _sample_devices()
        self.nodes = _sample_nodes()
        self.profiles = _sample_profiles()
        self.traffic: Any = [{"deviceID": "aa:bb:cc:00:00:01", "download": 1200, "upload": 80}]
        self.calls: list[str] = []
        self.fail_with: dict[str, Exception] = {}
        self.login: tuple[str, str, str, float] | None = None
        self.update_calls: list[list[dict[str, Any]]] = []

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        error = self.fail_with.get(name)
        if error is not None:
            raise error

    def authenticate(self, base_url: str, username: str, password: str, *, timeout: float) -> None:
        self._enter("authenticate")
        self.login = (base_url, username, password, timeout)

    def logout(self) -> None:
        self._enter("logout")

    def get_connection_status(self) -> dict[str, Any]:
        self._enter("get_connection_status")
        return copy.deepcopy(self.status)

    def get_all_devices(self) -> list[dict[str, Any]]:
        self._enter("get_all_devices")
        return copy.deepcopy(self.devices)

    def get_mesh_nodes(self) -> list[dict[str, Any]]:
        self._enter("get_mesh_nodes")
        return copy.deepcopy(self.nodes)

    def get_wifi_settings(self) -> dict[str, Any]:
        self._enter("get_wifi_settings")
        return {"profiles": copy.deepcopy(self.profiles)}

    def get_traffic(self, interval: str) -> Any:
        self._enter(f"get_traffic:{interval}")
        return copy.deepcopy(self.traffic)

    def set_wifi_settings(self, profiles: list[dict[str, Any]]) -> None:
        self._enter("set_wifi_settings")
        self.update_calls.append(copy.deepcopy(profiles))
        self.profiles = copy.deepcopy(profiles)


class FakeScheduler:
    """Scheduler double whose timers only fire when a test calls ``fire``."""

    def __init__(self) -> None:
        self.armed: dict[str, tuple[float, Callable[[], None], bool]] = {}
        self.history: list[tuple[str, float]] = []

    def arm(self, name: str, delay: float, callback: Callable[[], None], *, repeat: bool = False) -> None:
        self.armed[name] = (delay, callback, repeat)
        self.history.append((name, delay))

    def cancel(self, name: str) -> bool:
        return self.armed.pop(name, None) is not None

    def cancel_all(self) -> None:
        self.armed.clear()

    def is_armed(self, name: str) -> bool:
        return name in self.armed

    def fire(self, name: str) -> None:
        _, callback, repeat = self.armed[name]
        if not repeat:
            del self.armed[name]
        callback()


class ClientFactory:
    def __init__(self, router: FakeRouter) -> None:
        self.router = router
        self.created = 0

    def __call__(self) -> FakeRouter:
        self.created += 1
        return self.router


@pytest.fixture
def store():
    state_store = StateStore(":memory:")
    yield state_store
    state_store.close()


@pytest.fixture
def router() -> FakeRouter:
    return FakeRouter()


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def client_factory(router: FakeRouter) -> ClientFactory:
    return ClientFactory(router)


@pytest.fixture
def settings() -> BridgeSettings:
    return BridgeSettings(ip="192.168.1.1", port=8001, username="admin", password="s3cr3t")


@pytest.fixture
def controller(settings, client_factory, store, scheduler) -> BridgeController:
    return BridgeController(settings, client_factory, store, scheduler=scheduler)
