from __future__ import annotations

import fnmatch
import json
import logging
import re
import sqlite3
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from srm_state_bridge.client import RouterClient, RouterError
from srm_state_bridge.objects import MESH, WIFI, WRITABLE_WIFI_LEAVES, ObjectDefinition


_IPV4_OCTET = r"(25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)"
_IPV4_FORMAT = re.compile(r"\.".join([_IPV4_OCTET] * 4))
# Everything outside this set is replaced; "." is the path separator and "*"/"?" are
# subscription wildcards, so both are forbidden in a segment.
_FORBIDDEN_CHARS = re.compile(r"[^\w\-:!#$%&()+=@^{}|~ ]+")
LOGGER = logging.getLogger("srm_state_bridge.store")
POLL_LOGGER = logging.getLogger("srm_state_bridge.poll")
TRAFFIC_INTERVAL = "live"


def is_valid_ipv4(text: Any) -> bool:
    if not isinstance(text, str):
        return False
    return _IPV4_FORMAT.fullmatch(text) is not None


def sanitize_segment(raw: str) -> str:
    return _FORBIDDEN_CHARS.sub("_", raw) or "_"


@dataclass(frozen=True)
class StateValue:
    value: Any
    ack: bool
    ts: float


StateCallback = Callable[[str, StateValue], None]


class StateStore:
    def __init__(self, db_path: str | Path) -> None:
        if str(db_path) != ":memory:":
            db_path = Path(db_path)
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._lock = threading.Lock()
        self._subscribers: dict[int, tuple[str, StateCallback]] = {}
        self._next_token = 0
        self._create_tables()

    def _create_tables(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS objects (
                    path TEXT PRIMARY KEY,
                    definition TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS states (
                    path TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    ack INTEGER NOT NULL,
                    ts REAL NOT NULL
                );
                """
            )
            self._conn.commit()

    def ensure_exists(self, path: str, definition: ObjectDefinition) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "INSERT OR IGNORE INTO objects (path, definition) VALUES (?, ?)",
                (path, json.dumps(definition.as_dict(), sort_keys=True)),
            )
            self._conn.commit()
        created = cursor.rowcount == 1
        if created:
            LOGGER.debug("created object %s", path)
        return created

    def ensure_tree(self, prefix: str, definitions: Iterable[ObjectDefinition]) -> int:
        return sum(1 for definition in definitions if self.ensure_exists(definition.path_under(prefix), definition))

    def get_object(self, path: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute("SELECT definition FROM objects WHERE path = ?", (path,)).fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    def set_state(self, path: str, value: Any, *, ack: bool = True) -> StateValue:
        state = StateValue(value=value, ack=ack, ts=time.time())
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO states (path, value, ack, ts)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (path) DO UPDATE SET value = excluded.value, ack = excluded.ack, ts = excluded.ts
                """,
                (path, json.dumps(value), int(ack), state.ts),
            )
            self._conn.commit()
            listeners = [
                callback for pattern, callback in self._subscribers.values() if fnmatch.fnmatchcase(path, pattern)
            ]
        for callback in listeners:
            callback(path, state)
        return state

    def get_state(self, path: str) -> StateValue | None:
        with self._lock:
            row = self._conn.execute("SELECT value, ack, ts FROM states WHERE path = ?", (path,)).fetchone()
        if row is None:
            return None
        return StateValue(value=json.loads(row[0]), ack=bool(row[1]), ts=float(row[2]))

    def list_states(self, prefix: str = "") -> dict[str, StateValue]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT path, value, ack, ts FROM states WHERE path LIKE ? ORDER BY path",
                (f"{prefix}%",),
            ).fetchall()
        return {
            str(path): StateValue(value=json.loads(value), ack=bool(ack), ts=float(ts))
            for path, value, ack, ts in rows
        }

    def subscribe(self, pattern: str, callback: StateCallback) -> Callable[[], None]:
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscribers[token] = (pattern, callback)

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return unsubscribe

    def close(self) -> None:
        with self._lock:
            self._subscribers.clear()
            self._conn.close()


@dataclass(frozen=True)
class FieldMapping:
    leaf: str
    accessor: Callable[[dict[str, Any]], Any]


def _lookup(*keys: str | int) -> Callable[[dict[str, Any]], Any]:
    def read(payload: dict[str, Any]) -> Any:
        value: Any = payload
        for key in keys:
            value = value[key]
        return value

    return read


def _scaled(key: str, divisor: float) -> Callable[[dict[str, Any]], Any]:
    def read(payload: dict[str, Any]) -> Any:
        raw = payload[key]
        if raw is None:
            return None
        return raw / divisor

    return read


ROUTER_FIELDS: tuple[FieldMapping, ...] = (
    FieldMapping("IPV4_status", _lookup("ipv4", "conn_status")),
    FieldMapping("IPV4_IP", _lookup("ipv4", "ip")),
    FieldMapping("IPV6_status", _lookup("ipv6", "conn_status")),
    FieldMapping("IPV6_IP", _lookup("ipv6", "ip")),
)

# Raw rates are reported in kbit/s.
MESH_FIELDS: tuple[FieldMapping, ...] = (
    FieldMapping("band", _lookup("band")),
    FieldMapping("connected_devices", _lookup("connected_devices")),
    FieldMapping("current_rate_rx", _scaled("current_rate_rx", 1000)),
    FieldMapping("current_rate_tx", _scaled("current_rate_tx", 1000)),
    FieldMapping("network_status", _lookup("network_status")),
    FieldMapping("node_id", _lookup("node_id")),
    FieldMapping("node_status", _lookup("node_status")),
    FieldMapping("parent_node_id", _lookup("parent_node_id")),
    FieldMapping("signal_strength", _lookup("signalstrength")),
)

WIFI_FIELDS: tuple[FieldMapping, ...] = (
    FieldMapping("enable", _lookup("radio_list", 0, "enable")),
    FieldMapping("enable_client_isolation", _lookup("radio_list", 0, "enable_client_isolation")),
    FieldMapping("hide_ssid", _lookup("radio_list", 0, "hide_ssid")),
    FieldMapping("mac_filter", _lookup("radio_list", 0, "mac_filter", "profile_id")),
    FieldMapping("schedule_enable", _lookup("radio_list", 0, "schedule", "enable")),
)

# Location of each writable wifi leaf inside radio_list[0].
WIFI_WRITE_TARGETS: dict[str, tuple[str, ...]] = {
    "enable": ("enable",),
    "enable_client_isolation": ("enable_client_isolation",),
    "hide_ssid": ("hide_ssid",),
    "schedule_enable": ("schedule", "enable"),
}


def write_fields(
    store: StateStore,
    prefix: str,
    mappings: Iterable[FieldMapping],
    payload: dict[str, Any],
) -> None:
    for mapping in mappings:
        store.set_state(f"{prefix}.{mapping.leaf}", mapping.accessor(payload), ack=True)


def device_views(devices: list[dict[str, Any]]) -> dict[str, list[dict[str, Any]]]:
    online = [item for item in devices if item.get("is_online") is True]
    return {
        "all": devices,
        "online": online,
        "online_wifi": [item for item in online if item.get("is_wireless") is True],
        "online_ethernet": [item for item in online if item.get("is_wireless") is False],
    }


def wifi_profile_key(profile: dict[str, Any]) -> str:
    return sanitize_segment(str(profile["radio_list"][0]["ssid"]))


def mesh_node_key(node: dict[str, Any]) -> str:
    return sanitize_segment(str(node["name"]))


def parse_wifi_path(path: str) -> tuple[str, str] | None:
    parts = path.split(".")
    if len(parts) != 3 or parts[0] != "wifi":
        return None
    _, profile_key, leaf = parts
    if leaf not in WRITABLE_WIFI_LEAVES:
        return None
    return profile_key, leaf


def apply_wifi_change(profiles: list[dict[str, Any]], profile_key: str, leaf: str, value: Any) -> bool:
    """Set one writable field on the profile whose sanitized SSID is ``profile_key``.

    Returns True when a profile was changed; an unknown profile or an unchanged
    value leaves ``profiles`` untouched.
    """
    keys = WIFI_WRITE_TARGETS[leaf]
    for profile in profiles:
        if wifi_profile_key(profile) != profile_key:
            continue
        container = profile["radio_list"][0]
        for key in keys[:-1]:
            container = container[key]
        if container[keys[-1]] == value:
            return False
        container[keys[-1]] = value
        return True
    return False


def wifi_profiles(settings: dict[str, Any]) -> list[dict[str, Any]]:
    profiles = settings["profiles"]
    if not isinstance(profiles, list):
        raise TypeError("wifi profiles is not a list")
    return profiles


@dataclass(frozen=True)
class PollResult:
    success: bool
    observed_at: float | None = None
    poll_duration_seconds: float | None = None
    counts: dict[str, int] = field(default_factory=dict)
    error: str | None = None


def poll_router(client: RouterClient, store: StateStore) -> PollResult:
    """Read every tracked category once and mirror it into ``store``.

    Reads and writes happen strictly in the order status, devices, mesh, wifi,
    traffic. Router failures propagate as ``RouterError``; payloads missing the
    expected fields are reported as a generic ``RouterError`` too.
    """
    started_at = time.time()
    monotonic_start = time.monotonic()
    counts: dict[str, int] = {}
    try:
        status = client.get_connection_status()
        POLL_LOGGER.debug("connection status: %s", json.dumps(status))
        write_fields(store, "router", ROUTER_FIELDS, status)

        devices = client.get_all_devices()
        for view, entries in device_views(devices).items():
            POLL_LOGGER.debug("device list %s: %d entries", view, len(entries))
            store.set_state(f"devices.{view}", json.dumps(entries), ack=True)
            counts[f"devices_{view}"] = len(entries)

        nodes = client.get_mesh_nodes()
        POLL_LOGGER.debug("mesh nodes: %s", json.dumps(nodes))
        store.set_state("devices.mesh", json.dumps(nodes), ack=True)
        for node in nodes:
            prefix = f"mesh.{mesh_node_key(node)}"
            store.ensure_tree(prefix, MESH)
            write_fields(store, prefix, MESH_FIELDS, node)
        counts["mesh_nodes"] = len(nodes)

        profiles = wifi_profiles(client.get_wifi_settings())
        POLL_LOGGER.debug("wifi settings: %s", json.dumps(profiles))
        for profile in profiles:
            prefix = f"wifi.{wifi_profile_key(profile)}"
            store.ensure_tree(prefix, WIFI)
            write_fields(store, prefix, WIFI_FIELDS, profile)
        counts["wifi_profiles"] = len(profiles)

        traffic = client.get_traffic(TRAFFIC_INTERVAL)
        POLL_LOGGER.debug("live traffic: %s", json.dumps(traffic))
        store.set_state("traffic.live", json.dumps(traffic), ack=True)
    except (AttributeError, KeyError, IndexError, TypeError, ValueError) as error:
        raise RouterError(f"malformed router payload: {error!r}") from error

    return PollResult(
        success=True,
        observed_at=started_at,
        poll_duration_seconds=time.monotonic() - monotonic_start,
        counts=counts,
    )
