from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ObjectDefinition:
    # An empty leaf is the channel object of the sub-tree itself.
    leaf: str
    kind: str
    name: str
    value_type: str | None = None
    role: str | None = None
    write: bool = False
    unit: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def path_under(self, prefix: str) -> str:
        return f"{prefix}.{self.leaf}" if self.leaf else prefix

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.kind, "name": self.name}
        if self.kind == "state":
            payload["value_type"] = self.value_type
            payload["role"] = self.role
            payload["read"] = True
            payload["write"] = self.write
            if self.unit is not None:
                payload["unit"] = self.unit
        payload.update(self.extra)
        return payload


def _channel(name: str) -> ObjectDefinition:
    return ObjectDefinition(leaf="", kind="channel", name=name)


def _state(
    leaf: str,
    name: str,
    value_type: str,
    role: str,
    *,
    write: bool = False,
    unit: str | None = None,
) -> ObjectDefinition:
    return ObjectDefinition(
        leaf=leaf,
        kind="state",
        name=name,
        value_type=value_type,
        role=role,
        write=write,
        unit=unit,
    )


INFO: tuple[ObjectDefinition, ...] = (
    _channel("Information"),
    _state("connection", "Router connected", "boolean", "indicator.connected"),
)

ROUTER: tuple[ObjectDefinition, ...] = (
    _channel("Router connection"),
    _state("IPV4_status", "IPv4 connection status", "string", "info.status"),
    _state("IPV4_IP", "IPv4 address", "string", "info.ip"),
    _state("IPV6_status", "IPv6 connection status", "string", "info.status"),
    _state("IPV6_IP", "IPv6 address", "string", "info.ip"),
)

DEVICES: tuple[ObjectDefinition, ...] = (
    _channel("Devices"),
    _state("all", "All known devices", "string", "json"),
    _state("online", "Online devices", "string", "json"),
    _state("online_wifi", "Online wifi devices", "string", "json"),
    _state("online_ethernet", "Online ethernet devices", "string", "json"),
    _state("mesh", "Mesh nodes", "string", "json"),
)

TRAFFIC: tuple[ObjectDefinition, ...] = (
    _channel("Traffic"),
    _state("live", "Live traffic", "string", "json"),
)

MESH: tuple[ObjectDefinition, ...] = (
    _channel("Mesh node"),
    _state("band", "Band", "string", "info"),
    _state("connected_devices", "Connected devices", "number", "value"),
    _state("current_rate_rx", "Current rate RX", "number", "value", unit="Mbit/s"),
    _state("current_rate_tx", "Current rate TX", "number", "value", unit="Mbit/s"),
    _state("network_status", "Network status", "string", "info.status"),
    _state("node_id", "Node id", "number", "value"),
    _state("node_status", "Node status", "string", "info.status"),
    _state("parent_node_id", "Parent node id", "number", "value"),
    _state("signal_strength", "Signal strength", "number", "value", unit="%"),
)

WIFI: tuple[ObjectDefinition, ...] = (
    _channel("Wifi network"),
    _state("enable", "Wifi enabled", "boolean", "switch.enable", write=True),
    _state("enable_client_isolation", "Client isolation", "boolean", "switch.enable", write=True),
    _state("hide_ssid", "Hide SSID", "boolean", "switch.enable", write=True),
    _state("mac_filter", "MAC filter profile", "number", "value"),
    _state("schedule_enable", "Schedule enabled", "boolean", "switch.enable", write=True),
)

CATALOG: dict[str, tuple[ObjectDefinition, ...]] = {
    "info": INFO,
    "router": ROUTER,
    "devices": DEVICES,
    "traffic": TRAFFIC,
    "mesh": MESH,
    "wifi": WIFI,
}

# Categories created once at startup; mesh and wifi sub-trees are keyed by
# entity name and created lazily during a poll cycle.
STATIC_CATEGORIES: tuple[str, ...] = ("info", "router", "devices", "traffic")

WRITABLE_WIFI_LEAVES: frozenset[str] = frozenset(item.leaf for item in WIFI if item.write)
