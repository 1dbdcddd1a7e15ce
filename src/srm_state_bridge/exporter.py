from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge

from srm_state_bridge.service import PollResult


_DEVICE_VIEWS = ("all", "online", "online_wifi", "online_ethernet")


class BridgeMetricsPublisher:
    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        if registry is None:
            registry = CollectorRegistry()
        self.registry = registry

        self.poll_success = Gauge(
            "srm_poll_success",
            "Latest poll status (1=success, 0=failure)",
            ["router"],
            registry=self.registry,
        )
        self.poll_duration_seconds = Gauge(
            "srm_poll_duration_seconds",
            "Duration of the last router poll cycle in seconds",
            ["router"],
            registry=self.registry,
        )
        self.poll_timestamp_seconds = Gauge(
            "srm_poll_timestamp_seconds",
            "Unix timestamp of the last successful poll cycle",
            ["router"],
            registry=self.registry,
        )
        self.devices = Gauge(
            "srm_devices",
            "Devices known to the router per view",
            ["router", "view"],
            registry=self.registry,
        )
        self.mesh_nodes = Gauge(
            "srm_mesh_nodes",
            "Mesh nodes reported by the router",
            ["router"],
            registry=self.registry,
        )
        self.wifi_profiles = Gauge(
            "srm_wifi_profiles",
            "Wifi profiles reported by the router",
            ["router"],
            registry=self.registry,
        )
        self.connected = Gauge(
            "srm_connected",
            "Router session state (1=authenticated, 0=disconnected)",
            ["router"],
            registry=self.registry,
        )
        self.reconnects_total = Counter(
            "srm_reconnects",
            "Reconnects scheduled after a timeout or a dropped session",
            ["router"],
            registry=self.registry,
        )
        self.write_back_total = Counter(
            "srm_write_back",
            "Wifi write-back requests handled, by result",
            ["router", "result"],
            registry=self.registry,
        )

    def apply_poll_result(self, *, router: str, result: PollResult) -> None:
        self.poll_success.labels(router=router).set(1.0 if result.success else 0.0)
        if result.poll_duration_seconds is not None:
            self.poll_duration_seconds.labels(router=router).set(result.poll_duration_seconds)
        if not result.success:
            return
        if result.observed_at is not None:
            self.poll_timestamp_seconds.labels(router=router).set(result.observed_at)
        for view in _DEVICE_VIEWS:
            key = f"devices_{view}"
            if key in result.counts:
                self.devices.labels(router=router, view=view).set(float(result.counts[key]))
        if "mesh_nodes" in result.counts:
            self.mesh_nodes.labels(router=router).set(float(result.counts["mesh_nodes"]))
        if "wifi_profiles" in result.counts:
            self.wifi_profiles.labels(router=router).set(float(result.counts["wifi_profiles"]))

    def set_connected(self, *, router: str, connected: bool) -> None:
        self.connected.labels(router=router).set(1.0 if connected else 0.0)

    def record_reconnect(self, *, router: str) -> None:
        self.reconnects_total.labels(router=router).inc()

    def record_write_back(self, *, router: str, result: str) -> None:
        self.write_back_total.labels(router=router, result=result).inc()
