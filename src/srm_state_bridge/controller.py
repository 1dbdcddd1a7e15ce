from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from srm_state_bridge.client import RouterClient, RouterError, RouterNotConnected, RouterTimeout
from srm_state_bridge.exporter import BridgeMetricsPublisher
from srm_state_bridge.objects import CATALOG, STATIC_CATEGORIES
from srm_state_bridge.service import (
    PollResult,
    StateStore,
    StateValue,
    apply_wifi_change,
    parse_wifi_path,
    poll_router,
    wifi_profiles,
)


LOGGER = logging.getLogger("srm_state_bridge.controller")

MIN_INTERVAL_SECONDS = 60.0
CONNECTION_STATE = "info.connection"
WIFI_PATTERN = "wifi.*"

POLL_TIMER = "poll"
RECONNECT_TIMER = "reconnect"
WRITE_QUIET_TIMER = "write_quiet"
_EXCLUSIVE_TIMERS = {POLL_TIMER: RECONNECT_TIMER, RECONNECT_TIMER: POLL_TIMER}

CONNECT_RETRY_TIMEOUT = "timeout"
CONNECT_RETRY_ALWAYS = "always"
CONNECT_RETRY_POLICIES = (CONNECT_RETRY_TIMEOUT, CONNECT_RETRY_ALWAYS)


def clamp_interval(seconds: float) -> float:
    return max(MIN_INTERVAL_SECONDS, float(seconds))


@dataclass(frozen=True)
class BridgeSettings:
    ip: str
    port: int
    username: str
    password: str
    interval_seconds: float = MIN_INTERVAL_SECONDS
    connect_timeout_seconds: float = 5.0
    reconnect_delay_seconds: float = 60.0
    write_quiet_seconds: float = 3.0
    connect_retry: str = CONNECT_RETRY_TIMEOUT

    def __post_init__(self) -> None:
        object.__setattr__(self, "interval_seconds", clamp_interval(self.interval_seconds))
        if self.connect_retry not in CONNECT_RETRY_POLICIES:
            raise ValueError(f"unknown connect retry policy: {self.connect_retry}")

    @property
    def base_url(self) -> str:
        return f"https://{self.ip}:{self.port}"


class ControllerState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    POLLING = "polling"
    BACKOFF = "backoff"
    STOPPING = "stopping"


class Scheduler:
    """Named timer slots backed by ``threading.Timer``.

    Arming a slot replaces whatever was armed there before. A one-shot slot is
    disarmed before its callback runs; a repeating slot is re-armed first.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._timers: dict[str, threading.Timer] = {}

    def arm(self, name: str, delay: float, callback: Callable[[], None], *, repeat: bool = False) -> None:
        with self._lock:
            self._cancel_locked(name)
            self._start_locked(name, delay, callback, repeat)

    def cancel(self, name: str) -> bool:
        with self._lock:
            return self._cancel_locked(name)

    def cancel_all(self) -> None:
        with self._lock:
            for name in list(self._timers):
                self._cancel_locked(name)

    def is_armed(self, name: str) -> bool:
        with self._lock:
            return name in self._timers

    def _start_locked(self, name: str, delay: float, callback: Callable[[], None], repeat: bool) -> None:
        timer = threading.Timer(delay, self._fire, args=(name, delay, callback, repeat))
        timer.daemon = True
        timer.name = f"srm-timer-{name}"
        self._timers[name] = timer
        timer.start()

    def _cancel_locked(self, name: str) -> bool:
        timer = self._timers.pop(name, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def _fire(self, name: str, delay: float, callback: Callable[[], None], repeat: bool) -> None:
        with self._lock:
            # A cancelled or replaced timer can still wake up once.
            if self._timers.get(name) is not threading.current_thread():
                return
            if repeat:
                self._start_locked(name, delay, callback, repeat)
            else:
                del self._timers[name]
        callback()


class WriteGuard:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._held = False

    @property
    def held(self) -> bool:
        with self._lock:
            return self._held

    def try_acquire(self) -> bool:
        with self._lock:
            if self._held:
                return False
            self._held = True
            return True

    def release(self) -> None:
        with self._lock:
            self._held = False


@dataclass(frozen=True)
class _Event:
    kind: str
    path: str | None = None
    value: Any = None


class BridgeController:
    """Owns the router session and drives connect, poll, reconnect and write-back.

    Timers and store notifications only enqueue events. A single consumer,
    ``run_forever`` or ``process_pending``, handles them one at a time, so a
    poll cycle and a write-back never touch the session concurrently.
    """

    def __init__(
        self,
        settings: BridgeSettings,
        client_factory: Callable[[], RouterClient],
        store: StateStore,
        *,
        scheduler: Scheduler | None = None,
        metrics: BridgeMetricsPublisher | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.scheduler = scheduler if scheduler is not None else Scheduler()
        self.metrics = metrics
        self.last_result: PollResult | None = None
        self.stopped = threading.Event()
        self._client_factory = client_factory
        self._client: RouterClient | None = None
        self._state = ControllerState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._events: queue.Queue[_Event] = queue.Queue()
        self._tick_pending = threading.Event()
        self._write_guard = WriteGuard()
        self._skip_next_tick = False
        self._unsubscribe: Callable[[], None] | None = None
        self._consumer_lock = threading.Lock()

    @property
    def state(self) -> ControllerState:
        with self._state_lock:
            return self._state

    @property
    def write_in_progress(self) -> bool:
        return self._write_guard.held

    def start(self) -> None:
        for category in STATIC_CATEGORIES:
            self.store.ensure_tree(category, CATALOG[category])
        self._set_connection_indicator(False)
        self._post(_Event("connect"))

    def run_forever(self) -> None:
        with self._consumer_lock:
            while not self.stopped.is_set():
                if not self._dispatch(self._events.get()):
                    break

    def process_pending(self) -> int:
        with self._consumer_lock:
            return self._drain()

    def shutdown(self, timeout: float | None = 10.0) -> None:
        with self._state_lock:
            if self._state is ControllerState.STOPPING:
                return
            self._state = ControllerState.STOPPING
        LOGGER.info("shutting down router bridge")
        self.scheduler.cancel_all()
        self._post(_Event("stop"))
        # Without a running consumer the caller handles the stop itself.
        if self._consumer_lock.acquire(blocking=False):
            try:
                self._drain()
            finally:
                self._consumer_lock.release()
        elif not self.stopped.wait(timeout):
            LOGGER.warning("bridge did not stop within %.1fs; an in-flight router call is still running", timeout)

    def _drain(self) -> int:
        handled = 0
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return handled
            handled += 1
            if not self._dispatch(event):
                return handled

    def _dispatch(self, event: _Event) -> bool:
        if event.kind == "stop":
            self._handle_stop()
            return False
        if event.kind == "write_done":
            self._finish_write()
            return True
        if self.state is ControllerState.STOPPING:
            LOGGER.debug("ignoring %s event while stopping", event.kind)
            return True
        if event.kind == "connect":
            self._handle_connect()
        elif event.kind == "poll":
            self._handle_poll_tick()
        elif event.kind == "write":
            self._handle_write(event)
        else:
            raise ValueError(f"unknown controller event: {event.kind}")
        return True

    def _post(self, event: _Event) -> None:
        self._events.put(event)

    def _transition(self, new_state: ControllerState) -> bool:
        with self._state_lock:
            if self._state is ControllerState.STOPPING:
                return False
            self._state = new_state
            return True

    def _arm(self, name: str, delay: float, callback: Callable[[], None], *, repeat: bool = False) -> None:
        other = _EXCLUSIVE_TIMERS.get(name)
        if other is not None and self.scheduler.is_armed(other):
            raise RuntimeError(f"cannot arm {name} timer while {other} timer is armed")
        self.scheduler.arm(name, delay, callback, repeat=repeat)

    def _handle_connect(self) -> None:
        if not self._transition(ControllerState.CONNECTING):
            return
        client = self._client_factory()
        self._client = client
        LOGGER.debug("connecting to router %s", self.settings.base_url)
        try:
            client.authenticate(
                self.settings.base_url,
                self.settings.username,
                self.settings.password,
                timeout=self.settings.connect_timeout_seconds,
            )
        except RouterError as error:
            LOGGER.error("%s for %s", error, self.settings.ip)
            self._client = None
            if self._should_retry(error):
                self._schedule_reconnect()
            else:
                self._halt()
            return

        if not self._transition(ControllerState.POLLING):
            return
        LOGGER.info("connection to router %s is ready, starting polling", self.settings.ip)
        self._set_connection_indicator(True)
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(WIFI_PATTERN, self._on_state_change)
        self._start_polling()

    def _should_retry(self, error: RouterError) -> bool:
        if self.settings.connect_retry == CONNECT_RETRY_ALWAYS:
            return True
        return isinstance(error, RouterTimeout)

    def _schedule_reconnect(self) -> None:
        self.scheduler.cancel(POLL_TIMER)
        self._client = None
        if not self._transition(ControllerState.BACKOFF):
            return
        self._set_connection_indicator(False)
        delay = self.settings.reconnect_delay_seconds
        LOGGER.info("trying to reconnect to %s in %.0fs", self.settings.ip, delay)
        if self.metrics is not None:
            self.metrics.record_reconnect(router=self.settings.ip)
        self._arm(RECONNECT_TIMER, delay, self._on_reconnect_timer)

    def _halt(self) -> None:
        self.scheduler.cancel(POLL_TIMER)
        if not self._transition(ControllerState.DISCONNECTED):
            return
        self._set_connection_indicator(False)
        LOGGER.warning("polling of %s halted; restart the bridge to resume", self.settings.ip)

    def _start_polling(self) -> None:
        self.scheduler.cancel(POLL_TIMER)
        if self.state is not ControllerState.POLLING:
            return
        self._run_cycle()
        if self.state is ControllerState.POLLING:
            self._arm(POLL_TIMER, self.settings.interval_seconds, self._on_poll_timer, repeat=True)

    def _on_reconnect_timer(self) -> None:
        self._post(_Event("connect"))

    def _on_poll_timer(self) -> None:
        if self._tick_pending.is_set():
            LOGGER.debug("previous poll tick still pending; coalescing")
            return
        self._tick_pending.set()
        self._post(_Event("poll"))

    def _on_write_quiet_timer(self) -> None:
        self._post(_Event("write_done"))

    def _handle_poll_tick(self) -> None:
        self._tick_pending.clear()
        if self.state is not ControllerState.POLLING:
            return
        if self._skip_next_tick:
            self._skip_next_tick = False
            LOGGER.debug("skipping poll tick after wifi change")
            return
        self._run_cycle()

    def _run_cycle(self) -> None:
        client = self._client
        if client is None:
            self._schedule_reconnect()
            return
        LOGGER.info("polling data from router %s", self.settings.ip)
        try:
            result = poll_router(client, self.store)
        except RouterNotConnected:
            LOGGER.error(
                "router %s is not connected, reconnecting in %.0fs",
                self.settings.ip,
                self.settings.reconnect_delay_seconds,
            )
            self._record_result(PollResult(success=False, error="not connected"))
            self._schedule_reconnect()
            return
        except RouterError as error:
            LOGGER.error("error updating data: %s", error)
            self._record_result(PollResult(success=False, error=str(error)))
            self._halt()
            return
        self._record_result(result)

    def _record_result(self, result: PollResult) -> None:
        self.last_result = result
        if self.metrics is not None:
            self.metrics.apply_poll_result(router=self.settings.ip, result=result)

    def _on_state_change(self, path: str, state: StateValue) -> None:
        if state.ack or parse_wifi_path(path) is None:
            return
        if self._write_guard.held:
            LOGGER.warning("wifi change for %s ignored; another change is in progress", path)
            self._record_write_back("ignored")
            return
        self._post(_Event("write", path=path, value=state.value))

    def _handle_write(self, event: _Event) -> None:
        target = parse_wifi_path(event.path or "")
        if target is None:
            return
        definition = self.store.get_object(event.path or "")
        if definition is None or not definition.get("write"):
            LOGGER.warning("wifi change for %s ignored; no such writable setting", event.path)
            self._record_write_back("ignored")
            return
        client = self._client
        if self.state is not ControllerState.POLLING or client is None:
            LOGGER.warning("wifi change for %s ignored; router is not connected", event.path)
            self._record_write_back("ignored")
            return
        if not self._write_guard.try_acquire():
            LOGGER.warning("wifi change for %s ignored; another change is in progress", event.path)
            self._record_write_back("ignored")
            return

        profile_key, leaf = target
        self._skip_next_tick = True
        outcome = "failed"
        quiet_armed = False
        try:
            profiles = wifi_profiles(client.get_wifi_settings())
            if apply_wifi_change(profiles, profile_key, leaf, event.value):
                client.set_wifi_settings(profiles)
                LOGGER.info("wifi setting %s for %s changed to %s", leaf, profile_key, event.value)
                outcome = "changed"
            else:
                LOGGER.debug("wifi setting %s for %s already %s", leaf, profile_key, event.value)
                outcome = "unchanged"
            # The router applies settings asynchronously; hold further writes and
            # the next tick until the quiet window has passed.
            self.scheduler.arm(WRITE_QUIET_TIMER, self.settings.write_quiet_seconds, self._on_write_quiet_timer)
            quiet_armed = True
        except RouterError as error:
            LOGGER.info("wifi settings error for %s: %s", event.path, error)
        except (AttributeError, KeyError, IndexError, TypeError) as error:
            LOGGER.info("wifi settings error for %s: malformed payload %r", event.path, error)
        finally:
            if not quiet_armed:
                self._finish_write()
        self._record_write_back(outcome)

    def _finish_write(self) -> None:
        self._write_guard.release()
        self._skip_next_tick = False

    def _record_write_back(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_write_back(router=self.settings.ip, result=outcome)

    def _handle_stop(self) -> None:
        try:
            self.scheduler.cancel_all()
            if self._unsubscribe is not None:
                self._unsubscribe()
                self._unsubscribe = None
            client, self._client = self._client, None
            if client is not None:
                try:
                    client.logout()
                except Exception as error:
                    LOGGER.warning("logout from %s failed: %s", self.settings.ip, error)
            self._finish_write()
            self._set_connection_indicator(False)
        finally:
            self.stopped.set()
            LOGGER.info("router bridge stopped")

    def _set_connection_indicator(self, connected: bool) -> None:
        self.store.set_state(CONNECTION_STATE, connected, ack=True)
        if self.metrics is not None:
            self.metrics.set_connected(router=self.settings.ip, connected=connected)
