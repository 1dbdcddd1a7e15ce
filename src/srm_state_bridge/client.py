from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import requests
import urllib3


LOGGER = logging.getLogger("srm_state_bridge.client")

# SYNO.API error codes that mean the sid is gone and a new login is required.
_SESSION_ERROR_CODES = frozenset({105, 106, 107, 119})
_DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0


class RouterError(Exception):
    pass


class RouterTimeout(RouterError):
    pass


class RouterNotConnected(RouterError):
    pass


class RouterClient(Protocol):
    def authenticate(self, base_url: str, username: str, password: str, *, timeout: float) -> None: ...

    def logout(self) -> None: ...

    def get_connection_status(self) -> dict[str, Any]: ...

    def get_all_devices(self) -> list[dict[str, Any]]: ...

    def get_mesh_nodes(self) -> list[dict[str, Any]]: ...

    def get_wifi_settings(self) -> dict[str, Any]: ...

    def get_traffic(self, interval: str) -> Any: ...

    def set_wifi_settings(self, profiles: list[dict[str, Any]]) -> None: ...


class SrmClient:
    """Thin adapter for the SRM web API calls the bridge needs.

    One instance holds one login (sid). Dropping the instance drops the session.
    """

    def __init__(
        self,
        *,
        verify_tls: bool = False,
        request_timeout_seconds: float = _DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.verify_tls = verify_tls
        self.request_timeout_seconds = request_timeout_seconds
        self.base_url: str | None = None
        self.session: requests.Session | None = None
        self._sid: str | None = None
        if not verify_tls:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    @property
    def is_authenticated(self) -> bool:
        return self._sid is not None

    def authenticate(self, base_url: str, username: str, password: str, *, timeout: float) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = requests.Session()
        self.session.verify = self.verify_tls
        self._sid = None

        data = self._call(
            "auth.cgi",
            api="SYNO.API.Auth",
            method="Login",
            version=2,
            params={"account": username, "passwd": password, "session": "webui", "format": "sid"},
            timeout=timeout,
            authenticated=False,
        )
        sid = data.get("sid")
        if not isinstance(sid, str) or not sid:
            raise RouterError(f"login response had no session id: {data}")
        self._sid = sid
        LOGGER.debug("login to %s successful", self.base_url)

    def logout(self) -> None:
        if self._sid is None:
            return
        try:
            self._call("auth.cgi", api="SYNO.API.Auth", method="Logout", version=2, params={"session": "webui"})
        finally:
            self._sid = None
            if self.session is not None:
                self.session.close()

    def get_connection_status(self) -> dict[str, Any]:
        data = self._call("entry.cgi", api="SYNO.Mesh.Network.WANStatus", method="get", version=1)
        status = data.get("wan_status", data)
        if not isinstance(status, dict):
            raise RouterError(f"unexpected connection status payload: {data}")
        return status

    def get_all_devices(self) -> list[dict[str, Any]]:
        data = self._call("entry.cgi", api="SYNO.Core.Network.NSM.Device", method="get", version=4)
        return _list_field(data, "devices")

    def get_mesh_nodes(self) -> list[dict[str, Any]]:
        data = self._call("entry.cgi", api="SYNO.Mesh.Node.List", method="get", version=4)
        return _list_field(data, "nodes")

    def get_wifi_settings(self) -> dict[str, Any]:
        return self._call("entry.cgi", api="SYNO.Wifi.Network.Setting", method="get", version=1)

    def get_traffic(self, interval: str) -> Any:
        return self._call(
            "entry.cgi",
            api="SYNO.Core.NGFW.Traffic",
            method="get",
            version=1,
            params={"mode": "net", "interval": interval},
        )

    def set_wifi_settings(self, profiles: list[dict[str, Any]]) -> None:
        self._call(
            "entry.cgi",
            api="SYNO.Wifi.Network.Setting",
            method="set",
            version=1,
            params={"profiles": json.dumps(profiles)},
        )

    def _call(
        self,
        endpoint: str,
        *,
        api: str,
        method: str,
        version: int,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
        authenticated: bool = True,
    ) -> dict[str, Any]:
        if self.session is None or self.base_url is None:
            raise RouterNotConnected("Not connected")
        if authenticated and self._sid is None:
            raise RouterNotConnected("Not connected")

        form: dict[str, Any] = {"api": api, "method": method, "version": version}
        if params:
            form.update(params)
        if authenticated:
            form["_sid"] = self._sid

        url = f"{self.base_url}/webapi/{endpoint}"
        try:
            response = self.session.post(
                url,
                data=form,
                timeout=timeout if timeout is not None else self.request_timeout_seconds,
            )
            response.raise_for_status()
        except requests.Timeout as error:
            raise RouterTimeout("Request timeout") from error
        except requests.RequestException as error:
            raise RouterError(f"{api}.{method} request failed: {error}") from error

        try:
            body = response.json()
        except ValueError as error:
            raise RouterError(f"{api}.{method} returned invalid JSON") from error
        if not isinstance(body, dict):
            raise RouterError(f"{api}.{method} returned unexpected payload")

        if not body.get("success"):
            error_info = body.get("error") or {}
            code = error_info.get("code") if isinstance(error_info, dict) else None
            if code in _SESSION_ERROR_CODES:
                self._sid = None
                raise RouterNotConnected("Not connected")
            raise RouterError(f"{api}.{method} failed with code {code}")

        data = body.get("data")
        return data if isinstance(data, dict) else {}


def _list_field(data: dict[str, Any], key: str) -> list[dict[str, Any]]:
    value = data.get(key)
    if not isinstance(value, list):
        raise RouterError(f"response has no '{key}' list")
    return value
