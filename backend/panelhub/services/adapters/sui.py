from __future__ import annotations

from typing import Any

from panelhub.models.panel import PanelType
from panelhub.schemas.panel import CapabilitySet, PanelConfig
from panelhub.schemas.user import ProvisionedUser, UserPatch, UserSpec, UserStats
from panelhub.services.adapters.base import (
    AuthenticationError,
    BackendError,
    ConfigurationError,
    DuplicateUserError,
    ProvisionResult,
    UserNotFoundError,
)
from panelhub.services.adapters.http_base import AUTH_FAILURE_CODES, HttpPanelAdapter
from panelhub.services.adapters.session import AuthSession


def _first_int(js: dict[str, Any], *keys: str) -> int:
    for key in keys:
        value = js.get(key)
        if value is not None:
            try:
                return int(value)
            except (TypeError, ValueError):
                continue
    return 0


class SUIAdapter(HttpPanelAdapter):
    """S-UI panel: bearer token from /api/auth/login, or a static ``Token`` header.

    Users are addressed by numeric id, so every username-addressed operation
    resolves the id from the full listing first.
    """

    panel_type = PanelType.sui
    capabilities = CapabilitySet(
        panel_type=PanelType.sui,
        protocols=("vmess", "vless", "trojan", "shadowsocks"),
    )

    def _validate(self, config: PanelConfig) -> None:
        super()._validate(config)
        if not config.api_key and not (config.username and config.password):
            raise ConfigurationError("S-UI config must include api_key OR username/password")

    # session

    def _authenticate(self) -> AuthSession:
        if self.config.api_key:
            return AuthSession(credential=self.config.api_key)
        r = self._send(
            "POST", "/api/auth/login", json={"username": self.config.username, "password": self.config.password}
        )
        if r.status_code in AUTH_FAILURE_CODES:
            raise AuthenticationError(f"S-UI login rejected: {self._error_message(r)}")
        self._raise_for_status(r, "POST", "/api/auth/login")
        js = self._decode(r, "POST", "/api/auth/login")
        token = None
        if isinstance(js, dict):
            data = js.get("data") if isinstance(js.get("data"), dict) else {}
            token = js.get("token") or data.get("token")
        if not token:
            raise AuthenticationError("S-UI login response missing token")
        return AuthSession.issue(str(token), self.session_ttl())

    def _auth_headers(self, session: AuthSession) -> dict[str, str]:
        if self.config.api_key:
            return {"Token": str(session.credential)}
        return {"Authorization": f"Bearer {session.credential}"}

    # mapping

    def _to_user(self, js: dict[str, Any]) -> ProvisionedUser:
        enabled = bool(js.get("enabled", js.get("enable", True)))
        return ProvisionedUser(
            username=str(js.get("username") or js.get("name") or ""),
            data_limit_bytes=_first_int(js, "data_limit", "volume"),
            expiry=_first_int(js, "expiry_date", "expiry"),
            enabled=enabled,
            status=str(js.get("status") or ("active" if enabled else "disabled")),
            used_upload=_first_int(js, "upload", "up"),
            used_download=_first_int(js, "download", "down"),
            remote_id=str(js["id"]) if js.get("id") is not None else None,
            subscription_url=js.get("subscription_url") or None,
            raw=js,
        )

    def _raw_users(self) -> list[dict[str, Any]]:
        js = self._request("GET", "/api/users")
        users = js.get("users") if isinstance(js, dict) else js
        return [u for u in (users or []) if isinstance(u, dict)]

    def _locate(self, username: str) -> dict[str, Any] | None:
        """Scan the full user listing for ``username`` (O(n) per call)."""
        for js in self._raw_users():
            if (js.get("username") or js.get("name")) == username:
                return js
        return None

    def _user_id(self, username: str) -> str:
        js = self._locate(username)
        if js is None or js.get("id") is None:
            raise UserNotFoundError(username)
        return str(js["id"])

    def _payload(self, changes: dict[str, Any]) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if "data_limit_bytes" in changes:
            payload["data_limit"] = changes["data_limit_bytes"]
        if "expiry" in changes:
            payload["expiry_date"] = changes["expiry"]
        if "enabled" in changes:
            payload["enabled"] = changes["enabled"]
        if "note" in changes:
            payload["note"] = changes["note"]
        if changes.get("inbounds") is not None:
            payload["inbound_ids"] = changes["inbounds"]
        return payload

    # hooks

    def _ping(self) -> dict[str, Any]:
        js = self._request("GET", "/api/status") or {}
        return {"uptime": js.get("uptime", 0)}

    def _panel_info(self) -> dict[str, Any]:
        status = self._request("GET", "/api/status") or {}
        info = self._request("GET", "/api/info") or {}
        memory = status.get("memory") or {}
        disk = status.get("disk") or {}
        users = self._list_users()
        return {
            "version": info.get("version", "unknown"),
            "uptime": status.get("uptime", 0),
            "cpu_usage": status.get("cpu", 0),
            "memory_used": memory.get("used", 0),
            "memory_total": memory.get("total", 0),
            "disk_used": disk.get("used", 0),
            "disk_total": disk.get("total", 0),
            "total_users": len(users),
            "active_users": sum(1 for u in users if u.enabled),
        }

    def _system_stats(self) -> dict[str, Any]:
        return self._request("GET", "/api/status") or {}

    def _inbounds(self) -> list[Any] | dict[str, Any]:
        return self._request("GET", "/api/inbounds") or []

    def _find_user(self, username: str) -> ProvisionedUser | None:
        js = self._locate(username)
        return self._to_user(js) if js else None

    def _list_users(self) -> list[ProvisionedUser]:
        return [self._to_user(js) for js in self._raw_users()]

    def _user_stats(self, username: str) -> UserStats:
        js = self._locate(username)
        if js is None:
            raise UserNotFoundError(username)
        user = self._to_user(js)
        stats = self._request("GET", f"/api/users/{user.remote_id}/stats", user=username) or {}
        return UserStats(
            username=username,
            upload=_first_int(stats, "upload", "up"),
            download=_first_int(stats, "download", "down"),
            limit=user.data_limit_bytes,
            expiry=user.expiry,
            enabled=user.enabled,
            online=bool(stats.get("online", False)),
            extra={"last_connection": stats.get("last_connection")},
        )

    def _user_config(self, username: str) -> str | None:
        user_id = self._user_id(username)
        js = self._request("GET", f"/api/users/{user_id}/config", user=username)
        if isinstance(js, dict):
            return js.get("config") or js.get("url") or None
        return js or None

    def _create_user(self, spec: UserSpec) -> ProvisionResult:
        if self._locate(spec.username) is not None:
            raise DuplicateUserError(spec.username)
        payload = self._payload(spec.model_dump(exclude={"username", "extras"}))
        payload["username"] = spec.username
        if "inbound_ids" not in payload and self.config.extra("inbound_ids") is not None:
            payload["inbound_ids"] = self.config.extra("inbound_ids")
        protocol = self.config.extra_str("protocol")
        if protocol:
            payload["protocol"] = protocol
        try:
            js = self._request("POST", "/api/users", json=payload, user=spec.username) or {}
        except BackendError as e:
            if "exist" in e.message.lower():
                raise DuplicateUserError(spec.username, e.message) from e
            raise
        js = js.get("data", js) if isinstance(js, dict) else {}
        self.logger.info("user created panel_id=%s username=%s", self.panel_id, spec.username)
        return ProvisionResult(
            username=spec.username,
            remote_id=str(js.get("id") or ""),
            subscription_url=js.get("subscription_url") or None,
            meta={"protocol": js.get("protocol") or protocol or None},
        )

    def _update_user(self, username: str, patch: UserPatch) -> ProvisionedUser:
        current = self._locate(username)
        if current is None or current.get("id") is None:
            raise UserNotFoundError(username)
        js = self._request("PUT", f"/api/users/{current['id']}", json=self._payload(patch.changes()), user=username)
        if isinstance(js, dict) and (js.get("username") or js.get("data")):
            return self._to_user(js.get("data", js))
        return self._to_user({**current, **self._payload(patch.changes())})

    def _delete_user(self, username: str) -> None:
        self._request("DELETE", f"/api/users/{self._user_id(username)}", user=username)

    def _set_enabled(self, username: str, enabled: bool) -> None:
        self._request("PUT", f"/api/users/{self._user_id(username)}", json={"enabled": enabled}, user=username)

    def _reset_user_data(self, username: str) -> None:
        self._request("POST", f"/api/users/{self._user_id(username)}/reset-traffic", user=username)
