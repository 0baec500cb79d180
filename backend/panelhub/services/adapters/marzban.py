from __future__ import annotations

from typing import Any
from urllib.parse import quote

from panelhub.core.logging import short_error
from panelhub.models.panel import PanelType
from panelhub.schemas.panel import CapabilitySet, PanelConfig
from panelhub.schemas.user import ProvisionedUser, UserPatch, UserSpec, UserStats
from panelhub.services.adapters.base import (
    AuthenticationError,
    BackendError,
    ConfigurationError,
    DuplicateUserError,
    OperationCancelledError,
    ProvisionResult,
    UserNotFoundError,
)
from panelhub.services.adapters.http_base import AUTH_FAILURE_CODES, HttpPanelAdapter
from panelhub.services.adapters.session import AuthSession


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class MarzbanAdapter(HttpPanelAdapter):
    """Marzban REST API (OAuth2 password grant or a static admin token).

    extras:
      inbounds: {"vless": ["VLESS TCP"], ...}; all panel inbounds when omitted
      proxies:  {"vless": {"flow": ""}, ...}; derived from inbounds when omitted
    """

    panel_type = PanelType.marzban
    capabilities = CapabilitySet(
        panel_type=PanelType.marzban,
        protocols=("vmess", "vless", "trojan", "shadowsocks"),
    )

    def _validate(self, config: PanelConfig) -> None:
        super()._validate(config)
        if not config.api_key and not (config.username and config.password):
            raise ConfigurationError("Marzban config must include api_key OR username/password")

    # session

    def _authenticate(self) -> AuthSession:
        if self.config.api_key:
            return AuthSession(credential=self.config.api_key)
        data = {
            "grant_type": "password",
            "username": self.config.username,
            "password": self.config.password,
            "scope": "",
        }
        r = self._send("POST", "/api/admin/token", data=data)
        if r.status_code in AUTH_FAILURE_CODES or r.status_code == 422:
            raise AuthenticationError(f"Marzban login rejected: {self._error_message(r)}")
        self._raise_for_status(r, "POST", "/api/admin/token")
        tok = (self._decode(r, "POST", "/api/admin/token") or {}).get("access_token")
        if not tok:
            raise AuthenticationError("Marzban token response missing access_token")
        return AuthSession.issue(str(tok), self.session_ttl())

    def _auth_headers(self, session: AuthSession) -> dict[str, str]:
        return {"Authorization": f"Bearer {session.credential}"}

    # mapping

    def _user_path(self, username: str, suffix: str = "") -> str:
        return f"/api/user/{quote(username, safe='')}{suffix}"

    def _absolute(self, url: str | None) -> str | None:
        if url and url.startswith("/"):
            return f"{self.base_url}{url}"
        return url or None

    def _to_user(self, js: dict[str, Any]) -> ProvisionedUser:
        status = str(js.get("status") or "active")
        return ProvisionedUser(
            username=str(js.get("username") or ""),
            data_limit_bytes=_int(js.get("data_limit")),
            expiry=_int(js.get("expire")),
            enabled=status in ("active", "on_hold"),
            status=status,
            # Marzban only reports a combined counter
            used_download=_int(js.get("used_traffic")),
            remote_id=str(js.get("username") or "") or None,
            subscription_url=self._absolute(js.get("subscription_url")),
            raw=js,
        )

    def _active_inbounds(self) -> dict[str, list[str]]:
        """Return protocol -> inbound tags.

        /api/inbounds is a dict of proxy_type -> list[ProxyInbound] with no
        enabled flag, so every returned inbound counts as active.
        """
        js = self._request("GET", "/api/inbounds")
        if not isinstance(js, dict):
            return {}
        out: dict[str, list[str]] = {}
        for proto, items in js.items():
            tags = [
                it["tag"]
                for it in (items if isinstance(items, list) else [])
                if isinstance(it, dict) and isinstance(it.get("tag"), str) and it["tag"]
            ]
            if tags:
                out[str(proto)] = tags
        return out

    def _inbound_selection(self, requested: Any) -> dict[str, list[str]]:
        if isinstance(requested, dict) and requested:
            return requested
        configured = self.config.extra("inbounds")
        if isinstance(configured, dict) and configured:
            return configured
        try:
            return self._active_inbounds()
        except OperationCancelledError:
            raise
        except Exception as e:
            # panel defaults apply when the listing is unavailable
            self.logger.warning("inbound discovery failed panel_id=%s err=%s", self.panel_id, short_error(e))
            return {}

    # hooks

    def _ping(self) -> dict[str, Any]:
        js = self._request("GET", "/api/admin")
        return {"admin": (js or {}).get("username")}

    def _panel_info(self) -> dict[str, Any]:
        system = self._request("GET", "/api/system") or {}
        admin = self._request("GET", "/api/admin") or {}
        return {
            "version": system.get("version", "unknown"),
            "cpu_usage": system.get("cpu_usage", 0),
            "memory_total": system.get("mem_total", 0),
            "memory_used": system.get("mem_used", 0),
            "admin_username": admin.get("username", "unknown"),
            "total_users": system.get("total_user", 0),
            "active_users": system.get("users_active", 0),
        }

    def _system_stats(self) -> dict[str, Any]:
        return self._request("GET", "/api/system") or {}

    def _inbounds(self) -> dict[str, Any]:
        return self._request("GET", "/api/inbounds") or {}

    def _find_user(self, username: str) -> ProvisionedUser | None:
        try:
            js = self._request("GET", self._user_path(username), user=username)
        except UserNotFoundError:
            return None
        return self._to_user(js) if isinstance(js, dict) else None

    def _list_users(self) -> list[ProvisionedUser]:
        js = self._request("GET", "/api/users") or {}
        users = js.get("users") if isinstance(js, dict) else js
        return [self._to_user(u) for u in (users or []) if isinstance(u, dict)]

    def _user_stats(self, username: str) -> UserStats:
        user = self._find_user(username)
        if user is None:
            raise UserNotFoundError(username)
        return UserStats.from_user(
            user,
            online=bool(user.raw.get("online_at")),
            status=user.status,
            links=user.raw.get("links") or [],
        )

    def _user_config(self, username: str) -> str | None:
        user = self._find_user(username)
        if user is None:
            return None
        if user.subscription_url:
            return user.subscription_url
        links = user.raw.get("links") or []
        return "\n".join(str(x) for x in links) or None

    def _create_user(self, spec: UserSpec) -> ProvisionResult:
        payload: dict[str, Any] = {
            "username": spec.username,
            "expire": spec.expiry,
            "data_limit": spec.data_limit_bytes,
            "data_limit_reset_strategy": "no_reset",
            "status": "active" if spec.enabled else "disabled",
            "note": spec.note,
        }
        inbounds = self._inbound_selection(spec.inbounds)
        if inbounds:
            payload["inbounds"] = inbounds
            proxies = self.config.extra("proxies")
            payload["proxies"] = proxies if isinstance(proxies, dict) and proxies else {k: {} for k in inbounds}
        try:
            js = self._request("POST", "/api/user", json=payload, user=spec.username)
        except BackendError as e:
            if "already exists" in e.message.lower():
                raise DuplicateUserError(spec.username, e.message) from e
            raise
        js = js if isinstance(js, dict) else {}
        self.logger.info("user created panel_id=%s username=%s", self.panel_id, spec.username)
        return ProvisionResult(
            username=str(js.get("username") or spec.username),
            remote_id=str(js.get("username") or spec.username),
            subscription_url=self._absolute(js.get("subscription_url")),
            meta={"status": js.get("status"), "links": js.get("links") or []},
        )

    def _update_user(self, username: str, patch: UserPatch) -> ProvisionedUser:
        changes = patch.changes()
        payload: dict[str, Any] = {}
        if "data_limit_bytes" in changes:
            payload["data_limit"] = changes["data_limit_bytes"]
        if "expiry" in changes:
            payload["expire"] = changes["expiry"]
        if "enabled" in changes:
            payload["status"] = "active" if changes["enabled"] else "disabled"
        if "note" in changes:
            payload["note"] = changes["note"]
        if isinstance(changes.get("inbounds"), dict):
            payload["inbounds"] = changes["inbounds"]
        js = self._request("PUT", self._user_path(username), json=payload, user=username)
        if not isinstance(js, dict):
            raise BackendError(f"Marzban returned no user body for {username}")
        return self._to_user(js)

    def _delete_user(self, username: str) -> None:
        self._request("DELETE", self._user_path(username), user=username)

    def _set_enabled(self, username: str, enabled: bool) -> None:
        status = "active" if enabled else "disabled"
        self._request("PUT", self._user_path(username), json={"status": status}, user=username)

    def _reset_user_data(self, username: str) -> None:
        self._request("POST", self._user_path(username, "/reset"), user=username)
