from __future__ import annotations

import json
import secrets
import uuid
from typing import Any
from urllib.parse import quote, urlparse

from panelhub.core.config import settings
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
from panelhub.services.config_links import client_link, inbound_clients

API = "/panel/api/inbounds"


class XUIAdapter(HttpPanelAdapter):
    """3x-ui / X-UI panel. Users are inbound clients keyed by their email.

    extras:
      inbound_id:   inbound new clients land in (first inbound when omitted)
      flow:         vless flow for new clients, e.g. xtls-rprx-vision
      sub_base_url: subscription server prefix; links use ``{sub_base_url}/{subId}``
      link_host:    host written into share links (panel host when omitted)
    """

    panel_type = PanelType.xui
    capabilities = CapabilitySet(
        panel_type=PanelType.xui,
        protocols=("vmess", "vless", "trojan", "shadowsocks"),
    )

    def _validate(self, config: PanelConfig) -> None:
        super()._validate(config)
        if not (config.username and config.password):
            raise ConfigurationError("X-UI config must include username/password")

    def session_ttl(self) -> float | None:
        return float(self.config.session_ttl or settings.XUI_SESSION_TTL_SECONDS)

    # session

    def _authenticate(self) -> AuthSession:
        r = self._send(
            "POST", "/login", data={"username": self.config.username, "password": self.config.password}
        )
        if r.status_code in AUTH_FAILURE_CODES:
            raise AuthenticationError(f"X-UI login rejected: HTTP {r.status_code}")
        self._raise_for_status(r, "POST", "/login")
        js = self._decode(r, "POST", "/login") or {}
        if not js.get("success"):
            raise AuthenticationError(f"X-UI login rejected: {js.get('msg') or 'success=false'}")
        cookies = dict(r.cookies)
        if not cookies:
            raise AuthenticationError("X-UI login returned no session cookie")
        # the session lives in AuthSession, not in the client jar
        self._http().cookies.clear()
        return AuthSession.issue(cookies, self.session_ttl())

    def _auth_headers(self, session: AuthSession) -> dict[str, str]:
        return {"Cookie": "; ".join(f"{k}={v}" for k, v in session.credential.items())}

    def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        """Unwrap the ``{success, msg, obj}`` envelope."""
        js = self._request(method, path, **kwargs)
        if isinstance(js, dict) and "success" in js:
            if not js.get("success"):
                raise BackendError(str(js.get("msg") or f"X-UI {path} failed"))
            return js.get("obj")
        return js

    # lookup

    def _link_host(self) -> str:
        return self.config.extra_str("link_host") or (urlparse(self.base_url).hostname or "")

    def _list_inbounds(self) -> list[dict[str, Any]]:
        obj = self._call("GET", f"{API}/list")
        return [i for i in (obj or []) if isinstance(i, dict)]

    @staticmethod
    def _stat_for(inbound: dict[str, Any], email: str) -> dict[str, Any]:
        for stat in inbound.get("clientStats") or []:
            if isinstance(stat, dict) and stat.get("email") == email:
                return stat
        return {}

    def _locate(self, username: str) -> tuple[dict[str, Any], dict[str, Any]] | None:
        """Scan every inbound's client list for ``username`` (O(n) per call)."""
        for inbound in self._list_inbounds():
            for client in inbound_clients(inbound):
                if client.get("email") == username:
                    return inbound, client
        return None

    def _locate_or_raise(self, username: str) -> tuple[dict[str, Any], dict[str, Any]]:
        found = self._locate(username)
        if found is None:
            raise UserNotFoundError(username)
        return found

    @staticmethod
    def _client_key(inbound: dict[str, Any], client: dict[str, Any]) -> str:
        protocol = str(inbound.get("protocol") or "").lower()
        if protocol == "trojan":
            return str(client.get("password") or "")
        if protocol == "shadowsocks":
            return str(client.get("email") or "")
        return str(client.get("id") or "")

    def _subscription_url(self, inbound: dict[str, Any], client: dict[str, Any]) -> str | None:
        sub_base = self.config.extra_str("sub_base_url").rstrip("/")
        if sub_base and client.get("subId"):
            return f"{sub_base}/{client['subId']}"
        return client_link(inbound, client, self._link_host())

    def _to_user(self, inbound: dict[str, Any], client: dict[str, Any]) -> ProvisionedUser:
        email = str(client.get("email") or "")
        stat = self._stat_for(inbound, email)
        expiry_ms = int(client.get("expiryTime") or 0)
        enabled = bool(client.get("enable", True))
        return ProvisionedUser(
            username=email,
            data_limit_bytes=int(client.get("totalGB") or 0),
            # negative expiryTime means "start on first use"
            expiry=expiry_ms // 1000 if expiry_ms > 0 else 0,
            enabled=enabled,
            status="active" if enabled else "disabled",
            used_upload=int(stat.get("up") or 0),
            used_download=int(stat.get("down") or 0),
            remote_id=self._client_key(inbound, client) or None,
            subscription_url=self._subscription_url(inbound, client),
            raw={"inbound_id": inbound.get("id"), "client": client},
        )

    def _default_inbound(self, requested: Any) -> dict[str, Any]:
        inbounds = self._list_inbounds()
        wanted = requested if isinstance(requested, int) else self.config.extra_int("inbound_id", 0)
        for inbound in inbounds:
            if not wanted or int(inbound.get("id") or 0) == wanted:
                return inbound
        raise ConfigurationError(f"X-UI inbound {wanted or '(any)'} not found on panel {self.panel_id}")

    def _write_client(self, path: str, inbound: dict[str, Any], client: dict[str, Any], username: str) -> None:
        payload = {"id": inbound.get("id"), "settings": json.dumps({"clients": [client]})}
        self._call("POST", path, json=payload, user=username)

    # hooks

    def _ping(self) -> dict[str, Any]:
        obj = self._call("POST", "/server/status") or {}
        return {"uptime": obj.get("uptime", 0)}

    def _panel_info(self) -> dict[str, Any]:
        status = self._call("POST", "/server/status") or {}
        users = self._list_users()
        mem = status.get("mem") or {}
        xray = status.get("xray") or {}
        return {
            "version": xray.get("version", "unknown"),
            "uptime": status.get("uptime", 0),
            "cpu_usage": status.get("cpu", 0),
            "memory_used": mem.get("current", 0),
            "memory_total": mem.get("total", 0),
            "total_users": len(users),
            "active_users": sum(1 for u in users if u.enabled),
        }

    def _system_stats(self) -> dict[str, Any]:
        return self._call("POST", "/server/status") or {}

    def _inbounds(self) -> list[dict[str, Any]]:
        return self._list_inbounds()

    def _find_user(self, username: str) -> ProvisionedUser | None:
        found = self._locate(username)
        return self._to_user(*found) if found else None

    def _list_users(self) -> list[ProvisionedUser]:
        return [
            self._to_user(inbound, client)
            for inbound in self._list_inbounds()
            for client in inbound_clients(inbound)
        ]

    def _user_stats(self, username: str) -> UserStats:
        obj = self._call("GET", f"{API}/getClientTraffics/{quote(username, safe='')}", user=username)
        if not isinstance(obj, dict):
            raise UserNotFoundError(username)
        expiry_ms = int(obj.get("expiryTime") or 0)
        return UserStats(
            username=username,
            upload=int(obj.get("up") or 0),
            download=int(obj.get("down") or 0),
            limit=int(obj.get("total") or 0),
            expiry=expiry_ms // 1000 if expiry_ms > 0 else 0,
            enabled=bool(obj.get("enable", True)),
            extra={"inbound_id": obj.get("inboundId")},
        )

    def _user_config(self, username: str) -> str | None:
        inbound, client = self._locate_or_raise(username)
        return client_link(inbound, client, self._link_host()) or self._subscription_url(inbound, client)

    def _create_user(self, spec: UserSpec) -> ProvisionResult:
        if self._locate(spec.username) is not None:
            raise DuplicateUserError(spec.username)
        inbound = self._default_inbound(spec.inbounds)
        protocol = str(inbound.get("protocol") or "").lower()
        client: dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "email": spec.username,
            "enable": spec.enabled,
            "totalGB": spec.data_limit_bytes,
            "expiryTime": spec.expiry * 1000,
            "limitIp": 0,
            "tgId": "",
            "subId": secrets.token_hex(8),
            "comment": spec.note,
        }
        if protocol == "vless":
            client["flow"] = self.config.extra_str("flow")
        if protocol in ("trojan", "shadowsocks"):
            client["password"] = spec.password or secrets.token_urlsafe(16)
        try:
            self._write_client(f"{API}/addClient", inbound, client, spec.username)
        except BackendError as e:
            if "duplicate" in e.message.lower() or "exist" in e.message.lower():
                raise DuplicateUserError(spec.username, e.message) from e
            raise
        self.logger.info(
            "client created panel_id=%s username=%s inbound_id=%s", self.panel_id, spec.username, inbound.get("id")
        )
        return ProvisionResult(
            username=spec.username,
            remote_id=self._client_key(inbound, client),
            subscription_url=self._subscription_url(inbound, client),
            meta={"inbound_id": inbound.get("id"), "protocol": protocol},
        )

    def _update_user(self, username: str, patch: UserPatch) -> ProvisionedUser:
        inbound, client = self._locate_or_raise(username)
        changes = patch.changes()
        updated = dict(client)
        if "data_limit_bytes" in changes:
            updated["totalGB"] = changes["data_limit_bytes"]
        if "expiry" in changes:
            updated["expiryTime"] = changes["expiry"] * 1000
        if "enabled" in changes:
            updated["enable"] = changes["enabled"]
        if "note" in changes:
            updated["comment"] = changes["note"]
        if "password" in changes and "password" in client:
            updated["password"] = changes["password"]
        key = self._client_key(inbound, client)
        self._write_client(f"{API}/updateClient/{quote(key, safe='')}", inbound, updated, username)
        return self._to_user(inbound, updated)

    def _delete_user(self, username: str) -> None:
        inbound, client = self._locate_or_raise(username)
        key = self._client_key(inbound, client)
        self._call("POST", f"{API}/{inbound.get('id')}/delClient/{quote(key, safe='')}", user=username)

    def _set_enabled(self, username: str, enabled: bool) -> None:
        self._update_user(username, UserPatch(enabled=enabled))

    def _reset_user_data(self, username: str) -> None:
        inbound, _client = self._locate_or_raise(username)
        self._call(
            "POST", f"{API}/{inbound.get('id')}/resetClientTraffic/{quote(username, safe='')}", user=username
        )
