from __future__ import annotations

import secrets
from typing import Any
from urllib.parse import urlparse

from panelhub.models.panel import ROUTEROS_TLS_PORT, PanelType
from panelhub.schemas.panel import CapabilitySet, PanelConfig
from panelhub.schemas.user import ProvisionedUser, UserPatch, UserSpec, UserStats
from panelhub.services.adapters.base import (
    BackendError,
    ConfigurationError,
    DuplicateUserError,
    PanelAdapter,
    ProvisionResult,
    UserNotFoundError,
)
from panelhub.services.routeros.codec import build_request
from panelhub.services.routeros.connection import RouterOSConnection, SocketFactory
from panelhub.services.routeros.parsers import parse_bool, parse_int, parse_uptime

# service kind -> (user menu, active-session menu, active-session name key)
SERVICES: dict[str, tuple[str, str, str]] = {
    "ppp": ("/ppp/secret", "/ppp/active", "name"),
    "hotspot": ("/ip/hotspot/user", "/ip/hotspot/active", "user"),
}


class MikroTikAdapter(PanelAdapter):
    """RouterOS PPP secrets or hotspot users over the binary API.

    Every public operation opens its own connection (connect, login,
    commands, close). Writes on an existing user resolve its ``.id`` with a
    ``print ?name=`` first. Expiry has no RouterOS counterpart and is ignored.

    extras: service (ppp|hotspot), profile, ppp_service, use_tls
    """

    panel_type = PanelType.mikrotik
    capabilities = CapabilitySet(
        panel_type=PanelType.mikrotik,
        get_user_config=False,
        reset_user_data=False,
        inbound_management=False,
        protocols=("ppp", "hotspot"),
    )

    def __init__(self, socket_factory: SocketFactory | None = None) -> None:
        super().__init__()
        self._socket_factory = socket_factory

    def _validate(self, config: PanelConfig) -> None:
        if not (config.host or config.base_url):
            raise ConfigurationError("MikroTik config must include host")
        if not config.username:
            raise ConfigurationError("MikroTik config must include username")
        service = config.extra_str("service", "ppp").lower()
        if service not in SERVICES:
            raise ConfigurationError(f"MikroTik service must be ppp or hotspot, got {service!r}")

    # connection

    @property
    def use_tls(self) -> bool:
        return self.config.extra_bool("use_tls", False)

    @property
    def host(self) -> str:
        return self.config.host or (urlparse(self.config.base_url).hostname or self.config.base_url)

    @property
    def port(self) -> int:
        if self.config.port:
            return int(self.config.port)
        return ROUTEROS_TLS_PORT if self.use_tls else self.panel_type.default_port

    @property
    def service(self) -> str:
        return self.config.extra_str("service", "ppp").lower()

    def _connection(self) -> RouterOSConnection:
        cfg = self.config
        return RouterOSConnection(
            self.host,
            self.port,
            cfg.username,
            cfg.password,
            use_tls=self.use_tls,
            verify_ssl=cfg.verify_ssl,
            connect_timeout=cfg.connect_timeout,
            read_timeout=cfg.timeout,
            socket_factory=self._socket_factory,
        )

    def _menus(self) -> tuple[str, str, str]:
        return SERVICES[self.service]

    def _print_user(self, conn: RouterOSConnection, username: str) -> dict[str, str] | None:
        rows = conn.command(f"{self._menus()[0]}/print", queries={"name": username})
        return rows[0] if rows else None

    def _resolve_id(self, conn: RouterOSConnection, username: str) -> str:
        row = self._print_user(conn, username)
        if row is None or not row.get(".id"):
            raise UserNotFoundError(username)
        return row[".id"]

    def _to_user(self, row: dict[str, str]) -> ProvisionedUser:
        enabled = not parse_bool(row.get("disabled", "false"))
        return ProvisionedUser(
            username=row.get("name", ""),
            data_limit_bytes=parse_int(row.get("limit-bytes-total")),
            enabled=enabled,
            status="active" if enabled else "disabled",
            # router receives = client upload; only hotspot users carry counters
            used_upload=parse_int(row.get("bytes-in")),
            used_download=parse_int(row.get("bytes-out")),
            remote_id=row.get(".id"),
            raw={**row, "service": self.service},
        )

    # hooks

    def _ping(self) -> dict[str, Any]:
        with self._connection() as conn:
            rows = conn.command("/system/identity/print")
        return {"identity": rows[0].get("name") if rows else None}

    def _panel_info(self) -> dict[str, Any]:
        with self._connection() as conn:
            identity = conn.command("/system/identity/print")
            resource = conn.command("/system/resource/print")
        ident = identity[0] if identity else {}
        res = resource[0] if resource else {}
        return {
            "identity": ident.get("name", "unknown"),
            "version": res.get("version", "unknown"),
            "uptime": parse_uptime(res.get("uptime")),
            "cpu_load": parse_int(res.get("cpu-load")),
            "free_memory": parse_int(res.get("free-memory")),
            "total_memory": parse_int(res.get("total-memory")),
            "architecture": res.get("architecture-name", "unknown"),
            "board_name": res.get("board-name", "unknown"),
        }

    def _system_stats(self) -> dict[str, Any]:
        with self._connection() as conn:
            resource = conn.command("/system/resource/print")
            try:
                health = conn.command("/system/health/print")
            except BackendError as e:
                # CHR and x86 builds have no health menu
                self.logger.debug("health unavailable panel_id=%s err=%s", self.panel_id, e)
                health = []
            interfaces = conn.command("/interface/print")
        return {
            "resource": resource[0] if resource else {},
            "health": health[0] if health else {},
            "interface_count": len(interfaces),
        }

    def _inbounds(self) -> dict[str, Any]:
        with self._connection() as conn:
            return {
                "interfaces": conn.command("/interface/print"),
                "ppp_profiles": conn.command("/ppp/profile/print"),
                "hotspot_profiles": conn.command("/ip/hotspot/user/profile/print"),
            }

    def _find_user(self, username: str) -> ProvisionedUser | None:
        with self._connection() as conn:
            row = self._print_user(conn, username)
        return self._to_user(row) if row else None

    def _list_users(self) -> list[ProvisionedUser]:
        with self._connection() as conn:
            rows = conn.command(f"{self._menus()[0]}/print")
        return [self._to_user(r) for r in rows]

    def _user_stats(self, username: str) -> UserStats:
        _menu, active_menu, name_key = self._menus()
        with self._connection() as conn:
            row = self._print_user(conn, username)
            if row is None:
                raise UserNotFoundError(username)
            sessions = conn.command(f"{active_menu}/print", queries={name_key: username})
        user = self._to_user(row)
        session = sessions[0] if sessions else {}
        upload = parse_int(session.get("bytes-in")) if session else user.used_upload
        download = parse_int(session.get("bytes-out")) if session else user.used_download
        return UserStats(
            username=username,
            upload=upload,
            download=download,
            limit=user.data_limit_bytes,
            enabled=user.enabled,
            online=bool(session),
            extra={
                "service": self.service,
                "uptime_seconds": parse_uptime(session.get("uptime")),
                "address": session.get("address"),
                "caller_id": session.get("caller-id") or session.get("mac-address"),
            },
        )

    def _user_attributes(self, changes: dict[str, Any]) -> dict[str, object]:
        attrs: dict[str, object] = {}
        if changes.get("password"):
            attrs["password"] = changes["password"]
        if changes.get("profile"):
            attrs["profile"] = changes["profile"]
        if "note" in changes:
            attrs["comment"] = changes["note"]
        if "enabled" in changes:
            attrs["disabled"] = not changes["enabled"]
        if self.service == "hotspot" and "data_limit_bytes" in changes:
            attrs["limit-bytes-total"] = int(changes["data_limit_bytes"] or 0)
        return attrs

    def _create_user(self, spec: UserSpec) -> ProvisionResult:
        menu = self._menus()[0]
        password = spec.password or secrets.token_urlsafe(9)
        attrs: dict[str, object] = {"name": spec.username}
        attrs.update(self._user_attributes({
            "password": password,
            "profile": spec.profile or self.config.extra_str("profile"),
            "note": spec.note,
            "enabled": spec.enabled,
            "data_limit_bytes": spec.data_limit_bytes,
        }))
        if self.service == "ppp":
            attrs["service"] = self.config.extra_str("ppp_service", "any")
        with self._connection() as conn:
            if self._print_user(conn, spec.username) is not None:
                raise DuplicateUserError(spec.username)
            try:
                reply = conn.execute(build_request(f"{menu}/add", attrs))
            except BackendError as e:
                if "already" in e.message.lower():
                    raise DuplicateUserError(spec.username, e.message) from e
                raise
        remote_id = reply.done_attributes.get("ret", "")
        self.logger.info(
            "user created panel_id=%s username=%s service=%s", self.panel_id, spec.username, self.service
        )
        return ProvisionResult(
            username=spec.username,
            remote_id=remote_id,
            meta={"service": self.service, "password": password, "profile": attrs.get("profile")},
        )

    def _update_user(self, username: str, patch: UserPatch) -> ProvisionedUser:
        menu = self._menus()[0]
        attrs = self._user_attributes(patch.changes())
        with self._connection() as conn:
            row_id = self._resolve_id(conn, username)
            if attrs:
                conn.command(f"{menu}/set", {".id": row_id, **attrs})
            row = self._print_user(conn, username)
        if row is None:
            raise UserNotFoundError(username)
        return self._to_user(row)

    def _delete_user(self, username: str) -> None:
        menu = self._menus()[0]
        with self._connection() as conn:
            row_id = self._resolve_id(conn, username)
            conn.command(f"{menu}/remove", {".id": row_id})

    def _set_enabled(self, username: str, enabled: bool) -> None:
        menu = self._menus()[0]
        with self._connection() as conn:
            row_id = self._resolve_id(conn, username)
            conn.command(f"{menu}/set", {".id": row_id, "disabled": not enabled})
