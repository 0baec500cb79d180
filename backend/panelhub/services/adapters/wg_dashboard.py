from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

from panelhub.core.logging import short_error
from panelhub.models.panel import PanelType
from panelhub.schemas.panel import CapabilitySet, PanelConfig
from panelhub.schemas.user import ProvisionedUser, UserPatch, UserSpec, UserStats
from panelhub.services.adapters.base import (
    AdapterError,
    BackendError,
    ConfigurationError,
    DuplicateUserError,
    OperationCancelledError,
    ProvisionResult,
    UserNotFoundError,
)
from panelhub.services.adapters.http_base import HttpPanelAdapter
from panelhub.services.adapters.session import AuthSession
from panelhub.services.wg_keys import WireGuardKeys, derive_public_key, generate_keypair

BYTES_PER_GB = 1024 ** 3
JOB_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _gb_to_bytes(value: Any) -> int:
    try:
        return int(float(value or 0) * BYTES_PER_GB)
    except (TypeError, ValueError):
        return 0


class WGDashboardAdapter(HttpPanelAdapter):
    """WGDashboard (v4.x) peers as service users.

    Peers are matched by ``name`` = username; ``remote_id`` is the peer's
    public key. WGDashboard has no native quota or expiry per peer, so both
    are mirrored as peer schedule jobs (``total_data`` / ``date`` restrict).
    Traffic counters and job values are in GB on the dashboard side.

    extras: configuration_name (auto-detected when omitted), dns_addresses,
    mtu, keep_alive, endpoint_allowed_ip, allowed_ips_validation,
    remote_endpoint, preshared_key. A ``UserSpec.extras["private_key"]`` is kept
    and its public key derived locally.
    """

    panel_type = PanelType.wireguard
    capabilities = CapabilitySet(
        panel_type=PanelType.wireguard,
        reset_user_data=False,
        protocols=("wireguard",),
    )

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._configuration_name = ""
        self._conf_lock = threading.Lock()

    def _validate(self, config: PanelConfig) -> None:
        super()._validate(config)
        if not config.api_key:
            raise ConfigurationError("WGDashboard config must include api_key")

    def _on_configure(self, config: PanelConfig) -> None:
        super()._on_configure(config)
        self._configuration_name = config.extra_str("configuration_name")

    # session

    def _authenticate(self) -> AuthSession:
        return AuthSession(credential=self.config.api_key)

    def _auth_headers(self, session: AuthSession) -> dict[str, str]:
        return {"wg-dashboard-apikey": str(session.credential)}

    def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        payload = self._request(method, path, **kwargs)
        if isinstance(payload, dict) and "status" in payload:
            if not payload.get("status"):
                raise BackendError(str(payload.get("message") or "WGDashboard API returned status=false"))
            return payload.get("data")
        return payload

    # configuration & peers

    def _configurations(self) -> list[dict[str, Any]]:
        data = self._call("GET", "/api/getWireguardConfigurations")
        return [c for c in (data or []) if isinstance(c, dict)]

    def _conf(self) -> str:
        with self._conf_lock:
            if self._configuration_name:
                return self._configuration_name
        for item in self._configurations():
            name = str(item.get("Name") or "").strip()
            if name:
                with self._conf_lock:
                    self._configuration_name = name
                return name
        raise ConfigurationError("WGDashboard has no WireGuard configuration available")

    def _peers(self) -> list[tuple[dict[str, Any], bool]]:
        """All peers of the configuration with their access flag (O(n) per call)."""
        data = self._call("GET", "/api/getWireguardConfigurationInfo", params={"configurationName": self._conf()})
        if not isinstance(data, dict):
            raise BackendError("WGDashboard getWireguardConfigurationInfo returned invalid payload")
        out: list[tuple[dict[str, Any], bool]] = []
        for key, allowed in (("configurationPeers", True), ("configurationRestrictedPeers", False)):
            for peer in data.get(key) or []:
                if isinstance(peer, dict):
                    out.append((peer, allowed))
        return out

    def _locate(self, username: str) -> tuple[dict[str, Any], bool] | None:
        for peer, allowed in self._peers():
            if peer.get("name") == username:
                return peer, allowed
        return None

    def _locate_or_raise(self, username: str) -> tuple[dict[str, Any], bool]:
        found = self._locate(username)
        if found is None:
            raise UserNotFoundError(username)
        return found

    @staticmethod
    def _job_value(peer: dict[str, Any], field: str) -> str | None:
        for job in peer.get("jobs") or []:
            if isinstance(job, dict) and job.get("Field") == field and str(job.get("Action")).lower() == "restrict":
                return str(job.get("Value") or "")
        return None

    def _download_url(self, peer_id: str) -> str:
        return f"{self.base_url}/api/downloadPeer/{self._conf()}?id={quote(peer_id, safe='')}"

    def _to_user(self, peer: dict[str, Any], allowed: bool) -> ProvisionedUser:
        peer_id = str(peer.get("id") or "")
        limit_gb = self._job_value(peer, "total_data")
        expiry_raw = self._job_value(peer, "date")
        expiry = 0
        if expiry_raw:
            try:
                expiry = int(datetime.strptime(expiry_raw, JOB_DATE_FORMAT).replace(tzinfo=timezone.utc).timestamp())
            except ValueError:
                expiry = 0
        return ProvisionedUser(
            username=str(peer.get("name") or ""),
            data_limit_bytes=_gb_to_bytes(limit_gb),
            expiry=expiry,
            enabled=allowed,
            status="active" if allowed else "disabled",
            # server receive = peer upload
            used_upload=_gb_to_bytes(peer.get("total_receive")) + _gb_to_bytes(peer.get("cumu_receive")),
            used_download=_gb_to_bytes(peer.get("total_sent")) + _gb_to_bytes(peer.get("cumu_sent")),
            remote_id=peer_id or None,
            subscription_url=self._download_url(peer_id) if peer_id else None,
            raw=peer,
        )

    # schedule jobs

    def _job_id(self, peer_id: str, field: str) -> str:
        return str(uuid.uuid5(uuid.NAMESPACE_URL, f"panelhub:{self.base_url}:{self._conf()}:{peer_id}:{field}"))

    def _delete_jobs(self, peer: dict[str, Any], field: str) -> None:
        for job in peer.get("jobs") or []:
            if not isinstance(job, dict) or job.get("Field") != field:
                continue
            if str(job.get("Action") or "").lower() != "restrict":
                continue
            self._call("POST", "/api/deletePeerScheduleJob", json={"Job": job})

    def _save_job(self, peer_id: str, field: str, value: str) -> None:
        job = {
            "JobID": self._job_id(peer_id, field),
            "Configuration": self._conf(),
            "Peer": peer_id,
            "Field": field,
            "Operator": "lgt",
            "Value": value,
            "CreationDate": "",
            "ExpireDate": "",
            "Action": "restrict",
        }
        self._call("POST", "/api/savePeerScheduleJob", json={"Job": job})

    def _sync_jobs(self, peer: dict[str, Any], changes: dict[str, Any]) -> None:
        peer_id = str(peer.get("id") or "")
        if "data_limit_bytes" in changes:
            self._delete_jobs(peer, "total_data")
            limit = int(changes["data_limit_bytes"] or 0)
            if limit > 0:
                self._save_job(peer_id, "total_data", f"{limit / BYTES_PER_GB:.4f}".rstrip("0").rstrip("."))
        if "expiry" in changes:
            self._delete_jobs(peer, "date")
            expiry = int(changes["expiry"] or 0)
            if expiry > 0:
                when = datetime.fromtimestamp(expiry, tz=timezone.utc).strftime(JOB_DATE_FORMAT)
                self._save_job(peer_id, "date", when)

    def _set_access(self, peer_id: str, enabled: bool) -> None:
        action = "allowAccessPeers" if enabled else "restrictPeers"
        self._call("POST", f"/api/{action}/{self._conf()}", json={"peers": [peer_id]})

    def _available_ip(self) -> str | None:
        data = self._call("GET", f"/api/getAvailableIPs/{self._conf()}")
        candidates: list[Any] = []
        if isinstance(data, dict):
            for ip_list in data.values():
                if isinstance(ip_list, list):
                    candidates.extend(ip_list)
        elif isinstance(data, list):
            candidates = data
        for candidate in candidates:
            s = str(candidate or "").strip()
            if s:
                return s
        return None

    @staticmethod
    def _peer_keys(spec: UserSpec) -> WireGuardKeys:
        """Caller supplied ``extras["private_key"]`` or a fresh pair."""
        private_key = str(spec.extras.get("private_key") or "").strip()
        if not private_key:
            return generate_keypair()
        try:
            return WireGuardKeys(private_key=private_key, public_key=derive_public_key(private_key))
        except ValueError as e:
            raise ConfigurationError(f"invalid WireGuard private key for {spec.username}: {e}") from e

    def _add_peer_payload(self, spec: UserSpec) -> dict[str, Any]:
        cfg = self.config
        keys = self._peer_keys(spec)
        payload: dict[str, Any] = {
            "name": spec.username,
            "private_key": keys.private_key,
            "public_key": keys.public_key,
            "allowed_ips_validation": cfg.extra_bool("allowed_ips_validation", True),
            "dns_addresses": cfg.extra_str("dns_addresses", "1.1.1.1"),
            "mtu": cfg.extra_int("mtu", 1460),
            "keep_alive": cfg.extra_int("keep_alive", 21),
            "endpoint_allowed_ip": cfg.extra_str("endpoint_allowed_ip", "0.0.0.0/0"),
        }
        if cfg.extra_str("remote_endpoint"):
            payload["remote_endpoint"] = cfg.extra_str("remote_endpoint")
        if cfg.extra_str("preshared_key"):
            payload["preshared_key"] = cfg.extra_str("preshared_key")
        try:
            ip = self._available_ip()
        except OperationCancelledError:
            raise
        except Exception as e:
            # dashboard assigns an address itself when this lookup fails
            self.logger.warning("available ip lookup failed panel_id=%s err=%s", self.panel_id, short_error(e))
            ip = None
        if ip:
            payload["allowed_ips"] = [ip]
        return payload

    # hooks

    def _ping(self) -> dict[str, Any]:
        self._call("GET", "/api/handshake")
        return {"configuration_name": self._conf()}

    def _panel_info(self) -> dict[str, Any]:
        configs = self._configurations()
        return {
            "configurations": [c.get("Name") for c in configs],
            "total_users": sum(int(c.get("TotalPeers") or 0) for c in configs),
            "active_users": sum(int(c.get("ConnectedPeers") or 0) for c in configs),
        }

    def _system_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {}
        for c in self._configurations():
            usage = c.get("DataUsage") or {}
            stats[str(c.get("Name"))] = {
                "status": c.get("Status"),
                "listen_port": c.get("ListenPort"),
                "total_peers": c.get("TotalPeers", 0),
                "connected_peers": c.get("ConnectedPeers", 0),
                "data_total_bytes": _gb_to_bytes(usage.get("Total")),
            }
        return stats

    def _inbounds(self) -> list[dict[str, Any]]:
        return self._configurations()

    def _find_user(self, username: str) -> ProvisionedUser | None:
        found = self._locate(username)
        return self._to_user(*found) if found else None

    def _list_users(self) -> list[ProvisionedUser]:
        return [self._to_user(peer, allowed) for peer, allowed in self._peers()]

    def _user_stats(self, username: str) -> UserStats:
        peer, allowed = self._locate_or_raise(username)
        user = self._to_user(peer, allowed)
        return UserStats.from_user(
            user,
            online=peer.get("status") == "running",
            latest_handshake=peer.get("latest_handshake"),
            endpoint=peer.get("endpoint"),
        )

    def _user_config(self, username: str) -> str | None:
        peer, _allowed = self._locate_or_raise(username)
        data = self._call("GET", f"/api/downloadPeer/{self._conf()}", params={"id": peer.get("id")}, user=username)
        if not isinstance(data, dict):
            raise BackendError("WGDashboard downloadPeer returned invalid payload")
        content = str(data.get("file") or "")
        return content if content.strip() else None

    def _create_user(self, spec: UserSpec) -> ProvisionResult:
        if self._locate(spec.username) is not None:
            raise DuplicateUserError(spec.username)
        conf = self._conf()
        payload = self._add_peer_payload(spec)
        result = self._call("POST", f"/api/addPeers/{conf}", json=payload)
        peer = result[0] if isinstance(result, list) and result and isinstance(result[0], dict) else {}
        peer_id = str(peer.get("id") or payload["public_key"])
        try:
            if not spec.enabled:
                self._set_access(peer_id, False)
            self._sync_jobs({"id": peer_id}, {"data_limit_bytes": spec.data_limit_bytes, "expiry": spec.expiry})
        except AdapterError:
            # no peer survives a failed quota/expiry sync
            self._remove_peer(conf, peer_id)
            raise
        self.logger.info("peer created panel_id=%s username=%s conf=%s", self.panel_id, spec.username, conf)
        return ProvisionResult(
            username=spec.username,
            remote_id=peer_id,
            subscription_url=self._download_url(peer_id),
            meta={"configuration_name": conf, "allowed_ip": peer.get("allowed_ip") or payload.get("allowed_ips")},
        )

    def _remove_peer(self, conf: str, peer_id: str) -> None:
        try:
            self._call("POST", f"/api/deletePeers/{conf}", json={"peers": [peer_id]})
        except AdapterError as e:
            self.logger.error(
                "peer rollback failed panel_id=%s peer=%s err=%s", self.panel_id, peer_id, short_error(e)
            )
            return
        self.logger.warning("peer rolled back panel_id=%s peer=%s", self.panel_id, peer_id)

    def _update_user(self, username: str, patch: UserPatch) -> ProvisionedUser:
        peer, allowed = self._locate_or_raise(username)
        changes = patch.changes()
        peer_id = str(peer.get("id") or "")
        self._sync_jobs(peer, changes)
        if "enabled" in changes and changes["enabled"] != allowed:
            self._set_access(peer_id, changes["enabled"])
        found = self._locate(username)
        return self._to_user(*found) if found else self._to_user(peer, changes.get("enabled", allowed))

    def _delete_user(self, username: str) -> None:
        peer, _allowed = self._locate_or_raise(username)
        peer_id = str(peer.get("id") or "")
        for field in ("total_data", "date"):
            try:
                self._delete_jobs(peer, field)
            except Exception as e:
                self.logger.warning("job cleanup failed panel_id=%s peer=%s err=%s", self.panel_id, peer_id, short_error(e))
        self._call("POST", f"/api/deletePeers/{self._conf()}", json={"peers": [peer_id]})

    def _set_enabled(self, username: str, enabled: bool) -> None:
        peer, _allowed = self._locate_or_raise(username)
        self._set_access(str(peer.get("id") or ""), enabled)
