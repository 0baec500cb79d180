from __future__ import annotations

import copy
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from panelhub.models.panel import PanelType


def as_int(value: Any, default: int) -> int:
    try:
        if value is None:
            return default
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    s = str(value).strip().lower()
    if s in {"1", "true", "yes", "on"}:
        return True
    if s in {"0", "false", "no", "off"}:
        return False
    return default


class PanelConfig(BaseModel):
    """Connection settings for one panel.

    Owned by the persistence layer; adapters get this frozen copy and read
    backend-specific knobs from ``extras``:

      marzban:   inbounds ({"vless": ["VLESS TCP"]}), proxies
      x-ui:      inbound_id, flow, sub_base_url
      s-ui:      inbound_ids, protocol
      wireguard: configuration_name, dns_addresses, mtu, keep_alive,
                 endpoint_allowed_ip, remote_endpoint, preshared_key
      mikrotik:  service (ppp|hotspot), profile, use_tls
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    type: PanelType
    base_url: str = ""
    host: str = ""
    port: Optional[int] = None
    username: str = ""
    password: str = ""
    api_key: str = ""
    verify_ssl: bool = True
    timeout: Optional[float] = None
    connect_timeout: Optional[float] = None
    session_ttl: Optional[int] = None
    enabled: bool = True
    extras: Mapping[str, Any] = Field(default_factory=dict, validate_default=True)

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, v: Any) -> str:
        return str(v)

    @field_validator("type", mode="before")
    @classmethod
    def _parse_type(cls, v: Any) -> PanelType:
        return PanelType.parse(v)

    @field_validator("base_url")
    @classmethod
    def _strip_slash(cls, v: str) -> str:
        return (v or "").strip().rstrip("/")

    @field_validator("extras")
    @classmethod
    def _freeze_extras(cls, v: Mapping[str, Any]) -> Mapping[str, Any]:
        return MappingProxyType(copy.deepcopy(dict(v)))

    @field_serializer("extras")
    def _dump_extras(self, v: Mapping[str, Any]) -> dict[str, Any]:
        return copy.deepcopy(dict(v))

    def extra(self, key: str, default: Any = None) -> Any:
        """Copy of the raw value; nested dicts and lists stay private to the config."""
        value = self.extras.get(key)
        return default if value is None else copy.deepcopy(value)

    def extra_int(self, key: str, default: int) -> int:
        return as_int(self.extras.get(key), default)

    def extra_bool(self, key: str, default: bool) -> bool:
        return as_bool(self.extras.get(key), default)

    def extra_str(self, key: str, default: str = "") -> str:
        value = self.extras.get(key)
        return default if value is None else str(value).strip()


class CapabilitySet(BaseModel):
    model_config = ConfigDict(frozen=True)

    panel_type: PanelType
    create_user: bool = True
    update_user: bool = True
    delete_user: bool = True
    get_user_config: bool = True
    get_user_stats: bool = True
    enable_disable_user: bool = True
    reset_user_data: bool = True
    inbound_management: bool = True
    system_stats: bool = True
    protocols: tuple[str, ...] = ()

    def supports(self, operation: str) -> bool:
        return bool(getattr(self, operation, False))


class PanelTypeInfo(BaseModel):
    type: PanelType
    display_name: str
    description: str
    default_port: int
    capabilities: CapabilitySet


class ConfiguredPanel(BaseModel):
    id: str
    name: str
    type: PanelType
    endpoint: str
    capabilities: CapabilitySet


class PanelStatus(BaseModel):
    panel_id: str
    status: str  # online / offline / error
    info: dict[str, Any] = Field(default_factory=dict)
    message: Optional[str] = None
    checked_at: datetime
