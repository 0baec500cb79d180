from __future__ import annotations

import enum


class PanelType(str, enum.Enum):
    marzban = "marzban"
    xui = "x-ui"
    sui = "s-ui"
    wireguard = "wireguard"
    mikrotik = "mikrotik"

    @classmethod
    def parse(cls, value: "PanelType | str") -> "PanelType":
        if isinstance(value, PanelType):
            return value
        key = str(value or "").strip().lower()
        found = _ALIASES.get(key)
        if found is None:
            raise ValueError(f"Unsupported panel_type: {value}")
        return found

    @property
    def display_name(self) -> str:
        return _DISPLAY[self][0]

    @property
    def description(self) -> str:
        return _DISPLAY[self][1]

    @property
    def default_port(self) -> int:
        return _DEFAULT_PORTS[self]


_ALIASES: dict[str, PanelType] = {
    "marzban": PanelType.marzban,
    "x-ui": PanelType.xui,
    "xui": PanelType.xui,
    "3x-ui": PanelType.xui,
    "3xui": PanelType.xui,
    "sanaei": PanelType.xui,
    "s-ui": PanelType.sui,
    "sui": PanelType.sui,
    "wireguard": PanelType.wireguard,
    "wg_dashboard": PanelType.wireguard,
    "wgdashboard": PanelType.wireguard,
    "mikrotik": PanelType.mikrotik,
    "routeros": PanelType.mikrotik,
}

_DISPLAY: dict[PanelType, tuple[str, str]] = {
    PanelType.marzban: ("Marzban", "Unified GUI censorship resistant solution powered by Xray"),
    PanelType.xui: ("X-UI", "Multi-protocol multi-user xray panel"),
    PanelType.sui: ("S-UI", "Sing-box based multi-protocol panel"),
    PanelType.wireguard: ("WireGuard Dashboard", "Web dashboard for WireGuard peers"),
    PanelType.mikrotik: ("MikroTik", "RouterOS PPP/hotspot accounts over the binary API"),
}

_DEFAULT_PORTS: dict[PanelType, int] = {
    PanelType.marzban: 8000,
    PanelType.xui: 54321,
    PanelType.sui: 2095,
    PanelType.wireguard: 10086,
    PanelType.mikrotik: 8728,
}

ROUTEROS_TLS_PORT = 8729
