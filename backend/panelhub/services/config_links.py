from __future__ import annotations

import base64
import json
from typing import Any
from urllib.parse import quote, urlencode


def json_field(value: Any) -> dict[str, Any]:
    """X-UI stores inbound settings as JSON strings; accept both shapes."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip():
        try:
            parsed = json.loads(value)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def inbound_clients(inbound: dict[str, Any]) -> list[dict[str, Any]]:
    clients = json_field(inbound.get("settings")).get("clients")
    if not isinstance(clients, list):
        return []
    return [c for c in clients if isinstance(c, dict)]


def stream_params(inbound: dict[str, Any]) -> dict[str, str]:
    stream = json_field(inbound.get("streamSettings"))
    network = str(stream.get("network") or "tcp")
    security = str(stream.get("security") or "none")
    out = {"type": network, "security": security}

    ws = stream.get("wsSettings") if isinstance(stream.get("wsSettings"), dict) else {}
    if ws.get("path"):
        out["path"] = str(ws["path"])
    headers = ws.get("headers") if isinstance(ws.get("headers"), dict) else {}
    if headers.get("Host"):
        out["host"] = str(headers["Host"])

    grpc = stream.get("grpcSettings") if isinstance(stream.get("grpcSettings"), dict) else {}
    if grpc.get("serviceName"):
        out["serviceName"] = str(grpc["serviceName"])

    tls = stream.get("tlsSettings") if isinstance(stream.get("tlsSettings"), dict) else {}
    if tls.get("serverName"):
        out["sni"] = str(tls["serverName"])
    return out


def vless_link(client_id: str, host: str, port: int, remark: str, params: dict[str, str], flow: str = "") -> str:
    query = dict(params)
    if flow:
        query["flow"] = flow
    return f"vless://{client_id}@{host}:{port}?{urlencode(query)}#{quote(remark)}"


def vmess_link(client_id: str, host: str, port: int, remark: str, params: dict[str, str]) -> str:
    body = {
        "v": "2",
        "ps": remark,
        "add": host,
        "port": str(port),
        "id": client_id,
        "aid": "0",
        "net": params.get("type", "tcp"),
        "type": "none",
        "host": params.get("host", ""),
        "path": params.get("path", ""),
        "tls": "" if params.get("security", "none") == "none" else params["security"],
        "sni": params.get("sni", ""),
    }
    raw = json.dumps(body, separators=(",", ":")).encode("utf-8")
    return "vmess://" + base64.b64encode(raw).decode("ascii")


def trojan_link(password: str, host: str, port: int, remark: str, params: dict[str, str]) -> str:
    return f"trojan://{quote(password, safe='')}@{host}:{port}?{urlencode(params)}#{quote(remark)}"


def client_link(inbound: dict[str, Any], client: dict[str, Any], host: str) -> str | None:
    """Share link for one client of an inbound; None for protocols without one."""
    protocol = str(inbound.get("protocol") or "").lower()
    try:
        port = int(inbound.get("port") or 0)
    except (TypeError, ValueError):
        port = 0
    if not host or not port:
        return None
    remark = str(client.get("email") or "")
    params = stream_params(inbound)
    if protocol == "vless":
        return vless_link(str(client.get("id") or ""), host, port, remark, params, str(client.get("flow") or ""))
    if protocol == "vmess":
        return vmess_link(str(client.get("id") or ""), host, port, remark, params)
    if protocol == "trojan":
        return trojan_link(str(client.get("password") or ""), host, port, remark, params)
    return None
