import base64
import json
import logging
import unittest

from pydantic import ValidationError

from panelhub.core.logging import setup_logging, short_error
from panelhub.models.panel import PanelType
from panelhub.schemas.user import ProvisionedUser, UserPatch, UserSpec, UserStats
from panelhub.services.config_links import client_link, inbound_clients, stream_params

from panel_fakes import panel_config


class PanelTypeTests(unittest.TestCase):
    def test_aliases(self):
        self.assertIs(PanelType.parse("3X-UI"), PanelType.xui)
        self.assertIs(PanelType.parse("sui"), PanelType.sui)
        self.assertIs(PanelType.parse(" routeros "), PanelType.mikrotik)
        self.assertIs(PanelType.parse(PanelType.wireguard), PanelType.wireguard)
        with self.assertRaises(ValueError):
            PanelType.parse("pasarguard")

    def test_ports(self):
        self.assertEqual(PanelType.sui.default_port, 2095)
        self.assertEqual(PanelType.wireguard.default_port, 10086)


class PanelConfigTests(unittest.TestCase):
    def test_normalizes_fields(self):
        config = panel_config("marzban", id=7, type="Marzban", base_url="https://mz.example.com/ ")
        self.assertEqual(config.id, "7")
        self.assertIs(config.type, PanelType.marzban)
        self.assertEqual(config.base_url, "https://mz.example.com")

    def test_unknown_type_rejected(self):
        with self.assertRaises(ValidationError):
            panel_config("marzban", type="openvpn")

    def test_extras_coercion(self):
        config = panel_config("mikrotik", extras={"use_tls": "on", "mtu": "1420", "profile": " fast "})
        self.assertTrue(config.extra_bool("use_tls", False))
        self.assertEqual(config.extra_int("mtu", 1460), 1420)
        self.assertEqual(config.extra_int("missing", 5), 5)
        self.assertEqual(config.extra_str("profile"), "fast")

    def test_frozen(self):
        config = panel_config("marzban")
        with self.assertRaises(ValidationError):
            config.password = "x"

    def test_extras_are_read_only_copies(self):
        source = {"inbounds": {"vless": ["VLESS TCP"]}, "mtu": 1420}
        config = panel_config("marzban", extras=source)
        source["mtu"] = 1280
        source["inbounds"]["vless"].append("VLESS WS")
        with self.assertRaises(TypeError):
            config.extras["mtu"] = 1
        config.extra("inbounds")["vless"].clear()
        self.assertEqual(config.extra_int("mtu", 0), 1420)
        self.assertEqual(config.extra("inbounds"), {"vless": ["VLESS TCP"]})
        self.assertEqual(config.model_dump()["extras"]["mtu"], 1420)
        with self.assertRaises(TypeError):
            panel_config("marzban").extras["x"] = 1


class UserModelTests(unittest.TestCase):
    def test_spec_validation(self):
        with self.assertRaises(ValidationError):
            UserSpec(username="")
        with self.assertRaises(ValidationError):
            UserSpec(username="a", data_limit_bytes=-1)

    def test_patch_changes_skip_unset(self):
        self.assertEqual(UserPatch(enabled=False, note="").changes(), {"enabled": False, "note": ""})

    def test_stats_remaining(self):
        self.assertIsNone(UserStats(username="a", upload=5).remaining)
        self.assertEqual(UserStats(username="a", upload=5, download=5, limit=30).remaining, 20)
        self.assertEqual(UserStats(username="a", upload=50, limit=30).remaining, 0)

    def test_stats_from_user(self):
        user = ProvisionedUser(username="a", used_upload=1, used_download=2, data_limit_bytes=10)
        stats = UserStats.from_user(user, online=True, address="10.0.0.2")
        self.assertTrue(stats.online)
        self.assertEqual(stats.extra, {"address": "10.0.0.2"})
        self.assertEqual(stats.model_dump()["total"], 3)


class ConfigLinkTests(unittest.TestCase):
    inbound = {
        "protocol": "vmess",
        "port": 8080,
        "settings": json.dumps({"clients": [{"id": "u-1", "email": "amy"}, "junk"]}),
        "streamSettings": {"network": "ws", "security": "none",
                           "wsSettings": {"path": "/v", "headers": {"Host": "cdn.example.com"}}},
    }

    def test_clients_filter_junk(self):
        self.assertEqual(inbound_clients(self.inbound), [{"id": "u-1", "email": "amy"}])
        self.assertEqual(inbound_clients({"settings": "not json"}), [])

    def test_stream_params(self):
        self.assertEqual(stream_params(self.inbound),
                         {"type": "ws", "security": "none", "path": "/v", "host": "cdn.example.com"})

    def test_vmess_link(self):
        link = client_link(self.inbound, {"id": "u-1", "email": "amy"}, "edge.example.com")
        body = json.loads(base64.b64decode(link[len("vmess://"):]))
        self.assertEqual((body["add"], body["port"], body["id"], body["ps"]), ("edge.example.com", "8080", "u-1", "amy"))
        self.assertEqual(body["tls"], "")

    def test_unsupported_or_incomplete(self):
        self.assertIsNone(client_link({**self.inbound, "protocol": "shadowsocks"}, {"email": "amy"}, "h"))
        self.assertIsNone(client_link(self.inbound, {"email": "amy"}, ""))


class LoggingTests(unittest.TestCase):
    def test_short_error_truncates(self):
        self.assertEqual(len(short_error("x" * 500)), 220)
        self.assertEqual(short_error(ValueError("bad")), "bad")

    def test_setup_logging_sets_level(self):
        root = logging.getLogger()
        previous = root.level
        try:
            setup_logging("debug")
            self.assertEqual(root.level, logging.DEBUG)
        finally:
            root.setLevel(previous)
