import unittest

import httpx

from panelhub.schemas.user import UserPatch, UserSpec
from panelhub.services.adapters.base import (
    BackendError,
    ConfigurationError,
    DuplicateUserError,
    UserNotFoundError,
)
from panelhub.services.adapters.marzban import MarzbanAdapter

from panel_fakes import FakePanel, body_of, panel_config, reply

ALICE = {
    "username": "alice",
    "status": "active",
    "expire": None,
    "data_limit": 10_000_000_000,
    "used_traffic": 1_500,
    "online_at": "2024-05-01T10:00:00",
    "subscription_url": "/sub/YWxpY2U",
    "links": ["vless://uuid@mz.example.com:443?security=reality#alice"],
}


def marzban_panel():
    panel = FakePanel()
    panel.route("POST", "/api/admin/token", reply(200, {"access_token": "jwt-1", "token_type": "bearer"}))
    return panel


def make_adapter(panel, **overrides):
    adapter = MarzbanAdapter(transport=panel.transport())
    adapter.configure(panel_config("marzban", **overrides))
    return adapter


class CreateUserTests(unittest.TestCase):
    def test_alice_end_to_end(self):
        panel = marzban_panel()
        panel.route("POST", "/api/user", reply(200, ALICE))
        adapter = make_adapter(panel, extras={"inbounds": {"vless": ["VLESS TCP"]}})

        result = adapter.create_user(UserSpec(username="alice", data_limit_bytes=10_000_000_000, expiry=0))

        self.assertEqual(panel.count("POST", "/api/admin/token"), 1)
        self.assertEqual(panel.count("POST", "/api/user"), 1)
        self.assertEqual(len(panel.requests), 2)
        create = panel.last("POST", "/api/user")
        self.assertEqual(create.headers["Authorization"], "Bearer jwt-1")
        self.assertEqual(body_of(create), {
            "username": "alice",
            "expire": 0,
            "data_limit": 10_000_000_000,
            "data_limit_reset_strategy": "no_reset",
            "status": "active",
            "note": "",
            "inbounds": {"vless": ["VLESS TCP"]},
            "proxies": {"vless": {}},
        })
        self.assertEqual(result.username, "alice")
        self.assertEqual(result.subscription_url, "https://mz.example.com/sub/YWxpY2U")

    def test_inbounds_discovered_when_not_configured(self):
        panel = marzban_panel()
        panel.route("GET", "/api/inbounds", reply(200, {
            "vless": [{"tag": "VLESS TCP", "protocol": "vless"}],
            "trojan": [{"tag": "TROJAN WS", "protocol": "trojan"}],
            "shadowsocks": [],
        }))
        panel.route("POST", "/api/user", reply(200, ALICE))
        make_adapter(panel).create_user(UserSpec(username="alice"))
        body = body_of(panel.last("POST", "/api/user"))
        self.assertEqual(body["inbounds"], {"vless": ["VLESS TCP"], "trojan": ["TROJAN WS"]})
        self.assertEqual(body["proxies"], {"vless": {}, "trojan": {}})

    def test_inbound_discovery_failure_falls_back_to_panel_defaults(self):
        panel = marzban_panel()
        panel.route("GET", "/api/inbounds", reply(500, {"detail": "boom"}))
        panel.route("POST", "/api/user", reply(200, ALICE))
        make_adapter(panel).create_user(UserSpec(username="alice"))
        body = body_of(panel.last("POST", "/api/user"))
        self.assertNotIn("inbounds", body)
        self.assertNotIn("proxies", body)

    def test_duplicate_conflict(self):
        panel = marzban_panel()
        panel.route("POST", "/api/user", reply(409, {"detail": "User already exists"}))
        adapter = make_adapter(panel, extras={"inbounds": {"vless": ["VLESS TCP"]}})
        with self.assertRaises(DuplicateUserError) as ctx:
            adapter.create_user(UserSpec(username="alice"))
        self.assertEqual(ctx.exception.username, "alice")

    def test_validation_error_keeps_backend_message(self):
        panel = marzban_panel()
        panel.route("POST", "/api/user", reply(400, {"detail": "Inbound VLESS X doesn't exist"}))
        adapter = make_adapter(panel, extras={"inbounds": {"vless": ["VLESS X"]}})
        with self.assertRaises(BackendError) as ctx:
            adapter.create_user(UserSpec(username="alice"))
        self.assertEqual(ctx.exception.message, "Inbound VLESS X doesn't exist")

    def test_disabled_user_created_with_status(self):
        panel = marzban_panel()
        panel.route("POST", "/api/user", reply(200, {**ALICE, "status": "disabled"}))
        adapter = make_adapter(panel, extras={"inbounds": {"vless": ["VLESS TCP"]}})
        adapter.create_user(UserSpec(username="alice", enabled=False))
        self.assertEqual(body_of(panel.last("POST", "/api/user"))["status"], "disabled")


class UserReadTests(unittest.TestCase):
    def test_get_user_maps_fields(self):
        panel = marzban_panel()
        panel.route("GET", "/api/user/alice", reply(200, ALICE))
        user = make_adapter(panel).get_user("alice")
        self.assertEqual(user.username, "alice")
        self.assertEqual(user.data_limit_bytes, 10_000_000_000)
        self.assertEqual(user.expiry, 0)
        self.assertTrue(user.enabled)
        self.assertEqual(user.used_download, 1_500)
        self.assertEqual(user.used_total, 1_500)

    def test_missing_user_is_none(self):
        panel = marzban_panel()
        panel.route("GET", "/api/user/ghost", reply(404, {"detail": "User not found"}))
        self.assertIsNone(make_adapter(panel).get_user("ghost"))

    def test_read_degrades_when_panel_down(self):
        panel = marzban_panel()
        panel.route("GET", "/api/users", reply(503, text="Service Unavailable"))
        adapter = make_adapter(panel)
        self.assertEqual(adapter.get_all_users(), [])

    def test_list_users(self):
        panel = marzban_panel()
        panel.route("GET", "/api/users", reply(200, {
            "users": [ALICE, {**ALICE, "username": "bob", "status": "limited"}], "total": 2,
        }))
        users = make_adapter(panel).get_all_users()
        self.assertEqual([u.username for u in users], ["alice", "bob"])
        self.assertFalse(users[1].enabled)

    def test_stats_and_config(self):
        panel = marzban_panel()
        panel.route("GET", "/api/user/alice", reply(200, ALICE))
        adapter = make_adapter(panel)
        stats = adapter.get_user_stats("alice")
        self.assertTrue(stats.online)
        self.assertEqual(stats.remaining, 10_000_000_000 - 1_500)
        self.assertEqual(adapter.get_user_config("alice"), "https://mz.example.com/sub/YWxpY2U")

    def test_config_falls_back_to_links(self):
        panel = marzban_panel()
        panel.route("GET", "/api/user/alice", reply(200, {**ALICE, "subscription_url": ""}))
        self.assertEqual(make_adapter(panel).get_user_config("alice"), ALICE["links"][0])

    def test_panel_info(self):
        panel = marzban_panel()
        panel.route("GET", "/api/system", reply(200, {"version": "0.4.9", "total_user": 3, "users_active": 2}))
        panel.route("GET", "/api/admin", reply(200, {"username": "admin", "is_sudo": True}))
        info = make_adapter(panel).get_panel_info()
        self.assertEqual(info["version"], "0.4.9")
        self.assertEqual(info["admin_username"], "admin")
        self.assertEqual(info["active_users"], 2)


class UserWriteTests(unittest.TestCase):
    def test_update_sends_only_changes(self):
        panel = marzban_panel()
        panel.route("PUT", "/api/user/alice", reply(200, {**ALICE, "data_limit": 5}))
        user = make_adapter(panel).update_user("alice", UserPatch(data_limit_bytes=5, enabled=False))
        self.assertEqual(body_of(panel.last("PUT", "/api/user/alice")), {"data_limit": 5, "status": "disabled"})
        self.assertEqual(user.data_limit_bytes, 5)

    def test_update_missing_user(self):
        panel = marzban_panel()
        panel.route("PUT", "/api/user/ghost", reply(404, {"detail": "User not found"}))
        with self.assertRaises(UserNotFoundError):
            make_adapter(panel).update_user("ghost", UserPatch(note="x"))

    def test_delete_ghost_succeeds(self):
        panel = marzban_panel()
        panel.route("DELETE", "/api/user/ghost", reply(404, {"detail": "User not found"}))
        self.assertTrue(make_adapter(panel).delete_user("ghost"))

    def test_enable_disable_and_reset(self):
        panel = marzban_panel()
        panel.route("PUT", "/api/user/alice", reply(200, ALICE))
        panel.route("POST", "/api/user/alice/reset", reply(200, ALICE))
        adapter = make_adapter(panel)
        self.assertTrue(adapter.disable_user("alice"))
        self.assertEqual(body_of(panel.last("PUT", "/api/user/alice")), {"status": "disabled"})
        self.assertTrue(adapter.enable_user("alice"))
        self.assertEqual(body_of(panel.last("PUT", "/api/user/alice")), {"status": "active"})
        self.assertTrue(adapter.reset_user_data("alice"))

    def test_usernames_are_path_quoted(self):
        panel = FakePanel()
        panel.route("POST", "/api/admin/token", reply(200, {"access_token": "jwt-1"}))
        seen = []

        def capture(request):
            seen.append(request.url.raw_path)
            return httpx.Response(200, json=ALICE)

        panel.routes[("GET", "/api/user/a b")] = capture
        make_adapter(panel).get_user("a b")
        self.assertEqual(seen, [b"/api/user/a%20b"])


class ConfigTests(unittest.TestCase):
    def test_requires_credentials(self):
        with self.assertRaises(ConfigurationError):
            make_adapter(FakePanel(), username="", password="")

    def test_requires_base_url(self):
        with self.assertRaises(ConfigurationError):
            make_adapter(FakePanel(), base_url="")
