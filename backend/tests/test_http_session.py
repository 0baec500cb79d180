import threading
import time
import unittest

import httpx

from panelhub.services.adapters.base import (
    AuthenticationError,
    BackendError,
    BackendUnavailableError,
    OperationCancelledError,
)
from panelhub.services.adapters.marzban import MarzbanAdapter
from panelhub.services.adapters.session import NEVER, AuthSession, SessionState
from panelhub.services.cancellation import CancelToken, operation_scope
from panelhub.services.session_store import MemorySessionStore

from panel_fakes import FakePanel, panel_config, reply


def token_route(panel, tokens=("tok-1", "tok-2", "tok-3"), delay=0.0):
    issued = iter(tokens)

    def handler(request):
        if delay:
            time.sleep(delay)
        return httpx.Response(200, json={"access_token": next(issued), "token_type": "bearer"})

    panel.route("POST", "/api/admin/token", handler)


def make_adapter(panel, store=None, **overrides):
    adapter = MarzbanAdapter(transport=panel.transport(), session_store=store)
    adapter.configure(panel_config("marzban", **overrides))
    return adapter


class SessionLifecycleTests(unittest.TestCase):
    def test_lazy_login_then_reuse(self):
        panel = FakePanel()
        token_route(panel)
        panel.route("GET", "/api/admin", reply(200, {"username": "admin"}))
        adapter = make_adapter(panel)
        self.assertEqual(adapter.state, SessionState.UNAUTHENTICATED)
        self.assertEqual(panel.count("POST", "/api/admin/token"), 0)

        adapter._request("GET", "/api/admin")
        adapter._request("GET", "/api/admin")

        self.assertEqual(adapter.state, SessionState.AUTHENTICATED)
        self.assertEqual(panel.count("POST", "/api/admin/token"), 1)
        self.assertEqual(panel.last("GET", "/api/admin").headers["Authorization"], "Bearer tok-1")

    def test_login_form_fields(self):
        panel = FakePanel()
        token_route(panel)
        panel.route("GET", "/api/admin", reply(200, {"username": "admin"}))
        make_adapter(panel)._request("GET", "/api/admin")
        body = panel.last("POST", "/api/admin/token").content.decode()
        self.assertIn("grant_type=password", body)
        self.assertIn("username=admin", body)
        self.assertIn("password=pw", body)

    def test_rejected_once_reauthenticates_and_retries(self):
        panel = FakePanel()
        token_route(panel)
        calls = []

        def admin(request):
            calls.append(request.headers["Authorization"])
            if len(calls) == 1:
                return httpx.Response(401, json={"detail": "Could not validate credentials"})
            return httpx.Response(200, json={"username": "admin"})

        panel.route("GET", "/api/admin", admin)
        adapter = make_adapter(panel)

        self.assertEqual(adapter._request("GET", "/api/admin"), {"username": "admin"})
        self.assertEqual(panel.count("POST", "/api/admin/token"), 2)
        self.assertEqual(calls, ["Bearer tok-1", "Bearer tok-2"])
        self.assertEqual(adapter.state, SessionState.AUTHENTICATED)

    def test_rejected_twice_is_authentication_error(self):
        panel = FakePanel()
        token_route(panel)
        panel.route("GET", "/api/admin", reply(403, {"detail": "forbidden"}))
        adapter = make_adapter(panel)

        with self.assertRaises(AuthenticationError):
            adapter._request("GET", "/api/admin")
        self.assertEqual(panel.count("POST", "/api/admin/token"), 2)
        self.assertEqual(panel.count("GET", "/api/admin"), 2)
        self.assertEqual(adapter.state, SessionState.UNAUTHENTICATED)

    def test_bad_credentials(self):
        panel = FakePanel()
        panel.route("POST", "/api/admin/token", reply(401, {"detail": "Incorrect username or password"}))
        adapter = make_adapter(panel)
        with self.assertRaises(AuthenticationError):
            adapter._request("GET", "/api/admin")
        self.assertEqual(adapter.state, SessionState.UNAUTHENTICATED)
        self.assertFalse(adapter.test_connection())

    def test_static_api_key_never_logs_in(self):
        panel = FakePanel()
        panel.route("GET", "/api/admin", reply(200, {"username": "admin"}))
        adapter = make_adapter(panel, api_key="static-key", username="", password="")
        adapter._request("GET", "/api/admin")
        self.assertEqual(panel.count("POST", "/api/admin/token"), 0)
        self.assertEqual(panel.last("GET", "/api/admin").headers["Authorization"], "Bearer static-key")

    def test_expired_session_logs_in_again(self):
        panel = FakePanel()
        token_route(panel)
        panel.route("GET", "/api/admin", reply(200, {"username": "admin"}))
        adapter = make_adapter(panel)
        adapter._request("GET", "/api/admin")
        adapter._session = AuthSession(credential="tok-1", issued_at=0, expires_at=1)

        adapter._request("GET", "/api/admin")

        self.assertEqual(panel.count("POST", "/api/admin/token"), 2)
        self.assertEqual(panel.last("GET", "/api/admin").headers["Authorization"], "Bearer tok-2")

    def test_reconfigure_drops_session(self):
        panel = FakePanel()
        token_route(panel)
        panel.route("GET", "/api/admin", reply(200, {"username": "admin"}))
        adapter = make_adapter(panel)
        adapter._request("GET", "/api/admin")
        adapter.configure(panel_config("marzban", password="rotated"))
        self.assertEqual(adapter.state, SessionState.UNAUTHENTICATED)
        adapter._request("GET", "/api/admin")
        self.assertEqual(panel.count("POST", "/api/admin/token"), 2)


class ConcurrencyTests(unittest.TestCase):
    def test_concurrent_callers_share_one_login(self):
        panel = FakePanel()
        token_route(panel, delay=0.05)
        panel.route("GET", "/api/admin", reply(200, {"username": "admin"}))
        adapter = make_adapter(panel)
        barrier = threading.Barrier(8)
        errors = []

        def worker():
            barrier.wait()
            try:
                adapter._request("GET", "/api/admin")
            except Exception as e:  # surfaced below
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)

        self.assertEqual(errors, [])
        self.assertEqual(panel.count("POST", "/api/admin/token"), 1)
        self.assertEqual(panel.count("GET", "/api/admin"), 8)


class SessionStoreTests(unittest.TestCase):
    def test_login_is_persisted(self):
        panel = FakePanel()
        token_route(panel)
        panel.route("GET", "/api/admin", reply(200, {"username": "admin"}))
        store = MemorySessionStore()
        make_adapter(panel, store)._request("GET", "/api/admin")
        meta = store.load_session_meta("marzban-1")
        self.assertEqual(meta["credential"], "tok-1")
        self.assertGreater(meta["expires_at"], time.time())

    def test_restored_session_skips_login(self):
        panel = FakePanel()
        token_route(panel)
        panel.route("GET", "/api/admin", reply(200, {"username": "admin"}))
        store = MemorySessionStore()
        store.save_session_meta("marzban-1", AuthSession.issue("cached", 600).to_meta())

        make_adapter(panel, store)._request("GET", "/api/admin")

        self.assertEqual(panel.count("POST", "/api/admin/token"), 0)
        self.assertEqual(panel.last("GET", "/api/admin").headers["Authorization"], "Bearer cached")

    def test_expired_stored_session_is_ignored(self):
        panel = FakePanel()
        token_route(panel)
        panel.route("GET", "/api/admin", reply(200, {"username": "admin"}))
        store = MemorySessionStore()
        store.save_session_meta("marzban-1", {"credential": "old", "issued_at": 0, "expires_at": 1})

        make_adapter(panel, store)._request("GET", "/api/admin")

        self.assertEqual(panel.count("POST", "/api/admin/token"), 1)

    def test_static_key_not_persisted(self):
        panel = FakePanel()
        panel.route("GET", "/api/admin", reply(200, {"username": "admin"}))
        store = MemorySessionStore()
        make_adapter(panel, store, api_key="static-key")._request("GET", "/api/admin")
        self.assertIsNone(store.load_session_meta("marzban-1"))

    def test_meta_round_trip_keeps_never(self):
        session = AuthSession(credential="k")
        self.assertEqual(session.to_meta()["expires_at"], None)
        self.assertEqual(AuthSession.from_meta(session.to_meta()).expires_at, NEVER)
        self.assertIsNone(AuthSession.from_meta({"credential": ""}))
        self.assertIsNone(AuthSession.from_meta(None))


class TransportFailureTests(unittest.TestCase):
    def test_timeout_is_unavailable(self):
        panel = FakePanel()
        token_route(panel)

        def slow(request):
            raise httpx.ReadTimeout("timed out", request=request)

        panel.route("GET", "/api/admin", slow)
        adapter = make_adapter(panel)
        with self.assertRaises(BackendUnavailableError) as ctx:
            adapter._request("GET", "/api/admin")
        self.assertNotIsInstance(ctx.exception, OperationCancelledError)

    def test_connect_error_is_unavailable(self):
        panel = FakePanel()

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        panel.route("POST", "/api/admin/token", refuse)
        with self.assertRaises(BackendUnavailableError):
            make_adapter(panel)._request("GET", "/api/admin")

    def test_gateway_errors_are_unavailable(self):
        panel = FakePanel()
        token_route(panel)
        panel.route("GET", "/api/system", reply(502, text="Bad Gateway"))
        with self.assertRaises(BackendUnavailableError):
            make_adapter(panel)._request("GET", "/api/system")

    def test_backend_message_is_kept(self):
        panel = FakePanel()
        token_route(panel)
        panel.route("GET", "/api/system", reply(500, {"detail": "database is locked"}))
        with self.assertRaises(BackendError) as ctx:
            make_adapter(panel)._request("GET", "/api/system")
        self.assertEqual(ctx.exception.message, "database is locked")
        self.assertEqual(ctx.exception.status_code, 500)

    def test_invalid_json_is_backend_error(self):
        panel = FakePanel()
        token_route(panel)
        panel.route("GET", "/api/system", reply(200, text="<html>login</html>"))
        with self.assertRaises(BackendError):
            make_adapter(panel)._request("GET", "/api/system")

    def test_cancelled_before_start_sends_nothing(self):
        panel = FakePanel()
        token_route(panel)
        adapter = make_adapter(panel)
        token = CancelToken()
        token.cancel()
        with self.assertRaises(OperationCancelledError):
            with operation_scope(cancel=token):
                adapter._request("GET", "/api/admin")
        self.assertEqual(panel.requests, [])

    def test_expired_deadline_sends_nothing(self):
        panel = FakePanel()
        token_route(panel)
        adapter = make_adapter(panel)
        with self.assertRaises(BackendUnavailableError):
            with operation_scope(deadline=0):
                adapter._request("GET", "/api/admin")
        self.assertEqual(panel.requests, [])

    def test_cancel_during_request_is_cancelled_error(self):
        panel = FakePanel()
        token_route(panel)
        token = CancelToken()

        def cancel_then_time_out(request):
            token.cancel()
            raise httpx.ReadTimeout("timed out", request=request)

        panel.route("GET", "/api/admin", cancel_then_time_out)
        adapter = make_adapter(panel)
        with self.assertRaises(OperationCancelledError):
            with operation_scope(cancel=token):
                adapter._request("GET", "/api/admin")
        # the client was closed by the cancel callback and is rebuilt lazily
        self.assertIsNone(adapter._client)
