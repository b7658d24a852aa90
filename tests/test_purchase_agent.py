from unittest import mock

import pytest
import requests

from services.errors import ExternalCapabilityError
from services.purchase_agent import AgentSessionManager, PurchaseAgentClient


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class _Client:
    def __init__(self, fail_release=False):
        self.opened = 0
        self.released = []
        self.fail_release = fail_release

    def open_session(self):
        self.opened += 1
        return f"s{self.opened}"

    def release_session(self, handle):
        if self.fail_release:
            raise ExternalCapabilityError("gone")
        self.released.append(handle)


class TestSessionManager:
    def test_session_is_released_on_error(self):
        client = _Client()
        manager = AgentSessionManager(client)

        with pytest.raises(RuntimeError):
            with manager.session():
                raise RuntimeError("boom")

        assert client.released == ["s1"]
        assert manager.active_count() == 0

    def test_reap_expired_releases_only_old_sessions(self):
        clock = _Clock()
        client = _Client()
        manager = AgentSessionManager(client, max_age_seconds=60, clock=clock)
        old = manager.acquire()
        clock.now += 45
        fresh = manager.acquire()
        clock.now += 30

        assert manager.reap_expired() == 1
        assert client.released == [old]
        manager.release(fresh)
        assert manager.active_count() == 0

    def test_release_failure_is_not_raised(self):
        manager = AgentSessionManager(_Client(fail_release=True))
        with manager.session():
            pass
        assert manager.active_count() == 0

    def test_double_release_is_noop(self):
        client = _Client()
        manager = AgentSessionManager(client)
        handle = manager.acquire()
        manager.release(handle)
        manager.release(handle)
        assert client.released == [handle]


class TestClient:
    def _response(self, status=200, body=None):
        resp = mock.Mock()
        resp.status_code = status
        resp.ok = 200 <= status < 300
        resp.json.return_value = body or {}
        resp.text = ""
        return resp

    def test_requires_configuration(self):
        with pytest.raises(ExternalCapabilityError):
            PurchaseAgentClient("", "").open_session()

    def test_act_sends_instruction_with_timeouts(self):
        client = PurchaseAgentClient("https://agent.test/", "key", timeout=240, connect_timeout=10)
        body = {"success": True, "orderDetails": {"priceCents": 999}}
        with mock.patch("services.purchase_agent.requests.request", return_value=self._response(body=body)) as req:
            result = client.act("s1", "Navigate")

        assert result == body
        args, kwargs = req.call_args
        assert args == ("POST", "https://agent.test/v1/sessions/s1/act")
        assert kwargs["json"] == {"instruction": "Navigate"}
        assert kwargs["timeout"] == (10, 240)
        assert kwargs["headers"]["Authorization"] == "Bearer key"

    def test_reported_failure_raises(self):
        client = PurchaseAgentClient("https://agent.test", "key")
        resp = self._response(body={"success": False, "error": "out of stock"})
        with mock.patch("services.purchase_agent.requests.request", return_value=resp):
            with pytest.raises(ExternalCapabilityError, match="out of stock"):
                client.act("s1", "Navigate")

    def test_timeout_becomes_capability_error(self):
        client = PurchaseAgentClient("https://agent.test", "key")
        with mock.patch("services.purchase_agent.requests.request", side_effect=requests.Timeout("slow")):
            with pytest.raises(ExternalCapabilityError):
                client.open_session()

    def test_http_error_body(self):
        client = PurchaseAgentClient("https://agent.test", "key")
        resp = self._response(status=503, body={"error": "busy"})
        with mock.patch("services.purchase_agent.requests.request", return_value=resp):
            with pytest.raises(ExternalCapabilityError, match="busy"):
                client.open_session()
