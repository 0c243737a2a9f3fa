"""Tests for the provisioning client — HTTP mapping, queue routing, status caching."""

from unittest.mock import MagicMock

import pytest
import requests

from cache import CacheStore
from provisioning import (
    ENDPOINT_GET_STATUS,
    ENDPOINT_SUSPEND,
    ProvisioningClient,
)
from request_queue import (
    CircuitBreakerRegistry,
    CircuitOpenError,
    ExternalClientError,
    ExternalServerError,
    ExternalTimeout,
    RequestQueue,
)


def _response(status_code=200, body=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.content = b"" if body is None else b"{...}"
    resp.json.return_value = body
    return resp


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def queue():
    return RequestQueue(breakers=CircuitBreakerRegistry(failure_threshold=2),
                        sleep=lambda s: None, default_timeout_sec=None)


@pytest.fixture
def cache():
    return CacheStore()


@pytest.fixture
def client(session, queue, cache):
    return ProvisioningClient("https://panel.example.com/", "secret-key", queue,
                              cache=cache, session=session)


class TestSuspend:
    def test_posts_to_suspend_endpoint(self, client, session):
        session.request.return_value = _response(204)
        client.suspend("abc123")
        method, url = session.request.call_args.args
        assert method == "POST"
        assert url == "https://panel.example.com/api/application/servers/abc123/suspend"
        headers = session.request.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer secret-key"
        assert session.request.call_args.kwargs["timeout"] == 15.0

    def test_unsuspend_endpoint(self, client, session):
        session.request.return_value = _response(204)
        client.unsuspend("abc123")
        assert session.request.call_args.args[1].endswith("/servers/abc123/unsuspend")

    def test_suspend_invalidates_cached_status(self, client, session, cache):
        session.request.return_value = _response(200, {"attributes": {"current_state": "running"}})
        assert client.is_online("abc123") is True
        session.request.return_value = _response(204)
        client.suspend("abc123")
        session.request.return_value = _response(200, {"attributes": {"current_state": "offline"}})
        assert client.is_online("abc123") is False

    def test_server_errors_retried_then_raised(self, client, session, queue):
        session.request.return_value = _response(502)
        with pytest.raises(ExternalServerError) as exc_info:
            client.suspend("abc123")
        assert exc_info.value.status_code == 502
        assert session.request.call_count == 3
        assert queue.breakers.get_state(ENDPOINT_SUSPEND).consecutive_failures == 1

    def test_client_error_not_retried(self, client, session, queue):
        session.request.return_value = _response(404)
        with pytest.raises(ExternalClientError) as exc_info:
            client.suspend("missing")
        assert exc_info.value.status_code == 404
        assert session.request.call_count == 1
        assert queue.breakers.get_state(ENDPOINT_SUSPEND).consecutive_failures == 0

    def test_open_circuit_fails_fast(self, client, session):
        session.request.return_value = _response(500)
        for _ in range(2):
            with pytest.raises(ExternalServerError):
                client.suspend("abc123")
        calls = session.request.call_count
        with pytest.raises(CircuitOpenError):
            client.suspend("abc123")
        assert session.request.call_count == calls

    def test_timeout_mapped(self, client, session):
        session.request.side_effect = requests.Timeout("read timed out")
        with pytest.raises(ExternalTimeout):
            client.suspend("abc123")

    def test_connection_error_mapped(self, client, session):
        session.request.side_effect = requests.ConnectionError("refused")
        with pytest.raises(ExternalServerError):
            client.suspend("abc123")

    def test_unconfigured_url(self, queue, session):
        client = ProvisioningClient("", "key", queue, session=session)
        with pytest.raises(ExternalClientError):
            client.suspend("abc123")
        session.request.assert_not_called()


class TestStatus:
    def test_returns_attributes(self, client, session):
        session.request.return_value = _response(200, {
            "object": "stats", "attributes": {"current_state": "starting", "is_suspended": False},
        })
        status = client.get_status("abc123")
        assert status == {"current_state": "starting", "is_suspended": False}
        method, url = session.request.call_args.args
        assert method == "GET"
        assert url.endswith("/api/client/servers/abc123/resources")

    def test_status_is_cached(self, client, session, cache):
        session.request.return_value = _response(200, {"attributes": {"current_state": "running"}})
        client.get_status("abc123")
        client.get_status("abc123")
        assert session.request.call_count == 1
        assert cache.get_stats()["hits"] == 1

    def test_bypass_cache(self, client, session):
        session.request.return_value = _response(200, {"attributes": {"current_state": "running"}})
        client.get_status("abc123", use_cache=False)
        client.get_status("abc123", use_cache=False)
        assert session.request.call_count == 2

    def test_stale_status_served_when_backend_fails(self, session, queue):
        clock = [0.0]
        cache = CacheStore(clock=lambda: clock[0])
        client = ProvisioningClient("https://panel", "k", queue, cache=cache, session=session)
        session.request.return_value = _response(200, {"attributes": {"current_state": "running"}})
        client.get_status("abc123")
        clock[0] = 100.0
        session.request.return_value = _response(503)
        assert client.is_online("abc123") is True

    def test_stale_status_refused_when_disallowed(self, session, queue):
        clock = [0.0]
        cache = CacheStore(clock=lambda: clock[0])
        client = ProvisioningClient("https://panel", "k", queue, cache=cache, session=session)
        session.request.return_value = _response(200, {"attributes": {"current_state": "running"}})
        assert client.is_online("abc123", allow_stale=False) is True
        clock[0] = 100.0
        session.request.return_value = _response(503)
        with pytest.raises(ExternalServerError):
            client.is_online("abc123", allow_stale=False)

    def test_suspend_forgets_only_its_own_status(self, client, session, cache):
        cache.set("status:a*", {"current_state": "running"}, 60)
        cache.set("status:abc", {"current_state": "running"}, 60)
        session.request.return_value = _response(204)
        client.suspend("a*")
        assert cache.backend.keys("*") == ["prov:status:abc"]

    @pytest.mark.parametrize("state,online", [
        ("running", True), ("starting", True), ("offline", False), ("stopping", False),
    ])
    def test_online_states(self, client, session, state, online):
        session.request.return_value = _response(200, {"attributes": {"current_state": state}})
        assert client.is_online(f"srv-{state}") is online

    def test_invalid_json(self, client, session):
        resp = _response(200, {})
        resp.json.side_effect = ValueError("not json")
        session.request.return_value = resp
        with pytest.raises(ExternalServerError):
            client.get_status("abc123", use_cache=False)

    def test_status_calls_use_own_breaker(self, client, session, queue):
        session.request.return_value = _response(500)
        with pytest.raises(ExternalServerError):
            client.get_status("abc123", use_cache=False)
        assert queue.breakers.get_state(ENDPOINT_GET_STATUS).consecutive_failures == 1
        assert queue.breakers.get_state(ENDPOINT_SUSPEND).consecutive_failures == 0
