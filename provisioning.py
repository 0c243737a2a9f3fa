# Coinmeter Provisioning Client
# Typed calls to the provisioning backend's HTTP API. Every call is routed
# through the shared RequestQueue under its own endpoint key, so a failing
# suspend endpoint trips only its own circuit breaker.

import logging
from typing import Optional

import requests

from request_queue import (
    ExternalClientError,
    ExternalServerError,
    ExternalTimeout,
    RequestQueue,
)

log = logging.getLogger("coinmeter")

ENDPOINT_SUSPEND = "suspend"
ENDPOINT_UNSUSPEND = "unsuspend"
ENDPOINT_GET_STATUS = "get_status"

# Remote states in which a resource is consuming compute.
ONLINE_STATES = frozenset({"running", "starting"})

ACCEPT_HEADER = "application/vnd.pterodactyl.v1+json"


class ProvisioningClient:
    """suspend / unsuspend / get_status against the provisioning API.

    Status reads go through the CacheStore when one is given; a suspend or
    unsuspend invalidates the cached status for that resource.
    """

    def __init__(self, base_url: str, api_key: str, queue: RequestQueue,
                 cache=None, status_ttl_sec: int = 15,
                 timeout_sec: float = 15.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.queue = queue
        self.cache = cache
        self.status_ttl_sec = status_ttl_sec
        self.timeout_sec = timeout_sec
        self.session = session or requests.Session()

    # ── Public calls ─────────────────────────────────────────────────

    def suspend(self, external_id: str):
        self.queue.execute(
            ENDPOINT_SUSPEND,
            lambda: self._request("POST", f"/api/application/servers/{external_id}/suspend",
                                  ENDPOINT_SUSPEND),
        )
        self._forget_status(external_id)
        log.info("PROVISIONING SUSPENDED %s", external_id)

    def unsuspend(self, external_id: str):
        self.queue.execute(
            ENDPOINT_UNSUSPEND,
            lambda: self._request("POST", f"/api/application/servers/{external_id}/unsuspend",
                                  ENDPOINT_UNSUSPEND),
        )
        self._forget_status(external_id)
        log.info("PROVISIONING UNSUSPENDED %s", external_id)

    def get_status(self, external_id: str, use_cache: bool = True,
                   allow_stale: bool = True) -> dict:
        """Live resource state, e.g. {"current_state": "running", ...}.

        With allow_stale=False a failed refresh raises instead of falling
        back to an expired cache entry.
        """

        def fetch():
            body = self.queue.execute(
                ENDPOINT_GET_STATUS,
                lambda: self._request("GET", f"/api/client/servers/{external_id}/resources",
                                      ENDPOINT_GET_STATUS),
            )
            return (body or {}).get("attributes", body or {})

        if use_cache and self.cache is not None:
            return self.cache.get_or_fetch(f"status:{external_id}", self.status_ttl_sec, fetch,
                                           allow_stale=allow_stale)
        return fetch()

    def is_online(self, external_id: str, allow_stale: bool = True) -> bool:
        state = self.get_status(external_id, allow_stale=allow_stale).get("current_state", "")
        return state in ONLINE_STATES

    # ── HTTP ─────────────────────────────────────────────────────────

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": ACCEPT_HEADER,
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, endpoint: str) -> Optional[dict]:
        """One HTTP attempt, with failures mapped onto the retry taxonomy."""
        if not self.base_url:
            raise ExternalClientError("provisioning URL is not configured", endpoint=endpoint)
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(
                method, url, headers=self._headers(), json={} if method != "GET" else None,
                timeout=self.timeout_sec,
            )
        except requests.Timeout as e:
            raise ExternalTimeout(f"{method} {path} timed out: {e}", endpoint=endpoint)
        except requests.RequestException as e:
            raise ExternalServerError(f"{method} {path} failed: {e}", endpoint=endpoint)

        status = resp.status_code
        if 400 <= status < 500:
            raise ExternalClientError(
                f"{method} {path} rejected with HTTP {status}",
                endpoint=endpoint, status_code=status,
            )
        if status >= 500:
            raise ExternalServerError(
                f"{method} {path} failed with HTTP {status}",
                endpoint=endpoint, status_code=status,
            )
        if status == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            raise ExternalServerError(f"{method} {path} returned invalid JSON", endpoint=endpoint)

    def _forget_status(self, external_id: str):
        if self.cache is not None:
            self.cache.delete(f"status:{external_id}")
