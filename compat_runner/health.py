"""Readiness polling for spawned services.

A service is polled at a fixed cadence until its status endpoint reports
healthy or the deadline passes. Each attempt's cost is subtracted from the
following sleep so the cadence holds regardless of request latency. Connection
errors, non-2xx answers and non-JSON bodies all mean "not ready yet".
"""

from __future__ import annotations

import base64
import http.client
import json
import logging
import ssl
import time
import urllib.request
from typing import Any, Callable

from .models import AuthMode, HealthProbe, ServiceHandle, ServiceKind, ServiceState
from .services import terminate

log = logging.getLogger(__name__)

DEFAULT_CADENCE_SEC = 5.0
REQUEST_TIMEOUT_SEC = 10
MIN_REQUEST_TIMEOUT_SEC = 1.0

Fetcher = Callable[[HealthProbe, float], Any]


def fetch_status(probe: HealthProbe, timeout: float = REQUEST_TIMEOUT_SEC) -> Any:
    """GET the probe endpoint and return the decoded JSON body.

    Raises OSError (including urllib's HTTPError/URLError) or ValueError when
    the service is unreachable or the answer is not JSON.
    """
    headers = {"Accept": "application/json"}
    context = None
    if probe.auth_mode == AuthMode.BASIC:
        token = base64.b64encode(f"{probe.username}:{probe.password}".encode()).decode()
        headers["Authorization"] = f"Basic {token}"
        # Local test clusters run on self-signed certificates
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    req = urllib.request.Request(probe.endpoint, headers=headers)
    with urllib.request.urlopen(req, timeout=timeout, context=context) as resp:
        content_type = resp.headers.get("Content-Type", "")
        if "application/json" not in content_type:
            raise ValueError(f"Unexpected content type {content_type!r}")
        return json.loads(resp.read().decode())


def status_of(kind: ServiceKind, payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    if kind == ServiceKind.OPENSEARCH:
        status = payload.get("status")
    else:
        status = payload
        for key in ("status", "overall", "state"):
            status = status.get(key) if isinstance(status, dict) else None
    return status if isinstance(status, str) else None


def is_healthy(kind: ServiceKind, payload: Any) -> bool:
    """Green (or yellow, for the single-node data store) means ready."""
    status = status_of(kind, payload)
    if kind == ServiceKind.OPENSEARCH:
        return status in ("green", "yellow")
    return status == "green"


class HealthMonitor:
    """Polls a probe until healthy or timed out; owns ServiceHandle state changes."""

    def __init__(
        self,
        fetch: Fetcher = fetch_status,
        *,
        cadence: float = DEFAULT_CADENCE_SEC,
        shutdown_grace: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._fetch = fetch
        self.cadence = cadence
        self.shutdown_grace = shutdown_grace
        self._clock = clock
        self._sleep = sleep

    def check(self, probe: HealthProbe, timeout: float = REQUEST_TIMEOUT_SEC) -> bool:
        try:
            payload = self._fetch(probe, timeout)
        except (OSError, ValueError, http.client.HTTPException) as exc:
            log.debug("Health probe %s not ready: %s", probe.endpoint, exc)
            return False
        healthy = is_healthy(probe.service_kind, payload)
        status = status_of(probe.service_kind, payload)
        if healthy:
            log.info("%s is %s", probe.service_kind.value, status)
        else:
            log.warning("%s is %s", probe.service_kind.value, status)
        return healthy

    def wait_until_healthy(
        self, handle: ServiceHandle, probe: HealthProbe, timeout_seconds: float
    ) -> ServiceState:
        """Block until *handle* is healthy or *timeout_seconds* have elapsed.

        No request outlives the cadence or the deadline, and the last attempt
        lands on the deadline. On timeout the process is sent SIGTERM and left
        to exit (bounded by ``shutdown_grace``). Returns the final handle state.
        """
        start = self._clock()
        while True:
            attempt_start = self._clock()
            remaining = timeout_seconds - (attempt_start - start)
            request_timeout = max(MIN_REQUEST_TIMEOUT_SEC, min(self.cadence, remaining))
            if self.check(probe, request_timeout):
                handle.state = ServiceState.HEALTHY
                return handle.state

            elapsed = self._clock() - start
            if elapsed >= timeout_seconds:
                exited = handle.process.poll() is not None
                handle.state = ServiceState.CRASHED if exited else ServiceState.TIMED_OUT
                terminate(handle, self.shutdown_grace)
                log.error(
                    "Timeout waiting for %s to stabilize (%s)",
                    handle.name, handle.state.value,
                )
                return handle.state

            log.info(
                "Waiting for %s to stabilize (%ds)",
                handle.name, int(timeout_seconds - elapsed),
            )
            pause = min(self.cadence - (self._clock() - attempt_start), timeout_seconds - elapsed)
            self._sleep(max(0.0, pause))
