"""Service process boundary – spawn OpenSearch / Dashboards, track and stop them."""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import time
from typing import IO, Optional

from .models import AuthMode, HealthProbe, ServiceHandle, ServiceKind

log = logging.getLogger(__name__)

_EXECUTABLES = {
    ServiceKind.OPENSEARCH: "opensearch",
    ServiceKind.DASHBOARDS: "opensearch-dashboards",
}

_DISPLAY_NAMES = {
    ServiceKind.OPENSEARCH: "OpenSearch",
    ServiceKind.DASHBOARDS: "OpenSearch Dashboards",
}


def display_name(kind: ServiceKind) -> str:
    return _DISPLAY_NAMES[kind]


def executable_path(kind: ServiceKind, folder: str) -> str:
    name = _EXECUTABLES[kind]
    if sys.platform == "win32":
        name += ".bat"
    return os.path.join(folder, "bin", name)


def build_probe(
    kind: ServiceKind, *, security: bool, username: str = "", password: str = ""
) -> HealthProbe:
    """Readiness probe for a locally started service."""
    if kind == ServiceKind.OPENSEARCH:
        scheme = "https" if security else "http"
        endpoint = f"{scheme}://localhost:9200/_cluster/health"
    else:
        endpoint = "http://localhost:5601/api/status"
    if security:
        return HealthProbe(kind, endpoint, AuthMode.BASIC, username, password)
    return HealthProbe(kind, endpoint)


def start_service(
    kind: ServiceKind,
    folder: str,
    *,
    env: Optional[dict[str, str]] = None,
    log_path: Optional[str] = None,
) -> ServiceHandle:
    """Spawn a long-running service from its install folder.

    Output goes to the parent's stdout/stderr unless *log_path* is given.
    """
    exe = executable_path(kind, folder)
    log.info("Starting %s from %s", display_name(kind), exe)
    out: Optional[IO] = None
    if log_path:
        out = open(log_path, "ab")
    try:
        proc = subprocess.Popen(
            [exe],
            cwd=folder,
            stdin=subprocess.DEVNULL,
            stdout=out,
            stderr=subprocess.STDOUT if out else None,
            env={**os.environ, **(env or {})},
        )
    finally:
        if out is not None:
            out.close()
    return ServiceHandle(
        name=display_name(kind),
        process=proc,
        started_at=time.monotonic(),
    )


def terminate(handle: ServiceHandle, grace: float = 0.0) -> bool:
    """Two-phase shutdown: SIGTERM, then an optional bounded wait.

    Returns True if the process is known to have exited. With ``grace == 0``
    the process is signalled and left to exit on its own.
    """
    proc = handle.process
    if proc.poll() is not None:
        return True
    try:
        proc.terminate()
    except OSError as exc:
        log.warning("Failed to signal %s (pid %s): %s", handle.name, proc.pid, exc)
        return proc.poll() is not None
    if grace <= 0:
        return False
    try:
        proc.wait(timeout=grace)
        return True
    except subprocess.TimeoutExpired:
        log.warning(
            "%s (pid %s) still running %ss after SIGTERM", handle.name, proc.pid, grace
        )
        return False


class ProcessRegistry:
    """Healthy services started by this run; stopped at orchestrator shutdown."""

    def __init__(self) -> None:
        self._handles: list[ServiceHandle] = []

    def record(self, handle: ServiceHandle) -> None:
        self._handles.append(handle)

    def __len__(self) -> int:
        return len(self._handles)

    def shutdown_all(self, grace: float = 10.0) -> None:
        while self._handles:
            handle = self._handles.pop()
            if not terminate(handle, grace) and grace > 0:
                log.warning("Killing %s (pid %s)", handle.name, handle.process.pid)
                handle.process.kill()
            log.info("%s stopped", handle.name)
