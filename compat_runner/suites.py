"""Local suite execution – Cypress roots and the Dashboards functional test runner.

A failing suite is logged, not raised: whatever reports it produced are still
processed.
"""

from __future__ import annotations

import logging
import os
import subprocess
from typing import Callable, Optional

from .config import RunnerConfig
from .normalizer import RESULTS_SUBDIR

log = logging.getLogger(__name__)

MAX_MOCHA_GROUP = 13

Runner = Callable[..., "subprocess.CompletedProcess"]

_REPORTER_OPTIONS = (
    f"reportDir={RESULTS_SUBDIR.replace(os.sep, '/')},overwrite=false,html=false,json=true"
)


def opensearch_url(with_security: bool) -> str:
    return "https://localhost:9200" if with_security else "http://localhost:9200"


def cypress_env(cfg: RunnerConfig, with_security: bool) -> dict[str, str]:
    env = {
        "SECURITY_ENABLED": str(with_security).lower(),
        "security_enabled": str(with_security).lower(),
        "username": cfg.services.username,
        "password": cfg.services.password,
        "openSearchUrl": opensearch_url(with_security),
    }
    env.update(cfg.cypress.env)
    return env


def cypress_executable(root: str) -> str:
    local = os.path.join(root, "node_modules", ".bin", "cypress")
    return local if os.path.exists(local) else "cypress"


def cypress_command(
    root: str, cfg: RunnerConfig, *, with_security: bool, spec: Optional[str] = None
) -> list[str]:
    env_value = ",".join(f"{k}={v}" for k, v in cypress_env(cfg, with_security).items())
    cmd = [
        cypress_executable(root), "run",
        "--reporter", cfg.cypress.reporter,
        "--reporter-options", _REPORTER_OPTIONS,
        "--headless",
        "--env", env_value,
        "--config", "video=false,screenshotOnRunFailure=false",
    ]
    if spec:
        cmd += ["--spec", spec]
    return cmd


def _run(cmd: list[str], cwd: str, runner: Runner, env: Optional[dict[str, str]] = None) -> bool:
    log.info("Running tests in %s...", cwd)
    try:
        proc = runner(cmd, cwd=cwd, env={**os.environ, **(env or {})})
    except OSError as exc:
        log.error("Error running tests in %s: %s", cwd, exc)
        return False
    finally:
        log.info("Finished running tests in %s", cwd)
    if proc.returncode != 0:
        log.error("Tests in %s exited with %s", cwd, proc.returncode)
        return False
    return True


def run_cypress_suite(
    root: str,
    cfg: RunnerConfig,
    *,
    with_security: bool,
    spec: Optional[str] = None,
    runner: Runner = subprocess.run,
) -> bool:
    return _run(cypress_command(root, cfg, with_security=with_security, spec=spec), root, runner)


def mocha_command(osd_dir: str, group: Optional[str]) -> list[str]:
    """Dashboards functional tests for a CI group; no group means plugin tests."""
    cmd = [
        "node", "scripts/functional_tests",
        "--opensearch-dashboards-install-dir", osd_dir,
    ]
    if group and group != "0":
        cmd += ["--config", "test/functional/config.js", "--include", f"ciGroup{group}"]
    else:
        cmd += ["--config", "test/plugin_functional/config.ts"]
    return cmd


def run_mocha_suite(
    folder: str,
    os_dir: str,
    osd_dir: str,
    group: Optional[str],
    *,
    runner: Runner = subprocess.run,
) -> bool:
    env = {"TEST_OPENSEARCH_FROM": os_dir, "TEST_BROWSER_HEADLESS": "1"}
    return _run(mocha_command(osd_dir, group), folder, runner, env)
