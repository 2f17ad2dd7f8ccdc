"""Run orchestrator – one invocation from parameters to indexed results.

Preparation of the software under test (downloads, clones, config edits) is a
collaborator behind ``Preparer``; the default one only accepts locations that
already exist on disk.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time
from typing import Any, Callable, Optional, Protocol

from opensearchpy.exceptions import OpenSearchException

from . import suites
from .artifacts import save_run_record
from .codebuild import ActiveBuildSet, BuildCoordinator
from .config import RunnerConfig
from .errors import PreparationError, ServiceNotHealthy, StoreInitError
from .health import HealthMonitor
from .models import RunContext, ServiceKind, ServiceState
from .normalizer import ReportTally, process_report_dir
from .params import RunParameters, default_tmp_dir
from .planner import FanOutPlanner, run_local_cypress
from .services import ProcessRegistry, build_probe, start_service
from .sink import ResultSink
from .util import iso, new_ref, now_ms, now_utc, platform_label

log = logging.getLogger(__name__)

MOCHA_ROOT = "dashboards"
PARALLEL_LABEL = "Parallel Tests"


class Preparer(Protocol):
    def prepare_tests(self, params: RunParameters) -> tuple[str, dict[str, str]]: ...

    def prepare_opensearch(self, params: RunParameters) -> str: ...

    def prepare_dashboards(self, params: RunParameters) -> str: ...


class ExistingInstallations:
    """Preparer that uses already-prepared paths given on the command line."""

    @staticmethod
    def _existing(path: Optional[str], flag: str, what: str) -> str:
        if not path:
            raise PreparationError(f"No {what} available; pass {flag}=<path>")
        if not os.path.isdir(path):
            raise PreparationError(f"Path doesn't point to {what}: {path}")
        return os.path.abspath(path)

    def prepare_tests(self, params: RunParameters) -> tuple[str, dict[str, str]]:
        tests_dir = self._existing(params.use_tests, "--use-tests", "Tests")
        versions = {f"{key}-test": url for key, url in params.test_versions}
        return tests_dir, versions

    def prepare_opensearch(self, params: RunParameters) -> str:
        return self._existing(params.use_opensearch, "--use-opensearch", "OpenSearch")

    def prepare_dashboards(self, params: RunParameters) -> str:
        return self._existing(params.use_dashboards, "--use-dashboards", "OpenSearch Dashboards")


class RunOrchestrator:
    def __init__(
        self,
        params: RunParameters,
        cfg: RunnerConfig,
        *,
        preparer: Optional[Preparer] = None,
        sink: Optional[ResultSink] = None,
        coordinator: Optional[BuildCoordinator] = None,
        monitor: Optional[HealthMonitor] = None,
        registry: Optional[ProcessRegistry] = None,
        spawn: Callable[..., Any] = start_service,
        runner: Callable[..., "subprocess.CompletedProcess"] = subprocess.run,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.params = params
        self.cfg = cfg
        self.tmp_dir = params.tmp_dir or default_tmp_dir()
        self.preparer = preparer or ExistingInstallations()
        self._sink = sink
        self.coordinator = coordinator or BuildCoordinator.from_config(cfg.codebuild)
        self.monitor = monitor or HealthMonitor(
            cadence=cfg.services.health_cadence_sec,
            shutdown_grace=cfg.services.shutdown_grace_sec,
        )
        self.registry = registry or ProcessRegistry()
        self._spawn = spawn
        self._run = runner
        self._sleep = sleep

    @property
    def sink(self) -> ResultSink:
        if self._sink is None:
            self._sink = ResultSink.from_config(self.cfg.store)
        return self._sink

    # ------------------------------------------------------------------
    # Entry
    # ------------------------------------------------------------------

    def init_store(self) -> None:
        log.info("Initializing result store at %s", self.cfg.store.endpoint)
        try:
            self.sink.ensure_schema()
        except OpenSearchException as exc:
            raise StoreInitError(f"Store at {self.cfg.store.endpoint} not initialized: {exc}") from exc

    def clean(self) -> None:
        log.info("Cleaning up %s...", self.tmp_dir)
        shutil.rmtree(self.tmp_dir, ignore_errors=True)
        os.makedirs(self.tmp_dir, exist_ok=True)

    def run(self) -> dict[str, Any]:
        """Execute one run and return its run record."""
        p = self.params
        if not p.no_clean:
            self.clean()
        else:
            os.makedirs(self.tmp_dir, exist_ok=True)

        started = time.monotonic()
        ctx = RunContext(
            timestamp=p.timestamp or now_ms(),
            ref=p.ref or new_ref(),
            with_security=p.with_security,
            platform=platform_label(),
            test_type=p.test_type or "",
            versions={
                k: v for k, v in (
                    ("opensearch", p.opensearch_version),
                    ("dashboards", p.dashboards_version),
                ) if v
            },
        )
        record: dict[str, Any] = {
            "ref": ctx.ref,
            "timestamp": ctx.timestamp,
            "mode": "parallel" if p.parallel else "local",
            "test_type": ctx.test_type,
            "with_security": ctx.with_security,
            "platform": ctx.platform,
            "versions": dict(ctx.versions),
            "started_at": iso(now_utc()),
            "suites": {},
            "builds": [],
            "status": "running",
        }
        log.info("Run %s starting (%s)", ctx.ref, record["mode"])

        try:
            tests_dir, test_versions = self.preparer.prepare_tests(p)
            ctx = ctx.with_versions(test_versions)
            record["versions"] = dict(ctx.versions)
            if p.parallel:
                record["builds"] = self.run_parallel(tests_dir, ctx)
            else:
                tallies = self.run_local(tests_dir, ctx)
                record["suites"] = {k: t.to_dict() for k, t in tallies.items()}
            record["status"] = "success"
        except Exception as exc:
            record["status"] = "failed"
            record["error"] = f"{type(exc).__name__}: {exc}"
            raise
        finally:
            self.registry.shutdown_all(self.cfg.services.shutdown_grace_sec)
            record["finished_at"] = iso(now_utc())
            record["duration_ms"] = int((time.monotonic() - started) * 1000)
            path = save_run_record(self.tmp_dir, record)
            log.info("Run %s %s; record at %s", ctx.ref, record["status"], path)
        return record

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    def run_parallel(self, tests_dir: str, ctx: RunContext) -> list[str]:
        active = ActiveBuildSet()
        planner = FanOutPlanner(self.coordinator, runner=self._run)
        build_ids = planner.run_parallel(
            tests_dir, self.params, active, ref=ctx.ref, timestamp=ctx.timestamp,
        )
        self.coordinator.await_all_complete(PARALLEL_LABEL, active)
        return build_ids

    def run_local(self, tests_dir: str, ctx: RunContext) -> dict[str, ReportTally]:
        p = self.params
        os_dir = self.preparer.prepare_opensearch(p)
        osd_dir = self.preparer.prepare_dashboards(p)
        tallies: dict[str, ReportTally] = {}

        if p.test_type == "cypress":
            self.start_and_wait(ServiceKind.OPENSEARCH, os_dir, self.cfg.services.opensearch_timeout_sec)
            self.start_and_wait(ServiceKind.DASHBOARDS, osd_dir, self.cfg.services.dashboards_timeout_sec)
            tallies.update(run_local_cypress(tests_dir, p, self.cfg, ctx, self.sink, runner=self._run))

        if p.test_type == "mocha":
            # The functional test runner starts its own cluster
            self.registry.shutdown_all(self.cfg.services.shutdown_grace_sec)
            self._sleep(self.cfg.services.restart_settle_sec)
            tallies.update(self.run_local_mocha(tests_dir, os_dir, osd_dir, ctx))

        if not p.test_type:
            log.warning("No --test-type given; nothing to run locally")
        return tallies

    def run_local_mocha(
        self, tests_dir: str, os_dir: str, osd_dir: str, ctx: RunContext
    ) -> dict[str, ReportTally]:
        mocha_root = os.path.join(tests_dir, MOCHA_ROOT)
        group = self.params.group
        if self.params.exclude_plugins and (not group or group == "0"):
            log.info("Skipping plugin functional tests (--exclude-plugins)")
            return {}
        log.info("Running Mocha tests in %s ...", mocha_root)
        suites.run_mocha_suite(mocha_root, os_dir, osd_dir, group, runner=self._run)
        return {MOCHA_ROOT: process_report_dir(MOCHA_ROOT, mocha_root, tests_dir, ctx, self.sink)}

    def start_and_wait(self, kind: ServiceKind, folder: str, timeout: float) -> None:
        """Spawn a service and block until healthy; raises ServiceNotHealthy."""
        log_path = None
        if self.params.less_logs:
            log_path = os.path.join(self.tmp_dir, f"{kind.value}.log")
        handle = self._spawn(kind, folder, log_path=log_path)
        probe = build_probe(
            kind,
            security=self.params.with_security,
            username=self.cfg.services.username,
            password=self.cfg.services.password,
        )
        state = self.monitor.wait_until_healthy(handle, probe, timeout)
        if state != ServiceState.HEALTHY:
            raise ServiceNotHealthy(handle.name, state.value)
        self.registry.record(handle)
