"""Test fan-out planner – discovers Cypress roots and turns them into work.

Locally every root is run in turn and its reports are normalized on a thread
pool while the next root runs. In parallel mode the roots' spec files are
grouped by directory into ``JobUnit``s and, together with the Dashboards
functional test CI groups, submitted to the build coordinator one at a time.
"""

from __future__ import annotations

import logging
import os
import posixpath
import subprocess
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

from .codebuild import ActiveBuildSet, BuildCoordinator
from .config import RunnerConfig
from .models import BuildRequest, JobUnit, RunContext
from .normalizer import DocumentSink, ReportTally, process_report_dir
from .params import RunParameters
from .suites import MAX_MOCHA_GROUP, run_cypress_suite
from .util import md5_hex

log = logging.getLogger(__name__)

CYPRESS_MARKERS = frozenset({"cypress", ".cypress"})
CYPRESS_CONFIG_FILES = frozenset({
    "cypress.json",
    "cypress.config.js",
    "cypress.config.ts",
    "cypress.config.cjs",
    "cypress.config.mjs",
})
IGNORED_DIRS = frozenset({"node_modules", ".git", ".github"})

# Plugin test repos are cloned under here, relative to the tests dir
PLUGIN_TESTS_PREFIX = "dashboards/plugins/"
# CI group 0 runs the plugin functional suite instead of a core group
PLUGIN_MOCHA_GROUP = 0

NORMALIZE_WORKERS = 4

Runner = Callable[..., "subprocess.CompletedProcess"]


def _rel(path: str, start: str) -> str:
    return os.path.relpath(path, start).replace(os.sep, "/")


def find_cypress_roots(folder: str) -> list[str]:
    """Directories holding a Cypress folder and config file; parents first."""
    roots = []
    for dirpath, dirnames, filenames in os.walk(folder):
        has_marker = any(d in CYPRESS_MARKERS for d in dirnames)
        has_config = any(f in CYPRESS_CONFIG_FILES for f in filenames)
        if has_marker and has_config:
            roots.append(dirpath)
        dirnames[:] = sorted(
            d for d in dirnames if d not in IGNORED_DIRS and d not in CYPRESS_MARKERS
        )
    return roots


def source_label(root: str, tests_dir: str) -> str:
    rel = _rel(root, tests_dir)
    return os.path.basename(os.path.abspath(root)) if rel == "." else rel


def is_plugin_root(root: str, tests_dir: str) -> bool:
    return (_rel(root, tests_dir) + "/").startswith(PLUGIN_TESTS_PREFIX)


def find_specs(root: str, runner: Runner = subprocess.run) -> list[str]:
    """Spec files of one Cypress root, as listed by ``find-cypress-specs``."""
    try:
        proc = runner(
            ["find-cypress-specs"],
            cwd=root,
            capture_output=True,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        log.error("Failed to list specs in %s: %s", root, exc)
        return []
    return [s.strip() for s in (proc.stdout or "").strip().split(",") if s.strip()]


def group_specs(root_path: str, specs: list[str]) -> list[JobUnit]:
    """One unit per spec directory, in first-seen order."""
    groups: dict[str, list[str]] = {}
    for spec in specs:
        groups.setdefault(posixpath.dirname(spec), []).append(spec)
    return [JobUnit(root_path=root_path, spec_list=tuple(g)) for g in groups.values()]


def variants(params: RunParameters) -> list[RunParameters]:
    """Expand the matrix flags into one parameter set per variant."""
    out = [params]
    if params.matrix_security:
        out = [p.replace(disable_security=flag) for p in out for flag in (True, False)]
    if params.matrix_plugins:
        out = [p.replace(exclude_plugins=flag) for p in out for flag in (False, True)]
    return out


class FanOutPlanner:
    def __init__(
        self,
        coordinator: BuildCoordinator,
        *,
        runner: Runner = subprocess.run,
    ) -> None:
        self.coordinator = coordinator
        self._run = runner

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def cypress_units(self, tests_dir: str, params: RunParameters) -> list[JobUnit]:
        log.info("Identifying Cypress tests in %s ...", tests_dir)
        units = []
        for root in find_cypress_roots(tests_dir):
            if params.exclude_plugins and is_plugin_root(root, tests_dir):
                log.debug("Skipping plugin tests in %s", root)
                continue
            specs = find_specs(root, self._run)
            if not specs:
                log.info("No specs found in %s", root)
                continue
            units.extend(group_specs(_rel(root, tests_dir), specs))
        return units

    @staticmethod
    def mocha_groups(params: RunParameters) -> list[int]:
        groups = list(range(MAX_MOCHA_GROUP + 1))
        if params.exclude_plugins:
            groups.remove(PLUGIN_MOCHA_GROUP)
        return groups

    @staticmethod
    def cypress_request(
        unit: JobUnit, job_args: str, ref: str, variant: Optional[int] = None
    ) -> BuildRequest:
        specs = ",".join(unit.spec_list)
        prefix = md5_hex(specs) if variant is None else f"{md5_hex(specs)}-{variant}"
        return BuildRequest(
            environment=(
                ("SETUP_PARAMS", f"--spec={specs} {job_args}"),
                ("SETUP_ROOT", unit.root_path),
            ),
            stream_name=f"{prefix}/{ref}",
            label=f"{unit.root_path} ({len(unit.spec_list)} specs)",
        )

    @staticmethod
    def mocha_request(
        group: int, job_args: str, ref: str, variant: Optional[int] = None
    ) -> BuildRequest:
        prefix = f"mocha-{group}" if variant is None else f"mocha-{group}-{variant}"
        return BuildRequest(
            environment=(
                ("SETUP_PARAMS", job_args),
                ("SETUP_GROUP", str(group)),
            ),
            stream_name=f"{prefix}/{ref}",
            label=f"mocha-{group}",
        )

    def plan_mocha(self, params: RunParameters, *, ref: str, timestamp: int) -> list[BuildRequest]:
        expanded = variants(params)
        requests = []
        for i, variant in enumerate(expanded):
            job_args = variant.to_job_args(ref=ref, timestamp=timestamp, test_type="mocha")
            tag = i if len(expanded) > 1 else None
            requests.extend(
                self.mocha_request(group, job_args, ref, tag)
                for group in self.mocha_groups(variant)
            )
        return requests

    def plan_cypress(
        self, tests_dir: str, params: RunParameters, *, ref: str, timestamp: int
    ) -> list[BuildRequest]:
        expanded = variants(params)
        # Discovery runs once per distinct plugin filter, not once per variant
        units_by_filter: dict[bool, list[JobUnit]] = {}
        requests = []
        for i, variant in enumerate(expanded):
            units = units_by_filter.get(variant.exclude_plugins)
            if units is None:
                units = self.cypress_units(tests_dir, variant)
                units_by_filter[variant.exclude_plugins] = units
            job_args = variant.to_job_args(ref=ref, timestamp=timestamp, test_type="cypress")
            tag = i if len(expanded) > 1 else None
            requests.extend(self.cypress_request(u, job_args, ref, tag) for u in units)
        return requests

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit_all(
        self,
        requests: list[BuildRequest],
        active: ActiveBuildSet,
        *,
        total: Optional[int] = None,
        started: int = 0,
    ) -> list[str]:
        """Submit *requests* in order, holding for capacity after each one.

        *started* and *total* carry progress across several phases of one run.
        """
        total = len(requests) if total is None else total
        if not requests:
            active.mark_skipped()
            return []
        build_ids = []
        for request in requests:
            build_id = self.coordinator.submit(request)
            if build_id:
                active.add(build_id)
                build_ids.append(build_id)
                log.info(
                    "Started (%d: %d/%d) %s",
                    len(active.pending_ids()), started + len(build_ids), total, build_id,
                )
            self.coordinator.await_capacity(active)
        return build_ids

    def run_parallel(
        self,
        tests_dir: str,
        params: RunParameters,
        active: ActiveBuildSet,
        *,
        ref: str,
        timestamp: int,
    ) -> list[str]:
        """Mocha fan-out, then Cypress fan-out, into one active set."""
        mocha = self.plan_mocha(params, ref=ref, timestamp=timestamp)
        cypress = self.plan_cypress(tests_dir, params, ref=ref, timestamp=timestamp)
        total = len(mocha) + len(cypress)
        log.info("Submitting %d builds (%d mocha, %d cypress)", total, len(mocha), len(cypress))
        ids = self.submit_all(mocha, active, total=total)
        ids += self.submit_all(cypress, active, total=total, started=len(ids))
        return ids


def run_local_cypress(
    tests_dir: str,
    params: RunParameters,
    cfg: RunnerConfig,
    ctx: RunContext,
    sink: DocumentSink,
    *,
    runner: Runner = subprocess.run,
) -> dict[str, ReportTally]:
    """Run each Cypress root in turn; normalize reports while the next one runs."""
    folder = os.path.join(tests_dir, params.root) if params.root else tests_dir
    log.info("Running Cypress tests in %s ...", folder)
    roots = find_cypress_roots(folder)
    if params.exclude_plugins:
        roots = [r for r in roots if not is_plugin_root(r, tests_dir)]

    pending: dict[str, Future] = {}
    with ThreadPoolExecutor(max_workers=NORMALIZE_WORKERS) as pool:
        for root in roots:
            run_cypress_suite(
                root, cfg, with_security=params.with_security, spec=params.spec, runner=runner,
            )
            source = source_label(root, tests_dir)
            pending[source] = pool.submit(process_report_dir, source, root, folder, ctx, sink)
        return {source: f.result() for source, f in pending.items()}
