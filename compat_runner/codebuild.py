"""Remote build coordination over the ``aws codebuild`` command-line client.

Work units are submitted one at a time; the coordinator tracks the ids the
backend accepted in an ``ActiveBuildSet`` and polls batch status until there is
room for more (``await_capacity``) or nothing is left (``await_all_complete``).
"""

from __future__ import annotations

import json
import logging
import subprocess
import time
from typing import Callable, Iterable, Iterator, Optional

from .config import CodeBuildConfig
from .errors import BuildStatusUnavailable, CapacityRetriesExhausted
from .models import SKIP_BUILD, BuildJob, BuildRequest
from .util import iso, now_utc

log = logging.getLogger(__name__)

CAPACITY_EXCEEDED = "AccountLimitExceededException"
COMPLETED_PHASE = "COMPLETED"

Runner = Callable[[list[str]], "subprocess.CompletedProcess[str]"]


def run_aws(args: list[str]) -> "subprocess.CompletedProcess[str]":
    """Run ``aws <args>``; raises CalledProcessError on a non-zero exit."""
    return subprocess.run(
        ["aws", *args],
        capture_output=True,
        text=True,
        check=True,
    )


class ActiveBuildSet:
    """Outstanding remote build ids for one run. Insertion-ordered, unique."""

    def __init__(self) -> None:
        self._jobs: dict[str, BuildJob] = {}

    def add(self, build_id: str) -> BuildJob:
        job = self._jobs.get(build_id)
        if job is None:
            job = BuildJob(id=build_id, submitted_at=iso(now_utc()))
            self._jobs[build_id] = job
        return job

    def mark_skipped(self) -> None:
        """Record that a phase had nothing to submit."""
        self._jobs.setdefault(SKIP_BUILD, BuildJob(id=SKIP_BUILD, submitted_at=iso(now_utc())))

    def is_skip_only(self) -> bool:
        return list(self._jobs) == [SKIP_BUILD]

    def discard(self, build_ids: Iterable[str]) -> int:
        removed = 0
        for build_id in build_ids:
            if self._jobs.pop(build_id, None) is not None:
                removed += 1
        return removed

    def pending_ids(self) -> list[str]:
        return [i for i in self._jobs if i != SKIP_BUILD]

    def __contains__(self, build_id: object) -> bool:
        return build_id in self._jobs

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._jobs))

    def __len__(self) -> int:
        return len(self._jobs)


class BuildCoordinator:
    def __init__(
        self,
        *,
        project: str,
        log_group: str,
        parallel_count: int = 50,
        poll_interval: float = 60,
        capacity_backoff: float = 30,
        max_capacity_retries: Optional[int] = None,
        max_status_failures: int = 3,
        runner: Runner = run_aws,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.project = project
        self.log_group = log_group
        self.parallel_count = parallel_count
        self.poll_interval = poll_interval
        self.capacity_backoff = capacity_backoff
        self.max_capacity_retries = max_capacity_retries
        self.max_status_failures = max_status_failures
        self._run = runner
        self._sleep = sleep

    @classmethod
    def from_config(cls, cfg: CodeBuildConfig, **kwargs) -> "BuildCoordinator":
        return cls(
            project=cfg.project,
            log_group=cfg.log_group,
            parallel_count=cfg.parallel_count,
            poll_interval=cfg.poll_interval_sec,
            capacity_backoff=cfg.capacity_backoff_sec,
            max_capacity_retries=cfg.max_capacity_retries,
            max_status_failures=cfg.max_status_failures,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def start_build_input(self, request: BuildRequest) -> dict:
        return {
            "projectName": self.project,
            "environmentVariablesOverride": [
                {"name": name, "value": value, "type": "PLAINTEXT"}
                for name, value in request.environment
            ],
            "logsConfigOverride": {
                "cloudWatchLogs": {
                    "status": "ENABLED",
                    "groupName": self.log_group,
                    "streamName": request.stream_name,
                },
                "s3Logs": {"status": "DISABLED"},
            },
        }

    def submit(self, request: BuildRequest) -> Optional[str]:
        """Start one remote build. Returns its id, or None if not submitted.

        The backend's account concurrency limit is not a fault: the same
        submission is held and retried until accepted.
        """
        payload = json.dumps(self.start_build_input(request))
        holds = 0
        while True:
            try:
                proc = self._run(
                    ["codebuild", "start-build", "--cli-input-json", payload]
                )
                return json.loads(proc.stdout)["build"]["id"]
            except subprocess.CalledProcessError as exc:
                stderr = exc.stderr or ""
                if CAPACITY_EXCEEDED in stderr:
                    holds += 1
                    if self.max_capacity_retries is not None and holds > self.max_capacity_retries:
                        raise CapacityRetriesExhausted(
                            f"{CAPACITY_EXCEEDED} persisted after {self.max_capacity_retries} retries"
                        ) from exc
                    log.info("Holding %s (%s)...", request.label or request.stream_name, CAPACITY_EXCEEDED)
                    self._sleep(self.capacity_backoff)
                    continue
                log.error("Error triggering build %s: %s", request.stream_name, stderr.strip() or exc)
                return None
            except (OSError, ValueError, KeyError, TypeError) as exc:
                log.error("Error triggering build %s: %s", request.stream_name, exc)
                return None

    # ------------------------------------------------------------------
    # Status polling
    # ------------------------------------------------------------------

    def completed_builds(self, build_ids: list[str]) -> Optional[list[str]]:
        """Batch-query *build_ids*; return the completed ones, or None on failure.

        Ids the backend no longer knows about are reported as completed so they
        cannot hold the run open forever.
        """
        if not build_ids:
            return []
        try:
            proc = self._run(["codebuild", "batch-get-builds", "--ids", *build_ids])
            data = json.loads(proc.stdout)
            builds = data["builds"]
        except subprocess.CalledProcessError as exc:
            log.warning("batch-get-builds failed: %s", (exc.stderr or "").strip() or exc)
            return None
        except (OSError, ValueError, KeyError, TypeError) as exc:
            log.warning("batch-get-builds failed: %s", exc)
            return None

        completed = []
        for build in builds:
            log.debug("%s: %s", build.get("id"), build.get("currentPhase"))
            if build.get("currentPhase") == COMPLETED_PHASE:
                completed.append(build["id"])
        for missing in data.get("buildsNotFound") or []:
            log.warning("Build %s not found; treating as completed", missing)
            completed.append(missing)
        return completed

    def _wait(self, label: str, active: ActiveBuildSet, done: Callable[[], bool]) -> None:
        failures = 0
        while not done():
            log.debug("Waiting for %s tasks to complete (%d active)...", label, len(active.pending_ids()))
            self._sleep(self.poll_interval)
            completed = self.completed_builds(active.pending_ids())
            if completed is None:
                failures += 1
                log.error("%d/%d: Failed to check status of %s tasks",
                          failures, self.max_status_failures, label)
                if failures >= self.max_status_failures:
                    raise BuildStatusUnavailable(label, failures)
                continue
            failures = 0
            active.discard(completed)

    def await_capacity(self, active: ActiveBuildSet) -> None:
        """Return once fewer than ``parallel_count`` real builds are outstanding."""
        self._wait("parallel", active, lambda: len(active.pending_ids()) < self.parallel_count)

    def await_all_complete(self, label: str, active: ActiveBuildSet) -> None:
        """Return once every outstanding build has completed."""
        if active.is_skip_only():
            log.info("%s: nothing was submitted", label)
            return
        self._wait(label, active, lambda: not active.pending_ids())
        active.discard([SKIP_BUILD])
        log.info("%s Done.", label)
