"""Typed run parameters, command-line parsing and job-argument serialization.

Fanned-out remote jobs re-run this tool with the invoking run's flags. Flags
that would recurse (``--parallel``), repeat cleanup (``--no-clean``) or clash
with the shared run identity are dropped; ``--ref``, ``--timestamp`` and
``--test-type`` are pinned explicitly instead.
"""

from __future__ import annotations

import argparse
import dataclasses
import os
import shlex
from dataclasses import dataclass
from typing import Optional, Sequence

TEST_TYPES = ("cypress", "mocha")

# Never forwarded to a fanned-out job; per-unit values are set separately
_NOT_FORWARDED = frozenset({
    "init",
    "parallel",
    "no_clean",
    "test_type",
    "ref",
    "timestamp",
    "matrix_security",
    "matrix_plugins",
    "spec",
    "root",
    "group",
    "verbose",
})


def default_tmp_dir() -> str:
    return os.path.join(os.path.expanduser("~"), "osd")


@dataclass(frozen=True)
class RunParameters:
    init: bool = False
    parallel: bool = False
    no_clean: bool = False
    tmp_dir: Optional[str] = None
    config: Optional[str] = None
    disable_security: bool = False
    use_opensearch: Optional[str] = None
    use_dashboards: Optional[str] = None
    use_tests: Optional[str] = None
    opensearch_version: Optional[str] = None
    dashboards_version: Optional[str] = None
    test_type: Optional[str] = None
    spec: Optional[str] = None
    root: Optional[str] = None
    group: Optional[str] = None
    ref: Optional[str] = None
    timestamp: Optional[int] = None
    less_logs: bool = False
    exclude_plugins: bool = False
    matrix_security: bool = False
    matrix_plugins: bool = False
    test_versions: tuple[tuple[str, str], ...] = ()
    verbose: bool = False

    @property
    def with_security(self) -> bool:
        return not self.disable_security

    def replace(self, **changes) -> "RunParameters":
        return dataclasses.replace(self, **changes)

    def to_job_args(self, *, ref: str, timestamp: int, test_type: str) -> str:
        """Serialize into the parameter string handed to a remote job."""
        tokens = [
            f"--ref={ref}",
            f"--timestamp={timestamp}",
            f"--test-type={test_type}",
        ]
        for f in dataclasses.fields(self):
            if f.name in _NOT_FORWARDED:
                continue
            value = getattr(self, f.name)
            flag = "--" + f.name.replace("_", "-")
            if f.name == "test_versions":
                tokens.extend(f"--test-version={k}={v}" for k, v in value)
            elif isinstance(value, bool):
                if value:
                    tokens.append(flag)
            elif value is not None:
                tokens.append(f"{flag}={value}")
        return " ".join(shlex.quote(t) for t in tokens)


def _test_version(value: str) -> tuple[str, str]:
    key, sep, url = value.partition("=")
    if not sep or not key or not url:
        raise argparse.ArgumentTypeError(f"expected KEY=GIT_URL, got {value!r}")
    return key, url


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="compat_runner",
        description="Run OpenSearch / OpenSearch Dashboards compatibility tests "
                    "and index the results.",
    )
    p.add_argument("--init", action="store_true",
                   help="Create result index templates, aliases and policies, then exit")
    p.add_argument("--parallel", action="store_true",
                   help="Fan tests out to remote builds instead of running locally")
    p.add_argument("--no-clean", action="store_true",
                   help="Keep the contents of the tmp dir")
    p.add_argument("--tmp-dir", help="Work dir (default: ~/osd)")
    p.add_argument("--config", help="Path to the runner YAML config")
    p.add_argument("--disable-security", action="store_true",
                   help="Run OpenSearch without the security plugin")
    p.add_argument("--use-opensearch", help="Use an OpenSearch install at this path")
    p.add_argument("--use-dashboards", help="Use an OpenSearch Dashboards install at this path")
    p.add_argument("--use-tests", help="Use prepared test sources at this path")
    p.add_argument("--opensearch-version")
    p.add_argument("--dashboards-version")
    p.add_argument("--test-type", choices=TEST_TYPES)
    p.add_argument("--spec", help="Comma-separated Cypress spec files to run")
    p.add_argument("--root", help="Cypress root, relative to the tests dir")
    p.add_argument("--group", help="Dashboards functional test CI group (0 = plugin tests)")
    p.add_argument("--ref", help="Run reference id shared by fanned-out jobs")
    p.add_argument("--timestamp", type=int, help="Run timestamp (ms) shared by fanned-out jobs")
    p.add_argument("--less-logs", action="store_true",
                   help="Send service output to log files instead of the console")
    p.add_argument("--exclude-plugins", action="store_true",
                   help="Skip plugin test suites")
    p.add_argument("--matrix-security", action="store_true",
                   help="Fan out every unit with security disabled and enabled")
    p.add_argument("--matrix-plugins", action="store_true",
                   help="Fan out every unit with plugin suites included and excluded")
    p.add_argument("--test-version", dest="test_versions", action="append",
                   type=_test_version, default=[], metavar="KEY=GIT_URL")
    p.add_argument("-v", "--verbose", action="store_true")
    return p


def parse_args(argv: Optional[Sequence[str]] = None) -> RunParameters:
    ns = build_parser().parse_args(argv)
    values = vars(ns)
    values["test_versions"] = tuple(values["test_versions"])
    return RunParameters(**values)
