"""Flatten mochawesome report trees into result records and hand them to the sink.

A report file holds ``{"results": [run, ...]}``; each run is a tree of suites,
every suite carrying child ``suites`` and leaf ``tests``. Records come out in
depth-first order (a suite's child suites before its own tests). Runs or tests
that are ``false``/empty placeholders produced no data and are skipped.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import jsonschema

from .models import (
    TEST_STATES,
    ResultDocument,
    RunContext,
    SummaryDocument,
    TestResultRecord,
    TestState,
)

log = logging.getLogger(__name__)

RESULTS_SUBDIR = os.path.join("mochawesome", "results")

# Source label of the general functional-test repo; its specs span many plugins
FUNCTIONAL_SOURCE = "functional"

# Ordered; first fragment found in the spec path wins
SCOPE_TABLE: tuple[tuple[str, str], ...] = (
    ("plugins/alerting-dashboards-plugin/", "alerting"),
    ("plugins/anomaly-detection-dashboards-plugin/", "anomaly-detection"),
    ("plugins/dashboards-assistant/", "assistant"),
    ("plugins/custom-import-map-dashboards/", "maps"),
    ("plugins/dashboards-maps/", "maps"),
    ("plugins/gantt-chart-dashboards/", "gantt-chart"),
    ("plugins/index-management-dashboards-plugin/", "index-management"),
    ("plugins/ml-commons-dashboards/", "ml-commons"),
    ("plugins/notifications-dashboards/", "notifications"),
    ("plugins/observability-dashboards/", "observability"),
    ("plugins/query-workbench-dashboards/", "query-workbench"),
    ("plugins/reports-dashboards/", "reporting"),
    ("plugins/search-relevance-dashboards/", "search-relevance"),
    ("plugins/security-analytics-dashboards-plugin/", "security-analytics"),
    ("plugins/security-dashboards-plugin/", "security"),
    ("plugins/security/", "security"),
    ("core-opensearch-dashboards/", "dashboards"),
)

REPORT_SCHEMA = {
    "type": "object",
    "required": ["results"],
    "properties": {
        "results": {
            "type": "array",
            "items": {
                "anyOf": [
                    {"type": "boolean"},
                    {"type": "null"},
                    {
                        "type": "object",
                        "properties": {
                            "fullFile": {"type": "string"},
                            "suites": {"type": "array"},
                            "tests": {"type": "array"},
                        },
                    },
                ]
            },
        }
    },
}


class DocumentSink(Protocol):
    def write_summary(self, doc: SummaryDocument) -> Optional[str]: ...

    def write_result(self, doc: ResultDocument) -> Optional[str]: ...


@dataclass
class ReportTally:
    files: int = 0
    runs: int = 0
    count: dict[str, int] = field(default_factory=lambda: empty_count())
    dropped: int = 0

    def add(self, other: "ReportTally") -> None:
        self.files += other.files
        self.runs += other.runs
        self.dropped += other.dropped
        for state, n in other.count.items():
            self.count[state] = self.count.get(state, 0) + n

    def to_dict(self) -> dict[str, Any]:
        return {
            "files": self.files,
            "runs": self.runs,
            "count": dict(self.count),
            "dropped": self.dropped,
        }


def empty_count() -> dict[str, int]:
    return {state: 0 for state in TEST_STATES}


# ---------------------------------------------------------------------------
# Tree flattening
# ---------------------------------------------------------------------------

def _state_of(test: dict[str, Any]) -> str:
    state = test.get("state")
    if state in TEST_STATES:
        return state
    if test.get("pending"):
        return TestState.PENDING.value
    return TestState.SKIPPED.value


def _duration(value: Any) -> int:
    try:
        return int(float(value or 0))
    except (TypeError, ValueError, OverflowError):
        log.debug("Unusable test duration %r; recording 0", value)
        return 0


def _record(test: dict[str, Any]) -> TestResultRecord:
    err = test.get("err") or {}
    error = None
    if isinstance(err, dict):
        error = err.get("estack") or err.get("message") or None
    return TestResultRecord(
        title=test.get("fullTitle") or test.get("title") or "",
        state=_state_of(test),
        duration=_duration(test.get("duration")),
        error=error,
    )


def _list(node: dict[str, Any], key: str) -> list:
    value = node.get(key)
    return value if isinstance(value, list) else []


def normalize(run: Any) -> list[TestResultRecord]:
    """Depth-first, order-preserving flattening of one report run."""
    if not run or not isinstance(run, dict):
        return []
    records: list[TestResultRecord] = []
    # (suite, index of the next child suite to visit)
    stack: list[tuple[dict[str, Any], int]] = [(run, 0)]
    while stack:
        node, i = stack.pop()
        children = _list(node, "suites")
        if i < len(children):
            stack.append((node, i + 1))
            child = children[i]
            if child and isinstance(child, dict):
                stack.append((child, 0))
            continue
        for test in _list(node, "tests"):
            if test and isinstance(test, dict):
                records.append(_record(test))
    return records


def count_states(records: list[TestResultRecord]) -> dict[str, int]:
    count = empty_count()
    for r in records:
        count[r.state] = count.get(r.state, 0) + 1
    return count


def resolve_scope(source: str, spec_path: str) -> str:
    if source != FUNCTIONAL_SOURCE:
        return source
    path = spec_path.replace(os.sep, "/")
    for fragment, scope in SCOPE_TABLE:
        if fragment in path:
            return scope
    return source


# ---------------------------------------------------------------------------
# Report files -> documents
# ---------------------------------------------------------------------------

def _load_report(path: str) -> Optional[dict[str, Any]]:
    try:
        with open(path, encoding="utf-8") as f:
            report = json.load(f)
        jsonschema.validate(instance=report, schema=REPORT_SCHEMA)
    except (OSError, json.JSONDecodeError) as e:
        log.error("Unreadable report %s: %s", path, e)
        return None
    except jsonschema.ValidationError as e:
        log.error("Malformed report %s: %s", path, e.message)
        return None
    return report


def _spec_path(folder: str, test_root: str, run: dict[str, Any]) -> str:
    full_file = run.get("fullFile") or run.get("file") or ""
    spec = os.path.relpath(os.path.join(folder, full_file), test_root)
    return spec.replace(os.sep, "/")


def process_report_dir(
    source: str,
    folder: str,
    test_root: str,
    ctx: RunContext,
    sink: DocumentSink,
) -> ReportTally:
    """Normalize every report under ``<folder>/mochawesome/results`` and persist it."""
    log.info("Processing test results for %s", folder)
    tally = ReportTally()
    result_dir = os.path.join(folder, RESULTS_SUBDIR)
    if not os.path.isdir(result_dir):
        log.warning("No test results in %s", result_dir)
        return tally

    for name in sorted(os.listdir(result_dir)):
        if not name.endswith(".json"):
            continue
        report = _load_report(os.path.join(result_dir, name))
        if report is None:
            continue
        tally.files += 1
        for run in report["results"]:
            if not run:
                continue
            tally.runs += 1
            records = normalize(run)
            count = count_states(records)
            spec = _spec_path(folder, test_root, run)
            scope = resolve_scope(source, spec)

            summary = SummaryDocument(
                spec=spec,
                results=tuple(records),
                count=count,
                source=source,
                scope=scope,
                context=ctx,
            )
            if sink.write_summary(summary) is None:
                tally.dropped += 1
            for record in records:
                doc = ResultDocument(
                    spec=spec, result=record, source=source, scope=scope, context=ctx,
                )
                if sink.write_result(doc) is None:
                    tally.dropped += 1
            for state, n in count.items():
                tally.count[state] = tally.count.get(state, 0) + n
    return tally
