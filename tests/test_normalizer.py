"""Tests for mochawesome report flattening and per-run document building."""

from __future__ import annotations

import json

import pytest

from compat_runner.models import RunContext
from compat_runner.normalizer import (
    count_states,
    normalize,
    process_report_dir,
    resolve_scope,
)

CTX = RunContext(
    timestamp=1700000000000,
    ref="ref-1",
    with_security=True,
    platform="linux-x64",
    versions={"opensearch": "2.12.0"},
)


class FakeSink:
    def __init__(self, fail=False):
        self.summaries = []
        self.results = []
        self.fail = fail

    def write_summary(self, doc):
        self.summaries.append(doc)
        return None if self.fail else f"s{len(self.summaries)}"

    def write_result(self, doc):
        self.results.append(doc)
        return None if self.fail else f"r{len(self.results)}"


def _test(title, state="passed", duration=1, **extra):
    return {"fullTitle": title, "state": state, "duration": duration, **extra}


def test_single_passing_test():
    run = {"suites": [{"tests": [_test("a", duration=10)]}]}
    records = normalize(run)
    assert len(records) == 1
    assert records[0].to_dict() == {"title": "a", "state": "passed", "duration": 10}
    assert count_states(records) == {"passed": 1, "failed": 0, "pending": 0, "skipped": 0}


def test_child_suites_precede_own_tests():
    run = {
        "tests": [_test("root")],
        "suites": [
            {
                "tests": [_test("outer")],
                "suites": [{"tests": [_test("inner-1"), _test("inner-2")]}],
            },
            {"tests": [_test("sibling")]},
        ],
    }
    titles = [r.title for r in normalize(run)]
    assert titles == ["inner-1", "inner-2", "outer", "sibling", "root"]


def test_deep_tree_does_not_hit_recursion_limit():
    node = {"tests": [_test("leaf")]}
    for _ in range(5000):
        node = {"suites": [node]}
    assert [r.title for r in normalize(node)] == ["leaf"]


def test_leaf_count_matches_tree():
    run = {
        "suites": [
            {"tests": [_test(f"a{i}") for i in range(3)]},
            {"suites": [{"tests": [_test(f"b{i}", "failed") for i in range(4)]}]},
        ]
    }
    records = normalize(run)
    assert len(records) == 7
    counts = count_states(records)
    assert counts["passed"] == 3
    assert counts["failed"] == 4
    assert sum(counts.values()) == len(records)


def test_placeholders_are_skipped():
    run = {"suites": [False, None, {"tests": [False, _test("real"), {}]}], "tests": None}
    assert [r.title for r in normalize(run)] == ["real"]
    assert normalize(False) == []
    assert normalize(None) == []


def test_invalid_state_falls_back():
    run = {"tests": [
        _test("p", state=None, pending=True),
        _test("s", state="bogus"),
    ]}
    assert [r.state for r in normalize(run)] == ["pending", "skipped"]


def test_unusable_durations_record_zero():
    run = {"tests": [
        _test("word", duration="fast"),
        _test("text", duration="12.7"),
        _test("nested", duration={"ms": 3}),
        _test("nan", duration=float("nan")),
        _test("missing", duration=None),
    ]}
    assert [r.duration for r in normalize(run)] == [0, 12, 0, 0, 0]


def test_error_prefers_stack():
    run = {"tests": [
        _test("x", "failed", err={"estack": "Error: boom\n at x", "message": "boom"}),
        _test("y", "failed", err={"message": "only message"}),
        _test("z", "passed", err={}),
    ]}
    errors = [r.error for r in normalize(run)]
    assert errors == ["Error: boom\n at x", "only message", None]
    assert "error" not in normalize(run)[2].to_dict()


def test_normalize_is_idempotent():
    run = {"suites": [{"tests": [_test("a"), _test("b", "failed")]}]}
    assert normalize(run) == normalize(run)


@pytest.mark.parametrize("spec_path,scope", [
    ("cypress/integration/plugins/alerting-dashboards-plugin/x.js", "alerting"),
    ("cypress/integration/plugins/security/roles.js", "security"),
    ("cypress/integration/core-opensearch-dashboards/home.js", "dashboards"),
    ("cypress/integration/elsewhere/x.js", "functional"),
])
def test_scope_for_functional_source(spec_path, scope):
    assert resolve_scope("functional", spec_path) == scope


def test_scope_is_source_for_other_suites():
    path = "cypress/integration/plugins/alerting-dashboards-plugin/x.js"
    assert resolve_scope("dashboards/plugins/alerting", path) == "dashboards/plugins/alerting"


# ---------------------------------------------------------------------------
# Report directories
# ---------------------------------------------------------------------------

def _write_report(folder, name, data):
    d = folder / "mochawesome" / "results"
    d.mkdir(parents=True, exist_ok=True)
    (d / name).write_text(json.dumps(data))


def test_process_report_dir_writes_summary_and_results(tmp_path):
    suite = tmp_path / "functional"
    _write_report(suite, "mochawesome.json", {"results": [
        False,
        {
            "fullFile": "cypress/integration/plugins/reports-dashboards/a.js",
            "suites": [{"tests": [_test("t1"), _test("t2", "failed")]}],
        },
    ]})
    sink = FakeSink()

    tally = process_report_dir("functional", str(suite), str(tmp_path), CTX, sink)

    assert tally.files == 1
    assert tally.runs == 1
    assert tally.count == {"passed": 1, "failed": 1, "pending": 0, "skipped": 0}
    assert len(sink.summaries) == 1
    assert len(sink.results) == 2

    summary = sink.summaries[0].to_dict()
    assert summary["spec"] == "functional/cypress/integration/plugins/reports-dashboards/a.js"
    assert summary["scope"] == "reporting"
    assert summary["src"] == "functional"
    assert summary["ref"] == "ref-1"
    assert summary["with-security"] is True
    assert summary["version"] == {"opensearch": "2.12.0"}
    assert [r["title"] for r in summary["results"]] == ["t1", "t2"]

    result = sink.results[1].to_dict()
    assert result["title"] == "t2"
    assert result["state"] == "failed"
    assert result["timestamp"] == CTX.timestamp


def test_unusable_duration_does_not_abort_report(tmp_path):
    suite = tmp_path / "s"
    _write_report(suite, "r.json", {"results": [{"fullFile": "a.js", "tests": [
        _test("slow", duration="n/a"), _test("ok"),
    ]}]})
    sink = FakeSink()

    tally = process_report_dir("s", str(suite), str(tmp_path), CTX, sink)

    assert tally.count["passed"] == 2
    assert [r.result.duration for r in sink.results] == [0, 1]


def test_malformed_report_file_is_skipped(tmp_path):
    suite = tmp_path / "s"
    _write_report(suite, "bad.json", {"no-results": []})
    _write_report(suite, "good.json", {"results": [{"fullFile": "a.js", "tests": [_test("ok")]}]})
    (suite / "mochawesome" / "results" / "broken.json").write_text("{not json")
    sink = FakeSink()

    tally = process_report_dir("s", str(suite), str(tmp_path), CTX, sink)

    assert tally.files == 1
    assert [d.result.title for d in sink.results] == ["ok"]


def test_missing_results_dir_yields_empty_tally(tmp_path):
    tally = process_report_dir("s", str(tmp_path / "nothing"), str(tmp_path), CTX, FakeSink())
    assert tally.files == 0
    assert tally.runs == 0


def test_dropped_documents_are_tallied(tmp_path):
    suite = tmp_path / "s"
    _write_report(suite, "r.json", {"results": [{"fullFile": "a.js", "tests": [_test("x")]}]})

    tally = process_report_dir("s", str(suite), str(tmp_path), CTX, FakeSink(fail=True))

    assert tally.dropped == 2
