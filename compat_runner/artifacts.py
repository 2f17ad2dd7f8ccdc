"""Run record – local provenance of one invocation, kept at runs/<ref>/run.json.

Parallel runs list the remote build ids they submitted; local runs list a
report tally per suite. The record is rewritten whole at the end of a run,
whatever the outcome.
"""

from __future__ import annotations

import json
import os
from typing import Any

RUN_RECORD = "run.json"

REQUIRED_KEYS = frozenset({
    "ref", "timestamp", "mode", "test_type", "with_security", "platform",
    "versions", "started_at", "finished_at", "duration_ms", "suites",
    "builds", "status",
})


def missing_keys(record: dict[str, Any]) -> list[str]:
    return sorted(REQUIRED_KEYS - record.keys())


def run_record_path(tmp_dir: str, ref: str) -> str:
    return os.path.join(tmp_dir, "runs", ref, RUN_RECORD)


def save_run_record(tmp_dir: str, record: dict[str, Any]) -> str:
    """Write *record* under its ref and return the path.

    Raises ValueError when the record lacks a required key.
    """
    missing = missing_keys(record)
    if missing:
        raise ValueError(f"Run record missing keys: {', '.join(missing)}")
    path = run_record_path(tmp_dir, record["ref"])
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        json.dump(record, f, indent=2, default=str)
    return path
