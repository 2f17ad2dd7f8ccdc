"""Tests for flag parsing and the job-argument string handed to remote builds."""

from __future__ import annotations

import argparse
import shlex

import pytest

from compat_runner.params import RunParameters, _test_version, parse_args


def test_defaults():
    p = parse_args([])
    assert p.parallel is False
    assert p.with_security is True
    assert p.test_versions == ()


def test_disable_security_flag():
    assert parse_args(["--disable-security"]).with_security is False


def test_test_version_repeatable():
    p = parse_args([
        "--test-version", "functional=git://org/functional-test/2.12",
        "--test-version", "alerting=git://org/alerting/main",
    ])
    assert p.test_versions == (
        ("functional", "git://org/functional-test/2.12"),
        ("alerting", "git://org/alerting/main"),
    )


def test_test_version_requires_key_and_url():
    with pytest.raises(argparse.ArgumentTypeError):
        _test_version("no-equals-sign")
    with pytest.raises(SystemExit):
        parse_args(["--test-version", "=git://x"])


def test_job_args_pin_run_identity_first():
    p = parse_args(["--parallel", "--test-type", "mocha", "--ref", "old", "--timestamp", "5"])
    tokens = shlex.split(p.to_job_args(ref="r1", timestamp=123, test_type="cypress"))
    assert tokens[:3] == ["--ref=r1", "--timestamp=123", "--test-type=cypress"]
    assert not any(t.startswith("--ref=old") or t == "--timestamp=5" for t in tokens)


def test_default_parameters_forward_only_run_identity():
    assert RunParameters().to_job_args(ref="r", timestamp=1, test_type="cypress") == (
        "--ref=r --timestamp=1 --test-type=cypress"
    )
    assert parse_args([]).to_job_args(ref="r", timestamp=1, test_type="mocha") == (
        "--ref=r --timestamp=1 --test-type=mocha"
    )


def test_job_args_drop_recursion_and_cleanup_flags():
    p = parse_args([
        "--parallel", "--no-clean", "--init", "--matrix-security", "--matrix-plugins",
        "--spec", "a.js", "--root", "functional", "--group", "3", "-v",
    ])
    tokens = shlex.split(p.to_job_args(ref="r", timestamp=1, test_type="mocha"))
    flags = {t.split("=", 1)[0] for t in tokens}
    for dropped in ("--parallel", "--no-clean", "--init", "--matrix-security",
                    "--matrix-plugins", "--spec", "--root", "--group", "--verbose"):
        assert dropped not in flags


def test_job_args_forward_run_flags():
    p = parse_args([
        "--disable-security", "--less-logs",
        "--opensearch-version", "2.12.0",
        "--dashboards-version", "git://org/OpenSearch-Dashboards/main",
        "--test-version", "functional=git://org/ft/2.12",
        "--tmp-dir", "/work/osd",
    ])
    tokens = shlex.split(p.to_job_args(ref="r", timestamp=1, test_type="cypress"))
    assert "--disable-security" in tokens
    assert "--less-logs" in tokens
    assert "--exclude-plugins" not in tokens
    assert "--opensearch-version=2.12.0" in tokens
    assert "--dashboards-version=git://org/OpenSearch-Dashboards/main" in tokens
    assert "--test-version=functional=git://org/ft/2.12" in tokens
    assert "--tmp-dir=/work/osd" in tokens


def test_job_args_round_trip_through_parser():
    p = parse_args(["--disable-security", "--opensearch-version", "2.12.0", "--tmp-dir", "/w d"])
    tokens = shlex.split(p.to_job_args(ref="r", timestamp=9, test_type="mocha"))
    again = parse_args(tokens)
    assert again.ref == "r"
    assert again.timestamp == 9
    assert again.test_type == "mocha"
    assert again.tmp_dir == "/w d"
    assert again.disable_security is True
    assert again.opensearch_version == "2.12.0"


def test_replace_returns_new_instance():
    p = RunParameters()
    q = p.replace(disable_security=True)
    assert p.with_security is True
    assert q.with_security is False
