"""Tests for readiness polling: cadence, health classification, timeouts."""

from __future__ import annotations

from unittest import mock

import pytest

from compat_runner.health import HealthMonitor, is_healthy
from compat_runner.models import (
    HealthProbe,
    ServiceHandle,
    ServiceKind,
    ServiceState,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def _handle(exited=False):
    proc = mock.MagicMock()
    proc.poll.return_value = 1 if exited else None
    proc.pid = 4242
    return ServiceHandle(name="OpenSearch", process=proc, started_at=0.0)


OS_PROBE = HealthProbe(ServiceKind.OPENSEARCH, "http://localhost:9200/_cluster/health")
OSD_PROBE = HealthProbe(ServiceKind.DASHBOARDS, "http://localhost:5601/api/status")

GREEN = {"status": "green"}


def _monitor(fetch, clock, **kwargs):
    return HealthMonitor(fetch, clock=clock, sleep=clock.sleep, **kwargs)


def test_green_on_first_attempt():
    clock = FakeClock()
    fetch = mock.Mock(return_value=GREEN)
    handle = _handle()

    state = _monitor(fetch, clock).wait_until_healthy(handle, OS_PROBE, 180)

    assert state == ServiceState.HEALTHY
    assert handle.state == ServiceState.HEALTHY
    assert fetch.call_count == 1
    assert clock.sleeps == []


def test_connection_refused_twice_then_green():
    clock = FakeClock()
    fetch = mock.Mock(side_effect=[
        ConnectionRefusedError("refused"),
        ConnectionRefusedError("refused"),
        GREEN,
    ])
    handle = _handle()

    state = _monitor(fetch, clock).wait_until_healthy(handle, OS_PROBE, 180)

    assert state == ServiceState.HEALTHY
    assert fetch.call_count == 3
    assert clock.now == pytest.approx(10.0)


def test_request_latency_is_subtracted_from_sleep():
    clock = FakeClock()
    answers = iter([{"status": "red"}, GREEN])

    def slow_fetch(probe, timeout):
        clock.now += 2
        return next(answers)

    _monitor(slow_fetch, clock).wait_until_healthy(_handle(), OS_PROBE, 180)

    assert clock.sleeps == [pytest.approx(3.0)]


def test_sleep_clamped_at_zero_when_attempt_exceeds_cadence():
    clock = FakeClock()
    answers = iter([{"status": "red"}, GREEN])

    def very_slow_fetch(probe, timeout):
        clock.now += 8
        return next(answers)

    _monitor(very_slow_fetch, clock).wait_until_healthy(_handle(), OS_PROBE, 180)

    assert clock.sleeps == [0.0]


def test_timeout_terminates_process():
    clock = FakeClock()
    fetch = mock.Mock(side_effect=ConnectionRefusedError("refused"))
    handle = _handle()

    state = _monitor(fetch, clock).wait_until_healthy(handle, OS_PROBE, 12)

    assert state == ServiceState.TIMED_OUT
    assert handle.state == ServiceState.TIMED_OUT
    handle.process.terminate.assert_called_once()
    # Attempts at t=0, 5, 10 and a last one on the deadline at t=12
    assert fetch.call_count == 4
    assert clock.now == pytest.approx(12.0)


def test_hanging_requests_do_not_overrun_the_deadline():
    clock = FakeClock()
    timeouts = []

    def hanging_fetch(probe, timeout):
        timeouts.append(timeout)
        clock.now += min(10, timeout)
        raise TimeoutError("timed out")

    state = _monitor(hanging_fetch, clock).wait_until_healthy(_handle(), OS_PROBE, 12)

    assert state == ServiceState.TIMED_OUT
    assert clock.now <= 12 + 5
    assert max(timeouts) <= 5
    assert timeouts == [5, 5, pytest.approx(2.0)]


def test_request_timeout_never_below_floor():
    clock = FakeClock()
    fetch = mock.Mock(side_effect=ConnectionRefusedError("refused"))

    _monitor(fetch, clock, cadence=0.5).wait_until_healthy(_handle(), OS_PROBE, 1)

    assert all(call.args[1] == 1.0 for call in fetch.call_args_list)


def test_exited_process_reported_as_crashed():
    clock = FakeClock()
    fetch = mock.Mock(side_effect=ConnectionRefusedError("refused"))
    handle = _handle(exited=True)

    state = _monitor(fetch, clock).wait_until_healthy(handle, OS_PROBE, 4)

    assert state == ServiceState.CRASHED
    handle.process.terminate.assert_not_called()


def test_non_json_answer_is_not_ready():
    clock = FakeClock()
    fetch = mock.Mock(side_effect=[ValueError("Unexpected content type 'text/html'"), GREEN])

    state = _monitor(fetch, clock).wait_until_healthy(_handle(), OSD_PROBE, 600)

    assert state == ServiceState.HEALTHY
    assert fetch.call_count == 2


def test_opensearch_yellow_is_healthy():
    assert is_healthy(ServiceKind.OPENSEARCH, {"status": "yellow"})
    assert is_healthy(ServiceKind.OPENSEARCH, {"status": "green"})
    assert not is_healthy(ServiceKind.OPENSEARCH, {"status": "red"})


def test_dashboards_needs_overall_green():
    green = {"status": {"overall": {"state": "green"}}}
    yellow = {"status": {"overall": {"state": "yellow"}}}
    assert is_healthy(ServiceKind.DASHBOARDS, green)
    assert not is_healthy(ServiceKind.DASHBOARDS, yellow)
    assert not is_healthy(ServiceKind.DASHBOARDS, {"status": "green"})


def test_malformed_payloads_are_not_healthy():
    for payload in (None, [], "green", {"status": None}, {"status": {"overall": "green"}}):
        assert not is_healthy(ServiceKind.DASHBOARDS, payload)
    assert not is_healthy(ServiceKind.OPENSEARCH, None)
