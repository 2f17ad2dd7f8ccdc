"""Data models for the compatibility runner."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional


class ServiceKind(str, Enum):
    OPENSEARCH = "opensearch"
    DASHBOARDS = "dashboards"


class AuthMode(str, Enum):
    NONE = "none"
    BASIC = "basic"


class ServiceState(str, Enum):
    STARTING = "starting"
    HEALTHY = "healthy"
    TIMED_OUT = "timed_out"
    CRASHED = "crashed"


class TestState(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    PENDING = "pending"
    SKIPPED = "skipped"


TEST_STATES = tuple(s.value for s in TestState)

# Placeholder entry in an active set when a phase had nothing to submit
SKIP_BUILD = "SKIP"


@dataclass(frozen=True)
class HealthProbe:
    service_kind: ServiceKind
    endpoint: str
    auth_mode: AuthMode = AuthMode.NONE
    username: str = ""
    password: str = field(default="", repr=False)


@dataclass
class ServiceHandle:
    name: str
    process: subprocess.Popen
    started_at: float
    state: ServiceState = ServiceState.STARTING


@dataclass(frozen=True)
class BuildJob:
    id: str
    submitted_at: str


@dataclass(frozen=True)
class JobUnit:
    root_path: str
    spec_list: tuple[str, ...]


@dataclass(frozen=True)
class BuildRequest:
    """One unit of work for the remote backend."""

    environment: tuple[tuple[str, str], ...]
    stream_name: str
    label: str = ""

    def env_dict(self) -> dict[str, str]:
        return dict(self.environment)


@dataclass(frozen=True)
class TestResultRecord:
    __test__ = False  # not a pytest test class

    title: str
    state: str
    duration: int
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "title": self.title,
            "state": self.state,
            "duration": self.duration,
        }
        if self.error is not None:
            d["error"] = self.error
        return d


@dataclass(frozen=True)
class RunContext:
    """Run identity and metadata shared by every document of one invocation."""

    timestamp: int
    ref: str
    with_security: bool
    platform: str
    test_type: str = ""
    versions: Mapping[str, str] = field(default_factory=dict)

    def with_versions(self, versions: Mapping[str, str]) -> "RunContext":
        merged = dict(self.versions)
        merged.update(versions)
        return RunContext(
            timestamp=self.timestamp,
            ref=self.ref,
            with_security=self.with_security,
            platform=self.platform,
            test_type=self.test_type,
            versions=merged,
        )

    def metadata(self, source: str, scope: str) -> dict[str, Any]:
        return {
            "version": dict(self.versions),
            "with-security": self.with_security,
            "platform": self.platform,
            "timestamp": self.timestamp,
            "ref": self.ref,
            "src": source,
            "scope": scope,
        }


@dataclass(frozen=True)
class SummaryDocument:
    spec: str
    results: tuple[TestResultRecord, ...]
    count: Mapping[str, int]
    source: str
    scope: str
    context: RunContext

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "spec": self.spec,
            "results": [r.to_dict() for r in self.results],
            "count": dict(self.count),
        }
        d.update(self.context.metadata(self.source, self.scope))
        return d


@dataclass(frozen=True)
class ResultDocument:
    spec: str
    result: TestResultRecord
    source: str
    scope: str
    context: RunContext

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"spec": self.spec}
        d.update(self.result.to_dict())
        d.update(self.context.metadata(self.source, self.scope))
        return d
