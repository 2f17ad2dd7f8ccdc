"""Exception hierarchy for the compatibility runner.

Everything fatal derives from ``CompatRunnerError``; the entry point turns
those into a diagnostic and a non-zero exit status.
"""

from __future__ import annotations


class CompatRunnerError(Exception):
    """Base class for fatal runner errors."""

    phase = "run"


class ConfigError(CompatRunnerError):
    """Config file is missing, unreadable, or malformed. Fail-closed."""

    phase = "config"


class PreparationError(CompatRunnerError):
    """A preparation collaborator could not produce the location it was asked for."""

    phase = "prepare"


class ServiceNotHealthy(CompatRunnerError):
    """A spawned service never reported healthy before its deadline."""

    def __init__(self, service: str, state: str) -> None:
        super().__init__(f"{service} did not become healthy (state: {state})")
        self.service = service
        self.state = state
        self.phase = f"wait-healthy:{service}"


class BuildStatusUnavailable(CompatRunnerError):
    """Repeated failures to query remote build status; job accounting is lost."""

    def __init__(self, label: str, failures: int) -> None:
        super().__init__(
            f"Failed to check status of {label} tasks {failures} times in a row"
        )
        self.label = label
        self.failures = failures
        self.phase = f"await-builds:{label}"


class CapacityRetriesExhausted(CompatRunnerError):
    """The backend kept reporting its concurrency limit past the configured cap."""

    phase = "submit"


class StoreInitError(CompatRunnerError):
    """The result store rejected or could not be reached during schema setup."""

    phase = "init"
