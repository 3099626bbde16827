"""Shared fixtures for pty_monitor tests."""

from __future__ import annotations

import pytest

from pty_monitor import (
    AlertStateFile,
    AuditLog,
    Monitor,
    ProcessSample,
    ResourceCapacity,
    Reporter,
    TTY_NONE,
)


def make_sample(
    pid: int,
    handle_count: int = 0,
    tty: str = "ttys001",
    parent_pid: int = 500,
    project: str = "app",
    cpu_percent: float = 1.0,
) -> ProcessSample:
    return ProcessSample(
        pid=pid,
        tty=tty,
        cpu_percent=cpu_percent,
        parent_pid=parent_pid,
        handle_count=handle_count,
        project=project,
    )


def make_orphan(pid: int, handle_count: int = 0, project: str = "lost") -> ProcessSample:
    return make_sample(pid, handle_count=handle_count, tty=TTY_NONE, parent_pid=1, project=project)


class FakeSampler:
    """Returns scripted readings; each call pops the next one, the last repeats."""

    def __init__(self, capacities, process_lists) -> None:
        self._capacities = list(capacities)
        self._process_lists = list(process_lists)
        self.capacity_calls = 0
        self.process_calls = 0

    def capacity(self) -> ResourceCapacity:
        self.capacity_calls += 1
        if len(self._capacities) > 1:
            return self._capacities.pop(0)
        return self._capacities[0]

    def processes(self) -> list[ProcessSample]:
        self.process_calls += 1
        if len(self._process_lists) > 1:
            return self._process_lists.pop(0)
        return self._process_lists[0]


class RecordingNotifier:
    def __init__(self, name: str = "recorder", available: bool = True, error: Exception | None = None) -> None:
        self.name = name
        self._available = available
        self._error = error
        self.sent: list[tuple[str, str]] = []

    @property
    def available(self) -> bool:
        return self._available

    def send(self, title: str, message: str) -> None:
        if self._error is not None:
            raise self._error
        self.sent.append((title, message))


class RecordingKiller:
    def __init__(self, fail_for: dict[int, Exception] | None = None) -> None:
        self.fail_for = fail_for or {}
        self.signalled: list[int] = []

    def __call__(self, sample: ProcessSample) -> None:
        if sample.pid in self.fail_for:
            raise self.fail_for[sample.pid]
        self.signalled.append(sample.pid)


class Clock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def audit(tmp_path) -> AuditLog:
    return AuditLog(tmp_path / "pty-monitor.log")


@pytest.fixture
def state_file(tmp_path) -> AlertStateFile:
    return AlertStateFile(tmp_path / "last-alert")


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def killer() -> RecordingKiller:
    return RecordingKiller()


@pytest.fixture
def build_monitor(audit, state_file, notifier, killer):
    """Factory for a Monitor wired to fakes and tmp_path files."""

    def _build(sampler, now: float = 1_700_000_000.0, **kwargs) -> Monitor:
        return Monitor(
            sampler,
            Reporter([notifier], audit),
            state_file,
            clock=kwargs.pop("clock", Clock(now)),
            killer=kwargs.pop("killer", killer),
            **kwargs,
        )

    return _build
