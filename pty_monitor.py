#!/usr/bin/env python3
"""
pty_monitor.py
==============

A macOS (and Linux) watchdog for leaked pseudo-terminal slots.

Long-lived CLI sessions resumed with ``copilot --resume`` can leak PTY master
handles (``/dev/ptmx``) until the kernel runs out of terminal slots and no new
terminal window can be opened. This script

1. **Kills orphaned sessions** (Level 1): matching processes that were
   re-parented to launchd/init (PPID 1) and have no controlling terminal are
   sent a single SIGTERM.
2. **Flags leaking sessions** (Level 2): processes holding more than
   ``--leak-threshold`` ptmx handles (default 150).
3. **Alerts on PTY exhaustion** (Level 3): when usage reaches
   ``--usage-threshold`` % (default 80) of the kernel limit, one notification
   lists every session by ptmx count and recommends which one to restart.

Alerts are de-duplicated: after a notification, further ones are suppressed
for ``--cooldown`` seconds (default 30 minutes) unless ``--force`` is given.

────────────────────────────────────────────────────────────────────────────
USAGE EXAMPLES
────────────────────────────────────────────────────────────────────────────
# 1) One pass: kill zombies, alert if needed
./pty_monitor.py

# 2) Show the current PTY table, change nothing
./pty_monitor.py --status

# 3) Log what would happen without killing or notifying
./pty_monitor.py --dry-run

# 4) Notify now even if an alert went out recently
./pty_monitor.py --force

# 5) Run every 5 minutes as a per-user LaunchAgent
./pty_monitor.py --install-agent
────────────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import argparse
import contextlib
import fcntl
import glob
import os
import re
import shutil
import subprocess
import sys
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import IO, Protocol

import psutil

__version__ = "1.0.0"

# ──────────────────────────────── Defaults ──────────────────────────────────
DEF_PATTERN = r"copilot.*--resume"  # searched in the full command line
DEF_EXCLUDE_NAMES = ("node",)  # runtime wrapper that shares the pattern
DEF_LEAK_THRESHOLD = 150  # ptmx handles per process
DEF_USAGE_PCT = 80  # % of kernel PTY limit
DEF_COOLDOWN_SEC = 1800  # 30 minutes between alerts
DEF_PTY_MAX = 999  # macOS default for kern.tty.ptmx_max
DEF_CPU_SAMPLE_SEC = 0.2  # window for per-process CPU%
DEF_MESSENGER = "notify-telegram"
DEF_AGENT_INTERVAL_SEC = 300

CMD_TIMEOUT_SEC = 10
LOG_ROTATE_BYTES = 50 * 1024 * 1024

TTY_NONE = "none"
ORPHAN_PARENT_PID = 1
RESUME_HINT = "copilot --resume"

# ───────────────────────────────  Files / paths ─────────────────────────────
IS_MACOS = sys.platform == "darwin"

LOG_FILE = Path("/tmp/pty-monitor.log")
LAST_ALERT_FILE = Path("/tmp/pty-monitor-last-alert")
LOCK_FILE = Path("/tmp/pty-monitor.lock")
DEF_DEVICE_GLOB = "/dev/ttys[0-9][0-9][0-9]" if IS_MACOS else "/dev/pts/[0-9]*"
LINUX_PTY_MAX_FILE = Path("/proc/sys/kernel/pty/max")

AGENT_LABEL = "com.local.pty-monitor"
AGENT_PLIST_PATH = Path.home() / "Library" / "LaunchAgents" / f"{AGENT_LABEL}.plist"
AGENT_LOG_FILE = "/tmp/pty-monitor-launchd.log"
AGENT_BASE_PATH = "/usr/local/bin:/usr/bin:/bin:/usr/sbin:/sbin"


# ──────────────────────────────  Data structures  ───────────────────────────
class SamplerError(Exception):
    """Raised when the process table or the PTY capacity cannot be read at all."""


class AlertLevel(Enum):
    NONE = "none"
    LEAK = "leak"
    USAGE = "usage"


@dataclass(frozen=True)
class ResourceCapacity:
    """Kernel PTY limit and the number of slots currently allocated."""

    max: int
    used: int

    @property
    def free(self) -> int:
        return self.max - self.used

    @property
    def usage_percent(self) -> int:
        if self.max <= 0:
            return 0
        return self.used * 100 // self.max


@dataclass(frozen=True)
class ProcessSample:
    pid: int
    tty: str  # "ttys003", "pts/2" or TTY_NONE
    cpu_percent: float
    parent_pid: int
    handle_count: int  # open ptmx handles
    project: str  # basename of the working directory
    proc: psutil.Process | None = field(default=None, compare=False, repr=False)  # scanned handle

    @property
    def is_orphan(self) -> bool:
        return self.parent_pid == ORPHAN_PARENT_PID and self.tty == TTY_NONE


@dataclass(frozen=True)
class Policy:
    leak_threshold: int = DEF_LEAK_THRESHOLD
    usage_threshold: int = DEF_USAGE_PCT

    def is_leaking(self, sample: ProcessSample) -> bool:
        return sample.handle_count > self.leak_threshold

    def is_exhausted(self, capacity: ResourceCapacity) -> bool:
        return capacity.usage_percent >= self.usage_threshold


@dataclass
class Decision:
    to_kill: list[ProcessSample] = field(default_factory=list)
    alert_level: AlertLevel = AlertLevel.NONE
    alert_message: str = ""
    restart_target: ProcessSample | None = None
    leaking: list[ProcessSample] = field(default_factory=list)


@dataclass(frozen=True)
class AlertState:
    """Epoch seconds of the last dispatched alert, None if never alerted."""

    last_alert: int | None = None


@dataclass
class RunResult:
    """
    Outcome of one pass. ``decision`` and ``capacity`` are the post-remediation
    readings the alert was based on; ``candidates`` are the orphans selected
    from the first scan and ``killed`` the ones actually signalled.
    """

    decision: Decision
    capacity: ResourceCapacity
    candidates: list[ProcessSample] = field(default_factory=list)
    killed: list[ProcessSample] = field(default_factory=list)
    alerted: bool = False
    suppressed: bool = False


# ─────────────────────────────  Tiny helpers  ───────────────────────────────
class AuditLog:
    """Append-only, timestamped log file, rotated to ``.old`` at 50 MB."""

    def __init__(self, path: Path = LOG_FILE, clock: Callable[[], datetime] = datetime.now) -> None:
        self.path = Path(path)
        self._clock = clock

    def write(self, msg: str) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            pass

        try:
            if self.path.exists() and self.path.stat().st_size > LOG_ROTATE_BYTES:
                backup = self.path.with_suffix(".old")
                if backup.exists():
                    backup.unlink()
                self.path.rename(backup)
        except OSError:
            pass  # keep logging even if rotation fails

        try:
            with self.path.open("a", encoding="utf-8") as fp:
                fp.write(f"[{self._clock():%Y-%m-%d %H:%M:%S}] {msg}\n")
        except OSError as e:
            print(f"[LOG] cannot write {self.path}: {e}: {msg}", file=sys.stderr)


def esc(s: str) -> str:  # shell-safe escaper for osascript strings
    return s.replace("\\", "\\\\").replace('"', '\\"')


def one_line(text: str) -> str:
    """Fold a multi-line message into a single log entry."""
    return " | ".join(line for line in text.splitlines() if line)


def terminal_name(device: str | None) -> str:
    """Map psutil's terminal path to the short ps-style name, or TTY_NONE."""
    if not device:
        return TTY_NONE
    return device[len("/dev/"):] if device.startswith("/dev/") else device


def project_label(cwd: str | None) -> str:
    if not cwd:
        return "?"
    return Path(cwd).name or "?"


def _readlink(path: Path) -> str:
    try:
        return os.readlink(path)
    except OSError:
        return ""


def count_pty_handles(pid: int) -> int:
    """
    Count the open ptmx handles of *pid*.

    psutil's open_files() only reports regular files, so on Linux the fd table
    in /proc is read directly; elsewhere (macOS) this falls back to lsof.
    """
    fd_dir = Path(f"/proc/{pid}/fd")
    if fd_dir.is_dir():
        return sum(1 for fd in fd_dir.iterdir() if "ptmx" in _readlink(fd))

    result = subprocess.run(
        ["lsof", "-n", "-P", "-Fn", "-p", str(pid)],
        capture_output=True,
        text=True,
        check=False,
        timeout=CMD_TIMEOUT_SEC,
    )
    return sum(1 for line in result.stdout.splitlines() if line.startswith("n") and "ptmx" in line)


def read_pty_max() -> int | None:
    """Return the kernel PTY limit, or None when no source is readable."""
    if LINUX_PTY_MAX_FILE.exists():
        with contextlib.suppress(OSError, ValueError):
            return int(LINUX_PTY_MAX_FILE.read_text().strip())

    with contextlib.suppress(OSError, subprocess.SubprocessError, ValueError):
        result = subprocess.run(
            ["sysctl", "-n", "kern.tty.ptmx_max"],
            capture_output=True,
            text=True,
            check=False,
            timeout=CMD_TIMEOUT_SEC,
        )
        if result.returncode == 0:
            return int(result.stdout.strip())
    return None


def _query(fn: Callable[[], object], default):
    """Run one per-process query; permission or I/O failures yield *default*."""
    try:
        return fn()
    except (psutil.AccessDenied, OSError, subprocess.SubprocessError):
        return default


# ──────────────────────────────── Sampler ───────────────────────────────────
class Sampler:
    """Read-only view of the PTY capacity and the matching processes."""

    def __init__(
        self,
        pattern: str = DEF_PATTERN,
        exclude_names: Iterable[str] = DEF_EXCLUDE_NAMES,
        device_glob: str = DEF_DEVICE_GLOB,
        cpu_sample: float = DEF_CPU_SAMPLE_SEC,
        audit: AuditLog | None = None,
    ) -> None:
        self.pattern = re.compile(pattern)
        self.exclude_names = frozenset(exclude_names)
        self.device_glob = device_glob
        self.cpu_sample = cpu_sample
        self.audit = audit

    # ── capacity ──────────────────────────────
    def capacity(self) -> ResourceCapacity:
        return ResourceCapacity(max=self.pty_max(), used=self.pty_used())

    def pty_max(self) -> int:
        value = read_pty_max()
        if value is None or value <= 0:
            if self.audit is not None:
                self.audit.write(f"Cannot read PTY limit, assuming {DEF_PTY_MAX}")
            return DEF_PTY_MAX
        return value

    def pty_used(self) -> int:
        return len(glob.glob(self.device_glob))

    # ── processes ─────────────────────────────
    def find_processes(self) -> list[psutil.Process]:
        """Return the processes whose command line matches the pattern."""
        matches: list[psutil.Process] = []
        own_pid = os.getpid()
        try:
            for proc in psutil.process_iter(["pid", "name", "cmdline"]):
                if proc.pid == own_pid:  # never match ourselves
                    continue
                cmdline = proc.info.get("cmdline") or []
                if not cmdline or not self.pattern.search(" ".join(cmdline)):
                    continue
                if (proc.info.get("name") or "") in self.exclude_names:
                    continue
                matches.append(proc)
        except (psutil.Error, OSError) as e:
            raise SamplerError(f"cannot enumerate processes: {e}") from e
        return matches

    def processes(self) -> list[ProcessSample]:
        procs = self.find_processes()

        # cpu_percent() needs two readings; prime all candidates, then wait once
        if self.cpu_sample > 0 and procs:
            for proc in procs:
                with contextlib.suppress(psutil.Error):
                    proc.cpu_percent(None)
            time.sleep(self.cpu_sample)

        samples: list[ProcessSample] = []
        for proc in procs:
            sample = self.inspect(proc)
            if sample is not None:
                samples.append(sample)
        return samples

    def inspect(self, proc: psutil.Process) -> ProcessSample | None:
        """
        Build a ProcessSample, or None if the process exited mid-scan.

        Unreadable fields fall back to safe defaults. The parent defaults to 0
        so a failed query can never make a process look orphaned.
        """
        try:
            with proc.oneshot():
                return ProcessSample(
                    pid=proc.pid,
                    tty=_query(lambda: terminal_name(proc.terminal()), TTY_NONE),
                    cpu_percent=_query(lambda: float(proc.cpu_percent(None)), 0.0),
                    parent_pid=_query(proc.ppid, 0),
                    handle_count=_query(lambda: count_pty_handles(proc.pid), 0),
                    project=_query(lambda: project_label(proc.cwd()), "?"),
                    proc=proc,
                )
        except psutil.NoSuchProcess:
            return None


# ─────────────────────────────── Classifier ─────────────────────────────────
def find_orphans(samples: Iterable[ProcessSample]) -> list[ProcessSample]:
    return [s for s in samples if s.is_orphan]


def pick_restart_target(samples: Iterable[ProcessSample]) -> ProcessSample | None:
    """The process holding the most ptmx handles (first one on ties)."""
    target: ProcessSample | None = None
    for sample in samples:
        if sample.handle_count > (target.handle_count if target else 0):
            target = sample
    return target


def format_alert(
    capacity: ResourceCapacity,
    samples: Sequence[ProcessSample],
    target: ProcessSample | None = None,
) -> str:
    lines = [f"PTY {capacity.used}/{capacity.max} ({capacity.free} free)"]
    ranked = sorted((s for s in samples if s.handle_count > 0), key=lambda s: s.handle_count, reverse=True)
    lines.extend(f"{s.project} ({s.tty}): {s.handle_count} ptmx" for s in ranked)
    if target is not None:
        lines.append(f"Restart {target.project} (PID {target.pid}) in {target.tty}: frees ~{target.handle_count} PTYs")
    return "\n".join(lines)


def classify(
    capacity: ResourceCapacity,
    samples: Sequence[ProcessSample],
    policy: Policy = Policy(),
) -> Decision:
    """
    Apply the three-level policy to one sample set.

    Orphans go to ``to_kill`` and are left out of the alert evaluation. Leaking
    processes and PTY exhaustion share a single alert: ``USAGE`` when usage is
    at or above the threshold, ``LEAK`` (log only) when only individual
    processes are over the handle threshold.
    """
    to_kill = find_orphans(samples)
    doomed = {s.pid for s in to_kill}
    remaining = [s for s in samples if s.pid not in doomed]
    leaking = [s for s in remaining if policy.is_leaking(s)]

    if policy.is_exhausted(capacity):
        target = pick_restart_target(remaining)
        return Decision(
            to_kill=to_kill,
            alert_level=AlertLevel.USAGE,
            alert_message=format_alert(capacity, remaining, target),
            restart_target=target,
            leaking=leaking,
        )
    if leaking:
        return Decision(
            to_kill=to_kill,
            alert_level=AlertLevel.LEAK,
            alert_message=format_alert(capacity, leaking),
            leaking=leaking,
        )
    return Decision(to_kill=to_kill)


# ─────────────────────────────── Alert gate ─────────────────────────────────
def should_alert(state: AlertState, now: int, cooldown: int = DEF_COOLDOWN_SEC, force: bool = False) -> bool:
    if force or state.last_alert is None:
        return True
    return now - state.last_alert >= cooldown


def cooldown_remaining(state: AlertState, now: int, cooldown: int = DEF_COOLDOWN_SEC) -> int:
    if state.last_alert is None:
        return 0
    return max(0, cooldown - (now - state.last_alert))


def mark_alerted(state: AlertState, now: int) -> AlertState:
    if state.last_alert is not None and state.last_alert > now:
        return state  # never move backwards
    return AlertState(last_alert=now)


class AlertStateFile:
    """Persists AlertState as a single epoch-seconds integer."""

    def __init__(self, path: Path = LAST_ALERT_FILE) -> None:
        self.path = Path(path)

    def load(self) -> AlertState:
        # unreadable or malformed means "never alerted"
        try:
            raw = self.path.read_text(encoding="utf-8").strip()
        except OSError:
            return AlertState()
        try:
            return AlertState(last_alert=int(raw))
        except ValueError:
            return AlertState()

    def save(self, state: AlertState) -> None:
        if state.last_alert is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(f"{state.last_alert}\n", encoding="utf-8")


# ──────────────────────────────── Reporter ──────────────────────────────────
class Notifier(Protocol):
    name: str

    @property
    def available(self) -> bool: ...

    def send(self, title: str, message: str) -> None: ...


class OsascriptNotifier:
    """macOS notification centre via AppleScript."""

    name = "osascript"

    @property
    def available(self) -> bool:
        return IS_MACOS

    def send(self, title: str, message: str) -> None:
        script = f'display notification "{esc(message)}" with title "{esc(title)}"'
        subprocess.run(["osascript", "-e", script], check=True, capture_output=True, timeout=CMD_TIMEOUT_SEC)


class NotifySendNotifier:
    """Desktop notification on Linux (libnotify)."""

    name = "notify-send"

    @property
    def available(self) -> bool:
        return shutil.which(self.name) is not None

    def send(self, title: str, message: str) -> None:
        subprocess.run([self.name, title, message], check=True, capture_output=True, timeout=CMD_TIMEOUT_SEC)


class CommandNotifier:
    """An external messenger command, called with one ``"title: message"`` argument."""

    def __init__(self, command: str = DEF_MESSENGER) -> None:
        self.name = command

    @property
    def available(self) -> bool:
        return shutil.which(self.name) is not None

    def send(self, title: str, message: str) -> None:
        subprocess.run([self.name, f"{title}: {message}"], check=True, capture_output=True, timeout=CMD_TIMEOUT_SEC)


def default_notifiers(messenger: str | None = DEF_MESSENGER) -> list[Notifier]:
    notifiers: list[Notifier] = [OsascriptNotifier() if IS_MACOS else NotifySendNotifier()]
    if messenger:
        notifiers.append(CommandNotifier(messenger))
    return notifiers


class Reporter:
    """Fans notifications out to every available notifier and the audit log."""

    def __init__(self, notifiers: Sequence[Notifier], audit: AuditLog) -> None:
        self.notifiers = list(notifiers)
        self.audit = audit

    def notify(self, title: str, message: str, dry_run: bool = False) -> int:
        """Return the number of notifiers that accepted the message."""
        if dry_run:
            self.audit.write(f"[DRY-RUN] Would notify: {title} - {one_line(message)}")
            return 0

        delivered = 0
        for notifier in self.notifiers:
            if not notifier.available:
                continue
            try:
                notifier.send(title, message)
                delivered += 1
            except (OSError, subprocess.SubprocessError) as e:
                self.audit.write(f"Notifier {notifier.name} failed: {e}")
        self.audit.write(f"{title}: {one_line(message)}")
        return delivered


def render_status(capacity: ResourceCapacity, samples: Sequence[ProcessSample], policy: Policy = Policy()) -> str:
    lines = [
        f"PTY: {capacity.used}/{capacity.max} used ({capacity.usage_percent}%), {capacity.free} free",
        "",
    ]
    if not samples:
        lines.append("No matching processes.")
        return "\n".join(lines)

    row = "{:<8} {:<10} {:<6} {:<8} {}{}"
    lines.append(row.format("PID", "TTY", "CPU%", "ptmx", "Project", ""))
    lines.append(row.format("---", "---", "---", "---", "---", ""))
    for s in samples:
        flag = ""
        if s.is_orphan:
            flag += " ZOMBIE"
        if policy.is_leaking(s):
            flag += " LEAK!"
        lines.append(row.format(s.pid, s.tty, f"{s.cpu_percent:.1f}", s.handle_count, s.project, flag))

    target = pick_restart_target(samples)
    if policy.is_exhausted(capacity) and target is not None:
        lines.append("")
        lines.append(f"Restart recommendation: kill PID {target.pid} ({target.project} in {target.tty})")
        lines.append(f"  -> frees ~{target.handle_count} PTYs, then '{RESUME_HINT}' in that terminal")
    return "\n".join(lines)


# ───────────────────────────── Kill wrapper  ────────────────────────────────
def terminate_process(sample: ProcessSample) -> None:
    """
    Send a single SIGTERM; no escalation, no wait.

    The psutil handle from the scan is reused, so a pid recycled since then
    raises NoSuchProcess instead of signalling an unrelated process.
    """
    proc = sample.proc if sample.proc is not None else psutil.Process(sample.pid)
    proc.terminate()


# ───────────────────────────── Main monitor  ────────────────────────────────
class Monitor:
    """One sample → classify → remediate → alert pass."""

    def __init__(
        self,
        sampler: Sampler,
        reporter: Reporter,
        state_file: AlertStateFile,
        policy: Policy = Policy(),
        cooldown: int = DEF_COOLDOWN_SEC,
        clock: Callable[[], float] = time.time,
        killer: Callable[[ProcessSample], None] = terminate_process,
    ) -> None:
        self.sampler = sampler
        self.reporter = reporter
        self.state_file = state_file
        self.policy = policy
        self.cooldown = cooldown
        self.clock = clock
        self.killer = killer

    @property
    def audit(self) -> AuditLog:
        return self.reporter.audit

    def status(self) -> str:
        return render_status(self.sampler.capacity(), self.sampler.processes(), self.policy)

    def run(self, dry_run: bool = False, force: bool = False) -> RunResult:
        capacity = self.sampler.capacity()
        samples = self.sampler.processes()

        # Level 1
        candidates = classify(capacity, samples, self.policy).to_kill
        killed = self.remediate(candidates, dry_run)
        if killed:
            details = ", ".join(f"{s.project} (PID {s.pid})" for s in killed)
            self.reporter.notify("PTY Cleanup", f"Killed {len(killed)} zombie: {details}", dry_run)

        # Levels 2+3 on fresh numbers
        capacity = self.sampler.capacity()
        if killed:
            samples = self.sampler.processes()
        decision = classify(capacity, samples, self.policy)
        result = RunResult(decision=decision, capacity=capacity, candidates=candidates, killed=killed)

        if decision.alert_level is AlertLevel.USAGE:
            result.alerted = self.alert(decision, dry_run, force)
            result.suppressed = not result.alerted
        elif decision.alert_level is AlertLevel.LEAK:
            self.audit.write(f"Leak below usage threshold: {one_line(decision.alert_message)}")

        self.audit.write(f"Check: PTY {capacity.used}/{capacity.max} ({capacity.usage_percent}%), killed: {len(killed)}")
        return result

    def remediate(self, to_kill: Iterable[ProcessSample], dry_run: bool) -> list[ProcessSample]:
        killed: list[ProcessSample] = []
        for s in to_kill:
            if dry_run:
                self.audit.write(f"[DRY-RUN] Would kill zombie PID={s.pid} {s.project} CPU={s.cpu_percent:.1f}%")
                continue
            try:
                self.killer(s)
            except (psutil.NoSuchProcess, psutil.AccessDenied, OSError) as e:
                self.audit.write(f"Failed to kill PID={s.pid}: {e}")
                continue
            killed.append(s)
            msg = f"Killed zombie PID={s.pid} {s.project} CPU={s.cpu_percent:.1f}%"
            print(f"[KILL] {msg}")
            self.audit.write(msg)
        return killed

    def alert(self, decision: Decision, dry_run: bool, force: bool) -> bool:
        """Dispatch the capacity alert if the cooldown allows; True if dispatched."""
        now = int(self.clock())
        state = AlertState() if force else self.state_file.load()
        if not should_alert(state, now, self.cooldown, force):
            left = cooldown_remaining(state, now, self.cooldown)
            self.audit.write(f"Alert suppressed (cooldown, {left}s left)")
            return False

        self.reporter.notify("PTY Warning", decision.alert_message, dry_run)
        if dry_run:
            return True

        # marked even when every notifier failed; the audit log has the attempt
        try:
            self.state_file.save(mark_alerted(state, now))
        except OSError as e:
            print(f"[ERROR] cannot write {self.state_file.path}: {e}", file=sys.stderr)
            self.audit.write(f"Cannot write alert state {self.state_file.path}: {e}")
        return True


# ──────────────────────────────── Run lock ──────────────────────────────────
class RunLock:
    """
    Non-blocking flock on a file holding the owner pid. The file is removed
    on release if this process still owns it.
    """

    def __init__(self, path: Path = LOCK_FILE) -> None:
        self.path = Path(path)
        self.holder: int | None = None
        self._handle: IO[str] | None = None

    @property
    def acquired(self) -> bool:
        return self._handle is not None

    def acquire(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, "a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.seek(0)
            raw = handle.read().strip()
            handle.close()
            self.holder = int(raw) if raw.isdigit() else None
            return False

        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self._handle = handle
        return True

    def release(self) -> None:
        if self._handle is None:
            return
        with contextlib.suppress(OSError):
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        self._handle.close()
        self._handle = None
        with contextlib.suppress(OSError):
            if self.path.read_text(encoding="utf-8").strip() == str(os.getpid()):
                self.path.unlink()

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


# ─────────────────────────── Launch-agent helpers ───────────────────────────
def build_agent_plist(python: str, interval: int, env_path: str) -> str:
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN"
  "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
    <key>Label</key>
    <string>{AGENT_LABEL}</string>
    <key>ProgramArguments</key>
    <array>
        <string>{python}</string>
        <string>-m</string>
        <string>pty_monitor</string>
    </array>
    <key>StartInterval</key>
    <integer>{interval}</integer>
    <key>RunAtLoad</key>
    <true/>
    <key>StandardOutPath</key>
    <string>{AGENT_LOG_FILE}</string>
    <key>StandardErrorPath</key>
    <string>{AGENT_LOG_FILE}</string>
    <key>EnvironmentVariables</key>
    <dict>
        <key>PATH</key>
        <string>{env_path}</string>
    </dict>
</dict>
</plist>
"""


def agent_env_path() -> str:
    """PATH for the agent; includes node's bin dir since notify-telegram is an npm tool."""
    node = shutil.which("node")
    if node:
        return f"{AGENT_BASE_PATH}:{os.path.dirname(node)}"
    return AGENT_BASE_PATH


def install_agent(interval: int, plist_path: Path = AGENT_PLIST_PATH) -> None:
    if not IS_MACOS:
        sys.exit("Error: LaunchAgents are only available on macOS.")

    safe_python = os.path.abspath(sys.executable)
    plist_path.parent.mkdir(parents=True, exist_ok=True)
    subprocess.run(
        ["launchctl", "unload", str(plist_path)],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        check=False,
        timeout=CMD_TIMEOUT_SEC,
    )
    plist_path.write_text(build_agent_plist(safe_python, interval, agent_env_path()))
    subprocess.run(["launchctl", "load", str(plist_path)], check=False, timeout=CMD_TIMEOUT_SEC)
    print(f"LaunchAgent installed: {plist_path} (every {interval // 60} minutes)")


def uninstall_agent(plist_path: Path = AGENT_PLIST_PATH) -> None:
    if not IS_MACOS:
        sys.exit("Error: LaunchAgents are only available on macOS.")

    subprocess.run(
        ["launchctl", "unload", str(plist_path)],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        check=False,
        timeout=CMD_TIMEOUT_SEC,
    )
    plist_path.unlink(missing_ok=True)
    print("LaunchAgent removed.")


# ────────────────────────────  CLI / argparse  ──────────────────────────────
def build_parser() -> argparse.ArgumentParser:
    epilog = """
LEVELS:
  1  Orphaned processes (PPID 1, no controlling terminal) are sent SIGTERM.
  2  Processes holding more than --leak-threshold ptmx handles are listed.
  3  When PTY usage reaches --usage-threshold %, one notification lists all
     processes by ptmx count and names the best one to restart.

NOTIFICATIONS:
  macOS notification centre (osascript) or notify-send on Linux, plus
  --messenger if that command is on PATH. Alerts are suppressed for
  --cooldown seconds after the last one unless --force is given.

EXAMPLES:
  pty-monitor --status
  pty-monitor --dry-run
  pty-monitor --force --messenger ''
  pty-monitor --install-agent --interval 300
"""
    p = argparse.ArgumentParser(
        prog="pty-monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Kill orphaned PTY-leaking sessions and warn before PTYs run out.",
        epilog=epilog,
    )

    p.add_argument("--version", action="version", version=f"pty-monitor v{__version__}")

    mg = p.add_mutually_exclusive_group()
    mg.add_argument("--install-agent", action="store_true", help="Install and load a per-user LaunchAgent")
    mg.add_argument("--uninstall-agent", action="store_true", help="Unload and remove the LaunchAgent")
    mg.add_argument("--status", action="store_true", help="Print the PTY table and exit; changes nothing")

    p.add_argument("--dry-run", action="store_true", help="Log what would be killed or notified, do nothing")
    p.add_argument("--force", action="store_true", help="Ignore the alert cooldown for this run")

    p.add_argument(
        "--leak-threshold",
        type=int,
        default=DEF_LEAK_THRESHOLD,
        help=f"ptmx handles above which a process is flagged LEAK!. (default: {DEF_LEAK_THRESHOLD})",
    )
    p.add_argument(
        "--usage-threshold",
        type=int,
        default=DEF_USAGE_PCT,
        help=f"PTY usage percentage that triggers the capacity alert. (default: {DEF_USAGE_PCT})",
    )
    p.add_argument(
        "--cooldown",
        type=int,
        default=DEF_COOLDOWN_SEC,
        help=f"Seconds to suppress repeated alerts. (default: {DEF_COOLDOWN_SEC})",
    )
    p.add_argument(
        "--pattern",
        default=DEF_PATTERN,
        help=f"Regular expression matched against full command lines. (default: {DEF_PATTERN!r})",
    )
    p.add_argument(
        "--exclude-name",
        action="append",
        default=None,
        metavar="NAME",
        help=f"Process name to ignore even if the pattern matches; repeatable. (default: {', '.join(DEF_EXCLUDE_NAMES)})",
    )
    p.add_argument(
        "--device-glob",
        default=DEF_DEVICE_GLOB,
        help=f"Glob whose matches count as PTY slots in use. (default: {DEF_DEVICE_GLOB})",
    )
    p.add_argument(
        "--cpu-sample",
        type=float,
        default=DEF_CPU_SAMPLE_SEC,
        help=f"Seconds over which per-process CPU%% is measured; 0 disables. (default: {DEF_CPU_SAMPLE_SEC})",
    )
    p.add_argument(
        "--messenger",
        default=DEF_MESSENGER,
        help=f"Extra notification command, used only if found on PATH; '' disables. (default: {DEF_MESSENGER})",
    )
    p.add_argument("--log-file", type=Path, default=LOG_FILE, help=f"Audit log. (default: {LOG_FILE})")
    p.add_argument(
        "--state-file",
        type=Path,
        default=LAST_ALERT_FILE,
        help=f"Last-alert timestamp file. (default: {LAST_ALERT_FILE})",
    )
    p.add_argument("--lock-file", type=Path, default=LOCK_FILE, help=f"Run lock file. (default: {LOCK_FILE})")
    p.add_argument(
        "--interval",
        type=int,
        default=DEF_AGENT_INTERVAL_SEC,
        help=f"LaunchAgent start interval in seconds (with --install-agent). (default: {DEF_AGENT_INTERVAL_SEC})",
    )

    return p


def validate_args(args: argparse.Namespace) -> None:
    if not 0 < args.usage_threshold <= 100:
        sys.exit("Error: --usage-threshold must be between 1 and 100")
    if args.leak_threshold < 0:
        sys.exit("Error: --leak-threshold must be non-negative")
    if args.cooldown < 0:
        sys.exit("Error: --cooldown must be non-negative")
    if args.cpu_sample < 0:
        sys.exit("Error: --cpu-sample must be non-negative")
    if args.interval < 60:
        sys.exit("Error: --interval must be at least 60 seconds")
    try:
        re.compile(args.pattern)
    except re.error as e:
        sys.exit(f"Error: invalid --pattern: {e}")


def run_once(monitor: Monitor, dry_run: bool, force: bool) -> int:
    try:
        result = monitor.run(dry_run=dry_run, force=force)
    except SamplerError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        monitor.audit.write(f"Error: {e}")
        return 1

    if result.alerted:
        print(f"[{'DRY-RUN' if dry_run else 'ALERT'}] {result.decision.alert_message}")
    print(f"PTY {result.capacity.used}/{result.capacity.max} ({result.capacity.usage_percent}%), killed: {len(result.killed)}")
    return 0


# ───────────────────────────── entry-point ──────────────────────────────────
def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    validate_args(args)

    if args.install_agent:
        install_agent(args.interval)
        return 0
    if args.uninstall_agent:
        uninstall_agent()
        return 0

    audit = AuditLog(args.log_file)
    exclude = args.exclude_name if args.exclude_name is not None else DEF_EXCLUDE_NAMES
    sampler = Sampler(
        pattern=args.pattern,
        exclude_names=exclude,
        device_glob=args.device_glob,
        cpu_sample=args.cpu_sample,
        audit=None if args.status else audit,
    )
    monitor = Monitor(
        sampler,
        Reporter(default_notifiers(args.messenger or None), audit),
        AlertStateFile(args.state_file),
        policy=Policy(leak_threshold=args.leak_threshold, usage_threshold=args.usage_threshold),
        cooldown=args.cooldown,
    )

    if args.status:
        try:
            print(monitor.status())
        except SamplerError as e:
            print(f"[ERROR] {e}", file=sys.stderr)
            return 1
        return 0

    if args.dry_run:
        return run_once(monitor, dry_run=True, force=args.force)

    lock = RunLock(args.lock_file)
    try:
        if not lock.acquire():
            audit.write(f"Another run in progress (pid {lock.holder}); skipping")
            return 0
    except OSError as e:
        audit.write(f"Run lock unavailable ({e}); continuing without it")

    try:
        return run_once(monitor, dry_run=False, force=args.force)
    finally:
        lock.release()


if __name__ == "__main__":
    sys.exit(main())
