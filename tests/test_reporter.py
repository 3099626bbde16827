"""Tests for status rendering, notifiers and the audit log."""

import subprocess
from datetime import datetime

import pytest

import pty_monitor
from pty_monitor import (
    AuditLog,
    CommandNotifier,
    OsascriptNotifier,
    Policy,
    Reporter,
    ResourceCapacity,
    default_notifiers,
    esc,
    render_status,
)

from conftest import RecordingNotifier, make_orphan, make_sample


class TestRenderStatus:
    """Tests for the --status table."""

    def test_no_processes(self):
        """Test an empty scan prints the header and a notice."""
        out = render_status(ResourceCapacity(max=999, used=12), [])
        assert out.splitlines() == [
            "PTY: 12/999 used (1%), 987 free",
            "",
            "No matching processes.",
        ]

    def test_fixed_width_rows(self):
        """Test rows use 8/10/6/8 wide columns."""
        out = render_status(ResourceCapacity(max=999, used=100), [make_sample(4242, handle_count=12, tty="ttys003", project="api", cpu_percent=3.5)])
        lines = out.splitlines()
        assert lines[2] == f"{'PID':<8} {'TTY':<10} {'CPU%':<6} {'ptmx':<8} Project"
        assert lines[3] == f"{'---':<8} {'---':<10} {'---':<6} {'---':<8} ---"
        assert lines[4] == f"{'4242':<8} {'ttys003':<10} {'3.5':<6} {'12':<8} api"

    def test_flags(self):
        """Test ZOMBIE and LEAK! flags, alone and combined."""
        samples = [
            make_orphan(1, handle_count=10, project="zombie"),
            make_sample(2, handle_count=151, project="leaky"),
            make_orphan(3, handle_count=300, project="both"),
            make_sample(4, handle_count=150, project="fine"),
        ]
        rows = render_status(ResourceCapacity(max=999, used=100), samples).splitlines()[4:]
        assert rows[0].endswith("zombie ZOMBIE")
        assert rows[1].endswith("leaky LEAK!")
        assert rows[2].endswith("both ZOMBIE LEAK!")
        assert rows[3].endswith("fine")

    def test_restart_recommendation_when_exhausted(self):
        """Test a recommendation names the worst process at high usage."""
        samples = [make_sample(201, handle_count=389, tty="ttys010", project="web"), make_sample(202, handle_count=464, tty="ttys003", project="api")]
        lines = render_status(ResourceCapacity(max=999, used=948), samples).splitlines()
        assert lines[0] == "PTY: 948/999 used (94%), 51 free"
        assert lines[-2] == "Restart recommendation: kill PID 202 (api in ttys003)"
        assert lines[-1] == "  -> frees ~464 PTYs, then 'copilot --resume' in that terminal"

    def test_no_recommendation_below_threshold(self):
        """Test no recommendation is printed below the usage threshold."""
        out = render_status(ResourceCapacity(max=999, used=500), [make_sample(1, handle_count=464)])
        assert "Restart recommendation" not in out

    def test_custom_leak_threshold(self):
        """Test the LEAK! flag follows the policy."""
        out = render_status(ResourceCapacity(max=999, used=1), [make_sample(1, handle_count=20)], Policy(leak_threshold=10))
        assert "LEAK!" in out


class TestReporter:
    """Tests for best-effort notification fan-out."""

    def test_sends_to_every_available_notifier(self, audit):
        """Test all available notifiers receive the message."""
        first, second, absent = RecordingNotifier("a"), RecordingNotifier("b"), RecordingNotifier("c", available=False)
        delivered = Reporter([first, second, absent], audit).notify("PTY Warning", "PTY 948/999")
        assert delivered == 2
        assert first.sent == second.sent == [("PTY Warning", "PTY 948/999")]
        assert absent.sent == []

    def test_failure_does_not_block_other_notifiers(self, audit):
        """Test a failing notifier is logged and the next one still runs."""
        broken = RecordingNotifier("osascript", error=subprocess.TimeoutExpired("osascript", 10))
        working = RecordingNotifier("notify-telegram")
        delivered = Reporter([broken, working], audit).notify("PTY Warning", "body")

        assert delivered == 1
        assert working.sent == [("PTY Warning", "body")]
        log = audit.path.read_text()
        assert "Notifier osascript failed" in log
        assert "PTY Warning: body" in log

    def test_missing_binary_is_tolerated(self, audit):
        """Test an OSError from a notifier is swallowed."""
        broken = RecordingNotifier("gone", error=FileNotFoundError("gone"))
        assert Reporter([broken], audit).notify("t", "m") == 0

    def test_dry_run_only_logs(self, audit):
        """Test dry-run records the intent and sends nothing."""
        notifier = RecordingNotifier()
        Reporter([notifier], audit).notify("PTY Warning", "body", dry_run=True)
        assert notifier.sent == []
        assert "[DRY-RUN] Would notify: PTY Warning - body" in audit.path.read_text()

    def test_multiline_body_is_one_log_entry(self, audit):
        """Test body lines are joined so the log keeps one timestamped line per entry."""
        notifier = RecordingNotifier()
        Reporter([notifier], audit).notify("PTY Warning", "PTY 948/999 (51 free)\napi (ttys003): 464 ptmx")
        Reporter([notifier], audit).notify("PTY Warning", "PTY 948/999 (51 free)\napi (ttys003): 464 ptmx", dry_run=True)

        assert notifier.sent == [("PTY Warning", "PTY 948/999 (51 free)\napi (ttys003): 464 ptmx")]
        lines = audit.path.read_text().splitlines()
        assert len(lines) == 2
        assert lines[0].endswith("] PTY Warning: PTY 948/999 (51 free) | api (ttys003): 464 ptmx")
        assert lines[1].endswith("] [DRY-RUN] Would notify: PTY Warning - PTY 948/999 (51 free) | api (ttys003): 464 ptmx")


class TestNotifiers:
    """Tests for the concrete notifier commands."""

    def test_command_notifier_absent(self, monkeypatch):
        """Test a messenger not on PATH reports unavailable."""
        monkeypatch.setattr(pty_monitor.shutil, "which", lambda name: None)
        assert not CommandNotifier("notify-telegram").available

    def test_command_notifier_argument(self, monkeypatch):
        """Test the messenger gets a single 'title: message' argument."""
        calls = []
        monkeypatch.setattr(pty_monitor.subprocess, "run", lambda cmd, **kw: calls.append((cmd, kw)))
        CommandNotifier("notify-telegram").send("PTY Warning", "PTY 948/999")
        cmd, kwargs = calls[0]
        assert cmd == ["notify-telegram", "PTY Warning: PTY 948/999"]
        assert kwargs["timeout"] == pty_monitor.CMD_TIMEOUT_SEC

    def test_osascript_escapes_quotes(self, monkeypatch):
        """Test quotes in the message cannot break the AppleScript."""
        calls = []
        monkeypatch.setattr(pty_monitor.subprocess, "run", lambda cmd, **kw: calls.append(cmd))
        OsascriptNotifier().send('say "hi"', 'a "b"')
        assert calls[0][:2] == ["osascript", "-e"]
        assert calls[0][2] == 'display notification "a \\"b\\"" with title "say \\"hi\\""'

    def test_esc_backslash(self):
        """Test backslashes are escaped before quotes."""
        assert esc('a\\"') == 'a\\\\\\"'

    def test_default_notifiers_include_messenger(self):
        """Test the messenger is appended unless disabled."""
        assert [n.name for n in default_notifiers("notify-telegram")][-1] == "notify-telegram"
        assert len(default_notifiers(None)) == 1


class TestAuditLog:
    """Tests for the append-only log."""

    def test_timestamped_lines(self, tmp_path):
        """Test each write appends one timestamp-prefixed line."""
        log = AuditLog(tmp_path / "logs" / "pty.log", clock=lambda: datetime(2026, 1, 2, 3, 4, 5))
        log.write("first")
        log.write("second")
        assert (tmp_path / "logs" / "pty.log").read_text().splitlines() == [
            "[2026-01-02 03:04:05] first",
            "[2026-01-02 03:04:05] second",
        ]

    def test_rotation(self, tmp_path, monkeypatch):
        """Test an oversized log is moved to .old before writing."""
        monkeypatch.setattr(pty_monitor, "LOG_ROTATE_BYTES", 10)
        path = tmp_path / "pty.log"
        path.write_text("x" * 50)
        AuditLog(path).write("fresh")
        assert path.with_suffix(".old").read_text() == "x" * 50
        assert path.read_text().endswith("fresh\n")

    def test_unwritable_log_goes_to_stderr(self, tmp_path, capsys):
        """Test a write failure is reported instead of raised."""
        (tmp_path / "pty.log").mkdir()
        AuditLog(tmp_path / "pty.log").write("lost line")
        assert "lost line" in capsys.readouterr().err


@pytest.mark.parametrize("messenger", ["", None])
def test_disabled_messenger(messenger):
    """Test an empty messenger leaves only the OS notifier."""
    assert len(default_notifiers(messenger)) == 1
