"""Best-effort lookup and termination of the process bound to a TCP port.

Uses only generic, allow-listed system tools (``lsof``/``ss``/``ps`` on
Unix, ``netstat``/``tasklist``/``taskkill`` on Windows). Every query
returns ``None`` on failure instead of raising; callers re-verify after
any termination.

The safety classifier is pure and fail-closed: a process is only ever
terminated when its name is on the allow list and nowhere on the deny
list.
"""

from __future__ import annotations

import csv
import logging
import os
import re
import signal
import subprocess
import sys
from collections.abc import Callable, Sequence
from pathlib import PurePath

from feedback_collector.engine.models import Occupant

logger = logging.getLogger(__name__)

ALLOWED_TOOLS = frozenset({"lsof", "ss", "ps", "netstat", "tasklist", "taskkill"})
COMMAND_TIMEOUT_SECONDS = 5.0

# Core OS, service-manager and session-host processes. Never terminated.
DENY_NAMES = frozenset({
    "kernel",
    "kernel_task",
    "init",
    "systemd",
    "launchd",
    "sshd",
    "login",
    "loginwindow",
    "dbus-daemon",
    "windowserver",
    "system",
    "system idle process",
    "explorer.exe",
    "winlogon.exe",
    "csrss.exe",
    "smss.exe",
    "services.exe",
    "wininit.exe",
    "lsass.exe",
    "svchost.exe",
    # Shells and session hosts.
    "sh",
    "bash",
    "dash",
    "zsh",
    "fish",
    "ksh",
    "csh",
    "tcsh",
    "tmux",
    "screen",
    "sudo",
    "su",
    "cmd.exe",
    "powershell.exe",
    "pwsh",
    "pwsh.exe",
    "conhost.exe",
    "windowsterminal.exe",
})
DENY_PREFIXES = ("systemd-", "kworker", "tmux:")

# Our own runtime and package managers, plus the Node runtime used by
# earlier releases of this tool that may still hold the port. Matched
# exactly, after dropping a version and ``.exe`` suffix.
ALLOW_NAMES = frozenset({
    "python",
    "pypy",
    "uv",
    "uvx",
    "pip",
    "pipx",
    "feedback-collector",
    "feedback_collector",
    "feedback-collector-mcp",
    "node",
    "npm",
    "npx",
    "tsx",
})

_RUNTIME_NAME_RE = re.compile(r"^(?P<base>[a-z_-]+?)(?:\d+(?:\.\d+)*)?(?:\.exe)?$")
_UNKNOWN_NAMES = frozenset({"", "unknown"})

CommandRunner = Callable[[Sequence[str]], str]


def run_command(args: Sequence[str]) -> str:
    """Run an allow-listed inspection tool and return its stdout."""
    tool = args[0] if args else ""
    if tool not in ALLOWED_TOOLS:
        raise ValueError(f"Refusing to run non allow-listed tool: {tool!r}")
    return subprocess.check_output(
        list(args),
        text=True,
        stderr=subprocess.DEVNULL,
        timeout=COMMAND_TIMEOUT_SECONDS,
    )


def _normalize_name(name: str) -> str:
    # Login shells show up as "-bash".
    return PurePath(name.strip().lower()).name.lstrip("-")


def _is_allowed_runtime(name: str) -> bool:
    if name in ALLOW_NAMES:
        return True
    match = _RUNTIME_NAME_RE.match(name)
    return bool(match) and match.group("base") in ALLOW_NAMES


def is_safe_to_terminate(occupant: Occupant, *, current_pid: int | None = None) -> bool:
    """Classify an occupant. Unknown processes are never safe.

    The process name decides. The first token of the command line is
    only consulted when the name itself could not be determined.
    """
    if occupant.pid <= 1:
        return False
    if occupant.pid == (current_pid if current_pid is not None else os.getpid()):
        return False

    name = _normalize_name(occupant.name)
    command = occupant.command.strip().lower()
    first_token = _normalize_name(command.split()[0]) if command else ""

    for candidate in (name, first_token):
        if not candidate:
            continue
        if candidate in DENY_NAMES or candidate.startswith(DENY_PREFIXES):
            return False

    if name not in _UNKNOWN_NAMES:
        return _is_allowed_runtime(name)
    return first_token not in _UNKNOWN_NAMES and _is_allowed_runtime(first_token)


class ProcessInspector:
    """Cross-platform port-owner lookup and process termination."""

    def __init__(
        self,
        runner: CommandRunner | None = None,
        platform: str | None = None,
    ) -> None:
        self._run = runner or run_command
        self._platform = platform or sys.platform

    @property
    def is_windows(self) -> bool:
        return self._platform.startswith("win")

    def find_occupant(self, port: int) -> Occupant | None:
        """Return the process listening on *port*, or None."""
        try:
            if self.is_windows:
                return self._find_occupant_windows(port)
            return self._find_occupant_unix(port)
        except Exception as exc:
            logger.debug(
                "Port %d occupant lookup failed: %s: %s", port, type(exc).__name__, exc,
            )
            return None

    def is_safe_to_terminate(self, occupant: Occupant) -> bool:
        return is_safe_to_terminate(occupant)

    def terminate(self, pid: int, force: bool = False) -> bool:
        """Send a graceful (or forceful) stop to *pid*.

        Returns whether the signal was delivered, not whether the process
        exited; callers must re-check with find_occupant().
        """
        try:
            if self.is_windows:
                args = ["taskkill", "/F", "/PID", str(pid)] if force else [
                    "taskkill", "/PID", str(pid),
                ]
                self._run(args)
            else:
                os.kill(pid, signal.SIGKILL if force else signal.SIGTERM)
        except ProcessLookupError:
            logger.info("Process %d already exited", pid)
            return True
        except Exception as exc:
            logger.error(
                "Failed to terminate process %d (force=%s): %s: %s",
                pid, force, type(exc).__name__, exc,
            )
            return False
        logger.info("Sent %s to process %d", "kill" if force else "terminate", pid)
        return True

    # ── Unix ──

    def _find_occupant_unix(self, port: int) -> Occupant | None:
        pid = self._listening_pid_lsof(port)
        if pid is None:
            pid = self._listening_pid_ss(port)
        if pid is None:
            return None
        return self._describe_unix(pid)

    def _listening_pid_lsof(self, port: int) -> int | None:
        try:
            out = self._run(["lsof", "-nP", f"-iTCP:{port}", "-sTCP:LISTEN", "-t"])
        except FileNotFoundError:
            logger.debug("lsof not installed; falling back to ss")
            return None
        except subprocess.CalledProcessError:
            # lsof exits 1 when nothing matches.
            return None
        for line in out.splitlines():
            line = line.strip()
            if line.isdigit():
                return int(line)
        return None

    def _listening_pid_ss(self, port: int) -> int | None:
        try:
            out = self._run(["ss", "-H", "-ltnp", f"sport = :{port}"])
        except (FileNotFoundError, subprocess.CalledProcessError):
            return None
        match = re.search(r"pid=(\d+)", out)
        return int(match.group(1)) if match else None

    def _describe_unix(self, pid: int) -> Occupant:
        name = "Unknown"
        command = "Unknown"
        try:
            comm = self._run(["ps", "-p", str(pid), "-o", "comm="]).strip()
            if comm:
                name = PurePath(comm).name
            command = self._run(["ps", "-p", str(pid), "-o", "args="]).strip() or command
        except Exception as exc:
            logger.debug("Failed to describe PID %d: %s", pid, exc)
        return Occupant(pid=pid, name=name, command=command)

    # ── Windows ──

    def _find_occupant_windows(self, port: int) -> Occupant | None:
        out = self._run(["netstat", "-ano", "-p", "TCP"])
        for line in out.splitlines():
            parts = line.split()
            if len(parts) < 5 or parts[3].upper() != "LISTENING":
                continue
            if not parts[1].endswith(f":{port}"):
                continue
            try:
                pid = int(parts[4])
            except ValueError:
                continue
            return self._describe_windows(pid)
        return None

    def _describe_windows(self, pid: int) -> Occupant:
        try:
            out = self._run(["tasklist", "/FI", f"PID eq {pid}", "/FO", "CSV", "/NH"])
            for row in csv.reader(out.splitlines()):
                if row and row[0] and not row[0].startswith("INFO:"):
                    return Occupant(pid=pid, name=row[0], command=row[0])
        except Exception as exc:
            logger.debug("Failed to describe PID %d: %s", pid, exc)
        return Occupant(pid=pid, name="Unknown", command="Unknown")
