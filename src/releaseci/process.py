# process.py
from __future__ import annotations

import os
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .errors import CommandNotFoundError, ConfigurationError

TOOL_HINTS = {
    "git": "Install Git or fix PATH.",
    "make": "Install make (build-essential / Xcode command line tools).",
    "cargo": "Install Rust via rustup (https://rustup.rs) or fix PATH.",
    "rustup": "Install rustup (https://rustup.rs) or fix PATH.",
    "nfpm": "Install nfpm (https://nfpm.goreleaser.com) or fix PATH.",
    "typos": "Install typos (cargo install typos-cli).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
    "pip": "Install pip or fix PATH.",
    "gzip": "Install gzip or fix PATH.",
}

# exit code a POSIX shell uses for "command not found"
SHELL_NOT_FOUND = 127
TIMEOUT_EXIT = 124
CANCELLED_EXIT = 130

_POLL_SECONDS = 0.1
_KILL_GRACE_SECONDS = 5.0


@dataclass
class ProcessResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    timed_out: bool = False
    cancelled: bool = False
    not_found: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def which(tool: str) -> Optional[str]:
    return shutil.which(tool)


def check_tools(tools: Iterable[str], *, job: str | None = None) -> None:
    """Raise ConfigurationError for the first required tool missing from PATH."""
    for tool in tools:
        if which(tool) is None:
            raise ConfigurationError(
                f"{tool} is not available",
                job=job,
                tool=tool,
                hint=TOOL_HINTS.get(tool, f"Install {tool} or fix PATH."),
            )


def _build_env(env: Optional[Mapping[str, str]], inherit_env: bool) -> Dict[str, str]:
    if inherit_env:
        base = os.environ.copy()
    else:
        # nothing leaks from the host except a PATH to find binaries with
        base = {"PATH": os.environ.get("PATH", os.defpath)}
    base.update({k: str(v) for k, v in (env or {}).items()})
    return base


class ProcessRunner:
    """
    Runs one external command and captures its output.

    A nonzero exit is returned, never raised; callers inspect exit_code.
    A command that does not exist is a setup error and is signalled
    separately (CommandNotFoundError for argv calls, not_found=True for
    shell calls).
    """

    def __init__(self, *, poll_interval: float = _POLL_SECONDS):
        self.poll_interval = poll_interval

    def run(
        self,
        command: str,
        args: Sequence[str] = (),
        env: Optional[Mapping[str, str]] = None,
        workdir: str | Path | None = None,
        *,
        shell: bool = False,
        inherit_env: bool = True,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> ProcessResult:
        cwd = Path(workdir).resolve() if workdir is not None else None
        if cwd is not None and not cwd.is_dir():
            raise ConfigurationError(f"working directory not found: {cwd}", command=command)

        if shell:
            argv: str | List[str] = " ".join([command, *args]) if args else command
        else:
            argv = [command, *args]

        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv,
                shell=shell,
                cwd=str(cwd) if cwd is not None else None,
                env=_build_env(env, inherit_env),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                start_new_session=True,
            )
        except FileNotFoundError:
            raise CommandNotFoundError(command, hint=TOOL_HINTS.get(command)) from None

        deadline = started + timeout if timeout else None
        timed_out = cancelled = False
        stdout = stderr = ""

        while True:
            wait = self.poll_interval
            if deadline is not None:
                wait = max(0.0, min(wait, deadline - time.monotonic()))
            try:
                stdout, stderr = proc.communicate(timeout=wait)
                break
            except subprocess.TimeoutExpired:
                pass

            if cancel is not None and cancel.is_set():
                cancelled = True
            elif deadline is not None and time.monotonic() >= deadline:
                timed_out = True
            else:
                continue

            stdout, stderr = _terminate(proc)
            break

        exit_code = proc.returncode
        if timed_out:
            exit_code = TIMEOUT_EXIT
            stderr = f"{stderr}\ntimed out after {timeout}s".lstrip("\n")
        elif cancelled:
            exit_code = CANCELLED_EXIT

        return ProcessResult(
            exit_code=exit_code,
            stdout=stdout or "",
            stderr=stderr or "",
            duration=time.monotonic() - started,
            timed_out=timed_out,
            cancelled=cancelled,
            not_found=shell and exit_code == SHELL_NOT_FOUND,
        )


def _terminate(proc: subprocess.Popen) -> tuple[str, str]:
    """Stop a process and everything it spawned, then drain its pipes."""
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        proc.terminate()
    try:
        return proc.communicate(timeout=_KILL_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            proc.kill()
        return proc.communicate()
