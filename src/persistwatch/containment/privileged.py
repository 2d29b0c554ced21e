"""
Privileged command execution for containment actions

Containment needs elevated rights for three things: renaming configs in
root-owned directories, toggling the application firewall, and loading
packet-filter anchors. All of them go through ``PrivilegedExecutor.run()``
with a single shell command string so that multi-step operations can be
combined into one invocation (one credential prompt).

Executors:
    SudoExecutor       ``sudo -n /bin/sh -c <command>`` (non-interactive)
    OsascriptExecutor  macOS admin prompt via ``do shell script``
    DirectExecutor     current privileges (root service, or tests)
"""

import logging
import os
import subprocess
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Union

from ..core.exceptions import PermissionDeniedError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60

_SUDO_DENIED_MARKERS = ("a password is required", "not in the sudoers", "is not allowed to run")
_OSASCRIPT_CANCEL_MARKERS = ("user canceled", "(-128)")


@dataclass
class CommandOutput:
    """Result of one local command."""
    stdout: str = ""
    stderr: str = ""
    returncode: int = -1

    @property
    def output(self) -> str:
        """stdout and stderr combined, as an interactive shell would show them."""
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run_command(
    command: Union[List[str], str],
    timeout: int = DEFAULT_TIMEOUT,
    check: bool = False,
) -> CommandOutput:
    """Run a command on the local machine via subprocess.

    A missing binary or a timeout is reported through the returned
    ``CommandOutput`` rather than raised.
    """
    try:
        result = subprocess.run(
            command,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=check,
        )
        return CommandOutput(
            stdout=result.stdout,
            stderr=result.stderr,
            returncode=result.returncode,
        )
    except subprocess.CalledProcessError as e:
        return CommandOutput(
            stdout=e.stdout or "",
            stderr=e.stderr or "",
            returncode=e.returncode,
        )
    except subprocess.TimeoutExpired:
        return CommandOutput(
            stderr=f"Command timed out after {timeout}s",
            returncode=-1,
        )
    except FileNotFoundError as e:
        return CommandOutput(stderr=str(e), returncode=127)


class PrivilegedExecutor(ABC):
    """Runs a shell command string with elevated privileges."""

    def __init__(self, timeout: int = DEFAULT_TIMEOUT):
        self.timeout = timeout

    @abstractmethod
    def run(self, command: str) -> CommandOutput:
        """Execute ``command`` through a shell.

        Raises:
            PermissionDeniedError: Elevation was declined or is not permitted.
        """


class DirectExecutor(PrivilegedExecutor):
    """Runs with the current process privileges."""

    def run(self, command: str) -> CommandOutput:
        logger.debug("Running command: %s", command)
        return run_command(["/bin/sh", "-c", command], timeout=self.timeout)


class SudoExecutor(PrivilegedExecutor):
    """Runs through non-interactive sudo; requires a cached or NOPASSWD rule."""

    def run(self, command: str) -> CommandOutput:
        logger.debug("Running command via sudo: %s", command)
        result = run_command(["sudo", "-n", "/bin/sh", "-c", command], timeout=self.timeout)
        if result.returncode != 0:
            stderr = result.stderr.lower()
            if any(marker in stderr for marker in _SUDO_DENIED_MARKERS):
                raise PermissionDeniedError(f"sudo refused elevation: {result.stderr.strip()}")
        return result


class OsascriptExecutor(PrivilegedExecutor):
    """Prompts for administrator credentials with AppleScript."""

    def run(self, command: str) -> CommandOutput:
        escaped = command.replace("\\", "\\\\").replace('"', '\\"')
        script = f'do shell script "{escaped}" with administrator privileges'
        logger.debug("Running command via osascript: %s", command)
        result = run_command(["osascript", "-e", script], timeout=self.timeout)
        if result.returncode != 0:
            stderr = result.stderr.lower()
            if any(marker in stderr for marker in _OSASCRIPT_CANCEL_MARKERS):
                raise PermissionDeniedError("Administrator prompt was cancelled")
        return result


_EXECUTORS = {
    "direct": DirectExecutor,
    "sudo": SudoExecutor,
    "osascript": OsascriptExecutor,
}


def default_executor(kind: str = "") -> PrivilegedExecutor:
    """Pick an executor by name, env PERSISTWATCH_PRIVILEGE, or platform.

    root -> direct, macOS -> osascript, anything else -> sudo.
    """
    kind = (kind or os.environ.get("PERSISTWATCH_PRIVILEGE", "")).strip().lower()
    if kind:
        if kind not in _EXECUTORS:
            raise ValueError(f"Unknown privilege executor: {kind}")
        return _EXECUTORS[kind]()
    if hasattr(os, "geteuid") and os.geteuid() == 0:
        return DirectExecutor()
    if sys.platform == "darwin":
        return OsascriptExecutor()
    return SudoExecutor()
