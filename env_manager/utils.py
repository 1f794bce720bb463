# /*
# Copyright 2026 The Grove Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# */

"""Utility functions for tool invocation, kubectl, and prerequisite checks."""

from __future__ import annotations

import subprocess
from collections.abc import Iterable

import docker
import sh

from env_manager import logger
from env_manager.constants import TOOL_TIMEOUT
from env_manager.errors import ToolUnavailableError


def mask_args(args: Iterable[str], secrets: Iterable[str] = ()) -> str:
    """Render an argument list for logging with secrets replaced.

    Args:
        args: Command arguments.
        secrets: Values that must not appear in logs.

    Returns:
        Space-joined command line with every secret masked.
    """
    line = " ".join(str(arg) for arg in args)
    for secret in secrets:
        if secret:
            line = line.replace(secret, "****")
    return line


def error_output(err: sh.ErrorReturnCode | sh.TimeoutException) -> str:
    """Decode the captured stdout and stderr of a failed sh command.

    A timed out command has no captured output; an empty string is returned.
    """
    parts = [getattr(err, "stdout", b""), getattr(err, "stderr", b"")]
    return "\n".join(part.decode(errors="replace").strip() for part in parts if part).strip()


def run_tool(
    tool: str,
    *args: str,
    timeout: float | None = TOOL_TIMEOUT,
    stdin: str | None = None,
    secrets: Iterable[str] = (),
) -> str:
    """Run a CLI tool via sh and return its stdout.

    Args:
        tool: Executable name (e.g. ``kind``).
        *args: Arguments passed to the tool.
        timeout: Seconds before the process is killed, or None for no limit.
        stdin: Text fed to the process on stdin.
        secrets: Values masked in the debug log line.

    Returns:
        Captured stdout.

    Raises:
        ToolUnavailableError: If the tool is not on PATH.
        sh.ErrorReturnCode: If the tool exits non-zero.
        sh.TimeoutException: If *timeout* elapses.
    """
    logger.debug("$ %s %s", tool, mask_args(args, secrets))
    try:
        command = sh.Command(tool)
    except sh.CommandNotFound as err:
        raise ToolUnavailableError(f"Required command '{tool}' not found. Please install it first.") from err
    return str(command(*args, _timeout=timeout, _in=stdin, _tty_out=False))


def require_command(cmd: str) -> None:
    """Check if a command exists on the system PATH.

    Args:
        cmd: Name of the CLI command to check.

    Raises:
        ToolUnavailableError: If the command is not found.
    """
    try:
        sh.which(cmd)
    except (sh.ErrorReturnCode, sh.CommandNotFound) as err:
        raise ToolUnavailableError(f"Required command '{cmd}' not found. Please install it first.") from err


def check_container_runtime() -> None:
    """Verify the Docker daemon backing kind is reachable.

    Raises:
        ToolUnavailableError: If the daemon cannot be contacted.
    """
    try:
        client = docker.from_env()
    except docker.errors.DockerException as err:
        raise ToolUnavailableError(f"Failed to connect to Docker: {err}") from err
    try:
        client.ping()
    except docker.errors.DockerException as err:
        raise ToolUnavailableError(f"Docker daemon is not responding: {err}") from err
    finally:
        client.close()


def run_kubectl(
    args: list[str],
    context: str | None = None,
    timeout: float = TOOL_TIMEOUT,
    secrets: Iterable[str] = (),
) -> tuple[int | None, str, str]:
    """Run a kubectl command via subprocess and return (returncode, stdout, stderr).

    Uses subprocess instead of sh because exec output must keep stdout and
    stderr apart and a non-zero exit is a result here, not an exception.

    Args:
        args: kubectl arguments (e.g. ``["get", "pods", "-n", "default"]``).
        context: kubectl context to pin, or None for the current one.
        timeout: Maximum seconds to wait for the command to complete.
        secrets: Values masked in the debug log line.

    Returns:
        Tuple of (returncode, stdout, stderr); returncode is None when kubectl
        could not be run or did not finish within *timeout*.
    """
    cmd = ["kubectl"]
    if context:
        cmd += ["--context", context]
    cmd += args
    logger.debug("$ %s", mask_args(cmd, secrets))
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return None, "", f"kubectl timed out after {timeout}s"
    except (subprocess.SubprocessError, OSError) as exc:
        return None, "", str(exc)
