"""External command execution helpers."""

from __future__ import annotations

import shutil
import subprocess
from typing import Iterable, Sequence

from overlay_separator.logging import LoggerFactory
from overlay_separator.storage.exceptions import MissingToolError


log = LoggerFactory.for_system()


def run_command(command, check=True, log_output=True, log_command=True):
    """Run a command capturing text output.

    Raises subprocess.CalledProcessError when ``check`` is set and the command
    exits non-zero.
    """
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(command, check=check, text=True, capture_output=True)
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stdout:
            log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    failed = result.returncode != 0
    level = "DEBUG" if failed else "TRACE"
    if result.stdout and (log_output or failed):
        log.log(level, f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or failed):
        log.log(level, f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def describe_failure(command: Sequence[str], result) -> str:
    """Build a one-line failure message from a completed process."""
    stderr = (result.stderr or "").strip()
    stdout = (result.stdout or "").strip()
    message = stderr or stdout or "Command failed"
    return f"Command failed ({' '.join(command)}): {message}"


def check_required_tools(tools: Iterable[str]) -> None:
    """Raise MissingToolError unless every executable is on PATH."""
    missing = [tool for tool in tools if not shutil.which(tool)]
    if missing:
        raise MissingToolError(missing)
