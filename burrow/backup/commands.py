"""
Pre-backup command execution.

Commands run through `sh -c` with the process environment plus any
configured variables, in the configured working directory (or the service
path). Output from stdout and stderr is captured together.
"""

import logging
import os
import subprocess
import tempfile
import threading
import time
from typing import Optional

from burrow.models import CommandSpec
from .cancellation import OperationCancelled, wait


POLL_INTERVAL = 0.1  # seconds


class CommandError(Exception):
    """Raised when a command exits nonzero or runs past its timeout."""

    def __init__(self, message: str, output: str = '', exit_code: Optional[int] = None):
        super().__init__(message)
        self.output = output
        self.exit_code = exit_code

    def __str__(self):
        message = super().__str__()
        if self.output:
            return f"{message}\nOutput: {self.output.rstrip()}"
        return message


def run_command(
    spec: CommandSpec,
    default_cwd: str,
    cancel_event: Optional[threading.Event] = None,
    logger: Optional[logging.Logger] = None
) -> str:
    """
    Run a command to completion.

    Args:
        spec: Command, working directory, environment and timeout
        default_cwd: Working directory when spec has none
        cancel_event: Shared cancellation event
        logger: Logger for progress messages

    Returns:
        Combined stdout/stderr output

    Raises:
        CommandError: On nonzero exit, timeout, or failure to launch
        OperationCancelled: If cancellation was requested while running
    """
    logger = logger or logging.getLogger(__name__)
    cwd = spec.working_dir or default_cwd

    env = None
    if spec.environment:
        env = os.environ.copy()
        env.update(spec.environment)

    logger.debug(f"Running command in {cwd}: {spec.command}")

    # Output goes to a temp file so a chatty command cannot fill a pipe and stall
    with tempfile.TemporaryFile() as output_file:
        try:
            process = subprocess.Popen(
                ['sh', '-c', spec.command],
                cwd=cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=output_file,
                stderr=subprocess.STDOUT,
            )
        except OSError as e:
            raise CommandError(f"Failed to start command {spec.command!r}: {e}") from e

        deadline = time.monotonic() + spec.timeout
        cancelled = False
        timed_out = False

        while process.poll() is None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                timed_out = True
                break
            if wait(cancel_event, min(POLL_INTERVAL, remaining)):
                cancelled = True
                break

        if cancelled or timed_out:
            process.kill()
            process.wait()

        output_file.seek(0)
        output = output_file.read().decode(errors='replace')

    if cancelled:
        raise OperationCancelled(f"Cancelled while running command {spec.command!r}")

    if timed_out:
        raise CommandError(
            f"Command {spec.command!r} timed out after {spec.timeout:g}s",
            output=output
        )

    if process.returncode != 0:
        raise CommandError(
            f"Command {spec.command!r} failed with exit code {process.returncode}",
            output=output,
            exit_code=process.returncode
        )

    logger.debug(f"Command output: {output.rstrip()}")
    return output
