"""Command execution utilities."""

import subprocess

from ebs_publisher.exceptions import CommandFailedError
from ebs_publisher.logging import LoggerFactory


log = LoggerFactory.for_guest()


def run_checked_command(command, input_text=None):
    """Run a command and raise CommandFailedError if it fails."""
    log.debug(f"Running command: {' '.join(command)}")
    result = subprocess.run(
        command,
        input=input_text,
        text=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )
    if result.stdout:
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        stdout = (result.stdout or "").strip()
        message = stderr or stdout or "Command failed"
        log.debug(f"Command failed with code {result.returncode}: {message}")
        raise CommandFailedError(command, message, result.returncode)
    return result.stdout
