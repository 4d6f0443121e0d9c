"""Custom exceptions for the EBS publishing workflow.

This module defines a hierarchy of exceptions so callers can tell apart
failures that happen before anything was created in the cloud from failures
that leave resources behind for the operator to reconcile.

Exception Hierarchy:
    PublishError (base)
        ├── PreconditionError
        │   ├── MissingConfigurationError
        │   ├── UnsupportedPlatformError
        │   └── UnsupportedOperatingSystemError
        ├── AllocationError
        │   ├── NoFreeSlotError
        │   └── DeviceNotFoundError
        ├── CloudAPIError
        ├── WaitTimeoutError
        └── GuestFilesystemError
            └── CommandFailedError

Usage:
    from ebs_publisher.exceptions import NoFreeSlotError

    if suffix is None:
        raise NoFreeSlotError(["/dev/sd{suffix}", "/dev/xvd{suffix}"], "f", "p")
"""

from __future__ import annotations

from typing import Iterable, Optional


DOCUMENTATION_REFERENCE = "the Configuration section of README.md"


class PublishError(Exception):
    """Base exception for all publishing failures."""



class PreconditionError(PublishError):
    """The workflow cannot start. No cloud resources were touched."""

    def __init__(self, message: str, remediation: str = ""):
        self.remediation = remediation
        if remediation:
            message = f"{message} {remediation}"
        super().__init__(message)


class MissingConfigurationError(PreconditionError):
    """Required configuration keys are not set."""

    def __init__(self, missing_keys: Iterable[str], documentation: str = DOCUMENTATION_REFERENCE):
        self.missing_keys = list(missing_keys)
        self.documentation = documentation
        keys_str = ", ".join(f"'{key}'" for key in self.missing_keys)
        super().__init__(
            f"Missing required configuration: {keys_str}.",
            f"Add them to the settings file, see {documentation}.",
        )


class UnsupportedPlatformError(PreconditionError):
    """The publisher is not running in the expected context."""



class UnsupportedOperatingSystemError(PreconditionError):
    """The appliance operating system cannot be published as an EBS AMI."""

    def __init__(self, os_name: str, os_version: str, supported: dict[str, list[str]]):
        self.os_name = os_name
        self.os_version = os_version
        self.supported = supported
        supported_str = ", ".join(
            f"{name} ({', '.join(versions)})" for name, versions in sorted(supported.items())
        )
        super().__init__(
            f"Operating system {os_name} {os_version} is not supported.",
            f"Supported operating systems: {supported_str}.",
        )


class AllocationError(PublishError):
    """A local attachment slot could not be claimed or resolved.

    Raised after the volume was created; the volume has to be reconciled
    by the operator.
    """



class NoFreeSlotError(AllocationError):
    """Every device suffix in the attachment range is occupied."""

    def __init__(self, templates: Iterable[str], first: str, last: str):
        self.templates = list(templates)
        self.first = first
        self.last = last
        super().__init__(
            f"Found too many attached devices. Cannot attach EBS volume "
            f"(all of {', '.join(self.templates)} for suffixes "
            f"'{first}'..'{last}' are in use)."
        )


class DeviceNotFoundError(AllocationError):
    """The attached volume did not show up under any known device path."""

    def __init__(self, suffix: str, candidates: Iterable[str]):
        self.suffix = suffix
        self.candidates = list(candidates)
        super().__init__(
            f"Device for suffix '{suffix}' not found! "
            f"Checked: {', '.join(self.candidates)}"
        )


class CloudAPIError(PublishError):
    """An EC2 API call failed."""

    def __init__(self, step: str, message: str, code: Optional[str] = None):
        self.step = step
        self.code = code
        prefix = f"{step} failed"
        if code:
            prefix += f" ({code})"
        super().__init__(f"{prefix}: {message}")


class WaitTimeoutError(PublishError):
    """A resource did not reach the expected status in time."""

    def __init__(
        self,
        resource_id: str,
        target_status: str,
        last_status: Optional[str],
        timeout: float,
    ):
        self.resource_id = resource_id
        self.target_status = target_status
        self.last_status = last_status
        self.timeout = timeout
        super().__init__(
            f"Timed out after {timeout:g}s waiting for {resource_id} to become "
            f"'{target_status}' (last status: '{last_status}')"
        )


class GuestFilesystemError(PublishError):
    """Base exception for guest filesystem operations."""



class CommandFailedError(GuestFilesystemError):
    """A host command used by the guest session exited with an error."""

    def __init__(self, command: list[str], message: str, returncode: Optional[int] = None):
        self.command = list(command)
        self.returncode = returncode
        super().__init__(f"Command failed ({' '.join(self.command)}): {message}")
