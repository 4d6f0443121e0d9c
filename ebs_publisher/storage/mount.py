"""Guest filesystem sessions over host block devices.

A session gives the publisher a small, guestfs-like view of one or more
block devices: paths such as ``/in`` or ``/etc/fstab`` are relative to the
session root, a private directory on the host. Disk image files are
attached to loop devices when the session opens.

Functions:
    - customize(): open a session over a list of devices or image files
    - HostGuestSession.mkfs() / set_e2label(): prepare a filesystem
    - HostGuestSession.mount() / umount(): mount within the session root
    - HostGuestSession.cp_a() / mv() / sync(): copy and move files
    - HostGuestSession.sh(): run a shell command chrooted into the root

Security:
    All commands are run with subprocess argument lists. Session paths are
    validated so they cannot escape the session root.

Example:
    >>> with customize(["/tmp/build/disk.raw", "/dev/xvdf"]) as guest:
    ...     guest.mkfs("ext3", guest.list_devices()[-1])
"""

from __future__ import annotations

import os
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Protocol, Sequence

from ebs_publisher.exceptions import CommandFailedError, GuestFilesystemError
from ebs_publisher.logging import LoggerFactory
from ebs_publisher.storage.command_runners import run_checked_command


# Module logger
log = LoggerFactory.for_guest()

INVALID_PATH_CHARS = [";", "&", "|", "$", "`", "\n", "\r"]


class GuestSession(Protocol):
    """Operations the publisher needs from a guest filesystem tool."""

    def list_devices(self) -> list[str]: ...

    def mkmountpoint(self, path: str) -> None: ...

    def rmmountpoint(self, path: str) -> None: ...

    def mkfs(self, filesystem_type: str, device: str) -> None: ...

    def set_e2label(self, device: str, label: str) -> None: ...

    def mount(self, device: str, mountpoint: str) -> None: ...

    def umount(self, mountpoint: str) -> None: ...

    def cp_a(self, source: str, destination: str) -> None: ...

    def sync(self) -> None: ...

    def sh(self, command: str) -> str: ...

    def mv(self, source: str, destination: str) -> None: ...


def _validate_device(device: str) -> None:
    if not isinstance(device, str) or not device.startswith("/dev/"):
        raise ValueError(f"Invalid device path: {device}")
    if any(char in device for char in INVALID_PATH_CHARS + [" "]):
        raise ValueError(f"Device path contains invalid characters: {device}")


class HostGuestSession:
    """Guest session backed by host tools (mount, mkfs, cp, chroot)."""

    def __init__(self, root: Path, devices: Sequence[str]):
        self.root = Path(root)
        self._devices = list(devices)
        self._mounted: list[str] = []

    def resolve(self, path: str) -> Path:
        """Map a session path (e.g. '/out/in') onto the host."""
        if not path.startswith("/"):
            raise ValueError(f"Session paths must be absolute: {path}")
        if any(char in path for char in INVALID_PATH_CHARS):
            raise ValueError(f"Path contains invalid characters: {path}")
        parts = Path(path).parts[1:]
        if ".." in parts:
            raise ValueError(f"Path escapes the session root: {path}")
        return self.root.joinpath(*parts)

    @property
    def mounted(self) -> list[str]:
        return list(self._mounted)

    def list_devices(self) -> list[str]:
        return list(self._devices)

    def mkmountpoint(self, path: str) -> None:
        self.resolve(path).mkdir(parents=True, exist_ok=True)

    def rmmountpoint(self, path: str) -> None:
        try:
            self.resolve(path).rmdir()
        except OSError as error:
            raise GuestFilesystemError(
                f"Failed to remove mount point {path}: {error}"
            ) from error

    def mkfs(self, filesystem_type: str, device: str) -> None:
        _validate_device(device)
        log.debug(f"Creating {filesystem_type} filesystem on {device}")
        run_checked_command([f"mkfs.{filesystem_type}", "-F", device])

    def set_e2label(self, device: str, label: str) -> None:
        _validate_device(device)
        run_checked_command(["e2label", device, label])

    def mount(self, device: str, mountpoint: str) -> None:
        _validate_device(device)
        target = self.resolve(mountpoint)
        log.debug(f"Mounting {device} at {mountpoint}")
        run_checked_command(["mount", device, str(target)])
        self._mounted.append(mountpoint)

    def umount(self, mountpoint: str) -> None:
        target = self.resolve(mountpoint)
        log.debug(f"Unmounting {mountpoint}")
        run_checked_command(["umount", str(target)])
        if mountpoint in self._mounted:
            self._mounted.remove(mountpoint)

    def cp_a(self, source: str, destination: str) -> None:
        # Keep a trailing slash so "/in/" copies the directory itself
        src = str(self.resolve(source))
        if source.endswith("/"):
            src += "/"
        run_checked_command(["cp", "-a", src, str(self.resolve(destination))])

    def sync(self) -> None:
        run_checked_command(["sync"])

    def sh(self, command: str) -> str:
        return run_checked_command(["chroot", str(self.root), "/bin/sh", "-c", command])

    def mv(self, source: str, destination: str) -> None:
        run_checked_command(
            ["mv", str(self.resolve(source)), str(self.resolve(destination))]
        )

    def unmount_all(self) -> None:
        """Unmount everything still mounted, most recent first."""
        for mountpoint in reversed(self._mounted[:]):
            try:
                self.umount(mountpoint)
            except CommandFailedError as error:
                log.error(f"Failed to unmount {mountpoint}: {error}")
                raise


def attach_loop_device(image: str) -> str:
    """Attach a disk image file to the first free loop device."""
    output = run_checked_command(["losetup", "--find", "--show", image])
    device = output.strip()
    log.debug(f"Attached {image} to {device}")
    return device


def detach_loop_device(device: str) -> None:
    _validate_device(device)
    run_checked_command(["losetup", "--detach", device])
    log.debug(f"Detached loop device {device}")


@contextmanager
def customize(
    devices: Sequence[str], root: Optional[Path] = None
) -> Iterator[HostGuestSession]:
    """Open a guest session over the given devices or disk image files.

    Image files are attached to loop devices for the lifetime of the
    session. On exit every remaining mount is released, loop devices are
    detached and the session root is removed.
    """
    loop_devices: list[str] = []
    session: Optional[HostGuestSession] = None
    owns_root = root is None
    session_root = Path(tempfile.mkdtemp(prefix="ebs-publisher-")) if owns_root else root
    try:
        resolved = []
        for device in devices:
            device = str(device)
            if device.startswith("/dev/"):
                resolved.append(device)
            else:
                loop = attach_loop_device(device)
                loop_devices.append(loop)
                resolved.append(loop)

        session = HostGuestSession(session_root, resolved)
        try:
            yield session
        finally:
            session.unmount_all()
    finally:
        for loop in reversed(loop_devices):
            detach_loop_device(loop)
        # Never remove a root that still has something mounted below it
        if owns_root and os.path.isdir(session_root) and not (session and session.mounted):
            shutil.rmtree(session_root, ignore_errors=True)
