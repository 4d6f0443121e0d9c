"""Local attachment slot allocation for EBS volumes.

EC2 attaches a volume under a device name chosen by the caller
(``/dev/sdf`` .. ``/dev/sdp``), but depending on the kernel the volume shows
up on the host as either ``/dev/sd<x>`` or ``/dev/xvd<x>``. A suffix is free
only when it is absent under every naming convention.

Operations:
    - DeviceAllocator.allocate_free_slot(): first unused suffix in the range
    - DeviceAllocator.resolve_device_path(): host path of an attached suffix
    - DeviceAllocator.attach_device_name(): name passed to the EC2 API

Race conditions are possible between allocation and attach when another
process attaches a device in between; concurrent publish runs on one host
are not supported.
"""

from __future__ import annotations

import os
import string
from typing import Callable, Iterable, Sequence

from ebs_publisher.exceptions import DeviceNotFoundError, NoFreeSlotError
from ebs_publisher.logging import LoggerFactory


log = LoggerFactory.for_device()

# Probed in order; the first template is also the name given to EC2
DEVICE_PATH_TEMPLATES: tuple[str, ...] = ("/dev/sd{suffix}", "/dev/xvd{suffix}")

FIRST_SUFFIX = "f"
LAST_SUFFIX = "p"


def suffix_range(first: str = FIRST_SUFFIX, last: str = LAST_SUFFIX) -> tuple[str, ...]:
    """Ordered device suffixes from first to last, inclusive."""
    letters = string.ascii_lowercase
    return tuple(letters[letters.index(first) : letters.index(last) + 1])


class DeviceAllocator:
    """Finds a free attachment slot and resolves the device the OS created."""

    def __init__(
        self,
        templates: Sequence[str] = DEVICE_PATH_TEMPLATES,
        suffixes: Iterable[str] | None = None,
        exists: Callable[[str], bool] = os.path.exists,
    ):
        self.templates = tuple(templates)
        self.suffixes = tuple(suffixes) if suffixes is not None else suffix_range()
        self._exists = exists

    def candidate_paths(self, suffix: str) -> list[str]:
        return [template.format(suffix=suffix) for template in self.templates]

    def attach_device_name(self, suffix: str) -> str:
        return self.templates[0].format(suffix=suffix)

    def is_free(self, suffix: str) -> bool:
        return not any(self._exists(path) for path in self.candidate_paths(suffix))

    def allocate_free_slot(self) -> str:
        """Return the first suffix not visible under any naming convention.

        Raises:
            NoFreeSlotError: If every suffix in the range is occupied
        """
        for suffix in self.suffixes:
            if self.is_free(suffix):
                log.trace(f"Got free device suffix: '{suffix}'")
                return suffix
            log.trace(f"Device suffix '{suffix}' is in use")

        log.error("No free device suffix left for attaching a volume")
        raise NoFreeSlotError(self.templates, self.suffixes[0], self.suffixes[-1])

    def resolve_device_path(self, suffix: str) -> str:
        """Return the host path under which the attached volume appeared.

        Raises:
            DeviceNotFoundError: If no candidate path exists
        """
        candidates = self.candidate_paths(suffix)
        for path in candidates:
            if self._exists(path):
                log.debug(f"Attached volume is visible as {path}")
                return path
        raise DeviceNotFoundError(suffix, candidates)
