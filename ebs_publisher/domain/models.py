"""Domain model for EBS image publishing.

Type-safe objects for the appliance being published and the cloud
resources a publish run creates, replacing the raw response dicts returned
by the EC2 API.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


# ==============================================================================
# Appliance Domain
# ==============================================================================


@dataclass(frozen=True)
class Partition:
    """A partition of the appliance disk."""

    mount_point: str  # e.g., "/"
    size: float  # GiB
    filesystem_type: str = "ext3"

    @classmethod
    def from_dict(cls, mount_point: str, data: dict[str, Any]) -> Partition:
        return cls(
            mount_point=mount_point,
            size=float(data["size"]),
            filesystem_type=data.get("type", "ext3"),
        )


@dataclass(frozen=True)
class ApplianceIdentity:
    """The appliance whose disk is being published.

    Carries everything the published image name and description are built
    from, plus the partition layout that sizes the volume.
    """

    name: str
    os_name: str
    os_version: str
    version: str
    release: str
    arch: str  # e.g., "x86_64", "i686"
    summary: str = ""
    partitions: tuple[Partition, ...] = ()

    @property
    def base_arch(self) -> str:
        """Architecture as EC2 names it (i386 or x86_64)."""
        return "x86_64" if self.arch == "x86_64" else "i386"

    @property
    def full_version(self) -> str:
        return f"{self.version}.{self.release}"

    @property
    def total_size(self) -> int:
        """Sum of all partition sizes, rounded up to whole GiB."""
        return math.ceil(sum(partition.size for partition in self.partitions))

    @property
    def root_partition(self) -> Partition:
        for partition in self.partitions:
            if partition.mount_point == "/":
                return partition
        raise KeyError("Appliance has no root ('/') partition")

    @property
    def description(self) -> str:
        return (
            f"{self.summary} | Appliance version {self.full_version} | "
            f"{self.arch} architecture"
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApplianceIdentity:
        """Build an identity from a parsed appliance definition.

        Expected keys: name, summary, version, release, os.name, os.version,
        hardware.arch and hardware.partitions (mount point -> {size, type}).

        Raises:
            KeyError: If a required key is missing
        """
        os_data = data["os"]
        hardware = data.get("hardware", {})
        partitions = tuple(
            Partition.from_dict(mount_point, partition)
            for mount_point, partition in hardware.get("partitions", {}).items()
        )
        return cls(
            name=data["name"],
            summary=data.get("summary", data["name"]),
            version=str(data.get("version", 1)),
            release=str(data.get("release", 0)),
            os_name=os_data["name"],
            os_version=str(os_data["version"]),
            arch=hardware.get("arch", "x86_64"),
            partitions=partitions,
        )


@dataclass(frozen=True)
class PreviousStage:
    """Output of the conversion stage that ran before publishing."""

    name: str  # e.g., "ec2"
    disk: Path


# ==============================================================================
# Cloud Resource Domain
# ==============================================================================


class VolumeStatus(str, Enum):
    CREATING = "creating"
    AVAILABLE = "available"
    IN_USE = "in-use"
    DELETING = "deleting"


class SnapshotStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class BlockVolume:
    """An EBS volume created for a single publish run."""

    volume_id: str
    size: int
    availability_zone: str
    status: VolumeStatus = VolumeStatus.CREATING
    device: str | None = None  # attach device name, e.g., "/dev/sdf"


@dataclass
class Snapshot:
    snapshot_id: str
    volume_id: str
    description: str
    status: SnapshotStatus = SnapshotStatus.PENDING


@dataclass(frozen=True)
class BlockDeviceMapping:
    """One entry of a registered image's block device mapping."""

    device_name: str
    snapshot_id: str | None = None
    virtual_name: str | None = None
    delete_on_termination: bool = True

    def to_api(self) -> dict[str, Any]:
        """Shape expected by EC2 RegisterImage."""
        if self.virtual_name is not None:
            return {"DeviceName": self.device_name, "VirtualName": self.virtual_name}
        return {
            "DeviceName": self.device_name,
            "Ebs": {
                "SnapshotId": self.snapshot_id,
                "DeleteOnTermination": self.delete_on_termination,
            },
        }


ROOT_DEVICE_NAME = "/dev/sda1"

EPHEMERAL_DEVICE_MAPPINGS: tuple[BlockDeviceMapping, ...] = (
    BlockDeviceMapping("/dev/sdb", virtual_name="ephemeral0"),
    BlockDeviceMapping("/dev/sdc", virtual_name="ephemeral1"),
    BlockDeviceMapping("/dev/sdd", virtual_name="ephemeral2"),
    BlockDeviceMapping("/dev/sde", virtual_name="ephemeral3"),
)


def image_block_device_mappings(
    snapshot_id: str, delete_on_termination: bool = True
) -> list[BlockDeviceMapping]:
    """Root mapping pointing at the snapshot followed by the ephemeral disks."""
    root = BlockDeviceMapping(
        ROOT_DEVICE_NAME,
        snapshot_id=snapshot_id,
        delete_on_termination=delete_on_termination,
    )
    return [root, *EPHEMERAL_DEVICE_MAPPINGS]


@dataclass(frozen=True)
class PublishedImageHandle:
    """Result of a publish run."""

    name: str
    image_id: str
    region: str
    already_registered: bool = False


# ==============================================================================
# Workflow Domain
# ==============================================================================


class PublishState(Enum):
    """States of a publish run."""

    IDLE = "idle"
    VOLUME_CREATING = "volume_creating"
    VOLUME_AVAILABLE = "volume_available"
    ATTACHING = "attaching"
    ATTACHED = "attached"
    SYNCING = "syncing"
    DETACHING = "detaching"
    VOLUME_DETACHED = "volume_detached"
    SNAPSHOTTING = "snapshotting"
    SNAPSHOT_COMPLETE = "snapshot_complete"
    REGISTERING = "registering"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class PublishRun:
    """Resources touched by a publish run, kept for operator reconciliation."""

    state: PublishState = PublishState.IDLE
    image_name: str | None = None
    volume: BlockVolume | None = None
    snapshot: Snapshot | None = None
    image_id: str | None = None
    history: list[PublishState] = field(default_factory=list)

    def transition(self, state: PublishState) -> None:
        self.history.append(self.state)
        self.state = state
