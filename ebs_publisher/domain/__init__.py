"""Domain models for EBS image publishing."""

from __future__ import annotations

from .models import (
    ApplianceIdentity,
    BlockDeviceMapping,
    BlockVolume,
    Partition,
    PreviousStage,
    PublishedImageHandle,
    PublishRun,
    PublishState,
    Snapshot,
    SnapshotStatus,
    VolumeStatus,
)


__all__ = [
    "ApplianceIdentity",
    "BlockDeviceMapping",
    "BlockVolume",
    "Partition",
    "PreviousStage",
    "PublishedImageHandle",
    "PublishRun",
    "PublishState",
    "Snapshot",
    "SnapshotStatus",
    "VolumeStatus",
]
