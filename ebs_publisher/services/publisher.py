"""Publish an EC2 appliance disk as an EBS-backed AMI.

Workflow:
    1. Check preconditions (configuration, EC2 host, ec2 stage output,
       availability zone, operating system). Nothing is created before
       these pass.
    2. Look up the target image name; an existing registration ends the
       run successfully.
    3. Create a volume sized to the appliance partitions, wait until
       available.
    4. Attach it to this instance on a free device slot, wait until in-use.
    5. Copy the appliance filesystem onto it and fix /etc/fstab.
    6. Detach, wait until available.
    7. Snapshot, wait until completed, delete the volume.
    8. Register the AMI from the snapshot.

A failure aborts the run without rolling anything back. Resources created
so far are logged so the operator can clean them up; re-running is safe
because an already registered name short-circuits the run.
"""

from __future__ import annotations

import time
from types import MappingProxyType
from typing import Callable, Mapping, Optional, Sequence

from ebs_publisher.cloud.ec2 import CloudApi, Ec2Api
from ebs_publisher.cloud.kernels import KERNELS, KernelTable, kernel_for
from ebs_publisher.cloud.metadata import InstanceMetadata, is_ec2_host, region_from_zone
from ebs_publisher.config.settings import PublisherConfig, validate_required
from ebs_publisher.domain.models import (
    ROOT_DEVICE_NAME,
    ApplianceIdentity,
    BlockVolume,
    PreviousStage,
    PublishedImageHandle,
    PublishRun,
    PublishState,
    Snapshot,
    SnapshotStatus,
    VolumeStatus,
    image_block_device_mappings,
)
from ebs_publisher.exceptions import (
    CloudAPIError,
    PreconditionError,
    UnsupportedOperatingSystemError,
    UnsupportedPlatformError,
)
from ebs_publisher.logging import LoggerFactory, operation_context
from ebs_publisher.services.naming import ImageNameResolver
from ebs_publisher.services.polling import StatusPoller
from ebs_publisher.storage.devices import DeviceAllocator
from ebs_publisher.storage.mount import customize
from ebs_publisher.storage.sync import FilesystemSyncer


REQUIRED_PREVIOUS_STAGE = "ec2"

SUPPORTED_OS: Mapping[str, tuple[str, ...]] = MappingProxyType(
    {
        "fedora": ("13", "14", "15"),
        "rhel": ("6",),
    }
)


class EbsPublisher:
    """Runs the EBS publishing workflow for one appliance."""

    def __init__(
        self,
        config: PublisherConfig,
        appliance: ApplianceIdentity,
        previous_stage: PreviousStage,
        *,
        cloud: Optional[CloudApi] = None,
        cloud_factory: Callable[[str, str, str], CloudApi] = Ec2Api.from_credentials,
        metadata: Optional[InstanceMetadata] = None,
        allocator: Optional[DeviceAllocator] = None,
        syncer: Optional[FilesystemSyncer] = None,
        poller: Optional[StatusPoller] = None,
        guest_factory: Callable[[Sequence[str]], object] = customize,
        kernels: KernelTable = KERNELS,
        supported_os: Mapping[str, Sequence[str]] = SUPPORTED_OS,
        platform_check: Callable[[], bool] = is_ec2_host,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.appliance = appliance
        self.previous_stage = previous_stage
        self.cloud = cloud
        self.cloud_factory = cloud_factory
        self.metadata = metadata or InstanceMetadata()
        self.allocator = allocator or DeviceAllocator()
        self.syncer = syncer or FilesystemSyncer()
        self.poller = poller or StatusPoller(
            interval=config.poll_interval_seconds,
            timeout=config.poll_timeout_seconds,
        )
        self.guest_factory = guest_factory
        self.kernels = kernels
        self.supported_os = supported_os
        self.platform_check = platform_check
        self.sleep = sleep
        self.run = PublishRun()
        self.log = LoggerFactory.for_publish()

    @property
    def state(self) -> PublishState:
        return self.run.state

    def _transition(self, state: PublishState) -> None:
        self.log.debug(f"State: {self.run.state.value} -> {state.value}")
        self.run.transition(state)

    # ------------------------------------------------------------------
    # Preconditions
    # ------------------------------------------------------------------

    def check_preconditions(self) -> str:
        """Validate the run context and return the host availability zone."""
        validate_required(self.config.__dict__)

        if not self.platform_check():
            raise UnsupportedPlatformError(
                "You try to run the EBS publisher on an invalid platform.",
                "EBS AMIs can only be published from an EC2 instance.",
            )

        if self.previous_stage.name != REQUIRED_PREVIOUS_STAGE:
            raise PreconditionError(
                "You can only publish as EBS AMIs appliances converted to EC2 format "
                f"(got output of the '{self.previous_stage.name}' stage).",
                f"Run the '{REQUIRED_PREVIOUS_STAGE}' conversion stage first.",
            )

        current_zone = self.metadata.availability_zone()
        self.config = self.config.with_default_zone(current_zone)
        if self.config.availability_zone != current_zone:
            raise PreconditionError(
                f"You selected {self.config.availability_zone} availability zone, "
                f"but your instance is running in {current_zone} zone.",
                f"Change 'availability_zone' in the settings file to {current_zone} "
                f"or use another instance in {self.config.availability_zone} zone "
                f"to create your EBS AMI.",
            )

        versions = self.supported_os.get(self.appliance.os_name)
        if versions is None or self.appliance.os_version not in versions:
            raise UnsupportedOperatingSystemError(
                self.appliance.os_name,
                self.appliance.os_version,
                {name: list(supported) for name, supported in self.supported_os.items()},
            )

        try:
            self.appliance.root_partition
        except KeyError as error:
            raise PreconditionError(
                f"Appliance '{self.appliance.name}' has no root partition.",
                "Define a '/' partition in the appliance definition.",
            ) from error

        return current_zone

    # ------------------------------------------------------------------
    # Workflow
    # ------------------------------------------------------------------

    def publish(self) -> PublishedImageHandle:
        """Publish the appliance, or return the existing registration."""
        self.run = PublishRun()
        with operation_context("publish", appliance=self.appliance.name) as log:
            self.log = log
            try:
                return self._publish()
            except Exception:
                self._transition(PublishState.ABORTED)
                self._report_leftovers()
                raise

    def _publish(self) -> PublishedImageHandle:
        zone = self.check_preconditions()
        region = region_from_zone(zone)

        if self.cloud is None:
            self.cloud = self.cloud_factory(
                region, self.config.access_key, self.config.secret_access_key
            )

        resolver = ImageNameResolver(self.cloud, self.config.owner_id)

        self.log.debug("Checking if appliance is already registered...")
        name = resolver.resolve_name(self.appliance, self.config.snapshot)
        self.run.image_name = name

        image_id = resolver.find_registered(name)
        if image_id:
            self.log.warning(
                f"EBS AMI '{name}' is already registered as '{image_id}' (region: {region})."
            )
            self._transition(PublishState.DONE)
            return PublishedImageHandle(name, image_id, region, already_registered=True)

        volume = self._create_volume()
        suffix, instance_id = self._attach_volume(volume)
        self._sync_volume(suffix)
        self._detach_volume(volume, instance_id)
        snapshot = self._snapshot_volume(volume)
        image_id = self._register_image(name, snapshot, region)

        self._transition(PublishState.DONE)
        self.log.info(f"EBS AMI '{name}' registered: {image_id} (region: {region})")
        return PublishedImageHandle(name, image_id, region)

    def _create_volume(self) -> BlockVolume:
        self._transition(PublishState.VOLUME_CREATING)
        size = self.appliance.total_size
        zone = self.config.availability_zone

        self.log.info(f"Creating new EBS volume ({size} GiB in {zone})...")
        volume_id = self.cloud.create_volume(size, zone)
        volume = BlockVolume(volume_id, size, zone)
        self.run.volume = volume
        self.log.debug(f"Volume {volume_id} created.")

        self.log.debug(f"Waiting for EBS volume {volume_id} to be available...")
        self.poller.wait_for_status(
            volume_id, VolumeStatus.AVAILABLE.value, self.cloud.describe_volume_status
        )
        volume.status = VolumeStatus.AVAILABLE
        self._transition(PublishState.VOLUME_AVAILABLE)
        return volume

    def _attach_volume(self, volume: BlockVolume) -> tuple[str, str]:
        self._transition(PublishState.ATTACHING)
        suffix = self.allocator.allocate_free_slot()
        device = self.allocator.attach_device_name(suffix)

        self.log.trace("Reading current instance id...")
        instance_id = self.metadata.instance_id()
        self.log.trace(f"Got: {instance_id}")

        self.log.info(f"Attaching volume {volume.volume_id} as {device}...")
        self.cloud.attach_volume(volume.volume_id, device, instance_id)
        volume.device = device

        self.log.debug("Waiting for EBS volume to be attached...")
        self.poller.wait_for_status(
            volume.volume_id, VolumeStatus.IN_USE.value, self.cloud.describe_volume_status
        )
        volume.status = VolumeStatus.IN_USE

        # Give the OS time to discover the attached volume
        self.sleep(self.config.settle_delay_seconds)
        self._transition(PublishState.ATTACHED)
        return suffix, instance_id

    def _sync_volume(self, suffix: str) -> None:
        self._transition(PublishState.SYNCING)
        device_path = self.allocator.resolve_device_path(suffix)
        filesystem_type = self.appliance.root_partition.filesystem_type

        self.log.info("Copying data to EBS volume...")
        with self.guest_factory([str(self.previous_stage.disk), device_path]) as guest:
            devices = guest.list_devices()
            self.syncer.publish_filesystem(guest, devices[0], devices[-1], filesystem_type)

    def _detach_volume(self, volume: BlockVolume, instance_id: str) -> None:
        self._transition(PublishState.DETACHING)
        self.log.debug("Detaching EBS volume...")
        self.cloud.detach_volume(volume.volume_id, volume.device, instance_id)

        self.log.debug("Waiting for EBS volume to be available...")
        self.poller.wait_for_status(
            volume.volume_id, VolumeStatus.AVAILABLE.value, self.cloud.describe_volume_status
        )
        volume.status = VolumeStatus.AVAILABLE
        volume.device = None
        self._transition(PublishState.VOLUME_DETACHED)

    def _snapshot_volume(self, volume: BlockVolume) -> Snapshot:
        self._transition(PublishState.SNAPSHOTTING)
        description = self.appliance.description

        self.log.info("Creating snapshot from EBS volume...")
        snapshot_id = self.cloud.create_snapshot(volume.volume_id, description)
        snapshot = Snapshot(snapshot_id, volume.volume_id, description)
        self.run.snapshot = snapshot

        self.log.debug(f"Waiting for snapshot {snapshot_id} to be completed...")
        self.poller.wait_for_status(
            snapshot_id, SnapshotStatus.COMPLETED.value, self.cloud.describe_snapshot_status
        )
        snapshot.status = SnapshotStatus.COMPLETED
        self._transition(PublishState.SNAPSHOT_COMPLETE)

        self.log.debug("Deleting temporary EBS volume...")
        try:
            self.cloud.delete_volume(volume.volume_id)
        except CloudAPIError as error:
            self.log.warning(
                f"Could not delete temporary volume {volume.volume_id}, "
                f"remove it manually: {error}"
            )
        else:
            volume.status = VolumeStatus.DELETING
            self.run.volume = None
        return snapshot

    def _register_image(self, name: str, snapshot: Snapshot, region: str) -> str:
        self._transition(PublishState.REGISTERING)
        arch = self.appliance.base_arch
        kernel_id = kernel_for(region, arch, self.kernels)
        if kernel_id is None:
            self.log.warning(f"No kernel known for {arch} in {region}, registering without one")

        self.log.info("Registering image...")
        image_id = self.cloud.register_image(
            image_block_device_mappings(snapshot.snapshot_id, self.config.delete_on_termination),
            ROOT_DEVICE_NAME,
            arch,
            kernel_id,
            name,
            self.appliance.description,
        )
        self.run.image_id = image_id
        return image_id

    def _report_leftovers(self) -> None:
        if self.run.volume is not None:
            self.log.error(
                f"Volume {self.run.volume.volume_id} was left behind "
                f"(status: {self.run.volume.status.value}); delete it once it is detached."
            )
        if self.run.snapshot is not None and self.run.image_id is None:
            self.log.error(
                f"Snapshot {self.run.snapshot.snapshot_id} was created but no image was registered."
            )
