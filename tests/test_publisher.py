"""Tests for services/publisher.py - the EBS publishing workflow.

This test suite covers:
- Precondition checks (platform, previous stage, zone, OS, configuration)
- The full create/attach/sync/detach/snapshot/register sequence
- Idempotent re-runs against an already registered name
- Snapshot-mode naming
- Failure handling and state tracking
"""

from contextlib import contextmanager
from dataclasses import replace

import pytest

from ebs_publisher.cloud.kernels import KERNELS
from ebs_publisher.domain.models import PreviousStage, PublishState
from ebs_publisher.exceptions import (
    CloudAPIError,
    CommandFailedError,
    DeviceNotFoundError,
    MissingConfigurationError,
    NoFreeSlotError,
    PreconditionError,
    UnsupportedOperatingSystemError,
    UnsupportedPlatformError,
    WaitTimeoutError,
)
from ebs_publisher.services.polling import StatusPoller
from ebs_publisher.services.publisher import EbsPublisher
from ebs_publisher.storage.devices import DeviceAllocator


EXPECTED_NAME = "myapp/fedora/14/1.0.1/x86_64"


@pytest.fixture
def publisher(config, appliance, previous_stage, publisher_kwargs):
    return EbsPublisher(config, appliance, previous_stage, **publisher_kwargs)


class TestPreconditions:
    def test_wrong_platform(self, config, appliance, previous_stage, publisher_kwargs, fake_cloud):
        publisher_kwargs["platform_check"] = lambda: False
        publisher = EbsPublisher(config, appliance, previous_stage, **publisher_kwargs)

        with pytest.raises(UnsupportedPlatformError, match="EC2 instance"):
            publisher.publish()

        assert fake_cloud.calls == []
        assert publisher.state is PublishState.ABORTED

    def test_wrong_previous_stage(self, config, appliance, tmp_path, publisher_kwargs, fake_cloud):
        stage = PreviousStage("vmware", tmp_path / "disk.vmdk")
        publisher = EbsPublisher(config, appliance, stage, **publisher_kwargs)

        with pytest.raises(PreconditionError, match="'ec2' conversion stage"):
            publisher.publish()

        assert fake_cloud.calls == []

    def test_zone_mismatch(self, config, appliance, previous_stage, publisher_kwargs, fake_cloud):
        publisher = EbsPublisher(
            replace(config, availability_zone="us-east-1b"),
            appliance,
            previous_stage,
            **publisher_kwargs,
        )

        with pytest.raises(PreconditionError) as exc_info:
            publisher.publish()

        message = str(exc_info.value)
        assert "us-east-1b" in message
        assert "us-east-1a" in message
        assert "availability_zone" in exc_info.value.remediation
        assert fake_cloud.calls == []

    def test_zone_defaults_to_host_zone(
        self, config, appliance, previous_stage, publisher_kwargs, fake_cloud
    ):
        publisher = EbsPublisher(
            replace(config, availability_zone=None), appliance, previous_stage, **publisher_kwargs
        )

        publisher.publish()

        assert fake_cloud.calls_to("create_volume") == [("create_volume", 10, "us-east-1a")]

    def test_unparseable_host_zone(
        self, config, appliance, previous_stage, publisher_kwargs, fake_cloud, metadata
    ):
        metadata.availability_zone.return_value = "<html>maintenance</html>"
        publisher = EbsPublisher(
            replace(config, availability_zone=None), appliance, previous_stage, **publisher_kwargs
        )

        with pytest.raises(PreconditionError, match="Cannot derive a region"):
            publisher.publish()

        assert fake_cloud.calls == []
        assert publisher.state is PublishState.ABORTED

    def test_missing_configuration(
        self, config, appliance, previous_stage, publisher_kwargs, fake_cloud
    ):
        publisher = EbsPublisher(
            replace(config, secret_access_key=""), appliance, previous_stage, **publisher_kwargs
        )

        with pytest.raises(MissingConfigurationError) as exc_info:
            publisher.publish()

        assert exc_info.value.missing_keys == ["secret_access_key"]
        assert fake_cloud.calls == []

    def test_unsupported_operating_system(
        self, config, appliance, previous_stage, publisher_kwargs, fake_cloud
    ):
        publisher = EbsPublisher(
            config, replace(appliance, os_version="12"), previous_stage, **publisher_kwargs
        )

        with pytest.raises(UnsupportedOperatingSystemError, match="fedora 12"):
            publisher.publish()

        assert fake_cloud.calls == []

    def test_appliance_without_root_partition(
        self, config, appliance, previous_stage, publisher_kwargs, fake_cloud
    ):
        publisher = EbsPublisher(
            config,
            replace(appliance, partitions=appliance.partitions[1:]),
            previous_stage,
            **publisher_kwargs,
        )

        with pytest.raises(PreconditionError, match="no root partition"):
            publisher.publish()

        assert fake_cloud.calls == []


class TestPublish:
    """End-to-end scenario against the in-memory cloud."""

    def test_fresh_publish(self, publisher, fake_cloud, metadata):
        handle = publisher.publish()

        assert handle.name == EXPECTED_NAME
        assert handle.region == "us-east-1"
        assert handle.image_id.startswith("ami-")
        assert handle.already_registered is False
        assert publisher.state is PublishState.DONE

        assert fake_cloud.calls_to("create_volume") == [("create_volume", 10, "us-east-1a")]
        volume_id = "vol-00000001"
        assert fake_cloud.calls_to("attach_volume") == [
            ("attach_volume", volume_id, "/dev/sdf", "i-0123456789abcdef0")
        ]
        assert fake_cloud.calls_to("detach_volume") == [
            ("detach_volume", volume_id, "/dev/sdf", "i-0123456789abcdef0")
        ]
        assert len(fake_cloud.calls_to("create_snapshot")) == 1
        assert fake_cloud.calls_to("delete_volume") == [("delete_volume", volume_id)]

    def test_mutation_order(self, publisher, fake_cloud):
        publisher.publish()

        assert [call[0] for call in fake_cloud.mutation_calls] == [
            "create_volume",
            "attach_volume",
            "detach_volume",
            "create_snapshot",
            "delete_volume",
            "register_image",
        ]

    def test_register_image_call(self, publisher, fake_cloud):
        publisher.publish()

        (call,) = fake_cloud.calls_to("register_image")
        _, mappings, root_device, arch, kernel_id, name, description = call
        snapshot_id = "snap-00000002"

        assert root_device == "/dev/sda1"
        assert arch == "x86_64"
        assert kernel_id == KERNELS["us-east-1"]["x86_64"]
        assert name == EXPECTED_NAME
        assert description == "My application | Appliance version 1.0.1 | x86_64 architecture"

        root, *ephemeral = mappings
        assert root.device_name == "/dev/sda1"
        assert root.snapshot_id == snapshot_id
        assert root.delete_on_termination is True
        assert [(m.device_name, m.virtual_name) for m in ephemeral] == [
            ("/dev/sdb", "ephemeral0"),
            ("/dev/sdc", "ephemeral1"),
            ("/dev/sdd", "ephemeral2"),
            ("/dev/sde", "ephemeral3"),
        ]

    def test_snapshot_description(self, publisher, fake_cloud):
        publisher.publish()

        (call,) = fake_cloud.calls_to("create_snapshot")
        assert call[2] == "My application | Appliance version 1.0.1 | x86_64 architecture"

    def test_delete_on_termination_from_config(
        self, config, appliance, previous_stage, publisher_kwargs, fake_cloud
    ):
        publisher = EbsPublisher(
            replace(config, delete_on_termination=False),
            appliance,
            previous_stage,
            **publisher_kwargs,
        )

        publisher.publish()

        root = fake_cloud.calls_to("register_image")[0][1][0]
        assert root.delete_on_termination is False

    def test_i686_appliance_registers_i386(
        self, config, appliance, previous_stage, publisher_kwargs, fake_cloud
    ):
        publisher = EbsPublisher(
            config, replace(appliance, arch="i686"), previous_stage, **publisher_kwargs
        )

        handle = publisher.publish()

        _, _, _, arch, kernel_id, name, _ = fake_cloud.calls_to("register_image")[0]
        assert arch == "i386"
        assert kernel_id == KERNELS["us-east-1"]["i386"]
        assert name == handle.name == "myapp/fedora/14/1.0.1/i686"

    def test_unknown_region_registers_without_kernel(
        self, config, appliance, previous_stage, publisher_kwargs, fake_cloud
    ):
        publisher = EbsPublisher(
            config, appliance, previous_stage, kernels={}, **publisher_kwargs
        )

        publisher.publish()

        assert fake_cloud.calls_to("register_image")[0][4] is None

    def test_sync_runs_on_stage_disk_and_attached_device(
        self, publisher, previous_stage, guest_sessions
    ):
        publisher.publish()

        (session,) = guest_sessions
        assert session.devices == [str(previous_stage.disk), "/dev/xvdf"]
        assert ("mkfs", "ext3", "/dev/xvdf") in session.calls
        assert ("mount", str(previous_stage.disk), "/in") in session.calls
        assert session.mounted == {}

    def test_waits_for_each_status(self, config, appliance, previous_stage, publisher_kwargs):
        waits = []

        class RecordingPoller(StatusPoller):
            def wait_for_status(self, resource_id, target_status, fetch_status):
                waits.append((resource_id.split("-")[0], target_status))
                super().wait_for_status(resource_id, target_status, fetch_status)

        publisher_kwargs["poller"] = RecordingPoller(interval=0, sleep=lambda s: None)
        EbsPublisher(config, appliance, previous_stage, **publisher_kwargs).publish()

        assert waits == [
            ("vol", "available"),
            ("vol", "in-use"),
            ("vol", "available"),
            ("snap", "completed"),
        ]

    def test_settle_delay_after_attach(self, config, appliance, previous_stage, publisher_kwargs):
        sleeps = []
        publisher_kwargs["sleep"] = sleeps.append

        EbsPublisher(
            replace(config, settle_delay_seconds=10), appliance, previous_stage, **publisher_kwargs
        ).publish()

        assert sleeps == [10]

    def test_state_history(self, publisher):
        publisher.publish()

        assert publisher.run.history == [
            PublishState.IDLE,
            PublishState.VOLUME_CREATING,
            PublishState.VOLUME_AVAILABLE,
            PublishState.ATTACHING,
            PublishState.ATTACHED,
            PublishState.SYNCING,
            PublishState.DETACHING,
            PublishState.VOLUME_DETACHED,
            PublishState.SNAPSHOTTING,
            PublishState.SNAPSHOT_COMPLETE,
            PublishState.REGISTERING,
        ]
        assert publisher.state is PublishState.DONE


class TestIdempotency:
    def test_existing_registration_short_circuits(self, publisher, fake_cloud):
        fake_cloud.images.append({"name": EXPECTED_NAME, "id": "ami-existing"})

        handle = publisher.publish()

        assert handle.image_id == "ami-existing"
        assert handle.name == EXPECTED_NAME
        assert handle.already_registered is True
        assert fake_cloud.mutation_calls == []
        assert publisher.state is PublishState.DONE

    def test_second_publish_performs_no_mutation(self, publisher, fake_cloud):
        first = publisher.publish()
        mutations_after_first = len(fake_cloud.mutation_calls)

        second = publisher.publish()

        assert second.image_id == first.image_id
        assert second.name == first.name
        assert len(fake_cloud.mutation_calls) == mutations_after_first

    def test_snapshot_mode_publishes_next_suffix(
        self, config, appliance, previous_stage, publisher_kwargs, fake_cloud
    ):
        fake_cloud.images.extend(
            [
                {"name": EXPECTED_NAME, "id": "ami-release"},
                {"name": "myapp/fedora/14/1.0.1-SNAPSHOT-1/x86_64", "id": "ami-snap1"},
            ]
        )
        publisher = EbsPublisher(
            replace(config, snapshot=True), appliance, previous_stage, **publisher_kwargs
        )

        handle = publisher.publish()

        assert handle.name == "myapp/fedora/14/1.0.1-SNAPSHOT-2/x86_64"
        assert handle.already_registered is False
        assert len(fake_cloud.calls_to("register_image")) == 1


class TestFailures:
    def test_no_free_slot_aborts_after_volume_creation(
        self, config, appliance, previous_stage, publisher_kwargs, fake_cloud
    ):
        publisher_kwargs["allocator"] = DeviceAllocator(exists=lambda path: True)
        publisher = EbsPublisher(config, appliance, previous_stage, **publisher_kwargs)

        with pytest.raises(NoFreeSlotError):
            publisher.publish()

        assert [call[0] for call in fake_cloud.mutation_calls] == ["create_volume"]
        assert publisher.state is PublishState.ABORTED
        assert publisher.run.volume is not None

    def test_device_not_found_after_attach(
        self, config, appliance, previous_stage, publisher_kwargs, fake_cloud
    ):
        publisher_kwargs["allocator"] = DeviceAllocator(exists=lambda path: False)
        publisher = EbsPublisher(config, appliance, previous_stage, **publisher_kwargs)

        with pytest.raises(DeviceNotFoundError):
            publisher.publish()

        assert fake_cloud.calls_to("detach_volume") == []
        assert fake_cloud.calls_to("register_image") == []

    def test_cloud_error_propagates_without_rollback(self, publisher, fake_cloud, mocker):
        mocker.patch.object(
            fake_cloud,
            "create_snapshot",
            side_effect=CloudAPIError("Creating snapshot", "limit exceeded", "SnapshotLimitExceeded"),
        )

        with pytest.raises(CloudAPIError, match="Creating snapshot failed"):
            publisher.publish()

        assert fake_cloud.calls_to("delete_volume") == []
        assert publisher.state is PublishState.ABORTED

    def test_volume_delete_failure_is_not_fatal(self, publisher, fake_cloud, mocker):
        mocker.patch.object(
            fake_cloud,
            "delete_volume",
            side_effect=CloudAPIError("Deleting volume", "in use", "VolumeInUse"),
        )

        handle = publisher.publish()

        assert handle.name == EXPECTED_NAME
        assert len(fake_cloud.calls_to("register_image")) == 1
        assert publisher.state is PublishState.DONE

    def test_wait_timeout_aborts(
        self, config, appliance, previous_stage, publisher_kwargs, fake_cloud, mocker
    ):
        mocker.patch.object(fake_cloud, "describe_volume_status", return_value="creating")
        clock = iter(range(0, 10_000, 5))
        publisher_kwargs["poller"] = StatusPoller(
            interval=5, timeout=20, sleep=lambda s: None, clock=lambda: next(clock)
        )
        publisher = EbsPublisher(config, appliance, previous_stage, **publisher_kwargs)

        with pytest.raises(WaitTimeoutError):
            publisher.publish()

        assert fake_cloud.calls_to("attach_volume") == []
        assert publisher.state is PublishState.ABORTED

    def test_sync_failure_leaves_volume_attached(
        self, config, appliance, previous_stage, publisher_kwargs, fake_cloud, guest_session
    ):
        guest_session.fail_on = "cp_a"

        @contextmanager
        def failing_factory(devices):
            yield guest_session

        publisher_kwargs["guest_factory"] = failing_factory
        publisher = EbsPublisher(config, appliance, previous_stage, **publisher_kwargs)

        with pytest.raises(CommandFailedError, match="injected failure"):
            publisher.publish()

        assert guest_session.mounted == {}
        assert fake_cloud.calls_to("detach_volume") == []
        assert publisher.state is PublishState.ABORTED
