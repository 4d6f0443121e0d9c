"""
Pytest configuration and shared fixtures for ebs-publisher tests.

This module provides in-memory stand-ins for the EC2 API, the instance
metadata service and the guest filesystem session, so the publishing
workflow can be exercised without AWS or root privileges.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import Mock

import pytest

from ebs_publisher.config.settings import PublisherConfig
from ebs_publisher.domain.models import ApplianceIdentity, Partition, PreviousStage
from ebs_publisher.exceptions import CommandFailedError
from ebs_publisher.services.polling import StatusPoller
from ebs_publisher.storage.devices import DeviceAllocator


MUTATING_CALLS = {
    "create_volume",
    "attach_volume",
    "detach_volume",
    "delete_volume",
    "create_snapshot",
    "register_image",
}


# ==============================================================================
# Cloud Fakes
# ==============================================================================


class FakeCloud:
    """In-memory CloudApi recording every call.

    Volumes become available right after creation, in-use after attach and
    available again after detach. Snapshots complete immediately. Attaching
    makes the device visible in ``host_devices`` under the xvd name.
    """

    def __init__(self, host_devices: Optional[set] = None, images: Optional[list] = None):
        self.host_devices = host_devices if host_devices is not None else set()
        self.images: List[Dict[str, str]] = list(images or [])
        self.calls: List[tuple] = []
        self.volumes: Dict[str, str] = {}
        self.snapshots: Dict[str, str] = {}
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter:08x}"

    @property
    def mutation_calls(self) -> List[tuple]:
        return [call for call in self.calls if call[0] in MUTATING_CALLS]

    def calls_to(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]

    def create_volume(self, size, availability_zone):
        self.calls.append(("create_volume", size, availability_zone))
        volume_id = self._next_id("vol")
        self.volumes[volume_id] = "available"
        return volume_id

    def describe_volume_status(self, volume_id):
        self.calls.append(("describe_volume_status", volume_id))
        return self.volumes[volume_id]

    def attach_volume(self, volume_id, device, instance_id):
        self.calls.append(("attach_volume", volume_id, device, instance_id))
        self.volumes[volume_id] = "in-use"
        self.host_devices.add(device.replace("/dev/sd", "/dev/xvd"))

    def detach_volume(self, volume_id, device, instance_id):
        self.calls.append(("detach_volume", volume_id, device, instance_id))
        self.volumes[volume_id] = "available"
        self.host_devices.discard(device.replace("/dev/sd", "/dev/xvd"))

    def delete_volume(self, volume_id):
        self.calls.append(("delete_volume", volume_id))
        del self.volumes[volume_id]

    def create_snapshot(self, volume_id, description):
        self.calls.append(("create_snapshot", volume_id, description))
        snapshot_id = self._next_id("snap")
        self.snapshots[snapshot_id] = "completed"
        return snapshot_id

    def describe_snapshot_status(self, snapshot_id):
        self.calls.append(("describe_snapshot_status", snapshot_id))
        return self.snapshots[snapshot_id]

    def describe_images(self, owner_id):
        self.calls.append(("describe_images", owner_id))
        return list(self.images)

    def register_image(
        self, block_device_mappings, root_device_name, architecture, kernel_id, name, description
    ):
        self.calls.append(
            (
                "register_image",
                list(block_device_mappings),
                root_device_name,
                architecture,
                kernel_id,
                name,
                description,
            )
        )
        image_id = self._next_id("ami")
        self.images.append({"name": name, "id": image_id})
        return image_id


class FakeGuestSession:
    """GuestSession recording operations and tracking mounts.

    Set ``fail_on`` to the name of an operation to make it raise
    CommandFailedError.
    """

    def __init__(self, devices, fail_on: Optional[str] = None):
        self.devices = list(devices)
        self.fail_on = fail_on
        self.calls: List[tuple] = []
        self.mountpoints: set = set()
        self.mounted: Dict[str, str] = {}

    def _record(self, name, *args):
        self.calls.append((name, *args))
        if self.fail_on == name:
            raise CommandFailedError([name, *map(str, args)], "injected failure", 1)

    def list_devices(self):
        return list(self.devices)

    def mkmountpoint(self, path):
        self._record("mkmountpoint", path)
        self.mountpoints.add(path)

    def rmmountpoint(self, path):
        self._record("rmmountpoint", path)
        self.mountpoints.discard(path)

    def mkfs(self, filesystem_type, device):
        self._record("mkfs", filesystem_type, device)

    def set_e2label(self, device, label):
        self._record("set_e2label", device, label)

    def mount(self, device, mountpoint):
        self._record("mount", device, mountpoint)
        self.mounted[mountpoint] = device

    def umount(self, mountpoint):
        self._record("umount", mountpoint)
        self.mounted.pop(mountpoint, None)

    def cp_a(self, source, destination):
        self._record("cp_a", source, destination)

    def sync(self):
        self._record("sync")

    def sh(self, command):
        self._record("sh", command)
        return ""

    def mv(self, source, destination):
        self._record("mv", source, destination)


# ==============================================================================
# Appliance and Configuration Fixtures
# ==============================================================================


@pytest.fixture
def appliance() -> ApplianceIdentity:
    """Fixture providing the 'myapp' appliance (10 GiB across two partitions)."""
    return ApplianceIdentity(
        name="myapp",
        summary="My application",
        os_name="fedora",
        os_version="14",
        version="1.0",
        release="1",
        arch="x86_64",
        partitions=(Partition("/", 8, "ext3"), Partition("/home", 2, "ext3")),
    )


@pytest.fixture
def appliance_dict() -> Dict[str, Any]:
    """Fixture providing a parsed appliance definition file."""
    return {
        "name": "myapp",
        "summary": "My application",
        "version": "1.0",
        "release": "1",
        "os": {"name": "fedora", "version": "14"},
        "hardware": {
            "arch": "x86_64",
            "partitions": {"/": {"size": 8, "type": "ext3"}, "/home": {"size": 2}},
        },
    }


@pytest.fixture
def config() -> PublisherConfig:
    return PublisherConfig(
        access_key="AKIAEXAMPLE",
        secret_access_key="secret",
        account_number="1234-5678-9012",
        availability_zone="us-east-1a",
        poll_interval_seconds=0,
        settle_delay_seconds=0,
    )


@pytest.fixture
def previous_stage(tmp_path) -> PreviousStage:
    disk = tmp_path / "myapp-sda.raw"
    disk.write_bytes(b"")
    return PreviousStage("ec2", disk)


# ==============================================================================
# Collaborator Fixtures
# ==============================================================================


@pytest.fixture
def host_devices() -> set:
    """Device paths currently visible on the simulated host."""
    return {"/dev/sda1", "/dev/xvda1"}


@pytest.fixture
def fake_cloud(host_devices) -> FakeCloud:
    return FakeCloud(host_devices=host_devices)


@pytest.fixture
def allocator(host_devices) -> DeviceAllocator:
    return DeviceAllocator(exists=lambda path: path in host_devices)


@pytest.fixture
def metadata() -> Mock:
    mock_metadata = Mock()
    mock_metadata.availability_zone.return_value = "us-east-1a"
    mock_metadata.instance_id.return_value = "i-0123456789abcdef0"
    return mock_metadata


@pytest.fixture
def poller() -> StatusPoller:
    return StatusPoller(interval=0, timeout=None, sleep=lambda seconds: None)


@pytest.fixture
def guest_sessions() -> List[FakeGuestSession]:
    """Every guest session opened by the guest_factory fixture."""
    return []


@pytest.fixture
def guest_factory(guest_sessions):
    @contextmanager
    def factory(devices):
        session = FakeGuestSession(devices)
        guest_sessions.append(session)
        yield session

    return factory


@pytest.fixture
def publisher_kwargs(fake_cloud, metadata, allocator, poller, guest_factory) -> Dict[str, Any]:
    """Keyword arguments wiring EbsPublisher to the fakes."""
    return {
        "cloud": fake_cloud,
        "metadata": metadata,
        "allocator": allocator,
        "poller": poller,
        "guest_factory": guest_factory,
        "platform_check": lambda: True,
        "sleep": lambda seconds: None,
    }


# ==============================================================================
# Subprocess Mock Fixtures
# ==============================================================================


@pytest.fixture
def mock_subprocess_run(mocker):
    """
    Fixture providing a mock for subprocess.run.

    Returns:
        Mock object for subprocess.run
    """
    return mocker.patch("subprocess.run")


@pytest.fixture
def capture_subprocess_calls(mocker) -> List[List]:
    """
    Fixture that captures all subprocess.run calls for inspection.

    Returns:
        List that will contain all subprocess command arguments.
    """
    calls = []

    def track_call(cmd, **kwargs):
        calls.append(cmd)
        result = Mock()
        result.returncode = 0
        result.stdout = ""
        result.stderr = ""
        return result

    mocker.patch("subprocess.run", side_effect=track_call)
    return calls


@pytest.fixture
def session_root(tmp_path) -> Path:
    root = tmp_path / "session"
    root.mkdir()
    return root


@pytest.fixture
def guest_session() -> FakeGuestSession:
    """A recording guest session over a loop device and an attached volume."""
    return FakeGuestSession(["/dev/loop0", "/dev/xvdf"])
