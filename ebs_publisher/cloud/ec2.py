"""EC2 block storage and image API used by the publisher.

``CloudApi`` is the contract the publishing workflow depends on; ``Ec2Api``
implements it on top of a boto3 EC2 client. Every call is wrapped so that a
botocore failure surfaces as ``CloudAPIError`` naming the step that failed.
"""

from __future__ import annotations

import functools
from typing import Any, Optional, Protocol, Sequence

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ebs_publisher.domain.models import BlockDeviceMapping
from ebs_publisher.exceptions import CloudAPIError
from ebs_publisher.logging import LoggerFactory


log = LoggerFactory.for_cloud()


class CloudApi(Protocol):
    def create_volume(self, size: int, availability_zone: str) -> str: ...

    def describe_volume_status(self, volume_id: str) -> str: ...

    def attach_volume(self, volume_id: str, device: str, instance_id: str) -> None: ...

    def detach_volume(self, volume_id: str, device: str, instance_id: str) -> None: ...

    def delete_volume(self, volume_id: str) -> None: ...

    def create_snapshot(self, volume_id: str, description: str) -> str: ...

    def describe_snapshot_status(self, snapshot_id: str) -> str: ...

    def describe_images(self, owner_id: str) -> list[dict[str, str]]: ...

    def register_image(
        self,
        block_device_mappings: Sequence[BlockDeviceMapping],
        root_device_name: str,
        architecture: str,
        kernel_id: Optional[str],
        name: str,
        description: str,
    ) -> str: ...


def boto3_log(step: str):
    """
    Decorator to run an EC2 client call and translate botocore failures.

    Args:
        step: Human readable name of the workflow step, used in the error
    """

    def decorator(method):
        @functools.wraps(method)
        def _run_with_logging(self, *args, **kwargs):
            log.trace(f"{step}: {method.__name__} args={args} kwargs={kwargs}")
            try:
                return method(self, *args, **kwargs)
            except ClientError as error:
                details = error.response.get("Error", {})
                code = details.get("Code")
                message = details.get("Message") or str(error)
                log.error(f"{step} failed: [{code}] {message}")
                raise CloudAPIError(step, message, code) from error
            except BotoCoreError as error:
                log.error(f"{step} failed: {error}")
                raise CloudAPIError(step, str(error)) from error

        return _run_with_logging

    return decorator


def ec2_client(region: str, access_key_id: str, secret_access_key: str):
    """Create a boto3 EC2 client for the given region and credentials."""
    session = boto3.session.Session(
        aws_access_key_id=access_key_id,
        aws_secret_access_key=secret_access_key,
    )
    return session.client("ec2", region_name=region)


class Ec2Api:
    """CloudApi backed by a boto3 EC2 client."""

    def __init__(self, client: Any):
        self.client = client

    @classmethod
    def from_credentials(
        cls, region: str, access_key_id: str, secret_access_key: str
    ) -> Ec2Api:
        return cls(ec2_client(region, access_key_id, secret_access_key))

    @boto3_log("Creating volume")
    def create_volume(self, size: int, availability_zone: str) -> str:
        response = self.client.create_volume(Size=int(size), AvailabilityZone=availability_zone)
        return response["VolumeId"]

    @boto3_log("Describing volume")
    def describe_volume_status(self, volume_id: str) -> str:
        response = self.client.describe_volumes(VolumeIds=[volume_id])
        return response["Volumes"][0]["State"]

    @boto3_log("Attaching volume")
    def attach_volume(self, volume_id: str, device: str, instance_id: str) -> None:
        self.client.attach_volume(Device=device, VolumeId=volume_id, InstanceId=instance_id)

    @boto3_log("Detaching volume")
    def detach_volume(self, volume_id: str, device: str, instance_id: str) -> None:
        self.client.detach_volume(Device=device, VolumeId=volume_id, InstanceId=instance_id)

    @boto3_log("Deleting volume")
    def delete_volume(self, volume_id: str) -> None:
        self.client.delete_volume(VolumeId=volume_id)

    @boto3_log("Creating snapshot")
    def create_snapshot(self, volume_id: str, description: str) -> str:
        response = self.client.create_snapshot(VolumeId=volume_id, Description=description)
        return response["SnapshotId"]

    @boto3_log("Describing snapshot")
    def describe_snapshot_status(self, snapshot_id: str) -> str:
        response = self.client.describe_snapshots(SnapshotIds=[snapshot_id])
        return response["Snapshots"][0]["State"]

    @boto3_log("Listing images")
    def describe_images(self, owner_id: str) -> list[dict[str, str]]:
        response = self.client.describe_images(Owners=[owner_id])
        images = (response or {}).get("Images") or []
        return [{"name": image.get("Name"), "id": image["ImageId"]} for image in images]

    @boto3_log("Registering image")
    def register_image(
        self,
        block_device_mappings: Sequence[BlockDeviceMapping],
        root_device_name: str,
        architecture: str,
        kernel_id: Optional[str],
        name: str,
        description: str,
    ) -> str:
        params: dict[str, Any] = {
            "Name": name,
            "Description": description,
            "Architecture": architecture,
            "RootDeviceName": root_device_name,
            "BlockDeviceMappings": [mapping.to_api() for mapping in block_device_mappings],
        }
        if kernel_id:
            params["KernelId"] = kernel_id
        response = self.client.register_image(**params)
        return response["ImageId"]
