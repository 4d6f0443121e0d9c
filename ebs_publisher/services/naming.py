"""Published image naming.

Image names encode the appliance identity as a path:

    <name>/<os>/<os version>/<version>.<release>/<arch>

In snapshot mode the version component gets a ``-SNAPSHOT-<n>`` suffix, with
``n`` the smallest number not registered yet. Probing is sequential; two
publishers racing on one account can pick the same suffix.
"""

from __future__ import annotations

from typing import Optional

from ebs_publisher.cloud.ec2 import CloudApi
from ebs_publisher.domain.models import ApplianceIdentity
from ebs_publisher.logging import LoggerFactory


log = LoggerFactory.for_cloud()

SNAPSHOT_SUFFIX = "-SNAPSHOT-{number}"


def _base_path(identity: ApplianceIdentity) -> str:
    return (
        f"{identity.name}/{identity.os_name}/{identity.os_version}/"
        f"{identity.full_version}"
    )


def canonical_name(identity: ApplianceIdentity) -> str:
    return f"{_base_path(identity)}/{identity.arch}"


def snapshot_name(identity: ApplianceIdentity, number: int) -> str:
    suffix = SNAPSHOT_SUFFIX.format(number=number)
    return f"{_base_path(identity)}{suffix}/{identity.arch}"


class ImageNameResolver:
    """Resolves the image name and finds existing registrations."""

    def __init__(self, cloud: CloudApi, owner_id: str):
        self.cloud = cloud
        self.owner_id = str(owner_id).replace("-", "")

    def canonical_name(self, identity: ApplianceIdentity) -> str:
        return canonical_name(identity)

    def find_registered(self, name: str) -> Optional[str]:
        """Return the id of the image registered under ``name``, if any."""
        images = self.cloud.describe_images(self.owner_id)
        if not images:
            return None
        for image in images:
            if image.get("name") == name:
                return image.get("id")
        return None

    def resolve_name(self, identity: ApplianceIdentity, snapshot_mode: bool = False) -> str:
        if not snapshot_mode:
            return canonical_name(identity)

        number = 1
        while self.find_registered(snapshot_name(identity, number)) is not None:
            log.trace(f"Snapshot name '{snapshot_name(identity, number)}' is taken")
            number += 1

        name = snapshot_name(identity, number)
        log.debug(f"Using snapshot name '{name}'")
        return name
