"""EC2 instance metadata service client.

Reads the availability zone and instance id of the host the publisher runs
on. Both are plain blocking GET requests against the link-local metadata
endpoint.

Usage:
    from ebs_publisher.cloud.metadata import InstanceMetadata

    metadata = InstanceMetadata()
    if is_ec2_host():
        print(metadata.availability_zone(), metadata.region())
"""

from __future__ import annotations

import re
import socket
from typing import Callable, Optional

import requests
from requests.exceptions import RequestException

from ebs_publisher.exceptions import CloudAPIError, PreconditionError
from ebs_publisher.logging import LoggerFactory


log = LoggerFactory.for_cloud()

METADATA_HOST = "169.254.169.254"
METADATA_URL = f"http://{METADATA_HOST}/latest/meta-data/"
DEFAULT_TIMEOUT_SECONDS = 5.0

_REGION_PATTERN = re.compile(r"(\w+-\w+-\d+)")


def region_from_zone(zone: str) -> str:
    """Strip the zone letter: 'us-east-1a' -> 'us-east-1'."""
    match = _REGION_PATTERN.search(zone or "")
    if not match:
        raise PreconditionError(
            f"Cannot derive a region from availability zone '{zone}'.",
            "Check the 'availability_zone' setting and the instance metadata service.",
        )
    return match.group(1)


def is_ec2_host(
    resolver: Callable[[str], tuple] = socket.gethostbyaddr,
) -> bool:
    """True when the metadata address reverse-resolves inside EC2."""
    try:
        hostname = resolver(METADATA_HOST)[0]
    except OSError:
        return False
    return ".ec2.internal" in hostname


class InstanceMetadata:
    """Blocking client for the instance metadata endpoint."""

    def __init__(
        self,
        base_url: str = METADATA_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/") + "/"
        self.timeout = timeout
        self.session = session or requests.Session()

    def _get(self, path: str) -> str:
        url = self.base_url + path
        log.trace(f"Reading instance metadata: {url}")
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except RequestException as error:
            raise CloudAPIError(f"Reading instance metadata '{path}'", str(error)) from error
        return response.text.strip()

    def availability_zone(self) -> str:
        return self._get("placement/availability-zone")

    def instance_id(self) -> str:
        return self._get("instance-id")

    def region(self) -> str:
        return region_from_zone(self.availability_zone())
