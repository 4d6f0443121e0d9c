"""Kernel images (AKIs) used when registering EBS-backed AMIs.

Static per-region, per-architecture lookup data. The mapping is read-only;
pass a different one to the publisher to override it.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping, Optional


KernelTable = Mapping[str, Mapping[str, str]]

KERNELS: KernelTable = MappingProxyType(
    {
        "eu-west-1": MappingProxyType({"i386": "aki-4deec439", "x86_64": "aki-4feec43b"}),
        "ap-southeast-1": MappingProxyType({"i386": "aki-13d5aa41", "x86_64": "aki-11d5aa43"}),
        "us-west-1": MappingProxyType({"i386": "aki-99a0f1dc", "x86_64": "aki-9ba0f1de"}),
        "us-east-1": MappingProxyType({"i386": "aki-407d9529", "x86_64": "aki-427d952b"}),
    }
)


def kernel_for(region: str, arch: str, table: KernelTable = KERNELS) -> Optional[str]:
    """Return the AKI for a region and base architecture, or None if unknown."""
    return table.get(region, {}).get(arch)
