"""Publish locally built EC2 disk images as EBS-backed AMIs."""

from .__version__ import __version__


__all__ = ["__version__"]
