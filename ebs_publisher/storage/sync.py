"""Copy an EC2 appliance filesystem onto a freshly attached EBS volume.

Layout inside the guest session while copying:

    /in        source (the ec2 stage disk)
    /out       staging directory
    /out/in    destination volume

``cp -a /in/ /out`` therefore lands the source tree on the root of the
destination volume.

Every mount point created here is unmounted and removed on the way out,
also when a step fails half way.
"""

from __future__ import annotations

from contextlib import ExitStack

from ebs_publisher.logging import LoggerFactory
from ebs_publisher.storage.mount import GuestSession


log = LoggerFactory.for_guest()

# CRC32 of "/", the label the ec2 stage gives the root filesystem
ROOT_FILESYSTEM_LABEL = "79d3d2d4"

SOURCE_MOUNTPOINT = "/in"
STAGING_MOUNTPOINT = "/out"
DESTINATION_MOUNTPOINT = "/out/in"

# fstab entries for local disks that an EBS-booted instance does not have
FSTAB_EXCLUDED_PATTERNS = ("/mnt", "/data", "swap")


class FilesystemSyncer:
    """Creates a filesystem on the destination and copies the source onto it."""

    def __init__(self, label: str = ROOT_FILESYSTEM_LABEL):
        self.label = label

    def sync(
        self,
        session: GuestSession,
        source_device: str,
        destination_device: str,
        filesystem_type: str,
    ) -> None:
        log.info("Synchronizing filesystems...")

        with ExitStack() as stack:
            for mountpoint in (SOURCE_MOUNTPOINT, STAGING_MOUNTPOINT, DESTINATION_MOUNTPOINT):
                session.mkmountpoint(mountpoint)
                stack.callback(session.rmmountpoint, mountpoint)

            session.mkfs(filesystem_type, destination_device)
            session.set_e2label(destination_device, self.label)

            session.mount(destination_device, DESTINATION_MOUNTPOINT)
            stack.callback(session.umount, DESTINATION_MOUNTPOINT)

            session.mount(source_device, SOURCE_MOUNTPOINT)
            stack.callback(session.umount, SOURCE_MOUNTPOINT)

            log.debug("Copying files...")
            session.cp_a(f"{SOURCE_MOUNTPOINT}/", STAGING_MOUNTPOINT)
            log.debug("Files copied.")

            session.sync()

        log.info("Filesystems synchronized.")

    def adjust_fstab(self, session: GuestSession) -> None:
        """Drop ephemeral, scratch and swap entries from /etc/fstab."""
        log.debug("Adjusting /etc/fstab...")
        patterns = " ".join(f"-e '{pattern}'" for pattern in FSTAB_EXCLUDED_PATTERNS)
        # grep exits 1 when every line was filtered out, 2 on a real error
        session.sh(f"grep -v {patterns} /etc/fstab > /etc/fstab.new || [ $? -eq 1 ]")
        session.mv("/etc/fstab.new", "/etc/fstab")

    def publish_filesystem(
        self,
        session: GuestSession,
        source_device: str,
        destination_device: str,
        filesystem_type: str,
    ) -> None:
        """Copy the source, then remount the destination at / and fix fstab."""
        self.sync(session, source_device, destination_device, filesystem_type)

        session.mount(destination_device, "/")
        try:
            self.adjust_fstab(session)
        finally:
            session.umount("/")
