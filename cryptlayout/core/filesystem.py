"""
Filesystem creation module.

This module creates filesystems on the partitions (or the unlocked mapper
devices of encrypted partitions) of a computed layout.
"""
import logging
from typing import Dict, List, Mapping, Optional

from cryptlayout.utils.command import CommandRunner
from cryptlayout.core.exceptions import CommandFailed, FilesystemError
from cryptlayout.core.models import ComputedLayout, EncryptedVolume, Filesystem, PartitionSpec

logger = logging.getLogger('cryptlayout')

# Longest label each mkfs accepts
_LABEL_LIMITS = {
    Filesystem.VFAT: 11,
    Filesystem.SWAP: 15,
    Filesystem.EXT4: 16,
    Filesystem.XFS: 12,
    Filesystem.F2FS: 512,
    Filesystem.BTRFS: 255,
}


def mkfs_command(device: str, filesystem: Filesystem, label: str) -> List[str]:
    """
    Build the mkfs command for a filesystem kind.

    Args:
        device: Device path to format
        filesystem: Filesystem to create
        label: Filesystem label (truncated to what the tool accepts)

    Returns:
        Command as list of strings
    """
    label = label[:_LABEL_LIMITS[filesystem]]
    if filesystem is Filesystem.VFAT:
        return ["mkfs.vfat", "-F32", "-n", label.upper(), device]
    if filesystem is Filesystem.SWAP:
        return ["mkswap", "-L", label, device]
    if filesystem is Filesystem.EXT4:
        return ["mkfs.ext4", "-F", "-L", label, device]
    if filesystem is Filesystem.BTRFS:
        return ["mkfs.btrfs", "-f", "-L", label, device]
    if filesystem is Filesystem.XFS:
        return ["mkfs.xfs", "-f", "-L", label, device]
    if filesystem is Filesystem.F2FS:
        return ["mkfs.f2fs", "-f", "-l", label, device]
    raise FilesystemError(f"Unsupported filesystem type: {filesystem}")


def format_partition(device: str, filesystem: Filesystem, label: str, cmd_runner: CommandRunner) -> None:
    """
    Create a single filesystem.

    Raises:
        FilesystemError: If mkfs fails
    """
    try:
        cmd_runner.run(mkfs_command(device, filesystem, label))
    except CommandFailed as e:
        raise FilesystemError(f"Failed to create {filesystem.value} filesystem on {device}: {e}") from e
    logger.info(f"Created {filesystem.value} filesystem on {device}")


def has_filesystem(device: str, cmd_runner: CommandRunner) -> Optional[str]:
    """Return the filesystem type found on a device, or None"""
    result = cmd_runner.run(["blkid", "-s", "TYPE", "-o", "value", device], check=False)
    fs_type = result.stdout.strip()
    return fs_type if result.returncode == 0 and fs_type else None


def get_filesystem_uuid(device: str, cmd_runner: CommandRunner) -> str:
    """
    Read the filesystem UUID of a device.

    Raises:
        FilesystemError: If the device carries no UUID
    """
    try:
        result = cmd_runner.run(["blkid", "-s", "UUID", "-o", "value", device])
    except CommandFailed as e:
        raise FilesystemError(f"Could not read the UUID of {device}: {e}") from e
    fs_uuid = result.stdout.strip()
    if not fs_uuid:
        raise FilesystemError(f"No filesystem UUID on {device}")
    return fs_uuid


def effective_device(part: PartitionSpec, devices: Mapping[int, str],
                     volumes: Optional[Mapping[int, EncryptedVolume]] = None) -> str:
    """The device a partition's filesystem lives on: the mapper path if encrypted"""
    if part.is_encrypted:
        if not volumes or part.number not in volumes:
            raise FilesystemError(f"Encrypted partition {part.name} has no unlocked volume")
        return volumes[part.number].identity.mapped_path
    return devices[part.number]


def format_layout(
    layout: ComputedLayout,
    devices: Mapping[int, str],
    cmd_runner: CommandRunner,
    volumes: Optional[Mapping[int, EncryptedVolume]] = None,
    resume: bool = False,
) -> Dict[int, str]:
    """
    Create the filesystems of every partition of a layout, one after another.

    Args:
        layout: Computed layout
        devices: Partition number to raw device path
        cmd_runner: CommandRunner instance for executing commands
        volumes: Partition number to unlocked encrypted volume
        resume: Keep devices that already carry a filesystem

    Returns:
        Partition number to the device holding its filesystem

    Raises:
        FilesystemError: If there's an error in filesystem creation
    """
    logger.info("Creating filesystems")
    formatted: Dict[int, str] = {}

    for part in layout.partitions:
        device = effective_device(part, devices, volumes)
        if resume:
            existing = has_filesystem(device, cmd_runner)
            if existing:
                logger.info(f"Keeping existing {existing} filesystem on {device}")
                formatted[part.number] = device
                continue
        format_partition(device, part.filesystem, part.name, cmd_runner)
        formatted[part.number] = device

    logger.info("All filesystems created successfully")
    return formatted
