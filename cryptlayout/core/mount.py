"""
Filesystem mounting module.

This module decides mount options, builds the ordered mount plan of a layout
and mounts it into the target root.
"""
import logging
from typing import List, Mapping, Optional, Sequence

from cryptlayout.config import create_directory, target_path
from cryptlayout.utils.command import CommandRunner
from cryptlayout.utils.format import TermColors, colorize
from cryptlayout.core.exceptions import CommandFailed, MountError, ValidationError
from cryptlayout.core.filesystem import get_filesystem_uuid
from cryptlayout.core.models import (
    ComputedLayout,
    EncryptedVolume,
    Filesystem,
    MountedEntity,
    PartitionSpec,
    SubvolumeSpec,
)
from cryptlayout.core.steps import StepJournal

logger = logging.getLogger('cryptlayout')

# Options every mount of a filesystem gets
FILESYSTEM_OPTIONS = {
    Filesystem.VFAT: "umask=0077",
    Filesystem.SWAP: "defaults",
    Filesystem.EXT4: "defaults,noatime",
    Filesystem.BTRFS: "defaults,noatime,compress=zstd",
    Filesystem.XFS: "defaults,noatime",
    Filesystem.F2FS: "defaults,noatime",
}

# Security options per mount point following ANSSI recommendations
SECURITY_OPTIONS = {
    "/boot": "nodev,nosuid",
    "/boot/efi": "nodev,nosuid,noexec",
    "/home": "nodev,nosuid",
    "/opt": "nodev,nosuid",
    "/root": "nodev,nosuid",
    "/srv": "nodev,nosuid",
    "/tmp": "nodev,nosuid,noexec",
    "/usr": "nodev",
    "/var": "nodev,nosuid",
    "/var/log": "nodev,nosuid,noexec",
    "/var/tmp": "nodev,nosuid,noexec",
    "/.snapshots": "nodev,nosuid,noexec",
}

# Further restrictions applied in hardened mode
HARDENED_OPTIONS = {
    "/boot": "noauto",
    "/var": "noexec",  # may require special handling for package management
}


def _merge_options(*parts: str) -> str:
    merged: List[str] = []
    for part in parts:
        for opt in part.split(","):
            if opt and opt not in merged:
                merged.append(opt)
    return ",".join(merged)


def determine_mount_options(mount_point: str, filesystem: Filesystem, hardened: bool = False) -> str:
    """
    Determine the mount options of a mount point.

    Args:
        mount_point: Absolute mount point
        filesystem: Filesystem mounted there
        hardened: Whether to apply the hardened restrictions

    Returns:
        Comma separated mount options
    """
    options = _merge_options(FILESYSTEM_OPTIONS[filesystem], SECURITY_OPTIONS.get(mount_point, ""))
    if hardened and mount_point in HARDENED_OPTIONS:
        options = _merge_options(options, HARDENED_OPTIONS[mount_point])
    return options


def subvolume_entities(
    partition: PartitionSpec,
    device: str,
    subvolumes: Sequence[SubvolumeSpec],
    volume: Optional[EncryptedVolume] = None,
) -> List[MountedEntity]:
    """
    Mounted entities of a pool's subvolumes, shallow to deep.

    Raises:
        ValidationError: If two subvolumes share a mount point
    """
    seen = set()
    for sv in subvolumes:
        if sv.mount_point in seen:
            raise ValidationError(f"Mount point {sv.mount_point} is claimed by two subvolumes")
        seen.add(sv.mount_point)

    entities = [
        MountedEntity(
            key=sv.name, device=device, mount_point=sv.mount_point,
            filesystem=partition.filesystem, options=sv.mount_options,
            partition=partition, subvolume=sv.name, volume=volume,
        )
        for sv in subvolumes
    ]
    entities.sort(key=lambda e: e.depth)
    return entities


def build_mount_plan(
    layout: ComputedLayout,
    devices: Mapping[int, str],
    volumes: Optional[Mapping[int, EncryptedVolume]] = None,
    hardened: bool = False,
    include_subvolumes: bool = True,
) -> List[MountedEntity]:
    """
    Build the ordered list of everything to mount.

    Mounts come shallow to deep (a parent directory is always mounted before
    what lives beneath it), layout order breaking ties; swap comes last.

    Args:
        layout: Computed layout
        devices: Partition number to raw device path
        volumes: Partition number to unlocked encrypted volume
        hardened: Whether to apply the hardened mount options
        include_subvolumes: Whether to list the subvolumes of btrfs pools

    Returns:
        Ordered list of MountedEntity
    """
    volumes = volumes or {}
    entities: List[MountedEntity] = []
    swaps: List[MountedEntity] = []

    for part in layout.partitions:
        volume = volumes.get(part.number) if part.is_encrypted else None
        if part.is_encrypted and volume is None:
            raise MountError(f"Encrypted partition {part.name} has no unlocked volume")
        device = volume.identity.mapped_path if volume else devices[part.number]

        if part.holds_subvolumes:
            if include_subvolumes:
                entities.extend(subvolume_entities(part, device, layout.subvolumes or (), volume))
        elif part.is_swap:
            swaps.append(MountedEntity(
                key=part.name, device=device, mount_point="none",
                filesystem=Filesystem.SWAP, options=FILESYSTEM_OPTIONS[Filesystem.SWAP],
                partition=part, volume=volume,
            ))
        elif part.mount_point:
            entities.append(MountedEntity(
                key=part.name, device=device, mount_point=part.mount_point,
                filesystem=part.filesystem,
                options=determine_mount_options(part.mount_point, part.filesystem, hardened),
                partition=part, volume=volume,
            ))

    entities.sort(key=lambda e: e.depth)
    return entities + swaps


def mount_entity(entity: MountedEntity, target: str, cmd_runner: CommandRunner, journal: StepJournal) -> None:
    """
    Mount one entity (or activate it, for swap) and journal the reverse action.

    Raises:
        MountError: If the mount fails
    """
    try:
        if entity.is_swap:
            cmd_runner.run(["swapon", entity.device])
            journal.record(f"swapoff {entity.device}",
                           lambda: cmd_runner.run(["swapoff", entity.device]))
            logger.info(f"Activated swap on {entity.device}")
            return

        path = target_path(target, entity.mount_point)
        create_directory(path, cmd_runner)
        options = entity.options
        if entity.subvolume:
            options = _merge_options(f"subvol={entity.subvolume}", options)
        cmd_runner.run(["mount", "-o", options, entity.device, str(path)])
        journal.record(f"unmount {path}", lambda: cmd_runner.run(["umount", str(path)]))
    except CommandFailed as e:
        raise MountError(f"Failed to mount {entity.key} ({entity.device}) at {entity.mount_point}: {e}") from e

    logger.info(colorize(f"Mounted {entity.device} to {path} with options: {options}",
                         TermColors.SUCCESS, cmd_runner.colored_output))


def mount_all(plan: List[MountedEntity], target: str, cmd_runner: CommandRunner, journal: StepJournal) -> None:
    """
    Mount a mount plan in order and resolve the filesystem UUIDs.

    Args:
        plan: Ordered mount plan from build_mount_plan
        target: Target root directory
        cmd_runner: CommandRunner instance for executing commands
        journal: Journal receiving the unmount/swapoff actions

    Raises:
        MountError: If there's an error in mounting
    """
    for entity in plan:
        mount_entity(entity, target, cmd_runner, journal)
        entity.uuid = get_filesystem_uuid(entity.device, cmd_runner)

    logger.info(colorize("All filesystems mounted successfully", TermColors.SUCCESS, cmd_runner.colored_output))
