"""
Disk partitioning module.

This module writes a computed layout to disk with sfdisk and maps partition
numbers to their device paths.
"""
import logging
import os
import time
from typing import Dict, List

from cryptlayout.utils.command import CommandRunner
from cryptlayout.utils.format import TermColors, colorize
from cryptlayout.core.exceptions import CommandFailed, PartitioningError
from cryptlayout.core.layout import partition_table_size
from cryptlayout.core.models import ComputedLayout

logger = logging.getLogger('cryptlayout')


def partition_device_name(disk: str, partition_number: int) -> str:
    """
    Generate the partition device name based on the disk naming scheme.

    Disks whose name ends with a digit (nvme0n1, mmcblk0, loop0) use a "p"
    separator; others (sda, vdb) append the number directly.

    Args:
        disk: Path to the disk device
        partition_number: Partition number

    Returns:
        Partition device path
    """
    if os.path.basename(disk)[-1:].isdigit():
        return f"{disk}p{partition_number}"
    return f"{disk}{partition_number}"


def generate_sfdisk_script(layout: ComputedLayout, disk: str) -> str:
    """
    Build the sfdisk script of a layout.

    The output depends only on the layout and disk path.

    Args:
        layout: Computed layout
        disk: Path to the disk device

    Returns:
        sfdisk script text

    Raises:
        PartitioningError: If a partition would get no space
    """
    script_lines = ["label: gpt", f"device: {disk}", "unit: sectors", ""]

    for part in layout.partitions:
        size_mib = partition_table_size(layout, part)
        if size_mib is None:
            size = "size=+"
        elif size_mib <= 0:
            raise PartitioningError(f"Partition {part.name} would get {size_mib} MiB")
        else:
            size = f"size={size_mib}MiB"

        fields = [size, f"type={part.type_guid}", f'name="{part.name}"']
        if part.bios_bootable:
            fields.append('attrs="LegacyBIOSBootable"')
        script_lines.append(", ".join(fields))

    return "\n".join(script_lines) + "\n"


def _rescan(cmd: List[str], cmd_runner: CommandRunner) -> None:
    """Best-effort partition table rescan; failure only warrants a warning"""
    try:
        cmd_runner.run(cmd)
    except CommandFailed as e:
        logger.warning(colorize(f"{cmd[0]} failed, but continuing: {e}",
                                TermColors.WARNING, cmd_runner.colored_output))
        # Give the kernel time to recognize partitions
        time.sleep(2)


def prepare_disk(disk: str, layout: ComputedLayout, cmd_runner: CommandRunner) -> Dict[int, str]:
    """
    Wipe the disk and write the partition table of a layout.

    Args:
        disk: Path to the disk device
        layout: Computed layout
        cmd_runner: CommandRunner instance for executing commands

    Returns:
        Dict mapping partition numbers to device paths

    Raises:
        PartitioningError: If there's an error in partitioning
    """
    logger.info(colorize(f"Preparing disk {disk}", TermColors.INFO, cmd_runner.colored_output))
    script = generate_sfdisk_script(layout, disk)

    logger.info("Wiping disk")
    try:
        cmd_runner.run(["wipefs", "-a", disk])
    except CommandFailed as e:
        raise PartitioningError(f"Failed to wipe disk: {e}") from e

    logger.info("Applying partition table:")
    for line in script.splitlines():
        if line:
            logger.info(f"  {line}")

    try:
        cmd_runner.run(["sfdisk", disk], input=script)
    except CommandFailed as e:
        raise PartitioningError(f"Failed to create partition table: {e}") from e

    _rescan(["partprobe", disk], cmd_runner)
    _rescan(["udevadm", "settle"], cmd_runner)

    partitions = {part.number: partition_device_name(disk, part.number) for part in layout.partitions}

    logger.info(colorize("Partitioning completed successfully",
                         TermColors.SUCCESS, cmd_runner.colored_output))
    return partitions
