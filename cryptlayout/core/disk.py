"""
Disk information and validation module.

This module provides functions for querying disk and memory sizes and for
waiting on block devices to appear.
"""
import os
import logging
import time
from typing import Optional

from cryptlayout.utils.command import CommandRunner
from cryptlayout.utils.types import DiskInfo
from cryptlayout.utils.format import MIB, TermColors, colorize, mib_to_human_readable
from cryptlayout.core.exceptions import CommandFailed, DeviceNotFound
from cryptlayout.core.models import DiskGeometry

logger = logging.getLogger('cryptlayout')

DEFAULT_SIMULATED_RAM_MIB = 8192


def read_sysfs_value(path: str, default: Optional[str] = None) -> str:
    """
    Safely read a value from sysfs or procfs.

    Args:
        path: Path to the file
        default: Default value if file doesn't exist or can't be read

    Returns:
        Content of the file as string or default
    """
    try:
        with open(path, "r") as f:
            return f.read().strip()
    except OSError as e:
        logger.debug(f"Could not read {path}: {e}")

    return default or ""


def is_disk_available(disk: str, cmd_runner: CommandRunner) -> bool:
    """
    Check if the disk exists and is a whole disk block device.

    Args:
        disk: Path to the disk device
        cmd_runner: CommandRunner instance for executing commands

    Returns:
        True if disk exists and is a block device, False otherwise
    """
    # In simulation mode, assume disk is available
    if cmd_runner.simulating:
        return True

    if not os.path.exists(disk):
        return False

    result = cmd_runner.run(["lsblk", "-n", "-d", "-o", "TYPE", disk], check=False)
    return result.returncode == 0 and result.stdout.strip().lower() in ("disk", "loop")


def get_disk_size_mib(disk: str, cmd_runner: CommandRunner) -> int:
    """
    Read the disk capacity in whole MiB.

    Raises:
        DeviceNotFound: If the size cannot be read
    """
    try:
        result = cmd_runner.run(["blockdev", "--getsize64", disk])
        return int(result.stdout.strip()) // MIB
    except (CommandFailed, ValueError) as e:
        raise DeviceNotFound(disk, f"cannot read its size: {e}") from e


def get_ram_mib(cmd_runner: CommandRunner, meminfo: str = "/proc/meminfo") -> int:
    """
    Read the installed memory in MiB from /proc/meminfo.

    In simulation mode the simulated amount (ram_mib parameter) is returned.
    """
    if cmd_runner.simulating:
        return int(cmd_runner.simulation_params.get("ram_mib", DEFAULT_SIMULATED_RAM_MIB))

    for line in read_sysfs_value(meminfo).splitlines():
        if line.startswith("MemTotal:"):
            return int(line.split()[1]) // 1024
    raise RuntimeError(f"MemTotal not found in {meminfo}")


def get_disk_info(disk: str, cmd_runner: CommandRunner) -> DiskInfo:
    """
    Get information about the disk.

    Args:
        disk: Path to the disk device
        cmd_runner: CommandRunner instance for executing commands

    Returns:
        DiskInfo object containing disk information

    Raises:
        DeviceNotFound: If disk is not found
    """
    if not is_disk_available(disk, cmd_runner):
        raise DeviceNotFound(disk, "not a block device")

    disk_info = DiskInfo(
        size_mib=get_disk_size_mib(disk, cmd_runner),
        rotational=True,
        model="Unknown",
    )

    if cmd_runner.simulating:
        disk_info["rotational"] = bool(cmd_runner.simulation_params.get("rotational", False))
        disk_info["model"] = "SIMULATED DISK"
    else:
        disk_name = os.path.basename(disk)
        disk_info["rotational"] = read_sysfs_value(f"/sys/block/{disk_name}/queue/rotational", "1") == "1"
        result = cmd_runner.run(["lsblk", "-n", "-d", "-o", "MODEL", disk], check=False)
        disk_info["model"] = result.stdout.strip() or "Unknown"

    logger.info(f"Disk {disk}: {disk_info['model']}, {mib_to_human_readable(disk_info['size_mib'])}")
    return disk_info


def get_disk_geometry(disk: str, cmd_runner: CommandRunner, alignment_mib: int = 4) -> DiskGeometry:
    """
    Read the disk size and sector size.

    Raises:
        DeviceNotFound: If the disk is missing or its size cannot be read
    """
    info = get_disk_info(disk, cmd_runner)
    result = cmd_runner.run(["blockdev", "--getss", disk], check=False)
    try:
        sector_size = int(result.stdout.strip())
    except ValueError:
        logger.warning(f"Could not read the sector size of {disk}, assuming 512 bytes")
        sector_size = 512
    return DiskGeometry(total_mib=info["size_mib"], sector_size=sector_size, alignment_mib=alignment_mib)


def wait_for_device(device: str, cmd_runner: CommandRunner, timeout: float = 10.0, interval: float = 0.5) -> None:
    """
    Wait for a block device node to appear.

    Raises:
        DeviceNotFound: If the device is still missing after the timeout
    """
    if cmd_runner.simulating:
        return

    deadline = time.monotonic() + timeout
    while not os.path.exists(device):
        if time.monotonic() >= deadline:
            logger.error(colorize(f"{device} did not appear within {timeout:g}s",
                                  TermColors.ERROR, cmd_runner.colored_output))
            raise DeviceNotFound(device, f"not present after {timeout:g}s")
        time.sleep(interval)
