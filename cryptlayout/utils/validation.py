"""
Validation utilities.

This module provides functions for validating prerequisites before a run.
"""
import os
import re
import shutil
import logging
from typing import List

from cryptlayout.utils.command import CommandRunner
from cryptlayout.core.exceptions import EncryptionError

logger = logging.getLogger('cryptlayout')

REQUIRED_TOOLS = [
    "sfdisk", "wipefs", "partprobe", "udevadm", "blkid", "blockdev", "lsblk",
    "mount", "umount", "swapon", "swapoff", "mkswap", "mkfs.vfat",
]

ENCRYPTION_TOOLS = ["cryptsetup", "dd", "shred", "install"]

FILESYSTEM_TOOLS = {
    "ext4": ["mkfs.ext4"],
    "btrfs": ["mkfs.btrfs", "btrfs"],
    "xfs": ["mkfs.xfs"],
    "f2fs": ["mkfs.f2fs"],
}

# luks2 with argon2id needs cryptsetup 2.0 or newer
MIN_CRYPTSETUP_VERSION = (2, 0, 0)


def required_tools(filesystems: List[str], encryption: bool) -> List[str]:
    tools = list(REQUIRED_TOOLS)
    for fs in filesystems:
        tools.extend(t for t in FILESYSTEM_TOOLS.get(fs, []) if t not in tools)
    if encryption:
        tools.extend(ENCRYPTION_TOOLS)
    return tools


def check_prerequisites(cmd_runner: CommandRunner, filesystems: List[str], encryption: bool) -> None:
    """
    Check for required tools and permissions.

    Args:
        cmd_runner: CommandRunner instance for executing commands
        filesystems: Filesystems the layout will create
        encryption: Whether the layout encrypts anything

    Raises:
        RuntimeError: If prerequisites are not met
    """
    tools = required_tools(filesystems, encryption)

    # In simulation mode, just log what would be checked
    if cmd_runner.simulating:
        logger.info("Checking for required tools (simulated)")
        for tool in tools:
            logger.debug(f"Tool '{tool}' would be checked")
        return

    if os.geteuid() != 0:
        raise RuntimeError("This script must be run as root")

    missing_tools = [tool for tool in tools if not shutil.which(tool)]
    if missing_tools:
        raise RuntimeError(
            f"Missing required tools: {', '.join(missing_tools)}\n"
            "Please install the necessary packages for your distribution and try again"
        )


def validate_encryption_requirements(cmd_runner: CommandRunner) -> None:
    """
    Check that the installed cryptsetup supports LUKS2 with argon2id.

    Raises:
        EncryptionError: If cryptsetup is too old
    """
    result = cmd_runner.run(["cryptsetup", "--version"], check=False)
    version_str = result.stdout.strip()
    version_match = re.search(r'(\d+)\.(\d+)\.(\d+)', version_str)

    if not version_match:
        logger.warning(f"Could not determine the cryptsetup version from {version_str!r}")
        return

    version = tuple(map(int, version_match.groups()))
    if version < MIN_CRYPTSETUP_VERSION:
        raise EncryptionError(
            f"LUKS2 with argon2id requires cryptsetup {'.'.join(map(str, MIN_CRYPTSETUP_VERSION))} or newer.\n"
            f"Found version: {version_str}\n"
            "Please upgrade cryptsetup and try again."
        )
