"""
Boot configuration generation for the target system.

This module provides common utilities for writing generated files into the
target root.
"""
import logging
from pathlib import Path
from typing import Optional

from cryptlayout.utils.command import CommandRunner

logger = logging.getLogger('cryptlayout')


def create_directory(
    path: Path,
    cmd_runner: CommandRunner,
    description: Optional[str] = None,
    mode: int = 0o755,
) -> None:
    """
    Create a directory if it doesn't exist or log that it would be created in simulation mode.

    Args:
        path: Directory path to create
        cmd_runner: CommandRunner instance for executing commands
        description: Optional description of the directory for logging
        mode: Permission bits for newly created directories
    """
    desc = f"{description} " if description else ""

    cmd_runner.record_action(f"create {desc}directory {path}")
    if cmd_runner.simulating:
        return
    path.mkdir(mode=mode, exist_ok=True, parents=True)
    logger.debug(f"Created {desc}directory: {path}")


def target_path(target: str, absolute: str) -> Path:
    """Map an absolute path of the installed system into the mounted target"""
    return Path(target) / absolute.lstrip("/")
