"""
Btrfs subvolume management.

This module creates the subvolumes of a btrfs pool, sets the root subvolume
as default and mounts them into the target root.
"""
import logging
import os
import tempfile
from typing import List, Optional, Sequence

from cryptlayout.utils.command import CommandRunner
from cryptlayout.core.exceptions import CommandFailed, FilesystemError
from cryptlayout.core.models import EncryptedVolume, MountedEntity, PartitionSpec, SubvolumeSpec
from cryptlayout.core.mount import mount_all, subvolume_entities
from cryptlayout.core.steps import StepJournal

logger = logging.getLogger('cryptlayout')

SIMULATED_TOP_LEVEL = "/tmp/cryptlayout-sim-mount"


def parse_subvolume_id(output: str) -> Optional[str]:
    """Extract the subvolume ID from `btrfs subvolume show` output"""
    for line in output.strip().split('\n'):
        if line.strip().startswith('Subvolume ID:'):
            return line.split(':', 1)[1].strip()
    return None


class SubvolumeManager:
    """Creates and mounts btrfs subvolumes"""

    def __init__(self, cmd_runner: CommandRunner, journal: StepJournal):
        self.cmd_runner = cmd_runner
        self.journal = journal

    def create_subvolumes(self, device: str, subvolumes: Sequence[SubvolumeSpec]) -> List[str]:
        """
        Create subvolumes on a btrfs device and set the / subvolume as default.

        The top level of the pool is mounted on a temporary directory that is
        always unmounted again before this returns, also on error.

        Args:
            device: Device carrying the btrfs pool
            subvolumes: Subvolumes to create

        Returns:
            Names of the created subvolumes

        Raises:
            FilesystemError: If there's an error in subvolume creation
        """
        logger.info(f"Creating btrfs subvolumes on {device}")

        if self.cmd_runner.simulating:
            temp_dir = SIMULATED_TOP_LEVEL
        else:
            temp_dir = tempfile.mkdtemp(prefix="cryptlayout-")

        try:
            self.cmd_runner.run(["mount", "-o", "subvolid=5", device, temp_dir])
        except CommandFailed as e:
            self._remove_temp_dir(temp_dir)
            raise FilesystemError(f"Failed to mount the top level of {device}: {e}") from e

        created = []
        try:
            for sv in subvolumes:
                self.cmd_runner.run(["btrfs", "subvolume", "create", os.path.join(temp_dir, sv.name)])
                created.append(sv.name)
                logger.info(f"Created subvolume {sv.name}")

            root = next((sv for sv in subvolumes if sv.mount_point == "/"), None)
            if root is not None:
                self._set_default(temp_dir, root.name)
        except CommandFailed as e:
            raise FilesystemError(f"Error creating btrfs subvolumes: {e}") from e
        finally:
            self.cmd_runner.run(["umount", temp_dir], check=False)
            self._remove_temp_dir(temp_dir)

        return created

    def _set_default(self, top_level: str, name: str) -> None:
        result = self.cmd_runner.run(["btrfs", "subvolume", "show", os.path.join(top_level, name)])
        subvol_id = parse_subvolume_id(result.stdout)
        if not subvol_id:
            raise FilesystemError("Could not extract subvolume ID from btrfs output")
        self.cmd_runner.run(["btrfs", "subvolume", "set-default", subvol_id, top_level])
        logger.info(f"Set {name} (ID: {subvol_id}) as the default subvolume")

    def _remove_temp_dir(self, temp_dir: str) -> None:
        if self.cmd_runner.simulating:
            return
        try:
            os.rmdir(temp_dir)
        except OSError as e:
            logger.warning(f"Could not remove {temp_dir}: {e}")

    def mount_subvolumes(
        self,
        device: str,
        subvolumes: Sequence[SubvolumeSpec],
        target: str,
        partition: PartitionSpec,
        volume: Optional[EncryptedVolume] = None,
    ) -> List[MountedEntity]:
        """
        Mount subvolumes into the target, shallow to deep.

        Args:
            device: Device carrying the btrfs pool
            subvolumes: Subvolumes to mount
            target: Target root directory
            partition: Partition holding the pool
            volume: Encrypted volume the pool lives in, if any

        Returns:
            The mounted entities in mount order, with their UUIDs resolved

        Raises:
            ValidationError: If two subvolumes share a mount point
            MountError: If a mount fails
        """
        entities = subvolume_entities(partition, device, subvolumes, volume)
        mount_all(entities, target, self.cmd_runner, self.journal)
        return entities
