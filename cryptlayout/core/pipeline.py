"""
Provisioning pipeline.

Runs the stages in their only valid order: plan, partition, encrypt, format,
create subvolumes, mount, install keyfiles, generate and write the boot
artifacts. Planning happens before anything touches the disk. Once the disk
has been touched, any failure (or Ctrl-C) unwinds the step journal before the
error propagates.
"""
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

from cryptlayout.config.artifacts import check_consistency, generate_boot_artifacts, write_boot_artifacts
from cryptlayout.utils.command import CommandRunner
from cryptlayout.utils.format import TermColors, colorize
from cryptlayout.utils.settings import DeploymentSettings
from cryptlayout.core.disk import get_disk_geometry, get_ram_mib
from cryptlayout.core.encryption import INTEGRITY_SECTOR_SIZE, EncryptionProvisioner, PassphraseProvider
from cryptlayout.core.exceptions import ConfigError
from cryptlayout.core.filesystem import effective_device, format_layout, has_filesystem
from cryptlayout.core.layout import compute_layout
from cryptlayout.core.models import BootArtifacts, ComputedLayout, EncryptedVolume, MountedEntity
from cryptlayout.core.mount import build_mount_plan, mount_all
from cryptlayout.core.partition import partition_device_name, prepare_disk
from cryptlayout.core.steps import StepJournal
from cryptlayout.core.subvolume import SubvolumeManager

logger = logging.getLogger('cryptlayout')


@dataclass
class ProvisionResult:
    layout: ComputedLayout
    devices: Dict[int, str]
    volumes: Dict[int, EncryptedVolume] = field(default_factory=dict)
    mounted: List[MountedEntity] = field(default_factory=list)
    artifacts: Optional[BootArtifacts] = None
    written: List[str] = field(default_factory=list)


class ProvisioningPipeline:
    """Drives one provisioning run on one disk"""

    def __init__(
        self,
        settings: DeploymentSettings,
        cmd_runner: CommandRunner,
        passphrase_provider: Optional[PassphraseProvider] = None,
    ):
        if not settings.device:
            raise ConfigError("No target device configured")
        settings.validate()
        self.settings = settings
        self.cmd_runner = cmd_runner
        self.journal = StepJournal(cmd_runner.colored_output)

        if passphrase_provider is None and settings.encryption_password:
            password = settings.encryption_password

            def passphrase_provider(prompt: str) -> str:
                return password
        self.provisioner = EncryptionProvisioner(
            cmd_runner,
            self.journal,
            passphrase_provider,
            resume=settings.resume,
            root_mapper_name=settings.luks_mapper_name,
            boot_mapper_name=settings.luks_boot_mapper_name,
            integrity=settings.integrity,
        )
        self.subvolumes = SubvolumeManager(cmd_runner, self.journal)

    def _stage(self, message: str) -> None:
        logger.info(colorize(f"==> {message}", TermColors.HEADER, self.cmd_runner.colored_output))

    def plan(self, disk_mib: Optional[int] = None, ram_mib: Optional[int] = None) -> ComputedLayout:
        """
        Compute the layout for the configured disk. No disk mutation.

        Raises:
            ConfigError, DiskTooSmall, InvalidSpec, ValidationError
        """
        options = self.settings.layout_options()
        if disk_mib is None:
            geometry = get_disk_geometry(self.settings.device, self.cmd_runner)
            logger.debug(f"Disk geometry: {geometry}")
            disk_mib = geometry.total_mib
            options = replace(options, alignment_mib=geometry.alignment_mib)
            self.provisioner.integrity_sector_size = max(INTEGRITY_SECTOR_SIZE, geometry.sector_size)
        if ram_mib is None:
            ram_mib = self.settings.ram_mib if self.settings.ram_mib is not None else get_ram_mib(self.cmd_runner)

        return compute_layout(
            disk_mib,
            ram_mib,
            self.settings.layout,
            custom_spec=self.settings.partitions or None,
            options=options,
        )

    def run(self, layout: Optional[ComputedLayout] = None) -> ProvisionResult:
        """
        Provision the disk and write the boot artifacts into the target.

        Mounts and open containers are left in place for the rest of the
        installation; call finalize() to release them.

        Returns:
            ProvisionResult describing what was set up
        """
        layout = layout or self.plan()
        disk = self.settings.device
        target = self.settings.target

        try:
            if self.settings.resume:
                self._stage(f"Resuming on {disk}, keeping the partition table")
                devices = {p.number: partition_device_name(disk, p.number) for p in layout.partitions}
            else:
                self._stage(f"Partitioning {disk}")
                devices = prepare_disk(disk, layout, self.cmd_runner)
            result = ProvisionResult(layout=layout, devices=devices)

            if layout.encrypted_partitions():
                self._stage("Setting up encryption")
                result.volumes = self.provisioner.provision(layout, devices)

            pools = [p for p in layout.partitions if p.holds_subvolumes]
            existing = {
                p.number for p in pools
                if self.settings.resume
                and has_filesystem(effective_device(p, devices, result.volumes), self.cmd_runner)
            }

            self._stage("Creating filesystems")
            format_layout(layout, devices, self.cmd_runner, result.volumes, resume=self.settings.resume)

            for pool in pools:
                if pool.number in existing:
                    logger.info(f"Keeping the existing subvolumes of {pool.name}")
                    continue
                self._stage("Creating btrfs subvolumes")
                self.subvolumes.create_subvolumes(
                    effective_device(pool, devices, result.volumes), layout.subvolumes or ()
                )

            self._stage(f"Mounting into {target}")
            # Subvolumes first: the root subvolume carries every partition mount point
            for pool in pools:
                result.mounted.extend(self.subvolumes.mount_subvolumes(
                    effective_device(pool, devices, result.volumes), layout.subvolumes or (), target,
                    pool, result.volumes.get(pool.number),
                ))
            plan = build_mount_plan(layout, devices, result.volumes, self.settings.hardened,
                                    include_subvolumes=False)
            mount_all(plan, target, self.cmd_runner, self.journal)
            result.mounted.extend(plan)

            volumes = list(result.volumes.values())
            if volumes:
                self.provisioner.install_keyfiles(volumes, target)

            self._stage("Writing boot configuration")
            result.artifacts = generate_boot_artifacts(result.mounted, volumes)
            check_consistency(result.artifacts)
            result.written = write_boot_artifacts(result.artifacts, target, self.cmd_runner)

            if self.settings.rebuild_initramfs:
                self._stage("Rebuilding the initramfs")
                self.cmd_runner.run_in_target(target, ["mkinitcpio", "-P"])
        except BaseException:
            logger.error(colorize("Provisioning failed, rolling back", TermColors.ERROR, self.cmd_runner.colored_output))
            self.journal.unwind()
            raise

        logger.info(colorize("Provisioning completed successfully", TermColors.SUCCESS, self.cmd_runner.colored_output))
        return result

    def finalize(self) -> List[str]:
        """
        Unmount everything, deactivate swap, close containers and shred the
        staged keyfiles.

        Returns:
            Descriptions of the undo actions that failed
        """
        self._stage("Releasing mounts and containers")
        failures = self.journal.unwind()
        if failures:
            logger.warning(colorize(f"{len(failures)} cleanup step(s) failed", TermColors.WARNING,
                                    self.cmd_runner.colored_output))
        return failures
