"""
Disk encryption module.

This module sets up LUKS containers for the encrypted partitions of a
layout. The volume carrying the root filesystem is unlocked by passphrase;
every other encrypted volume is unlocked by a keyfile stored inside it.
An encrypted /boot is LUKS1, which GRUB can open, and is chained right
after the root volume.

Mapper names are decided once, by assign_identities, and handed out as
VolumeIdentity objects. Nothing downstream derives a mapper name again.
"""
import logging
import re
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from cryptlayout.utils.command import CommandRunner
from cryptlayout.utils.format import TermColors, colorize
from cryptlayout.core.disk import wait_for_device
from cryptlayout.core.exceptions import (
    CommandFailed,
    ConfigError,
    EncryptionError,
    IncorrectPassphrase,
    ValidationError,
)
from cryptlayout.core.keyfiles import generate_keyfile, install_keyfiles, keyfile_path
from cryptlayout.core.models import (
    ComputedLayout,
    ContainerState,
    EncryptedVolume,
    PartitionSpec,
    UnlockMethod,
    VolumeIdentity,
    valid_mapper_name,
)
from cryptlayout.core.steps import StepJournal

logger = logging.getLogger('cryptlayout')

DEFAULT_ROOT_MAPPER = "Crypt-Root"
DEFAULT_BOOT_MAPPER = "Crypt-Boot"
MAX_PASSPHRASE_ATTEMPTS = 3

# cryptsetup exit code for a rejected passphrase
EXIT_WRONG_PASSPHRASE = 2

LUKS_FORMAT_OPTIONS = [
    "--type", "luks2",
    "--cipher", "aes-xts-plain64", "--key-size", "512",
    "--hash", "sha512", "--pbkdf", "argon2id", "--iter-time", "5000",
    "--batch-mode",
]

BOOT_FORMAT_OPTIONS = [
    "--type", "luks1",
    "--cipher", "aes-xts-plain64", "--key-size", "512",
    "--hash", "sha512", "--pbkdf", "pbkdf2",
    "--batch-mode",
]

# Per-sector authentication with dm-integrity
INTEGRITY_OPTIONS = ["--integrity", "hmac-sha256"]
INTEGRITY_SECTOR_SIZE = 4096

# Keyslot holding a volume's keyfile; slot 0 holds the passphrase
KEYFILE_SLOT = "1"

# Called with a prompt, returns the passphrase
PassphraseProvider = Callable[[str], str]


def mapper_name_for(part: PartitionSpec) -> str:
    """Crypt-<Name> with the partition name capitalized (HOME -> Crypt-Home)"""
    name = re.sub(r"[^A-Za-z0-9_.-]", "_", part.name)
    return f"Crypt-{name[:1].upper()}{name[1:].lower()}"


class EncryptionProvisioner:
    """Formats, opens and chains the LUKS containers of a layout"""

    def __init__(
        self,
        cmd_runner: CommandRunner,
        journal: StepJournal,
        passphrase_provider: Optional[PassphraseProvider],
        resume: bool = False,
        root_mapper_name: str = DEFAULT_ROOT_MAPPER,
        boot_mapper_name: str = DEFAULT_BOOT_MAPPER,
        integrity: bool = False,
        max_attempts: int = MAX_PASSPHRASE_ATTEMPTS,
    ):
        self.cmd_runner = cmd_runner
        self.journal = journal
        self.passphrase_provider = passphrase_provider
        self.resume = resume
        self.root_mapper_name = root_mapper_name
        self.boot_mapper_name = boot_mapper_name
        self.integrity = integrity
        self.integrity_sector_size = INTEGRITY_SECTOR_SIZE
        self.max_attempts = max_attempts
        self.identities: Dict[int, VolumeIdentity] = {}
        self._passphrase: Optional[str] = None

    @staticmethod
    def ordered_partitions(layout: ComputedLayout) -> List[PartitionSpec]:
        """Encrypted partitions: the root-bearing one, then /boot, then the rest"""
        root = layout.root_partition()

        def rank(part: PartitionSpec) -> int:
            if part == root:
                return 0
            return 1 if part.is_boot else 2

        return sorted(layout.encrypted_partitions(), key=rank)

    def assign_identities(self, layout: ComputedLayout) -> Dict[int, VolumeIdentity]:
        """
        Decide the mapper name of every encrypted partition, exactly once.

        The root-bearing volume and /boot get their configured mapper names;
        the others get Crypt-<Name>. Clashes get -1, -2, ... suffixes.

        Returns:
            Partition number to VolumeIdentity, root-bearing volume first

        Raises:
            ConfigError: If a configured mapper name is not usable
        """
        if self.identities:
            return self.identities

        root = layout.root_partition()
        used = set()
        for part in self.ordered_partitions(layout):
            if part == root:
                base = self.root_mapper_name
            elif part.is_boot:
                base = self.boot_mapper_name
            else:
                base = mapper_name_for(part)
            if not valid_mapper_name(base):
                raise ConfigError(f"Invalid mapper name {base!r}: use letters, digits, _ . + - only")
            name, suffix = base, 0
            while name in used:
                suffix += 1
                name = f"{base}-{suffix}"
            used.add(name)
            self.identities[part.number] = VolumeIdentity(name)
            logger.debug(f"Partition {part.number} ({part.name}) maps to {name}")
        return self.identities

    def container_state(self, device: str, identity: VolumeIdentity) -> ContainerState:
        """Find out what a resumed run left on an encrypted partition"""
        status = self.cmd_runner.run(["cryptsetup", "status", identity.mapper_name], check=False)
        if status.returncode == 0:
            return ContainerState.OPEN
        is_luks = self.cmd_runner.run(["cryptsetup", "isLuks", device], check=False)
        if is_luks.returncode == 0:
            return ContainerState.FORMATTED
        return ContainerState.BLANK

    def _ask_passphrase(self, prompt: str) -> str:
        if self.passphrase_provider is None:
            raise EncryptionError("Encryption requires a passphrase but none was provided")
        passphrase = self.passphrase_provider(prompt)
        if not passphrase:
            raise EncryptionError("Empty passphrase")
        return passphrase

    def _run_secret(self, cmd: List[str], secret: str, check: bool = True):
        try:
            return self.cmd_runner.run(cmd, check=check, input=f"{secret}\n", sensitive=True)
        except CommandFailed as e:
            raise EncryptionError(f"Cryptsetup command failed: {e}") from e

    def format_options(self, part: PartitionSpec) -> List[str]:
        """luksFormat options of a partition"""
        if part.is_boot:
            return list(BOOT_FORMAT_OPTIONS)
        if self.integrity:
            return LUKS_FORMAT_OPTIONS + INTEGRITY_OPTIONS + ["--sector-size", str(self.integrity_sector_size)]
        return list(LUKS_FORMAT_OPTIONS)

    def _format(self, part: PartitionSpec, device: str, passphrase: str) -> None:
        options = self.format_options(part)
        luks_type = options[options.index("--type") + 1]
        logger.info(f"Formatting {luks_type.upper()} container on {device}")
        self._run_secret(["cryptsetup", "luksFormat"] + options + [device], passphrase)

    def _unlock_with_passphrase(self, device: str, identity: VolumeIdentity, state: ContainerState) -> None:
        """
        Open (or, if already open, verify the passphrase of) the first volume.

        Raises:
            IncorrectPassphrase: After max_attempts rejected passphrases
        """
        if state is ContainerState.OPEN:
            cmd = ["cryptsetup", "open", "--test-passphrase", device]
        else:
            cmd = ["cryptsetup", "open", device, identity.mapper_name]

        for attempt in range(1, self.max_attempts + 1):
            result = self._run_secret(cmd, self._passphrase, check=False)
            if result.returncode == 0:
                return
            if result.returncode != EXIT_WRONG_PASSPHRASE:
                raise EncryptionError(
                    f"Failed to open {device}: {CommandFailed(cmd, result.returncode, result.stdout, result.stderr)}"
                )
            logger.warning(colorize(f"Passphrase rejected for {device} (attempt {attempt}/{self.max_attempts})",
                                    TermColors.WARNING, self.cmd_runner.colored_output))
            if attempt < self.max_attempts:
                self._passphrase = self._ask_passphrase(f"Passphrase for {identity} (retry {attempt})")
        raise IncorrectPassphrase(device, self.max_attempts)

    def _record_close(self, identity: VolumeIdentity) -> None:
        self.journal.record(
            f"close {identity}",
            lambda: self.cmd_runner.run(["cryptsetup", "close", identity.mapper_name]),
        )

    def _container_uuid(self, device: str) -> str:
        try:
            result = self.cmd_runner.run(["cryptsetup", "luksUUID", device])
        except CommandFailed as e:
            raise EncryptionError(f"Could not read the LUKS UUID of {device}: {e}") from e
        return result.stdout.strip()

    def provision(self, layout: ComputedLayout, devices: Mapping[int, str]) -> Dict[int, EncryptedVolume]:
        """
        Format and open every encrypted partition of a layout.

        Args:
            layout: Computed layout
            devices: Partition number to raw device path

        Returns:
            Partition number to EncryptedVolume, in unlock order

        Raises:
            DeviceNotFound: If a backing device does not appear
            EncryptionError: If cryptsetup fails
            IncorrectPassphrase: If the passphrase is rejected too often
            ValidationError: If a keyfile volume's parent is not open
        """
        identities = self.assign_identities(layout)
        volumes: Dict[int, EncryptedVolume] = {}
        parent: Optional[EncryptedVolume] = None

        for part in self.ordered_partitions(layout):
            device = devices[part.number]
            identity = identities[part.number]
            wait_for_device(device, self.cmd_runner)

            state = self.container_state(device, identity) if self.resume else ContainerState.BLANK
            logger.info(colorize(f"Setting up {identity} on {device} ({state.value})",
                                 TermColors.INFO, self.cmd_runner.colored_output))

            if parent is None:
                volume = self._provision_passphrase_volume(part, device, identity, state)
                parent = volume
            else:
                volume = self._provision_keyfile_volume(part, device, identity, state, parent)

            volume.container_uuid = self._container_uuid(device)
            volume.opened = True
            wait_for_device(identity.mapped_path, self.cmd_runner)
            volumes[part.number] = volume

        return volumes

    def _provision_passphrase_volume(self, part: PartitionSpec, device: str,
                                     identity: VolumeIdentity, state: ContainerState) -> EncryptedVolume:
        self._passphrase = self._passphrase or self._ask_passphrase(f"Passphrase for {identity}")
        if state is ContainerState.BLANK:
            self._format(part, device, self._passphrase)
        self._unlock_with_passphrase(device, identity, state)
        self._record_close(identity)
        return EncryptedVolume(partition=part, device=device, identity=identity, unlock=UnlockMethod.PASSPHRASE)

    def _provision_keyfile_volume(self, part: PartitionSpec, device: str, identity: VolumeIdentity,
                                  state: ContainerState, parent: EncryptedVolume) -> EncryptedVolume:
        if not parent.opened:
            raise ValidationError(f"{identity} is unlocked by a keyfile in {parent.identity}, which is not open")

        if state is ContainerState.BLANK:
            self._format(part, device, self._passphrase)
        else:
            self._release_keyfile_slot(device)

        staged = generate_keyfile(identity, self.cmd_runner, self.journal)
        self._run_secret(["cryptsetup", "luksAddKey", "--key-slot", KEYFILE_SLOT, device, staged], self._passphrase)

        if state is not ContainerState.OPEN:
            try:
                self.cmd_runner.run(["cryptsetup", "open", "--key-file", staged, device, identity.mapper_name])
            except CommandFailed as e:
                raise EncryptionError(f"Failed to open {device} with its keyfile: {e}") from e
        self._record_close(identity)

        return EncryptedVolume(
            partition=part, device=device, identity=identity, unlock=UnlockMethod.KEYFILE,
            keyfile=keyfile_path(identity), staged_keyfile=staged, parent=parent,
        )

    def _release_keyfile_slot(self, device: str) -> None:
        """Drop the keyfile an earlier run enrolled, so a resumed run reuses its slot"""
        result = self._run_secret(["cryptsetup", "luksKillSlot", device, KEYFILE_SLOT], self._passphrase, check=False)
        if result.returncode == 0:
            logger.info(f"Removed the previous keyfile from slot {KEYFILE_SLOT} of {device}")
        else:
            logger.debug(f"Keyslot {KEYFILE_SLOT} of {device} was not in use")

    def install_keyfiles(self, volumes: Iterable[EncryptedVolume], target: str) -> List[str]:
        """Copy the staged keyfiles into the mounted target"""
        return install_keyfiles(volumes, target, self.cmd_runner)
