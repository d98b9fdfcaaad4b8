"""
Boot artifact generation.

fstab, crypttab, the early-boot hooks and the mkinitcpio drop-in are all
derived from the same mounted entities and encrypted volumes, in one pass,
and checked against each other before anything is written.
"""
import logging
import re
from typing import List, Sequence

from cryptlayout.config import create_directory, target_path
from cryptlayout.config.crypttab import generate_crypttab, render_crypttab
from cryptlayout.config.fstab import generate_fstab, render_fstab
from cryptlayout.config.hooks import HOOKS_DIR, INSTALL_DIR, MOUNT_HOOK, UNLOCK_HOOK, generate_hooks
from cryptlayout.config.initramfs import DROPIN_PATH, render_dropin
from cryptlayout.utils.command import CommandRunner
from cryptlayout.utils.format import TermColors, colorize
from cryptlayout.core.exceptions import ValidationError
from cryptlayout.core.models import BootArtifacts, EncryptedVolume, MountedEntity, valid_mapper_name

logger = logging.getLogger('cryptlayout')

_EXPECTED_MAPPINGS = re.compile(r'^EXPECTED_MAPPINGS="([^"]*)"$', re.MULTILINE)
_MAPPER_PATH = re.compile(r"/dev/mapper/([A-Za-z0-9_.+-]+)")


def generate_boot_artifacts(mounted: Sequence[MountedEntity], volumes: Sequence[EncryptedVolume]) -> BootArtifacts:
    """
    Derive every boot artifact from the mount plan and the encrypted volumes.

    Hooks and the initramfs drop-in are only produced when something is
    encrypted.

    Args:
        mounted: Mounted entities, in mount order, with resolved UUIDs
        volumes: Encrypted volumes, in unlock order

    Returns:
        The generated artifacts
    """
    volumes = list(volumes)
    artifacts = BootArtifacts(
        fstab=generate_fstab(mounted),
        crypttab=generate_crypttab(volumes),
    )
    if volumes:
        artifacts.hooks = generate_hooks(list(mounted), volumes)
        artifacts.initramfs_conf = render_dropin(volumes)
    return artifacts


def _expected_mappings(hook_content: str) -> List[str]:
    match = _EXPECTED_MAPPINGS.search(hook_content)
    return match.group(1).split() if match else []


def check_consistency(artifacts: BootArtifacts) -> None:
    """
    Check that the artifacts agree with each other.

    Mapper names are compared as whole tokens: the first field of each
    crypttab line, the EXPECTED_MAPPINGS list of the unlock hook and the
    /dev/mapper paths of the mount hook must name the same volumes. Every
    non-swap fstab mount point must be mounted by the mount hook.

    Raises:
        ValidationError: On the first disagreement found
    """
    if not artifacts.crypttab:
        return

    for hook_name in (UNLOCK_HOOK, MOUNT_HOOK):
        if hook_name not in artifacts.hooks:
            raise ValidationError(f"crypttab lists encrypted volumes but the {hook_name} hook is missing")

    expected = _expected_mappings(artifacts.hooks[UNLOCK_HOOK].hook_content)
    mounted = set(_MAPPER_PATH.findall(artifacts.hooks[MOUNT_HOOK].hook_content))

    for mapper_name, line in artifacts.crypttab.items():
        if not valid_mapper_name(mapper_name) or line.split()[0] != mapper_name:
            raise ValidationError(f"crypttab line for {mapper_name!r} does not start with its mapper name")
        if mapper_name not in expected:
            raise ValidationError(f"Mapper name {mapper_name} is not expected by the {UNLOCK_HOOK} hook")
        if mapper_name not in mounted:
            raise ValidationError(f"Mapper name {mapper_name} is not mounted by the {MOUNT_HOOK} hook")

    unknown = [name for name in expected if name not in artifacts.crypttab]
    if unknown:
        raise ValidationError(f"The {UNLOCK_HOOK} hook expects mappings missing from crypttab: {' '.join(unknown)}")

    mount_hook = artifacts.hooks[MOUNT_HOOK].hook_content
    for key, line in artifacts.fstab.items():
        fields = line.split()
        if fields[2] == "swap":
            continue
        if f'"{fields[1]}"' not in mount_hook:
            raise ValidationError(f"fstab mount point {fields[1]} ({key}) is not mounted by the {MOUNT_HOOK} hook")


def write_boot_artifacts(artifacts: BootArtifacts, target: str, cmd_runner: CommandRunner) -> List[str]:
    """
    Write the artifacts into the target root.

    Returns:
        Written paths, as seen from the installed system
    """
    written = []

    def write(path: str, content: str, mode: int) -> None:
        dest = target_path(target, path)
        create_directory(dest.parent, cmd_runner)
        cmd_runner.write_file(dest, content, mode)
        written.append(path)

    write("/etc/fstab", render_fstab(artifacts.fstab), 0o644)
    if artifacts.crypttab:
        write("/etc/crypttab", render_crypttab(artifacts.crypttab), 0o600)
    for name, hook in artifacts.hooks.items():
        write(f"{HOOKS_DIR}/{name}", hook.hook_content, 0o755)
        write(f"{INSTALL_DIR}/{name}", hook.install_content, 0o755)
    if artifacts.initramfs_conf:
        write(DROPIN_PATH, artifacts.initramfs_conf, 0o644)

    logger.info(colorize(f"Wrote {len(written)} boot configuration file(s) to {target}",
                         TermColors.SUCCESS, cmd_runner.colored_output))
    return written
