"""
Keyfile handling for chained volume unlocking.

Secondary encrypted volumes are unlocked at boot by keyfiles that live inside
the root volume. Keyfiles are generated in a staging directory on the live
system, enrolled in their container and copied into the target once its root
filesystem is mounted.
"""
import logging
from pathlib import Path
from typing import Iterable, List

from cryptlayout.config import create_directory, target_path
from cryptlayout.utils.command import CommandRunner
from cryptlayout.core.exceptions import CommandFailed, EncryptionError
from cryptlayout.core.models import EncryptedVolume, VolumeIdentity
from cryptlayout.core.steps import StepJournal

logger = logging.getLogger('cryptlayout')

KEYFILE_DIR = "/etc/cryptsetup-keys.d"
STAGING_DIR = "/run/cryptlayout/keys"
KEYFILE_BYTES = 512


def keyfile_path(identity: VolumeIdentity) -> str:
    """Path of a volume's keyfile inside the installed system"""
    return f"{KEYFILE_DIR}/{identity.mapper_name}.key"


def generate_keyfile(
    identity: VolumeIdentity,
    cmd_runner: CommandRunner,
    journal: StepJournal,
    staging_dir: str = STAGING_DIR,
) -> str:
    """
    Generate a random keyfile in the staging directory.

    The staged copy is shredded when the journal unwinds.

    Returns:
        Path of the staged keyfile

    Raises:
        EncryptionError: If the keyfile cannot be created
    """
    staged = f"{staging_dir}/{identity.mapper_name}.key"
    create_directory(Path(staging_dir), cmd_runner, "keyfile staging", mode=0o700)
    try:
        cmd_runner.run(["dd", "if=/dev/urandom", f"of={staged}", f"bs={KEYFILE_BYTES}", "count=1", "status=none"])
        cmd_runner.run(["chmod", "0400", staged])
    except CommandFailed as e:
        raise EncryptionError(f"Failed to generate keyfile for {identity}: {e}") from e
    journal.record(f"shred {staged}", lambda: cmd_runner.run(["shred", "-u", staged]))
    logger.info(f"Generated keyfile for {identity}")
    return staged


def install_keyfiles(volumes: Iterable[EncryptedVolume], target: str, cmd_runner: CommandRunner) -> List[str]:
    """
    Copy staged keyfiles into the mounted target root.

    Args:
        volumes: Encrypted volumes; only those unlocked by keyfile are handled
        target: Target root directory
        cmd_runner: CommandRunner instance for executing commands

    Returns:
        Installed keyfile paths, as seen from the installed system

    Raises:
        EncryptionError: If a keyfile is missing or cannot be copied
    """
    installed = []
    for volume in volumes:
        if not volume.keyfile:
            continue
        if not volume.staged_keyfile:
            raise EncryptionError(f"No staged keyfile for {volume.identity}")
        dest = target_path(target, volume.keyfile)
        try:
            cmd_runner.run(["install", "-d", "-m", "0700", str(dest.parent)])
            cmd_runner.run(["install", "-D", "-m", "0000", volume.staged_keyfile, str(dest)])
        except CommandFailed as e:
            raise EncryptionError(f"Failed to install keyfile {volume.keyfile}: {e}") from e
        installed.append(volume.keyfile)
        logger.info(f"Installed keyfile {volume.keyfile}")
    return installed
