"""
mkinitcpio configuration drop-in.
"""
from typing import Iterable, List, Sequence

from cryptlayout.config.hooks import MOUNT_HOOK, UNLOCK_HOOK
from cryptlayout.core.models import EncryptedVolume

DROPIN_PATH = "/etc/mkinitcpio.conf.d/cryptlayout.conf"

DEFAULT_HOOKS = (
    "base", "udev", "autodetect", "microcode", "modconf", "kms",
    "keyboard", "keymap", "consolefont", "block", "filesystems", "fsck",
)


def initramfs_hooks(encrypted: bool, base: Sequence[str] = DEFAULT_HOOKS) -> List[str]:
    """HOOKS array; the generated hooks replace `filesystems` when encryption is in use"""
    hooks = list(base)
    if not encrypted:
        return hooks
    position = hooks.index("filesystems") if "filesystems" in hooks else len(hooks)
    hooks[position:position + 1] = [UNLOCK_HOOK, MOUNT_HOOK]
    return hooks


def initramfs_files(volumes: Iterable[EncryptedVolume]) -> List[str]:
    """FILES array: crypttab plus every keyfile"""
    return ["/etc/crypttab"] + [volume.keyfile for volume in volumes if volume.keyfile]


def render_dropin(volumes: Sequence[EncryptedVolume]) -> str:
    hooks = initramfs_hooks(bool(volumes))
    files = initramfs_files(volumes)
    return (
        "# Generated by cryptlayout\n"
        f"HOOKS=({' '.join(hooks)})\n"
        f"FILES=({' '.join(files)})\n"
    )
