"""
fstab generation.

One line per mounted entity, always keyed by filesystem UUID.
"""
import logging
from typing import Dict, Iterable

from cryptlayout.core.exceptions import ValidationError
from cryptlayout.core.models import MountedEntity

logger = logging.getLogger('cryptlayout')

FSTAB_HEADER = (
    "# /etc/fstab: static file system information.\n"
    "# Generated by cryptlayout.\n"
    "#\n"
    "# <file system>\t<mount point>\t<type>\t<options>\t<dump> <pass>\n"
)


def fstab_pass(entity: MountedEntity) -> int:
    """fsck pass: 1 for /, 2 for other checkable filesystems, 0 otherwise"""
    if entity.is_swap or entity.subvolume:
        return 0
    if entity.mount_point == "/":
        return 1
    return 2 if entity.filesystem.checkable else 0


def fstab_line(entity: MountedEntity) -> str:
    """
    Render the fstab line of a mounted entity.

    Raises:
        ValidationError: If the entity's UUID has not been resolved
    """
    if not entity.uuid:
        raise ValidationError(f"No UUID known for {entity.key} ({entity.device})")

    if entity.is_swap:
        return f"UUID={entity.uuid}\tnone\tswap\tdefaults\t0 0"

    options = entity.options
    if entity.subvolume:
        options = f"subvol={entity.subvolume},{options}"
    return (
        f"UUID={entity.uuid}\t{entity.mount_point}\t{entity.filesystem.fstab_type}"
        f"\t{options}\t0 {fstab_pass(entity)}"
    )


def generate_fstab(mounted: Iterable[MountedEntity]) -> Dict[str, str]:
    """Fstab lines keyed by entity key, in mount order"""
    return {entity.key: fstab_line(entity) for entity in mounted}


def render_fstab(lines: Dict[str, str]) -> str:
    return FSTAB_HEADER + "\n" + "\n".join(lines.values()) + "\n"
