"""
crypttab generation.
"""
from typing import Dict, Iterable

from cryptlayout.core.exceptions import ValidationError
from cryptlayout.core.models import EncryptedVolume

CRYPTTAB_HEADER = (
    "# /etc/crypttab: encrypted block devices.\n"
    "# Generated by cryptlayout.\n"
    "#\n"
    "# <name>\t<device>\t<password>\t<options>\n"
)


def crypttab_line(volume: EncryptedVolume) -> str:
    """
    Render the crypttab line of an encrypted volume.

    The mapper name is copied verbatim from the volume's identity.
    """
    if not volume.container_uuid:
        raise ValidationError(f"No LUKS UUID known for {volume.identity}")
    return (
        f"{volume.identity.mapper_name}\tUUID={volume.container_uuid}"
        f"\t{volume.keyfile or 'none'}\t{volume.options}"
    )


def generate_crypttab(volumes: Iterable[EncryptedVolume]) -> Dict[str, str]:
    """Crypttab lines keyed by mapper name, in unlock order"""
    return {volume.identity.mapper_name: crypttab_line(volume) for volume in volumes}


def render_crypttab(lines: Dict[str, str]) -> str:
    return CRYPTTAB_HEADER + "\n" + "\n".join(lines.values()) + "\n"
