"""
Deployment settings.

Settings are read from a TOML file with two tables:

    [disk]
    device = "/dev/nvme0n1"
    layout = "custom"            # standard, minimal, cryptosubvolume, custom
    filesystem = "btrfs"
    encryption = true
    swap = false
    luks_mapper_name = "Crypt-Root"
    integrity = false
    partitions = [{"/" = "30GiB"}, {"/home" = 0}]

    [install]
    target = "/target"
    resume = false
    rebuild_initramfs = true

Custom partitions are either full tables (mount_point, size, label,
encrypted, filesystem) or the compact one-key form shown above. A size of 0
means "the rest of the disk".
"""
import logging
import tomllib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from cryptlayout.core.encryption import DEFAULT_BOOT_MAPPER, DEFAULT_ROOT_MAPPER
from cryptlayout.core.exceptions import ConfigError
from cryptlayout.core.models import (
    CustomEntry,
    Filesystem,
    LayoutKind,
    LayoutOptions,
    SubvolumeSpec,
    valid_mapper_name,
)
from cryptlayout.core.mount import determine_mount_options
from cryptlayout.utils.format import parse_size_mib

logger = logging.getLogger('cryptlayout')

DEFAULT_TARGET = "/target"

_DISK_KEYS = {
    "device", "layout", "filesystem", "encryption", "swap", "luks_mapper_name",
    "boot_encryption", "luks_boot_mapper_name", "integrity",
    "encryption_password", "ram_mib", "hardened", "weights", "minimums",
    "partitions", "subvolumes",
}
_INSTALL_KEYS = {"target", "resume", "rebuild_initramfs"}
_PARTITION_KEYS = {"mount_point", "size", "label", "encrypted", "filesystem"}
_SUBVOLUME_KEYS = {"name", "mount_point", "options"}


@dataclass
class DeploymentSettings:
    """Everything a provisioning run needs to know"""
    device: Optional[str] = None
    layout: LayoutKind = LayoutKind.STANDARD
    filesystem: Filesystem = Filesystem.BTRFS
    encryption: bool = False
    swap: bool = True
    luks_mapper_name: str = DEFAULT_ROOT_MAPPER
    boot_encryption: bool = False
    luks_boot_mapper_name: str = DEFAULT_BOOT_MAPPER
    integrity: bool = False
    encryption_password: Optional[str] = field(default=None, repr=False)
    ram_mib: Optional[int] = None
    hardened: bool = False
    weights: Dict[str, float] = field(default_factory=dict)
    minimums: Dict[str, int] = field(default_factory=dict)
    partitions: List[CustomEntry] = field(default_factory=list)
    subvolumes: Optional[List[SubvolumeSpec]] = None
    target: str = DEFAULT_TARGET
    resume: bool = False
    rebuild_initramfs: bool = False

    def layout_options(self) -> LayoutOptions:
        defaults = LayoutOptions()
        weights = dict(defaults.weights)
        weights.update(self.weights)
        minimums = dict(defaults.minimums)
        minimums.update(self.minimums)
        return LayoutOptions(
            swap=self.swap,
            encryption=self.encryption,
            filesystem=self.filesystem,
            hardened=self.hardened,
            weights=tuple(weights.items()),
            minimums=tuple(minimums.items()),
            subvolumes=tuple(self.subvolumes) if self.subvolumes else None,
            boot_encryption=self.boot_encryption,
        )

    def validate(self) -> None:
        """
        Check the settings that cannot be checked field by field.

        Raises:
            ConfigError: On unusable mapper names or a boot encryption setup
                the layout cannot carry
        """
        for key in ("luks_mapper_name", "luks_boot_mapper_name"):
            name = getattr(self, key)
            if not valid_mapper_name(name):
                raise ConfigError(f"Invalid {key} {name!r}: use letters, digits, _ . + - only")
        if self.boot_encryption:
            if self.layout is not LayoutKind.CRYPTO_SUBVOLUME:
                raise ConfigError("Boot encryption requires the cryptosubvolume layout")
            if not self.encryption:
                raise ConfigError("Boot encryption requires encryption to be enabled")
            if self.luks_boot_mapper_name == self.luks_mapper_name:
                raise ConfigError(f"Root and boot volumes cannot both map to {self.luks_mapper_name}")


def _expect(value: Any, kind: type, name: str) -> Any:
    if kind is int and isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    if not isinstance(value, kind):
        raise ConfigError(f"{name} must be of type {kind.__name__}, got {value!r}")
    return value


def _size(value: Any, name: str) -> int:
    try:
        return parse_size_mib(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid size for {name}: {e}") from e


def _filesystem(value: Any, name: str) -> Filesystem:
    try:
        return Filesystem(_expect(value, str, name).lower())
    except ValueError:
        raise ConfigError(f"Unknown filesystem for {name}: {value!r}")


def parse_layout_kind(value: Any) -> LayoutKind:
    try:
        return LayoutKind(_expect(value, str, "layout").lower())
    except ValueError:
        choices = ", ".join(kind.value for kind in LayoutKind)
        raise ConfigError(f"Unknown layout {value!r} (choose from {choices})")


def parse_partitions(value: Any) -> List[CustomEntry]:
    """
    Parse custom partitions from full tables or the compact form.

    Raises:
        ConfigError: On unknown keys or malformed values
    """
    if isinstance(value, Mapping):
        items: List[Tuple[str, Any]] = list(value.items())
        return [CustomEntry(mp, _size(size, mp)) for mp, size in items]

    entries = []
    for item in _expect(value, list, "partitions"):
        item = _expect(item, dict, "partition entry")
        if "mount_point" not in item:
            if len(item) != 1:
                raise ConfigError(f"Compact partition entries hold exactly one mount point: {item!r}")
            (mount_point, size), = item.items()
            entries.append(CustomEntry(mount_point, _size(size, mount_point)))
            continue

        unknown = set(item) - _PARTITION_KEYS
        if unknown:
            raise ConfigError(f"Unknown partition keys: {', '.join(sorted(unknown))}")
        mount_point = _expect(item["mount_point"], str, "mount_point")
        entries.append(CustomEntry(
            mount_point=mount_point,
            size_mib=_size(item.get("size", 0), mount_point),
            label=_expect(item["label"], str, "label") if "label" in item else None,
            encrypted=_expect(item["encrypted"], bool, "encrypted") if "encrypted" in item else None,
            filesystem=_filesystem(item["filesystem"], mount_point) if "filesystem" in item else None,
        ))
    return entries


def parse_subvolumes(value: Any, hardened: bool = False) -> List[SubvolumeSpec]:
    subvolumes = []
    for item in _expect(value, list, "subvolumes"):
        item = _expect(item, dict, "subvolume entry")
        unknown = set(item) - _SUBVOLUME_KEYS
        if unknown:
            raise ConfigError(f"Unknown subvolume keys: {', '.join(sorted(unknown))}")
        try:
            name = _expect(item["name"], str, "name")
            mount_point = _expect(item["mount_point"], str, "mount_point")
        except KeyError as e:
            raise ConfigError(f"Subvolume entry lacks {e.args[0]}: {item!r}")
        options = item.get("options") or determine_mount_options(mount_point, Filesystem.BTRFS, hardened)
        subvolumes.append(SubvolumeSpec(name, mount_point, _expect(options, str, "options")))
    return subvolumes


def _ratios(value: Any, name: str, parse) -> Dict[str, Any]:
    table = _expect(value, dict, name)
    unknown = set(table) - {"root", "usr", "var"}
    if unknown:
        raise ConfigError(f"Unknown {name} keys: {', '.join(sorted(unknown))}")
    return {key: parse(val, f"{name}.{key}") for key, val in table.items()}


def _weight(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 < value < 1:
        raise ConfigError(f"{name} must be a number between 0 and 1, got {value!r}")
    return float(value)


def parse_settings(data: Mapping[str, Any]) -> DeploymentSettings:
    """
    Build DeploymentSettings from parsed TOML.

    Raises:
        ConfigError: If the settings are invalid
    """
    unknown = set(data) - {"disk", "install"}
    if unknown:
        raise ConfigError(f"Unknown settings tables: {', '.join(sorted(unknown))}")

    disk = _expect(data.get("disk", {}), dict, "[disk]")
    install = _expect(data.get("install", {}), dict, "[install]")
    for table, keys, name in ((disk, _DISK_KEYS, "disk"), (install, _INSTALL_KEYS, "install")):
        extra = set(table) - keys
        if extra:
            raise ConfigError(f"Unknown keys in [{name}]: {', '.join(sorted(extra))}")

    settings = DeploymentSettings()
    if "device" in disk:
        settings.device = _expect(disk["device"], str, "device")
    if "layout" in disk:
        settings.layout = parse_layout_kind(disk["layout"])
    if "filesystem" in disk:
        settings.filesystem = _filesystem(disk["filesystem"], "filesystem")
    for key in ("encryption", "swap", "hardened", "boot_encryption", "integrity"):
        if key in disk:
            setattr(settings, key, _expect(disk[key], bool, key))
    for key in ("luks_mapper_name", "luks_boot_mapper_name"):
        if key in disk:
            setattr(settings, key, _expect(disk[key], str, key))
    if "encryption_password" in disk:
        settings.encryption_password = _expect(disk["encryption_password"], str, "encryption_password")
    if "ram_mib" in disk:
        settings.ram_mib = _size(disk["ram_mib"], "ram_mib")
    if "weights" in disk:
        settings.weights = _ratios(disk["weights"], "weights", _weight)
    if "minimums" in disk:
        settings.minimums = _ratios(disk["minimums"], "minimums", _size)
    if "partitions" in disk:
        settings.partitions = parse_partitions(disk["partitions"])
    if "subvolumes" in disk:
        settings.subvolumes = parse_subvolumes(disk["subvolumes"], settings.hardened)

    if "target" in install:
        settings.target = _expect(install["target"], str, "target")
    for key in ("resume", "rebuild_initramfs"):
        if key in install:
            setattr(settings, key, _expect(install[key], bool, key))

    if settings.partitions and settings.layout is not LayoutKind.CUSTOM:
        raise ConfigError(f"partitions are only used by the custom layout, not {settings.layout.value}")
    if settings.layout is LayoutKind.CUSTOM and not settings.partitions:
        raise ConfigError("The custom layout needs a partitions list")
    settings.validate()

    return settings


def load_settings(path: str) -> DeploymentSettings:
    """
    Load deployment settings from a TOML file.

    Raises:
        ConfigError: If the file cannot be read or is invalid
    """
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read settings file {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e

    logger.debug(f"Loaded settings from {path}")
    return parse_settings(data)
