"""
Storage data model.

Value objects shared by the planner, the provisioners and the boot artifact
generators. Everything produced by the planner is frozen: a ComputedLayout is
created once per run and only read afterwards.
"""
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple


class Filesystem(Enum):
    """Filesystems the provisioner can create"""
    VFAT = "vfat"
    SWAP = "swap"
    EXT4 = "ext4"
    BTRFS = "btrfs"
    XFS = "xfs"
    F2FS = "f2fs"

    @property
    def fstab_type(self) -> str:
        return self.value

    @property
    def checkable(self) -> bool:
        """Whether fsck does real work on this filesystem at boot"""
        return self in (Filesystem.VFAT, Filesystem.EXT4, Filesystem.XFS, Filesystem.F2FS)

    @property
    def supports_subvolumes(self) -> bool:
        return self is Filesystem.BTRFS


# Filesystems a user may pick for data partitions
DATA_FILESYSTEMS = (Filesystem.EXT4, Filesystem.BTRFS, Filesystem.XFS, Filesystem.F2FS)


class LayoutKind(Enum):
    """Partition layout presets; each one has exactly one planner"""
    STANDARD = "standard"
    MINIMAL = "minimal"
    CRYPTO_SUBVOLUME = "cryptosubvolume"
    CUSTOM = "custom"


class UnlockMethod(Enum):
    PASSPHRASE = "passphrase"
    KEYFILE = "keyfile"


class ContainerState(Enum):
    """What a resumed run finds on an encrypted partition"""
    BLANK = "blank"
    FORMATTED = "formatted"
    OPEN = "open"


@dataclass(frozen=True)
class DiskGeometry:
    total_mib: int
    sector_size: int = 512
    alignment_mib: int = 4


@dataclass(frozen=True)
class PartitionSpec:
    """A single GPT partition of a computed layout"""
    number: int
    name: str
    size_mib: int  # 0 = remainder of the disk
    type_guid: str
    filesystem: Filesystem
    mount_point: Optional[str] = None
    is_efi: bool = False
    is_swap: bool = False
    is_boot: bool = False
    is_encrypted: bool = False
    bios_bootable: bool = False
    holds_subvolumes: bool = False

    @property
    def is_remainder(self) -> bool:
        return self.size_mib == 0


@dataclass(frozen=True)
class SubvolumeSpec:
    name: str
    mount_point: str
    mount_options: str = "defaults,noatime"


@dataclass(frozen=True)
class CustomEntry:
    """One user-declared partition of the custom layout"""
    mount_point: str
    size_mib: int
    label: Optional[str] = None
    encrypted: Optional[bool] = None
    filesystem: Optional[Filesystem] = None


@dataclass(frozen=True)
class LayoutOptions:
    """Configuration knobs the planner reads; all have working defaults"""
    swap: bool = True
    encryption: bool = False
    filesystem: Filesystem = Filesystem.BTRFS
    hardened: bool = False
    alignment_mib: int = 4
    # Proportional shares of the capacity left after the fixed partitions
    weights: Tuple[Tuple[str, float], ...] = (("root", 0.06441), ("usr", 0.26838), ("var", 0.05368))
    minimums: Tuple[Tuple[str, int], ...] = (("root", 20480), ("usr", 20480), ("var", 8192))
    subvolumes: Optional[Tuple[SubvolumeSpec, ...]] = None
    boot_encryption: bool = False

    def weight(self, name: str) -> float:
        return dict(self.weights)[name]

    def minimum(self, name: str) -> int:
        return dict(self.minimums)[name]


@dataclass(frozen=True)
class ComputedLayout:
    partitions: Tuple[PartitionSpec, ...]
    total_mib: int
    subvolumes: Optional[Tuple[SubvolumeSpec, ...]] = None

    def remainder_partition(self) -> Optional[PartitionSpec]:
        for part in self.partitions:
            if part.is_remainder:
                return part
        return None

    def allocated_mib(self) -> int:
        """Sum of all explicitly sized partitions"""
        return sum(p.size_mib for p in self.partitions)

    def resolved_size(self, part: PartitionSpec) -> int:
        """Size of a partition with the remainder resolved against the total"""
        if part.is_remainder:
            return self.total_mib - self.allocated_mib()
        return part.size_mib

    def resolved_sizes(self) -> Dict[int, int]:
        return {p.number: self.resolved_size(p) for p in self.partitions}

    def root_partition(self) -> Optional[PartitionSpec]:
        """The partition the root filesystem lives on, directly or as a subvolume"""
        for part in self.partitions:
            if part.mount_point == "/":
                return part
        if self.subvolumes and any(sv.mount_point == "/" for sv in self.subvolumes):
            for part in self.partitions:
                if part.holds_subvolumes:
                    return part
        return None

    def encrypted_partitions(self) -> List[PartitionSpec]:
        return [p for p in self.partitions if p.is_encrypted]


# Mapper names travel unquoted through crypttab and the boot hooks
MAPPER_NAME_PATTERN = re.compile(r"[A-Za-z0-9_.+-]+")


def valid_mapper_name(name: str) -> bool:
    return isinstance(name, str) and MAPPER_NAME_PATTERN.fullmatch(name) is not None


@dataclass(frozen=True)
class VolumeIdentity:
    """
    The mapper-name identity of an unlocked container.

    Created once by the encryption provisioner. Every consumer (mounts,
    crypttab, hooks, cleanup) holds a reference to the same object and uses
    mapper_name verbatim.
    """
    mapper_name: str

    @property
    def mapped_path(self) -> str:
        return f"/dev/mapper/{self.mapper_name}"

    def __str__(self) -> str:
        return self.mapper_name


@dataclass
class EncryptedVolume:
    partition: PartitionSpec
    device: str
    identity: VolumeIdentity
    unlock: UnlockMethod
    container_uuid: Optional[str] = None
    keyfile: Optional[str] = None  # path inside the installed system
    staged_keyfile: Optional[str] = None  # path on the live system
    parent: Optional["EncryptedVolume"] = None
    options: str = "luks"
    opened: bool = False


@dataclass
class MountedEntity:
    """Something mounted into the target tree (or activated, for swap)"""
    key: str
    device: str
    mount_point: str
    filesystem: Filesystem
    options: str
    partition: PartitionSpec
    uuid: Optional[str] = None
    subvolume: Optional[str] = None
    volume: Optional[EncryptedVolume] = None

    @property
    def is_swap(self) -> bool:
        return self.filesystem is Filesystem.SWAP

    @property
    def depth(self) -> int:
        return mount_depth(self.mount_point)


@dataclass
class GeneratedHook:
    """An early-boot hook: runtime script plus its install manifest"""
    name: str
    hook_content: str
    install_content: str


@dataclass
class BootArtifacts:
    fstab: Dict[str, str] = field(default_factory=dict)
    crypttab: Dict[str, str] = field(default_factory=dict)
    hooks: Dict[str, GeneratedHook] = field(default_factory=dict)
    initramfs_conf: Optional[str] = None


def mount_depth(mount_point: str) -> int:
    """Number of path components below / ("/" is 0, "/var/log" is 2)"""
    return len([c for c in mount_point.split("/") if c])
