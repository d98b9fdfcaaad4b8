"""
Partition layout planning.

This module computes partition layouts from the disk capacity, the amount of
RAM and a layout kind. It performs no I/O: every function here is pure, so a
plan can be computed, displayed and validated before anything touches the disk.
"""
import logging
import re
from typing import Callable, Dict, List, Optional, Sequence

from cryptlayout.core.exceptions import ConfigError, DiskTooSmall, InvalidSpec, ValidationError
from cryptlayout.core.models import (
    DATA_FILESYSTEMS,
    ComputedLayout,
    CustomEntry,
    Filesystem,
    LayoutKind,
    LayoutOptions,
    PartitionSpec,
    SubvolumeSpec,
)
from cryptlayout.core.mount import determine_mount_options
from cryptlayout.utils.format import mib_to_human_readable

logger = logging.getLogger('cryptlayout')

# Fixed partition sizes
EFI_MIB = 512
BOOT_MIB = 2048

# Swap is twice the RAM, within these limits
SWAP_MIN_MIB = 4096
SWAP_MAX_MIB = 20480

# Smallest root for the layouts where root is the remainder
ROOT_MIN_MIB = 20480

# Mount points owned by the fixed system partitions
RESERVED_MOUNT_POINTS = ("/boot", "/boot/efi")

# Space kept free for the primary and backup GPT when the remainder is not last
GPT_OVERHEAD_MIB = 2

# Mount points are written into double-quoted strings of the boot hooks
UNSAFE_MOUNT_POINT_CHARS = re.compile(r"""[\s"'`$\\]""")


class PartitionTypes:
    """GPT partition type GUIDs"""
    EFI = "C12A7328-F81F-11D2-BA4B-00A0C93EC93B"
    LINUX_SWAP = "0657FD6D-A4AB-43C4-84E5-0933C84B4F4F"
    LINUX_ROOT_X86_64 = "4F68BCE3-E8CD-4DB1-96E7-FBCAF984B709"
    LINUX_USR_X86_64 = "8484680C-9521-48C6-9C11-B0720656F69E"
    LINUX_VAR = "4D21B016-B534-45C2-A9FB-5C16E091FD2D"
    LINUX_HOME = "933AC7E1-2EB4-4F13-B844-0E14E2AEF915"
    LINUX_FILESYSTEM = "0FC63DAF-8483-4772-8E79-3D69D8477DE4"
    LUKS = "CA7D7CCB-63ED-4C53-861C-1742536059CC"


_TYPE_BY_MOUNT_POINT = {
    "/": PartitionTypes.LINUX_ROOT_X86_64,
    "/usr": PartitionTypes.LINUX_USR_X86_64,
    "/var": PartitionTypes.LINUX_VAR,
    "/home": PartitionTypes.LINUX_HOME,
}


def floor_align(value: int, align: int) -> int:
    return (value // align) * align


def ceil_align(value: int, align: int) -> int:
    return -(-value // align) * align


def calculate_swap_mib(ram_mib: int, align: int = 4) -> int:
    """Twice the RAM, clamped to [SWAP_MIN_MIB, SWAP_MAX_MIB], aligned down"""
    swap = min(max(2 * ram_mib, SWAP_MIN_MIB), SWAP_MAX_MIB)
    return floor_align(swap, align)


def data_partition_type(mount_point: Optional[str], encrypted: bool) -> str:
    if encrypted:
        return PartitionTypes.LUKS
    return _TYPE_BY_MOUNT_POINT.get(mount_point or "", PartitionTypes.LINUX_FILESYSTEM)


def label_for_mount_point(mount_point: str) -> str:
    """Derive a partition label from the last segment of a mount point"""
    segments = [s for s in mount_point.split("/") if s]
    return segments[-1].upper() if segments else "ROOT"


def partition_table_size(layout: ComputedLayout, part: PartitionSpec) -> Optional[int]:
    """
    Size in MiB written to the partition table for a partition.

    None for a remainder in last position, which takes whatever is left.
    A remainder anywhere else leaves room for the backup GPT.
    """
    if not part.is_remainder:
        return part.size_mib
    if part.number == layout.partitions[-1].number:
        return None
    return layout.resolved_size(part) - GPT_OVERHEAD_MIB


def is_safe_mount_point(mount_point: str) -> bool:
    return UNSAFE_MOUNT_POINT_CHARS.search(mount_point) is None


def default_subvolumes(hardened: bool = False) -> List[SubvolumeSpec]:
    """Default btrfs subvolumes of the cryptosubvolume layout"""
    layout = [
        ("@", "/"),
        ("@home", "/home"),
        ("@usr", "/usr"),
        ("@var", "/var"),
        ("@var_log", "/var/log"),
        ("@snapshots", "/.snapshots"),
    ]
    return [
        SubvolumeSpec(name, mount_point, determine_mount_options(mount_point, Filesystem.BTRFS, hardened))
        for name, mount_point in layout
    ]


def _system_partitions(ram_mib: int, options: LayoutOptions, with_boot: bool = True) -> List[PartitionSpec]:
    """EFI, Boot and Swap, in that order, numbered from 1"""
    parts = [
        PartitionSpec(
            number=1, name="EFI", size_mib=EFI_MIB, type_guid=PartitionTypes.EFI,
            filesystem=Filesystem.VFAT, mount_point="/boot/efi", is_efi=True,
        )
    ]
    if with_boot:
        parts.append(PartitionSpec(
            number=len(parts) + 1, name="BOOT", size_mib=BOOT_MIB,
            type_guid=PartitionTypes.LUKS if options.boot_encryption else PartitionTypes.LINUX_FILESYSTEM,
            filesystem=options.filesystem, mount_point="/boot", is_boot=True, bios_bootable=True,
            is_encrypted=options.boot_encryption,
        ))
    if options.swap:
        parts.append(PartitionSpec(
            number=len(parts) + 1, name="SWAP",
            size_mib=calculate_swap_mib(ram_mib, options.alignment_mib),
            type_guid=PartitionTypes.LINUX_SWAP, filesystem=Filesystem.SWAP, is_swap=True,
        ))
    return parts


def _data_partition(number: int, name: str, size_mib: int, mount_point: Optional[str],
                    filesystem: Filesystem, encrypted: bool, holds_subvolumes: bool = False) -> PartitionSpec:
    return PartitionSpec(
        number=number, name=name, size_mib=size_mib,
        type_guid=data_partition_type(mount_point, encrypted),
        filesystem=filesystem, mount_point=mount_point,
        is_encrypted=encrypted, holds_subvolumes=holds_subvolumes,
    )


def _shrink_to_fit(sizes: Dict[str, int], minimums: Dict[str, int], budget: int, align: int) -> bool:
    """
    Reduce proportional shares until their sum leaves room for a remainder.

    The share with the most space above its minimum gives first; ties go to
    the earliest declared share. Returns False if nothing more can be reduced.
    """
    order = list(sizes)
    while sum(sizes.values()) >= budget:
        deficit = sum(sizes.values()) - budget + 1
        reducible = [(sizes[n] - minimums[n], -order.index(n), n) for n in order if sizes[n] > minimums[n]]
        if not reducible:
            return False
        room, _, name = max(reducible)
        take = min(deficit, room)
        sizes[name] = max(floor_align(sizes[name] - take, align), minimums[name])
        logger.debug(f"Shrinking {name} by {take} MiB to {sizes[name]} MiB")
    return True


def _plan_standard(disk_mib: int, ram_mib: int, options: LayoutOptions,
                   custom_spec: Optional[Sequence[CustomEntry]]) -> ComputedLayout:
    """EFI, Boot, Swap, Root, Usr, Var, Home (remainder)"""
    align = options.alignment_mib
    parts = _system_partitions(ram_mib, options)
    reserved = sum(p.size_mib for p in parts)

    names = ["root", "usr", "var"]
    minimums = {n: ceil_align(options.minimum(n), align) for n in names}
    required = reserved + sum(minimums.values()) + 1
    if disk_mib < required:
        raise DiskTooSmall(required, disk_mib)

    remaining = disk_mib - reserved
    sizes = {
        n: max(floor_align(int(remaining * options.weight(n)), align), minimums[n])
        for n in names
    }
    if not _shrink_to_fit(sizes, minimums, remaining, align):
        raise DiskTooSmall(required, disk_mib)

    for name, mount_point in (("root", "/"), ("usr", "/usr"), ("var", "/var")):
        parts.append(_data_partition(len(parts) + 1, name.upper(), sizes[name], mount_point,
                                     options.filesystem, options.encryption))
    parts.append(_data_partition(len(parts) + 1, "HOME", 0, "/home", options.filesystem, options.encryption))

    return ComputedLayout(partitions=tuple(parts), total_mib=disk_mib)


def _plan_minimal(disk_mib: int, ram_mib: int, options: LayoutOptions,
                  custom_spec: Optional[Sequence[CustomEntry]]) -> ComputedLayout:
    """EFI, Swap, Root (remainder)"""
    parts = _system_partitions(ram_mib, options, with_boot=False)
    required = sum(p.size_mib for p in parts) + ROOT_MIN_MIB
    if disk_mib < required:
        raise DiskTooSmall(required, disk_mib)

    parts.append(_data_partition(len(parts) + 1, "ROOT", 0, "/", options.filesystem, options.encryption))
    return ComputedLayout(partitions=tuple(parts), total_mib=disk_mib)


def _plan_crypto_subvolume(disk_mib: int, ram_mib: int, options: LayoutOptions,
                           custom_spec: Optional[Sequence[CustomEntry]]) -> ComputedLayout:
    """EFI, Boot, Swap, then one btrfs pool (LUKS when encrypted) holding subvolumes"""
    if not options.filesystem.supports_subvolumes:
        raise ConfigError(
            f"The cryptosubvolume layout needs btrfs, not {options.filesystem.value}"
        )

    parts = _system_partitions(ram_mib, options)
    required = sum(p.size_mib for p in parts) + ROOT_MIN_MIB
    if disk_mib < required:
        raise DiskTooSmall(required, disk_mib)

    parts.append(_data_partition(len(parts) + 1, "LUKS", 0, None, Filesystem.BTRFS,
                                 options.encryption, holds_subvolumes=True))

    subvolumes = tuple(options.subvolumes) if options.subvolumes else tuple(default_subvolumes(options.hardened))
    if not any(sv.mount_point == "/" for sv in subvolumes):
        raise ValidationError("Subvolume layout has no subvolume mounted at /")

    return ComputedLayout(partitions=tuple(parts), total_mib=disk_mib, subvolumes=subvolumes)


def validate_custom_spec(entries: Sequence[CustomEntry], align: int = 4) -> None:
    """
    Validate user-declared partitions before any allocation.

    Raises:
        InvalidSpec: On duplicate or reserved mount points, negative sizes,
            more than one remainder entry or an unusable filesystem
    """
    if not entries:
        raise InvalidSpec("Custom layout declares no partitions")

    seen = set()
    remainders = []
    for entry in entries:
        mp = entry.mount_point
        if not mp.startswith("/") or (mp != "/" and mp.endswith("/")) or "//" in mp:
            raise InvalidSpec(f"Mount point must be an absolute normalized path: {mp!r}")
        if not is_safe_mount_point(mp):
            raise InvalidSpec(f"Mount point {mp!r} contains characters the boot hooks cannot quote")
        if mp in seen:
            raise InvalidSpec(f"Mount point {mp} is declared more than once")
        seen.add(mp)
        if mp in RESERVED_MOUNT_POINTS:
            raise InvalidSpec(f"Mount point {mp} is reserved for a system partition")
        if isinstance(entry.size_mib, bool) or not isinstance(entry.size_mib, int) or entry.size_mib < 0:
            raise InvalidSpec(f"Invalid size for {mp}: {entry.size_mib!r}")
        if entry.size_mib == 0:
            remainders.append(mp)
        elif floor_align(entry.size_mib, align) == 0:
            raise InvalidSpec(f"Size of {mp} ({entry.size_mib} MiB) is below the {align} MiB alignment")
        if entry.filesystem is not None and entry.filesystem not in DATA_FILESYSTEMS:
            raise InvalidSpec(f"Filesystem {entry.filesystem.value} cannot be used for {mp}")

    labels = ["EFI", "BOOT", "SWAP"]
    for entry in entries:
        label = entry.label or label_for_mount_point(entry.mount_point)
        if label in labels:
            raise InvalidSpec(f"Partition label {label} ({entry.mount_point}) is used more than once")
        labels.append(label)

    if len(remainders) > 1:
        raise InvalidSpec(
            f"Only one partition may use the remaining space (size 0), got {len(remainders)}: "
            + ", ".join(remainders)
        )
    if "/" not in seen:
        raise InvalidSpec("Custom layout must declare a / partition")


def _plan_custom(disk_mib: int, ram_mib: int, options: LayoutOptions,
                 custom_spec: Optional[Sequence[CustomEntry]]) -> ComputedLayout:
    """EFI, Boot, Swap, then the user's partitions in declared order"""
    align = options.alignment_mib
    entries = list(custom_spec or [])
    validate_custom_spec(entries, align)
    if options.subvolumes:
        raise ConfigError("Subvolumes are only supported by the cryptosubvolume layout")

    parts = _system_partitions(ram_mib, options)
    reserved = sum(p.size_mib for p in parts)
    allocated = sum(floor_align(e.size_mib, align) for e in entries)
    required = reserved + allocated + 1
    if disk_mib < required:
        raise DiskTooSmall(required, disk_mib)

    for entry in entries:
        encrypted = options.encryption if entry.encrypted is None else entry.encrypted
        parts.append(_data_partition(
            len(parts) + 1,
            entry.label or label_for_mount_point(entry.mount_point),
            floor_align(entry.size_mib, align),
            entry.mount_point,
            entry.filesystem or options.filesystem,
            encrypted,
        ))

    return ComputedLayout(partitions=tuple(parts), total_mib=disk_mib)


_PLANNERS: Dict[LayoutKind, Callable[..., ComputedLayout]] = {
    LayoutKind.STANDARD: _plan_standard,
    LayoutKind.MINIMAL: _plan_minimal,
    LayoutKind.CRYPTO_SUBVOLUME: _plan_crypto_subvolume,
    LayoutKind.CUSTOM: _plan_custom,
}


def validate_mount_points(layout: ComputedLayout) -> None:
    """
    Reject layouts where two elements claim the same mount point.

    Partitions and subvolumes share one namespace: a physical /boot and a
    @boot subvolume at /boot conflict.

    Raises:
        ValidationError: On any conflict or malformed layout
    """
    claims: Dict[str, str] = {}

    def claim(mount_point: str, owner: str) -> None:
        if mount_point in claims:
            raise ValidationError(
                f"Mount point {mount_point} is claimed by both {claims[mount_point]} and {owner}"
            )
        claims[mount_point] = owner

    for part in layout.partitions:
        if part.mount_point and not part.is_swap:
            claim(part.mount_point, f"partition {part.number} ({part.name})")

    if layout.subvolumes:
        if not any(p.holds_subvolumes for p in layout.partitions):
            raise ValidationError("Layout declares subvolumes but no partition holds them")
        names = set()
        for sv in layout.subvolumes:
            if sv.name in names:
                raise ValidationError(f"Subvolume {sv.name} is declared more than once")
            names.add(sv.name)
            if not sv.mount_point.startswith("/"):
                raise ValidationError(f"Subvolume {sv.name} has a relative mount point: {sv.mount_point}")
            if not is_safe_mount_point(sv.mount_point):
                raise ValidationError(f"Subvolume {sv.name} mount point {sv.mount_point!r} cannot be quoted")
            claim(sv.mount_point, f"subvolume {sv.name}")

        # Subvolumes are mounted before the partitions
        for part in layout.partitions:
            if not part.mount_point or part.is_swap or part.mount_point == "/":
                continue
            for sv in layout.subvolumes:
                if sv.mount_point.startswith(part.mount_point + "/"):
                    raise ValidationError(
                        f"Subvolume {sv.name} at {sv.mount_point} lies below partition {part.name} ({part.mount_point})"
                    )

    remainders = [p for p in layout.partitions if p.is_remainder]
    if len(remainders) > 1:
        raise InvalidSpec(f"Layout has {len(remainders)} remainder partitions")


def compute_layout(
    disk_mib: int,
    ram_mib: int,
    kind: LayoutKind,
    custom_spec: Optional[Sequence[CustomEntry]] = None,
    options: Optional[LayoutOptions] = None,
) -> ComputedLayout:
    """
    Compute the partition layout for a disk.

    Args:
        disk_mib: Total disk capacity in MiB
        ram_mib: Installed memory in MiB (drives the swap size)
        kind: Layout preset
        custom_spec: User partitions for the custom kind
        options: Layout options; defaults apply when omitted

    Returns:
        The computed layout

    Raises:
        ConfigError: If the inputs are unusable
        DiskTooSmall: If the layout does not fit
        InvalidSpec: If the custom specification is malformed
        ValidationError: If two layout elements claim the same mount point
    """
    if not isinstance(kind, LayoutKind):
        try:
            kind = LayoutKind(kind)
        except ValueError:
            raise ConfigError(f"Unknown layout kind: {kind!r}")
    for name, value in (("disk size", disk_mib), ("RAM size", ram_mib)):
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ConfigError(f"Invalid {name}: {value!r}")

    options = options or LayoutOptions()
    if kind is not LayoutKind.CUSTOM and custom_spec:
        raise ConfigError(f"Custom partitions given for the {kind.value} layout")
    if options.boot_encryption and (kind is not LayoutKind.CRYPTO_SUBVOLUME or not options.encryption):
        raise ConfigError("Boot encryption requires the cryptosubvolume layout with encryption enabled")

    layout = _PLANNERS[kind](disk_mib, ram_mib, options, custom_spec)
    validate_mount_points(layout)

    remainder = layout.remainder_partition()
    if remainder is not None:
        if partition_table_size(layout, remainder) is None:
            needed = 1
        else:
            needed = GPT_OVERHEAD_MIB + options.alignment_mib
        if layout.resolved_size(remainder) < needed:
            raise DiskTooSmall(layout.allocated_mib() + needed, disk_mib)

    return layout


def format_layout_summary(layout: ComputedLayout) -> str:
    """Render a layout as a fixed-width table"""
    lines = [f"Partition layout (total: {mib_to_human_readable(layout.total_mib)}):"]
    lines.append(f"{'NUM':<5}{'NAME':<10}{'SIZE':>14}  {'FS':<7}{'MOUNT':<14}FLAGS")
    lines.append("-" * 64)
    for part in layout.partitions:
        size = layout.resolved_size(part)
        size_str = f"{size} MiB" + ("*" if part.is_remainder else "")
        flags = [flag for flag, on in (
            ("efi", part.is_efi), ("boot", part.is_boot), ("swap", part.is_swap),
            ("luks", part.is_encrypted), ("subvols", part.holds_subvolumes),
        ) if on]
        lines.append(
            f"{part.number:<5}{part.name:<10}{size_str:>14}  {part.filesystem.value:<7}"
            f"{part.mount_point or '-':<14}{','.join(flags)}"
        )
    if layout.subvolumes:
        lines.append("")
        lines.append("Subvolumes:")
        for sv in layout.subvolumes:
            lines.append(f"  {sv.name:<12}{sv.mount_point:<14}{sv.mount_options}")
    lines.append("(* remainder of the disk)")
    return "\n".join(lines)
