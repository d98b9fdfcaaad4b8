import pytest

from cryptlayout.core.exceptions import ConfigError, DiskTooSmall, InvalidSpec, ValidationError
from cryptlayout.core.layout import (
    PartitionTypes,
    calculate_swap_mib,
    compute_layout,
    format_layout_summary,
    label_for_mount_point,
    partition_table_size,
)
from cryptlayout.core.models import (
    CustomEntry,
    Filesystem,
    LayoutKind,
    LayoutOptions,
    SubvolumeSpec,
)


def sizes(layout):
    return {p.name: layout.resolved_size(p) for p in layout.partitions}


def test_standard_layout_on_128_gib_with_8_gib_ram(standard_layout):
    assert [p.name for p in standard_layout.partitions] == ["EFI", "BOOT", "SWAP", "ROOT", "USR", "VAR", "HOME"]
    assert sizes(standard_layout) == {
        "EFI": 512,
        "BOOT": 2048,
        "SWAP": 16384,
        "ROOT": 20480,
        "USR": 30092,
        "VAR": 8192,
        "HOME": 53364,
    }
    assert sum(sizes(standard_layout).values()) == 131072
    assert standard_layout.remainder_partition().name == "HOME"


def test_standard_layout_fixed_partitions(standard_layout):
    efi, boot, swap = standard_layout.partitions[:3]
    assert efi.is_efi and efi.filesystem is Filesystem.VFAT and efi.mount_point == "/boot/efi"
    assert boot.is_boot and boot.bios_bootable and boot.mount_point == "/boot"
    assert swap.is_swap and swap.mount_point is None
    assert efi.type_guid == PartitionTypes.EFI
    assert swap.type_guid == PartitionTypes.LINUX_SWAP


@pytest.mark.parametrize("disk_mib", [80000, 131072, 500000, 1907729])
@pytest.mark.parametrize("ram_mib", [1024, 8192, 65536])
def test_standard_resolved_sizes_cover_the_disk(disk_mib, ram_mib):
    layout = compute_layout(disk_mib, ram_mib, LayoutKind.STANDARD)
    assert sum(layout.resolved_sizes().values()) == disk_mib
    assert all(size > 0 for size in layout.resolved_sizes().values())
    assert layout.allocated_mib() < disk_mib
    for part in layout.partitions:
        if not part.is_remainder:
            assert part.size_mib % 4 == 0


def test_standard_layout_respects_minimums():
    layout = compute_layout(68097, 8192, LayoutKind.STANDARD)
    assert sizes(layout)["ROOT"] == 20480
    assert sizes(layout)["USR"] == 20480
    assert sizes(layout)["VAR"] == 8192
    assert sizes(layout)["HOME"] == 1


def test_standard_layout_too_small():
    with pytest.raises(DiskTooSmall) as excinfo:
        compute_layout(60000, 8192, LayoutKind.STANDARD)
    assert excinfo.value.required_mib == 512 + 2048 + 16384 + 20480 + 20480 + 8192 + 1
    assert excinfo.value.available_mib == 60000


def test_standard_shrinks_largest_share_first():
    options = LayoutOptions(weights=(("root", 0.5), ("usr", 0.4), ("var", 0.2)))
    layout = compute_layout(131072, 8192, LayoutKind.STANDARD, options=options)
    assert sizes(layout)["ROOT"] == 44852
    assert sizes(layout)["USR"] == 44848
    assert sizes(layout)["VAR"] == 22424
    assert sizes(layout)["HOME"] == 4
    assert sum(sizes(layout).values()) == 131072


def test_swap_can_be_disabled():
    layout = compute_layout(131072, 8192, LayoutKind.STANDARD, options=LayoutOptions(swap=False))
    assert not any(p.is_swap for p in layout.partitions)
    assert [p.number for p in layout.partitions] == list(range(1, 7))


@pytest.mark.parametrize("ram_mib,expected", [
    (1024, 4096),
    (2048, 4096),
    (5000, 10000),
    (8192, 16384),
    (10240, 20480),
    (65536, 20480),
    (3001, 6000),
])
def test_swap_size(ram_mib, expected):
    assert calculate_swap_mib(ram_mib) == expected


def test_compute_layout_is_pure():
    first = compute_layout(131072, 8192, LayoutKind.STANDARD)
    second = compute_layout(131072, 8192, LayoutKind.STANDARD)
    assert first == second


def test_minimal_layout_has_no_boot_partition():
    layout = compute_layout(65536, 8192, LayoutKind.MINIMAL)
    assert [p.name for p in layout.partitions] == ["EFI", "SWAP", "ROOT"]
    assert sizes(layout)["ROOT"] == 65536 - 512 - 16384
    assert layout.root_partition().mount_point == "/"


def test_minimal_layout_too_small():
    with pytest.raises(DiskTooSmall):
        compute_layout(20000, 8192, LayoutKind.MINIMAL)


def test_cryptosubvolume_layout(subvolume_layout):
    names = [p.name for p in subvolume_layout.partitions]
    assert names == ["EFI", "BOOT", "SWAP", "LUKS"]
    pool = subvolume_layout.partitions[-1]
    assert pool.holds_subvolumes and pool.is_encrypted and pool.is_remainder
    assert pool.type_guid == PartitionTypes.LUKS
    assert pool.filesystem is Filesystem.BTRFS
    assert subvolume_layout.root_partition() == pool
    assert [(sv.name, sv.mount_point) for sv in subvolume_layout.subvolumes] == [
        ("@", "/"),
        ("@home", "/home"),
        ("@usr", "/usr"),
        ("@var", "/var"),
        ("@var_log", "/var/log"),
        ("@snapshots", "/.snapshots"),
    ]


def test_cryptosubvolume_requires_btrfs():
    with pytest.raises(ConfigError):
        compute_layout(131072, 8192, LayoutKind.CRYPTO_SUBVOLUME,
                       options=LayoutOptions(filesystem=Filesystem.EXT4))


def test_boot_subvolume_conflicts_with_boot_partition():
    options = LayoutOptions(subvolumes=(SubvolumeSpec("@", "/"), SubvolumeSpec("@boot", "/boot")))
    with pytest.raises(ValidationError):
        compute_layout(131072, 8192, LayoutKind.CRYPTO_SUBVOLUME, options=options)


def test_subvolumes_need_a_root():
    options = LayoutOptions(subvolumes=(SubvolumeSpec("@home", "/home"),))
    with pytest.raises(ValidationError):
        compute_layout(131072, 8192, LayoutKind.CRYPTO_SUBVOLUME, options=options)


def test_encryption_flags_data_partitions(encrypted_layout):
    for part in encrypted_layout.partitions:
        data = not (part.is_efi or part.is_boot or part.is_swap)
        assert part.is_encrypted == data
        if data:
            assert part.type_guid == PartitionTypes.LUKS


def test_custom_compact_layout():
    layout = compute_layout(
        65536, 8192, LayoutKind.CUSTOM,
        custom_spec=[CustomEntry("/", 30720), CustomEntry("/home", 0)],
        options=LayoutOptions(swap=False),
    )
    assert [p.name for p in layout.partitions] == ["EFI", "BOOT", "ROOT", "HOME"]
    assert sizes(layout)["HOME"] == 65536 - 2560 - 30720 == 32256


def test_custom_remainder_not_positive():
    with pytest.raises(DiskTooSmall):
        compute_layout(
            33280, 8192, LayoutKind.CUSTOM,
            custom_spec=[CustomEntry("/", 30720), CustomEntry("/home", 0)],
            options=LayoutOptions(swap=False),
        )


def test_custom_two_remainders_rejected():
    with pytest.raises(InvalidSpec):
        compute_layout(
            65536, 8192, LayoutKind.CUSTOM,
            custom_spec=[CustomEntry("/", 0), CustomEntry("/home", 0)],
        )


@pytest.mark.parametrize("entries", [
    [CustomEntry("/", 30720), CustomEntry("/", 0)],
    [CustomEntry("/", 30720), CustomEntry("home", 0)],
    [CustomEntry("/", 30720), CustomEntry("/boot", 1024)],
    [CustomEntry("/", 30720), CustomEntry("/boot/efi", 1024)],
    [CustomEntry("/", -1)],
    [CustomEntry("/home", 0)],
    [CustomEntry("/", 30720), CustomEntry("/data", 2)],
    [CustomEntry("/", 0, filesystem=Filesystem.SWAP)],
    [CustomEntry("/", 30720), CustomEntry("/srv/data", 1024), CustomEntry("/data", 0)],
    [CustomEntry("/", 30720), CustomEntry("/srv/$HOME", 0)],
    [CustomEntry("/", 30720), CustomEntry("/srv/`reboot`", 0)],
    [CustomEntry("/", 30720), CustomEntry('/srv/"x"', 0)],
    [CustomEntry("/", 30720), CustomEntry("/srv/my data", 0)],
    [],
])
def test_custom_spec_validation(entries):
    with pytest.raises(InvalidSpec):
        compute_layout(131072, 8192, LayoutKind.CUSTOM, custom_spec=entries)


def test_custom_entry_options():
    layout = compute_layout(
        131072, 8192, LayoutKind.CUSTOM,
        custom_spec=[
            CustomEntry("/", 30720),
            CustomEntry("/var/lib/docker", 20480, filesystem=Filesystem.XFS, encrypted=False),
            CustomEntry("/home", 0, label="USERS"),
        ],
        options=LayoutOptions(encryption=True),
    )
    by_name = {p.name: p for p in layout.partitions}
    assert set(by_name) == {"EFI", "BOOT", "SWAP", "ROOT", "DOCKER", "USERS"}
    assert by_name["ROOT"].is_encrypted
    assert not by_name["DOCKER"].is_encrypted
    assert by_name["DOCKER"].filesystem is Filesystem.XFS
    assert by_name["DOCKER"].type_guid == PartitionTypes.LINUX_FILESYSTEM
    assert by_name["USERS"].is_encrypted and by_name["USERS"].mount_point == "/home"


def test_custom_without_remainder_leaves_free_space():
    layout = compute_layout(131072, 8192, LayoutKind.CUSTOM, custom_spec=[CustomEntry("/", 30720)])
    assert layout.remainder_partition() is None
    assert layout.allocated_mib() < 131072


def test_custom_sizes_are_aligned_down():
    layout = compute_layout(131072, 8192, LayoutKind.CUSTOM,
                            custom_spec=[CustomEntry("/", 30721), CustomEntry("/home", 0)])
    assert sizes(layout)["ROOT"] == 30720


def test_custom_partitions_rejected_for_other_kinds():
    with pytest.raises(ConfigError):
        compute_layout(131072, 8192, LayoutKind.STANDARD, custom_spec=[CustomEntry("/", 0)])


def test_layout_kind_by_name():
    assert compute_layout(131072, 8192, "standard") == compute_layout(131072, 8192, LayoutKind.STANDARD)
    with pytest.raises(ConfigError):
        compute_layout(131072, 8192, "raid10")


@pytest.mark.parametrize("mount_point,label", [
    ("/", "ROOT"),
    ("/home", "HOME"),
    ("/var/lib/docker", "DOCKER"),
])
def test_label_for_mount_point(mount_point, label):
    assert label_for_mount_point(mount_point) == label


def test_format_layout_summary(standard_layout):
    summary = format_layout_summary(standard_layout)
    assert "HOME" in summary
    assert "53364 MiB*" in summary
    assert "/boot/efi" in summary


def test_custom_middle_remainder_needs_room_for_backup_gpt():
    spec = [CustomEntry("/", 0), CustomEntry("/home", 20000)]
    options = LayoutOptions(swap=False)

    with pytest.raises(DiskTooSmall):
        compute_layout(22565, 8192, LayoutKind.CUSTOM, custom_spec=spec, options=options)

    layout = compute_layout(22566, 8192, LayoutKind.CUSTOM, custom_spec=spec, options=options)
    root = layout.partitions[2]
    assert layout.resolved_size(root) == 6
    assert partition_table_size(layout, root) == 4
    assert partition_table_size(layout, layout.partitions[-1]) == 20000


def test_last_remainder_takes_the_rest(standard_layout):
    assert partition_table_size(standard_layout, standard_layout.partitions[-1]) is None


def test_boot_encryption_layout():
    layout = compute_layout(131072, 8192, LayoutKind.CRYPTO_SUBVOLUME,
                            options=LayoutOptions(encryption=True, boot_encryption=True))
    boot = layout.partitions[1]
    assert boot.is_boot and boot.is_encrypted
    assert boot.type_guid == PartitionTypes.LUKS
    assert [p.name for p in layout.encrypted_partitions()] == ["BOOT", "LUKS"]


@pytest.mark.parametrize("kind,encryption", [
    (LayoutKind.STANDARD, True),
    (LayoutKind.CRYPTO_SUBVOLUME, False),
])
def test_boot_encryption_needs_encrypted_cryptosubvolume(kind, encryption):
    with pytest.raises(ConfigError):
        compute_layout(131072, 8192, kind, options=LayoutOptions(encryption=encryption, boot_encryption=True))


def test_subvolume_below_a_partition_rejected():
    options = LayoutOptions(subvolumes=(SubvolumeSpec("@", "/"), SubvolumeSpec("@grub", "/boot/grub")))
    with pytest.raises(ValidationError):
        compute_layout(131072, 8192, LayoutKind.CRYPTO_SUBVOLUME, options=options)


def test_subvolume_mount_point_must_be_quotable():
    options = LayoutOptions(subvolumes=(SubvolumeSpec("@", "/"), SubvolumeSpec("@x", "/srv/$(id)")))
    with pytest.raises(ValidationError):
        compute_layout(131072, 8192, LayoutKind.CRYPTO_SUBVOLUME, options=options)
