import pytest

from cryptlayout.core import partition
from cryptlayout.core.exceptions import PartitioningError
from cryptlayout.core.layout import PartitionTypes, compute_layout
from cryptlayout.core.models import ComputedLayout, CustomEntry, Filesystem, LayoutKind, LayoutOptions, PartitionSpec
from cryptlayout.core.partition import generate_sfdisk_script, partition_device_name, prepare_disk
from conftest import ScriptedRunner


@pytest.mark.parametrize("disk,number,expected", [
    ("/dev/sda", 1, "/dev/sda1"),
    ("/dev/vdb", 3, "/dev/vdb3"),
    ("/dev/nvme0n1", 1, "/dev/nvme0n1p1"),
    ("/dev/mmcblk0", 2, "/dev/mmcblk0p2"),
    ("/dev/loop0", 1, "/dev/loop0p1"),
])
def test_partition_device_name(disk, number, expected):
    assert partition_device_name(disk, number) == expected


def test_sfdisk_script(standard_layout):
    script = generate_sfdisk_script(standard_layout, "/dev/sda")
    lines = script.splitlines()
    assert lines[:3] == ["label: gpt", "device: /dev/sda", "unit: sectors"]
    assert f'size=512MiB, type={PartitionTypes.EFI}, name="EFI"' in lines
    assert any(line.startswith("size=2048MiB") and 'attrs="LegacyBIOSBootable"' in line for line in lines)
    assert lines[-1] == f'size=+, type={PartitionTypes.LINUX_HOME}, name="HOME"'
    assert script.endswith("\n")


def test_sfdisk_script_is_deterministic(standard_layout):
    assert generate_sfdisk_script(standard_layout, "/dev/sda") == generate_sfdisk_script(standard_layout, "/dev/sda")


def test_sfdisk_middle_remainder_leaves_room_for_backup_gpt():
    layout = compute_layout(
        65536, 8192, LayoutKind.CUSTOM,
        custom_spec=[CustomEntry("/", 0), CustomEntry("/home", 10240)],
        options=LayoutOptions(swap=False),
    )
    lines = generate_sfdisk_script(layout, "/dev/sda").splitlines()
    assert any(line.startswith("size=52734MiB") and 'name="ROOT"' in line for line in lines)
    assert lines[-1].startswith("size=10240MiB")


def test_sfdisk_smallest_middle_remainder():
    layout = compute_layout(
        22566, 8192, LayoutKind.CUSTOM,
        custom_spec=[CustomEntry("/", 0), CustomEntry("/home", 20000)],
        options=LayoutOptions(swap=False),
    )
    lines = generate_sfdisk_script(layout, "/dev/sda").splitlines()
    assert lines[-2].startswith("size=4MiB") and 'name="ROOT"' in lines[-2]


def test_unwritable_layout_never_wipes(runner):
    layout = ComputedLayout(
        partitions=(
            PartitionSpec(1, "ROOT", 0, PartitionTypes.LINUX_ROOT_X86_64, Filesystem.EXT4, "/"),
            PartitionSpec(2, "HOME", 20000, PartitionTypes.LINUX_HOME, Filesystem.EXT4, "/home"),
        ),
        total_mib=20001,
    )
    with pytest.raises(PartitioningError):
        prepare_disk("/dev/sda", layout, runner)
    assert runner.commands() == []


def test_prepare_disk(runner, standard_layout):
    devices = prepare_disk("/dev/nvme0n1", standard_layout, runner)

    assert devices == {n: f"/dev/nvme0n1p{n}" for n in range(1, 8)}
    assert [cmd[0] for cmd in runner.commands()] == ["wipefs", "sfdisk", "partprobe", "udevadm"]
    sfdisk_index = runner.commands().index(["sfdisk", "/dev/nvme0n1"])
    assert runner.inputs[sfdisk_index] == generate_sfdisk_script(standard_layout, "/dev/nvme0n1")


def test_partprobe_failure_is_not_fatal(monkeypatch, standard_layout):
    monkeypatch.setattr(partition.time, "sleep", lambda seconds: None)
    runner = ScriptedRunner(fail_on=[["partprobe"]])

    devices = prepare_disk("/dev/sda", standard_layout, runner)

    assert len(devices) == 7
    assert runner.ran("udevadm", "settle")


def test_sfdisk_failure(standard_layout):
    runner = ScriptedRunner(fail_on=[["sfdisk"]])
    with pytest.raises(PartitioningError):
        prepare_disk("/dev/sda", standard_layout, runner)
    assert not runner.ran("partprobe")
