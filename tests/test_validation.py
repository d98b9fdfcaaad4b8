import subprocess

import pytest

from cryptlayout.core.exceptions import EncryptionError
from cryptlayout.utils.validation import check_prerequisites, required_tools, validate_encryption_requirements


class VersionRunner:
    simulating = False

    def __init__(self, output):
        self.output = output

    def run(self, cmd, check=True, input=None, sensitive=False):
        return subprocess.CompletedProcess(cmd, 0, self.output, "")


def test_required_tools():
    tools = required_tools(["btrfs", "vfat", "swap"], encryption=False)
    assert "mkfs.btrfs" in tools and "btrfs" in tools
    assert "cryptsetup" not in tools
    assert "cryptsetup" in required_tools(["ext4"], encryption=True)


def test_prerequisites_only_logged_in_simulation(runner):
    check_prerequisites(runner, ["btrfs"], encryption=True)
    assert runner.commands() == []


def test_cryptsetup_version_accepted(runner):
    validate_encryption_requirements(runner)
    validate_encryption_requirements(VersionRunner("cryptsetup 2.0.0"))


def test_old_cryptsetup_rejected():
    with pytest.raises(EncryptionError):
        validate_encryption_requirements(VersionRunner("cryptsetup 1.7.5"))
