import logging

import pytest

from cryptlayout.core.encryption import (
    BOOT_FORMAT_OPTIONS,
    KEYFILE_SLOT,
    LUKS_FORMAT_OPTIONS,
    EncryptionProvisioner,
    mapper_name_for,
)
from cryptlayout.core.exceptions import ConfigError, EncryptionError, IncorrectPassphrase, ValidationError
from cryptlayout.core.layout import compute_layout
from cryptlayout.core.keyfiles import KEYFILE_DIR, STAGING_DIR
from cryptlayout.core.models import ContainerState, EncryptedVolume, LayoutKind, LayoutOptions, UnlockMethod, VolumeIdentity
from cryptlayout.utils.command import simulated_uuid
from conftest import devices_for

SECRET = "correct horse battery staple"


class CountingProvider:
    def __init__(self, passphrase=SECRET):
        self.passphrase = passphrase
        self.prompts = []

    def __call__(self, prompt):
        self.prompts.append(prompt)
        return self.passphrase


def make_provisioner(runner, journal, provider=None, **kwargs):
    return EncryptionProvisioner(runner, journal, provider or CountingProvider(), **kwargs)


def test_mapper_name_for(standard_layout):
    home = standard_layout.partitions[-1]
    assert mapper_name_for(home) == "Crypt-Home"


def test_identities_root_first(runner, journal, encrypted_layout):
    provisioner = make_provisioner(runner, journal)
    identities = provisioner.assign_identities(encrypted_layout)

    assert [str(i) for i in identities.values()] == ["Crypt-Root", "Crypt-Usr", "Crypt-Var", "Crypt-Home"]
    assert provisioner.assign_identities(encrypted_layout) is identities


def test_identity_collisions_get_suffixes(runner, journal, encrypted_layout):
    provisioner = make_provisioner(runner, journal, root_mapper_name="Crypt-Home")
    names = [i.mapper_name for i in provisioner.assign_identities(encrypted_layout).values()]
    assert names == ["Crypt-Home", "Crypt-Usr", "Crypt-Var", "Crypt-Home-1"]


def test_custom_root_mapper_name(runner, journal, encrypted_layout):
    provisioner = make_provisioner(runner, journal, root_mapper_name="cryptroot")
    identities = provisioner.assign_identities(encrypted_layout)
    assert identities[encrypted_layout.root_partition().number].mapped_path == "/dev/mapper/cryptroot"


def test_provision_chains_keyfiles_from_root(runner, journal, encrypted_layout):
    devices = devices_for(encrypted_layout)
    volumes = make_provisioner(runner, journal).provision(encrypted_layout, devices)

    root, *others = volumes.values()
    assert root.unlock is UnlockMethod.PASSPHRASE and root.keyfile is None
    for volume in others:
        assert volume.unlock is UnlockMethod.KEYFILE
        assert volume.parent is root
        assert volume.keyfile == f"{KEYFILE_DIR}/{volume.identity.mapper_name}.key"
        assert volume.staged_keyfile == f"{STAGING_DIR}/{volume.identity.mapper_name}.key"
        assert ["cryptsetup", "luksAddKey", "--key-slot", KEYFILE_SLOT,
                volume.device, volume.staged_keyfile] in runner.commands()
        assert ["cryptsetup", "open", "--key-file", volume.staged_keyfile,
                volume.device, volume.identity.mapper_name] in runner.commands()

    for volume in volumes.values():
        assert volume.opened
        assert volume.container_uuid == simulated_uuid("luks", volume.device)
        assert ["cryptsetup", "luksFormat"] + LUKS_FORMAT_OPTIONS + [volume.device] in runner.commands()

    assert ["cryptsetup", "open", devices[root.partition.number], "Crypt-Root"] in runner.commands()


def test_provision_journals_closes_newest_first(runner, journal, encrypted_layout):
    make_provisioner(runner, journal).provision(encrypted_layout, devices_for(encrypted_layout))
    closes = [d for d in journal.pending if d.startswith("close")]
    assert closes == ["close Crypt-Home", "close Crypt-Var", "close Crypt-Usr", "close Crypt-Root"]


def test_passphrase_never_logged(runner, journal, encrypted_layout, caplog):
    caplog.set_level(logging.DEBUG, logger="cryptlayout")
    make_provisioner(runner, journal).provision(encrypted_layout, devices_for(encrypted_layout))

    assert SECRET not in caplog.text
    assert all(SECRET not in " ".join(cmd) for cmd in runner.commands())
    assert f"{SECRET}\n" in runner.inputs


def test_rejected_passphrase_is_asked_again(runner, journal, encrypted_layout):
    runner.set_simulation_params({"reject_passphrases": 2})
    provider = CountingProvider()

    volumes = make_provisioner(runner, journal, provider).provision(encrypted_layout, devices_for(encrypted_layout))

    assert len(provider.prompts) == 3
    assert len(volumes) == 4


def test_too_many_rejections(runner, journal, encrypted_layout):
    runner.set_simulation_params({"reject_passphrases": 3})
    provider = CountingProvider()

    with pytest.raises(IncorrectPassphrase) as excinfo:
        make_provisioner(runner, journal, provider).provision(encrypted_layout, devices_for(encrypted_layout))

    assert excinfo.value.attempts == 3
    assert len(provider.prompts) == 3
    assert not runner.ran("cryptsetup", "luksAddKey")


def test_keyfile_volume_needs_open_parent(runner, journal, encrypted_layout):
    provisioner = make_provisioner(runner, journal)
    root, usr = encrypted_layout.partitions[3:5]
    parent = EncryptedVolume(partition=root, device="/dev/sda4", identity=VolumeIdentity("Crypt-Root"),
                             unlock=UnlockMethod.PASSPHRASE)

    with pytest.raises(ValidationError):
        provisioner._provision_keyfile_volume(usr, "/dev/sda5", VolumeIdentity("Crypt-Usr"),
                                              ContainerState.BLANK, parent)


def test_missing_provider(runner, journal, encrypted_layout):
    provisioner = EncryptionProvisioner(runner, journal, None)
    with pytest.raises(EncryptionError):
        provisioner.provision(encrypted_layout, devices_for(encrypted_layout))


def test_empty_passphrase(runner, journal, encrypted_layout):
    provisioner = make_provisioner(runner, journal, CountingProvider(""))
    with pytest.raises(EncryptionError):
        provisioner.provision(encrypted_layout, devices_for(encrypted_layout))


def test_container_state(runner, journal):
    runner.set_simulation_params({"luks_formatted": ["/dev/sda4", "/dev/sda5"], "luks_open": ["Crypt-Root"]})
    provisioner = make_provisioner(runner, journal)

    assert provisioner.container_state("/dev/sda4", VolumeIdentity("Crypt-Root")) is ContainerState.OPEN
    assert provisioner.container_state("/dev/sda5", VolumeIdentity("Crypt-Usr")) is ContainerState.FORMATTED
    assert provisioner.container_state("/dev/sda6", VolumeIdentity("Crypt-Var")) is ContainerState.BLANK


def test_resume_never_reformats(runner, journal, encrypted_layout):
    devices = devices_for(encrypted_layout)
    runner.set_simulation_params({
        "luks_formatted": [devices[n] for n in (4, 5, 6, 7)],
        "luks_open": ["Crypt-Root", "Crypt-Usr"],
    })

    volumes = make_provisioner(runner, journal, resume=True).provision(encrypted_layout, devices)

    assert not runner.ran("cryptsetup", "luksFormat")
    assert runner.ran("cryptsetup", "open", "--test-passphrase", devices[4])
    assert not runner.ran("cryptsetup", "open", "--key-file", f"{STAGING_DIR}/Crypt-Usr.key")
    assert runner.ran("cryptsetup", "open", "--key-file", f"{STAGING_DIR}/Crypt-Var.key")
    assert all(v.opened for v in volumes.values())


def test_install_keyfiles(runner, journal, encrypted_layout):
    provisioner = make_provisioner(runner, journal)
    volumes = provisioner.provision(encrypted_layout, devices_for(encrypted_layout))

    installed = provisioner.install_keyfiles(volumes.values(), "/target")

    assert installed == [f"{KEYFILE_DIR}/Crypt-{name}.key" for name in ("Usr", "Var", "Home")]
    assert ["install", "-D", "-m", "0000", f"{STAGING_DIR}/Crypt-Usr.key",
            f"/target{KEYFILE_DIR}/Crypt-Usr.key"] in runner.commands()


@pytest.mark.parametrize("name", ["Crypt Root", "Crypt\tRoot", "root$(id)", ""])
def test_unusable_root_mapper_name(runner, journal, encrypted_layout, name):
    provisioner = make_provisioner(runner, journal, root_mapper_name=name)
    with pytest.raises(ConfigError):
        provisioner.assign_identities(encrypted_layout)


def test_resume_replaces_the_keyfile_slot(runner, journal, encrypted_layout):
    devices = devices_for(encrypted_layout)
    runner.set_simulation_params({"luks_formatted": [devices[n] for n in (4, 5)]})

    make_provisioner(runner, journal, resume=True).provision(encrypted_layout, devices)

    commands = runner.commands()
    kill = ["cryptsetup", "luksKillSlot", devices[5], KEYFILE_SLOT]
    add = ["cryptsetup", "luksAddKey", "--key-slot", KEYFILE_SLOT, devices[5], f"{STAGING_DIR}/Crypt-Usr.key"]
    assert commands.index(kill) < commands.index(add)
    assert not runner.ran("cryptsetup", "luksKillSlot", devices[6])
    assert runner.ran("cryptsetup", "luksFormat")[0][-1] == devices[6]


@pytest.fixture
def boot_encrypted_layout():
    return compute_layout(131072, 8192, LayoutKind.CRYPTO_SUBVOLUME,
                          options=LayoutOptions(encryption=True, boot_encryption=True))


def test_boot_volume_chained_after_root(runner, journal, boot_encrypted_layout):
    devices = devices_for(boot_encrypted_layout)
    volumes = make_provisioner(runner, journal).provision(boot_encrypted_layout, devices)

    root, boot = volumes.values()
    assert root.identity.mapper_name == "Crypt-Root" and root.partition.holds_subvolumes
    assert boot.identity.mapper_name == "Crypt-Boot" and boot.partition.is_boot
    assert boot.unlock is UnlockMethod.KEYFILE and boot.parent is root
    assert ["cryptsetup", "luksFormat"] + BOOT_FORMAT_OPTIONS + [devices[2]] in runner.commands()
    assert ["cryptsetup", "luksFormat"] + LUKS_FORMAT_OPTIONS + [devices[4]] in runner.commands()


def test_integrity_applies_to_luks2_only(runner, journal, boot_encrypted_layout):
    devices = devices_for(boot_encrypted_layout)
    make_provisioner(runner, journal, integrity=True).provision(boot_encrypted_layout, devices)

    formats = {cmd[-1]: cmd for cmd in runner.ran("cryptsetup", "luksFormat")}
    assert formats[devices[4]][-5:-1] == ["--integrity", "hmac-sha256", "--sector-size", "4096"]
    assert "--integrity" not in formats[devices[2]]
