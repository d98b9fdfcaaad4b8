"""
Early-boot hook generation.

Two mkinitcpio hooks are generated for encrypted installs:

- crypttab-unlock opens every container listed in /etc/crypttab under the
  exact name recorded there, then checks that all expected mappings exist.
- mountcrypt mounts the root (volume or subvolume) at the new root and
  everything else beneath it, waiting for each mapper device first.

Each hook is a runtime script plus the install manifest telling mkinitcpio
which binaries, modules and files it needs.
"""
import shlex
from typing import Dict, Iterable, List, Sequence

from cryptlayout.core.models import EncryptedVolume, Filesystem, GeneratedHook, MountedEntity

UNLOCK_HOOK = "crypttab-unlock"
MOUNT_HOOK = "mountcrypt"

HOOKS_DIR = "/etc/initcpio/hooks"
INSTALL_DIR = "/etc/initcpio/install"

# Polling of device nodes: 100 x 0.1s
WAIT_ITERATIONS = 100

_UNLOCK_FUNCTIONS = """\
resolve_device() {
    case "$1" in
        UUID=*) dev="/dev/disk/by-uuid/${1#UUID=}" ;;
        PARTUUID=*) dev="/dev/disk/by-partuuid/${1#PARTUUID=}" ;;
        *) dev="$1" ;;
    esac
    i=0
    while [ ! -b "$dev" ] && [ "$i" -lt %(wait)d ]; do
        sleep 0.1
        i=$((i + 1))
    done
    [ -b "$dev" ] && echo "$dev"
}

run_hook() {
    modprobe -a -q dm-crypt >/dev/null 2>&1

    if [ ! -f /etc/crypttab ]; then
        err "/etc/crypttab not found"
        return 1
    fi

    while read -r name source keyfile options <&3; do
        case "$name" in
            ''|'#'*) continue ;;
        esac
        [ -b "/dev/mapper/$name" ] && continue

        device="$(resolve_device "$source")"
        if [ -z "$device" ]; then
            err "Device $source for $name not found"
            continue
        fi

        if [ -n "$keyfile" ] && [ "$keyfile" != "none" ] && [ "$keyfile" != "-" ]; then
            cryptsetup open --key-file "$keyfile" "$device" "$name"
        else
            cryptsetup open --tries 3 "$device" "$name"
        fi
    done 3< /etc/crypttab

    for name in $EXPECTED_MAPPINGS; do
        if [ ! -b "/dev/mapper/$name" ]; then
            err "Expected mapping $name is missing"
            launch_interactive_shell
        fi
    done
}
"""

_MOUNT_FUNCTIONS = """\
wait_for_device() {
    i=0
    while [ ! -b "$1" ] && [ "$i" -lt %(wait)d ]; do
        sleep 0.1
        i=$((i + 1))
    done
    [ -b "$1" ]
}

find_by_uuid() {
    for dev in $(blkid -t TYPE="$1" -o device); do
        if [ "$(blkid -s UUID -o value "$dev")" = "$2" ]; then
            echo "$dev"
            return 0
        fi
    done
    return 1
}

mount_entry() {
    mkdir -p "$newroot$2"
    if ! mount -o "$3" "$1" "$newroot$2"; then
        err "Failed to mount $1 on $2"
        launch_interactive_shell
    fi
}

run_hook() {
    mount_handler="mountcrypt_mount"
}
"""


def _quote(value: str) -> str:
    return shlex.quote(value)


def _mount_options(entity: MountedEntity) -> str:
    if entity.subvolume:
        return f"subvol={entity.subvolume},{entity.options}"
    return entity.options


def _mount_commands(entity: MountedEntity) -> List[str]:
    """Shell lines mounting one entity below $newroot"""
    mount_point = f'"{entity.mount_point}"'
    options = _quote(_mount_options(entity))

    if entity.volume is not None:
        mapped = _quote(entity.volume.identity.mapped_path)
        return [
            f"    if ! wait_for_device {mapped}; then",
            f"        err \"{entity.volume.identity.mapper_name} did not appear\"",
            "        launch_interactive_shell",
            "    fi",
            f"    mount_entry {mapped} {mount_point} {options}",
        ]

    partlabel = _quote(f"/dev/disk/by-partlabel/{entity.partition.name}")
    return [
        f"    dev=\"$(find_by_uuid {entity.filesystem.value} {_quote(entity.uuid or '')})\""
        f" || dev={partlabel}",
        f"    mount_entry \"$dev\" {mount_point} {options}",
    ]


def generate_unlock_hook(volumes: Sequence[EncryptedVolume]) -> GeneratedHook:
    """Build the crypttab-unlock hook and its install manifest"""
    names = " ".join(volume.identity.mapper_name for volume in volumes)
    hook = (
        "#!/usr/bin/ash\n"
        "# Generated by cryptlayout: opens the containers listed in /etc/crypttab\n\n"
        f'EXPECTED_MAPPINGS="{names}"\n\n'
        + _UNLOCK_FUNCTIONS % {"wait": WAIT_ITERATIONS}
    )

    files = ["/etc/crypttab"] + [volume.keyfile for volume in volumes if volume.keyfile]
    install = "\n".join(
        ["#!/bin/bash", "", "build() {",
         "    add_module dm-crypt",
         "    add_module dm-integrity",
         "    add_all_modules /crypto/",
         "    add_binary cryptsetup"]
        + [f"    add_file {path}" for path in files]
        + ["    add_runscript", "}", "",
           "help() {",
           "    cat <<HELPEOF",
           "Opens the LUKS containers listed in /etc/crypttab under their recorded names.",
           f"Expected mappings: {names}",
           "HELPEOF",
           "}", ""]
    )
    return GeneratedHook(UNLOCK_HOOK, hook, install)


def generate_mount_hook(mounted: Iterable[MountedEntity]) -> GeneratedHook:
    """Build the mountcrypt hook and its install manifest"""
    entities = sorted((e for e in mounted if not e.is_swap), key=lambda e: e.depth)

    body = ["mountcrypt_mount() {", '    newroot="$1"', ""]
    for entity in entities:
        body.append(f"    # {entity.key}")
        body.extend(_mount_commands(entity))
        body.append("")
    body.append("}")

    hook = (
        "#!/usr/bin/ash\n"
        "# Generated by cryptlayout: mounts the installed system below the new root\n\n"
        + _MOUNT_FUNCTIONS % {"wait": WAIT_ITERATIONS}
        + "\n" + "\n".join(body) + "\n"
    )

    modules = []
    for entity in entities:
        if entity.filesystem is not Filesystem.SWAP and entity.filesystem.value not in modules:
            modules.append(entity.filesystem.value)
    install = "\n".join(
        ["#!/bin/bash", "", "build() {",
         "    add_binary blkid",
         "    add_binary mount"]
        + [f"    add_module {module}" for module in modules]
        + ["    add_runscript", "}", "",
           "help() {",
           "    cat <<HELPEOF",
           "Mounts the root volume or subvolume and the volumes beneath it.",
           "HELPEOF",
           "}", ""]
    )
    return GeneratedHook(MOUNT_HOOK, hook, install)


def generate_hooks(mounted: Sequence[MountedEntity], volumes: Sequence[EncryptedVolume]) -> Dict[str, GeneratedHook]:
    """Both early-boot hooks, keyed by hook name"""
    return {
        UNLOCK_HOOK: generate_unlock_hook(volumes),
        MOUNT_HOOK: generate_mount_hook(mounted),
    }
