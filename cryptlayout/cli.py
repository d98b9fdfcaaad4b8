"""
Command-line interface for cryptlayout.

This module handles argument parsing and orchestrates the provisioning run.
"""
import argparse
import getpass
import logging
import os
import sys
from typing import List, Optional

from cryptlayout.utils.logging import setup_logging
from cryptlayout.utils.command import CommandRunner, SimulationMode
from cryptlayout.utils.format import TermColors, colorize, parse_size_mib
from cryptlayout.utils.settings import DEFAULT_TARGET, DeploymentSettings, load_settings, parse_layout_kind
from cryptlayout.utils.validation import check_prerequisites, validate_encryption_requirements
from cryptlayout.core.exceptions import ConfigError, CryptLayoutError
from cryptlayout.core.layout import format_layout_summary
from cryptlayout.core.models import DATA_FILESYSTEMS, Filesystem, LayoutKind
from cryptlayout.core.pipeline import ProvisioningPipeline

logger = logging.getLogger('cryptlayout')

SIMULATION_PASSPHRASE = "simulated-passphrase"


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Namespace containing parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="Encrypted disk provisioning for unattended Linux deployment"
    )

    parser.add_argument(
        "disk",
        nargs="?",
        help="Target disk device (e.g., /dev/sda, /dev/nvme0n1); overrides the config file"
    )

    parser.add_argument(
        "-c", "--config",
        help="TOML deployment settings file"
    )

    layout_group = parser.add_argument_group('Layout options (override the config file)')
    layout_group.add_argument(
        "-l", "--layout",
        choices=[kind.value for kind in LayoutKind],
        help="Partition layout"
    )

    layout_group.add_argument(
        "-f", "--filesystem",
        choices=[fs.value for fs in DATA_FILESYSTEMS],
        help="Filesystem for the data partitions"
    )

    layout_group.add_argument(
        "-e", "--encrypt",
        action="store_true",
        default=None,
        help="Encrypt the data partitions with LUKS2"
    )

    layout_group.add_argument(
        "--boot-encryption",
        action="store_true",
        default=None,
        help="Encrypt /boot with LUKS1 (cryptosubvolume layout only)"
    )

    layout_group.add_argument(
        "--integrity",
        action="store_true",
        default=None,
        help="Add dm-integrity (hmac-sha256) to the LUKS2 containers"
    )

    layout_group.add_argument(
        "--no-swap",
        action="store_true",
        help="Do not create a swap partition"
    )

    layout_group.add_argument(
        "--mapper-name",
        help="Mapper name of the root volume (default: Crypt-Root)"
    )

    layout_group.add_argument(
        "--hardened",
        action="store_true",
        default=None,
        help="Activate hardening profile for mount options according to ANSSI security recommendations"
    )

    parser.add_argument(
        "-t", "--target",
        help=f"Mount point for the target root (default: {DEFAULT_TARGET})"
    )

    parser.add_argument(
        "--resume",
        action="store_true",
        default=None,
        help="Keep the partition table and reuse existing containers and filesystems"
    )

    parser.add_argument(
        "--rebuild-initramfs",
        action="store_true",
        default=None,
        help="Run mkinitcpio -P in the target once the boot configuration is written"
    )

    parser.add_argument(
        "--release",
        action="store_true",
        help="Unmount everything and close the containers when done"
    )

    parser.add_argument(
        "--plan-only",
        action="store_true",
        help="Print the computed partition layout and exit"
    )

    # Simulation options
    parser.add_argument(
        "-s", "--simulate",
        action="store_true",
        help="Simulate operations without making any changes to the system"
    )

    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output"
    )

    simulation_group = parser.add_argument_group('Simulation options (only with --simulate)')
    simulation_group.add_argument(
        "--sim-disk-size",
        help="Simulated disk size (e.g., '500G', '1TiB', or MiB as a plain number)"
    )

    simulation_group.add_argument(
        "--sim-ram",
        help="Simulated amount of RAM (e.g., '8GiB')"
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging"
    )

    parser.add_argument(
        "--log-file",
        help="Also write a full debug log to this file"
    )

    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> DeploymentSettings:
    """
    Load the config file (if any) and apply command-line overrides.

    Raises:
        ConfigError: If the settings are invalid
    """
    settings = load_settings(args.config) if args.config else DeploymentSettings()

    if args.disk:
        settings.device = args.disk
    if args.layout:
        settings.layout = parse_layout_kind(args.layout)
    if args.filesystem:
        settings.filesystem = Filesystem(args.filesystem)
    if args.encrypt is not None:
        settings.encryption = args.encrypt
    if args.boot_encryption is not None:
        settings.boot_encryption = args.boot_encryption
    if args.integrity is not None:
        settings.integrity = args.integrity
    if args.no_swap:
        settings.swap = False
    if args.mapper_name:
        settings.luks_mapper_name = args.mapper_name
    if args.hardened is not None:
        settings.hardened = args.hardened
    if args.target:
        settings.target = args.target
    if args.resume is not None:
        settings.resume = args.resume
    if args.rebuild_initramfs is not None:
        settings.rebuild_initramfs = args.rebuild_initramfs

    if not settings.device:
        raise ConfigError("No target disk given (positional argument or [disk] device)")
    if settings.layout is LayoutKind.CUSTOM and not settings.partitions:
        raise ConfigError("The custom layout needs a partitions list in the config file")
    settings.validate()
    return settings


def prompt_passphrase(prompt: str) -> str:
    return getpass.getpass(f"{prompt}: ")


def display_simulation_summary(cmd_runner: CommandRunner) -> None:
    """
    Display a summary of the simulation.

    Args:
        cmd_runner: CommandRunner instance for executing commands
    """
    if not cmd_runner.simulating:
        return

    report = cmd_runner.get_simulation_report()

    try:
        terminal_width = os.get_terminal_size().columns
    except (AttributeError, OSError):
        terminal_width = 80

    stars = "*" * terminal_width
    color = cmd_runner.colored_output

    print(f"\n{colorize(stars, TermColors.SIM, color)}")
    print(colorize("SIMULATION COMPLETE - NO CHANGES WERE MADE", TermColors.SIM + TermColors.BOLD, color))
    print(f"{colorize(stars, TermColors.SIM, color)}\n")

    print(colorize("The following operations would have been performed:", TermColors.SUCCESS, color))
    print(report)

    print(f"\n{colorize('To execute these operations for real, run without the --simulate flag.', TermColors.SIM, color)}")


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main function.

    Returns:
        Exit code (0 for success, 1 for errors, 130 when cancelled)
    """
    args = None
    try:
        args = parse_arguments(argv)

        setup_logging(args.debug, args.log_file)

        cmd_runner = CommandRunner(
            SimulationMode.SIMULATE if args.simulate else SimulationMode.DISABLED,
            not args.no_color
        )

        settings = build_settings(args)

        if args.simulate:
            logger.info("Running in simulation mode - NO CHANGES WILL BE MADE")
            sim_params = {}
            if args.sim_disk_size:
                sim_params["disk_mib"] = parse_size_mib(args.sim_disk_size)
                logger.info(f"Simulating disk size: {args.sim_disk_size}")
            if args.sim_ram:
                sim_params["ram_mib"] = parse_size_mib(args.sim_ram)
                logger.info(f"Simulating RAM: {args.sim_ram}")
            cmd_runner.set_simulation_params(sim_params)

        # A password from the settings file takes precedence over prompting
        passphrase_provider = None if settings.encryption_password else prompt_passphrase
        if args.simulate and not settings.encryption_password:
            def passphrase_provider(prompt: str) -> str:
                return SIMULATION_PASSPHRASE

        pipeline = ProvisioningPipeline(settings, cmd_runner, passphrase_provider)
        layout = pipeline.plan()
        print(format_layout_summary(layout))

        if args.plan_only:
            return 0

        filesystems = sorted({p.filesystem.value for p in layout.partitions})
        check_prerequisites(cmd_runner, filesystems, bool(layout.encrypted_partitions()))
        if layout.encrypted_partitions():
            validate_encryption_requirements(cmd_runner)

        pipeline.run(layout)

        if args.release:
            pipeline.finalize()

        if args.simulate:
            display_simulation_summary(cmd_runner)
        else:
            logger.info("Disk preparation completed successfully")
            if not args.release:
                logger.info(f"The system is mounted at {settings.target}")

            if settings.hardened:
                logger.info("")
                logger.info("NOTE: Hardened mount options have been applied according to ANSSI recommendations")
                logger.info("      This includes noexec on /var which may require adjustments for package management")

        return 0

    except KeyboardInterrupt:
        logger.error("Operation cancelled by user")
        return 130

    except (CryptLayoutError, RuntimeError) as e:
        logger.error(str(e))
        return 1

    except ValueError as e:
        logger.error(f"Invalid value: {e}")
        return 1

    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        if args is not None and args.debug:
            import traceback
            traceback.print_exc()
        return 1


# For module import compatibility
if __name__ == "__main__":
    sys.exit(main())
