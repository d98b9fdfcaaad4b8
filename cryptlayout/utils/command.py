"""
Command execution utilities.

This module provides tools for executing shell commands with simulation support.
In simulation mode every effecting command and file write is recorded instead of
performed, and queries that later steps depend on (UUIDs, subvolume IDs) get
deterministic answers so generated artifacts are reproducible.
"""
import logging
import os
import shutil
import subprocess
import uuid
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Any

from cryptlayout.core.exceptions import CommandFailed
from cryptlayout.utils.format import TermColors, colorize

logger = logging.getLogger('cryptlayout')

# Namespace for simulated UUIDs, so the same device always gets the same UUID
SIMULATION_NAMESPACE = uuid.UUID("6f1c1e0e-6a55-4a43-9c55-3a1f4f0d2c71")


class SimulationMode(Enum):
    """Enumeration for simulation modes"""
    DISABLED = 0  # Normal operation
    SIMULATE = 1  # Simulate operations


def simulated_uuid(kind: str, device: str) -> str:
    """Return the deterministic UUID simulation mode reports for a device."""
    return str(uuid.uuid5(SIMULATION_NAMESPACE, f"{kind}:{device}"))


class CommandRunner:
    """
    Class responsible for command execution with simulation support.
    Acts as a wrapper around subprocess.run with additional functionality.
    """
    def __init__(self, simulation_mode: SimulationMode, colored_output: bool = True):
        """
        Initialize the command runner.

        Args:
            simulation_mode: Simulation mode to operate in
            colored_output: Whether to use colored output in terminal
        """
        self.simulation_mode = simulation_mode
        self.colored_output = colored_output
        self.commands_run: List[Dict[str, Any]] = []

        # Simulation parameters (disk_size, ram_mib, luks_formatted, ...)
        self.simulation_params: Dict[str, Any] = {}

    @property
    def simulating(self) -> bool:
        return self.simulation_mode == SimulationMode.SIMULATE

    def set_simulation_params(self, params: Dict[str, Any]) -> None:
        """
        Set parameters for disk simulation.

        Args:
            params: Dictionary of simulation parameters
        """
        self.simulation_params = params

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        input: Optional[str] = None,
        sensitive: bool = False,
    ) -> subprocess.CompletedProcess:
        """
        Run a shell command or simulate running it.

        Args:
            cmd: Command to run as list of strings
            check: Whether to raise CommandFailed on non-zero return code
            input: Text passed on stdin
            sensitive: Whether stdin carries a secret that must never be logged

        Returns:
            CompletedProcess instance

        Raises:
            CommandFailed: If check is set and the command exits non-zero
        """
        cmd_str = ' '.join(cmd)
        logger.debug(f"Command requested: {cmd_str}")

        self.commands_run.append({
            "command": list(cmd),
            "simulated": self.simulating,
        })

        if self.simulating:
            sim_prefix = colorize("[SIM]", TermColors.SIM, self.colored_output)
            logger.info(f"{sim_prefix} Would execute: {cmd_str}")
            if input is not None and not sensitive:
                logger.debug(f"Command input: {input}")
            result = self._simulate_command(cmd, input)
            if check and result.returncode != 0:
                raise CommandFailed(cmd, result.returncode, result.stdout, result.stderr)
            return result

        return self._execute(cmd, check, input)

    def run_in_target(self, target: str, cmd: List[str], check: bool = True) -> subprocess.CompletedProcess:
        """
        Run a command inside the mounted target root.

        Uses artix-chroot when available (it sets up /proc, /sys and /dev),
        otherwise plain chroot.

        Args:
            target: Path to the mounted target root
            cmd: Command to run inside the target
            check: Whether to raise CommandFailed on non-zero return code

        Returns:
            CompletedProcess instance
        """
        chroot = "artix-chroot" if shutil.which("artix-chroot") else "chroot"
        return self.run([chroot, target] + list(cmd), check=check)

    def record_action(self, description: str) -> None:
        """
        Record a non-command action (directory creation, file write, ...).

        Args:
            description: Human readable description of the action
        """
        self.commands_run.append({
            "command": ["#", description],
            "simulated": self.simulating,
        })
        if self.simulating:
            sim_prefix = colorize("[SIM]", TermColors.SIM, self.colored_output)
            logger.info(f"{sim_prefix} Would {description}")

    def write_file(self, path: Path, content: str, mode: int = 0o644) -> None:
        """
        Write a text file, or record that it would be written in simulation mode.

        Args:
            path: Destination path
            content: File contents
            mode: Permission bits applied after writing
        """
        self.record_action(f"write {path} (mode {mode:o}, {len(content)} bytes)")
        if self.simulating:
            logger.debug(f"Content of {path}:\n{content}")
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        os.chmod(path, mode)

    def _execute(self, cmd: List[str], check: bool, input: Optional[str]) -> subprocess.CompletedProcess:
        cmd_str = ' '.join(cmd)
        try:
            result = subprocess.run(
                cmd,
                text=True,
                capture_output=True,
                input=input,
            )
        except FileNotFoundError as e:
            logger.error(colorize(f"Command not found: {cmd[0]}", TermColors.ERROR, self.colored_output))
            raise CommandFailed(cmd, 127, "", str(e)) from e

        if check and result.returncode != 0:
            logger.error(colorize(f"Command failed: {cmd_str}", TermColors.ERROR, self.colored_output))
            logger.error(f"Return code: {result.returncode}")
            logger.error(f"Stdout: {result.stdout}")
            logger.error(f"Stderr: {result.stderr}")
            raise CommandFailed(cmd, result.returncode, result.stdout, result.stderr)
        return result

    def _simulate_command(self, cmd: List[str], input: Optional[str]) -> subprocess.CompletedProcess:
        """
        Generate simulated output for a command.

        Args:
            cmd: Command to simulate
            input: Text the command would have received on stdin

        Returns:
            CompletedProcess with simulated output
        """
        result = subprocess.CompletedProcess(args=cmd, returncode=0, stdout="", stderr="")

        cmd_name = os.path.basename(cmd[0]) if cmd else ""

        if cmd_name == "blkid":
            return self._handle_blkid_simulation(cmd, result)
        elif cmd_name == "blockdev":
            return self._handle_blockdev_simulation(cmd, result)
        elif cmd_name == "cryptsetup":
            return self._handle_cryptsetup_simulation(cmd, result)
        elif cmd_name == "btrfs":
            return self._handle_btrfs_simulation(cmd, result)
        elif cmd_name == "sfdisk":
            logger.debug(f"sfdisk script:\n{input}")
            result.stdout = "Created a new disklabel (gpt)\nThe partition table has been altered.\n"

        return result

    def _handle_blkid_simulation(self, cmd: List[str], result: subprocess.CompletedProcess) -> subprocess.CompletedProcess:
        """Simulate blkid -s <TAG> -o value <device>"""
        if "-s" in cmd and len(cmd) > cmd.index("-s") + 1:
            tag = cmd[cmd.index("-s") + 1]
            device = cmd[-1]
            if tag in ("UUID", "PARTUUID"):
                result.stdout = simulated_uuid(tag.lower(), device) + "\n"
            elif tag == "TYPE":
                # Nothing formatted yet unless the scenario says otherwise
                formatted = self.simulation_params.get("formatted_devices", {})
                if device in formatted:
                    result.stdout = formatted[device] + "\n"
                else:
                    result.returncode = 2
        return result

    def _handle_blockdev_simulation(self, cmd: List[str], result: subprocess.CompletedProcess) -> subprocess.CompletedProcess:
        """Simulate blockdev --getsize64 and --getss"""
        if "--getsize64" in cmd:
            size_mib = self.simulation_params.get("disk_mib", 476940)  # ~465.76 GiB
            result.stdout = f"{size_mib * 1024 * 1024}\n"
        elif "--getss" in cmd:
            result.stdout = f"{self.simulation_params.get('sector_size', 512)}\n"
        return result

    def _handle_cryptsetup_simulation(self, cmd: List[str], result: subprocess.CompletedProcess) -> subprocess.CompletedProcess:
        """Simulate cryptsetup queries"""
        if "--version" in cmd:
            result.stdout = "cryptsetup 2.7.5\n"
        elif "luksUUID" in cmd:
            result.stdout = simulated_uuid("luks", cmd[-1]) + "\n"
        elif "isLuks" in cmd:
            formatted = self.simulation_params.get("luks_formatted", [])
            result.returncode = 0 if cmd[-1] in formatted else 1
        elif "status" in cmd:
            opened = self.simulation_params.get("luks_open", [])
            result.returncode = 0 if cmd[-1] in opened else 4
        elif "open" in cmd and "--key-file" not in cmd:
            rejected = self.simulation_params.get("reject_passphrases", 0)
            if rejected > 0:
                self.simulation_params["reject_passphrases"] = rejected - 1
                result.returncode = 2
                result.stderr = "No key available with this passphrase.\n"
        return result

    def _handle_btrfs_simulation(self, cmd: List[str], result: subprocess.CompletedProcess) -> subprocess.CompletedProcess:
        """Simulate btrfs subvolume show"""
        if cmd[1:3] == ["subvolume", "show"]:
            result.stdout = f"{os.path.basename(cmd[-1])}\n\tName: \t\t\t{os.path.basename(cmd[-1])}\n\tSubvolume ID: \t\t256\n"
        return result

    def get_simulation_report(self) -> str:
        """
        Generate a report of all simulated commands.

        Returns:
            Formatted string with report of simulated commands
        """
        if not self.simulating:
            return "Simulation mode is not active."

        report = []
        report.append("=" * 80)
        report.append("SIMULATION REPORT")
        report.append("=" * 80)
        report.append("")

        # Commands are listed in execution order: the pipeline is sequential
        for i, cmd_record in enumerate(self.commands_run, 1):
            report.append(f"{i:3d}. {' '.join(cmd_record['command'])}")

        report.append("")
        report.append("-" * 80)
        report.append(f"Total operations simulated: {len(self.commands_run)}")
        report.append("=" * 80)

        return "\n".join(report)
