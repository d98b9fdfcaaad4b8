import subprocess
from typing import Iterable, List, Optional, Sequence

import pytest

from cryptlayout.core.exceptions import CommandFailed
from cryptlayout.core.layout import compute_layout
from cryptlayout.core.models import LayoutKind, LayoutOptions
from cryptlayout.core.steps import StepJournal
from cryptlayout.utils.command import CommandRunner, SimulationMode


class ScriptedRunner(CommandRunner):
    """Simulating runner that can be told to fail or be interrupted on given commands"""

    def __init__(self, fail_on: Iterable[Sequence[str]] = (), interrupt_on: Iterable[Sequence[str]] = ()):
        super().__init__(SimulationMode.SIMULATE, colored_output=False)
        self.fail_on = [list(prefix) for prefix in fail_on]
        self.interrupt_on = [list(prefix) for prefix in interrupt_on]
        self.inputs: List[Optional[str]] = []

    def run(self, cmd, check=True, input=None, sensitive=False):
        self.inputs.append(input)
        for prefix in self.interrupt_on:
            if list(cmd[:len(prefix)]) == prefix:
                raise KeyboardInterrupt()
        for prefix in self.fail_on:
            if list(cmd[:len(prefix)]) == prefix:
                self.commands_run.append({"command": list(cmd), "simulated": True})
                if check:
                    raise CommandFailed(cmd, 1, "", "scripted failure")
                return subprocess.CompletedProcess(cmd, 1, "", "scripted failure")
        return super().run(cmd, check=check, input=input, sensitive=sensitive)

    def commands(self) -> List[List[str]]:
        return [record["command"] for record in self.commands_run]

    def ran(self, *prefix: str) -> List[List[str]]:
        """Commands starting with the given words"""
        return [cmd for cmd in self.commands() if cmd[:len(prefix)] == list(prefix)]


@pytest.fixture
def runner():
    return ScriptedRunner()


@pytest.fixture
def journal():
    return StepJournal(colored_output=False)


@pytest.fixture
def standard_layout():
    return compute_layout(131072, 8192, LayoutKind.STANDARD)


@pytest.fixture
def encrypted_layout():
    return compute_layout(131072, 8192, LayoutKind.STANDARD, options=LayoutOptions(encryption=True))


@pytest.fixture
def subvolume_layout():
    return compute_layout(131072, 8192, LayoutKind.CRYPTO_SUBVOLUME, options=LayoutOptions(encryption=True))


def devices_for(layout, disk="/dev/sda"):
    return {p.number: f"{disk}{p.number}" for p in layout.partitions}
