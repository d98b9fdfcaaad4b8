"""
Reversible step journal.

Every effecting operation that leaves state behind (an open container, a
mount, an active swap, a staged keyfile) records how to undo itself. When a
run fails, or once it has finished, the journal is unwound newest first so
mounts are released before the containers they sit on.
"""
import logging
from dataclasses import dataclass
from typing import Callable, List

from cryptlayout.utils.format import TermColors, colorize

logger = logging.getLogger('cryptlayout')


@dataclass
class Step:
    description: str
    undo: Callable[[], None]


class StepJournal:
    """Ordered record of undo actions"""

    def __init__(self, colored_output: bool = True):
        self.colored_output = colored_output
        self._steps: List[Step] = []

    def record(self, description: str, undo: Callable[[], None]) -> None:
        """
        Record an undo action for a step that just succeeded.

        Args:
            description: What the undo action does
            undo: Callable that reverses the step
        """
        logger.debug(f"Journal: {description}")
        self._steps.append(Step(description, undo))

    def __len__(self) -> int:
        return len(self._steps)

    @property
    def pending(self) -> List[str]:
        """Descriptions of the recorded undo actions, newest first"""
        return [step.description for step in reversed(self._steps)]

    def unwind(self) -> List[str]:
        """
        Run every recorded undo action in reverse order.

        A failing undo is logged and the unwind carries on, so the error that
        triggered it is never masked.

        Returns:
            Descriptions of the undo actions that failed
        """
        failures = []
        while self._steps:
            step = self._steps.pop()
            logger.info(f"Undo: {step.description}")
            try:
                step.undo()
            except Exception as e:
                logger.warning(colorize(f"Undo failed ({step.description}): {e}",
                                        TermColors.WARNING, self.colored_output))
                failures.append(step.description)
        return failures
