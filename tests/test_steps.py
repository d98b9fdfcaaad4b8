from cryptlayout.core.steps import StepJournal


def test_unwind_runs_newest_first(journal):
    undone = []
    for name in ("close", "unmount /target", "unmount /target/home"):
        journal.record(name, lambda name=name: undone.append(name))

    assert journal.pending == ["unmount /target/home", "unmount /target", "close"]
    assert journal.unwind() == []
    assert undone == ["unmount /target/home", "unmount /target", "close"]
    assert len(journal) == 0


def test_failed_undo_does_not_stop_unwind():
    journal = StepJournal(colored_output=False)
    undone = []

    def broken():
        raise RuntimeError("device busy")

    journal.record("close Crypt-Root", lambda: undone.append("close"))
    journal.record("unmount /target", broken)
    journal.record("swapoff /dev/sda3", lambda: undone.append("swapoff"))

    assert journal.unwind() == ["unmount /target"]
    assert undone == ["swapoff", "close"]
    assert journal.unwind() == []
