"""Console output and operator prompts."""

from __future__ import annotations

import io

import pytest

from embedded_k8s_toolkit.console import BORDER, Console, Prompter
from embedded_k8s_toolkit.errors import OperationAborted


def _prompter(*answers: str, assume_yes: bool = False) -> tuple[Prompter, list[str]]:
    queue = list(answers)
    seen: list[str] = []

    def input_fn(prompt: str) -> str:
        seen.append(prompt)
        if not queue:
            raise EOFError
        return queue.pop(0)

    console = Console(stream=io.StringIO(), err_stream=io.StringIO(), color=False)
    return Prompter(input_fn=input_fn, assume_yes=assume_yes, console=console), seen


def test_border_and_tags() -> None:
    out, err = io.StringIO(), io.StringIO()
    console = Console(stream=out, err_stream=err, color=False)

    console.border("Step 0: Pre-flight Checks")
    console.success("Running as root.")
    console.error("boom")

    lines = out.getvalue().splitlines()
    assert lines[1:4] == [BORDER, " Step 0: Pre-flight Checks", BORDER]
    assert "[OK] Running as root." in lines
    assert err.getvalue() == "[ERROR] boom\n"


def test_commands_can_move_to_stderr() -> None:
    out, err = io.StringIO(), io.StringIO()
    console = Console(stream=out, err_stream=err, color=False)

    with console.commands_on_stderr():
        console.command("mount -o ro /dev/mmcblk0p1 /mnt/microsd_verify")
    console.command("umount /mnt/microsd_verify")

    assert err.getvalue() == "$ mount -o ro /dev/mmcblk0p1 /mnt/microsd_verify\n"
    assert out.getvalue() == "$ umount /mnt/microsd_verify\n"


def test_colour_follows_no_color(monkeypatch: pytest.MonkeyPatch) -> None:
    class Tty(io.StringIO):
        def isatty(self) -> bool:
            return True

    stream = Tty()
    Console(stream=stream).success("ok")
    assert stream.getvalue().startswith("\033[0;32m")

    monkeypatch.setenv("NO_COLOR", "1")
    plain = Tty()
    Console(stream=plain).success("ok")
    assert plain.getvalue() == "[OK] ok\n"


def test_explain_is_suppressed_without_tutorial() -> None:
    out = io.StringIO()
    Console(stream=out, color=False, tutorial=False).explain("Swap hurts the kubelet.")
    assert out.getvalue() == ""

    Console(stream=out, color=False).explain(
        """
        Swap hurts
        the kubelet.
        """
    )
    assert out.getvalue() == "  Swap hurts\n  the kubelet.\n"


def test_next_steps_are_numbered() -> None:
    out = io.StringIO()
    Console(stream=out, color=False).next_steps(["reboot", "verify"])
    assert out.getvalue().splitlines()[-2:] == ["  1. reboot", "  2. verify"]


def test_confirm_phrase_requires_exact_text() -> None:
    prompter, seen = _prompter("erase ssd")
    prompter.confirm_phrase("This wipes /dev/nvme0n1.", "erase ssd")
    assert seen == ["> This wipes /dev/nvme0n1. Type 'erase ssd' to continue: "]

    prompter, _ = _prompter("Erase SSD")
    with pytest.raises(OperationAborted) as excinfo:
        prompter.confirm_phrase("This wipes /dev/nvme0n1.", "erase ssd")
    assert excinfo.value.exit_code == 1


def test_accept_wants_literal_yes() -> None:
    prompter, _ = _prompter("y", "yes")
    assert prompter.accept("Remove these entries?") is False
    assert prompter.accept("Remove these entries?") is True


def test_confirm_yes_cancels_with_exit_zero() -> None:
    prompter, _ = _prompter("no")
    with pytest.raises(OperationAborted) as excinfo:
        prompter.confirm_yes("Continue?", abort_message="No changes made.")
    assert excinfo.value.exit_code == 0
    assert str(excinfo.value) == "No changes made."


def test_agree_accepts_either_case() -> None:
    prompter, _ = _prompter("Y", "y", "")
    assert prompter.agree("Proceed?")
    assert prompter.agree("Proceed?")
    assert not prompter.agree("Proceed?")


def test_ask_uses_default_and_assume_yes() -> None:
    prompter, seen = _prompter("")
    assert prompter.ask("Hostname", default="jetson-01") == "jetson-01"
    assert seen == ["> Hostname [jetson-01]: "]

    prompter, seen = _prompter(assume_yes=True)
    assert prompter.ask("Hostname", default="jetson-01") == "jetson-01"
    prompter.confirm_phrase("Wipe?", "erase ssd")
    assert seen == []


def test_missing_input_aborts() -> None:
    prompter, _ = _prompter()
    with pytest.raises(OperationAborted, match="No confirmation input"):
        prompter.ask("Node name")
