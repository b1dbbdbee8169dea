"""
Session initialisation: dialog and screen setup.
"""
from __future__ import annotations

from dataclasses import dataclass, field

import pyglet
from psychopy import core, gui, monitors, visual

from cogbattery import config
from cogbattery.battery import parse_kind
from cogbattery.errors import InvalidSelection
from cogbattery.tasks import TaskKind


@dataclass
class SessionInfo:
    participant_id: str
    test_kinds: list[TaskKind] = field(default_factory=lambda: list(TaskKind))
    conditions: list[str] = field(default_factory=lambda: list(config.DEFAULT_CONDITIONS))
    seed: int | None = None
    simulate: bool = False


def parse_kinds(text: str) -> list[TaskKind]:
    """Comma-separated kind names, or "all"."""
    names = [n.strip().lower() for n in text.split(",") if n.strip()]
    if names == ["all"]:
        return list(TaskKind)
    kinds = [parse_kind(name) for name in names]
    if not kinds:
        raise InvalidSelection("no test kinds selected")
    return kinds


def parse_conditions(text: str) -> list[str]:
    conditions = [c.strip() for c in text.split(",") if c.strip()]
    if not conditions:
        raise InvalidSelection("no conditions selected")
    return conditions


def show_dialog() -> SessionInfo:
    """Present the startup dialog and return a SessionInfo."""
    fields = {
        "Participant ID": "P000",
        "Test kinds (comma separated, or all)": "all",
        "Conditions (comma separated)": ", ".join(config.DEFAULT_CONDITIONS),
        "Random seed (blank = none)": "",
        "Simulate participant? (yes/no)": "no",
    }
    dlg = gui.DlgFromDict(dictionary=fields, title="Cognitive Test Battery")
    if not dlg.OK:
        core.quit()

    seed_text = str(fields["Random seed (blank = none)"]).strip()
    try:
        seed = int(seed_text) if seed_text else None
    except ValueError:
        seed = None

    return SessionInfo(
        participant_id=str(fields["Participant ID"]).strip(),
        test_kinds=parse_kinds(str(fields["Test kinds (comma separated, or all)"])),
        conditions=parse_conditions(str(fields["Conditions (comma separated)"])),
        seed=seed,
        simulate=str(fields["Simulate participant? (yes/no)"]).strip().lower() == "yes",
    )


def setup_screen() -> tuple[list[int], visual.Window]:
    """Create and return (win_res, win)."""
    display = pyglet.canvas.get_display()
    screens = display.get_screens()
    win_res = [screens[-1].width, screens[-1].height]
    exp_mon = monitors.Monitor("exp_mon")
    exp_mon.setSizePix(win_res)
    win = visual.Window(
        size=win_res,
        screen=len(screens) - 1,
        allowGUI=True,
        fullscr=True,
        monitor=exp_mon,
        units="height",
        color=(-0.8, -0.8, -0.8),
    )
    return win_res, win

