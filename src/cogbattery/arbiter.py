"""
Input arbitration: raw press/release events from any source -> trial-scoped
responses, false starts, or instruction acknowledgements.

Events are handled synchronously in arrival order. Timestamps are taken by
the source when the event arrives and are never re-stamped here.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping

from psychopy import logging

from cogbattery import config
from cogbattery.machine import MachineState

if TYPE_CHECKING:
    from cogbattery.machine import TrialStateMachine


class EventKind(str, Enum):
    PRESS = "press"
    RELEASE = "release"


@dataclass(frozen=True)
class RawInputEvent:
    code: int | str          # source-specific: hardware button number or key name
    timestamp: float         # loop clock at arrival, seconds
    kind: EventKind = EventKind.PRESS
    source: str = "keyboard"
    meta: Any = None


class KeyMap:
    """(source, code) -> logical button index. Unmapped codes map to None."""

    def __init__(self, mapping: Mapping[tuple[str, int | str], int]) -> None:
        self._mapping = dict(mapping)

    @classmethod
    def default(cls) -> "KeyMap":
        mapping: dict[tuple[str, int | str], int] = {}
        for key, button in config.KEYS_FALLBACK.items():
            mapping[("keyboard", key)] = button
        for code, button in config.MICROBIT_BUTTONS.items():
            mapping[("microbit", code)] = button
        return cls(mapping)

    def button_for(self, event: RawInputEvent) -> int | None:
        code = event.code.lower() if isinstance(event.code, str) else event.code
        return self._mapping.get((event.source, code))

    def keys_for(self, button: int, source: str = "keyboard") -> list[int | str]:
        return [code for (src, code), b in self._mapping.items() if src == source and b == button]


class ButtonState:
    """Logical buttons currently held down, shared by every source."""

    def __init__(self) -> None:
        self._held: set[int] = set()

    @property
    def held(self) -> frozenset[int]:
        return frozenset(self._held)

    def press(self, button: int) -> bool:
        """Mark held; False if it already was (repeat press)."""
        if button in self._held:
            return False
        self._held.add(button)
        return True

    def release(self, button: int) -> bool:
        if button not in self._held:
            return False
        self._held.discard(button)
        return True

    def is_held(self, button: int) -> bool:
        return button in self._held

    def clear(self) -> None:
        self._held.clear()


class InputArbiter:
    """
    Routes each new press to the attached state machine:

      instructing      -> acknowledge (any mapped button)
      stimulus active  -> response for the active trial (first press wins)
      scheduling       -> false start
      anything else    -> dropped

    Buttons outside the running kind's response set are dropped once the
    timed portion has begun. While the button that answered a trial is still
    held, further presses are not scored.
    """

    def __init__(self, keymap: KeyMap | None = None, buttons: ButtonState | None = None) -> None:
        self.keymap = keymap or KeyMap.default()
        self.buttons = buttons or ButtonState()
        self._machine: "TrialStateMachine | None" = None
        self._answering_button: int | None = None

    @property
    def machine(self) -> "TrialStateMachine | None":
        return self._machine

    def attach(self, machine: "TrialStateMachine") -> None:
        self._machine = machine
        self._answering_button = None

    def detach(self, machine: "TrialStateMachine") -> None:
        if self._machine is machine:
            self._machine = None
            self._answering_button = None

    def on_raw_event(self, event: RawInputEvent) -> None:
        button = self.keymap.button_for(event)
        if button is None:
            return

        if event.kind is EventKind.RELEASE:
            self.buttons.release(button)
            if button == self._answering_button:
                self._answering_button = None
            return

        if not self.buttons.press(button):
            return

        machine = self._machine
        if machine is None:
            return
        self._route(machine, button, event.timestamp)

    def _route(self, machine: "TrialStateMachine", button: int, timestamp: float) -> None:
        state = machine.state
        if state is MachineState.INSTRUCTING:
            machine.acknowledge(timestamp)
            return
        if button not in machine.rules.response_buttons:
            logging.debug(f"Button {button} not used by {machine.rules.kind.value}; ignored")
            return
        if self._answering_button is not None:
            return
        if state is MachineState.STIMULUS_ACTIVE:
            if machine.respond(machine.active_trial, button, timestamp):
                self._answering_button = button
        elif state is MachineState.SCHEDULING:
            machine.false_start(button, timestamp)
