"""
Response devices: the micro:bit serial button box and the PsychoPy keyboard.

Inbound lines:  BTN_PRESS:<button>:<device ms>   BTN_RELEASE:<button>:<device ms>:<held ms>
Outbound lines: LED_ON:<i>  LED_OFF:<i>  ALL_LED_ON  ALL_LED_OFF  FLASH:<i>:<n>:<ms>
                FLASH_ALL:<n>:<ms>  CHASE:<rounds>:<ms>

Buttons are 1-indexed on the wire; LED indices are 0-indexed. Device timestamps
are ignored: each line is stamped with the host clock on the reader thread as
soon as it is complete, then handed to the engine loop with
call_soon_threadsafe. Keyboard events carry the keyboard backend's own
key-down times, mapped onto the engine clock.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable

import serial
from psychopy import logging
from serial.threaded import LineReader, ReaderThread
from serial.tools import list_ports

from cogbattery import config
from cogbattery.arbiter import EventKind, RawInputEvent
from cogbattery.errors import OutputSinkFailure

if TYPE_CHECKING:
    from psychopy.hardware import keyboard

SOURCE = "microbit"
MICROBIT_VID = 0x0D28   # ARM mbed DAPLink


def parse_line(line: str, timestamp: float) -> RawInputEvent | None:
    """Return the event encoded by one inbound line, or None for anything else."""
    parts = line.strip().split(":")
    if len(parts) < 2 or parts[0] not in ("BTN_PRESS", "BTN_RELEASE"):
        return None
    try:
        button = int(parts[1])
    except ValueError:
        return None
    kind = EventKind.PRESS if parts[0] == "BTN_PRESS" else EventKind.RELEASE
    return RawInputEvent(code=button, timestamp=timestamp, kind=kind, source=SOURCE, meta=line.strip())


class ButtonBoxProtocol(LineReader):
    """Reader-thread side of the link: one call to handle_line per inbound line."""

    TERMINATOR = b"\n"
    UNICODE_HANDLING = "replace"

    def __init__(self, link: "MicrobitLink") -> None:
        super().__init__()
        self._link = link

    def handle_line(self, line: str) -> None:
        self._link.line_received(line)

    def connection_lost(self, exc: BaseException | None) -> None:
        # The base class re-raises exc on the reader thread
        self.transport = None
        if exc is not None:
            logging.warning(f"micro:bit connection lost: {exc}")


class MicrobitLink:
    """
    Serial button box. Reading happens on a pyserial ReaderThread; every
    engine-side effect is posted to the loop with call_soon_threadsafe.
    """

    def __init__(
        self,
        port: serial.Serial,
        clock: Callable[[], float],
        loop: Any,
        on_event: Callable[[RawInputEvent], None],
    ) -> None:
        self._port = port
        self._clock = clock
        self._loop = loop
        self._on_event = on_event
        self._reader: ReaderThread | None = None

    def start(self) -> None:
        self._reader = ReaderThread(self._port, lambda: ButtonBoxProtocol(self))
        self._reader.start()
        self._reader.connect()

    def line_received(self, line: str) -> None:
        """Stamp one complete line and post it to the engine loop. Reader thread."""
        now = self._clock()
        event = parse_line(line, now)
        if event is not None:
            self._loop.call_soon_threadsafe(self._on_event, event)

    def _send(self, line: str) -> None:
        data = (line + "\n").encode("utf-8")
        try:
            if self._reader is not None:
                self._reader.write(data)
            else:
                self._port.write(data)
        except serial.SerialException as exc:
            # Includes SerialTimeoutException from write_timeout=0
            raise OutputSinkFailure(f"micro:bit write {line!r} failed: {exc}") from exc

    def set_indicator(self, index: int, on: bool) -> None:
        self._send(f"LED_ON:{index}" if on else f"LED_OFF:{index}")

    def set_all(self, on: bool) -> None:
        self._send("ALL_LED_ON" if on else "ALL_LED_OFF")

    def flash_indicator(self, index: int, count: int, duration_ms: int) -> None:
        self._send(f"FLASH:{index}:{count}:{duration_ms}")

    def flash_all(self, count: int, duration_ms: int) -> None:
        self._send(f"FLASH_ALL:{count}:{duration_ms}")

    def chase(self, rounds: int, speed_ms: int) -> None:
        self._send(f"CHASE:{rounds}:{speed_ms}")

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
            self._reader = None
        else:
            self._port.close()


def find_port() -> str | None:
    """Return the device path of the first attached micro:bit, if any."""
    for info in list_ports.comports():
        if info.vid == MICROBIT_VID:
            return info.device
        description = (info.description or "").lower()
        if "micro:bit" in description or "mbed" in description:
            return info.device
    return None


def make_link(
    clock: Callable[[], float],
    loop: Any,
    on_event: Callable[[RawInputEvent], None],
    port_name: str | None = config.MICROBIT_PORT,
) -> MicrobitLink | None:
    """Open and start the button box, or return None so the caller falls back to the keyboard."""
    path = port_name or find_port()
    if path is None:
        logging.warning("micro:bit not found; using keyboard fallback (A S D F)")
        return None
    try:
        port = serial.Serial(
            port=path, baudrate=config.MICROBIT_BAUD_RATE, timeout=config.MICROBIT_READ_TIMEOUT_S,
            write_timeout=0,
        )
    except serial.SerialException as exc:
        logging.warning(f"Cannot open micro:bit on {path} ({exc}); using keyboard fallback")
        return None
    link = MicrobitLink(port, clock, loop, on_event)
    link.start()
    logging.exp(f"micro:bit connected on {path}")
    return link


class KeyboardInput:
    """
    Keyboard responses from psychopy.hardware.keyboard.Keyboard.

    poll() may run once per frame: press and release times are the
    backend's key-down and key-up times, not the time of the poll. They are
    mapped onto the engine clock by the offset between the two clocks,
    sampled at each poll. Releases need a backend that reports durations
    (ptb or iohub).
    """

    def __init__(
        self,
        kb: "keyboard.Keyboard",
        clock: Callable[[], float],
        on_event: Callable[[RawInputEvent], None],
        on_quit: Callable[[], None],
        on_skip: Callable[[], None],
    ) -> None:
        self._kb = kb
        self._clock = clock
        self._on_event = on_event
        self._on_quit = on_quit
        self._on_skip = on_skip
        # Presses already delivered whose release has not been seen, by object id
        self._held: dict[int, Any] = {}

    def poll(self) -> list[RawInputEvent]:
        offset = self._clock() - self._kb.clock.getTime()
        events: list[RawInputEvent] = []

        for key in self._kb.getKeys(waitRelease=False, clear=False):
            if id(key) not in self._held:
                self._held[id(key)] = key
                events.append(self._event(key, key.rt + offset, EventKind.PRESS))

        for key in self._kb.getKeys(waitRelease=True, clear=True):
            if self._held.pop(id(key), None) is None:
                # Pressed and released between two polls
                events.append(self._event(key, key.rt + offset, EventKind.PRESS))
            events.append(self._event(key, key.rt + key.duration + offset, EventKind.RELEASE))

        events.sort(key=lambda e: e.timestamp)
        delivered = []
        for event in events:
            name = event.code
            if name in config.QUIT_KEYS:
                if event.kind is EventKind.PRESS:
                    self._on_quit()
                continue
            if name == config.SKIP_BREAK_KEY:
                if event.kind is EventKind.PRESS:
                    self._on_skip()
                continue
            self._on_event(event)
            delivered.append(event)
        return delivered

    @staticmethod
    def _event(key: Any, timestamp: float, kind: EventKind) -> RawInputEvent:
        return RawInputEvent(code=str(key.name).lower(), timestamp=timestamp, kind=kind, source="keyboard")
