"""
Indicator (button lamp) sink contract and the fire-and-forget send helper.

IndicatorSink – protocol implemented by:
  MicrobitLink   – LEDs on the hardware button box (cogbattery.hardware)
  ScreenPresenter – on-screen lamps for keyboard-only sessions (cogbattery.display)
  NullIndicator  – discards every command

Indicator failures never reach trial timing: send_indicator() logs them and
returns False.
"""
from __future__ import annotations

import asyncio
from functools import partial
from typing import Any, Protocol

from psychopy import logging

# Strong references to in-flight indicator tasks until they finish
_pending: set["asyncio.Task[Any]"] = set()


class IndicatorSink(Protocol):
    """Lamp commands. Implementations may return a coroutine."""

    def set_indicator(self, index: int, on: bool) -> Any:
        ...

    def set_all(self, on: bool) -> Any:
        ...

    def flash_indicator(self, index: int, count: int, duration_ms: int) -> Any:
        ...

    def chase(self, rounds: int, speed_ms: int) -> Any:
        ...


class NullIndicator:
    def set_indicator(self, index: int, on: bool) -> None:
        pass

    def set_all(self, on: bool) -> None:
        pass

    def flash_indicator(self, index: int, count: int, duration_ms: int) -> None:
        pass

    def chase(self, rounds: int, speed_ms: int) -> None:
        pass


def send_indicator(sink: IndicatorSink, command: str, *args: Any) -> bool:
    """Issue one lamp command without waiting for it. Returns False on failure."""
    try:
        result = getattr(sink, command)(*args)
    except Exception as exc:
        _log_failure(command, args, exc)
        return False
    if asyncio.iscoroutine(result):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            result.close()
            logging.warning(f"Indicator {command}{args} dropped: no running event loop")
            return False
        task = loop.create_task(result)
        _pending.add(task)
        task.add_done_callback(_pending.discard)
        task.add_done_callback(partial(_check_task, command, args))
    return True


def _check_task(command: str, args: tuple, task: "asyncio.Task[Any]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        _log_failure(command, args, exc)


def _log_failure(command: str, args: tuple, exc: BaseException) -> None:
    logging.warning(f"Indicator {command}{args} failed ({exc!r}); continuing without visual cue")
