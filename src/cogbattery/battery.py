"""
Battery scheduler: builds the shuffled run queue, drives one trial state
machine per run, and paces the breaks between runs.

Only one run is live at a time. Each machine receives its run context
(spec, rules, sinks, rng) explicitly at construction.
"""
from __future__ import annotations

import itertools
import random
from typing import Callable, Iterable, Sequence, TypeVar

from psychopy import logging

from cogbattery import config
from cogbattery.arbiter import InputArbiter
from cogbattery.clock import EventLoop, Timer
from cogbattery.errors import InvalidSelection, PersistenceFailure
from cogbattery.indicators import IndicatorSink, send_indicator
from cogbattery.machine import PresentationSink, RunCallback, TrialCallback, TrialStateMachine
from cogbattery.records import MetricSet, PersistenceSink, Run, RunSpec
from cogbattery.tasks import RULES, TaskKind

T = TypeVar("T")


class _Completed:
    def __repr__(self) -> str:
        return "COMPLETED"


COMPLETED = _Completed()


def fisher_yates(items: Sequence[T], rng: random.Random) -> list[T]:
    """Return a shuffled copy: backward pass, swap i with a uniform j in [0, i]."""
    out = list(items)
    for i in range(len(out) - 1, 0, -1):
        j = rng.randrange(i + 1)
        out[i], out[j] = out[j], out[i]
    return out


def parse_kind(value: TaskKind | str) -> TaskKind:
    if isinstance(value, TaskKind):
        return value
    try:
        return TaskKind(value)
    except ValueError:
        raise InvalidSelection(
            f"unknown test kind {value!r}; expected one of {[k.value for k in TaskKind]}"
        ) from None


def build_queue(
    kinds: Iterable[TaskKind | str],
    conditions: Iterable[str],
    rng: random.Random | None = None,
) -> list[RunSpec]:
    """Every (kind, condition) pair exactly once, in shuffled order, numbered from 1."""
    selected = {parse_kind(k) for k in kinds}
    conds = sorted({str(c) for c in conditions})
    if not selected:
        raise InvalidSelection("no test kinds selected")
    if not conds:
        raise InvalidSelection("no conditions selected")
    # Fixed pre-shuffle order so a seeded rng reproduces the queue
    ordered = [k for k in TaskKind if k in selected]
    pairs = fisher_yates(list(itertools.product(ordered, conds)), rng or random.Random())
    return [RunSpec(index=i, kind=kind, condition=cond) for i, (kind, cond) in enumerate(pairs, start=1)]


BatteryCallback = Callable[[Sequence[Run]], None]


class BatteryScheduler:
    """
    configure() -> start() -> [run, break]* -> run -> on_battery_complete(runs)

    stop() cancels the live run or break; nothing fires afterwards.
    """

    def __init__(
        self,
        loop: EventLoop,
        arbiter: InputArbiter,
        presenter: PresentationSink,
        indicator: IndicatorSink,
        store: PersistenceSink,
        rng: random.Random | None = None,
        break_s: float = config.BREAK_DURATION_S,
        on_trial_resolved: TrialCallback | None = None,
        on_run_finalized: RunCallback | None = None,
        on_battery_complete: BatteryCallback | None = None,
    ) -> None:
        self._loop = loop
        self._arbiter = arbiter
        self._presenter = presenter
        self._indicator = indicator
        self._store = store
        self._rng = rng or random.Random()
        self.break_s = break_s
        self._on_trial_resolved = on_trial_resolved
        self._on_run_finalized = on_run_finalized
        self._on_battery_complete = on_battery_complete

        self._queue: list[RunSpec] = []
        self._position = 0
        self.machine: TrialStateMachine | None = None
        self.completed_runs: list[Run] = []
        self.unsaved_runs: list[Run] = []
        self.in_break = False
        self._break_timer = Timer(loop, "break-tick")
        self._break_deadline = 0.0
        self._started = False
        self._stopped = False
        self._completed = False

    # ── Configuration ────────────────────────────────────────────────────────

    def configure(self, kinds: Iterable[TaskKind | str], conditions: Iterable[str]) -> list[RunSpec]:
        if self._started:
            raise RuntimeError("battery already started")
        self._queue = build_queue(kinds, conditions, self._rng)
        self._position = 0
        logging.exp(
            "Battery queue: " + ", ".join(spec.run_id for spec in self._queue)
        )
        return list(self._queue)

    @property
    def queue(self) -> list[RunSpec]:
        return list(self._queue)

    @property
    def total_runs(self) -> int:
        return len(self._queue)

    @property
    def finished(self) -> bool:
        return self._completed or self._stopped

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def start(self) -> None:
        if not self._queue:
            raise InvalidSelection("battery has no runs; call configure() first")
        if self._started:
            raise RuntimeError("battery already started")
        self._started = True
        logging.exp(f"Battery started: {len(self._queue)} runs")
        self._start_next()

    def advance(self) -> RunSpec | _Completed:
        """Pop the next queued run, or COMPLETED once the queue is exhausted."""
        if self._position >= len(self._queue):
            return COMPLETED
        spec = self._queue[self._position]
        self._position += 1
        return spec

    def stop(self) -> None:
        """Cancel the current run or break. The battery does not complete."""
        if self._stopped:
            return
        self._stopped = True
        self._break_timer.cancel()
        self.in_break = False
        if self.machine is not None:
            self.machine.stop()
        logging.exp(f"Battery stopped after {len(self.completed_runs)}/{len(self._queue)} runs")

    def skip_break(self) -> bool:
        """End the current break now. Returns False when no break is running."""
        if not self.in_break:
            return False
        logging.exp("Break skipped")
        self._end_break()
        return True

    def retry_unsaved(self) -> list[Run]:
        """Try to persist runs whose earlier save failed; return those still unsaved."""
        still: list[Run] = []
        for run in self.unsaved_runs:
            try:
                self._store.record_run(run, run.metrics)
            except PersistenceFailure as exc:
                logging.error(f"Run {run.run_id}: retry failed ({exc})")
                still.append(run)
            else:
                logging.exp(f"Run {run.run_id}: saved on retry")
        self.unsaved_runs = still
        return list(still)

    # ── Internals ────────────────────────────────────────────────────────────

    def _start_next(self) -> None:
        spec = self.advance()
        if spec is COMPLETED:
            self._complete()
            return
        rules = RULES[spec.kind]
        run = Run(spec=spec, duration_s=rules.duration_s)
        self.machine = TrialStateMachine(
            run=run,
            rules=rules,
            loop=self._loop,
            arbiter=self._arbiter,
            presenter=self._presenter,
            indicator=self._indicator,
            store=self._store,
            rng=self._rng,
            on_trial_resolved=self._on_trial_resolved,
            on_run_finalized=self._run_finalized,
        )
        logging.exp(f"Run {spec.index}/{len(self._queue)}: {spec.kind.value} / {spec.condition}")
        self._presenter.show_progress(spec, len(self._queue))
        self.machine.start()

    def _run_finalized(self, run: Run, metrics: MetricSet) -> None:
        self.completed_runs.append(run)
        machine = self.machine
        if machine is not None and machine.persistence_error is not None:
            self.unsaved_runs.append(run)
        if self._on_run_finalized is not None:
            self._on_run_finalized(run, metrics)
        if self._stopped:
            return
        if self._position >= len(self._queue):
            self._complete()
        else:
            self._begin_break()

    def _begin_break(self) -> None:
        self.in_break = True
        self._break_deadline = self._loop.time() + self.break_s
        send_indicator(self._indicator, "chase", 1, 100)
        logging.exp(f"Break: {self.break_s:.0f} s")
        self._break_tick()

    def _break_tick(self) -> None:
        if not self.in_break:
            return
        remaining = self._break_deadline - self._loop.time()
        if remaining <= 1e-9:
            self._end_break()
            return
        self._presenter.show_break(remaining, self._queue[self._position])
        self._break_timer.arm(min(config.BREAK_TICK_S, remaining), self._break_tick)

    def _end_break(self) -> None:
        if not self.in_break:
            return
        self.in_break = False
        self._break_timer.cancel()
        if self._stopped:
            return
        self._start_next()

    def _complete(self) -> None:
        if self._completed:
            return
        self._completed = True
        self.machine = None
        runs = list(self.completed_runs)
        logging.exp(f"Battery complete: {len(runs)} runs, {len(self.unsaved_runs)} unsaved")
        self._presenter.show_complete(runs)
        send_indicator(self._indicator, "chase", 2, 80)
        if self._on_battery_complete is not None:
            self._on_battery_complete(runs)
