"""
Trial state machine: one instance per run, generic over test kind.

  awaiting-start -> instructing -> scheduling -> stimulus-active -> scheduling ...
                                       \\-> finalizing -> finalized

Every transition runs as a callback on one event loop. Onset times are read
from the loop clock before any sink is called; response times come from the
input event. A trial is resolved exactly once, by whichever of response and
response-window timeout happens first.
No rendering is done here; presentation and lamps go through sinks.
"""
from __future__ import annotations

import random
from enum import Enum
from typing import TYPE_CHECKING, Callable, Protocol, Sequence

from psychopy import logging

from cogbattery import config
from cogbattery.clock import EventLoop, Timer
from cogbattery.errors import PersistenceFailure, TrialStateError
from cogbattery.indicators import IndicatorSink, send_indicator
from cogbattery.metrics import compute_metrics
from cogbattery.records import FalseStart, MetricSet, Outcome, PersistenceSink, Run, RunSpec, Stimulus, Trial
from cogbattery.tasks import TaskRules

if TYPE_CHECKING:
    from cogbattery.arbiter import InputArbiter, RawInputEvent


class MachineState(str, Enum):
    AWAITING_START = "awaiting-start"
    INSTRUCTING = "instructing"
    SCHEDULING = "scheduling"
    STIMULUS_ACTIVE = "stimulus-active"
    FINALIZING = "finalizing"
    FINALIZED = "finalized"
    STOPPED = "stopped"


class PresentationSink(Protocol):
    """Observational display target. Nothing it does feeds back into the engine."""

    def show_instructions(self, rules: TaskRules, run: Run) -> None:
        ...

    def show_stimulus(self, rules: TaskRules, trial: Trial) -> None:
        ...

    def show_feedback(self, rules: TaskRules, trial: Trial) -> None:
        ...

    def update_stats(self, run: Run, metrics: MetricSet, remaining_s: float) -> None:
        ...

    def show_progress(self, spec: RunSpec, total: int) -> None:
        ...

    def show_break(self, remaining_s: float, next_spec: RunSpec) -> None:
        ...

    def show_complete(self, runs: Sequence[Run]) -> None:
        ...


TrialCallback = Callable[[Trial], None]
RunCallback = Callable[[Run, MetricSet], None]


class TrialStateMachine:
    def __init__(
        self,
        run: Run,
        rules: TaskRules,
        loop: EventLoop,
        arbiter: "InputArbiter",
        presenter: PresentationSink,
        indicator: IndicatorSink,
        store: PersistenceSink,
        rng: random.Random | None = None,
        on_trial_resolved: TrialCallback | None = None,
        on_run_finalized: RunCallback | None = None,
    ) -> None:
        if run.kind is not rules.kind:
            raise ValueError(f"run {run.run_id} is {run.kind.value}, rules are {rules.kind.value}")
        self.run = run
        self.rules = rules
        self._loop = loop
        self._arbiter = arbiter
        self._presenter = presenter
        self._indicator = indicator
        self._store = store
        self._rng = rng or random.Random()
        self._on_trial_resolved = on_trial_resolved
        self._on_run_finalized = on_run_finalized

        self.state = MachineState.AWAITING_START
        self.active_trial: Trial | None = None
        self.persistence_error: PersistenceFailure | None = None
        self._next_sequence = 1
        self._history: list[Stimulus] = []
        self._stimulus_timer = Timer(loop, "stimulus-onset")
        self._response_timer = Timer(loop, "response-window")

    # ── Public surface ───────────────────────────────────────────────────────

    def start(self) -> None:
        """Show instructions and wait for any button before the timed portion."""
        if self.state is not MachineState.AWAITING_START:
            raise TrialStateError(f"run {self.run.run_id} already started ({self.state.value})")
        self._arbiter.attach(self)
        self.state = MachineState.INSTRUCTING
        send_indicator(self._indicator, "set_all", False)
        self._presenter.show_instructions(self.rules, self.run)
        logging.exp(f"Run {self.run.run_id}: instructions shown, waiting for acknowledgement")

    def on_input(self, event: "RawInputEvent") -> None:
        """Entry point for raw input; arbitration decides what the event means."""
        self._arbiter.on_raw_event(event)

    def stop(self) -> None:
        """Abandon the run: no more timers fire and no more trials are created."""
        if self.state in (MachineState.FINALIZED, MachineState.STOPPED):
            return
        self._cancel_timers()
        self._arbiter.detach(self)
        self.active_trial = None
        self.state = MachineState.STOPPED
        send_indicator(self._indicator, "set_all", False)
        logging.exp(f"Run {self.run.run_id}: stopped after {len(self.run.trials)} trials")

    @property
    def remaining_s(self) -> float:
        if self.run.start_time is None:
            return self.run.duration_s
        return max(0.0, self.run.duration_s - (self._loop.time() - self.run.start_time))

    # ── Called by the arbiter ────────────────────────────────────────────────

    def acknowledge(self, timestamp: float) -> None:
        """Instruction acknowledgement: the run clock starts at this press."""
        if self.state is not MachineState.INSTRUCTING:
            return
        self.run.start_time = timestamp
        logging.exp(
            f"Run {self.run.run_id}: started  duration={self.run.duration_s:.0f} s  "
            f"interval={self.rules.interval_s[0]:.1f}-{self.rules.interval_s[1]:.1f} s  "
            f"window={int(self.rules.response_window_s * 1000)} ms"
        )
        self._schedule_next()

    def respond(self, trial: Trial | None, button: int, timestamp: float) -> bool:
        """
        Resolve the active trial with a response.
        Returns True if the response was recorded, False if it was discarded.
        """
        if self.state is not MachineState.STIMULUS_ACTIVE or self.active_trial is None:
            raise TrialStateError(
                f"response (button {button}) with no active stimulus in run "
                f"{self.run.run_id} ({self.state.value})"
            )
        if trial is not self.active_trial or trial.resolved:
            logging.warning(f"Late response to trial {trial.sequence if trial else '?'} discarded")
            return False
        if timestamp < trial.onset:
            # Pressed before onset, delivered after it
            self._record_false_start(button, timestamp)
            return False
        if timestamp - trial.onset > self.rules.response_window_s:
            # The window had closed; the pending timeout wins
            self._resolve_missed(trial)
            return False

        self._response_timer.cancel()
        trial.resolve_response(button, timestamp, self.rules.score_response(trial.stimulus, button))
        self._after_resolution(trial)
        return True

    def false_start(self, button: int, timestamp: float) -> None:
        """Press while no stimulus is active."""
        if self.state is not MachineState.SCHEDULING:
            raise TrialStateError(f"false start outside scheduling ({self.state.value})")
        self._record_false_start(button, timestamp)

    # ── Scheduling ───────────────────────────────────────────────────────────

    def _schedule_next(self) -> None:
        self.state = MachineState.SCHEDULING
        self.active_trial = None
        delay_s = self.rules.next_interval(self._rng)
        fire_at = self._loop.time() + delay_s
        if fire_at - self.run.start_time > self.run.duration_s:
            self._finalize()
            return
        self._stimulus_timer.arm(delay_s, self._present_stimulus)
        self._update_display()

    def _present_stimulus(self) -> None:
        onset = self._loop.time()
        if self.state is not MachineState.SCHEDULING:
            return
        stimulus = self.rules.generate_stimulus(self._rng, self._history)
        trial = Trial(sequence=self._take_sequence(), stimulus=stimulus, onset=onset)
        self._history.append(stimulus)
        self.run.add_trial(trial)
        self.active_trial = trial
        self.state = MachineState.STIMULUS_ACTIVE
        self._response_timer.arm(self.rules.response_window_s, self._on_timeout, trial)

        self._presenter.show_stimulus(self.rules, trial)
        self._cue_on(stimulus)
        logging.exp(
            f"  -> trial {trial.sequence}  {stimulus.category}  stimulus={stimulus.label}  "
            f"correct={stimulus.correct_button}"
        )

    def _on_timeout(self, trial: Trial) -> None:
        if trial.resolved or trial is not self.active_trial:
            return
        self._resolve_missed(trial)

    # ── Resolution ───────────────────────────────────────────────────────────

    def _resolve_missed(self, trial: Trial) -> None:
        self._response_timer.cancel()
        trial.resolve_missed()
        self._after_resolution(trial)

    def _after_resolution(self, trial: Trial) -> None:
        self._cue_off(trial.stimulus)
        self._presenter.show_feedback(self.rules, trial)
        self._feedback_indicator(trial)
        rt = f"{trial.rt_ms:.0f} ms" if trial.rt_ms is not None else "-"
        logging.data(
            f"Trial {trial.sequence:3d}  {trial.category:<11}  {trial.outcome.value:<9}  "
            f"button={trial.button}  correct={trial.correct}  RT={rt}"
        )
        if self._on_trial_resolved is not None:
            self._on_trial_resolved(trial)
        # A callback may have stopped the run
        if self.state is MachineState.STIMULUS_ACTIVE:
            self._schedule_next()

    def _record_false_start(self, button: int, timestamp: float) -> None:
        if self.rules.false_start_scored:
            trial = Trial.false_start(self._take_sequence(), timestamp, button)
            self.run.add_trial(trial)
            logging.data(f"Trial {trial.sequence:3d}  false start  button={button}")
            self._presenter.show_feedback(self.rules, trial)
            send_indicator(
                self._indicator, "flash_indicator",
                config.ERROR_INDICATOR, config.ERROR_FLASH_COUNT, config.FEEDBACK_FLASH_MS,
            )
            if self._on_trial_resolved is not None:
                self._on_trial_resolved(trial)
        else:
            self.run.add_false_start(FalseStart(timestamp, button, after_trial=self._next_sequence - 1))
            logging.data(f"False start (logged)  button={button}")
        self._update_display()

    def _take_sequence(self) -> int:
        n = self._next_sequence
        self._next_sequence += 1
        return n

    # ── Finalization ─────────────────────────────────────────────────────────

    def _finalize(self) -> None:
        self.state = MachineState.FINALIZING
        self._cancel_timers()
        self._arbiter.detach(self)
        self.active_trial = None
        end_time = self._loop.time()

        metrics = compute_metrics(self.rules.kind, self.run.trials, self.run.false_starts)
        self.run.finalize(end_time, metrics)
        send_indicator(self._indicator, "set_all", False)
        logging.exp(
            f"Run {self.run.run_id}: finalized  trials={metrics['total_trials']}  "
            f"accuracy={_fmt(metrics['accuracy'], '%')}  mean RT={_fmt(metrics['mean_rt_ms'], ' ms')}"
        )

        try:
            self._store.record_run(self.run, self.run.metrics)
        except PersistenceFailure as exc:
            self.persistence_error = exc
            logging.error(f"Run {self.run.run_id}: not saved ({exc}); kept in memory for retry")

        self.state = MachineState.FINALIZED
        if self._on_run_finalized is not None:
            self._on_run_finalized(self.run, self.run.metrics)

    def _cancel_timers(self) -> None:
        self._stimulus_timer.cancel()
        self._response_timer.cancel()

    # ── Sinks ────────────────────────────────────────────────────────────────

    def _update_display(self) -> None:
        metrics = compute_metrics(self.rules.kind, self.run.trials, self.run.false_starts)
        self._presenter.update_stats(self.run, metrics, self.remaining_s)

    def _cue_on(self, stimulus: Stimulus) -> None:
        cue = self.rules.cue(stimulus)
        if cue is None:
            return
        if cue.flashes:
            send_indicator(self._indicator, "flash_indicator", cue.index, cue.flashes, config.VIGILANCE_FLASH_MS)
        else:
            send_indicator(self._indicator, "set_indicator", cue.index, True)

    def _cue_off(self, stimulus: Stimulus | None) -> None:
        if stimulus is None:
            return
        cue = self.rules.cue(stimulus)
        if cue is not None and not cue.flashes:
            send_indicator(self._indicator, "set_indicator", cue.index, False)

    def _feedback_indicator(self, trial: Trial) -> None:
        if trial.outcome is not Outcome.RESPONDED:
            return
        if trial.correct:
            send_indicator(
                self._indicator, "flash_indicator",
                trial.button, config.FEEDBACK_FLASH_COUNT, config.FEEDBACK_FLASH_MS,
            )
        else:
            send_indicator(
                self._indicator, "flash_indicator",
                config.ERROR_INDICATOR, config.ERROR_FLASH_COUNT, config.FEEDBACK_FLASH_MS,
            )


def _fmt(value: float | None, unit: str) -> str:
    return f"{value:.1f}{unit}" if value is not None else "n/a"
