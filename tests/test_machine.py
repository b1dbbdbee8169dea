"""
Tests for the trial state machine.

Each test drives a real TrialStateMachine and InputArbiter on a ManualLoop,
with MagicMock presentation/persistence sinks and a recording indicator.
Intervals are pinned with dataclasses.replace so onsets are exact.
"""
from __future__ import annotations

import dataclasses
import random
from unittest.mock import MagicMock

import pytest

from cogbattery import config
from cogbattery.arbiter import EventKind, InputArbiter, RawInputEvent
from cogbattery.clock import ManualLoop
from cogbattery.errors import OutputSinkFailure, PersistenceFailure, TrialStateError
from cogbattery.machine import MachineState, TrialStateMachine
from cogbattery.records import Outcome, Run, RunSpec, Stimulus
from cogbattery.tasks import RULES, TaskKind


# ────────────────────────────────────────────────────────────────────────────
# Fakes / helpers
# ────────────────────────────────────────────────────────────────────────────


class FakeIndicator:
    """Records every lamp command; optionally raises on one of them."""

    def __init__(self, fail_on: str | None = None) -> None:
        self.calls: list[tuple] = []
        self._fail_on = fail_on

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        if name == self._fail_on:
            raise OutputSinkFailure(f"{name} failed")

    def set_indicator(self, index: int, on: bool) -> None:
        self._record("set_indicator", index, on)

    def set_all(self, on: bool) -> None:
        self._record("set_all", on)

    def flash_indicator(self, index: int, count: int, duration_ms: int) -> None:
        self._record("flash_indicator", index, count, duration_ms)

    def chase(self, rounds: int, speed_ms: int) -> None:
        self._record("chase", rounds, speed_ms)


class Harness:
    def __init__(
        self,
        kind: TaskKind = TaskKind.SIMPLE_REACTION,
        interval_s: tuple[float, float] = (1.0, 1.0),
        duration_s: float | None = None,
        stimulus: Stimulus | None = None,
        indicator: FakeIndicator | None = None,
        false_start_scored: bool | None = None,
    ) -> None:
        rules = dataclasses.replace(RULES[kind], interval_s=interval_s)
        if false_start_scored is not None:
            rules = dataclasses.replace(rules, false_start_scored=false_start_scored)
        if stimulus is not None:
            rules = dataclasses.replace(rules, stimulus_factory=lambda rng, history: stimulus)
        self.rules = rules
        self.loop = ManualLoop(start=100.0)
        self.arbiter = InputArbiter()
        self.presenter = MagicMock()
        self.indicator = indicator or FakeIndicator()
        self.store = MagicMock()
        self.resolved = MagicMock()
        self.finalized = MagicMock()
        self.run = Run(spec=RunSpec(1, kind, "silence"), duration_s=duration_s or rules.duration_s)
        self.machine = TrialStateMachine(
            run=self.run,
            rules=rules,
            loop=self.loop,
            arbiter=self.arbiter,
            presenter=self.presenter,
            indicator=self.indicator,
            store=self.store,
            rng=random.Random(1),
            on_trial_resolved=self.resolved,
            on_run_finalized=self.finalized,
        )

    def press(self, key: str = "a") -> None:
        self.arbiter.on_raw_event(RawInputEvent(code=key, timestamp=self.loop.time()))

    def release(self, key: str = "a") -> None:
        self.arbiter.on_raw_event(
            RawInputEvent(code=key, timestamp=self.loop.time(), kind=EventKind.RELEASE)
        )

    def tap(self, key: str = "a") -> None:
        self.press(key)
        self.release(key)

    def begin(self) -> None:
        """Start and acknowledge the instructions at t=100."""
        self.machine.start()
        self.tap()


# ────────────────────────────────────────────────────────────────────────────
# 1. Lifecycle
# ────────────────────────────────────────────────────────────────────────────


class TestLifecycle:
    def test_start_shows_instructions_and_waits(self) -> None:
        h = Harness()
        h.machine.start()

        assert h.machine.state is MachineState.INSTRUCTING
        h.presenter.show_instructions.assert_called_once_with(h.rules, h.run)
        assert ("set_all", False) in h.indicator.calls

        h.loop.advance(30.0)
        assert h.run.trials == []

    def test_start_twice_rejected(self) -> None:
        h = Harness()
        h.machine.start()
        with pytest.raises(TrialStateError):
            h.machine.start()

    def test_acknowledge_starts_run_clock(self) -> None:
        h = Harness()
        h.machine.start()
        h.loop.advance(2.5)
        h.tap()

        assert h.run.start_time == pytest.approx(102.5)
        assert h.machine.state is MachineState.SCHEDULING

    def test_stimulus_onset_after_interval(self) -> None:
        h = Harness()
        h.begin()
        h.loop.advance(1.0)

        assert h.machine.state is MachineState.STIMULUS_ACTIVE
        trial = h.machine.active_trial
        assert trial.sequence == 1
        assert trial.onset == pytest.approx(101.0)
        h.presenter.show_stimulus.assert_called_once_with(h.rules, trial)
        assert ("set_indicator", 0, True) in h.indicator.calls

    def test_rules_must_match_run_kind(self) -> None:
        h = Harness()
        with pytest.raises(ValueError):
            TrialStateMachine(
                run=h.run, rules=RULES[TaskKind.STROOP], loop=h.loop, arbiter=h.arbiter,
                presenter=h.presenter, indicator=h.indicator, store=h.store,
            )


# ────────────────────────────────────────────────────────────────────────────
# 2. Responses and timeouts
# ────────────────────────────────────────────────────────────────────────────


class TestResolution:
    def test_response_within_window(self) -> None:
        h = Harness()
        h.begin()
        h.loop.advance(1.0)
        trial = h.machine.active_trial

        h.loop.advance(0.25)
        h.tap()

        assert trial.outcome is Outcome.RESPONDED
        assert trial.rt_ms == pytest.approx(250.0)
        assert trial.correct is True
        assert h.machine.state is MachineState.SCHEDULING
        h.resolved.assert_called_once_with(trial)
        assert ("set_indicator", 0, False) in h.indicator.calls
        assert ("flash_indicator", 0, config.FEEDBACK_FLASH_COUNT, config.FEEDBACK_FLASH_MS) in h.indicator.calls

    def test_timeout_resolves_missed(self) -> None:
        h = Harness()
        h.begin()
        h.loop.advance(1.0)
        trial = h.machine.active_trial

        h.loop.advance(h.rules.response_window_s)

        assert trial.outcome is Outcome.MISSED
        assert trial.rt_ms is None
        h.resolved.assert_called_once_with(trial)

    def test_timeout_is_noop_after_response(self) -> None:
        h = Harness(interval_s=(3.0, 3.0))
        h.begin()
        h.loop.advance(3.0)
        trial = h.machine.active_trial
        h.loop.advance(0.2)
        h.tap()

        # Past the original window, before the next onset
        h.loop.advance(h.rules.response_window_s + 0.1)

        assert trial.outcome is Outcome.RESPONDED
        assert h.resolved.call_count == 1
        assert h.machine.state is MachineState.SCHEDULING

    def test_first_press_wins(self) -> None:
        h = Harness(kind=TaskKind.CHOICE_REACTION, stimulus=Stimulus("green", "target", 0, colour=0))
        h.begin()
        h.loop.advance(1.0)
        trial = h.machine.active_trial

        h.loop.advance(0.3)
        h.press("a")
        h.press("s")

        assert trial.button == 0
        assert trial.rt_ms == pytest.approx(300.0)
        assert h.resolved.call_count == 1

    def test_wrong_button_is_incorrect_response(self) -> None:
        h = Harness(kind=TaskKind.CHOICE_REACTION, stimulus=Stimulus("red", "target", 2, colour=2))
        h.begin()
        h.loop.advance(1.3)
        h.tap("s")

        trial = h.run.trials[0]
        assert trial.outcome is Outcome.RESPONDED
        assert trial.correct is False
        assert ("flash_indicator", config.ERROR_INDICATOR, config.ERROR_FLASH_COUNT,
                config.FEEDBACK_FLASH_MS) in h.indicator.calls

    def test_response_stamped_after_window_counts_as_miss(self) -> None:
        h = Harness()
        h.begin()
        h.loop.advance(1.0)
        trial = h.machine.active_trial

        accepted = h.machine.respond(trial, 0, trial.onset + h.rules.response_window_s + 0.01)

        assert accepted is False
        assert trial.outcome is Outcome.MISSED

    def test_late_arrival_for_resolved_trial_discarded(self) -> None:
        h = Harness()
        h.begin()
        h.loop.advance(1.0)
        old = h.machine.active_trial
        h.loop.advance(h.rules.response_window_s)
        h.loop.advance(1.0)
        assert h.machine.active_trial is not old

        accepted = h.machine.respond(old, 0, h.loop.time())

        assert accepted is False
        assert old.outcome is Outcome.MISSED
        assert h.machine.active_trial.outcome is Outcome.PENDING

    @pytest.mark.parametrize("scored", [False, True])
    def test_press_stamped_before_onset_is_false_start(self, scored: bool) -> None:
        h = Harness(false_start_scored=scored)
        h.begin()
        h.loop.advance(1.0)
        trial = h.machine.active_trial

        # Pressed 5 ms before onset, delivered after it
        accepted = h.machine.respond(trial, 0, trial.onset - 0.005)

        assert accepted is False
        assert trial.outcome is Outcome.PENDING
        assert h.machine.active_trial is trial
        assert h.machine.state is MachineState.STIMULUS_ACTIVE
        if scored:
            penalty = h.run.trials[-1]
            assert penalty.outcome is Outcome.FALSE_START
            assert penalty.sequence == 2
            assert h.run.false_starts == []
        else:
            assert h.run.trials == [trial]
            assert len(h.run.false_starts) == 1
            assert h.run.false_starts[0].timestamp == pytest.approx(trial.onset - 0.005)

        h.loop.advance(0.2)
        h.tap()
        assert trial.outcome is Outcome.RESPONDED
        assert trial.rt_ms == pytest.approx(200.0)

    def test_respond_without_active_stimulus_is_fatal(self) -> None:
        h = Harness()
        h.begin()
        with pytest.raises(TrialStateError):
            h.machine.respond(None, 0, h.loop.time())

    def test_withheld_nogo_is_correct_miss(self) -> None:
        h = Harness(kind=TaskKind.GO_NOGO, stimulus=Stimulus("nogo", "nogo", None, colour=2))
        h.begin()
        h.loop.advance(1.0)
        trial = h.machine.active_trial
        h.loop.advance(h.rules.response_window_s)

        assert trial.outcome is Outcome.MISSED
        assert trial.correct is True
        assert ("set_indicator", 2, True) in h.indicator.calls

    def test_button_outside_response_set_ignored(self) -> None:
        h = Harness()
        h.begin()
        h.loop.advance(1.0)
        trial = h.machine.active_trial
        h.tap("d")
        assert not trial.resolved

    def test_held_answer_button_blocks_further_presses(self) -> None:
        h = Harness(kind=TaskKind.CHOICE_REACTION, stimulus=Stimulus("green", "target", 0, colour=0))
        h.begin()
        h.loop.advance(1.0)
        h.loop.advance(0.3)
        h.press("a")               # answers trial 1 and stays held
        h.loop.advance(1.0)        # trial 2 onset
        second = h.machine.active_trial
        assert second.sequence == 2

        h.loop.advance(0.1)
        h.press("s")
        assert not second.resolved

        h.release("a")
        h.loop.advance(0.1)
        h.press("d")
        assert second.outcome is Outcome.RESPONDED
        assert second.button == 2

    def test_live_metrics_after_each_trial(self) -> None:
        h = Harness()
        h.begin()
        h.loop.advance(1.25)
        h.tap()

        run, metrics, remaining = h.presenter.update_stats.call_args.args
        assert run is h.run
        assert metrics["total_trials"] == 1
        assert metrics["mean_rt_ms"] == pytest.approx(250.0)
        assert remaining == pytest.approx(h.run.duration_s - 1.25)


# ────────────────────────────────────────────────────────────────────────────
# 3. False starts
# ────────────────────────────────────────────────────────────────────────────


class TestFalseStarts:
    def test_simple_reaction_false_start_is_logged_only(self) -> None:
        h = Harness(kind=TaskKind.SIMPLE_REACTION)
        h.begin()
        h.loop.advance(0.5)
        h.tap()                    # too early
        h.loop.advance(0.5)        # onset
        h.loop.advance(0.25)
        h.tap()

        assert [t.sequence for t in h.run.trials] == [1]
        assert len(h.run.false_starts) == 1
        run, metrics, _ = h.presenter.update_stats.call_args.args
        assert metrics["total_trials"] == 1
        assert metrics["false_starts"] == 1
        assert metrics["accuracy"] == pytest.approx(100.0)

    def test_go_nogo_false_start_records_no_trial(self) -> None:
        h = Harness(kind=TaskKind.GO_NOGO)
        h.begin()
        h.loop.advance(0.5)
        h.tap()

        assert h.run.trials == []
        assert len(h.run.false_starts) == 1
        h.resolved.assert_not_called()
        assert not any(c[0] == "flash_indicator" for c in h.indicator.calls)

    def test_scored_false_start_consumes_sequence_number(self) -> None:
        h = Harness(kind=TaskKind.SIMPLE_REACTION, false_start_scored=True)
        h.begin()
        h.loop.advance(0.5)
        h.tap()

        assert len(h.run.trials) == 1
        penalty = h.run.trials[0]
        assert penalty.outcome is Outcome.FALSE_START
        assert penalty.sequence == 1
        assert h.run.false_starts == []
        h.resolved.assert_called_once_with(penalty)

        h.loop.advance(0.5)
        assert h.machine.active_trial.sequence == 2

    def test_logged_false_start_keeps_sequence(self) -> None:
        h = Harness(kind=TaskKind.CHOICE_REACTION)
        h.begin()
        h.loop.advance(0.5)
        h.tap("s")

        assert h.run.trials == []
        assert len(h.run.false_starts) == 1
        assert h.run.false_starts[0].button == 1
        assert h.run.false_starts[0].after_trial == 0
        h.resolved.assert_not_called()

        h.loop.advance(0.5)
        assert h.machine.active_trial.sequence == 1

    def test_scored_false_start_flashes_error_lamp(self) -> None:
        h = Harness(false_start_scored=True)
        h.begin()
        h.loop.advance(0.5)
        h.tap()
        assert ("flash_indicator", config.ERROR_INDICATOR, config.ERROR_FLASH_COUNT,
                config.FEEDBACK_FLASH_MS) in h.indicator.calls

    def test_false_start_outside_scheduling_is_fatal(self) -> None:
        h = Harness()
        h.machine.start()
        with pytest.raises(TrialStateError):
            h.machine.false_start(0, h.loop.time())


# ────────────────────────────────────────────────────────────────────────────
# 4. Finalization
# ────────────────────────────────────────────────────────────────────────────


class TestFinalization:
    def test_no_stimulus_after_duration(self) -> None:
        h = Harness(interval_s=(1.0, 2.0), duration_s=20.0)
        h.begin()
        h.loop.run_until_idle()

        assert h.machine.state is MachineState.FINALIZED
        assert h.run.finalized
        assert len(h.run.trials) > 0
        for trial in h.run.trials:
            assert trial.onset - h.run.start_time <= 20.0
        assert h.loop.pending() == 0

    def test_finalize_persists_and_notifies(self) -> None:
        h = Harness(duration_s=5.0)
        h.begin()
        h.loop.run_until_idle()

        h.store.record_run.assert_called_once()
        stored_run, stored_metrics = h.store.record_run.call_args.args
        assert stored_run is h.run
        assert stored_metrics["total_trials"] == len(h.run.trials)
        h.finalized.assert_called_once_with(h.run, h.run.metrics)
        assert h.arbiter.machine is None

    def test_persistence_failure_recorded(self) -> None:
        h = Harness(duration_s=5.0)
        h.store.record_run.side_effect = PersistenceFailure("disk full")
        h.begin()
        h.loop.run_until_idle()

        assert h.machine.state is MachineState.FINALIZED
        assert isinstance(h.machine.persistence_error, PersistenceFailure)
        h.finalized.assert_called_once()

    def test_indicator_failure_does_not_disturb_timing(self) -> None:
        h = Harness(indicator=FakeIndicator(fail_on="set_indicator"))
        h.begin()
        h.loop.advance(1.0)
        trial = h.machine.active_trial
        h.loop.advance(0.2)
        h.tap()

        assert trial.rt_ms == pytest.approx(200.0)
        assert h.machine.state is MachineState.SCHEDULING

    def test_stop_cancels_everything(self) -> None:
        h = Harness()
        h.begin()
        h.loop.advance(1.0)
        h.machine.stop()
        h.loop.advance(100.0)

        assert h.machine.state is MachineState.STOPPED
        assert len(h.run.trials) == 1
        assert h.loop.pending() == 0
        h.finalized.assert_not_called()
        h.store.record_run.assert_not_called()
