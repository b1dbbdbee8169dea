"""
Simulated participant for dry runs and tests.

Wraps a presentation sink: every call is forwarded unchanged, and the
stimuli it sees are answered with keyboard events on the same event loop.
"""
from __future__ import annotations

import random
from typing import Callable, Sequence

from cogbattery.arbiter import EventKind, KeyMap, RawInputEvent
from cogbattery.clock import EventLoop
from cogbattery.records import MetricSet, Run, RunSpec, Trial
from cogbattery.tasks import TaskRules

HOLD_S = 0.08


class SimulatedParticipant:
    def __init__(
        self,
        presenter,
        loop: EventLoop,
        on_event: Callable[[RawInputEvent], None],
        rng: random.Random | None = None,
        keymap: KeyMap | None = None,
        rt_mean_s: float = 0.30,
        rt_sd_s: float = 0.05,
        p_correct: float = 0.9,
        p_commission: float = 0.1,
        ack_delay_s: float = 1.0,
    ) -> None:
        self._presenter = presenter
        self._loop = loop
        self._on_event = on_event
        self._rng = rng or random.Random()
        self._keymap = keymap or KeyMap.default()
        self.rt_mean_s = rt_mean_s
        self.rt_sd_s = rt_sd_s
        self.p_correct = p_correct
        self.p_commission = p_commission
        self.ack_delay_s = ack_delay_s

    def _key(self, button: int) -> str:
        return str(self._keymap.keys_for(button)[0])

    def _press(self, button: int) -> None:
        key = self._key(button)
        self._on_event(RawInputEvent(code=key, timestamp=self._loop.time(), kind=EventKind.PRESS))
        self._loop.call_later(HOLD_S, self._release, key)

    def _release(self, key: str) -> None:
        self._on_event(RawInputEvent(code=key, timestamp=self._loop.time(), kind=EventKind.RELEASE))

    def _sample_rt(self) -> float:
        return max(0.12, self._rng.gauss(self.rt_mean_s, self.rt_sd_s))

    def _choose_button(self, rules: TaskRules, trial: Trial) -> int | None:
        target = trial.stimulus.correct_button
        if target is None:
            if self._rng.random() >= self.p_commission:
                return None
            return min(rules.response_buttons)
        if self._rng.random() < self.p_correct or len(rules.response_buttons) == 1:
            return target
        return self._rng.choice(sorted(rules.response_buttons - {target}))

    # ── Presentation sink ────────────────────────────────────────────────────

    def show_instructions(self, rules: TaskRules, run: Run) -> None:
        self._presenter.show_instructions(rules, run)
        self._loop.call_later(self.ack_delay_s, self._press, 0)

    def show_stimulus(self, rules: TaskRules, trial: Trial) -> None:
        self._presenter.show_stimulus(rules, trial)
        button = self._choose_button(rules, trial)
        if button is not None:
            self._loop.call_later(self._sample_rt(), self._press, button)

    def show_feedback(self, rules: TaskRules, trial: Trial) -> None:
        self._presenter.show_feedback(rules, trial)

    def update_stats(self, run: Run, metrics: MetricSet, remaining_s: float) -> None:
        self._presenter.update_stats(run, metrics, remaining_s)

    def show_progress(self, spec: RunSpec, total: int) -> None:
        self._presenter.show_progress(spec, total)

    def show_break(self, remaining_s: float, next_spec: RunSpec) -> None:
        self._presenter.show_break(remaining_s, next_spec)

    def show_complete(self, runs: Sequence[Run]) -> None:
        self._presenter.show_complete(runs)
