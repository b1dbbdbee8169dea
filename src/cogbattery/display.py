"""
PsychoPy visual components and the on-screen presentation sink.
No response logic, no I/O. Nothing here feeds back into trial timing.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Sequence

from psychopy import visual

from cogbattery import config
from cogbattery.records import MetricSet, Outcome, Run, RunSpec, Trial
from cogbattery.tasks import RULES, TaskKind, TaskRules

FEEDBACK_S = 0.3


@dataclass
class Stimuli:
    win: visual.Window
    fix: visual.TextStim
    target: visual.Circle
    word: visual.TextStim
    title: visual.TextStim
    instr: visual.TextStim
    instr_start: visual.TextStim
    feedback: visual.TextStim
    stats: visual.TextStim
    progress: visual.TextStim
    brk: visual.TextStim
    end: visual.TextStim
    lamps: list[visual.Circle]
    lamp_labels: list[visual.TextStim]


def build_stimuli(win: visual.Window) -> Stimuli:
    """Construct all visual stimuli and return a Stimuli dataclass."""
    y_scr = 1.0
    win_res = win.size
    x_scr = float(win_res[0]) / float(win_res[1])
    font_h = y_scr / 25
    wrap_w = x_scr / 1.5
    text_col = "white"

    fix = visual.TextStim(
        win, name="fix", pos=(0, 0), text="+", height=font_h * 2, color=text_col,
        autoLog=False,
    )
    target = visual.Circle(
        win, name="target", radius=0.12, pos=(0, 0), fillColor="red", lineWidth=0,
        autoLog=False,
    )
    word = visual.TextStim(
        win, name="word", font="Arial", pos=(0, 0), height=font_h * 3, bold=True,
        autoLog=False,
    )
    title = visual.TextStim(
        win, name="title", font="Arial", pos=(0, y_scr / 4), height=font_h * 1.5,
        color=text_col, autoLog=False,
    )
    instr = visual.TextStim(
        win, name="instr", font="Arial", pos=(0, y_scr / 20), height=font_h,
        wrapWidth=wrap_w, color=text_col, autoLog=False,
    )
    instr_start = visual.TextStim(
        win, name="instr_start", text="Press any button to begin.",
        height=font_h, color=text_col, pos=(0, -y_scr / 6), autoLog=False,
    )
    feedback = visual.TextStim(
        win, name="feedback", font="Arial", pos=(0, -y_scr / 8), height=font_h * 1.2,
        color=text_col, autoLog=False,
    )
    stats = visual.TextStim(
        win, name="stats", font="Arial", pos=(0, y_scr / 2.4), height=font_h * 0.7,
        color="grey", autoLog=False,
    )
    progress = visual.TextStim(
        win, name="progress", font="Arial", pos=(0, y_scr / 2.2), height=font_h * 0.7,
        color="grey", autoLog=False,
    )
    brk = visual.TextStim(
        win, name="brk", font="Arial", pos=(0, 0), height=font_h, wrapWidth=wrap_w,
        color=text_col, autoLog=False,
    )
    end = visual.TextStim(
        win, name="end", pos=(0, 0), text="Thank you!", height=font_h, color=text_col,
        wrapWidth=wrap_w, autoLog=False,
    )

    spacing = 0.18
    x0 = -spacing * (config.N_BUTTONS - 1) / 2
    lamps = []
    lamp_labels = []
    for i in range(config.N_BUTTONS):
        pos = (x0 + i * spacing, -y_scr / 3)
        lamps.append(visual.Circle(
            win, name=f"lamp{i}", radius=0.05, pos=pos, lineColor="grey",
            fillColor=None, autoLog=False,
        ))
        keys = [k for k, b in config.KEYS_FALLBACK.items() if b == i]
        lamp_labels.append(visual.TextStim(
            win, name=f"lamp_label{i}", text=keys[0].upper() if keys else "",
            pos=(pos[0], pos[1] - 0.08), height=font_h * 0.7, color="grey", autoLog=False,
        ))

    return Stimuli(
        win=win, fix=fix, target=target, word=word, title=title, instr=instr,
        instr_start=instr_start, feedback=feedback, stats=stats, progress=progress,
        brk=brk, end=end, lamps=lamps, lamp_labels=lamp_labels,
    )


def _rgb(index: int | None) -> str:
    if index is None:
        return "white"
    return config.BUTTON_COLOURS[index][1]


class ScreenPresenter:
    """
    Presentation sink and on-screen indicator sink.

    Sink calls only change what the next draw() will render; draw() is called
    once per frame by the main loop before win.flip().
    """

    def __init__(self, stimuli: Stimuli, clock: Callable[[], float]) -> None:
        self.stim = stimuli
        self._clock = clock
        self.mode = "blank"
        self._rules: TaskRules | None = None
        self._trial: Trial | None = None
        self._feedback_until = 0.0
        self._lamps_on = [False] * config.N_BUTTONS
        # Per lamp: list of (start, end) intervals when a flash lights it
        self._flashes: list[list[tuple[float, float]]] = [[] for _ in range(config.N_BUTTONS)]

    # ── Presentation sink ────────────────────────────────────────────────────

    def show_instructions(self, rules: TaskRules, run: Run) -> None:
        self.mode = "instructions"
        self._rules = rules
        self._trial = None
        self.stim.title.text = rules.title
        self.stim.instr.text = f"{rules.instructions}\n\nCondition: {run.condition}"
        self.stim.stats.text = ""

    def show_stimulus(self, rules: TaskRules, trial: Trial) -> None:
        self.mode = "stimulus"
        self._rules = rules
        self._trial = trial
        self._feedback_until = 0.0
        stim = trial.stimulus
        if rules.kind is TaskKind.STROOP:
            self.stim.word.text = stim.label
            self.stim.word.color = _rgb(stim.colour)
        elif rules.kind is TaskKind.N_BACK:
            self.stim.word.text = stim.label
            self.stim.word.color = "white"
        else:
            self.stim.target.fillColor = _rgb(stim.colour)

    def show_feedback(self, rules: TaskRules, trial: Trial) -> None:
        if trial.outcome is Outcome.FALSE_START:
            text, colour = "Too early!", "orange"
        elif trial.outcome is Outcome.MISSED:
            text, colour = ("Correct" if trial.correct else "Missed"), ("green" if trial.correct else "red")
        elif trial.correct:
            text, colour = f"{trial.rt_ms:.0f} ms", "green"
        else:
            text, colour = "Wrong button", "red"
        self.stim.feedback.text = text
        self.stim.feedback.color = colour
        self._feedback_until = self._clock() + FEEDBACK_S
        self.mode = "running"

    def update_stats(self, run: Run, metrics: MetricSet, remaining_s: float) -> None:
        mean = metrics.get("mean_rt_ms")
        acc = metrics.get("accuracy")
        self.stim.stats.text = (
            f"Trials {metrics.get('total_trials', 0)}   "
            f"Mean RT {f'{mean:.0f} ms' if mean is not None else '-'}   "
            f"Accuracy {f'{acc:.0f}%' if acc is not None else '-'}   "
            f"{remaining_s:.0f} s left"
        )
        if self.mode == "instructions":
            self.mode = "running"

    def show_progress(self, spec: RunSpec, total: int) -> None:
        self.stim.progress.text = f"Run {spec.index} of {total}: {spec.kind.value} ({spec.condition})"

    def show_break(self, remaining_s: float, next_spec: RunSpec) -> None:
        self.mode = "break"
        self.stim.brk.text = (
            f"Break: next run in {remaining_s:.0f} s\n\n"
            f"Next: {RULES[next_spec.kind].title} ({next_spec.condition})\n\n"
            f"Press {config.SKIP_BREAK_KEY.upper()} to continue now."
        )

    def show_complete(self, runs: Sequence[Run]) -> None:
        self.mode = "complete"
        self.stim.end.text = f"Battery complete: {len(runs)} runs.\n\nThank you!"

    # ── Indicator sink ───────────────────────────────────────────────────────

    def set_indicator(self, index: int, on: bool) -> None:
        self._lamps_on[index] = on

    def set_all(self, on: bool) -> None:
        self._lamps_on = [on] * config.N_BUTTONS
        if not on:
            self._flashes = [[] for _ in range(config.N_BUTTONS)]

    def flash_indicator(self, index: int, count: int, duration_ms: int) -> None:
        now = self._clock()
        d = duration_ms / 1000
        self._flashes[index].extend((now + 2 * k * d, now + (2 * k + 1) * d) for k in range(count))

    def chase(self, rounds: int, speed_ms: int) -> None:
        now = self._clock()
        d = speed_ms / 1000
        for r in range(rounds):
            for i in range(config.N_BUTTONS):
                start = now + (r * config.N_BUTTONS + i) * d
                self._flashes[i].append((start, start + d))

    def lamp_lit(self, index: int, now: float) -> bool:
        if self._lamps_on[index]:
            return True
        return any(start <= now < end for start, end in self._flashes[index])

    # ── Frame ────────────────────────────────────────────────────────────────

    def draw(self) -> None:
        now = self._clock()
        s = self.stim
        s.progress.draw()
        if self.mode == "instructions":
            s.title.draw()
            s.instr.draw()
            s.instr_start.draw()
        elif self.mode == "stimulus":
            s.stats.draw()
            if self._rules.kind in (TaskKind.STROOP, TaskKind.N_BACK):
                s.word.draw()
            elif self._rules.kind is TaskKind.VIGILANCE:
                s.fix.draw()
            else:
                s.target.draw()
        elif self.mode == "running":
            s.stats.draw()
            s.fix.draw()
            if now < self._feedback_until:
                s.feedback.draw()
        elif self.mode == "break":
            s.brk.draw()
        elif self.mode == "complete":
            s.end.draw()

        for i, lamp in enumerate(s.lamps):
            lamp.fillColor = _rgb(i) if self.lamp_lit(i, now) else None
            lamp.draw()
            s.lamp_labels[i].draw()
        for i, flashes in enumerate(self._flashes):
            self._flashes[i] = [f for f in flashes if f[1] > now]

