"""
Test kinds and their capability sets.

TaskKind is closed: every member maps to exactly one TaskRules value in RULES,
checked when this module is imported. The trial state machine is generic and
takes all kind-specific behaviour from TaskRules.
"""
from __future__ import annotations

import random
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Sequence

from cogbattery import config
from cogbattery.records import Stimulus


class TaskKind(str, Enum):
    SIMPLE_REACTION = "simple-reaction"
    CHOICE_REACTION = "choice-reaction"
    GO_NOGO = "go-nogo"
    STROOP = "stroop"
    VIGILANCE = "vigilance"
    N_BACK = "n-back"


@dataclass(frozen=True)
class IndicatorCue:
    index: int
    flashes: int = 0      # 0: steady until the trial resolves


StimulusFactory = Callable[[random.Random, Sequence[Stimulus]], Stimulus]


@dataclass(frozen=True)
class TaskRules:
    kind: TaskKind
    title: str
    instructions: str
    duration_s: float
    interval_s: tuple[float, float]
    response_window_s: float
    response_buttons: frozenset[int]
    false_start_scored: bool      # True: penalty trial with its own sequence number
    stimulus_factory: StimulusFactory
    cue: Callable[[Stimulus], IndicatorCue | None]

    def next_interval(self, rng: random.Random) -> float:
        """Uniform delay (seconds) from the inclusive interval window."""
        lo, hi = self.interval_s
        return rng.uniform(lo, hi)

    def generate_stimulus(self, rng: random.Random, history: Sequence[Stimulus]) -> Stimulus:
        return self.stimulus_factory(rng, history)

    def score_response(self, stimulus: Stimulus, button: int) -> bool:
        return stimulus.correct_button is not None and button == stimulus.correct_button

    def is_false_start_scored(self) -> bool:
        return self.false_start_scored


# ── Stimulus generation ─────────────────────────────────────────────────────

def _colour_name(index: int) -> str:
    return config.BUTTON_COLOURS[index][0]


def simple_stimulus(rng: random.Random, history: Sequence[Stimulus]) -> Stimulus:
    return Stimulus(label="target", category="target", correct_button=0, colour=2)


def choice_stimulus(rng: random.Random, history: Sequence[Stimulus]) -> Stimulus:
    button = rng.randrange(config.N_BUTTONS)
    return Stimulus(label=_colour_name(button), category="target", correct_button=button, colour=button)


def go_nogo_stimulus(rng: random.Random, history: Sequence[Stimulus]) -> Stimulus:
    if rng.random() < config.GO_PROBABILITY:
        return Stimulus(label="go", category="go", correct_button=0, colour=0)
    return Stimulus(label="nogo", category="nogo", correct_button=None, colour=2)


def stroop_stimulus(rng: random.Random, history: Sequence[Stimulus]) -> Stimulus:
    """Response is always the ink colour; the word is the distractor."""
    category = rng.choice(config.STROOP_CATEGORIES)
    ink = rng.randrange(config.N_BUTTONS)
    if category == "congruent":
        word = config.COLOUR_WORDS[ink]
    elif category == "incongruent":
        # Word must name a different colour than the ink
        options = [w for w in set(config.COLOUR_WORDS.values()) if w != config.COLOUR_WORDS[ink]]
        word = rng.choice(sorted(options))
    else:
        word = config.STROOP_NEUTRAL_WORD
    return Stimulus(label=word, category=category, correct_button=ink, colour=ink)


def vigilance_stimulus(rng: random.Random, history: Sequence[Stimulus]) -> Stimulus:
    if rng.random() < config.VIGILANCE_TARGET_PROBABILITY:
        return Stimulus(label="double-flash", category="target", correct_button=0, colour=0)
    return Stimulus(label="single-flash", category="nontarget", correct_button=None, colour=0)


def n_back_stimulus(rng: random.Random, history: Sequence[Stimulus]) -> Stimulus:
    n = config.NBACK_N
    back = history[-n].position if len(history) >= n else None
    if back is not None and rng.random() < config.NBACK_MATCH_PROBABILITY:
        return Stimulus(label=str(back + 1), category="match", correct_button=0, position=back)
    choices = [p for p in range(config.NBACK_POSITIONS) if p != back]
    pos = rng.choice(choices)
    return Stimulus(label=str(pos + 1), category="nonmatch", correct_button=None, position=pos)


# ── Capability table ────────────────────────────────────────────────────────

_ALL_BUTTONS = frozenset(range(config.N_BUTTONS))
_FIRST_BUTTON = frozenset({0})


def _rules(
    kind: TaskKind,
    title: str,
    instructions: str,
    buttons: frozenset[int],
    false_start_scored: bool,
    factory: StimulusFactory,
    cue: Callable[[Stimulus], IndicatorCue | None],
) -> TaskRules:
    key = kind.value
    return TaskRules(
        kind=kind,
        title=title,
        instructions=instructions,
        duration_s=config.RUN_DURATION_S[key],
        interval_s=config.INTERVAL_S[key],
        response_window_s=config.RESPONSE_WINDOW_S[key],
        response_buttons=buttons,
        false_start_scored=false_start_scored,
        stimulus_factory=factory,
        cue=cue,
    )


RULES: dict[TaskKind, TaskRules] = {
    TaskKind.SIMPLE_REACTION: _rules(
        TaskKind.SIMPLE_REACTION, "Simple Reaction Time",
        "Press the first button as quickly as possible when the stimulus appears.",
        _FIRST_BUTTON, False, simple_stimulus,
        lambda s: IndicatorCue(0),
    ),
    TaskKind.CHOICE_REACTION: _rules(
        TaskKind.CHOICE_REACTION, "Choice Reaction Time",
        "Press the button that matches the lit colour.",
        _ALL_BUTTONS, False, choice_stimulus,
        lambda s: IndicatorCue(s.correct_button),
    ),
    TaskKind.GO_NOGO: _rules(
        TaskKind.GO_NOGO, "Go/No-Go",
        "Press for GREEN, do NOT press for RED.",
        _FIRST_BUTTON, False, go_nogo_stimulus,
        lambda s: IndicatorCue(s.colour),
    ),
    TaskKind.STROOP: _rules(
        TaskKind.STROOP, "Stroop",
        "Press the button matching the COLOUR of the text; ignore what the word says.",
        _ALL_BUTTONS, False, stroop_stimulus,
        lambda s: IndicatorCue(s.colour) if config.STROOP_LIGHT_ANSWER_LAMP else None,
    ),
    TaskKind.VIGILANCE: _rules(
        TaskKind.VIGILANCE, "Sustained Attention",
        "Press the first button ONLY for a double flash. Do not press for single flashes.",
        _FIRST_BUTTON, False, vigilance_stimulus,
        lambda s: IndicatorCue(0, flashes=2 if s.category == "target" else 1),
    ),
    TaskKind.N_BACK: _rules(
        TaskKind.N_BACK, f"{config.NBACK_N}-Back",
        f"Press the first button when the lit position matches the one {config.NBACK_N} steps back.",
        _FIRST_BUTTON, False, n_back_stimulus,
        lambda s: IndicatorCue(s.position),
    ),
}
assert set(RULES) == set(TaskKind), "every test kind needs a rules entry"
