"""
All battery constants. No imports from other cogbattery modules.
All time values are in seconds unless the name includes a unit suffix.
"""

# Run durations per test kind (seconds)
RUN_DURATION_S: dict[str, float] = {
    "simple-reaction": 60.0,
    "choice-reaction": 90.0,
    "go-nogo": 90.0,
    "stroop": 90.0,
    "vigilance": 120.0,
    "n-back": 120.0,
}

# Inter-stimulus interval windows, inclusive (seconds)
INTERVAL_S: dict[str, tuple[float, float]] = {
    "simple-reaction": (2.0, 4.0),
    "choice-reaction": (1.0, 1.5),
    "go-nogo": (1.2, 2.0),
    "stroop": (0.5, 1.0),
    "vigilance": (1.0, 3.0),
    "n-back": (2.5, 2.5),
}

# Response window: time from onset until an unanswered stimulus is a miss
RESPONSE_WINDOW_S: dict[str, float] = {
    "simple-reaction": 2.0,
    "choice-reaction": 2.0,
    "go-nogo": 1.0,
    "stroop": 2.5,
    "vigilance": 1.5,
    "n-back": 2.5,
}

# Stimulus mix
GO_PROBABILITY: float = 0.75
VIGILANCE_TARGET_PROBABILITY: float = 0.15
NBACK_N: int = 2
NBACK_MATCH_PROBABILITY: float = 0.30
NBACK_POSITIONS: int = 4
STROOP_CATEGORIES: tuple[str, ...] = ("congruent", "incongruent", "neutral")
STROOP_NEUTRAL_WORD: str = "████"
STROOP_LIGHT_ANSWER_LAMP: bool = False   # True lights the ink-colour lamp, which gives the answer away

# Logical buttons (hardware order). Index -> (colour name, RGB hex)
BUTTON_COLOURS: dict[int, tuple[str, str]] = {
    0: ("green", "#4ade80"),
    1: ("white", "#ffffff"),
    2: ("red", "#ff6b6b"),
    3: ("green2", "#22c55e"),
}
# Word shown on screen for each colour
COLOUR_WORDS: dict[int, str] = {0: "GREEN", 1: "WHITE", 2: "RED", 3: "GREEN"}
N_BUTTONS: int = 4

# Input sources -> logical button index
KEYS_FALLBACK: dict[str, int] = {"a": 0, "s": 1, "d": 2, "f": 3}
MICROBIT_BUTTONS: dict[int, int] = {1: 0, 2: 1, 3: 2, 4: 3}
QUIT_KEYS: list[str] = ["escape"]
SKIP_BREAK_KEY: str = "space"

# micro:bit serial link
MICROBIT_BAUD_RATE: int = 115200
MICROBIT_PORT: str | None = None   # None = first port that looks like a micro:bit
MICROBIT_READ_TIMEOUT_S: float = 0.5   # reader thread wake-up; reads return as soon as a byte arrives

# Indicator feedback
FEEDBACK_FLASH_COUNT: int = 1
FEEDBACK_FLASH_MS: int = 100
ERROR_FLASH_COUNT: int = 2
ERROR_INDICATOR: int = 2           # red button lamp
VIGILANCE_FLASH_MS: int = 150

# Battery structure
DEFAULT_CONDITIONS: list[str] = ["silence", "classical-80bpm", "electronic-140bpm"]
BREAK_DURATION_S: float = 5.0
BREAK_TICK_S: float = 1.0

# Metrics
CHOICE_VALID_RT_MS: tuple[float, float] = (100.0, 2000.0)
SDT_RATE_CLAMP: tuple[float, float] = (0.0001, 0.9999)
