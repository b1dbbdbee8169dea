"""
Data model and persistence: Stimulus, Trial, FalseStart, RunSpec, Run,
TrialRecord, CsvWriter, CsvSessionStore, write_manifest.
"""
from __future__ import annotations

import csv
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping, Protocol, Sequence

from cogbattery.errors import PersistenceFailure, TrialStateError

if TYPE_CHECKING:
    import pandas as pd

    from cogbattery.session import SessionInfo
    from cogbattery.tasks import TaskKind


MetricSet = Mapping[str, Any]


class Outcome(str, Enum):
    PENDING = "pending"
    RESPONDED = "responded"
    MISSED = "missed"
    FALSE_START = "false-start"


@dataclass(frozen=True)
class Stimulus:
    label: str                    # what is shown: word, "target", "go", ...
    category: str                 # scoring category: congruent, nogo, match, ...
    correct_button: int | None    # None: withholding is the correct response
    colour: int | None = None     # ink colour / lamp index
    position: int | None = None   # spatial position (n-back)


@dataclass
class Trial:
    sequence: int
    stimulus: Stimulus | None     # None for false-start penalty trials
    onset: float | None           # loop clock, seconds
    outcome: Outcome = Outcome.PENDING
    response_time: float | None = None
    button: int | None = None
    correct: bool | None = None

    @property
    def resolved(self) -> bool:
        return self.outcome is not Outcome.PENDING

    @property
    def rt_ms(self) -> float | None:
        if self.outcome is not Outcome.RESPONDED:
            return None
        return (self.response_time - self.onset) * 1000

    @property
    def category(self) -> str | None:
        return self.stimulus.category if self.stimulus is not None else None

    def resolve_response(self, button: int, timestamp: float, correct: bool) -> None:
        if self.resolved:
            raise TrialStateError(f"trial {self.sequence} already {self.outcome.value}")
        if timestamp < self.onset:
            raise TrialStateError(
                f"response at {timestamp:.6f} precedes onset {self.onset:.6f} (trial {self.sequence})"
            )
        self.outcome = Outcome.RESPONDED
        self.button = button
        self.response_time = timestamp
        self.correct = correct

    def resolve_missed(self) -> None:
        if self.resolved:
            raise TrialStateError(f"trial {self.sequence} already {self.outcome.value}")
        self.outcome = Outcome.MISSED
        # Silence is correct for stimuli that must be withheld
        self.correct = self.stimulus is not None and self.stimulus.correct_button is None

    @classmethod
    def false_start(cls, sequence: int, timestamp: float, button: int) -> "Trial":
        return cls(
            sequence=sequence, stimulus=None, onset=None,
            outcome=Outcome.FALSE_START, response_time=timestamp,
            button=button, correct=False,
        )


@dataclass(frozen=True)
class FalseStart:
    """Premature press logged without consuming a trial number."""

    timestamp: float
    button: int
    after_trial: int   # sequence number of the last presented trial (0 = none yet)


@dataclass(frozen=True)
class RunSpec:
    index: int          # 1-indexed position in the battery queue
    kind: "TaskKind"
    condition: str

    @property
    def run_id(self) -> str:
        return f"{self.index:02d}_{self.kind.value}_{self.condition}"


@dataclass
class Run:
    spec: RunSpec
    duration_s: float
    start_time: float | None = None
    end_time: float | None = None
    trials: Sequence[Trial] = field(default_factory=list)
    false_starts: Sequence[FalseStart] = field(default_factory=list)
    metrics: MetricSet | None = None
    finalized: bool = False
    persisted: bool = False

    @property
    def run_id(self) -> str:
        return self.spec.run_id

    @property
    def kind(self) -> "TaskKind":
        return self.spec.kind

    @property
    def condition(self) -> str:
        return self.spec.condition

    def add_trial(self, trial: Trial) -> None:
        if self.finalized:
            raise TrialStateError(f"run {self.run_id} is finalized")
        self.trials.append(trial)  # type: ignore[union-attr]

    def add_false_start(self, record: FalseStart) -> None:
        if self.finalized:
            raise TrialStateError(f"run {self.run_id} is finalized")
        self.false_starts.append(record)  # type: ignore[union-attr]

    def finalize(self, end_time: float, metrics: Mapping[str, Any]) -> None:
        """Freeze the trial list and attach the metric set. Called once."""
        if self.finalized:
            raise TrialStateError(f"run {self.run_id} is already finalized")
        self.end_time = end_time
        self.trials = tuple(self.trials)
        self.false_starts = tuple(self.false_starts)
        self.metrics = MappingProxyType(dict(metrics))
        self.finalized = True


@dataclass
class TrialRecord:
    run_id: str
    test_kind: str
    condition: str
    trial_n: int
    stimulus: str
    category: str
    correct_button: int | str
    time_onset: float | str      # seconds from run start, "" for false starts
    outcome: str
    button: int | str
    rt_ms: float | str           # float (ms) or "" when no response
    correct: int | str
    time_response: float | str

    @classmethod
    def from_trial(cls, run: Run, trial: Trial) -> "TrialRecord":
        t0 = run.start_time or 0.0
        stim = trial.stimulus
        return cls(
            run_id=run.run_id,
            test_kind=run.kind.value,
            condition=run.condition,
            trial_n=trial.sequence,
            stimulus=stim.label if stim is not None else "",
            category=stim.category if stim is not None else "",
            correct_button=_blank(stim.correct_button if stim is not None else None),
            time_onset=round(trial.onset - t0, 6) if trial.onset is not None else "",
            outcome=trial.outcome.value,
            button=_blank(trial.button),
            rt_ms=round(trial.rt_ms, 2) if trial.rt_ms is not None else "",
            correct=int(trial.correct) if trial.correct is not None else "",
            time_response=round(trial.response_time - t0, 6) if trial.response_time is not None else "",
        )


def _blank(value: Any) -> Any:
    return "" if value is None else value


TRIAL_COLUMNS: list[str] = [
    "run_id", "test_kind", "condition", "trial_n", "stimulus", "category",
    "correct_button", "time_onset", "outcome", "button", "rt_ms", "correct",
    "time_response",
]


class CsvWriter:
    def __init__(self, path: Path, columns: list[str] = TRIAL_COLUMNS) -> None:
        self._file = open(path, "w", newline="")
        self._writer = csv.DictWriter(self._file, fieldnames=columns)
        self._writer.writeheader()
        self._columns = columns

    def append(self, record: object) -> None:
        row = {k: getattr(record, k) for k in self._columns}
        self._writer.writerow(row)
        self._file.flush()

    def close(self) -> None:
        self._file.close()


class PersistenceSink(Protocol):
    """Durable storage for sessions and finalized runs."""

    def create_session(self, session_info: "SessionInfo", session_time: datetime) -> str:
        ...

    def record_run(self, run: Run, metrics: MetricSet) -> None:
        """Store a finalized run. Raises PersistenceFailure on failure."""
        ...

    def complete_session(self, runs: Sequence[Run], summary: "pd.DataFrame") -> None:
        ...


class CsvSessionStore:
    """
    Writes data/{participant}_{YYYYMMDDTHHMMSS}/ containing:
      manifest.json, {run_id}_trials.csv, {run_id}_metrics.json, summary.csv
    """

    def __init__(self, data_dir: Path) -> None:
        self._data_dir = data_dir
        self.session_dir: Path | None = None

    def create_session(self, session_info: "SessionInfo", session_time: datetime) -> str:
        ts = session_time.strftime("%Y%m%dT%H%M%S")
        session_id = f"{session_info.participant_id}_{ts}"
        self.session_dir = self._data_dir / session_id
        try:
            self.session_dir.mkdir(parents=True, exist_ok=True)
            write_manifest(self.session_dir, session_info, session_time)
        except OSError as exc:
            raise PersistenceFailure(f"cannot create session {session_id}: {exc}") from exc
        return session_id

    def record_run(self, run: Run, metrics: MetricSet) -> None:
        if self.session_dir is None:
            raise PersistenceFailure("record_run called before create_session", run)
        try:
            writer = CsvWriter(self.session_dir / f"{run.run_id}_trials.csv")
            try:
                for trial in run.trials:
                    writer.append(TrialRecord.from_trial(run, trial))
            finally:
                writer.close()
            payload = {
                "run_id": run.run_id,
                "test_kind": run.kind.value,
                "condition": run.condition,
                "duration_s": run.duration_s,
                "elapsed_s": _elapsed(run),
                "n_trials": len(run.trials),
                "false_starts": [asdict(fs) for fs in run.false_starts],
                "metrics": dict(metrics),
            }
            with open(self.session_dir / f"{run.run_id}_metrics.json", "w") as f:
                json.dump(payload, f, indent=2)
        except OSError as exc:
            raise PersistenceFailure(f"cannot record run {run.run_id}: {exc}", run) from exc
        run.persisted = True

    def complete_session(self, runs: Sequence[Run], summary: "pd.DataFrame") -> None:
        if self.session_dir is None:
            raise PersistenceFailure("complete_session called before create_session")
        try:
            summary.to_csv(self.session_dir / "summary.csv")
            manifest_path = self.session_dir / "manifest.json"
            with open(manifest_path) as f:
                manifest = json.load(f)
            manifest["completed_runs"] = [r.run_id for r in runs]
            manifest["unsaved_runs"] = [r.run_id for r in runs if not r.persisted]
            manifest["end_time"] = datetime.now().isoformat(timespec="seconds")
            with open(manifest_path, "w") as f:
                json.dump(manifest, f, indent=2)
        except OSError as exc:
            raise PersistenceFailure(f"cannot complete session: {exc}") from exc


def _elapsed(run: Run) -> float | None:
    if run.start_time is None or run.end_time is None:
        return None
    return round(run.end_time - run.start_time, 6)


def write_manifest(
    session_dir: Path,
    session_info: "SessionInfo",
    session_time: datetime,
) -> None:
    from cogbattery import __version__
    from cogbattery.config import (
        BREAK_DURATION_S,
        INTERVAL_S,
        RESPONSE_WINDOW_S,
        RUN_DURATION_S,
    )

    manifest = {
        "cog_battery_version": __version__,
        "participant_id": session_info.participant_id,
        "test_kinds": [k.value for k in session_info.test_kinds],
        "conditions": list(session_info.conditions),
        "seed": session_info.seed,
        "simulate": session_info.simulate,
        "session_time": session_time.isoformat(timespec="seconds"),
        "study_params": {
            "run_duration_s": RUN_DURATION_S,
            "interval_s": {k: list(v) for k, v in INTERVAL_S.items()},
            "response_window_s": RESPONSE_WINDOW_S,
            "break_duration_s": BREAK_DURATION_S,
        },
    }
    with open(session_dir / "manifest.json", "w") as f:
        json.dump(manifest, f, indent=2)
