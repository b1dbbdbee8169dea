"""
Tests for cogbattery.records: trial resolution rules, run finalization, and
CSV/JSON persistence written to tmp_path.
"""
from __future__ import annotations

import csv
import json
import shutil
from datetime import datetime
from pathlib import Path
from types import SimpleNamespace

import pandas as pd
import pytest

from cogbattery.errors import PersistenceFailure, TrialStateError
from cogbattery.metrics import compute_metrics
from cogbattery.records import (
    CsvSessionStore,
    CsvWriter,
    FalseStart,
    Outcome,
    Run,
    RunSpec,
    Stimulus,
    Trial,
    TrialRecord,
)
from cogbattery.tasks import TaskKind


def _trial(seq: int = 1, onset: float = 5.0) -> Trial:
    return Trial(sequence=seq, stimulus=Stimulus("target", "target", 0), onset=onset)


def _run(index: int = 1) -> Run:
    return Run(spec=RunSpec(index, TaskKind.SIMPLE_REACTION, "silence"), duration_s=60.0, start_time=2.0)


def _finalized(index: int = 1) -> Run:
    run = _run(index)
    t1 = _trial(1, onset=5.0)
    t1.resolve_response(0, 5.25, True)
    t2 = _trial(2, onset=8.0)
    t2.resolve_missed()
    run.add_trial(t1)
    run.add_trial(t2)
    run.add_false_start(FalseStart(timestamp=7.0, button=0, after_trial=1))
    run.finalize(62.0, compute_metrics(run.kind, run.trials, run.false_starts))
    return run


def _info() -> SimpleNamespace:
    """Stand-in for session.SessionInfo without the GUI imports."""
    return SimpleNamespace(
        participant_id="P001",
        test_kinds=[TaskKind.SIMPLE_REACTION],
        conditions=["silence"],
        seed=7,
        simulate=False,
    )


# ────────────────────────────────────────────────────────────────────────────
# 1. Trial resolution
# ────────────────────────────────────────────────────────────────────────────


class TestTrialResolution:
    def test_response_sets_rt(self) -> None:
        trial = _trial(onset=5.0)
        trial.resolve_response(0, 5.3, True)
        assert trial.outcome is Outcome.RESPONDED
        assert trial.resolved
        assert trial.rt_ms == pytest.approx(300.0)

    def test_resolution_is_terminal(self) -> None:
        trial = _trial()
        trial.resolve_missed()
        with pytest.raises(TrialStateError):
            trial.resolve_response(0, 6.0, True)
        with pytest.raises(TrialStateError):
            trial.resolve_missed()
        assert trial.outcome is Outcome.MISSED

    def test_response_before_onset_rejected(self) -> None:
        trial = _trial(onset=5.0)
        with pytest.raises(TrialStateError):
            trial.resolve_response(0, 4.9, True)
        assert not trial.resolved

    def test_missed_has_no_rt(self) -> None:
        trial = _trial()
        trial.resolve_missed()
        assert trial.rt_ms is None
        assert trial.correct is False

    def test_false_start_trial(self) -> None:
        trial = Trial.false_start(3, timestamp=4.0, button=0)
        assert trial.outcome is Outcome.FALSE_START
        assert trial.rt_ms is None
        assert trial.correct is False
        assert trial.category is None


# ────────────────────────────────────────────────────────────────────────────
# 2. Run lifecycle
# ────────────────────────────────────────────────────────────────────────────


class TestRun:
    def test_run_id(self) -> None:
        assert _run(3).run_id == "03_simple-reaction_silence"

    def test_finalize_freezes_trials_and_metrics(self) -> None:
        run = _finalized()
        assert run.finalized
        assert isinstance(run.trials, tuple)
        with pytest.raises(TypeError):
            run.metrics["accuracy"] = 0  # type: ignore[index]
        with pytest.raises(TrialStateError):
            run.add_trial(_trial(3))
        with pytest.raises(TrialStateError):
            run.finalize(70.0, {})

    def test_trial_record_times_relative_to_run_start(self) -> None:
        run = _finalized()
        rec = TrialRecord.from_trial(run, run.trials[0])
        assert rec.time_onset == pytest.approx(3.0)
        assert rec.time_response == pytest.approx(3.25)
        assert rec.rt_ms == pytest.approx(250.0)
        assert rec.correct == 1

        missed = TrialRecord.from_trial(run, run.trials[1])
        assert missed.rt_ms == ""
        assert missed.button == ""


# ────────────────────────────────────────────────────────────────────────────
# 3. Data integrity – per-row flush
# ────────────────────────────────────────────────────────────────────────────


class TestCsvWriter:
    def test_each_row_readable_immediately(self, tmp_path: Path) -> None:
        run = _finalized()
        path = tmp_path / "trials.csv"
        writer = CsvWriter(path)

        for i, trial in enumerate(run.trials, 1):
            writer.append(TrialRecord.from_trial(run, trial))
            with open(path) as f:
                rows = list(csv.DictReader(f))
            assert len(rows) == i
        writer.close()

        assert rows[0]["outcome"] == "responded"
        assert rows[1]["outcome"] == "missed"


class TestCsvSessionStore:
    def test_writes_session_files(self, tmp_path: Path) -> None:
        store = CsvSessionStore(tmp_path / "data")
        session_id = store.create_session(_info(), datetime(2026, 3, 1, 9, 30, 0))
        assert session_id == "P001_20260301T093000"

        run = _finalized()
        store.record_run(run, run.metrics)
        assert run.persisted

        session_dir = store.session_dir
        with open(session_dir / f"{run.run_id}_trials.csv") as f:
            rows = list(csv.DictReader(f))
        assert [r["trial_n"] for r in rows] == ["1", "2"]

        with open(session_dir / f"{run.run_id}_metrics.json") as f:
            payload = json.load(f)
        assert payload["n_trials"] == 2
        assert payload["elapsed_s"] == pytest.approx(60.0)
        assert payload["metrics"]["false_starts"] == 1
        assert payload["false_starts"][0]["after_trial"] == 1

        store.complete_session([run], pd.DataFrame({"n_runs": [1]}, index=["silence"]))
        with open(session_dir / "manifest.json") as f:
            manifest = json.load(f)
        assert manifest["participant_id"] == "P001"
        assert manifest["seed"] == 7
        assert manifest["test_kinds"] == ["simple-reaction"]
        assert manifest["completed_runs"] == [run.run_id]
        assert manifest["unsaved_runs"] == []
        assert (session_dir / "summary.csv").exists()

    def test_io_error_becomes_persistence_failure(self, tmp_path: Path) -> None:
        store = CsvSessionStore(tmp_path / "data")
        store.create_session(_info(), datetime(2026, 3, 1, 9, 30, 0))
        shutil.rmtree(store.session_dir)

        run = _finalized()
        with pytest.raises(PersistenceFailure) as exc_info:
            store.record_run(run, run.metrics)

        assert exc_info.value.run is run
        assert not run.persisted

    def test_record_before_session_fails(self, tmp_path: Path) -> None:
        store = CsvSessionStore(tmp_path)
        with pytest.raises(PersistenceFailure):
            store.record_run(_finalized(), {})

    def test_unwritable_data_dir(self, tmp_path: Path) -> None:
        blocker = tmp_path / "data"
        blocker.write_text("not a directory")
        store = CsvSessionStore(blocker)
        with pytest.raises(PersistenceFailure):
            store.create_session(_info(), datetime(2026, 3, 1))
