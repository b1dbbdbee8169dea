"""
Metrics engine: pure functions from a trial list to a MetricSet.
Reaction times are in milliseconds. Undefined statistics are None.
The same functions serve live display (growing list) and finalization.
"""
from __future__ import annotations

from types import MappingProxyType
from typing import Any, Callable, Iterable, Sequence

import numpy as np
import pandas as pd
from scipy import stats

from cogbattery import config
from cogbattery.records import FalseStart, MetricSet, Outcome, Run, Trial
from cogbattery.tasks import TaskKind


# ── Core statistics ─────────────────────────────────────────────────────────

def reaction_times(trials: Iterable[Trial]) -> list[float]:
    """RTs (ms) of responded trials, in trial order."""
    return [t.rt_ms for t in trials if t.outcome is Outcome.RESPONDED]


def mean_rt(rts: Sequence[float]) -> float | None:
    if len(rts) == 0:
        return None
    return float(np.mean(rts))


def median_rt(rts: Sequence[float]) -> float | None:
    """Middle of the sorted RTs; the lower-middle element for even counts."""
    if len(rts) == 0:
        return None
    ordered = sorted(rts)
    return float(ordered[(len(ordered) - 1) // 2])


def sd_rt(rts: Sequence[float]) -> float | None:
    """Population standard deviation (divisor = count)."""
    if len(rts) == 0:
        return None
    return float(np.std(rts, ddof=0))


def consistency(rts: Sequence[float]) -> float | None:
    """max(0, 100 - 100 * SD / mean), in percent."""
    mean = mean_rt(rts)
    if mean is None or mean <= 0:
        return None
    return max(0.0, 100.0 - 100.0 * sd_rt(rts) / mean)


def accuracy(trials: Sequence[Trial]) -> float | None:
    """Responded / total * 100; total counts missed and scored false-start trials."""
    if len(trials) == 0:
        return None
    responded = sum(1 for t in trials if t.outcome is Outcome.RESPONDED)
    return responded / len(trials) * 100


def _pct(num: int, den: int) -> float | None:
    return num / den * 100 if den > 0 else None


def core_metrics(trials: Sequence[Trial], false_starts: Sequence[FalseStart] = ()) -> dict[str, Any]:
    rts = reaction_times(trials)
    n_responded = len(rts)
    n_missed = sum(1 for t in trials if t.outcome is Outcome.MISSED)
    n_scored_fs = sum(1 for t in trials if t.outcome is Outcome.FALSE_START)
    n_correct = sum(1 for t in trials if t.correct)
    return {
        "total_trials": len(trials),
        "responded": n_responded,
        "missed": n_missed,
        "false_starts": n_scored_fs + len(false_starts),
        "correct": n_correct,
        "mean_rt_ms": mean_rt(rts),
        "median_rt_ms": median_rt(rts),
        "sd_rt_ms": sd_rt(rts),
        "min_rt_ms": float(min(rts)) if rts else None,
        "max_rt_ms": float(max(rts)) if rts else None,
        "consistency": consistency(rts),
        "accuracy": accuracy(trials),
        "correct_rate": _pct(n_correct, len(trials)),
    }


# ── Interference (Stroop) ───────────────────────────────────────────────────

def category_stats(trials: Sequence[Trial], category: str) -> tuple[int, float | None, float | None]:
    """Return (n_trials, accuracy %, mean RT of correct responses) for one category."""
    subset = [t for t in trials if t.category == category]
    correct_rts = [t.rt_ms for t in subset if t.outcome is Outcome.RESPONDED and t.correct]
    n_correct = sum(1 for t in subset if t.correct)
    return len(subset), _pct(n_correct, len(subset)), mean_rt(correct_rts)


def interference(congruent_rt: float | None, incongruent_rt: float | None) -> tuple[float | None, float | None]:
    """Return (effect ms, effect as % of congruent RT); None when either side is undefined."""
    if congruent_rt is None or incongruent_rt is None:
        return None, None
    effect = incongruent_rt - congruent_rt
    pct = effect / congruent_rt * 100 if congruent_rt > 0 else None
    return effect, pct


def stroop_metrics(trials: Sequence[Trial]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    means: dict[str, float | None] = {}
    for category in config.STROOP_CATEGORIES:
        n, acc, rt = category_stats(trials, category)
        out[f"{category}_trials"] = n
        out[f"{category}_accuracy"] = acc
        out[f"{category}_mean_rt_ms"] = rt
        means[category] = rt
    effect, pct = interference(means["congruent"], means["incongruent"])
    facilitation, _ = interference(means["congruent"], means["neutral"])
    out["interference_ms"] = effect
    out["interference_pct"] = pct
    out["facilitation_ms"] = facilitation
    out["cognitive_control"] = 100 - pct if pct is not None else None
    return out


# ── Go / no-go ──────────────────────────────────────────────────────────────

def go_nogo_metrics(trials: Sequence[Trial]) -> dict[str, Any]:
    go = [t for t in trials if t.category == "go"]
    nogo = [t for t in trials if t.category == "nogo"]
    go_hits = [t for t in go if t.outcome is Outcome.RESPONDED]
    go_misses = sum(1 for t in go if t.outcome is Outcome.MISSED)
    nogo_withheld = sum(1 for t in nogo if t.outcome is Outcome.MISSED)
    nogo_commissions = sum(1 for t in nogo if t.outcome is Outcome.RESPONDED)
    return {
        "go_trials": len(go),
        "nogo_trials": len(nogo),
        "go_hits": len(go_hits),
        "go_misses": go_misses,
        "nogo_hits": nogo_withheld,
        "nogo_false_alarms": nogo_commissions,
        "go_accuracy": _pct(len(go_hits), len(go)),
        "nogo_accuracy": _pct(nogo_withheld, len(nogo)),
        "commission_error_rate": _pct(nogo_commissions, len(nogo)),
        "omission_error_rate": _pct(go_misses, len(go)),
        "go_mean_rt_ms": mean_rt(reaction_times(go_hits)),
    }


# ── Signal detection (vigilance, n-back) ────────────────────────────────────

def z_score(p: float) -> float:
    lo, hi = config.SDT_RATE_CLAMP
    return float(stats.norm.ppf(min(max(p, lo), hi)))


def signal_detection(trials: Sequence[Trial], signal: str) -> dict[str, Any]:
    signal_trials = [t for t in trials if t.category == signal]
    noise_trials = [t for t in trials if t.stimulus is not None and t.category != signal]
    hits = sum(1 for t in signal_trials if t.outcome is Outcome.RESPONDED)
    misses = sum(1 for t in signal_trials if t.outcome is Outcome.MISSED)
    false_alarms = sum(1 for t in noise_trials if t.outcome is Outcome.RESPONDED)
    rejections = sum(1 for t in noise_trials if t.outcome is Outcome.MISSED)

    hit_rate = hits / (hits + misses) if hits + misses > 0 else 0.0
    fa_rate = false_alarms / (false_alarms + rejections) if false_alarms + rejections > 0 else 0.0
    z_hit, z_fa = z_score(hit_rate), z_score(fa_rate)
    return {
        "hits": hits,
        "misses": misses,
        "false_alarms": false_alarms,
        "correct_rejections": rejections,
        "hit_rate": hit_rate * 100,
        "false_alarm_rate": fa_rate * 100,
        "d_prime": z_hit - z_fa,
        "criterion": -0.5 * (z_hit + z_fa),
        "hit_mean_rt_ms": mean_rt(
            [t.rt_ms for t in signal_trials if t.outcome is Outcome.RESPONDED]
        ),
    }


# ── Choice reaction ─────────────────────────────────────────────────────────

def choice_metrics(trials: Sequence[Trial]) -> dict[str, Any]:
    lo, hi = config.CHOICE_VALID_RT_MS
    responded = [t for t in trials if t.outcome is Outcome.RESPONDED]
    valid = [t.rt_ms for t in responded if t.correct and lo < t.rt_ms < hi]
    incorrect = sum(1 for t in responded if not t.correct)
    return {
        "valid_responses": len(valid),
        "valid_mean_rt_ms": mean_rt(valid),
        "valid_median_rt_ms": median_rt(valid),
        "incorrect_responses": incorrect,
        "error_rate": _pct(incorrect, len(responded)),
    }


_KIND_METRICS: dict[TaskKind, Callable[[Sequence[Trial]], dict[str, Any]]] = {
    TaskKind.SIMPLE_REACTION: lambda trials: {},
    TaskKind.CHOICE_REACTION: choice_metrics,
    TaskKind.GO_NOGO: go_nogo_metrics,
    TaskKind.STROOP: stroop_metrics,
    TaskKind.VIGILANCE: lambda trials: signal_detection(trials, "target"),
    TaskKind.N_BACK: lambda trials: signal_detection(trials, "match"),
}
assert set(_KIND_METRICS) == set(TaskKind), "every test kind needs a metrics entry"


def compute_metrics(
    kind: TaskKind,
    trials: Sequence[Trial],
    false_starts: Sequence[FalseStart] = (),
) -> MetricSet:
    """Core statistics plus the kind's own metrics, as a read-only mapping."""
    metrics = core_metrics(trials, false_starts)
    metrics.update(_KIND_METRICS[kind](trials))
    metrics["test_kind"] = kind.value
    return MappingProxyType(metrics)


# ── Battery summary ─────────────────────────────────────────────────────────

def runs_frame(runs: Sequence[Run]) -> pd.DataFrame:
    """One row per finalized run with its headline metrics."""
    rows = []
    for run in runs:
        m = run.metrics or {}
        rows.append({
            "run_id": run.run_id,
            "test_kind": run.kind.value,
            "condition": run.condition,
            "total_trials": m.get("total_trials", len(run.trials)),
            "mean_rt_ms": m.get("mean_rt_ms"),
            "accuracy": m.get("accuracy"),
            "consistency": m.get("consistency"),
            "false_starts": m.get("false_starts"),
        })
    df = pd.DataFrame(rows, columns=[
        "run_id", "test_kind", "condition", "total_trials",
        "mean_rt_ms", "accuracy", "consistency", "false_starts",
    ])
    for col in ("mean_rt_ms", "accuracy", "consistency"):
        df[col] = pd.to_numeric(df[col], errors="coerce")
    return df


def summarize_battery(runs: Sequence[Run], by: str = "condition") -> pd.DataFrame:
    """Per-condition (or per-kind) averages of run-level mean RT and accuracy."""
    df = runs_frame(runs)
    return df.groupby(by).agg(
        n_runs=("run_id", "count"),
        mean_rt_ms=("mean_rt_ms", "mean"),
        accuracy=("accuracy", "mean"),
        consistency=("consistency", "mean"),
    )
