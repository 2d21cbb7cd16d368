"""Build history over the JSONL run index."""

from __future__ import annotations

import json
import os

import pandas as pd

STAGE_ROW_COLUMNS: list[str] = [
    "run_id",
    "pipeline",
    "run_status",
    "created_at",
    "group",
    "stage",
    "status",
    "error_kind",
    "duration_seconds",
]

STAGE_STATUSES: tuple[str, ...] = ("success", "failed", "timeout", "skipped")

SUMMARY_COLUMNS: list[str] = [
    "stage",
    "runs",
    *STAGE_STATUSES,
    "failure_rate",
    "mean_duration_seconds",
    "last_status",
]


def load_run_index(path: str) -> pd.DataFrame:
    """Flatten the run index into one row per (run, stage)."""

    if not os.path.exists(path) or os.path.getsize(path) == 0:
        return pd.DataFrame(columns=STAGE_ROW_COLUMNS)

    rows: list[dict[str, object]] = []
    with open(path, "r", encoding="utf-8") as handle:
        for line_no, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Invalid JSON in run index {path} at line {line_no}: {exc}") from exc
            if not isinstance(entry, dict):
                raise ValueError(f"Run index entry at line {line_no} is not an object")
            for stage in entry.get("stages") or []:
                rows.append(
                    {
                        "run_id": entry.get("run_id"),
                        "pipeline": entry.get("pipeline"),
                        "run_status": entry.get("status"),
                        "created_at": entry.get("created_at"),
                        "group": stage.get("group"),
                        "stage": stage.get("stage"),
                        "status": stage.get("status"),
                        "error_kind": stage.get("error_kind"),
                        "duration_seconds": stage.get("duration_seconds"),
                    }
                )
    return pd.DataFrame(rows, columns=STAGE_ROW_COLUMNS)


def summarize_stages(frame: pd.DataFrame) -> pd.DataFrame:
    """Per-stage counts by status, failure rate over executed runs, mean duration."""

    if frame.empty:
        return pd.DataFrame(columns=SUMMARY_COLUMNS)

    counts = pd.crosstab(frame["stage"], frame["status"]).reindex(
        columns=list(STAGE_STATUSES), fill_value=0
    )
    runs = frame.groupby("stage")["run_id"].nunique().rename("runs")

    executed = frame[frame["status"] != "skipped"]
    durations = pd.to_numeric(executed["duration_seconds"], errors="coerce")
    mean_duration = durations.groupby(executed["stage"]).mean().rename("mean_duration_seconds")

    last_status = (
        frame.sort_values("created_at", kind="stable").groupby("stage")["status"].last().rename("last_status")
    )

    summary = pd.concat([runs, counts], axis=1)
    executed_runs = summary["success"] + summary["failed"] + summary["timeout"]
    summary["failure_rate"] = (
        (summary["failed"] + summary["timeout"]) / executed_runs.where(executed_runs > 0)
    ).fillna(0.0)
    summary = summary.join(mean_duration).join(last_status)
    summary.index.name = "stage"
    return summary.reset_index()[SUMMARY_COLUMNS]


def summarize_runs(frame: pd.DataFrame) -> dict[str, int]:
    if frame.empty:
        return {}
    per_run = frame.drop_duplicates("run_id")
    counts = per_run["run_status"].value_counts()
    return {str(status): int(count) for status, count in counts.items()}
