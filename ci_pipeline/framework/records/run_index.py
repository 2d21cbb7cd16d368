from __future__ import annotations

import json
import os
import uuid
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from cikit.engine.runner import PipelineRun
from ci_pipeline.framework.runtime import RunContext

RUN_INDEX_SCHEMA_VERSION = 1


def generate_run_id() -> str:
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"{timestamp}_{uuid.uuid4().hex[:8]}"


def append_run_index_entry(path: str, entry: Mapping[str, Any]) -> None:
    """
    Append a single JSON object to a JSONL run index file.

    The caller is responsible for building a schema_versioned entry object.
    """

    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "a", encoding="utf-8") as handle:
        handle.write(json.dumps(dict(entry), ensure_ascii=False))
        handle.write("\n")


def build_run_index_entry(
    ctx: RunContext,
    run: PipelineRun,
    *,
    summary_path: str | None = None,
    oplog_path: str | None = None,
) -> dict[str, Any]:
    stages: list[dict[str, Any]] = []
    for group in run.groups:
        for stage in group.stages:
            result = run.stage(stage.name)
            stages.append(
                {
                    "group": group.name,
                    "stage": result.name,
                    "status": result.status,
                    "error_kind": result.error_kind,
                    "duration_seconds": result.duration_seconds,
                    "log_ref": result.log_ref,
                }
            )

    return {
        "schema_version": RUN_INDEX_SCHEMA_VERSION,
        "run_id": run.run_id,
        "pipeline": ctx.pipeline_name,
        "status": run.status,
        "trigger": ctx.trigger.to_dict(),
        "created_at": run.created_at,
        "finished_at": run.finished_at,
        "summary_path": summary_path,
        "oplog_path": oplog_path,
        "stages": stages,
    }
