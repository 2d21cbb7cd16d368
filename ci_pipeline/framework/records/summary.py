from __future__ import annotations

import json
import os
from typing import Any

from cikit.engine.runner import PipelineRun
from ci_pipeline.framework.runtime import RunContext


def write_run_summary(path: str, ctx: RunContext, run: PipelineRun | None) -> None:
    payload: dict[str, Any] = {
        "run_id": ctx.run_id,
        "pipeline": ctx.pipeline_name,
        "trigger": ctx.trigger.to_dict(),
        "created_at": ctx.created_at,
        "records": list(ctx.stages),
    }
    if run is not None:
        payload.update(run.to_dict())
    if ctx.error is not None:
        payload["error"] = ctx.error

    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "w", encoding="utf-8") as file:
        json.dump(payload, file, ensure_ascii=False, indent=2)
        file.write("\n")
