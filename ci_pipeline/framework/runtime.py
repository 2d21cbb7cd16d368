from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ci_pipeline.framework.config import RunConfig
from ci_pipeline.framework.trigger import TriggerEvent


@dataclass
class RunContext:
    run_id: str
    cfg: RunConfig
    logger: logging.Logger
    trigger: TriggerEvent
    created_at: str

    pipeline_name: str = "pipeline"
    stages: list[dict[str, Any]] = field(default_factory=list)
    error: dict[str, Any] | None = None
