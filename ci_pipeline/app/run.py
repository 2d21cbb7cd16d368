from __future__ import annotations

import logging
import os
import signal
import threading
from contextlib import contextmanager
from typing import Any, Iterator

from cikit.engine.artifacts import ArtifactStore, Archiver
from cikit.engine.environment import EnvironmentProvisioner
from cikit.engine.pool import CapacityPool
from cikit.engine.runner import PipelineRun, PipelineRunner, utc_now_iso8601
from ci_pipeline.foundation.config_io import load_config
from ci_pipeline.foundation.logging_utils import close_logger, setup_operational_logger
from ci_pipeline.framework.config import RunConfig
from ci_pipeline.framework.definition import PipelineDefinition, load_definition
from ci_pipeline.framework.records import (
    append_run_index_entry,
    build_run_index_entry,
    generate_run_id,
    write_run_summary,
)
from ci_pipeline.framework.runtime import RunContext
from ci_pipeline.framework.trigger import TriggerEvent

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_ABORTED = 130

_EXIT_CODES = {"success": EXIT_SUCCESS, "failed": EXIT_FAILED, "aborted": EXIT_ABORTED}


def load_run_config(config_path: str | None = None) -> tuple[RunConfig, list[str]]:
    cfg_dict, meta = load_config(config_path=config_path)
    base_dir = meta.get("repo_root") or os.path.dirname(meta["paths"][0])
    return RunConfig.from_dict(cfg_dict, base_dir=base_dir)


def resolve_definition(cfg: RunConfig | None, definition_path: str | None) -> PipelineDefinition:
    path = definition_path or (cfg.definition_path if cfg is not None else None)
    if not path:
        raise ValueError("No pipeline definition: pass --definition or set pipeline.definition_path")
    return load_definition(os.path.abspath(path))


@contextmanager
def _cancel_on_signals(runner: PipelineRunner, run_logger: logging.Logger) -> Iterator[None]:
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum: int, _frame: Any) -> None:
        run_logger.warning("Received %s; cancelling pipeline run", signal.Signals(signum).name)
        runner.cancel()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def build_runner(cfg: RunConfig, run_id: str) -> PipelineRunner:
    pool = CapacityPool(cpu=cfg.pool_cpu, memory=cfg.pool_memory)
    provisioner = EnvironmentProvisioner(
        pool,
        os.path.join(cfg.work_dir, run_id),
        grace_period=cfg.grace_period,
        keep_workspaces=cfg.keep_workspaces,
    )
    return PipelineRunner(
        provisioner=provisioner,
        store=ArtifactStore(cfg.work_dir),
        archiver=Archiver(cfg.archive_dir),
        provisioning_timeout=cfg.provisioning_timeout,
        default_stage_timeout=cfg.stage_default_timeout,
    )


def run_pipeline(
    cfg: RunConfig,
    definition: PipelineDefinition,
    event: TriggerEvent,
    *,
    run_id: str | None = None,
    config_warnings: list[str] | None = None,
) -> tuple[int, PipelineRun | None]:
    """
    Run `definition` for `event`, returning (exit_code, run).

    Returns (0, None) without creating any files when the event does not match the
    definition's trigger rules.
    """

    if not definition.triggers.matches(event):
        logger.info(
            "Trigger %s on %s does not match pipeline %s; nothing to run",
            event.kind,
            event.ref or "<no ref>",
            definition.name,
        )
        return EXIT_SUCCESS, None

    run_id = run_id or generate_run_id()
    run_logger, oplog_path = setup_operational_logger(cfg.log_dir, run_id)
    for warning in config_warnings or ():
        run_logger.warning("Config: %s", warning)

    ctx = RunContext(
        run_id=run_id,
        cfg=cfg,
        logger=run_logger,
        trigger=event,
        created_at=utc_now_iso8601(),
        pipeline_name=definition.name,
    )
    run_logger.info(
        "Pipeline %s triggered by %s (ref=%s, revision=%s)",
        definition.name,
        event.kind,
        event.ref,
        event.revision,
    )

    runner = build_runner(cfg, run_id)
    summary_path = os.path.join(cfg.log_dir, f"{run_id}_run.json")
    run: PipelineRun | None = None
    try:
        with _cancel_on_signals(runner, run_logger):
            run = runner.run(ctx, definition.groups, trigger=event.to_dict())
    except Exception as exc:
        ctx.error = {"type": type(exc).__name__, "message": str(exc)}
        run_logger.exception("Pipeline run %s crashed", run_id)
        raise
    finally:
        if not cfg.keep_workspaces:
            runner.store.drop_run(run_id)
        try:
            write_run_summary(summary_path, ctx, run)
            run_logger.info("Run summary: %s", summary_path)
            if cfg.run_index_path and run is not None:
                append_run_index_entry(
                    cfg.run_index_path,
                    build_run_index_entry(ctx, run, summary_path=summary_path, oplog_path=oplog_path),
                )
                run_logger.debug("Appended run index entry to %s", cfg.run_index_path)
        finally:
            close_logger(run_logger)

    return _EXIT_CODES.get(run.status or "failed", EXIT_FAILED), run
