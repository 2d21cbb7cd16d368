"""Orchestrator for StageGroup sequences.

This module is intentionally app-agnostic and must not import `ci_pipeline.*`.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Protocol, Sequence, TypeAlias

from cikit.engine.artifacts import ArtifactStore, Archiver
from cikit.engine.environment import EnvironmentProvisioner, ExecutionEnvironment
from cikit.errors import (
    CommandFailure,
    InvalidResourceRequest,
    PipelineError,
    StageCancelled,
    StageTimeout,
)
from cikit.model import Stage, StageGroup

StageStatus: TypeAlias = Literal["pending", "running", "success", "failed", "timeout", "skipped"]
GroupStatus: TypeAlias = Literal["success", "failed", "skipped"]
PipelineStatus: TypeAlias = Literal["success", "failed", "aborted"]


def utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class RunContext(Protocol):
    run_id: str
    logger: logging.Logger
    stages: list[dict[str, Any]]


@dataclass
class StageResult:
    name: str
    group: str
    status: StageStatus = "pending"
    error_kind: str | None = None
    error: str | None = None
    exit_code: int | None = None
    commands_run: int = 0
    environment_id: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    duration_seconds: float | None = None
    log_ref: str | None = None
    archived: list[str] = field(default_factory=list)
    stashed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def label(self) -> str:
        if self.status == "timeout":
            return "failed: Timeout"
        return self.status

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["label"] = self.label
        return payload


@dataclass
class GroupResult:
    name: str
    mode: str
    status: GroupStatus
    stages: list[str] = field(default_factory=list)


@dataclass
class PipelineRun:
    run_id: str
    groups: tuple[StageGroup, ...]
    trigger: dict[str, Any] | None = None
    status: PipelineStatus | None = None
    stage_results: dict[str, StageResult] = field(default_factory=dict)
    group_results: list[GroupResult] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now_iso8601)
    finished_at: str | None = None

    def stage(self, name: str) -> StageResult:
        try:
            return self.stage_results[name]
        except KeyError:
            raise KeyError(f"Unknown stage: {name}") from None

    def group(self, name: str) -> GroupResult:
        for result in self.group_results:
            if result.name == name:
                return result
        raise KeyError(f"Unknown group: {name}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "trigger": self.trigger,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
            "groups": [asdict(result) for result in self.group_results],
            "stages": [self.stage_results[stage.name].to_dict() for g in self.groups for stage in g.stages],
        }


class StageRecorder(Protocol):
    def on_stage_start(self, ctx: RunContext, path: str, **metrics: Any) -> None:
        ...

    def on_stage_end(self, ctx: RunContext, record: dict[str, Any]) -> None:
        ...

    def on_stage_error(self, ctx: RunContext, path: str, stage_name: str, exc: BaseException) -> None:
        ...


class DefaultStageRecorder:
    def on_stage_start(self, ctx: RunContext, path: str, **metrics: Any) -> None:
        tokens: list[str] = []
        for key in ("environment", "image", "resources", "timeout"):
            value = metrics.get(key)
            if value is None or (isinstance(value, str) and not value.strip()):
                continue
            tokens.append(f"{key}={value}")
        tokens.append(f"commands={int(metrics.get('commands', 0) or 0)}")
        ctx.logger.info("Stage: %s (%s)", path, ", ".join(tokens))

    def on_stage_end(self, ctx: RunContext, record: dict[str, Any]) -> None:
        ctx.stages.append(record)
        path = record.get("path", "<unknown>")
        label = record.get("label") or record.get("status")
        if record.get("status") == "success":
            ctx.logger.info(
                "Completed stage %s (duration=%.2fs)", path, float(record.get("duration_seconds") or 0.0)
            )
            return
        if record.get("status") == "skipped":
            ctx.logger.info("Skipped stage %s", path)
            return
        ctx.logger.warning(
            "Stage %s finished with %s (%s: %s)",
            path,
            label,
            record.get("error_kind"),
            record.get("error"),
        )

    def on_stage_error(self, ctx: RunContext, path: str, stage_name: str, exc: BaseException) -> None:
        ctx.logger.error("Stage failed: %s (%s)", path, exc)


class NullStageRecorder:
    def on_stage_start(self, ctx: RunContext, path: str, **metrics: Any) -> None:
        return

    def on_stage_end(self, ctx: RunContext, record: dict[str, Any]) -> None:
        return

    def on_stage_error(self, ctx: RunContext, path: str, stage_name: str, exc: BaseException) -> None:
        return


class PipelineRunner:
    """
    Runs StageGroups in declared order.

    The first failing group stops the run and every later stage is recorded as
    skipped. Parallel groups are fail-open: members run to completion regardless
    of sibling failures. Archival and environment release happen on every path.
    """

    def __init__(
        self,
        *,
        provisioner: EnvironmentProvisioner,
        store: ArtifactStore,
        archiver: Archiver | None = None,
        recorder: StageRecorder | None = None,
        provisioning_timeout: float | None = None,
        default_stage_timeout: float | None = None,
    ) -> None:
        self.provisioner = provisioner
        self.store = store
        self.archiver = archiver
        self._recorder = recorder or DefaultStageRecorder()
        self._validate_recorder(self._recorder)
        self.provisioning_timeout = provisioning_timeout
        self.default_stage_timeout = default_stage_timeout
        self._cancel_event = threading.Event()

    def _validate_recorder(self, recorder: StageRecorder) -> None:
        required = ("on_stage_start", "on_stage_end", "on_stage_error")
        for name in required:
            method = getattr(recorder, name, None)
            if method is None or not callable(method):
                raise TypeError(f"Stage recorder missing required method: {name}")

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        self._cancel_event.set()

    def run(
        self,
        ctx: RunContext,
        groups: Sequence[StageGroup],
        *,
        trigger: dict[str, Any] | None = None,
    ) -> PipelineRun:
        groups = tuple(groups)
        self._validate_groups(groups)
        run = PipelineRun(run_id=ctx.run_id, groups=groups, trigger=trigger)
        for group in groups:
            for stage in group.stages:
                run.stage_results[stage.name] = StageResult(name=stage.name, group=group.name)

        ctx.logger.info(
            "Pipeline run %s: %d group(s), %d stage(s)", run.run_id, len(groups), len(run.stage_results)
        )

        failed_group: str | None = None
        for group in groups:
            if failed_group is not None or self.cancelled:
                self._skip_group(ctx, run, group)
                continue
            result = self._run_group(ctx, run, group)
            run.group_results.append(result)
            if result.status != "success":
                failed_group = group.name
                ctx.logger.warning("Group %s failed; remaining groups will not start", group.name)

        if self.cancelled:
            run.status = "aborted"
        elif failed_group is not None:
            run.status = "failed"
        else:
            run.status = "success"
        run.finished_at = utc_now_iso8601()
        ctx.logger.info("Pipeline run %s finished: %s", run.run_id, run.status)
        return run

    def _validate_groups(self, groups: tuple[StageGroup, ...]) -> None:
        seen: set[str] = set()
        duplicates: set[str] = set()
        for group in groups:
            if not isinstance(group, StageGroup):
                raise TypeError(f"Pipeline groups must be StageGroup (type={type(group).__name__})")
            for stage in group.stages:
                if stage.name in seen:
                    duplicates.add(stage.name)
                seen.add(stage.name)
        if duplicates:
            raise ValueError(f"Duplicate stage name(s) across groups: {', '.join(sorted(duplicates))}")

    def _skip_group(self, ctx: RunContext, run: PipelineRun, group: StageGroup) -> None:
        for stage in group.stages:
            self._skip_stage(ctx, run, group, stage)
        run.group_results.append(
            GroupResult(
                name=group.name,
                mode=group.mode,
                status="skipped",
                stages=[stage.name for stage in group.stages],
            )
        )

    def _skip_stage(self, ctx: RunContext, run: PipelineRun, group: StageGroup, stage: Stage) -> None:
        result = run.stage_results[stage.name]
        result.status = "skipped"
        self._recorder.on_stage_end(ctx, self._record(group, result))

    def _run_group(self, ctx: RunContext, run: PipelineRun, group: StageGroup) -> GroupResult:
        ctx.logger.info("Group: %s (mode=%s, stages=%d)", group.name, group.mode, len(group.stages))
        if group.mode == "parallel":
            self._run_parallel(ctx, run, group)
        else:
            self._run_sequential(ctx, run, group)

        names = [stage.name for stage in group.stages]
        ok = all(run.stage_results[name].succeeded for name in names)
        return GroupResult(
            name=group.name, mode=group.mode, status="success" if ok else "failed", stages=names
        )

    def _run_sequential(self, ctx: RunContext, run: PipelineRun, group: StageGroup) -> None:
        failed = False
        for stage in group.stages:
            if failed or self.cancelled:
                self._skip_stage(ctx, run, group, stage)
                continue
            result = self._run_stage(ctx, run, group, stage)
            if not result.succeeded:
                failed = True

    def _run_parallel(self, ctx: RunContext, run: PipelineRun, group: StageGroup) -> None:
        # Tickets are taken here, in declaration order, so capacity is granted FIFO.
        tickets: dict[str, int] = {}
        rejected: dict[str, InvalidResourceRequest] = {}
        for stage in group.stages:
            if stage.resources is None:
                continue
            try:
                tickets[stage.name] = self.provisioner.pool.ticket(stage.resources)
            except InvalidResourceRequest as exc:
                rejected[stage.name] = exc

        with ThreadPoolExecutor(
            max_workers=len(group.stages), thread_name_prefix=f"group-{group.name}"
        ) as executor:
            futures = {
                stage.name: executor.submit(
                    self._run_stage,
                    ctx,
                    run,
                    group,
                    stage,
                    ticket=tickets.get(stage.name),
                    rejected=rejected.get(stage.name),
                )
                for stage in group.stages
            }
            for name, future in futures.items():
                exc = future.exception()
                if exc is not None:
                    result = run.stage_results[name]
                    result.status = "failed"
                    result.error_kind = type(exc).__name__
                    result.error = str(exc)
                    ctx.logger.error("Stage %s/%s crashed: %s", group.name, name, exc)

    def _run_stage(
        self,
        ctx: RunContext,
        run: PipelineRun,
        group: StageGroup,
        stage: Stage,
        *,
        ticket: int | None = None,
        rejected: InvalidResourceRequest | None = None,
    ) -> StageResult:
        path = f"{group.name}/{stage.name}"
        result = run.stage_results[stage.name]
        result.status = "running"
        result.started_at = utc_now_iso8601()
        started = time.monotonic()
        timeout = stage.timeout if stage.timeout is not None else self.default_stage_timeout
        handle: ExecutionEnvironment | None = None
        error: BaseException | None = None

        try:
            self._recorder.on_stage_start(
                ctx,
                path,
                environment=stage.environment,
                image=stage.image,
                resources=stage.resources.describe() if stage.resources else None,
                timeout=f"{timeout:g}s" if timeout else None,
                commands=len(stage.commands),
            )
            if rejected is not None:
                raise rejected
            handle = self.provisioner.acquire(
                stage.resources,
                timeout=self.provisioning_timeout,
                ticket=ticket,
                cancel_event=self._cancel_event,
                label=stage.name,
                image=stage.image,
                env=stage.env,
            )
            result.environment_id = handle.id
            self._execute(ctx, run, stage, handle, result, timeout=timeout)
        except PipelineError as exc:
            error = exc
        except Exception as exc:  # noqa: BLE001
            ctx.logger.exception("Unexpected error in stage %s", path)
            error = exc
        except BaseException as exc:
            # Interrupts stop the whole run; the stage is recorded as failed first.
            error = exc
            self.cancel()
            raise
        finally:
            if ticket is not None:
                self.provisioner.pool.cancel_ticket(ticket)

            if error is None:
                result.status = "success"
            else:
                result.status = "timeout" if isinstance(error, StageTimeout) else "failed"
                result.error_kind = getattr(error, "kind", None) or type(error).__name__
                result.error = str(error)
                try:
                    self._recorder.on_stage_error(ctx, path, stage.name, error)
                except Exception:
                    ctx.logger.exception("Stage recorder failed during error handling for %s", path)

            if handle is not None:
                self._archive(ctx, run, stage, handle, result)
                if result.succeeded:
                    result.stashed = self.store.commit_producer(run.run_id, stage.name)
                else:
                    dropped = self.store.discard_producer(run.run_id, stage.name)
                    if dropped:
                        ctx.logger.info(
                            "Discarded stash(es) from failed stage %s: %s", stage.name, ", ".join(dropped)
                        )
                self.provisioner.release(handle)

            result.finished_at = utc_now_iso8601()
            result.duration_seconds = round(time.monotonic() - started, 3)
            self._recorder.on_stage_end(ctx, self._record(group, result))
        return result

    def _execute(
        self,
        ctx: RunContext,
        run: PipelineRun,
        stage: Stage,
        handle: ExecutionEnvironment,
        result: StageResult,
        *,
        timeout: float | None,
    ) -> None:
        for spec in stage.unstash:
            bundle = self.store.fetch(run.run_id, spec.name, include=spec.include, exclude=spec.exclude)
            written = bundle.extract_to(handle.workspace)
            ctx.logger.debug("Unstashed %s into %s (%d files)", spec.name, stage.name, len(written))

        deadline = None if timeout is None else time.monotonic() + timeout
        report = self.provisioner.run(
            handle, stage.commands, deadline=deadline, cancel_event=self._cancel_event
        )
        result.commands_run = report.commands_run
        result.exit_code = report.exit_code
        if report.timed_out:
            raise StageTimeout(stage.name, float(timeout or 0.0))
        if report.cancelled:
            raise StageCancelled(f"Stage {stage.name} cancelled")
        if report.exit_code != 0:
            raise CommandFailure(
                report.failed_command or "<unknown>",
                int(report.exit_code if report.exit_code is not None else -1),
                index=report.commands_run,
            )

        for spec in stage.stash:
            self.store.publish(
                run.run_id,
                spec.name,
                handle.workspace,
                include=spec.include,
                exclude=spec.exclude,
                producer=stage.name,
            )

    def _archive(
        self,
        ctx: RunContext,
        run: PipelineRun,
        stage: Stage,
        handle: ExecutionEnvironment,
        result: StageResult,
    ) -> None:
        if self.archiver is None:
            result.log_ref = handle.log_path
            return
        for spec in stage.archive:
            if not spec.always and not result.succeeded:
                continue
            try:
                copied = self.archiver.archive_files(
                    run.run_id, stage.name, handle.workspace, include=spec.include, exclude=spec.exclude
                )
            except Exception as exc:  # noqa: BLE001
                message = f"Archive of {list(spec.include)} failed: {exc}"
                result.warnings.append(message)
                ctx.logger.warning("Stage %s: %s", stage.name, message)
                continue
            if not copied:
                message = f"Archive of {list(spec.include)} matched no files"
                result.warnings.append(message)
                ctx.logger.warning("Stage %s: %s", stage.name, message)
            result.archived.extend(copied)

        if stage.archive_log:
            try:
                result.log_ref = self.archiver.archive_log(run.run_id, stage.name, handle.log_path)
            except Exception as exc:  # noqa: BLE001
                message = f"Log archive failed: {exc}"
                result.warnings.append(message)
                ctx.logger.warning("Stage %s: %s", stage.name, message)

    def _record(self, group: StageGroup, result: StageResult) -> dict[str, Any]:
        record = result.to_dict()
        record["path"] = f"{group.name}/{result.name}"
        return record
