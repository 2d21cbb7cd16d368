"""Execution environments: provisioning, command execution and scoped release.

An environment is a private workspace directory plus a capacity reservation. Commands
run through `/bin/sh -c` in their own process group so that a timeout or cancellation
can terminate the whole tree.
"""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Literal, Mapping, Sequence

from cikit.engine.pool import CapacityPool, Lease
from cikit.model import Command, ResourceRequest

logger = logging.getLogger(__name__)

EnvironmentState = Literal["pending", "running", "terminated"]

_POLL_SECONDS = 0.05


@dataclass
class ExecutionEnvironment:
    id: str
    request: ResourceRequest | None
    workspace: str
    log_path: str
    label: str | None = None
    image: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    state: EnvironmentState = "pending"
    exit_status: int | None = None
    lease: Lease | None = None


@dataclass(frozen=True)
class ExitReport:
    exit_code: int | None
    commands_run: int
    failed_command: str | None = None
    timed_out: bool = False
    cancelled: bool = False
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


def _terminate_process_group(proc: subprocess.Popen, *, grace_period: float) -> int:
    """SIGTERM the process group, wait `grace_period`, then SIGKILL."""

    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        pass
    try:
        return proc.wait(timeout=grace_period)
    except subprocess.TimeoutExpired:
        logger.debug("Process group %s ignored SIGTERM; sending SIGKILL", proc.pid)
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    return proc.wait()


class EnvironmentProvisioner:
    def __init__(
        self,
        pool: CapacityPool,
        work_root: str,
        *,
        grace_period: float = 10.0,
        keep_workspaces: bool = False,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        if grace_period < 0:
            raise ValueError("grace_period must be >= 0")
        self.pool = pool
        self.work_root = os.path.abspath(work_root)
        self.grace_period = float(grace_period)
        self.keep_workspaces = keep_workspaces
        self._base_env = dict(os.environ if base_env is None else base_env)

    def acquire(
        self,
        request: ResourceRequest | None,
        *,
        timeout: float | None = None,
        ticket: int | None = None,
        cancel_event: threading.Event | None = None,
        label: str | None = None,
        image: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ExecutionEnvironment:
        lease: Lease | None = None
        if request is not None or ticket is not None:
            lease = self.pool.acquire(
                request, timeout=timeout, ticket=ticket, cancel_event=cancel_event
            )

        env_id = uuid.uuid4().hex[:12]
        slug = (label or "env").replace(os.sep, "_").replace(" ", "_")
        workspace = os.path.join(self.work_root, "envs", f"{slug}-{env_id}")
        try:
            os.makedirs(workspace, exist_ok=False)
        except BaseException:
            if lease is not None:
                self.pool.release(lease)
            raise

        return ExecutionEnvironment(
            id=env_id,
            request=request,
            workspace=workspace,
            log_path=os.path.join(self.work_root, "envs", f"{slug}-{env_id}.log"),
            label=label,
            image=image,
            env=dict(env or {}),
            lease=lease,
        )

    def run(
        self,
        handle: ExecutionEnvironment,
        commands: Sequence[Command],
        *,
        deadline: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ExitReport:
        """
        Run `commands` strictly in order inside `handle`.

        Stops at the first non-zero exit. `deadline` is a `time.monotonic()` value;
        when it passes, the running command is terminated and the report is marked
        `timed_out`. Combined output of every command is appended to the
        environment log whatever the outcome.
        """

        if handle.state == "terminated":
            raise ValueError(f"Environment {handle.id} is already terminated")
        handle.state = "running"
        started = time.monotonic()
        commands_run = 0
        exit_code: int | None = 0

        with open(handle.log_path, "a", encoding="utf-8") as log:
            for index, command in enumerate(commands):
                if cancel_event is not None and cancel_event.is_set():
                    return self._finish(handle, None, commands_run, started, cancelled=True)
                if deadline is not None and time.monotonic() >= deadline:
                    return self._finish(handle, None, commands_run, started, timed_out=True)

                log.write(f"+ {command.run}\n")
                log.flush()
                proc_env = dict(self._base_env)
                proc_env.update(handle.env)
                proc_env.update(command.env)
                proc = subprocess.Popen(
                    ["/bin/sh", "-c", command.run],
                    cwd=handle.workspace,
                    env=proc_env,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,
                )
                commands_run += 1

                try:
                    outcome = self._wait(proc, deadline=deadline, cancel_event=cancel_event)
                except BaseException:
                    _terminate_process_group(proc, grace_period=self.grace_period)
                    log.write(f"[interrupted] {command.label}\n")
                    handle.state = "terminated"
                    raise
                if outcome != "exited":
                    _terminate_process_group(proc, grace_period=self.grace_period)
                    log.write(f"[{outcome}] {command.label}\n")
                    return self._finish(
                        handle,
                        None,
                        commands_run,
                        started,
                        failed_command=command.run,
                        timed_out=outcome == "timeout",
                        cancelled=outcome == "cancelled",
                    )

                exit_code = proc.returncode
                if exit_code != 0:
                    log.write(f"[exit {exit_code}] {command.label}\n")
                    logger.debug(
                        "Command %d in %s exited %s: %s", index + 1, handle.id, exit_code, command.run
                    )
                    return self._finish(
                        handle, exit_code, commands_run, started, failed_command=command.run
                    )

        return self._finish(handle, 0, commands_run, started)

    def _wait(
        self,
        proc: subprocess.Popen,
        *,
        deadline: float | None,
        cancel_event: threading.Event | None,
    ) -> str:
        while True:
            wait_for = _POLL_SECONDS
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return "timeout" if proc.poll() is None else "exited"
                wait_for = min(wait_for, remaining)
            try:
                proc.wait(timeout=wait_for)
                return "exited"
            except subprocess.TimeoutExpired:
                pass
            if cancel_event is not None and cancel_event.is_set():
                return "cancelled"

    def _finish(
        self,
        handle: ExecutionEnvironment,
        exit_code: int | None,
        commands_run: int,
        started: float,
        *,
        failed_command: str | None = None,
        timed_out: bool = False,
        cancelled: bool = False,
    ) -> ExitReport:
        handle.state = "terminated"
        handle.exit_status = exit_code
        return ExitReport(
            exit_code=exit_code,
            commands_run=commands_run,
            failed_command=failed_command,
            timed_out=timed_out,
            cancelled=cancelled,
            duration_seconds=time.monotonic() - started,
        )

    def release(self, handle: ExecutionEnvironment) -> None:
        if handle.state != "terminated":
            handle.state = "terminated"
        if handle.lease is not None:
            self.pool.release(handle.lease)
            handle.lease = None
        if not self.keep_workspaces:
            shutil.rmtree(handle.workspace, ignore_errors=True)

    @contextmanager
    def provision(
        self,
        request: ResourceRequest | None,
        *,
        timeout: float | None = None,
        ticket: int | None = None,
        cancel_event: threading.Event | None = None,
        label: str | None = None,
        image: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> Iterator[ExecutionEnvironment]:
        handle = self.acquire(
            request,
            timeout=timeout,
            ticket=ticket,
            cancel_event=cancel_event,
            label=label,
            image=image,
            env=env,
        )
        try:
            yield handle
        finally:
            self.release(handle)

