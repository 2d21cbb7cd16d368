import os
import threading
import time

import pytest

from cikit.engine.environment import EnvironmentProvisioner
from cikit.engine.pool import CapacityPool
from cikit.model import Command, ResourceRequest


def _provisioner(tmp_path, **kwargs) -> EnvironmentProvisioner:
    pool = CapacityPool(cpu=4, memory=4096)
    return EnvironmentProvisioner(pool, str(tmp_path / "work"), grace_period=1.0, **kwargs)


def _read(path) -> str:
    with open(path, "r", encoding="utf-8") as handle:
        return handle.read()


def test_commands_run_in_order_and_stop_at_first_failure(tmp_path):
    provisioner = _provisioner(tmp_path)
    with provisioner.provision(ResourceRequest(cpu=1, memory=256), label="unit") as env:
        report = provisioner.run(
            env,
            [Command("echo one"), Command("exit 3", name="fail"), Command("echo three")],
        )
        log = _read(env.log_path)

    assert report.exit_code == 3
    assert report.commands_run == 2
    assert report.failed_command == "exit 3"
    assert not report.succeeded
    assert "+ echo one\none\n" in log
    assert "[exit 3] fail" in log
    assert "echo three" not in log


def test_successful_run_reports_zero_and_shares_workspace(tmp_path):
    provisioner = _provisioner(tmp_path)
    with provisioner.provision(None, label="build") as env:
        report = provisioner.run(env, [Command("echo hi > out.txt"), Command("test -f out.txt")])
        assert os.path.isfile(os.path.join(env.workspace, "out.txt"))

    assert report.succeeded
    assert report.commands_run == 2
    assert env.state == "terminated"
    assert env.exit_status == 0


def test_environment_variables_layer_stage_then_command(tmp_path):
    provisioner = _provisioner(tmp_path, base_env={"PATH": os.environ.get("PATH", "/usr/bin:/bin")})
    with provisioner.provision(None, label="env", env={"LAYER": "stage", "ONLY_STAGE": "s"}) as env:
        provisioner.run(
            env,
            [Command('echo "$LAYER-$ONLY_STAGE"', env={"LAYER": "command"})],
        )
        log = _read(env.log_path)

    assert "command-s\n" in log


def test_deadline_terminates_running_command(tmp_path):
    provisioner = _provisioner(tmp_path)
    started = time.monotonic()
    with provisioner.provision(None, label="slow") as env:
        report = provisioner.run(
            env,
            [Command("echo started"), Command("sleep 30"), Command("echo never")],
            deadline=time.monotonic() + 0.5,
        )
        log = _read(env.log_path)

    assert report.timed_out
    assert report.exit_code is None
    assert report.failed_command == "sleep 30"
    assert time.monotonic() - started < 10
    assert "started\n" in log
    assert "[timeout] sleep 30" in log
    assert "echo never" not in log


def test_cancel_event_terminates_running_command(tmp_path):
    provisioner = _provisioner(tmp_path)
    cancel = threading.Event()
    timer = threading.Timer(0.3, cancel.set)
    timer.start()
    try:
        with provisioner.provision(None, label="cancel") as env:
            report = provisioner.run(env, [Command("sleep 30")], cancel_event=cancel)
    finally:
        timer.cancel()

    assert report.cancelled
    assert not report.timed_out
    assert not report.succeeded


def test_group_ignoring_sigterm_is_killed_after_grace_period(tmp_path):
    provisioner = _provisioner(tmp_path)
    started = time.monotonic()
    with provisioner.provision(None, label="stubborn") as env:
        report = provisioner.run(
            env,
            [Command("trap '' TERM; echo trapped; sleep 30", name="stubborn")],
            deadline=time.monotonic() + 0.3,
        )
        log = _read(env.log_path)
    elapsed = time.monotonic() - started

    assert report.timed_out
    assert elapsed >= 0.3 + provisioner.grace_period
    assert elapsed < 10
    assert "trapped\n" in log
    assert "[timeout] stubborn" in log


def test_interrupt_while_waiting_terminates_the_command(tmp_path, monkeypatch):
    provisioner = _provisioner(tmp_path)
    procs = []

    def interrupted_wait(proc, *, deadline, cancel_event):
        procs.append(proc)
        raise KeyboardInterrupt

    monkeypatch.setattr(provisioner, "_wait", interrupted_wait)
    started = time.monotonic()
    with provisioner.provision(None, label="interrupted") as env:
        with pytest.raises(KeyboardInterrupt):
            provisioner.run(env, [Command("sleep 30", name="nap"), Command("echo never")])
        log = _read(env.log_path)

    assert time.monotonic() - started < 10
    assert len(procs) == 1
    assert procs[0].returncode is not None
    assert env.state == "terminated"
    assert "[interrupted] nap" in log
    assert "echo never" not in log


def test_release_returns_capacity_and_removes_workspace(tmp_path):
    provisioner = _provisioner(tmp_path)
    env = provisioner.acquire(ResourceRequest(cpu=2, memory=1024), label="rpms")
    assert provisioner.pool.in_use == (2, 1024)
    assert os.path.isdir(env.workspace)
    assert os.path.basename(env.workspace).startswith("rpms-")

    provisioner.release(env)

    assert provisioner.pool.in_use == (0, 0)
    assert not os.path.exists(env.workspace)
    provisioner.release(env)
    assert provisioner.pool.in_use == (0, 0)


def test_keep_workspaces_leaves_directory(tmp_path):
    provisioner = _provisioner(tmp_path, keep_workspaces=True)
    with provisioner.provision(None, label="keep") as env:
        provisioner.run(env, [Command("touch marker")])

    assert os.path.isfile(os.path.join(env.workspace, "marker"))


def test_run_on_terminated_environment_raises(tmp_path):
    provisioner = _provisioner(tmp_path)
    with provisioner.provision(None) as env:
        provisioner.run(env, [Command("true")])
        with pytest.raises(ValueError, match=r"already terminated"):
            provisioner.run(env, [Command("true")])


def test_negative_grace_period_is_rejected(tmp_path):
    with pytest.raises(ValueError, match=r"grace_period"):
        EnvironmentProvisioner(CapacityPool(), str(tmp_path), grace_period=-1)
