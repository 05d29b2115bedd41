import signal
import sys

import pytest

import src.settings as settings
from src.local.supervisor import shutdown as shutdown_module
from src.local.supervisor.process_utils import ManagedProcess, ProcessSpec, ProcessState, Role
from src.local.supervisor.readiness import build_matchers, port_from_match
from src.local.supervisor.shutdown import reap, shutdown
from src.local.supervisor.startup import PipelineRun
from tests.helpers import FakeProcess, posix_only


class RecordingHandle:
    """Records signals into a list shared between handles."""

    def __init__(self, role, calls, fail_terminate=False, fail_kill=False):
        self.role = role
        self.pid = None
        self.calls = calls
        self.fail_terminate = fail_terminate
        self.fail_kill = fail_kill

    def terminate(self):
        if self.fail_terminate:
            raise ProcessLookupError("gone")
        self.calls.append((self.role.value, "terminate"))

    def kill(self):
        if self.fail_kill:
            raise PermissionError("not allowed")
        self.calls.append((self.role.value, "kill"))


def test_application_is_signalled_before_database():
    calls = []
    run = PipelineRun(
        database=RecordingHandle(Role.DATABASE, calls),
        application=RecordingHandle(Role.APPLICATION, calls),
    )

    shutdown(run)

    assert run.shutting_down is True
    assert calls == [("application", "terminate"), ("database", "terminate")]


def test_shutdown_with_no_handles_is_noop():
    run = PipelineRun()
    shutdown(run)
    assert run.is_shutting_down()


def test_shutdown_with_only_database():
    calls = []
    run = PipelineRun(database=RecordingHandle(Role.DATABASE, calls))
    shutdown(run)
    assert calls == [("database", "terminate")]


def test_failed_terminate_falls_back_to_kill():
    calls = []
    run = PipelineRun(
        database=RecordingHandle(Role.DATABASE, calls),
        application=RecordingHandle(Role.APPLICATION, calls, fail_terminate=True),
    )

    shutdown(run)

    assert calls == [("application", "kill"), ("database", "terminate")]


def test_failed_kill_does_not_raise():
    calls = []
    run = PipelineRun(
        database=RecordingHandle(Role.DATABASE, calls),
        application=RecordingHandle(Role.APPLICATION, calls, fail_terminate=True, fail_kill=True),
    )

    shutdown(run)

    assert calls == [("database", "terminate")]


def test_repeated_shutdown_is_safe():
    calls = []
    run = PipelineRun(database=RecordingHandle(Role.DATABASE, calls))
    shutdown(run)
    shutdown(run)
    assert calls == [("database", "terminate"), ("database", "terminate")]


def make_handle(role, crashes, run):
    return ManagedProcess(
        role,
        ProcessSpec("fake"),
        build_matchers(settings.APPLICATION_READY_PATTERNS, port_from_match),
        is_shutting_down=run.is_shutting_down,
        on_crash=crashes.append,
    )


@pytest.mark.asyncio
async def test_exits_after_shutdown_are_not_crashes():
    crashes = []
    run = PipelineRun()
    run.database = make_handle(Role.DATABASE, crashes, run)
    run.application = make_handle(Role.APPLICATION, crashes, run)
    db_process, app_process = FakeProcess(), FakeProcess()
    run.database.attach(db_process)
    run.application.attach(app_process)
    db_process.emit("http server started on 127.0.0.1:1\n")
    app_process.emit("http server started on 127.0.0.1:2\n")
    await run.application.wait_ready(1)
    await run.database.wait_ready(1)

    shutdown(run)
    assert app_process.signals == ["SIGTERM"]
    assert db_process.signals == ["SIGTERM"]
    app_process.exit(-15)
    db_process.exit(-15)

    assert await reap(run, 1) == []
    assert crashes == []


@pytest.mark.asyncio
async def test_reap_kills_processes_that_ignore_sigterm(monkeypatch):
    killed = []
    monkeypatch.setattr(shutdown_module, "_kill_process_tree", killed.append)
    run = PipelineRun()
    run.application = make_handle(Role.APPLICATION, [], run)
    run.application.attach(FakeProcess())

    shutdown(run)
    alive = await reap(run, 0.05)

    assert alive == [run.application]
    assert killed == [run.application]
    run.application._process.exit(-9)


@pytest.mark.asyncio
async def test_reap_without_running_handles_returns_immediately():
    assert await reap(PipelineRun(), 0) == []


@posix_only
@pytest.mark.asyncio
async def test_reap_force_kills_real_stubborn_process():
    script = (
        "import signal, sys, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('http server started on 127.0.0.1:7000', flush=True)\n"
        "while True:\n"
        "    time.sleep(0.05)\n"
    )
    crashes = []
    run = PipelineRun()
    handle = ManagedProcess(
        Role.APPLICATION,
        ProcessSpec(sys.executable, ["-c", script]),
        build_matchers(settings.APPLICATION_READY_PATTERNS, port_from_match),
        is_shutting_down=run.is_shutting_down,
        on_crash=crashes.append,
    )
    run.application = handle
    await handle.spawn()
    await handle.wait_ready(10)

    shutdown(run)
    alive = await reap(run, 0.5)

    assert alive == [handle]
    assert await handle.wait_exited(10)
    assert handle.state is ProcessState.EXITED
    assert handle.exit_code == -signal.SIGKILL
    assert crashes == []
