import os
import signal
import asyncio

import pytest

from src import main
from tests.helpers import posix_only


class StubManager:
    def __init__(self, address):
        self._address = address
        self.calls = []

    async def start_all(self):
        self.calls.append("start_all")
        return self._address

    def stop_all(self):
        self.calls.append("stop_all")

    async def wait_stopped(self, timeout=None):
        self.calls.append("wait_stopped")


def test_help_returns_zero(capsys):
    assert main.execute_command("help", []) == 0
    assert "check-config" in capsys.readouterr().out


def test_unknown_command_returns_two():
    assert main.execute_command("frobnicate", []) == 2


def test_check_config_failure_returns_one(monkeypatch):
    monkeypatch.setattr(main, "check_configuration", lambda: False)
    assert main.execute_command("check-config", []) == 1


@pytest.mark.asyncio
async def test_serve_returns_one_when_startup_fails():
    manager = StubManager(None)
    assert await main.serve(manager) == 1
    assert manager.calls == ["start_all", "wait_stopped"]


class InterruptedManager(StubManager):
    """Receives SIGTERM while its startup is still running."""

    async def start_all(self):
        self.calls.append("start_all")
        os.kill(os.getpid(), signal.SIGTERM)
        await asyncio.sleep(0.1)
        return None


@posix_only
@pytest.mark.asyncio
async def test_serve_exits_cleanly_when_stopped_during_startup():
    manager = InterruptedManager(None)
    assert await main.serve(manager) == 0
    assert manager.calls == ["start_all", "stop_all", "wait_stopped"]


def test_start_quiet_keeps_process_output_off_console(monkeypatch):
    logging_calls = []

    async def fake_serve(manager, open_browser=False):
        return 0

    monkeypatch.setattr(main, "setup_logging", lambda level, show_process_output=True: logging_calls.append(show_process_output))
    monkeypatch.setattr(main.setproctitle, "setproctitle", lambda title: None)
    monkeypatch.setattr(main, "ProcessManager", lambda: StubManager(None))
    monkeypatch.setattr(main, "serve", fake_serve)

    assert main.execute_command("start", ["--quiet"]) == 0
    assert main.execute_command("start", []) == 0
    assert logging_calls == [False, True]
