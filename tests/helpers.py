"""Fake binaries and fake processes shared by the test modules."""
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import pytest


posix_only = pytest.mark.skipif(sys.platform == "win32", reason="fake binaries are shebang scripts")


FAKE_INITDB = r'''
import os
import sys

here = os.path.dirname(os.path.abspath(__file__))
with open(os.path.join(here, "initdb_calls.log"), "a") as f:
    f.write(" ".join(sys.argv[1:]) + "\n")
print("The files belonging to this database system will be owned by user \"postgres\".", flush=True)
code = int(os.environ.get("FAKE_INITDB_EXIT", "0"))
if code:
    print("initdb: error: directory exists but is not empty", file=sys.stderr, flush=True)
sys.exit(code)
'''

FAKE_POSTGRES = r'''
import os
import signal
import sys
import time

args = sys.argv[1:]
data_dir = args[args.index("-D") + 1]
port = args[args.index("-p") + 1]
pid_file = os.path.join(data_dir, "postmaster.pid")
with open(pid_file, "w") as f:
    f.write(f"{os.getpid()}\n{data_dir}\n0\n{port}\n")


def stop(signum, frame):
    try:
        os.remove(pid_file)
    except OSError:
        pass
    sys.exit(0)


signal.signal(signal.SIGTERM, stop)
print("LOG:  database system was shut down at 2024-01-01 00:00:00 UTC", file=sys.stderr, flush=True)
if os.environ.get("FAKE_POSTGRES_SILENT") != "1":
    print("LOG:  database system is ready to accept connections", file=sys.stderr, flush=True)
    print("LOG:  database system is ready to accept connections", file=sys.stderr, flush=True)
while True:
    time.sleep(0.05)
'''

FAKE_LISTMONK = r'''
import json
import os
import signal
import sys
import time

here = os.path.dirname(os.path.abspath(__file__))
if "--install" in sys.argv:
    with open(os.path.join(here, "install_env.json"), "w") as f:
        json.dump({k: v for k, v in os.environ.items() if k.startswith("LISTMONK_")}, f)
    with open(os.path.join(here, "install_args.json"), "w") as f:
        json.dump(sys.argv[1:], f)
    code = int(os.environ.get("FAKE_LISTMONK_INSTALL_EXIT", "0"))
    if code:
        print("error: could not connect to database", flush=True)
    else:
        print("upgrading schema: nothing to do", flush=True)
    sys.exit(code)

signal.signal(signal.SIGTERM, lambda signum, frame: sys.exit(0))
mode = os.environ.get("FAKE_LISTMONK_MODE", "ready")
if mode == "exit":
    print("error loading config", file=sys.stderr, flush=True)
    sys.exit(1)
print("reading config: config.toml", flush=True)
if mode == "ready":
    port = os.environ.get("FAKE_LISTMONK_PORT", "8042")
    print(f"Web server listening on http://127.0.0.1:{port}", flush=True)
    print("http server started on 127.0.0.1:1", flush=True)
while True:
    time.sleep(0.05)
'''


def write_script(path: Path, body: str) -> Path:
    """Writes an executable Python script that runs under the test interpreter."""
    path.write_text(f"#!{sys.executable}\n{body}")
    path.chmod(0o755)
    return path


def initdb_calls(bin_dir: Path) -> List[str]:
    log_file = bin_dir / "initdb_calls.log"
    return log_file.read_text().splitlines() if log_file.exists() else []


class FakeProcess:
    """Stands in for asyncio.subprocess.Process, fed by hand."""

    def __init__(self, pid: Optional[int] = None) -> None:
        self.pid = pid
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode: Optional[int] = None
        self.signals: List[str] = []
        self._exit = asyncio.get_running_loop().create_future()

    def emit(self, text: str, stream: str = "stdout") -> None:
        getattr(self, stream).feed_data(text.encode())

    def exit(self, code: int) -> None:
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self.returncode = code
        if not self._exit.done():
            self._exit.set_result(code)

    async def wait(self) -> int:
        return await self._exit

    def terminate(self) -> None:
        self.signals.append("SIGTERM")

    def kill(self) -> None:
        self.signals.append("SIGKILL")


async def settle(rounds: int = 10) -> None:
    """Lets pending pump tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
