import os
import sys
import asyncio
import logging
import subprocess
from enum import Enum
from pathlib import Path
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Tuple

from .errors import ProcessCrashed, ProcessExitedBeforeReady, ProcessStateError, ReadinessTimeout, SpawnFailed
from .readiness import LineBuffer, ReadinessDetector, ReadinessMatcher

if TYPE_CHECKING:
    from .startup import PipelineOptions

log = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096


class Role(str, Enum):
    DATABASE = "database"
    APPLICATION = "application"


class ProcessState(str, Enum):
    NOT_STARTED = "NotStarted"
    STARTING = "Starting"
    READY = "Ready"
    EXITED = "Exited"


_ALLOWED_TRANSITIONS = {
    ProcessState.NOT_STARTED: {ProcessState.STARTING},
    ProcessState.STARTING: {ProcessState.READY, ProcessState.EXITED},
    ProcessState.READY: {ProcessState.EXITED},
    ProcessState.EXITED: set(),
}


@dataclass
class ProcessSpec:
    """Command, arguments and environment for one child process."""
    command: str
    args: List[str] = field(default_factory=list)
    env: Optional[Dict[str, str]] = None


#* --- Process Creation ---
def get_executable_path(base_path: Path) -> Path:
    """Returns the platform-specific full path for an executable."""
    return base_path.with_suffix(".exe") if sys.platform == "win32" else base_path


def _get_popen_creation_flags() -> Dict[str, Any]:
    """Returns platform-specific keyword arguments for spawning a child."""
    if sys.platform == "win32":
        return {"creationflags": subprocess.DETACHED_PROCESS | subprocess.CREATE_NO_WINDOW}
    # Own session, so a Ctrl+C in the host terminal does not reach the children.
    return {"start_new_session": True}


def build_application_env(options: "PipelineOptions", db_port: int) -> Dict[str, str]:
    """
    Builds the environment for listmonk, layered over the host environment.

    Database address and credentials travel through the environment only and
    are never written to disk.
    """
    prefix = options.env_prefix
    env = dict(os.environ)
    env.update({
        f"{prefix}db__host": options.db_host,
        f"{prefix}db__port": str(db_port),
        f"{prefix}db__database": options.db_name,
        f"{prefix}db__user": options.db_user,
        f"{prefix}db__password": options.db_password,
        f"{prefix}app__address": options.app_bind_address,
    })
    return env


def get_process_args(process_name: str, options: "PipelineOptions", db_port: Optional[int] = None) -> ProcessSpec:
    """
    Returns the command, arguments and environment for a specific process.

    :param process_name: One of 'initdb', 'postgres', 'listmonk_install', 'listmonk'.
    :param options: The frozen settings for the current run.
    :param db_port: The allocated database port (required for postgres and listmonk).
    :raises ValueError: If the process name is unknown.
    """
    data_dir = str(options.data_dir)
    postgres = str(get_executable_path(options.postgres_path))
    initdb = str(get_executable_path(options.initdb_path))
    listmonk = str(get_executable_path(options.listmonk_path))
    config_path = str(options.listmonk_config_path)

    if process_name == "initdb":
        return ProcessSpec(initdb, [
            "-D", data_dir,
            f"--username={options.db_user}",
            "--auth=trust",
            "--auth-local=trust",
        ])
    if process_name == "postgres":
        return ProcessSpec(postgres, ["-D", data_dir, "-p", str(db_port)])
    if process_name == "listmonk_install":
        return ProcessSpec(
            listmonk,
            ["--config", config_path, "--install", "--idempotent", "--yes"],
            build_application_env(options, db_port),
        )
    if process_name == "listmonk":
        return ProcessSpec(listmonk, ["--config", config_path], build_application_env(options, db_port))

    raise ValueError(f"Unknown process name '{process_name}'. No arguments defined.")


async def create_process(spec: ProcessSpec, stderr: int = asyncio.subprocess.PIPE) -> asyncio.subprocess.Process:
    """
    Spawns a child process with piped output.

    :raises SpawnFailed: If the OS could not start the binary.
    """
    try:
        return await asyncio.create_subprocess_exec(
            spec.command, *spec.args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=stderr,
            env=spec.env,
            **_get_popen_creation_flags(),
        )
    except (OSError, ValueError) as e:
        raise SpawnFailed(spec.command, e) from e


async def run_to_completion(spec: ProcessSpec, role: Role) -> Tuple[int, str]:
    """
    Runs a one-shot command, awaiting its exit without blocking the loop.

    stdout and stderr are merged, written line by line to the role's log sink
    and returned for diagnostics.

    :return: A tuple of (exit code, combined output).
    :raises SpawnFailed: If the OS could not start the binary.
    """
    proc_logger = logging.getLogger(f"proc.{Role(role).value}")
    process = await create_process(spec, stderr=asyncio.subprocess.STDOUT)
    raw_output, _ = await process.communicate()
    output = raw_output.decode("utf-8", errors="replace") if raw_output else ""
    for line in output.splitlines():
        if line.strip():
            proc_logger.info(line)
    return process.returncode, output


#* --- Process Handle ---
class ManagedProcess:
    """
    Handle for one supervised child process.

    Lifecycle is an explicit state machine (NotStarted -> Starting -> Ready ->
    Exited) that only changes through ``_transition``. Output lines and the
    exit event drive it. Both can be fed directly, without spawning anything,
    through ``feed_output`` and ``handle_exit``.
    """

    def __init__(
        self,
        role: Role,
        spec: ProcessSpec,
        matchers: Iterable[ReadinessMatcher],
        is_shutting_down: Callable[[], bool] = lambda: False,
        on_crash: Optional[Callable[[ProcessCrashed], None]] = None,
        stderr_level: int = logging.ERROR,
    ) -> None:
        self.role = Role(role)
        self.command = spec.command
        self.args = list(spec.args)
        self.env = spec.env
        self.state = ProcessState.NOT_STARTED
        self.exit_code: Optional[int] = None
        self.payload: Any = None
        self.pid: Optional[int] = None

        self.detector = ReadinessDetector(matchers)
        self._is_shutting_down = is_shutting_down
        self._on_crash = on_crash
        self._stderr_level = stderr_level
        self._process = None
        self._watcher: Optional[asyncio.Task] = None
        self._exited = asyncio.Event()
        self._proc_log = logging.getLogger(f"proc.{self.role.value}")

    def __repr__(self) -> str:
        return f"<ManagedProcess {self.role.value} pid={self.pid} state={self.state.value}>"

    @property
    def is_running(self) -> bool:
        return self.state in (ProcessState.STARTING, ProcessState.READY)

    def _transition(self, new_state: ProcessState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise ProcessStateError(
                f"{self.role.value}: illegal transition {self.state.value} -> {new_state.value}"
            )
        log.debug(f"{self.role.value}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    async def spawn(self) -> None:
        """
        Starts the child and begins consuming its output.

        :raises SpawnFailed: If the OS refused to start the binary. The handle stays NotStarted.
        """
        if self.state is not ProcessState.NOT_STARTED:
            raise ProcessStateError(f"{self.role.value} has already been started")
        log.info(f"Starting {self.role.value} process: {self.command} {' '.join(self.args)}")
        process = await create_process(ProcessSpec(self.command, self.args, self.env))
        self.attach(process)
        log.info(f"{self.role.value.capitalize()} started with PID: {self.pid}")
        # A shutdown that arrived while the spawn was in flight could not signal this child.
        if self._is_shutting_down():
            log.info(f"Shutdown began while {self.role.value} was starting; terminating it.")
            self.terminate()

    def attach(self, process: Any) -> None:
        """
        Binds an already running process object to this handle.

        ``process`` needs ``pid``, ``stdout``/``stderr`` stream readers and an
        awaitable ``wait()``, as asyncio.subprocess.Process provides.
        """
        self._transition(ProcessState.STARTING)
        self._process = process
        self.pid = getattr(process, "pid", None)
        self._watcher = asyncio.ensure_future(self._watch())

    async def _pump(self, stream: Optional[asyncio.StreamReader], level: int) -> None:
        """Reads one pipe to EOF, feeding every complete line to the handle."""
        if stream is None:
            return
        buffer = LineBuffer()
        try:
            while True:
                chunk = await stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                for line in buffer.feed(chunk):
                    self.feed_output(line, level)
        except (ConnectionResetError, BrokenPipeError) as e:
            self._proc_log.debug(f"Pipe reader for {self.role.value} stream exited: {e}")
        for line in buffer.flush():
            self.feed_output(line, level)

    async def _watch(self) -> None:
        # Drain both pipes before reporting the exit so output always precedes it.
        await asyncio.gather(
            self._pump(self._process.stdout, logging.INFO),
            self._pump(self._process.stderr, self._stderr_level),
        )
        exit_code = await self._process.wait()
        self.handle_exit(exit_code)

    def feed_output(self, line: str, level: int = logging.INFO) -> None:
        """Logs one output line to the role's sink and checks it for readiness."""
        if not line.strip():
            return
        self._proc_log.log(level, line)
        if self.state is ProcessState.STARTING and self.detector.scan(line):
            self.payload = self.detector.payload
            self._transition(ProcessState.READY)
            log.info(f"{self.role.value.capitalize()} is ready (payload: {self.payload!r}).")

    def handle_exit(self, exit_code: Optional[int]) -> None:
        """
        Records the exit and decides how to report it.

        Before readiness the pending readiness future is rejected. After
        readiness a nonzero exit is reported as a crash, unless the run is
        shutting down.
        """
        if self.state is ProcessState.EXITED:
            return
        was_ready = self.state is ProcessState.READY
        self._transition(ProcessState.EXITED)
        self.exit_code = exit_code
        self._exited.set()

        if not was_ready:
            self.detector.fail(ProcessExitedBeforeReady(self.role.value, exit_code))
            log.warning(f"{self.role.value} exited with code {exit_code} before becoming ready.")
        elif self._is_shutting_down():
            log.info(f"{self.role.value} exited with code {exit_code} during shutdown.")
        elif exit_code != 0:
            crash = ProcessCrashed(self.role.value, exit_code)
            log.error(str(crash))
            if self._on_crash is not None:
                self._on_crash(crash)
        else:
            log.info(f"{self.role.value} exited cleanly.")

    async def wait_ready(self, timeout: Optional[float] = None) -> Any:
        """
        Waits until a readiness line is seen and returns its payload.

        :param timeout: Seconds to wait. None, 0 or negative waits forever.
        :raises ProcessExitedBeforeReady: If the process exits first.
        :raises ReadinessTimeout: If the timeout elapses first.
        """
        if self.state is ProcessState.NOT_STARTED:
            raise ProcessStateError(f"{self.role.value} has not been started")
        bound = timeout if timeout and timeout > 0 else None
        try:
            return await self.detector.wait(bound)
        except asyncio.TimeoutError:
            raise ReadinessTimeout(self.role.value, bound) from None

    async def wait_exited(self, timeout: Optional[float] = None) -> bool:
        """Waits for the exit event. Returns False if the timeout elapsed first."""
        try:
            await asyncio.wait_for(self._exited.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def terminate(self) -> None:
        """Sends the graceful termination signal (SIGTERM on POSIX)."""
        if self._process is None:
            raise ProcessLookupError(f"{self.role.value} was never spawned")
        self._process.terminate()

    def kill(self) -> None:
        """Forcefully terminates the process (SIGKILL on POSIX)."""
        if self._process is None:
            raise ProcessLookupError(f"{self.role.value} was never spawned")
        self._process.kill()
