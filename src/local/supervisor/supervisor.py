import time
import logging
from typing import Any, Callable, List, Optional

from src.local import app_globals
from src.log.setup import attach_process_log
from src.local.supervisor import shutdown
from .errors import PipelineFailed, ProcessCrashed
from .ports import probe_port
from .process_utils import Role
from .startup import PipelineOptions, PipelineRun, StartupPipeline

log = logging.getLogger(__name__)


def _log_crash(crash: ProcessCrashed) -> None:
    if crash.role == Role.DATABASE.value:
        log.critical(f"Postgres Error: Postgres crashed unexpectedly (exit code {crash.exit_code}).")
    else:
        log.critical(f"Listmonk Stopped: Listmonk crashed unexpectedly (exit code {crash.exit_code}).")


def _log_fatal(error: BaseException) -> None:
    log.critical(f"Startup Error: {error}")


class ProcessManager:
    """
    Manages the lifecycle of the PostgreSQL and listmonk subprocesses.

    Owns the single PipelineRun of this launch. Crash and fatal-startup
    notifications are delivered through injectable callbacks; by default they
    are logged at CRITICAL. A presentation layer can swap them for dialogs.
    """

    def __init__(
        self,
        settings: Any = None,
        on_crash: Optional[Callable[[ProcessCrashed], None]] = None,
        on_fatal: Optional[Callable[[BaseException], None]] = None,
        probe: Callable[[int], bool] = probe_port,
    ) -> None:
        """Initializes the ProcessManager state."""
        self.config = settings if settings is not None else app_globals
        self.options = PipelineOptions.from_settings(self.config)
        self.run: Optional[PipelineRun] = None
        self.crashes: List[ProcessCrashed] = []
        self.start_time: Optional[float] = None
        self._on_crash = on_crash or _log_crash
        self._on_fatal = on_fatal or _log_fatal
        self._probe = probe

    @property
    def address(self) -> Optional[str]:
        return self.run.address if self.run else None

    def _handle_crash(self, crash: ProcessCrashed) -> None:
        self.crashes.append(crash)
        self._on_crash(crash)

    def _attach_log_sinks(self) -> None:
        logs_dir = self.config.LOGS_DIR
        attach_process_log(Role.DATABASE.value, self.config.POSTGRES_LOG_FILE, logs_dir)
        attach_process_log(Role.APPLICATION.value, self.config.LISTMONK_LOG_FILE, logs_dir)

    async def start_all(self) -> Optional[str]:
        """
        Runs the startup pipeline once.

        On failure the error is surfaced once through ``on_fatal`` and whatever
        was already started is shut down. A failure caused by a shutdown
        request is not reported.

        :return: The application's ``host:port`` address, or None if startup failed.
        """
        if self.run is not None:
            log.error("This launch already has a pipeline run; relaunch to retry.")
            return None

        self._attach_log_sinks()
        log.info("=" * 20 + " Application Starting " + "=" * 20)
        log.debug(f"Pipeline options: {self.options}")
        self.run = PipelineRun()
        self.start_time = time.time()

        pipeline = StartupPipeline(self.options, self.run, on_crash=self._handle_crash, probe=self._probe)
        try:
            address = await pipeline.execute()
        except PipelineFailed as e:
            if self.run.shutting_down:
                log.info(f"Startup aborted by shutdown request: {e}")
                return None
            log.critical(f"Startup failed: {e}")
            self._on_fatal(e)
            self.stop_all()
            return None
        except Exception as e:
            log.critical(f"Startup failed due to an unexpected error: {e}", exc_info=True)
            if self.run.outcome is None:
                self.run.fail(e)
            self._on_fatal(e)
            self.stop_all()
            return None

        log.info(f"All application processes started successfully in {time.time() - self.start_time:.2f} seconds.")
        return address

    def stop_all(self) -> None:
        """Signals both processes to stop. Safe to call more than once."""
        if self.run is None:
            log.info("No running application processes found to stop.")
            return
        if self.run.shutting_down:
            log.debug("Shutdown already in progress.")
            return

        log.info("Initiating graceful shutdown...")
        shutdown.shutdown(self.run)
        if self.start_time:
            log.info(f"Application stop sequence started. Total app runtime: {time.strftime('%H:%M:%S', time.gmtime(time.time() - self.start_time))}")

    async def wait_stopped(self, timeout: Optional[float] = None) -> None:
        """Bounded wait for the signalled processes, force-killing stragglers."""
        if self.run is None:
            return
        if timeout is None:
            timeout = self.config.GRACEFUL_SHUTDOWN_TIMEOUT
        killed = await shutdown.reap(self.run, timeout)
        if killed:
            log.warning(f"Force-killed: {', '.join(h.role.value for h in killed)}")
        log.info("Application stop sequence completed.")
