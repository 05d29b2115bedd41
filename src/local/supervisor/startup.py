import logging
from enum import Enum
from pathlib import Path
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple, Union

import src.settings as default_settings
from .errors import PipelineFailed, ProcessCrashed, ProcessExitedBeforeReady, ShutdownInProgress, SupervisorError
from .migrations import install_schema
from .ports import allocate_port, probe_port
from .process_utils import ManagedProcess, Role, get_process_args
from .readiness import build_matchers, port_from_match
from .storage import ensure_ready

log = logging.getLogger(__name__)


class PipelineStage(str, Enum):
    IDLE = "Idle"
    INITIALIZING_STORAGE = "InitializingStorage"
    ALLOCATING_PORT = "AllocatingPort"
    STARTING_DATABASE = "StartingDatabase"
    AWAITING_DATABASE_READY = "AwaitingDatabaseReady"
    RUNNING_MIGRATIONS = "RunningMigrations"
    STARTING_APPLICATION = "StartingApplication"
    AWAITING_APPLICATION_READY = "AwaitingApplicationReady"
    READY = "Ready"
    FAILED = "Failed"


PIPELINE_STAGES: Tuple[PipelineStage, ...] = (
    PipelineStage.IDLE,
    PipelineStage.INITIALIZING_STORAGE,
    PipelineStage.ALLOCATING_PORT,
    PipelineStage.STARTING_DATABASE,
    PipelineStage.AWAITING_DATABASE_READY,
    PipelineStage.RUNNING_MIGRATIONS,
    PipelineStage.STARTING_APPLICATION,
    PipelineStage.AWAITING_APPLICATION_READY,
    PipelineStage.READY,
)


@dataclass(frozen=True)
class PipelineReady:
    address: str

    @property
    def url(self) -> str:
        return f"http://{self.address}"


@dataclass(frozen=True)
class PipelineFailure:
    stage: PipelineStage
    error: BaseException


@dataclass(frozen=True)
class PipelineOptions:
    """The settings one pipeline run needs, frozen at launch."""
    data_dir: Path
    postgres_path: Path
    initdb_path: Path
    listmonk_path: Path
    listmonk_config_path: Path
    marker_name: str = default_settings.INIT_MARKER_NAME
    lock_name: str = default_settings.LOCK_ARTIFACT_NAME
    db_host: str = default_settings.DB_HOST
    db_name: str = default_settings.DB_NAME
    db_user: str = default_settings.DB_USER
    db_password: str = default_settings.DB_PASSWORD
    pg_start_port: int = default_settings.PG_START_PORT
    pg_port_max_attempts: int = default_settings.PG_PORT_MAX_ATTEMPTS
    env_prefix: str = default_settings.LISTMONK_ENV_PREFIX
    app_host: str = default_settings.APP_HOST
    app_bind_address: str = default_settings.APP_BIND_ADDRESS
    app_default_port: int = default_settings.APP_DEFAULT_PORT
    app_address_fallback_enabled: bool = default_settings.APP_ADDRESS_FALLBACK_ENABLED
    database_ready_patterns: Tuple[str, ...] = tuple(default_settings.DATABASE_READY_PATTERNS)
    application_ready_patterns: Tuple[str, ...] = tuple(default_settings.APPLICATION_READY_PATTERNS)
    database_ready_timeout: float = default_settings.DATABASE_READY_TIMEOUT
    application_ready_timeout: float = default_settings.APPLICATION_READY_TIMEOUT

    @classmethod
    def from_settings(cls, settings: Any) -> "PipelineOptions":
        """Builds options from a settings object such as app_globals."""
        return cls(
            data_dir=Path(settings.DATA_DIR),
            postgres_path=Path(settings.POSTGRES_PATH),
            initdb_path=Path(settings.INITDB_PATH),
            listmonk_path=Path(settings.LISTMONK_PATH),
            listmonk_config_path=Path(settings.LISTMONK_CONFIG_PATH),
            marker_name=settings.INIT_MARKER_NAME,
            lock_name=settings.LOCK_ARTIFACT_NAME,
            db_host=settings.DB_HOST,
            db_name=settings.DB_NAME,
            db_user=settings.DB_USER,
            db_password=settings.DB_PASSWORD,
            pg_start_port=int(settings.PG_START_PORT),
            pg_port_max_attempts=int(settings.PG_PORT_MAX_ATTEMPTS),
            env_prefix=settings.LISTMONK_ENV_PREFIX,
            app_host=settings.APP_HOST,
            app_bind_address=settings.APP_BIND_ADDRESS,
            app_default_port=int(settings.APP_DEFAULT_PORT),
            app_address_fallback_enabled=bool(settings.APP_ADDRESS_FALLBACK_ENABLED),
            database_ready_patterns=tuple(settings.DATABASE_READY_PATTERNS),
            application_ready_patterns=tuple(settings.APPLICATION_READY_PATTERNS),
            database_ready_timeout=float(settings.DATABASE_READY_TIMEOUT),
            application_ready_timeout=float(settings.APPLICATION_READY_TIMEOUT),
        )


@dataclass
class PipelineRun:
    """
    State of the one startup attempt made per launch.

    Owns both process handles and the shutdown-phase flag that their exit
    handlers consult.
    """
    stages: List[PipelineStage] = field(default_factory=lambda: list(PIPELINE_STAGES))
    stage_index: int = 0
    outcome: Optional[Union[PipelineReady, PipelineFailure]] = None
    database: Optional[ManagedProcess] = None
    application: Optional[ManagedProcess] = None
    database_port: Optional[int] = None
    shutting_down: bool = False

    @property
    def stage(self) -> PipelineStage:
        if isinstance(self.outcome, PipelineFailure):
            return PipelineStage.FAILED
        return self.stages[self.stage_index]

    @property
    def address(self) -> Optional[str]:
        return self.outcome.address if isinstance(self.outcome, PipelineReady) else None

    def is_shutting_down(self) -> bool:
        return self.shutting_down

    def begin_shutdown(self) -> None:
        self.shutting_down = True

    def advance(self, stage: PipelineStage) -> None:
        """Moves to the next stage. Stages may only be entered in order."""
        if self.outcome is not None:
            raise RuntimeError(f"Pipeline already finished in stage {self.stage.value}")
        if self.shutting_down:
            raise ShutdownInProgress(f"Shutdown requested before stage {stage.value}")
        expected = self.stages[self.stage_index + 1]
        if stage is not expected:
            raise RuntimeError(f"Expected stage {expected.value}, got {stage.value}")
        self.stage_index += 1
        log.info(f"[startup] {stage.value}")

    def fail(self, error: BaseException) -> PipelineFailure:
        """Records the failing stage and error as the terminal outcome."""
        failure = PipelineFailure(stage=self.stages[self.stage_index], error=error)
        self.outcome = failure
        return failure


class StartupPipeline:
    """
    Runs storage init, port allocation, database start, migrations and
    application start strictly in sequence.

    Any stage error aborts the rest and is re-raised once as PipelineFailed.
    There are no automatic retries.
    """

    def __init__(
        self,
        options: PipelineOptions,
        run: Optional[PipelineRun] = None,
        on_crash: Optional[Callable[[ProcessCrashed], None]] = None,
        probe: Callable[[int], bool] = probe_port,
    ) -> None:
        self.options = options
        self.run = run or PipelineRun()
        self._on_crash = on_crash
        self._probe = probe

    async def execute(self) -> str:
        """
        Runs every stage and returns the application's ``host:port`` address.

        :raises PipelineFailed: Naming the stage that failed and the underlying error.
        """
        opts, run = self.options, self.run
        try:
            run.advance(PipelineStage.INITIALIZING_STORAGE)
            await ensure_ready(
                opts.data_dir, get_process_args("initdb", opts),
                marker_name=opts.marker_name, lock_name=opts.lock_name,
            )

            run.advance(PipelineStage.ALLOCATING_PORT)
            lease = await allocate_port(opts.pg_start_port, opts.pg_port_max_attempts, self._probe)
            run.database_port = lease.port

            run.advance(PipelineStage.STARTING_DATABASE)
            database = ManagedProcess(
                Role.DATABASE,
                get_process_args("postgres", opts, lease.port),
                build_matchers(opts.database_ready_patterns),
                is_shutting_down=run.is_shutting_down,
                on_crash=self._on_crash,
                stderr_level=logging.INFO,  # postgres logs its normal chatter to stderr
            )
            run.database = database
            await database.spawn()

            run.advance(PipelineStage.AWAITING_DATABASE_READY)
            await database.wait_ready(opts.database_ready_timeout)
            log.info(f"Postgres started on port {lease.port}")

            run.advance(PipelineStage.RUNNING_MIGRATIONS)
            await install_schema(get_process_args("listmonk_install", opts, lease.port))

            run.advance(PipelineStage.STARTING_APPLICATION)
            application = ManagedProcess(
                Role.APPLICATION,
                get_process_args("listmonk", opts, lease.port),
                build_matchers(opts.application_ready_patterns, port_from_match),
                is_shutting_down=run.is_shutting_down,
                on_crash=self._on_crash,
            )
            run.application = application
            await application.spawn()

            run.advance(PipelineStage.AWAITING_APPLICATION_READY)
            address = await self._await_application_address(application)

            run.advance(PipelineStage.READY)
        except SupervisorError as e:
            failure = run.fail(e)
            log.error(f"[startup] Failed at {failure.stage.value}: {e}")
            raise PipelineFailed(failure.stage, e) from e

        run.outcome = PipelineReady(address)
        log.info(f"listmonk is up at {address}")
        return address

    async def _await_application_address(self, application: ManagedProcess) -> str:
        opts = self.options
        try:
            port = await application.wait_ready(opts.application_ready_timeout)
        except ProcessExitedBeforeReady as e:
            if not opts.app_address_fallback_enabled:
                raise
            # Last resort: nothing guarantees anything is listening there.
            port = opts.app_default_port
            log.warning(
                f"listmonk exited without reporting its port; falling back to "
                f"{opts.app_host}:{port}. The address may not be reachable."
            )
            # The pipeline still reports Ready, so the exit has to surface as a crash.
            if e.exit_code != 0 and not self.run.is_shutting_down():
                crash = ProcessCrashed(e.role, e.exit_code)
                log.error(str(crash))
                if self._on_crash is not None:
                    self._on_crash(crash)
        return f"{opts.app_host}:{port}"
