"""
Error taxonomy for the startup/shutdown orchestration engine.

Every pipeline stage raises one of these. The pipeline wraps whatever a stage
raised in a PipelineFailed that records the failing stage.
"""
from typing import Any, Optional


class SupervisorError(Exception):
    """Base class for all supervisor errors."""


class PortExhausted(SupervisorError):
    def __init__(self, start_port: int, max_attempts: int) -> None:
        self.start_port = start_port
        self.max_attempts = max_attempts
        super().__init__(
            f"No free port found in [{start_port}, {start_port + max_attempts}) "
            f"after {max_attempts} attempts"
        )


class InitializationError(SupervisorError):
    """The one-time database bootstrap did not complete successfully."""

    def __init__(self, message: str, exit_code: Optional[int] = None, output: str = "") -> None:
        self.exit_code = exit_code
        self.output = output
        super().__init__(message)


class SpawnFailed(SupervisorError):
    """The OS refused to start a child process (missing binary, permissions, ...)."""

    def __init__(self, command: str, cause: BaseException) -> None:
        self.command = command
        self.cause = cause
        super().__init__(f"Failed to spawn '{command}': {cause}")


class ProcessExitedBeforeReady(SupervisorError):
    def __init__(self, role: str, exit_code: Optional[int]) -> None:
        self.role = role
        self.exit_code = exit_code
        super().__init__(f"{role} process exited with code {exit_code} before becoming ready")


class ReadinessTimeout(SupervisorError):
    def __init__(self, role: str, timeout: float) -> None:
        self.role = role
        self.timeout = timeout
        super().__init__(f"{role} process did not become ready within {timeout} seconds")


class MigrationError(SupervisorError):
    """The schema install/upgrade run failed. Carries whatever the binary printed."""

    def __init__(self, message: str, exit_code: Optional[int] = None, output: str = "") -> None:
        self.exit_code = exit_code
        self.output = output
        super().__init__(message)


class ProcessCrashed(SupervisorError):
    """A supervised process exited unexpectedly after it had become ready."""

    def __init__(self, role: str, exit_code: Optional[int]) -> None:
        self.role = role
        self.exit_code = exit_code
        super().__init__(f"{role} process crashed unexpectedly (exit code {exit_code})")


class ProcessStateError(SupervisorError):
    """An illegal lifecycle transition was requested on a process handle."""


class ShutdownInProgress(SupervisorError):
    """The startup pipeline was asked to continue after shutdown began."""


class PipelineFailed(SupervisorError):
    """Raised once by the startup pipeline when any stage fails."""

    def __init__(self, stage: Any, error: BaseException) -> None:
        self.stage = stage
        self.error = error
        super().__init__(f"Startup failed at stage '{stage.value}': {error}")
