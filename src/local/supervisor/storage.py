import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Optional

import psutil

from .errors import InitializationError, SpawnFailed
from .process_utils import ProcessSpec, Role, run_to_completion

log = logging.getLogger(__name__)

DEFAULT_MARKER_NAME = "initialized.txt"
DEFAULT_LOCK_NAME = "postmaster.pid"


@dataclass(frozen=True)
class StorageState:
    """Snapshot of the on-disk data directory."""
    data_dir_exists: bool
    initialized: bool
    lock_artifact_present: bool


def inspect_storage(
    data_dir: Path,
    marker_name: str = DEFAULT_MARKER_NAME,
    lock_name: str = DEFAULT_LOCK_NAME,
) -> StorageState:
    data_dir = Path(data_dir)
    return StorageState(
        data_dir_exists=data_dir.is_dir(),
        initialized=(data_dir / marker_name).exists(),
        lock_artifact_present=(data_dir / lock_name).exists(),
    )


def _read_lock_pid(lock_path: Path) -> Optional[int]:
    """The first line of postmaster.pid holds the PID of the postmaster that wrote it."""
    try:
        first_line = lock_path.read_text(errors="replace").splitlines()[0]
        return int(first_line.strip())
    except (OSError, IndexError, ValueError):
        return None


def remove_stale_lock(data_dir: Path, lock_name: str = DEFAULT_LOCK_NAME) -> bool:
    """
    Deletes a lock artifact left behind by an unclean database exit.

    Best effort: a failure is logged and never raised.

    :return: True if an artifact was found and removed.
    """
    lock_path = Path(data_dir) / lock_name
    if not lock_path.exists():
        return False

    log.info(f"Found leftover {lock_name}; removing it.")
    pid = _read_lock_pid(lock_path)
    if pid is not None and psutil.pid_exists(pid):
        log.warning(
            f"{lock_name} names PID {pid}, which is still alive. "
            "Removing it anyway; the database may refuse to start if that process is a postmaster."
        )
    try:
        lock_path.unlink()
        return True
    except OSError as e:
        log.warning(f"Could not remove leftover lock file '{lock_path}': {e}")
        return False


async def ensure_ready(
    data_dir: Path,
    bootstrap: ProcessSpec,
    marker_name: str = DEFAULT_MARKER_NAME,
    lock_name: str = DEFAULT_LOCK_NAME,
) -> bool:
    """
    Prepares the database data directory. Every step is idempotent.

    1. Creates ``data_dir`` if missing.
    2. Removes a stale lock artifact (best effort).
    3. Runs the bootstrap command if the initialized marker is absent, and
       writes the marker only when it exits with code 0.

    :param data_dir: The database data directory.
    :param bootstrap: The one-time initialization command (initdb).
    :return: True if the bootstrap ran during this call.
    :raises InitializationError: If the directory cannot be created or the bootstrap fails.
    """
    data_dir = Path(data_dir)
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise InitializationError(f"Could not create data directory '{data_dir}': {e}") from e

    remove_stale_lock(data_dir, lock_name)

    marker = data_dir / marker_name
    if marker.exists():
        log.info(f"Data directory '{data_dir}' already initialized.")
        return False

    log.info("Running initdb...")
    try:
        exit_code, output = await run_to_completion(bootstrap, Role.DATABASE)
    except SpawnFailed as e:
        raise InitializationError(f"Could not run bootstrap command: {e}") from e

    if exit_code != 0:
        raise InitializationError(f"initdb exited with code {exit_code}", exit_code=exit_code, output=output)

    try:
        marker.touch()
    except OSError as e:
        raise InitializationError(f"Could not write initialization marker '{marker}': {e}") from e
    log.info(f"Data directory '{data_dir}' initialized.")
    return True
