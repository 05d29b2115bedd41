import asyncio
import logging
from typing import TYPE_CHECKING, List, Optional

import psutil

from .process_utils import ManagedProcess

if TYPE_CHECKING:
    from .startup import PipelineRun

log = logging.getLogger(__name__)


def _terminate_handle(handle: Optional[ManagedProcess]) -> None:
    """Sends SIGTERM to one handle, falling back to a forceful kill if signalling fails."""
    if handle is None:
        return
    try:
        log.debug(f"Sending SIGTERM to {handle.role.value} (PID {handle.pid})")
        handle.terminate()
    except Exception as e:
        log.warning(f"Graceful termination of {handle.role.value} failed ({e!r}); killing instead.")
        try:
            handle.kill()
        except Exception as kill_error:
            log.warning(f"Forceful kill of {handle.role.value} failed: {kill_error!r}")


def shutdown(run: "PipelineRun") -> None:
    """
    Stops both supervised processes. Never raises.

    The shutdown phase is entered before any signal goes out, so the exits
    that follow are not reported as crashes. The application is signalled
    before the database it depends on. Nothing here waits for the exits; see
    ``reap`` for a bounded wait.
    """
    run.begin_shutdown()
    for handle in (run.application, run.database):
        _terminate_handle(handle)


def _kill_process_tree(handle: ManagedProcess) -> None:
    """Kills a stubborn process and any children it forked (e.g. postgres backends)."""
    if handle.pid is None:
        return
    try:
        parent = psutil.Process(handle.pid)
        procs = parent.children(recursive=True) + [parent]
    except psutil.NoSuchProcess:
        log.debug(f"Process {handle.pid} no longer exists, skipping forceful kill.")
        return

    for proc in procs:
        try:
            log.warning(f"Killing stubborn process {proc.name()} (PID {proc.pid}).")
            proc.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.Error as e:
            log.error(f"Could not kill PID {proc.pid}: {e}")


async def reap(run: "PipelineRun", timeout: float) -> List[ManagedProcess]:
    """
    Waits up to ``timeout`` seconds for the signalled processes to exit and
    force-kills whatever is still alive afterwards.

    :return: The handles that had to be killed.
    """
    handles = [h for h in (run.application, run.database) if h is not None and h.is_running]
    if not handles:
        return []

    exited = await asyncio.gather(*(h.wait_exited(timeout) for h in handles))
    alive = [h for h, done in zip(handles, exited) if not done]
    if alive:
        log.warning(f"{len(alive)} processes did not terminate gracefully. Forcing shutdown...")
        for handle in alive:
            _kill_process_tree(handle)
    return alive
