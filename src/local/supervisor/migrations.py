import logging

from .errors import MigrationError, SpawnFailed
from .process_utils import ProcessSpec, Role, run_to_completion

log = logging.getLogger(__name__)


async def install_schema(spec: ProcessSpec) -> str:
    """
    Runs listmonk once in its idempotent install/upgrade mode.

    The database address and credentials reach the binary through
    ``spec.env`` only. The pipeline awaits this call, so the application
    server is never started before it returns.

    :param spec: The 'listmonk_install' process definition.
    :return: The captured output of the install run.
    :raises MigrationError: On a nonzero exit or if the binary cannot be spawned.
    """
    log.info("Installing (migrating) listmonk schema...")
    try:
        exit_code, output = await run_to_completion(spec, Role.APPLICATION)
    except SpawnFailed as e:
        raise MigrationError(f"Could not run schema install: {e.cause}", output=str(e.cause)) from e

    if exit_code != 0:
        log.error(f"listmonk install exited with code {exit_code}:\n{output}")
        raise MigrationError(
            f"Schema install exited with code {exit_code}", exit_code=exit_code, output=output
        )
    log.info("listmonk DB schema installed.")
    return output
