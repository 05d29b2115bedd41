import logging
from typing import Any

from src.local import app_globals
from .process_utils import get_executable_path

log = logging.getLogger(__name__)


def check_configuration(settings: Any = None) -> bool:
    """
    Validates that the bundled binaries and listmonk config exist at their configured paths.

    :param settings: Settings object to check, defaults to app_globals.
    :return: True if all required files are found, otherwise False.
    """
    settings = settings if settings is not None else app_globals
    log.info("Performing configuration and path validation...")
    all_ok = True
    checks = {
        "postgres": get_executable_path(settings.POSTGRES_PATH),
        "initdb": get_executable_path(settings.INITDB_PATH),
        "listmonk": get_executable_path(settings.LISTMONK_PATH),
        "listmonk config": settings.LISTMONK_CONFIG_PATH,
    }

    for name, path in checks.items():
        if not path.exists():
            log.error(f"CONFIG CHECK FAILED: {name} not found at '{path}'")
            all_ok = False
        else:
            log.info(f"Config Check OK: Found {name} at '{path}'")
    return all_ok
