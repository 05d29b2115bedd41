import logging
import sys
from pathlib import Path
from typing import Dict


class SubprocessLogFilter(logging.Filter):
    """
    This filter identifies logs coming from the subprocess loggers
    and keeps them out of the console when verbose output is off.
    """
    def filter(self, record):
        # The 'proc.' prefix is used by the process handles in process_utils.py
        return not record.name.startswith('proc.')


class MainFormatter(logging.Formatter):
    """A custom formatter to handle regular logs and raw subprocess logs."""

    def format(self, record):
        # If the log is from a subprocess, prefix it with its role only.
        if record.name.startswith('proc.'):
            return f"[{record.name[len('proc.'):]}] {record.getMessage()}"

        # Otherwise, use the default formatting.
        # Temporarily change the format string for the superclass call.
        original_format = self._style._fmt
        self._style._fmt = '%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s'
        formatted_message = super().format(record)
        self._style._fmt = original_format
        return formatted_message


# role -> file handler, so repeated launches in one process do not stack handlers
_process_log_handlers: Dict[str, logging.FileHandler] = {}


def setup_logging(console_level: int = logging.INFO, show_process_output: bool = True) -> None:
    """
    Configures the root logger for the supervisor.
    This sets up the console handler, clearing any previously configured
    handlers to prevent duplication.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    :param show_process_output: If False, child process lines only go to their log files.
    """
    root_logger = logging.getLogger()
    # Set root level to lowest to capture all messages for handler filtering
    root_logger.setLevel(logging.DEBUG)

    # Clear any existing handlers to prevent re-adding them on re-runs
    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    #* --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter())
    if not show_process_output:
        console_handler.addFilter(SubprocessLogFilter())
    root_logger.addHandler(console_handler)


def attach_process_log(role: str, filename: str, logs_dir: Path) -> bool:
    """
    Appends everything logged under ``proc.<role>`` to ``logs_dir/filename``.

    Creating the log directory is best effort: on failure the error is logged
    and the supervisor carries on without a file sink for that role.

    :return: True if the file sink is attached.
    """
    if role in _process_log_handlers:
        return True

    logs_dir = Path(logs_dir)
    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(logs_dir / filename, mode="a", encoding="utf-8")
    except OSError as e:
        logging.getLogger(__name__).error(f"Failed to create log file for '{role}' in '{logs_dir}': {e}")
        return False

    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter('%(message)s'))
    proc_logger = logging.getLogger(f"proc.{role}")
    proc_logger.setLevel(logging.DEBUG)
    proc_logger.addHandler(handler)
    _process_log_handlers[role] = handler
    return True


def detach_process_logs() -> None:
    """Closes and removes every per-role file sink."""
    for role, handler in list(_process_log_handlers.items()):
        logging.getLogger(f"proc.{role}").removeHandler(handler)
        handler.close()
        del _process_log_handlers[role]
