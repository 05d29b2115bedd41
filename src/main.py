import sys
import signal
import asyncio
import logging
import webbrowser
from typing import List

import setproctitle

# Basic console logger for messages BEFORE full setup is complete.
# This logger will be replaced by the full setup later.
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)-8s - [console] - %(message)s',
    stream=sys.stdout
)
log = logging.getLogger("console")

from src.local import app_globals
from src.log.setup import setup_logging
from src.local.supervisor import ProcessManager
from src.local.supervisor.config_utils import check_configuration

USAGE = """
Usage: lmdesk <command> [options]

Commands:
  start [--verbose] [--quiet] [--open]
                               Start Postgres and listmonk and keep them running until Ctrl+C / SIGTERM.
                               --quiet keeps child process output out of the console (log files only).
  check-config                 Verify that the bundled binaries and config are present.
  help                         Show this message.
"""


async def serve(manager: ProcessManager, open_browser: bool = False) -> int:
    """
    Runs the startup pipeline and keeps the services up until a termination signal.

    :return: The process exit status.
    """
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_stop() -> None:
        log.info("Termination signal received.")
        stop_event.set()
        manager.stop_all()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_stop)
        except (NotImplementedError, RuntimeError):
            # Not supported by the Windows event loop
            pass

    address = await manager.start_all()
    if address is None:
        await manager.wait_stopped()
        return 0 if stop_event.is_set() else 1

    url = f"http://{address}"
    print(f"listmonk is running at {url}")
    if open_browser:
        webbrowser.open(url)

    try:
        await stop_event.wait()
    finally:
        manager.stop_all()
        await manager.wait_stopped()
    return 0


def start(args: List[str]) -> int:
    verbose = "--verbose" in args or app_globals.VERBOSE_LOGGING
    setup_logging(logging.DEBUG if verbose else logging.INFO, show_process_output="--quiet" not in args)
    setproctitle.setproctitle(app_globals.PROCESS_TITLE)

    manager = ProcessManager()
    try:
        return asyncio.run(serve(manager, open_browser="--open" in args))
    except KeyboardInterrupt:
        log.warning("Interrupted.")
        return 130


def execute_command(command: str, args: List[str]) -> int:
    """
    Executes a single command from the user.

    :param command: The main command string (e.g., 'start').
    :param args: A list of arguments for the command.
    :return int: The exit status.
    """
    log.debug(f"Executing command: {command}, args: {args}")
    command_map = {
        "start": lambda: start(args),
        "check-config": lambda: 0 if check_configuration() else 1,
        "help": lambda: print(USAGE) or 0,
    }

    if command not in command_map:
        log.info(f"Unknown command: '{command}'. Type 'help' for a list of commands.")
        return 2
    return command_map[command]()


def main() -> None:
    """The main entry point for the console application."""
    if len(sys.argv) < 2:
        print(USAGE)
        sys.exit(0)
    command, args = sys.argv[1].lower(), sys.argv[2:]
    sys.exit(execute_command(command, args))


if __name__ == "__main__":
    main()
