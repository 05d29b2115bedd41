import socket
import logging
from dataclasses import dataclass
from typing import Callable

from .errors import PortExhausted

log = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"


@dataclass(frozen=True)
class PortLease:
    """
    A port that was free when probed.

    This is evidence, not ownership: the listening socket is acquired later by
    the spawned database process. Between the probe releasing the port and the
    consumer binding it, another program may take it. That is acceptable only
    because the consumer is spawned right away on the same host.
    """
    port: int
    free_at_probe: bool = True


def probe_port(port: int, host: str = LOOPBACK_HOST) -> bool:
    """
    Tries to bind a transient listening socket on the given port.

    SO_REUSEADDR is deliberately not set so that a port with a live listener
    reports as busy.

    :return: True if the bind succeeded (the socket is released immediately).
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((host, port))
            sock.listen(1)
        return True
    except (OSError, OverflowError) as e:
        log.debug(f"Port {port} unavailable: {e}")
        return False


async def allocate_port(
    start_port: int,
    max_attempts: int,
    probe: Callable[[int], bool] = probe_port,
) -> PortLease:
    """
    Finds the first free loopback port in [start_port, start_port + max_attempts).

    :param start_port: The first candidate port.
    :param max_attempts: How many consecutive candidates to probe.
    :param probe: Callable returning True if a port can be bound.
    :return: A PortLease for the first free candidate.
    :raises PortExhausted: If every candidate was busy.
    """
    for port in range(start_port, start_port + max_attempts):
        if probe(port):
            log.info(f"Allocated port {port} (probe started at {start_port}).")
            return PortLease(port=port)
    raise PortExhausted(start_port, max_attempts)
