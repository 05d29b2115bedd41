import socket

import pytest

from src.local.supervisor.errors import PortExhausted
from src.local.supervisor.ports import PortLease, allocate_port, probe_port


@pytest.mark.asyncio
async def test_allocate_returns_start_port_when_free():
    lease = await allocate_port(54321, 20, probe=lambda port: True)
    assert lease == PortLease(port=54321, free_at_probe=True)


@pytest.mark.asyncio
async def test_allocate_skips_occupied_start_port():
    lease = await allocate_port(54321, 20, probe=lambda port: port != 54321)
    assert lease.port == 54322


@pytest.mark.asyncio
@pytest.mark.parametrize("start, attempts, free_offset", [(1000, 1, 0), (54321, 5, 4), (40000, 10, 7)])
async def test_allocate_stays_in_range(start, attempts, free_offset):
    probed = []

    def probe(port):
        probed.append(port)
        return port == start + free_offset

    lease = await allocate_port(start, attempts, probe=probe)
    assert start <= lease.port < start + attempts
    assert probed == list(range(start, start + free_offset + 1))


@pytest.mark.asyncio
@pytest.mark.parametrize("attempts", [1, 3, 20])
async def test_allocate_exhausted_after_exactly_n_probes(attempts):
    probed = []

    def probe(port):
        probed.append(port)
        return False

    with pytest.raises(PortExhausted) as exc_info:
        await allocate_port(54321, attempts, probe=probe)

    assert len(probed) == attempts
    assert exc_info.value.start_port == 54321
    assert exc_info.value.max_attempts == attempts


def test_probe_port_detects_listener():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        busy_port = listener.getsockname()[1]
        assert probe_port(busy_port) is False


def test_probe_port_rejects_out_of_range_port():
    assert probe_port(70000) is False


@pytest.mark.asyncio
async def test_allocate_with_real_sockets_skips_bound_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        busy_port = listener.getsockname()[1]

        lease = await allocate_port(busy_port, 50)

    assert busy_port < lease.port < busy_port + 50
