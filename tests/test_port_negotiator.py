from __future__ import annotations

import random
import socket
from unittest.mock import patch

import pytest

from feedback_collector.engine.errors import (
    NoPortsAvailableError,
    PortOccupiedError,
    PortReleaseTimeoutError,
    PortStillOccupiedError,
    UnsafeKillError,
)
from feedback_collector.engine.models import Occupant
from feedback_collector.shared.services.port_negotiator import PortNegotiator
from feedback_collector.shared.services.process_inspector import is_safe_to_terminate


class _FakeInspector:
    """Port table shared with _FakeNegotiator; terminate frees ports."""

    def __init__(self, occupants: dict[int, Occupant], *, ignore_sigterm: bool = False):
        self.occupants = occupants
        self.ignore_sigterm = ignore_sigterm
        self.terminated: list[tuple[int, bool]] = []

    def find_occupant(self, port: int) -> Occupant | None:
        return self.occupants.get(port)

    def is_safe_to_terminate(self, occupant: Occupant) -> bool:
        return is_safe_to_terminate(occupant, current_pid=1)

    def terminate(self, pid: int, force: bool = False) -> bool:
        self.terminated.append((pid, force))
        if force or not self.ignore_sigterm:
            for port, occ in list(self.occupants.items()):
                if occ.pid == pid:
                    del self.occupants[port]
        return True


class _FakeNegotiator(PortNegotiator):
    """Availability oracle: a port is free iff nobody occupies it."""

    def __init__(self, inspector: _FakeInspector, *, blocked: set[int] | None = None, **kwargs):
        kwargs.setdefault("poll_interval", 0.01)
        kwargs.setdefault("release_grace_ms", 100)
        kwargs.setdefault("escalate_delay", 0.01)
        super().__init__(inspector, **kwargs)
        self.inspector = inspector
        self.blocked = blocked or set()
        self.probed: list[int] = []

    def _probe_bind(self, port: int) -> bool:
        self.probed.append(port)
        return port not in self.blocked and port not in self.inspector.occupants


def _occ(name: str, pid: int = 4242) -> Occupant:
    return Occupant(pid=pid, name=name, command=name)


# ── Selection ──


@pytest.mark.asyncio
async def test_scan_returns_only_free_port_in_range() -> None:
    base = 5000
    blocked = set(range(base, base + 20)) - {base + 3}
    negotiator = _FakeNegotiator(_FakeInspector({}), blocked=blocked, range_start=base)

    port = await negotiator.find_available()

    assert port == base + 3
    assert negotiator.probed == [base, base + 1, base + 2, base + 3]


@pytest.mark.asyncio
async def test_preferred_port_checked_first() -> None:
    negotiator = _FakeNegotiator(_FakeInspector({}), range_start=6000)
    assert await negotiator.find_available(7777) == 7777
    assert negotiator.probed == [7777]


@pytest.mark.asyncio
async def test_busy_preferred_falls_back_to_range() -> None:
    negotiator = _FakeNegotiator(_FakeInspector({}), blocked={7777, 6000}, range_start=6000)
    assert await negotiator.find_available(7777) == 6001


@pytest.mark.asyncio
async def test_random_fallback_after_exhausted_range() -> None:
    rng = random.Random(3)
    expected = random.Random(3).randint(1024, 65535)
    negotiator = _FakeNegotiator(
        _FakeInspector({}),
        blocked=set(range(6000, 6005)),
        range_start=6000,
        range_size=5,
        rng=rng,
    )
    assert await negotiator.find_available() == expected


@pytest.mark.asyncio
async def test_no_ports_available() -> None:
    class _Nothing(_FakeNegotiator):
        def _probe_bind(self, port: int) -> bool:
            self.probed.append(port)
            return False

    negotiator = _Nothing(_FakeInspector({}), range_start=6000, range_size=4, random_attempts=3)

    with pytest.raises(NoPortsAvailableError) as exc_info:
        await negotiator.find_available(5999)

    err = exc_info.value
    assert (err.preferred, err.range_start, err.range_end, err.attempts) == (5999, 6000, 6003, 3)
    assert len(negotiator.probed) == 1 + 4 + 3


# ── Forced port ──


@pytest.mark.asyncio
async def test_force_port_denied_for_system_process() -> None:
    inspector = _FakeInspector({5000: _occ("sshd")})
    negotiator = _FakeNegotiator(inspector)

    with pytest.raises(UnsafeKillError) as exc_info:
        await negotiator.force_port(5000, allow_kill=True)

    assert exc_info.value.occupant.name == "sshd"
    assert inspector.terminated == []
    assert not await negotiator.is_available(5000)


@pytest.mark.asyncio
async def test_force_port_allowed_for_node() -> None:
    inspector = _FakeInspector({5000: _occ("node")})
    negotiator = _FakeNegotiator(inspector)

    assert await negotiator.force_port(5000, allow_kill=True) == 5000

    assert inspector.terminated == [(4242, False)]
    assert await negotiator.is_available(5000)


@pytest.mark.asyncio
async def test_force_port_without_kill_permission() -> None:
    inspector = _FakeInspector({5000: _occ("node")})
    negotiator = _FakeNegotiator(inspector)

    with pytest.raises(PortOccupiedError):
        await negotiator.force_port(5000)
    assert inspector.terminated == []


@pytest.mark.asyncio
async def test_force_port_escalates_to_kill() -> None:
    inspector = _FakeInspector({5000: _occ("python3")}, ignore_sigterm=True)
    negotiator = _FakeNegotiator(inspector)

    assert await negotiator.force_port(5000, allow_kill=True) == 5000
    assert inspector.terminated == [(4242, False), (4242, True)]


@pytest.mark.asyncio
async def test_force_port_unidentified_owner_still_occupied() -> None:
    negotiator = _FakeNegotiator(_FakeInspector({}), blocked={5000})

    with pytest.raises(PortStillOccupiedError):
        await negotiator.force_port(5000, allow_kill=True)


@pytest.mark.asyncio
async def test_force_port_free_port_returned_directly() -> None:
    inspector = _FakeInspector({})
    negotiator = _FakeNegotiator(inspector)
    assert await negotiator.force_port(5050, allow_kill=True) == 5050
    assert inspector.terminated == []


# ── Release ──


@pytest.mark.asyncio
async def test_wait_for_release_times_out() -> None:
    negotiator = _FakeNegotiator(_FakeInspector({5000: _occ("node")}))

    with pytest.raises(PortReleaseTimeoutError) as exc_info:
        await negotiator.wait_for_release(5000, timeout_ms=50)
    assert exc_info.value.timeout_ms == 50


@pytest.mark.asyncio
async def test_wait_for_release_requires_no_owner() -> None:
    # Bindable but still reported as owned: not truly available.
    inspector = _FakeInspector({5000: _occ("node")})

    class _Bindable(_FakeNegotiator):
        def _probe_bind(self, port: int) -> bool:
            return True

    negotiator = _Bindable(inspector)
    assert await negotiator.is_available(5000)
    assert not await negotiator.is_truly_available(5000)
    with pytest.raises(PortReleaseTimeoutError):
        await negotiator.wait_for_release(5000, timeout_ms=30)


@pytest.mark.asyncio
async def test_wait_for_release_returns_when_free() -> None:
    negotiator = _FakeNegotiator(_FakeInspector({}))
    await negotiator.wait_for_release(5000, timeout_ms=50)


@pytest.mark.asyncio
async def test_cleanup_port_never_raises() -> None:
    class _Broken(_FakeInspector):
        def find_occupant(self, port: int):
            raise RuntimeError("inspector exploded")

    negotiator = _FakeNegotiator(_Broken({}))
    await negotiator.cleanup_port(5000)


@pytest.mark.asyncio
async def test_cleanup_port_skips_unsafe_owner() -> None:
    inspector = _FakeInspector({5000: _occ("launchd")})
    negotiator = _FakeNegotiator(inspector)

    await negotiator.cleanup_port(5000)

    assert inspector.terminated == []
    assert 5000 in inspector.occupants


@pytest.mark.asyncio
async def test_cleanup_port_frees_safe_owner() -> None:
    inspector = _FakeInspector({5000: _occ("npx")})
    negotiator = _FakeNegotiator(inspector)

    await negotiator.cleanup_port(5000)
    assert 5000 not in inspector.occupants


# ── Introspection ──


@pytest.mark.asyncio
async def test_port_range_status_reports_occupants() -> None:
    inspector = _FakeInspector({6001: _occ("node", pid=11)})
    negotiator = _FakeNegotiator(inspector, range_start=6000, range_size=3)

    records = await negotiator.port_range_status()

    assert [r.port for r in records] == [6000, 6001, 6002]
    assert [r.available for r in records] == [True, False, True]
    assert records[1].occupant.pid == 11


@pytest.mark.asyncio
async def test_real_probe_detects_bound_socket() -> None:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind(("127.0.0.1", 0))
        sock.listen(1)
        port = sock.getsockname()[1]
        negotiator = PortNegotiator(_FakeInspector({}))
        assert not await negotiator.is_available(port)
    finally:
        sock.close()


@pytest.mark.asyncio
async def test_real_probe_detects_wildcard_listener() -> None:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind(("0.0.0.0", 0))
        sock.listen(1)
        port = sock.getsockname()[1]
        negotiator = PortNegotiator(_FakeInspector({}), host="127.0.0.1")
        assert not await negotiator.is_available(port)
    finally:
        sock.close()


def test_probe_skips_bind_when_port_accepts_connections() -> None:
    negotiator = PortNegotiator(_FakeInspector({}))
    negotiator._accepts_connections = lambda port: True
    with patch("feedback_collector.shared.services.port_negotiator.socket.socket") as sock_cls:
        assert negotiator._probe_bind(5000) is False
    sock_cls.assert_not_called()
