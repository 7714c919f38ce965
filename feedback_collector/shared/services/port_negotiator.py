"""Port selection, conflict resolution and release waiting.

Every probe binds a throwaway socket and closes it before returning.
Occupants are only terminated after passing the fail-closed safety
classifier in process_inspector.
"""

from __future__ import annotations

import asyncio
import logging
import random
import socket
import sys
import time

from feedback_collector.engine.errors import (
    NoPortsAvailableError,
    PortOccupiedError,
    PortReleaseTimeoutError,
    PortStillOccupiedError,
    UnsafeKillError,
)
from feedback_collector.engine.models import Occupant, PortRecord
from feedback_collector.shared.services.process_inspector import ProcessInspector

logger = logging.getLogger(__name__)

DEFAULT_RANGE_START = 5000
DEFAULT_RANGE_SIZE = 20
RANDOM_ATTEMPTS = 20
RANDOM_PORT_MIN = 1024
RANDOM_PORT_MAX = 65535


class PortNegotiator:
    """Chooses and, when allowed, reclaims the respondent server's port."""

    def __init__(
        self,
        inspector: ProcessInspector | None = None,
        *,
        host: str = "127.0.0.1",
        range_start: int = DEFAULT_RANGE_START,
        range_size: int = DEFAULT_RANGE_SIZE,
        random_attempts: int = RANDOM_ATTEMPTS,
        probe_timeout: float = 1.0,
        poll_interval: float = 0.2,
        release_grace_ms: int = 3000,
        escalate_delay: float = 2.0,
        rng: random.Random | None = None,
    ) -> None:
        self._inspector = inspector or ProcessInspector()
        self._host = host
        self._range_start = range_start
        self._range_size = range_size
        self._random_attempts = random_attempts
        self._probe_timeout = probe_timeout
        self._poll_interval = poll_interval
        self._release_grace_ms = release_grace_ms
        self._escalate_delay = escalate_delay
        self._rng = rng or random.Random()

    @property
    def port_range(self) -> range:
        return range(self._range_start, self._range_start + self._range_size)

    # ── Probing ──

    def _accepts_connections(self, port: int) -> bool:
        target = "127.0.0.1" if self._host in ("", "0.0.0.0") else self._host
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.settimeout(self._probe_timeout)
            return sock.connect_ex((target, port)) == 0
        except OSError:
            return False
        finally:
            sock.close()

    def _probe_bind(self, port: int) -> bool:
        # SO_REUSEADDR lets a specific-address bind succeed over a
        # wildcard listener on BSD and macOS, so a live listener is
        # checked for first.
        if self._accepts_connections(port):
            return False
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            if sys.platform.startswith("win"):
                exclusive = getattr(socket, "SO_EXCLUSIVEADDRUSE", None)
                if exclusive is not None:
                    sock.setsockopt(socket.SOL_SOCKET, exclusive, 1)
            else:
                # Matches the listener, which also ignores TIME_WAIT leftovers.
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self._host, port))
            sock.listen(1)
            return True
        except OSError:
            return False
        finally:
            sock.close()

    async def is_available(self, port: int) -> bool:
        """True iff *port* can be bound right now."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._probe_bind, port),
                timeout=self._probe_timeout,
            )
        except asyncio.TimeoutError:
            logger.debug("Bind probe for port %d timed out", port)
            return False

    async def find_occupant(self, port: int) -> Occupant | None:
        return await asyncio.to_thread(self._inspector.find_occupant, port)

    async def is_truly_available(self, port: int) -> bool:
        """Bindable and no process reported as its owner."""
        if not await self.is_available(port):
            return False
        occupant = await self.find_occupant(port)
        if occupant is not None:
            logger.debug("Port %d is still owned by %s", port, occupant)
            return False
        return True

    async def describe_port(self, port: int) -> PortRecord:
        available = await self.is_available(port)
        occupant = None if available else await self.find_occupant(port)
        return PortRecord(port=port, available=available, occupant=occupant)

    async def port_range_status(self) -> list[PortRecord]:
        return [await self.describe_port(port) for port in self.port_range]

    # ── Selection ──

    async def find_available(self, preferred: int | None = None) -> int:
        """Preferred port, then the configured range, then random ports."""
        if preferred is not None:
            logger.debug("Checking preferred port: %d", preferred)
            if await self.is_available(preferred):
                logger.info("Using preferred port: %d", preferred)
                return preferred
            logger.warning(
                "Preferred port %d is not available, looking for others...", preferred,
            )

        for port in self.port_range:
            if await self.is_available(port):
                logger.info("Found available port: %d", port)
                return port

        for _ in range(self._random_attempts):
            port = self._rng.randint(RANDOM_PORT_MIN, RANDOM_PORT_MAX)
            logger.debug("Trying random port: %d", port)
            if await self.is_available(port):
                logger.info("Found random available port: %d", port)
                return port

        raise NoPortsAvailableError(
            preferred,
            self.port_range.start,
            self.port_range.stop - 1,
            self._random_attempts,
        )

    async def force_port(self, port: int, allow_kill: bool = False) -> int:
        """Return *port*, terminating a safe occupant first if allowed."""
        logger.info("Forcing use of port: %d", port)
        if await self.is_available(port):
            logger.info("Port %d is available, using directly", port)
            return port
        if not allow_kill:
            raise PortOccupiedError(port)

        occupant = await self.find_occupant(port)
        if occupant is None:
            logger.warning("Port %d is bound but its owner could not be identified", port)
        elif not self._inspector.is_safe_to_terminate(occupant):
            logger.warning(
                "Refusing to terminate %s (PID %d) on port %d: not a safe process",
                occupant.name, occupant.pid, port,
            )
            raise UnsafeKillError(port, occupant)
        else:
            logger.warning(
                "Port %d is occupied by %s (PID %d), attempting to release it",
                port, occupant.name, occupant.pid,
            )
            await self._release(port, occupant)

        if not await self.is_available(port):
            raise PortStillOccupiedError(port)
        logger.info("Port %d successfully force released", port)
        return port

    # ── Release ──

    async def wait_for_release(self, port: int, timeout_ms: int = 10000) -> None:
        """Poll until *port* is unbound and unowned, or raise on timeout."""
        logger.info("Waiting for port %d to be released, timeout: %dms", port, timeout_ms)
        deadline = time.monotonic() + timeout_ms / 1000
        while True:
            if await self.is_truly_available(port):
                logger.info("Port %d has been fully released", port)
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise PortReleaseTimeoutError(port, timeout_ms)
            await asyncio.sleep(min(self._poll_interval, remaining))

    async def _release(self, port: int, occupant: Occupant) -> bool:
        """Terminate *occupant* gracefully, escalating to a kill if needed."""
        delivered = await asyncio.to_thread(self._inspector.terminate, occupant.pid, False)
        if delivered:
            try:
                await self.wait_for_release(port, self._release_grace_ms)
                return True
            except PortReleaseTimeoutError:
                logger.warning(
                    "Process %d ignored terminate, forcing kill", occupant.pid,
                )
        else:
            logger.warning(
                "Graceful termination of %d failed, forcing kill in %.1fs",
                occupant.pid, self._escalate_delay,
            )
            await asyncio.sleep(self._escalate_delay)

        if not await asyncio.to_thread(self._inspector.terminate, occupant.pid, True):
            return False
        try:
            await self.wait_for_release(port, self._release_grace_ms)
            return True
        except PortReleaseTimeoutError:
            logger.error("Port %d still occupied after killing %d", port, occupant.pid)
            return False

    async def cleanup_port(self, port: int) -> None:
        """Best-effort: free *port* if a safe process holds it. Never raises."""
        logger.info("Starting port cleanup: %d", port)
        try:
            occupant = await self.find_occupant(port)
            if occupant is None:
                logger.info("Port %d is not occupied, no cleanup needed", port)
                return
            if not self._inspector.is_safe_to_terminate(occupant):
                logger.warning(
                    "Port %d is occupied by an unsafe process, skipping cleanup: %s (PID %d)",
                    port, occupant.name, occupant.pid,
                )
                return
            if await self._release(port, occupant):
                logger.info("Port %d cleanup successful", port)
            else:
                logger.warning("Unable to free port %d held by PID %d", port, occupant.pid)
        except Exception as exc:
            logger.warning(
                "Port %d cleanup failed: %s: %s", port, type(exc).__name__, exc,
            )
