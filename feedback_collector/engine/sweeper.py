"""Periodic expiry of sessions past their deadline.

Runs independently of any single session's timer, so a session never
outlives its deadline by more than one sweep interval even if its own
timer was lost.
"""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .session_broker import SessionBroker

logger = logging.getLogger(__name__)


async def run_session_sweeper(
    broker: SessionBroker,
    interval: float = 60.0,
    stop_event: asyncio.Event | None = None,
) -> None:
    """Background task that sweeps *broker* every *interval* seconds.

    Set *stop_event* (or cancel the task) to stop the loop.
    """
    _stop = stop_event or asyncio.Event()
    logger.debug("Session sweeper started (interval=%.1fs)", interval)

    while not _stop.is_set():
        try:
            await asyncio.wait_for(_stop.wait(), timeout=interval)
            break
        except asyncio.TimeoutError:
            pass
        except asyncio.CancelledError:
            logger.info("Session sweeper stopped")
            raise

        try:
            evicted = broker.sweep()
            if evicted:
                logger.debug("Sweep evicted %d sessions", evicted)
        except Exception:
            logger.exception("Session sweeper error")

    logger.info("Session sweeper stopped")
