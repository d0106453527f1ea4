"""Waiting for the Syncthing folder to settle.

After a folder is created or rescanned, Syncthing reports it as
"scanning" or "syncing" for a while. A snapshot taken during that window
would miss files, so the pipeline first polls the folder state until it
leaves the busy set.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Collection

from syncsnap.agent.snapshot.types import (
    ConvergenceCancelledError,
    ConvergenceTimeoutError,
)
from syncsnap.core.types import BUSY_FOLDER_STATES

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.5  # seconds

StateSource = Callable[[], Awaitable[str]]


async def _pause(delay: float, cancel_event: asyncio.Event | None) -> None:
    """Sleep for delay seconds, returning early if cancel_event is set."""
    if cancel_event is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except TimeoutError:
        pass


async def wait_for_convergence(
    get_state: StateSource,
    timeout: float,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    busy_states: Collection[str] = BUSY_FOLDER_STATES,
    cancel_event: asyncio.Event | None = None,
) -> int:
    """Poll a state source until it reports a non-busy state.

    Any exception raised by the state source is logged and counts as "not
    converged yet"; only the deadline or a cancellation ends the wait.
    Cancelling the calling task interrupts the wait with
    asyncio.CancelledError as usual.

    Args:
        get_state: Coroutine function returning the current state string.
        timeout: Seconds before giving up.
        poll_interval: Seconds between polls.
        busy_states: States that mean "not converged yet".
        cancel_event: Optional event that aborts the wait when set.

    Returns:
        Number of polls performed.

    Raises:
        ConvergenceTimeoutError: If the deadline elapsed first.
        ConvergenceCancelledError: If cancel_event was set first.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    polls = 0
    last_state: str | None = None

    while True:
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Wait for folder convergence cancelled after %d polls", polls)
            raise ConvergenceCancelledError("Wait for folder scan was cancelled")

        polls += 1
        try:
            last_state = await get_state()
        except Exception as e:
            logger.warning("Error getting folder state (poll %d): %r", polls, e)
        else:
            logger.debug("Folder state: %s", last_state)
            if last_state not in busy_states:
                logger.info("Folder settled in state %r after %d polls", last_state, polls)
                return polls

        remaining = deadline - loop.time()
        if remaining <= 0:
            logger.warning("Folder still busy after %.1fs", timeout)
            raise ConvergenceTimeoutError(timeout, last_state)
        await _pause(min(poll_interval, remaining), cancel_event)
