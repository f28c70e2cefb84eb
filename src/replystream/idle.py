from __future__ import annotations

import time
from collections.abc import Awaitable, Callable

import anyio

from .dispatcher import ReplyDispatcher
from .logging import get_logger

logger = get_logger(__name__)


async def dispose_when_idle(
    dispatcher: ReplyDispatcher,
    *,
    timeout_s: float,
    poll_s: float = 5.0,
    now: Callable[[], float] = time.time,
    sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
) -> bool:
    """Dispose ``dispatcher`` once no user message arrived for ``timeout_s``.

    Returns False when the dispatcher was disposed by someone else first.
    """
    while not dispatcher.disposed:
        idle_for = now() - dispatcher.get_last_interaction()
        if idle_for >= timeout_s:
            logger.info(
                "idle.dispose",
                channel_id=dispatcher.channel_id,
                idle_s=round(idle_for, 1),
            )
            await dispatcher.dispose()
            return True
        await sleep(min(poll_s, timeout_s - idle_for))
    return False
