import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable

import config


@dataclass
class RetryPolicy:
    """Fixed-delay restarts for a recognizer that stops on its own.

    ``max_attempts=None`` keeps retrying for as long as the owner stays active.
    ``sleep`` is swappable so tests can run restarts without waiting.
    """

    fault_delay: float = config.RESTART_AFTER_FAULT_SECS
    end_delay: float = config.RESTART_AFTER_END_SECS
    max_attempts: int | None = None
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def allows(self, attempt: int) -> bool:
        return self.max_attempts is None or attempt <= self.max_attempts

    async def wait(self, after_fault: bool):
        await self.sleep(self.fault_delay if after_fault else self.end_delay)
