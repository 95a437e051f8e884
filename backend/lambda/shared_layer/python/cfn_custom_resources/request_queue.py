"""cfn_custom_resources.request_queue — Per-resource request serialization.

One Lambda function serves one resource type, so a single queue per engine
instance is enough: every lifecycle event for that resource runs strictly
one at a time, in submission order. Each submitted operation gets its own
result future; a failure in one operation never affects its successors.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Optional, Tuple

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]


class RequestQueue:
    def __init__(self) -> None:
        self._pending: Deque[Tuple[Operation, asyncio.Future]] = deque()
        self._active: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def idle(self) -> bool:
        return not self._pending and self._active is None

    def submit(self, operation: Operation) -> asyncio.Future:
        """Queue ``operation`` and return a future for its result.

        Must be called from a running event loop. The operation starts right
        away when nothing else is queued.
        """
        loop = asyncio.get_running_loop()
        result = loop.create_future()
        self._pending.append((operation, result))
        if len(self._pending) == 1:
            self._start_head()
        return result

    def _start_head(self) -> None:
        operation, result = self._pending[0]
        self._active = asyncio.get_running_loop().create_task(self._run(operation, result))

    async def _run(self, operation: Operation, result: asyncio.Future) -> None:
        try:
            value = await operation()
        except asyncio.CancelledError:
            result.cancel()
            raise
        except Exception as exc:
            if not result.done():
                result.set_exception(exc)
        else:
            if not result.done():
                result.set_result(value)
        finally:
            self._pending.popleft()
            self._active = None
            if self._pending:
                logger.debug("Starting next queued request (%d pending)", len(self._pending))
                self._start_head()
