import time
import uuid
import asyncio
from typing import Any, Awaitable, Callable, Optional


def generate_uuid() -> str:
    return str(uuid.uuid4())


def now_ms() -> int:
    """Return the current time as epoch milliseconds."""
    return int(time.time() * 1000)


class SingleFlight:
    """Share one in-flight run of an async callable between concurrent callers.

    A successful result is kept and returned to later callers. A failed run is
    forgotten so the next call starts over instead of replaying the error.
    """

    def __init__(self, func: Callable[[], Awaitable[Any]]) -> None:
        self._func = func
        self._future: Optional[asyncio.Future] = None

    @property
    def done(self) -> bool:
        return (
            self._future is not None
            and self._future.done()
            and not self._future.cancelled()
            and self._future.exception() is None
        )

    async def __call__(self) -> Any:
        if self._future is None:
            future = asyncio.ensure_future(self._func())
            future.add_done_callback(self._forget_failure)
            self._future = future
        return await asyncio.shield(self._future)

    def _forget_failure(self, future: asyncio.Future) -> None:
        if future.cancelled() or future.exception() is not None:
            if self._future is future:
                self._future = None

    def reset(self) -> None:
        self._future = None
