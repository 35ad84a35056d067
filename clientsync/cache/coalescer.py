"""
Request coalescing to prevent duplicate calls to the authority server.

When several callers ask for the same logical operation at once, only one
request is issued and every caller awaits the same result.
"""
import asyncio
import time
import logging
from typing import Any, Awaitable, Callable, Dict, TypeVar
from dataclasses import dataclass, field

logger = logging.getLogger("cache.coalescer")

T = TypeVar("T")


@dataclass
class InFlightRequest:
    """Tracks an in-progress request."""
    task: "asyncio.Task[Any]"
    started_at: float = field(default_factory=time.monotonic)
    waiter_count: int = 0


class RequestCoalescer:
    """
    Ensures concurrent calls for the same key share one request.

    Pattern:
    - First call for a key starts the producer as a task
    - Later calls for the same key await that task
    - The result (or exception) is delivered to every caller
    - The slot is released as soon as the task finishes, so the next call
      after completion starts a fresh request

    The coalescer never retries; retry policy belongs to callers.

    Usage:
        coalescer = RequestCoalescer()
        snapshot = await coalescer.run("entitlement", client.get_entitlement_status)
    """

    def __init__(self):
        self._in_flight: Dict[str, InFlightRequest] = {}

    async def run(
        self,
        key: str,
        producer: Callable[[], Awaitable[T]],
        fresh: bool = False,
    ) -> T:
        """
        Join an existing in-flight request or start a new one.

        Args:
            key: Logical operation key
            producer: Zero-argument coroutine function issuing the request
            fresh: Never join a request that started before this call. An
                earlier request is waited out (its outcome ignored) and a new
                one is issued.

        Returns:
            The producer's result, shared among all concurrent callers

        Raises:
            Any exception raised by the producer, unchanged
        """
        in_flight = self._in_flight.get(key)
        if in_flight is not None and not in_flight.task.done():
            if fresh:
                logger.debug(f"Waiting out earlier request for {key}")
                await asyncio.wait({in_flight.task})
                return await self.run(key, producer)

            in_flight.waiter_count += 1
            logger.debug(
                f"Coalescing request for {key} "
                f"(waiters: {in_flight.waiter_count})"
            )
            return await asyncio.shield(in_flight.task)

        logger.debug(f"Initiating request for {key}")
        task = asyncio.ensure_future(producer())
        in_flight = InFlightRequest(task=task)
        self._in_flight[key] = in_flight
        task.add_done_callback(lambda _t: self._release(key, in_flight))

        try:
            return await asyncio.shield(task)
        finally:
            self._release(key, in_flight)

    def _release(self, key: str, in_flight: InFlightRequest) -> None:
        """Clear the slot if it still belongs to this request."""
        if self._in_flight.get(key) is in_flight:
            del self._in_flight[key]

    def is_in_flight(self, key: str) -> bool:
        """Check whether a request for the key is outstanding."""
        in_flight = self._in_flight.get(key)
        return in_flight is not None and not in_flight.task.done()

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight requests."""
        return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        return {
            "active_requests": len(self._in_flight),
            "active_keys": list(self._in_flight.keys()),
        }
