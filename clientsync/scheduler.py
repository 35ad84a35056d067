"""
Background entitlement refresh scheduling.

One scheduler exists per authenticated session. It decides *when* the
entitlement snapshot is revalidated: periodically, on navigation and on
explicit request, subject to route suppression, rate limiting and
debouncing. The refresh itself is delegated to a callable (normally
EntitlementStore.refresh).
"""
import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from config.settings import Settings, settings as default_settings
from .errors import SyncError
from .ratelimit import RateLimiter
from .storage import PaymentReturnMarker

logger = logging.getLogger("sync.scheduler")

REFRESH_KEY = "entitlement-refresh"


class SchedulerState(Enum):
    """Lifecycle of a scheduled refresh."""
    IDLE = "idle"
    SCHEDULED = "scheduled"   # Debounce timer pending
    RUNNING = "running"       # Refresh awaiting the server


def is_exempt_route(route: Optional[str], exempt_routes) -> bool:
    """Check whether a route is (or is below) one of the exempt prefixes."""
    if not route:
        return False
    for exempt in exempt_routes:
        prefix = exempt.rstrip("/")
        if route == exempt or route == prefix or route.startswith(prefix + "/"):
            return True
    return False


class RefreshScheduler:
    """
    IDLE -> SCHEDULED -> RUNNING -> IDLE state machine around a refresh call.

    Rules, in order of precedence:
    1. Nothing runs while the current route is exempt, forced or not
    2. A forced refresh (after returning from the payment page) skips the
       rate limit once
    3. Otherwise at most `max_refreshes_per_window` refreshes per rolling
       window, and never two within `min_refresh_interval_seconds`

    schedule_refresh() debounces: a second call before the timer fires
    replaces the pending timer. stop() cancels every pending timer.
    """

    def __init__(
        self,
        refresh: Callable[[bool], Awaitable[Any]],
        return_marker: Optional[PaymentReturnMarker] = None,
        config: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
        route: Optional[str] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            refresh: Coroutine function taking `force`, performing the refresh
            return_marker: Persisted "returned from payment" flag
            config: Settings (defaults to module settings)
            clock: Monotonic time source for rate limiting
            route: Initial current route
        """
        self._refresh = refresh
        self._return_marker = return_marker
        self._config = config or default_settings
        self._route = route

        self._limiter = RateLimiter(
            max_requests=self._config.max_refreshes_per_window,
            window_seconds=self._config.refresh_window_seconds,
            min_interval_seconds=self._config.min_refresh_interval_seconds,
            clock=clock,
        )

        self._state = SchedulerState.IDLE
        self._started = False
        self._generation = 0
        self._force_pending = False
        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._interval_handle: Optional[asyncio.TimerHandle] = None
        self._tasks: set = set()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def started(self) -> bool:
        return self._started

    @property
    def route(self) -> Optional[str]:
        return self._route

    @property
    def force_pending(self) -> bool:
        return self._force_pending

    def start(self) -> None:
        """
        Begin scheduling (session became authenticated).

        Must be called from a running event loop. Schedules an initial
        refresh, forced if the user just returned from the payment page.
        """
        if self._started:
            return
        self._started = True
        self._generation += 1

        if self._return_marker is not None and self._return_marker.consume():
            logger.info("Returned from payment page, next refresh bypasses rate limit")
            self._force_pending = True

        self._arm_interval()
        self.schedule_refresh(force=self._force_pending)
        logger.info("Refresh scheduler started")

    def stop(self) -> None:
        """
        Stop scheduling and cancel every pending timer (logout/teardown).

        A refresh already awaiting the server is left to finish; the
        scheduler just stops tracking it.
        """
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        if self._interval_handle is not None:
            self._interval_handle.cancel()
            self._interval_handle = None

        self._generation += 1
        self._started = False
        self._force_pending = False
        self._state = SchedulerState.IDLE
        self._limiter.reset()
        logger.info("Refresh scheduler stopped")

    # =========================================================================
    # Triggers
    # =========================================================================

    def schedule_refresh(self, force: bool = False) -> bool:
        """
        Request a refresh after the debounce delay.

        Args:
            force: Bypass the rate limit once (route suppression still applies)

        Returns:
            True if a timer is now pending
        """
        if not self._started:
            return False

        if force:
            self._force_pending = True

        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            logger.debug("Replacing pending refresh timer")

        loop = asyncio.get_running_loop()
        self._debounce_handle = loop.call_later(
            self._config.refresh_debounce_seconds, self._fire, self._generation
        )
        if self._state is SchedulerState.IDLE:
            self._state = SchedulerState.SCHEDULED
        return True

    def on_navigation(self, route: Optional[str]) -> None:
        """Track the current route; leaving for a normal route triggers a refresh."""
        previous = self._route
        self._route = route
        if route == previous:
            return
        if self._is_exempt():
            logger.debug(f"Entered exempt route {route}, refreshes suppressed")
            return
        self.schedule_refresh()

    def can_refresh(self) -> bool:
        """Whether tick() would run a refresh right now."""
        if not self._started or self._is_exempt() or self._state is SchedulerState.RUNNING:
            return False
        return self._force_pending or self._limiter.retry_after(REFRESH_KEY) is None

    def _is_exempt(self) -> bool:
        return is_exempt_route(self._route, self._config.exempt_routes)

    def _arm_interval(self) -> None:
        loop = asyncio.get_running_loop()
        self._interval_handle = loop.call_later(
            self._config.refresh_interval_seconds, self._on_interval, self._generation
        )

    def _on_interval(self, generation: int) -> None:
        if generation != self._generation:
            return
        self.schedule_refresh()
        self._arm_interval()

    def _fire(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._debounce_handle = None
        task = asyncio.ensure_future(self.tick())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # =========================================================================
    # Execution
    # =========================================================================

    async def tick(self) -> bool:
        """
        Run one refresh if the rules allow it.

        Returns:
            True if a refresh was executed
        """
        if self._state is SchedulerState.SCHEDULED and self._debounce_handle is None:
            self._state = SchedulerState.IDLE

        if not self._started:
            return False

        if self._is_exempt():
            logger.warning(f"Refresh suppressed on exempt route {self._route}")
            return False

        if self._state is SchedulerState.RUNNING:
            logger.debug("Refresh already running, skipping tick")
            return False

        forced = self._force_pending
        if forced:
            self._limiter.record(REFRESH_KEY)
        else:
            allowed, retry_after = self._limiter.check(REFRESH_KEY)
            if not allowed:
                logger.debug(f"Refresh rate limited, retry in {retry_after:.1f}s")
                return False

        self._force_pending = False
        generation = self._generation
        self._state = SchedulerState.RUNNING
        logger.info(f"Running entitlement refresh (forced={forced})")

        try:
            await self._refresh(forced)
        except SyncError as e:
            logger.warning(f"Background refresh failed: {e}")
        except Exception:
            logger.exception("Unexpected error during background refresh")
        finally:
            if generation == self._generation:
                self._state = (
                    SchedulerState.SCHEDULED
                    if self._debounce_handle is not None
                    else SchedulerState.IDLE
                )
        return True
