"""
Cached, periodically refreshed snapshot of the user's entitlement.

The store is the single owner of EntitlementSnapshot. Readers get the last
known value synchronously; `refresh()` revalidates it against the server
through the shared coalescer so that any number of concurrent callers cause
at most one request.
"""
import asyncio
import logging
from dataclasses import replace
from datetime import date
from typing import Callable, List, Optional

from config.settings import Settings, settings as default_settings
from .cache import (
    DataCategory,
    RequestCoalescer,
    TimedCache,
    crossed_day_boundary,
    get_ttl_for_category,
)
from .errors import (
    BusinessRejection,
    ConsistencyRepairFailure,
    SyncError,
    TransientNetworkError,
)
from .models import UNLIMITED, EntitlementSnapshot, PlanRef, normalize_limit
from .storage import ENTITLEMENT_SNAPSHOT_KEY, PersistentStorage
from .transport import AuthorityClient

logger = logging.getLogger("sync.entitlement")

ENTITLEMENT_KEY = "entitlement"
PLAN_CATALOG_KEY = "plan-catalog"

MISSING_PLAN_WARNING = "Entitlement active but missing plan data"


def default_snapshot(config: Optional[Settings] = None) -> EntitlementSnapshot:
    """Snapshot shown before anything is known: free tier, nothing used."""
    config = config or default_settings
    return EntitlementSnapshot(limit=config.free_tier_limit)


def select_active_plan(
    plans: List[PlanRef],
    plan_id: Optional[str] = None,
    plan_name: Optional[str] = None,
) -> Optional[PlanRef]:
    """
    Pick the plan an entitled-but-planless snapshot most likely refers to.

    Matches by id, then by name. Without a usable hint it falls back to the
    first active plan, which is a guess and may be wrong.
    """
    if plan_id:
        for plan in plans:
            if plan.id == str(plan_id):
                return plan
    if plan_name:
        wanted = plan_name.strip().lower()
        for plan in plans:
            if plan.name.lower() == wanted or (plan.plan_type or "").lower() == wanted:
                return plan
    for plan in plans:
        if plan.is_active:
            return plan
    return None


class EntitlementStore:
    """
    Owner of the user's EntitlementSnapshot.

    - get_snapshot(): last known value, never blocks
    - refresh(force): TTL-gated, coalesced revalidation
    - apply_delta(): optimistic usage accounting between refreshes
    - schedule_revalidation(): fire-and-forget forced refresh
    """

    def __init__(
        self,
        client: AuthorityClient,
        cache: TimedCache,
        coalescer: RequestCoalescer,
        storage: Optional[PersistentStorage] = None,
        config: Optional[Settings] = None,
        today: Callable[[], date] = date.today,
    ):
        self._client = client
        self._cache = cache
        self._coalescer = coalescer
        self._storage = storage
        self._config = config or default_settings
        self._today = today

        self._snapshot = default_snapshot(self._config)
        self._stored_on: Optional[date] = None
        self._restored = False
        self._revalidation: Optional[asyncio.Task] = None

        self._restore()

    # =========================================================================
    # Reads
    # =========================================================================

    def get_snapshot(self) -> EntitlementSnapshot:
        """Last known snapshot, possibly stale."""
        return self._snapshot

    async def refresh(self, force: bool = False) -> EntitlementSnapshot:
        """
        Revalidate the snapshot.

        Args:
            force: Skip the freshness check and always ask the server. A
                fetch already in flight is waited out, not reused.

        Returns:
            The current snapshot. On a transient failure the last known
            snapshot is returned flagged `from_cache=True`.

        Raises:
            AuthenticationError: The session is no longer valid
            TransientNetworkError: The server is unreachable and nothing
                was ever cached
        """
        if not force and self._is_fresh():
            logger.debug("Entitlement snapshot is fresh, skipping fetch")
            return self._snapshot

        try:
            return await self._coalescer.run(
                ENTITLEMENT_KEY, self._fetch_and_store, fresh=force
            )
        except (TransientNetworkError, BusinessRejection) as e:
            if self._cache.get(ENTITLEMENT_KEY) is None and not self._restored:
                raise
            logger.warning(f"Entitlement refresh failed, serving cached snapshot: {e}")
            return replace(self._snapshot, from_cache=True)

    def _is_fresh(self) -> bool:
        hit = self._cache.get(ENTITLEMENT_KEY)
        if hit is None or not hit.fresh:
            return False
        # Usage counters reset daily on the server
        return not crossed_day_boundary(self._stored_on, self._today())

    async def get_plans(self, force: bool = False) -> List[PlanRef]:
        """Plan catalog, TTL-cached."""
        if not force:
            hit = self._cache.get(PLAN_CATALOG_KEY)
            if hit is not None and hit.fresh:
                return hit.value
        return await self._coalescer.run(PLAN_CATALOG_KEY, self._fetch_plans)

    async def _fetch_plans(self) -> List[PlanRef]:
        plans = await self._client.get_plan_catalog()
        self._cache.set(
            PLAN_CATALOG_KEY,
            plans,
            ttl=get_ttl_for_category(DataCategory.PLAN_CATALOG, self._config),
        )
        return plans

    # =========================================================================
    # Fetch, repair, store
    # =========================================================================

    async def _fetch_and_store(self) -> EntitlementSnapshot:
        logger.info("Fetching entitlement status")
        payload = await self._client.get_entitlement_status()
        snapshot = payload.to_snapshot(default_limit=self._config.free_tier_limit)

        if not snapshot.is_consistent:
            try:
                snapshot = await self._repair_plan(snapshot, payload.plan_id, payload.plan_name)
            except ConsistencyRepairFailure as e:
                logger.warning(f"Accepting inconsistent entitlement snapshot: {e}")
                snapshot = replace(snapshot, warning=MISSING_PLAN_WARNING)

        snapshot = self._validate_usage(snapshot)

        # Only writer of the cache entry; nothing awaits past this point
        self._cache.set(
            ENTITLEMENT_KEY,
            snapshot,
            ttl=get_ttl_for_category(DataCategory.ENTITLEMENT_STATUS, self._config),
        )
        self._snapshot = snapshot
        self._stored_on = self._today()
        self._persist(snapshot)
        return snapshot

    async def _repair_plan(
        self,
        snapshot: EntitlementSnapshot,
        plan_id: Optional[str],
        plan_name: Optional[str],
    ) -> EntitlementSnapshot:
        """
        One-shot repair of an entitled snapshot with no plan.

        Fetches the plan catalog once and never recurses.

        Raises:
            ConsistencyRepairFailure: The catalog could not be fetched or
                no plan matched
        """
        logger.info("Entitled snapshot has no plan, fetching plan catalog to repair")
        try:
            plans = await self._coalescer.run(PLAN_CATALOG_KEY, self._fetch_plans)
        except (TransientNetworkError, BusinessRejection) as e:
            raise ConsistencyRepairFailure(f"Plan catalog fetch failed: {e}") from e

        plan = select_active_plan(plans, plan_id, plan_name)
        if plan is None:
            raise ConsistencyRepairFailure("No active plan in catalog")

        logger.info(f"Repaired entitlement snapshot with plan {plan.id} ({plan.name})")
        return replace(snapshot, plan=plan)

    def _validate_usage(self, snapshot: EntitlementSnapshot) -> EntitlementSnapshot:
        if snapshot.is_entitled and snapshot.plan is not None and snapshot.plan.is_unlimited:
            return replace(snapshot, limit=UNLIMITED)
        if not snapshot.is_unlimited and snapshot.used > snapshot.limit:
            logger.warning(
                f"Server reported used={snapshot.used} above limit={snapshot.limit}, clamping"
            )
            return replace(snapshot, used=snapshot.limit)
        return snapshot

    # =========================================================================
    # Local mutation
    # =========================================================================

    def apply_delta(
        self,
        units: int = 1,
        remaining: Optional[int] = None,
    ) -> EntitlementSnapshot:
        """
        Account for consumed units without a network round trip.

        Args:
            units: Units consumed by the operation that just succeeded
            remaining: Server-reported remaining count, if the operation's
                response carried one (takes precedence over `units`)

        Returns:
            The updated snapshot. Falling under the low-water mark schedules
            a forced refresh.
        """
        snapshot = self._snapshot
        if snapshot.is_unlimited:
            return snapshot

        if remaining is not None:
            reported = normalize_limit(remaining, default=snapshot.remaining)
            if reported == UNLIMITED:
                return snapshot
            used = max(snapshot.limit - reported, 0)
        else:
            used = min(snapshot.used + units, snapshot.limit)

        self._snapshot = replace(snapshot, used=used)
        logger.debug(f"Applied usage delta: used={used}/{snapshot.limit}")

        if self._below_low_water(self._snapshot):
            logger.info(
                f"Remaining usage {self._snapshot.remaining} below low-water mark, "
                f"scheduling forced refresh"
            )
            self.schedule_revalidation()
        return self._snapshot

    def _below_low_water(self, snapshot: EntitlementSnapshot) -> bool:
        if snapshot.is_unlimited:
            return False
        remaining = snapshot.remaining
        if remaining < self._config.low_water_mark:
            return True
        return snapshot.limit > 0 and remaining / snapshot.limit <= self._config.low_water_ratio

    def schedule_revalidation(self) -> Optional[asyncio.Task]:
        """
        Start a forced refresh in the background (not awaited).

        At most one such refresh is pending at a time.
        """
        if self._revalidation is not None and not self._revalidation.done():
            return self._revalidation
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, skipping background revalidation")
            return None
        self._revalidation = loop.create_task(self._revalidate())
        return self._revalidation

    async def _revalidate(self) -> None:
        try:
            await self.refresh(force=True)
        except SyncError as e:
            logger.warning(f"Background entitlement revalidation failed: {e}")

    def reset(self) -> None:
        """Forget everything (logout)."""
        self._cache.invalidate(ENTITLEMENT_KEY)
        self._snapshot = default_snapshot(self._config)
        self._stored_on = None
        self._restored = False
        if self._storage is not None:
            self._storage.delete(ENTITLEMENT_SNAPSHOT_KEY)
        logger.info("Entitlement state reset")

    # =========================================================================
    # Persistence
    # =========================================================================

    def _persist(self, snapshot: EntitlementSnapshot) -> None:
        if self._storage is None:
            return
        self._storage.set(ENTITLEMENT_SNAPSHOT_KEY, {
            "snapshot": snapshot.to_dict(),
            "storedOn": self._stored_on.isoformat() if self._stored_on else None,
        })

    def _restore(self) -> None:
        """Seed get_snapshot() from the last persisted snapshot, if any."""
        if self._storage is None:
            return
        data = self._storage.get(ENTITLEMENT_SNAPSHOT_KEY)
        if not isinstance(data, dict) or not data.get("snapshot"):
            return
        try:
            snapshot = EntitlementSnapshot.from_dict(data["snapshot"])
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Discarding unreadable persisted snapshot: {e}")
            return
        self._snapshot = replace(snapshot, from_cache=True)
        self._restored = True
        logger.debug("Restored persisted entitlement snapshot")
