"""
Optimistic client-side mirror of the user's saved-item collection.

All membership changes are applied locally first and reconciled with the
server afterwards. A rejected mutation is rolled back to exactly the state
observed before the call, and the failure is reported once.
"""
import asyncio
import logging
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from config.settings import Settings, settings as default_settings
from .cache import DataCategory, RequestCoalescer, TimedCache, get_ttl_for_category
from .entitlement import EntitlementStore
from .errors import AuthenticationError, BusinessRejection, SyncError, TransientNetworkError
from .items import ItemLike, format_item, placeholder_item, resolve_id
from .models import CollectionLimits, Item, ToggleResult, utcnow
from .notifications import LoggingNotifier, Notifier
from .transport import AuthorityClient

logger = logging.getLogger("sync.collection")

SAVED_ITEMS_KEY = "saved-items"

# Reasons reported in ToggleResult.reason
REASON_UNAUTHENTICATED = "unauthenticated"
REASON_INVALID_ITEM = "invalid_item"
REASON_NETWORK = "network_error"
REASON_UNEXPECTED = "unexpected_error"
REASON_RESET = "session_reset"


class OptimisticCollection:
    """
    Keyed, most-recent-first mirror of a server-owned collection.

    - has/add/remove: synchronous local operations, no network
    - toggle: optimistic local flip, then server mutation, then rollback on
      failure; toggles on the same id run strictly one after another
    - refresh: reload the authoritative list and limits

    toggle() and refresh() never raise; failures are reported through the
    notifier and, for toggle, the returned ToggleResult.
    """

    def __init__(
        self,
        client: AuthorityClient,
        coalescer: RequestCoalescer,
        cache: Optional[TimedCache] = None,
        entitlements: Optional[EntitlementStore] = None,
        notifier: Optional[Notifier] = None,
        is_authenticated: Callable[[], bool] = lambda: True,
        on_auth_required: Optional[Callable[[], None]] = None,
        config: Optional[Settings] = None,
    ):
        """
        Initialize the collection.

        Args:
            client: Authority server client
            coalescer: Shared request coalescer
            cache: TTL cache for the saved-item list (optional)
            entitlements: Store to revalidate when a quota is hit
            notifier: Where user-facing notifications go
            is_authenticated: Current session authentication state
            on_auth_required: Called when the server rejects the session
            config: Settings (defaults to module settings)
        """
        self._client = client
        self._coalescer = coalescer
        self._cache = cache
        self._entitlements = entitlements
        self._notifier = notifier or LoggingNotifier()
        self._is_authenticated = is_authenticated
        self._on_auth_required = on_auth_required
        self._config = config or default_settings

        self._order: List[str] = []          # Present ids, most recent first
        self._items: Dict[str, Item] = {}    # Includes tombstoned items
        self._limits = self._default_limits()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._background: set = set()
        self._generation = 0                # Bumped by reset()
        self._mutations = 0                 # Successful server mutations

    def _default_limits(self) -> CollectionLimits:
        limit = self._config.default_saved_items_limit
        return CollectionLimits(current=0, max=limit, remaining=limit)

    # =========================================================================
    # Reads
    # =========================================================================

    def has(self, item: ItemLike) -> bool:
        """Check whether an item is currently in the collection."""
        item_id = resolve_id(item)
        if item_id is None:
            return False
        entry = self._items.get(item_id)
        return entry is not None and not entry.removed

    def items(self) -> List[Item]:
        """Present items, most recent first."""
        return [self._items[item_id] for item_id in self._order]

    def get(self, item: ItemLike) -> Optional[Item]:
        """Known data for an item, including tombstoned items."""
        item_id = resolve_id(item)
        return self._items.get(item_id) if item_id else None

    def ids(self) -> List[str]:
        return list(self._order)

    @property
    def limits(self) -> CollectionLimits:
        return self._limits

    def __len__(self) -> int:
        return len(self._order)

    # =========================================================================
    # Local mutations
    # =========================================================================

    def add(self, item: ItemLike, full_data: Optional[Dict[str, Any]] = None) -> None:
        """
        Insert an item at the head of the collection.

        Without `full_data`, known data for the id is reused; failing that a
        placeholder is synthesized so there is always something to render.
        """
        item_id = resolve_id(item)
        if item_id is None:
            return

        entry = self._resolve_entry(item, item_id, full_data)
        was_present = self.has(item_id)
        entry.removed = False
        entry.added_at = utcnow()
        self._items[item_id] = entry

        if item_id in self._order:
            self._order.remove(item_id)
        self._order.insert(0, item_id)

        if not was_present:
            self._limits = self._limits.after_add()

    def remove(self, item: ItemLike) -> None:
        """Tombstone an item. Its data is kept so the removal can be undone."""
        item_id = resolve_id(item)
        if item_id is None or not self.has(item_id):
            return

        self._items[item_id].removed = True
        self._order.remove(item_id)
        self._limits = self._limits.after_remove()

    def _resolve_entry(
        self,
        item: ItemLike,
        item_id: str,
        full_data: Optional[Dict[str, Any]],
    ) -> Item:
        if full_data:
            return format_item(full_data, item_id=item_id)
        if isinstance(item, Item):
            return replace(item)
        if isinstance(item, dict):
            return format_item(item, item_id=item_id)
        known = self._items.get(item_id)
        if known is not None:
            return known
        return placeholder_item(item_id)

    # =========================================================================
    # Toggle
    # =========================================================================

    async def toggle(
        self,
        item: ItemLike,
        full_data: Optional[Dict[str, Any]] = None,
    ) -> ToggleResult:
        """
        Flip membership of an item optimistically and sync with the server.

        Returns:
            ToggleResult; never raises
        """
        if not self._is_authenticated():
            self._notifier.notify("info", "Please log in to save items")
            return ToggleResult(ok=False, reason=REASON_UNAUTHENTICATED)

        item_id = resolve_id(item)
        if item_id is None:
            self._notifier.notify("error", "Invalid item data")
            return ToggleResult(ok=False, reason=REASON_INVALID_ITEM)

        lock = self._locks.setdefault(item_id, asyncio.Lock())
        async with lock:
            return await self._toggle_locked(item, item_id, full_data)

    async def _toggle_locked(
        self,
        item: ItemLike,
        item_id: str,
        full_data: Optional[Dict[str, Any]],
    ) -> ToggleResult:
        generation = self._generation
        was_saved = self.has(item_id)
        previous_index = self._order.index(item_id) if was_saved else None

        if was_saved:
            self.remove(item_id)
        else:
            self.add(item, full_data)

        desired = not was_saved
        item_data = self._items[item_id].to_payload() if desired else None
        logger.info(f"Toggling item {item_id} -> {'saved' if desired else 'removed'}")

        try:
            response = await self._coalescer.run(
                f"toggle-item:{item_id}",
                lambda: self._client.toggle_item(item_id, desired, item_data),
            )
        except Exception as e:
            if generation != self._generation:
                return self._discarded(item_id, was_saved)
            return self._failed(item_id, was_saved, previous_index, e)

        if generation != self._generation:
            return self._discarded(item_id, was_saved)

        if not response.ok:
            return self._rejected(
                item_id,
                was_saved,
                previous_index,
                response.reason or "Failed to update saved items",
                response.limit_reached,
            )

        if response.updated_item and desired:
            self._reconcile(item_id, response.updated_item)
        if response.limits is not None:
            self._limits = response.limits.to_limits()

        self._mutations += 1
        self._notifier.notify("success", "Added to saved items" if desired else "Removed from saved items")
        self._spawn(self.refresh(force=True, notify=False))
        return ToggleResult(ok=True, item_id=item_id, saved=desired)

    def _failed(
        self,
        item_id: str,
        was_saved: bool,
        previous_index: Optional[int],
        error: Exception,
    ) -> ToggleResult:
        """Roll back after the server call raised. Called from an except block."""
        if isinstance(error, BusinessRejection):
            return self._rejected(
                item_id, was_saved, previous_index, error.message, error.limit_reached
            )

        self._rollback(item_id, was_saved, previous_index)
        if isinstance(error, AuthenticationError):
            logger.warning(f"Toggle of {item_id} rejected, session expired: {error}")
            self._notifier.notify("error", "Please log in again to manage saved items")
            if self._on_auth_required is not None:
                self._on_auth_required()
            reason = REASON_UNAUTHENTICATED
        elif isinstance(error, TransientNetworkError):
            logger.warning(f"Toggle of {item_id} failed, rolled back: {error}")
            self._notifier.notify("error", "Failed to update saved items")
            reason = REASON_NETWORK
        else:
            logger.exception(f"Unexpected error toggling {item_id}")
            self._notifier.notify("error", "An error occurred while updating saved items")
            reason = REASON_UNEXPECTED
        return ToggleResult(ok=False, item_id=item_id, saved=was_saved, reason=reason)

    def _discarded(self, item_id: str, was_saved: bool) -> ToggleResult:
        # The collection was reset (logout) while the call was in flight
        logger.info(f"Discarding toggle result for {item_id}, collection was reset")
        return ToggleResult(ok=False, item_id=item_id, saved=was_saved, reason=REASON_RESET)

    def _rejected(
        self,
        item_id: str,
        was_saved: bool,
        previous_index: Optional[int],
        reason: str,
        limit_reached: bool,
    ) -> ToggleResult:
        self._rollback(item_id, was_saved, previous_index)
        logger.warning(f"Toggle of {item_id} rejected by server, rolled back: {reason}")
        self._notifier.notify("error", reason)
        if limit_reached:
            self._spawn(self.refresh(force=True, notify=False))
            if self._entitlements is not None:
                self._entitlements.schedule_revalidation()
        return ToggleResult(
            ok=False,
            item_id=item_id,
            saved=was_saved,
            reason=reason,
            limit_reached=limit_reached,
        )

    def _rollback(self, item_id: str, was_saved: bool, previous_index: Optional[int]) -> None:
        """Undo the optimistic flip, restoring membership, position and counters."""
        if not was_saved:
            self.remove(item_id)
            return
        entry = self._items.get(item_id)
        if entry is None or not entry.removed:
            return
        # Tombstone revived in place; added_at and data stay untouched
        entry.removed = False
        index = previous_index if previous_index is not None else 0
        self._order.insert(min(index, len(self._order)), item_id)
        self._limits = self._limits.after_add()

    def _reconcile(self, item_id: str, data: Dict[str, Any]) -> None:
        """Merge authoritative server data into the local entry in place."""
        entry = self._items.get(item_id)
        if entry is None:
            return
        server = format_item(data, item_id=item_id)
        entry.display_name = server.display_name
        entry.image_ref = server.image_ref or entry.image_ref
        entry.metadata.update(server.metadata)
        entry.source = server.source or entry.source
        entry.source_id = server.source_id or entry.source_id
        entry.placeholder = False

    def _spawn(self, coro) -> None:
        """Run a coroutine in the background, keeping a reference until done."""
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # =========================================================================
    # Server sync
    # =========================================================================

    async def refresh(self, force: bool = False, notify: bool = True) -> bool:
        """
        Reload the authoritative item list and limits.

        Args:
            force: Skip the freshness check
            notify: Report a failed fetch to the user (background
                revalidations stay quiet)

        Returns:
            True if the mirror reflects the server (fresh cache or fetch)
        """
        if not self._is_authenticated():
            return False

        if not force and self._cache is not None:
            hit = self._cache.get(SAVED_ITEMS_KEY)
            if hit is not None and hit.fresh:
                return True

        generation, mutations = self._generation, self._mutations
        try:
            payload = await self._coalescer.run(
                SAVED_ITEMS_KEY, self._client.get_saved_items, fresh=force
            )
        except AuthenticationError as e:
            logger.warning(f"Saved items fetch rejected, session expired: {e}")
            if self._on_auth_required is not None:
                self._on_auth_required()
            return False
        except SyncError as e:
            logger.warning(f"Failed to fetch saved items: {e}")
            if notify:
                self._notifier.notify("error", "Failed to fetch your saved items")
            return False

        if any(lock.locked() for lock in self._locks.values()):
            # A toggle is mid-flight; its own revalidation will follow
            logger.debug("Skipping saved items apply while a toggle is in flight")
            return False

        if generation != self._generation or mutations != self._mutations:
            logger.debug("Discarding saved items fetched before the latest change")
            return False

        self._apply_server_list(payload.items)
        if payload.limits is not None:
            self._limits = payload.limits.to_limits()
        if self._cache is not None:
            self._cache.set(
                SAVED_ITEMS_KEY,
                [item.id for item in self.items()],
                ttl=get_ttl_for_category(DataCategory.SAVED_ITEMS, self._config),
            )
        logger.info(f"Loaded {len(self._order)} saved items")
        return True

    def _apply_server_list(self, raw_items: List[Dict[str, Any]]) -> None:
        order: List[str] = []
        for raw in raw_items:
            entry = format_item(raw)
            if entry.id in self._items:
                self._reconcile(entry.id, raw)
                entry = self._items[entry.id]
            entry.removed = False
            self._items[entry.id] = entry
            if entry.id not in order:
                order.append(entry.id)

        for item_id, entry in self._items.items():
            if item_id not in order:
                entry.removed = True
        self._order = order

    def reset(self) -> None:
        """Forget everything (logout). Toggles still in flight are discarded."""
        self._generation += 1
        self._locks = {}
        self._order = []
        self._items = {}
        self._limits = self._default_limits()
        if self._cache is not None:
            self._cache.invalidate(SAVED_ITEMS_KEY)
        logger.info("Saved items reset")
