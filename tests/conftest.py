"""
Shared fixtures: an in-memory authority server, a controllable clock and
temporary persistent storage.
"""
import asyncio
from collections import Counter
from datetime import date
from typing import Any, Dict, List, Optional

import pytest

from config.settings import Settings
from clientsync.cache import RequestCoalescer, TimedCache
from clientsync.models import PlanRef
from clientsync.schemas import (
    EntitlementStatusPayload,
    LimitsPayload,
    PaymentOrderResponse,
    SavedItemsPayload,
    ToggleItemResponse,
    VerifyPaymentResponse,
)
from clientsync.storage import PersistentStorage


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDay:
    """Calendar date advanced by hand."""

    def __init__(self, today: date = date(2025, 1, 15)):
        self.today = today

    def __call__(self) -> date:
        return self.today


def _next(queue: List[Any], default: Any) -> Any:
    """Pop the next scripted response; exceptions are raised."""
    result = queue.pop(0) if queue else default
    if isinstance(result, BaseException):
        raise result
    return result


class FakeAuthorityClient:
    """
    Scripted AuthorityClient.

    Each endpoint returns the next queued response (or raises it, if it is
    an exception), falling back to a default. `calls` counts requests per
    endpoint; `gate`, when set, holds every request until it is released,
    and `holds` does the same for single endpoints. Server state is read
    when a request arrives, not when it is released.
    """

    def __init__(self):
        self.calls: Counter = Counter()
        self.requests: List[Dict[str, Any]] = []
        self.gate: Optional[asyncio.Event] = None
        self.holds: Dict[str, asyncio.Event] = {}

        self.entitlement = EntitlementStatusPayload(isEntitled=False, used=0, limit=3)
        self.entitlement_queue: List[Any] = []
        self.plans: List[PlanRef] = [
            PlanRef(id="plan-basic", name="Basic", limit=10),
            PlanRef(id="plan-premium", name="Premium", limit=-1),
        ]
        self.plans_queue: List[Any] = []
        # Server-side saved items, most recent first
        self.server_items: List[Dict[str, Any]] = []
        self.saved_items_limit = 5
        self.saved_items_queue: List[Any] = []
        self.toggle_queue: List[Any] = []
        self.order = PaymentOrderResponse(
            orderId="order-1",
            paymentLink="https://pay.example.com/order-1",
            paymentRef="pay-1",
            planId="plan-premium",
        )
        self.order_queue: List[Any] = []
        self.verify_queue: List[Any] = []

    async def _enter(self, endpoint: str, **params) -> None:
        self.calls[endpoint] += 1
        self.requests.append({"endpoint": endpoint, **params})
        hold = self.holds.get(endpoint) or self.gate
        if hold is not None:
            await hold.wait()
        else:
            await asyncio.sleep(0)

    async def get_entitlement_status(self) -> EntitlementStatusPayload:
        current = self.entitlement
        await self._enter("entitlement-status")
        return _next(self.entitlement_queue, current)

    async def get_plan_catalog(self) -> List[PlanRef]:
        await self._enter("plan-catalog")
        return _next(self.plans_queue, self.plans)

    async def get_saved_items(self) -> SavedItemsPayload:
        current = self._saved_items_payload()
        await self._enter("saved-items")
        return _next(self.saved_items_queue, current)

    def _saved_items_payload(self) -> SavedItemsPayload:
        return SavedItemsPayload(
            items=list(self.server_items),
            limits=limits(len(self.server_items), self.saved_items_limit),
        )

    async def toggle_item(self, item_id, desired_state, item_data=None) -> ToggleItemResponse:
        await self._enter(
            "toggle-item", item_id=item_id, desired_state=desired_state, item_data=item_data
        )
        if self.toggle_queue:
            return _next(self.toggle_queue, None)

        self.server_items = [i for i in self.server_items if i["_id"] != item_id]
        if desired_state:
            self.server_items.insert(0, dict(item_data or {}, _id=item_id))
        return ToggleItemResponse(
            ok=True, limits=limits(len(self.server_items), self.saved_items_limit)
        )

    async def create_payment_order(self, plan_id) -> PaymentOrderResponse:
        await self._enter("create-payment-order", plan_id=plan_id)
        return _next(self.order_queue, self.order)

    async def verify_payment(
        self, plan_ref, order_id=None, link_id=None, payment_ref=None
    ) -> VerifyPaymentResponse:
        await self._enter(
            "verify-payment",
            plan_ref=plan_ref,
            order_id=order_id,
            link_id=link_id,
            payment_ref=payment_ref,
        )
        return _next(self.verify_queue, VerifyPaymentResponse(ok=True))


class RecordingNotifier:
    """Notifier that keeps every notification for assertions."""

    def __init__(self):
        self.messages: List[tuple] = []

    def notify(self, level: str, message: str) -> None:
        self.messages.append((level, message))

    def levels(self) -> List[str]:
        return [level for level, _ in self.messages]


def limits(current: int, max: int = 5, plan: str = "Free") -> LimitsPayload:
    return LimitsPayload(current=current, max=max, remaining=max - current, plan=plan)


@pytest.fixture
def client():
    return FakeAuthorityClient()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def day():
    return FakeDay()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def config(tmp_path):
    return Settings(
        storage_path=tmp_path / "clientsync.db",
        refresh_debounce_seconds=0.01,
        _env_file=None,
    )


@pytest.fixture
def storage(tmp_path):
    return PersistentStorage(tmp_path / "clientsync.db")


@pytest.fixture
def cache(clock, config):
    return TimedCache(default_ttl=config.entitlement_ttl_seconds, clock=clock)


@pytest.fixture
def coalescer():
    return RequestCoalescer()
