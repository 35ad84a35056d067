"""
Integration tests for ClientSession wiring against the fake authority server.
"""
import asyncio

import pytest

from clientsync import ClientSession
from clientsync.errors import AuthenticationError
from clientsync.models import ConfirmationState, PendingConfirmation
from clientsync.storage import PaymentReturnMarker, PendingConfirmationRepository


async def no_sleep(delay):
    return None


@pytest.fixture
def session(client, storage, notifier, config, clock, day):
    session = ClientSession(
        client=client,
        storage=storage,
        notifier=notifier,
        config=config,
        clock=clock,
        today=day,
        sleep=no_sleep,
    )
    yield session
    session.scheduler.stop()


class TestSessionLifecycle:
    """Tests for login/logout binding."""

    @pytest.mark.asyncio
    async def test_login_starts_scheduler_and_loads_collection(self, session, client):
        client.server_items = [{"_id": "r1", "name": "Soup"}]

        outcome = await session.login()

        assert outcome is None
        assert session.scheduler.started
        assert session.collection.ids() == ["r1"]

        await asyncio.sleep(0.1)
        assert client.calls["entitlement-status"] == 1

    @pytest.mark.asyncio
    async def test_login_resumes_pending_payment_once(self, session, client, storage):
        PendingConfirmationRepository(storage).save(PendingConfirmation(
            plan_ref="plan-premium", order_id="order-1", state=ConfirmationState.VERIFYING
        ))

        outcome = await session.login()
        await session.logout()
        await session.login()

        assert outcome.ok
        assert client.calls["verify-payment"] == 1

    @pytest.mark.asyncio
    async def test_return_from_payment_forces_first_refresh(self, session, client, storage):
        marker = PaymentReturnMarker(storage)
        marker.mark()

        await session.login()

        assert not marker.is_set()
        await asyncio.sleep(0.1)
        assert client.calls["entitlement-status"] == 1
        assert not session.scheduler.force_pending

    @pytest.mark.asyncio
    async def test_logout_resets_state(self, session, client):
        client.server_items = [{"_id": "r1", "name": "Soup"}]
        await session.login()

        await session.logout()

        assert not session.scheduler.started
        assert len(session.collection) == 0
        assert not session.entitlements.get_snapshot().is_entitled
        result = await session.collection.toggle("r2")
        assert result.reason == "unauthenticated"

    @pytest.mark.asyncio
    async def test_exempt_route_blocks_scheduled_refresh(self, session, client):
        session.navigate("/subscription")
        await session.login()

        await asyncio.sleep(0.1)

        assert client.calls["entitlement-status"] == 0

    @pytest.mark.asyncio
    async def test_rejected_session_stops_scheduling(self, session, client):
        await session.login()
        client.saved_items_queue.append(AuthenticationError("expired"))

        await session.collection.refresh(force=True)

        assert not session.authenticated
        assert not session.scheduler.started
