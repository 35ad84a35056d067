"""
Unit tests for persistent storage and the records kept in it.
"""
from clientsync.models import ConfirmationState, PendingConfirmation
from clientsync.storage import (
    PENDING_CONFIRMATION_KEY,
    PaymentReturnMarker,
    PendingConfirmationRepository,
    PersistentStorage,
)


class TestPersistentStorage:
    """Tests for the sqlite key-value table."""

    def test_set_get_roundtrip_and_overwrite(self, storage):
        storage.set("k", {"a": 1})
        storage.set("k", {"a": 2})
        assert storage.get("k") == {"a": 2}
        assert storage.keys() == ["k"]

    def test_missing_key(self, storage):
        assert storage.get("nope") is None
        assert not storage.delete("nope")

    def test_values_survive_a_new_instance(self, tmp_path):
        PersistentStorage(tmp_path / "db.sqlite").set("k", [1, 2])
        assert PersistentStorage(tmp_path / "db.sqlite").get("k") == [1, 2]

    def test_clear(self, storage):
        storage.set("a", 1)
        storage.set("b", 2)
        assert storage.clear() == 2
        assert storage.keys() == []

    def test_creates_parent_directory(self, tmp_path):
        storage = PersistentStorage(tmp_path / "nested" / "dir" / "db.sqlite")
        storage.set("k", True)
        assert storage.get("k") is True


class TestPendingConfirmationRepository:
    """Tests for the versioned PendingConfirmation record."""

    def test_save_and_load(self, storage):
        repository = PendingConfirmationRepository(storage)
        record = PendingConfirmation(
            plan_ref="plan-premium",
            order_id="order-1",
            payment_ref="pay-1",
            attempts=2,
            state=ConfirmationState.VERIFYING,
        )

        repository.save(record)
        loaded = repository.load()

        assert loaded.plan_ref == "plan-premium"
        assert loaded.order_id == "order-1"
        assert loaded.link_id is None
        assert loaded.payment_ref == "pay-1"
        assert loaded.attempts == 2
        assert loaded.state is ConfirmationState.VERIFYING
        assert loaded.created_at == record.created_at

    def test_stored_layout_is_versioned(self, storage):
        PendingConfirmationRepository(storage).save(
            PendingConfirmation(plan_ref="p", link_id="link-1")
        )

        raw = storage.get(PENDING_CONFIRMATION_KEY)
        assert raw["version"] == 1
        assert raw["externalRef"] == {"orderId": None, "linkId": "link-1"}
        assert raw["state"] == "created"

    def test_unknown_version_is_discarded(self, storage):
        storage.set(PENDING_CONFIRMATION_KEY, {"version": 99, "planRef": "p"})
        repository = PendingConfirmationRepository(storage)

        assert repository.load() is None
        assert storage.get(PENDING_CONFIRMATION_KEY) is None

    def test_legacy_string_flags_are_discarded(self, storage):
        storage.set(PENDING_CONFIRMATION_KEY, "true")
        assert PendingConfirmationRepository(storage).load() is None

    def test_last_selected_plan(self, storage):
        repository = PendingConfirmationRepository(storage)
        assert repository.last_selected_plan() is None
        repository.remember_selected_plan("plan-basic")
        assert repository.last_selected_plan() == "plan-basic"


class TestPaymentReturnMarker:
    """Tests for the consume-once return flag."""

    def test_consumed_exactly_once(self, storage):
        marker = PaymentReturnMarker(storage)
        marker.mark()

        assert marker.is_set()
        assert marker.consume()
        assert not marker.consume()
        assert not marker.is_set()

    def test_unversioned_flag_is_ignored(self, storage):
        storage.set("payment.return_marker", "true")
        assert not PaymentReturnMarker(storage).is_set()
