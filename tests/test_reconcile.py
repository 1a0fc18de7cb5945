"""Tests for batch reconciliation."""

from unittest.mock import patch

import pytest

from fieldsync.exceptions import ClientInputError, StoreError
from fieldsync.models import UpsertOperation
from fieldsync.store import RecordStore
from fieldsync.sync import ReconciliationService, ServerClock


@pytest.fixture
def store():
    """Create an in-memory RecordStore."""
    store = RecordStore(":memory:")
    store.connect()
    yield store
    store.close()


@pytest.fixture
def service(store):
    return ReconciliationService(store)


class TestServerClock:
    """Tests for server timestamps."""

    def test_timestamps_strictly_increase(self):
        clock = ServerClock()

        stamps = [clock.now()[1] for _ in range(200)]

        assert all(b > a for a, b in zip(stamps, stamps[1:]))

    def test_synced_at_is_utc(self):
        synced_at, _ = ServerClock().now()

        assert synced_at.tzinfo is not None


class TestUpsertOne:
    """Tests for single-record reconciliation."""

    def test_created_then_unchanged(self, service, store):
        first = service.upsert_one({"id": 1, "line": "T1"})
        after_first = store.find_by_identity(1)

        second = service.upsert_one({"id": 1, "line": "T1"})

        assert first.operation == UpsertOperation.CREATED
        assert second.operation == UpsertOperation.UNCHANGED
        assert store.find_by_identity(1) == after_first

    def test_last_write_wins(self, service, store):
        service.upsert_one({"id": 1, "line": "T1", "stop": "Gare"})
        result = service.upsert_one({"id": 1, "line": "T2"})

        assert result.operation == UpsertOperation.UPDATED
        assert store.find_by_identity(1).payload == {"line": "T2"}

    def test_missing_identity_is_client_error(self, service, store):
        with pytest.raises(ClientInputError):
            service.upsert_one({"line": "T1"})

        assert store.count() == 0

    @pytest.mark.parametrize("identity", ["", "  ", False, 3.5, {"a": 1}])
    def test_malformed_identity_is_client_error(self, service, store, identity):
        with pytest.raises(ClientInputError):
            service.upsert_one({"id": identity})

        assert store.count() == 0

    def test_non_object_body_is_client_error(self, service):
        with pytest.raises(ClientInputError):
            service.upsert_one([{"id": 1}])

    def test_client_timestamps_are_overwritten(self, service, store):
        service.upsert_one(
            {"id": 1, "syncedAt": "2000-01-01T00:00:00", "serverTimestamp": 5}
        )

        stored = store.find_by_identity(1)

        assert stored.server_timestamp != 5
        assert stored.synced_at.year != 2000
        assert "syncedAt" not in stored.payload

    def test_store_failure_propagates(self, service, store):
        with patch.object(store, "upsert_by_identity", side_effect=StoreError("disk full")):
            with pytest.raises(StoreError):
                service.upsert_one({"id": 1})


class TestReconcileBatch:
    """Tests for batch reconciliation."""

    @pytest.mark.parametrize("records", [[], None, {"id": 1}, "abc", 42])
    def test_structurally_invalid_batch(self, service, records):
        with pytest.raises(ClientInputError):
            service.reconcile(records)

    def test_repeated_identity_in_order(self, service, store):
        """[A, B, A'] ends with A' stored and A reported as updated."""
        result = service.reconcile(
            [
                {"id": "A", "value": 1},
                {"id": "B", "value": 1},
                {"id": "A", "value": 2},
            ]
        )

        assert result.success == 3
        assert result.failed == 0
        assert [(o.identity, o.operation) for o in result.outcomes] == [
            ("A", UpsertOperation.CREATED),
            ("B", UpsertOperation.CREATED),
            ("A", UpsertOperation.UPDATED),
        ]
        assert store.find_by_identity("A").payload == {"value": 2}

    def test_missing_identity_isolated(self, service, store):
        result = service.reconcile(
            [
                {"id": 1, "line": "T1"},
                {"line": "no id"},
                {"id": 2, "line": "T2"},
                {"id": 3, "line": "T3"},
            ]
        )

        assert result.success == 3
        assert result.failed == 1
        assert len(result.errors) == 1
        assert result.errors[0].identity is None
        assert store.count() == 3

    def test_store_failure_isolated(self, service, store):
        original = store.upsert_by_identity

        def flaky(observation):
            if observation.identity == 2:
                raise StoreError("write rejected")
            return original(observation)

        with patch.object(store, "upsert_by_identity", side_effect=flaky):
            result = service.reconcile([{"id": 1}, {"id": 2}, {"id": 3}])

        assert result.success == 2
        assert result.failed == 1
        assert result.errors[0].identity == 2
        assert "write rejected" in result.errors[0].error
        assert store.count() == 2

    def test_non_object_record_isolated(self, service, store):
        result = service.reconcile([{"id": 1}, "garbage"])

        assert result.success == 1
        assert result.failed == 1
        assert result.errors[0].identity is None

    def test_unchanged_counts_as_success(self, service):
        service.reconcile([{"id": 1, "v": 1}])

        result = service.reconcile([{"id": 1, "v": 1}])

        assert result.success == 1
        assert result.outcomes[0].operation == UpsertOperation.UNCHANGED

    def test_records_processed_sequentially(self, service, store):
        seen = []
        original = store.upsert_by_identity

        def record(observation):
            seen.append(observation.identity)
            return original(observation)

        with patch.object(store, "upsert_by_identity", side_effect=record):
            service.reconcile([{"id": i} for i in range(5)])

        assert seen == [0, 1, 2, 3, 4]
