"""
Tests for the document store.

Tests cover:
- Point reads and writes (replace and merge)
- Appends with store-assigned ids
- Server timestamps
- Ordered queries
- Live subscriptions: initial snapshot, push on write, close
- Health check and error wrapping
"""

import pytest
from sqlalchemy.exc import OperationalError

from chatpro.errors import StoreError
from chatpro.storage import SERVER_TIMESTAMP, DocumentStore, QuerySnapshot, DocumentSnapshot


class TestReadsAndWrites:
    """Test get/set/add."""

    async def test_get_missing_returns_none(self, store):
        """Test reading an empty path returns None."""
        assert await store.get("apps/a/users/u1/profile") is None

    async def test_set_then_get(self, store):
        """Test a written document can be read back."""
        await store.set("apps/a/directory/u1", {"uid": "u1", "displayName": "Sam"})

        assert await store.get("apps/a/directory/u1") == {"uid": "u1", "displayName": "Sam"}

    async def test_set_replaces(self, store):
        """Test set without merge drops fields not written."""
        await store.set("apps/a/directory/u1", {"uid": "u1", "displayName": "Sam"})
        await store.set("apps/a/directory/u1", {"uid": "u1"})

        assert await store.get("apps/a/directory/u1") == {"uid": "u1"}

    async def test_set_merge_keeps_fields(self, store):
        """Test merge only overwrites the written fields."""
        await store.set("apps/a/directory/u1", {"uid": "u1", "displayName": "Sam"})
        await store.set("apps/a/directory/u1", {"displayName": "Samir"}, merge=True)

        assert await store.get("apps/a/directory/u1") == {"uid": "u1", "displayName": "Samir"}

    async def test_server_timestamp_resolved(self, store):
        """Test SERVER_TIMESTAMP is replaced with an ISO-8601 UTC string."""
        stored = await store.set("apps/a/directory/u1", {"lastSeenAt": SERVER_TIMESTAMP})

        value = stored.data["lastSeenAt"]
        assert isinstance(value, str)
        assert value.endswith("Z")
        assert (await store.get("apps/a/directory/u1"))["lastSeenAt"] == value

    async def test_add_assigns_id(self, store):
        """Test appended documents get distinct store ids."""
        first = await store.add("apps/a/channels/c/messages", {"text": "one"})
        second = await store.add("apps/a/channels/c/messages", {"text": "two"})

        assert first.id and second.id
        assert first.id != second.id
        assert first.path == f"apps/a/channels/c/messages/{first.id}"
        assert await store.get(first.path) == {"text": "one"}

    async def test_server_timestamps_strictly_increase(self, store):
        """Test back-to-back writes never share or reverse timestamps."""
        stamps = []
        for i in range(20):
            doc = await store.add("apps/a/channels/c/messages", {"n": i, "sentAt": SERVER_TIMESTAMP})
            stamps.append(doc.data["sentAt"])

        assert stamps == sorted(stamps)
        assert len(set(stamps)) == len(stamps)


class TestQuery:
    """Test collection queries."""

    async def test_query_only_direct_children(self, store):
        """Test query returns documents of the collection only."""
        await store.set("apps/a/directory/u1", {"uid": "u1"})
        await store.set("apps/a/users/u1/profile", {"uid": "u1"})

        snapshot = store.query("apps/a/directory")

        assert [doc.id for doc in snapshot] == ["u1"]

    async def test_query_ordered_by_field(self, store):
        """Test ordering ascending by field with missing values last."""
        await store.set("apps/a/channels/c/messages/m3", {"sentAt": "2025-01-15T10:00:03.000000Z"})
        await store.set("apps/a/channels/c/messages/m1", {"sentAt": "2025-01-15T10:00:01.000000Z"})
        await store.set("apps/a/channels/c/messages/m0", {})
        await store.set("apps/a/channels/c/messages/m2", {"sentAt": "2025-01-15T10:00:02.000000Z"})

        snapshot = store.query("apps/a/channels/c/messages", order_by="sentAt")

        assert [doc.id for doc in snapshot] == ["m1", "m2", "m3", "m0"]


class TestSubscriptions:
    """Test live subscriptions."""

    async def test_initial_snapshot(self, store):
        """Test watch delivers the current result straight away."""
        await store.set("apps/a/directory/u1", {"uid": "u1"})
        subscription = store.watch("apps/a/directory")

        snapshot = await subscription.__anext__()

        assert [doc.id for doc in snapshot] == ["u1"]
        subscription.close()

    async def test_push_on_write(self, store):
        """Test each write to the collection pushes a new snapshot."""
        subscription = store.watch("apps/a/directory")
        assert len(await subscription.__anext__()) == 0

        await store.set("apps/a/directory/u1", {"uid": "u1"})
        snapshot = await subscription.__anext__()

        assert [doc.id for doc in snapshot] == ["u1"]
        subscription.close()

    async def test_other_collections_not_pushed(self, store, settle):
        """Test writes elsewhere do not reach the subscription."""
        received = []
        subscription = store.watch("apps/a/directory")
        subscription.listen(received.append)
        await settle(lambda: len(received) == 1)

        await store.set("apps/a/users/u1/profile", {"uid": "u1"})
        await settle()

        assert len(received) == 1
        subscription.close()

    async def test_listen_in_order(self, store, settle):
        """Test the handler sees snapshots in write order."""
        sizes = []
        subscription = store.watch("apps/a/channels/c/messages")
        subscription.listen(lambda snapshot: sizes.append(len(snapshot)))

        for i in range(3):
            await store.add("apps/a/channels/c/messages", {"n": i})

        await settle(lambda: len(sizes) == 4)
        assert sizes == [0, 1, 2, 3]
        subscription.close()

    async def test_async_handler_runs_to_completion(self, store, settle):
        """Test an async handler finishes one snapshot before the next starts."""
        events = []

        async def handler(snapshot):
            events.append(("start", len(snapshot)))
            await settle()
            events.append(("end", len(snapshot)))

        subscription = store.watch("apps/a/directory")
        subscription.listen(handler)
        await store.set("apps/a/directory/u1", {"uid": "u1"})

        await settle(lambda: len(events) == 4, attempts=200)
        assert events == [("start", 0), ("end", 0), ("start", 1), ("end", 1)]
        subscription.close()

    async def test_handler_error_does_not_stop_delivery(self, store, settle):
        """Test a failing handler still receives the next snapshot."""
        calls = []

        def handler(snapshot):
            calls.append(len(snapshot))
            if len(calls) == 1:
                raise RuntimeError("boom")

        subscription = store.watch("apps/a/directory")
        subscription.listen(handler)
        await store.set("apps/a/directory/u1", {"uid": "u1"})

        await settle(lambda: len(calls) == 2)
        assert calls == [0, 1]
        subscription.close()

    async def test_close_stops_delivery(self, store, settle):
        """Test nothing reaches the handler after close."""
        received = []
        subscription = store.watch("apps/a/directory")
        subscription.listen(received.append)
        await settle(lambda: len(received) == 1)

        subscription.close()
        await store.set("apps/a/directory/u1", {"uid": "u1"})
        await settle()

        assert len(received) == 1
        assert subscription.closed

    async def test_close_drops_queued_snapshots(self, store, settle):
        """Test snapshots queued before close are never handled."""
        received = []
        subscription = store.watch("apps/a/directory")
        subscription.listen(received.append)

        # Initial snapshot is queued but the listener has not run yet
        subscription.close()
        await settle()

        assert received == []

    async def test_close_idempotent(self, store):
        """Test closing twice is harmless."""
        subscription = store.watch("apps/a/directory")
        subscription.close()
        subscription.close()

        assert subscription.closed

    async def test_iteration_ends_after_close(self, store):
        """Test async iteration stops once closed."""
        subscription = store.watch("apps/a/directory")
        subscription.close()

        with pytest.raises(StopAsyncIteration):
            await subscription.__anext__()


class TestHealthAndErrors:
    """Test health check and failure handling."""

    async def test_health_ok(self, store):
        assert store.check_health() is True

    async def test_health_without_schema(self):
        """Test health fails before tables are created."""
        store = DocumentStore("sqlite://")
        try:
            assert store.check_health() is False
        finally:
            store.close()

    async def test_write_failure_raises_store_error(self, store, monkeypatch):
        """Test database errors surface as StoreError."""
        def broken_session():
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(store, "SessionLocal", broken_session)

        with pytest.raises(StoreError):
            await store.add("apps/a/channels/c/messages", {"text": "hi"})

    async def test_snapshot_types(self, store):
        """Test query results are plain snapshot objects."""
        await store.set("apps/a/directory/u1", {"uid": "u1"})
        snapshot = store.query("apps/a/directory")

        assert isinstance(snapshot, QuerySnapshot)
        assert isinstance(snapshot.documents[0], DocumentSnapshot)
        assert snapshot.collection == "apps/a/directory"
