"""Tests for the SQLite document store and its live queries."""

from datetime import datetime

import pytest

from dermasync.errors import DocumentNotFoundError
from dermasync.store import SERVER_TIMESTAMP, Query


@pytest.fixture
def query():
    return Query(collection="patients", where={"userId": "u1"}, order_by="createdAt", descending=True)


class TestDocuments:
    """Tests for document CRUD."""

    @pytest.mark.asyncio
    async def test_add_and_get(self, store):
        await store.add_document("patients", "p1", {"name": "Jane", "tags": ["a", "b"]})
        assert await store.get_document("patients", "p1") == {"name": "Jane", "tags": ["a", "b"]}

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        assert await store.get_document("patients", "nope") is None

    @pytest.mark.asyncio
    async def test_collections_are_separate(self, store):
        await store.add_document("patients", "x", {"name": "Jane"})
        assert await store.get_document("auditLogs", "x") is None

    @pytest.mark.asyncio
    async def test_update_merges_top_level_fields(self, store):
        await store.add_document("patients", "p1", {"name": "Jane", "diagnosisNotes": "old"})
        await store.update_document("patients", "p1", {"diagnosisNotes": "new"})
        assert await store.get_document("patients", "p1") == {"name": "Jane", "diagnosisNotes": "new"}

    @pytest.mark.asyncio
    async def test_update_missing_document_raises(self, store):
        with pytest.raises(DocumentNotFoundError):
            await store.update_document("patients", "ghost", {"name": "Ghost"})
        assert await store.get_document("patients", "ghost") is None

    @pytest.mark.asyncio
    async def test_merge_creates_missing_document(self, store):
        await store.update_document("patients", "p1", {"name": "Jane"}, merge=True)
        assert await store.get_document("patients", "p1") == {"name": "Jane"}

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.add_document("patients", "p1", {"name": "Jane"})
        await store.delete_document("patients", "p1")
        assert await store.get_document("patients", "p1") is None

    @pytest.mark.asyncio
    async def test_server_timestamp_resolved(self, store):
        await store.add_document("patients", "p1", {
            "createdAt": SERVER_TIMESTAMP,
            "nested": {"at": SERVER_TIMESTAMP},
        })
        fields = await store.get_document("patients", "p1")
        assert isinstance(fields["createdAt"], datetime)
        assert isinstance(fields["nested"]["at"], datetime)
        assert fields["createdAt"].tzinfo is not None

    def test_server_clock_strictly_increases(self, store):
        stamps = [store.server_now() for _ in range(100)]
        assert all(a < b for a, b in zip(stamps, stamps[1:]))


class TestQueries:
    """Tests for filtered, ordered queries."""

    @pytest.mark.asyncio
    async def test_filters_and_orders(self, store, query):
        await store.add_document("patients", "a", {"userId": "u1", "createdAt": SERVER_TIMESTAMP})
        await store.add_document("patients", "b", {"userId": "u2", "createdAt": SERVER_TIMESTAMP})
        await store.add_document("patients", "c", {"userId": "u1", "createdAt": SERVER_TIMESTAMP})
        documents = await store.run_query(query)
        assert [d.id for d in documents] == ["c", "a"]

    @pytest.mark.asyncio
    async def test_missing_order_field_goes_last(self, store, query):
        await store.add_document("patients", "a", {"userId": "u1"})
        await store.add_document("patients", "b", {"userId": "u1", "createdAt": SERVER_TIMESTAMP})
        documents = await store.run_query(query)
        assert [d.id for d in documents] == ["b", "a"]


class TestLiveQueries:
    """Tests for subscriptions."""

    @pytest.mark.asyncio
    async def test_initial_and_change_deliveries(self, store, query):
        snapshots = []
        store.subscribe(query, lambda docs: snapshots.append([d.id for d in docs]))
        await store.wait_for_pending_writes()
        assert snapshots == [[]]

        await store.add_document("patients", "a", {"userId": "u1", "createdAt": SERVER_TIMESTAMP})
        await store.wait_for_pending_writes()
        assert snapshots[-1] == ["a"]

    @pytest.mark.asyncio
    async def test_removed_subscription_gets_nothing(self, store, query):
        snapshots = []
        subscription = store.subscribe(query, snapshots.append)
        subscription.remove()
        await store.add_document("patients", "a", {"userId": "u1"})
        await store.wait_for_pending_writes()
        assert snapshots == []
        assert store.active_subscriptions("patients") == []

    @pytest.mark.asyncio
    async def test_other_collection_does_not_notify(self, store, query):
        snapshots = []
        store.subscribe(query, snapshots.append)
        await store.wait_for_pending_writes()
        await store.add_document("auditLogs", "x", {"userId": "u1"})
        await store.wait_for_pending_writes()
        assert len(snapshots) == 1

    @pytest.mark.asyncio
    async def test_callback_error_does_not_break_store(self, store, query):
        def failing(documents):
            raise RuntimeError("listener bug")

        store.subscribe(query, failing)
        await store.add_document("patients", "a", {"userId": "u1"})
        await store.wait_for_pending_writes()
        assert await store.get_document("patients", "a") == {"userId": "u1"}

    @pytest.mark.asyncio
    async def test_deliveries_arrive_in_write_order(self, store, query):
        counts = []
        store.subscribe(query, lambda docs: counts.append(len(docs)))
        for i in range(5):
            await store.add_document("patients", f"p{i}", {"userId": "u1", "createdAt": SERVER_TIMESTAMP})
        await store.wait_for_pending_writes()
        assert counts == sorted(counts)
        assert counts[-1] == 5
