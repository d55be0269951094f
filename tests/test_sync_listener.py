"""Tests for the patient sync listener."""

from unittest.mock import MagicMock

import pytest

from dermasync.errors import RemoteStoreError
from dermasync.models import PatientRecord
from dermasync.sync_listener import (
    ListenerEvent,
    ListenerState,
    next_state,
    owner_query,
)

USER = "user-1"


async def add(repository, store, name: str, identity: str = USER) -> PatientRecord:
    record = PatientRecord(name=name, diagnosis_notes=f"{name} notes")
    await repository.add_patient(identity, record)
    await store.wait_for_pending_writes()
    return record


class TestStateMachine:
    """Tests for listener transitions."""

    def test_start_from_inactive(self):
        assert next_state(ListenerState.INACTIVE, ListenerEvent.START) is ListenerState.ACTIVE

    def test_suspend_only_when_active(self):
        assert next_state(ListenerState.ACTIVE, ListenerEvent.SUSPEND) is ListenerState.SUSPENDED
        assert next_state(ListenerState.INACTIVE, ListenerEvent.SUSPEND) is None
        assert next_state(ListenerState.SUSPENDED, ListenerEvent.SUSPEND) is None

    def test_resume_only_when_suspended(self):
        assert next_state(ListenerState.SUSPENDED, ListenerEvent.RESUME) is ListenerState.ACTIVE
        assert next_state(ListenerState.ACTIVE, ListenerEvent.RESUME) is None

    def test_stop_from_any_live_state(self):
        assert next_state(ListenerState.ACTIVE, ListenerEvent.STOP) is ListenerState.INACTIVE
        assert next_state(ListenerState.SUSPENDED, ListenerEvent.STOP) is ListenerState.INACTIVE

    def test_owner_query(self):
        query = owner_query(USER)
        assert query.collection == "patients"
        assert query.where == {"userId": USER}
        assert query.order_by == "createdAt"
        assert query.descending


class TestLifecycle:
    """Tests for start/stop."""

    @pytest.mark.asyncio
    async def test_start_without_identity_is_noop(self, listener, store):
        assert await listener.start(None) is False
        assert listener.state is ListenerState.INACTIVE
        assert store.active_subscriptions("patients") == []

    @pytest.mark.asyncio
    async def test_start_publishes_existing_records(self, listener, repository, store):
        await add(repository, store, "Jane")
        await listener.start(USER)
        assert listener.state is ListenerState.ACTIVE
        assert [r.name for r in listener.records] == ["Jane"]

    @pytest.mark.asyncio
    async def test_live_changes_are_published_newest_first(self, listener, repository, store):
        await listener.start(USER)
        await add(repository, store, "First")
        await add(repository, store, "Second")
        assert [r.name for r in listener.records] == ["Second", "First"]

    @pytest.mark.asyncio
    async def test_only_own_records(self, listener, repository, store):
        await add(repository, store, "Mine")
        await add(repository, store, "Theirs", identity="user-2")
        await listener.start(USER)
        assert [r.name for r in listener.records] == ["Mine"]

    @pytest.mark.asyncio
    async def test_restart_replaces_subscription(self, listener, store):
        await listener.start(USER)
        await listener.start(USER)
        assert len(store.active_subscriptions("patients")) == 1

    @pytest.mark.asyncio
    async def test_switching_user_clears_records(self, listener, repository, store):
        await add(repository, store, "Mine")
        await listener.start(USER)
        await listener.start("user-2")
        assert listener.records == []
        assert listener.identity == "user-2"

    @pytest.mark.asyncio
    async def test_stop_clears_everything(self, listener, repository, store):
        await add(repository, store, "Jane")
        await listener.start(USER)
        observer = MagicMock()
        listener.add_observer(observer)

        listener.stop()

        assert listener.state is ListenerState.INACTIVE
        assert listener.records == []
        assert listener.identity is None
        assert store.active_subscriptions("patients") == []
        observer.assert_called_with([])

    @pytest.mark.asyncio
    async def test_live_query_errors_reach_observers(self, listener, store):
        await listener.start(USER)
        observer = MagicMock()
        listener.add_error_observer(observer)
        error = RemoteStoreError("database is locked")

        store.active_subscriptions("patients")[0].fail(error)

        observer.assert_called_once_with(error)
        assert listener.state is ListenerState.ACTIVE


class TestSuspendResume:
    """Tests for pausing around batch writes."""

    @pytest.mark.asyncio
    async def test_suspended_listener_ignores_changes(self, listener, repository, store):
        await add(repository, store, "Before")
        await listener.start(USER)

        assert listener.suspend() is True
        await add(repository, store, "During")

        assert listener.state is ListenerState.SUSPENDED
        assert [r.name for r in listener.records] == ["Before"]
        assert store.active_subscriptions("patients") == []

    @pytest.mark.asyncio
    async def test_resume_fetches_fresh_snapshot(self, listener, repository, store):
        await add(repository, store, "Before")
        await listener.start(USER)
        listener.suspend()
        await add(repository, store, "During")

        assert await listener.resume() is True

        assert listener.state is ListenerState.ACTIVE
        assert [r.name for r in listener.records] == ["During", "Before"]
        assert len(store.active_subscriptions("patients")) == 1

    @pytest.mark.asyncio
    async def test_in_flight_delivery_is_dropped(self, listener, codec, store):
        await listener.start(USER)
        await store.wait_for_pending_writes()
        record = PatientRecord(name="Racing")
        await store.add_document("patients", record.id, codec.to_document(record, USER))
        # The write's delivery is scheduled but has not run yet
        listener.suspend()
        await store.wait_for_pending_writes()
        assert listener.records == []

    @pytest.mark.asyncio
    async def test_suspend_when_inactive_is_ignored(self, listener):
        assert listener.suspend() is False
        assert await listener.resume() is False
        assert listener.state is ListenerState.INACTIVE

    @pytest.mark.asyncio
    async def test_stale_generation_is_discarded(self, listener, codec, repository, store):
        await listener.start(USER)
        stale_generation = listener._generation - 1
        documents = await repository.fetch_owned(USER)
        await add(repository, store, "Jane")
        listener._handle_snapshot(stale_generation, documents)
        assert [r.name for r in listener.records] == ["Jane"]


class TestLocalPatch:
    """Tests for optimistic updates."""

    @pytest.mark.asyncio
    async def test_patch_replaces_in_place(self, listener, repository, store):
        jane = await add(repository, store, "Jane")
        await add(repository, store, "John")
        await listener.start(USER)

        patched = PatientRecord(id=jane.id, name="Jane", diagnosis_notes="updated")
        assert listener.apply_local_patch(patched) is True
        assert [r.name for r in listener.records] == ["John", "Jane"]
        assert listener.records[1].diagnosis_notes == "updated"

    @pytest.mark.asyncio
    async def test_patch_unknown_record(self, listener):
        await listener.start(USER)
        assert listener.apply_local_patch(PatientRecord(name="Nobody")) is False
