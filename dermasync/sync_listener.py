"""Live-query listener that keeps the local patient collection in sync."""

import logging
from enum import Enum
from typing import Callable

from dermasync.models import PatientRecord
from dermasync.record_codec import CREATED_AT, USER_ID, RecordCodec
from dermasync.store import DocumentSnapshot, DocumentStore, Query, Subscription

logger = logging.getLogger(__name__)

PATIENTS_COLLECTION = "patients"


class ListenerState(Enum):
    """Lifecycle of the patient subscription."""
    INACTIVE = "inactive"
    ACTIVE = "active"
    SUSPENDED = "suspended"


class ListenerEvent(Enum):
    START = "start"
    SUSPEND = "suspend"
    RESUME = "resume"
    STOP = "stop"


# Allowed transitions; anything missing is ignored
TRANSITIONS = {
    (ListenerState.INACTIVE, ListenerEvent.START): ListenerState.ACTIVE,
    (ListenerState.ACTIVE, ListenerEvent.START): ListenerState.ACTIVE,
    (ListenerState.SUSPENDED, ListenerEvent.START): ListenerState.ACTIVE,
    (ListenerState.ACTIVE, ListenerEvent.SUSPEND): ListenerState.SUSPENDED,
    (ListenerState.SUSPENDED, ListenerEvent.RESUME): ListenerState.ACTIVE,
    (ListenerState.ACTIVE, ListenerEvent.STOP): ListenerState.INACTIVE,
    (ListenerState.SUSPENDED, ListenerEvent.STOP): ListenerState.INACTIVE,
}


def next_state(current: ListenerState, event: ListenerEvent) -> ListenerState | None:
    """Return the state after `event`, or None if the event does not apply."""
    return TRANSITIONS.get((current, event))


def owner_query(identity: str) -> Query:
    """Patients owned by `identity`, newest first."""
    return Query(
        collection=PATIENTS_COLLECTION,
        where={USER_ID: identity},
        order_by=CREATED_AT,
        descending=True,
    )


class RemoteSyncListener:
    """
    Publishes the signed-in user's patients as `records`.

    Every delivery is a full snapshot; it is decoded, re-sorted and swapped
    in as a whole. While suspended the subscription is torn down and any
    delivery still in flight is discarded. `resume()` attaches the same
    query again and re-fetches instead of relying on missed events.
    """

    def __init__(self, store: DocumentStore, codec: RecordCodec):
        self.store = store
        self.codec = codec
        self.state = ListenerState.INACTIVE
        self.identity: str | None = None
        self.records: list[PatientRecord] = []
        self._subscription: Subscription | None = None
        self._generation = 0
        self._observers: list[Callable[[list[PatientRecord]], None]] = []
        self._error_observers: list[Callable[[Exception], None]] = []

    @property
    def query(self) -> Query | None:
        return owner_query(self.identity) if self.identity else None

    def add_observer(self, callback: Callable[[list[PatientRecord]], None]) -> None:
        self._observers.append(callback)

    def add_error_observer(self, callback: Callable[[Exception], None]) -> None:
        self._error_observers.append(callback)

    def _transition(self, event: ListenerEvent) -> bool:
        target = next_state(self.state, event)
        if target is None:
            logger.debug("Ignoring %s while %s", event.value, self.state.value)
            return False
        logger.debug("Listener %s -> %s", self.state.value, target.value)
        self.state = target
        return True

    async def start(self, identity: str | None) -> bool:
        """Subscribe for `identity`. Without an identity this is a no-op."""
        if not identity:
            logger.warning("No authenticated user found when setting up listener")
            return False
        if self.identity and self.identity != identity:
            self.records = []
        self._detach()
        self.identity = identity
        self._transition(ListenerEvent.START)
        logger.info("Setting up patient listener for user %s", identity)
        await self._attach()
        return True

    def suspend(self) -> bool:
        """Stop applying remote changes, e.g. around a batch write."""
        if not self._transition(ListenerEvent.SUSPEND):
            return False
        self._detach()
        logger.info("Patient listener suspended")
        return True

    async def resume(self) -> bool:
        if not self._transition(ListenerEvent.RESUME):
            return False
        logger.info("Patient listener resumed")
        await self._attach()
        return True

    def stop(self) -> None:
        """Tear down on sign-out and clear the local collection."""
        self._detach()
        self._transition(ListenerEvent.STOP)
        self.identity = None
        self._publish([])

    async def refresh(self) -> None:
        """Fetch the latest snapshot and publish it."""
        query = self.query
        if query is None or self.state is not ListenerState.ACTIVE:
            return
        generation = self._generation
        documents = await self.store.run_query(query)
        self._handle_snapshot(generation, documents)

    async def _attach(self) -> None:
        self._generation += 1
        generation = self._generation
        self._subscription = self.store.subscribe(
            self.query,
            lambda documents: self._handle_snapshot(generation, documents),
            on_error=self._handle_error,
        )
        await self.refresh()

    def _detach(self) -> None:
        # Bumping the generation drops deliveries already in flight
        self._generation += 1
        if self._subscription is not None:
            self._subscription.remove()
            self._subscription = None

    def _handle_snapshot(self, generation: int, documents: list[DocumentSnapshot]) -> None:
        if generation != self._generation or self.state is not ListenerState.ACTIVE:
            logger.debug("Discarding snapshot of %d documents", len(documents))
            return
        logger.info("Received patient update with %d documents", len(documents))
        self._publish(self.codec.decode_snapshot(documents))

    def _handle_error(self, error: Exception) -> None:
        logger.error("Patient listener error: %s", error)
        for callback in list(self._error_observers):
            callback(error)

    def _publish(self, records: list[PatientRecord]) -> None:
        self.records = records
        for callback in list(self._observers):
            callback(records)

    def apply_local_patch(self, record: PatientRecord) -> bool:
        """
        Replace one record in place after a confirmed update, until the next
        snapshot arrives. Returns False if the record is not in the collection.
        """
        for index, existing in enumerate(self.records):
            if existing.id == record.id:
                patched = list(self.records)
                patched[index] = record
                self._publish(patched)
                return True
        return False
