"""Owner-scoped patient writes with pre-flight checks and audit logging."""

import logging

from dermasync.errors import NotAuthenticatedError, NotAuthorizedError
from dermasync.models import DiseaseGroup, PatientRecord, new_id
from dermasync.reachability import ReachabilityMonitor
from dermasync.record_codec import CREATED_AT, UPDATED_AT, USER_ID, RecordCodec
from dermasync.store import SERVER_TIMESTAMP, DocumentSnapshot, DocumentStore
from dermasync.sync_listener import PATIENTS_COLLECTION, owner_query
from dermasync.timeouts import with_timeout

logger = logging.getLogger(__name__)

AUDIT_COLLECTION = "auditLogs"
ANALYSES_COLLECTION = "analyses"


def _require_identity(identity: str | None) -> str:
    if not identity:
        raise NotAuthenticatedError()
    return identity


class PatientRepository:
    """
    Remote patient operations for one signed-in identity at a time.

    Every write checks identity and connectivity before touching the
    store, and runs under a deadline. Timeouts surface as
    OperationTimeoutError: the write may or may not have landed.
    """

    def __init__(
        self,
        store: DocumentStore,
        codec: RecordCodec,
        reachability: ReachabilityMonitor,
        write_timeout: float = 10.0,
        add_timeout: float = 15.0,
    ):
        self.store = store
        self.codec = codec
        self.reachability = reachability
        self.write_timeout = write_timeout
        self.add_timeout = add_timeout

    def _preflight(self, identity: str | None) -> str:
        identity = _require_identity(identity)
        self.reachability.ensure_connected()
        return identity

    async def _verify_owner(self, identity: str, patient_id: str) -> None:
        document = await self.store.get_document(PATIENTS_COLLECTION, patient_id)
        if document is None or document.get(USER_ID) != identity:
            raise NotAuthorizedError()

    async def _log_action(self, identity: str, action: str, patient_id: str) -> None:
        """Append an entry to the audit log."""
        await self.store.add_document(AUDIT_COLLECTION, new_id(), {
            "userId": identity,
            "action": action,
            "patientId": patient_id,
            "timestamp": SERVER_TIMESTAMP,
        })

    async def add_patient(self, identity: str | None, record: PatientRecord) -> None:
        identity = self._preflight(identity)
        document = self.codec.to_document(record, identity)
        document[CREATED_AT] = SERVER_TIMESTAMP
        document[UPDATED_AT] = SERVER_TIMESTAMP

        async def write():
            await self.store.add_document(PATIENTS_COLLECTION, record.id, document)
            await self._log_action(identity, "create", record.id)

        logger.info("Adding patient %s", record.id)
        await with_timeout(self.add_timeout, write)

    async def update_patient(self, identity: str | None, record: PatientRecord) -> None:
        identity = self._preflight(identity)
        document = self.codec.to_document(record, identity)
        document[UPDATED_AT] = SERVER_TIMESTAMP

        async def write():
            await self._verify_owner(identity, record.id)
            await self.store.update_document(PATIENTS_COLLECTION, record.id, document)
            await self._log_action(identity, "update", record.id)

        logger.info("Updating patient %s", record.id)
        await with_timeout(self.write_timeout, write)

    async def delete_patient(self, identity: str | None, patient_id: str) -> None:
        identity = self._preflight(identity)

        async def write():
            await self._verify_owner(identity, patient_id)
            await self.store.delete_document(PATIENTS_COLLECTION, patient_id)
            await self._log_action(identity, "delete", patient_id)

        logger.info("Deleting patient %s", patient_id)
        await with_timeout(self.write_timeout, write)

    async def get_patient(self, identity: str | None, patient_id: str) -> PatientRecord | None:
        identity = _require_identity(identity)
        fields = await with_timeout(
            self.write_timeout,
            lambda: self.store.get_document(PATIENTS_COLLECTION, patient_id),
        )
        if fields is None:
            return None
        if fields.get(USER_ID) != identity:
            raise NotAuthorizedError()
        return self.codec.from_document(fields)

    async def fetch_owned(self, identity: str | None) -> list[DocumentSnapshot]:
        """Raw stored documents owned by `identity`, newest first."""
        identity = self._preflight(identity)
        return await with_timeout(
            self.write_timeout, lambda: self.store.run_query(owner_query(identity))
        )

    async def update_fields(self, identity: str | None, patient_id: str, fields: dict) -> None:
        """
        Write only `fields` onto an existing patient, leaving concurrent
        changes to other fields intact. A deleted patient is not recreated.
        """
        identity = self._preflight(identity)
        payload = dict(fields)
        payload[UPDATED_AT] = SERVER_TIMESTAMP
        await with_timeout(
            self.write_timeout,
            lambda: self.store.update_document(PATIENTS_COLLECTION, patient_id, payload),
        )

    async def save_analysis(self, identity: str | None, groups: list[DiseaseGroup]) -> str:
        """Store one analysis run as a snapshot document. Returns its id."""
        identity = self._preflight(identity)
        analysis_id = new_id()
        document = {
            "userId": identity,
            "createdAt": SERVER_TIMESTAMP,
            "groups": [
                {
                    "disease": group.disease,
                    "patients": group.patients,
                    "recommendedMedications": group.recommended_medications,
                    "timestamp": SERVER_TIMESTAMP,
                }
                for group in groups
            ],
        }
        await with_timeout(
            self.write_timeout,
            lambda: self.store.add_document(ANALYSES_COLLECTION, analysis_id, document),
        )
        return analysis_id
