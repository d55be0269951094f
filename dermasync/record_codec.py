"""Mapping between patient records and stored documents."""

import logging
import uuid
from datetime import datetime, timezone

from dermasync.cipher_box import CipherBox
from dermasync.errors import NotAuthenticatedError
from dermasync.models import Medication, PatientRecord, RecommendationStatus
from dermasync.store import DocumentSnapshot

logger = logging.getLogger(__name__)

# Stored field names
ID = "id"
NAME = "name"
DIAGNOSIS_NOTES = "diagnosisNotes"
MEDICATIONS = "medications"
USER_ID = "userId"
DIAGNOSIS_GROUP = "diagnosisGroup"
CREATED_AT = "createdAt"
UPDATED_AT = "updatedAt"
RECOMMENDATION_STATUS = "recommendationStatus"
DOSAGE = "dosage"

OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def _is_uuid(value) -> bool:
    if not isinstance(value, str):
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def _timestamp(value) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return None


def _sort_key(record: PatientRecord) -> datetime:
    return record.created_at or OLDEST


class RecordCodec:
    """Encrypts notes and dosages on the way out, decrypts them on the way in."""

    def __init__(self, cipher: CipherBox):
        self.cipher = cipher

    def medication_to_dict(self, medication: Medication) -> dict:
        return {
            "id": medication.id,
            "name": medication.name,
            DOSAGE: self.cipher.encrypt(medication.dosage),
            "frequency": medication.frequency,
        }

    def to_document(self, record: PatientRecord, identity: str | None) -> dict:
        """
        Build the stored document for `record`.

        The owner is always the caller's identity. Timestamps are left to
        the store's server clock.
        """
        if not identity:
            raise NotAuthenticatedError()

        document = {
            ID: record.id,
            NAME: record.name,
            DIAGNOSIS_NOTES: self.cipher.encrypt(record.diagnosis_notes),
            MEDICATIONS: [self.medication_to_dict(m) for m in record.medications],
            USER_ID: identity,
        }
        if record.diagnosis_group is not None:
            document[DIAGNOSIS_GROUP] = record.diagnosis_group
        if record.recommendation_status is not None:
            document[RECOMMENDATION_STATUS] = record.recommendation_status.value
        return document

    def medication_from_dict(self, data) -> Medication | None:
        if not isinstance(data, dict):
            return None
        med_id = data.get("id")
        name = data.get("name")
        dosage = data.get(DOSAGE)
        frequency = data.get("frequency")
        if not _is_uuid(med_id) or not all(isinstance(v, str) for v in (name, dosage, frequency)):
            return None
        return Medication(
            id=med_id,
            name=name,
            dosage=self.cipher.decrypt(dosage),
            frequency=frequency,
        )

    def from_document(self, fields: dict) -> PatientRecord | None:
        """Decode a stored document, or return None if it is malformed."""
        record_id = fields.get(ID)
        name = fields.get(NAME)
        if not _is_uuid(record_id) or not isinstance(name, str):
            logger.warning("Dropping document with missing or malformed id/name")
            return None

        notes = fields.get(DIAGNOSIS_NOTES)
        notes = self.cipher.decrypt(notes) if isinstance(notes, str) else ""

        raw_medications = fields.get(MEDICATIONS)
        medications = []
        if isinstance(raw_medications, list):
            for item in raw_medications:
                medication = self.medication_from_dict(item)
                if medication is None:
                    logger.warning("Dropping malformed medication on patient %s", record_id)
                    continue
                medications.append(medication)

        status = None
        raw_status = fields.get(RECOMMENDATION_STATUS)
        if raw_status is not None:
            try:
                status = RecommendationStatus(raw_status)
            except ValueError:
                logger.warning("Unknown recommendation status %r on patient %s", raw_status, record_id)

        user_id = fields.get(USER_ID)
        group = fields.get(DIAGNOSIS_GROUP)
        return PatientRecord(
            id=record_id,
            name=name,
            diagnosis_notes=notes,
            medications=medications,
            user_id=user_id if isinstance(user_id, str) else None,
            diagnosis_group=group if isinstance(group, str) else None,
            created_at=_timestamp(fields.get(CREATED_AT)),
            updated_at=_timestamp(fields.get(UPDATED_AT)),
            recommendation_status=status,
        )

    def decode_snapshot(self, documents: list[DocumentSnapshot]) -> list[PatientRecord]:
        """Decode every document that can be decoded, newest first."""
        records = []
        for document in documents:
            try:
                record = self.from_document(document.fields)
            except Exception:
                logger.exception("Error processing document %s", document.id)
                continue
            if record is not None:
                records.append(record)
        records.sort(key=_sort_key, reverse=True)
        logger.debug("Decoded %d of %d documents", len(records), len(documents))
        return records
