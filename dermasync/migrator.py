"""Re-encryption of a user's stored patients under the current key."""

import logging
from dataclasses import dataclass, field

from dermasync.cipher_box import CipherBox, CipherError
from dermasync.errors import DermaSyncError, DocumentNotFoundError
from dermasync.record_codec import DIAGNOSIS_NOTES, DOSAGE, MEDICATIONS
from dermasync.repository import PatientRepository

logger = logging.getLogger(__name__)


@dataclass
class MigrationReport:
    total: int = 0
    migrated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    completed: bool = False


class ReEncryptionMigrator:
    """
    Decrypts and re-encrypts every owned patient's notes and dosages.

    Runs once per sign-in. Values the current key cannot open are tried
    against `retired_ciphers` (keys in use before a rotation). A record that
    still cannot be decrypted is skipped; a store failure ends the run with
    the records written so far kept. Unchanged records are rewritten anyway.
    """

    def __init__(
        self,
        repository: PatientRepository,
        cipher: CipherBox,
        retired_ciphers: list[CipherBox] | None = None,
    ):
        self.repository = repository
        self.cipher = cipher
        self.retired_ciphers = list(retired_ciphers or [])

    def _decrypt(self, value: str) -> str:
        try:
            return self.cipher.decrypt_strict(value)
        except CipherError as first_error:
            for retired in self.retired_ciphers:
                try:
                    return retired.decrypt_strict(value)
                except CipherError:
                    continue
            raise first_error

    def _reseal(self, value):
        if not isinstance(value, str):
            return value
        return self.cipher.encrypt_strict(self._decrypt(value))

    def reencrypt_fields(self, fields: dict) -> dict:
        """Return the re-encrypted notes and medications. Raises CipherError."""
        updates = {}
        if DIAGNOSIS_NOTES in fields:
            updates[DIAGNOSIS_NOTES] = self._reseal(fields[DIAGNOSIS_NOTES])

        medications = fields.get(MEDICATIONS)
        if isinstance(medications, list):
            resealed = []
            for medication in medications:
                if isinstance(medication, dict) and DOSAGE in medication:
                    medication = {**medication, DOSAGE: self._reseal(medication[DOSAGE])}
                resealed.append(medication)
            updates[MEDICATIONS] = resealed
        return updates

    async def run(self, identity: str | None) -> MigrationReport:
        report = MigrationReport()
        if not identity:
            logger.warning("No authenticated user for re-encryption")
            return report

        logger.info("Starting re-encryption process")
        try:
            documents = await self.repository.fetch_owned(identity)
        except (DermaSyncError, TimeoutError) as e:
            logger.error("Re-encryption failed: %s", e)
            return report

        report.total = len(documents)
        logger.info("Found %d documents to re-encrypt", report.total)

        for document in documents:
            try:
                updates = self.reencrypt_fields(document.fields)
            except CipherError as e:
                logger.warning("Skipping patient %s, could not decrypt (%s)", document.id, e)
                report.skipped.append(document.id)
                continue
            if not updates:
                report.migrated.append(document.id)
                continue

            try:
                await self.repository.update_fields(identity, document.id, updates)
            except DocumentNotFoundError:
                logger.info("Patient %s was deleted during re-encryption", document.id)
                report.skipped.append(document.id)
                continue
            except (DermaSyncError, TimeoutError) as e:
                logger.error(
                    "Re-encryption stopped after %d of %d patients: %s",
                    len(report.migrated), report.total, e,
                )
                return report
            report.migrated.append(document.id)

        report.completed = True
        logger.info("Re-encryption completed")
        return report
