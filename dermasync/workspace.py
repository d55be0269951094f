"""Patient workspace: the state and actions the console works against."""

import csv
import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path

from dermasync.classifier import DiagnosisClassifier
from dermasync.errors import DermaSyncError, InvalidDataError
from dermasync.models import DiseaseGroup, Medication, PatientRecord, RecommendationStatus
from dermasync.reachability import ReachabilityMonitor
from dermasync.repository import PatientRepository
from dermasync.sync_listener import RemoteSyncListener
from dermasync.timeouts import with_timeout

logger = logging.getLogger(__name__)

PENDING_DOSAGE = "Dosage to be determined"
PENDING_FREQUENCY = "Frequency to be determined"

CSV_COLUMNS = [
    "Name",
    "Diagnosis Notes",
    "Diagnosis Group",
    "Medications",
    "Recommendation Status",
    "Created At",
]


@dataclass
class BatchResult:
    """Outcome of a batch recommendation, by patient name."""
    approve: bool
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        if not self.failed and not self.missing:
            verb = "approved" if self.approve else "disapproved"
            return f"All selected patients' recommendations {verb}"
        return (
            f"{len(self.succeeded)} patients updated successfully. "
            f"{len(self.failed) + len(self.missing)} patients failed to update."
        )


def apply_group_recommendation(
    record: PatientRecord, group: DiseaseGroup, approve: bool
) -> PatientRecord:
    """
    Return a copy of `record` with the group's recommendation applied.

    Approving adds the recommended medications the patient does not have
    yet. Disapproving removes them again, but only from a patient whose
    recommendation was previously approved.
    """
    medications = list(record.medications)
    if approve:
        existing = {m.name for m in medications}
        for name in group.recommended_medications:
            if name not in existing:
                medications.append(Medication(name, PENDING_DOSAGE, PENDING_FREQUENCY))
                existing.add(name)
        status = RecommendationStatus.APPROVED
    else:
        if record.recommendation_status is RecommendationStatus.APPROVED:
            recommended = set(group.recommended_medications)
            medications = [m for m in medications if m.name not in recommended]
        status = RecommendationStatus.DISAPPROVED
    return dataclasses.replace(record, medications=medications, recommendation_status=status)


class PatientWorkspace:
    """
    The signed-in user's patients plus the latest analysis.

    `patients` is whatever the sync listener last published. Updates are
    patched in locally once the write is confirmed, so the change shows
    before the next snapshot.
    """

    def __init__(
        self,
        listener: RemoteSyncListener,
        repository: PatientRepository,
        classifier: DiagnosisClassifier,
        reachability: ReachabilityMonitor,
        analysis_timeout: float = 30.0,
    ):
        self.listener = listener
        self.repository = repository
        self.classifier = classifier
        self.reachability = reachability
        self.analysis_timeout = analysis_timeout
        self.analysis_results: list[DiseaseGroup] = []
        self.diagnosis_groups: dict[str, list[PatientRecord]] = {}
        self.listener.add_observer(self._on_records)

    @property
    def patients(self) -> list[PatientRecord]:
        return self.listener.records

    def filtered_patients(self, search_text: str = "") -> list[PatientRecord]:
        return [p for p in self.patients if p.matches(search_text)]

    def find_by_name(self, name: str) -> PatientRecord | None:
        return next((p for p in self.patients if p.name == name), None)

    def _on_records(self, records: list[PatientRecord]) -> None:
        if not records:
            self.analysis_results = []
        self.update_diagnosis_groups()

    def update_diagnosis_groups(self) -> None:
        """Rebuild disease -> patients from the latest analysis."""
        groups = {}
        for group in self.analysis_results:
            names = set(group.patients)
            groups[group.disease] = [p for p in self.patients if p.name in names]
        self.diagnosis_groups = groups

    async def add_patient(self, identity: str | None, record: PatientRecord) -> None:
        await self.repository.add_patient(identity, record)

    async def update_patient(self, identity: str | None, record: PatientRecord) -> None:
        await self.repository.update_patient(identity, record)
        self.listener.apply_local_patch(record)

    async def delete_patient(self, identity: str | None, patient_id: str) -> None:
        await self.repository.delete_patient(identity, patient_id)

    async def _resume_listener(self) -> None:
        try:
            await self.listener.resume()
        except DermaSyncError as e:
            logger.error("Failed to refresh patients after resuming: %s", e)

    async def analyze(self, identity: str | None) -> list[DiseaseGroup]:
        """Classify the caller's patients into disease groups."""
        self.reachability.ensure_connected()
        records = [p for p in self.patients if p.user_id == identity] if identity else []
        if not records:
            raise InvalidDataError("No patients to analyze")

        suspended = self.listener.suspend()
        try:
            groups = await with_timeout(
                self.analysis_timeout, lambda: self.classifier.classify(records)
            )
            try:
                analysis_id = await self.repository.save_analysis(identity, groups)
                logger.info("Stored analysis %s", analysis_id)
            except DermaSyncError as e:
                logger.error("Failed to store analysis results: %s", e)

            self.analysis_results = groups
            self.update_diagnosis_groups()
            return groups
        finally:
            if suspended:
                await self._resume_listener()

    async def apply_recommendation(
        self,
        identity: str | None,
        group: DiseaseGroup,
        patient_names: list[str],
        approve: bool,
    ) -> BatchResult:
        """Approve or disapprove `group`'s medications for the named patients."""
        result = BatchResult(approve=approve)
        if not patient_names:
            return result

        suspended = self.listener.suspend()
        try:
            for name in patient_names:
                patient = self.find_by_name(name)
                if patient is None:
                    logger.warning("Patient %r is not in the collection", name)
                    result.missing.append(name)
                    continue
                updated = apply_group_recommendation(patient, group, approve)
                try:
                    await self.update_patient(identity, updated)
                except DermaSyncError as e:
                    logger.error("Failed to update patient %s: %s", patient.id, e)
                    result.failed.append(name)
                    continue
                result.succeeded.append(name)
        finally:
            if suspended:
                await self._resume_listener()

        logger.info(
            "Batch %s: %d updated, %d failed",
            "approval" if approve else "disapproval",
            len(result.succeeded), len(result.failed) + len(result.missing),
        )
        self.update_diagnosis_groups()
        return result

    def export_csv(self, path: Path) -> Path:
        """Write the current patients, decrypted, to a CSV file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(CSV_COLUMNS)
            for patient in self.patients:
                writer.writerow([
                    patient.name,
                    patient.diagnosis_notes,
                    patient.diagnosis_group or "",
                    "; ".join(
                        f"{m.name} {m.dosage} {m.frequency}" for m in patient.medications
                    ),
                    patient.recommendation_status.value if patient.recommendation_status else "",
                    patient.created_at.isoformat() if patient.created_at else "",
                ])
        logger.info("Exported %d patients", len(self.patients))
        return path
