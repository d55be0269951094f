"""Domain records for patients, medications and analysis groups."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


def new_id() -> str:
    return str(uuid.uuid4())


class RecommendationStatus(Enum):
    """Clinician decision on an AI medication recommendation."""
    APPROVED = "approved"
    DISAPPROVED = "disapproved"
    PENDING = "pending"


@dataclass
class Medication:
    name: str
    dosage: str
    frequency: str
    id: str = field(default_factory=new_id)


@dataclass
class PatientRecord:
    name: str
    diagnosis_notes: str = ""
    medications: list[Medication] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    user_id: str | None = None
    diagnosis_group: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    recommendation_status: RecommendationStatus | None = None

    def matches(self, search_text: str) -> bool:
        """Case-insensitive match on name, notes and medications."""
        if not search_text:
            return True
        needle = search_text.casefold()
        if needle in self.name.casefold() or needle in self.diagnosis_notes.casefold():
            return True
        return any(
            needle in med.name.casefold() or needle in med.dosage.casefold()
            for med in self.medications
        )


@dataclass
class DiseaseGroup:
    """One condition from an analysis run, with the patients it covers."""
    disease: str
    patients: list[str]
    recommended_medications: list[str]
    id: str = field(default_factory=new_id)
    timestamp: datetime | None = None
