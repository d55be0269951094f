"""Diagnosis grouping using Pydantic models and OpenAI structured output."""

import asyncio
import json
import logging
from datetime import datetime, timezone

import openai
from openai import OpenAI
from pydantic import BaseModel, Field, ValidationError

from dermasync.errors import AIServiceError, InvalidDataError, OperationTimeoutError
from dermasync.models import DiseaseGroup, PatientRecord

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"


class GroupData(BaseModel):
    """One condition as returned by the model."""

    disease: str = Field(..., description="Condition name")
    patients: list[str] = Field(default_factory=list, description="Patient display names")
    recommended_medications: list[str] = Field(
        default_factory=list, description="Medication names recommended for the condition"
    )


class AnalysisResponse(BaseModel):
    groups: list[GroupData]


SYSTEM_PROMPT = (
    "You are a dermatology expert. Analyze the patient diagnoses and group them by condition."
)

ANALYSIS_PROMPT = """Analyze these dermatological diagnoses and group patients by common skin conditions:

{patient_list}

Respond with only a JSON object in this exact format:
{{
    "groups": [
        {{
            "disease": "Disease Name",
            "patients": ["Patient Name 1", "Patient Name 2"],
            "recommended_medications": ["Medication 1", "Medication 2"]
        }}
    ]
}}"""


def extract_embedded_json(text: str) -> dict:
    """
    Parse the JSON object that starts at the first `{` in `text`.

    Compatibility path for replies that wrap the object in prose. Any brace
    in the prose before the object makes this fail.
    """
    start = text.find("{")
    if start == -1:
        raise InvalidDataError("No JSON object in analysis response")
    try:
        data, _ = json.JSONDecoder().raw_decode(text, start)
    except json.JSONDecodeError as e:
        raise InvalidDataError(f"Malformed JSON in analysis response: {e.msg}") from e
    if not isinstance(data, dict):
        raise InvalidDataError("Analysis response is not a JSON object")
    return data


def parse_analysis(text: str) -> list[DiseaseGroup]:
    """Turn a model reply into disease groups. No partial result on failure."""
    if not text or not text.strip():
        raise InvalidDataError("Empty analysis response")
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = extract_embedded_json(text)

    try:
        response = AnalysisResponse(**data) if isinstance(data, dict) else None
    except ValidationError as e:
        raise InvalidDataError(
            f"Analysis response has the wrong shape ({e.error_count()} errors)"
        ) from e
    if response is None:
        raise InvalidDataError("Analysis response is not a JSON object")

    completed_at = datetime.now(timezone.utc)
    return [
        DiseaseGroup(
            disease=group.disease,
            patients=group.patients,
            recommended_medications=group.recommended_medications,
            timestamp=completed_at,
        )
        for group in response.groups
    ]


def format_patient_list(records: list[PatientRecord]) -> str:
    return "\n".join(f"Patient {r.name}: {r.diagnosis_notes}" for r in records)


class DiagnosisClassifier:
    """Groups decrypted patient diagnoses into conditions via the LLM."""

    def __init__(self, client: OpenAI, model: str = DEFAULT_MODEL, max_tokens: int = 1024):
        self.client = client
        self.model = model
        self.max_tokens = max_tokens

    def _complete(self, messages: list[dict], json_mode: bool) -> str:
        kwargs = {"model": self.model, "messages": messages, "max_tokens": self.max_tokens}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            response = self.client.chat.completions.create(**kwargs)
        except openai.APITimeoutError as e:
            raise OperationTimeoutError("Request timed out. Please try again") from e
        except openai.AuthenticationError as e:
            raise AIServiceError(
                "Authentication failed. Please check your API key", status_code=e.status_code
            ) from e
        except openai.APIStatusError as e:
            raise AIServiceError(
                f"Server error with status code: {e.status_code}", status_code=e.status_code
            ) from e
        except openai.APIConnectionError as e:
            raise AIServiceError(
                "Network connection error. Please check your internet connection"
            ) from e

        if not response.choices:
            raise InvalidDataError("Invalid data received from server")
        return response.choices[0].message.content or ""

    def classify_sync(self, records: list[PatientRecord]) -> list[DiseaseGroup]:
        if not records:
            raise InvalidDataError("No patients to analyze")
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": ANALYSIS_PROMPT.format(patient_list=format_patient_list(records))},
        ]
        logger.info("Requesting diagnosis grouping for %d patients", len(records))
        groups = parse_analysis(self._complete(messages, json_mode=True))
        logger.info("Analysis returned %d groups", len(groups))
        return groups

    async def classify(self, records: list[PatientRecord]) -> list[DiseaseGroup]:
        return await asyncio.to_thread(self.classify_sync, records)

    async def check_connection(self) -> str:
        """Send a trivial prompt and return the reply text."""
        messages = [{
            "role": "user",
            "content": "Please respond with 'Test successful' if you receive this message.",
        }]
        return await asyncio.to_thread(self._complete, messages, False)
