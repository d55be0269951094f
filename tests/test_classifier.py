"""Tests for AI diagnosis grouping."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import httpx
import openai
import pytest

from dermasync.classifier import extract_embedded_json, parse_analysis
from dermasync.errors import AIServiceError, InvalidDataError, OperationTimeoutError
from dermasync.models import PatientRecord

from conftest import analysis_json, make_completion

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def status_error(cls, status_code: int):
    response = httpx.Response(status_code, request=REQUEST)
    return cls("error", response=response, body=None)


class TestParseAnalysis:
    """Tests for parsing model replies."""

    def test_plain_json(self):
        text = analysis_json([
            {"disease": "Acne", "patients": ["Jane"], "recommended_medications": ["Tretinoin"]},
            {"disease": "Rosacea", "patients": ["John", "Ann"], "recommended_medications": []},
        ])
        groups = parse_analysis(text)
        assert [g.disease for g in groups] == ["Acne", "Rosacea"]
        assert groups[1].patients == ["John", "Ann"]

    def test_groups_share_completion_time(self):
        before = datetime.now(timezone.utc)
        groups = parse_analysis(analysis_json([
            {"disease": "Acne", "patients": ["Jane"]},
            {"disease": "Rosacea", "patients": ["John"]},
        ]))
        assert groups[0].timestamp is not None
        assert groups[0].timestamp >= before
        assert groups[0].timestamp == groups[1].timestamp

    def test_json_embedded_in_prose(self):
        text = (
            'Here is the result: {"groups":[{"disease":"Acne","patients":["Jane"],'
            '"recommended_medications":["Tretinoin"]}]}'
        )
        groups = parse_analysis(text)
        assert len(groups) == 1
        assert groups[0].disease == "Acne"
        assert groups[0].patients == ["Jane"]
        assert groups[0].recommended_medications == ["Tretinoin"]

    def test_trailing_prose_is_ignored(self):
        text = 'Result: {"groups": []} Let me know if you need more.'
        assert parse_analysis(text) == []

    def test_brace_in_leading_prose_fails(self):
        text = 'Using {format}: {"groups": []}'
        with pytest.raises(InvalidDataError):
            parse_analysis(text)

    @pytest.mark.parametrize("text", [
        "",
        "   ",
        "no json here",
        '{"groups": [',
        '{"groups": "not a list"}',
        '{"other": []}',
        '[{"disease": "Acne"}]',
        '{"groups": [{"patients": ["Jane"]}]}',
    ])
    def test_unusable_replies(self, text):
        with pytest.raises(InvalidDataError):
            parse_analysis(text)

    def test_missing_lists_default_to_empty(self):
        groups = parse_analysis('{"groups": [{"disease": "Psoriasis"}]}')
        assert groups[0].patients == []
        assert groups[0].recommended_medications == []

    def test_extract_requires_object(self):
        with pytest.raises(InvalidDataError):
            extract_embedded_json("nothing to see")


class TestClassifier:
    """Tests for the OpenAI-backed classifier."""

    @pytest.mark.asyncio
    async def test_requests_json_response(self, classifier, mock_openai):
        mock_openai.chat.completions.create.return_value = make_completion(analysis_json([
            {"disease": "Eczema", "patients": ["Jane"], "recommended_medications": ["Tacrolimus"]},
        ]))
        records = [PatientRecord(name="Jane", diagnosis_notes="eczema, dry skin")]

        groups = await classifier.classify(records)

        assert groups[0].disease == "Eczema"
        kwargs = mock_openai.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["response_format"] == {"type": "json_object"}
        prompt = kwargs["messages"][-1]["content"]
        assert "Patient Jane: eczema, dry skin" in prompt

    @pytest.mark.asyncio
    async def test_empty_input(self, classifier, mock_openai):
        with pytest.raises(InvalidDataError):
            await classifier.classify([])
        mock_openai.chat.completions.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_choices(self, classifier, mock_openai):
        response = MagicMock()
        response.choices = []
        mock_openai.chat.completions.create.return_value = response
        with pytest.raises(InvalidDataError):
            await classifier.classify([PatientRecord(name="Jane")])

    @pytest.mark.asyncio
    async def test_timeout_maps_to_operation_timeout(self, classifier, mock_openai):
        mock_openai.chat.completions.create.side_effect = openai.APITimeoutError(request=REQUEST)
        with pytest.raises(OperationTimeoutError):
            await classifier.classify([PatientRecord(name="Jane")])

    @pytest.mark.asyncio
    async def test_bad_api_key(self, classifier, mock_openai):
        mock_openai.chat.completions.create.side_effect = status_error(openai.AuthenticationError, 401)
        with pytest.raises(AIServiceError) as excinfo:
            await classifier.classify([PatientRecord(name="Jane")])
        assert excinfo.value.status_code == 401
        assert "API key" in excinfo.value.message

    @pytest.mark.asyncio
    async def test_server_error(self, classifier, mock_openai):
        mock_openai.chat.completions.create.side_effect = status_error(openai.InternalServerError, 500)
        with pytest.raises(AIServiceError) as excinfo:
            await classifier.classify([PatientRecord(name="Jane")])
        assert excinfo.value.status_code == 500

    @pytest.mark.asyncio
    async def test_connection_error(self, classifier, mock_openai):
        mock_openai.chat.completions.create.side_effect = openai.APIConnectionError(request=REQUEST)
        with pytest.raises(AIServiceError):
            await classifier.classify([PatientRecord(name="Jane")])

    @pytest.mark.asyncio
    async def test_check_connection(self, classifier, mock_openai):
        mock_openai.chat.completions.create.return_value = make_completion("Test successful")
        assert await classifier.check_connection() == "Test successful"
        kwargs = mock_openai.chat.completions.create.call_args.kwargs
        assert "response_format" not in kwargs
