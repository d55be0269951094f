"""Shared pytest fixtures."""

import base64
import json
import os
from unittest.mock import MagicMock

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from dermasync.cipher_box import CipherBox
from dermasync.classifier import DiagnosisClassifier
from dermasync.reachability import ReachabilityMonitor
from dermasync.record_codec import RecordCodec
from dermasync.repository import PatientRepository
from dermasync.store import SqliteDocumentStore
from dermasync.sync_listener import RemoteSyncListener
from dermasync.workspace import PatientWorkspace

TEST_KEY = bytes(range(32))
OTHER_KEY = bytes(range(32, 64))


def legacy_ciphertext(key: bytes, plaintext: str) -> str:
    """Bare base64(nonce || ciphertext || tag), as older clients wrote it."""
    nonce = os.urandom(12)
    sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(nonce + sealed).decode("ascii")


def make_completion(content: str) -> MagicMock:
    """Build a chat completion response carrying `content`."""
    message = MagicMock()
    message.content = content
    choice = MagicMock()
    choice.message = message
    response = MagicMock()
    response.choices = [choice]
    return response


def analysis_json(groups: list[dict]) -> str:
    return json.dumps({"groups": groups})


@pytest.fixture
def cipher():
    return CipherBox(TEST_KEY)


@pytest.fixture
def codec(cipher):
    return RecordCodec(cipher)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "dermasync.db"


@pytest.fixture
def store(db_path):
    return SqliteDocumentStore(db_path)


@pytest.fixture
def reachability():
    """Connected monitor that never touches the network."""
    session = MagicMock()
    session.head.return_value.status_code = 204
    return ReachabilityMonitor(session=session)


@pytest.fixture
def repository(store, codec, reachability):
    return PatientRepository(store, codec, reachability, write_timeout=2.0, add_timeout=2.0)


@pytest.fixture
def listener(store, codec):
    return RemoteSyncListener(store, codec)


@pytest.fixture
def mock_openai():
    """OpenAI client whose completions return an empty analysis by default."""
    client = MagicMock()
    client.chat.completions.create.return_value = make_completion(analysis_json([]))
    return client


@pytest.fixture
def classifier(mock_openai):
    return DiagnosisClassifier(mock_openai, model="test-model")


@pytest.fixture
def workspace(listener, repository, classifier, reachability):
    return PatientWorkspace(listener, repository, classifier, reachability, analysis_timeout=2.0)
