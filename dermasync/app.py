"""Wires the components together for one running client."""

import logging
from dataclasses import dataclass

from openai import OpenAI

from dermasync.auth import AuthProvider, AuthSession, LocalAuthProvider
from dermasync.cipher_box import CipherBox
from dermasync.classifier import DiagnosisClassifier
from dermasync.config import Settings
from dermasync.errors import NotAuthenticatedError
from dermasync.key_store import FileSecureStorage, KeyStore, SecureStorage
from dermasync.migrator import MigrationReport, ReEncryptionMigrator
from dermasync.reachability import ReachabilityMonitor
from dermasync.record_codec import RecordCodec
from dermasync.repository import PatientRepository
from dermasync.store import DocumentStore, SqliteDocumentStore
from dermasync.sync_listener import RemoteSyncListener
from dermasync.workspace import PatientWorkspace

logger = logging.getLogger(__name__)


def load_ciphers(key_store: KeyStore) -> tuple[CipherBox, list[CipherBox]]:
    """The cipher for the current key, and one per retired key for migration."""
    retired_keys = key_store.load_retired()
    cipher = CipherBox(key_store.load_or_create(), retired_keys=retired_keys)
    return cipher, [CipherBox(key) for key in retired_keys]


@dataclass
class App:
    settings: Settings
    store: DocumentStore
    session: AuthSession
    key_store: KeyStore
    cipher: CipherBox
    codec: RecordCodec
    reachability: ReachabilityMonitor
    repository: PatientRepository
    listener: RemoteSyncListener
    migrator: ReEncryptionMigrator
    classifier: DiagnosisClassifier
    workspace: PatientWorkspace

    @property
    def identity(self) -> str | None:
        return self.session.current_identity()

    async def handle_identity_change(self, identity: str | None) -> None:
        """Start syncing and migrate on sign-in, tear down on sign-out."""
        if identity is None:
            self.listener.stop()
            return
        await self.listener.start(identity)
        await self.migrate(identity)

    async def migrate(self, identity: str) -> MigrationReport:
        report = await self.migrator.run(identity)
        logger.info(
            "Re-encryption: %d of %d migrated, %d skipped",
            len(report.migrated), report.total, len(report.skipped),
        )
        return report

    async def rotate_key(self) -> MigrationReport:
        """
        Switch to a fresh key and re-encrypt the signed-in user's patients.

        The old key is kept as retired so the migration can still open
        records written under it.
        """
        identity = self.identity
        if not identity:
            raise NotAuthenticatedError()
        self.key_store.rotate()
        self.cipher, retired = load_ciphers(self.key_store)
        self.codec.cipher = self.cipher
        self.migrator.cipher = self.cipher
        self.migrator.retired_ciphers = retired
        return await self.migrate(identity)

    async def start(self) -> None:
        self.reachability.start()

    async def shutdown(self) -> None:
        self.listener.stop()
        await self.reachability.stop()


def build_app(
    settings: Settings,
    secure_storage: SecureStorage | None = None,
    openai_client: OpenAI | None = None,
    store: DocumentStore | None = None,
    auth_provider: AuthProvider | None = None,
    reachability: ReachabilityMonitor | None = None,
) -> App:
    """Build every component once. Collaborators can be swapped for tests."""
    key_store = KeyStore(secure_storage or FileSecureStorage(settings.key_dir))
    cipher, retired = load_ciphers(key_store)

    store = store or SqliteDocumentStore(settings.db_path)
    session = AuthSession(auth_provider or LocalAuthProvider(settings.db_path))
    reachability = reachability or ReachabilityMonitor(
        probe_url=settings.reachability_url, interval=settings.reachability_interval
    )
    codec = RecordCodec(cipher)
    repository = PatientRepository(
        store,
        codec,
        reachability,
        write_timeout=settings.write_timeout,
        add_timeout=settings.add_timeout,
    )
    listener = RemoteSyncListener(store, codec)
    migrator = ReEncryptionMigrator(repository, cipher, retired)
    classifier = DiagnosisClassifier(
        openai_client or OpenAI(api_key=settings.openai_api_key),
        model=settings.llm_model,
    )
    workspace = PatientWorkspace(
        listener,
        repository,
        classifier,
        reachability,
        analysis_timeout=settings.analysis_timeout,
    )

    app = App(
        settings=settings,
        store=store,
        session=session,
        key_store=key_store,
        cipher=cipher,
        codec=codec,
        reachability=reachability,
        repository=repository,
        listener=listener,
        migrator=migrator,
        classifier=classifier,
        workspace=workspace,
    )
    session.on_identity_change(app.handle_identity_change)
    return app
