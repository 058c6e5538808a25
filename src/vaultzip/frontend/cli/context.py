"""Small helper to build a VaultZip service context for the CLI."""

from __future__ import annotations

from dataclasses import dataclass

from vaultzip.core.config import AppConfig
from vaultzip.core.storage import LocalObjectStorage, ObjectStorage
from vaultzip.database.connection import DatabaseConnection
from vaultzip.security.encrypter import Encrypter
from vaultzip.security.keycodec import KeyCodec
from vaultzip.security.keywrap import KeyWrapper
from vaultzip.services.download import DownloadService
from vaultzip.services.upload import UploadService
from vaultzip.services.users import UserService


@dataclass
class AppContext:
    """Container for the runtime objects the commands need."""

    config: AppConfig
    db: DatabaseConnection
    storage: ObjectStorage
    users: UserService
    uploads: UploadService
    downloads: DownloadService

    def close(self) -> None:
        self.db.close()


def build_context(config: AppConfig, storage: ObjectStorage | None = None) -> AppContext:
    """Initialize DB + storage and wire the services around one AppConfig."""
    db = DatabaseConnection(config.db_path)
    db.initialize()
    if storage is None:
        storage = LocalObjectStorage(str(config.storage_root))

    encrypter = Encrypter(config)
    key_codec = KeyCodec(config)
    key_wrapper = KeyWrapper.from_config(config)
    users = UserService(db, encrypter)

    return AppContext(
        config=config,
        db=db,
        storage=storage,
        users=users,
        uploads=UploadService(config, db, storage, key_codec, users),
        downloads=DownloadService(config, db, storage, key_codec, key_wrapper, users),
    )
