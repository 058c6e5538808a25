"""Shared fixtures for the VaultZip test suite."""

from typing import Generator
from unittest.mock import patch

import pytest

from vaultzip.core.config import AppConfig
from vaultzip.core.storage import LocalObjectStorage
from vaultzip.core.streams import iter_bytes
from vaultzip.database.connection import DatabaseConnection
from vaultzip.frontend.cli.context import AppContext, build_context
from vaultzip.security.encrypter import Encrypter
from vaultzip.security.keywrap import KeyWrapper

TEST_APP_KEY = b"0123456789abcdef0123456789abcdef"

# Argon2id at its minimum cost so tests stay fast
FAST_KDF = {"kdf_time_cost": 1, "kdf_memory_cost": 8, "kdf_parallelism": 1}


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    """An AppConfig rooted in tmp_path with a reduced KDF cost."""
    return AppConfig(
        app_key=TEST_APP_KEY,
        storage_root=tmp_path / "objects",
        db_path=tmp_path / "vaultzip.db",
        chunk_size=4096,
        **FAST_KDF,
    )


@pytest.fixture
def fast_wrapper(app_config) -> KeyWrapper:
    return KeyWrapper.from_config(app_config)


@pytest.fixture
def encrypter(app_config) -> Encrypter:
    return Encrypter(app_config)


@pytest.fixture
def db(app_config) -> Generator[DatabaseConnection, None, None]:
    """Provide a temporary, initialized ``DatabaseConnection`` instance."""
    conn = DatabaseConnection(app_config.db_path)
    conn.initialize()
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture
def storage(app_config) -> LocalObjectStorage:
    return LocalObjectStorage(str(app_config.storage_root))


@pytest.fixture
def ctx(app_config) -> Generator[AppContext, None, None]:
    """Fully wired services over a temporary database and object store."""
    context = build_context(app_config)
    try:
        yield context
    finally:
        context.close()


@pytest.fixture
def user(ctx):
    """A registered user; ``user.licence_key`` is the plaintext key."""
    return ctx.users.register("alice@example.com")


@pytest.fixture
def upload_bytes(ctx, user):
    """Return a coroutine function that uploads ``data`` for ``user`` and returns the record."""
    async def _upload(data: bytes, file_name: str = "report.pdf", title: str = "Report"):
        record = ctx.uploads.initialise(user.email, title, file_name, len(data))
        part = ctx.uploads.make_part(file_name, len(data), iter_bytes(data, 1000))
        return await ctx.uploads.upload(user.email, record.id, part)

    return _upload


@pytest.fixture(autouse=True)
def mock_keyring_lib():
    """Patches the keyring module within the client config with an in-memory store.

    ``mock_keyring_lib.store`` maps ``(service, account)`` to the saved secret.
    """
    store = {}
    with patch("vaultzip.frontend.cli.client_config.keyring", autospec=True) as mock_lib:
        mock_lib.set_password.side_effect = lambda service, account, secret: store.__setitem__(
            (service, account), secret
        )
        mock_lib.get_password.side_effect = lambda service, account: store.get((service, account))
        mock_lib.store = store
        yield mock_lib
