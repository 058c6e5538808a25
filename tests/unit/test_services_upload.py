"""Unit tests for upload initialisation and the upload orchestrator."""

import asyncio
import dataclasses
import os

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from vaultzip.core.exceptions import (
    StorageError,
    UploadAlreadyCompletedError,
    UploadConflictError,
    UploadNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from vaultzip.core.models import FileUploadStatus
from vaultzip.core.storage import LocalObjectStorage
from vaultzip.core.streams import iter_bytes
from vaultzip.security.keycodec import KeyCodec
from vaultzip.services import upload as upload_module
from vaultzip.services.upload import UploadService, make_object_key


class TrackedSource:
    """Inbound part stream that records how far it was read and whether it was closed."""

    def __init__(self, data: bytes, chunk_size: int = 1000):
        self.chunks = [data[i:i + chunk_size] for i in range(0, len(data), chunk_size)]
        self.pulled = 0
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.pulled >= len(self.chunks):
            raise StopAsyncIteration
        self.pulled += 1
        return self.chunks[self.pulled - 1]

    async def aclose(self):
        self.closed = True


class RejectingStorage(LocalObjectStorage):
    """Accepts a few chunks and then refuses the write."""

    async def write_stream(self, key, source):
        count = 0
        async for _ in source:
            count += 1
            if count == 2:
                raise StorageError("bucket unavailable")
        return 0


class HookedStorage(LocalObjectStorage):
    """Runs ``during_write`` after the object is stored but before the upload completes."""

    during_write = None

    async def write_stream(self, key, source):
        written = await super().write_stream(key, source)
        if self.during_write:
            self.during_write()
        return written


def _service(ctx, storage):
    return UploadService(ctx.config, ctx.db, storage, KeyCodec(ctx.config), ctx.users)


def test_make_object_key():
    key = make_object_key("../My Report (final).pdf")
    millis, rest = key.split("_", 1)

    assert millis.isdigit()
    assert "/" not in key and " " not in key
    assert rest.startswith("My_Report_final_.pdf_")
    assert make_object_key("a.zip") != make_object_key("a.zip")


def test_initialise_creates_pending_record(ctx, user):
    record = ctx.uploads.initialise(user.email, "Q3", "report.zip", 1234)

    assert record.status is FileUploadStatus.PENDING
    assert record.title == "Q3"
    assert record.file_data.file_size == 1234
    assert record.file_data.original_file_name == "report.zip"
    assert len(record.file_data.iv) == 12
    assert len(KeyCodec(ctx.config).unwrap_from_storage(record.file_data.encrypted_file_key)) == 32


def test_initialise_unknown_user(ctx):
    with pytest.raises(UserNotFoundError):
        ctx.uploads.initialise("ghost@example.com", "Q3", "report.zip", 1)


def test_initialise_rejects_invalid_request(ctx, user):
    with pytest.raises(ValidationError):
        ctx.uploads.initialise(user.email, "Q3", "report.exe", 1)


@pytest.mark.asyncio
async def test_iv_unique_over_many_uploads(ctx, user, upload_bytes):
    records = [await upload_bytes(b"x", file_name="a.zip") for _ in range(1000)]

    assert all(r.is_completed for r in records)
    assert len({r.file_data.iv for r in records}) == 1000
    assert len({r.file_data.encrypted_file_key for r in records}) == 1000


@pytest.mark.asyncio
async def test_upload_encrypts_into_storage(ctx, user, upload_bytes):
    data = os.urandom(10_000)
    record = await upload_bytes(data)

    assert record.is_completed
    assert len(record.file_data.auth_tag) == 16
    stored = (ctx.storage.root / record.file_data.location).read_bytes()
    assert stored != data
    assert len(stored) == len(data)

    file_key = KeyCodec(ctx.config).unwrap_from_storage(record.file_data.encrypted_file_key)
    plaintext = AESGCM(file_key).decrypt(
        record.file_data.iv, stored + record.file_data.auth_tag, None
    )
    assert plaintext == data


@pytest.mark.asyncio
async def test_upload_rotates_key_and_iv_per_attempt(ctx, user):
    initial = ctx.uploads.initialise(user.email, "t", "a.zip", 3)
    part = ctx.uploads.make_part("a.zip", 3, iter_bytes(b"abc"))
    done = await ctx.uploads.upload(user.email, initial.id, part)

    assert done.file_data.iv != initial.file_data.iv
    assert done.file_data.encrypted_file_key != initial.file_data.encrypted_file_key


@pytest.mark.asyncio
async def test_upload_unknown_record(ctx, user):
    source = TrackedSource(b"abc")
    part = ctx.uploads.make_part("a.zip", 3, source)
    with pytest.raises(UploadNotFoundError, match="re-initialize"):
        await ctx.uploads.upload(user.email, "missing", part)
    assert source.closed


@pytest.mark.asyncio
async def test_upload_other_users_record(ctx, user):
    record = ctx.uploads.initialise(user.email, "t", "a.zip", 3)
    mallory = ctx.users.register("mallory@example.com")
    part = ctx.uploads.make_part("a.zip", 3, iter_bytes(b"abc"))

    with pytest.raises(UploadNotFoundError):
        await ctx.uploads.upload(mallory.email, record.id, part)


@pytest.mark.asyncio
async def test_invalid_part_never_runs_cipher(ctx, user, monkeypatch):
    record = ctx.uploads.initialise(user.email, "t", "a.zip", 3)
    calls = []
    monkeypatch.setattr(upload_module, "open_encrypt", lambda *a: calls.append(a))
    source = TrackedSource(b"MZ executable")
    part = ctx.uploads.make_part("a.exe", 13, source)

    with pytest.raises(ValidationError) as exc:
        await ctx.uploads.upload(user.email, record.id, part)

    assert exc.value.messages == ["a.exe has an unsupported file type."]
    assert calls == []
    assert source.pulled == 0
    assert source.closed
    assert ctx.uploads.uploads.get(record.id) == record


@pytest.mark.asyncio
async def test_second_upload_rejected_without_mutation(ctx, user, upload_bytes):
    record = await upload_bytes(b"first payload")
    objects_before = sorted(p.name for p in ctx.storage.root.iterdir())
    source = TrackedSource(b"second payload")
    part = ctx.uploads.make_part("report.pdf", 14, source)

    with pytest.raises(UploadAlreadyCompletedError, match="already been uploaded"):
        await ctx.uploads.upload(user.email, record.id, part)

    assert ctx.uploads.uploads.get(record.id) == record
    assert sorted(p.name for p in ctx.storage.root.iterdir()) == objects_before
    assert source.pulled == 0
    assert source.closed


@pytest.mark.asyncio
async def test_storage_failure_leaves_record_pending(ctx, user, tmp_path):
    service = _service(ctx, RejectingStorage(str(tmp_path / "rejecting")))
    record = service.initialise(user.email, "t", "a.zip", 5000)
    source = TrackedSource(os.urandom(5000))

    with pytest.raises(StorageError, match="remote storage rejected"):
        await service.upload(user.email, record.id, service.make_part("a.zip", 5000, source))

    stored = service.uploads.get(record.id)
    assert stored.status is FileUploadStatus.PENDING
    assert stored.file_data.auth_tag is None
    assert stored.file_data.location is None
    assert source.closed


@pytest.mark.asyncio
async def test_stream_larger_than_limit_is_rejected(ctx, user, tmp_path):
    config = dataclasses.replace(ctx.config, max_file_size_mb=1)
    storage = LocalObjectStorage(str(tmp_path / "capped"))
    service = UploadService(config, ctx.db, storage, KeyCodec(config), ctx.users)
    record = service.initialise(user.email, "t", "a.zip", 10)
    source = TrackedSource(b"x" * (3 * 1024 * 1024), chunk_size=64 * 1024)

    with pytest.raises(ValidationError) as exc:
        await service.upload(user.email, record.id, service.make_part("a.zip", 10, source))

    assert exc.value.messages == ["a.zip is too large."]
    assert source.pulled == 17
    assert source.closed
    assert list(storage.root.iterdir()) == []
    assert service.uploads.get(record.id).status is FileUploadStatus.PENDING


@pytest.mark.asyncio
async def test_completed_record_reports_streamed_size(ctx, user):
    record = ctx.uploads.initialise(user.email, "t", "a.zip", 10)
    part = ctx.uploads.make_part("a.zip", 10, iter_bytes(b"y" * 2500, 1000))

    done = await ctx.uploads.upload(user.email, record.id, part)

    assert done.file_data.file_size == 2500


@pytest.mark.asyncio
async def test_client_stream_error_is_not_a_storage_error(ctx, user):
    record = ctx.uploads.initialise(user.email, "t", "a.zip", 10)

    async def dropped_connection():
        yield b"abc"
        raise ConnectionResetError("connection reset by client")

    part = ctx.uploads.make_part("a.zip", 10, dropped_connection())
    with pytest.raises(ConnectionResetError, match="reset by client"):
        await ctx.uploads.upload(user.email, record.id, part)

    assert list(ctx.storage.root.iterdir()) == []
    assert ctx.uploads.uploads.get(record.id).status is FileUploadStatus.PENDING


@pytest.mark.asyncio
async def test_retry_after_storage_failure_succeeds(ctx, user, tmp_path):
    failing = _service(ctx, RejectingStorage(str(tmp_path / "rejecting")))
    record = failing.initialise(user.email, "t", "a.zip", 5000)
    with pytest.raises(StorageError):
        await failing.upload(user.email, record.id, failing.make_part("a.zip", 5000, TrackedSource(b"x" * 5000)))
    failed_iv = failing.uploads.get(record.id).file_data.iv

    done = await ctx.uploads.upload(
        user.email, record.id, ctx.uploads.make_part("a.zip", 5000, iter_bytes(b"x" * 5000))
    )

    assert done.is_completed
    assert done.file_data.iv != failed_iv


@pytest.mark.asyncio
async def test_cancelled_upload_cleans_up(ctx, user):
    record = ctx.uploads.initialise(user.email, "t", "a.zip", 10)
    gate = asyncio.Event()
    closed = []

    async def slow_client():
        try:
            yield b"first"
            await gate.wait()
            yield b"never"
        finally:
            closed.append(True)

    part = ctx.uploads.make_part("a.zip", 10, slow_client())
    task = asyncio.create_task(ctx.uploads.upload(user.email, record.id, part))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert closed == [True]
    assert list(ctx.storage.root.iterdir()) == []
    assert ctx.uploads.uploads.get(record.id).status is FileUploadStatus.PENDING


@pytest.mark.asyncio
async def test_lost_race_to_concurrent_attempt(ctx, user, tmp_path):
    storage = HookedStorage(str(tmp_path / "hooked"))
    service = _service(ctx, storage)
    record = service.initialise(user.email, "t", "a.zip", 3)

    def competing_attempt():
        current = service.uploads.get(record.id)
        service.uploads.begin_attempt(
            record.id, dataclasses.replace(current.file_data, iv=KeyCodec.generate_iv())
        )

    storage.during_write = competing_attempt
    with pytest.raises(UploadConflictError):
        await service.upload(user.email, record.id, service.make_part("a.zip", 3, iter_bytes(b"abc")))

    assert list(storage.root.iterdir()) == []
    assert service.uploads.get(record.id).status is FileUploadStatus.PENDING


@pytest.mark.asyncio
async def test_lost_race_to_completed_attempt(ctx, user, tmp_path):
    storage = HookedStorage(str(tmp_path / "hooked"))
    service = _service(ctx, storage)
    record = service.initialise(user.email, "t", "a.zip", 3)

    def other_attempt_completes():
        current = service.uploads.get(record.id)
        service.uploads.mark_completed(
            record.id, current.file_data.completed(os.urandom(16), "winner")
        )

    storage.during_write = other_attempt_completes
    with pytest.raises(UploadAlreadyCompletedError):
        await service.upload(user.email, record.id, service.make_part("a.zip", 3, iter_bytes(b"abc")))

    assert list(storage.root.iterdir()) == []
    assert service.uploads.get(record.id).file_data.location == "winner"


def test_list_completed_requires_licence_key(ctx, user):
    with pytest.raises(UserNotFoundError):
        ctx.uploads.list_completed(user.email, "wrong")
    assert ctx.uploads.list_completed(user.email, user.licence_key) == []
