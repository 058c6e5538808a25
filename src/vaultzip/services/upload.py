"""Upload initialisation and the streaming upload orchestrator.

An upload happens in two steps:

1. :meth:`UploadService.initialise` validates the request, creates a file key
   and IV, wraps the key under the master secret and stores a Pending record.
2. :meth:`UploadService.upload` pipes the inbound file through an AES-256-GCM
   encrypting transform straight into the object store, then records the
   authentication tag and object location and marks the record Completed.

Every attempt in step 2 rotates the record to a fresh key and IV first, so a
retry after a failed or interrupted attempt never encrypts under an IV that
was already used. Nothing is buffered beyond one chunk: the object store pulls
ciphertext, the transform pulls plaintext from the inbound part.
"""

from __future__ import annotations

import dataclasses
import logging
import re
import time
import uuid
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, List

from ..core.exceptions import (
    StorageError,
    UploadAlreadyCompletedError,
    UploadConflictError,
    UploadNotFoundError,
    ValidationError,
)
from ..core.models import FileEncryptionMetadata, FileUpload, InboundFilePart
from ..core.storage import ObjectStorage
from ..core.streams import ByteStream, aclose_quietly
from ..core.validation import validate_file_part, validate_upload_init
from ..database.models import FileUploadModel
from ..security.keycodec import KeyCodec
from ..security.stream import open_encrypt
from .users import UserService

logger = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def make_object_key(client_name: str) -> str:
    """``<unix ms>_<client name>_<random id>``, safe as a file name."""
    name = _UNSAFE_KEY_CHARS.sub("_", Path(client_name).name) or "file"
    return f"{int(time.time() * 1000)}_{name}_{uuid.uuid4().hex[:12]}"


async def _capped(stream: ByteStream, limit: int, client_name: str) -> AsyncIterator[bytes]:
    """Pass ``stream`` through, failing once more than ``limit`` bytes have arrived."""
    async for chunk in stream:
        if stream.bytes_read > limit:
            raise ValidationError([f"{client_name} is too large."])
        yield chunk


class UploadService:
    def __init__(self, config, db, storage: ObjectStorage, key_codec: KeyCodec, users: UserService):
        self.config = config
        self.storage = storage
        self.key_codec = key_codec
        self.users = users
        self.uploads = FileUploadModel(db)

    def initialise(self, email, title, file_name, file_size) -> FileUpload:
        """Validate an upload request and create its Pending record."""
        request = validate_upload_init(
            email, title, file_name, file_size, self.config.max_file_size_bytes
        )
        user = self.users.get_by_email(request.email)

        file_data = FileEncryptionMetadata(
            encrypted_file_key=self.key_codec.wrap_for_storage(self.key_codec.generate_file_key()),
            iv=self.key_codec.generate_iv(),
            file_size=request.file_size,
            original_file_name=Path(request.file_name).name,
        )
        record = self.uploads.create(request.title, user.user_id, file_data)
        logger.info("initialised upload %s for user %s", record.id, user.user_id)
        return record

    def make_part(self, client_name: str, size: int, stream: AsyncIterable[bytes]) -> InboundFilePart:
        """Wrap an inbound stream and attach the extension and size checks."""
        return InboundFilePart(
            client_name=client_name,
            size=size,
            stream=stream,
            errors=validate_file_part(client_name, size, self.config.max_file_size_bytes),
        )

    async def upload(self, email, upload_id, part: InboundFilePart) -> FileUpload:
        """
        Encrypt ``part`` into the object store and complete the record.

        Raises:
            UploadNotFoundError: no such record for this user
            UploadAlreadyCompletedError: the record is already Completed
            ValidationError: the part was rejected upstream (nothing is encrypted)
                or streamed more than the size limit (the object is discarded)
            StorageError: the store rejected the write; the record stays Pending
        """
        user = self.users.get_by_email(email)
        record = self.uploads.get_for_user(upload_id, user.user_id)
        if record is None:
            await aclose_quietly(part.stream)
            raise UploadNotFoundError("Upload not found. Please re-initialize.")
        if record.is_completed:
            await aclose_quietly(part.stream)
            raise UploadAlreadyCompletedError("This file has already been uploaded.")
        if not part.is_valid:
            await aclose_quietly(part.stream)
            raise ValidationError(part.errors)

        file_key = self.key_codec.generate_file_key()
        attempt = dataclasses.replace(
            record.file_data,
            encrypted_file_key=self.key_codec.wrap_for_storage(file_key),
            iv=self.key_codec.generate_iv(),
        )
        if not self.uploads.begin_attempt(record.id, attempt):
            await aclose_quietly(part.stream)
            raise UploadAlreadyCompletedError("This file has already been uploaded.")

        object_key = make_object_key(part.client_name)
        cipher = open_encrypt(file_key, attempt.iv)
        source = ByteStream(
            part.stream,
            on_cancel=lambda: logger.info("inbound stream for upload %s closed early", record.id),
        )
        limit = self.config.max_file_size_bytes

        try:
            written = await self.storage.write_stream(
                object_key, cipher.transform(_capped(source, limit, part.client_name))
            )
        except ValidationError:
            logger.warning("upload %s streamed more than %d bytes", record.id, limit)
            raise
        except StorageError as e:
            logger.error("upload %s rejected by storage: %s", record.id, e)
            raise StorageError(f"The remote storage rejected the file: {e}") from e
        finally:
            # covers cancellation and source errors; no-op after a normal end
            if not source.ended:
                await source.cancel()

        # record what actually arrived, not what the client declared
        completed = dataclasses.replace(
            attempt.completed(cipher.tag, object_key), file_size=source.bytes_read
        )
        if not self.uploads.mark_completed(record.id, completed):
            await self.storage.delete(object_key)
            current = self.uploads.get(record.id)
            if current is not None and current.is_completed:
                raise UploadAlreadyCompletedError("This file has already been uploaded.")
            raise UploadConflictError("Another upload attempt replaced this one. Please retry.")

        logger.info(
            "upload %s completed: %d plaintext bytes, %d stored as %s",
            record.id,
            source.bytes_read,
            written,
            object_key,
        )
        return self.uploads.get(record.id)

    def list_completed(self, email, licence_key) -> List[FileUpload]:
        user = self.users.authenticate(email, licence_key)
        return self.uploads.list_completed(user.user_id)
