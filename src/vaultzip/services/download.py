"""Download orchestrator: produce the encrypted bundle for a completed upload.

The server never decrypts the file on download. It unwraps the stored file
key, re-seals it under a key derived from the user's licence key (fresh salt
and IV per download), and streams

    length prefix | JSON header | stored ciphertext (verbatim)

as one pull-driven byte stream. Nothing is read from storage until the
consumer asks for it, so the consumer's pace drives the storage reads.

The stored ciphertext's own tag is not re-verified here; corruption at rest is
only detected by the client after the whole bundle has been downloaded.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import aiofiles
import aiofiles.os

from ..core.exceptions import BundleWriteError, FormatError, UploadNotFoundError
from ..core.models import DownloadBundleMetadata, FileUpload
from ..core.storage import ObjectStorage
from ..core.streams import ByteStream, concat
from ..database.models import FileUploadModel
from ..security.bundle import (
    MAX_HEADER_LENGTH,
    MIN_HEADER_LENGTH,
    bundle_name,
    encode_header,
    encode_length_prefix,
)
from ..security.keycodec import KeyCodec
from ..security.keywrap import KeyWrapper
from .users import UserService

logger = logging.getLogger(__name__)


@dataclass
class BundleStream:
    """An outbound bundle: its file name and the byte stream to send."""

    upload_id: str
    file_name: str
    header_length: int
    stream: ByteStream


class DownloadService:
    def __init__(
        self,
        config,
        db,
        storage: ObjectStorage,
        key_codec: KeyCodec,
        key_wrapper: KeyWrapper,
        users: UserService,
    ):
        self.config = config
        self.storage = storage
        self.key_codec = key_codec
        self.key_wrapper = key_wrapper
        self.users = users
        self.uploads = FileUploadModel(db)

    async def build_metadata(self, record: FileUpload, licence_key: str) -> DownloadBundleMetadata:
        """Re-seal the record's file key for the holder of ``licence_key``."""
        file_key = self.key_codec.unwrap_from_storage(record.file_data.encrypted_file_key)
        # the KDF is deliberately slow; keep it off the event loop
        salt, iv, wrapped, tag = await asyncio.to_thread(
            self.key_wrapper.wrap_for_client, file_key, licence_key
        )
        return DownloadBundleMetadata(
            key_salt=salt,
            key_iv=iv,
            key_auth_tag=tag,
            wrapped_key_for_client=wrapped,
            file_iv=record.file_data.iv,
            file_auth_tag=record.file_data.auth_tag,
        )

    async def open_bundle(self, email, licence_key, upload_id) -> BundleStream:
        """
        Prepare the bundle stream for a completed upload owned by the caller.

        The returned stream has produced nothing yet; connect it to its sink
        before iterating. Stopping early (or cancelling the consuming task)
        closes both the storage read and the bundle stream.
        """
        user = self.users.authenticate(email, licence_key)
        record = self.uploads.get_for_user(upload_id, user.user_id)
        if record is None or not record.is_completed:
            raise UploadNotFoundError("File not found.")

        metadata = await self.build_metadata(record, user.licence_key)
        header = encode_header(metadata)
        if not MIN_HEADER_LENGTH <= len(header) <= MAX_HEADER_LENGTH:
            raise FormatError("Bundle header size is out of bounds.")

        source = self.storage.read_stream(record.file_data.location, self.config.chunk_size)
        combined = concat(encode_length_prefix(len(header)), header, source)

        stream = ByteStream(
            combined,
            on_end=lambda: logger.info("bundle for upload %s sent", record.id),
            on_cancel=lambda: logger.info(
                "bundle for upload %s aborted by the receiver", record.id
            ),
        )
        return BundleStream(
            upload_id=record.id,
            file_name=bundle_name(Path(record.file_data.original_file_name).name),
            header_length=len(header),
            stream=stream,
        )

    async def write_bundle(
        self,
        email,
        licence_key,
        upload_id,
        dest_dir: Union[str, Path],
        file_name: Optional[str] = None,
    ) -> Path:
        """Stream a bundle into ``dest_dir`` and return the written path."""
        bundle = await self.open_bundle(email, licence_key, upload_id)
        dest_dir = Path(dest_dir)
        destination = dest_dir / (file_name or bundle.file_name)
        tmp_path = destination.with_name(destination.name + ".part")

        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp_path, "wb") as f:
                async for chunk in bundle.stream:
                    await f.write(chunk)
            await aiofiles.os.replace(tmp_path, destination)
        except OSError as e:
            await bundle.stream.cancel()
            await self._discard(tmp_path)
            raise BundleWriteError(f"Unable to write bundle to {destination}: {e}") from e
        except BaseException:
            await bundle.stream.cancel()
            await self._discard(tmp_path)
            raise

        logger.info("bundle for upload %s written to %s", bundle.upload_id, destination)
        return destination

    async def _discard(self, path: Path) -> None:
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("could not remove partial bundle %s: %s", path, e)
