"""
Data models for users, upload records and bundle metadata
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterable, Dict, List, Optional

FILE_KEY_SIZE = 32
IV_SIZE = 12
TAG_SIZE = 16
SALT_SIZE = 16


class FileUploadStatus(Enum):
    # lifecycle of an upload record; Pending -> Completed only
    PENDING = "Pending"
    COMPLETED = "Completed"


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(value: str) -> bytes:
    """Strict standard base64 decoding; raises ValueError on bad input."""
    if not isinstance(value, str):
        raise ValueError("expected a base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as e:
        raise ValueError(f"invalid base64: {e}") from e


@dataclass
class User:
    """A registered user. ``licence_key`` is the decrypted value."""

    user_id: str
    email: str
    licence_key: str = field(repr=False)
    created_at: Optional[datetime] = None


@dataclass
class FileEncryptionMetadata:
    """
    Encryption metadata persisted with an upload record.

    Created with key/iv/size when the upload is initialised and completed
    with ``auth_tag`` and ``location`` once the ciphertext is stored.
    """

    encrypted_file_key: str
    iv: bytes
    file_size: int
    original_file_name: str
    auth_tag: Optional[bytes] = None
    location: Optional[str] = None

    def __post_init__(self):
        if len(self.iv) != IV_SIZE:
            raise ValueError(f"iv must be {IV_SIZE} bytes")
        if self.auth_tag is not None and len(self.auth_tag) != TAG_SIZE:
            raise ValueError(f"auth_tag must be {TAG_SIZE} bytes")
        if (self.auth_tag is None) != (self.location is None):
            raise ValueError("auth_tag and location must be set together")

    @property
    def is_complete(self) -> bool:
        return self.auth_tag is not None and self.location is not None

    def completed(self, auth_tag: bytes, location: str) -> "FileEncryptionMetadata":
        """Return a copy carrying the completion fields."""
        return FileEncryptionMetadata(
            encrypted_file_key=self.encrypted_file_key,
            iv=self.iv,
            file_size=self.file_size,
            original_file_name=self.original_file_name,
            auth_tag=auth_tag,
            location=location,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "encrypted_file_key": self.encrypted_file_key,
            "iv": b64encode(self.iv),
            "file_size": self.file_size,
            "original_file_name": self.original_file_name,
        }
        if self.is_complete:
            data["auth_tag"] = b64encode(self.auth_tag)
            data["location"] = self.location
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileEncryptionMetadata":
        auth_tag = data.get("auth_tag")
        return cls(
            encrypted_file_key=data["encrypted_file_key"],
            iv=b64decode(data["iv"]),
            file_size=int(data["file_size"]),
            original_file_name=data["original_file_name"],
            auth_tag=b64decode(auth_tag) if auth_tag else None,
            location=data.get("location"),
        )


@dataclass
class FileUpload:
    """An upload record as stored in the ``file_uploads`` table."""

    id: str
    title: str
    user_id: str
    status: FileUploadStatus
    file_data: FileEncryptionMetadata
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return self.status is FileUploadStatus.COMPLETED

    @property
    def file_size_mb(self) -> str:
        return f"{self.file_data.file_size / (1024 * 1024):.2f} MB"


# JSON field name on the wire -> attribute name
BUNDLE_FIELDS = {
    "keySalt": "key_salt",
    "keyIV": "key_iv",
    "keyAuthTag": "key_auth_tag",
    "wrappedKey": "wrapped_key_for_client",
    "fileIV": "file_iv",
    "fileAuthTag": "file_auth_tag",
}


@dataclass(frozen=True)
class DownloadBundleMetadata:
    """Unwrap metadata written at the head of a download bundle. Never persisted."""

    key_salt: bytes
    key_iv: bytes
    key_auth_tag: bytes
    wrapped_key_for_client: bytes
    file_iv: bytes
    file_auth_tag: bytes

    def to_wire(self) -> Dict[str, str]:
        return {
            name: b64encode(getattr(self, attr)) for name, attr in BUNDLE_FIELDS.items()
        }


@dataclass
class InboundFilePart:
    """
    The inbound file part of an upload request.

    ``errors`` is filled by the upstream validator; a part with errors is
    never encrypted.
    """

    client_name: str
    size: int
    stream: AsyncIterable[bytes]
    errors: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors
