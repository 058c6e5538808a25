"""Download bundle framing.

Bundle layout (all integers big-endian):
- 4 bytes: header length N (uint32)
- N bytes: UTF-8 JSON object
  ``{keySalt, keyIV, keyAuthTag, wrappedKey, fileIV, fileAuthTag}`` (base64 values)
- remaining bytes: AES-256-GCM ciphertext of the file

The length prefix is produced separately from the header so a writer can emit
it before anything else. Decoding applies cheap sanity checks (length bounds,
braces, JSON, required fields) before any cryptographic material is touched;
it is not a schema validator.
"""

from __future__ import annotations

import json
import struct
from pathlib import Path
from typing import Tuple, Union

from ..core.exceptions import FormatError, ValidationError
from ..core.models import (
    BUNDLE_FIELDS,
    FILE_KEY_SIZE,
    IV_SIZE,
    SALT_SIZE,
    TAG_SIZE,
    DownloadBundleMetadata,
    b64decode,
)

LENGTH_PREFIX = struct.Struct(">I")
PREFIX_SIZE = LENGTH_PREFIX.size
MIN_HEADER_LENGTH = 100
MAX_HEADER_LENGTH = 10000
BUNDLE_SUFFIX = ".vault"

# expected decoded length per field; wrappedKey is the sealed file key without its tag
_FIELD_SIZES = {
    "key_salt": SALT_SIZE,
    "key_iv": IV_SIZE,
    "key_auth_tag": TAG_SIZE,
    "wrapped_key_for_client": FILE_KEY_SIZE,
    "file_iv": IV_SIZE,
    "file_auth_tag": TAG_SIZE,
}


def encode_header(metadata: DownloadBundleMetadata) -> bytes:
    return json.dumps(metadata.to_wire(), separators=(",", ":")).encode("utf-8")


def encode_length_prefix(header_length: int) -> bytes:
    return LENGTH_PREFIX.pack(header_length)


def decode_length_prefix(data: bytes) -> int:
    """Read the header length and check it against the sanity bounds."""
    if len(data) < PREFIX_SIZE:
        raise FormatError("Invalid vault file: too short to contain a header.")
    (header_length,) = LENGTH_PREFIX.unpack_from(data, 0)
    if header_length < MIN_HEADER_LENGTH or header_length > MAX_HEADER_LENGTH:
        raise FormatError("Invalid vault file: Header size is out of bounds.")
    return header_length


def decode_header(raw: bytes) -> DownloadBundleMetadata:
    """Parse the JSON header; raises FormatError on anything unexpected."""
    if len(raw) < MIN_HEADER_LENGTH or len(raw) > MAX_HEADER_LENGTH:
        raise FormatError("Invalid vault file: Header size is out of bounds.")
    # '{' is 123 and '}' is 125
    if raw[0] != 0x7B or raw[-1] != 0x7D:
        raise FormatError("Invalid vault file: Metadata is not a valid JSON object.")

    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise FormatError("Invalid vault file: Metadata is not valid JSON.") from e
    if not isinstance(data, dict):
        raise FormatError("Invalid vault file: Metadata is not a valid JSON object.")

    missing = [name for name in BUNDLE_FIELDS if name not in data]
    if missing:
        raise FormatError(
            f"Invalid vault file: Metadata is missing {', '.join(missing)}."
        )

    values = {}
    for name, attr in BUNDLE_FIELDS.items():
        try:
            value = b64decode(data[name])
        except ValueError as e:
            raise FormatError(f"Invalid vault file: {name} is not valid base64.") from e
        if len(value) != _FIELD_SIZES[attr]:
            raise FormatError(f"Invalid vault file: {name} has an invalid length.")
        values[attr] = value

    return DownloadBundleMetadata(**values)


def split_bundle(data: bytes) -> Tuple[DownloadBundleMetadata, memoryview]:
    """Split a whole bundle held in memory into its header and ciphertext."""
    header_length = decode_length_prefix(data)
    end = PREFIX_SIZE + header_length
    if len(data) < end:
        raise FormatError("Invalid vault file: truncated header.")
    metadata = decode_header(bytes(data[PREFIX_SIZE:end]))
    return metadata, memoryview(data)[end:]


def bundle_name(original_file_name: str) -> str:
    return f"{original_file_name}{BUNDLE_SUFFIX}"


def strip_bundle_suffix(path: Union[str, Path]) -> Path:
    """Return ``path`` without the bundle suffix; the suffix is required."""
    path = Path(path)
    if not path.name.endswith(BUNDLE_SUFFIX) or path.name == BUNDLE_SUFFIX:
        raise ValidationError(f'Provide a "{BUNDLE_SUFFIX}" file.')
    return path.with_name(path.name[: -len(BUNDLE_SUFFIX)])
