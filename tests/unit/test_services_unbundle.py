"""Unit tests for the client-side unbundler."""

import base64
import json
import os
import struct
from unittest.mock import Mock

import pytest

from vaultzip.core.exceptions import (
    AuthenticationError,
    BundleReadError,
    BundleWriteError,
    FormatError,
    ValidationError,
)
from vaultzip.security.bundle import PREFIX_SIZE
from vaultzip.security.keywrap import KEY_TAMPER_MESSAGE
from vaultzip.security.stream import TAMPER_MESSAGE
from vaultzip.services.unbundle import ClientUnbundler, UnbundleStage


@pytest.fixture
def unbundler(fast_wrapper):
    return ClientUnbundler(fast_wrapper)


@pytest.fixture
def bundle_file(ctx, user, upload_bytes, tmp_path):
    """Upload ``data`` and download its bundle; returns the bundle path."""

    async def _make(data: bytes, file_name: str = "report.pdf"):
        record = await upload_bytes(data, file_name=file_name)
        path = await ctx.downloads.write_bundle(
            user.email, user.licence_key, record.id, tmp_path / "dl"
        )
        return path

    return _make


@pytest.mark.asyncio
async def test_unbundle_roundtrip(unbundler, user, bundle_file):
    data = os.urandom(12_345)
    path = await bundle_file(data)

    output = unbundler.unbundle(path, user.licence_key)

    assert output == path.with_name("report.pdf")
    assert output.read_bytes() == data
    assert unbundler.stage is UnbundleStage.DONE


@pytest.mark.asyncio
async def test_hello_vault_roundtrip_and_tampered_tag(unbundler, user, bundle_file):
    path = await bundle_file(b"hello vault", file_name="note.zip")
    assert unbundler.decrypt_bytes(path.read_bytes(), user.licence_key) == b"hello vault"

    raw = path.read_bytes()
    (header_length,) = struct.unpack(">I", raw[:PREFIX_SIZE])
    fields = json.loads(raw[PREFIX_SIZE:PREFIX_SIZE + header_length])
    tag = bytearray(base64.b64decode(fields["fileAuthTag"]))
    tag[-1] ^= 0x01
    fields["fileAuthTag"] = base64.b64encode(bytes(tag)).decode()
    new_header = json.dumps(fields, separators=(",", ":")).encode()
    tampered = struct.pack(">I", len(new_header)) + new_header + raw[PREFIX_SIZE + header_length:]
    path.write_bytes(tampered)

    with pytest.raises(AuthenticationError) as exc:
        unbundler.unbundle(path, user.licence_key)
    assert str(exc.value) == TAMPER_MESSAGE
    assert unbundler.stage is UnbundleStage.DECRYPT_PAYLOAD
    assert not path.with_name("note.zip").exists()


@pytest.mark.asyncio
async def test_wrong_licence_key(unbundler, user, bundle_file):
    path = await bundle_file(b"secret contents")

    with pytest.raises(AuthenticationError) as exc:
        unbundler.unbundle(path, "wrong-licence-key")

    assert str(exc.value) == KEY_TAMPER_MESSAGE
    assert unbundler.stage is UnbundleStage.UNWRAP_FILE_KEY
    assert not path.with_name("report.pdf").exists()


@pytest.mark.asyncio
async def test_tampered_ciphertext(unbundler, user, bundle_file):
    path = await bundle_file(os.urandom(5000))
    raw = bytearray(path.read_bytes())
    raw[-100] ^= 0x01
    path.write_bytes(bytes(raw))

    with pytest.raises(AuthenticationError, match="modified"):
        unbundler.unbundle(path, user.licence_key)
    assert not path.with_name("report.pdf").exists()


@pytest.mark.parametrize("header_length", [50, 20_000])
def test_header_bounds_checked_before_crypto(tmp_path, header_length):
    wrapper = Mock()
    path = tmp_path / "bad.pdf.vault"
    path.write_bytes(struct.pack(">I", header_length) + b"{" + b"x" * 200 + b"}")

    unbundler = ClientUnbundler(wrapper)
    with pytest.raises(FormatError, match="out of bounds"):
        unbundler.unbundle(path, "licence")

    assert unbundler.stage is UnbundleStage.PARSE_LENGTH_PREFIX
    wrapper.derive_key.assert_not_called()


def test_non_json_header_rejected_before_crypto(tmp_path):
    wrapper = Mock()
    header = b"[" + b"1," * 60 + b"1]"
    path = tmp_path / "bad.pdf.vault"
    path.write_bytes(struct.pack(">I", len(header)) + header + b"payload")

    unbundler = ClientUnbundler(wrapper)
    with pytest.raises(FormatError, match="JSON object"):
        unbundler.unbundle(path, "licence")

    assert unbundler.stage is UnbundleStage.PARSE_HEADER
    wrapper.derive_key.assert_not_called()


def test_truncated_header(unbundler):
    with pytest.raises(FormatError, match="truncated"):
        unbundler.decrypt_bytes(struct.pack(">I", 500) + b"{}", "licence")


def test_too_short_for_prefix(unbundler):
    with pytest.raises(FormatError):
        unbundler.decrypt_bytes(b"\x00", "licence")


def test_missing_bundle_file(unbundler, tmp_path):
    with pytest.raises(BundleReadError):
        unbundler.unbundle(tmp_path / "missing.pdf.vault", "licence")
    assert unbundler.stage is UnbundleStage.READ_BYTES


def test_non_vault_path_rejected(unbundler, tmp_path):
    path = tmp_path / "report.pdf"
    path.write_bytes(b"data")
    with pytest.raises(ValidationError):
        unbundler.unbundle(path, "licence")


@pytest.mark.asyncio
async def test_write_failure(unbundler, user, bundle_file, tmp_path):
    path = await bundle_file(b"contents")

    with pytest.raises(BundleWriteError):
        unbundler.unbundle(path, user.licence_key, tmp_path / "no" / "such" / "dir" / "out.pdf")
    assert unbundler.stage is UnbundleStage.WRITE_PLAINTEXT
