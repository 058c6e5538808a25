"""Pure request validators.

Every request reaching a service is validated here first. Validators never
touch the database, storage or key material; they only normalise input and
raise :class:`ValidationError` with user-facing messages.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional

from .exceptions import ValidationError

ALLOWED_EXTENSIONS = ("zip", "doc", "docx", "pdf")
ALLOWED_PATTERN = re.compile(r"\.(%s)$" % "|".join(ALLOWED_EXTENSIONS), re.IGNORECASE)
TITLE_MAX_LENGTH = 100


@dataclass(frozen=True)
class UploadInitRequest:
    email: str
    title: str
    file_name: str
    file_size: int


@dataclass(frozen=True)
class Credentials:
    email: str
    licence_key: str


def _clean(value: Optional[str]) -> str:
    return value.strip() if isinstance(value, str) else ""


def is_allowed_file_name(file_name: str) -> bool:
    return bool(ALLOWED_PATTERN.search(file_name or ""))


def validate_email(email: Optional[str]) -> str:
    email = _clean(email)
    if not email:
        raise ValidationError("Email is required.")
    return email


def validate_credentials(email: Optional[str], licence_key: Optional[str]) -> Credentials:
    errors = []
    email = _clean(email)
    licence_key = _clean(licence_key)
    if not email:
        errors.append("Email is required.")
    if not licence_key:
        errors.append("Licence Key is required.")
    if errors:
        raise ValidationError(errors)
    return Credentials(email=email, licence_key=licence_key)


def validate_upload_init(
    email: Optional[str],
    title: Optional[str],
    file_name: Optional[str],
    file_size,
    max_file_size_bytes: int,
) -> UploadInitRequest:
    """Validate the upload initialisation request and return it normalised."""
    errors: List[str] = []

    email = _clean(email)
    title = _clean(title)
    file_name = _clean(file_name)

    if not title:
        errors.append("Title is required.")
    elif len(title) > TITLE_MAX_LENGTH:
        errors.append(f"Title must not exceed {TITLE_MAX_LENGTH} characters.")

    if not email:
        errors.append("Email is required.")

    if not file_name:
        errors.append("Original file name is required.")
    elif not is_allowed_file_name(file_name):
        errors.append(
            f"Invalid file type. Only {', '.join(ALLOWED_EXTENSIONS)} are allowed."
        )

    size = None
    if file_size is None or isinstance(file_size, bool):
        errors.append("File size is required")
    else:
        try:
            size = int(file_size)
        except (TypeError, ValueError):
            errors.append("File size must be a number")
        else:
            if size < 0 or size > max_file_size_bytes:
                errors.append(
                    f"File size must not exceed {max_file_size_bytes // (1024 * 1024)}mb."
                )

    if errors:
        raise ValidationError(errors)

    return UploadInitRequest(email=email, title=title, file_name=file_name, file_size=size)


def validate_file_part(client_name: str, size: int, max_file_size_bytes: int) -> List[str]:
    """
    Return the list of problems with an inbound file part (empty when valid).

    Mirrors what a multipart validator reports: unsupported extension and
    oversize. The result is attached to the part rather than raised so the
    upload service decides how to reject it.
    """
    errors = []
    if not is_allowed_file_name(client_name):
        errors.append(f"{client_name} has an unsupported file type.")
    if size > max_file_size_bytes:
        errors.append(f"{client_name} is too large.")
    return errors
