"""ORM-style helpers for database operations."""

import json
import uuid

from .connection import DatabaseConnection
from ..core.models import FileEncryptionMetadata, FileUpload, FileUploadStatus, User

LICENCE_KEY_PURPOSE = "Licensing"


class BaseModel:
    """Base class for DB models."""

    __slots__ = ("db",)

    def __init__(self, db: DatabaseConnection):
        """Initialize with a DatabaseConnection."""
        self.db = db


class UserModel(BaseModel):
    """DB model for users. Licence keys are encrypted on write and decrypted on read."""

    __slots__ = ("encrypter",)

    def __init__(self, db, encrypter):
        super().__init__(db)
        self.encrypter = encrypter

    def create(self, email, licence_key):
        """Create a user and return it."""
        user_id = str(uuid.uuid4())
        token = self.encrypter.encrypt(licence_key.encode("utf-8"), LICENCE_KEY_PURPOSE)
        self.db.execute(
            "INSERT INTO users (user_id, email, licence_key) VALUES (?, ?, ?)",
            (user_id, email, token),
        )
        return self.get(user_id)

    def get(self, user_id):
        """Get user by ID."""
        row = self.db.fetch_one("SELECT * FROM users WHERE user_id = ?", (user_id,))
        return self._row_to_user(row)

    def get_by_email(self, email):
        """Get user by email (case-insensitive)."""
        row = self.db.fetch_one("SELECT * FROM users WHERE email = ?", (email,))
        return self._row_to_user(row)

    def email_exists(self, email):
        return self.db.fetch_one("SELECT 1 FROM users WHERE email = ?", (email,)) is not None

    def _row_to_user(self, row):
        if row is None:
            return None
        licence_key = self.encrypter.decrypt(row["licence_key"], LICENCE_KEY_PURPOSE)
        return User(
            user_id=row["user_id"],
            email=row["email"],
            licence_key=licence_key.decode("utf-8"),
            created_at=row.get("created_at"),
        )


def row_to_upload(row):
    """Convert a file_uploads row to a FileUpload."""
    if row is None:
        return None
    return FileUpload(
        id=row["id"],
        title=row["title"],
        user_id=row["user_id"],
        status=FileUploadStatus(row["status"]),
        file_data=FileEncryptionMetadata.from_dict(json.loads(row["file_data"])),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


class FileUploadModel(BaseModel):
    """DB model for upload records."""

    def create(self, title, user_id, file_data):
        """Create a Pending upload record and return it."""
        upload_id = uuid.uuid4().hex
        self.db.execute(
            """
            INSERT INTO file_uploads (id, title, user_id, status, file_data)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                upload_id,
                title,
                user_id,
                FileUploadStatus.PENDING.value,
                json.dumps(file_data.to_dict()),
            ),
        )
        return self.get(upload_id)

    def get(self, upload_id):
        row = self.db.fetch_one("SELECT * FROM file_uploads WHERE id = ?", (upload_id,))
        return row_to_upload(row)

    def get_for_user(self, upload_id, user_id):
        """Get an upload only if it belongs to ``user_id``."""
        row = self.db.fetch_one(
            "SELECT * FROM file_uploads WHERE id = ? AND user_id = ?",
            (upload_id, user_id),
        )
        return row_to_upload(row)

    def list_completed(self, user_id):
        """List a user's completed uploads, most recently updated first."""
        rows = self.db.fetch_all(
            """
            SELECT * FROM file_uploads
            WHERE user_id = ? AND status = ?
            ORDER BY updated_at DESC, rowid DESC
            """,
            (user_id, FileUploadStatus.COMPLETED.value),
        )
        return [row_to_upload(row) for row in rows]

    def begin_attempt(self, upload_id, file_data):
        """
        Replace the key and IV of a Pending record before an upload attempt.

        Returns False if the record is no longer Pending.
        """
        updated = self.db.execute(
            "UPDATE file_uploads SET file_data = ? WHERE id = ? AND status = ?",
            (
                json.dumps(file_data.to_dict()),
                upload_id,
                FileUploadStatus.PENDING.value,
            ),
        )
        return updated == 1

    def mark_completed(self, upload_id, file_data):
        """
        Store the completion metadata and flip the record to Completed.

        The update only applies to a Pending record still holding the same IV
        as ``file_data``, so of two racing attempts at most one succeeds.
        Returns True if this call won.
        """
        if not file_data.is_complete:
            raise ValueError("completion requires auth_tag and location")
        stored = file_data.to_dict()
        updated = self.db.execute(
            """
            UPDATE file_uploads SET status = ?, file_data = ?
            WHERE id = ? AND status = ? AND json_extract(file_data, '$.iv') = ?
            """,
            (
                FileUploadStatus.COMPLETED.value,
                json.dumps(stored),
                upload_id,
                FileUploadStatus.PENDING.value,
                stored["iv"],
            ),
        )
        return updated == 1
