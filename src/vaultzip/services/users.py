"""User registration and licence-key checks."""

from __future__ import annotations

import hmac
import logging
import secrets
import string

from ..core.exceptions import UserExistsError, UserNotFoundError
from ..core.models import User
from ..core.validation import validate_credentials, validate_email
from ..database.models import UserModel

logger = logging.getLogger(__name__)

LICENCE_KEY_LENGTH = 24
_LICENCE_ALPHABET = string.ascii_lowercase + string.digits


def generate_licence_key(length: int = LICENCE_KEY_LENGTH) -> str:
    # collision-resistant id, starts with a letter like a cuid
    head = secrets.choice(string.ascii_lowercase)
    return head + "".join(secrets.choice(_LICENCE_ALPHABET) for _ in range(length - 1))


class UserService:
    def __init__(self, db, encrypter):
        self.users = UserModel(db, encrypter)

    def register(self, email) -> User:
        """Create a user with a fresh licence key. The returned User carries the key."""
        email = validate_email(email)
        if self.users.email_exists(email):
            raise UserExistsError("Email already exists.")
        user = self.users.create(email, generate_licence_key())
        logger.info("registered user %s", user.user_id)
        return user

    def get_by_email(self, email) -> User:
        user = self.users.get_by_email(validate_email(email))
        if user is None:
            raise UserNotFoundError("User does not exist.")
        return user

    def authenticate(self, email, licence_key) -> User:
        """Return the user only if ``licence_key`` is theirs."""
        credentials = validate_credentials(email, licence_key)
        user = self.users.get_by_email(credentials.email)
        if user is None or not hmac.compare_digest(
            user.licence_key.encode("utf-8"), credentials.licence_key.encode("utf-8")
        ):
            raise UserNotFoundError("Provide your email with the corresponding licence key.")
        return user
