"""Client-side settings and licence key storage.

``vaultzip register`` remembers the registered email in a small JSON file
(``{"email": "..."}``) and stores the licence key itself in the OS keystore
via ``keyring`` under the ``vaultzip`` service, keyed by that email. Later
commands look the key up there so it does not have to be typed again.

Do not assume keyring provides hardware-backed security on all platforms.
"""

from __future__ import annotations

import getpass
import json
import logging
import os
from pathlib import Path
from typing import Callable, Optional

import keyring
from keyring.errors import KeyringError

from vaultzip.core.exceptions import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = ".vault-config.json"
ENV_CLIENT_CONFIG = "VAULTZIP_CLIENT_CONFIG"
KEYRING_SERVICE = "vaultzip"


class ClientConfig:
    def __init__(self, path: Optional[str | Path] = None, service: str = KEYRING_SERVICE):
        if path is None:
            path = os.environ.get(ENV_CLIENT_CONFIG) or Path.cwd() / DEFAULT_CONFIG_NAME
        self.path = Path(path)
        self.service = service

    def _load(self) -> dict:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def get_email(self) -> Optional[str]:
        value = self._load().get("email")
        return value if isinstance(value, str) and value else None

    def save_licence_key(self, email: str, licence_key: str) -> Path:
        """Store ``licence_key`` in the keystore and remember ``email`` in the config file."""
        try:
            keyring.set_password(self.service, email, licence_key)
        except KeyringError as e:
            raise ConfigError(f"Could not save the licence key to the system keyring: {e}") from e

        data = self._load()
        data["email"] = email
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        return self.path

    def get_licence_key(self, email: Optional[str] = None) -> Optional[str]:
        """Return the stored key for ``email`` (default: the remembered email), or None."""
        email = email or self.get_email()
        if not email:
            return None
        try:
            return keyring.get_password(self.service, email)
        except KeyringError as e:
            logger.warning("could not read the licence key from the system keyring: %s", e)
            return None


def resolve_licence_key(
    flag_value: Optional[str] = None,
    override_key: bool = False,
    config: Optional[ClientConfig] = None,
    prompt: Optional[Callable[[str], str]] = None,
    email: Optional[str] = None,
) -> Optional[str]:
    """
    Pick the licence key: explicit flag, then the keyring, then a hidden prompt.

    ``override_key`` skips the keyring and always prompts. Returns None if
    no non-empty key was provided.
    """
    prompt = prompt or getpass.getpass
    if flag_value and flag_value.strip():
        return flag_value.strip()

    licence_key = None
    if not override_key:
        licence_key = (config or ClientConfig()).get_licence_key(email)

    if not (licence_key and licence_key.strip()):
        licence_key = prompt(
            "Enter the override licence key: "
            if override_key
            else "Enter your licence key (not found in keyring): "
        )

    if not (licence_key and licence_key.strip()):
        return None
    return licence_key.strip()
