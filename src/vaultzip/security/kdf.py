"""Key derivation for VaultZip."""
import os

from argon2.low_level import Type, hash_secret_raw

SALT_LENGTH = 16
KEY_LENGTH = 32

# fixed cost used for licence-key wrapping; client and server must agree
DEFAULT_TIME_COST = 3
DEFAULT_MEMORY_COST = 65536
DEFAULT_PARALLELISM = 1


def generate_salt(length: int = SALT_LENGTH) -> bytes:
    """Return a cryptographically secure random salt."""
    return os.urandom(length)


def derive_key(
    secret,
    salt: bytes,
    time_cost: int = DEFAULT_TIME_COST,
    memory_cost: int = DEFAULT_MEMORY_COST,
    parallelism: int = DEFAULT_PARALLELISM,
    key_len: int = KEY_LENGTH,
) -> bytes:
    """
    Derive a symmetric key from a low-entropy secret using Argon2id.
    Deterministic for identical inputs. Returns raw derived key bytes.
    """
    if isinstance(secret, str):
        secret = secret.encode("utf-8")

    return hash_secret_raw(
        secret=secret,
        salt=salt,
        time_cost=time_cost,
        memory_cost=memory_cost,
        parallelism=parallelism,
        hash_len=key_len,
        type=Type.ID,
    )
