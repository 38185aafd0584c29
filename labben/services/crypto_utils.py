import secrets

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerifyMismatchError

from labben.config import settings

TOKEN_PREFIX_LENGTH = 16

ph = PasswordHasher(
    time_cost=settings.token_hash_time_cost,
    memory_cost=settings.token_hash_memory_cost,
    parallelism=settings.token_hash_parallelism,
    hash_len=32,
    salt_len=16,
)


def generate_token() -> str:
    """64 hex chars = 256 bits."""
    return secrets.token_hex(32)


def get_token_prefix(token: str) -> str:
    """Extract the prefix from a token for indexed lookup."""
    return token[:TOKEN_PREFIX_LENGTH]


def hash_token(token: str) -> str:
    """Hash a token using Argon2id."""
    return ph.hash(token)


def verify_token(token: str, token_hash: str) -> bool:
    """Verify a token against its Argon2id hash."""
    try:
        ph.verify(token_hash, token)
        return True
    except (VerifyMismatchError, InvalidHashError):
        return False
