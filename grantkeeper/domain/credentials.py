"""Secret hashing for the stored credential reference."""
import bcrypt

from grantkeeper.settings import settings


def hash_secret(secret: str, rounds: int = None) -> str:
    """Hash a secret with bcrypt. Only the hash is ever persisted."""
    salt = bcrypt.gensalt(rounds=rounds or settings.bcrypt_rounds)
    return bcrypt.hashpw(secret.encode("utf-8"), salt).decode("utf-8")
