"""Input shape checks shared by the conversation engine and the orchestrator."""
import re

from grantkeeper.domain.errors import InvalidNameError, WeakSecretError
from grantkeeper.settings import settings

NAME_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")
NAME_MIN_LENGTH = 3
NAME_MAX_LENGTH = 20


def validate_name(name: str) -> str:
    """Return the trimmed name or raise InvalidNameError with the reason."""
    if not name or not isinstance(name, str) or not name.strip():
        raise InvalidNameError("Username is required")
    name = name.strip()
    if len(name) < NAME_MIN_LENGTH or len(name) > NAME_MAX_LENGTH:
        raise InvalidNameError(f"Username must be {NAME_MIN_LENGTH}-{NAME_MAX_LENGTH} characters long")
    if not NAME_PATTERN.match(name):
        raise InvalidNameError("Username can only contain letters, numbers, and underscores")
    return name


def validate_secret(secret: str, min_length: int = None, max_length: int = None) -> str:
    min_length = min_length or settings.min_secret_length
    max_length = max_length or settings.max_secret_length

    if not secret or not isinstance(secret, str):
        raise WeakSecretError("Password is required")
    secret = secret.strip()
    if len(secret) < min_length:
        raise WeakSecretError(f"Password must be at least {min_length} characters long")
    if len(secret) > max_length:
        raise WeakSecretError(f"Password must not exceed {max_length} characters")
    if not (re.search(r"[a-z]", secret) and re.search(r"[A-Z]", secret) and re.search(r"\d", secret)):
        raise WeakSecretError(
            "Password must contain at least one uppercase letter, one lowercase letter, and one number"
        )
    return secret
