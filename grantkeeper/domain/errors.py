"""Domain error taxonomy.

Every error carries a stable ``code`` and a user-facing ``message``. Transport
adapters map the five families (validation, conflict, provisioning,
persistence, not-found) onto their own status vocabulary.
"""
from typing import Any, Dict, Optional


class GrantKeeperError(Exception):
    """Base class for all lifecycle errors."""
    code = "GRANTKEEPER_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details: Dict[str, Any] = details or {}


# --- Validation: the caller corrects its input ---

class ValidationError(GrantKeeperError):
    code = "VALIDATION_FAILED"


class InvalidNameError(ValidationError):
    code = "INVALID_NAME"


class WeakSecretError(ValidationError):
    code = "WEAK_SECRET"


# --- Conflict: choose different input or wait ---

class ConflictError(GrantKeeperError):
    code = "CONFLICT"


class NameTakenError(ConflictError):
    code = "NAME_TAKEN"

    def __init__(self, name: str):
        super().__init__("Username already taken. Please try another.", details={"name": name})
        self.name = name


class DuplicateNameError(ConflictError):
    code = "DUPLICATE_NAME"

    def __init__(self, name: str):
        super().__init__(f"Account name '{name}' already exists", details={"name": name})
        self.name = name


class SessionAlreadyActiveError(ConflictError):
    code = "SESSION_ALREADY_ACTIVE"

    def __init__(self, requester_id: int):
        super().__init__("A registration is already in progress.", details={"requester_id": requester_id})


class AlreadyRegisteredError(ConflictError):
    code = "ALREADY_REGISTERED"

    def __init__(self, requester_id: int):
        super().__init__("You are already registered!", details={"requester_id": requester_id})


class AlreadyExpiredError(ConflictError):
    code = "ALREADY_EXPIRED"

    def __init__(self, account_id: str):
        super().__init__("Account has expired and cannot be enabled", details={"account_id": account_id})


class ProvisioningIncompleteError(ConflictError):
    code = "PROVISIONING_INCOMPLETE"

    def __init__(self, account_id: str, state: str):
        super().__init__(
            "Account provisioning is incomplete; finish provisioning first",
            details={"account_id": account_id, "provisioning_state": state},
        )


class ConcurrentModificationError(ConflictError):
    code = "VERSION_CONFLICT"

    def __init__(self, account_id: str, expected_version: int, actual_version: Optional[int] = None):
        super().__init__(
            f"Account {account_id} was modified concurrently "
            f"(expected version {expected_version}, got {actual_version})",
            details={"account_id": account_id, "expected_version": expected_version, "actual_version": actual_version},
        )


# --- Provisioning: retry the provisioning step only ---

class ProvisioningError(GrantKeeperError):
    code = "PROVISIONING_ERROR"


class ProvisioningFailedError(ProvisioningError):
    code = "PROVISIONING_FAILED"

    def __init__(self, message: str, account_id: Optional[str] = None, name: Optional[str] = None, step: Optional[str] = None):
        super().__init__(message, details={"account_id": account_id, "name": name, "step": step})
        self.account_id = account_id
        self.name = name
        self.step = step


class ProvisionerError(Exception):
    """Raised by provisioner adapters when an external resource call fails."""

    def __init__(self, operation: str, name: str, reason: str):
        super().__init__(f"{operation} failed for '{name}': {reason}")
        self.operation = operation
        self.name = name
        self.reason = reason


# --- Persistence: fatal to the current operation ---

class PersistenceError(GrantKeeperError):
    code = "PERSISTENCE_ERROR"


class PersistenceFailedError(PersistenceError):
    code = "PERSISTENCE_FAILED"


# --- Not found ---

class NotFoundError(GrantKeeperError):
    code = "NOT_FOUND"


class AccountNotFoundError(NotFoundError):
    code = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} not found", details={"account_id": account_id})


class NoActiveSessionError(NotFoundError):
    code = "NO_ACTIVE_SESSION"

    def __init__(self, requester_id: int):
        super().__init__("No registration in progress. Start one with /register.", details={"requester_id": requester_id})


class SessionTimedOutError(NotFoundError):
    code = "SESSION_TIMED_OUT"

    def __init__(self, requester_id: int):
        super().__init__("Registration session timed out. Start again with /register.", details={"requester_id": requester_id})
