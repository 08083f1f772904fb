"""
Core exception classes for infra-state.
"""
from typing import Optional


class InfraStateError(Exception):
    """Base exception for all infra-state errors."""

    def __init__(self, message: str, details: str = None):
        super().__init__(message)
        self.message = message
        self.details = details


class AuthenticationError(InfraStateError):
    """Raised when AWS authentication fails."""
    pass


class ConfigurationError(InfraStateError):
    """Raised when configuration is invalid or missing."""
    pass


class ServiceError(InfraStateError):
    """Raised when an AWS API call fails unexpectedly."""
    pass


class ValidationError(InfraStateError):
    """Raised when input validation fails."""
    pass


class PlanningError(InfraStateError):
    """Raised when the planning engine cannot produce a new snapshot."""

    def __init__(self, message: str, state_id: str = None, details: str = None):
        super().__init__(message, details)
        self.state_id = state_id


class LockedError(InfraStateError):
    """Raised when a lock is already held by another party.

    The caller must retry later or abort; the lock is never bypassed.
    """

    def __init__(self, lock_id: str, holder: str, current=None):
        current_holder = current.holder if current is not None else "unknown"
        super().__init__(
            f"State '{lock_id}' is locked by {current_holder}",
            details=f"requested by {holder}",
        )
        self.lock_id = lock_id
        self.holder = holder
        self.current = current


class LockNotHeldError(InfraStateError):
    """Raised when releasing a lock the caller does not hold."""

    def __init__(self, lock_id: str, holder: str, current=None):
        if current is None:
            message = f"No lock is held on '{lock_id}'"
        else:
            message = f"Lock on '{lock_id}' is held by {current.holder}, not {holder}"
        super().__init__(message)
        self.lock_id = lock_id
        self.holder = holder
        self.current = current


class ConflictError(InfraStateError):
    """Raised when a conditional write finds a different stored version.

    This means somebody wrote outside the lock protocol. It is surfaced and
    never resolved automatically.
    """

    def __init__(
        self,
        state_id: str,
        expected_version: Optional[int],
        actual_version: Optional[int] = None,
        details: str = None,
    ):
        expected = "no prior state" if expected_version is None else f"version {expected_version}"
        actual = "unknown" if actual_version is None else f"version {actual_version}"
        super().__init__(
            f"Write conflict on '{state_id}': expected {expected}, found {actual}",
            details=details,
        )
        self.state_id = state_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class StateNotFoundError(InfraStateError):
    """Raised when no snapshot exists yet for a state identifier."""

    def __init__(self, state_id: str, version_id: str = None):
        suffix = f" (version {version_id})" if version_id else ""
        super().__init__(f"No state snapshot found for '{state_id}'{suffix}")
        self.state_id = state_id
        self.version_id = version_id


class ReleaseFailedError(InfraStateError):
    """Raised when a held lock could not be released.

    The lock is now abandoned and needs manual operator intervention
    (``infra-state unlock --force``). Nothing breaks it automatically.
    """

    def __init__(self, lock_id: str, holder: str, reason: str, original_error: Exception = None):
        super().__init__(
            f"Failed to release lock on '{lock_id}' held by {holder}: {reason}",
            details=str(original_error) if original_error else None,
        )
        self.lock_id = lock_id
        self.holder = holder
        self.reason = reason
        self.original_error = original_error


class UserCancelled(InfraStateError):
    """Raised when the user cancels an operation (Ctrl+C or declined prompt)."""

    def __init__(self, message: str = "Operation cancelled by user"):
        super().__init__(message)
