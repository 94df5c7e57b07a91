"""
Governance Core - Exception Hierarchy

Every infrastructure failure mode has a dedicated exception class with
context, recovery hints, and severity classification. Authorization
denials are not exceptions: they are ordinary decision results.
"""

from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime, timezone


# ══════════════════════════════════════════════════════════════════════════════
# SEVERITY CLASSIFICATION
# ══════════════════════════════════════════════════════════════════════════════

class ExceptionSeverity(Enum):
    """Severity levels for exceptions."""
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """Recommended recovery actions."""
    RETRY = "retry"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    SKIP = "skip"
    ABORT = "abort"
    ESCALATE = "escalate"


# ══════════════════════════════════════════════════════════════════════════════
# BASE EXCEPTION
# ══════════════════════════════════════════════════════════════════════════════

class GovernanceError(Exception):
    """
    Base exception for all governance core errors.
    Provides structured context, severity, and recovery guidance.
    """

    def __init__(
        self,
        message: str,
        severity: ExceptionSeverity = ExceptionSeverity.ERROR,
        recovery: RecoveryAction = RecoveryAction.ABORT,
        recovery_hint: str = "",
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        retryable: bool = False,
        error_code: str = "GOV-0000",
    ):
        super().__init__(message)
        self.severity = severity
        self.recovery = recovery
        self.recovery_hint = recovery_hint
        self.context = context or {}
        self.cause = cause
        self.retryable = retryable
        self.error_code = error_code
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging and CLI output."""
        return {
            "error_code": self.error_code,
            "severity": self.severity.value,
            "message": str(self),
            "recovery_action": self.recovery.value,
            "recovery_hint": self.recovery_hint,
            "retryable": self.retryable,
            "context": self.context,
            "cause": str(self.cause) if self.cause else None,
            "timestamp": self.timestamp,
            "exception_type": self.__class__.__name__,
        }

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} [{self.error_code}] "
            f"severity={self.severity.value} "
            f"message='{str(self)[:80]}'>"
        )


# ══════════════════════════════════════════════════════════════════════════════
# VALIDATION EXCEPTIONS
# ══════════════════════════════════════════════════════════════════════════════

class ValidationError(GovernanceError):
    """Malformed input: unknown role, bad key encoding, invalid state change."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "GOV-VAL-0000")
        kwargs.setdefault("severity", ExceptionSeverity.WARNING)
        kwargs.setdefault("recovery", RecoveryAction.SKIP)
        super().__init__(message, **kwargs)


class InvalidTransitionError(ValidationError):
    """An agent action was already approved or rejected."""

    def __init__(self, action_id: str, current_state: str, **kwargs):
        kwargs.setdefault("error_code", "GOV-VAL-0001")
        kwargs.setdefault("context", {"action_id": action_id, "current_state": current_state})
        kwargs.setdefault("recovery_hint", "Decided agent actions are immutable.")
        super().__init__(
            f"Agent action {action_id} is already {current_state}", **kwargs
        )


# ══════════════════════════════════════════════════════════════════════════════
# CRYPTO EXCEPTIONS
# ══════════════════════════════════════════════════════════════════════════════

class CryptoError(GovernanceError):
    """Encryption, decryption, or signature failure. Always fatal to the caller."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "GOV-CRY-0000")
        kwargs.setdefault("severity", ExceptionSeverity.CRITICAL)
        kwargs.setdefault("recovery", RecoveryAction.ABORT)
        super().__init__(message, **kwargs)


class IntegrityError(CryptoError):
    """A stored record no longer matches its integrity tag."""

    def __init__(self, record_id: str, **kwargs):
        kwargs.setdefault("error_code", "GOV-CRY-0001")
        kwargs.setdefault("recovery", RecoveryAction.ESCALATE)
        kwargs.setdefault("context", {"record_id": record_id})
        kwargs.setdefault("recovery_hint", "Investigate the store; the record was modified outside the API.")
        super().__init__(f"Integrity tag mismatch for record {record_id}", **kwargs)


# ══════════════════════════════════════════════════════════════════════════════
# STORAGE EXCEPTIONS
# ══════════════════════════════════════════════════════════════════════════════

class StorageError(GovernanceError):
    """Persistence unavailable or a query failed."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "GOV-DB-0000")
        super().__init__(message, **kwargs)


class StorageConnectionError(StorageError):
    """Failed to open or acquire a database connection."""

    def __init__(self, db_path: str = "", **kwargs):
        kwargs.setdefault("error_code", "GOV-DB-0001")
        kwargs.setdefault("recovery", RecoveryAction.RETRY)
        kwargs.setdefault("retryable", True)
        super().__init__(f"Database connection failed: {db_path}", **kwargs)


class StorageTimeoutError(StorageError):
    """A write could not be confirmed within the caller's timeout."""

    def __init__(self, timeout: float = 0.0, **kwargs):
        kwargs.setdefault("error_code", "GOV-DB-0002")
        kwargs.setdefault("recovery", RecoveryAction.RETRY_WITH_BACKOFF)
        kwargs.setdefault("retryable", True)
        kwargs.setdefault("context", {"timeout": timeout})
        super().__init__(f"Storage operation timed out after {timeout}s", **kwargs)


# ══════════════════════════════════════════════════════════════════════════════
# LOOKUP / PRIVILEGE EXCEPTIONS
# ══════════════════════════════════════════════════════════════════════════════

class NotFoundError(GovernanceError):
    """Unknown record, framework, principal, or action id."""

    def __init__(self, kind: str, identifier: str, **kwargs):
        kwargs.setdefault("error_code", "GOV-NF-0000")
        kwargs.setdefault("severity", ExceptionSeverity.WARNING)
        kwargs.setdefault("recovery", RecoveryAction.SKIP)
        kwargs.setdefault("context", {"kind": kind, "id": identifier})
        super().__init__(f"{kind} not found: {identifier}", **kwargs)


class FrameworkNotFoundError(NotFoundError):
    """Compliance framework name is not registered."""

    def __init__(self, name: str, **kwargs):
        kwargs.setdefault("error_code", "GOV-NF-0001")
        super().__init__("Compliance framework", name, **kwargs)


class ForbiddenError(GovernanceError):
    """Caller lacks the privilege for a management operation."""

    def __init__(self, operation: str, principal_id: str, reason: str = "", **kwargs):
        kwargs.setdefault("error_code", "GOV-SEC-0001")
        kwargs.setdefault("severity", ExceptionSeverity.WARNING)
        kwargs.setdefault("recovery", RecoveryAction.ESCALATE)
        kwargs.setdefault("context", {"operation": operation, "principal_id": principal_id})
        message = f"{principal_id} may not perform {operation}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, **kwargs)
