"""
Error types for the deployment engine.

Every error carries a safe message, which may be shown to end users, and an
optional raw message holding diagnostics meant for logs only.
"""

from typing import List, Optional


class EngineError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message_safe: str, message_raw: Optional[str] = None):
        super().__init__(message_safe)
        self.message_safe = message_safe
        self.message_raw = message_raw

    def __str__(self) -> str:
        return self.message_safe

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message_safe!r})"

    def full_details(self) -> str:
        """Safe and raw message joined, for logs."""
        if self.message_raw:
            return f"{self.message_safe} (raw: {self.message_raw})"
        return self.message_safe


class CommandError(EngineError):
    """An external command (helm, kubectl) failed."""

    def __init__(
        self,
        message_safe: str,
        message_raw: Optional[str] = None,
        returncode: Optional[int] = None,
    ):
        super().__init__(message_safe, message_raw)
        self.returncode = returncode


class ServiceValidationError(EngineError):
    """A pre-flight check failed. Nothing has been mutated."""

    def __init__(
        self, service_id: str, message_safe: str, message_raw: Optional[str] = None
    ):
        super().__init__(message_safe, message_raw)
        self.service_id = service_id


class ExecutionError(EngineError):
    """A lifecycle hook failed after it started mutating state."""

    def __init__(
        self, service_id: str, message_safe: str, message_raw: Optional[str] = None
    ):
        super().__init__(message_safe, message_raw)
        self.service_id = service_id


class CapabilityNotSupportedError(EngineError):
    """The service kind does not implement the requested action."""

    def __init__(self, service_id: str, action: str, kind: str):
        super().__init__(
            f"Action '{action}' is not implemented for {kind} services",
            f"service_id={service_id}",
        )
        self.service_id = service_id
        self.action = action


class UnrecoverableError(EngineError):
    """Terminal failure, no further automatic action is attempted."""


class PrerequisiteError(UnrecoverableError):
    """A required configuration artifact is missing or cannot be parsed."""


class ChartInstallError(EngineError):
    """One or more installable units failed inside a level."""

    def __init__(
        self,
        level_index: int,
        failed_units: List[str],
        message_raw: Optional[str] = None,
    ):
        super().__init__(
            f"Level {level_index} failed to install: {', '.join(failed_units)}",
            message_raw,
        )
        self.level_index = level_index
        self.failed_units = failed_units


class TransactionCancelled(EngineError):
    """The transaction was cancelled between two lifecycle hooks."""

    def __init__(self, message_safe: str = "Transaction has been cancelled"):
        super().__init__(message_safe)


class InvalidStateTransition(Exception):
    pass
