"""
Command failures.

A CommandError is NOT a fault in the engine - it is the engine refusing a
request. The dispatcher turns every one of them into a failure report.
"""
from typing import List, Optional

from registry_guard.models.enums import Fault


class CommandError(Exception):
    """Base class for refusals raised inside a command workflow."""
    fault = Fault.INTERNAL

    def __init__(self, message: str, details: Optional[List[str]] = None):
        self.message = message
        self.details = details or []
        super().__init__(self.message)

    @property
    def messages(self) -> List[str]:
        return [self.message] + self.details


class MissingParameters(CommandError):
    fault = Fault.MISSING_PARAMETERS


class InvalidParameters(CommandError):
    fault = Fault.INVALID_PARAMETERS


class NotFound(CommandError):
    fault = Fault.NOT_FOUND


class AuthenticationFailed(CommandError):
    """Credential mismatch. Always audited and reported to the penalty hook."""
    fault = Fault.AUTHENTICATION_FAILED


class Forbidden(CommandError):
    fault = Fault.FORBIDDEN


class Conflict(CommandError):
    fault = Fault.CONFLICT


class NotPending(CommandError):
    fault = Fault.NOT_PENDING


class InvalidKey(CommandError):
    fault = Fault.INVALID_KEY


class QuotaExceeded(CommandError):
    fault = Fault.QUOTA_EXCEEDED


class Internal(CommandError):
    fault = Fault.INTERNAL
