"""
Error taxonomy
==============
Every failure the agent reports to a user belongs to one of these kinds.
Input, balance, limit and conflict errors carry text that is safe to show
verbatim; the rest map to canned messages plus a correlation id that also appears
in the logs.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class MiiMiiError(Exception):
    code = "E000"
    user_message = "Something went wrong on our side. Please try again."
    verbatim = False

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.user_message)
        self.message = message or self.user_message
        self.details = details

    def render(self, correlation_id: Optional[str] = None) -> str:
        text = self.message if self.verbatim else self.user_message
        if correlation_id and not self.verbatim:
            text = f"{text}\n\nRef: {self.code}-{correlation_id}"
        return text


class InvalidInput(MiiMiiError):
    code = "E100"
    user_message = "That doesn't look right. Please check and try again."
    verbatim = True


class InvalidPhoneNumber(InvalidInput):
    code = "E101"
    user_message = "That phone number doesn't look valid."


class MediaTooLarge(InvalidInput):
    code = "E102"
    user_message = "That file is too large to send."


class AuthenticationFailed(MiiMiiError):
    code = "E200"
    user_message = "We couldn't verify you. Please try again."


class PinLocked(AuthenticationFailed):
    code = "E201"
    user_message = "Too many wrong PIN attempts. PIN entry is locked for 15 minutes."

    def __init__(self, locked_until: datetime, message: str = ""):
        super().__init__(message, locked_until=locked_until.isoformat())
        self.locked_until = locked_until


class FlowTokenNotFound(AuthenticationFailed):
    code = "E202"
    user_message = "This form session is no longer valid. Please start again."


class FlowTokenExpired(AuthenticationFailed):
    code = "E203"
    user_message = "This form session has expired. Please start again."


class InsufficientFunds(MiiMiiError):
    code = "E300"
    user_message = "Insufficient balance for this transaction."
    verbatim = True


class LimitExceeded(MiiMiiError):
    code = "E301"
    user_message = "This transaction exceeds your limit."
    verbatim = True


class ProviderUnavailable(MiiMiiError):
    code = "E400"
    user_message = "The service is temporarily unavailable. Please try again shortly."


class CircuitOpenError(ProviderUnavailable):
    code = "E401"


class ProviderOutcomeUnknown(ProviderUnavailable):
    """The request left the process but no definitive answer came back."""
    code = "E402"
    user_message = "We're still waiting on the provider. We'll confirm shortly."


class ProviderRejected(MiiMiiError):
    code = "E500"
    user_message = "The transaction was declined by the provider."


class Conflict(MiiMiiError):
    code = "E600"
    user_message = "A similar transaction is already in progress."
    verbatim = True


class InternalError(MiiMiiError):
    code = "E900"


class DecryptionError(MiiMiiError):
    code = "E901"
    user_message = "The request could not be decrypted."


def new_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


def describe(error: BaseException, correlation_id: Optional[str] = None) -> str:
    """User-facing text for any exception; unknown exceptions become InternalError."""
    if not isinstance(error, MiiMiiError):
        error = InternalError()
    return error.render(correlation_id)


@dataclass
class Result(Generic[T]):
    """Outcome of a wallet operation: either a value or a taxonomy error."""
    value: Optional[T] = None
    error: Optional[MiiMiiError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: MiiMiiError) -> "Result[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value
