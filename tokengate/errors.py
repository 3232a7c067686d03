"""
tokengate - Errors

Infrastructure faults only. Signature verification never raises; it
returns a VerificationResult carrying a FailureKind.
"""

from typing import Optional


class GateError(Exception):
    """Base error with a machine readable code."""
    code = "gate_error"

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(f"[{self.code}] {message}")


class PolicyError(GateError, ValueError):
    """Invalid policy definition (unknown kind, bad amount, missing asset)."""
    code = "policy_invalid"


class StateConflictError(GateError):
    """Platform says the request was already handled (approved, declined, gone)."""
    code = "state_conflict"


class UpstreamError(GateError):
    """A remote service failed or timed out."""
    code = "upstream_error"


class BalanceAPIError(UpstreamError):
    """Balance service returned a non-success response."""
    code = "balance_api_error"

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class TelegramError(UpstreamError):
    """Bot API call failed."""
    code = "telegram_error"

    def __init__(self, method: str, description: str, error_code: Optional[int] = None):
        self.method = method
        self.description = description
        self.error_code = error_code
        super().__init__(f"{method} failed: {description}")


class DMBlockedError(TelegramError):
    """The user never started the bot, or blocked it."""
    code = "dm_blocked"
