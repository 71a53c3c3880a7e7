"""
Error taxonomy for account provisioning.

Local validation problems raise ``InvalidInputError``. Ledger clients raise
``LedgerError``. The orchestrator never raises for protocol outcomes: it
returns a ``ProvisioningResult`` carrying exactly one ``FailureCode`` or a
success payload.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class InvalidInputError(ValueError):
    """Raised when a seed or account name is malformed."""

    def __init__(self, field_name: str, message: str):
        self.field = field_name
        self.message = message
        super().__init__(f"{field_name}: {message}")


class LedgerError(Exception):
    """
    Raised by a ledger client when an RPC call fails.

    ``code`` is a structured category when the client can supply one;
    otherwise only the upstream ``message`` is available.
    """

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code
        super().__init__(message)


class FailureCode(str, Enum):
    """Stable failure categories surfaced to callers."""
    INVALID_INPUT = "INVALID_INPUT"
    NAME_TAKEN = "NAME_TAKEN"
    INVALID_SESSION = "INVALID_SESSION"
    SESSION_MISMATCH = "SESSION_MISMATCH"
    KEY_MISMATCH = "KEY_MISMATCH"
    SESSION_ALREADY_USED = "SESSION_ALREADY_USED"
    BROADCAST_FAILED = "BROADCAST_FAILED"
    LEDGER_ERROR = "LEDGER_ERROR"


class LedgerErrorCategory(str, Enum):
    """Refinement of an upstream ledger failure."""
    INSUFFICIENT_RESOURCES = "INSUFFICIENT_RESOURCES"
    NO_CLAIMED_ACCOUNTS = "NO_CLAIMED_ACCOUNTS"
    NAME_TAKEN = "NAME_TAKEN"
    LEDGER_ERROR = "LEDGER_ERROR"


@dataclass
class ProvisioningResult:
    """
    Outcome of an orchestrator operation.

    Either ``failure`` is None and ``data`` holds the success payload, or
    ``failure`` is set and ``data`` is empty.
    """
    failure: Optional[FailureCode] = None
    message: str = ""
    details: Optional[str] = None
    ledger_category: Optional[LedgerErrorCategory] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def succeeded(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, message: str = "", **data: Any) -> "ProvisioningResult":
        return cls(message=message, data=data)

    @classmethod
    def fail(
        cls,
        failure: FailureCode,
        message: str,
        details: Optional[str] = None,
        ledger_category: Optional[LedgerErrorCategory] = None,
    ) -> "ProvisioningResult":
        return cls(
            failure=failure,
            message=message,
            details=details,
            ledger_category=ledger_category,
        )

    def error_dict(self) -> Dict[str, Any]:
        """Failure payload; never contains key material."""
        out: Dict[str, Any] = {
            "failure": self.failure.value if self.failure else None,
            "message": self.message,
        }
        if self.details:
            out["details"] = self.details
        if self.ledger_category:
            out["ledger_category"] = self.ledger_category.value
        return out
