"""Corporate action engine error types."""

from enum import Enum
from typing import Dict, List, Optional


class ErrorCode(str, Enum):
    """Error classification codes."""

    VALIDATION_FAILED = "validation_failed"
    INVALID_STATE = "invalid_state"
    NOT_FOUND = "not_found"
    UNSUPPORTED_TYPE = "unsupported_type"
    LOT_ORDERING = "lot_ordering"


class CorporateActionError(Exception):
    """Base engine exception with an error code and retryable flag.

    Attributes:
        message: Human-readable error description.
        code: Structured error code for programmatic handling.
        retryable: Whether retrying the same call can succeed. Engine errors
            never are; collaborator I/O errors are raised unmodified instead.
    """

    def __init__(self, message: str, code: ErrorCode, retryable: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.retryable = retryable

    def to_dict(self) -> Dict[str, object]:
        return {"code": self.code.value, "message": self.message}


class ValidationError(CorporateActionError):
    """Bad create-time input. Carries per-field messages."""

    def __init__(self, errors: Dict[str, List[str]], message: Optional[str] = None) -> None:
        self.errors = errors
        if message is None:
            fields = ", ".join(sorted(errors))
            message = f"Invalid corporate action attributes: {fields}"
        super().__init__(message, ErrorCode.VALIDATION_FAILED)

    def to_dict(self) -> Dict[str, object]:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


class StateError(CorporateActionError):
    """Action is in the wrong lifecycle state, or does not exist."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.INVALID_STATE) -> None:
        super().__init__(message, code)

    @property
    def not_found(self) -> bool:
        return self.code == ErrorCode.NOT_FOUND


class UnsupportedTypeError(CorporateActionError):
    """Known action type with no implemented algorithm."""

    def __init__(self, action_type: str, detail: Optional[str] = None) -> None:
        self.action_type = action_type
        message = f"Action type {action_type} is not supported"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, ErrorCode.UNSUPPORTED_TYPE)


class LotOrderingError(CorporateActionError):
    """Lot-history provider returned lots out of acquisition order."""

    def __init__(self, message: str) -> None:
        super().__init__(message, ErrorCode.LOT_ORDERING)
