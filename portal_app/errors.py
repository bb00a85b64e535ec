"""Domain errors raised by the aggregation engine and its services.

Services raise these, never HTTP exceptions; the application factory renders
them through the JSON error envelope.
"""
from typing import Any, Dict, Optional


class PortalError(Exception):
    """Base class for domain-level errors."""
    code: str = "portal_error"
    status_code: int = 400
    message: str
    details: Optional[Dict[str, Any]]

    def __init__(
        self,
        message: str = "",
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message or self.__class__.__name__)
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.message = message or self.__class__.__name__
        self.details = details


class InputError(PortalError):
    """Malformed input: NaN scores, missing max marks, bad amounts."""
    code = "invalid_input"
    status_code = 422


class ConsistencyError(PortalError):
    """A cached aggregate disagrees with its source ledger."""
    code = "reconciliation_inconsistent"
    status_code = 409


class EmptyDataError(PortalError):
    """There is nothing to aggregate. Never rendered as zero."""
    code = "no_data"
    status_code = 404


class NotFoundError(PortalError):
    code = "not_found"
    status_code = 404


class LedgerWriteError(PortalError):
    """The payment transaction failed and was rolled back as a whole."""
    code = "ledger_write_failed"
    status_code = 500
