"""Error taxonomy shared by the ledger bridge and the HTTP service.

Every error carries the HTTP status it maps to and an optional ``details``
payload; the service renders them as ``{"error": ..., "details": ...}``.
"""

from typing import Any, Optional


class PromoError(Exception):
    """Base class for errors that surface to API callers."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Any] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = status_code

    def to_body(self) -> dict:
        body = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class SchemaUnavailableError(PromoError):
    """Raised when the interface description (or a definition in it) is missing."""

    status_code = 500


class ValidationError(PromoError):
    """Raised when a request is rejected before touching the ledger."""

    status_code = 400


class CouponValidationError(ValidationError):
    """Raised when a coupon cannot be applied to an order."""


class MissingArgumentError(ValidationError):
    """Raised when an instruction argument or account has no mapped value."""


class NotFoundError(PromoError):
    """Raised when a record, session or listing does not exist."""

    status_code = 404


class RpcResponseError(PromoError):
    """Raised when the RPC node answers with a JSON-RPC error object."""

    status_code = 500

    def __init__(self, method: str, code: Optional[int], message: str, data: Optional[Any] = None):
        super().__init__(
            f"RPC {method} failed: {message}",
            details={"method": method, "code": code, "data": data},
        )
        self.method = method
        self.code = code
        self.rpc_message = message


class TransactionFailedError(PromoError):
    """Raised when a submitted transaction lands with an error or never confirms."""

    status_code = 500


class RpcRetryExhaustedError(PromoError):
    """Raised when a transient RPC failure persists past the attempt ceiling."""

    status_code = 500

    def __init__(self, label: str, attempts: int, last_error: BaseException):
        super().__init__(
            f"{label} failed after {attempts} attempts: {last_error}",
            details={"label": label, "attempts": attempts},
        )
        self.label = label
        self.attempts = attempts


class SettlementNotImplementedError(PromoError):
    """Raised when a caller asks for on-ledger marketplace settlement."""

    status_code = 501


class PartialSuccessError(PromoError):
    """Raised when a multi-step flow fails after some steps already landed.

    ``details`` lists the completed steps so the caller can resume instead
    of repeating them.
    """

    status_code = 500

    def __init__(self, message: str, completed: dict, failed_step: str, cause: BaseException):
        super().__init__(
            message,
            details={"completed": completed, "failed_step": failed_step, "reason": str(cause)},
        )
