"""Error taxonomy of the scan-to-receipt pipeline."""
from typing import Optional


class ScanErrorCode:
    INVALID_IMAGE = "INVALID_IMAGE"
    NO_QR_FOUND = "NO_QR_FOUND"
    NON_FISCAL_QR = "NON_FISCAL_QR"
    RETRY_CANCELLED = "RETRY_CANCELLED"


class QrDecodeError(RuntimeError):
    """Raised when an image cannot be turned into a QR payload."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class RecoverableScanError(RuntimeError):
    """Condition the user can fix right away without ending the session."""

    recoverable = True

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class ReceiptApiError(RuntimeError):
    """Failure of the receipt-creation call. ``status`` is None for network errors."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status
        self.message = message


class RetryExhaustedError(RuntimeError):
    """Raised once every scheduled attempt failed transiently."""

    def __init__(self, attempts: int, last_error: Optional[BaseException]) -> None:
        detail = str(last_error) if last_error else "unknown error"
        super().__init__(
            f"Fiscal portal is still unavailable after {attempts} attempts: {detail}"
        )
        self.attempts = attempts
        self.last_error = last_error


class InvalidTransitionError(RuntimeError):
    """Raised when the scan flow is asked to move along an edge it does not have."""


class PfrEntryError(ValueError):
    """Raised when manually entered fiscal receipt fields are incomplete."""
