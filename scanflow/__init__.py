"""Scan-to-receipt ingestion: QR decode, fiscal URL validation, retried submission."""
from scanflow.errors import (
    InvalidTransitionError,
    PfrEntryError,
    QrDecodeError,
    ReceiptApiError,
    RecoverableScanError,
    RetryExhaustedError,
    ScanErrorCode,
)
from scanflow.fiscal_url import FISCAL_PORTAL_HOSTS, is_fiscal_url, normalize_fiscal_url
from scanflow.models import CreateReceiptInput, PfrData, Receipt, build_pfr_data
from scanflow.retry import (
    MAX_ATTEMPTS,
    RETRY_DELAYS_MS,
    CancellableDelay,
    RetryOrchestrator,
    WaitSignal,
    is_transient_error,
)
from scanflow.state import RetryMeta, ScanFlow, ScanFlowSnapshot, ScanFlowState
from scanflow.telemetry import ScanTelemetry

__all__ = [
    "CancellableDelay",
    "CreateReceiptInput",
    "FISCAL_PORTAL_HOSTS",
    "InvalidTransitionError",
    "MAX_ATTEMPTS",
    "PfrData",
    "PfrEntryError",
    "QrDecodeError",
    "RETRY_DELAYS_MS",
    "Receipt",
    "ReceiptApiError",
    "RecoverableScanError",
    "RetryExhaustedError",
    "RetryMeta",
    "RetryOrchestrator",
    "ScanErrorCode",
    "ScanFlow",
    "ScanFlowSnapshot",
    "ScanFlowState",
    "ScanTelemetry",
    "WaitSignal",
    "build_pfr_data",
    "is_fiscal_url",
    "is_transient_error",
    "normalize_fiscal_url",
]
