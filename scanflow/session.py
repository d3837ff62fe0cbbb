"""One scan session: decode, validate and submit, observed through ScanFlow."""
import logging
from typing import Any, Awaitable, Callable, Optional

from scanflow.errors import QrDecodeError, RecoverableScanError, ScanErrorCode
from scanflow.fiscal_url import normalize_fiscal_url
from scanflow.models import CreateReceiptInput, PfrData
from scanflow.qr_locator import QrLocator, decode_qr_image
from scanflow.retry import RetryOrchestrator
from scanflow.state import ScanFlow, ScanFlowState
from scanflow.telemetry import ScanTelemetry


class ScanSession:
    """
    Coordinates the QR locator, the fiscal URL validator and the retry
    orchestrator for a single user. UI code reads ``flow`` and calls
    ``retry_now``/``cancel``/``close``; it never changes the flow itself.
    """

    def __init__(
        self,
        create_receipt: Callable[[CreateReceiptInput], Awaitable[Any]],
        locator: Optional[QrLocator] = None,
        telemetry: Optional[ScanTelemetry] = None,
        orchestrator: Optional[RetryOrchestrator] = None,
    ) -> None:
        self.flow = ScanFlow()
        self.locator = locator or QrLocator()
        self.telemetry = telemetry or ScanTelemetry()
        self.orchestrator = orchestrator or RetryOrchestrator(
            create_receipt, self.flow, telemetry=self.telemetry
        )
        self.orchestrator.flow = self.flow

    @property
    def state(self) -> ScanFlowState:
        return self.flow.state

    def open(self) -> None:
        self.flow.open()

    def camera_ready(self) -> None:
        self.flow.camera_ready()

    async def decode(
        self,
        file_bytes: bytes,
        mime_type: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> str:
        try:
            return await decode_qr_image(file_bytes, mime_type, filename, locator=self.locator)
        except QrDecodeError as exc:
            self.telemetry.recoverable_error(exc.code, exc.message)
            self.flow.note_error(exc)
            raise

    async def submit_image(
        self,
        file_bytes: bytes,
        mime_type: Optional[str] = None,
        filename: Optional[str] = None,
        group_id: Optional[str] = None,
        paid_by_id: Optional[str] = None,
    ) -> Any:
        raw = await self.decode(file_bytes, mime_type, filename)
        return await self.submit_decoded(raw, group_id=group_id, paid_by_id=paid_by_id)

    async def submit_decoded(
        self,
        raw: str,
        group_id: Optional[str] = None,
        paid_by_id: Optional[str] = None,
    ) -> Any:
        self.flow.code_found()
        url = normalize_fiscal_url(raw)
        if url is None:
            error = RecoverableScanError(
                ScanErrorCode.NON_FISCAL_QR,
                "This QR code does not belong to a fiscal receipt.",
            )
            logging.info(f"Rejected non-fiscal QR payload: {str(raw)[:100]}")
            self.telemetry.recoverable_error(error.code, error.message)
            self.flow.back_to_scanning(error)
            raise error
        payload = CreateReceiptInput(qr_code_url=url, group_id=group_id, paid_by_id=paid_by_id)
        return await self.orchestrator.submit(payload)

    async def submit_pfr(
        self,
        pfr_data: PfrData,
        group_id: Optional[str] = None,
        paid_by_id: Optional[str] = None,
    ) -> Any:
        """Manual entry path for receipts whose QR code cannot be read."""
        self.flow.code_found()
        payload = CreateReceiptInput(pfr_data=pfr_data, group_id=group_id, paid_by_id=paid_by_id)
        return await self.orchestrator.submit(payload)

    def retry_now(self) -> bool:
        return self.orchestrator.retry_now()

    def cancel(self) -> bool:
        """Abandon a pending retry. Outside a retry this is a no-op."""
        if not self.flow.is_busy:
            return False
        self.orchestrator.cancel()
        return True

    def close(self) -> None:
        """
        Tear the session down; any outstanding wait resolves with cancel.

        While an attempt is in flight the flow stays in ``submitting`` and the
        orchestrator moves it to ``idle`` once the attempt settles.
        """
        if self.flow.is_busy:
            self.orchestrator.cancel()
        if self.flow.state == ScanFlowState.SUBMITTING:
            return
        self.flow.reset()
