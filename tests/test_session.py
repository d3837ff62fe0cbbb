"""
Tests for ScanSession
"""
import asyncio

import pytest
from unittest.mock import AsyncMock, Mock, patch

from scanflow.errors import (
    InvalidTransitionError,
    QrDecodeError,
    ReceiptApiError,
    RecoverableScanError,
    ScanErrorCode,
)
from scanflow.models import PfrData
from scanflow.qr_locator import QrLocator
from scanflow.session import ScanSession
from scanflow.state import ScanFlowState
from scanflow.telemetry import ScanTelemetry


def scanning_session(create_receipt, **kwargs) -> ScanSession:
    session = ScanSession(create_receipt, **kwargs)
    session.open()
    session.camera_ready()
    return session


class TestSubmitDecoded:
    """Tests for validating a decoded payload before submission"""

    @pytest.mark.asyncio
    async def test_non_fiscal_code_never_submitted(self):
        create = AsyncMock()
        sink = Mock()
        session = scanning_session(create, telemetry=ScanTelemetry([sink]))

        with pytest.raises(RecoverableScanError) as exc_info:
            await session.submit_decoded("WIFI:S:home;T:WPA;P:secret;;")

        assert exc_info.value.code == ScanErrorCode.NON_FISCAL_QR
        create.assert_not_called()
        assert session.state == ScanFlowState.SCANNING
        assert session.flow.error is exc_info.value
        sink.assert_called_once_with(
            "recoverable_error",
            {"code": ScanErrorCode.NON_FISCAL_QR, "message": exc_info.value.message},
        )

    @pytest.mark.asyncio
    async def test_fiscal_code_submitted(self, fiscal_url, sample_receipt):
        create = AsyncMock(return_value=sample_receipt)
        session = scanning_session(create)

        result = await session.submit_decoded(f"  {fiscal_url}\n", group_id="grp_1")

        assert result is sample_receipt
        payload = create.await_args.args[0]
        assert payload.to_json() == {"qrCodeUrl": fiscal_url, "groupId": "grp_1"}
        assert session.state == ScanFlowState.SUCCESS

    @pytest.mark.asyncio
    async def test_rescan_after_rejection(self, fiscal_url, sample_receipt):
        create = AsyncMock(return_value=sample_receipt)
        session = scanning_session(create)

        with pytest.raises(RecoverableScanError):
            await session.submit_decoded("https://example.com/menu")
        await session.submit_decoded(fiscal_url)

        assert create.await_count == 1
        assert session.state == ScanFlowState.SUCCESS

    @pytest.mark.asyncio
    async def test_second_code_while_submitting_rejected(self, fiscal_url, sample_receipt):
        release = asyncio.Event()

        async def slow_create(payload):
            await release.wait()
            return sample_receipt

        session = scanning_session(slow_create)
        task = asyncio.create_task(session.submit_decoded(fiscal_url))
        await asyncio.sleep(0)
        assert session.state == ScanFlowState.SUBMITTING

        with pytest.raises(InvalidTransitionError):
            await session.submit_decoded(fiscal_url)

        release.set()
        assert await task is sample_receipt


class TestSubmitImage:
    """Tests for the image path"""

    @pytest.mark.asyncio
    async def test_image_decoded_and_submitted(self, gradient_png, fiscal_url, sample_receipt):
        async def detector(image):
            return fiscal_url

        create = AsyncMock(return_value=sample_receipt)
        session = scanning_session(create, locator=QrLocator(detector=detector))

        result = await session.submit_image(gradient_png, "image/png", "receipt.png")

        assert result is sample_receipt
        assert create.await_args.args[0].qr_code_url == fiscal_url

    @pytest.mark.asyncio
    async def test_decode_failure_keeps_scanning(self, gradient_png):
        async def detector(image):
            return None

        create = AsyncMock()
        session = scanning_session(create, locator=QrLocator(detector=detector))

        with pytest.raises(QrDecodeError) as exc_info:
            await session.submit_image(gradient_png)

        assert exc_info.value.code == ScanErrorCode.NO_QR_FOUND
        assert session.state == ScanFlowState.SCANNING
        assert session.flow.error is exc_info.value
        create.assert_not_called()

    @pytest.mark.asyncio
    async def test_decode_passes_upload_metadata(self):
        session = scanning_session(AsyncMock())
        with patch("scanflow.session.decode_qr_image", AsyncMock(return_value="payload")) as decode:
            assert await session.decode(b"bytes", "image/heic", "a.heic") == "payload"
        decode.assert_awaited_once_with(b"bytes", "image/heic", "a.heic", locator=session.locator)


class TestSubmitPfr:
    """Tests for manual PFR entry"""

    @pytest.mark.asyncio
    async def test_pfr_payload(self, sample_receipt):
        create = AsyncMock(return_value=sample_receipt)
        session = scanning_session(create)
        pfr = PfrData(
            InvoiceNumberSe="AP64WJRN-AP64WJRN-132587",
            InvoiceCounter="132557/132587",
            SdcDateTime="10.1.2026. 20:56:18",
            TotalAmount="1.110,00",
        )

        await session.submit_pfr(pfr, paid_by_id="usr_2")

        body = create.await_args.args[0].to_json()
        assert "qrCodeUrl" not in body
        assert body["paidById"] == "usr_2"
        assert body["pfrData"]["InvoiceCounterExtension"] == "ПП"
        assert session.state == ScanFlowState.SUCCESS


class TestCancelAndClose:
    """Tests for cancel/close while a retry is pending"""

    @pytest.mark.asyncio
    async def test_cancel_outside_retry_is_noop(self):
        session = scanning_session(AsyncMock())
        assert session.cancel() is False
        assert session.state == ScanFlowState.SCANNING

    @pytest.mark.asyncio
    async def test_close_during_retry(self, fiscal_url, portal_unavailable):
        create = AsyncMock(side_effect=portal_unavailable)
        session = scanning_session(create)

        task = asyncio.create_task(session.submit_decoded(fiscal_url))
        for _ in range(200):
            if session.state == ScanFlowState.RETRYING_PORTAL:
                break
            await asyncio.sleep(0)
        assert session.state == ScanFlowState.RETRYING_PORTAL

        session.close()

        with pytest.raises(RecoverableScanError) as exc_info:
            await asyncio.wait_for(task, timeout=1)
        assert exc_info.value.code == ScanErrorCode.RETRY_CANCELLED
        assert create.await_count == 1
        assert session.state == ScanFlowState.IDLE
        assert session.flow.retry_meta is None

    @pytest.mark.asyncio
    async def test_cancel_during_retry(self, fiscal_url, portal_unavailable):
        create = AsyncMock(side_effect=portal_unavailable)
        session = scanning_session(create)

        task = asyncio.create_task(session.submit_decoded(fiscal_url))
        for _ in range(200):
            if session.state == ScanFlowState.RETRYING_PORTAL:
                break
            await asyncio.sleep(0)

        assert session.cancel() is True
        with pytest.raises(RecoverableScanError):
            await asyncio.wait_for(task, timeout=1)
        assert session.state == ScanFlowState.IDLE

    @pytest.mark.asyncio
    async def test_close_while_attempt_in_flight_then_success(self, fiscal_url, sample_receipt):
        release = asyncio.Event()
        calls = []

        async def slow_create(payload):
            calls.append(payload)
            await release.wait()
            return sample_receipt

        sink = Mock()
        session = scanning_session(slow_create, telemetry=ScanTelemetry([sink]))
        task = asyncio.create_task(session.submit_decoded(fiscal_url))
        await asyncio.sleep(0)
        assert session.state == ScanFlowState.SUBMITTING

        session.close()
        assert session.state == ScanFlowState.SUBMITTING
        release.set()

        with pytest.raises(RecoverableScanError) as exc_info:
            await asyncio.wait_for(task, timeout=1)
        assert exc_info.value.code == ScanErrorCode.RETRY_CANCELLED
        assert len(calls) == 1
        assert session.state == ScanFlowState.IDLE
        assert session.flow.receipt is None
        events = [call.args[0] for call in sink.call_args_list]
        assert "scan_succeeded" not in events

    @pytest.mark.asyncio
    async def test_close_while_attempt_in_flight_then_terminal_error(self, fiscal_url):
        release = asyncio.Event()

        async def slow_create(payload):
            await release.wait()
            raise ReceiptApiError("Validation failed", status=400)

        session = scanning_session(slow_create)
        task = asyncio.create_task(session.submit_decoded(fiscal_url))
        await asyncio.sleep(0)

        session.close()
        release.set()

        with pytest.raises(RecoverableScanError) as exc_info:
            await asyncio.wait_for(task, timeout=1)
        assert exc_info.value.code == ScanErrorCode.RETRY_CANCELLED
        assert session.state == ScanFlowState.IDLE

    @pytest.mark.asyncio
    async def test_cancel_while_attempt_in_flight_skips_retries(self, fiscal_url, portal_unavailable):
        release = asyncio.Event()
        calls = []

        async def slow_create(payload):
            calls.append(payload)
            await release.wait()
            raise portal_unavailable

        session = scanning_session(slow_create)
        task = asyncio.create_task(session.submit_decoded(fiscal_url))
        await asyncio.sleep(0)

        assert session.cancel() is True
        release.set()

        with pytest.raises(RecoverableScanError):
            await asyncio.wait_for(task, timeout=1)
        assert len(calls) == 1
        assert session.state == ScanFlowState.IDLE
        assert session.flow.retry_meta is None

    @pytest.mark.asyncio
    async def test_reopen_after_in_flight_close(self, fiscal_url, sample_receipt):
        release = asyncio.Event()

        async def slow_create(payload):
            await release.wait()
            return sample_receipt

        session = scanning_session(slow_create)
        task = asyncio.create_task(session.submit_decoded(fiscal_url))
        await asyncio.sleep(0)
        session.close()
        release.set()
        with pytest.raises(RecoverableScanError):
            await asyncio.wait_for(task, timeout=1)

        session.open()
        session.camera_ready()
        assert await session.submit_decoded(fiscal_url) is sample_receipt
        assert session.state == ScanFlowState.SUCCESS

    def test_close_from_scanning(self):
        session = scanning_session(AsyncMock())
        session.close()
        assert session.state == ScanFlowState.IDLE
