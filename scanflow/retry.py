"""
Submission of a validated receipt payload with a fixed retry schedule.

The backend resolves receipts through the government fiscal portal, which is
regularly unavailable for a few seconds to a couple of minutes. Transient
failures are retried up to MAX_ATTEMPTS times; between attempts the flow sits
in ``retrying_portal`` and the wait can be cut short with ``retry_now`` or
abandoned with ``cancel``.
"""
import asyncio
import logging
import re
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Sequence

from scanflow.errors import RecoverableScanError, RetryExhaustedError, ScanErrorCode
from scanflow.state import RetryMeta, ScanFlow
from scanflow.telemetry import ScanTelemetry


RETRY_DELAYS_MS = (0, 5000, 10000, 15000, 20000, 30000, 40000)
MAX_ATTEMPTS = len(RETRY_DELAYS_MS)

TRANSIENT_STATUSES = frozenset({404, 429})
# The backend surfaces fiscal portal outages as message text.
TRANSIENT_MESSAGE_RE = re.compile(
    r"temporarily unavailable|timed out|timeout|unable to reach fiscal portal"
    r"|network|failed to fetch|load failed",
    re.IGNORECASE,
)


def error_status(exc: BaseException) -> Optional[int]:
    status = getattr(exc, "status", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def is_transient_error(exc: BaseException) -> bool:
    """True when retrying the creation call may succeed."""
    status = error_status(exc)
    if status is None:
        return True
    if status in TRANSIENT_STATUSES or status >= 500:
        return True
    message = getattr(exc, "message", None) or str(exc)
    return bool(TRANSIENT_MESSAGE_RE.search(message))


class WaitSignal(str, Enum):
    RETRY_NOW = "retry_now"
    CANCEL = "cancel"


class CancellableDelay:
    """
    A timer whose pending wait can be resolved early, exactly once.

    Only one wait is pending at a time. ``resolve`` on an empty or already
    resolved slot is a no-op.
    """

    def __init__(self) -> None:
        self._pending: Optional[asyncio.Future] = None

    @property
    def pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    async def wait(self, seconds: float) -> Optional[WaitSignal]:
        """Return None when the delay elapsed, or the signal that cut it short."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending = future
        handle = loop.call_later(max(seconds, 0.0), self._fulfill, future, None)
        try:
            return await future
        finally:
            handle.cancel()
            if self._pending is future:
                self._pending = None

    def resolve(self, signal: WaitSignal) -> bool:
        future = self._pending
        if future is None or future.done():
            return False
        self._pending = None
        future.set_result(signal)
        return True

    @staticmethod
    def _fulfill(future: asyncio.Future, signal: Optional[WaitSignal]) -> None:
        if not future.done():
            future.set_result(signal)


CreateReceipt = Callable[[Any], Awaitable[Any]]


class RetryOrchestrator:
    """Drives submission attempts and owns the flow/retry state while doing so."""

    def __init__(
        self,
        create_receipt: CreateReceipt,
        flow: ScanFlow,
        telemetry: Optional[ScanTelemetry] = None,
        delays_ms: Sequence[int] = RETRY_DELAYS_MS,
        delay: Optional[CancellableDelay] = None,
    ) -> None:
        self.create_receipt = create_receipt
        self.flow = flow
        self.telemetry = telemetry or ScanTelemetry()
        self.delays_ms = tuple(delays_ms)
        self.delay = delay or CancellableDelay()
        self._cancelled = False

    @property
    def max_attempts(self) -> int:
        return len(self.delays_ms)

    def retry_now(self) -> bool:
        return self.delay.resolve(WaitSignal.RETRY_NOW)

    def cancel(self) -> bool:
        """Returns False when no wait is pending; an in-flight attempt then ends the submission."""
        self._cancelled = True
        if not self.delay.pending:
            logging.info("Cancel requested while an attempt is in flight")
            return False
        return self.delay.resolve(WaitSignal.CANCEL)

    async def submit(self, payload: Any) -> Any:
        """
        Call ``create_receipt(payload)`` until it succeeds, fails terminally or
        the schedule runs out. The flow must already be in ``submitting``.
        """
        self._cancelled = False
        last_error: Optional[BaseException] = None

        for index, delay_ms in enumerate(self.delays_ms):
            attempt = index + 1
            if self._cancelled:
                self._abort_cancelled(attempt)
            if index > 0:
                self.flow.retrying(
                    RetryMeta(
                        attempt=attempt,
                        max_attempts=self.max_attempts,
                        next_delay_ms=delay_ms,
                        started_at=time.time(),
                    )
                )
                logging.info(f"Fiscal portal retry {attempt}/{self.max_attempts} in {delay_ms} ms")
                signal = await self.delay.wait(delay_ms / 1000)
                if signal is WaitSignal.CANCEL or self._cancelled:
                    self._abort_cancelled(attempt)
                if signal is WaitSignal.RETRY_NOW:
                    logging.info(f"Retry {attempt} triggered manually")
                self.flow.resume_submitting()

            try:
                receipt = await self.create_receipt(payload)
            except Exception as exc:
                transient = is_transient_error(exc)
                status = error_status(exc)
                self.telemetry.attempt_failed(attempt, transient, status, str(exc))
                if self._cancelled:
                    logging.info(f"Attempt {attempt} failed after cancel: {exc}")
                    self._abort_cancelled(attempt)
                if not transient:
                    logging.warning(f"Receipt submission failed terminally on attempt {attempt}: {exc}")
                    self.flow.failed(exc)
                    raise
                logging.warning(
                    f"Receipt submission attempt {attempt}/{self.max_attempts} failed transiently "
                    f"(status={status}): {exc}"
                )
                last_error = exc
                continue

            self.telemetry.attempt_succeeded(attempt)
            if self._cancelled:
                # The backend kept the receipt; the session was abandoned.
                logging.info(
                    f"Receipt {getattr(receipt, 'id', None)} created on attempt {attempt} after cancel"
                )
                self._abort_cancelled(attempt)
            self.telemetry.scan_succeeded(attempt, getattr(receipt, "id", None))
            logging.info(f"✅ Receipt created on attempt {attempt}")
            self.flow.succeeded(receipt)
            return receipt

        error = RetryExhaustedError(self.max_attempts, last_error)
        logging.error(str(error))
        self.flow.failed(error)
        raise error

    def _abort_cancelled(self, attempt: int) -> None:
        error = RecoverableScanError(
            ScanErrorCode.RETRY_CANCELLED, "Receipt submission was cancelled."
        )
        logging.info(f"Receipt submission cancelled at attempt {attempt}")
        self.telemetry.recoverable_error(error.code, error.message)
        self.flow.reset(error)
        raise error
