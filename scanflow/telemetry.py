"""Fire-and-forget observability events for the scan pipeline.

Every public method swallows its own failures: telemetry must never block
or change what the caller does next.
"""
import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional, Set


TelemetrySink = Callable[[str, Dict[str, Any]], Any]


class ScanTelemetry:
    """Dispatches scan events to the log and to optional extra sinks."""

    def __init__(self, sinks: Optional[List[TelemetrySink]] = None) -> None:
        self.sinks: List[TelemetrySink] = list(sinks or [])
        self._pending: Set[asyncio.Task] = set()

    def scan_succeeded(self, attempt: int, receipt_id: Optional[str] = None) -> None:
        self.emit("scan_succeeded", {"attempt": attempt, "receipt_id": receipt_id})

    def attempt_succeeded(self, attempt: int) -> None:
        self.emit("attempt_succeeded", {"attempt": attempt})

    def attempt_failed(
        self,
        attempt: int,
        transient: bool,
        status: Optional[int],
        message: str = "",
    ) -> None:
        self.emit(
            "attempt_failed",
            {
                "attempt": attempt,
                "transient": transient,
                "status": status,
                "message": message[:200],
            },
        )

    def recoverable_error(self, code: str, message: str = "") -> None:
        self.emit("recoverable_error", {"code": code, "message": message[:200]})

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        logging.info("telemetry %s %s", event, payload)
        for sink in self.sinks:
            try:
                result = sink(event, payload)
                if inspect.isawaitable(result):
                    self._schedule(result)
            except Exception as exc:
                logging.debug(f"Telemetry sink failed for {event}: {exc}")

    def _schedule(self, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
            task = loop.create_task(awaitable)
        except RuntimeError as exc:
            # No running loop; the coroutine is dropped.
            logging.debug(f"Telemetry sink skipped, no event loop: {exc}")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        self._pending.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logging.debug(f"Async telemetry sink failed: {task.exception()}")
