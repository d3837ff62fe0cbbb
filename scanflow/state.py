"""Observable state machine of one scan session."""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from scanflow.errors import InvalidTransitionError


class ScanFlowState(str, Enum):
    IDLE = "idle"
    CAMERA_LOADING = "camera_loading"
    SCANNING = "scanning"
    SUBMITTING = "submitting"
    RETRYING_PORTAL = "retrying_portal"
    FAILED_TERMINAL = "failed_terminal"
    SUCCESS = "success"


TERMINAL_STATES: FrozenSet[ScanFlowState] = frozenset(
    {ScanFlowState.SUCCESS, ScanFlowState.FAILED_TERMINAL}
)
BUSY_STATES: FrozenSet[ScanFlowState] = frozenset(
    {ScanFlowState.SUBMITTING, ScanFlowState.RETRYING_PORTAL}
)

_TRANSITIONS: Dict[ScanFlowState, FrozenSet[ScanFlowState]] = {
    ScanFlowState.IDLE: frozenset({ScanFlowState.CAMERA_LOADING}),
    ScanFlowState.CAMERA_LOADING: frozenset({ScanFlowState.SCANNING, ScanFlowState.IDLE}),
    ScanFlowState.SCANNING: frozenset({ScanFlowState.SUBMITTING, ScanFlowState.IDLE}),
    ScanFlowState.SUBMITTING: frozenset(
        {
            ScanFlowState.SUCCESS,
            ScanFlowState.RETRYING_PORTAL,
            ScanFlowState.FAILED_TERMINAL,
            ScanFlowState.SCANNING,
            ScanFlowState.IDLE,
        }
    ),
    ScanFlowState.RETRYING_PORTAL: frozenset({ScanFlowState.SUBMITTING, ScanFlowState.IDLE}),
    ScanFlowState.FAILED_TERMINAL: frozenset({ScanFlowState.IDLE}),
    ScanFlowState.SUCCESS: frozenset({ScanFlowState.IDLE}),
}


@dataclass(frozen=True)
class RetryMeta:
    attempt: int
    next_delay_ms: int
    started_at: float
    max_attempts: int = 7


@dataclass(frozen=True)
class ScanFlowSnapshot:
    state: ScanFlowState
    retry_meta: Optional[RetryMeta] = None
    error: Optional[BaseException] = None
    receipt: Optional[Any] = None


FlowListener = Callable[[ScanFlowSnapshot], None]


class ScanFlow:
    """
    Holds the current ScanFlowState and the RetryMeta side record.

    All mutations go through ``_move`` which rejects edges the flow does not
    have and keeps ``retry_meta`` set exactly while retrying.
    """

    def __init__(self) -> None:
        self._state = ScanFlowState.IDLE
        self._retry_meta: Optional[RetryMeta] = None
        self._error: Optional[BaseException] = None
        self._receipt: Optional[Any] = None
        self._listeners: List[FlowListener] = []

    @property
    def state(self) -> ScanFlowState:
        return self._state

    @property
    def retry_meta(self) -> Optional[RetryMeta]:
        return self._retry_meta

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    @property
    def receipt(self) -> Optional[Any]:
        return self._receipt

    @property
    def is_busy(self) -> bool:
        return self._state in BUSY_STATES

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def snapshot(self) -> ScanFlowSnapshot:
        return ScanFlowSnapshot(
            state=self._state,
            retry_meta=self._retry_meta,
            error=self._error,
            receipt=self._receipt,
        )

    def subscribe(self, listener: FlowListener) -> Callable[[], None]:
        """Register an observer; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # Session edges

    def open(self) -> None:
        if self._state in TERMINAL_STATES:
            self._move(ScanFlowState.IDLE)
        self._move(ScanFlowState.CAMERA_LOADING)

    def camera_ready(self) -> None:
        self._move(ScanFlowState.SCANNING)

    def code_found(self) -> None:
        self._move(ScanFlowState.SUBMITTING)

    def reset(self, error: Optional[BaseException] = None) -> None:
        """User cancel/close. Terminal states may reset too, before a reopen."""
        if self._state == ScanFlowState.IDLE:
            self._error = error or self._error
            return
        self._move(ScanFlowState.IDLE, error=error)

    # Submission edges

    def back_to_scanning(self, error: BaseException) -> None:
        self._move(ScanFlowState.SCANNING, error=error)

    def retrying(self, meta: RetryMeta) -> None:
        self._move(ScanFlowState.RETRYING_PORTAL, retry_meta=meta)

    def resume_submitting(self) -> None:
        self._move(ScanFlowState.SUBMITTING)

    def succeeded(self, receipt: Any) -> None:
        self._move(ScanFlowState.SUCCESS, receipt=receipt)

    def failed(self, error: BaseException) -> None:
        self._move(ScanFlowState.FAILED_TERMINAL, error=error)

    def note_error(self, error: BaseException) -> None:
        """Record a recoverable error without changing state."""
        self._error = error
        self._notify()

    def _move(
        self,
        target: ScanFlowState,
        retry_meta: Optional[RetryMeta] = None,
        error: Optional[BaseException] = None,
        receipt: Optional[Any] = None,
    ) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise InvalidTransitionError(
                f"Scan flow cannot move from {self._state.value} to {target.value}"
            )
        if (target == ScanFlowState.RETRYING_PORTAL) != (retry_meta is not None):
            raise InvalidTransitionError("RetryMeta must be present exactly while retrying")
        logging.debug(f"Scan flow: {self._state.value} -> {target.value}")
        self._state = target
        self._retry_meta = retry_meta
        if target in (ScanFlowState.CAMERA_LOADING, ScanFlowState.SUBMITTING):
            self._error = None
        elif error is not None:
            self._error = error
        if target == ScanFlowState.CAMERA_LOADING:
            self._receipt = None
        elif receipt is not None:
            self._receipt = receipt
        self._notify()

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as exc:
                logging.exception(f"Scan flow listener failed: {exc}")
