from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, List, Optional, Protocol

from PIL import Image

from . import config
from .analysis import AnalysisResult
from .composite import Composite
from .metrics import increment
from .utils import image_to_data_uri

logger = logging.getLogger(__name__)

WARNING_PREFIX = "⚠️ "
PENDING_MESSAGE = "Analyzing your fit..."


class CaptureState(str, Enum):
    IDLE = "idle"
    COUNTDOWN = "countdown"
    CAPTURING = "capturing"
    SHOWING_RESULT = "showing_result"
    RETRYING = "retrying"


# ----------------------
# Events
# ----------------------
@dataclass(frozen=True)
class GarmentUploaded:
    texture: Any


@dataclass(frozen=True)
class TrackingChanged:
    visible: bool


@dataclass(frozen=True)
class CountdownTick:
    generation: int


@dataclass(frozen=True)
class CaptureSettled:
    generation: int


@dataclass(frozen=True)
class AnalysisCompleted:
    request_id: int
    result: AnalysisResult


@dataclass(frozen=True)
class Retry:
    pass


@dataclass(frozen=True)
class AskAgain:
    pass


@dataclass(frozen=True)
class Teardown:
    pass


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Anything with asyncio's `call_later` shape, e.g. a running event loop."""

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle: ...


CaptureFn = Callable[[], Optional[Composite]]
DispatchFn = Callable[[int, str], None]


@dataclass
class CaptureSession:
    has_captured: bool = False
    snapshot: Optional[Image.Image] = None
    snapshot_uri: Optional[str] = None
    message: Optional[str] = None
    pending: bool = False
    request_id: Optional[int] = None


@dataclass(frozen=True)
class CaptureView:
    state: CaptureState
    countdown: Optional[int]
    garment_loaded: bool
    tracking: bool
    has_captured: bool
    pending: bool
    message: Optional[str]
    has_snapshot: bool
    overlay_visible: bool


class CaptureOrchestrator:
    """Countdown/capture/analysis state machine fed by an explicit event queue.

    Events are queued with `post` and applied in FIFO order by `process`;
    `send` does both. After every event the countdown guard is re-evaluated:
    a countdown starts from IDLE whenever a garment is loaded, the body is
    tracked and nothing has been captured for the current upload.

    Losing tracking during a countdown does not cancel it; the guard is only
    consulted from IDLE.
    """

    def __init__(
        self,
        *,
        scheduler: Scheduler,
        capture: CaptureFn,
        dispatch: DispatchFn,
        on_prompt_upload: Optional[Callable[[], None]] = None,
        countdown_start: int = config.COUNTDOWN_START,
        countdown_interval: float = config.COUNTDOWN_INTERVAL_SECONDS,
        settle_seconds: float = config.CAPTURE_SETTLE_SECONDS,
    ) -> None:
        self.scheduler = scheduler
        self._capture = capture
        self._dispatch = dispatch
        self._on_prompt_upload = on_prompt_upload
        self.countdown_start = countdown_start
        self.countdown_interval = countdown_interval
        self.settle_seconds = settle_seconds

        self.state = CaptureState.IDLE
        self.countdown: Optional[int] = None
        self.garment: Any = None
        self.tracking = False
        self.overlay_visible = True
        self.session = CaptureSession()

        self._queue: Deque[Any] = deque()
        self._processing = False
        self._closed = False
        self._generation = 0
        self._request_seq = 0
        self._timer: Optional[TimerHandle] = None
        self._listeners: List[Callable[[CaptureView], None]] = []

    # ----------------------
    # Queue
    # ----------------------
    def post(self, event: Any) -> None:
        self._queue.append(event)

    def process(self) -> None:
        if self._processing:
            return
        self._processing = True
        try:
            while self._queue:
                event = self._queue.popleft()
                if self._closed:
                    logger.debug("Dropping %s after teardown", type(event).__name__)
                    continue
                self._handle(event)
                self._evaluate_guard()
        finally:
            self._processing = False

    def send(self, event: Any) -> None:
        self.post(event)
        self.process()

    def on_change(self, listener: Callable[[CaptureView], None]) -> None:
        self._listeners.append(listener)

    @property
    def closed(self) -> bool:
        return self._closed

    def view(self) -> CaptureView:
        return CaptureView(
            state=self.state,
            countdown=self.countdown,
            garment_loaded=self.garment is not None,
            tracking=self.tracking,
            has_captured=self.session.has_captured,
            pending=self.session.pending,
            message=self.session.message,
            has_snapshot=self.session.snapshot is not None,
            overlay_visible=self.overlay_visible,
        )

    # ----------------------
    # Transitions
    # ----------------------
    def _handle(self, event: Any) -> None:
        if isinstance(event, GarmentUploaded):
            self._on_garment_uploaded(event)
        elif isinstance(event, TrackingChanged):
            self.tracking = bool(event.visible)
        elif isinstance(event, CountdownTick):
            self._on_tick(event)
        elif isinstance(event, CaptureSettled):
            self._on_settled(event)
        elif isinstance(event, AnalysisCompleted):
            self._on_analysis(event)
        elif isinstance(event, AskAgain):
            self._on_ask_again()
        elif isinstance(event, Retry):
            self._on_retry()
        elif isinstance(event, Teardown):
            self._on_teardown()
        else:
            raise TypeError(f"Unsupported capture event: {event!r}")

    def _set_state(self, state: CaptureState, countdown: Optional[int] = None) -> None:
        self.state = state
        self.countdown = countdown
        logger.info("capture state -> %s%s", state.value, "" if countdown is None else f"({countdown})")
        view = self.view()
        for listener in list(self._listeners):
            listener(view)

    def _evaluate_guard(self) -> None:
        if self._closed or self.state is not CaptureState.IDLE:
            return
        if self.garment is None or not self.tracking or self.session.has_captured:
            return
        self._set_state(CaptureState.COUNTDOWN, self.countdown_start)
        self._schedule(self.countdown_interval, CountdownTick(self._generation))

    def _on_garment_uploaded(self, event: GarmentUploaded) -> None:
        self._cancel_timer()
        self._generation += 1
        self.garment = event.texture
        self.session = CaptureSession()
        self.overlay_visible = True
        self._set_state(CaptureState.IDLE)

    def _on_tick(self, event: CountdownTick) -> None:
        if event.generation != self._generation or self.state is not CaptureState.COUNTDOWN:
            return
        self._timer = None
        remaining = max(0, (self.countdown or 0) - 1)
        self._set_state(CaptureState.COUNTDOWN, remaining)
        if remaining > 0:
            self._schedule(self.countdown_interval, CountdownTick(self._generation))
            return
        self.overlay_visible = False
        self._set_state(CaptureState.CAPTURING)
        self._schedule(self.settle_seconds, CaptureSettled(self._generation))

    def _on_settled(self, event: CaptureSettled) -> None:
        if event.generation != self._generation or self.state is not CaptureState.CAPTURING:
            return
        self._timer = None
        try:
            composite = self._capture()
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Capture failed: %s", exc)
            composite = None
        self.overlay_visible = True
        if composite is None:
            logger.warning("No video frame available to capture; re-arming.")
            self._set_state(CaptureState.IDLE)
            return

        increment("captures_total", "garment" if composite.has_garment else "video_only")
        self.session.snapshot = composite.image
        self.session.snapshot_uri = image_to_data_uri(composite.image)
        self.session.has_captured = True
        self._request_analysis()
        self._set_state(CaptureState.SHOWING_RESULT)

    def _request_analysis(self) -> None:
        self._request_seq += 1
        self.session.request_id = self._request_seq
        self.session.pending = True
        self.session.message = PENDING_MESSAGE
        try:
            self._dispatch(self._request_seq, self.session.snapshot_uri or "")
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Analysis dispatch failed: %s", exc)
            self.session.pending = False
            self.session.message = WARNING_PREFIX + "Could not reach the stylist."

    def _on_analysis(self, event: AnalysisCompleted) -> None:
        if event.request_id != self.session.request_id:
            logger.debug("Ignoring stale analysis result %s", event.request_id)
            return
        self.session.pending = False
        if event.result.ok:
            self.session.message = event.result.text
        else:
            self.session.message = WARNING_PREFIX + str(event.result.error)
        self._set_state(self.state, self.countdown)

    def _on_ask_again(self) -> None:
        if self.state is not CaptureState.SHOWING_RESULT or not self.session.snapshot_uri:
            return
        self._request_analysis()
        self._set_state(CaptureState.SHOWING_RESULT)

    def _on_retry(self) -> None:
        if self.state is not CaptureState.SHOWING_RESULT:
            return
        self._generation += 1
        self._set_state(CaptureState.RETRYING)
        self.session = CaptureSession()
        if self._on_prompt_upload is not None:
            self._on_prompt_upload()
        self._set_state(CaptureState.IDLE)

    def _on_teardown(self) -> None:
        self._cancel_timer()
        self._generation += 1
        self._closed = True
        self._queue.clear()
        logger.info("capture orchestrator torn down")

    # ----------------------
    # Timers
    # ----------------------
    def _schedule(self, delay: float, event: Any) -> None:
        self._cancel_timer()
        self._timer = self.scheduler.call_later(delay, self.send, event)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
