from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence, Set, Tuple

import numpy as np
from PIL import Image

from . import config
from .analysis import AnalysisClient, AnalysisResult
from .capture import (
    AnalysisCompleted,
    AskAgain,
    CaptureOrchestrator,
    CaptureState,
    GarmentUploaded,
    Retry,
    Scheduler,
    Teardown,
    TimerHandle,
    TrackingChanged,
)
from .composite import Composite, compose_capture
from .cv.pose import PoseProvider
from .engines.drape import DrapeConfig, DrapeEngine
from .metrics import increment
from .render import Renderer, SoftwareMeshRenderer, TextureSource, draw_landmark_overlay, load_texture
from .utils import encode_png, stable_content_hash

logger = logging.getLogger(__name__)

FrameSource = Callable[[], Optional[Tuple[np.ndarray, int]]]


@dataclass
class TickResult:
    visible: bool
    skipped: bool
    state: CaptureState
    countdown: Optional[int]


class AnalysisDispatcher:
    """Runs fit analysis as asyncio tasks and feeds results back as events."""

    def __init__(
        self,
        client: AnalysisClient,
        context: Optional[Callable[[], Sequence[Any]]] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self.client = client
        self.context = context
        self.loop = loop
        self.orchestrator: Optional[CaptureOrchestrator] = None
        self._tasks: Set[asyncio.Task] = set()

    def __call__(self, request_id: int, image_uri: str) -> None:
        loop = self.loop or asyncio.get_running_loop()
        task = loop.create_task(self._run(request_id, image_uri))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, request_id: int, image_uri: str) -> None:
        context = list(self.context()) if self.context is not None else []
        try:
            result = await self.client.analyze(image_uri, context)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Fit analysis crashed: %s", exc)
            result = AnalysisResult(error="Fit analysis failed.")
        if self.orchestrator is not None:
            self.orchestrator.send(AnalysisCompleted(request_id=request_id, result=result))

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()


class MirrorLoop:
    """Per-frame detection and drape loop wired to the capture orchestrator.

    Each tick runs pose detection and the drape engine synchronously, pushes
    the grid to the renderer and reports tracking flips to the orchestrator.
    A tick that arrives while another is running is skipped, never queued.
    """

    def __init__(
        self,
        *,
        pose_provider: PoseProvider,
        scheduler: Scheduler,
        dispatch: Callable[[int, str], None],
        drape_engine: Optional[DrapeEngine] = None,
        renderer: Optional[Renderer] = None,
        on_prompt_upload: Optional[Callable[[], None]] = None,
        outputs_dir: Optional[Path] = None,
        debug_overlay: bool = False,
        width: int = config.VIDEO_WIDTH,
        height: int = config.VIDEO_HEIGHT,
    ) -> None:
        self.width = width
        self.height = height
        self.pose_provider = pose_provider
        self.scheduler = scheduler
        self.drape_engine = drape_engine or DrapeEngine(DrapeConfig(aspect_ratio=width / height))
        self.renderer: Renderer = renderer if renderer is not None else SoftwareMeshRenderer(width, height)
        self.outputs_dir = outputs_dir
        self.debug_overlay = debug_overlay
        self.overlay: Optional[Image.Image] = None
        self.texture: Optional[Image.Image] = None
        self.last_capture_path: Optional[Path] = None

        self.orchestrator = CaptureOrchestrator(
            scheduler=scheduler,
            capture=self._capture,
            dispatch=dispatch,
            on_prompt_upload=on_prompt_upload,
        )
        if isinstance(dispatch, AnalysisDispatcher):
            dispatch.orchestrator = self.orchestrator
        self._dispatch = dispatch

        self._last_frame: Optional[np.ndarray] = None
        self._visible = False
        self._in_tick = False
        self._closed = False
        self._tick_handle: Optional[TimerHandle] = None

    # ----------------------
    # Frame cadence
    # ----------------------
    def tick(self, frame: np.ndarray, timestamp_ms: int) -> TickResult:
        if self._closed or self._in_tick:
            increment("frames_skipped", "closed" if self._closed else "reentrant")
            return self._result(skipped=True)
        self._in_tick = True
        try:
            increment("frames_total", "tick")
            self._last_frame = frame
            pose = self.pose_provider.detect(frame, timestamp_ms)
            if pose is None:
                increment("pose_missing", "tick")
            drape = self.drape_engine.update(pose)
            self.renderer.draw(drape.positions if drape.visible else None, self.texture)
            if self.debug_overlay:
                self.overlay = draw_landmark_overlay(pose if self.orchestrator.overlay_visible else None, self.width, self.height)
            if drape.visible != self._visible:
                self._visible = drape.visible
                self.orchestrator.send(TrackingChanged(visible=drape.visible))
        finally:
            self._in_tick = False
        return self._result(skipped=False)

    def start(self, source: FrameSource, fps: float = 30.0) -> None:
        """Pull frames from `source` on the scheduler at roughly `fps`."""
        interval = 1.0 / max(fps, 1.0)

        def _step() -> None:
            self._tick_handle = None
            if self._closed:
                return
            item = source()
            if item is not None:
                frame, timestamp_ms = item
                self.tick(frame, timestamp_ms)
            if not self._closed:
                self._tick_handle = self.scheduler.call_later(interval, _step)

        self._tick_handle = self.scheduler.call_later(0.0, _step)

    def _result(self, *, skipped: bool) -> TickResult:
        return TickResult(
            visible=self._visible,
            skipped=skipped,
            state=self.orchestrator.state,
            countdown=self.orchestrator.countdown,
        )

    # ----------------------
    # User actions
    # ----------------------
    def upload_garment(self, texture: TextureSource) -> None:
        image = load_texture(texture)
        self.texture = image
        self.orchestrator.send(GarmentUploaded(texture=image))

    def retry(self) -> bool:
        if self.orchestrator.state is not CaptureState.SHOWING_RESULT:
            return False
        self.orchestrator.send(Retry())
        return True

    def ask_again(self) -> bool:
        if self.orchestrator.state is not CaptureState.SHOWING_RESULT:
            return False
        self.orchestrator.send(AskAgain())
        return True

    def session_summary(self) -> Dict[str, Any]:
        view = self.orchestrator.view()
        return {
            "state": view.state.value,
            "countdown": view.countdown,
            "garment_loaded": view.garment_loaded,
            "tracking": view.tracking,
            "has_captured": view.has_captured,
            "pending": view.pending,
            "message": view.message,
            "snapshot": self.last_capture_path.name if (view.has_snapshot and self.last_capture_path) else None,
        }

    # ----------------------
    # Capture
    # ----------------------
    def _capture(self) -> Optional[Composite]:
        if self._last_frame is None:
            return None
        composite = compose_capture(self._last_frame, self.renderer, width=self.width, height=self.height)
        self.last_capture_path = self._write_capture(composite.image)
        return composite

    def _write_capture(self, image: Image.Image) -> Optional[Path]:
        if self.outputs_dir is None:
            return None
        payload = encode_png(image)
        path = self.outputs_dir / f"capture_{stable_content_hash([payload])[:16]}.png"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(payload)
        except OSError as exc:
            logger.warning("Unable to write capture %s: %s", path, exc)
            return None
        return path

    # ----------------------
    # Teardown
    # ----------------------
    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._tick_handle is not None:
            self._tick_handle.cancel()
            self._tick_handle = None
        self.orchestrator.send(Teardown())
        if isinstance(self._dispatch, AnalysisDispatcher):
            self._dispatch.cancel_all()
        self.pose_provider.close()
