from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

import numpy as np

from .. import config
from ..landmarks import Landmark, PoseFrame
from ..metrics import increment, observe_latency

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoseProviderConfig:
    model_path: str = str(config.POSE_MODEL_PATH)
    min_pose_detection_confidence: float = config.POSE_DETECTION_CONFIDENCE
    min_pose_presence_confidence: float = config.POSE_PRESENCE_CONFIDENCE
    min_tracking_confidence: float = config.POSE_TRACKING_CONFIDENCE
    num_poses: int = 1
    use_gpu: bool = config.POSE_USE_GPU


def _load_mediapipe_landmarker(cfg: PoseProviderConfig) -> Any:
    import mediapipe as mp  # type: ignore

    delegate = mp.tasks.BaseOptions.Delegate.GPU if cfg.use_gpu else mp.tasks.BaseOptions.Delegate.CPU
    options = mp.tasks.vision.PoseLandmarkerOptions(
        base_options=mp.tasks.BaseOptions(model_asset_path=cfg.model_path, delegate=delegate),
        running_mode=mp.tasks.vision.RunningMode.VIDEO,
        num_poses=cfg.num_poses,
        min_pose_detection_confidence=cfg.min_pose_detection_confidence,
        min_pose_presence_confidence=cfg.min_pose_presence_confidence,
        min_tracking_confidence=cfg.min_tracking_confidence,
    )
    return mp.tasks.vision.PoseLandmarker.create_from_options(options)


def _wrap_mediapipe_image(rgb: np.ndarray) -> Any:
    import mediapipe as mp  # type: ignore

    return mp.Image(image_format=mp.ImageFormat.SRGB, data=np.ascontiguousarray(rgb))


def _to_pose_frame(raw_landmarks: Sequence[Any], timestamp_ms: int) -> PoseFrame:
    points: List[Optional[Landmark]] = []
    for lm in raw_landmarks:
        if lm is None:
            points.append(None)
            continue
        points.append(
            Landmark(
                x=float(lm.x),
                y=float(lm.y),
                z=float(getattr(lm, "z", 0.0) or 0.0),
                visibility=float(getattr(lm, "visibility", 0.0) or 0.0),
            )
        )
    return PoseFrame.from_landmarks(points, timestamp_ms=timestamp_ms)


class PoseProvider:
    """MediaPipe PoseLandmarker (VIDEO mode) that never queues work.

    `detect` returns a PoseFrame for the single best-tracked person, or None
    when nobody is tracked, inference failed, or another detection is still
    running.
    """

    def __init__(
        self,
        provider_config: Optional[PoseProviderConfig] = None,
        *,
        landmarker_factory: Optional[Callable[[PoseProviderConfig], Any]] = None,
        image_wrapper: Optional[Callable[[np.ndarray], Any]] = None,
    ) -> None:
        self.cfg = provider_config or PoseProviderConfig()
        self._factory = landmarker_factory or _load_mediapipe_landmarker
        self._wrap = image_wrapper or _wrap_mediapipe_image
        self._lock = threading.Lock()
        self._inflight = threading.Lock()
        self._loaded = False
        self._model = None
        self._last_timestamp_ms: Optional[int] = None

    @property
    def available(self) -> bool:
        self.ensure_loaded()
        return self._model is not None

    def ensure_loaded(self) -> None:
        if self._loaded:
            return
        with self._lock:
            if self._loaded:
                return
            try:
                logger.info("Loading PoseLandmarker from %s", self.cfg.model_path)
                self._model = self._factory(self.cfg)
            except Exception as exc:  # pylint: disable=broad-except
                logger.warning("PoseLandmarker unavailable: %s", exc)
                self._model = None
            self._loaded = True

    def _next_timestamp(self, timestamp_ms: int) -> int:
        ts = int(timestamp_ms)
        if self._last_timestamp_ms is not None and ts <= self._last_timestamp_ms:
            ts = self._last_timestamp_ms + 1
        self._last_timestamp_ms = ts
        return ts

    def detect(self, frame_rgb: np.ndarray, timestamp_ms: int) -> Optional[PoseFrame]:
        if not self._inflight.acquire(blocking=False):
            increment("frames_skipped", "pose_busy")
            return None
        try:
            self.ensure_loaded()
            if self._model is None:
                return None
            ts = self._next_timestamp(timestamp_ms)
            start = time.perf_counter()
            try:
                result = self._model.detect_for_video(self._wrap(frame_rgb), ts)
            except Exception as exc:  # pylint: disable=broad-except
                logger.warning("Pose inference failed at t=%sms: %s", ts, exc)
                return None
            finally:
                observe_latency("pose_inference_seconds", "mediapipe", time.perf_counter() - start)
            return self._select_pose(result, ts)
        finally:
            self._inflight.release()

    @staticmethod
    def _select_pose(result: Any, timestamp_ms: int) -> Optional[PoseFrame]:
        candidates = list(getattr(result, "pose_landmarks", None) or [])
        if not candidates:
            return None
        frames = [_to_pose_frame(raw, timestamp_ms) for raw in candidates]
        return max(frames, key=lambda frame: frame.mean_visibility())

    def close(self) -> None:
        with self._lock:
            model, self._model = self._model, None
            self._loaded = False
        if model is None:
            return
        try:
            model.close()
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Failed to close PoseLandmarker: %s", exc)
