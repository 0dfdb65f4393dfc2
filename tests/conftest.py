from __future__ import annotations

import heapq
import itertools
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from mirror.app import metrics
from mirror.app.landmarks import (
    LEFT_HIP,
    LEFT_SHOULDER,
    POSE_LANDMARK_COUNT,
    RIGHT_HIP,
    RIGHT_SHOULDER,
    Landmark,
    PoseFrame,
)

DEFAULT_ANCHORS: Dict[int, Tuple[float, float]] = {
    LEFT_SHOULDER: (0.6, 0.3),
    RIGHT_SHOULDER: (0.4, 0.3),
    LEFT_HIP: (0.58, 0.7),
    RIGHT_HIP: (0.42, 0.7),
}


class _Handle:
    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """call_later-compatible scheduler driven by `advance`."""

    def __init__(self) -> None:
        self.now = 0.0
        self._seq = itertools.count()
        self._heap: List[Tuple[float, int, _Handle, Callable[..., Any], Tuple[Any, ...]]] = []

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> _Handle:
        handle = _Handle()
        heapq.heappush(self._heap, (self.now + delay, next(self._seq), handle, callback, args))
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for _, _, handle, _, _ in self._heap if not handle.cancelled)

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while self._heap and self._heap[0][0] <= target + 1e-9:
            when, _, handle, callback, args = heapq.heappop(self._heap)
            self.now = max(self.now, when)
            if not handle.cancelled:
                callback(*args)
        self.now = target


def build_pose(
    anchors: Optional[Dict[int, Tuple[float, float]]] = None,
    drop: Tuple[int, ...] = (),
    visibility: float = 0.95,
) -> PoseFrame:
    points = dict(DEFAULT_ANCHORS)
    points.update(anchors or {})
    landmarks = []
    for index in range(POSE_LANDMARK_COUNT):
        if index in drop:
            landmarks.append(None)
            continue
        x, y = points.get(index, (0.5, 0.5))
        landmarks.append(Landmark(x=x, y=y, z=0.0, visibility=visibility))
    return PoseFrame.from_landmarks(landmarks)


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def make_pose() -> Callable[..., PoseFrame]:
    return build_pose


@pytest.fixture(autouse=True)
def clean_metrics():
    metrics.reset()
    yield
    metrics.reset()
