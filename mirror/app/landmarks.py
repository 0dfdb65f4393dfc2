from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple

# MediaPipe pose topology (33 landmarks)
POSE_LANDMARK_COUNT = 33

LEFT_SHOULDER = 11
RIGHT_SHOULDER = 12
LEFT_HIP = 23
RIGHT_HIP = 24

ANCHOR_INDICES: Tuple[int, ...] = (LEFT_SHOULDER, RIGHT_SHOULDER, LEFT_HIP, RIGHT_HIP)


@dataclass(frozen=True)
class Landmark:
    """A single tracked point in normalized image space."""

    x: float
    y: float
    z: float = 0.0
    visibility: float = 1.0  # confidence [0..1]


@dataclass(frozen=True)
class PoseFrame:
    """
    Landmarks for one tracked person in one video frame.

    Index identity matters: slot 11/12 are the shoulders and 23/24 the hips.
    A slot holds None when the model did not report that landmark.
    """

    landmarks: Tuple[Optional[Landmark], ...]
    timestamp_ms: Optional[int] = None

    @classmethod
    def from_landmarks(
        cls,
        landmarks: Iterable[Optional[Landmark]],
        timestamp_ms: Optional[int] = None,
    ) -> "PoseFrame":
        return cls(landmarks=tuple(landmarks), timestamp_ms=timestamp_ms)

    def __len__(self) -> int:
        return len(self.landmarks)

    def get(self, index: int) -> Optional[Landmark]:
        if index < 0 or index >= len(self.landmarks):
            return None
        return self.landmarks[index]

    def anchors(self) -> Optional[Tuple[Landmark, Landmark, Landmark, Landmark]]:
        """Return (left_shoulder, right_shoulder, left_hip, right_hip) or None if any is absent."""
        points = [self.get(idx) for idx in ANCHOR_INDICES]
        if any(point is None for point in points):
            return None
        return points[0], points[1], points[2], points[3]  # type: ignore[return-value]

    def mean_visibility(self, indices: Optional[Sequence[int]] = None) -> float:
        selected = [self.get(idx) for idx in indices] if indices is not None else list(self.landmarks)
        present = [lm.visibility for lm in selected if lm is not None]
        if not present:
            return 0.0
        return sum(present) / len(present)
