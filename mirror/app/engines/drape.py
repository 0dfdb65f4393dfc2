from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .. import config
from ..landmarks import Landmark, PoseFrame

logger = logging.getLogger(__name__)

GRID_COLS = 10
GRID_ROWS = 10
GRID_POINTS = GRID_COLS * GRID_ROWS

# Height of the camera frustum at the garment plane, in world units.
VISIBLE_HEIGHT = 4.6

NECK_EXTENSION = 0.25
HEM_EXTENSION = 0.25
SHOULDER_SPAN_RATIO = 0.38
WAIST_RATIO = 0.75
HIP_RATIO = 0.95
WRAP_DEPTH = 0.8
SMOOTH_FACTOR = 0.3


@dataclass(frozen=True)
class DrapeConfig:
    aspect_ratio: float = config.VIDEO_WIDTH / config.VIDEO_HEIGHT
    visible_height: float = VISIBLE_HEIGHT
    neck_extension: float = NECK_EXTENSION
    hem_extension: float = HEM_EXTENSION
    shoulder_span_ratio: float = SHOULDER_SPAN_RATIO
    waist_ratio: float = WAIST_RATIO
    hip_ratio: float = HIP_RATIO
    wrap_depth: float = WRAP_DEPTH
    smooth_factor: float = SMOOTH_FACTOR

    @property
    def visible_width(self) -> float:
        return self.visible_height * self.aspect_ratio


@dataclass(frozen=True)
class DrapeProfile:
    """Torso measurements the grid is built from, in world units."""

    shoulder_width: float
    spine_length: float
    neck_offset: float
    hem_offset: float
    top_width: float
    waist_width: float
    hip_width: float
    top_center: np.ndarray
    bottom_center: np.ndarray
    right_dir: np.ndarray

    def row_width(self, v: float) -> float:
        if v < 0.5:
            t = v * 2.0
            return self.top_width * (1.0 - t) + self.waist_width * t
        t = (v - 0.5) * 2.0
        return self.waist_width * (1.0 - t) + self.hip_width * t


@dataclass
class DrapeResult:
    visible: bool
    # (GRID_POINTS, 3) in renderer vertex order, None when hidden
    positions: Optional[np.ndarray] = None


def geom_col(col: int) -> int:
    """Map a logical column (0 = visual right edge) to the renderer column (0 = visual left edge)."""
    return GRID_COLS - 1 - col


def to_renderer_order(points: np.ndarray) -> np.ndarray:
    grid = np.asarray(points, dtype=np.float64).reshape(GRID_ROWS, GRID_COLS, -1)
    return grid[:, ::-1, :].reshape(GRID_POINTS, -1).copy()


class DrapeEngine:
    """Pose-driven garment deformation.

    Turns the four torso anchors of a PoseFrame into 100 control points for a
    10x10 garment mesh, wrapped parabolically in depth and smoothed against the
    previous frame. The smoothing history is owned by the instance and is only
    ever handed out as copies.
    """

    def __init__(self, drape_config: Optional[DrapeConfig] = None) -> None:
        self.cfg = drape_config or DrapeConfig()
        self._state = np.zeros((GRID_POINTS, 3), dtype=np.float64)
        self._visible = False

    @property
    def visible(self) -> bool:
        return self._visible

    def snapshot_state(self) -> np.ndarray:
        return self._state.copy()

    def to_world(self, landmark: Landmark) -> np.ndarray:
        wx = (0.5 - landmark.x) * self.cfg.visible_width
        wy = -(landmark.y - 0.5) * self.cfg.visible_height
        return np.array([wx, wy, 0.0], dtype=np.float64)

    def measure(self, pose: Optional[PoseFrame]) -> Optional[DrapeProfile]:
        if pose is None:
            return None
        anchors = pose.anchors()
        if anchors is None:
            return None
        left_shoulder, right_shoulder, left_hip, right_hip = (self.to_world(lm) for lm in anchors)
        if not np.isfinite([left_shoulder, right_shoulder, left_hip, right_hip]).all():
            logger.debug("Non-finite torso anchor; hiding mesh.")
            return None

        shoulder_center = (left_shoulder + right_shoulder) * 0.5
        hip_center = (left_hip + right_hip) * 0.5
        spine_vec = hip_center - shoulder_center
        spine_length = float(np.linalg.norm(spine_vec))
        shoulder_vec = left_shoulder - right_shoulder
        shoulder_width = float(np.linalg.norm(shoulder_vec))
        if spine_length <= 0.0 or shoulder_width <= 0.0:
            logger.debug("Degenerate torso (spine=%.4f, shoulders=%.4f); hiding mesh.", spine_length, shoulder_width)
            return None
        spine_dir = spine_vec / spine_length
        right_dir = shoulder_vec / shoulder_width

        neck_offset = spine_length * self.cfg.neck_extension
        hem_offset = spine_length * self.cfg.hem_extension
        top_width = shoulder_width / self.cfg.shoulder_span_ratio

        return DrapeProfile(
            shoulder_width=shoulder_width,
            spine_length=spine_length,
            neck_offset=neck_offset,
            hem_offset=hem_offset,
            top_width=top_width,
            waist_width=top_width * self.cfg.waist_ratio,
            hip_width=top_width * self.cfg.hip_ratio,
            top_center=shoulder_center - spine_dir * neck_offset,
            bottom_center=hip_center + spine_dir * hem_offset,
            right_dir=right_dir,
        )

    def targets(self, pose: Optional[PoseFrame]) -> Optional[np.ndarray]:
        """Unsmoothed target positions in logical order (row-major, column 0 on the right)."""
        profile = self.measure(pose)
        if profile is None:
            return None
        return self._build_targets(profile)

    def _build_targets(self, profile: DrapeProfile) -> np.ndarray:
        full_span = profile.bottom_center - profile.top_center
        targets = np.empty((GRID_POINTS, 3), dtype=np.float64)
        for row in range(GRID_ROWS):
            v = row / (GRID_ROWS - 1)
            center = profile.top_center + full_span * v
            half_width = profile.row_width(v) * 0.5
            for col in range(GRID_COLS):
                u = col / (GRID_COLS - 1)
                h = (u - 0.5) * 2.0
                pos = center + profile.right_dir * (h * half_width)
                pos[2] += -(h ** 2) * self.cfg.wrap_depth
                targets[row * GRID_COLS + col] = pos
        return targets

    def update(self, pose: Optional[PoseFrame]) -> DrapeResult:
        targets = self.targets(pose)
        if targets is None:
            self._visible = False
            return DrapeResult(visible=False)

        alpha = self.cfg.smooth_factor
        self._state += (targets - self._state) * alpha
        self._visible = True
        return DrapeResult(visible=True, positions=to_renderer_order(self._state))
