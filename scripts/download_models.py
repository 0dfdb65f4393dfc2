#!/usr/bin/env python
"""Download the mirror's model assets if they are missing.

The script is designed to run during Docker build or container start. It
reads configuration from environment variables (matching the defaults in
`mirror/app/config.py`) and attempts to fetch:

- the MediaPipe PoseLandmarker `.task` bundle used for body tracking, and
- the rembg background-removal weights (fetched into rembg's own cache by
  opening a session once).

Downloads are best-effort. A failure is reported and the script moves on;
the mirror then runs without tracking or with unprocessed garment uploads.
"""

from __future__ import annotations

import os
import shutil
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Callable


BASE_MODELS_DIR = Path(os.environ.get("MIRROR_MODELS_DIR", "/models"))

POSE_MODEL_PATH = Path(
    os.environ.get(
        "MIRROR_POSE_MODEL_PATH",
        BASE_MODELS_DIR / "pose_landmarker" / "pose_landmarker_full.task",
    )
)
POSE_MODEL_URL = os.environ.get(
    "MIRROR_POSE_MODEL_URL",
    "https://storage.googleapis.com/mediapipe-models/pose_landmarker/"
    "pose_landmarker_full/float16/1/pose_landmarker_full.task",
)
REMBG_MODEL = os.environ.get("MIRROR_REMBG_MODEL", "u2net")
REMBG_SENTINEL = BASE_MODELS_DIR / "rembg" / f".{REMBG_MODEL}.complete"


@dataclass
class DownloadTask:
    description: str
    destination: Path
    action: Callable[[], None]

    def run(self) -> bool:
        if self.destination.exists():
            print(f"[models] {self.description}: already present at {self.destination}")
            return True
        self.destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.action()
        except Exception as exc:  # pylint: disable=broad-except
            print(f"[models][warning] {self.description}: download failed ({exc})")
            return False
        print(f"[models] {self.description}: ready at {self.destination}")
        return True


def download_http(url: str, destination: Path) -> None:
    partial = destination.with_suffix(destination.suffix + ".part")
    destination.parent.mkdir(parents=True, exist_ok=True)
    try:
        with urllib.request.urlopen(url) as resp, open(partial, "wb") as f:
            shutil.copyfileobj(resp, f)
        if partial.stat().st_size == 0:
            raise RuntimeError(f"empty download from {url}")
        partial.replace(destination)
    finally:
        partial.unlink(missing_ok=True)


def download_pose_landmarker() -> DownloadTask:
    return DownloadTask(
        "MediaPipe PoseLandmarker (full)",
        POSE_MODEL_PATH,
        lambda: download_http(POSE_MODEL_URL, POSE_MODEL_PATH),
    )


def warm_rembg() -> DownloadTask:
    def action() -> None:
        try:
            from rembg import new_session  # type: ignore
        except ImportError as exc:
            raise RuntimeError("rembg is not installed; install the 'vision' extra") from exc
        new_session(REMBG_MODEL)
        REMBG_SENTINEL.touch()

    return DownloadTask(f"rembg {REMBG_MODEL} weights", REMBG_SENTINEL, action)


def main() -> None:
    tasks = [download_pose_landmarker(), warm_rembg()]
    success_count = sum(1 for task in tasks if task.run())
    print(f"[models] Completed downloads. {success_count}/{len(tasks)} assets present.")


if __name__ == "__main__":
    main()
