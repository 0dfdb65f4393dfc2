from __future__ import annotations

import asyncio

import numpy as np
import pytest
from PIL import Image, UnidentifiedImageError

from mirror.app import metrics
from mirror.app.analysis import AnalysisResult
from mirror.app.capture import WARNING_PREFIX, CaptureOrchestrator, CaptureState, GarmentUploaded, TrackingChanged
from mirror.app.composite import Composite
from mirror.app.landmarks import LEFT_HIP
from mirror.app.loop import AnalysisDispatcher, MirrorLoop

WIDTH, HEIGHT = 160, 90
FRAME = np.full((HEIGHT, WIDTH, 3), 90, dtype=np.uint8)


class FakePoseProvider:
    def __init__(self, pose=None):
        self.pose = pose
        self.timestamps = []
        self.during_detect = None
        self.closed = False

    def detect(self, frame, timestamp_ms):
        self.timestamps.append(timestamp_ms)
        if self.during_detect is not None:
            self.during_detect()
        return self.pose

    def close(self):
        self.closed = True


class RecordingDispatch:
    def __init__(self):
        self.calls = []

    def __call__(self, request_id, uri):
        self.calls.append((request_id, uri))


@pytest.fixture
def provider(make_pose):
    return FakePoseProvider(make_pose())


@pytest.fixture
def dispatch():
    return RecordingDispatch()


@pytest.fixture
def mirror(provider, scheduler, dispatch, tmp_path):
    return MirrorLoop(
        pose_provider=provider,
        scheduler=scheduler,
        dispatch=dispatch,
        outputs_dir=tmp_path,
        width=WIDTH,
        height=HEIGHT,
    )


def garment() -> Image.Image:
    return Image.new("RGBA", (48, 64), (20, 120, 220, 255))


def test_tracking_without_garment_does_not_arm(mirror):
    result = mirror.tick(FRAME, 0)
    assert result.visible is True
    assert result.skipped is False
    assert result.state is CaptureState.IDLE
    assert mirror.orchestrator.tracking is True


def test_full_capture_cycle(mirror, scheduler, dispatch, tmp_path):
    mirror.upload_garment(garment())
    result = mirror.tick(FRAME, 0)
    assert result.state is CaptureState.COUNTDOWN
    assert result.countdown == 3

    scheduler.advance(3.2)

    summary = mirror.session_summary()
    assert summary["state"] == "showing_result"
    assert summary["has_captured"] is True
    assert summary["pending"] is True
    assert summary["snapshot"] is not None
    saved = tmp_path / summary["snapshot"]
    assert saved.exists()
    with Image.open(saved) as image:
        assert image.size == (WIDTH, HEIGHT)
        # garment drawn over the torso at the canvas center
        r, g, b = image.convert("RGB").getpixel((WIDTH // 2, HEIGHT // 2))
        assert b > 150 and r < 100
    assert len(dispatch.calls) == 1
    assert metrics.counter("captures_total", "garment") == 1


def test_tracking_flips_are_reported_once(mirror, provider):
    mirror.tick(FRAME, 0)
    mirror.tick(FRAME, 33)
    assert mirror.orchestrator.tracking is True

    provider.pose = None
    result = mirror.tick(FRAME, 66)
    assert result.visible is False
    assert mirror.orchestrator.tracking is False
    assert metrics.counter("pose_missing", "tick") == 1


def test_missing_anchor_hides_garment(mirror, provider, make_pose):
    mirror.upload_garment(garment())
    mirror.tick(FRAME, 0)
    provider.pose = make_pose(drop=(LEFT_HIP,))
    assert mirror.tick(FRAME, 33).visible is False
    assert mirror.renderer.snapshot().getbbox() is None


def test_non_finite_pose_is_treated_as_untracked(mirror, provider, make_pose):
    mirror.upload_garment(garment())
    provider.pose = make_pose(anchors={LEFT_HIP: (float("nan"), 0.7)})

    result = mirror.tick(FRAME, 0)

    assert result.visible is False
    assert result.state is CaptureState.IDLE
    assert mirror.renderer.snapshot().getbbox() is None

    provider.pose = make_pose()
    assert mirror.tick(FRAME, 33).visible is True


def test_overlapping_tick_is_skipped(mirror, provider):
    inner = []
    provider.during_detect = lambda: inner.append(mirror.tick(FRAME, 1))

    outer = mirror.tick(FRAME, 0)

    assert outer.skipped is False
    assert inner[0].skipped is True
    assert provider.timestamps == [0]
    assert metrics.counter("frames_skipped", "reentrant") == 1


def test_debug_overlay_follows_pose(provider, scheduler, dispatch):
    mirror = MirrorLoop(
        pose_provider=provider,
        scheduler=scheduler,
        dispatch=dispatch,
        debug_overlay=True,
        width=WIDTH,
        height=HEIGHT,
    )
    mirror.tick(FRAME, 0)
    assert mirror.overlay is not None
    assert mirror.overlay.getbbox() is not None


def test_user_actions_require_a_result(mirror, scheduler, dispatch):
    assert mirror.retry() is False
    assert mirror.ask_again() is False

    mirror.upload_garment(garment())
    mirror.tick(FRAME, 0)
    scheduler.advance(3.2)

    assert mirror.ask_again() is True
    assert len(dispatch.calls) == 2
    assert mirror.retry() is True
    assert mirror.session_summary()["has_captured"] is False


def test_start_pulls_frames_until_closed(mirror, provider, scheduler):
    frames = iter(range(0, 1000, 33))
    mirror.start(lambda: (FRAME, next(frames)), fps=10)

    scheduler.advance(0.35)
    assert provider.timestamps == [0, 33, 66, 99]

    mirror.close()
    scheduler.advance(1.0)
    assert len(provider.timestamps) == 4
    assert provider.closed is True
    assert mirror.orchestrator.closed is True
    assert mirror.tick(FRAME, 500).skipped is True


def test_upload_rejects_unreadable_texture(mirror):
    with pytest.raises(UnidentifiedImageError):
        mirror.upload_garment(b"not an image")
    assert mirror.orchestrator.garment is None


class FakeClient:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    async def analyze(self, image_uri, context):
        self.calls.append((image_uri, context))
        if self.error is not None:
            raise self.error
        return self.result


async def _run_on_event_loop(client):
    dispatcher = AnalysisDispatcher(client, context=lambda: [{"item": "white sneakers"}])
    orchestrator = CaptureOrchestrator(
        scheduler=asyncio.get_running_loop(),
        capture=lambda: Composite(image=Image.new("RGB", (8, 8)), has_garment=True),
        dispatch=dispatcher,
        countdown_interval=0.01,
        settle_seconds=0.0,
    )
    dispatcher.orchestrator = orchestrator
    orchestrator.send(GarmentUploaded(texture="shirt"))
    orchestrator.send(TrackingChanged(visible=True))
    for _ in range(200):
        await asyncio.sleep(0.01)
        view = orchestrator.view()
        if view.has_captured and not view.pending:
            break
    return orchestrator.view()


def test_dispatcher_feeds_result_back_on_event_loop():
    client = FakeClient(result=AnalysisResult(text="Serving looks."))
    view = asyncio.run(_run_on_event_loop(client))

    assert view.state is CaptureState.SHOWING_RESULT
    assert view.message == "Serving looks."
    assert view.pending is False
    assert client.calls[0][1] == [{"item": "white sneakers"}]


def test_dispatcher_reports_crashed_analysis():
    view = asyncio.run(_run_on_event_loop(FakeClient(error=RuntimeError("boom"))))
    assert view.message == WARNING_PREFIX + "Fit analysis failed."
    assert view.has_captured is True
