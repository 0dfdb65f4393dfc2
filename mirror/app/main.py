from __future__ import annotations

import asyncio
import io
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import numpy as np
from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from PIL import Image

from .analysis import AnalysisClient
from .cache import PreparedGarmentCache
from .config import CORS_ALLOW_ORIGIN_REGEX, CORS_ALLOW_ORIGINS, OUTPUTS_DIR
from .cv import ClothPreprocessor, PoseProvider
from .loop import AnalysisDispatcher, MirrorLoop
from .metrics import increment, observe_latency, snapshot
from .moderation import evaluate_garment_upload
from .schemas import ChatRequest, ChatResponse, FrameResponse, GarmentResponse, SessionResponse


logger = logging.getLogger(__name__)

_MIRROR_LOOP: Optional[MirrorLoop] = None


def get_preprocessor() -> ClothPreprocessor:
    return ClothPreprocessor(cache=PreparedGarmentCache())


def get_analysis_client() -> AnalysisClient:
    return AnalysisClient()


async def get_mirror_loop() -> MirrorLoop:
    global _MIRROR_LOOP
    if _MIRROR_LOOP is None or _MIRROR_LOOP.orchestrator.closed:
        _MIRROR_LOOP = MirrorLoop(
            pose_provider=PoseProvider(),
            scheduler=asyncio.get_running_loop(),
            dispatch=AnalysisDispatcher(get_analysis_client()),
            on_prompt_upload=lambda: logger.info("Waiting for a new garment upload."),
            outputs_dir=OUTPUTS_DIR,
        )
    return _MIRROR_LOOP


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    global _MIRROR_LOOP
    if _MIRROR_LOOP is not None:
        _MIRROR_LOOP.close()
        _MIRROR_LOOP = None


app = FastAPI(
    title="Virtual Mirror API",
    version="0.1.0",
    description="Pose-driven garment draping, auto-capture and fit analysis.",
    lifespan=lifespan,
)

if CORS_ALLOW_ORIGIN_REGEX is None and CORS_ALLOW_ORIGINS == ["*"]:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOW_ORIGINS,
        allow_origin_regex=CORS_ALLOW_ORIGIN_REGEX,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.mount("/outputs", StaticFiles(directory=OUTPUTS_DIR), name="outputs")


@app.middleware("http")
async def log_and_measure_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start
    label = f"{request.method} {request.url.path}"
    increment("requests_total", label)
    observe_latency("http_request_seconds", label, duration)
    response.headers["X-Process-Time"] = f"{duration:.3f}s"
    logger.debug("%s %s -> %s (%.3fs)", request.method, request.url.path, response.status_code, duration)
    return response


@app.get("/healthz")
async def healthz():
    return {"ok": True}


@app.get("/metrics")
async def metrics():
    return JSONResponse(status_code=status.HTTP_200_OK, content=snapshot())


@app.post("/garment", response_model=GarmentResponse)
async def upload_garment(
    garment: UploadFile = File(...),
    preprocessor: ClothPreprocessor = Depends(get_preprocessor),
    mirror: MirrorLoop = Depends(get_mirror_loop),
):
    garment_bytes = await garment.read()
    if not garment_bytes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="garment is empty.")

    issues = evaluate_garment_upload(garment_bytes)
    if issues:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=[issue.__dict__ for issue in issues],
        )

    prepared = preprocessor.prepare_garment(garment_bytes)
    try:
        mirror.upload_garment(prepared.data_uri)
    except Exception as exc:  # pylint: disable=broad-except
        logger.warning("Prepared garment could not be loaded as a texture: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Could not load the garment image.",
        ) from exc

    return GarmentResponse(
        cache_key=prepared.cache_key,
        degraded=prepared.degraded,
        cached=prepared.cached,
        state=mirror.orchestrator.state.value,
    )


@app.post("/frame", response_model=FrameResponse)
async def submit_frame(
    frame: UploadFile = File(...),
    timestamp_ms: Optional[int] = Form(default=None),
    mirror: MirrorLoop = Depends(get_mirror_loop),
):
    frame_bytes = await frame.read()
    if not frame_bytes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="frame is empty.")
    try:
        with Image.open(io.BytesIO(frame_bytes)) as image:
            rgb = np.asarray(image.convert("RGB"))
    except Exception as exc:  # pylint: disable=broad-except
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="frame is not an image.") from exc

    ts = timestamp_ms if timestamp_ms is not None else int(time.perf_counter() * 1000)
    result = mirror.tick(rgb, ts)
    return FrameResponse(
        visible=result.visible,
        skipped=result.skipped,
        state=result.state.value,
        countdown=result.countdown,
    )


def _session_response(mirror: MirrorLoop) -> SessionResponse:
    summary = mirror.session_summary()
    snapshot_name = summary.pop("snapshot")
    return SessionResponse(
        **summary,
        snapshot_url=f"/outputs/{snapshot_name}" if snapshot_name else None,
    )


@app.get("/session", response_model=SessionResponse)
async def get_session(mirror: MirrorLoop = Depends(get_mirror_loop)):
    return _session_response(mirror)


@app.post("/session/retry", response_model=SessionResponse)
async def retry_session(mirror: MirrorLoop = Depends(get_mirror_loop)):
    if not mirror.retry():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No captured result to retry.")
    return _session_response(mirror)


@app.post("/session/ask-again", response_model=SessionResponse)
async def ask_again(mirror: MirrorLoop = Depends(get_mirror_loop)):
    if not mirror.ask_again():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No captured result to analyze.")
    return _session_response(mirror)


@app.post("/chat", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    client: AnalysisClient = Depends(get_analysis_client),
):
    result = await client.chat(
        [message.model_dump() for message in request.messages],
        request.context,
    )
    if not result.ok:
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"error": result.error})
    return ChatResponse(content=result.text or "")
