import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager

import cv2
import numpy as np
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from config import FRONTEND_URL, LOG_LEVEL, OUTPUT_DIR, UPLOAD_URL
from delivery.upload import ClipUploader, upload_items
from errors import RecorderError, UnsupportedCodecError, UploadError
from models.loader import load_all_models
from processing.face_analysis import FaceAnalyzer
from processing.orchestrator import RecordingOrchestrator
from recording.artifacts import export_artifacts
from recording.codecs import select_codec
from schemas.messages import CompletionEvent, ErrorEvent, ResetAck, UploadResultEvent
from state.session_log import SessionLogBuffer

logger = logging.getLogger("uvicorn.error")


@asynccontextmanager
async def lifespan(app: FastAPI):
    print("Loading models...")
    app.state.registry = load_all_models()
    try:
        app.state.codec = select_codec()
    except UnsupportedCodecError as e:
        print(f"No usable video codec: {e}")
        app.state.codec = None
    print("All models loaded. Server ready.")
    yield


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_URL, "*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health():
    codec = app.state.codec
    return {
        "status": "ok",
        "models_loaded": app.state.registry.loaded,
        "codec": codec.mime_type if codec else None,
    }


async def _deliver(orchestrator: RecordingOrchestrator, uploader: ClipUploader) -> UploadResultEvent:
    result = orchestrator.result
    try:
        await uploader.upload_all(result.session_id, upload_items(result))
    except UploadError as e:
        return UploadResultEvent(
            success=False,
            failed_indices=e.failed_indices,
            retryable=True,
            message="Upload failed. Please check your connection and retry.",
        )
    return UploadResultEvent(success=True, message="All clips uploaded.")


@app.websocket("/ws/capture")
async def capture_session(websocket: WebSocket):
    await websocket.accept()
    registry = websocket.app.state.registry
    analyzer = FaceAnalyzer(registry)
    log_buffer = SessionLogBuffer(LOG_LEVEL)
    orchestrator = RecordingOrchestrator(analyzer, codec=websocket.app.state.codec, log_buffer=log_buffer)
    uploader = ClipUploader(UPLOAD_URL)
    frame_count = 0
    latest_frame_bytes: bytes | None = None
    commands: list[str] = []
    in_flight: asyncio.Future | None = None

    logger.info(f"WS capture session {orchestrator.session.session_id} started")

    async def offload(fn, *args):
        """Run fn in a worker thread. Cancelling the caller leaves the worker running; cleanup waits for it."""
        nonlocal in_flight
        in_flight = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        return await asyncio.shield(in_flight)

    async def reader():
        """Continuously read from WebSocket, keeping only the latest binary frame."""
        nonlocal latest_frame_bytes
        try:
            while True:
                message = await websocket.receive()

                if message.get("type") == "websocket.disconnect":
                    break

                if "text" in message and message["text"]:
                    try:
                        data = json.loads(message["text"])
                    except json.JSONDecodeError:
                        logger.warning("WS ignored a non-JSON text message")
                        continue
                    if data.get("type") in ("reset", "retry_upload"):
                        logger.info(f"WS {data['type']} command received")
                        commands.append(data["type"])
                        if data["type"] == "reset":
                            latest_frame_bytes = None

                if "bytes" in message and message["bytes"]:
                    # Always overwrite, only the latest frame matters
                    latest_frame_bytes = message["bytes"]

        except (WebSocketDisconnect, RuntimeError):
            pass

    async def send_events():
        for event in orchestrator.drain_events():
            await websocket.send_json(event.model_dump())
            if isinstance(event, CompletionEvent) and event.success:
                try:
                    paths = await offload(export_artifacts, orchestrator.result, OUTPUT_DIR)
                except RecorderError as e:
                    logger.error(f"WS export failed: {e}")
                    await websocket.send_json(ErrorEvent(message="Could not save the recorded clips").model_dump())
                else:
                    logger.info(f"WS exported {len(paths)} artifacts")
                upload = await _deliver(orchestrator, uploader)
                await websocket.send_json(upload.model_dump())

    async def run_commands():
        while commands:
            command = commands.pop(0)
            if command == "reset":
                orchestrator.restart("requested")
                await websocket.send_json(ResetAck(step=orchestrator.capture_step.value).model_dump())
            elif command == "retry_upload":
                if orchestrator.result is None:
                    await websocket.send_json(ErrorEvent(message="Nothing to upload yet").model_dump())
                    continue
                upload = await _deliver(orchestrator, uploader)
                await websocket.send_json(upload.model_dump())
            await send_events()

    async def processor():
        """Process the latest frame, skipping stale ones."""
        nonlocal latest_frame_bytes, frame_count
        try:
            if not orchestrator.start():
                await send_events()
            while True:
                await run_commands()
                if latest_frame_bytes is None:
                    await asyncio.sleep(0.01)
                    continue

                # Grab and clear the latest frame
                jpeg_bytes = latest_frame_bytes
                latest_frame_bytes = None

                frame = cv2.imdecode(
                    np.frombuffer(jpeg_bytes, np.uint8),
                    cv2.IMREAD_COLOR,
                )
                if frame is None:
                    await websocket.send_json(ErrorEvent(message="Could not decode frame").model_dump())
                    continue

                frame_count += 1
                result = await offload(orchestrator.step, frame, time.monotonic())

                if frame_count <= 3 or frame_count % 30 == 0:
                    logger.info(f"WS frame #{frame_count} -> step={result.step}, face={result.face_detected}")

                try:
                    await websocket.send_json(result.model_dump())
                    await send_events()
                except (WebSocketDisconnect, RuntimeError):
                    break

        except (WebSocketDisconnect, RuntimeError):
            pass
        except asyncio.CancelledError:
            pass

    try:
        # Run reader and processor concurrently
        reader_task = asyncio.create_task(reader())
        processor_task = asyncio.create_task(processor())

        # When reader finishes (disconnect), cancel processor
        await reader_task
        processor_task.cancel()
        try:
            await processor_task
        except asyncio.CancelledError:
            pass

    except (WebSocketDisconnect, RuntimeError) as e:
        logger.info(f"WS session ended: {type(e).__name__}: {e}")
    finally:
        if in_flight is not None and not in_flight.done():
            logger.info("WS cleanup: waiting for the frame in flight")
            await asyncio.wait([in_flight])
            if in_flight.exception() is not None:
                logger.error(f"WS frame in flight failed: {in_flight.exception()}")
        logger.info(f"WS cleanup: processed {frame_count} frames, closing detector")
        orchestrator.teardown()
        analyzer.close()
