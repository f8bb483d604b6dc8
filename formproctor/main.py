from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from typing import Dict, Set
import asyncio
import json
import logging
from datetime import datetime
import time

import cv2
from pydantic import ValidationError

from formproctor.api.ingestion import router as ingestion_router
from formproctor.config import settings
from formproctor.models.schemas import (
    StartMonitoringRequest,
    StopMonitoringRequest,
    MonitoringResponse,
    SessionState,
    Violation,
    ViolationEvent,
    VisibilityEvent,
)
from formproctor.monitoring.camera import CameraSession, detect_available_cameras
from formproctor.monitoring.classifier import create_classifier
from formproctor.monitoring.session import MonitorSession
from formproctor.utils.logging import setup_logging

setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.APP_NAME, version="1.0.0")

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # form pages are served from another origin
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(ingestion_router)

# Active monitor sessions
monitoring_sessions: Dict[str, MonitorSession] = {}
websocket_connections: Dict[str, Set[WebSocket]] = {}
violation_queues: Dict[str, asyncio.Queue] = {}
queue_tasks: Dict[str, asyncio.Task] = {}


def build_session(request: StartMonitoringRequest, session_id: str) -> MonitorSession:
    """Create a monitor session with a local camera and the configured classifier."""
    camera = CameraSession(
        camera_index=request.camera_index if request.camera_index is not None else settings.CAMERA_INDEX,
        width=settings.FRAME_WIDTH,
        height=settings.FRAME_HEIGHT,
    )
    return MonitorSession(
        form_id=request.form_id,
        session_id=session_id,
        camera=camera,
        classifier=create_classifier(request.backend),
    )


def get_session(session_id: str) -> MonitorSession:
    monitor = monitoring_sessions.get(session_id)
    if monitor is None:
        raise HTTPException(status_code=404, detail="Monitoring session not found")
    return monitor


async def process_violation_queue(session_id: str, violation_queue: asyncio.Queue):
    """Push accepted violations to every WebSocket watching the session."""
    logger.debug(f"Started violation queue processor for session: {session_id}")
    while session_id in monitoring_sessions:
        violation: Violation = await violation_queue.get()

        event_payload = ViolationEvent(violation=violation, session_id=session_id).model_dump(
            mode="json", exclude_none=True
        )
        connections = websocket_connections.get(session_id)
        if not connections:
            logger.debug(f"No WebSocket connections for session {session_id}, violation not pushed")
            continue

        disconnected = set()
        for websocket in list(connections):
            try:
                await websocket.send_json(event_payload)
            except Exception as e:
                logger.warning(f"Error sending violation to WebSocket: {e}")
                disconnected.add(websocket)

        connections -= disconnected


def _enqueue(session_id: str, violation_queue: asyncio.Queue):
    def listener(violation: Violation):
        try:
            violation_queue.put_nowait(violation)
        except asyncio.QueueFull:
            logger.warning(f"Violation queue is full for session {session_id}")
    return listener


@app.post("/start-monitoring", response_model=MonitoringResponse)
async def start_monitoring(request: StartMonitoringRequest):
    """Start a monitor session. Camera or model failures degrade it rather than fail it."""
    if request.session_id and request.session_id in monitoring_sessions:
        return MonitoringResponse(
            status="already_started",
            session_id=request.session_id,
            message="Monitoring session already started",
        )

    try:
        monitor = build_session(request, request.session_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    session_id = monitor.id
    violation_queue: asyncio.Queue = asyncio.Queue(maxsize=100)
    violation_queues[session_id] = violation_queue
    monitor.add_listener(_enqueue(session_id, violation_queue))

    monitoring_sessions[session_id] = monitor
    websocket_connections.setdefault(session_id, set())
    queue_tasks[session_id] = asyncio.create_task(process_violation_queue(session_id, violation_queue))

    await monitor.start()

    return MonitoringResponse(
        status="started",
        session_id=session_id,
        message="Monitoring started successfully",
    )


async def _teardown(session_id: str):
    monitor = monitoring_sessions.pop(session_id, None)
    if monitor is not None:
        await monitor.stop()

    task = queue_tasks.pop(session_id, None)
    if task is not None:
        task.cancel()
    violation_queues.pop(session_id, None)

    for websocket in websocket_connections.pop(session_id, set()):
        try:
            await websocket.close()
        except Exception as e:
            logger.debug(f"WebSocket already closed: {e}")


@app.post("/stop-monitoring", response_model=MonitoringResponse)
async def stop_monitoring(request: StopMonitoringRequest):
    """Stop a monitor session and release its camera and models."""
    session_id = request.session_id

    if session_id not in monitoring_sessions:
        return MonitoringResponse(
            status="not_found",
            session_id=session_id,
            message="Monitoring session not found",
        )

    await _teardown(session_id)

    return MonitoringResponse(
        status="stopped",
        session_id=session_id,
        message="Monitoring stopped successfully",
    )


@app.get("/sessions/{session_id}", response_model=SessionState)
async def session_state(session_id: str):
    """Overlay state: status label, counters and the current alert."""
    return get_session(session_id).snapshot()


@app.post("/sessions/{session_id}/visibility")
async def report_visibility(session_id: str, event: VisibilityEvent):
    """Page visibility transition reported by the respondent's browser."""
    monitor = get_session(session_id)
    counted = monitor.handle_visibility(event.hidden)
    return {
        "counted": counted,
        "tab_switch_count": monitor.state.tab_switch_count,
        "reported_tab_switches": monitor.state.reported_tab_switches,
    }


@app.post("/sessions/{session_id}/alert/dismiss")
async def dismiss_alert(session_id: str):
    monitor = get_session(session_id)
    monitor.state.dismiss_alert()
    return {"current_alert": monitor.state.current_alert}


@app.post("/sessions/{session_id}/minimize")
async def toggle_minimized(session_id: str):
    """Minimize or restore the camera preview. Detection keeps running."""
    monitor = get_session(session_id)
    return {"minimized": monitor.state.toggle_minimized()}


@app.get("/violations/{session_id}")
async def get_violations(session_id: str):
    """Get all violations accepted in a session."""
    monitor = get_session(session_id)
    violations = [v.to_wire() for v in monitor.state.violations]

    return {
        "session_id": session_id,
        "form_id": monitor.form_id,
        "total_violations": len(violations),
        "violations": violations,
    }


@app.websocket("/ws/{session_id}")
async def websocket_endpoint(websocket: WebSocket, session_id: str):
    """Real-time violation push; also accepts visibility events from the page."""
    await websocket.accept()

    if session_id not in monitoring_sessions:
        await websocket.send_json({"type": "error", "message": "Monitoring session not found"})
        await websocket.close()
        return

    websocket_connections.setdefault(session_id, set()).add(websocket)
    logger.debug(f"WebSocket connected for session {session_id}")

    try:
        await websocket.send_json({
            "type": "connected",
            "session_id": session_id,
            "message": "Connected to proctoring monitor",
        })

        while True:
            try:
                text = await asyncio.wait_for(websocket.receive_text(), timeout=30.0)
            except asyncio.TimeoutError:
                # keepalive
                await websocket.send_json({
                    "type": "ping",
                    "timestamp": datetime.now().isoformat(),
                })
                continue

            monitor = monitoring_sessions.get(session_id)
            if monitor is None:
                break

            try:
                data = json.loads(text)
            except json.JSONDecodeError:
                # plain-text keepalive
                await websocket.send_json({"type": "pong", "data": text})
                continue

            if not (isinstance(data, dict) and data.get("type") == "visibility"):
                await websocket.send_json({"type": "pong", "data": data})
                continue

            try:
                event = VisibilityEvent.model_validate(data)
            except ValidationError as e:
                await websocket.send_json({
                    "type": "error",
                    "message": f"Invalid visibility event: {e.errors()[0].get('msg', 'invalid value')}",
                })
                continue

            monitor.handle_visibility(event.hidden)
            await websocket.send_json({
                "type": "state",
                "state": monitor.snapshot().model_dump(mode="json"),
            })
    except WebSocketDisconnect:
        logger.debug(f"WebSocket disconnected for session: {session_id}")
    finally:
        connections = websocket_connections.get(session_id)
        if connections is not None:
            connections.discard(websocket)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "active_sessions": len(monitoring_sessions),
        "timestamp": datetime.now().isoformat(),
    }


@app.on_event("shutdown")
async def shutdown_event():
    """Stop every session on shutdown."""
    for session_id in list(monitoring_sessions):
        try:
            await _teardown(session_id)
        except Exception as e:
            logger.error(f"Error stopping session {session_id}: {e}")


def frame_stream_generator(session_id: str):
    """Generate multipart JPEG stream of the session's camera preview."""
    boundary = b"--frame"
    last_seq = 0

    while True:
        monitor = monitoring_sessions.get(session_id)
        if monitor is None or monitor.camera.released:
            break

        if monitor.state.minimized or not monitor.camera.frame_ready(last_seq):
            time.sleep(0.05)
            continue

        last_seq, frame = monitor.camera.get_latest_frame()
        if frame is None:
            time.sleep(0.05)
            continue

        success, buffer = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, 85])
        if not success:
            logger.error(f"Failed to encode frame for session {session_id}")
            time.sleep(0.05)
            continue

        yield boundary + b"\r\nContent-Type: image/jpeg\r\n\r\n" + buffer.tobytes() + b"\r\n"
        time.sleep(0.033)  # ~30 FPS


@app.get("/stream/{session_id}")
async def stream_camera(session_id: str):
    """Live camera preview for a monitor session."""
    get_session(session_id)

    return StreamingResponse(
        frame_stream_generator(session_id),
        media_type="multipart/x-mixed-replace; boundary=frame",
    )


@app.get("/cameras")
async def list_cameras():
    """List available camera indices on this machine."""
    availability = detect_available_cameras()
    available = [idx for idx, ok in availability.items() if ok]
    return {"available_indices": available, "probed": list(availability.keys())}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
