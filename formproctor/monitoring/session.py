"""
Monitor Session - Runs proctoring for one respondent filling out one form

Owns the camera, the classifier, the cooldown gate, the reporter and the
overlay state. Camera acquisition and model loading run concurrently at
start; the detection loop starts once both have succeeded. Either failing
leaves the session in degraded mode with only tab-switch monitoring.
"""

import time
import uuid
import asyncio
import logging
from typing import Callable, List, Optional

from ..config import settings
from ..models.schemas import CameraStatus, ModelStatus, SessionState, Violation, ViolationKind
from ..utils.logging import log_degraded, log_session_end, log_session_start, log_violation
from .camera import CameraSession
from .classifier import FrameClassifier, create_classifier
from .debouncer import ViolationDebouncer
from .errors import CameraAccessDeniedError
from .reporter import ViolationReporter
from .rules import TAB_SWITCH_MESSAGE, ViolationCandidate, interpret
from .state import CAMERA_ERROR_MESSAGE, MODEL_ERROR_MESSAGE, MonitorState
from .visibility import VisibilityWatcher

logger = logging.getLogger(__name__)


class DetectionLoop:
    """
    Periodic frame classification.

    Ticks run one at a time: the loop awaits each tick before sleeping again,
    and a tick that finds a classification still outstanding is skipped.
    """

    def __init__(
        self,
        camera: CameraSession,
        classifier: FrameClassifier,
        on_candidate: Callable[[ViolationCandidate], None],
        interval_ms: int = 2500,
        threshold: float = 0.5,
    ):
        self.camera = camera
        self.classifier = classifier
        self.on_candidate = on_candidate
        self.interval = interval_ms / 1000.0
        self.threshold = threshold

        self._task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Future] = None
        self._last_seq = 0
        self.ticks = 0
        self.skipped = 0
        self.errors = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval)
            await self.tick()

    async def tick(self) -> List[ViolationCandidate]:
        """Classify the newest frame once and emit its candidates."""
        if self._inflight is not None and not self._inflight.done():
            self.skipped += 1
            return []

        if not self.camera.frame_ready(self._last_seq):
            self.skipped += 1
            return []

        seq, frame = self.camera.get_latest_frame()
        if frame is None:
            self.skipped += 1
            return []
        self._last_seq = seq

        self.ticks += 1
        self._inflight = asyncio.ensure_future(asyncio.to_thread(self.classifier.classify, frame))
        try:
            # shielded so a cancelled loop still lets stop() wait for the worker thread
            analysis = await asyncio.shield(self._inflight)
        except Exception as e:
            self.errors += 1
            logger.error(f"Detection error: {e}")
            return []

        candidates = interpret(analysis, self.threshold)
        for candidate in candidates:
            self.on_candidate(candidate)
        return candidates

    async def stop(self, timeout: float = 2.0):
        """Cancel the repeating task and wait for any classification in flight."""
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        inflight = self._inflight
        if inflight is not None and not inflight.done():
            await asyncio.wait({inflight}, timeout=timeout)

    def when_idle(self, callback: Callable[[], None]):
        """Run callback now, or once an outstanding classification finishes."""
        inflight = self._inflight
        if inflight is None or inflight.done():
            callback()
            return

        def _done(future: asyncio.Future):
            if not future.cancelled() and future.exception() is not None:
                logger.debug(f"Classification finished after stop: {future.exception()}")
            callback()

        inflight.add_done_callback(_done)


class MonitorSession:
    """
    A single proctoring session.

    stop() is the only teardown path: it is idempotent, safe to call before
    start() has finished, and releases whatever startup acquires afterwards.
    """

    def __init__(
        self,
        form_id: str,
        session_id: Optional[str] = None,
        camera: Optional[CameraSession] = None,
        classifier: Optional[FrameClassifier] = None,
        reporter: Optional[ViolationReporter] = None,
        config=None,
        clock: Callable[[], float] = time.time,
    ):
        config = config or settings
        self.id = session_id or f"MON_{uuid.uuid4().hex[:8].upper()}"
        self.form_id = form_id

        self.camera = camera or CameraSession(
            camera_index=config.CAMERA_INDEX,
            width=config.FRAME_WIDTH,
            height=config.FRAME_HEIGHT,
        )
        self.classifier = classifier or create_classifier(config=config)
        self.reporter = reporter or ViolationReporter(
            form_id, config.INGESTION_URL, timeout=config.INGESTION_TIMEOUT
        )

        self.state = MonitorState(self.id, form_id, config.ALERT_TTL_MS)
        self.debouncer = ViolationDebouncer(
            cooldown_ms=config.VIOLATION_COOLDOWN_MS,
            clock=clock,
            on_accept=self._on_violation,
        )
        self.watcher = VisibilityWatcher(on_hidden=self._on_tab_hidden)
        self.detection = DetectionLoop(
            self.camera,
            self.classifier,
            on_candidate=self.submit,
            interval_ms=config.DETECTION_INTERVAL_MS,
            threshold=config.OBJECT_CONFIDENCE_THRESHOLD,
        )

        self._listeners: List[Callable[[Violation], None]] = []
        self._startup_tasks: List[asyncio.Task] = []
        self._started = False
        self._closed = False

    @property
    def is_active(self) -> bool:
        return self._started and not self._closed

    def add_listener(self, listener: Callable[[Violation], None]):
        """Call listener with every accepted violation."""
        self._listeners.append(listener)

    async def start(self):
        if self._started or self._closed:
            return
        self._started = True

        log_session_start(self.id, self.form_id, getattr(self.classifier, "name", "custom"))
        self.watcher.attach()

        loop = asyncio.get_running_loop()
        self._startup_tasks = [
            loop.create_task(self._start_camera()),
            loop.create_task(self._load_model()),
        ]

    async def wait_ready(self):
        """Wait until camera acquisition and model loading have both settled."""
        if self._startup_tasks:
            await asyncio.gather(*self._startup_tasks, return_exceptions=True)

    async def _start_camera(self):
        try:
            await asyncio.to_thread(self.camera.acquire)
        except Exception as e:
            if self._closed:
                return
            logger.error(f"Camera access failed: {e}")
            if isinstance(e, CameraAccessDeniedError):
                self.state.camera_status = CameraStatus.DENIED
            else:
                self.state.camera_status = CameraStatus.ERROR
            self.state.degrade(CAMERA_ERROR_MESSAGE)
            log_degraded(self.id, "camera")
            return

        if self._closed:
            await asyncio.to_thread(self.camera.release)
            return

        self.state.camera_status = CameraStatus.ACTIVE
        self._maybe_start_detection()

    async def _load_model(self):
        try:
            await asyncio.to_thread(self.classifier.load)
        except Exception as e:
            if self._closed:
                return
            logger.error(f"Failed to load detection models: {e}")
            self.state.model_status = ModelStatus.FAILED
            self.state.degrade(MODEL_ERROR_MESSAGE)
            log_degraded(self.id, "model")
            return

        if self._closed:
            # stop() ran while the models were loading
            self.classifier.close()
            return

        self.state.model_status = ModelStatus.READY
        self._maybe_start_detection()

    def _maybe_start_detection(self):
        if self._closed or self.detection.running:
            return
        if self.state.camera_status == CameraStatus.ACTIVE and self.state.model_status == ModelStatus.READY:
            logger.info(f"Detection loop started for session {self.id}")
            self.detection.start()

    def submit(self, candidate: ViolationCandidate) -> bool:
        if self._closed:
            return False
        return self.debouncer.accept(candidate.kind, candidate.message, candidate.confidence)

    def handle_visibility(self, hidden: bool) -> bool:
        return self.watcher.handle(hidden)

    def _on_tab_hidden(self):
        self.state.tab_switch_count += 1
        self.debouncer.accept(ViolationKind.TAB_SWITCH, TAB_SWITCH_MESSAGE)

    def _on_violation(self, violation: Violation):
        self.state.record(violation)
        log_violation(self.id, violation.type.value, violation.confidence)
        self.reporter.report(violation)
        for listener in self._listeners:
            try:
                listener(violation)
            except Exception as e:
                logger.error(f"Violation listener failed: {e}")

    def snapshot(self) -> SessionState:
        return self.state.snapshot()

    async def stop(self, timeout: float = 2.0):
        if self._closed:
            return
        self._closed = True

        self.watcher.detach()
        await self.detection.stop(timeout)
        await asyncio.to_thread(self.camera.release)
        # a worker thread may still be inside the detectors
        self.detection.when_idle(self.classifier.close)
        self.state.close()
        await self.reporter.aclose()

        if self._started:
            log_session_end(self.id, len(self.state.violations), self.state.tab_switch_count)

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()
