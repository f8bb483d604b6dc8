import asyncio
import logging
from typing import List, Optional, Set

from ..models.schemas import (
    CameraStatus,
    ModelStatus,
    MonitorStatus,
    SessionState,
    Violation,
    ViolationKind,
)

logger = logging.getLogger(__name__)

CAMERA_ERROR_MESSAGE = "Camera access required for proctoring. Please allow camera access and refresh."
MODEL_ERROR_MESSAGE = "Failed to load AI models. Proctoring will continue with tab-switch detection only."


class MonitorState:
    """
    What the proctoring overlay shows: status, counters and the alert banner.

    Two tab-switch counters are kept apart on purpose: tab_switch_count counts
    every hide event, reported_tab_switches counts accepted tab_switch
    violations, which the cooldown can suppress.
    """

    def __init__(self, session_id: str, form_id: str, alert_ttl_ms: int = 4000):
        self.session_id = session_id
        self.form_id = form_id
        self.alert_ttl = alert_ttl_ms / 1000.0

        self.camera_status = CameraStatus.IDLE
        self.model_status = ModelStatus.LOADING
        self.violations: List[Violation] = []
        self.tab_switch_count = 0
        self.reported_tab_switches = 0
        self.current_alert: Optional[str] = None
        self.error_message: Optional[str] = None
        self.minimized = False

        self._alert_token: Optional[object] = None
        self._alert_timers: Set[asyncio.TimerHandle] = set()

    @property
    def status(self) -> MonitorStatus:
        if self.model_status == ModelStatus.LOADING:
            return MonitorStatus.LOADING
        if self.model_status == ModelStatus.READY and self.camera_status == CameraStatus.ACTIVE:
            return MonitorStatus.ACTIVE
        return MonitorStatus.DEGRADED

    def record(self, violation: Violation):
        self.violations.append(violation)
        if violation.type == ViolationKind.TAB_SWITCH:
            self.reported_tab_switches += 1
        self.show_alert(violation.message)

    def show_alert(self, message: str):
        """Set the banner and schedule its expiry."""
        token = object()
        self.current_alert = message
        self._alert_token = token

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, alert will not expire on its own")
            return

        handle = None

        def expire():
            self._alert_timers.discard(handle)
            # a newer alert owns the banner now
            if self._alert_token is token:
                self.current_alert = None
                self._alert_token = None

        handle = loop.call_later(self.alert_ttl, expire)
        self._alert_timers.add(handle)

    def dismiss_alert(self):
        self.current_alert = None
        self._alert_token = None

    def toggle_minimized(self) -> bool:
        self.minimized = not self.minimized
        return self.minimized

    def degrade(self, message: str):
        self.error_message = message

    def snapshot(self) -> SessionState:
        return SessionState(
            session_id=self.session_id,
            form_id=self.form_id,
            status=self.status,
            camera_status=self.camera_status,
            model_status=self.model_status,
            violations=list(self.violations),
            violation_count=len(self.violations),
            tab_switch_count=self.tab_switch_count,
            reported_tab_switches=self.reported_tab_switches,
            current_alert=self.current_alert,
            error_message=self.error_message,
            minimized=self.minimized,
        )

    def close(self):
        """Cancel pending alert expiries."""
        for handle in list(self._alert_timers):
            handle.cancel()
        self._alert_timers.clear()
