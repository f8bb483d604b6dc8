"""
Proctoring Logger - Logs monitor session events
"""

import logging
from typing import Dict, Any, Optional

logger = logging.getLogger("formproctor.events")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(level: str = "INFO"):
    """Configure root logging for the service."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def log_proctor_event(
    session_id: str,
    event_type: str,
    details: Optional[Dict[str, Any]] = None,
    level: str = "info"
):
    """
    Log a proctoring event.

    Args:
        session_id: Monitor session ID
        event_type: Type of event (session_start, violation, degraded, ...)
        details: Optional event details
        level: Log level (debug, info, warning, error)
    """
    message = f"[PROCTOR] session={session_id} event={event_type}"

    if details:
        detail_str = " ".join(f"{k}={v}" for k, v in details.items())
        message += f" {detail_str}"

    if level == "debug":
        logger.debug(message)
    elif level == "warning":
        logger.warning(message)
    elif level == "error":
        logger.error(message)
    else:
        logger.info(message)


def log_session_start(session_id: str, form_id: str, backend: str):
    log_proctor_event(
        session_id=session_id,
        event_type="session_start",
        details={"form_id": form_id, "backend": backend}
    )


def log_session_end(session_id: str, violations: int, tab_switches: int):
    log_proctor_event(
        session_id=session_id,
        event_type="session_end",
        details={"violations": violations, "tab_switches": tab_switches}
    )


def log_violation(session_id: str, kind: str, confidence: Optional[float]):
    """Log an accepted violation"""
    details: Dict[str, Any] = {"kind": kind}
    if confidence is not None:
        details["confidence"] = round(confidence, 2)
    log_proctor_event(session_id, "violation", details, level="warning")


def log_degraded(session_id: str, reason: str):
    """Log a switch to tab-switch-only monitoring"""
    log_proctor_event(session_id, "degraded", {"reason": reason}, level="warning")
