import time
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from ..models.schemas import Violation, ViolationKind

logger = logging.getLogger(__name__)


class ViolationDebouncer:
    """
    Per-kind cooldown gate for violation candidates.

    A candidate is accepted when its kind has never been accepted or the last
    acceptance of that kind is at least cooldown_ms old. Kinds never share a
    window.
    """

    def __init__(
        self,
        cooldown_ms: int = 5000,
        clock: Callable[[], float] = time.time,
        on_accept: Optional[Callable[[Violation], None]] = None,
    ):
        self.cooldown = cooldown_ms / 1000.0
        self.clock = clock
        self.on_accept = on_accept
        self.last_accepted: Dict[ViolationKind, Optional[float]] = {kind: None for kind in ViolationKind}

    def accept(self, kind: ViolationKind, message: str, confidence: Optional[float] = None) -> bool:
        now = self.clock()
        last = self.last_accepted[kind]
        if last is not None and now - last < self.cooldown:
            logger.debug(f"Suppressed {kind.value}: {now - last:.2f}s since last")
            return False

        self.last_accepted[kind] = now
        violation = Violation(
            type=kind,
            timestamp=datetime.fromtimestamp(now, tz=timezone.utc),
            message=message,
            confidence=confidence,
        )
        if self.on_accept is not None:
            self.on_accept(violation)
        return True
