import logging
from typing import Callable

logger = logging.getLogger(__name__)


class VisibilityWatcher:
    """
    Receives page-visibility transitions reported by the respondent's browser.

    Every transition to hidden calls on_hidden; visible transitions are
    ignored. A detached watcher drops all events.
    """

    def __init__(self, on_hidden: Callable[[], None]):
        self.on_hidden = on_hidden
        self.attached = False

    def attach(self):
        self.attached = True

    def detach(self):
        self.attached = False

    def handle(self, hidden: bool) -> bool:
        """Process one transition. Returns True if it counted as a hide event."""
        if not self.attached:
            logger.debug("Visibility event ignored: watcher detached")
            return False
        if not hidden:
            return False

        self.on_hidden()
        return True
