import logging
import threading

logger = logging.getLogger(__name__)

CHANNELS = ("page", "surface", "background")


class ModifierFusion:
    """First-report-wins latch over the three modifier observation channels.

    Later reports are ignored, so one flow always sees the same value however
    many times it asks.
    """

    def __init__(self, wait_seconds: float = 0.3):
        self.wait_seconds = wait_seconds
        self._lock = threading.Lock()
        self._reported = threading.Event()
        self._held = False
        self._channel: str | None = None

    def report(self, channel: str, held: bool) -> bool:
        if channel not in CHANNELS:
            raise ValueError(f"Unknown modifier channel: {channel}")
        with self._lock:
            if self._reported.is_set():
                return False
            self._held = bool(held)
            self._channel = channel
            self._reported.set()
        logger.debug(f"Modifier state {held} latched from {channel}")
        return True

    @property
    def channel(self) -> str | None:
        return self._channel

    def resolve(self, timeout: float | None = None) -> bool:
        """Wait up to `timeout` for the first report; no report means not held."""
        wait = self.wait_seconds if timeout is None else timeout
        if not self._reported.wait(wait):
            logger.debug("No modifier report arrived in time; treating as not held")
            return False
        return self._held
