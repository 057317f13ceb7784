import logging
from typing import Callable

from pydantic import ValidationError

from common.ids import now_ms
from pagechat.models import PendingCommand
from pagechat.storage import KeyValueStore

logger = logging.getLogger(__name__)

PENDING_COMMAND_KEY = "execute_last_input"


class PendingCommandStore:
    """The most recent user query, kept so a later surface can replay it."""

    def __init__(self, kv: KeyValueStore, *, clock: Callable[[], int] = now_ms):
        self.kv = kv
        self._clock = clock

    def record(self, text: str, tab_id: int | None = None, url: str = "") -> PendingCommand | None:
        if not text or not text.strip():
            return None
        command = PendingCommand(text=text, timestamp=self._clock(), tab_id=tab_id, url=url or "")
        self.kv.set(PENDING_COMMAND_KEY, command.to_store())
        logger.debug(f"Recorded pending command for tab {tab_id}")
        return command

    def load(self) -> PendingCommand | None:
        raw = self.kv.get(PENDING_COMMAND_KEY)
        if raw is None:
            return None
        try:
            return PendingCommand.model_validate(raw)
        except ValidationError:
            logger.warning("Discarding malformed pending command record")
            self.clear()
            return None

    def clear(self) -> None:
        self.kv.remove(PENDING_COMMAND_KEY)
