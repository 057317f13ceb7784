import logging
import threading
from typing import Callable

from pydantic import ValidationError

from common.ids import now_ms
from pagechat.config import PENDING_FLAG_TTL_SECONDS
from pagechat.models import KeyState
from pagechat.storage import KeyValueStore
from pagechat.timers import Scheduler

logger = logging.getLogger(__name__)

KEY_STATE_PREFIX = "ctrl_key_state_tab_"


def key_state_key(tab_id: int | str) -> str:
    return f"{KEY_STATE_PREFIX}{tab_id}"


def _expiry_task(tab_id: int | str) -> str:
    return f"pending_expiry:{tab_id}"


class KeyStateRegistry:
    """Sole owner of per-tab modifier-key state.

    State lives in the shared store under `ctrl_key_state_tab_<tabId>` so other
    surfaces can read it, and is only changed through the methods below. The
    `pending` flag expires `pending_ttl_seconds` after a press, through a
    scheduler task and again lazily on read in case the task never ran.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        scheduler: Scheduler,
        *,
        pending_ttl_seconds: float = PENDING_FLAG_TTL_SECONDS,
        clock: Callable[[], int] = now_ms,
    ):
        self.kv = kv
        self.scheduler = scheduler
        self.pending_ttl_ms = int(pending_ttl_seconds * 1000)
        self._pending_ttl_seconds = pending_ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()

    def _read(self, tab_id: int | str) -> KeyState | None:
        raw = self.kv.get(key_state_key(tab_id))
        if raw is None:
            return None
        try:
            return KeyState.model_validate(raw)
        except ValidationError:
            logger.warning(f"Discarding malformed key state for tab {tab_id}")
            self.kv.remove(key_state_key(tab_id))
            return None

    def _write(self, tab_id: int | str, state: KeyState) -> None:
        self.kv.set(key_state_key(tab_id), state.to_store())

    def press(self, tab_id: int | str) -> KeyState:
        state = KeyState(pressed=True, pending=True, timestamp=self._clock())
        with self._lock:
            self._write(tab_id, state)
        self.scheduler.schedule(
            _expiry_task(tab_id), self._pending_ttl_seconds, lambda: self.expire_pending(tab_id)
        )
        logger.debug(f"Modifier pressed on tab {tab_id}")
        return state

    def release(self, tab_id: int | str) -> KeyState | None:
        with self._lock:
            state = self._read(tab_id)
            if state is None:
                return None
            state = state.model_copy(update={"pressed": False})
            self._write(tab_id, state)
        return state

    def expire_pending(self, tab_id: int | str) -> None:
        with self._lock:
            state = self._read(tab_id)
            if state is None or not state.pending:
                return
            self._write(tab_id, state.model_copy(update={"pending": False}))
        logger.debug(f"Pending modifier flag expired for tab {tab_id}")

    def snapshot(self, tab_id: int | str) -> KeyState | None:
        with self._lock:
            state = self._read(tab_id)
            if state is None:
                return None
            if state.pending and self._clock() - state.timestamp > self.pending_ttl_ms:
                state = state.model_copy(update={"pending": False})
                self._write(tab_id, state)
        return state

    def is_held(self, tab_id: int | str) -> bool:
        state = self.snapshot(tab_id)
        return bool(state and (state.pressed or state.pending))

    def consume(self, tab_id: int | str) -> KeyState | None:
        """Read the state once for a decision, then delete it."""
        state = self.snapshot(tab_id)
        self.forget_tab(tab_id)
        return state

    def forget_tab(self, tab_id: int | str) -> None:
        self.scheduler.cancel(_expiry_task(tab_id))
        with self._lock:
            self.kv.remove(key_state_key(tab_id))
