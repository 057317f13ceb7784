"""Which UI surface instance is authoritative.

A last-writer-wins registry, not a lock: a new surface records its id and asks
the others to close, so two surfaces can briefly be open together.
"""

import logging
import threading
from typing import Callable

from pagechat.config import SURFACE_LIVENESS_SECONDS
from pagechat.storage import KeyValueStore
from pagechat.timers import Scheduler

logger = logging.getLogger(__name__)

ACTIVE_SURFACE_KEY = "active_popup_id"


class SurfaceRegistry:
    def __init__(
        self,
        kv: KeyValueStore,
        scheduler: Scheduler,
        *,
        liveness_interval_seconds: float = SURFACE_LIVENESS_SECONDS,
    ):
        self.kv = kv
        self.scheduler = scheduler
        self.liveness_interval_seconds = liveness_interval_seconds
        self._close_channels: dict[str, Callable[[], None]] = {}
        self._lock = threading.Lock()

    def active_id(self) -> str | None:
        return self.kv.get(ACTIVE_SURFACE_KEY)

    def is_active(self, instance_id: str) -> bool:
        return self.active_id() == instance_id

    def register(self, instance_id: str, close: Callable[[], None] | None = None) -> list[str]:
        """Make `instance_id` the active surface; returns the ids asked to close."""
        self.kv.set(ACTIVE_SURFACE_KEY, instance_id)
        with self._lock:
            others = {k: v for k, v in self._close_channels.items() if k != instance_id}
            if close is not None:
                self._close_channels[instance_id] = close
            for other in others:
                del self._close_channels[other]

        for other, close_other in others.items():
            logger.info(f"Surface {instance_id} took over; closing {other}")
            self.scheduler.cancel(f"liveness:{other}")
            close_other()
        return sorted(others)

    def unregister(self, instance_id: str) -> None:
        with self._lock:
            self._close_channels.pop(instance_id, None)
        self.scheduler.cancel(f"liveness:{instance_id}")
        if self.is_active(instance_id):
            self.kv.remove(ACTIVE_SURFACE_KEY)

    def watch(self, instance_id: str, on_superseded: Callable[[], None]) -> None:
        """Poll the registry and call `on_superseded` once another surface is active."""
        task = f"liveness:{instance_id}"

        def check() -> None:
            active = self.active_id()
            if active is not None and active != instance_id:
                logger.debug(f"Surface {instance_id} superseded by {active}")
                self.scheduler.cancel(task)
                on_superseded()

        self.scheduler.schedule(task, self.liveness_interval_seconds, check, repeat=True)
