import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from common.events import EventCallback, EventEmitter, TriggerDecisionEvent
from common.ids import now_ms
from pagechat.config import TriggerConfig
from pagechat.models import PendingCommand, TriggerMode
from pagechat.trigger.decision import decide, is_stale
from pagechat.trigger.fusion import ModifierFusion
from pagechat.trigger.pending import PendingCommandStore

logger = logging.getLogger(__name__)

VALIDATION_PASSES = 3


@dataclass(frozen=True, slots=True)
class TriggerOutcome:
    executed: bool
    reason: str
    command: PendingCommand | None = None


class TriggerStateMachine:
    """Decides whether a newly opened surface replays the last stored query."""

    def __init__(
        self,
        pending: PendingCommandStore,
        *,
        config: TriggerConfig | None = None,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], None] = time.sleep,
        on_event: EventCallback = None,
    ):
        self.pending = pending
        self.config = config or TriggerConfig()
        self._clock = clock
        self._sleep = sleep
        self.emitter = EventEmitter(on_event)

    @property
    def stale_after_ms(self) -> int:
        return int(self.config.stale_after_seconds * 1000)

    def _check(
        self, mode: TriggerMode, held: bool, expected: PendingCommand
    ) -> tuple[bool, str]:
        current = self.pending.load()
        if current is None or current.timestamp != expected.timestamp or current.text != expected.text:
            return False, "command_changed"
        if is_stale(current, self._clock(), self.stale_after_ms):
            return False, "stale"
        return decide(mode, held)

    def run(
        self,
        *,
        mode: TriggerMode | str | None,
        modifier_held: bool | ModifierFusion,
        dispatch: Callable[[PendingCommand], Any],
        tab_id: int | None = None,
    ) -> TriggerOutcome:
        mode = TriggerMode.parse(mode)
        # One snapshot for the whole flow; later checks never re-read live key state.
        if isinstance(modifier_held, ModifierFusion):
            held = modifier_held.resolve()
        else:
            held = bool(modifier_held)

        command = self.pending.load()
        if command is None:
            return self._finish(TriggerOutcome(False, "no_pending_command"), mode, held, tab_id)

        if not command.text.strip():
            self.pending.clear()
            return self._finish(TriggerOutcome(False, "empty_command"), mode, held, tab_id)

        if is_stale(command, self._clock(), self.stale_after_ms):
            logger.warning(f"Pending command is {command.age_ms(self._clock())}ms old; discarding it")
            self.pending.clear()
            return self._finish(TriggerOutcome(False, "stale", command), mode, held, tab_id)

        execute, reason = False, "no_pending_command"
        for attempt in range(VALIDATION_PASSES):
            if attempt and self.config.dispatch_delay_seconds:
                self._sleep(self.config.dispatch_delay_seconds)
            execute, reason = self._check(mode, held, command)
            if not execute:
                break

        if not execute:
            # auto/manual rejections stay stored for a later manual invocation.
            if reason == "stale" or mode == TriggerMode.DISABLED:
                self.pending.clear()
            return self._finish(TriggerOutcome(False, reason, command), mode, held, tab_id)

        # Cleared before dispatch so a reopened surface cannot run it twice.
        self.pending.clear()
        dispatch(command)
        return self._finish(TriggerOutcome(True, reason, command), mode, held, tab_id)

    def _finish(
        self, outcome: TriggerOutcome, mode: TriggerMode, held: bool, tab_id: int | None
    ) -> TriggerOutcome:
        logger.info(
            f"Trigger decision: mode={mode.value} modifier={held} "
            f"execute={outcome.executed} reason={outcome.reason}"
        )
        self.emitter.emit(
            TriggerDecisionEvent(
                tab_id=tab_id,
                mode=mode.value,
                modifier_held=held,
                execute=outcome.executed,
                reason=outcome.reason,
            )
        )
        return outcome
