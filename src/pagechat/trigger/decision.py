from pagechat.models import PendingCommand, TriggerMode


def decide(mode: TriggerMode | str | None, modifier_held: bool) -> tuple[bool, str]:
    """Return (execute, reason) for one trigger mode and modifier snapshot.

    auto runs unless the modifier is held; manual runs only when it is held;
    disabled never runs. Unknown modes behave like manual.
    """
    mode = TriggerMode.parse(mode)
    if mode == TriggerMode.DISABLED:
        return False, "disabled"
    if mode == TriggerMode.AUTO:
        if modifier_held:
            return False, "auto_suppressed_by_modifier"
        return True, "auto"
    if modifier_held:
        return True, "manual_modifier_held"
    return False, "manual_without_modifier"


def is_stale(command: PendingCommand, now: int, stale_after_ms: int) -> bool:
    return now - command.timestamp > stale_after_ms
