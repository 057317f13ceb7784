from pagechat.trigger.decision import decide, is_stale
from pagechat.trigger.fusion import CHANNELS, ModifierFusion
from pagechat.trigger.keystate import KeyStateRegistry, key_state_key
from pagechat.trigger.machine import TriggerOutcome, TriggerStateMachine
from pagechat.trigger.pending import PENDING_COMMAND_KEY, PendingCommandStore

__all__ = [
    "CHANNELS",
    "KeyStateRegistry",
    "ModifierFusion",
    "PENDING_COMMAND_KEY",
    "PendingCommandStore",
    "TriggerOutcome",
    "TriggerStateMachine",
    "decide",
    "is_stale",
    "key_state_key",
]
