from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, TypeAlias


@dataclass(frozen=True, slots=True)
class RequestStartEvent:
    wire_format: str
    model: str
    round: int


@dataclass(frozen=True, slots=True)
class ToolCallEvent:
    tool_call_id: str
    tool_name: str
    args: dict


@dataclass(frozen=True, slots=True)
class ToolResultEvent:
    tool_call_id: str
    tool_name: str
    result: dict


@dataclass(frozen=True, slots=True)
class AssistantMessageEvent:
    content: str
    sources: int = 0


@dataclass(frozen=True, slots=True)
class TriggerDecisionEvent:
    tab_id: int | None
    mode: str
    modifier_held: bool
    execute: bool
    reason: str


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    message: str
    source: str | None = None


Event: TypeAlias = (
    RequestStartEvent
    | ToolCallEvent
    | ToolResultEvent
    | AssistantMessageEvent
    | TriggerDecisionEvent
    | ErrorEvent
)
EventCallback: TypeAlias = Callable[[Event], None] | None


class EventEmitter:
    def __init__(self, callback: EventCallback = None):
        self._callback = callback

    def emit(self, event: Event) -> None:
        if self._callback is not None:
            self._callback(event)
