"""Typed commands exchanged between surfaces.

Wire shape: `{"type" | "action": str, "data"?: {...}}` in, `{"success": bool,
"data"?: ..., "error"?: str}` out. Command names are accepted in snake_case or
the camelCase spelling older surfaces send.
"""

import re
from typing import Annotated, Any, Literal, Union, get_args

from pydantic import ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from pagechat.errors import PreconditionError
from pagechat.models import _Record

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


class Command(_Record):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Ping(Command):
    type: Literal["ping"] = "ping"


class SendUserMessage(Command):
    type: Literal["send_user_message"] = "send_user_message"
    text: str
    tab_id: int
    url: str
    title: str = ""
    page_load_id: str | None = None


class CreateChatSession(Command):
    type: Literal["create_chat_session"] = "create_chat_session"
    url: str
    title: str = ""
    tab_id: int | None = None


class GetChatSession(Command):
    type: Literal["get_chat_session"] = "get_chat_session"
    page_load_id: str | None = None
    tab_id: int | None = None
    url: str | None = None


class ListSessions(Command):
    type: Literal["list_sessions"] = "list_sessions"
    domain: str | None = None


class DeleteSession(Command):
    type: Literal["delete_session"] = "delete_session"
    page_load_id: str


class GetSettings(Command):
    type: Literal["get_settings"] = "get_settings"


class UpdateSettings(Command):
    type: Literal["update_settings"] = "update_settings"
    changes: dict[str, Any]


class SetApiKey(Command):
    type: Literal["set_api_key"] = "set_api_key"
    api_key: str


class GetApiKey(Command):
    type: Literal["get_api_key"] = "get_api_key"


class CtrlKeyState(Command):
    type: Literal["ctrl_key_state"] = "ctrl_key_state"
    tab_id: int
    pressed: bool
    channel: Literal["page", "surface", "background"] = "page"


class GetCtrlKeyState(Command):
    type: Literal["get_ctrl_key_state"] = "get_ctrl_key_state"
    tab_id: int


class RegisterPopup(Command):
    type: Literal["register_popup"] = "register_popup"
    instance_id: str


class CheckCtrlClick(Command):
    """Surface startup: decide whether to replay the stored query."""

    type: Literal["check_ctrl_click"] = "check_ctrl_click"
    tab_id: int
    modifier_held: bool | None = None


class SaveDraft(Command):
    type: Literal["save_draft"] = "save_draft"
    page_load_id: str
    text: str


class GetDraft(Command):
    type: Literal["get_draft"] = "get_draft"
    page_load_id: str


class TabClosed(Command):
    type: Literal["tab_closed"] = "tab_closed"
    tab_id: int


AnyCommand = Annotated[
    Union[
        Ping,
        SendUserMessage,
        CreateChatSession,
        GetChatSession,
        ListSessions,
        DeleteSession,
        GetSettings,
        UpdateSettings,
        SetApiKey,
        GetApiKey,
        CtrlKeyState,
        GetCtrlKeyState,
        RegisterPopup,
        CheckCtrlClick,
        SaveDraft,
        GetDraft,
        TabClosed,
    ],
    Field(discriminator="type"),
]

COMMAND_TYPES: tuple[type[Command], ...] = get_args(get_args(AnyCommand)[0])

_adapter: TypeAdapter[Any] = TypeAdapter(AnyCommand)


def normalize_name(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def parse_command(envelope: dict[str, Any]) -> Command:
    if not isinstance(envelope, dict):
        raise PreconditionError("Envelope must be an object")
    name = envelope.get("type") or envelope.get("action")
    if not isinstance(name, str) or not name:
        raise PreconditionError("Envelope has no type or action")
    data = envelope.get("data") or {}
    if not isinstance(data, dict):
        raise PreconditionError("Envelope data must be an object")
    extras = {k: v for k, v in envelope.items() if k not in ("type", "action", "data")}
    try:
        return _adapter.validate_python({**extras, **data, "type": normalize_name(name)})
    except ValidationError as e:
        raise PreconditionError(f"Invalid {name} envelope: {e.error_count()} error(s): {e.errors()[0]['msg']}") from e


def ok(data: Any = None) -> dict[str, Any]:
    response: dict[str, Any] = {"success": True}
    if data is not None:
        response["data"] = data
    return response


def failure(error: str | Exception) -> dict[str, Any]:
    return {"success": False, "error": str(error)}
