from datetime import datetime
from enum import Enum
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from common.ids import generate_message_id, now_ms

PREVIEW_LENGTH = 50


def _coerce_timestamp(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            pass
        try:
            return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000)
        except ValueError:
            return value
    if isinstance(value, float):
        return int(value)
    return value


class _Record(BaseModel):
    """Persisted with camelCase keys, readable from either spelling."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, protected_namespaces=())

    def to_store(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Source(_Record):
    url: str = ""
    title: str = ""
    snippet: str = ""


class MessageMetadata(_Record):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    sources: list[Source] | None = None
    web_search_in_progress: bool | None = None
    error: bool = False


class Message(_Record):
    role: Literal["user", "assistant", "system"]
    content: str
    timestamp: int = Field(default_factory=now_ms)
    id: str | None = None
    metadata: MessageMetadata | None = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def normalize_timestamp(cls, value: Any) -> Any:
        return _coerce_timestamp(value)

    @property
    def is_error(self) -> bool:
        return bool(self.metadata and self.metadata.error)


def create_message(
    role: str,
    content: str,
    metadata: MessageMetadata | dict | None = None,
) -> Message:
    if not content or not isinstance(content, str):
        raise ValueError("Message content must be a non-empty string")
    ts = now_ms()
    if isinstance(metadata, dict):
        metadata = MessageMetadata.model_validate(metadata)
    return Message(role=role, content=content, timestamp=ts, id=generate_message_id(ts), metadata=metadata)


def user_message(content: str) -> Message:
    return create_message("user", content)


def assistant_message(content: str, metadata: MessageMetadata | dict | None = None) -> Message:
    return create_message("assistant", content, metadata)


def hostname(url: str | None) -> str:
    if not url:
        return ""
    try:
        return urlparse(url).hostname or ""
    except ValueError:
        return ""


def base_domain(url: str | None) -> str:
    """Hostname without a leading `www.`; bare domain-like strings pass through."""
    if not url:
        return "unknown-domain"
    if "://" not in url:
        if "." in url and " " not in url:
            return url
        return "invalid-url-format"
    host = hostname(url)
    if not host:
        return "parse-error"
    return host[4:] if host.startswith("www.") else host


def title_from_url(url: str) -> str:
    host = hostname(url)
    path = urlparse(url).path.strip("/") if host else ""
    title = f"{host}/{path}" if path else host or url
    return title[:PREVIEW_LENGTH]


class Session(_Record):
    page_load_id: str
    url: str = ""
    title: str = ""
    messages: list[Message] = Field(default_factory=list)
    created: int = Field(default_factory=now_ms)
    last_updated: int = Field(default_factory=now_ms)
    model_name: str | None = None
    temperature: float | None = None
    is_web_search_enabled: bool = False
    is_page_scraping_enabled: bool = True

    @property
    def domain(self) -> str:
        return hostname(self.url)

    def last_user_message(self) -> Message | None:
        for message in reversed(self.messages):
            if message.role == "user":
                return message
        return None


class SessionSummary(_Record):
    page_load_id: str
    url: str = ""
    title: str = ""
    domain: str = ""
    last_updated: int = 0
    created: int = 0
    message_count: int = 0
    last_message_preview: str = ""

    @classmethod
    def from_session(cls, session: Session) -> "SessionSummary":
        preview = ""
        last_user = session.last_user_message()
        if last_user is not None:
            preview = last_user.content
            if len(preview) > PREVIEW_LENGTH:
                preview = f"{preview[:PREVIEW_LENGTH]}..."
        return cls(
            page_load_id=session.page_load_id,
            url=session.url,
            title=session.title,
            domain=session.domain,
            last_updated=session.last_updated,
            created=session.created,
            message_count=len(session.messages),
            last_message_preview=preview,
        )


class TriggerMode(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"
    DISABLED = "disabled"

    @classmethod
    def parse(cls, value: "str | TriggerMode | None") -> "TriggerMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.MANUAL


class KeyState(_Record):
    pressed: bool = False
    pending: bool = False
    timestamp: int = 0


class PendingCommand(_Record):
    text: str
    timestamp: int = Field(default_factory=now_ms)
    tab_id: int | None = None
    url: str = ""

    @field_validator("timestamp", mode="before")
    @classmethod
    def normalize_timestamp(cls, value: Any) -> Any:
        return _coerce_timestamp(value)

    def age_ms(self, now: int | None = None) -> int:
        return (now_ms() if now is None else now) - self.timestamp
