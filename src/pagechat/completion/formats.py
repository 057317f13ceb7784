"""Request/response adapters for the two hosted-completion wire formats."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pagechat.completion.citations import (
    citations_from_annotations,
    merge_sources,
    sources_from_list,
)
from pagechat.models import Message, Source

IN_PROGRESS_STATUSES = {"in_progress", "searching", "queued"}


class MalformedResponseError(ValueError):
    pass


@dataclass(slots=True)
class ParsedResponse:
    content: str
    sources: list[Source] = field(default_factory=list)
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    web_search_in_progress: bool = False
    assistant_message: dict[str, Any] | None = None
    usage: dict[str, int] = field(default_factory=dict)
    model: str = ""


def to_wire_messages(messages: list[Message | dict]) -> list[dict[str, str]]:
    out: list[dict[str, str]] = []
    for message in messages:
        if isinstance(message, Message):
            out.append({"role": message.role, "content": message.content})
        else:
            out.append({"role": str(message["role"]), "content": str(message.get("content") or "")})
    return out


def attach_page_content(messages: list[dict[str, str]], suffix: str) -> list[dict[str, str]]:
    """Suffix only the most recent user message; earlier turns are left untouched."""
    out = [dict(m) for m in messages]
    for message in reversed(out):
        if message["role"] == "user":
            message["content"] = f"{message['content']}{suffix}"
            break
    return out


class StructuredFormat:
    name = "structured"
    endpoint = "/responses"

    def build_request(
        self,
        messages: list[dict[str, str]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
        web_search: bool,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "input": [
                {
                    "role": m["role"],
                    "content": [
                        {
                            "type": "output_text" if m["role"] == "assistant" else "input_text",
                            "text": m["content"],
                        }
                    ],
                }
                for m in messages
            ],
            "temperature": temperature,
            "max_output_tokens": max_tokens,
        }
        if web_search:
            payload["tools"] = [{"type": "web_search_preview"}]
        return payload

    def parse_response(self, data: Any) -> ParsedResponse:
        if not isinstance(data, dict):
            raise MalformedResponseError("Response body is not a JSON object")
        output = data.get("output")
        if output is None and not isinstance(data.get("output_text"), str):
            raise MalformedResponseError("Response has no output")

        texts: list[str] = []
        cited: list[Source] = []
        in_progress = False
        for item in output or []:
            if not isinstance(item, dict):
                continue
            kind = item.get("type")
            if kind == "web_search_call":
                if item.get("status") in IN_PROGRESS_STATUSES:
                    in_progress = True
            elif kind == "message":
                for segment in item.get("content") or []:
                    if not isinstance(segment, dict) or segment.get("type") != "output_text":
                        continue
                    text = str(segment.get("text") or "")
                    texts.append(text)
                    cited.extend(citations_from_annotations(text, segment.get("annotations")))

        content = "".join(texts) if texts else str(data.get("output_text") or "")
        usage = data.get("usage") or {}
        return ParsedResponse(
            content=content.strip(),
            sources=merge_sources(
                cited,
                sources_from_list(data.get("sources")),
                sources_from_list(data.get("annotations")),
            ),
            web_search_in_progress=in_progress,
            usage={
                "prompt_tokens": int(usage.get("input_tokens", 0) or 0),
                "completion_tokens": int(usage.get("output_tokens", 0) or 0),
                "total_tokens": int(usage.get("total_tokens", 0) or 0),
            },
            model=str(data.get("model") or ""),
        )


class LegacyFormat:
    name = "legacy"
    endpoint = "/chat/completions"

    def build_request(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
        tools: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        return payload

    def build_follow_up(
        self,
        messages: list[dict[str, Any]],
        assistant_message: dict[str, Any],
        tool_results: list[dict[str, Any]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> dict[str, Any]:
        # No tools on the follow-up: the model cannot ask for a second round.
        return self.build_request(
            [*messages, assistant_message, *tool_results],
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
        )

    def parse_response(self, data: Any) -> ParsedResponse:
        if not isinstance(data, dict):
            raise MalformedResponseError("Response body is not a JSON object")
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise MalformedResponseError("Response has no choices")
        message = choices[0].get("message")
        if not isinstance(message, dict):
            raise MalformedResponseError("Response choice has no message")

        content = message.get("content")
        content = content if isinstance(content, str) else ""
        tool_calls = [
            tc
            for tc in message.get("tool_calls") or []
            if isinstance(tc, dict) and tc.get("type", "function") == "function" and tc.get("function")
        ]
        usage = data.get("usage") or {}
        return ParsedResponse(
            content=content.strip(),
            sources=merge_sources(
                citations_from_annotations(content, message.get("annotations")),
                sources_from_list(data.get("sources")),
                sources_from_list(data.get("annotations")),
            ),
            tool_calls=tool_calls,
            assistant_message=message,
            usage={
                "prompt_tokens": int(usage.get("prompt_tokens", 0) or 0),
                "completion_tokens": int(usage.get("completion_tokens", 0) or 0),
                "total_tokens": int(usage.get("total_tokens", 0) or 0),
            },
            model=str(data.get("model") or ""),
        )
