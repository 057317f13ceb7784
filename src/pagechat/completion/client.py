from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from common import llm
from common.events import (
    AssistantMessageEvent,
    ErrorEvent,
    EventCallback,
    EventEmitter,
    RequestStartEvent,
    ToolCallEvent,
    ToolResultEvent,
)
from pagechat.completion.citations import merge_sources, sources_from_list
from pagechat.completion.formats import (
    LegacyFormat,
    MalformedResponseError,
    ParsedResponse,
    StructuredFormat,
    attach_page_content,
    to_wire_messages,
)
from pagechat.completion.prompts import page_content_suffix, system_prompt_for
from pagechat.completion.tools import ToolExecutor, default_tool_executor
from pagechat.config import CompletionConfig
from pagechat.errors import PreconditionError, RemoteError
from pagechat.models import Message, MessageMetadata

logger = logging.getLogger(__name__)

TOOL_FALLBACK_CONTENT = (
    "I searched the web but could not put together an answer from the results. "
    "Please try rephrasing your question."
)


@dataclass(slots=True)
class CompletionResult:
    content: str
    metadata: MessageMetadata
    model: str
    usage: dict[str, float] = field(default_factory=dict)
    rounds: int = 1


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if body.get("message"):
            return str(body["message"])
    return response.text.strip() or response.reason_phrase


def _tool_args(raw: Any) -> dict:
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


class CompletionClient:
    """Adapts a message history to the configured wire format and normalizes the reply.

    At most two requests are made per call: the initial one and, in the legacy
    format, one follow-up carrying local tool results.
    """

    def __init__(
        self,
        config: CompletionConfig | None = None,
        *,
        http_client: httpx.Client | None = None,
        tool_executor: ToolExecutor | None = None,
        supports_tools: Callable[[str], bool] = llm.supports_tools,
        on_event: EventCallback = None,
    ):
        self.config = config or CompletionConfig()
        self._client = http_client
        self._owns_client = http_client is None
        self.tools = tool_executor or default_tool_executor()
        self._supports_tools = supports_tools
        self.emitter = EventEmitter(on_event)
        self.format = StructuredFormat() if self.config.wire_format == "structured" else LegacyFormat()

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=self.config.timeout_seconds,
                headers={"Content-Type": "application/json", "User-Agent": "pagechat/0.1"},
            )
        return self._client

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None

    def __enter__(self) -> "CompletionClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _post(self, payload: dict[str, Any], api_key: str, round_no: int) -> ParsedResponse:
        url = f"{self.config.base_url.rstrip('/')}{self.format.endpoint}"
        self.emitter.emit(
            RequestStartEvent(wire_format=self.format.name, model=payload["model"], round=round_no)
        )
        logger.debug(f"POST {url} (round {round_no}, model {payload['model']})")
        try:
            resp = self.client.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=self.config.timeout_seconds,
            )
        except httpx.RequestError as e:
            raise self._fail(RemoteError(None, str(e) or type(e).__name__)) from e

        if resp.status_code < 200 or resp.status_code >= 300:
            raise self._fail(RemoteError(resp.status_code, _error_message(resp)))
        try:
            data = resp.json()
        except ValueError as e:
            raise self._fail(RemoteError(resp.status_code, "Response body is not valid JSON")) from e
        try:
            return self.format.parse_response(data)
        except MalformedResponseError as e:
            raise self._fail(RemoteError(resp.status_code, str(e))) from e

    def _fail(self, error: RemoteError) -> RemoteError:
        self.emitter.emit(ErrorEvent(message=str(error), source="completion"))
        return error

    def _build_messages(
        self,
        messages: list[Message | dict],
        *,
        url: str | None,
        title: str | None,
        page_content: str | None,
        web_search: bool,
    ) -> list[dict[str, str]]:
        wire = to_wire_messages(messages)
        if page_content:
            limit = self.config.max_page_content_chars
            if limit and len(page_content) > limit:
                logger.debug(f"Truncating page content from {len(page_content)} to {limit} chars")
                page_content = page_content[:limit]
            wire = attach_page_content(wire, page_content_suffix(page_content, url=url, title=title))
        if not wire or wire[0]["role"] != "system":
            prompt = system_prompt_for(url, page_content=bool(page_content), web_search=web_search)
            wire.insert(0, {"role": "system", "content": prompt})
        return wire

    def complete(
        self,
        messages: list[Message | dict],
        *,
        api_key: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        use_web_search: bool = False,
        page_content: str | None = None,
        url: str | None = None,
        title: str | None = None,
    ) -> CompletionResult:
        api_key = api_key or self.config.api_key
        if not api_key:
            raise PreconditionError("API key is required. Set OPENAI_API_KEY or add it in settings.")
        if not messages:
            raise PreconditionError("At least one message is required")

        model = model or self.config.model
        temperature = self.config.temperature if temperature is None else temperature
        wire = self._build_messages(
            messages, url=url, title=title, page_content=page_content, web_search=use_web_search
        )

        if isinstance(self.format, StructuredFormat):
            payload = self.format.build_request(
                wire,
                model=model,
                temperature=temperature,
                max_tokens=self.config.max_tokens,
                web_search=use_web_search,
            )
            parsed = self._post(payload, api_key, 1)
            return self._result(parsed.content, parsed, [parsed], model, rounds=1)

        tools = None
        if use_web_search and self.tools.has_tools():
            if self._supports_tools(model):
                tools = self.tools.schemas
            else:
                logger.info(f"Model {model} does not support tool calls; web search disabled for this turn")

        payload = self.format.build_request(
            wire, model=model, temperature=temperature, max_tokens=self.config.max_tokens, tools=tools
        )
        first = self._post(payload, api_key, 1)
        if not first.tool_calls:
            return self._result(first.content, first, [first], model, rounds=1)

        assistant = {
            "role": "assistant",
            "content": (first.assistant_message or {}).get("content"),
            "tool_calls": [
                {
                    "id": tc.get("id", ""),
                    "type": "function",
                    "function": {
                        "name": tc["function"].get("name", ""),
                        "arguments": tc["function"].get("arguments") or "{}",
                    },
                }
                for tc in first.tool_calls
            ],
        }
        tool_messages: list[dict[str, Any]] = []
        tool_sources = []
        for call in assistant["tool_calls"]:
            name = call["function"]["name"]
            raw_args = call["function"]["arguments"]
            self.emitter.emit(ToolCallEvent(tool_call_id=call["id"], tool_name=name, args=_tool_args(raw_args)))
            result = self.tools.execute(name, raw_args)
            self.emitter.emit(ToolResultEvent(tool_call_id=call["id"], tool_name=name, result=result))
            if "error" in result:
                logger.warning(f"Tool {name} returned an error: {result['error']}")
            tool_sources.extend(sources_from_list(result.get("sources")))
            tool_messages.append(
                {"role": "tool", "tool_call_id": call["id"], "content": json.dumps(result)}
            )

        follow_up = self.format.build_follow_up(
            wire,
            assistant,
            tool_messages,
            model=model,
            temperature=temperature,
            max_tokens=self.config.follow_up_max_tokens,
        )
        second = self._post(follow_up, api_key, 2)
        content = second.content
        if not content:
            if second.tool_calls:
                logger.warning("Follow-up response requested more tools; not issuing another round")
            content = TOOL_FALLBACK_CONTENT
        second.sources = merge_sources(first.sources, tool_sources, second.sources)
        return self._result(content, second, [first, second], model, rounds=2)

    def _result(
        self,
        content: str,
        final: ParsedResponse,
        responses: list[ParsedResponse],
        model: str,
        *,
        rounds: int,
    ) -> CompletionResult:
        prompt_tokens = sum(r.usage.get("prompt_tokens", 0) for r in responses)
        completion_tokens = sum(r.usage.get("completion_tokens", 0) for r in responses)
        resolved_model = final.model or model
        usage = {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
            "cost": llm.estimate_cost(resolved_model, prompt_tokens, completion_tokens),
        }
        metadata = MessageMetadata(
            sources=final.sources or None,
            web_search_in_progress=True if final.web_search_in_progress else None,
        )
        self.emitter.emit(AssistantMessageEvent(content=content, sources=len(final.sources)))
        logger.debug(f"Completion finished in {rounds} round(s), {usage['total_tokens']} tokens")
        return CompletionResult(
            content=content, metadata=metadata, model=resolved_model, usage=usage, rounds=rounds
        )
