import json
import sys
import threading
import types

import httpx
import pytest

from pagechat.collaborators import StaticPageContentProvider, TabInfo
from pagechat.completion import CompletionClient
from pagechat.config import ChatConfig, CompletionConfig, TriggerConfig
from pagechat.errors import PreconditionError, SendInProgressError, ToolExecutionError
from pagechat.sessions.keys import draft_key
from pagechat.service import ChatService
from pagechat.trigger import PENDING_COMMAND_KEY

TAB = TabInfo(tab_id=7, url="https://example.com/post", title="Post")


class FakeCompletionService:
    def __init__(self, reply="Sure.", status=200):
        self.reply = reply
        self.status = status
        self.bodies: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(json.loads(request.content))
        if self.status != 200:
            return httpx.Response(self.status, json={"error": {"message": "rate limited"}})
        return httpx.Response(200, json={"model": "gpt-4.1-nano", "output_text": self.reply})


class RecordingRenderer:
    def __init__(self):
        self.renders = []

    def render(self, messages):
        self.renders.append([m.content for m in messages])


def _config(api_key="sk-test"):
    return ChatConfig(
        completion=CompletionConfig(api_key=api_key, base_url="https://llm.test/v1", wire_format="structured"),
        trigger=TriggerConfig(fusion_wait_seconds=0),
    )


@pytest.fixture
def remote():
    return FakeCompletionService()


@pytest.fixture
def make_service(kv, clock, scheduler):
    def build(remote, *, api_key="sk-test", page_text=None, renderer=None):
        config = _config(api_key)
        client = CompletionClient(
            config.completion, http_client=httpx.Client(transport=httpx.MockTransport(remote))
        )
        provider = StaticPageContentProvider(default=page_text) if page_text else None
        return ChatService(
            kv,
            config=config,
            completion=client,
            page_content=provider,
            renderer=renderer,
            scheduler=scheduler,
            clock=clock,
        )

    return build


class TestSendMessage:
    def test_round_trip_persists_both_turns(self, make_service, remote):
        renderer = RecordingRenderer()
        service = make_service(remote, page_text="PAGE_TEXT", renderer=renderer)

        reply = service.send_message(TAB, "what is this?")

        assert reply.role == "assistant"
        assert reply.content == "Sure."
        session = service.open_session(TAB)
        assert [(m.role, m.content) for m in session.messages] == [
            ("user", "what is this?"),
            ("assistant", "Sure."),
        ]
        assert "PAGE_TEXT" in remote.bodies[0]["input"][-1]["content"][0]["text"]
        assert renderer.renders[-1] == ["what is this?", "Sure."]

    def test_same_tab_and_url_reuses_session(self, make_service, remote):
        service = make_service(remote)
        service.send_message(TAB, "one")
        service.send_message(TAB, "two")
        assert len(service.sessions.list_sessions()) == 1
        assert service.sessions.list_sessions()[0].message_count == 4

    def test_send_after_legacy_migration_keeps_history(self, make_service, remote, kv):
        service = make_service(remote)
        page_load_id = service.open_session(TAB).page_load_id
        kv.set(
            f"chat_history_7_{TAB.url}_{page_load_id}",
            [
                {"role": "user", "content": "q1", "timestamp": 1},
                {"role": "assistant", "content": "a1", "timestamp": 2},
                {"role": "user", "content": "q2", "timestamp": 3},
            ],
        )
        assert len(service.sessions.load_session(page_load_id, TAB.url, 7).messages) == 3

        service.send_message(TAB, "q3", page_load_id=page_load_id)

        sent = [turn["content"][0]["text"] for turn in remote.bodies[0]["input"][1:]]
        assert sent == ["q1", "a1", "q2", "q3"]
        history = service.sessions.get_session(page_load_id).messages
        assert [m.content for m in history] == ["q1", "a1", "q2", "q3", "Sure."]

    def test_page_scraping_disabled_sends_no_page_text(self, make_service, remote):
        service = make_service(remote, page_text="PAGE_TEXT")
        service.settings.update({"isPageScrapingEnabled": False})
        service.send_message(TAB, "hi")
        assert "PAGE_TEXT" not in json.dumps(remote.bodies[0])

    def test_remote_error_becomes_error_message(self, make_service):
        service = make_service(FakeCompletionService(status=429))
        reply = service.send_message(TAB, "hi")
        assert reply.is_error
        assert reply.content.startswith("I encountered an error:")
        assert "rate limited" in reply.content
        stored = service.open_session(TAB).messages
        assert stored[-1].is_error

    def test_missing_api_key_becomes_error_message(self, make_service, remote):
        service = make_service(remote, api_key=None)
        reply = service.send_message(TAB, "hi")
        assert reply.is_error
        assert remote.bodies == []

    def test_empty_text_rejected(self, make_service, remote):
        with pytest.raises(PreconditionError):
            make_service(remote).send_message(TAB, "  ")

    def test_reentrant_send_rejected(self, make_service):
        entered = threading.Event()
        release = threading.Event()

        class SlowRemote(FakeCompletionService):
            def __call__(self, request):
                entered.set()
                release.wait(5)
                return super().__call__(request)

        service = make_service(SlowRemote())
        worker = threading.Thread(target=service.send_message, args=(TAB, "first"))
        worker.start()
        try:
            assert entered.wait(5)
            assert service.is_sending
            with pytest.raises(SendInProgressError):
                service.send_message(TAB, "second")
        finally:
            release.set()
            worker.join(5)
        assert not service.is_sending

    def test_send_records_pending_command(self, make_service, remote, kv):
        service = make_service(remote)
        service.send_message(TAB, "summarize")
        assert kv.get(PENDING_COMMAND_KEY)["text"] == "summarize"
        assert kv.get(PENDING_COMMAND_KEY)["tabId"] == 7


class TestDrafts:
    def test_draft_written_after_debounce(self, make_service, remote, kv, clock, scheduler):
        service = make_service(remote)
        service.save_draft("p1", "hel")
        service.save_draft("p1", "hello")
        assert service.load_draft("p1") == "hello"
        assert not kv.contains(draft_key("p1"))

        clock.advance(2_000)
        scheduler.tick()
        assert kv.get(draft_key("p1")) == "hello"

    def test_flush_and_clear(self, make_service, remote, kv):
        service = make_service(remote)
        service.save_draft("p1", "text")
        assert service.flush_drafts() == 1
        assert kv.get(draft_key("p1")) == "text"
        service.clear_draft("p1")
        assert service.load_draft("p1") == ""


class TestTrigger:
    def test_manual_mode_with_modifier_replays_last_query(self, make_service, remote):
        service = make_service(remote)
        service.send_message(TAB, "summarize")

        outcome = service.check_trigger(7, modifier_held=True)

        assert outcome.executed
        assert len(remote.bodies) == 2
        assert service.sessions.list_sessions()[0].message_count == 4
        # The replay itself is not stored as a new pending command.
        assert service.pending.load() is None

    def test_recent_page_press_wins_over_surface(self, make_service, remote):
        service = make_service(remote)
        service.send_message(TAB, "summarize")
        service.report_modifier(7, True, "page")

        outcome = service.check_trigger(7, modifier_held=False)

        assert outcome.executed
        assert service.keys.snapshot(7) is None

    def test_expired_press_does_not_suppress_auto_replay(self, make_service, remote, clock):
        service = make_service(remote)
        service.settings.update({"triggerMode": "auto"})
        service.report_modifier(7, True)
        service.report_modifier(7, False)
        clock.advance(600_000)
        service.send_message(TAB, "summarize")

        outcome = service.check_trigger(7, modifier_held=False)

        assert outcome.executed
        assert outcome.reason == "auto"

    def test_press_within_pending_window_suppresses_auto_replay(self, make_service, remote, clock):
        service = make_service(remote)
        service.settings.update({"triggerMode": "auto"})
        service.send_message(TAB, "summarize")
        service.report_modifier(7, True)
        service.report_modifier(7, False)
        clock.advance(4_000)

        outcome = service.check_trigger(7, modifier_held=False)

        assert not outcome.executed
        assert outcome.reason == "auto_suppressed_by_modifier"

    def test_each_decision_starts_from_a_fresh_snapshot(self, make_service, remote):
        service = make_service(remote)
        service.send_message(TAB, "first")
        assert service.check_trigger(7, modifier_held=True).executed

        service.send_message(TAB, "second")
        outcome = service.check_trigger(7, modifier_held=False)

        assert not outcome.executed
        assert outcome.reason == "manual_without_modifier"

    def test_manual_mode_without_modifier_keeps_command(self, make_service, remote):
        service = make_service(remote)
        service.send_message(TAB, "summarize")
        outcome = service.check_trigger(7, modifier_held=False)
        assert not outcome.executed
        assert service.pending.load().text == "summarize"


class TestEnvelope:
    def test_unknown_command(self, make_service, remote):
        response = make_service(remote).handle({"type": "launch_rockets"})
        assert response["success"] is False
        assert "error" in response

    def test_ping_accepts_action_key(self, make_service, remote):
        assert make_service(remote).handle({"action": "ping"}) == {"success": True, "data": {"pong": True}}

    def test_send_and_fetch_session(self, make_service, remote):
        service = make_service(remote)
        sent = service.handle(
            {
                "type": "sendUserMessage",
                "data": {"text": "hi", "tabId": 7, "url": TAB.url, "title": TAB.title},
            }
        )
        assert sent["success"]
        assert sent["data"]["content"] == "Sure."

        fetched = service.handle({"type": "get_chat_session", "data": {"tabId": 7, "url": TAB.url}})
        assert [m["content"] for m in fetched["data"]["messages"]] == ["hi", "Sure."]

        listed = service.handle({"type": "list_sessions"})
        page_load_id = listed["data"][0]["pageLoadId"]
        deleted = service.handle({"type": "delete_session", "data": {"pageLoadId": page_load_id}})
        assert deleted["success"]
        assert service.handle({"type": "list_sessions"})["data"] == []

    def test_invalid_payload(self, make_service, remote):
        response = make_service(remote).handle({"type": "send_user_message", "data": {"text": "hi"}})
        assert response["success"] is False

    def test_settings_never_expose_api_key(self, make_service, remote):
        service = make_service(remote)
        service.handle({"type": "set_api_key", "data": {"apiKey": "sk-secret"}})
        settings = service.handle({"type": "get_settings"})["data"]
        assert "apiKey" not in settings
        assert settings["hasApiKey"] is True

    def test_update_settings_clamps_temperature(self, make_service, remote):
        data = make_service(remote).handle(
            {"type": "update_settings", "data": {"changes": {"temperature": 3, "triggerMode": "auto"}}}
        )["data"]
        assert data["temperature"] == 1.0
        assert data["triggerMode"] == "auto"

    def test_register_popup_and_ctrl_state(self, make_service, remote):
        service = make_service(remote)
        service.handle({"type": "register_popup", "data": {"instanceId": "surface_a"}})
        assert service.handle({"type": "register_popup", "data": {"instanceId": "surface_b"}})["data"] == {
            "closed": []
        }
        service.handle({"action": "ctrlKeyState", "tabId": 3, "pressed": True})
        state = service.handle({"type": "get_ctrl_key_state", "data": {"tabId": 3}})["data"]
        assert state["pressed"] is True
        service.handle({"type": "tab_closed", "data": {"tabId": 3}})
        assert service.handle({"type": "get_ctrl_key_state", "data": {"tabId": 3}}).get("data") is None


class TestCompletionFailures:
    def test_failing_web_search_still_produces_reply(self, kv, clock, scheduler, monkeypatch):
        monkeypatch.setenv("TAVILY_API_KEY", "x")

        class UnreachableClient:
            def __init__(self, api_key):
                pass

            def search(self, **kwargs):
                raise ConnectionError("tavily unreachable")

        monkeypatch.setitem(sys.modules, "tavily", types.SimpleNamespace(TavilyClient=UnreachableClient))

        bodies = []
        replies = [
            {
                "choices": [
                    {
                        "message": {
                            "role": "assistant",
                            "content": None,
                            "tool_calls": [
                                {
                                    "id": "call_1",
                                    "type": "function",
                                    "function": {"name": "web_search", "arguments": '{"query": "news"}'},
                                }
                            ],
                        }
                    }
                ]
            },
            {"choices": [{"message": {"role": "assistant", "content": "Search is unavailable right now."}}]},
        ]

        def remote(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=replies[len(bodies) - 1])

        config = ChatConfig(
            completion=CompletionConfig(api_key="sk-test", base_url="https://llm.test/v1", wire_format="legacy"),
            trigger=TriggerConfig(fusion_wait_seconds=0),
        )
        client = CompletionClient(
            config.completion,
            http_client=httpx.Client(transport=httpx.MockTransport(remote)),
            supports_tools=lambda model: True,
        )
        service = ChatService(kv, config=config, completion=client, scheduler=scheduler, clock=clock)
        service.settings.update({"isWebSearchEnabled": True})

        reply = service.send_message(TAB, "any news?")

        assert reply.content == "Search is unavailable right now."
        tool_message = bodies[1]["messages"][-1]
        assert json.loads(tool_message["content"]) == {"error": "Web search failed: tavily unreachable"}
        assert [m.role for m in service.open_session(TAB).messages] == ["user", "assistant"]

    def test_any_completion_error_becomes_error_message(self, kv, clock, scheduler):
        class BrokenCompletion:
            def complete(self, messages, **kwargs):
                raise ToolExecutionError("search backend exploded")

        service = ChatService(
            kv, config=_config(), completion=BrokenCompletion(), scheduler=scheduler, clock=clock
        )
        reply = service.send_message(TAB, "hi")

        assert reply.is_error
        assert "search backend exploded" in reply.content
        assert service.open_session(TAB).messages[-1].is_error
