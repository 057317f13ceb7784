from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from common.events import EventCallback
from common.ids import now_ms
from pagechat.collaborators import PageContentProvider, TabInfo, UIRenderer
from pagechat.completion import CompletionClient
from pagechat.config import ChatConfig
from pagechat.envelope import (
    COMMAND_TYPES,
    CheckCtrlClick,
    Command,
    CreateChatSession,
    CtrlKeyState,
    DeleteSession,
    GetApiKey,
    GetChatSession,
    GetCtrlKeyState,
    GetDraft,
    GetSettings,
    ListSessions,
    Ping,
    RegisterPopup,
    SaveDraft,
    SendUserMessage,
    SetApiKey,
    TabClosed,
    UpdateSettings,
    failure,
    ok,
    parse_command,
)
from pagechat.errors import PageChatError, PreconditionError, SendInProgressError
from pagechat.models import Message, PendingCommand, Session, assistant_message, user_message
from pagechat.sessions import SessionStore
from pagechat.sessions.keys import draft_key
from pagechat.settings import SettingsStore
from pagechat.storage import KeyValueStore
from pagechat.surfaces import SurfaceRegistry
from pagechat.timers import Scheduler
from pagechat.trigger import (
    KeyStateRegistry,
    ModifierFusion,
    PendingCommandStore,
    TriggerOutcome,
    TriggerStateMachine,
)

logger = logging.getLogger(__name__)

EMPTY_REPLY = "No response received."


class ChatService:
    """Ties the session store, completion client and trigger together for one client.

    All per-tab and per-surface state is owned here and reached through named
    operations; nothing is kept at module level.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        config: ChatConfig | None = None,
        completion: CompletionClient | None = None,
        page_content: PageContentProvider | None = None,
        renderer: UIRenderer | None = None,
        scheduler: Scheduler | None = None,
        clock: Callable[[], int] = now_ms,
        on_event: EventCallback = None,
    ):
        self.config = config or ChatConfig.from_env()
        self.kv = kv
        self.scheduler = scheduler or Scheduler()
        self.completion = completion or CompletionClient(self.config.completion, on_event=on_event)
        self.page_content = page_content
        self.renderer = renderer
        self.sessions = SessionStore(kv, clock=clock)
        self.settings = SettingsStore(kv)
        self.pending = PendingCommandStore(kv, clock=clock)
        self.keys = KeyStateRegistry(
            kv,
            self.scheduler,
            pending_ttl_seconds=self.config.trigger.pending_ttl_seconds,
            clock=clock,
        )
        self.surfaces = SurfaceRegistry(
            kv,
            self.scheduler,
            liveness_interval_seconds=self.config.store.liveness_interval_seconds,
        )
        self.trigger = TriggerStateMachine(
            self.pending, config=self.config.trigger, clock=clock, on_event=on_event
        )
        self._send_lock = threading.Lock()
        self._drafts: dict[str, str] = {}
        self._drafts_lock = threading.Lock()
        self._fusions: dict[int, ModifierFusion] = {}

        self._handlers: dict[type[Command], Callable[[Any], Any]] = {
            Ping: lambda cmd: {"pong": True},
            SendUserMessage: self._on_send,
            CreateChatSession: self._on_create,
            GetChatSession: self._on_get_session,
            ListSessions: lambda cmd: [s.to_store() for s in self.sessions.list_sessions(cmd.domain)],
            DeleteSession: self._on_delete,
            GetSettings: lambda cmd: self.settings.get().public(),
            UpdateSettings: lambda cmd: self.settings.update(cmd.changes).public(),
            SetApiKey: self._on_set_api_key,
            GetApiKey: lambda cmd: {"hasApiKey": bool(self.settings.get().api_key or self.config.completion.api_key)},
            CtrlKeyState: self._on_ctrl_key_state,
            GetCtrlKeyState: self._on_get_ctrl_key_state,
            RegisterPopup: lambda cmd: {"closed": self.surfaces.register(cmd.instance_id)},
            CheckCtrlClick: self._on_check_ctrl_click,
            SaveDraft: self._on_save_draft,
            GetDraft: lambda cmd: {"text": self.load_draft(cmd.page_load_id)},
            TabClosed: self._on_tab_closed,
        }
        missing = [c.__name__ for c in COMMAND_TYPES if c not in self._handlers]
        if missing:
            raise TypeError(f"No handler registered for commands: {', '.join(missing)}")

    # Sessions

    def open_session(self, tab: TabInfo) -> Session:
        """Session bound to this tab and url, created with current preferences if none exists."""
        page_load_id = self.sessions.get_page_load_id(tab.tab_id, tab.url)
        if page_load_id:
            session = self.sessions.load_session(page_load_id, tab.url, tab.tab_id)
            if session is not None:
                return session
            logger.warning(f"Tab {tab.tab_id} was bound to missing session {page_load_id}")

        prefs = self.settings.get()
        session = self.sessions.create_session(
            tab.url,
            tab.title or None,
            {
                "modelName": prefs.model_name,
                "temperature": prefs.temperature,
                "isWebSearchEnabled": prefs.is_web_search_enabled,
                "isPageScrapingEnabled": prefs.is_page_scraping_enabled,
            },
        )
        self.sessions.bind_tab(tab.tab_id, tab.url, session.page_load_id)
        return session

    def _ensure_record(self, page_load_id: str, tab: TabInfo, session: Session | None) -> Session:
        """Persist a session that so far only exists as migrated history."""
        if session is not None and self.sessions.get_session(page_load_id) is not None:
            return session
        partial: dict[str, Any] = {"url": tab.url, "title": tab.title or (session.title if session else "")}
        if session is not None:
            partial["messages"] = session.messages
            partial["created"] = session.created
        return self.sessions.update_session(page_load_id, partial)

    def _read_page(self, tab: TabInfo) -> str | None:
        if self.page_content is None:
            return None
        try:
            return self.page_content.get_page_content(tab)
        except Exception as e:
            logger.warning(f"Could not read page content for tab {tab.tab_id}: {e}")
            return None

    def send_message(
        self,
        tab: TabInfo,
        text: str,
        *,
        page_load_id: str | None = None,
        record_pending: bool = True,
    ) -> Message:
        """Append the user turn, ask the completion service, append and return its reply.

        Completion failures come back as an assistant message flagged with
        `metadata.error`; storage failures propagate.
        """
        if not text or not text.strip():
            raise PreconditionError("Message text is empty")
        if not self._send_lock.acquire(blocking=False):
            raise SendInProgressError("A message is already being sent")
        try:
            if page_load_id:
                session = self._ensure_record(
                    page_load_id, tab, self.sessions.load_session(page_load_id, tab.url, tab.tab_id)
                )
                self.sessions.bind_tab(tab.tab_id, tab.url, page_load_id)
            else:
                session = self.open_session(tab)
                session = self._ensure_record(session.page_load_id, tab, session)

            session = self.sessions.append_message(session.page_load_id, user_message(text))
            prefs = self.settings.get()
            page = self._read_page(tab) if session.is_page_scraping_enabled else None

            try:
                result = self.completion.complete(
                    session.messages,
                    api_key=prefs.api_key,
                    model=session.model_name or prefs.model_name,
                    temperature=prefs.temperature if session.temperature is None else session.temperature,
                    use_web_search=session.is_web_search_enabled,
                    page_content=page,
                    url=tab.url,
                    title=tab.title or session.title,
                )
                reply = assistant_message(result.content or EMPTY_REPLY, result.metadata)
            except PageChatError as e:
                logger.error(
                    f"Completion failed for {session.page_load_id}: {e}",
                    extra={"page_load_id": session.page_load_id, "tab_id": tab.tab_id},
                )
                reply = assistant_message(f"I encountered an error: {e}", {"error": True})

            session = self.sessions.append_message(session.page_load_id, reply)
            if record_pending:
                self.pending.record(text, tab.tab_id, tab.url)
            if self.renderer is not None:
                self.renderer.render(session.messages)
            return reply
        finally:
            self._send_lock.release()

    @property
    def is_sending(self) -> bool:
        return self._send_lock.locked()

    def delete_session(self, page_load_id: str) -> None:
        self.clear_draft(page_load_id)
        self.sessions.delete_session(page_load_id)

    # Drafts

    def save_draft(self, page_load_id: str, text: str) -> None:
        with self._drafts_lock:
            self._drafts[page_load_id] = text
        self.scheduler.schedule(
            f"draft:{page_load_id}",
            self.config.store.draft_debounce_seconds,
            lambda: self._flush_draft(page_load_id),
        )

    def _flush_draft(self, page_load_id: str) -> None:
        with self._drafts_lock:
            text = self._drafts.pop(page_load_id, None)
        if text is None:
            return
        if text:
            self.kv.set(draft_key(page_load_id), text)
        else:
            self.kv.remove(draft_key(page_load_id))

    def flush_drafts(self) -> int:
        with self._drafts_lock:
            ids = list(self._drafts)
        for page_load_id in ids:
            self.scheduler.cancel(f"draft:{page_load_id}")
            self._flush_draft(page_load_id)
        return len(ids)

    def load_draft(self, page_load_id: str) -> str:
        with self._drafts_lock:
            if page_load_id in self._drafts:
                return self._drafts[page_load_id]
        return self.kv.get(draft_key(page_load_id)) or ""

    def clear_draft(self, page_load_id: str) -> None:
        self.scheduler.cancel(f"draft:{page_load_id}")
        with self._drafts_lock:
            self._drafts.pop(page_load_id, None)
        self.kv.remove(draft_key(page_load_id))

    # Trigger

    def report_modifier(self, tab_id: int, pressed: bool, channel: str = "page") -> None:
        """Record a modifier change; it also feeds any decision already running on the tab."""
        if pressed:
            self.keys.press(tab_id)
        else:
            self.keys.release(tab_id)
        fusion = self._fusions.get(tab_id)
        if fusion is not None:
            fusion.report(channel, pressed)

    def check_trigger(
        self,
        tab_id: int,
        *,
        modifier_held: bool | None = None,
        dispatch: Callable[[PendingCommand], Any] | None = None,
    ) -> TriggerOutcome:
        """Run the replay decision for a surface that just opened on `tab_id`.

        Each run gets a fresh fusion. Presses seen before the surface opened
        only count through the key registry, whose pending flag expires.
        """
        fusion = self._fusions[tab_id] = ModifierFusion(self.config.trigger.fusion_wait_seconds)
        state = self.keys.snapshot(tab_id)
        if state is not None and (state.pressed or state.pending):
            fusion.report("background", True)
        if modifier_held is not None:
            fusion.report("surface", modifier_held)

        prefs = self.settings.get()
        try:
            return self.trigger.run(
                mode=prefs.trigger_mode,
                modifier_held=fusion,
                dispatch=dispatch or (lambda command: self.replay(command, tab_id)),
                tab_id=tab_id,
            )
        finally:
            self._fusions.pop(tab_id, None)
            self.keys.consume(tab_id)

    def replay(self, command: PendingCommand, tab_id: int) -> Message:
        tab = TabInfo(tab_id=command.tab_id if command.tab_id is not None else tab_id, url=command.url)
        logger.info(f"Replaying last query on tab {tab.tab_id}", extra={"tab_id": tab.tab_id})
        return self.send_message(tab, command.text, record_pending=False)

    def forget_tab(self, tab_id: int) -> None:
        self._fusions.pop(tab_id, None)
        self.keys.forget_tab(tab_id)

    # Envelope

    def handle(self, envelope: dict[str, Any]) -> dict[str, Any]:
        try:
            command = parse_command(envelope)
            return ok(self._handlers[type(command)](command))
        except PageChatError as e:
            logger.warning(f"Envelope {envelope.get('type') or envelope.get('action')} failed: {e}")
            return failure(e)

    def _on_send(self, cmd: SendUserMessage) -> dict[str, Any]:
        tab = TabInfo(tab_id=cmd.tab_id, url=cmd.url, title=cmd.title)
        reply = self.send_message(tab, cmd.text, page_load_id=cmd.page_load_id)
        return reply.to_store()

    def _on_create(self, cmd: CreateChatSession) -> dict[str, Any]:
        session = self.sessions.create_session(cmd.url, cmd.title or None)
        if cmd.tab_id is not None:
            self.sessions.bind_tab(cmd.tab_id, cmd.url, session.page_load_id)
        return session.to_store()

    def _on_get_session(self, cmd: GetChatSession) -> dict[str, Any] | None:
        page_load_id = cmd.page_load_id
        if page_load_id is None and cmd.tab_id is not None and cmd.url:
            page_load_id = self.sessions.get_page_load_id(cmd.tab_id, cmd.url)
        if page_load_id is None:
            return None
        session = self.sessions.load_session(page_load_id, cmd.url, cmd.tab_id)
        return session.to_store() if session else None

    def _on_delete(self, cmd: DeleteSession) -> dict[str, Any]:
        self.delete_session(cmd.page_load_id)
        return {"deleted": cmd.page_load_id}

    def _on_set_api_key(self, cmd: SetApiKey) -> dict[str, Any]:
        self.settings.update({"apiKey": cmd.api_key.strip() or None})
        return {"hasApiKey": bool(cmd.api_key.strip())}

    def _on_ctrl_key_state(self, cmd: CtrlKeyState) -> dict[str, Any]:
        self.report_modifier(cmd.tab_id, cmd.pressed, cmd.channel)
        return {"pressed": cmd.pressed}

    def _on_get_ctrl_key_state(self, cmd: GetCtrlKeyState) -> dict[str, Any] | None:
        state = self.keys.snapshot(cmd.tab_id)
        return state.to_store() if state else None

    def _on_check_ctrl_click(self, cmd: CheckCtrlClick) -> dict[str, Any]:
        outcome = self.check_trigger(cmd.tab_id, modifier_held=cmd.modifier_held)
        return {
            "executed": outcome.executed,
            "reason": outcome.reason,
            "text": outcome.command.text if outcome.command else None,
        }

    def _on_save_draft(self, cmd: SaveDraft) -> dict[str, Any]:
        self.save_draft(cmd.page_load_id, cmd.text)
        return {"saved": True}

    def _on_tab_closed(self, cmd: TabClosed) -> dict[str, Any]:
        self.forget_tab(cmd.tab_id)
        return {"forgotten": cmd.tab_id}
