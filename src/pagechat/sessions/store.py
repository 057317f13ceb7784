import logging
import threading
from typing import Any, Callable

from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from common.ids import generate_page_load_id, now_ms
from pagechat.errors import NotFoundError, PreconditionError, StorageError
from pagechat.models import Message, Session, SessionSummary, hostname, title_from_url
from pagechat.sessions.keys import (
    SESSION_INDEX_KEY,
    SESSION_RECORD_PREFIX,
    canonical_history_key,
    draft_key,
    legacy_history_keys,
    page_load_key,
    session_key,
)
from pagechat.storage import KeyValueStore

logger = logging.getLogger(__name__)

_IMMUTABLE_FIELDS = {"page_load_id", "created"}
_ALIASES = {to_camel(name): name for name in Session.model_fields}


def _normalize_partial(partial: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in partial.items():
        out[_ALIASES.get(key, key)] = value
    return out


def _message_identity(message: Message | dict) -> tuple:
    if isinstance(message, dict):
        message = Message.model_validate(message)
    return (message.role, message.content, message.timestamp)


def _extends(messages: list[Message], history: list[Message]) -> bool:
    return all(_message_identity(a) == _message_identity(b) for a, b in zip(messages, history))


def _parse_messages(raw: Any, *, key: str) -> list[Message]:
    if not isinstance(raw, list):
        logger.warning(f"History at {key} is not a list, ignoring it")
        return []
    messages: list[Message] = []
    for item in raw:
        try:
            messages.append(Message.model_validate(item))
        except ValidationError as e:
            logger.warning(f"Skipping malformed message in {key}: {e.error_count()} errors")
    return messages


class SessionStore:
    """Conversation records plus the summary index, kept consistent without transactions.

    The index is never edited positionally: each write re-derives the session's
    summary from its record and re-sorts the whole list by `lastUpdated`, so two
    writers that interleave still converge on the same ordering.
    """

    def __init__(self, kv: KeyValueStore, *, clock: Callable[[], int] = now_ms):
        self.kv = kv
        self._clock = clock
        self._lock = threading.RLock()

    def _next_timestamp(self, previous: int | None = None) -> int:
        now = self._clock()
        if previous is not None and now <= previous:
            return previous + 1
        return now

    def _read_session(self, page_load_id: str) -> Session | None:
        raw = self.kv.get(session_key(page_load_id))
        if raw is None:
            return None
        try:
            return Session.model_validate(raw)
        except ValidationError as e:
            raise StorageError(f"Session record {page_load_id} is malformed: {e}") from e

    def _write_session(self, session: Session) -> None:
        self.kv.set(session_key(session.page_load_id), session.to_store())

    def _read_index(self) -> list[SessionSummary]:
        raw = self.kv.get(SESSION_INDEX_KEY, [])
        if not isinstance(raw, list):
            logger.warning("Session index is not a list, treating it as empty")
            return []
        summaries: list[SessionSummary] = []
        for entry in raw:
            try:
                summaries.append(SessionSummary.model_validate(entry))
            except ValidationError:
                logger.warning(f"Dropping malformed session index entry: {entry!r}")
        return summaries

    def _write_index(self, summaries: list[SessionSummary]) -> None:
        ordered = sorted(summaries, key=lambda s: s.last_updated, reverse=True)
        self.kv.set(SESSION_INDEX_KEY, [s.to_store() for s in ordered])

    def _sync_summary(self, session: Session) -> None:
        summary = SessionSummary.from_session(session)
        with self._lock:
            index = [s for s in self._read_index() if s.page_load_id != session.page_load_id]
            index.append(summary)
            self._write_index(index)

    def create_session(
        self,
        url: str,
        title: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> Session:
        if not url:
            raise PreconditionError("url is required to create a session")
        settings = {
            k: v for k, v in _normalize_partial(options or {}).items() if k not in _IMMUTABLE_FIELDS
        }
        settings.pop("messages", None)

        with self._lock:
            ts = self._clock()
            page_load_id = generate_page_load_id(ts)
            while self.kv.contains(session_key(page_load_id)):
                page_load_id = generate_page_load_id(ts)

            session = Session.model_validate(
                {
                    **settings,
                    "page_load_id": page_load_id,
                    "url": url,
                    "title": title or title_from_url(url),
                    "messages": [],
                    "created": ts,
                    "last_updated": ts,
                }
            )
            self._write_session(session)
            index = self._read_index()
            index.insert(0, SessionSummary.from_session(session))
            self._write_index(index)

        logger.info(f"Created session {page_load_id} for {url}")
        return session

    def get_session(self, page_load_id: str) -> Session | None:
        return self._read_session(page_load_id)

    def update_session(
        self,
        page_load_id: str,
        partial: dict[str, Any],
        *,
        strict: bool = False,
    ) -> Session:
        """Shallow-merge `partial` onto the record and bump `lastUpdated`.

        Missing records are created from `partial` unless `strict` is set, in
        which case NotFoundError is raised. Created ids must carry the
        `pageload_` prefix so `reconcile_index` can find the record again.
        """
        changes = _normalize_partial(partial)
        with self._lock:
            existing = self._read_session(page_load_id)
            if existing is None:
                if strict:
                    raise NotFoundError(page_load_id)
                if not page_load_id.startswith(SESSION_RECORD_PREFIX):
                    raise PreconditionError(
                        f"Session ids must start with {SESSION_RECORD_PREFIX!r}, got {page_load_id!r}"
                    )
                base: dict[str, Any] = {"created": self._clock()}
                previous = None
                logger.debug(f"Upserting missing session {page_load_id}")
            else:
                base = existing.model_dump()
                previous = existing.last_updated
                for name in _IMMUTABLE_FIELDS:
                    changes.pop(name, None)
                if "messages" in changes:
                    self._check_append_only(existing, changes["messages"])

            merged = {
                **base,
                **changes,
                "page_load_id": page_load_id,
                "last_updated": self._next_timestamp(previous),
            }
            try:
                session = Session.model_validate(merged)
            except ValidationError as e:
                raise PreconditionError(f"Invalid session update for {page_load_id}: {e}") from e
            self._write_session(session)
            self._sync_summary(session)
        return session

    @staticmethod
    def _check_append_only(existing: Session, messages: list) -> None:
        if len(messages) < len(existing.messages):
            raise PreconditionError("Session messages are append-only; entries cannot be removed")
        for old, new in zip(existing.messages, messages):
            if _message_identity(old) != _message_identity(new):
                raise PreconditionError("Session messages are append-only; entries cannot be rewritten")

    def append_message(
        self,
        page_load_id: str,
        message: Message | dict,
        *,
        strict: bool = False,
    ) -> Session:
        if isinstance(message, dict):
            message = Message.model_validate(message)
        with self._lock:
            existing = self._read_session(page_load_id)
            messages = list(existing.messages) if existing else []
            if existing is not None and existing.url:
                history = self.load_history(page_load_id, existing.url)
                if len(history) > len(messages) and _extends(messages, history):
                    messages = history
            session = self.update_session(
                page_load_id, {"messages": [*messages, message]}, strict=strict
            )
            if session.url:
                self.kv.set(
                    canonical_history_key(session.url, page_load_id),
                    [m.to_store() for m in session.messages],
                )
        logger.debug(f"Appended {message.role} message to {page_load_id} ({len(session.messages)} total)")
        return session

    def delete_session(self, page_load_id: str) -> None:
        with self._lock:
            existing = self._read_session(page_load_id)
            keys = [session_key(page_load_id), draft_key(page_load_id)]
            if existing is not None and existing.url:
                keys.append(canonical_history_key(existing.url, page_load_id))
            self.kv.remove(*keys)
            index = [s for s in self._read_index() if s.page_load_id != page_load_id]
            self._write_index(index)
        logger.info(f"Deleted session {page_load_id}")

    def list_sessions(self, domain_filter: str | None = None) -> list[SessionSummary]:
        summaries = self._read_index()
        if domain_filter:
            summaries = [s for s in summaries if domain_filter in hostname(s.url)]
        return sorted(summaries, key=lambda s: s.last_updated, reverse=True)

    def clear_all(self) -> int:
        with self._lock:
            summaries = self._read_index()
            for summary in summaries:
                keys = [session_key(summary.page_load_id), draft_key(summary.page_load_id)]
                if summary.url:
                    keys.append(canonical_history_key(summary.url, summary.page_load_id))
                self.kv.remove(*keys)
            self.kv.set(SESSION_INDEX_KEY, [])
        logger.info(f"Cleared {len(summaries)} sessions")
        return len(summaries)

    def reconcile_index(self) -> dict[str, int]:
        """Repair the index after racing writers: drop orphans, add missing records."""
        with self._lock:
            index = self._read_index()
            record_ids = set(self.kv.keys(SESSION_RECORD_PREFIX))
            kept = [s for s in index if self.kv.contains(session_key(s.page_load_id))]
            dropped = len(index) - len(kept)

            seen: set[str] = set()
            deduped: list[SessionSummary] = []
            for summary in sorted(kept, key=lambda s: s.last_updated, reverse=True):
                if summary.page_load_id in seen:
                    continue
                seen.add(summary.page_load_id)
                deduped.append(summary)
            dropped += len(kept) - len(deduped)

            added = 0
            for page_load_id in sorted(record_ids - seen):
                session = self._read_session(page_load_id)
                if session is None:
                    continue
                deduped.append(SessionSummary.from_session(session))
                added += 1
            self._write_index(deduped)

        if added or dropped:
            logger.warning(f"Reconciled session index: added={added} dropped={dropped}")
        return {"added": added, "dropped": dropped}

    def bind_tab(self, tab_id: int | str, url: str, page_load_id: str) -> None:
        self.kv.set(page_load_key(tab_id, url), page_load_id)

    def get_page_load_id(self, tab_id: int | str, url: str) -> str | None:
        return self.kv.get(page_load_key(tab_id, url))

    def load_history(
        self,
        page_load_id: str,
        url: str,
        tab_id: int | str | None = None,
    ) -> list[Message]:
        canonical = canonical_history_key(url, page_load_id)
        raw = self.kv.get(canonical)
        if raw is not None:
            return _parse_messages(raw, key=canonical)

        for key in legacy_history_keys(tab_id, url, page_load_id):
            raw = self.kv.get(key)
            if not raw:
                continue
            messages = _parse_messages(raw, key=key)
            if not messages:
                continue
            self.kv.set(canonical, [m.to_store() for m in messages])
            logger.info(f"Migrated {len(messages)} messages from legacy key {key} to {canonical}")
            return messages
        return []

    def load_session(
        self,
        page_load_id: str,
        url: str | None = None,
        tab_id: int | str | None = None,
    ) -> Session | None:
        """Session record combined with whichever history key holds its messages."""
        record = self._read_session(page_load_id)
        url = url or (record.url if record else "")
        history = self.load_history(page_load_id, url, tab_id) if url else []

        if record is None:
            if not history:
                return None
            return Session(
                page_load_id=page_load_id,
                url=url,
                title=title_from_url(url),
                messages=history,
                created=history[0].timestamp,
                last_updated=history[-1].timestamp,
            )
        if len(history) > len(record.messages):
            if _extends(record.messages, history):
                logger.info(f"Adopting {len(history)} migrated messages into session {page_load_id}")
                return self.update_session(page_load_id, {"messages": history})
            logger.warning(f"History for {page_load_id} diverges from its record; keeping the record")
        return record

    def last_user_message_for_domain(self, domain: str) -> Message | None:
        for summary in self.list_sessions(domain_filter=domain):
            session = self._read_session(summary.page_load_id)
            if session is None:
                continue
            return session.last_user_message()
        return None
