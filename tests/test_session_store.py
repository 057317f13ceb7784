import pytest

from pagechat.errors import NotFoundError, PreconditionError
from pagechat.models import Message, assistant_message, user_message
from pagechat.sessions import SessionStore
from pagechat.sessions.keys import SESSION_INDEX_KEY, canonical_history_key, draft_key


@pytest.fixture
def store(kv, clock):
    return SessionStore(kv, clock=clock)


def _roles_and_content(messages):
    return [(m.role, m.content) for m in messages]


class TestCreateAndGet:
    def test_create_session_writes_record_and_summary(self, store, kv):
        session = store.create_session("https://a.com", "A")

        assert session.page_load_id.startswith("pageload_")
        assert store.get_session(session.page_load_id) == session
        index = kv.get(SESSION_INDEX_KEY)
        assert [e["pageLoadId"] for e in index] == [session.page_load_id]
        assert index[0]["messageCount"] == 0

    def test_create_requires_url(self, store):
        with pytest.raises(PreconditionError):
            store.create_session("")

    def test_title_defaults_from_url(self, store):
        session = store.create_session("https://example.com/docs/page")
        assert session.title == "example.com/docs/page"

    def test_options_applied_but_identity_fields_ignored(self, store):
        session = store.create_session(
            "https://a.com",
            "A",
            {"modelName": "gpt-4o", "isWebSearchEnabled": True, "pageLoadId": "hijack"},
        )
        assert session.model_name == "gpt-4o"
        assert session.is_web_search_enabled is True
        assert session.page_load_id != "hijack"

    def test_get_absent_is_idempotent(self, store, kv):
        before = kv.keys()
        assert store.get_session("pageload_missing") is None
        assert store.get_session("pageload_missing") is None
        assert kv.keys() == before

    def test_records_persist_camel_case(self, store, kv):
        session = store.create_session("https://a.com", "A")
        raw = kv.get(session.page_load_id)
        assert "lastUpdated" in raw
        assert "isPageScrapingEnabled" in raw


class TestAppend:
    def test_scenario_two_turns(self, store):
        session = store.create_session("https://a.com", "A")
        store.append_message(session.page_load_id, user_message("hi"))
        store.append_message(session.page_load_id, assistant_message("hello"))

        loaded = store.get_session(session.page_load_id)
        assert _roles_and_content(loaded.messages) == [("user", "hi"), ("assistant", "hello")]
        summary = store.list_sessions()[0]
        assert summary.page_load_id == session.page_load_id
        assert summary.message_count == 2
        assert summary.last_message_preview == "hi"

    def test_append_adds_exactly_one_message_at_the_end(self, store):
        session = store.create_session("https://a.com")
        for text in ["one", "two", "three"]:
            before = len(store.get_session(session.page_load_id).messages)
            message = user_message(text)
            store.append_message(session.page_load_id, message)
            after = store.get_session(session.page_load_id).messages
            assert len(after) == before + 1
            assert after[-1] == message

    def test_append_mirrors_canonical_history(self, store, kv):
        session = store.create_session("https://www.a.com/page")
        store.append_message(session.page_load_id, user_message("hi"))
        history = kv.get(canonical_history_key(session.url, session.page_load_id))
        assert [m["content"] for m in history] == ["hi"]
        assert canonical_history_key(session.url, session.page_load_id) == (
            f"chat_history_a.com_{session.page_load_id}"
        )

    def test_last_updated_strictly_increases(self, store):
        session = store.create_session("https://a.com")
        first = store.append_message(session.page_load_id, user_message("a"))
        second = store.append_message(session.page_load_id, user_message("b"))
        assert session.last_updated < first.last_updated < second.last_updated

    def test_append_accepts_dict_messages(self, store):
        session = store.create_session("https://a.com")
        updated = store.append_message(
            session.page_load_id, {"role": "user", "content": "x", "timestamp": "2024-01-01T00:00:00Z"}
        )
        assert updated.messages[0].timestamp == 1704067200000

    def test_preview_truncated(self, store):
        session = store.create_session("https://a.com")
        store.append_message(session.page_load_id, user_message("x" * 80))
        assert store.list_sessions()[0].last_message_preview == "x" * 50 + "..."


class TestUpdate:
    def test_upsert_creates_missing_record_and_summary(self, store):
        session = store.update_session("pageload_1_abc", {"url": "https://b.com", "title": "B"})
        assert session.url == "https://b.com"
        assert store.get_session("pageload_1_abc") is not None
        assert [s.page_load_id for s in store.list_sessions()] == ["pageload_1_abc"]

    def test_strict_update_raises_not_found(self, store):
        with pytest.raises(NotFoundError) as exc:
            store.update_session("pageload_nope", {"title": "x"}, strict=True)
        assert exc.value.page_load_id == "pageload_nope"
        assert store.get_session("pageload_nope") is None

    def test_upsert_rejects_ids_the_index_cannot_recover(self, store, kv):
        with pytest.raises(PreconditionError):
            store.update_session("custom-id", {"url": "https://a.com"})
        assert not kv.contains("custom-id")
        assert store.list_sessions() == []

    def test_partial_merge_keeps_other_fields(self, store):
        session = store.create_session("https://a.com", "A", {"modelName": "m1"})
        updated = store.update_session(session.page_load_id, {"temperature": 0.9})
        assert updated.model_name == "m1"
        assert updated.temperature == 0.9
        assert updated.title == "A"

    def test_identity_fields_are_immutable(self, store):
        session = store.create_session("https://a.com")
        updated = store.update_session(session.page_load_id, {"created": 1, "pageLoadId": "other"})
        assert updated.created == session.created
        assert updated.page_load_id == session.page_load_id

    def test_messages_cannot_be_removed(self, store):
        session = store.create_session("https://a.com")
        store.append_message(session.page_load_id, user_message("a"))
        with pytest.raises(PreconditionError):
            store.update_session(session.page_load_id, {"messages": []})

    def test_messages_cannot_be_rewritten(self, store):
        session = store.create_session("https://a.com")
        store.append_message(session.page_load_id, user_message("a"))
        with pytest.raises(PreconditionError):
            store.update_session(
                session.page_load_id, {"messages": [{"role": "user", "content": "changed"}]}
            )


class TestIndex:
    def test_index_sorted_by_last_updated(self, store, clock):
        a = store.create_session("https://a.com")
        clock.advance(10)
        b = store.create_session("https://b.com")
        clock.advance(10)
        store.append_message(a.page_load_id, user_message("bump"))

        assert [s.page_load_id for s in store.list_sessions()] == [a.page_load_id, b.page_load_id]

    def test_one_entry_per_session_after_many_writes(self, store, clock, kv):
        ids = []
        for i in range(3):
            clock.advance(5)
            ids.append(store.create_session(f"https://site{i}.com").page_load_id)
        for page_load_id in ids * 2:
            clock.advance(5)
            store.append_message(page_load_id, user_message("x"))
        store.delete_session(ids[1])

        index = kv.get(SESSION_INDEX_KEY)
        listed = [e["pageLoadId"] for e in index]
        assert sorted(listed) == sorted([ids[0], ids[2]])
        stamps = [e["lastUpdated"] for e in index]
        assert stamps == sorted(stamps, reverse=True)

    def test_domain_filter(self, store):
        store.create_session("https://docs.python.org/3/")
        store.create_session("https://github.com/x/y")
        assert [s.domain for s in store.list_sessions("python")] == ["docs.python.org"]

    def test_delete_removes_record_summary_history_and_draft(self, store, kv):
        session = store.create_session("https://a.com")
        store.append_message(session.page_load_id, user_message("hi"))
        kv.set(draft_key(session.page_load_id), "draft")

        store.delete_session(session.page_load_id)

        assert store.get_session(session.page_load_id) is None
        assert store.list_sessions() == []
        assert not kv.contains(canonical_history_key(session.url, session.page_load_id))
        assert not kv.contains(draft_key(session.page_load_id))

    def test_reconcile_repairs_lost_and_orphaned_entries(self, store, kv):
        kept = store.create_session("https://a.com")
        lost = store.create_session("https://b.com")
        # A concurrent writer overwrote the index with a stale copy.
        kv.set(
            SESSION_INDEX_KEY,
            [e for e in kv.get(SESSION_INDEX_KEY) if e["pageLoadId"] != lost.page_load_id]
            + [{"pageLoadId": "pageload_0_gone", "url": "https://gone.com"}],
        )

        assert store.reconcile_index() == {"added": 1, "dropped": 1}
        assert {s.page_load_id for s in store.list_sessions()} == {
            kept.page_load_id,
            lost.page_load_id,
        }

    def test_clear_all(self, store):
        store.create_session("https://a.com")
        store.create_session("https://b.com")
        assert store.clear_all() == 2
        assert store.list_sessions() == []


class TestHistoryKeys:
    def test_legacy_history_migrates_to_canonical_key(self, store, kv):
        url = "https://www.example.com/article"
        page_load_id = "pageload_1700000000000_abcdefg"
        legacy = [
            {"role": "user", "content": "q1", "timestamp": 1},
            {"role": "assistant", "content": "a1", "timestamp": 2},
            {"role": "user", "content": "q2", "timestamp": 3},
        ]
        kv.set(f"chat_history_7_{url}_{page_load_id}", legacy)

        session = store.load_session(page_load_id, url, tab_id=7)

        assert [m.content for m in session.messages] == ["q1", "a1", "q2"]
        canonical = kv.get(canonical_history_key(url, page_load_id))
        assert [m["content"] for m in canonical] == ["q1", "a1", "q2"]

    def test_migrated_history_is_adopted_by_existing_record(self, store, kv):
        url = "https://www.example.com/article"
        session = store.create_session(url)
        page_load_id = session.page_load_id
        kv.set(
            f"chat_history_7_{url}_{page_load_id}",
            [
                {"role": "user", "content": "q1", "timestamp": 1},
                {"role": "assistant", "content": "a1", "timestamp": 2},
                {"role": "user", "content": "q2", "timestamp": 3},
            ],
        )

        loaded = store.load_session(page_load_id, url, tab_id=7)
        assert [m.content for m in loaded.messages] == ["q1", "a1", "q2"]
        assert [m.content for m in store.get_session(page_load_id).messages] == ["q1", "a1", "q2"]

        store.append_message(page_load_id, user_message("q3"))
        assert [m.content for m in store.get_session(page_load_id).messages] == ["q1", "a1", "q2", "q3"]
        assert [m["content"] for m in kv.get(canonical_history_key(url, page_load_id))] == [
            "q1",
            "a1",
            "q2",
            "q3",
        ]
        assert store.list_sessions()[0].message_count == 4

    def test_append_builds_on_longer_canonical_history(self, store, kv):
        url = "https://a.com/x"
        session = store.create_session(url)
        kv.set(
            canonical_history_key(url, session.page_load_id),
            [{"role": "user", "content": "earlier", "timestamp": 1}],
        )

        updated = store.append_message(session.page_load_id, assistant_message("reply"))

        assert [m.content for m in updated.messages] == ["earlier", "reply"]

    def test_oldest_legacy_layout_is_probed_last(self, store, kv):
        url = "https://a.com/x"
        kv.set(f"chat_history_3_{url}", [{"role": "user", "content": "old", "timestamp": 1}])
        messages = store.load_history("pageload_1_aaaaaaa", url, tab_id=3)
        assert [m.content for m in messages] == ["old"]

    def test_canonical_key_wins_over_legacy(self, store, kv):
        url = "https://a.com/x"
        page_load_id = "pageload_1_aaaaaaa"
        kv.set(canonical_history_key(url, page_load_id), [{"role": "user", "content": "new", "timestamp": 2}])
        kv.set(f"chat_history_3_{url}_{page_load_id}", [{"role": "user", "content": "legacy", "timestamp": 1}])
        assert [m.content for m in store.load_history(page_load_id, url, 3)] == ["new"]

    def test_load_session_absent_everywhere(self, store):
        assert store.load_session("pageload_none", "https://a.com", tab_id=1) is None

    def test_malformed_history_entries_skipped(self, store, kv):
        url = "https://a.com"
        page_load_id = "pageload_1_bbbbbbb"
        kv.set(
            canonical_history_key(url, page_load_id),
            [{"role": "robot", "content": "?"}, {"role": "user", "content": "ok", "timestamp": 1}],
        )
        assert [m.content for m in store.load_history(page_load_id, url)] == ["ok"]

    def test_bind_tab(self, store):
        session = store.create_session("https://a.com")
        store.bind_tab(4, "https://a.com", session.page_load_id)
        assert store.get_page_load_id(4, "https://a.com") == session.page_load_id
        assert store.get_page_load_id(5, "https://a.com") is None

    def test_last_user_message_for_domain(self, store, clock):
        session = store.create_session("https://a.com")
        store.append_message(session.page_load_id, user_message("question"))
        store.append_message(session.page_load_id, assistant_message("answer"))
        message = store.last_user_message_for_domain("a.com")
        assert isinstance(message, Message)
        assert message.content == "question"
        assert store.last_user_message_for_domain("b.com") is None
