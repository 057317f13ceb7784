from pagechat.models import base_domain

SESSION_INDEX_KEY = "chat_sessions"
PAGE_LOAD_PREFIX = "page_load_"
HISTORY_PREFIX = "chat_history_"
SESSION_RECORD_PREFIX = "pageload_"


def session_key(page_load_id: str) -> str:
    return page_load_id


def page_load_key(tab_id: int | str, url: str) -> str:
    return f"{PAGE_LOAD_PREFIX}{tab_id}_{url}"


def canonical_history_key(url: str, page_load_id: str) -> str:
    return f"{HISTORY_PREFIX}{base_domain(url)}_{page_load_id}"


def legacy_history_keys(tab_id: int | str | None, url: str, page_load_id: str) -> list[str]:
    """Keys written by older surfaces, newest layout first."""
    if tab_id is None or not url:
        return []
    return [
        f"{HISTORY_PREFIX}{tab_id}_{url}_{page_load_id}",
        f"{HISTORY_PREFIX}{tab_id}_{url}",
    ]


def draft_key(page_load_id: str) -> str:
    return f"input_text_{page_load_id}"
