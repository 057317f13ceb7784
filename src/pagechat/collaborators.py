from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from pagechat.models import Message


@dataclass(frozen=True, slots=True)
class TabInfo:
    tab_id: int
    url: str
    title: str = ""


@runtime_checkable
class PageContentProvider(Protocol):
    def get_page_content(self, tab: TabInfo) -> str | None:
        """Visible text of the page loaded in `tab`, or None when it cannot be read."""
        ...


@runtime_checkable
class TabQuery(Protocol):
    def active_tab(self) -> TabInfo | None: ...


@runtime_checkable
class UIRenderer(Protocol):
    def render(self, messages: list[Message]) -> None: ...


class StaticPageContentProvider:
    """Serves page text supplied up front, e.g. from a file given on the command line."""

    def __init__(self, pages: dict[int, str] | None = None, default: str | None = None):
        self.pages = dict(pages or {})
        self.default = default

    def get_page_content(self, tab: TabInfo) -> str | None:
        return self.pages.get(tab.tab_id, self.default)


class StaticTabQuery:
    def __init__(self, tab: TabInfo | None):
        self.tab = tab

    def active_tab(self) -> TabInfo | None:
        return self.tab
