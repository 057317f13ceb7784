from pagechat.models import base_domain

BASE_PROMPT = (
    "You are a helpful AI assistant integrated with the user's browser. "
    "Answer questions conversationally and concisely."
)

PAGE_CONTENT_PROMPT = (
    f"{BASE_PROMPT} The content of the web page the user is viewing is included in their "
    "latest message. Answer the user's actual question, use the page as context, and only "
    "summarize the page when asked to."
)

WEB_SEARCH_PROMPT = (
    f"{BASE_PROMPT} You can search the web for information that may help answer the "
    "user's questions. Cite the sources you use."
)

COMBINED_PROMPT = (
    f"{BASE_PROMPT} The content of the web page the user is viewing is included in their "
    "latest message. You can also search the web for additional information; cite the "
    "sources you use."
)

DOMAIN_PROMPTS = {
    "github.com": "You're viewing content from GitHub. Help with code, repositories, and GitHub-related questions.",
    "stackoverflow.com": "You're viewing content from Stack Overflow. Help the user understand the questions, answers, and code snippets on this page.",
    "youtube.com": "You're viewing a YouTube page. Discuss the video content if the transcript is available in the page content.",
    "wikipedia.org": "You're viewing a Wikipedia article. Summarize or explain the information on this page when asked.",
    "docs.google.com": "You're viewing a Google Docs page. Help with the document content and offer suggestions or explanations.",
}


def _domain_hint(url: str | None) -> str | None:
    domain = base_domain(url)
    for known, hint in DOMAIN_PROMPTS.items():
        if domain == known or domain.endswith(f".{known}"):
            return hint
    return None


def system_prompt_for(url: str | None, *, page_content: bool, web_search: bool) -> str:
    if page_content and web_search:
        prompt = COMBINED_PROMPT
    elif page_content:
        prompt = PAGE_CONTENT_PROMPT
    elif web_search:
        prompt = WEB_SEARCH_PROMPT
    else:
        prompt = BASE_PROMPT
    hint = _domain_hint(url)
    return f"{prompt} {hint}" if hint else prompt


def page_content_suffix(page_content: str, *, url: str | None = None, title: str | None = None) -> str:
    header = "CURRENT WEBPAGE"
    if title:
        header += f"\nTitle: {title}"
    if url:
        header += f"\nURL: {url}"
    return f"\n\n---\n{header}\n\nWEBPAGE CONTENT:\n{page_content}"
