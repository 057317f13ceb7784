from typing import Any

from pagechat.models import Source

URL_CITATION = "url_citation"


def _citation_fields(annotation: dict[str, Any]) -> dict[str, Any]:
    # Chat completions nest the fields under "url_citation"; the structured format keeps them flat.
    nested = annotation.get(URL_CITATION)
    return nested if isinstance(nested, dict) else annotation


def _slice(text: str, start: Any, end: Any) -> str:
    if not isinstance(start, int) or not isinstance(end, int):
        return ""
    start = max(0, start)
    end = min(len(text), end)
    if end <= start:
        return ""
    return text[start:end].strip()


def citations_from_annotations(text: str, annotations: Any) -> list[Source]:
    if not isinstance(annotations, list):
        return []
    sources: list[Source] = []
    for annotation in annotations:
        if not isinstance(annotation, dict) or annotation.get("type") != URL_CITATION:
            continue
        fields = _citation_fields(annotation)
        url = str(fields.get("url") or "")
        if not url:
            continue
        title = str(fields.get("title") or "")
        snippet = _slice(text, fields.get("start_index"), fields.get("end_index")) or title
        sources.append(Source(url=url, title=title, snippet=snippet))
    return sources


def sources_from_list(items: Any) -> list[Source]:
    """Top-level `sources` arrays, or `annotations` arrays without surrounding text."""
    if not isinstance(items, list):
        return []
    sources: list[Source] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        fields = _citation_fields(item)
        url = str(fields.get("url") or "")
        if not url:
            continue
        sources.append(
            Source(
                url=url,
                title=str(fields.get("title") or ""),
                snippet=str(fields.get("snippet") or fields.get("title") or ""),
            )
        )
    return sources


def merge_sources(*groups: list[Source]) -> list[Source]:
    merged: list[Source] = []
    seen: set[str] = set()
    for group in groups:
        for source in group:
            if source.url in seen:
                continue
            seen.add(source.url)
            merged.append(source)
    return merged
