"""
Retrieval Augmenter

Best-effort grounding snippets from an external document-search index
(Azure AI Search REST API). Ranking is the index's business; this module
only builds the query, time-boxes the call and de-duplicates results.

Never fails the request: any timeout, non-2xx or malformed body → [].
"""

import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from decoder.config import Settings
from decoder.schemas import MAX_SNIPPET_CHARS, RetrievalSnippet

log = logging.getLogger("decoder.pipeline")

# ─── Constants ────────────────────────────────────────────────────────────────

RETRIEVAL_TIMEOUT_S = 1.5
MAX_SNIPPETS = 3
QUERY_TEXT_CHARS = 200
FETCH_TOP = 8
DEDUPE_PREFIX_CHARS = 80

_TEXT_FIELDS = ("content", "text", "chunk", "body")


def dedupe_key(text: str) -> str:
    """Lowercase alphanumeric-only prefix."""
    return re.sub(r"[^a-z0-9]", "", (text or "").lower())[:DEDUPE_PREFIX_CHARS]


def build_query(text: str, subject: str = "", syllabus: str = "", level: str = "") -> str:
    tags = " ".join(t for t in (subject, syllabus, level) if t)
    head = re.sub(r"\s+", " ", (text or "")[:QUERY_TEXT_CHARS]).strip()
    return f"{tags} {head}".strip()


def _snippet_from_doc(doc: Dict[str, Any]) -> Optional[RetrievalSnippet]:
    body = next((doc[f] for f in _TEXT_FIELDS if isinstance(doc.get(f), str) and doc[f].strip()), "")
    if not body:
        return None
    return RetrievalSnippet(
        text=re.sub(r"\s+", " ", body).strip()[:MAX_SNIPPET_CHARS],
        name=doc.get("name") or doc.get("title"),
        subject=doc.get("subject"),
        syllabus=doc.get("syllabus"),
    )


def select_snippets(docs: List[Any], limit: int = MAX_SNIPPETS) -> List[RetrievalSnippet]:
    """First ``limit`` usable docs, de-duplicated by text prefix."""
    snippets: List[RetrievalSnippet] = []
    seen = set()
    for doc in docs:
        if len(snippets) >= limit:
            break
        if not isinstance(doc, dict):
            continue
        snippet = _snippet_from_doc(doc)
        if snippet is None:
            continue
        key = dedupe_key(snippet.text)
        if not key or key in seen:
            continue
        seen.add(key)
        snippets.append(snippet)
    return snippets


async def fetch_snippets(
    settings: Settings,
    text: str,
    subject: str = "",
    syllabus: str = "",
    level: str = "",
    timeout: float = RETRIEVAL_TIMEOUT_S,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[RetrievalSnippet]:
    """
    Query the search index for up to 3 grounding snippets.

    Args:
        settings:  search endpoint / index / key (disabled when any is blank)
        text:      sanitized problem text (first 200 chars are used)
        transport: optional httpx transport (tests)

    Returns:
        Up to MAX_SNIPPETS snippets; [] on any failure.
    """
    if not settings.retrieval_enabled:
        return []

    query = build_query(text, subject, syllabus, level)
    if not query:
        return []

    url = f"{settings.search_endpoint}/indexes/{settings.search_index}/docs/search"
    body = {"search": query, "top": FETCH_TOP}
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.post(
                url,
                params={"api-version": settings.search_api_version},
                headers={"api-key": settings.search_key, "Content-Type": "application/json"},
                json=body,
            )
        if response.status_code // 100 != 2:
            log.warning(f"[RETRIEVAL] search returned {response.status_code}")
            return []
        docs = response.json().get("value") or []
    except (httpx.HTTPError, ValueError, AttributeError) as e:
        log.warning(f"[RETRIEVAL] failed: {e}")
        return []

    snippets = select_snippets(docs if isinstance(docs, list) else [])
    log.info(f"[RETRIEVAL] {len(snippets)} snippet(s) for '{query[:60]}'")
    return snippets
