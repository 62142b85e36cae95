from __future__ import annotations

import logging
import time
from typing import Any, List, Optional, Protocol

import httpx

from chat_service.core.context import SearchResult
from chat_service.core.errors import RetrievalFailure
from chat_service.core.metrics import metrics
from chat_service.core.settings import SETTINGS

logger = logging.getLogger(__name__)


class SearchClient(Protocol):
    async def search_with_permission(self, query: str, user_id: str, top_k: int) -> List[SearchResult]: ...


def _to_result(item: Any) -> Optional[SearchResult]:
    if not isinstance(item, dict):
        return None
    content = item.get("content")
    if not isinstance(content, str):
        content = item.get("text_content")
    if not isinstance(content, str):
        return None
    source = item.get("source") or item.get("file_name")
    try:
        score = float(item.get("score") or 0.0)
    except (TypeError, ValueError):
        score = 0.0
    return SearchResult(content=content, source=str(source) if source else None, score=score)


class HttpSearchClient:
    def __init__(self, base_url: str | None = None, timeout_sec: float | None = None) -> None:
        self._base_url = (base_url or SETTINGS.search_url).rstrip("/")
        self._timeout_sec = timeout_sec if timeout_sec is not None else SETTINGS.search_timeout_sec

    async def search_with_permission(self, query: str, user_id: str, top_k: int) -> List[SearchResult]:
        payload = {"query": query, "user_id": user_id, "top_k": top_k}
        started = time.perf_counter()
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(f"{self._base_url}/search", json=payload, timeout=self._timeout_sec)
                response.raise_for_status()
                data = response.json()
        except Exception as exc:
            metrics.inc("chat_search_total", {"result": "error"})
            raise RetrievalFailure(f"search failed: {exc}", cause=exc) from exc

        items = data.get("results") if isinstance(data, dict) else data
        if not isinstance(items, list):
            metrics.inc("chat_search_total", {"result": "invalid"})
            raise RetrievalFailure("search response has no result list")
        results = [result for result in (_to_result(item) for item in items) if result is not None]
        metrics.inc("chat_search_total", {"result": "ok"})
        metrics.observe("chat_search_latency_ms", (time.perf_counter() - started) * 1000)
        logger.debug("search user_id=%s top_k=%s results=%s", user_id, top_k, len(results))
        return results[:top_k]
