from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Sequence

import httpx

from chat_service.core.errors import GenerationFailure
from chat_service.core.history import HistoryEntry, history_as_messages
from chat_service.core.metrics import metrics
from chat_service.core.settings import SETTINGS

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]
ErrorCallback = Callable[[BaseException], None]

_GROUNDED_PROMPT = (
    "You are a knowledge-base assistant. Answer using the numbered reference passages below "
    "and cite them as [n]. If they do not cover the question, say so.\n\n"
    "Reference passages:\n{context}"
)
_UNGROUNDED_PROMPT = (
    "You are a knowledge-base assistant. No reference passages matched this question; "
    "answer from general knowledge and say that no internal source was found."
)


class GenerationClient(Protocol):
    def stream_response(
        self,
        message: str,
        context: str,
        history: Sequence[HistoryEntry],
        on_chunk: ChunkCallback,
        on_error: ErrorCallback,
    ) -> Optional[asyncio.Task]: ...


def build_messages(message: str, context: str, history: Sequence[HistoryEntry]) -> List[Dict[str, Any]]:
    system = _GROUNDED_PROMPT.format(context=context) if context else _UNGROUNDED_PROMPT
    messages: List[Dict[str, Any]] = [{"role": "system", "content": system}]
    messages.extend(history_as_messages(list(history)))
    messages.append({"role": "user", "content": message})
    return messages


def _extract_delta(event_name: str, data: str) -> Optional[str]:
    try:
        parsed = json.loads(data)
    except ValueError:
        return data if event_name == "delta" else None
    if not isinstance(parsed, dict):
        return None
    delta = parsed.get("delta")
    if isinstance(delta, str):
        return delta
    # OpenAI-compatible providers put the text under choices[0].delta.content
    choices = parsed.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        content = (choices[0].get("delta") or {}).get("content")
        if isinstance(content, str):
            return content
    return None


async def iter_sse_deltas(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    event_name = "message"
    data_lines: List[str] = []
    async for raw_line in lines:
        line = raw_line if raw_line is not None else ""
        if line.startswith("event:"):
            event_name = line.split(":", 1)[1].strip() or "message"
            continue
        if line.startswith("data:"):
            data_lines.append(line.split(":", 1)[1].strip())
            continue
        if line != "":
            continue
        if not data_lines:
            event_name = "message"
            continue
        data = "\n".join(data_lines)
        data_lines = []
        current, event_name = event_name, "message"
        if current == "error":
            raise GenerationFailure(f"provider error: {data}")
        if current == "done" or data == "[DONE]":
            # providers that do signal the end are still finished by quiescence
            logger.debug("provider sent done event")
            continue
        delta = _extract_delta(current, data)
        if delta:
            yield delta


class HttpGenerationClient:
    def __init__(self, base_url: str | None = None, model: str | None = None, timeout_sec: float | None = None) -> None:
        self._base_url = (base_url or SETTINGS.llm_url).rstrip("/")
        self._model = model or SETTINGS.llm_model
        self._timeout_sec = timeout_sec if timeout_sec is not None else SETTINGS.llm_timeout_sec

    def stream_response(
        self,
        message: str,
        context: str,
        history: Sequence[HistoryEntry],
        on_chunk: ChunkCallback,
        on_error: ErrorCallback,
    ) -> asyncio.Task:
        payload = {
            "model": self._model,
            "messages": build_messages(message, context, history),
            "stream": True,
        }
        return asyncio.get_running_loop().create_task(self._run(payload, on_chunk, on_error))

    async def _run(self, payload: Dict[str, Any], on_chunk: ChunkCallback, on_error: ErrorCallback) -> None:
        started = time.perf_counter()
        first_chunk = True
        try:
            async with httpx.AsyncClient() as client:
                async with client.stream(
                    "POST",
                    f"{self._base_url}/v1/generate?stream=true",
                    json=payload,
                    timeout=self._timeout_sec,
                ) as response:
                    status_code = int(response.status_code)
                    if status_code >= 400:
                        raise GenerationFailure(f"http_{status_code}")
                    async for delta in iter_sse_deltas(response.aiter_lines()):
                        if first_chunk:
                            first_chunk = False
                            metrics.observe("chat_first_chunk_latency_ms", (time.perf_counter() - started) * 1000)
                        on_chunk(delta)
        except GenerationFailure as exc:
            metrics.inc("chat_generation_total", {"result": "error"})
            on_error(exc)
            return
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            metrics.inc("chat_generation_total", {"result": "timeout"})
            on_error(GenerationFailure(f"provider unreachable: {exc}", cause=exc))
            return
        except Exception as exc:
            metrics.inc("chat_generation_total", {"result": "error"})
            on_error(GenerationFailure(str(exc), cause=exc))
            return
        metrics.inc("chat_generation_total", {"result": "ok"})
