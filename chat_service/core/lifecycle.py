"""Drives one chat turn from the incoming message to the persisted history entry.

A turn ends in exactly one of three ways, and whichever path claims the
session first performs it:

* `finalize` - the completion detector saw the buffer go quiet (or gave up
  waiting); the client gets a success notice and the turn is saved.
* `fail` - setup, generation or session bookkeeping failed; the client gets an
  error frame and a failed notice, nothing is saved.
* `cancel` - the client connection went away; nothing is sent or saved.

Chunk acceptance and the claim share the session lock, so no chunk accepted
after the claim reaches the buffer or the client.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from chat_service.core.aggregator import StreamAggregator
from chat_service.core.completion import CompletionDetector, DetectorState, QuiescencePolicy
from chat_service.core.context import build_context
from chat_service.core.errors import SessionStateMissing, error_code, user_facing_message
from chat_service.core.generation import GenerationClient
from chat_service.core.history import ConversationHistoryStore
from chat_service.core.identity import ConversationIdentityResolver
from chat_service.core.metrics import metrics
from chat_service.core.protocol import ClientChannel, chunk_frame, completion_frame, error_frame
from chat_service.core.search import SearchClient
from chat_service.core.settings import SETTINGS

logger = logging.getLogger(__name__)

OUTCOME_FINISHED = "finished"
OUTCOME_FAILED = "failed"
OUTCOME_CANCELLED = "cancelled"


@dataclass
class ChatSession:
    session_id: str
    user_id: str
    message: str
    channel: ClientChannel
    loop: asyncio.AbstractEventLoop
    conversation_id: str = ""
    completion: Future = field(default_factory=Future)
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    lock: threading.Lock = field(default_factory=threading.Lock)
    outcome: Optional[str] = None
    forced: bool = False
    generation: Optional[asyncio.Task] = None
    watcher: Optional[asyncio.Task] = None
    detector: Optional[CompletionDetector] = None
    started_at: float = field(default_factory=time.perf_counter)

    def claim(self, outcome: str) -> bool:
        with self.lock:
            if self.outcome is not None:
                return False
            self.outcome = outcome
            return True

    def call_on_loop(self, fn: Callable[[], object]) -> None:
        if self.loop.is_closed():
            return
        try:
            self.loop.call_soon_threadsafe(fn)
        except RuntimeError:
            logger.debug("loop closed before session=%s cleanup ran", self.session_id)


class SessionLifecycleManager:
    def __init__(
        self,
        *,
        identity: ConversationIdentityResolver,
        history: ConversationHistoryStore,
        search: SearchClient,
        generation: GenerationClient,
        aggregator: Optional[StreamAggregator] = None,
        policy: Optional[QuiescencePolicy] = None,
        top_k: Optional[int] = None,
    ) -> None:
        self.identity = identity
        self.history = history
        self.aggregator = aggregator or StreamAggregator()
        self.policy = policy or QuiescencePolicy.from_settings()
        self._search = search
        self._generation = generation
        self._top_k = top_k if top_k is not None else SETTINGS.search_top_k
        self._sessions: Dict[str, ChatSession] = {}
        self._lock = threading.Lock()

    def session(self, session_id: str) -> Optional[ChatSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    async def handle_message(
        self,
        session_id: str,
        user_id: str,
        message: str,
        channel: ClientChannel,
    ) -> Optional[ChatSession]:
        """Start a turn and return once generation is dispatched; completion is reported to `channel`."""
        session = ChatSession(
            session_id=session_id,
            user_id=user_id,
            message=message,
            channel=channel,
            loop=asyncio.get_running_loop(),
        )
        with self._lock:
            if session_id in self._sessions:
                busy = True
            else:
                busy = False
                self._sessions[session_id] = session
        if busy:
            logger.warning("turn already in progress session=%s user_id=%s", session_id, user_id)
            metrics.inc("chat_turn_rejected_total", {"reason": "turn_in_progress"})
            channel.post(error_frame("turn_in_progress", "Please wait for the current answer to finish."))
            return None

        logger.info("turn started session=%s user_id=%s", session_id, user_id)
        metrics.inc("chat_turn_started_total")
        try:
            session.conversation_id = self.identity.resolve(user_id)
            self.aggregator.open(session_id)
            history = self.history.read(session.conversation_id)
            results = await self._search.search_with_permission(message, user_id, self._top_k)
            logger.debug("search results session=%s count=%s", session_id, len(results))
            context = build_context(results)
            if session.outcome is not None:
                # cancelled while waiting for search
                return session
            session.generation = self._generation.stream_response(
                message,
                context,
                history,
                lambda chunk: self._on_chunk(session, chunk),
                lambda exc: self.fail(session, exc),
            )
        except Exception as exc:
            logger.exception("turn setup failed session=%s user_id=%s: %s", session_id, user_id, exc)
            self.fail(session, exc)
            return session

        if session.outcome is None:
            session.watcher = asyncio.create_task(self._watch(session))
        return session

    def _on_chunk(self, session: ChatSession, chunk: str) -> None:
        with session.lock:
            if session.outcome is not None:
                metrics.inc("chat_late_chunk_dropped_total")
                return
            if not self.aggregator.append(session.session_id, chunk):
                metrics.inc("chat_late_chunk_dropped_total")
                return
            session.channel.post(chunk_frame(chunk))

    async def _watch(self, session: ChatSession) -> None:
        detector = CompletionDetector(
            self.policy,
            lambda: self.aggregator.length(session.session_id),
            session.cancelled,
            label=session.session_id,
        )
        session.detector = detector
        try:
            state = await detector.run()
        except Exception as exc:
            logger.exception("completion watcher crashed session=%s: %s", session.session_id, exc)
            self.fail(session, exc)
            return

        if state in (DetectorState.COMPLETE, DetectorState.FORCED_COMPLETE):
            self.finalize(session, forced=state is DetectorState.FORCED_COMPLETE)
        elif state is DetectorState.ERRORED:
            self.fail(session, SessionStateMissing("aggregator missing"))

    def finalize(self, session: ChatSession, *, forced: bool = False) -> bool:
        if not session.claim(OUTCOME_FINISHED):
            return False
        text = self.aggregator.snapshot(session.session_id)
        if text is None:
            # claimed, but the buffer vanished underneath us
            self._report_failure(session, SessionStateMissing("aggregator missing at finalize"))
            return False

        session.forced = forced
        session.channel.post(completion_frame(True))
        try:
            self.history.append(session.conversation_id, session.message, text)
        except Exception as exc:
            # the client already has its answer
            logger.exception("history persist failed session=%s conversation_id=%s: %s", session.session_id, session.conversation_id, exc)
            metrics.inc("chat_history_write_failures_total")
        finally:
            self._release(session)
            session.completion.set_result(text)

        took_ms = (time.perf_counter() - session.started_at) * 1000
        metrics.inc("chat_turn_finished_total", {"forced": str(forced).lower()})
        metrics.observe("chat_turn_latency_ms", took_ms)
        logger.info(
            "turn finished session=%s conversation_id=%s forced=%s length=%s key=user:%s:current_conversation",
            session.session_id,
            session.conversation_id,
            forced,
            len(text),
            session.user_id,
        )
        return True

    def fail(self, session: ChatSession, exc: BaseException) -> bool:
        if not session.claim(OUTCOME_FAILED):
            logger.debug("ignoring error for settled session=%s: %s", session.session_id, exc)
            return False
        self._report_failure(session, exc)
        return True

    def _report_failure(self, session: ChatSession, exc: BaseException) -> None:
        code = error_code(exc)
        logger.error("turn failed session=%s user_id=%s code=%s error=%s", session.session_id, session.user_id, code, exc)
        session.channel.post(error_frame(code, user_facing_message(exc)))
        session.channel.post(completion_frame(False))
        self._release(session)
        session.completion.set_exception(exc)
        metrics.inc("chat_turn_failed_total", {"code": code})

    def cancel(self, session_id: str) -> bool:
        session = self.session(session_id)
        if session is None or not session.claim(OUTCOME_CANCELLED):
            return False
        self._release(session)
        session.completion.cancel()
        metrics.inc("chat_turn_cancelled_total")
        logger.info("turn cancelled session=%s user_id=%s", session_id, session.user_id)
        return True

    def _release(self, session: ChatSession) -> None:
        with self._lock:
            if self._sessions.get(session.session_id) is session:
                del self._sessions[session.session_id]
        self.aggregator.close(session.session_id)
        session.call_on_loop(session.cancelled.set)
        generation = session.generation
        if generation is not None and not generation.done():
            session.call_on_loop(generation.cancel)
