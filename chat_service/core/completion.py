"""Quiescence-based end-of-stream detection.

The generation client never says "done", so a turn is considered finished once
the buffer stops growing across a confirmation window. The detector only
decides *what* happened; the lifecycle manager owns the side effects of each
terminal state. A generation client that grows a real completion signal can
replace this class without touching finalize.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from chat_service.core.settings import SETTINGS, Settings

logger = logging.getLogger(__name__)


class DetectorState(str, Enum):
    ACCUMULATING = "accumulating"
    CONFIRMING = "confirming"
    COMPLETE = "complete"
    FORCED_COMPLETE = "forced_complete"
    ERRORED = "errored"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class QuiescencePolicy:
    initial_delay: float = 3.0
    confirm_delay: float = 2.0
    retry_delay: float = 5.0
    max_retries: int = 5

    @classmethod
    def from_settings(cls, settings: Settings = SETTINGS) -> "QuiescencePolicy":
        return cls(
            initial_delay=settings.quiescence_initial_sec,
            confirm_delay=settings.quiescence_confirm_sec,
            retry_delay=settings.quiescence_retry_sec,
            max_retries=settings.quiescence_max_retries,
        )

    def worst_case_latency(self) -> float:
        return self.initial_delay + self.confirm_delay + self.max_retries * (self.retry_delay + self.confirm_delay)


class CompletionDetector:
    def __init__(
        self,
        policy: QuiescencePolicy,
        sample: Callable[[], Optional[int]],
        cancelled: Optional[asyncio.Event] = None,
        *,
        label: str = "",
    ) -> None:
        self.policy = policy
        self.state = DetectorState.ACCUMULATING
        self.retries_used = 0
        self._sample = sample
        self._cancelled = cancelled
        self._label = label

    async def _wait(self, seconds: float) -> bool:
        """Sleep for `seconds`; False when the cancellation token fired first."""
        if self._cancelled is None:
            await asyncio.sleep(seconds)
            return True
        if self._cancelled.is_set():
            return False
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False

    def _finish(self, state: DetectorState) -> DetectorState:
        self.state = state
        logger.debug("detector finished session=%s state=%s retries=%s", self._label, state.value, self.retries_used)
        return state

    async def run(self) -> DetectorState:
        if not await self._wait(self.policy.initial_delay):
            return self._finish(DetectorState.CANCELLED)

        for attempt in range(self.policy.max_retries + 1):
            if attempt > 0:
                self.state = DetectorState.CONFIRMING
                self.retries_used = attempt
                if not await self._wait(self.policy.retry_delay):
                    return self._finish(DetectorState.CANCELLED)

            before = self._sample()
            if before is None:
                logger.warning("aggregator missing session=%s", self._label)
                return self._finish(DetectorState.ERRORED)
            if not await self._wait(self.policy.confirm_delay):
                return self._finish(DetectorState.CANCELLED)
            after = self._sample()
            if after is None:
                logger.warning("aggregator missing session=%s", self._label)
                return self._finish(DetectorState.ERRORED)
            if after == before:
                return self._finish(DetectorState.COMPLETE)
            logger.debug("stream still growing session=%s length=%s attempt=%s", self._label, after, attempt)

        return self._finish(DetectorState.FORCED_COMPLETE)
