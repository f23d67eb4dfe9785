from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict
from typing import Any, Dict, List, Optional, Sequence

from .cache import progress_key
from .coordinator import CancelToken
from .models import CANCELLED, COMPLETED, FAILED, RUNNING, ProgressUpdate


logger = logging.getLogger(__name__)

# stage -> (start %, end %)
STAGES: Dict[str, tuple[int, int]] = {
    "connect": (0, 5),
    "scan": (5, 40),
    "parse": (40, 50),
    "calculate": (50, 70),
    "save": (70, 85),
    "finalize": (85, 100),
}


def stage_percent(stage: str, fraction: float) -> int:
    lo, hi = STAGES[stage]
    fraction = min(1.0, max(0.0, fraction))
    return int(lo + (hi - lo) * fraction)


def stage_for_percent(percent: float) -> str:
    for name, (lo, hi) in STAGES.items():
        if percent < hi:
            return name
    return "finalize"


class ProgressHub:
    """Progress sink: last update in the cache for pollers, live fan-out to subscribers."""

    def __init__(self, cache, ttl_s: int = 3600, queue_size: int = 100) -> None:
        self._cache = cache
        self._ttl = ttl_s
        self._queue_size = queue_size
        self._subs: Dict[str, List[asyncio.Queue]] = {}

    def subscribe(self, account: str) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subs.setdefault(account, []).append(q)
        return q

    def unsubscribe(self, account: str, q: asyncio.Queue) -> None:
        subs = self._subs.get(account)
        if not subs:
            return
        if q in subs:
            subs.remove(q)
        if not subs:
            self._subs.pop(account, None)

    def subscriber_count(self, account: str) -> int:
        return len(self._subs.get(account, []))

    async def publish(self, update: ProgressUpdate) -> None:
        payload = asdict(update)
        terminal = update.status != RUNNING
        if terminal:
            await self._cache.delete(progress_key(update.account))
        else:
            await self._cache.set(progress_key(update.account), payload, ttl=self._ttl)
        for q in list(self._subs.get(update.account, [])):
            if q.full():
                # slow consumer: keep the newest updates
                q.get_nowait()
            q.put_nowait(payload)

    async def last(self, account: str) -> Optional[Dict[str, Any]]:
        return await self._cache.get(progress_key(account))


class ProgressReporter:
    """Per-run progress emitter mapping stage fractions onto one 0-100 scale.

    Every non-terminal emission is a cancellation checkpoint.
    """

    def __init__(self, account: str, token: CancelToken, sinks: Sequence) -> None:
        self.account = account
        self._token = token
        self._sinks = list(sinks)
        self.percent = 0
        self.stage = "connect"

    async def _publish(self, update: ProgressUpdate) -> None:
        for sink in self._sinks:
            await sink.publish(update)

    async def __call__(
        self,
        percent: float,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        stage: Optional[str] = None,
    ) -> None:
        self._token.raise_if_cancelled()
        pct = max(self.percent, min(99, int(percent)))
        self.percent = pct
        if stage is not None and STAGES[stage][0] <= pct <= STAGES[stage][1]:
            self.stage = stage
        else:
            self.stage = stage_for_percent(pct)
        await self._publish(
            ProgressUpdate(
                account=self.account,
                percent=pct,
                stage=self.stage,
                message=message,
                status=RUNNING,
                details=dict(details or {}),
                timestamp=int(time.time() * 1000),
            )
        )

    async def report(self, stage: str, fraction: float, message: str, **details: Any) -> None:
        await self(stage_percent(stage, fraction), message, details, stage=stage)

    async def _terminal(
        self, status: str, percent: int, message: str, reason: Optional[str], details: Dict[str, Any]
    ) -> None:
        await self._publish(
            ProgressUpdate(
                account=self.account,
                percent=percent,
                stage=self.stage if status != COMPLETED else "finalize",
                message=message,
                status=status,
                details=details,
                reason=reason,
                timestamp=int(time.time() * 1000),
            )
        )

    async def complete(self, message: str = "Analysis complete", **details: Any) -> None:
        self.percent = 100
        await self._terminal(COMPLETED, 100, message, None, details)

    async def fail(self, reason: str, message: str) -> None:
        await self._terminal(FAILED, self.percent, message, reason, {})

    async def cancelled(self, message: str = "Analysis cancelled") -> None:
        await self._terminal(CANCELLED, self.percent, message, "cancelled", {})
