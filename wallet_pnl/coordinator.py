from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from .errors import AnalysisCancelled, RunAlreadyActiveError
from .models import PENDING


logger = logging.getLogger(__name__)


class PermitPool:
    """Weighted FIFO semaphore shared by every outbound upstream call.

    Release is synchronous so a permit is returned even when the holder is
    being cancelled.
    """

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self._capacity = capacity
        self._available = capacity
        self._waiters: Deque[Tuple[asyncio.Future, int]] = deque()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def available(self) -> int:
        return self._available

    @property
    def in_use(self) -> int:
        return self._capacity - self._available

    async def acquire(self, weight: int = 1) -> None:
        if weight <= 0 or weight > self._capacity:
            raise ValueError(f"weight must be in 1..{self._capacity}")
        if not self._waiters and self._available >= weight:
            self._available -= weight
            return
        fut = asyncio.get_running_loop().create_future()
        self._waiters.append((fut, weight))
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # granted after cancellation was requested
                self.release(weight)
            else:
                self._wake()
            raise

    def release(self, weight: int = 1) -> None:
        self._available = min(self._capacity, self._available + weight)
        self._wake()

    def _wake(self) -> None:
        while self._waiters:
            fut, weight = self._waiters[0]
            if fut.done():
                self._waiters.popleft()
                continue
            if weight > self._available:
                break
            self._waiters.popleft()
            self._available -= weight
            fut.set_result(True)

    @asynccontextmanager
    async def permit(self, weight: int = 1) -> AsyncIterator[None]:
        await self.acquire(weight)
        try:
            yield
        finally:
            self.release(weight)


class CancelToken:
    __slots__ = ("_cancelled", "reason")

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancel requested") -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise AnalysisCancelled(self.reason or "cancelled")


@dataclass(slots=True)
class RunState:
    account: str
    status: str  # pending/running/...
    started_at: int
    token: CancelToken = field(default_factory=CancelToken)
    task: Optional[asyncio.Task] = None


class ConcurrencyCoordinator:
    """Owns the active-run table and the upstream permit pool for one process.

    Not shared across process replicas; each replica enforces its own limits.
    """

    def __init__(self, permits: int) -> None:
        self.permits = PermitPool(permits)
        self._runs: Dict[str, RunState] = {}

    def register(self, account: str) -> RunState:
        if account in self._runs:
            raise RunAlreadyActiveError(f"An analysis for {account} is already running")
        run = RunState(account=account, status=PENDING, started_at=int(time.time() * 1000))
        self._runs[account] = run
        return run

    def get(self, account: str) -> Optional[RunState]:
        return self._runs.get(account)

    def release(self, account: str, run: Optional[RunState] = None) -> None:
        current = self._runs.get(account)
        if current is None:
            return
        if run is not None and current is not run:
            return
        del self._runs[account]

    def cancel(self, account: str) -> bool:
        run = self._runs.get(account)
        if run is None:
            return False
        run.token.cancel()
        logger.info("Cancellation requested for %s", account)
        return True

    def cancel_all(self) -> List[RunState]:
        runs = list(self._runs.values())
        for run in runs:
            run.token.cancel("shutdown")
        return runs

    def active_count(self) -> int:
        return len(self._runs)

    def active_accounts(self) -> List[str]:
        return list(self._runs.keys())
