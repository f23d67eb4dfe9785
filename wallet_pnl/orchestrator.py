from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Sequence

import aiosqlite

from .coordinator import ConcurrencyCoordinator, RunState
from .db import Database
from .errors import AnalysisCancelled, AnalysisError, InvalidAccountError
from .ingestion.client import is_valid_account
from .models import CANCELLED, COMPLETED, FAILED, RUNNING
from .progress import ProgressHub, ProgressReporter
from .services.analyzer import AccountAnalyzer, AnalysisOutcome


logger = logging.getLogger(__name__)


class RunHandle:
    def __init__(self, run: RunState) -> None:
        self._run = run

    @property
    def account(self) -> str:
        return self._run.account

    @property
    def status(self) -> str:
        return self._run.status

    @property
    def started_at(self) -> int:
        return self._run.started_at

    def done(self) -> bool:
        return self._run.task is not None and self._run.task.done()

    async def wait(self) -> str:
        """Wait for the run to settle and return its terminal status."""
        if self._run.task is not None:
            await asyncio.shield(self._run.task)
        return self._run.status

    async def outcome(self) -> Optional[AnalysisOutcome]:
        if self._run.task is None:
            return None
        return await asyncio.shield(self._run.task)


class AnalysisOrchestrator:
    """Runs one analysis task per account; pending -> running -> completed/failed/cancelled."""

    def __init__(
        self,
        coordinator: ConcurrencyCoordinator,
        analyzer: AccountAnalyzer,
        db: Database,
        hub: ProgressHub,
        sinks: Sequence = (),
    ) -> None:
        self._coordinator = coordinator
        self._analyzer = analyzer
        self._db = db
        self._hub = hub
        self._sinks = list(sinks)

    @property
    def hub(self) -> ProgressHub:
        return self._hub

    def start_run(self, account: str, force: bool = False) -> RunHandle:
        if not is_valid_account(account):
            raise InvalidAccountError(f"Invalid account address: {account!r}")
        run = self._coordinator.register(account)
        reporter = ProgressReporter(account, run.token, [self._hub, *self._sinks])
        coro = self._drive(run, reporter, force)
        try:
            run.task = asyncio.create_task(coro, name=f"analysis:{account}")
        except BaseException:
            coro.close()
            self._coordinator.release(account, run)
            raise
        logger.info("Analysis queued for %s (active=%d)", account, self._coordinator.active_count())
        return RunHandle(run)

    def cancel_run(self, account: str) -> bool:
        return self._coordinator.cancel(account)

    def get_active_count(self) -> int:
        return self._coordinator.active_count()

    def get_active_accounts(self) -> List[str]:
        return self._coordinator.active_accounts()

    def get_run(self, account: str) -> Optional[RunHandle]:
        run = self._coordinator.get(account)
        return RunHandle(run) if run is not None else None

    async def _record(self, account: str, status: str, **fields: Any) -> None:
        try:
            await self._db.upsert_analysis(account, status, **fields)
        except aiosqlite.Error:
            logger.exception("Failed to record %s status for %s", status, account)

    async def _drive(
        self, run: RunState, reporter: ProgressReporter, force: bool
    ) -> Optional[AnalysisOutcome]:
        account = run.account
        started = time.monotonic()
        run.status = RUNNING
        try:
            outcome = await self._analyzer.run(account, run.token, reporter, force=force)
            run.status = COMPLETED
            await reporter.complete(
                "Analysis complete",
                summary=outcome.summary,
                counts=outcome.counts,
                reused=outcome.reused,
            )
            logger.info(
                "Analysis %s completed in %.1fs reused=%s",
                account,
                time.monotonic() - started,
                outcome.reused,
            )
            return outcome
        except AnalysisCancelled:
            run.status = CANCELLED
            logger.info("Analysis %s cancelled at %d%%", account, reporter.percent)
            await self._record(account, CANCELLED, progress=reporter.percent, stage=reporter.stage)
            await reporter.cancelled()
            return None
        except asyncio.CancelledError:
            run.status = CANCELLED
            await self._record(account, CANCELLED, progress=reporter.percent, stage=reporter.stage)
            raise
        except AnalysisError as e:
            run.status = FAILED
            logger.warning("Analysis %s failed reason=%s: %s", account, e.reason, e)
            await self._record(
                account,
                FAILED,
                progress=reporter.percent,
                stage=reporter.stage,
                error_reason=e.reason,
                error_message=str(e),
            )
            await reporter.fail(e.reason, str(e))
            return None
        except Exception:
            run.status = FAILED
            logger.exception("Analysis %s crashed", account)
            message = "Internal error during analysis"
            await self._record(
                account,
                FAILED,
                progress=reporter.percent,
                stage=reporter.stage,
                error_reason=AnalysisError.reason,
                error_message=message,
            )
            await reporter.fail(AnalysisError.reason, message)
            return None
        finally:
            self._coordinator.release(account, run)

    async def shutdown(self, timeout: float = 10.0) -> None:
        runs = self._coordinator.cancel_all()
        tasks = [r.task for r in runs if r.task is not None and not r.task.done()]
        if not tasks:
            return
        logger.info("Waiting for %d analyses to settle", len(tasks))
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


def describe_active(orchestrator: AnalysisOrchestrator) -> List[Dict[str, Any]]:
    out = []
    for account in orchestrator.get_active_accounts():
        handle = orchestrator.get_run(account)
        if handle is not None:
            out.append({"account": account, "status": handle.status, "started_at": handle.started_at})
    return out
