from __future__ import annotations

import asyncio

import httpx
import pytest

from wallet_pnl.errors import InvalidAccountError, RunAlreadyActiveError
from wallet_pnl.models import CANCELLED, COMPLETED, FAILED, RUNNING, TERMINAL_STATUSES
from wallet_pnl.runtime import AnalysisRuntime

from .conftest import (
    ACCOUNT,
    MINT_A,
    MINT_B,
    WSOL_MINT,
    FakeUpstream,
    das_asset,
    now_ts,
    pair,
    swap_record,
)


DAY = 86400


def _history():
    now = now_ts()
    return [
        swap_record("sigA1", now - 5 * DAY, mint=MINT_A, units=100, sol=1.0),
        swap_record("sigA2", now - 3 * DAY, mint=MINT_A, units=60, sol=1.2, buy=False),
        swap_record("sigB1", now - 2 * DAY, mint=MINT_B, units=10, sol=0.5, symbol=""),
    ]


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream(
        assets={MINT_A: das_asset(MINT_A, "AAA"), MINT_B: das_asset(MINT_B, "BBB")}
    )


@pytest.fixture
async def runtime(settings, cache, upstream, feeds):
    feeds.dex[MINT_A] = [pair(MINT_A, WSOL_MINT, 0.02, 2.0)]
    rt = AnalysisRuntime(
        settings,
        cache=cache,
        transport=httpx.MockTransport(upstream),
        price_transport=httpx.MockTransport(feeds),
    )
    await rt.start()
    yield rt
    await rt.stop()


async def _drain(q: asyncio.Queue):
    updates = []
    while True:
        update = await asyncio.wait_for(q.get(), 5)
        updates.append(update)
        if update.get("status") in TERMINAL_STATUSES:
            return updates


@pytest.mark.asyncio
async def test_full_run_completes_and_persists(runtime, upstream):
    upstream.load(_history())
    orch = runtime.orchestrator
    q = runtime.hub.subscribe(ACCOUNT)

    handle = orch.start_run(ACCOUNT)
    assert orch.get_active_count() == 1
    assert await handle.wait() == COMPLETED
    updates = await _drain(q)

    percents = [u["percent"] for u in updates]
    assert percents == sorted(percents)
    assert all(u["status"] == RUNNING for u in updates[:-1])
    assert updates[-1]["status"] == COMPLETED
    assert updates[-1]["percent"] == 100
    assert orch.get_active_count() == 0
    assert await runtime.hub.last(ACCOUNT) is None

    outcome = await handle.outcome()
    summary = outcome.summary
    assert summary["total_pnl"] == summary["total_realized_pnl"] + summary["total_unrealized_pnl"]
    assert summary["total_positions"] == 2
    assert outcome.counts["events"] == 3

    row = await runtime.db.get_analysis(ACCOUNT)
    assert row["status"] == COMPLETED
    assert row["newest_signature"] == "sigB1"
    assert row["progress"] == 100

    positions = {p["asset_id"]: p for p in await runtime.db.get_positions(ACCOUNT)}
    assert positions[MINT_B]["asset_symbol"] == "BBB"
    assert positions[MINT_A]["current_price_ref"] == pytest.approx(0.02)
    assert positions[MINT_A]["realized_pnl"] > 0
    assert len(await runtime.db.get_highlights(ACCOUNT)) == 6
    assert len(await runtime.db.load_events(ACCOUNT)) == 3
    daily = await runtime.db.get_daily(ACCOUNT)
    assert len(daily) == 1
    assert daily[0]["ref_usd_price"] == 100.0


@pytest.mark.asyncio
async def test_second_run_inside_window_reuses_result(runtime, upstream):
    upstream.load(_history())
    assert await runtime.orchestrator.start_run(ACCOUNT).wait() == COMPLETED
    calls = len(upstream.calls)

    handle = runtime.orchestrator.start_run(ACCOUNT)
    assert await handle.wait() == COMPLETED
    outcome = await handle.outcome()
    assert outcome.reused is True
    assert len(upstream.calls) == calls


@pytest.mark.asyncio
async def test_stale_result_is_extended_incrementally(runtime, upstream):
    history = _history()
    upstream.load(history)
    assert await runtime.orchestrator.start_run(ACCOUNT).wait() == COMPLETED
    await runtime.db.upsert_analysis(ACCOUNT, COMPLETED, completed_at=1)

    newer = swap_record("sigA3", now_ts() - DAY, mint=MINT_A, units=40, sol=1.0, buy=False)
    upstream.load(history + [newer])
    upstream.calls.clear()

    handle = runtime.orchestrator.start_run(ACCOUNT)
    assert await handle.wait() == COMPLETED
    outcome = await handle.outcome()
    assert outcome.reused is False
    assert outcome.counts["events"] == 4
    assert [c[1] for c in upstream.calls if c[0] == "transactions"] == [["sigA3"]]
    positions = {p["asset_id"]: p for p in await runtime.db.get_positions(ACCOUNT)}
    assert positions[MINT_A]["is_active"] is False
    assert (await runtime.db.get_analysis(ACCOUNT))["newest_signature"] == "sigA3"


@pytest.mark.asyncio
async def test_force_bypasses_reuse(runtime, upstream):
    upstream.load(_history())
    assert await runtime.orchestrator.start_run(ACCOUNT).wait() == COMPLETED
    pages = upstream.count("getSignaturesForAddress")
    handle = runtime.orchestrator.start_run(ACCOUNT, force=True)
    assert await handle.wait() == COMPLETED
    assert (await handle.outcome()).reused is False
    assert upstream.count("getSignaturesForAddress") == 2 * pages


@pytest.mark.asyncio
async def test_duplicate_start_rejected_and_cancel_stops_run(runtime, upstream):
    upstream.load(_history())
    upstream.gate = asyncio.Event()
    orch = runtime.orchestrator
    q = runtime.hub.subscribe(ACCOUNT)

    handle = orch.start_run(ACCOUNT)
    with pytest.raises(RunAlreadyActiveError):
        orch.start_run(ACCOUNT)
    await asyncio.sleep(0.05)
    assert orch.get_active_accounts() == [ACCOUNT]

    assert orch.cancel_run(ACCOUNT) is True
    upstream.gate.set()
    assert await handle.wait() == CANCELLED
    updates = await _drain(q)
    assert updates[-1]["status"] == CANCELLED
    assert updates[-1]["reason"] == "cancelled"

    assert upstream.count("transactions") == 0
    assert orch.get_active_count() == 0
    assert runtime.coordinator.permits.in_use == 0
    row = await runtime.db.get_analysis(ACCOUNT)
    assert row["status"] == CANCELLED
    assert orch.cancel_run(ACCOUNT) is False


@pytest.mark.asyncio
async def test_invalid_account_rejected_before_registration(runtime):
    with pytest.raises(InvalidAccountError):
        runtime.orchestrator.start_run("not-a-wallet")
    assert runtime.orchestrator.get_active_count() == 0


@pytest.mark.asyncio
async def test_empty_account_fails_with_no_activity(runtime, upstream):
    q = runtime.hub.subscribe(ACCOUNT)
    assert await runtime.orchestrator.start_run(ACCOUNT).wait() == FAILED
    updates = await _drain(q)
    assert updates[-1]["reason"] == "no_activity"
    row = await runtime.db.get_analysis(ACCOUNT)
    assert row["status"] == FAILED
    assert row["error_reason"] == "no_activity"


@pytest.mark.asyncio
async def test_upstream_outage_fails_run(settings, cache, feeds):
    def down(request):
        return httpx.Response(503)

    rt = AnalysisRuntime(
        settings,
        cache=cache,
        transport=httpx.MockTransport(down),
        price_transport=httpx.MockTransport(feeds),
    )
    await rt.start()
    try:
        assert await rt.orchestrator.start_run(ACCOUNT).wait() == FAILED
        row = await rt.db.get_analysis(ACCOUNT)
        assert row["error_reason"] == "upstream_unavailable"
        assert rt.coordinator.permits.in_use == 0
    finally:
        await rt.stop()


@pytest.mark.asyncio
async def test_missing_api_key_fails_with_configuration(settings, cache, upstream, feeds):
    settings.helius.api_key = ""
    rt = AnalysisRuntime(
        settings,
        cache=cache,
        transport=httpx.MockTransport(upstream),
        price_transport=httpx.MockTransport(feeds),
    )
    await rt.start()
    try:
        assert await rt.orchestrator.start_run(ACCOUNT).wait() == FAILED
        assert (await rt.db.get_analysis(ACCOUNT))["error_reason"] == "configuration"
        assert upstream.calls == []
    finally:
        await rt.stop()


@pytest.mark.asyncio
async def test_shutdown_cancels_active_runs(runtime, upstream):
    upstream.load(_history())
    upstream.gate = asyncio.Event()
    handle = runtime.orchestrator.start_run(ACCOUNT)
    await asyncio.sleep(0.05)

    await runtime.orchestrator.shutdown(timeout=0.05)
    assert handle.done()
    assert handle.status == CANCELLED
    assert runtime.orchestrator.get_active_count() == 0
    assert runtime.coordinator.permits.in_use == 0


@pytest.mark.asyncio
async def test_forced_rerun_skips_days_without_history(runtime, upstream, feeds):
    upstream.load(_history())
    assert await runtime.orchestrator.start_run(ACCOUNT).wait() == COMPLETED
    history_calls = feeds.calls.count("api.coingecko.com")
    assert history_calls == 1

    assert await runtime.orchestrator.start_run(ACCOUNT, force=True).wait() == COMPLETED
    assert feeds.calls.count("api.coingecko.com") == history_calls
    daily = await runtime.db.get_daily(ACCOUNT)
    assert daily[0]["ref_usd_price"] == 100.0


@pytest.mark.asyncio
async def test_cancel_stops_daily_price_lookups(settings, cache, feeds):
    now = now_ts()
    records = [swap_record("buy", now - 10 * DAY, units=100, sol=1.0)]
    records += [
        swap_record(f"sell{k}", now - k * DAY, units=10, sol=0.2, buy=False) for k in range(2, 8)
    ]
    upstream = FakeUpstream.from_records(records, assets={MINT_A: das_asset(MINT_A, "AAA")})
    feeds.dex[MINT_A] = [pair(MINT_A, WSOL_MINT, 0.02, 2.0)]
    holder = {}

    def prices(request):
        if request.url.path.endswith("/history"):
            holder["rt"].orchestrator.cancel_run(ACCOUNT)
        return feeds(request)

    rt = AnalysisRuntime(
        settings,
        cache=cache,
        transport=httpx.MockTransport(upstream),
        price_transport=httpx.MockTransport(prices),
    )
    holder["rt"] = rt
    await rt.start()
    try:
        assert await rt.orchestrator.start_run(ACCOUNT).wait() == CANCELLED
        # one group of lookups went out before the cancellation was observed
        assert feeds.calls.count("api.coingecko.com") == 4
        assert (await rt.db.get_analysis(ACCOUNT))["status"] == CANCELLED
    finally:
        await rt.stop()


def test_failed_task_creation_releases_account(settings, cache):
    rt = AnalysisRuntime(settings, cache=cache)
    with pytest.raises(RuntimeError):
        rt.orchestrator.start_run(ACCOUNT)  # no running event loop
    assert rt.orchestrator.get_active_count() == 0
    assert rt.coordinator.get(ACCOUNT) is None
