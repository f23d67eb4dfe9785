from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from wallet_pnl.coordinator import CancelToken, PermitPool
from wallet_pnl.errors import (
    AnalysisCancelled,
    ConfigurationError,
    RateLimitedError,
    TooManyTransactionsError,
    UpstreamError,
    UpstreamTimeoutError,
)
from wallet_pnl.ingestion import ActivityFetcher, HeliusClient
from wallet_pnl.ingestion.client import is_valid_account, parse_retry_after

from .conftest import ACCOUNT, FakeUpstream, now_ts, swap_record


def _client(settings, handler, capacity: int = 4) -> HeliusClient:
    return HeliusClient(
        settings.helius,
        settings.ingestion,
        PermitPool(capacity),
        transport=httpx.MockTransport(handler),
    )


def _history(n: int, start: int):
    return [swap_record(f"sig{i}", start + i * 60) for i in range(n)]


def test_account_validation():
    assert is_valid_account(ACCOUNT)
    assert not is_valid_account("")
    assert not is_valid_account("0OIl" * 10)
    assert not is_valid_account("abc")
    assert not is_valid_account(ACCOUNT + "x" * 10)


def test_parse_retry_after():
    assert parse_retry_after(None) is None
    assert parse_retry_after("3") == 3.0
    assert parse_retry_after("-4") == 0.0
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0
    assert parse_retry_after("soon") is None


@pytest.mark.asyncio
async def test_signature_scan_paginates_until_short_page(settings):
    upstream = FakeUpstream.from_records(_history(7, now_ts() - 3600))
    fetcher = ActivityFetcher(_client(settings, upstream), settings.ingestion)
    found = []

    async def on_found(n):
        found.append(n)

    sigs, failed = await fetcher.collect_signatures(ACCOUNT, CancelToken(), on_found=on_found)
    assert sigs == [f"sig{i}" for i in range(6, -1, -1)]
    assert failed == 0
    assert found == [3, 6, 7]
    assert upstream.count("getSignaturesForAddress") == 3
    befores = [c[1][1].get("before") for c in upstream.calls]
    assert befores == [None, "sig4", "sig1"]


@pytest.mark.asyncio
async def test_signature_scan_stops_at_lookback_boundary(settings):
    now = now_ts()
    old = now - (settings.ingestion.lookback_days + 2) * 86400
    records = _history(2, old) + _history(3, now - 3600)
    records = [dict(r, signature=f"s{i}") for i, r in enumerate(records)]
    upstream = FakeUpstream.from_records(records)
    fetcher = ActivityFetcher(_client(settings, upstream), settings.ingestion)

    sigs, _ = await fetcher.collect_signatures(ACCOUNT, CancelToken(), now=now)
    assert sigs == ["s4", "s3", "s2"]
    # the boundary signature ended the walk on the second page
    assert upstream.count("getSignaturesForAddress") == 2


@pytest.mark.asyncio
async def test_signature_scan_stops_at_known_signature(settings):
    upstream = FakeUpstream.from_records(_history(5, now_ts() - 3600))
    fetcher = ActivityFetcher(_client(settings, upstream), settings.ingestion)
    sigs, _ = await fetcher.collect_signatures(ACCOUNT, CancelToken(), until="sig2")
    assert sigs == ["sig4", "sig3"]


@pytest.mark.asyncio
async def test_failed_and_repeated_signatures_are_skipped(settings):
    upstream = FakeUpstream.from_records(_history(4, now_ts() - 3600))
    upstream.signatures[1]["err"] = {"InstructionError": [0, "Custom"]}
    upstream.signatures.insert(3, dict(upstream.signatures[0]))
    fetcher = ActivityFetcher(_client(settings, upstream), settings.ingestion)
    sigs, failed = await fetcher.collect_signatures(ACCOUNT, CancelToken())
    assert sigs == ["sig3", "sig1", "sig0"]
    assert failed == 1


@pytest.mark.asyncio
async def test_signature_cap_refuses_instead_of_truncating(settings):
    settings.ingestion.max_signatures = 4
    upstream = FakeUpstream.from_records(_history(7, now_ts() - 3600))
    fetcher = ActivityFetcher(_client(settings, upstream), settings.ingestion)
    with pytest.raises(TooManyTransactionsError) as exc:
        await fetcher.collect_signatures(ACCOUNT, CancelToken())
    assert exc.value.reason == "too_many_transactions"
    assert exc.value.limit == 4


@pytest.mark.asyncio
async def test_enrichment_batches_and_drops_missing_bodies(settings):
    records = _history(5, now_ts() - 3600)
    upstream = FakeUpstream.from_records(records)
    del upstream.records["sig2"]
    fetcher = ActivityFetcher(_client(settings, upstream), settings.ingestion)
    progress = []

    async def on_fetched(done, total):
        progress.append((done, total))

    result = await fetcher.fetch_all(ACCOUNT, CancelToken(), on_fetched=on_fetched)
    assert sorted(r["signature"] for r in result.records) == ["sig0", "sig1", "sig3", "sig4"]
    assert result.newest_signature == "sig4"
    assert upstream.count("transactions") == 3
    assert [len(c[1]) for c in upstream.calls if c[0] == "transactions"] == [2, 2, 1]
    # two batches per group
    assert progress == [(4, 5), (5, 5)]


@pytest.mark.asyncio
async def test_rate_limit_is_retried_after_delay(settings):
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) == 1:
            return httpx.Response(429, headers={"Retry-After": "0"})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": []})

    client = _client(settings, handler)
    assert await client.get_signatures(ACCOUNT) == []
    assert len(attempts) == 2
    assert attempts[0].url.params["api-key"] == "test-key"


@pytest.mark.asyncio
async def test_server_errors_exhaust_retries(settings):
    attempts = []

    def handler(request):
        attempts.append(request)
        return httpx.Response(503)

    client = _client(settings, handler)
    with pytest.raises(UpstreamError) as exc:
        await client.get_transactions(["a"])
    assert exc.value.status_code == 503
    assert exc.value.reason == "upstream_unavailable"
    assert len(attempts) == settings.ingestion.max_retries + 1


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(settings):
    attempts = []

    def handler(request):
        attempts.append(request)
        return httpx.Response(400, json={"error": "bad request"})

    client = _client(settings, handler)
    with pytest.raises(UpstreamError) as exc:
        await client.get_transactions(["a"])
    assert exc.value.status_code == 400
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_timeouts_are_retried_then_reported(settings):
    attempts = []

    def handler(request):
        attempts.append(request)
        raise httpx.ReadTimeout("slow", request=request)

    client = _client(settings, handler)
    with pytest.raises(UpstreamTimeoutError):
        await client.get_signatures(ACCOUNT)
    assert len(attempts) == settings.ingestion.max_retries + 1


@pytest.mark.asyncio
async def test_rpc_rate_limit_error_is_retried(settings):
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) < 3:
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32429, "message": "slow down"}}
            )
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": [{"signature": "x"}]})

    client = _client(settings, handler)
    assert await client.get_signatures(ACCOUNT) == [{"signature": "x"}]
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_rate_limit_surfaces_after_retries(settings):
    def handler(request):
        return httpx.Response(429)

    with pytest.raises(RateLimitedError):
        await _client(settings, handler).get_signatures(ACCOUNT)


@pytest.mark.asyncio
async def test_missing_api_key_fails_without_calling(settings):
    settings.helius.api_key = ""
    attempts = []

    def handler(request):
        attempts.append(request)
        return httpx.Response(200, json=[])

    with pytest.raises(ConfigurationError):
        await _client(settings, handler).get_transactions(["a"])
    assert attempts == []


@pytest.mark.asyncio
async def test_concurrent_calls_never_exceed_permits(settings):
    settings.ingestion.enrich_batch_size = 1
    settings.ingestion.parallel_batches = 6
    in_flight = 0
    peak = 0

    async def handler(request):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        sigs = json.loads(request.content)["transactions"]
        return httpx.Response(200, json=[swap_record(s, 1) for s in sigs])

    pool = PermitPool(2)
    client = HeliusClient(
        settings.helius, settings.ingestion, pool, transport=httpx.MockTransport(handler)
    )
    fetcher = ActivityFetcher(client, settings.ingestion)
    records = await fetcher.fetch_transactions([f"s{i}" for i in range(12)], CancelToken())
    assert len(records) == 12
    assert peak == 2
    assert pool.in_use == 0


@pytest.mark.asyncio
async def test_cancel_during_scan_stops_before_enrichment(settings):
    upstream = FakeUpstream.from_records(_history(7, now_ts() - 3600))
    fetcher = ActivityFetcher(_client(settings, upstream), settings.ingestion)
    token = CancelToken()

    async def on_found(n):
        token.cancel()

    with pytest.raises(AnalysisCancelled):
        await fetcher.fetch_all(ACCOUNT, token, on_found=on_found)
    assert upstream.count("getSignaturesForAddress") == 1
    assert upstream.count("transactions") == 0


@pytest.mark.asyncio
async def test_cancel_between_enrichment_groups(settings):
    upstream = FakeUpstream.from_records(_history(9, now_ts() - 3600))
    fetcher = ActivityFetcher(_client(settings, upstream), settings.ingestion)
    token = CancelToken()

    async def on_fetched(done, total):
        token.cancel()

    sigs = [s["signature"] for s in upstream.signatures]
    with pytest.raises(AnalysisCancelled):
        await fetcher.fetch_transactions(sigs, token, on_fetched=on_fetched)
    # only the first group of two batches went out
    assert upstream.count("transactions") == 2


@pytest.mark.asyncio
async def test_cancel_while_waiting_for_permit_sends_nothing(settings):
    upstream = FakeUpstream.from_records(_history(3, now_ts() - 3600))
    pool = PermitPool(1)
    client = HeliusClient(
        settings.helius, settings.ingestion, pool, transport=httpx.MockTransport(upstream)
    )
    token = CancelToken()

    await pool.acquire()  # another run holds the only permit
    pending = asyncio.create_task(client.get_signatures(ACCOUNT, limit=3, token=token))
    await asyncio.sleep(0.01)
    assert not pending.done()

    token.cancel()
    pool.release()
    with pytest.raises(AnalysisCancelled):
        await pending
    assert upstream.calls == []
    assert pool.in_use == 0
    await client.close()
