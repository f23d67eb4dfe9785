from __future__ import annotations

import logging
import re
import time
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..config import HeliusConfig, IngestionConfig
from ..coordinator import CancelToken, PermitPool
from ..errors import ConfigurationError, RateLimitedError, UpstreamError, UpstreamTimeoutError


logger = logging.getLogger(__name__)

# JSON-RPC error codes
_RPC_RATE_LIMITED = -32429
_RPC_INVALID_PARAMS = -32602

_ACCOUNT_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


def is_valid_account(account: str) -> bool:
    """Base58 public key, 32-44 characters."""
    return isinstance(account, str) and bool(_ACCOUNT_RE.match(account))


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After as delta-seconds or HTTP-date; None when absent or unparseable."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    return max(0.0, when.timestamp() - time.time())


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (RateLimitedError, UpstreamTimeoutError)):
        return True
    if isinstance(exc, UpstreamError):
        return exc.status_code is None or exc.status_code >= 500
    return False


def _retry_wait(base: float, maximum: float):
    backoff = wait_exponential(multiplier=base, max=maximum)

    def _wait(retry_state) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
            return min(exc.retry_after, maximum)
        return backoff(retry_state)

    return _wait


class HeliusClient:
    """Upstream indexer client. Every attempt holds one permit from the shared pool."""

    def __init__(
        self,
        helius: HeliusConfig,
        ingestion: IngestionConfig,
        permits: PermitPool,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._cfg = helius
        self._ing = ingestion
        self._permits = permits
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "HeliusClient":
        self._open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _open(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._ing.timeout_base_s,
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _timeout_for(self, n_items: int) -> float:
        t = self._ing.timeout_base_s + self._ing.timeout_per_item_s * max(0, n_items)
        return min(self._ing.timeout_max_s, t)

    async def _send(self, url: str, payload: Any, timeout: float) -> Any:
        client = self._open()
        try:
            resp = await client.post(
                url, json=payload, params={"api-key": self._cfg.api_key}, timeout=timeout
            )
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(f"Upstream timed out after {timeout:.1f}s") from e
        except httpx.TransportError as e:
            raise UpstreamError(f"Upstream transport error: {e}") from e

        if resp.status_code == 429:
            raise RateLimitedError(
                "Upstream rate limit hit",
                retry_after=parse_retry_after(resp.headers.get("Retry-After")),
            )
        if resp.status_code >= 400:
            raise UpstreamError(
                f"Upstream returned HTTP {resp.status_code}", status_code=resp.status_code
            )
        try:
            return resp.json()
        except ValueError as e:
            raise UpstreamError("Upstream returned invalid JSON") from e

    async def _post(
        self,
        url: str,
        payload: Any,
        n_items: int = 1,
        token: Optional[CancelToken] = None,
        unwrap: Optional[Callable[[Any], Any]] = None,
    ) -> Any:
        """POST with retries. ``unwrap`` runs inside each attempt so body-level errors retry too."""
        if not self._cfg.api_key:
            raise ConfigurationError("helius.api_key is not configured")
        timeout = self._timeout_for(n_items)
        result: Any = None
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._ing.max_retries + 1),
            wait=_retry_wait(self._ing.retry_base_delay_s, self._ing.retry_max_delay_s),
            retry=retry_if_exception(_is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if token is not None:
                    token.raise_if_cancelled()
                async with self._permits.permit():
                    # the run may have been cancelled while waiting for a permit
                    if token is not None:
                        token.raise_if_cancelled()
                    result = await self._send(url, payload, timeout)
                if unwrap is not None:
                    result = unwrap(result)
        return result

    async def _rpc(
        self,
        method: str,
        params: Any,
        n_items: int = 1,
        token: Optional[CancelToken] = None,
    ) -> Any:
        payload = {"jsonrpc": "2.0", "id": method, "method": method, "params": params}

        def unwrap(data: Any) -> Any:
            if not isinstance(data, dict):
                raise UpstreamError(f"{method}: unexpected response shape")
            err = data.get("error")
            if err:
                code = err.get("code") if isinstance(err, dict) else None
                msg = err.get("message") if isinstance(err, dict) else str(err)
                if code == _RPC_RATE_LIMITED:
                    raise RateLimitedError(f"{method}: {msg}")
                if code == _RPC_INVALID_PARAMS:
                    raise UpstreamError(f"{method}: {msg}", status_code=400)
                raise UpstreamError(f"{method}: {msg}")
            return data.get("result")

        return await self._post(
            self._cfg.rpc_url, payload, n_items=n_items, token=token, unwrap=unwrap
        )

    async def get_signatures(
        self,
        account: str,
        before: Optional[str] = None,
        limit: int = 1000,
        token: Optional[CancelToken] = None,
    ) -> List[Dict[str, Any]]:
        opts: Dict[str, Any] = {"limit": limit}
        if before:
            opts["before"] = before
        result = await self._rpc("getSignaturesForAddress", [account, opts], token=token)
        return list(result or [])

    async def get_transactions(
        self, signatures: Sequence[str], token: Optional[CancelToken] = None
    ) -> List[Optional[Dict[str, Any]]]:
        if not signatures:
            return []
        url = f"{self._cfg.api_base.rstrip('/')}/transactions"
        data = await self._post(
            url, {"transactions": list(signatures)}, n_items=len(signatures), token=token
        )
        if not isinstance(data, list):
            raise UpstreamError("transactions: unexpected response shape")
        return data

    async def get_asset_batch(self, asset_ids: Sequence[str]) -> List[Optional[Dict[str, Any]]]:
        if not asset_ids:
            return []
        result = await self._rpc(
            "getAssetBatch", {"ids": list(asset_ids)}, n_items=len(asset_ids)
        )
        return list(result or [])
