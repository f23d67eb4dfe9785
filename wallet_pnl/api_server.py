from __future__ import annotations

import asyncio
import logging
import zlib
from typing import Any, Dict

import msgpack
from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .errors import InvalidAccountError, RunAlreadyActiveError
from .models import RUNNING
from .orchestrator import describe_active
from .runtime import AnalysisRuntime


logger = logging.getLogger(__name__)


def _pack(payload: Dict[str, Any]) -> bytes:
    return zlib.compress(msgpack.packb(payload, use_bin_type=True))


def create_app(runtime: AnalysisRuntime) -> FastAPI:
    settings = runtime.settings
    app = FastAPI(title="wallet-pnl", root_path=settings.api.base_path or "")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    orchestrator = runtime.orchestrator

    @app.get("/api/health")
    async def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "active": orchestrator.get_active_count(),
            "permits_in_use": runtime.coordinator.permits.in_use,
        }

    @app.post("/api/analyze/{account}", status_code=202)
    async def start_analysis(account: str, force: bool = Query(False)) -> Dict[str, Any]:
        try:
            handle = orchestrator.start_run(account, force=force)
        except InvalidAccountError as e:
            raise HTTPException(status_code=400, detail={"reason": e.reason, "message": str(e)})
        except RunAlreadyActiveError as e:
            raise HTTPException(status_code=409, detail={"reason": e.reason, "message": str(e)})
        return {"account": handle.account, "status": handle.status, "started_at": handle.started_at}

    @app.delete("/api/analyze/{account}")
    async def cancel_analysis(account: str) -> Dict[str, Any]:
        if not orchestrator.cancel_run(account):
            raise HTTPException(status_code=404, detail="no active analysis")
        return {"account": account, "cancelled": True}

    @app.get("/api/analyses/active")
    async def active() -> Dict[str, Any]:
        runs = describe_active(orchestrator)
        return {"count": len(runs), "runs": runs}

    @app.get("/api/analyses/{account}/progress")
    async def progress(account: str) -> Dict[str, Any]:
        last = await runtime.hub.last(account)
        if last is not None:
            return last
        row = await runtime.db.get_analysis(account)
        if row is None:
            raise HTTPException(status_code=404, detail="unknown account")
        return {
            "account": account,
            "percent": row["progress"],
            "stage": row["stage"],
            "status": row["status"],
            "reason": row["error_reason"],
            "message": row["error_message"] or "",
        }

    @app.get("/api/analyses/{account}")
    async def analysis(account: str) -> Dict[str, Any]:
        row = await runtime.db.get_analysis(account)
        if row is None:
            raise HTTPException(status_code=404, detail="unknown account")
        return {
            "analysis": row,
            "positions": await runtime.db.get_positions(account),
            "daily": await runtime.db.get_daily(account),
            "highlights": await runtime.db.get_highlights(account),
        }

    @app.websocket("/ws/progress/{account}")
    async def ws_progress(websocket: WebSocket, account: str) -> None:
        await websocket.accept()
        q = runtime.hub.subscribe(account)
        try:
            last = await runtime.hub.last(account)
            if last is not None:
                await websocket.send_bytes(_pack(last))
            while True:
                try:
                    update = await asyncio.wait_for(q.get(), timeout=30.0)
                except asyncio.TimeoutError:
                    await websocket.send_bytes(_pack({"account": account, "type": "ping"}))
                    continue
                await websocket.send_bytes(_pack(update))
                if update.get("status") != RUNNING:
                    break
            await websocket.close()
        except WebSocketDisconnect:
            return
        except Exception:
            logger.exception("WS progress error account=%s", account)
            try:
                await websocket.close()
            except RuntimeError:
                pass
        finally:
            runtime.hub.unsubscribe(account, q)

    return app
