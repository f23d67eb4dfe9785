from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import aiosqlite

from .models import DailyAggregate, Highlight, NormalizedEvent, Position


logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class Database:
    def __init__(self, sqlite_path: str) -> None:
        self._sqlite_path = sqlite_path
        self._conn: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        if self._conn is not None:
            return
        Path(self._sqlite_path).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._sqlite_path)
        self._conn.row_factory = aiosqlite.Row
        logger.info("DB connected: %s", self._sqlite_path)

    async def close(self) -> None:
        if self._conn is None:
            return
        await self._conn.close()
        self._conn = None
        logger.info("DB closed")

    async def init_schema(self) -> None:
        await self.connect()
        schema_path = Path(__file__).resolve().parent / "schema.sql"
        sql = schema_path.read_text(encoding="utf-8")
        await self._conn.executescript(sql)
        await self._conn.commit()
        logger.info("DB schema initialized from %s", schema_path)

    async def execute(self, sql: str, params: Sequence[Any] | Dict[str, Any] = ()) -> None:
        await self.connect()
        await self._conn.execute(sql, params)
        await self._conn.commit()

    async def executemany(self, sql: str, rows: Iterable[Sequence[Any]]) -> None:
        await self.connect()
        await self._conn.executemany(sql, rows)
        await self._conn.commit()

    async def fetchone(
        self, sql: str, params: Sequence[Any] | Dict[str, Any] = ()
    ) -> Optional[aiosqlite.Row]:
        await self.connect()
        async with self._conn.execute(sql, params) as cursor:
            return await cursor.fetchone()

    async def fetchall(
        self, sql: str, params: Sequence[Any] | Dict[str, Any] = ()
    ) -> List[aiosqlite.Row]:
        await self.connect()
        async with self._conn.execute(sql, params) as cursor:
            return await cursor.fetchall()

    # ---------------------- analyses ----------------------

    async def upsert_analysis(self, account: str, status: str, **fields: Any) -> None:
        """Insert or update the run row; only the given columns are touched on update."""
        allowed = {
            "progress",
            "stage",
            "signatures_found",
            "transactions_fetched",
            "events_processed",
            "newest_signature",
            "error_reason",
            "error_message",
            "summary_json",
            "started_at",
            "completed_at",
        }
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"unknown analysis columns: {sorted(unknown)}")
        cols = ["account", "status", "updated_at", *fields.keys()]
        values = [account, status, _now_ms(), *fields.values()]
        updates = ", ".join(f"{c}=excluded.{c}" for c in cols[1:])
        sql = f"""
        INSERT INTO analyses ({", ".join(cols)})
        VALUES ({", ".join("?" for _ in cols)})
        ON CONFLICT(account) DO UPDATE SET {updates}
        """
        await self.execute(sql, values)

    async def get_analysis(self, account: str) -> Optional[Dict[str, Any]]:
        row = await self.fetchone("SELECT * FROM analyses WHERE account=?", (account,))
        if row is None:
            return None
        data = dict(row)
        data["summary"] = json.loads(data.pop("summary_json") or "null")
        return data

    # ---------------------- transactions ----------------------

    async def upsert_transactions(self, account: str, events: Sequence[NormalizedEvent]) -> None:
        if not events:
            return
        sql = """
        INSERT INTO transactions (
          signature, account, timestamp, kind, asset_id, asset_symbol, asset_amount,
          ref_amount, ref_price, fee_ref_amount, is_estimated, raw_ref
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(account, signature) DO UPDATE SET
          timestamp=excluded.timestamp,
          kind=excluded.kind,
          asset_id=excluded.asset_id,
          asset_symbol=excluded.asset_symbol,
          asset_amount=excluded.asset_amount,
          ref_amount=excluded.ref_amount,
          ref_price=excluded.ref_price,
          fee_ref_amount=excluded.fee_ref_amount,
          is_estimated=excluded.is_estimated,
          raw_ref=excluded.raw_ref
        """
        rows = [
            (
                e.id,
                account,
                e.timestamp,
                e.kind,
                e.asset_id,
                e.asset_symbol,
                e.asset_amount,
                e.ref_amount,
                e.ref_price,
                e.fee_ref_amount,
                1 if e.is_estimated else 0,
                e.raw_ref,
            )
            for e in events
        ]
        await self.executemany(sql, rows)

    async def load_events(self, account: str) -> List[NormalizedEvent]:
        rows = await self.fetchall(
            "SELECT * FROM transactions WHERE account=? ORDER BY timestamp ASC, signature ASC",
            (account,),
        )
        return [
            NormalizedEvent(
                id=r["signature"],
                timestamp=int(r["timestamp"]),
                kind=r["kind"],
                asset_id=r["asset_id"],
                asset_symbol=r["asset_symbol"],
                asset_amount=float(r["asset_amount"]),
                ref_amount=float(r["ref_amount"]),
                fee_ref_amount=float(r["fee_ref_amount"]),
                is_estimated=bool(r["is_estimated"]),
                raw_ref=r["raw_ref"],
            )
            for r in rows
        ]

    async def get_last_trade_price(self, asset_id: str) -> Optional[float]:
        row = await self.fetchone(
            """
            SELECT ref_price FROM transactions
            WHERE asset_id=? AND kind IN ('BUY', 'SELL') AND ref_price > 0
            ORDER BY timestamp DESC
            LIMIT 1
            """,
            (asset_id,),
        )
        return float(row["ref_price"]) if row is not None else None

    # ---------------------- positions ----------------------

    async def upsert_positions(self, account: str, positions: Iterable[Position]) -> None:
        sql = """
        INSERT INTO positions (
          account, asset_id, asset_symbol, ref_spent, ref_received, units_acquired,
          units_disposed, current_balance, realized_pnl, unrealized_pnl, current_value_ref,
          current_price_ref, avg_buy_price, avg_sell_price, buy_lots_json, flags_json,
          first_trade_at, last_trade_at, is_active, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(account, asset_id) DO UPDATE SET
          asset_symbol=excluded.asset_symbol,
          ref_spent=excluded.ref_spent,
          ref_received=excluded.ref_received,
          units_acquired=excluded.units_acquired,
          units_disposed=excluded.units_disposed,
          current_balance=excluded.current_balance,
          realized_pnl=excluded.realized_pnl,
          unrealized_pnl=excluded.unrealized_pnl,
          current_value_ref=excluded.current_value_ref,
          current_price_ref=excluded.current_price_ref,
          avg_buy_price=excluded.avg_buy_price,
          avg_sell_price=excluded.avg_sell_price,
          buy_lots_json=excluded.buy_lots_json,
          flags_json=excluded.flags_json,
          first_trade_at=excluded.first_trade_at,
          last_trade_at=excluded.last_trade_at,
          is_active=excluded.is_active,
          updated_at=excluded.updated_at
        """
        now = _now_ms()
        rows = [
            (
                account,
                p.asset_id,
                p.asset_symbol,
                p.ref_spent,
                p.ref_received,
                p.units_acquired,
                p.units_disposed,
                p.current_balance,
                p.realized_pnl,
                p.unrealized_pnl,
                p.current_value_ref,
                p.current_price_ref,
                p.avg_buy_price,
                p.avg_sell_price,
                json.dumps([asdict(lot) for lot in p.buy_lots]),
                json.dumps(asdict(p.flags)),
                p.first_trade_at,
                p.last_trade_at,
                1 if p.is_active else 0,
                now,
            )
            for p in positions
        ]
        if rows:
            await self.executemany(sql, rows)

    async def get_positions(self, account: str) -> List[Dict[str, Any]]:
        rows = await self.fetchall(
            "SELECT * FROM positions WHERE account=? ORDER BY realized_pnl DESC", (account,)
        )
        out: List[Dict[str, Any]] = []
        for r in rows:
            data = dict(r)
            data["buy_lots"] = json.loads(data.pop("buy_lots_json"))
            data["flags"] = json.loads(data.pop("flags_json"))
            data["is_active"] = bool(data["is_active"])
            out.append(data)
        return out

    # ---------------------- daily / highlights ----------------------

    async def upsert_daily(
        self,
        account: str,
        daily: Sequence[DailyAggregate],
        usd_prices: Optional[Dict[str, float]] = None,
    ) -> None:
        sql = """
        INSERT INTO daily_pnl (
          account, date, realized_ref_pnl, realized_usd_pnl, ref_usd_price,
          event_count, distinct_assets
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(account, date) DO UPDATE SET
          realized_ref_pnl=excluded.realized_ref_pnl,
          realized_usd_pnl=excluded.realized_usd_pnl,
          ref_usd_price=excluded.ref_usd_price,
          event_count=excluded.event_count,
          distinct_assets=excluded.distinct_assets
        """
        usd_prices = usd_prices or {}
        rows = []
        for d in daily:
            price = usd_prices.get(d.date)
            rows.append(
                (
                    account,
                    d.date,
                    d.realized_ref_pnl,
                    d.realized_ref_pnl * price if price is not None else None,
                    price,
                    d.event_count,
                    d.distinct_assets,
                )
            )
        if rows:
            await self.executemany(sql, rows)

    async def get_daily(self, account: str) -> List[Dict[str, Any]]:
        rows = await self.fetchall(
            "SELECT * FROM daily_pnl WHERE account=? ORDER BY date ASC", (account,)
        )
        return [dict(r) for r in rows]

    async def upsert_highlights(self, account: str, highlights: Sequence[Highlight]) -> None:
        sql = """
        INSERT INTO highlights (
          account, type, title, description, value_primary, value_secondary, rank,
          metadata_json, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(account, type) DO UPDATE SET
          title=excluded.title,
          description=excluded.description,
          value_primary=excluded.value_primary,
          value_secondary=excluded.value_secondary,
          rank=excluded.rank,
          metadata_json=excluded.metadata_json,
          updated_at=excluded.updated_at
        """
        now = _now_ms()
        rows = [
            (
                account,
                h.type,
                h.title,
                h.description,
                h.value_primary,
                h.value_secondary,
                h.rank,
                json.dumps(h.metadata, default=str),
                now,
            )
            for h in highlights
        ]
        if rows:
            await self.executemany(sql, rows)

    async def get_highlights(self, account: str) -> List[Dict[str, Any]]:
        rows = await self.fetchall(
            "SELECT * FROM highlights WHERE account=? ORDER BY rank ASC", (account,)
        )
        out = []
        for r in rows:
            data = dict(r)
            data["metadata"] = json.loads(data.pop("metadata_json"))
            out.append(data)
        return out

    # ---------------------- reference prices ----------------------

    async def upsert_reference_price(self, date: str, usd_price: float, source: str) -> None:
        sql = """
        INSERT INTO reference_prices (date, usd_price, source, updated_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(date) DO UPDATE SET
          usd_price=excluded.usd_price,
          source=excluded.source,
          updated_at=excluded.updated_at
        """
        await self.execute(sql, (date, usd_price, source, _now_ms()))

    async def get_reference_price(self, date: str) -> Optional[float]:
        row = await self.fetchone("SELECT usd_price FROM reference_prices WHERE date=?", (date,))
        return float(row["usd_price"]) if row is not None else None

    async def get_closest_reference_price(self, date: str) -> Optional[float]:
        row = await self.fetchone(
            """
            SELECT usd_price FROM reference_prices
            ORDER BY ABS(julianday(date) - julianday(?)), date DESC
            LIMIT 1
            """,
            (date,),
        )
        return float(row["usd_price"]) if row is not None else None
