from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..models import BUY, SELL, Highlight, PnlResult, Position
from .pnl_engine import utc_date


logger = logging.getLogger(__name__)

HIGHLIGHTS_VERSION = 3
_DAY_S = 86400


def round_ref(value: float) -> float:
    return round(value, 4)


def round_usd(value: float) -> float:
    return round(value, 2)


def format_usd(value: float) -> str:
    sign = "+" if value >= 0 else "-"
    return f"{sign}${abs(round_usd(value)):,.2f}"


def format_ref(value: float) -> str:
    sign = "+" if value >= 0 else ""
    return f"{sign}{round_ref(value)}"


def win_rate_grade(win_rate: float) -> str:
    for threshold, grade in ((80, "S"), (70, "A"), (60, "B"), (50, "C"), (40, "D")):
        if win_rate >= threshold:
            return grade
    return "F"


class InsightsGenerator:
    """Six ranked highlights derived from a finished ledger. Every highlight has a no-data form."""

    def __init__(self, ref_symbol: str = "SOL") -> None:
        self._ref_symbol = ref_symbol

    def _values(self, value_ref: float, ref_usd: Optional[float]) -> tuple[str, str, Dict[str, Any]]:
        meta: Dict[str, Any] = {"pnl_ref": round_ref(value_ref)}
        if ref_usd:
            usd = value_ref * ref_usd
            meta["pnl_usd"] = round_usd(usd)
            return format_usd(usd), f"({format_ref(value_ref)} {self._ref_symbol})", meta
        meta["pnl_usd"] = None
        return f"{format_ref(value_ref)} {self._ref_symbol}", "", meta

    def generate(self, result: PnlResult, ref_usd: Optional[float] = None) -> List[Highlight]:
        builders = (
            self.overall_pnl,
            self.biggest_win,
            self.biggest_loss,
            self.win_rate,
            self.longest_hold,
            self.best_profit_day,
        )
        out: List[Highlight] = []
        for rank, build in enumerate(builders, start=1):
            h = build(result, ref_usd)
            h.rank = rank
            h.metadata["highlights_version"] = HIGHLIGHTS_VERSION
            out.append(h)
        logger.info("Generated %d highlights (v%d)", len(out), HIGHLIGHTS_VERSION)
        return out

    def overall_pnl(self, result: PnlResult, ref_usd: Optional[float]) -> Highlight:
        s = result.summary
        primary, secondary, meta = self._values(s.total_pnl, ref_usd)
        meta.update(
            realized_pnl_ref=round_ref(s.total_realized_pnl),
            unrealized_pnl_ref=round_ref(s.total_unrealized_pnl),
            is_profit=s.total_pnl >= 0,
            closed_positions=s.closed_positions,
            active_positions=s.active_positions,
        )
        return Highlight(
            type="overall_pnl",
            title="Overall P&L",
            description="Your total profit/loss (realized + unrealized)",
            value_primary=primary,
            value_secondary=secondary,
            rank=0,
            metadata=meta,
        )

    def _extreme(
        self, result: PnlResult, ref_usd: Optional[float], winners: bool
    ) -> Optional[Highlight]:
        candidates = [
            p for p in result.positions.values() if (p.realized_pnl > 0 if winners else p.realized_pnl < 0)
        ]
        if not candidates:
            return None
        pick: Position = (max if winners else min)(candidates, key=lambda p: p.realized_pnl)
        primary, secondary, meta = self._values(pick.realized_pnl, ref_usd)
        meta.update(asset_symbol=pick.asset_symbol, asset_id=pick.asset_id)
        if winners:
            description = f"Your most profitable token was {pick.asset_symbol}"
        else:
            description = f"Your biggest loss was on {pick.asset_symbol}"
        return Highlight(
            type="biggest_win" if winners else "biggest_loss",
            title="Biggest Win" if winners else "Biggest Loss",
            description=description,
            value_primary=primary,
            value_secondary=secondary,
            rank=0,
            metadata=meta,
        )

    def _empty_money(self, type_: str, title: str, description: str, **extra: Any) -> Highlight:
        meta: Dict[str, Any] = {"pnl_ref": 0, "pnl_usd": 0, "no_data": True}
        meta.update(extra)
        return Highlight(
            type=type_,
            title=title,
            description=description,
            value_primary="$0",
            value_secondary=f"(0 {self._ref_symbol})",
            rank=0,
            metadata=meta,
        )

    def biggest_win(self, result: PnlResult, ref_usd: Optional[float]) -> Highlight:
        h = self._extreme(result, ref_usd, winners=True)
        if h is not None:
            return h
        return self._empty_money(
            "biggest_win",
            "Biggest Win",
            "No profitable trades yet - your first win is coming!",
            asset_symbol=None,
            asset_id=None,
        )

    def biggest_loss(self, result: PnlResult, ref_usd: Optional[float]) -> Highlight:
        h = self._extreme(result, ref_usd, winners=False)
        if h is not None:
            return h
        return self._empty_money(
            "biggest_loss",
            "Biggest Loss",
            "No losses yet - keep up the winning streak!",
            asset_symbol=None,
            asset_id=None,
        )

    def win_rate(self, result: PnlResult, ref_usd: Optional[float]) -> Highlight:
        s = result.summary
        if s.closed_positions == 0:
            return Highlight(
                type="win_rate",
                title="Win Rate",
                description="No completed trades yet - close a position to see your win rate",
                value_primary="0%",
                value_secondary="0/0 wins",
                rank=0,
                metadata={
                    "win_rate": 0,
                    "profitable_positions": 0,
                    "closed_positions": 0,
                    "grade": "N/A",
                    "no_data": True,
                },
            )
        rate = round(s.win_rate, 2)
        return Highlight(
            type="win_rate",
            title="Win Rate",
            description=f"{rate:g}% of your trades were profitable",
            value_primary=f"{rate:g}%",
            value_secondary=f"{s.profitable_closed_positions}/{s.closed_positions} wins",
            rank=0,
            metadata={
                "win_rate": rate,
                "profitable_positions": s.profitable_closed_positions,
                "closed_positions": s.closed_positions,
                "grade": win_rate_grade(s.win_rate),
            },
        )

    def longest_hold(self, result: PnlResult, ref_usd: Optional[float]) -> Highlight:
        best: Optional[tuple[int, Position, int, int]] = None
        for p in result.positions.values():
            first_buy = next((e.timestamp for e in p.events if e.kind == BUY), None)
            first_sell = next((e.timestamp for e in p.events if e.kind == SELL), None)
            if first_buy is None or first_sell is None:
                continue
            days = (first_sell - first_buy) // _DAY_S
            if days > 0 and (best is None or days > best[0]):
                best = (days, p, first_buy, first_sell)
        if best is None:
            return Highlight(
                type="longest_hold",
                title="Diamond Hands",
                description="No completed holds yet - keep holding!",
                value_primary="0 days",
                value_secondary="N/A",
                rank=0,
                metadata={
                    "asset_symbol": None,
                    "asset_id": None,
                    "hold_days": 0,
                    "buy_date": None,
                    "sell_date": None,
                    "no_data": True,
                },
            )
        days, p, bought, sold = best
        return Highlight(
            type="longest_hold",
            title="Diamond Hands",
            description=f"You held {p.asset_symbol} for {days} days before selling",
            value_primary=f"{days} days",
            value_secondary=p.asset_symbol,
            rank=0,
            metadata={
                "asset_symbol": p.asset_symbol,
                "asset_id": p.asset_id,
                "hold_days": days,
                "buy_date": datetime.fromtimestamp(bought, tz=timezone.utc).isoformat(),
                "sell_date": datetime.fromtimestamp(sold, tz=timezone.utc).isoformat(),
            },
        )

    def best_profit_day(self, result: PnlResult, ref_usd: Optional[float]) -> Highlight:
        profit: Dict[str, float] = defaultdict(float)
        symbols: Dict[str, List[str]] = defaultdict(list)
        for entry in result.ledger:
            if entry.kind != SELL or entry.realized_pnl <= 0:
                continue
            day = utc_date(entry.timestamp)
            profit[day] += entry.realized_pnl
            position = result.positions.get(entry.asset_id)
            symbol = position.asset_symbol if position else entry.asset_id
            if symbol not in symbols[day]:
                symbols[day].append(symbol)
        if not profit:
            return self._empty_money(
                "best_profit_day",
                "Best Day",
                "No profitable days yet - your best day is ahead!",
                date=None,
                tokens="",
            )
        day = max(sorted(profit), key=lambda d: profit[d])
        primary, secondary, meta = self._values(profit[day], ref_usd)
        d = datetime.strptime(day, "%Y-%m-%d")
        pretty = f"{d:%b} {d.day}, {d.year}"
        meta.update(date=day, tokens=", ".join(symbols[day]))
        return Highlight(
            type="best_profit_day",
            title="Best Day",
            description=f"Your most profitable day was {pretty}",
            value_primary=primary,
            value_secondary=secondary,
            rank=0,
            metadata=meta,
        )
