from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set

from ..config import EngineConfig, USDC_MINT, USDT_MINT, WSOL_MINT
from ..models import (
    ACQUISITIONS,
    BUY,
    DISPOSALS,
    SELL,
    TRANSFER_IN,
    TRANSFER_OUT,
    BuyLot,
    DailyAggregate,
    LedgerEntry,
    NetFlow,
    NormalizedEvent,
    PnlResult,
    Position,
    Resolution,
    Summary,
)


logger = logging.getLogger(__name__)

ProgressFn = Callable[[float, str], Awaitable[None]]

_SANDWICH_PATTERNS = {(BUY, SELL, BUY), (SELL, BUY, SELL)}
_QUOTE_SYMBOLS = {"USDC", "USDT", "BUSD", "DAI", "USDH", "UXD", "USDR", "PAI", "WSOL"}


def prepare_events(events: Iterable[NormalizedEvent]) -> List[NormalizedEvent]:
    """Drop repeated ids (first wins) and order by timestamp; ties keep input order."""
    seen: Set[str] = set()
    unique: List[NormalizedEvent] = []
    for e in events:
        if e.id in seen:
            continue
        seen.add(e.id)
        unique.append(e)
    unique.sort(key=lambda e: e.timestamp)
    return unique


def utc_date(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


class PnlEngine:
    """FIFO cost-basis ledger over normalized events, one Position per asset."""

    def __init__(
        self,
        cfg: EngineConfig,
        prices=None,
        quote_assets: Optional[Iterable[str]] = None,
        implausible_ref_amount: float = 10000.0,
    ) -> None:
        self._eps = cfg.dust_epsilon
        self._prices = prices
        self._quote = set(quote_assets or (USDC_MINT, USDT_MINT, WSOL_MINT))
        self._implausible = implausible_ref_amount

    async def _price_many(self, asset_ids: Sequence[str]) -> Dict[str, Resolution]:
        if not asset_ids or self._prices is None:
            return {}
        return await self._prices.price_many(asset_ids)

    # ---------------------- lot handling ----------------------

    @staticmethod
    def _consume(position: Position, units: float) -> tuple[float, float]:
        """Take ``units`` from the front of the lot queue. Returns (cost consumed, shortfall)."""
        remaining = units
        cost = 0.0
        lots = position.buy_lots
        while remaining > 0 and lots:
            lot = lots[0]
            if lot.asset_amount <= remaining:
                cost += lot.cost_basis_ref
                remaining -= lot.asset_amount
                lots.pop(0)
            else:
                portion = remaining / lot.asset_amount
                part = lot.cost_basis_ref * portion
                cost += part
                lot.asset_amount -= remaining
                lot.cost_basis_ref -= part
                remaining = 0.0
        return cost, max(0.0, remaining)

    def _acquire(self, position: Position, e: NormalizedEvent) -> None:
        cost = e.ref_amount + e.fee_ref_amount
        position.buy_lots.append(
            BuyLot(
                asset_amount=e.asset_amount,
                cost_basis_ref=cost,
                cost_per_unit=cost / e.asset_amount,
                acquired_at=e.timestamp,
            )
        )
        position.ref_spent += cost
        position.units_acquired += e.asset_amount

    def _dispose(
        self, position: Position, e: NormalizedEvent, est_price: Optional[float]
    ) -> LedgerEntry:
        proceeds = e.ref_amount
        unit_price = e.ref_price
        if e.kind == TRANSFER_OUT and e.is_estimated:
            unit_price = est_price or 0.0
            proceeds = e.asset_amount * unit_price

        cost, shortfall = self._consume(position, e.asset_amount)
        if shortfall > self._eps:
            # untracked inflow (transfer from before the window, missing record)
            logger.warning(
                "Disposal exceeds tracked supply asset=%s event=%s shortfall=%.6f priced_at=%.10f",
                position.asset_id,
                e.id,
                shortfall,
                unit_price,
            )
            cost += shortfall * unit_price
            position.flags.has_untracked_supply = True
            position.flags.untracked_units += shortfall

        realized = (proceeds - e.fee_ref_amount) - cost
        position.realized_pnl += realized
        position.ref_received += proceeds
        position.units_disposed += e.asset_amount
        return LedgerEntry(
            event_id=e.id,
            timestamp=e.timestamp,
            kind=e.kind,
            asset_id=e.asset_id,
            units=e.asset_amount,
            proceeds_ref=proceeds,
            consumed_cost_basis=cost,
            realized_pnl=realized,
        )

    # ---------------------- main entry ----------------------

    async def calculate(
        self,
        events: Iterable[NormalizedEvent],
        account: str,
        on_progress: Optional[ProgressFn] = None,
    ) -> PnlResult:
        ordered = prepare_events(events)
        positions: Dict[str, Position] = {}
        ledger: List[LedgerEntry] = []
        flow = NetFlow()

        estimate_assets = sorted(
            {e.asset_id for e in ordered if e.kind == TRANSFER_OUT and e.is_estimated}
        )
        prices = await self._price_many(estimate_assets)

        total = len(ordered)
        step = max(1, total // 10)
        for i, e in enumerate(ordered):
            if e.asset_amount <= 0:
                logger.warning("Ignoring non-positive amount event=%s", e.id)
                continue
            position = positions.get(e.asset_id)
            if position is None:
                position = Position(asset_id=e.asset_id, asset_symbol=e.asset_symbol)
                positions[e.asset_id] = position
            self._apply(position, e, prices, ledger, flow)
            if on_progress is not None and (i + 1) % step == 0:
                await on_progress((i + 1) / total * 0.9, f"Processed {i + 1}/{total} events")

        for position in positions.values():
            self._flag_suspicious(position)

        active = [p.asset_id for p in positions.values() if p.is_active]
        missing = [a for a in active if a not in prices]
        prices.update(await self._price_many(missing))
        for asset_id in active:
            self._revalue(positions[asset_id], prices.get(asset_id))

        summary = self.summarize(positions)
        daily = self.daily(ledger)
        if on_progress is not None:
            await on_progress(1.0, "P&L calculation complete")
        logger.info(
            "P&L %s events=%d positions=%d realized=%.4f unrealized=%.4f win_rate=%.2f",
            account,
            total,
            summary.total_positions,
            summary.total_realized_pnl,
            summary.total_unrealized_pnl,
            summary.win_rate,
        )
        return PnlResult(
            positions=positions, daily=daily, summary=summary, net_flow=flow, ledger=ledger
        )

    def _apply(
        self,
        position: Position,
        e: NormalizedEvent,
        prices: Dict[str, Resolution],
        ledger: List[LedgerEntry],
        flow: NetFlow,
    ) -> None:
        if position.first_trade_at is None or e.timestamp < position.first_trade_at:
            position.first_trade_at = e.timestamp
        if position.last_trade_at is None or e.timestamp > position.last_trade_at:
            position.last_trade_at = e.timestamp
        position.events.append(e)
        flow.fees_paid += e.fee_ref_amount

        if e.kind in ACQUISITIONS:
            self._acquire(position, e)
            if e.kind == BUY:
                flow.ref_spent += e.ref_amount
        elif e.kind in DISPOSALS:
            est = prices.get(e.asset_id)
            ledger.append(self._dispose(position, e, est.value if est else None))
            if e.kind == SELL:
                flow.ref_received += e.ref_amount
        else:
            raise ValueError(f"unknown event kind {e.kind!r}")

        if e.kind in (TRANSFER_IN, TRANSFER_OUT):
            position.flags.transfer_count += 1
            if e.is_estimated:
                position.flags.has_estimated_transfers = True
        if e.ref_amount > self._implausible:
            position.flags.has_suspicious_activity = True

        if position.units_acquired > 0:
            position.avg_buy_price = position.ref_spent / position.units_acquired
        if position.units_disposed > 0:
            position.avg_sell_price = position.ref_received / position.units_disposed
        position.current_balance = position.units_acquired - position.units_disposed
        position.is_active = position.current_balance > self._eps

    @staticmethod
    def _flag_suspicious(position: Position) -> None:
        evs = position.events
        for a, b, c in zip(evs, evs[1:], evs[2:]):
            if a.timestamp == b.timestamp == c.timestamp and (a.kind, b.kind, c.kind) in _SANDWICH_PATTERNS:
                position.flags.has_suspicious_activity = True
                logger.info(
                    "Sandwich pattern asset=%s events=%s,%s,%s", position.asset_id, a.id, b.id, c.id
                )
                return

    def _revalue(self, position: Position, price: Optional[Resolution]) -> None:
        remaining = position.remaining_cost_basis
        if price is not None and price.resolved:
            position.current_price_ref = price.value
            position.current_value_ref = position.current_balance * price.value
            position.unrealized_pnl = position.current_value_ref - remaining
            position.flags.price_unresolved = False
        else:
            # conservative: unpriced holdings are valued at zero
            position.current_price_ref = 0.0
            position.current_value_ref = 0.0
            position.unrealized_pnl = -remaining
            position.flags.price_unresolved = True

    # ---------------------- aggregates ----------------------

    def _is_quote(self, position: Position) -> bool:
        return position.asset_id in self._quote or (position.asset_symbol or "").upper() in _QUOTE_SYMBOLS

    def summarize(self, positions: Dict[str, Position]) -> Summary:
        s = Summary()
        realized = 0.0
        unrealized = 0.0
        for p in positions.values():
            s.total_positions += 1
            realized += p.realized_pnl
            unrealized += p.unrealized_pnl
            if p.realized_pnl > 0:
                s.profitable_positions += 1
            if p.is_active:
                s.active_positions += 1
            else:
                s.closed_positions += 1
                if p.realized_pnl > 0:
                    s.profitable_closed_positions += 1
            if not self._is_quote(p):
                s.buy_volume_ref += p.ref_spent
                s.sell_volume_ref += p.ref_received
        s.total_realized_pnl = realized
        s.total_unrealized_pnl = unrealized
        s.total_pnl = realized + unrealized
        s.total_volume_ref = s.buy_volume_ref + s.sell_volume_ref
        if s.closed_positions > 0:
            s.win_rate = s.profitable_closed_positions / s.closed_positions * 100
        return s

    @staticmethod
    def daily(ledger: Sequence[LedgerEntry]) -> List[DailyAggregate]:
        pnl: Dict[str, float] = defaultdict(float)
        counts: Dict[str, int] = defaultdict(int)
        assets: Dict[str, Set[str]] = defaultdict(set)
        for entry in ledger:
            day = utc_date(entry.timestamp)
            pnl[day] += entry.realized_pnl
            counts[day] += 1
            assets[day].add(entry.asset_id)
        return [
            DailyAggregate(
                date=day,
                realized_ref_pnl=pnl[day],
                event_count=counts[day],
                distinct_assets=len(assets[day]),
            )
            for day in sorted(pnl)
        ]
