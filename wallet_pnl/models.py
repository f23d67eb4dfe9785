from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


BUY = "BUY"
SELL = "SELL"
TRANSFER_IN = "TRANSFER_IN"
TRANSFER_OUT = "TRANSFER_OUT"

ACQUISITIONS = (BUY, TRANSFER_IN)
DISPOSALS = (SELL, TRANSFER_OUT)

# run statuses
PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

TERMINAL_STATUSES = (COMPLETED, FAILED, CANCELLED)


@dataclass(slots=True, frozen=True)
class NormalizedEvent:
    id: str  # transaction signature
    timestamp: int  # unix seconds
    kind: str  # BUY/SELL/TRANSFER_IN/TRANSFER_OUT
    asset_id: str
    asset_symbol: str
    asset_amount: float
    ref_amount: float
    fee_ref_amount: float
    is_estimated: bool = False
    raw_ref: Optional[str] = None  # upstream type/source label

    @property
    def ref_price(self) -> float:
        if self.asset_amount <= 0:
            return 0.0
        return self.ref_amount / self.asset_amount


@dataclass(slots=True)
class BuyLot:
    asset_amount: float
    cost_basis_ref: float
    cost_per_unit: float
    acquired_at: int


@dataclass(slots=True)
class PositionFlags:
    has_estimated_transfers: bool = False
    transfer_count: int = 0
    has_suspicious_activity: bool = False
    has_untracked_supply: bool = False
    untracked_units: float = 0.0
    price_unresolved: bool = False


@dataclass(slots=True)
class Position:
    asset_id: str
    asset_symbol: str
    ref_spent: float = 0.0
    ref_received: float = 0.0
    units_acquired: float = 0.0
    units_disposed: float = 0.0
    current_balance: float = 0.0
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    current_value_ref: float = 0.0
    current_price_ref: float = 0.0
    avg_buy_price: float = 0.0
    avg_sell_price: float = 0.0
    buy_lots: List[BuyLot] = field(default_factory=list)
    first_trade_at: Optional[int] = None
    last_trade_at: Optional[int] = None
    is_active: bool = False
    events: List[NormalizedEvent] = field(default_factory=list)
    flags: PositionFlags = field(default_factory=PositionFlags)

    @property
    def remaining_cost_basis(self) -> float:
        return sum(lot.cost_basis_ref for lot in self.buy_lots)

    @property
    def total_pnl(self) -> float:
        return self.realized_pnl + self.unrealized_pnl


@dataclass(slots=True)
class LedgerEntry:
    event_id: str
    timestamp: int
    kind: str  # SELL/TRANSFER_OUT
    asset_id: str
    units: float
    proceeds_ref: float
    consumed_cost_basis: float
    realized_pnl: float


@dataclass(slots=True)
class DailyAggregate:
    date: str  # YYYY-MM-DD (UTC)
    realized_ref_pnl: float
    event_count: int
    distinct_assets: int


@dataclass(slots=True)
class NetFlow:
    ref_spent: float = 0.0
    ref_received: float = 0.0
    fees_paid: float = 0.0

    @property
    def net(self) -> float:
        return self.ref_received - self.ref_spent - self.fees_paid


@dataclass(slots=True)
class Summary:
    total_realized_pnl: float = 0.0
    total_unrealized_pnl: float = 0.0
    total_pnl: float = 0.0
    total_positions: int = 0
    active_positions: int = 0
    closed_positions: int = 0
    profitable_closed_positions: int = 0
    profitable_positions: int = 0
    win_rate: float = 0.0
    buy_volume_ref: float = 0.0
    sell_volume_ref: float = 0.0
    total_volume_ref: float = 0.0
    method: str = "FIFO"


@dataclass(slots=True)
class PnlResult:
    positions: Dict[str, Position]
    daily: List[DailyAggregate]
    summary: Summary
    net_flow: NetFlow
    ledger: List[LedgerEntry]


@dataclass(slots=True)
class Resolution:
    """A resolver answer. ``value`` is None when no source succeeded."""

    value: Optional[float] = None
    source: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.value is not None


@dataclass(slots=True)
class AssetMetadata:
    asset_id: str
    symbol: str
    name: str
    decimals: int
    known: bool  # False -> placeholder, cached with the short ttl


@dataclass(slots=True)
class Highlight:
    type: str
    title: str
    description: str
    value_primary: str
    value_secondary: str
    rank: int
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ProgressUpdate:
    account: str
    percent: int
    stage: str  # connect/scan/parse/calculate/save/finalize
    message: str
    status: str  # running/completed/failed/cancelled
    details: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None
    timestamp: int = 0
