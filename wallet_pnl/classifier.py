from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .config import ClassifierConfig
from .models import BUY, SELL, TRANSFER_IN, TRANSFER_OUT, NormalizedEvent


logger = logging.getLogger(__name__)

SKIP_NATIVE_ONLY = "native_only"
SKIP_QUOTE_ONLY = "quote_only"
SKIP_NOT_INVOLVED = "not_involved"
SKIP_ZERO_AMOUNT = "zero_amount"
SKIP_PARSE_ERROR = "parse_error"

UNKNOWN_SYMBOL = "UNKNOWN"

_AMOUNT_EPS = 1e-12


class TradeKind(Enum):
    TRADE = "trade"
    TRANSFER = "transfer"


@dataclass(slots=True, frozen=True)
class SwapFeatures:
    tagged_swap: bool  # upstream type says SWAP
    has_swap_instruction: bool  # a swap program appears in the instruction tree
    opposite_native_flow: bool  # native currency moved against the asset


def classify_features(features: SwapFeatures) -> TradeKind:
    if features.tagged_swap or features.has_swap_instruction or features.opposite_native_flow:
        return TradeKind.TRADE
    return TradeKind.TRANSFER


@dataclass(slots=True)
class Classification:
    event: Optional[NormalizedEvent] = None
    skip_reason: Optional[str] = None
    implausible: bool = False


@dataclass(slots=True)
class ClassifiedBatch:
    events: List[NormalizedEvent]
    skipped: Dict[str, int] = field(default_factory=dict)
    duplicates: int = 0
    implausible: int = 0


@dataclass(slots=True)
class _Flows:
    """Reference-currency movement for the analyzed account, fee excluded."""

    native_in: float = 0.0
    native_out: float = 0.0
    wrapped_in: float = 0.0
    wrapped_out: float = 0.0
    net_change: Optional[float] = None  # accountData balance delta with the fee added back

    def spent(self) -> float:
        if self.net_change is not None and self.net_change < -_AMOUNT_EPS:
            return -self.net_change
        if self.native_out > _AMOUNT_EPS:
            return self.native_out
        return self.wrapped_out

    def received(self) -> float:
        if self.net_change is not None and self.net_change > _AMOUNT_EPS:
            return self.net_change
        if self.native_in > _AMOUNT_EPS:
            return self.native_in
        return self.wrapped_in


class TransactionClassifier:
    """Maps one enriched record plus the analyzed account to at most one event."""

    def __init__(self, cfg: ClassifierConfig) -> None:
        self._cfg = cfg
        self._quote = set(cfg.quote_mints)
        self._ref_mint = cfg.reference_mint
        self._scale = float(10 ** cfg.native_decimals)

    # ---------------------- features ----------------------

    def has_swap_instruction(self, record: Dict[str, Any]) -> bool:
        markers = self._cfg.swap_program_markers
        for ix in record.get("instructions") or []:
            programs = [ix.get("programId") or ""]
            programs.extend(inner.get("programId") or "" for inner in ix.get("innerInstructions") or [])
            for program_id in programs:
                if any(m in program_id for m in markers):
                    return True
        return False

    @staticmethod
    def is_tagged_swap(record: Dict[str, Any]) -> bool:
        if (record.get("type") or "").upper() == "SWAP":
            return True
        events = record.get("events") or {}
        return bool(events.get("swap"))

    def _flows(self, record: Dict[str, Any], account: str, fee: float) -> _Flows:
        flows = _Flows()
        for t in record.get("nativeTransfers") or []:
            amount = float(t.get("amount") or 0) / self._scale
            if t.get("fromUserAccount") == account:
                flows.native_out += amount
            if t.get("toUserAccount") == account:
                flows.native_in += amount
        for t in record.get("tokenTransfers") or []:
            if t.get("mint") != self._ref_mint:
                continue
            amount = float(t.get("tokenAmount") or 0)
            if t.get("fromUserAccount") == account:
                flows.wrapped_out += amount
            if t.get("toUserAccount") == account:
                flows.wrapped_in += amount
        for entry in record.get("accountData") or []:
            if entry.get("account") == account and entry.get("nativeBalanceChange") is not None:
                flows.net_change = float(entry["nativeBalanceChange"]) / self._scale + fee
                break
        return flows

    # ---------------------- classification ----------------------

    def classify(self, record: Dict[str, Any], account: str) -> Classification:
        transfers = [t for t in record.get("tokenTransfers") or [] if t.get("mint")]
        if not transfers:
            return Classification(skip_reason=SKIP_NATIVE_ONLY)
        if all(t["mint"] in self._quote for t in transfers):
            return Classification(skip_reason=SKIP_QUOTE_ONLY)

        mine = [
            t
            for t in transfers
            if t["mint"] not in self._quote
            and account in (t.get("fromUserAccount"), t.get("toUserAccount"))
        ]
        if not mine:
            return Classification(skip_reason=SKIP_NOT_INVOLVED)

        asset_id = mine[0]["mint"]
        symbol = UNKNOWN_SYMBOL
        net_units = 0.0
        for t in mine:
            if t["mint"] != asset_id:
                continue
            symbol = t.get("tokenSymbol") or t.get("symbol") or symbol
            amount = float(t.get("tokenAmount") or 0)
            if t.get("toUserAccount") == account:
                net_units += amount
            if t.get("fromUserAccount") == account:
                net_units -= amount
        if abs(net_units) <= _AMOUNT_EPS:
            return Classification(skip_reason=SKIP_ZERO_AMOUNT)
        incoming = net_units > 0

        fee = 0.0
        if record.get("feePayer") == account:
            fee = float(record.get("fee") or 0) / self._scale
        flows = self._flows(record, account, fee)

        opposite = flows.spent() > _AMOUNT_EPS if incoming else flows.received() > _AMOUNT_EPS
        features = SwapFeatures(
            tagged_swap=self.is_tagged_swap(record),
            has_swap_instruction=self.has_swap_instruction(record),
            opposite_native_flow=opposite,
        )
        trade = classify_features(features) is TradeKind.TRADE

        if trade:
            kind = BUY if incoming else SELL
            ref_amount = flows.spent() if incoming else flows.received()
            is_estimated = False
        else:
            kind = TRANSFER_IN if incoming else TRANSFER_OUT
            ref_amount = 0.0
            if flows.net_change is not None:
                # swap tagged upstream as a plain transfer
                ref_amount = flows.spent() if incoming else flows.received()
            is_estimated = ref_amount <= _AMOUNT_EPS

        implausible = ref_amount > self._cfg.implausible_ref_amount
        if implausible:
            logger.warning(
                "Implausible reference amount %.4f in %s (%s %s), check upstream parsing",
                ref_amount,
                record.get("signature"),
                kind,
                asset_id,
            )

        event = NormalizedEvent(
            id=record["signature"],
            timestamp=int(record["timestamp"]),
            kind=kind,
            asset_id=asset_id,
            asset_symbol=symbol,
            asset_amount=abs(net_units),
            ref_amount=ref_amount,
            fee_ref_amount=fee,
            is_estimated=is_estimated,
            raw_ref=f"{record.get('type') or 'UNKNOWN'}/{record.get('source') or 'UNKNOWN'}",
        )
        return Classification(event=event, implausible=implausible)

    def classify_many(self, records: Iterable[Dict[str, Any]], account: str) -> ClassifiedBatch:
        events: List[NormalizedEvent] = []
        skipped: Counter = Counter()
        seen: set[str] = set()
        duplicates = 0
        implausible = 0
        for record in records:
            sig = record.get("signature") if isinstance(record, dict) else None
            if sig is not None and sig in seen:
                duplicates += 1
                continue
            try:
                result = self.classify(record, account)
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning("Dropping unparseable record %s: %s", sig, e)
                skipped[SKIP_PARSE_ERROR] += 1
                continue
            if sig is not None:
                seen.add(sig)
            if result.event is None:
                skipped[result.skip_reason or SKIP_PARSE_ERROR] += 1
                continue
            if result.implausible:
                implausible += 1
            events.append(result.event)
        if duplicates:
            logger.info("Dropped %d duplicate records", duplicates)
        return ClassifiedBatch(
            events=events, skipped=dict(skipped), duplicates=duplicates, implausible=implausible
        )
