"""
Trade Accountant — FIFO round-trip analytics over the trade journal.

Each SELL is paired with the oldest unmatched BUY of the same account.
A SELL with nothing to pair against (journal started mid-session, manual
trade outside the engine) is logged and left out of the pairs.

Per pair:
    profit_loss       = sell_total − buy_total
    profit_loss_pct   = profit_loss / buy_total × 100
    avg_confidence    = mean of the two legs' confidence
    holding_days      = whole days between the legs

Report (week / month / quarter / year / all):
    success rate           share of pairs with P/L > 0
    high / low confidence  success rate for pairs at ≥80 / <80 avg confidence
    fees                   FEE_RATE × (total bought + total sold)
    net after fees         gross paired P/L − fees
    monthly breakdown      pairs grouped by the month of their SELL

Usage:
    accountant = TradeAccountant(journal)
    report = accountant.report("month", account_id="acct-1")
    stats  = accountant.all_time_stats()
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

import pandas as pd

from ..errors import InvariantViolation
from ..strategy import engine_config as cfg
from .trade_journal import TradeJournal, TradeRecord

logger = logging.getLogger(__name__)

PERIOD_DAYS = {
    "week":    7,
    "month":   30,
    "quarter": 90,
    "year":    365,
}


@dataclass(frozen=True)
class TradePair:
    account_id:      str
    buy:             TradeRecord
    sell:            TradeRecord

    @property
    def profit_loss(self) -> float:
        return self.sell.total_value - self.buy.total_value

    @property
    def profit_loss_pct(self) -> float:
        if not self.buy.total_value:
            return 0.0
        return self.profit_loss / self.buy.total_value * 100

    @property
    def avg_confidence(self) -> float:
        return (self.buy.confidence + self.sell.confidence) / 2

    @property
    def holding_days(self) -> int:
        return int((self.sell.ts - self.buy.ts).total_seconds() // 86_400)

    def to_dict(self) -> dict:
        return {
            "account_id":      self.account_id,
            "buy_date":        self.buy.timestamp,
            "sell_date":       self.sell.timestamp,
            "buy_price":       self.buy.unit_price,
            "sell_price":      self.sell.unit_price,
            "quantity":        self.buy.quantity,
            "buy_total":       round(self.buy.total_value, 2),
            "sell_total":      round(self.sell.total_value, 2),
            "profit_loss":     round(self.profit_loss, 2),
            "profit_loss_pct": round(self.profit_loss_pct, 2),
            "avg_confidence":  round(self.avg_confidence, 1),
            "holding_days":    self.holding_days,
        }


def pair_trades(trades: Sequence[TradeRecord]) -> List[TradePair]:
    """FIFO-pair trades. Input order is irrelevant; pairing follows (timestamp, sequence)."""
    ordered = sorted(trades, key=lambda t: (t.ts, t.sequence))
    pending: Dict[str, deque] = {}
    pairs: List[TradePair] = []

    for trade in ordered:
        queue = pending.setdefault(trade.account_id, deque())
        if trade.action == "BUY":
            queue.append(trade)
            continue
        if trade.action != "SELL":
            continue
        if not queue:
            logger.warning(
                f"accountant: SELL #{trade.sequence} for {trade.account_id} has no open BUY — skipped"
            )
            continue
        buy = queue.popleft()
        if trade.ts < buy.ts:
            logger.critical(f"accountant: SELL #{trade.sequence} precedes its BUY #{buy.sequence}")
            raise InvariantViolation(
                f"FIFO desync: SELL {trade.timestamp} paired with later BUY {buy.timestamp}"
            )
        pairs.append(TradePair(trade.account_id, buy, trade))
    return pairs


def _success_rate(pairs: Sequence[TradePair]) -> float:
    if not pairs:
        return 0.0
    return sum(1 for p in pairs if p.profit_loss_pct > 0) / len(pairs) * 100


def monthly_breakdown(pairs: Sequence[TradePair]) -> List[dict]:
    if not pairs:
        return []
    df = pd.DataFrame(
        {
            "month":   [p.sell.ts.strftime("%Y-%m") for p in pairs],
            "pnl":     [p.profit_loss for p in pairs],
            "success": [p.profit_loss_pct > 0 for p in pairs],
        }
    )
    grouped = df.groupby("month").agg(
        trades=("pnl", "size"),
        profit_loss=("pnl", "sum"),
        successful_trades=("success", "sum"),
    )
    rows = []
    for month, row in grouped.sort_index().iterrows():
        trades = int(row["trades"])
        successful = int(row["successful_trades"])
        rows.append({
            "month":             month,
            "trades":            trades,
            "successful_trades": successful,
            "failed_trades":     trades - successful,
            "profit_loss":       round(float(row["profit_loss"]), 2),
            "success_rate":      round(successful / trades * 100, 1) if trades else 0.0,
        })
    return rows


class TradeAccountant:

    def __init__(self, journal: TradeJournal, fee_rate: float = cfg.FEE_RATE):
        self.journal = journal
        self.fee_rate = fee_rate

    def pairs(self, account_id: Optional[str] = None) -> List[TradePair]:
        return pair_trades(self.journal.get_trades(account_id))

    def report(
        self,
        period: str = "month",
        account_id: Optional[str] = None,
        sources: Optional[Sequence[str]] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        if period != "all" and period not in PERIOD_DAYS:
            raise ValueError(f"unknown period {period!r}")
        now = now or datetime.now(timezone.utc)
        since = None if period == "all" else now - timedelta(days=PERIOD_DAYS[period])

        trades = self.journal.get_trades(account_id, since=since)
        if sources:
            trades = [t for t in trades if t.source in sources]
        return self.summarize(trades, period)

    def summarize(self, trades: Sequence[TradeRecord], period: str = "all") -> dict:
        buys = [t for t in trades if t.action == "BUY"]
        sells = [t for t in trades if t.action == "SELL"]
        pairs = pair_trades(trades)

        bought_qty = sum(t.quantity for t in buys)
        sold_qty = sum(t.quantity for t in sells)
        spent = sum(t.total_value for t in buys)
        received = sum(t.total_value for t in sells)

        gross = sum(p.profit_loss for p in pairs)
        invested = sum(p.buy.total_value for p in pairs)
        fees = self.fee_rate * (spent + received)

        winners = [p for p in pairs if p.profit_loss_pct > 0]
        losers = [p for p in pairs if p.profit_loss_pct <= 0]
        best = max(winners, key=lambda p: p.profit_loss_pct, default=None)
        worst = min(losers, key=lambda p: p.profit_loss_pct, default=None)

        high = [p for p in pairs if p.avg_confidence >= cfg.HIGH_CONFIDENCE_SPLIT]
        low = [p for p in pairs if p.avg_confidence < cfg.HIGH_CONFIDENCE_SPLIT]

        return {
            "period":                     period,
            "total_trades":               len(trades),
            "buy_trades":                 len(buys),
            "sell_trades":                len(sells),
            "pairs":                      len(pairs),
            "successful_trades":          len(winners),
            "failed_trades":              len(losers),
            "success_rate":               round(_success_rate(pairs), 2),
            "total_quantity_bought":      bought_qty,
            "total_quantity_sold":        sold_qty,
            "total_spent":                round(spent, 2),
            "total_received":             round(received, 2),
            "net_profit_loss":            round(gross, 2),
            "net_profit_loss_pct":        round(gross / invested * 100, 2) if invested else 0.0,
            "avg_buy_price":              round(sum(t.unit_price for t in buys) / len(buys), 2) if buys else 0.0,
            "avg_sell_price":             round(sum(t.unit_price for t in sells) / len(sells), 2) if sells else 0.0,
            "avg_confidence":             round(sum(t.confidence for t in trades) / len(trades), 1) if trades else 0.0,
            "high_confidence_success_rate": round(_success_rate(high), 2),
            "low_confidence_success_rate":  round(_success_rate(low), 2),
            "best_trade":                 best.to_dict() if best else None,
            "worst_trade":                worst.to_dict() if worst else None,
            "fee_percent":                self.fee_rate * 100,
            "total_fees_paid":            round(fees, 2),
            "net_profit_loss_after_fees": round(gross - fees, 2),
            "trade_pairs":                [p.to_dict() for p in pairs],
            "monthly_breakdown":          monthly_breakdown(pairs),
        }

    def all_time_stats(self, account_id: Optional[str] = None) -> dict:
        trades = self.journal.get_trades(account_id)
        if not trades:
            return {
                "first_trade_date":     None,
                "last_trade_date":      None,
                "total_days_active":    0,
                "total_trades":         0,
                "total_volume_quantity": 0.0,
                "total_volume_value":   0.0,
                "overall_success_rate": 0.0,
                "overall_profit_loss":  0.0,
            }
        pairs = pair_trades(trades)
        first, last = trades[0], trades[-1]
        return {
            "first_trade_date":      first.timestamp,
            "last_trade_date":       last.timestamp,
            "total_days_active":     int((last.ts - first.ts).total_seconds() // 86_400),
            "total_trades":          len(trades),
            "total_volume_quantity": sum(t.quantity for t in trades),
            "total_volume_value":    round(sum(t.total_value for t in trades), 2),
            "overall_success_rate":  round(_success_rate(pairs), 2),
            "overall_profit_loss":   round(sum(p.profit_loss for p in pairs), 2),
        }
