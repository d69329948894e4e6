"""
Trade Journal — append-only record of every executed trade.

Format: JSON Lines (.jsonl) — one TradeRecord per line.
File: runtime_state/trade_journal.jsonl

Records are never rewritten. sequence is a journal-wide counter that breaks
timestamp ties, so FIFO pairing always sees the order the trades happened in.
The accountant and the advisor prompt read from here; only the executor writes.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from ..strategy import engine_config as cfg

logger = logging.getLogger(__name__)

JOURNAL_PATH = cfg.STATE_DIR / "trade_journal.jsonl"

TRADE_SOURCES = ("ADVISOR", "FAST_PATH", "FALLBACK", "MANUAL")


@dataclass(frozen=True)
class TradeRecord:
    account_id:  str
    action:      str            # "BUY" | "SELL"
    quantity:    float
    unit_price:  float
    total_value: float
    fee_amount:  float
    confidence:  float
    timestamp:   str            # ISO 8601, UTC
    session_id:  Optional[str] = None
    sequence:    int = 0
    order_id:    Optional[str] = None
    source:      str = "MANUAL"
    reasoning:   str = ""

    @property
    def ts(self) -> datetime:
        return datetime.fromisoformat(self.timestamp)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TradeRecord":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


class TradeJournal:
    """
    Append-only trade journal. Thread-safe for single-process use.
    path=None keeps records in memory only.
    """

    def __init__(self, path: Optional[Path] = JOURNAL_PATH):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self._memory: List[TradeRecord] = []
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._sequence = max((t.sequence for t in self._load_all()), default=0)

    # ── Write ─────────────────────────────────────────────────────────

    def record(self, **fields) -> TradeRecord:
        """Append a trade. timestamp defaults to now; sequence is assigned here."""
        fields.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        with self._lock:
            self._sequence += 1
            trade = TradeRecord(**{**fields, "sequence": self._sequence})
            if self.path is None:
                self._memory.append(trade)
            else:
                with open(self.path, "a") as f:
                    f.write(json.dumps(trade.to_dict()) + "\n")
        logger.info(
            f"[JOURNAL] {trade.action} {trade.quantity:.4f} @ {trade.unit_price:,.2f} "
            f"| {trade.account_id} | {trade.source} conf={trade.confidence:.0f}"
        )
        return trade

    # ── Read ──────────────────────────────────────────────────────────

    def _load_all(self) -> List[TradeRecord]:
        if self.path is None:
            return list(self._memory)
        if not self.path.exists():
            return []
        trades = []
        with open(self.path) as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    trades.append(TradeRecord.from_dict(json.loads(line)))
                except (ValueError, TypeError) as exc:
                    logger.warning(f"trade_journal: skipping bad line: {exc}")
        return trades

    def get_trades(
        self, account_id: Optional[str] = None, since: Optional[datetime] = None
    ) -> List[TradeRecord]:
        """Trades oldest-first, optionally for one account and no older than `since`."""
        trades = self._load_all()
        if account_id is not None:
            trades = [t for t in trades if t.account_id == account_id]
        if since is not None:
            trades = [t for t in trades if t.ts >= since]
        return sorted(trades, key=lambda t: (t.ts, t.sequence))

    def get_recent_trades(self, account_id: str, n: int = 10) -> List[TradeRecord]:
        """Most recent n trades for an account, newest first."""
        return list(reversed(self.get_trades(account_id)))[:n]
