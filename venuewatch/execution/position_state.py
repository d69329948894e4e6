"""
venuewatch/execution/position_state.py
======================================
PositionState + PositionStore — per-account trading session state machine.

        BUY            SELL
  NO_SESSION ──→ HOLDING_ASSET ──→ HOLDING_CASH
                      ↑                 │
                      └────── BUY ──────┘
  end_session() from any state → NO_SESSION

Design rules
------------
- BUY is legal from NO_SESSION or HOLDING_CASH; SELL only from HOLDING_ASSET.
  An illegal request is rejected with a reason and nothing changes.
- The first BUY with no session starts one; its cash outlay is initial_value.
- session_amount is the asset quantity while HOLDING_ASSET and the cash
  returned by the last SELL (net of fee) while HOLDING_CASH, so both legs
  of a session trade the same amount.
- State changes only via apply_fill(), called after the venue confirmed an
  order. A failed or timed-out order never reaches it.
- path=None keeps everything in memory (tests, dry runs).
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Tuple

from ..errors import InvariantViolation
from ..strategy import engine_config as cfg
from ..strategy.pattern_detector import Action
from .json_store import atomic_write_json, read_json

logger = logging.getLogger(__name__)

POSITIONS_FILE = cfg.STATE_DIR / "positions.json"


class PositionState(Enum):
    NO_SESSION    = "NO_SESSION"
    HOLDING_ASSET = "HOLDING_ASSET"
    HOLDING_CASH  = "HOLDING_CASH"


_LEGAL_FROM = {
    Action.BUY:  {PositionState.NO_SESSION, PositionState.HOLDING_CASH},
    Action.SELL: {PositionState.HOLDING_ASSET},
}


@dataclass
class AccountPositionState:
    account_id:       str
    current_position: PositionState = PositionState.NO_SESSION
    session_amount:   float = 0.0
    initial_value:    float = 0.0
    trade_count:      int = 0
    started_at:       Optional[str] = None
    session_id:       Optional[str] = None

    @property
    def in_session(self) -> bool:
        return self.current_position != PositionState.NO_SESSION

    def to_dict(self) -> dict:
        d = asdict(self)
        d["current_position"] = self.current_position.value
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "AccountPositionState":
        return cls(
            account_id=str(data["account_id"]),
            current_position=PositionState(data.get("current_position", "NO_SESSION")),
            session_amount=float(data.get("session_amount", 0.0)),
            initial_value=float(data.get("initial_value", 0.0)),
            trade_count=int(data.get("trade_count", 0)),
            started_at=data.get("started_at"),
            session_id=data.get("session_id"),
        )


class PositionStore:
    """
    Keyed store account_id → AccountPositionState.

    get() hands out copies; the only mutators are apply_fill() and end_session().
    """

    def __init__(self, path: Optional[Path] = POSITIONS_FILE):
        self._path = Path(path) if path else None
        self._lock = threading.Lock()
        self._states: Dict[str, AccountPositionState] = {}
        self._load()

    # ── Read ───────────────────────────────────────────────────────────

    def get(self, account_id: str) -> AccountPositionState:
        with self._lock:
            state = self._states.get(account_id)
            return replace(state) if state else AccountPositionState(account_id=account_id)

    def check_action(self, account_id: str, action: Action) -> Tuple[bool, str]:
        """(valid, reason). HOLD is never a trade."""
        if action not in _LEGAL_FROM:
            return False, f"{action.value} is not a trade"
        position = self.get(account_id).current_position
        if position in _LEGAL_FROM[action]:
            return True, "ok"
        if action == Action.SELL:
            if position == PositionState.NO_SESSION:
                return False, "no active session — nothing to sell"
            return False, "already holding cash — BUY first"
        return False, "already holding asset — SELL first"

    def session_status(
        self,
        account_id: str,
        current_price: float,
        max_loss_percent: Optional[float] = None,
    ) -> dict:
        state = self.get(account_id)
        if not state.in_session:
            return {"account_id": account_id, "active": False}

        if state.current_position == PositionState.HOLDING_ASSET:
            current_value = state.session_amount * current_price
        else:
            current_value = state.session_amount
        pnl = current_value - state.initial_value
        pnl_pct = (pnl / state.initial_value * 100) if state.initial_value else 0.0

        status = {
            "account_id":        account_id,
            "active":            True,
            "session_id":        state.session_id,
            "started_at":        state.started_at,
            "current_position":  state.current_position.value,
            "session_amount":    state.session_amount,
            "initial_value":     state.initial_value,
            "current_value":     round(current_value, 2),
            "profit_loss":       round(pnl, 2),
            "profit_loss_pct":   round(pnl_pct, 2),
            "trade_count":       state.trade_count,
        }
        # Reported only; nothing closes the session on a breach.
        if max_loss_percent is not None:
            status["max_loss_breached"] = pnl_pct <= -abs(max_loss_percent)
        return status

    def all_states(self) -> Dict[str, dict]:
        with self._lock:
            return {k: v.to_dict() for k, v in self._states.items()}

    # ── Write ──────────────────────────────────────────────────────────

    def apply_fill(
        self,
        account_id: str,
        action: Action,
        quantity: float,
        total_value: float,
        fee: float,
        when: Optional[datetime] = None,
    ) -> AccountPositionState:
        """Transition after a confirmed order. Illegal here means the caller skipped check_action()."""
        when = when or datetime.now(timezone.utc)
        with self._lock:
            state = self._states.get(account_id) or AccountPositionState(account_id=account_id)
            if state.current_position not in _LEGAL_FROM.get(action, set()):
                logger.critical(
                    f"position_state: {action.value} fill for {account_id} while "
                    f"{state.current_position.value}"
                )
                raise InvariantViolation(
                    f"{action.value} applied from {state.current_position.value} for {account_id}"
                )

            if state.current_position == PositionState.NO_SESSION:
                started = when.isoformat()
                state = AccountPositionState(
                    account_id=account_id,
                    initial_value=total_value,
                    started_at=started,
                    session_id=started,
                )
                logger.info(f"🆕 session started for {account_id} (initial {total_value:,.2f})")

            if action == Action.BUY:
                state.current_position = PositionState.HOLDING_ASSET
                state.session_amount = quantity
            else:
                state.current_position = PositionState.HOLDING_CASH
                state.session_amount = total_value - fee
            state.trade_count += 1

            self._states[account_id] = state
            self._persist()
            return replace(state)

    def end_session(self, account_id: str, current_price: float) -> dict:
        final = self.session_status(account_id, current_price)
        with self._lock:
            if account_id in self._states:
                self._states[account_id] = AccountPositionState(account_id=account_id)
                self._persist()
        if final.get("active"):
            logger.info(
                f"🏁 session ended for {account_id}: P/L {final['profit_loss']:+,.2f} "
                f"({final['profit_loss_pct']:+.2f}%) over {final['trade_count']} trades"
            )
        return final

    # ── Internal ───────────────────────────────────────────────────────

    def _load(self) -> None:
        if self._path is None:
            return
        raw = read_json(self._path)
        if not raw:
            return
        for account_id, data in raw.items():
            try:
                self._states[account_id] = AccountPositionState.from_dict(data)
            except (KeyError, ValueError) as exc:
                logger.warning(f"position_state: skipping corrupt entry {account_id}: {exc}")

    def _persist(self) -> None:
        if self._path is None:
            return
        atomic_write_json(
            self._path, {k: v.to_dict() for k, v in self._states.items()}, prefix="positions_"
        )
