"""
Trade Sizer — fee-aware order sizing.

Priority:
  1. Active session   → reuse the tracked amount (asset qty on SELL, cash on BUY)
                        so both legs of a session trade the same size.
  2. Fixed mode       → configured quantity, cut down to what the cash affords.
  3. Percentage mode  → balance × pct / 100 (cash for BUY, asset for SELL).
                        The fast path passes its own pct in place of the account's.

Every executed leg pays FEE_RATE (1%). A BUY never costs more than the cash
it may spend, fee included. A round trip needs to move more than
2 × FEE_RATE just to break even.

Orders under MIN_TRADE_QUANTITY or MIN_TRADE_VALUE are rejected here,
before anything reaches the venue.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from ..execution.account_settings import AccountSettings
from ..execution.position_state import AccountPositionState, PositionState
from ..strategy import engine_config as cfg
from ..strategy.pattern_detector import Action

logger = logging.getLogger(__name__)


class SizeVerdict(Enum):
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"


@dataclass
class TradeSizing:
    verdict:     SizeVerdict
    reason:      str
    action:      Action = Action.HOLD
    quantity:    float = 0.0
    unit_price:  float = 0.0
    total_value: float = 0.0
    fee:         float = 0.0
    basis:       str = ""          # "session" | "fixed" | "percentage"

    @property
    def accepted(self) -> bool:
        return self.verdict == SizeVerdict.ACCEPT

    def to_dict(self) -> dict:
        return {
            "verdict":     self.verdict.value,
            "reason":      self.reason,
            "action":      self.action.value,
            "quantity":    self.quantity,
            "unit_price":  self.unit_price,
            "total_value": round(self.total_value, 2),
            "fee":         round(self.fee, 2),
            "basis":       self.basis,
        }


def break_even_move_pct() -> float:
    """Minimum price move (percent) for a BUY→SELL round trip to cover both fees."""
    return 2 * cfg.FEE_RATE * 100


class TradeSizer:

    def __init__(
        self,
        fee_rate: float = cfg.FEE_RATE,
        min_trade_value: float = cfg.MIN_TRADE_VALUE,
        min_quantity: float = cfg.MIN_TRADE_QUANTITY,
    ):
        self.fee_rate = fee_rate
        self.min_trade_value = min_trade_value
        self.min_quantity = min_quantity

    def size(
        self,
        action: Action,
        price: float,
        balances: Dict[str, float],
        settings: AccountSettings,
        position: AccountPositionState,
        size_percent_override: Optional[float] = None,
    ) -> TradeSizing:
        if action == Action.HOLD:
            return self._reject("HOLD is not a trade", action, price)
        if price <= 0:
            return self._reject(f"invalid price {price}", action, price)

        cash = float(balances.get("cash", 0.0))
        asset = float(balances.get("asset", 0.0))

        if position.current_position == PositionState.HOLDING_ASSET and action == Action.SELL:
            quantity, basis = position.session_amount, "session"
            if quantity > asset + 1e-9:
                return self._reject(
                    f"session quantity {quantity:.4f} exceeds asset balance {asset:.4f}", action, price
                )
        elif position.current_position == PositionState.HOLDING_CASH and action == Action.BUY:
            budget, basis = position.session_amount, "session"
            if budget > cash + 1e-6:
                return self._reject(
                    f"session cash {budget:,.2f} exceeds cash balance {cash:,.2f}", action, price
                )
            # the venue charges total + fee out of the session cash
            quantity = budget / (price * (1 + self.fee_rate))
        elif settings.trade_mode == "fixed" and settings.fixed_quantity:
            quantity, basis = float(settings.fixed_quantity), "fixed"
            affordable = self._affordable(cash, price)
            if action == Action.BUY and quantity > affordable:
                logger.info(
                    f"sizer: fixed {quantity:.4f} not affordable with {cash:,.2f} → {affordable:.4f}"
                )
                quantity = affordable
            elif action == Action.SELL and quantity > asset:
                quantity = asset
        else:
            pct = size_percent_override if size_percent_override is not None else settings.trade_percent
            pct = max(1.0, min(100.0, float(pct)))
            basis = "percentage"
            if action == Action.BUY:
                quantity = min(cash * pct / 100 / price, self._affordable(cash, price))
            else:
                quantity = asset * pct / 100

        total = quantity * price
        if quantity < self.min_quantity:
            return self._reject(
                f"quantity {quantity:.4f} below minimum {self.min_quantity}", action, price
            )
        if total < self.min_trade_value:
            return self._reject(
                f"trade value {total:,.2f} below minimum {self.min_trade_value:,.0f}", action, price
            )

        return TradeSizing(
            verdict=SizeVerdict.ACCEPT,
            reason="ok",
            action=action,
            quantity=quantity,
            unit_price=price,
            total_value=total,
            fee=total * self.fee_rate,
            basis=basis,
        )

    def _affordable(self, cash: float, price: float) -> float:
        return cash / (price * (1 + self.fee_rate))

    @staticmethod
    def _reject(reason: str, action: Action, price: float) -> TradeSizing:
        logger.info(f"sizer: {action.value} rejected — {reason}")
        return TradeSizing(verdict=SizeVerdict.REJECT, reason=reason, action=action, unit_price=price)
