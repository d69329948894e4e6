"""
Paper Order Gateway — simulated fills for dry runs.

Implements the order-gateway interface the executor talks to:
  place_order(action, quantity, reference_price) -> {"order_id": str | None, "message": str}
  get_balances()                                 -> {"cash": float, "asset": float}

Fills at the reference price. Both legs pay FEE_RATE out of cash:
  BUY   cash −= total + fee, asset += quantity
  SELL  asset −= quantity,   cash += total − fee

An order the balances cannot cover is refused with order_id None, the same
way a real venue refusal reaches the executor.
"""

import itertools
import logging
import threading
from typing import Dict

from ..strategy import engine_config as cfg
from ..strategy.pattern_detector import Action

logger = logging.getLogger(__name__)


class PaperOrderGateway:

    def __init__(self, cash: float = 0.0, asset: float = 0.0, fee_rate: float = cfg.FEE_RATE):
        self.cash = float(cash)
        self.asset = float(asset)
        self.fee_rate = fee_rate
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self.orders = []

    def get_balances(self) -> Dict[str, float]:
        with self._lock:
            return {"cash": self.cash, "asset": self.asset}

    def place_order(self, action: Action, quantity: float, reference_price: float) -> Dict:
        total = quantity * reference_price
        fee = total * self.fee_rate
        with self._lock:
            if action == Action.BUY:
                if total + fee > self.cash + 1e-6:
                    return {"order_id": None, "message": f"insufficient cash: need {total + fee:,.2f}"}
                self.cash -= total + fee
                self.asset += quantity
            elif action == Action.SELL:
                if quantity > self.asset + 1e-9:
                    return {"order_id": None, "message": f"insufficient asset: need {quantity:.4f}"}
                self.asset -= quantity
                self.cash += total - fee
            else:
                return {"order_id": None, "message": f"unsupported action {action.value}"}
            order_id = f"PAPER-{next(self._ids):06d}"
            self.orders.append({
                "order_id": order_id,
                "action":   action.value,
                "quantity": quantity,
                "price":    reference_price,
                "fee":      fee,
            })
        logger.info(f"[PAPER] {action.value} {quantity:.4f} @ {reference_price:,.2f} → {order_id}")
        return {"order_id": order_id, "message": "filled (paper)"}
