"""
Trade Executor — turns an actionable gate decision into an order and a
position transition, as one atomic unit per account.

  1. Per-account lock (non-blocking) — a second trade while one is in flight is rejected
  2. Position validity (BUY from NO_SESSION / HOLDING_CASH, SELL from HOLDING_ASSET)
  3. Sizing + minimums (risk.trade_sizer)
  4. Order placement with a bounded timeout
  5. Position transition + trade journal entry — only after a confirmed order_id

Anything that goes wrong before step 5 leaves the position exactly as it was.
A timed-out order may still fill at the venue; that is logged loudly and
left to manual reconciliation rather than guessed at. Until the venue call
returns, the account counts as in flight and further trades are rejected.

Returns a result dict:
  {"status": "skipped" | "rejected" | "error" | "executed", "reason": ..., ...}
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FuturesTimeout
from typing import Dict, Optional

from ..risk.trade_sizer import TradeSizer
from ..strategy import engine_config as cfg
from .account_settings import AccountSettingsStore
from .decision_gate import GateDecision, GateRoute
from .position_state import PositionStore
from .trade_journal import TradeJournal

logger = logging.getLogger(__name__)


class TradeExecutor:
    """
    Parameters
    ----------
    gateway : object with place_order(action, quantity, reference_price) and get_balances()
    positions : PositionStore
    settings : AccountSettingsStore
    journal : TradeJournal
    sizer : TradeSizer
    order_timeout : float
        Seconds to wait for the gateway before giving up on the order.
    """

    def __init__(
        self,
        gateway,
        positions: PositionStore,
        settings: AccountSettingsStore,
        journal: TradeJournal,
        sizer: Optional[TradeSizer] = None,
        order_timeout: float = cfg.ORDER_TIMEOUT_SECONDS,
    ):
        self.gateway = gateway
        self.positions = positions
        self.settings = settings
        self.journal = journal
        self.sizer = sizer or TradeSizer()
        self.order_timeout = order_timeout
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._pending: Dict[str, Future] = {}
        self._pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="order")

    # ── Main Entry Point ───────────────────────────────────────────────

    def execute(
        self,
        account_id: str,
        decision: GateDecision,
        price: float,
        balances: Optional[Dict[str, float]] = None,
    ) -> Dict:
        if not decision.actionable:
            return {"status": "skipped", "reason": decision.reasoning or decision.action.value}

        lock = self._lock_for(account_id)
        if not lock.acquire(blocking=False):
            logger.warning(f"{account_id}: trade already in flight — {decision.action.value} rejected")
            return {"status": "rejected", "reason": "trade already in flight"}
        try:
            pending = self._pending.get(account_id)
            if pending is not None and not pending.done():
                logger.warning(
                    f"{account_id}: timed-out order still running at the venue — "
                    f"{decision.action.value} rejected"
                )
                return {"status": "rejected", "reason": "trade already in flight"}
            self._pending.pop(account_id, None)
            return self._execute_locked(account_id, decision, price, balances)
        finally:
            lock.release()

    def close(self) -> None:
        self._pool.shutdown(wait=False)

    # ── Internal ───────────────────────────────────────────────────────

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(account_id, threading.Lock())

    def _execute_locked(
        self,
        account_id: str,
        decision: GateDecision,
        price: float,
        balances: Optional[Dict[str, float]],
    ) -> Dict:
        action = decision.action

        # ── Position validity ─────────────────────────────────────────
        valid, reason = self.positions.check_action(account_id, action)
        if not valid:
            logger.info(f"⚠️ {account_id}: {action.value} invalid for position — {reason}")
            return {"status": "rejected", "reason": reason}

        # ── Sizing ────────────────────────────────────────────────────
        if balances is None:
            try:
                balances = self.gateway.get_balances()
            except Exception as exc:
                logger.error(f"{account_id}: balance fetch failed: {exc}")
                return {"status": "error", "reason": f"balance fetch failed: {exc}"}

        override = decision.size_percent if decision.route == GateRoute.FAST_PATH else None
        sizing = self.sizer.size(
            action,
            price,
            balances,
            self.settings.get(account_id),
            self.positions.get(account_id),
            size_percent_override=override,
        )
        if not sizing.accepted:
            return {"status": "rejected", "reason": sizing.reason, "sizing": sizing.to_dict()}

        # ── Order ─────────────────────────────────────────────────────
        future = self._pool.submit(self.gateway.place_order, action, sizing.quantity, price)
        try:
            result = future.result(timeout=self.order_timeout) or {}
        except FuturesTimeout:
            self._pending[account_id] = future
            logger.critical(
                f"🚨 {account_id}: {action.value} {sizing.quantity:.4f} timed out after "
                f"{self.order_timeout}s — position unchanged, order may still fill; reconcile manually"
            )
            return {"status": "error", "reason": "order timed out", "sizing": sizing.to_dict()}
        except Exception as exc:
            logger.error(f"{account_id}: order placement failed: {exc}", exc_info=True)
            return {"status": "error", "reason": f"order failed: {exc}", "sizing": sizing.to_dict()}

        order_id = result.get("order_id")
        if not order_id:
            message = result.get("message", "no order id returned")
            logger.error(f"❌ {account_id}: {action.value} refused — {message}")
            return {"status": "error", "reason": message, "sizing": sizing.to_dict()}

        # ── Transition + journal ──────────────────────────────────────
        state = self.positions.apply_fill(
            account_id, action, sizing.quantity, sizing.total_value, sizing.fee
        )
        trade = self.journal.record(
            account_id=account_id,
            action=action.value,
            quantity=sizing.quantity,
            unit_price=price,
            total_value=sizing.total_value,
            fee_amount=sizing.fee,
            confidence=decision.confidence,
            session_id=state.session_id,
            order_id=str(order_id),
            source=decision.route.value,
            reasoning=decision.reasoning,
        )
        logger.info(
            f"✅ {account_id}: {action.value} {sizing.quantity:.4f} @ {price:,.2f} "
            f"({sizing.basis}) → {state.current_position.value}"
        )
        return {
            "status":   "executed",
            "order_id": str(order_id),
            "message":  result.get("message", ""),
            "trade":    trade.to_dict(),
            "position": state.to_dict(),
        }
