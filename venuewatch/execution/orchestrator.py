"""
Engine Orchestrator — The decision loop.

Every cycle (default 10 s):
  → Control switch: disabled or paused → return immediately
  → Reentrancy guard: previous cycle still running → skip (never queue)
  → Snapshot the tick history
  → Pattern detector ∥ multi-factor correlator over the same snapshot
  → Log strong pattern events, send a (throttled) pattern alert
  → Per account: decision gate → prediction record → trade executor
    (only when the account has auto trading enabled)
  → Fill in due prediction outcomes
  → Every 5 minutes: status message

The price/reference feed is an outside collaborator: it writes into
orchestrator.history while the loop runs.

CLI:
    python -m venuewatch.execution.orchestrator --account main
    python -m venuewatch.execution.orchestrator --replay ticks.csv --account main
"""
import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

from ..strategy import engine_config as cfg
from ..strategy.multi_factor import MultiFactorCorrelator
from ..strategy.pattern_detector import PatternDetector
from ..strategy.tick_history import TickHistory
from .account_settings import AccountSettingsStore
from .control_state import ControlState
from .decision_gate import DecisionGate, GateRoute
from .decision_log import DecisionLog
from .notifier import Notifier
from .position_state import PositionStore
from .trade_executor import TradeExecutor
from .trade_journal import TradeJournal

logger = logging.getLogger(__name__)

LOG_DIR = cfg.STATE_DIR / "logs"


class EngineOrchestrator:
    """
    Wires the engine together. Every collaborator is injectable;
    build() creates the default file-backed set.
    """

    def __init__(
        self,
        history: TickHistory,
        gateway,
        gate: DecisionGate,
        executor: TradeExecutor,
        positions: PositionStore,
        settings: AccountSettingsStore,
        journal: TradeJournal,
        decision_log: DecisionLog,
        control: ControlState,
        notifier: Optional[Notifier] = None,
        accounts: Optional[List[str]] = None,
        detector: Optional[PatternDetector] = None,
        correlator: Optional[MultiFactorCorrelator] = None,
        dry_run: bool = True,
    ):
        self.history      = history
        self.gateway      = gateway
        self.gate         = gate
        self.executor     = executor
        self.positions    = positions
        self.settings     = settings
        self.journal      = journal
        self.decision_log = decision_log
        self.control      = control
        self.notifier     = notifier
        self.accounts     = list(accounts or [])
        self.detector     = detector or PatternDetector()
        self.correlator   = correlator or MultiFactorCorrelator()
        self.dry_run      = dry_run

        self._cycle_lock        = threading.Lock()
        self._pool              = ThreadPoolExecutor(max_workers=2, thread_name_prefix="analysis")
        self._stopped_cycles    = 0
        self._last_status: Optional[datetime]  = None
        self._last_cleanup: Optional[datetime] = None

    @classmethod
    def build(
        cls,
        accounts: List[str],
        paper_cash: float = 0.0,
        gateway=None,
        persist: bool = True,
    ):
        """
        gateway : venue gateway to trade on; None → paper venue (dry run).
        persist : False → in-memory stores, switch enabled, no notifier
                  (offline replay that must not touch live state).
        """
        from ..exchange.advisor_client import AdvisorClient
        from ..exchange.paper_venue import PaperOrderGateway

        dry_run = gateway is None
        if dry_run:
            gateway = PaperOrderGateway(cash=paper_cash)

        if persist:
            journal      = TradeJournal()
            positions    = PositionStore()
            settings     = AccountSettingsStore()
            decision_log = DecisionLog()
            control      = ControlState()
            notifier     = Notifier()
        else:
            journal      = TradeJournal(path=None)
            positions    = PositionStore(path=None)
            settings     = AccountSettingsStore(path=None)
            decision_log = DecisionLog(directory=None)
            control      = ControlState(path=None)
            control.enable(reason="offline replay", updated_by="replay")
            notifier     = None

        gate     = DecisionGate(AdvisorClient(), decision_log)
        executor = TradeExecutor(gateway, positions, settings, journal)
        return cls(
            history=TickHistory(),
            gateway=gateway,
            gate=gate,
            executor=executor,
            positions=positions,
            settings=settings,
            journal=journal,
            decision_log=decision_log,
            control=control,
            notifier=notifier,
            accounts=accounts,
            dry_run=dry_run,
        )

    # ── Main Loop ──────────────────────────────────────────────────────

    def run_forever(self, interval: float = cfg.CYCLE_INTERVAL_SECONDS):
        logger.info(
            f"🚀 Starting engine loop ({'DRY RUN' if self.dry_run else '⚠️ LIVE'}) "
            f"accounts={self.accounts} interval={interval}s"
        )
        while True:
            try:
                self.run_cycle()
            except KeyboardInterrupt:
                logger.info("Keyboard interrupt — shutting down")
                break
            except Exception as e:
                logger.error(f"Cycle error: {e}", exc_info=True)
            try:
                time.sleep(interval)
            except KeyboardInterrupt:
                logger.info("Keyboard interrupt — shutting down")
                break
        self.close()

    def close(self) -> None:
        self.executor.close()
        self._pool.shutdown(wait=False)

    def run_cycle(self, now: Optional[datetime] = None) -> Dict:
        self.control.reload()
        if not self.control.is_active(now):
            self._stopped_cycles += 1
            if self._stopped_cycles % cfg.STOPPED_LOG_EVERY_CYCLES == 1:
                logger.info(f"⏹ trading stopped ({self.control.reason or 'disabled'}) — cycle skipped")
            return {"status": "stopped"}
        self._stopped_cycles = 0

        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("previous cycle still running — skipped")
            return {"status": "skipped", "reason": "previous cycle still running"}
        try:
            return self._cycle(now or datetime.now(timezone.utc))
        finally:
            self._cycle_lock.release()

    # ── Cycle ──────────────────────────────────────────────────────────

    def _cycle(self, now: datetime) -> Dict:
        snapshot = self.history.snapshot(now)
        price = snapshot.latest_price
        if price is None:
            return {"status": "no_data"}

        pattern_future = self._pool.submit(self.detector.analyze, snapshot)
        signal_future  = self._pool.submit(self.correlator.analyze, snapshot)
        analysis = pattern_future.result()
        signal   = signal_future.result()

        references = {name: snapshot.latest_reference(name) for name in snapshot.references}
        event = self.decision_log.log_pattern_event(analysis, price, references, now=now)
        if event and self.notifier:
            self.notifier.send_pattern_alert(price, analysis, signal)

        summary = {
            "status":   "ok",
            "price":    price,
            "pattern":  analysis.to_dict(),
            "signal":   signal.to_dict(),
            "accounts": {},
        }

        for account_id in self.accounts:
            try:
                summary["accounts"][account_id] = self._run_account(account_id, snapshot, analysis, signal, now)
            except Exception as e:
                logger.error(f"{account_id}: account cycle failed: {e}", exc_info=True)
                summary["accounts"][account_id] = {"status": "error", "reason": str(e)}

        self.decision_log.evaluate_outcomes(price, now)
        if self._last_cleanup is None or now - self._last_cleanup >= timedelta(days=1):
            self.decision_log.cleanup_predictions(now)
            self._last_cleanup = now

        if self._last_status is None or (now - self._last_status).total_seconds() >= cfg.STATUS_EVERY_SECONDS:
            self._send_status(price, signal)
            self._last_status = now

        return summary

    def _run_account(self, account_id, snapshot, analysis, signal, now) -> Dict:
        settings = self.settings.get(account_id)
        balances = self.gateway.get_balances()
        recent = [t.to_dict() for t in self.journal.get_recent_trades(account_id, 5)]

        decision = self.gate.decide(
            account_id, snapshot, analysis, signal, settings, balances, recent_trades=recent
        )
        result = {"decision": decision.to_dict()}
        if decision.route == GateRoute.ABSTAIN:
            return result

        self.decision_log.record_prediction(
            account_id,
            decision.route.value,
            decision.action.value,
            decision.confidence,
            snapshot.latest_price,
            patterns=[p.type.value for p in analysis.patterns],
            now=now,
        )

        if not decision.actionable:
            return result
        if not settings.auto_trading_enabled:
            logger.info(f"{account_id}: auto trading off — {decision.action.value} not executed")
            result["execution"] = {"status": "skipped", "reason": "auto trading disabled"}
            return result

        execution = self.executor.execute(account_id, decision, snapshot.latest_price)
        result["execution"] = execution
        if self.notifier:
            if execution["status"] == "executed":
                self.notifier.send_trade_executed(account_id, execution, dry_run=self.dry_run)
            elif execution["status"] == "error":
                self.notifier.send_trade_error(account_id, decision.action.value, execution["reason"])
        return result

    def _send_status(self, price: float, signal) -> None:
        if not self.notifier:
            return
        sessions = {acct: self.positions.session_status(acct, price) for acct in self.accounts}
        self.notifier.send_status(price, signal, sessions)


# ── Entry Point ────────────────────────────────────────────────────────

def _configure_logging() -> None:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(LOG_DIR / "engine.log"),
            logging.StreamHandler(),
        ],
    )


def main(argv=None):
    import argparse

    from ..strategy.tick_history import load_ticks_csv

    parser = argparse.ArgumentParser(description="venuewatch decision engine")
    parser.add_argument("--account", action="append", default=[],
                        help="account id to trade for (repeatable)")
    parser.add_argument("--interval", type=float, default=cfg.CYCLE_INTERVAL_SECONDS,
                        help="seconds between cycles")
    parser.add_argument("--paper-cash", type=float, default=10_000_000.0,
                        help="starting cash of the paper venue")
    parser.add_argument("--replay", type=Path,
                        help="CSV of timestamp,instrument,value; run one cycle at its last tick and exit")
    args = parser.parse_args(argv)

    _configure_logging()
    accounts = args.account or ["default"]

    if args.replay:
        bot = EngineOrchestrator.build(accounts, paper_cash=args.paper_cash, persist=False)
        load_ticks_csv(bot.history, args.replay)
        snapshot = bot.history.snapshot()
        last = snapshot.asset_ticks[0].timestamp if snapshot.asset_ticks else None
        print(json.dumps(bot.run_cycle(now=last), indent=2, default=str))
        bot.close()
        return

    bot = EngineOrchestrator.build(accounts, paper_cash=args.paper_cash)
    bot.run_forever(args.interval)


if __name__ == "__main__":
    main()
