"""
tests/test_orchestrator.py
==========================
Invariant tests for the decision loop:
  1. Switch off or paused → the cycle returns before touching anything.
  2. A cycle never overlaps another; the second one is skipped, not queued.
  3. End to end on the paper venue: bottom reversal after a fake drop →
     fast-path BUY, position HOLDING_ASSET, journal entry, prediction, alerts.
  4. Auto trading off → the decision is made and logged, nothing is executed.
  5. CSV replay runs one cycle on throwaway in-memory state with the switch on.
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from venuewatch.exchange.paper_venue import PaperOrderGateway
from venuewatch.execution.account_settings import AccountSettingsStore
from venuewatch.execution.control_state import ControlState
from venuewatch.execution.decision_gate import DecisionGate
from venuewatch.execution.decision_log import DecisionLog
from venuewatch.execution import orchestrator
from venuewatch.execution.orchestrator import EngineOrchestrator
from venuewatch.execution.position_state import PositionState, PositionStore
from venuewatch.execution.trade_executor import TradeExecutor
from venuewatch.execution.trade_journal import TradeJournal
from venuewatch.strategy import engine_config as cfg
from venuewatch.strategy.multi_factor import MultiFactorCorrelator
from venuewatch.strategy.pattern_detector import PatternDetector
from venuewatch.strategy.tick_history import TickHistory

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
BOTTOM = [100.4, 100.0, 99.5, 98.9, 99.2]

# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _build(prices=BOTTOM, enabled=True, advisor=None):
    history = TickHistory()
    for i, p in enumerate(prices):
        ts = T0 + timedelta(seconds=i * 10)
        history.record_asset_price(p, ts)
        history.record_reference("spot", 2000.0, ts)
        history.record_reference("haven", 50.0, ts)

    gateway = PaperOrderGateway(cash=100_000_000.0)
    positions = PositionStore(path=None)
    settings = AccountSettingsStore(path=None)
    journal = TradeJournal(path=None)
    log = DecisionLog(directory=None)
    control = ControlState(path=None)
    if enabled:
        control.enable(updated_by="test")
    gate = DecisionGate(advisor or MagicMock(), log, clock=lambda: T0 + timedelta(seconds=40))
    executor = TradeExecutor(gateway, positions, settings, journal)

    return EngineOrchestrator(
        history=history,
        gateway=gateway,
        gate=gate,
        executor=executor,
        positions=positions,
        settings=settings,
        journal=journal,
        decision_log=log,
        control=control,
        notifier=MagicMock(),
        accounts=["acct-1"],
        detector=PatternDetector("spot"),
        correlator=MultiFactorCorrelator("spot", "haven", "fx"),
    )


NOW = T0 + timedelta(seconds=40)


# ─────────────────────────────────────────────────────────────────────────────
# 1.  Switch
# ─────────────────────────────────────────────────────────────────────────────

class TestSwitch:

    def test_disabled_cycle_does_nothing(self):
        bot = _build(enabled=False)
        bot.gate = MagicMock()
        assert bot.run_cycle(now=NOW) == {"status": "stopped"}
        bot.gate.decide.assert_not_called()
        assert bot.gateway.orders == []

    def test_paused_cycle_does_nothing(self):
        bot = _build()
        bot.control.pause(minutes=30)
        bot.gate = MagicMock()
        assert bot.run_cycle()["status"] == "stopped"
        bot.gate.decide.assert_not_called()

    def test_no_ticks_no_decision(self):
        bot = _build(prices=[])
        assert bot.run_cycle(now=NOW) == {"status": "no_data"}


# ─────────────────────────────────────────────────────────────────────────────
# 2.  Reentrancy
# ─────────────────────────────────────────────────────────────────────────────

class TestReentrancy:

    def test_overlapping_cycle_skipped(self):
        bot = _build()
        bot._cycle_lock.acquire()
        try:
            result = bot.run_cycle(now=NOW)
        finally:
            bot._cycle_lock.release()
        assert result["status"] == "skipped"
        assert bot.gateway.orders == []

    def test_lock_released_after_cycle(self):
        bot = _build()
        bot.run_cycle(now=NOW)
        assert bot._cycle_lock.acquire(blocking=False)
        bot._cycle_lock.release()


# ─────────────────────────────────────────────────────────────────────────────
# 3.  End to end
# ─────────────────────────────────────────────────────────────────────────────

class TestCycle:

    def test_bottom_after_fake_drop_buys_on_fast_path(self):
        advisor = MagicMock()
        bot = _build(advisor=advisor)

        summary = bot.run_cycle(now=NOW)

        acct = summary["accounts"]["acct-1"]
        assert acct["decision"]["route"] == "FAST_PATH"
        assert acct["execution"]["status"] == "executed"
        advisor.get_decision.assert_not_called()

        state = bot.positions.get("acct-1")
        assert state.current_position == PositionState.HOLDING_ASSET
        trades = bot.journal.get_trades("acct-1")
        assert len(trades) == 1
        assert trades[0].source == "FAST_PATH"
        # 3% of the paper cash
        assert trades[0].total_value == pytest.approx(3_000_000)

        assert bot.decision_log.prediction_stats(now=NOW)["total_predictions"] == 1
        bot.notifier.send_pattern_alert.assert_called_once()
        bot.notifier.send_trade_executed.assert_called_once()
        bot.notifier.send_status.assert_called_once()

    def test_position_blocks_repeat_buy(self):
        bot = _build()
        bot.run_cycle(now=NOW)
        bot.gate.clock = lambda: NOW + timedelta(seconds=130)
        summary = bot.run_cycle(now=NOW + timedelta(seconds=10))
        assert summary["accounts"]["acct-1"]["execution"]["status"] == "rejected"
        assert len(bot.journal.get_trades()) == 1
        bot.notifier.send_trade_error.assert_not_called()

    def test_repeat_bottom_inside_cooldown_abstains(self):
        bot = _build()
        bot.run_cycle(now=NOW)
        summary = bot.run_cycle(now=NOW + timedelta(seconds=10))
        acct = summary["accounts"]["acct-1"]
        assert acct["decision"]["route"] == "ABSTAIN"
        assert "execution" not in acct
        assert len(bot.gateway.orders) == 1

    def test_auto_trading_off_decides_but_does_not_trade(self):
        bot = _build()
        bot.settings.set_auto_trading("acct-1", False)
        summary = bot.run_cycle(now=NOW)
        acct = summary["accounts"]["acct-1"]
        assert acct["decision"]["route"] == "FAST_PATH"
        assert acct["execution"]["status"] == "skipped"
        assert bot.gateway.orders == []
        assert bot.positions.get("acct-1").current_position == PositionState.NO_SESSION

    def test_flat_market_abstains(self):
        bot = _build(prices=[100.0] * 5)
        summary = bot.run_cycle(now=NOW)
        acct = summary["accounts"]["acct-1"]
        assert acct["decision"]["route"] == "ABSTAIN"
        assert "execution" not in acct
        assert bot.decision_log.get_recent_decisions(1)[0]["route"] == "ABSTAIN"

    def test_account_failure_does_not_stop_cycle(self):
        bot = _build()
        bot.accounts = ["broken", "acct-1"]
        real_get = bot.settings.get

        def _get(account_id):
            if account_id == "broken":
                raise RuntimeError("corrupt settings")
            return real_get(account_id)

        bot.settings.get = _get
        summary = bot.run_cycle(now=NOW)
        assert summary["accounts"]["broken"]["status"] == "error"
        assert summary["accounts"]["acct-1"]["execution"]["status"] == "executed"


# ─────────────────────────────────────────────────────────────────────────────
# 4.  Build + replay CLI
# ─────────────────────────────────────────────────────────────────────────────

class TestBuild:

    def test_default_gateway_is_paper(self):
        bot = EngineOrchestrator.build(["acct-1"], paper_cash=1_000.0, persist=False)
        try:
            assert bot.dry_run
            assert isinstance(bot.gateway, PaperOrderGateway)
            assert bot.gateway.get_balances()["cash"] == 1_000.0
        finally:
            bot.close()

    def test_injected_gateway_is_not_dry_run(self):
        venue = MagicMock()
        bot = EngineOrchestrator.build(["acct-1"], gateway=venue, persist=False)
        try:
            assert not bot.dry_run
            assert bot.gateway is venue
            assert bot.executor.gateway is venue
        finally:
            bot.close()

    def test_in_memory_build_is_switched_on(self):
        bot = EngineOrchestrator.build(["acct-1"], persist=False)
        try:
            assert bot.control.is_active()
            assert bot.notifier is None
            assert bot.journal.path is None
        finally:
            bot.close()


class TestReplay:

    def test_replay_runs_detector_on_fresh_install(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr(orchestrator, "_configure_logging", lambda: None)
        rows = ["timestamp,instrument,value"]
        for i, p in enumerate(BOTTOM):
            ts = (T0 + timedelta(seconds=i * 10)).isoformat()
            rows.append(f"{ts},asset,{p}")
            rows.append(f"{ts},{cfg.PRIMARY_REFERENCE},2000.0")
            rows.append(f"{ts},{cfg.SECONDARY_REFERENCE},50.0")
        csv = tmp_path / "ticks.csv"
        csv.write_text("\n".join(rows) + "\n")

        orchestrator.main(["--replay", str(csv), "--account", "x", "--paper-cash", "100000000"])

        summary = json.loads(capsys.readouterr().out)
        assert summary["status"] == "ok"
        assert summary["price"] == 99.2
        assert "DROP_BOTTOM" in [p["type"] for p in summary["pattern"]["patterns"]]
        acct = summary["accounts"]["x"]
        assert acct["decision"]["route"] == "FAST_PATH"
        assert acct["execution"]["status"] == "executed"
