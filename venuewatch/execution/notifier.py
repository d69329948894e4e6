"""
Notifier — Sends engine alerts to Telegram.

Configure in .env:
  TELEGRAM_BOT_TOKEN=<bot token from @BotFather>
  TELEGRAM_CHAT_ID=<chat id>

Message types:
  send()               — raw message
  send_pattern_alert() — strong pattern seen (throttled, one per minute)
  send_trade_executed()— order filled, position changed
  send_trade_error()   — order refused / timed out
  send_status()        — periodic price + position summary

Without a token every message is only logged.
"""
import logging
import os
import time
from pathlib import Path
from typing import Callable, Optional

import requests
from dotenv import load_dotenv

from ..strategy import engine_config as cfg
from ..strategy.multi_factor import CombinedSignal
from ..strategy.pattern_detector import PatternAnalysis

load_dotenv(Path(__file__).resolve().parents[2] / ".env")

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


class Notifier:
    def __init__(
        self,
        bot_token: Optional[str] = None,
        chat_id:   Optional[str] = None,
        clock:     Callable[[], float] = time.monotonic,
    ):
        self.bot_token = bot_token or os.getenv("TELEGRAM_BOT_TOKEN")
        self.chat_id   = chat_id   or os.getenv("TELEGRAM_CHAT_ID")
        self._ok       = bool(self.bot_token and self.chat_id)
        self._clock    = clock
        self._last_alert: Optional[float] = None

        if self._ok:
            logger.info(f"Notifier: Telegram ready (chat={self.chat_id})")
        else:
            logger.warning(
                "Notifier: TELEGRAM_BOT_TOKEN not set — alerts will only log to console."
            )

    # ── Core Send ─────────────────────────────────────────────────────

    def send(self, message: str, parse_mode: str = "HTML") -> bool:
        logger.info(f"[ALERT] {message}")
        if not self._ok:
            return False
        try:
            resp = requests.post(
                f"{TELEGRAM_API}/bot{self.bot_token}/sendMessage",
                json={
                    "chat_id":    self.chat_id,
                    "text":       message,
                    "parse_mode": parse_mode,
                },
                timeout=10,
            )
            if resp.status_code == 200:
                return True
            logger.error(f"Telegram send failed: {resp.status_code} {resp.text[:200]}")
            return False
        except Exception as e:
            logger.error(f"Telegram send error: {e}")
            return False

    # ── Engine Notifications ──────────────────────────────────────────

    def send_pattern_alert(self, price: float, analysis: PatternAnalysis, signal: CombinedSignal) -> bool:
        """At most one per ALERT_THROTTLE_SECONDS; returns False when throttled."""
        now = self._clock()
        if self._last_alert is not None and now - self._last_alert < cfg.ALERT_THROTTLE_SECONDS:
            return False
        self._last_alert = now

        lines = "\n".join(
            f"  • {p.type.value} ({p.confidence:.0f}%): {p.description}" for p in analysis.patterns
        )
        manip = (
            f"\n  ⚠️ Manipulation: <b>{signal.manipulation_type.value}</b>"
            if signal.is_manipulated else ""
        )
        return self.send(
            f"<b>📊 PATTERN — {analysis.suggestion.value}</b>\n\n"
            f"  Price:      {price:,.2f}\n"
            f"  Confidence: {analysis.overall_confidence:.0f}% "
            f"(boost {signal.confidence_boost:+.0f})\n"
            f"  Market:     {signal.market_direction.value} ({signal.overall_score:.0f}/100)"
            f"{manip}\n\n{lines}"
        )

    def send_trade_executed(self, account_id: str, result: dict, dry_run: bool = False) -> bool:
        trade = result["trade"]
        arrow = "🟢 BUY" if trade["action"] == "BUY" else "🔴 SELL"
        dry_tag = " [DRY RUN]" if dry_run else ""
        return self.send(
            f"<b>{arrow} EXECUTED{dry_tag}</b>\n\n"
            f"  Account:  {account_id}\n"
            f"  Quantity: {trade['quantity']:.4f} @ {trade['unit_price']:,.2f}\n"
            f"  Total:    {trade['total_value']:,.2f} (fee {trade['fee_amount']:,.2f})\n"
            f"  Source:   {trade['source']} ({trade['confidence']:.0f}%)\n"
            f"  Position: {result['position']['current_position']}\n"
            f"  Order:    {result['order_id']}"
        )

    def send_trade_error(self, account_id: str, action: str, reason: str) -> bool:
        return self.send(
            f"<b>❌ TRADE FAILED — {action}</b>\n\n"
            f"  Account: {account_id}\n"
            f"  Reason:  {reason}\n"
            f"  Position unchanged."
        )

    def send_status(self, price: Optional[float], signal: Optional[CombinedSignal], sessions: dict) -> bool:
        market = (
            f"{signal.market_direction.value} ({signal.overall_score:.0f}/100)" if signal else "N/A"
        )
        price_s = f"{price:,.2f}" if price is not None else "N/A"
        rows = "\n".join(
            f"  {acct}: {s['current_position']} P/L {s['profit_loss']:+,.2f} ({s['profit_loss_pct']:+.2f}%)"
            for acct, s in sessions.items() if s.get("active")
        ) or "  No active sessions"
        return self.send(
            f"<b>📈 STATUS</b>\n\n"
            f"  Price:  {price_s}\n"
            f"  Market: {market}\n\n"
            f"{rows}"
        )
