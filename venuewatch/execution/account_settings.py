"""
Per-account trading settings.

  min_confidence        50–100, default 70   adjusted confidence needed to act
  trade_mode            "percentage" | "fixed"
  trade_percent         1–100, default 5     share of the balance per trade
  fixed_quantity        asset quantity per trade in fixed mode
  auto_trading_enabled  default True         False → decisions are logged, never executed
  max_loss_percent      default 10           reported in session status, not enforced

Values are clamped on every write; an out-of-range request is stored at the
nearest bound and logged, never rejected.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Dict, Optional

from ..strategy import engine_config as cfg
from .json_store import atomic_write_json, read_json

logger = logging.getLogger(__name__)

SETTINGS_FILE = cfg.STATE_DIR / "account_settings.json"

TRADE_MODES = ("percentage", "fixed")


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass
class AccountSettings:
    account_id:           str
    min_confidence:       float = cfg.DEFAULT_MIN_CONFIDENCE
    trade_mode:           str = "percentage"
    trade_percent:        float = cfg.DEFAULT_TRADE_PERCENT
    fixed_quantity:       Optional[float] = None
    auto_trading_enabled: bool = True
    max_loss_percent:     float = cfg.DEFAULT_MAX_LOSS_PERCENT

    def __post_init__(self):
        self.min_confidence = _clamp(float(self.min_confidence), cfg.MIN_CONFIDENCE_FLOOR, 100.0)
        self.trade_percent = _clamp(float(self.trade_percent), 1.0, 100.0)
        if self.trade_mode not in TRADE_MODES:
            logger.warning(f"account_settings: unknown trade_mode {self.trade_mode!r} → percentage")
            self.trade_mode = "percentage"
        if self.trade_mode == "fixed" and not self.fixed_quantity:
            self.trade_mode = "percentage"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "AccountSettings":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


class AccountSettingsStore:

    def __init__(self, path: Optional[Path] = SETTINGS_FILE):
        self._path = Path(path) if path else None
        self._lock = threading.Lock()
        self._settings: Dict[str, AccountSettings] = {}
        if self._path is not None:
            for account_id, data in (read_json(self._path) or {}).items():
                try:
                    self._settings[account_id] = AccountSettings.from_dict(data)
                except (TypeError, ValueError) as exc:
                    logger.warning(f"account_settings: skipping corrupt entry {account_id}: {exc}")

    # ── Read ───────────────────────────────────────────────────────────

    def get(self, account_id: str) -> AccountSettings:
        """Settings for an account, created with defaults on first use."""
        with self._lock:
            if account_id not in self._settings:
                self._settings[account_id] = AccountSettings(account_id=account_id)
                self._persist()
            return replace(self._settings[account_id])

    def accounts(self) -> list:
        with self._lock:
            return sorted(self._settings)

    # ── Write ──────────────────────────────────────────────────────────

    def update_trade_amount(self, account_id: str, mode: str, value: float) -> AccountSettings:
        if mode == "fixed":
            return self._update(account_id, trade_mode="fixed", fixed_quantity=float(value))
        return self._update(account_id, trade_mode="percentage", trade_percent=float(value))

    def set_min_confidence(self, account_id: str, value: float) -> AccountSettings:
        return self._update(account_id, min_confidence=float(value))

    def set_auto_trading(self, account_id: str, enabled: bool) -> AccountSettings:
        return self._update(account_id, auto_trading_enabled=bool(enabled))

    def set_max_loss_percent(self, account_id: str, value: float) -> AccountSettings:
        return self._update(account_id, max_loss_percent=abs(float(value)))

    # ── Internal ───────────────────────────────────────────────────────

    def _update(self, account_id: str, **changes) -> AccountSettings:
        with self._lock:
            current = self._settings.get(account_id) or AccountSettings(account_id=account_id)
            updated = AccountSettings(**{**current.to_dict(), **changes})
            self._settings[account_id] = updated
            self._persist()
        logger.info(f"⚙️  settings {account_id}: {changes}")
        return replace(updated)

    def _persist(self) -> None:
        if self._path is None:
            return
        atomic_write_json(
            self._path, {k: v.to_dict() for k, v in self._settings.items()}, prefix="settings_"
        )
