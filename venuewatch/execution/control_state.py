"""
control_state.py
================
Global on/off switch for the decision engine.

Manages runtime_state/control.json — the single file that carries:
  • trading_enabled : bool  — False → every cycle returns immediately
  • paused_until    : ISO timestamp | None — timed pause, auto-expires
  • last_updated    : ISO timestamp
  • updated_by      : "telegram" | "api" | "startup" | ...
  • reason          : free-form reason string

Design principles:
  • Missing file → default (trading_enabled = False). Trading is opt-in.
  • Read on startup and at the start of every orchestrator cycle.
  • Turning the switch off never cancels an order already in flight.
  • Writes are atomic (write to temp, rename).

Usage:
    ctrl = ControlState()
    ctrl.enable(updated_by="telegram")
    ctrl.pause(minutes=30, reason="news")
    if ctrl.is_active():
        ...
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from ..strategy import engine_config as cfg
from .json_store import atomic_write_json, read_json

logger = logging.getLogger(__name__)

# ── File location ──────────────────────────────────────────────────────────
CONTROL_FILE = cfg.STATE_DIR / "control.json"

_DEFAULT_STATE: dict = {
    "trading_enabled": False,
    "paused_until":    None,
    "last_updated":    None,
    "updated_by":      "startup",
    "reason":          "",
}


class ControlState:
    """
    Thin wrapper around runtime_state/control.json.
    path=None keeps the switch in memory only.
    """

    def __init__(self, path: Optional[Path] = CONTROL_FILE) -> None:
        self._path = Path(path) if path else None
        self._state: dict = dict(_DEFAULT_STATE)
        self.reload()

    # ── Read ───────────────────────────────────────────────────────────

    @property
    def trading_enabled(self) -> bool:
        return bool(self._state.get("trading_enabled", False))

    @property
    def paused_until(self) -> Optional[datetime]:
        raw = self._state.get("paused_until")
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            logger.warning(f"control_state: bad paused_until {raw!r} — ignored")
            return None

    @property
    def reason(self) -> str:
        return str(self._state.get("reason", ""))

    @property
    def updated_by(self) -> str:
        return str(self._state.get("updated_by", "unknown"))

    def is_paused(self, now: Optional[datetime] = None) -> bool:
        until = self.paused_until
        return until is not None and (now or datetime.now(timezone.utc)) < until

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.trading_enabled and not self.is_paused(now)

    def to_dict(self) -> dict:
        until = self.paused_until
        return {
            "trading_enabled": self.trading_enabled,
            "paused_until":    until.isoformat() if until else None,
            "is_active":       self.is_active(),
            "last_updated":    self._state.get("last_updated"),
            "updated_by":      self.updated_by,
            "reason":          self.reason,
        }

    # ── Write ──────────────────────────────────────────────────────────

    def enable(self, reason: str = "", updated_by: str = "api") -> None:
        self._update(updated_by, reason, trading_enabled=True, paused_until=None)
        logger.info(f"▶  trading_enabled=True  by={updated_by}  reason={reason!r}")

    def disable(self, reason: str = "", updated_by: str = "api") -> None:
        self._update(updated_by, reason, trading_enabled=False)
        logger.info(f"⏹  trading_enabled=False  by={updated_by}  reason={reason!r}")

    def pause(self, minutes: float, reason: str = "", updated_by: str = "api") -> datetime:
        until = datetime.now(timezone.utc) + timedelta(minutes=minutes)
        self._update(updated_by, reason, paused_until=until.isoformat())
        logger.info(f"⏸  paused until {until.isoformat()}  by={updated_by}  reason={reason!r}")
        return until

    def resume(self, reason: str = "", updated_by: str = "api") -> None:
        self._update(updated_by, reason, paused_until=None)
        logger.info(f"▶  pause cleared  by={updated_by}")

    def reload(self) -> None:
        """Re-read control.json from disk (called each orchestrator cycle)."""
        if self._path is None:
            return
        raw = read_json(self._path)
        if raw is None:
            if not self._path.exists():
                self._state = dict(_DEFAULT_STATE)
            # unreadable → keep current in-memory state rather than wiping
            return
        self._state = {**_DEFAULT_STATE, **raw}

    # ── Internal ───────────────────────────────────────────────────────

    def _update(self, updated_by: str, reason: str, **changes) -> None:
        self._state = {
            **self._state,
            **changes,
            "last_updated": datetime.now(timezone.utc).isoformat(),
            "updated_by":   updated_by,
            "reason":       reason,
        }
        if self._path is not None:
            atomic_write_json(self._path, self._state, prefix="control_")
