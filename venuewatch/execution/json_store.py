"""
JSON state files under runtime_state/.

Writes are atomic (temp file in the same directory → os.replace), so a crash
mid-write leaves the previous file intact. Reads never raise: a missing or
unreadable file yields None and the caller falls back to its defaults.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


def atomic_write_json(path: Path, data: Any, prefix: str = "state_") -> bool:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp", prefix=prefix)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(tmp, path)
        return True
    except Exception as exc:
        logger.error(f"json_store: failed to persist {path}: {exc}")
        return False


def read_json(path: Path) -> Optional[Any]:
    path = Path(path)
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:
        logger.warning(f"json_store: failed to read {path}: {exc}")
        return None
