"""JSON-file persistence for pool exit state.

One file per (user, strategy, symbol) under the store directory, written
atomically through a temporary file.
"""
from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Dict, Optional, Union

from .exits import PoolState
from .symbols import to_base_symbol

DEFAULT_POOL_STATE_DIR = Path("pool_state")
POOL_STATE_VERSION = 1

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


def _safe(part: str) -> str:
    return _UNSAFE.sub("_", str(part)) or "_"


class PoolStateStore:
    """Load and upsert ``PoolState`` keyed by (user, strategy, symbol)."""

    def __init__(self, directory: Union[str, Path] = DEFAULT_POOL_STATE_DIR):
        self.directory = Path(directory)
        self._lock = Lock()

    def path_for(self, user_id: str, strategy_id: str, symbol: str) -> Path:
        name = f"{_safe(user_id)}__{_safe(strategy_id)}__{_safe(to_base_symbol(symbol))}.json"
        return self.directory / name

    def load_pool_state(self, user_id: str, strategy_id: str, symbol: str) -> Optional[PoolState]:
        path = self.path_for(user_id, strategy_id, symbol)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as fh:
                payload = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logging.error("Pool state %s is unreadable: %s", path, exc)
            return None
        if payload.get("version") != POOL_STATE_VERSION:
            logging.warning(
                "Pool state version mismatch: expected %s got %s", POOL_STATE_VERSION, payload.get("version")
            )
        try:
            return PoolState.from_dict(payload.get("state") or {})
        except (KeyError, TypeError, ValueError) as exc:
            logging.error("Pool state %s is malformed: %s", path, exc)
            return None

    def upsert_pool_state(self, state: PoolState) -> bool:
        """Write ``state``; returns ``False`` instead of raising on I/O errors."""

        path = self.path_for(state.user_id, state.strategy_id, state.symbol)
        state.updated_at = datetime.now(timezone.utc).isoformat()
        payload: Dict[str, object] = {
            "version": POOL_STATE_VERSION,
            "key": state.key,
            "state": state.to_dict(),
        }
        with self._lock:
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                tmp = path.with_suffix(".tmp")
                with tmp.open("w", encoding="utf-8") as fh:
                    json.dump(payload, fh, ensure_ascii=False, indent=2, sort_keys=True)
                tmp.replace(path)
            except (OSError, TypeError, ValueError) as exc:
                logging.error("Unable to save pool state %s: %s", state.key, exc)
                return False
        return True


__all__ = ["DEFAULT_POOL_STATE_DIR", "POOL_STATE_VERSION", "PoolStateStore"]
