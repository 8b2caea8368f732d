"""Decision trace sink passed explicitly through the engine."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

ActivityLogger = Callable[[Dict[str, object]], None]


def log_activity(activity_logger: Optional[ActivityLogger], payload: Dict[str, object]) -> None:
    if not activity_logger:
        return
    event = dict(payload)
    event.setdefault("ts", datetime.now(timezone.utc).isoformat())
    try:
        activity_logger(event)
    except Exception:  # pragma: no cover - logging only
        logging.exception("Unable to write activity event %s", payload.get("event"))


__all__ = ["ActivityLogger", "log_activity"]
