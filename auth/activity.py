"""
auth/activity.py -- Structured activity log for security-relevant user actions.

One JSON object per line on the "helfy.activity" logger:

    {"timestamp": "...", "userId": 7, "action": "LOGIN", "ipAddress": "10.0.0.5",
     "username": "a", "email": "a@x.com"}

Best effort: there is no acknowledgment or retry. Whatever handler is attached
to the logger is the sink. configure_activity_logging() attaches a bare
"%(message)s" stream handler so each record is exactly the JSON line, without
the timestamp/level prefix the application log carries.

Never pass passwords or hashes as extra fields.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any

ACTIVITY_LOGGER_NAME = "helfy.activity"


class Action(str, Enum):
    LOGIN = "LOGIN"
    REGISTER = "REGISTER"
    LOGOUT = "LOGOUT"


def configure_activity_logging(stream=None) -> logging.Logger:
    """Attach the JSON-line handler once. Safe to call more than once."""
    activity_logger = logging.getLogger(ACTIVITY_LOGGER_NAME)
    if not any(getattr(h, "_helfy_activity", False) for h in activity_logger.handlers):
        handler = logging.StreamHandler(stream or sys.stdout)
        handler.setFormatter(logging.Formatter("%(message)s"))
        handler._helfy_activity = True  # type: ignore[attr-defined]
        activity_logger.addHandler(handler)
    activity_logger.setLevel(logging.INFO)
    activity_logger.propagate = False
    return activity_logger


class ActivityLog:
    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger(ACTIVITY_LOGGER_NAME)

    @staticmethod
    def build_entry(user_id: int | None, action: Action | str, ip_address: str, **extra: Any) -> dict:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "userId": user_id,
            "action": action.value if isinstance(action, Action) else action,
            "ipAddress": ip_address,
        }
        entry.update(extra)
        return entry

    def record(self, user_id: int | None, action: Action | str, ip_address: str, **extra: Any) -> dict:
        entry = self.build_entry(user_id, action, ip_address, **extra)
        self._logger.info(json.dumps(entry, default=str))
        return entry
