"""Structured JSON logging to stdout.

One JSON object per line, safe for production stdout collectors.
"""

from typing import Any, Dict
from datetime import datetime, timezone
import json

from visit_tracker.obs.context import request_id_var, user_id_var, location_id_var


def _redact_user(value: Any) -> Any:
    s = str(value) if value is not None else ""
    if not s:
        return None
    if len(s) <= 3:
        return "***"
    return f"{s[:2]}***{s[-1]}"


def log_event(event: str, **fields: Any) -> None:
    now = datetime.now(timezone.utc).isoformat()
    payload: Dict[str, Any] = {
        "ts": now,
        "level": fields.pop("level", "INFO"),
        "event": event,
        "request_id": request_id_var.get(),
    }
    # Attach context vars if not provided explicitly
    if "user_id" not in fields:
        payload["user_id"] = _redact_user(user_id_var.get())
    if "location_id" not in fields:
        payload["location_id"] = location_id_var.get()

    for k, v in fields.items():
        if k == "user_id":
            payload["user_id"] = _redact_user(v)
        else:
            payload[k] = v

    try:
        print(json.dumps(payload, separators=(",", ":"), default=str))
    except (TypeError, ValueError):
        # Never let a bad field take the request down
        print(json.dumps({"ts": now, "level": "ERROR", "event": "log_encode_failed", "source_event": event}))
