"""Utility functions for the image operator."""

import base64
import datetime
from typing import Any


def now_iso() -> str:
    """Return current UTC time in ISO format."""
    return datetime.datetime.now(datetime.UTC).isoformat()


def decode_secret_data(data: dict[str, str] | None) -> dict[str, str]:
    """Decode the base64 values of a Secret's data field.

    Values that are not valid base64 are skipped.
    """
    decoded: dict[str, str] = {}
    for key, value in (data or {}).items():
        try:
            decoded[key] = base64.b64decode(value).decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            continue
    return decoded


def parse_optional_bool(value: str | None, flag: str) -> bool | None:
    """Parse a tri-state flag value.

    Empty or missing means "not set"; otherwise the value must be "true"
    or "false".

    Example: parse_optional_bool("", "--mirror") -> None
    """
    if not value:
        return None
    if value not in ("true", "false"):
        raise ValueError(f"{flag} must be 'true' or 'false'")
    return value == "true"


def set_condition(
    status: dict[str, Any],
    condition_type: str,
    condition_status: str,
    reason: str = "",
    message: str = "",
) -> None:
    """Set or update a condition in the status conditions list."""
    conditions: list[dict[str, str]] = status.setdefault("conditions", [])

    for condition in conditions:
        if condition["type"] == condition_type:
            if condition["status"] != condition_status:
                condition["status"] = condition_status
                condition["lastTransitionTime"] = now_iso()
            condition["reason"] = reason
            condition["message"] = message
            return

    conditions.append(
        {
            "type": condition_type,
            "status": condition_status,
            "reason": reason,
            "message": message,
            "lastTransitionTime": now_iso(),
        }
    )
