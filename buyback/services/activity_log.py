# buyback/services/activity_log.py
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger("buyback.activity")


def format_status_label(status: Any) -> str:
    raw = getattr(status, "value", status)
    text = str(raw or "").replace("_", " ").replace("-", " ").strip()
    return " ".join(part.capitalize() for part in text.split()) or "Unknown"


class ActivityLogWriter:
    """
    Builder for activityLog entries.

    - Entries are append-only: {id, type, message, metadata, at}.
    - `at` is stamped by the store at write time, so every entry of one
      merge-write shares the write's timestamp.
    - type is a short category: status / tracking / label / cancellation /
      reminder / email / reoffer / auto_requote.
    """

    @staticmethod
    def entry(
        type: str,
        message: str,
        *,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        return {
            "id": uuid.uuid4().hex,
            "type": type,
            "message": message,
            "metadata": dict(metadata or {}),
        }

    @staticmethod
    def status_changed(status: Any, *, via: Optional[str] = None, **metadata: Any) -> Dict[str, Any]:
        suffix = f" via {via.replace('_', ' ')}" if via else ""
        return ActivityLogWriter.entry(
            "status",
            f"Status changed to {format_status_label(status)}{suffix}.",
            metadata=metadata,
        )

    @staticmethod
    def stamp(entry: Mapping[str, Any], at: str) -> Dict[str, Any]:
        out = dict(entry)
        out.setdefault("id", uuid.uuid4().hex)
        out.setdefault("type", "update")
        out.setdefault("metadata", {})
        out["at"] = at
        logger.debug("activity[%s] %s", out["type"], out.get("message"))
        return out
