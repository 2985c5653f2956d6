"""Shared structured JSON logging helpers."""

from __future__ import annotations

import json
import sys
from datetime import UTC, datetime
from typing import Any, TextIO


def render_json_event(
    event_type: str,
    *,
    run_id: str | None = None,
    level: str = "info",
    **payload: Any,
) -> str:
    """Render one event as a single sorted JSON line (without newline)."""
    event: dict[str, Any] = {
        "event_type": event_type,
        "level": level,
        "timestamp": datetime.now(UTC).isoformat(),
        "run_id": run_id,
    }
    event.update(payload)
    return json.dumps(event, ensure_ascii=True, sort_keys=True, default=str)


def emit_json_event(
    event_type: str,
    *,
    run_id: str | None = None,
    level: str = "info",
    stream: TextIO | None = None,
    **payload: Any,
) -> str:
    """Emit one JSON event line to stdout (or `stream`) and return the rendered line."""
    line = render_json_event(event_type, run_id=run_id, level=level, **payload)
    print(line, file=stream or sys.stdout)
    return line
