"""
Utility functions for the workflow execution engine.

Includes:
- Execution id generation
- UTC datetime helpers
- JSON-safe serialization of node outputs
"""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any


def utc_now() -> datetime:
    """
    Get the current UTC datetime.

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(timezone.utc)


def generate_execution_id() -> str:
    """Generate a unique id for a workflow run, e.g. ``exec-3f2a...``."""
    return f"exec-{uuid.uuid4().hex}"


def duration_ms(start: float, end: float) -> int:
    """Whole milliseconds between two monotonic readings."""
    return max(0, int(round((end - start) * 1000)))


def safe_serialize(obj: Any, depth: int = 0) -> Any:
    """Recursively ensure all values are JSON-serializable.

    Node outputs end up in the persisted audit trail, so datetimes become
    ISO strings and unknown objects become their ``str()``.
    """
    if depth > 10:
        return str(obj)
    if obj is None or isinstance(obj, (bool, int, float)):
        return obj
    if isinstance(obj, str):
        return obj[:10000] if len(obj) > 10000 else obj
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, dict):
        return {str(k): safe_serialize(v, depth + 1) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [safe_serialize(v, depth + 1) for v in obj]
    return str(obj)
