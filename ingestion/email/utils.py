"""Email utility functions shared across email processing modules."""
import json
from typing import Any, Optional


def mask(value: Optional[str]) -> str:
    """Mask sensitive values for logging."""
    if not value or len(value) <= 4:
        return "***"
    return value[:2] + "*" * (len(value) - 4) + value[-2:]


def to_json(value: Any) -> str:
    """Serialize list/dict columns for JSONB parameters."""
    return json.dumps(value if value is not None else [], sort_keys=True)
