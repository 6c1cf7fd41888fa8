"""Shared utility functions used across Dealflow modules."""
from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def json_dump(value: Any) -> str:
    """Serialize a JSON bag for a ``*_json`` text column."""
    return json.dumps(value if value is not None else {}, default=str)


def validation_message(exc: ValidationError) -> str:
    """Flatten a pydantic ValidationError into ``"field: message"`` lines."""
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"] if p != "body")
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)
