"""Result shaping and argument checks used by every tool module.

Validators return ``None`` when the argument is acceptable, otherwise a
ready-to-return ``{"error", "code"}`` payload. Nothing here imports
``mcp_server``.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from mcp.types import TextContent

if TYPE_CHECKING:
    from ahacache.gateway import Gateway

Handler = Callable[["Gateway", dict[str, Any]], Awaitable[list[TextContent]]]

VALIDATION_ERROR = "validation_error"
NOT_FOUND = "not_found"
REMOTE_ERROR = "remote_error"
UNAVAILABLE = "unavailable"
INVALID_STATE = "invalid_state"


def _text(content: object) -> list[TextContent]:
    body = content if isinstance(content, str) else json.dumps(content, indent=2, default=str)
    return [TextContent(type="text", text=body)]


def _error(message: str, code: str) -> list[TextContent]:
    return _text({"error": message, "code": code})


def _validate_number_range(
    value: Any,
    name: str,
    min_val: float | None = None,
    max_val: float | None = None,
    *,
    integer: bool = False,
) -> list[TextContent] | None:
    """Check an optional numeric argument against inclusive bounds."""
    if value is None:
        return None
    kind = int if integer else int | float
    if isinstance(value, bool) or not isinstance(value, kind):
        return _error(f"{name} must be {'an integer' if integer else 'a number'}", VALIDATION_ERROR)
    if min_val is not None and value < min_val:
        return _error(f"{name} must be >= {min_val}", VALIDATION_ERROR)
    if max_val is not None and value > max_val:
        return _error(f"{name} must be <= {max_val}", VALIDATION_ERROR)
    return None


def _validate_int_range(
    value: Any, name: str, min_val: int | None = None, max_val: int | None = None
) -> list[TextContent] | None:
    return _validate_number_range(value, name, min_val, max_val, integer=True)


def _validate_str(value: Any, name: str) -> list[TextContent] | None:
    if not isinstance(value, str) or not value.strip():
        return _error(f"{name} is required and must be a non-empty string", VALIDATION_ERROR)
    return None


def _validate_str_list(value: Any, name: str) -> list[TextContent] | None:
    if not isinstance(value, list) or not value or not all(isinstance(v, str) and v.strip() for v in value):
        return _error(f"{name} must be a non-empty list of strings", VALIDATION_ERROR)
    return None
