from __future__ import annotations

import html
from typing import Any


def sanitize(value: Any) -> Any:
    """Escape HTML-significant characters in free text and trim it.

    Non-string values are returned untouched. This guards log and HTML
    contexts only; SQL statements always use bound parameters.
    """
    if not isinstance(value, str):
        return value
    return html.escape(value, quote=True).strip()


__all__ = ["sanitize"]
