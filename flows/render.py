"""
Message rendering — fills {{placeholder}} slots in outbound and drip text.

    render_message("Hi {{first}}!", {"first_name": "Ann"})  → "Hi Ann!"

Unknown placeholders are left as written so a missing variable is visible
in review rather than silently blank.
"""
from __future__ import annotations

import re
from typing import Any, Optional

_PLACEHOLDER = re.compile(r"\{\{([^}]+)\}\}")

# Short names used in flow copy
_ALIASES = {
    "first": "first_name",
    "last": "last_name",
    "name": "full_name",
}


def _lookup(variables: dict[str, Any], key: str) -> Optional[Any]:
    current: Any = variables
    for part in key.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def render_message(template: str, variables: Optional[dict[str, Any]] = None) -> str:
    """Replace {{variable}} placeholders with values from `variables`."""
    if not template:
        return ""
    variables = variables or {}

    def replacer(match):
        key = match.group(1).strip()
        val = _lookup(variables, key)
        if val is None and key in _ALIASES:
            val = _lookup(variables, _ALIASES[key])
        return match.group(0) if val is None else str(val)

    return _PLACEHOLDER.sub(replacer, template)


def extract_variables(template: str) -> list[str]:
    """Placeholder names in order of first appearance."""
    return list(dict.fromkeys(m.strip() for m in _PLACEHOLDER.findall(template or "")))


def missing_variables(template: str, variables: Optional[dict[str, Any]] = None) -> list[str]:
    """Placeholders `render_message` would leave unreplaced."""
    variables = variables or {}
    return [
        key for key in extract_variables(template)
        if _lookup(variables, key) is None
        and (key not in _ALIASES or _lookup(variables, _ALIASES[key]) is None)
    ]
