"""
Placeholder interpolation for reminder texts.

    render("Task '{title}' is due in {days} days.", {"title": "Fix printer", "days": 3})
    -> "Task 'Fix printer' is due in 3 days."

Unknown placeholders are kept as-is. Substitution is a single pass, so a value
that itself contains "{...}" is never expanded again.
"""
import re
from typing import Any, Mapping

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


def render(template: str | None, context: Mapping[str, Any]) -> str:
    if not template:
        return ""

    def _sub(match: re.Match) -> str:
        key = match.group(1)
        if key not in context:
            return match.group(0)
        value = context[key]
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_sub, template)


def render_all(templates: Mapping[str, str | None], context: Mapping[str, Any]) -> dict[str, str]:
    return {name: render(tmpl, context) for name, tmpl in templates.items()}
