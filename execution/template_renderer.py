"""Placeholder rendering for coaching messages and recaps.

Templates use {{name}} for scalar values and {{#section}}...{{/section}}
for a block repeated once per row. Inside a block each row's keys are
available, plus {{position}} (1-based).
"""

import re

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")
_SECTION = re.compile(r"\{\{#(\w+)\}\}(.*?)\{\{/\1\}\}", re.DOTALL)
_STRAY_TAG = re.compile(r"\{\{[#/]?\w+\}\}")


def fill(template: str, context: dict, keep_missing: bool = True) -> str:
    """Substitute scalar {{name}} placeholders in one pass.

    Args:
        template: Text containing placeholders.
        context: Values by name. Only str, int and float are substituted.
        keep_missing: Leave unknown placeholders in place (True) or drop
            them (False).
    """
    def _sub(match: re.Match) -> str:
        value = context.get(match.group(1))
        if isinstance(value, (str, int, float)):
            return str(value)
        return match.group(0) if keep_missing else ""

    return _PLACEHOLDER.sub(_sub, template)


def expand_sections(template: str, sections: dict[str, list[dict]]) -> str:
    """Repeat each {{#name}} block once per row of ``sections[name]``.

    Blocks with no entry in ``sections`` are left untouched.
    """
    def _sub(match: re.Match) -> str:
        rows = sections.get(match.group(1))
        if rows is None:
            return match.group(0)
        body = match.group(2)
        return "".join(fill(body, {"position": n, **row}) for n, row in enumerate(rows, start=1))

    return _SECTION.sub(_sub, template)


def render_message(template: str, context: dict, items: list[dict] | None = None) -> str:
    """Render a user-facing message; template syntax never leaks through.

    ``items`` feeds the {{#items}} block. Leftover placeholders and tags
    are removed and the result is stripped.
    """
    text = expand_sections(template, {"items": items or []})
    text = fill(text, context, keep_missing=False)
    text = _STRAY_TAG.sub("", text)
    return re.sub(r"[ \t]+\n", "\n", text).strip()


def truncate(text: str, limit: int = 80) -> str:
    """Shorten text to ``limit`` characters on a word boundary."""
    text = " ".join((text or "").split())
    if len(text) <= limit:
        return text
    cut = text[: limit - 1].rsplit(" ", 1)[0]
    return cut.rstrip(",;:.") + "…"
