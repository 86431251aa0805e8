"""Captured-answer store for a blueprint session.

A captured record maps storage keys ('plan.phases') to CapturedValue
entries. Every update returns a new record; the record passed in is
never mutated.

Answers arrive in loose shapes (typed text, suggestion payloads, LLM
output), so values are extracted through an ordered chain of pure
parser strategies:

    strict structured (JSON) -> bullet/delimiter lines -> "Key: Value" lines -> raw text

Parsing never raises. When every strategy fails the raw text is stored
and the value is flagged so it can be reviewed later.
"""

import json
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

from execution.stage_table import SHAPE_ITEMS, SHAPE_TEXT, Stage, find_step

METHOD_TYPED = "typed"
METHOD_SELECTED = "selected"
METHOD_REFINED = "refined"
METHOD_SKIPPED = "skipped"

CAPTURE_METHODS = (
    METHOD_TYPED,
    METHOD_SELECTED,
    METHOD_REFINED,
    METHOD_SKIPPED,
)

STRATEGY_DIRECT = "direct"
STRATEGY_STRUCTURED = "structured"
STRATEGY_DELIMITED = "delimited"
STRATEGY_KEY_VALUE = "key_value"
STRATEGY_RAW = "raw"

# Upper bound for generated suggestions and micro-flow additions. Typed lists are never cut.
MAX_ITEMS = 12

_NAME_KEYS = ("name", "title", "label", "text", "value")
_DETAIL_KEYS = ("details", "activities", "description", "summary", "notes")
_BULLET = re.compile(r"^\s*(?:[-*•]+|\d{1,2}[.)]|\(\d{1,2}\))\s*")
_KEY_VALUE = re.compile(r"^\s*([A-Za-z][^:]{0,60}?)\s*:(?!//)\s*(.+?)\s*$")


def _now() -> str:
    """Return current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class CapturedValue:
    """The confirmed answer for one step.

    ``value`` is a canonical string for text steps, a list of item dicts
    for item steps, or None when the step was skipped. Extra fields that
    arrive with generated content are kept in ``extensions``.
    """

    value: str | list[dict] | None
    method: str
    confirmed_at: str
    strategy: str = STRATEGY_DIRECT
    flagged_raw: bool = False
    extensions: dict = field(default_factory=dict)

    @property
    def skipped(self) -> bool:
        return self.method == METHOD_SKIPPED

    def as_text(self) -> str:
        """Return a plain-text rendering of the value."""
        if self.value is None:
            return ""
        if isinstance(self.value, str):
            return self.value
        return "; ".join(item["name"] for item in self.value)

    def items(self) -> list[dict]:
        """Return the item list, or an empty list for text/skipped values."""
        if isinstance(self.value, list):
            return [dict(item) for item in self.value]
        return []

    def to_dict(self) -> dict:
        return {
            "value": self.value,
            "method": self.method,
            "confirmed_at": self.confirmed_at,
            "strategy": self.strategy,
            "flagged_raw": self.flagged_raw,
            "extensions": dict(self.extensions),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CapturedValue":
        return cls(
            value=data.get("value"),
            method=data.get("method", METHOD_TYPED),
            confirmed_at=data.get("confirmed_at") or _now(),
            strategy=data.get("strategy", STRATEGY_DIRECT),
            flagged_raw=bool(data.get("flagged_raw", False)),
            extensions=dict(data.get("extensions") or {}),
        )


# ---------------------------------------------------------------------------
# Item normalization
# ---------------------------------------------------------------------------

def _clean_line(line: str) -> str:
    """Strip bullet/number markers and surrounding whitespace."""
    return re.sub(r"\s+", " ", _BULLET.sub("", line)).strip()


def _split_details(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [part.strip() for part in re.split(r"[,;]+", str(value)) if part.strip()]


def _split_name_details(text: str) -> dict:
    """Split 'Name: detail, detail' into an item; plain text becomes a name."""
    match = _KEY_VALUE.match(text)
    if match:
        return make_item(match.group(1), _split_details(match.group(2)))
    return make_item(text)


def make_item(name: str, details: list[str] | None = None, extensions: dict | None = None) -> dict:
    """Build an item dict in canonical shape."""
    return {
        "name": _clean_line(str(name)),
        "details": list(details or []),
        "extensions": dict(extensions or {}),
    }


def normalize_item(raw) -> dict | None:
    """Coerce a loosely shaped item (string or dict) into canonical shape.

    Args:
        raw: A string, or a dict using any of the common name/detail keys.

    Returns:
        Item dict with 'name', 'details', 'extensions', or None if no name
        can be found.
    """
    if isinstance(raw, str):
        text = _clean_line(raw)
        return _split_name_details(text) if text else None
    if not isinstance(raw, dict):
        return None

    name = next(
        (str(raw[k]).strip() for k in _NAME_KEYS if isinstance(raw.get(k), (str, int, float)) and str(raw[k]).strip()),
        "",
    )
    if not name:
        return None
    detail_key = next((k for k in _DETAIL_KEYS if k in raw), None)
    details = _split_details(raw.get(detail_key)) if detail_key else []

    extensions = dict(raw.get("extensions") or {}) if isinstance(raw.get("extensions"), dict) else {}
    for key, value in raw.items():
        if key in _NAME_KEYS or key == detail_key or key == "extensions":
            continue
        extensions[key] = value
    return make_item(name, details, extensions)


def normalize_items(raw_items) -> list[dict]:
    """Normalize a list of loose items, dropping entries without a name."""
    items = []
    for raw in raw_items or []:
        item = normalize_item(raw)
        if item and item["name"]:
            items.append(item)
    return items


# ---------------------------------------------------------------------------
# Parser strategies (pure, each returns None when it does not apply)
# ---------------------------------------------------------------------------

def _strip_fences(text: str) -> str:
    text = re.sub(r"^```(?:json)?\s*\n?", "", text.strip())
    text = re.sub(r"\n?```\s*$", "", text)
    return text.strip()


def parse_structured(text: str):
    """Strict JSON parse (tolerating markdown code fences).

    Returns:
        The decoded list/dict/str, or None if the text is not JSON.
    """
    if not isinstance(text, str):
        return None
    candidate = _strip_fences(text)
    if not candidate or candidate[0] not in "[{\"":
        return None
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        return None


def _items_from_structured(data) -> list[dict] | None:
    if isinstance(data, list):
        items = normalize_items(data)
        return items or None
    if isinstance(data, dict):
        for key in ("items", "structured_items", "structuredItems"):
            if isinstance(data.get(key), list):
                return normalize_items(data[key]) or None
        for value in data.values():
            if isinstance(value, list):
                return normalize_items(value) or None
        item = normalize_item(data)
        return [item] if item else None
    return None


def parse_delimited(text: str) -> list[dict] | None:
    """Split bullet/numbered lines, or a comma/semicolon list, into items.

    Lines of the form 'Name: detail, detail' keep their details. A single
    line is only split on commas when it is not a 'Key: Value' line.

    Returns:
        Two or more items, or None.
    """
    if not isinstance(text, str):
        return None
    normalized = text.replace("\r", "\n")
    lines = [_clean_line(line) for line in normalized.split("\n")]
    lines = [line for line in lines if line]
    if len(lines) > 1:
        return [_split_name_details(line) for line in lines]

    if len(lines) == 1 and not _KEY_VALUE.match(lines[0]):
        parts = [_clean_line(p) for p in re.split(r"[,;]+", lines[0])]
        parts = [p for p in parts if p]
        if len(parts) > 1:
            return [make_item(p) for p in parts]
    return None


def parse_key_value(text: str) -> list[dict] | None:
    """Parse 'Key: Value' lines into items named by key.

    Returns:
        One item per matching line, or None when no line matches.
    """
    if not isinstance(text, str):
        return None
    items = []
    for line in text.replace("\r", "\n").split("\n"):
        match = _KEY_VALUE.match(_clean_line(line))
        if match:
            items.append(make_item(match.group(1), _split_details(match.group(2))))
    return items or None


def parse_key_value_fields(text: str) -> dict:
    """Return {'key': 'value'} for each 'Key: Value' line (keys snake_cased)."""
    fields = {}
    if not isinstance(text, str):
        return fields
    for line in text.replace("\r", "\n").split("\n"):
        match = _KEY_VALUE.match(_clean_line(line))
        if match:
            key = re.sub(r"[^a-z0-9]+", "_", match.group(1).lower()).strip("_")
            if key:
                fields[key] = match.group(2)
    return fields


def parse_items(text: str) -> list[dict]:
    """Run the full item chain on text and return the items (never raises)."""
    return extract_items(text)[0] or []


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def extract_items(raw) -> tuple[list[dict], str, bool]:
    """Extract an item list from any input.

    Returns:
        Tuple of (items, strategy name, flagged_raw).
    """
    if isinstance(raw, (list, tuple)):
        items = normalize_items(raw)
        if items:
            return items, STRATEGY_DIRECT, False
        raw = json.dumps(list(raw), default=str)
    elif isinstance(raw, dict):
        items = _items_from_structured(raw)
        if items:
            return items, STRATEGY_STRUCTURED, False
        raw = json.dumps(raw, default=str)
    elif raw is None:
        return [], STRATEGY_RAW, True
    elif not isinstance(raw, str):
        raw = str(raw)

    structured = parse_structured(raw)
    if structured is not None:
        items = _items_from_structured(structured)
        if items:
            return items, STRATEGY_STRUCTURED, False

    for name, strategy in ((STRATEGY_DELIMITED, parse_delimited), (STRATEGY_KEY_VALUE, parse_key_value)):
        items = strategy(raw)
        if items:
            return items, name, False

    text = raw.strip()
    if not text:
        return [], STRATEGY_RAW, True
    return [make_item(text)], STRATEGY_RAW, True


def extract_text(raw) -> tuple[str, str, bool]:
    """Extract a canonical string from any input.

    Returns:
        Tuple of (text, strategy name, flagged_raw).
    """
    if isinstance(raw, str):
        structured = parse_structured(raw)
        if isinstance(structured, str) and structured.strip():
            return structured.strip(), STRATEGY_STRUCTURED, False
        if isinstance(structured, dict):
            text = _text_from_dict(structured)
            if text:
                return text, STRATEGY_STRUCTURED, False
        return raw.strip(), STRATEGY_DIRECT, not raw.strip()
    if isinstance(raw, dict):
        text = _text_from_dict(raw)
        if text:
            return text, STRATEGY_STRUCTURED, False
    if isinstance(raw, (list, tuple)):
        items = normalize_items(raw)
        if items:
            return "; ".join(i["name"] for i in items), STRATEGY_STRUCTURED, False
    if raw is None:
        return "", STRATEGY_RAW, True
    return str(raw), STRATEGY_RAW, True


def _text_from_dict(data: dict) -> str:
    for key in ("text", "value", "answer", "content"):
        if isinstance(data.get(key), str) and data[key].strip():
            return data[key].strip()
    for value in data.values():
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


# ---------------------------------------------------------------------------
# Record operations
# ---------------------------------------------------------------------------

def capture(record: dict, key: str, value, method: str = METHOD_TYPED) -> dict:
    """Return a new record with ``value`` captured under ``key``.

    Args:
        record: The existing captured record (not modified).
        key: A stageStepId, e.g. 'foundation.big_idea'.
        value: Raw answer in any shape (str, list, dict, CapturedValue).
        method: How the answer was obtained (one of CAPTURE_METHODS).

    Returns:
        A new record dict.

    Raises:
        ValueError: If the key or method is unknown.
    """
    _, _, step = find_step(key)
    if method not in CAPTURE_METHODS:
        raise ValueError(f"Unknown capture method '{method}'")

    if isinstance(value, CapturedValue):
        entry = replace(value, method=method, confirmed_at=_now())
    elif method == METHOD_SKIPPED:
        entry = CapturedValue(value=None, method=METHOD_SKIPPED, confirmed_at=_now())
    elif step.shape == SHAPE_ITEMS:
        items, strategy, flagged = extract_items(value)
        entry = CapturedValue(
            value=items, method=method, confirmed_at=_now(),
            strategy=strategy, flagged_raw=flagged,
        )
    else:
        text, strategy, flagged = extract_text(value)
        extensions = parse_key_value_fields(text) if step.shape == SHAPE_TEXT else {}
        entry = CapturedValue(
            value=text, method=method, confirmed_at=_now(),
            strategy=strategy, flagged_raw=flagged, extensions=extensions,
        )

    new_record = dict(record)
    new_record[step.key] = entry
    return new_record


def skip(record: dict, key: str) -> dict:
    """Return a new record with a 'skipped' sentinel under ``key``."""
    return capture(record, key, None, method=METHOD_SKIPPED)


def discard(record: dict, keys) -> dict:
    """Return a new record without the given keys."""
    drop = set(keys)
    return {k: v for k, v in record.items() if k not in drop}


def get_value(record: dict, key: str) -> CapturedValue | None:
    _, _, step = find_step(key)
    return record.get(step.key)


def captured_text(record: dict, key: str) -> str:
    """Return the plain-text form of a captured step, or '' if absent."""
    entry = get_value(record, key)
    return entry.as_text() if entry else ""


def text_context(record: dict) -> dict:
    """Map bare step ids to captured text, for validators and prompts."""
    context = {}
    for key, entry in record.items():
        _, _, step = find_step(key)
        context[step.step.value] = entry.as_text()
    return context


def stage_slice(record: dict, stage: Stage) -> dict:
    """Return the entries of a record that belong to one stage."""
    prefix = f"{stage.value}."
    return {k: v for k, v in record.items() if k.startswith(prefix)}


def record_to_dict(record: dict) -> dict:
    return {key: entry.to_dict() for key, entry in record.items()}


def record_from_dict(data: dict) -> dict:
    return {key: CapturedValue.from_dict(entry) for key, entry in (data or {}).items()}
