"""Schema validation for session snapshots.

Snapshots are checked against their JSON Schema before a session is
rebuilt from disk, so a corrupt or hand-edited file is reported as such
instead of failing somewhere inside the state machine.
"""

import json
from functools import lru_cache
from pathlib import Path

from jsonschema import Draft202012Validator

from config.settings import SESSION_SNAPSHOT_SCHEMA


@lru_cache(maxsize=4)
def get_validator(schema_path: str | Path = SESSION_SNAPSHOT_SCHEMA) -> Draft202012Validator:
    """Load a schema once and return a checked Draft 2020-12 validator.

    Raises:
        FileNotFoundError: If the schema file does not exist.
        jsonschema.SchemaError: If the file is not a valid schema.
    """
    with open(schema_path, "r", encoding="utf-8") as f:
        schema = json.load(f)
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def _location(error) -> str:
    return error.json_path if error.absolute_path else "root"


def get_snapshot_validation_errors(snapshot, schema_path: str | Path = SESSION_SNAPSHOT_SCHEMA) -> list[str]:
    """Return every schema violation in a snapshot, ordered by location.

    Returns:
        Messages of the form '<json path>: <reason>'. Empty if valid.
    """
    errors = sorted(get_validator(schema_path).iter_errors(snapshot), key=lambda e: list(map(str, e.absolute_path)))
    return [f"{_location(e)}: {e.message}" for e in errors]


def validate_snapshot(snapshot) -> None:
    """Raise jsonschema.ValidationError for the most relevant violation."""
    get_validator().validate(snapshot)


def is_valid_snapshot(snapshot) -> bool:
    return get_validator().is_valid(snapshot)
