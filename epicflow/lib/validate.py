"""
Schema validation for persisted records.

Checkpoints, metrics, run results and structured worker blocks each have a
JSON Schema in epicflow/schemas/. Records are validated before they are
written; worker blocks are validated before they are trusted.
"""

import json
from functools import lru_cache
from pathlib import Path

import jsonschema

SCHEMAS_DIR = Path(__file__).resolve().parent.parent / "schemas"

# Errors listed in one ValidationError message
MAX_REPORTED_ERRORS = 3


class ValidationError(Exception):
    """A record does not match its schema."""

    def __init__(self, schema_name: str, message: str, path: str | None = None):
        self.schema_name = schema_name
        self.path = path
        super().__init__(f"[{schema_name}] {message}" + (f" at {path}" if path else ""))


@lru_cache(maxsize=16)
def _validator(schema_name: str):
    path = SCHEMAS_DIR / f"{schema_name}.schema.json"
    if not path.exists():
        raise ValidationError(schema_name, f"Schema file not found: {path}")
    schema = json.loads(path.read_text())
    cls = jsonschema.validators.validator_for(schema)
    cls.check_schema(schema)
    return cls(schema)


def _location(error: jsonschema.ValidationError) -> str:
    return ".".join(str(p) for p in error.absolute_path) or "(root)"


def validate(data: dict, schema_name: str) -> None:
    """
    Check data against a named schema ("checkpoint", "metrics", "result", "worker_result").

    Raises:
        ValidationError: naming the first failing location and up to
            MAX_REPORTED_ERRORS messages
    """
    errors = sorted(_validator(schema_name).iter_errors(data), key=lambda e: list(map(str, e.absolute_path)))
    if not errors:
        return
    summary = "; ".join(f"{_location(e)}: {e.message}" for e in errors[:MAX_REPORTED_ERRORS])
    if len(errors) > MAX_REPORTED_ERRORS:
        summary += f" (+{len(errors) - MAX_REPORTED_ERRORS} more)"
    raise ValidationError(schema_name, summary, _location(errors[0]))


def is_valid(data: dict, schema_name: str) -> bool:
    return _validator(schema_name).is_valid(data)


def validate_before_write(data: dict, schema_name: str, filepath: Path) -> None:
    """Refuse to persist a record that doesn't match its schema."""
    try:
        validate(data, schema_name)
    except ValidationError as e:
        raise ValidationError(schema_name, f"refusing to write {filepath}: {e}", e.path) from None
