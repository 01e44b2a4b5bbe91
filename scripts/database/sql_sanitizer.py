"""Validation and quoting for values interpolated into SQL text."""

import re

_INTEGER_PATTERN = re.compile(r"^-?[0-9]+$")
_DATABASE_NAME_PATTERN = re.compile(r"^[a-z0-9_]+$")
POSTGRES_NAME_MAX_LENGTH = 63


def sanitize_string(value: str) -> str:
    """Escape single quotes for use inside a SQL string literal."""
    return value.replace("'", "''")


def sanitize_identifier(identifier: str) -> str:
    """
    Quote a table, column or schema name.

    Already double-quoted identifiers are returned unchanged.

    Raises:
        ValueError: If the identifier is empty
    """
    if not identifier:
        raise ValueError("Empty identifier")
    if len(identifier) >= 2 and identifier.startswith('"') and identifier.endswith('"'):
        return identifier
    return '"' + identifier.replace('"', '""') + '"'


def sanitize_integer(value) -> int:
    """
    Validate an integer parameter.

    Raises:
        ValueError: If the value is empty or not an integer literal
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid integer: {value!r}")
    if isinstance(value, int):
        return value
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ValueError("Empty integer")
    if not _INTEGER_PATTERN.match(text):
        raise ValueError(f"Invalid integer format: {value!r}")
    return int(text)


def sanitize_database_name(name: str) -> str:
    """
    Validate a database name: lowercase letters, digits and underscores only,
    at most 63 characters, no leading or trailing underscore.

    Raises:
        ValueError: If the name breaks any of these rules
    """
    if not name:
        raise ValueError("Empty database name")
    if len(name) > POSTGRES_NAME_MAX_LENGTH:
        raise ValueError(f"Database name too long (max {POSTGRES_NAME_MAX_LENGTH}): {name}")
    if not _DATABASE_NAME_PATTERN.match(name):
        raise ValueError(f"Invalid database name (only [a-z0-9_] allowed): {name}")
    if name.startswith("_") or name.endswith("_"):
        raise ValueError(f"Database name cannot start or end with underscore: {name}")
    return name
