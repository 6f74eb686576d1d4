"""Shared utility functions for kubeship.

Small, self-contained helpers that are used across multiple modules.
Keeping them here avoids circular imports and reduces duplication.
"""

from __future__ import annotations


def coerce_value(value: str):
    """Coerce a string value to int, float, or bool where possible."""
    if value.lower() in ("true", "yes"):
        return True
    if value.lower() in ("false", "no"):
        return False
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    return value


def parse_worker_list(value: str | None) -> list[str]:
    """Split a comma-separated address list, dropping blanks.

    Examples::

        >>> parse_worker_list("10.0.0.1, 10.0.0.2,,")
        ['10.0.0.1', '10.0.0.2']
    """
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def format_mb(size_bytes: int) -> str:
    """Render a byte count as megabytes with one decimal."""
    return "%.1f MB" % (size_bytes / 1024 / 1024)


def load_yaml(path) -> dict:
    """Load a YAML file, returning an empty dict unless the document is a mapping."""
    from pathlib import Path as _Path
    import yaml
    with _Path(path).open() as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}
