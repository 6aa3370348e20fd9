from __future__ import annotations

from pathlib import Path

import yaml


def load_cron_definitions(*, file_path: str | Path) -> list[tuple[str, str]]:
    """Read ``(function, expression)`` pairs from a YAML file.

    Expected shape::

        cron_tickers:
          - function: cleanup
            expression: "*/5 * * * *"
    """
    data = yaml.safe_load(Path(file_path).read_text(encoding="utf-8"))
    if data is None:
        return []
    if not isinstance(data, dict):
        raise ValueError("cron file must be a YAML object")
    return parse_cron_definitions(data)


def parse_cron_definitions(data: dict[str, object]) -> list[tuple[str, str]]:
    raw = data.get("cron_tickers", [])
    if not isinstance(raw, list):
        raise ValueError("cron_tickers must be a list")

    definitions: list[tuple[str, str]] = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ValueError(f"cron_tickers[{index}] must be an object")
        definitions.append(
            (
                _required_str(entry, "function", index=index),
                _required_str(entry, "expression", index=index),
            )
        )
    return definitions


def merge_cron_definitions(
    declared: list[tuple[str, str]],
    from_file: list[tuple[str, str]],
    *,
    known_functions: set[str],
) -> list[tuple[str, str]]:
    """File entries override code-declared expressions for the same function."""
    merged = dict(declared)
    for function, expression in from_file:
        if function not in known_functions:
            raise ValueError(f"cron file references unregistered function '{function}'")
        merged[function] = expression
    return sorted(merged.items())


def _required_str(entry: dict[str, object], key: str, *, index: int) -> str:
    value = entry.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"cron_tickers[{index}].{key} must be a non-empty string")
    return value.strip()
