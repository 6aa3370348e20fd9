from __future__ import annotations

from functools import lru_cache
from pathlib import Path


SQL_DIR = Path(__file__).with_name("sql")


@lru_cache(maxsize=None)
def load_sql(name: str) -> str:
    path = SQL_DIR / name
    if path.suffix != ".sql":
        raise ValueError(f"not an SQL template: {name}")
    return path.read_text(encoding="utf-8").strip()


def render_sql(name: str, **parts: str) -> str:
    """Fill the ``{placeholder}`` slots of a template with trusted identifiers."""
    return load_sql(name).format(**parts)
