from __future__ import annotations

import importlib

ulid_module = importlib.import_module("ulid")


def new_time_ticker_id() -> str:
    return f"tt_{ulid_module.new().str}"


def new_cron_ticker_id() -> str:
    return f"ct_{ulid_module.new().str}"


def new_cron_occurrence_id() -> str:
    return f"cto_{ulid_module.new().str}"
