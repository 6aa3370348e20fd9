from __future__ import annotations

from dataclasses import dataclass

from tickerlease.domain.clock import LeaseClock
from tickerlease.domain.contracts import WorkItemStore
from tickerlease.workers.functions import FunctionRegistry


@dataclass(frozen=True)
class ApiDeps:
    store: WorkItemStore
    functions: FunctionRegistry
    clock: LeaseClock
