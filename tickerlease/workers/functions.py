from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from tickerlease.domain.models import ExecutionResult, WorkItem

TickerFunction = Callable[[WorkItem], Awaitable[ExecutionResult]]


@dataclass
class FunctionRegistry:
    functions: dict[str, TickerFunction] = field(default_factory=dict)
    cron_expressions: dict[str, str] = field(default_factory=dict)

    def register(self, name: str, handler: TickerFunction, *, cron_expression: str | None = None) -> None:
        if not name:
            raise ValueError("function name must be non-empty")
        if name in self.functions:
            raise ValueError(f"function '{name}' is already registered")
        self.functions[name] = handler
        if cron_expression:
            self.cron_expressions[name] = cron_expression

    def resolve(self, name: str | None) -> TickerFunction | None:
        if name is None:
            return None
        return self.functions.get(name)

    def cron_definitions(self) -> list[tuple[str, str]]:
        return sorted(self.cron_expressions.items())


async def noop_function(item: WorkItem) -> ExecutionResult:
    return ExecutionResult(success=True, detail=f"noop {item.item_id}")


def build_default_registry() -> FunctionRegistry:
    registry = FunctionRegistry()
    registry.register("noop", noop_function)
    return registry
