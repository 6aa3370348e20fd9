from __future__ import annotations

from dataclasses import dataclass

SUPPORTED_ROLES = (
    "api",
    "scheduler",
)


@dataclass(frozen=True)
class RuntimeRole:
    name: str

    @property
    def runs_scheduler(self) -> bool:
        return self.name == "scheduler"


def validate_role(role: str) -> RuntimeRole:
    if role in SUPPORTED_ROLES:
        return RuntimeRole(name=role)

    supported = ", ".join(SUPPORTED_ROLES)
    raise ValueError(
        f"Unsupported role '{role}'. Supported roles: {supported}. "
        "Note: schema migrations are applied externally and are not an app role."
    )
