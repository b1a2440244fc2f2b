from dataclasses import dataclass


@dataclass
class Principal:
    """Identity extracted from a verified bearer token."""
    user_id: str
    tenant_id: str | None = None
    roles: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        self.roles = tuple(sorted({role.strip().lower() for role in self.roles if role and role.strip()}))

    def has_any_role(self, allowed: tuple[str, ...]) -> bool:
        return any(role in self.roles for role in allowed)
