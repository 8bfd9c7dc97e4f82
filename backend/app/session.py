from dataclasses import dataclass


@dataclass(frozen=True)
class Session:
    """Identity of the caller, passed explicitly into every core operation."""

    user_id: str
    role: str = "client"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
