from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    DOCTOR = "doctor"
    LAB_STAFF = "lab_staff"
    ADMIN = "admin"


@dataclass(frozen=True)
class Actor:
    """Authenticated caller as supplied by the identity provider."""

    actor_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN
