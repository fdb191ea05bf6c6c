# Overview: Acting-user identity supplied by the upstream identity provider.

from __future__ import annotations

from dataclasses import dataclass

ROLE_ADMIN = "admin"
ROLE_STAFF = "staff"


@dataclass(frozen=True)
class Actor:
    """
    Who is performing a write.

    The backend does not authenticate; it records the opaque id and display
    name it is handed on every movement event, stock edit and bill.
    """
    user_id: str
    display_name: str
    role: str = ROLE_STAFF

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


SYSTEM_ACTOR = Actor(user_id="system", display_name="System", role=ROLE_ADMIN)
