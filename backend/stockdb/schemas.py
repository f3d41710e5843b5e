# backend/stockdb/schemas.py

import enum
from typing import Optional

from pydantic import BaseModel


# -------------------------------------------------------------------
# ACTOR IDENTITY
# -------------------------------------------------------------------

class ActorRole(str, enum.Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    STOREKEEPER = "STOREKEEPER"
    TECHNICIAN = "TECHNICIAN"
    SERVICE = "SERVICE"


class Actor(BaseModel):
    """
    Already-authenticated caller identity.

    The engine never authenticates anyone; the upstream auth layer resolves
    the caller and passes this through so every write can be attributed.
    """
    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    role: ActorRole = ActorRole.SERVICE

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN

    def log_context(self) -> dict:
        return {"actor_id": self.id, "actor_email": self.email}


SYSTEM_ACTOR = Actor(id="system", email=None, display_name="System", role=ActorRole.SERVICE)
