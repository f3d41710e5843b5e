# backend/stockdb/security.py

"""
Caller identity helpers for the stock ledger HTTP surface.

Responsibilities:
- Build the acting `Actor` from the headers set by the upstream auth layer
- Role-based access helpers for router dependencies

Authentication itself happens upstream; this module only trusts and
forwards the identity it is handed.
"""

from __future__ import annotations

from typing import Callable, Optional, Set, Union

from fastapi import Depends, Header, HTTPException, status

from .schemas import Actor, ActorRole


def get_current_actor(
    x_actor_id: Optional[str] = Header(default=None),
    x_actor_email: Optional[str] = Header(default=None),
    x_actor_name: Optional[str] = Header(default=None),
    x_actor_role: Optional[str] = Header(default=None),
) -> Actor:
    """
    Resolve the caller from X-Actor-* headers.

    A request without X-Actor-Id is rejected; writes must always be
    attributable to someone.
    """
    if not x_actor_id or not x_actor_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Actor-Id header",
        )

    role = ActorRole.SERVICE
    if x_actor_role:
        try:
            role = ActorRole(x_actor_role.strip().upper())
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unknown actor role {x_actor_role!r}",
            )

    return Actor(
        id=x_actor_id.strip(),
        email=x_actor_email,
        display_name=x_actor_name,
        role=role,
    )


# ---------------------------------------------------------------------------
# ROLE-BASED ACCESS HELPER
# ---------------------------------------------------------------------------


def require_roles(
    *allowed_roles: Union[ActorRole, str],
) -> Callable[[Actor], Actor]:
    """
    Dependency factory to enforce that the current actor has one of the given roles.

    Usage:
        @router.post(...)
        def endpoint(
            actor: Actor = Depends(require_roles("ADMIN", "MANAGER"))
        ):
            ...

    Behaviour:
    - ADMIN always passes, even if not explicitly listed in `allowed_roles`.
    - Otherwise, the actor's `role` must be in the allowed set.
    """
    normalised_roles: Set[ActorRole] = set()
    for r in allowed_roles:
        if isinstance(r, ActorRole):
            normalised_roles.add(r)
        else:
            try:
                normalised_roles.add(ActorRole(r))
            except ValueError:
                raise ValueError(f"Unknown role {r!r} passed to require_roles()")

    def dependency(
        actor: Actor = Depends(get_current_actor),
    ) -> Actor:
        # Global override: ADMIN can do anything
        if actor.is_admin:
            return actor

        if actor.role not in normalised_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions for this operation",
            )
        return actor

    return dependency


require_admin = require_roles(ActorRole.ADMIN)
