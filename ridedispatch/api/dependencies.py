"""FastAPI dependency injection helpers."""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from ridedispatch.domain.entities import Actor
from ridedispatch.domain.enums import Role
from ridedispatch.domain.ports import IdentityResolver
from ridedispatch.services.dispatch import DispatchService


async def get_service(request: Request) -> DispatchService:
    """The process-wide dispatch service built in the app lifespan."""
    return request.app.state.dispatch_service


async def get_identity_resolver(request: Request) -> IdentityResolver:
    return request.app.state.identity_resolver


async def get_actor(
    request: Request,
    authorization: Optional[str] = Header(None),
    resolver: IdentityResolver = Depends(get_identity_resolver),
) -> Actor:
    """Resolve ``Authorization: Bearer <token>`` to an ``Actor`` or 401."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Authentication required")
    actor = await resolver.resolve(authorization.removeprefix("Bearer ").strip())
    if actor is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    # rate-limit key (see api.middleware.rate_limit_key)
    request.state.user_id = actor.user_id
    return actor


def require_role(*roles: Role):
    async def _check(actor: Actor = Depends(get_actor)) -> Actor:
        if actor.role not in roles:
            raise HTTPException(
                status_code=403,
                detail=f"Access denied. {' or '.join(r.value for r in roles)} role required.",
            )
        return actor

    return _check
