from __future__ import annotations

from typing import AsyncGenerator, Callable

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from trainingdesk.domain.events import Actor, ClientContext
from trainingdesk.persistence.db import get_session
from trainingdesk.services.audit import get_request_context


CAPABILITY_MENTOR = "mentor"
CAPABILITY_AUDIT_READ = "audit:read"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def get_actor(
    actor_id: str | None = Header(default=None, alias="X-Actor-Id", max_length=64),
    actor_name: str | None = Header(default=None, alias="X-Actor-Name", max_length=128),
    actor_capabilities: str | None = Header(default=None, alias="X-Actor-Capabilities", max_length=512),
) -> Actor:
    # Identity is asserted by the trusted gateway in front of this service.
    if not actor_id or not actor_id.strip():
        raise _auth_error("Missing X-Actor-Id header")
    capabilities = frozenset(
        item.strip().lower() for item in (actor_capabilities or "").split(",") if item.strip()
    )
    return Actor(id=actor_id.strip(), name=(actor_name or "").strip() or None, capabilities=capabilities)


def require_capability(capability: str) -> Callable[[Actor], Actor]:
    def _dependency(actor: Actor = Depends(get_actor)) -> Actor:
        if not actor.can(capability):
            raise _forbidden_error(f"Capability {capability} is required")
        return actor

    return _dependency


def get_client_context(request: Request) -> ClientContext:
    return get_request_context(request)
