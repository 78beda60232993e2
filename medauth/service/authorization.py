from __future__ import annotations

from typing import Iterable, Optional

from medauth.logging import log_security_event
from medauth.service.auth import AuthContext, ClientContext
from medauth.service.errors import ForbiddenError
from medauth.storage.models import Role


def authorize(
    identity: AuthContext,
    allowed_roles: Iterable[Role],
    *,
    resource: Optional[str] = None,
    client: Optional[ClientContext] = None,
) -> AuthContext:
    """Allow ``identity`` only when its role is one of ``allowed_roles``."""
    allowed = frozenset(allowed_roles)
    if identity.role in allowed:
        return identity
    log_security_event(
        "authorization_denied",
        client=client,
        user_id=identity.user_id,
        role=identity.role.value,
        required_roles=sorted(role.value for role in allowed),
        resource=resource,
    )
    raise ForbiddenError(
        "Insufficient permissions",
        detail={"required_roles": sorted(role.value for role in allowed)},
    )


def require_ownership(
    identity: AuthContext,
    owner_id: str,
    *,
    resource: Optional[str] = None,
    client: Optional[ClientContext] = None,
) -> AuthContext:
    """Gate access to a resource that belongs to ``owner_id``.

    ADMIN always passes. A PATIENT may only reach its own records. Clinical
    staff pass here; finer assignment checks belong to the clinical services.
    """
    if identity.role == Role.ADMIN:
        return identity
    if identity.role != Role.PATIENT or identity.user_id == owner_id:
        return identity
    log_security_event(
        "ownership_denied",
        client=client,
        user_id=identity.user_id,
        role=identity.role.value,
        owner_id=owner_id,
        resource=resource,
    )
    raise ForbiddenError("Access denied")


__all__ = ["authorize", "require_ownership"]
