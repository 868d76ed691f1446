"""
RExeli Backend — Actor Context & Request Guards
=================================================

What:  The identity on whose behalf an operation runs, plus FastAPI
       dependencies that derive it from request headers.
Why:   Authentication happens upstream (API gateway / frontend session);
       the backend only needs to know who is calling and with which role.
How:   The gateway forwards `X-Actor-Id` and `X-Actor-Role`. Services receive
       an `Actor` and call `require_elevated()` for administrative operations.
       Scheduled endpoints are protected with a shared `X-Cron-Secret`.
"""

import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Header

from rexeli.config import settings
from rexeli.enums import ActorRole
from rexeli.exceptions import AuthorizationError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """An authenticated caller: user, administrator, or an internal job."""

    actor_id: str
    role: ActorRole = ActorRole.USER

    @property
    def is_elevated(self) -> bool:
        return self.role in (ActorRole.ADMIN, ActorRole.SYSTEM)

    def require_elevated(self, operation: str) -> None:
        """Raises AuthorizationError unless the actor is admin or system."""
        if not self.is_elevated:
            logger.warning(
                "Denied %s for actor %s (role=%s)", operation, self.actor_id, self.role.value
            )
            raise AuthorizationError(
                message=f"'{operation}' requires an administrator",
                context={"actor_id": self.actor_id, "operation": operation},
            )


# Identity used by the scheduler and the monitor's on-success hook.
SYSTEM_ACTOR = Actor(actor_id="system", role=ActorRole.SYSTEM)


async def get_actor(
    x_actor_id: Optional[str] = Header(default=None),
    x_actor_role: Optional[str] = Header(default=None),
) -> Actor:
    """
    FastAPI dependency returning the calling Actor.

    Missing identity is a 403; an unknown role is a 400.
    """
    if not x_actor_id:
        raise AuthorizationError(message="Missing X-Actor-Id header")
    role_value = (x_actor_role or ActorRole.USER.value).lower()
    try:
        role = ActorRole(role_value)
    except ValueError:
        raise ValidationError(
            message=f"Unknown actor role '{x_actor_role}'",
            field="X-Actor-Role",
            context={"allowed": [r.value for r in ActorRole]},
        )
    return Actor(actor_id=x_actor_id, role=role)


async def verify_cron_secret(x_cron_secret: Optional[str] = Header(default=None)) -> Actor:
    """
    FastAPI dependency guarding /api/cron/* endpoints.

    Returns the system actor when the shared secret matches. An unset
    CRON_SECRET rejects every call.
    """
    expected = settings.cron_secret
    if not expected or not x_cron_secret or not hmac.compare_digest(x_cron_secret, expected):
        raise AuthorizationError(message="Invalid or missing cron secret")
    return SYSTEM_ACTOR
