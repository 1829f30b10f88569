import json
from dataclasses import dataclass, field

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import JWT_ALGORITHM, JWT_SECRET
from .errors import Forbidden, Unauthenticated

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Actor:
    user_id: str
    roles: frozenset = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles


def _parse_roles(raw) -> frozenset:
    if raw is None:
        return frozenset()
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            raw = [r for r in raw.split(",") if r.strip()]
    if isinstance(raw, str):
        raw = [raw]
    return frozenset(str(r).strip().lower() for r in raw)


def get_actor(
    request: Request,
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Actor:
    """
    Identity is verified upstream. The gateway forwards it as X-User-Sub / X-User-Roles;
    a bearer token is accepted instead when JWT_SECRET is configured.
    """
    if creds and creds.scheme.lower() == "bearer" and JWT_SECRET:
        try:
            payload = jwt.decode(creds.credentials, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        except JWTError:
            raise Unauthenticated("Invalid or expired token")
        sub, roles = payload.get("sub"), payload.get("roles")
    else:
        sub, roles = request.headers.get("X-User-Sub"), request.headers.get("X-User-Roles")

    if not sub:
        raise Unauthenticated("Missing caller identity")

    request.state.user_sub = sub
    return Actor(user_id=str(sub), roles=_parse_roles(roles))


def require_role(actor: Actor, allowed_roles: list[str]):
    allowed = {r.lower() for r in allowed_roles}
    if actor.roles.isdisjoint(allowed):
        raise Forbidden("Access forbidden for this role")
