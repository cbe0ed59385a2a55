import uuid
from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from leadengine.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    company_id: str | None = None


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub="anonymous", roles=["guest"])

    subject = str(payload.get("sub", "anonymous"))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    company_id = payload.get("company_id")
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
    return AuthUser(
        sub=subject,
        roles=[str(role) for role in roles],
        company_id=str(company_id) if company_id is not None else None,
    )


SYSTEM_ACTOR = "system"


@dataclass
class ActorUser:
    user_id: str
    company_id: uuid.UUID
    permissions: set[str] = field(default_factory=set)
    agent_id: uuid.UUID | None = None
    correlation_id: str | None = None

    @classmethod
    def system(cls, company_id: uuid.UUID) -> "ActorUser":
        return cls(user_id=SYSTEM_ACTOR, company_id=company_id, permissions={"*"})
