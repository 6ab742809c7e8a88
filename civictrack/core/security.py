# civictrack/core/security.py
from dataclasses import dataclass, field
from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional
import jwt
from civictrack.core.config import settings
from civictrack.models.user import UserRole

ALGO = "HS256"
bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """Pre-authenticated caller. Tokens are issued by the auth service; we only decode them."""
    user_id: int
    roles: tuple[UserRole, ...] = field(default_factory=tuple)
    department_id: Optional[int] = None
    team_id: Optional[int] = None

    def has_role(self, *roles: UserRole) -> bool:
        return any(r in self.roles for r in roles)

    @property
    def is_admin(self) -> bool:
        return UserRole.SYSTEM_ADMIN in self.roles


def principal_from_claims(payload: dict) -> Principal:
    sub = payload.get("sub")
    if sub is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    raw_roles = payload.get("roles") or []
    if isinstance(raw_roles, str):
        raw_roles = [raw_roles]
    roles = []
    for r in raw_roles:
        try:
            roles.append(UserRole(r))
        except ValueError:
            continue
    return Principal(
        user_id=int(sub),
        roles=tuple(roles),
        department_id=payload.get("department_id"),
        team_id=payload.get("team_id"),
    )


def _decode_token(creds: Optional[HTTPAuthorizationCredentials]) -> dict:
    if not creds:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        return jwt.decode(creds.credentials, settings.jwt_secret, algorithms=[ALGO])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def get_principal(creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> Principal:
    return principal_from_claims(_decode_token(creds))
