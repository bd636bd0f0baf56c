from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header
from jose import JWTError, jwt

from gympay import config
from gympay.errors import Forbidden, Unauthorized


@dataclass
class CurrentUser:
    id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def verify_token(authorization: Optional[str] = Header(None)) -> CurrentUser:
    if not authorization:
        raise Unauthorized()
    try:
        scheme, token = authorization.split()
    except ValueError:
        raise Unauthorized()
    if scheme.lower() != "bearer":
        raise Unauthorized()

    try:
        claims = jwt.decode(token, config.JWT_SECRET, algorithms=["HS256"])
    except JWTError:
        raise Unauthorized()

    user_id = claims.get("sub")
    if user_id is None:
        raise Unauthorized()
    return CurrentUser(id=str(user_id), role=claims.get("role", "user"))


def require_admin(user: CurrentUser = Depends(verify_token)) -> CurrentUser:
    if not user.is_admin:
        raise Forbidden()
    return user


def issue_token(user_id, role: str = "user") -> str:
    """Sign a bearer token the way the session service does; used by tooling and tests."""
    return jwt.encode({"sub": str(user_id), "role": role}, config.JWT_SECRET, algorithm="HS256")
