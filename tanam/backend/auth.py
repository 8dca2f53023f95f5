"""Dashboard user authentication (identity service access tokens)."""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from jose import JWTError, jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from tanam.backend.config import get_settings

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    id: str
    email: Optional[str]
    access_token: str


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Issue a token signed like the identity service does (tests, local tooling)."""
    s = get_settings()
    to_encode = data.copy()
    to_encode.setdefault("aud", "authenticated")
    exp = expires_delta or timedelta(hours=1)
    to_encode.update({"exp": datetime.utcnow() + exp})
    return jwt.encode(to_encode, s.supabase_jwt_secret, algorithm=s.jwt_algorithm)


def decode_token(token: str) -> Optional[dict]:
    s = get_settings()
    try:
        return jwt.decode(
            token,
            s.supabase_jwt_secret,
            algorithms=[s.jwt_algorithm],
            options={"verify_aud": False},
        )
    except JWTError:
        return None


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> CurrentUser:
    if not credentials:
        raise HTTPException(status_code=401, detail="No authentication token found. Please login again.")
    payload = decode_token(credentials.credentials)
    if not payload or not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Session expired. Please login again.")
    return CurrentUser(
        id=str(payload["sub"]),
        email=payload.get("email"),
        access_token=credentials.credentials,
    )
