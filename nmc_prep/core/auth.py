import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import jwt
import redis
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

from nmc_prep.core.cache import TokenDenylist
from nmc_prep.core.config import settings

logger = logging.getLogger(__name__)

class TokenData(BaseModel):
    sub: str
    roles: List[str] = []
    jti: Optional[str] = None
    exp: Optional[int] = None

bearer = HTTPBearer()
denylist = TokenDenylist()

def create_token(user_id: str, roles: Optional[List[str]] = None, ttl_minutes: Optional[int] = None) -> str:
    now = datetime.now(timezone.utc)
    ttl = ttl_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES
    payload = {
        "sub": user_id, "roles": roles or ["student"], "jti": uuid.uuid4().hex,
        "iat": int(now.timestamp()), "exp": int((now + timedelta(minutes=ttl)).timestamp()),
    }
    return jwt.encode(payload, settings.SECRET_KEY.get_secret_value(), algorithm=settings.ALGORITHM)

def decode_token(token: str) -> TokenData:
    payload = jwt.decode(token, settings.SECRET_KEY.get_secret_value(), algorithms=[settings.ALGORITHM])
    return TokenData(sub=payload["sub"], roles=payload.get("roles", []), jti=payload.get("jti"), exp=payload.get("exp"))

def is_revoked(jti: Optional[str]) -> bool:
    if not jti:
        return False
    try:
        return denylist.contains(jti)
    except redis.RedisError as e:
        logger.warning("Token denylist unavailable, skipping check: %s", e)
        return False

def revoke_token(jti: str, expires_at: Optional[int] = None) -> None:
    try:
        denylist.add(jti, expires_at)
    except redis.RedisError as e:
        logger.warning("Could not revoke token %s: %s", jti, e)

def get_current_user(creds: HTTPAuthorizationCredentials = Depends(bearer)) -> TokenData:
    try:
        user = decode_token(creds.credentials)
    except (jwt.PyJWTError, KeyError) as e:
        logger.info("Rejected token: %s", e)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")
    if is_revoked(user.jti):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has been revoked")
    return user

def require_roles(*required: str):
    def checker(user: TokenData = Depends(get_current_user)):
        roles = set(user.roles)
        if not roles.intersection(set(required)):
            raise HTTPException(status_code=403, detail="Insufficient role")
        return user
    return checker
