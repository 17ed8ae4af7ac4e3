from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from typing import List, Optional
import jwt
from datetime import datetime, timedelta, timezone
from examprep.core.config import settings
from examprep.core.cache import AdminEmailCache

class TokenData(BaseModel):
    sub: str
    roles: List[str]
    email: Optional[str] = None

bearer = HTTPBearer()

def create_token(user_id: str, roles: List[str], email: Optional[str] = None, ttl_minutes: Optional[int] = None) -> str:
    now = datetime.now(timezone.utc)
    ttl = ttl_minutes or settings.ACCESS_TOKEN_TTL_MINUTES
    payload = {"sub": user_id, "roles": roles, "iat": int(now.timestamp()), "exp": int((now + timedelta(minutes=ttl)).timestamp())}
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.APP_SECRET, algorithm="HS256")

def get_current_user(creds: HTTPAuthorizationCredentials = Depends(bearer)) -> TokenData:
    try:
        payload = jwt.decode(creds.credentials, settings.APP_SECRET, algorithms=["HS256"])
        return TokenData(sub=payload["sub"], roles=payload.get("roles", []), email=payload.get("email"))
    except (jwt.PyJWTError, KeyError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")

def get_admin_cache(request: Request) -> AdminEmailCache:
    return request.app.state.admin_emails

def require_roles(*required: str):
    def checker(user: TokenData = Depends(get_current_user), admins: AdminEmailCache = Depends(get_admin_cache)):
        roles = set(user.roles)
        if "admin" not in roles and admins.is_admin(user.email):
            roles.add("admin")
        if not roles.intersection(set(required)):
            raise HTTPException(status_code=403, detail="Insufficient role")
        return user.model_copy(update={"roles": sorted(roles)})
    return checker
