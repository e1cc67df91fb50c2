from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List
import jwt
from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel

from laundryflow.core.config import settings
from laundryflow.core.policy import Role

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")

class Actor(BaseModel):
    id: str
    role: Role

def create_token(payload: Dict[str, Any], minutes: int | None = None):
    payload = dict(payload)
    payload["exp"] = datetime.now(timezone.utc) + timedelta(minutes=minutes or settings.access_ttl_min)
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_alg)

def token_for(actor_id: str, role: Role | str) -> str:
    return create_token({"sub": actor_id, "role": Role(role).value})

def decode_token(token: str):
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_alg])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

async def get_current_actor(token: str = Depends(oauth2_scheme)) -> Actor:
    data = decode_token(token)
    try:
        return Actor(id=str(data["sub"]), role=data["role"])
    except (KeyError, ValueError):
        raise HTTPException(status_code=401, detail="Token is missing actor claims")

def require_roles(allowed: List[Role]):
    async def checker(actor: Actor = Depends(get_current_actor)):
        if actor.role not in allowed:
            raise HTTPException(status_code=403, detail="Not enough permissions")
        return actor
    return checker
