import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request, Response
from jwt import exceptions as jwt_exc
from pymongo.database import Database

from database import COLL_USERS, get_db
from schemas import ROLE_ADMIN

logger = logging.getLogger(__name__)

# Security settings
JWT_SECRET = os.getenv("JWT_SECRET", "dev_secret_change_me")
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_HOURS = int(os.getenv("ACCESS_TOKEN_EXPIRE_HOURS", "5"))
COOKIE_NAME = "token"
COOKIE_MAX_AGE = int(os.getenv("COOKIE_MAX_AGE_DAYS", "30")) * 24 * 60 * 60
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")


def cookie_options(production: Optional[bool] = None) -> dict:
    if production is None:
        production = ENVIRONMENT == "production"
    return {
        "httponly": True,
        "secure": production,
        "samesite": "none" if production else "lax",
        "path": "/",
    }


# JWT utilities

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])


def set_token_cookie(response: Response, token: str):
    # The cookie outlives the token; an expired token inside it fails verification.
    response.set_cookie(COOKIE_NAME, token, max_age=COOKIE_MAX_AGE, **cookie_options())


def clear_token_cookie(response: Response):
    response.delete_cookie(COOKIE_NAME, **cookie_options())


def extract_token(request: Request) -> Optional[str]:
    token = request.cookies.get(COOKIE_NAME)
    if token:
        return token
    auth = request.headers.get("authorization")
    if auth and auth.startswith("Bearer "):
        return auth.split(" ", 1)[1].strip() or None
    return None


async def verify_token(request: Request) -> dict:
    """Decoded token payload; the email claim is always present."""
    token = extract_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized: Token not found")
    try:
        payload = decode_access_token(token)
    except jwt_exc.InvalidTokenError as e:
        logger.debug("Rejected token: %s", e)
        raise HTTPException(status_code=401, detail="unauthorized access")
    if not payload.get("email"):
        raise HTTPException(status_code=401, detail="unauthorized access")
    request.state.user = payload
    return payload


def is_admin(user: Optional[dict]) -> bool:
    role = (user or {}).get("role")
    return isinstance(role, str) and role.lower() == ROLE_ADMIN


def require_admin(decoded: dict = Depends(verify_token), db: Database = Depends(get_db)) -> dict:
    user = db[COLL_USERS].find_one({"email": decoded["email"]})
    if not is_admin(user):
        logger.info("Admin access denied for %s", decoded["email"])
        raise HTTPException(status_code=403, detail="forbidden access")
    user.pop("_id", None)
    return user


def require_same_user(email: str, decoded: dict):
    if decoded.get("email") != email:
        raise HTTPException(status_code=403, detail="forbidden access")
