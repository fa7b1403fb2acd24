import os
import logging

from fastapi import HTTPException, status, Request
from jose import JWTError, jwt
from database.db import SessionLocal

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
SECRET_KEY = os.getenv("NEXTAUTH_SECRET")
EXPECTED_AUD = os.getenv("EXPECTED_AUD")
AUTH_COOKIE_NAME = os.getenv("AUTH_COOKIE_NAME", "auth_token")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


async def get_current_user(request: Request) -> str:
    """
    Returns the user id (`sub`) of the bearer token or auth cookie.
    User accounts live in the auth service; only the token is checked here.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if not SECRET_KEY:
        logger.error("NEXTAUTH_SECRET is not set; rejecting authenticated request")
        raise HTTPException(status_code=500, detail="Authentication is not configured")

    token = request.cookies.get(AUTH_COOKIE_NAME)
    if not token:
        auth_header = request.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.split(" ", 1)[1]
        else:
            raise credentials_exception

    opts = {"verify_aud": bool(EXPECTED_AUD)}
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM], audience=EXPECTED_AUD, options=opts)
    except JWTError:
        raise credentials_exception

    user_id = payload.get("sub")
    if user_id is None:
        raise credentials_exception
    return str(user_id)
