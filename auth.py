"""
Bearer-token authentication.

Tokens are issued elsewhere (login) and stored on the user document; here a
token is only looked up, never decoded.
"""
from typing import Optional

from fastapi import Depends, Header

from database import get_db
from errors import NotAuthenticated


def get_current_user(authorization: Optional[str] = Header(None), database=Depends(get_db)) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise NotAuthenticated("Authorization header with Bearer token required")
    token = authorization.split(" ", 1)[1].strip()
    if not token or database is None:
        raise NotAuthenticated("Invalid token")

    user = database["user"].find_one({"token": token}, {"password": 0})
    if not user:
        raise NotAuthenticated("Invalid token")
    return user
