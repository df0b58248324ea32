"""HTTP Basic auth for the admin API."""

import secrets

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from door_manager.config import settings

security = HTTPBasic(realm="Admin Area")


def require_admin(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    """Reject requests without the configured admin credentials."""
    user_ok = secrets.compare_digest(
        credentials.username.encode(), settings.basic_auth_user.encode()
    )
    pass_ok = secrets.compare_digest(
        credentials.password.encode(), settings.basic_auth_pass.encode()
    )
    if not (user_ok and pass_ok):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required.",
            headers={"WWW-Authenticate": 'Basic realm="Admin Area"'},
        )
    return credentials.username
