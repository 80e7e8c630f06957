from typing import Dict

import requests
import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from . import config

logger = structlog.get_logger(__name__)

ADMIN_ROLE = "admin"
USER_ROLE = "user"

# Security scheme for Bearer token
security = HTTPBearer()


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Dict:
    """Resolve the bearer token to ``{"id", "role", ...}`` through the user service.

    The returned identity is trusted as-is by every checkout operation.
    """
    token = credentials.credentials

    try:
        # Call user service to get user info from token
        headers = {"Authorization": f"Bearer {token}"}
        # Replace space with %20 for URL encoding
        endpoint = "/users/my profile".replace(" ", "%20")
        response = requests.get(
            f"{config.USER_SERVICE_URL}{endpoint}",
            headers=headers,
            timeout=5
        )
    except requests.exceptions.RequestException as e:
        logger.warning("user_service_unavailable", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="User service is unavailable"
        )

    if response.status_code == 200:
        user_data = response.json()
        return {
            "id": int(user_data["id"]),
            "role": ADMIN_ROLE if user_data.get("is_admin", False) else USER_ROLE,
            "username": user_data.get("username"),
            "email": user_data.get("email"),
        }
    if response.status_code == 401:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    logger.error("user_service_error", status_code=response.status_code)
    raise HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail="Failed to get user from user service"
    )


def get_current_admin(current_user: Dict = Depends(get_current_user)) -> Dict:

    if current_user.get("role") != ADMIN_ROLE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough permissions. Admin access required."
        )

    return current_user
