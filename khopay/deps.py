from typing import Any, Dict, List

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .db import get_db
from .security import decode_jwt
from .services.orchestrator import PaymentOrchestrator, get_orchestrator as _get_orchestrator

security = HTTPBearer()

STAFF_ROLES = ["admin", "manager", "cashier"]
OPERATOR_ROLES = ["admin", "manager"]

__all__ = ["get_db", "get_orchestrator", "get_current_staff", "require_roles"]


def get_orchestrator() -> PaymentOrchestrator:
    return _get_orchestrator()


def get_current_staff(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Dict[str, Any]:
    """
    Dependency returning the JWT claims of the calling staff member.
    Staff accounts live in the POS auth service; only the token is checked here.
    """
    payload = decode_jwt(credentials.credentials)

    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not payload.get("sub") or not payload.get("role"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    return payload


def require_roles(allowed_roles: List[str]):
    """
    Dependency factory to require specific roles.

    Usage:
        @router.post("/maintenance/expire")
        def sweep(staff: dict = Depends(require_roles(["admin", "manager"]))):
            ...
    """
    def role_checker(staff: Dict[str, Any] = Depends(get_current_staff)) -> Dict[str, Any]:
        if staff.get("role") not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Insufficient permissions. Required roles: {allowed_roles}",
            )
        return staff
    return role_checker
