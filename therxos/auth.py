"""Authentication and role-based access control.

Sessions are stateless JWT bearer tokens (passwords live in ``passwords``). Roles map
to default permission sets, and a pharmacy may override the list for any role
except ``super_admin`` through its ``role_permissions`` setting.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional, Set

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import Settings, get_settings
from .service import TheRxService, get_service

log = logging.getLogger(__name__)

SUPER_ADMIN = "super_admin"
ADMIN = "admin"
PHARMACIST = "pharmacist"
TECHNICIAN = "technician"
ROLES = (SUPER_ADMIN, ADMIN, PHARMACIST, TECHNICIAN)

# Super admin only
ACCESS_ALL_PHARMACIES = "access_all_pharmacies"
MANAGE_PLATFORM = "manage_platform"
VIEW_PLATFORM_ANALYTICS = "view_platform_analytics"
# Pharmacy admin
MANAGE_PHARMACY_USERS = "manage_pharmacy_users"
MANAGE_PHARMACY_SETTINGS = "manage_pharmacy_settings"
CONFIGURE_PERMISSIONS = "configure_permissions"
# Opportunities
VIEW_OPPORTUNITIES = "view_opportunities"
ACTION_OPPORTUNITIES = "action_opportunities"
DELETE_OPPORTUNITIES = "delete_opportunities"
SUBMIT_TO_APPROVAL = "submit_to_approval"
# Patients
VIEW_PATIENTS = "view_patients"
VIEW_PATIENT_DETAILS = "view_patient_details"
EXPORT_PATIENT_DATA = "export_patient_data"
# Analytics / data / audit
VIEW_ANALYTICS = "view_analytics"
VIEW_FINANCIAL_DATA = "view_financial_data"
UPLOAD_DATA = "upload_data"
VIEW_AUDIT_RISKS = "view_audit_risks"

ALL_PERMISSIONS = frozenset({
    ACCESS_ALL_PHARMACIES, MANAGE_PLATFORM, VIEW_PLATFORM_ANALYTICS,
    MANAGE_PHARMACY_USERS, MANAGE_PHARMACY_SETTINGS, CONFIGURE_PERMISSIONS,
    VIEW_OPPORTUNITIES, ACTION_OPPORTUNITIES, DELETE_OPPORTUNITIES, SUBMIT_TO_APPROVAL,
    VIEW_PATIENTS, VIEW_PATIENT_DETAILS, EXPORT_PATIENT_DATA,
    VIEW_ANALYTICS, VIEW_FINANCIAL_DATA, UPLOAD_DATA, VIEW_AUDIT_RISKS,
})

DEFAULT_ROLE_PERMISSIONS: Dict[str, frozenset] = {
    SUPER_ADMIN: ALL_PERMISSIONS,
    ADMIN: frozenset({
        MANAGE_PHARMACY_USERS, MANAGE_PHARMACY_SETTINGS, CONFIGURE_PERMISSIONS,
        VIEW_OPPORTUNITIES, ACTION_OPPORTUNITIES, DELETE_OPPORTUNITIES,
        VIEW_PATIENTS, VIEW_PATIENT_DETAILS, EXPORT_PATIENT_DATA,
        VIEW_ANALYTICS, VIEW_FINANCIAL_DATA, UPLOAD_DATA, VIEW_AUDIT_RISKS,
    }),
    PHARMACIST: frozenset({
        VIEW_OPPORTUNITIES, ACTION_OPPORTUNITIES,
        VIEW_PATIENTS, VIEW_PATIENT_DETAILS,
        VIEW_ANALYTICS, VIEW_FINANCIAL_DATA, UPLOAD_DATA, VIEW_AUDIT_RISKS,
    }),
    TECHNICIAN: frozenset({
        VIEW_OPPORTUNITIES, ACTION_OPPORTUNITIES, SUBMIT_TO_APPROVAL,
        VIEW_PATIENTS, VIEW_PATIENT_DETAILS,
    }),
}

security = HTTPBearer(auto_error=False)


# ----------------------------- Tokens ----------------------------------------
def create_access_token(user: Dict[str, Any], settings: Optional[Settings] = None) -> str:
    """Create a signed JWT for the given user row."""
    settings = settings or get_settings()
    payload = {
        "sub": user["user_id"],
        "role": user["role"],
        "pharmacy_id": user.get("pharmacy_id"),
        "exp": datetime.now(timezone.utc) + timedelta(minutes=settings.token_expire_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Optional[Settings] = None) -> Dict[str, Any]:
    settings = settings or get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )


# ----------------------------- Permissions -----------------------------------
def permissions_for(role: str, overrides: Optional[Dict[str, Iterable[str]]] = None) -> Set[str]:
    if role == SUPER_ADMIN:
        return set(ALL_PERMISSIONS)
    if overrides and role in overrides:
        return {p for p in overrides[role] if p in ALL_PERMISSIONS and p != ACCESS_ALL_PHARMACIES}
    return set(DEFAULT_ROLE_PERMISSIONS.get(role, frozenset()))


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    """User row without secrets, in the shape the dashboard stores."""
    return {
        "userId": user["user_id"],
        "email": user["email"],
        "firstName": user.get("first_name"),
        "lastName": user.get("last_name"),
        "role": user["role"],
        "pharmacyId": user.get("pharmacy_id"),
        "pharmacyName": user.get("pharmacy_name"),
        "mustChangePassword": bool(user.get("must_change_password")),
        "permissions": sorted(user.get("permissions") or []),
    }


def resolve_pharmacy_id(user: Dict[str, Any], requested: Optional[str] = None) -> Optional[str]:
    """Pharmacy the request is scoped to.

    Super admins may pick any pharmacy (None means all); everyone else is pinned
    to their own pharmacy.
    """
    if user["role"] == SUPER_ADMIN:
        return requested or None
    if requested and requested != user.get("pharmacy_id"):
        raise PermissionError("Access to this pharmacy is not allowed")
    return user.get("pharmacy_id")


# ----------------------------- FastAPI dependencies --------------------------
def current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    service: TheRxService = Depends(get_service),
) -> Dict[str, Any]:
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    data = decode_token(credentials.credentials)
    user = service.get_user(data.get("sub") or "")
    if not user or not user["is_active"]:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User inactive or missing")
    overrides = None
    if user.get("pharmacy_id"):
        settings = service.get_pharmacy_settings(user["pharmacy_id"])
        overrides = settings.get("role_permissions")
    user["permissions"] = permissions_for(user["role"], overrides)
    return user


def require_permission(permission: str):
    """Dependency factory ensuring the current user holds ``permission``."""

    def checker(user: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
        if permission not in user["permissions"]:
            log.info("[Auth] Denied %s to user=%s role=%s", permission, user["user_id"], user["role"])
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient privileges")
        return user

    return checker


def require_roles(*roles: str):
    """Dependency factory ensuring the current user is in an allowed role.

    ``super_admin`` is always allowed.
    """
    allowed = {SUPER_ADMIN, *roles}

    def checker(user: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
        if user["role"] not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient privileges")
        return user

    return checker
