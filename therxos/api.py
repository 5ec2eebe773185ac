"""FastAPI application exposing the TheRxOS service.

Run (development):
    uvicorn therxos.api:app --reload

Every route lives under /api. Pharmacy-scoped routes take an optional
``pharmacyId`` that only super admins may point at another pharmacy; other
users are pinned to their own. Service errors map to HTTP as
ValueError -> 400, PermissionError -> 403, NotFoundError -> 404.
"""
from __future__ import annotations

import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from . import analytics, audit, dedup, metrics, scanner
from .auth import (
    ACTION_OPPORTUNITIES,
    CONFIGURE_PERMISSIONS,
    DELETE_OPPORTUNITIES,
    EXPORT_PATIENT_DATA,
    MANAGE_PHARMACY_SETTINGS,
    MANAGE_PHARMACY_USERS,
    MANAGE_PLATFORM,
    SUPER_ADMIN,
    UPLOAD_DATA,
    VIEW_ANALYTICS,
    VIEW_AUDIT_RISKS,
    VIEW_OPPORTUNITIES,
    VIEW_PATIENT_DETAILS,
    VIEW_PATIENTS,
    create_access_token,
    current_user,
    permissions_for,
    public_user,
    require_permission,
    require_roles,
    resolve_pharmacy_id,
)
from .config import configure_logging, get_settings
from .ingestion import ingest_csv
from .scheduler import NightlyScanner
from .service import (
    ACTIONED_STATUSES,
    DQ_STATUSES,
    OPPORTUNITY_STATUSES,
    NotFoundError,
    TheRxService,
    get_service,
)

log = logging.getLogger(__name__)

configure_logging()
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    nightly: Optional[NightlyScanner] = None
    if settings.nightly_scan_enabled:
        nightly = NightlyScanner(get_service(), hour=settings.nightly_scan_hour)
        nightly.start()
    app.state.nightly_scanner = nightly
    yield
    if nightly is not None:
        nightly.stop()


app = FastAPI(title="TheRxOS API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------------- Error Mapping ----------------------------------
@app.exception_handler(ValueError)
def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(PermissionError)
def permission_error_handler(request: Request, exc: PermissionError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


# ----------------------------- Pydantic Models --------------------------------
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1)


class ChangePasswordRequest(CamelModel):
    current_password: str
    new_password: str = Field(..., min_length=8)


class UserCreate(CamelModel):
    email: str = Field(..., min_length=3, max_length=255)
    role: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    pharmacy_id: Optional[str] = None
    password: Optional[str] = None


class UserUpdate(CamelModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Optional[str] = None
    is_active: Optional[bool] = None


class PharmacyCreate(CamelModel):
    pharmacy_name: str = Field(..., min_length=1, max_length=200)
    state: Optional[str] = None
    status: str = "onboarding"
    submitter_email: Optional[str] = None


class PharmacySettingsUpdate(CamelModel):
    prescriber_warn_threshold: Optional[int] = None
    prescriber_block_threshold: Optional[int] = None
    prescriber_window_days: Optional[int] = None
    role_permissions: Optional[Dict[str, List[str]]] = None


class OpportunityUpdate(CamelModel):
    status: Optional[str] = None
    staff_notes: Optional[str] = None
    dismissed_reason: Optional[str] = None

    @field_validator("status")
    @classmethod
    def valid_status(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in OPPORTUNITY_STATUSES:
            raise ValueError(f"status must be one of {list(OPPORTUNITY_STATUSES)}")
        return v


class BulkUpdate(CamelModel):
    opportunity_ids: List[str] = Field(..., min_length=1)
    status: str
    staff_notes: Optional[str] = None

    @field_validator("status")
    @classmethod
    def valid_status(cls, v: str) -> str:
        if v not in OPPORTUNITY_STATUSES:
            raise ValueError(f"status must be one of {list(OPPORTUNITY_STATUSES)}")
        return v


class MedSyncRequest(CamelModel):
    sync_date: int = Field(..., ge=1, le=28)


class ScanTrigger(CamelModel):
    pharmacy_ids: Optional[List[str]] = None
    scan_type: str = "manual"

    @field_validator("scan_type")
    @classmethod
    def valid_scan_type(cls, v: str) -> str:
        if v not in ("manual", "nightly", "ingestion"):
            raise ValueError("scanType must be manual, nightly or ingestion")
        return v


class DataQualityUpdate(CamelModel):
    status: str
    resolved_value: Optional[str] = None

    @field_validator("status")
    @classmethod
    def valid_status(cls, v: str) -> str:
        if v not in DQ_STATUSES:
            raise ValueError(f"status must be one of {list(DQ_STATUSES)}")
        return v


class ReviewRequest(CamelModel):
    notes: Optional[str] = None
    trigger_overrides: Optional[Dict[str, Any]] = None


class BinValue(CamelModel):
    bin: str
    group: Optional[str] = None
    gp_value: Optional[float] = None
    is_excluded: bool = False
    coverage_status: Optional[str] = None


class TriggerPayload(BaseModel):
    """Trigger fields as the admin screen sends them (snake_case)."""

    trigger_code: Optional[str] = None
    display_name: Optional[str] = None
    trigger_type: Optional[str] = None
    category: Optional[str] = None
    detection_keywords: Optional[List[str]] = None
    exclude_keywords: Optional[List[str]] = None
    if_has_keywords: Optional[List[str]] = None
    if_not_has_keywords: Optional[List[str]] = None
    recommended_drug: Optional[str] = None
    recommended_ndc: Optional[str] = None
    action_instructions: Optional[str] = None
    clinical_rationale: Optional[str] = None
    priority: Optional[str] = None
    annual_fills: Optional[int] = Field(None, ge=1)
    default_gp_value: Optional[float] = None
    keyword_match_mode: Optional[str] = None
    is_enabled: Optional[bool] = None
    bin_inclusions: Optional[List[str]] = None
    bin_exclusions: Optional[List[str]] = None
    group_inclusions: Optional[List[str]] = None
    group_exclusions: Optional[List[str]] = None
    contract_prefix_exclusions: Optional[List[str]] = None
    pharmacy_inclusions: Optional[List[str]] = None
    expected_qty: Optional[float] = None
    expected_days_supply: Optional[int] = None
    bin_values: Optional[List[BinValue]] = None

    def to_service(self) -> Dict[str, Any]:
        data = self.model_dump(exclude_unset=True, exclude={"bin_values"})
        if self.bin_values is not None:
            data["bin_values"] = [b.model_dump(by_alias=True) for b in self.bin_values]
        return data


class CoverageScanRequest(CamelModel):
    lookback_days: Optional[int] = Field(None, ge=1)
    min_claims: int = Field(1, ge=1)


class ExcludeBinRequest(BaseModel):
    bin: str
    group: Optional[str] = None
    trigger_id: Optional[str] = Field(None, alias="triggerId")
    trigger_group: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class AuditRulePayload(CamelModel):
    rule_code: Optional[str] = None
    rule_name: Optional[str] = None
    rule_description: Optional[str] = None
    rule_type: Optional[str] = None
    drug_keywords: Optional[List[str]] = None
    ndc_pattern: Optional[str] = None
    expected_quantity: Optional[float] = None
    min_quantity: Optional[float] = None
    max_quantity: Optional[float] = None
    quantity_tolerance: Optional[float] = None
    min_days_supply: Optional[int] = None
    max_days_supply: Optional[int] = None
    allowed_daw_codes: Optional[List[str]] = None
    has_generic_available: Optional[bool] = None
    gp_threshold: Optional[float] = None
    severity: Optional[str] = None
    audit_risk_score: Optional[int] = None
    is_enabled: Optional[bool] = None


class NegativeGPScanRequest(BaseModel):
    min_fills_negative: Optional[int] = Field(None, alias="minFillsNegative", ge=1)
    max_avg_gp: Optional[float] = Field(None, alias="maxAvgGP")
    min_fills_alternative: Optional[int] = Field(None, alias="minFillsAlternative", ge=1)
    min_avg_gp_alternative: Optional[float] = Field(None, alias="minAvgGPAlternative")
    lookback_days: Optional[int] = Field(None, alias="lookbackDays", ge=1)
    min_margin_gain: Optional[float] = Field(None, alias="minMarginGain")
    max_results: Optional[int] = Field(None, alias="maxResults", ge=1)

    model_config = ConfigDict(populate_by_name=True)


class DeduplicateRequest(CamelModel):
    pharmacy_id: Optional[str] = None
    dry_run: bool = True


# ----------------------------- Helpers ----------------------------------------
def _with_permissions(service: TheRxService, user: Dict[str, Any]) -> Dict[str, Any]:
    overrides = None
    if user.get("pharmacy_id"):
        overrides = service.get_pharmacy_settings(user["pharmacy_id"]).get("role_permissions")
    user["permissions"] = permissions_for(user["role"], overrides)
    return user


def _scan_in_background(service: TheRxService, pharmacy_ids: List[str], scan_type: str) -> None:
    try:
        scanner.run_scan(service, pharmacy_ids=pharmacy_ids, scan_type=scan_type)
    except Exception:
        log.exception("[API] Background scan failed for pharmacies=%s", pharmacy_ids)


def _enforce_prescriber_block(
    service: TheRxService, opportunities: List[Dict[str, Any]], status: Optional[str]
) -> Optional[Dict[str, Any]]:
    """Reject moves into an actioned status that would take a prescriber past the block threshold."""
    if status not in ACTIONED_STATUSES:
        return None
    groups: Dict[Tuple[str, str], Dict[str, Any]] = {}
    for opp in opportunities:
        if opp["status"] in ACTIONED_STATUSES or not opp.get("prescriber_name"):
            continue
        key = (opp["pharmacy_id"], opp["prescriber_name"].upper())
        group = groups.setdefault(key, {"name": opp["prescriber_name"], "patients": set()})
        group["patients"].add(opp["patient_id"])
    warning = None
    for (pharmacy_id, _), group in groups.items():
        warning = service.prescriber_warning(pharmacy_id, group["name"])
        block = warning["blockThreshold"]
        if block is not None and warning["uniquePatientsActioned"] + len(group["patients"]) > block:
            log.warning("[Opportunities] Blocked %s for prescriber=%s (%s patients actioned)",
                        status, group["name"], warning["uniquePatientsActioned"])
            raise HTTPException(
                status_code=409,
                detail=f"{group['name']} already has {warning['uniquePatientsActioned']} "
                       f"patients actioned in the current window",
            )
    return warning


# ----------------------------- Auth Endpoints ---------------------------------
@app.post("/api/auth/login")
def login(payload: LoginRequest, service: TheRxService = Depends(get_service)):
    user = service.authenticate(payload.email, payload.password)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid email or password")
    _with_permissions(service, user)
    log.info("[Auth] Login user=%s role=%s", user["user_id"], user["role"])
    return {"token": create_access_token(user), "user": public_user(user)}


@app.post("/api/auth/logout")
def logout(user: Dict[str, Any] = Depends(current_user)):
    # tokens are stateless; the client drops its copy
    return {"success": True}


@app.get("/api/auth/me")
def me(user: Dict[str, Any] = Depends(current_user)):
    return {"user": public_user(user)}


@app.post("/api/auth/change-password")
def change_password(
    payload: ChangePasswordRequest,
    user: Dict[str, Any] = Depends(current_user),
    service: TheRxService = Depends(get_service),
):
    service.change_password(user["user_id"], payload.current_password, payload.new_password)
    return {"success": True}


# ----------------------------- User Endpoints ---------------------------------
@app.get("/api/users")
def list_users(
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PHARMACY_USERS)),
    service: TheRxService = Depends(get_service),
):
    return {"users": service.list_users(resolve_pharmacy_id(user, pharmacy_id))}


@app.post("/api/users", status_code=201)
def create_user(
    payload: UserCreate,
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PHARMACY_USERS)),
    service: TheRxService = Depends(get_service),
):
    if payload.role == SUPER_ADMIN and user["role"] != SUPER_ADMIN:
        raise PermissionError("Only super admins can create super admins")
    pharmacy_id = None if payload.role == SUPER_ADMIN else resolve_pharmacy_id(user, payload.pharmacy_id)
    temporary = payload.password is None
    password = payload.password or secrets.token_urlsafe(9)
    created = service.create_user(
        email=payload.email,
        password=password,
        role=payload.role,
        pharmacy_id=pharmacy_id,
        first_name=payload.first_name,
        last_name=payload.last_name,
        must_change_password=temporary,
    )
    out: Dict[str, Any] = {"user": created}
    if temporary:
        out["temporaryPassword"] = password
    return out


@app.patch("/api/users/{user_id}")
def update_user(
    user_id: str,
    payload: UserUpdate,
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PHARMACY_USERS)),
    service: TheRxService = Depends(get_service),
):
    if payload.role == SUPER_ADMIN and user["role"] != SUPER_ADMIN:
        raise PermissionError("Only super admins can grant super admin")
    scope = None if user["role"] == SUPER_ADMIN else user["pharmacy_id"]
    return {"user": service.update_user(user_id, payload.model_dump(exclude_unset=True), pharmacy_id=scope)}


@app.delete("/api/users/{user_id}")
def deactivate_user(
    user_id: str,
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PHARMACY_USERS)),
    service: TheRxService = Depends(get_service),
):
    if user_id == user["user_id"]:
        raise ValueError("You cannot deactivate your own account")
    scope = None if user["role"] == SUPER_ADMIN else user["pharmacy_id"]
    return {"user": service.update_user(user_id, {"is_active": False}, pharmacy_id=scope)}


# ----------------------------- Pharmacy Settings ------------------------------
@app.get("/api/pharmacy/settings")
def get_pharmacy_settings(
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PHARMACY_SETTINGS)),
    service: TheRxService = Depends(get_service),
):
    pid = resolve_pharmacy_id(user, pharmacy_id)
    if not pid:
        raise ValueError("pharmacyId required")
    return {"pharmacyId": pid, "settings": service.get_pharmacy_settings(pid)}


@app.patch("/api/pharmacy/settings")
def update_pharmacy_settings(
    payload: PharmacySettingsUpdate,
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PHARMACY_SETTINGS)),
    service: TheRxService = Depends(get_service),
):
    pid = resolve_pharmacy_id(user, pharmacy_id)
    if not pid:
        raise ValueError("pharmacyId required")
    changes = payload.model_dump(exclude_unset=True)
    if "role_permissions" in changes and CONFIGURE_PERMISSIONS not in user["permissions"]:
        raise PermissionError("Configuring role permissions is not allowed")
    return {"pharmacyId": pid, "settings": service.update_pharmacy_settings(pid, changes)}


# ----------------------------- Patient Endpoints ------------------------------
@app.get("/api/patients")
def list_patients(
    search: Optional[str] = None,
    has_opportunities: Optional[bool] = Query(None, alias="hasOpportunities"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_permission(VIEW_PATIENTS)),
    service: TheRxService = Depends(get_service),
):
    return service.list_patients(
        resolve_pharmacy_id(user, pharmacy_id), search=search, has_opportunities=has_opportunities,
        limit=limit, offset=offset,
    )


@app.get("/api/patients/{patient_id}")
def get_patient(
    patient_id: str,
    user: Dict[str, Any] = Depends(require_permission(VIEW_PATIENT_DETAILS)),
    service: TheRxService = Depends(get_service),
):
    patient = service.get_patient(patient_id, resolve_pharmacy_id(user))
    return {
        "patient": {k: v for k, v in patient.items() if k not in ("prescriptions", "opportunities")},
        "prescriptions": patient["prescriptions"],
        "opportunities": patient["opportunities"],
    }


@app.post("/api/patients/{patient_id}/med-sync")
def enroll_med_sync(
    patient_id: str,
    payload: MedSyncRequest,
    user: Dict[str, Any] = Depends(require_permission(ACTION_OPPORTUNITIES)),
    service: TheRxService = Depends(get_service),
):
    return {"patient": service.enroll_med_sync(patient_id, payload.sync_date, resolve_pharmacy_id(user))}


# ----------------------------- Opportunity Endpoints --------------------------
@app.get("/api/opportunities")
def list_opportunities(
    status: Optional[str] = None,
    type: Optional[str] = None,
    priority: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = Query(500, ge=1, le=5000),
    offset: int = Query(0, ge=0),
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_permission(VIEW_OPPORTUNITIES)),
    service: TheRxService = Depends(get_service),
):
    return service.list_opportunities(
        resolve_pharmacy_id(user, pharmacy_id),
        status=status,
        opportunity_type=type,
        priority=priority,
        search=search,
        limit=limit,
        offset=offset,
        include_blocked=user["role"] == SUPER_ADMIN,
    )


@app.get("/api/opportunities/summary/stats")
def opportunity_stats(
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_permission(VIEW_OPPORTUNITIES)),
    service: TheRxService = Depends(get_service),
):
    return service.opportunity_stats(resolve_pharmacy_id(user, pharmacy_id))


@app.get("/api/opportunities/prescriber-stats/{prescriber_name}")
def prescriber_warning(
    prescriber_name: str,
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_permission(VIEW_OPPORTUNITIES)),
    service: TheRxService = Depends(get_service),
):
    pid = resolve_pharmacy_id(user, pharmacy_id)
    if not pid:
        raise ValueError("pharmacyId required")
    return service.prescriber_warning(pid, prescriber_name)


@app.post("/api/opportunities/bulk-update")
def bulk_update(
    payload: BulkUpdate,
    user: Dict[str, Any] = Depends(require_permission(ACTION_OPPORTUNITIES)),
    service: TheRxService = Depends(get_service),
):
    scope = resolve_pharmacy_id(user)
    _enforce_prescriber_block(service, service.get_opportunities(payload.opportunity_ids, scope), payload.status)
    updated = service.bulk_update_opportunities(
        payload.opportunity_ids, payload.status, payload.staff_notes,
        pharmacy_id=scope, user_id=user["user_id"],
    )
    return {"updated": updated}


@app.get("/api/opportunities/{opportunity_id}")
def get_opportunity(
    opportunity_id: str,
    user: Dict[str, Any] = Depends(require_permission(VIEW_OPPORTUNITIES)),
    service: TheRxService = Depends(get_service),
):
    return {"opportunity": service.get_opportunity(opportunity_id, resolve_pharmacy_id(user))}


@app.patch("/api/opportunities/{opportunity_id}")
def update_opportunity(
    opportunity_id: str,
    payload: OpportunityUpdate,
    user: Dict[str, Any] = Depends(require_permission(ACTION_OPPORTUNITIES)),
    service: TheRxService = Depends(get_service),
):
    scope = resolve_pharmacy_id(user)
    current = service.get_opportunity(opportunity_id, scope)
    warning = _enforce_prescriber_block(service, [current], payload.status)
    updated = service.update_opportunity(
        opportunity_id,
        pharmacy_id=scope,
        status=payload.status,
        staff_notes=payload.staff_notes,
        dismissed_reason=payload.dismissed_reason,
        user_id=user["user_id"],
    )
    return {"opportunity": updated, "prescriberWarning": warning if warning and warning["shouldWarn"] else None}


@app.delete("/api/opportunities/{opportunity_id}")
def delete_opportunity(
    opportunity_id: str,
    user: Dict[str, Any] = Depends(require_permission(DELETE_OPPORTUNITIES)),
    service: TheRxService = Depends(get_service),
):
    service.delete_opportunity(opportunity_id, resolve_pharmacy_id(user))
    return {"success": True}


# ----------------------------- Audit Risk Endpoints ---------------------------
@app.get("/api/audit/flags")
def list_audit_flags(
    limit: int = Query(500, ge=1, le=5000),
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_permission(VIEW_AUDIT_RISKS)),
    service: TheRxService = Depends(get_service),
):
    return {"flags": service.list_audit_flags(resolve_pharmacy_id(user, pharmacy_id), limit=limit)}


# ----------------------------- Analytics Endpoints ----------------------------
@app.get("/api/analytics/dashboard")
def analytics_dashboard(
    period: int = Query(30, ge=1, le=3650),
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_permission(VIEW_ANALYTICS)),
    service: TheRxService = Depends(get_service),
):
    return analytics.dashboard(service, resolve_pharmacy_id(user, pharmacy_id), period)


@app.get("/api/analytics/opportunities/by-type")
def analytics_by_type(
    status: Optional[str] = None,
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_permission(VIEW_ANALYTICS)),
    service: TheRxService = Depends(get_service),
):
    return {"byType": analytics.by_type(service, resolve_pharmacy_id(user, pharmacy_id), status)}


@app.get("/api/analytics/trends")
def analytics_trends(
    days: int = Query(30, ge=1, le=3650),
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_permission(VIEW_ANALYTICS)),
    service: TheRxService = Depends(get_service),
):
    return analytics.trends(service, resolve_pharmacy_id(user, pharmacy_id), days)


@app.get("/api/analytics/top-patients")
def analytics_top_patients(
    limit: int = Query(10, ge=1, le=500),
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_permission(VIEW_ANALYTICS)),
    service: TheRxService = Depends(get_service),
):
    return {"patients": analytics.top_patients(service, resolve_pharmacy_id(user, pharmacy_id), limit)}


@app.get("/api/analytics/performance")
def analytics_performance(
    days: int = Query(30, ge=1, le=3650),
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_permission(VIEW_ANALYTICS)),
    service: TheRxService = Depends(get_service),
):
    return analytics.performance(service, resolve_pharmacy_id(user, pharmacy_id), days)


@app.get("/api/analytics/ingestion-status")
def analytics_ingestion_status(
    limit: int = Query(10, ge=1, le=200),
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_permission(VIEW_ANALYTICS)),
    service: TheRxService = Depends(get_service),
):
    return analytics.ingestion_status(service, resolve_pharmacy_id(user, pharmacy_id), limit)


@app.get("/api/analytics/gp-metrics")
def analytics_gp_metrics(
    lookback_days: Optional[int] = Query(None, alias="lookbackDays", ge=1),
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_permission(VIEW_ANALYTICS)),
    service: TheRxService = Depends(get_service),
):
    return metrics.gp_metrics(service, resolve_pharmacy_id(user, pharmacy_id), lookback_days)


@app.get("/api/analytics/prescriber-stats")
def analytics_prescriber_stats(
    limit: int = Query(25, ge=1, le=500),
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_permission(VIEW_ANALYTICS)),
    service: TheRxService = Depends(get_service),
):
    return analytics.prescriber_stats(service, resolve_pharmacy_id(user, pharmacy_id), limit)


@app.get("/api/analytics/recommended-drug-stats")
def analytics_recommended_drugs(
    limit: int = Query(20, ge=1, le=500),
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_permission(VIEW_ANALYTICS)),
    service: TheRxService = Depends(get_service),
):
    return analytics.recommended_drug_stats(service, resolve_pharmacy_id(user, pharmacy_id), limit)


@app.get("/api/analytics/monthly")
def analytics_monthly(
    month: int = Query(..., ge=1, le=12),
    year: int = Query(..., ge=2000, le=2100),
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_permission(VIEW_ANALYTICS)),
    service: TheRxService = Depends(get_service),
):
    return analytics.monthly(service, resolve_pharmacy_id(user, pharmacy_id), month, year)


@app.get("/api/analytics/monthly/export")
def analytics_monthly_export(
    month: int = Query(..., ge=1, le=12),
    year: int = Query(..., ge=2000, le=2100),
    format: str = "csv",
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_permission(EXPORT_PATIENT_DATA)),
    service: TheRxService = Depends(get_service),
):
    if format != "csv":
        raise ValueError("only csv export is supported")
    body = analytics.monthly_export_csv(service, resolve_pharmacy_id(user, pharmacy_id), month, year)
    filename = f"therxos-{year}-{month:02d}.csv"
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ----------------------------- Ingestion & Scans ------------------------------
@app.post("/api/ingest/csv")
def ingest_claims(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    pharmacy_id: Optional[str] = Form(None, alias="pharmacyId"),
    run_auto_complete: bool = Form(True, alias="runAutoComplete"),
    run_scan: bool = Form(False, alias="runScan"),
    user: Dict[str, Any] = Depends(require_permission(UPLOAD_DATA)),
    service: TheRxService = Depends(get_service),
):
    pid = resolve_pharmacy_id(user, pharmacy_id)
    if not pid:
        raise ValueError("pharmacyId required")
    content = file.file.read()
    if not content:
        raise ValueError("uploaded file is empty")
    result = ingest_csv(
        service, pid, content, filename=file.filename, source_email=user["email"],
        run_auto_complete=run_auto_complete,
    )
    if run_scan and result["inserted"]:
        background_tasks.add_task(_scan_in_background, service, [pid], "ingestion")
        result["scanQueued"] = True
    return result


@app.post("/api/scan/trigger", status_code=202)
def trigger_scan(
    background_tasks: BackgroundTasks,
    payload: Optional[ScanTrigger] = None,
    user: Dict[str, Any] = Depends(require_roles("admin", "pharmacist")),
    service: TheRxService = Depends(get_service),
):
    payload = payload or ScanTrigger()
    if user["role"] == SUPER_ADMIN:
        pharmacy_ids = payload.pharmacy_ids or service.active_pharmacy_ids()
    else:
        for pid in payload.pharmacy_ids or []:
            resolve_pharmacy_id(user, pid)
        pharmacy_ids = [user["pharmacy_id"]]
    background_tasks.add_task(_scan_in_background, service, pharmacy_ids, payload.scan_type)
    log.info("[API] Scan queued type=%s pharmacies=%s by user=%s", payload.scan_type, pharmacy_ids, user["user_id"])
    return {"message": "Scan started", "pharmacyIds": pharmacy_ids, "scanType": payload.scan_type}


# ----------------------------- Data Quality -----------------------------------
@app.get("/api/data-quality")
def list_data_quality(
    status: Optional[str] = "pending",
    type: Optional[str] = None,
    limit: int = Query(200, ge=1, le=2000),
    offset: int = Query(0, ge=0),
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_roles("admin")),
    service: TheRxService = Depends(get_service),
):
    issues = service.list_data_quality(
        resolve_pharmacy_id(user, pharmacy_id), status=status or None, issue_type=type, limit=limit, offset=offset
    )
    return {"issues": issues, "count": len(issues)}


@app.get("/api/data-quality/stats/summary")
def data_quality_stats(
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_roles("admin")),
    service: TheRxService = Depends(get_service),
):
    return service.data_quality_stats(resolve_pharmacy_id(user, pharmacy_id))


@app.patch("/api/data-quality/{issue_id}")
def update_data_quality(
    issue_id: str,
    payload: DataQualityUpdate,
    user: Dict[str, Any] = Depends(require_roles("admin")),
    service: TheRxService = Depends(get_service),
):
    issue = service.update_data_quality_issue(
        issue_id, payload.status, payload.resolved_value, user_id=user["user_id"],
        pharmacy_id=resolve_pharmacy_id(user),
    )
    return {"issue": issue}


# ----------------------------- Approval Queue ---------------------------------
@app.get("/api/opportunity-approval")
def list_pending_types(
    status: Optional[str] = "pending",
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    return service.list_pending_types(status or None)


@app.get("/api/opportunity-approval/{pending_type_id}")
def get_pending_type(
    pending_type_id: str,
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    return {"item": service.get_pending_type(pending_type_id)}


@app.post("/api/opportunity-approval/{pending_type_id}/approve")
def approve_pending_type(
    pending_type_id: str,
    payload: Optional[ReviewRequest] = None,
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    payload = payload or ReviewRequest()
    return service.approve_pending_type(pending_type_id, user["user_id"], payload.notes, payload.trigger_overrides)


@app.post("/api/opportunity-approval/{pending_type_id}/reject")
def reject_pending_type(
    pending_type_id: str,
    payload: Optional[ReviewRequest] = None,
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    payload = payload or ReviewRequest()
    return {"item": service.reject_pending_type(pending_type_id, user["user_id"], payload.notes)}


# ----------------------------- Admin: Platform --------------------------------
@app.get("/api/admin/stats")
def admin_stats(
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    return service.admin_stats()


@app.get("/api/admin/pharmacies")
def admin_pharmacies(
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    return {"pharmacies": service.list_pharmacies()}


@app.post("/api/admin/pharmacies", status_code=201)
def admin_create_pharmacy(
    payload: PharmacyCreate,
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    pharmacy = service.create_pharmacy(
        payload.pharmacy_name, state=payload.state, status=payload.status, submitter_email=payload.submitter_email
    )
    return {"pharmacy": pharmacy}


@app.get("/api/admin/didnt-work-queue")
def admin_didnt_work_queue(
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    items = service.didnt_work_queue(pharmacy_id)
    return {"items": items, "count": len(items)}


@app.get("/api/admin/opportunities/duplicates")
def admin_duplicates(
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    return dedup.find_duplicates(service, pharmacy_id)


@app.post("/api/admin/opportunities/deduplicate")
def admin_deduplicate(
    payload: Optional[DeduplicateRequest] = None,
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    payload = payload or DeduplicateRequest()
    return dedup.deduplicate(service, payload.pharmacy_id, dry_run=payload.dry_run)


# ----------------------------- Admin: Triggers --------------------------------
@app.get("/api/admin/triggers")
def admin_list_triggers(
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    return {"triggers": service.list_triggers()}


@app.post("/api/admin/triggers", status_code=201)
def admin_create_trigger(
    payload: TriggerPayload,
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    return {"trigger": service.create_trigger(payload.to_service())}


@app.post("/api/admin/triggers/scan-all-opportunities")
def admin_scan_all(
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    return scanner.run_scan(service, scan_type="manual")


@app.post("/api/admin/triggers/verify-all-coverage")
def admin_verify_all_coverage(
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    return scanner.verify_all_coverage(service)


@app.post("/api/admin/triggers/exclude-bin")
def admin_exclude_bin(
    payload: ExcludeBinRequest,
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    trigger = scanner.find_trigger(service, payload.trigger_id, payload.trigger_group)
    return scanner.exclude_bin(service, trigger["trigger_id"], payload.bin, payload.group)


@app.get("/api/admin/triggers/{trigger_id}")
def admin_get_trigger(
    trigger_id: str,
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    return {"trigger": service.get_trigger(trigger_id)}


@app.put("/api/admin/triggers/{trigger_id}")
def admin_update_trigger(
    trigger_id: str,
    payload: TriggerPayload,
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    return {"trigger": service.update_trigger(trigger_id, payload.to_service())}


@app.delete("/api/admin/triggers/{trigger_id}")
def admin_delete_trigger(
    trigger_id: str,
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    service.delete_trigger(trigger_id)
    return {"success": True}


@app.post("/api/admin/triggers/{trigger_id}/scan")
def admin_scan_trigger(
    trigger_id: str,
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    service.get_trigger(trigger_id)
    return scanner.run_scan(service, trigger_ids=[trigger_id], scan_type="manual")


@app.post("/api/admin/triggers/{trigger_id}/scan-pharmacy/{pharmacy_id}")
def admin_scan_trigger_pharmacy(
    trigger_id: str,
    pharmacy_id: str,
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    service.get_trigger(trigger_id)
    return scanner.scan_pharmacy(service, pharmacy_id, trigger_ids=[trigger_id])


@app.post("/api/admin/triggers/{trigger_id}/scan-coverage")
def admin_scan_coverage(
    trigger_id: str,
    payload: Optional[CoverageScanRequest] = None,
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    payload = payload or CoverageScanRequest()
    return scanner.scan_coverage(service, trigger_id, lookback_days=payload.lookback_days, min_claims=payload.min_claims)


# ----------------------------- Admin: Audit Rules -----------------------------
@app.get("/api/admin/audit-rules")
def admin_list_audit_rules(
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    return {"rules": service.list_audit_rules()}


@app.post("/api/admin/audit-rules", status_code=201)
def admin_create_audit_rule(
    payload: AuditRulePayload,
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    return {"rule": service.create_audit_rule(payload.model_dump(exclude_unset=True))}


@app.post("/api/admin/audit-rules/scan-all")
def admin_scan_all_audit_rules(
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    return audit.scan_all(service)


@app.get("/api/admin/audit-rules/{rule_id}")
def admin_get_audit_rule(
    rule_id: str,
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    return {"rule": service.get_audit_rule(rule_id)}


@app.put("/api/admin/audit-rules/{rule_id}")
def admin_update_audit_rule(
    rule_id: str,
    payload: AuditRulePayload,
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    return {"rule": service.update_audit_rule(rule_id, payload.model_dump(exclude_unset=True))}


@app.delete("/api/admin/audit-rules/{rule_id}")
def admin_delete_audit_rule(
    rule_id: str,
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    service.delete_audit_rule(rule_id)
    return {"success": True}


@app.post("/api/admin/audit-rules/{rule_id}/scan")
def admin_scan_audit_rule(
    rule_id: str,
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    service.get_audit_rule(rule_id)
    results = [audit.scan_pharmacy(service, rule_id, pid) for pid in service.active_pharmacy_ids()]
    return {
        "ruleId": rule_id,
        "newFlags": sum(r["newFlags"] for r in results),
        "risk_count": sum(r["risk_count"] for r in results),
        "total_exposure": round(sum(r["total_exposure"] for r in results), 2),
        "results": results,
    }


@app.post("/api/admin/audit-rules/{rule_id}/scan-pharmacy/{pharmacy_id}")
def admin_scan_audit_rule_pharmacy(
    rule_id: str,
    pharmacy_id: str,
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    return audit.scan_pharmacy(service, rule_id, pharmacy_id)


# ----------------------------- Admin: GP Analysis -----------------------------
@app.get("/api/admin/negative-gp-losers")
def admin_negative_gp_losers(
    min_fills: int = Query(3, alias="minFills", ge=1),
    max_avg_gp: float = Query(-2, alias="maxAvgGP"),
    lookback_days: int = Query(180, alias="lookbackDays", ge=1),
    limit: int = Query(200, ge=1, le=5000),
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    return metrics.negative_gp_losers(service, min_fills, max_avg_gp, lookback_days, limit, pharmacy_id)


@app.post("/api/admin/scan-negative-gp")
def admin_scan_negative_gp(
    payload: Optional[NegativeGPScanRequest] = None,
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    config = payload.model_dump(exclude_none=True) if payload else {}
    return scanner.scan_negative_gp(service, config)


@app.get("/api/admin/positive-gp-winners")
def admin_positive_gp_winners(
    min_fills: int = Query(3, alias="minFills", ge=1),
    min_avg_gp: float = Query(10, alias="minAvgGP"),
    lookback_days: int = Query(180, alias="lookbackDays", ge=1),
    limit: int = Query(200, ge=1, le=5000),
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    return metrics.positive_gp_winners(service, min_fills, min_avg_gp, lookback_days, limit, pharmacy_id)


@app.get("/api/admin/ndc-optimization")
def admin_ndc_optimization(
    min_fills: int = Query(3, alias="minFills", ge=1),
    min_gp_difference: float = Query(3, alias="minGPDifference"),
    lookback_days: int = Query(180, alias="lookbackDays", ge=1),
    limit: int = Query(200, ge=1, le=5000),
    pharmacy_id: Optional[str] = Query(None, alias="pharmacyId"),
    user: Dict[str, Any] = Depends(require_permission(MANAGE_PLATFORM)),
    service: TheRxService = Depends(get_service),
):
    return metrics.ndc_optimization(service, min_fills, min_gp_difference, lookback_days, limit, pharmacy_id)


# ----------------------------- Health -----------------------------------------
@app.get("/api/health")
def health():
    return {"status": "ok", "time": datetime.now(timezone.utc).isoformat()}
