"""Admin routes: manual reconciliation, feature flags, audit trail."""

import hmac
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel

from gatekeeper.adapters.audit import AuditLogEntry, AuditRepository
from gatekeeper.core.domain_types import ReconciliationResult
from gatekeeper.entrypoints.api.deps import Container, Settings, get_container, get_settings
from gatekeeper.services.billing_enforcement import SweepResult
from gatekeeper.services.flags import FeatureFlag

ContainerDep = Annotated[Container, Depends(get_container)]
SettingsDep = Annotated[Settings, Depends(get_settings)]


def verify_admin_token(
    config: SettingsDep,
    x_admin_token: Annotated[str | None, Header()] = None,
) -> str:
    """Check the admin token header and return the acting admin label.

    When no ADMIN_API_TOKEN is configured the admin routes are open, which
    is intended for local development only.
    """
    if config.admin_api_token is None:
        return "admin"
    if x_admin_token is None or not hmac.compare_digest(x_admin_token, config.admin_api_token):
        raise HTTPException(status_code=401, detail="Invalid admin token")
    return "admin"


AdminDep = Annotated[str, Depends(verify_admin_token)]

router = APIRouter(prefix="/admin", tags=["admin"])


class FeatureFlagUpdate(BaseModel):
    """Request body for toggling a flag."""

    enabled: bool


class FeatureFlagResponse(BaseModel):
    """Current flag value."""

    key: str
    enabled: bool


class SweepResponse(BaseModel):
    """Counts from a billing enforcement sweep."""

    moved_to_debtor: int
    expelled: int
    failed: int = 0
    skipped: bool


@router.post("/reconciliation/run", response_model=ReconciliationResult)
async def run_reconciliation(container: ContainerDep, admin: AdminDep) -> ReconciliationResult:
    """Run the reconciliation pipeline now and return its result."""
    return await container.reconciliation.run(triggered_by="manual")


@router.post("/billing/sweep", response_model=SweepResponse)
async def run_billing_sweep(container: ContainerDep, admin: AdminDep) -> SweepResponse:
    """Run the grace/debtor expiry sweep now."""
    result: SweepResult = await container.enforcer.sweep(triggered_by="manual")
    return SweepResponse(
        moved_to_debtor=result.moved_to_debtor,
        expelled=result.expelled,
        failed=result.failed,
        skipped=result.skipped,
    )


@router.get("/feature-flags", response_model=list[FeatureFlagResponse])
async def list_feature_flags(container: ContainerDep, admin: AdminDep) -> list[FeatureFlagResponse]:
    """List the known flags and their values."""
    return [
        FeatureFlagResponse(key=flag.value, enabled=await container.flags.is_enabled(flag))
        for flag in FeatureFlag
    ]


@router.put("/feature-flags/{key}", response_model=FeatureFlagResponse)
async def set_feature_flag(
    key: FeatureFlag,
    body: FeatureFlagUpdate,
    container: ContainerDep,
    admin: AdminDep,
) -> FeatureFlagResponse:
    """Toggle a flag; the change is visible immediately."""
    await container.flags.set_flag(key, body.enabled, performed_by=admin)
    return FeatureFlagResponse(key=key.value, enabled=body.enabled)


@router.get("/audit-logs/{entity_type}/{entity_id}", response_model=list[AuditLogEntry])
async def list_audit_logs(
    entity_type: str,
    entity_id: str,
    container: ContainerDep,
    admin: AdminDep,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
) -> list[AuditLogEntry]:
    """Recent audit entries for one entity."""
    if not isinstance(container.audit, AuditRepository):
        raise HTTPException(status_code=503, detail="Audit log not available")
    return await container.audit.list_for_entity(entity_type, entity_id, limit)
