"""
Admin-only subscription operations router.
Requires X-Admin-Key header for all endpoints.

Plan catalog, grant/extend/cancel, subscriber listing and stats, locked
content inspection, job queue and webhook log inspection, manual cron runs.
"""

import logging
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from backend.core.admin_auth import AdminActor, require_admin
from backend.core.errors import NotFoundError
from backend.features.billing.webhooks import list_webhook_logs
from backend.features.entitlements.service import refresh_entitlement_cache
from backend.features.jobs.queue import count_by_status, list_jobs, process_queue, retry_failed_job
from backend.features.plans import service as plan_service
from backend.features.reconciliation import sweeps
from backend.features.storage.service import get_locked_content, get_storage_summary
from backend.features.subscriptions import admin_service, lifecycle
from backend.features.subscriptions.service import serialize_subscription

logger = logging.getLogger("subengine.admin")

router = APIRouter(prefix="/api/admin/subscriptions", tags=["admin-subscriptions"])
cron_router = APIRouter(prefix="/api/admin/cron", tags=["admin-cron"])


# ============================================================================
# Pydantic Models
# ============================================================================

class PlanFeaturesBody(BaseModel):
    blue_tick: bool = False
    gold_tick: bool = False
    no_ads: bool = False
    engagement_boost: float = 1.0
    bio_links_limit: int = 0
    caption_links_limit: int = 0
    custom_theme: bool = False


class CreatePlanRequest(BaseModel):
    id: Optional[str] = None
    name: str
    display_name: str
    tier: int = 0
    type: Literal["subscription", "storage_addon"] = "subscription"
    billing_cycle: Literal["monthly", "yearly"] = "monthly"
    price: float = Field(..., ge=0)
    price_yearly: Optional[float] = Field(None, ge=0)
    duration_days: int = Field(30, gt=0)
    duration_days_yearly: int = Field(365, gt=0)
    storage_gb: int = Field(0, ge=0)
    features: Optional[PlanFeaturesBody] = None
    sort_order: int = 99
    is_best_value: bool = False


class UpdatePlanRequest(BaseModel):
    display_name: Optional[str] = None
    tier: Optional[int] = None
    price: Optional[float] = Field(None, ge=0)
    price_yearly: Optional[float] = Field(None, ge=0)
    duration_days: Optional[int] = Field(None, gt=0)
    duration_days_yearly: Optional[int] = Field(None, gt=0)
    storage_gb: Optional[int] = Field(None, ge=0)
    features: Optional[PlanFeaturesBody] = None
    sort_order: Optional[int] = None
    is_best_value: Optional[bool] = None
    is_active: Optional[bool] = None


class GrantRequest(BaseModel):
    user_id: str
    plan_id: str
    billing_cycle: Literal["monthly", "yearly"] = "monthly"
    duration_days: Optional[int] = Field(None, gt=0)
    note: Optional[str] = Field(None, max_length=500)


class ExtendRequest(BaseModel):
    days: int = Field(..., gt=0, le=3650)


class AdminCancelRequest(BaseModel):
    immediate: bool = True
    reason: Optional[str] = Field(None, max_length=100)


# ============================================================================
# Plan catalog
# ============================================================================

@router.get("/plans")
def admin_list_plans(include_inactive: bool = Query(True), actor: AdminActor = Depends(require_admin)):
    plans = plan_service.list_plans(include_inactive=include_inactive)
    return {
        "plans": [
            {**p.model_dump(mode="json"), "active_subscribers": plan_service.count_active_subscribers(p.id)}
            for p in plans
        ]
    }


@router.post("/plans")
def admin_create_plan(body: CreatePlanRequest, actor: AdminActor = Depends(require_admin)):
    plan = plan_service.create_plan(body.model_dump(exclude_none=True))
    admin_service.record_admin_audit(
        actor.actor_id, "create_plan", target_resource=plan.id, payload=body.model_dump(exclude_none=True)
    )
    return plan.model_dump(mode="json")


@router.patch("/plans/{plan_id}")
def admin_update_plan(plan_id: str, body: UpdatePlanRequest, actor: AdminActor = Depends(require_admin)):
    changes = body.model_dump(exclude_unset=True)
    plan = plan_service.update_plan(plan_id, changes)
    admin_service.record_admin_audit(actor.actor_id, "update_plan", target_resource=plan_id, payload=changes)
    return plan.model_dump(mode="json")


@router.delete("/plans/{plan_id}")
def admin_deactivate_plan(plan_id: str, actor: AdminActor = Depends(require_admin)):
    plan = plan_service.deactivate_plan(plan_id)
    admin_service.record_admin_audit(actor.actor_id, "deactivate_plan", target_resource=plan_id)
    return plan.model_dump(mode="json")


@router.post("/plans/seed")
def admin_seed_plans(actor: AdminActor = Depends(require_admin)):
    created = plan_service.seed_default_plans()
    if created:
        admin_service.record_admin_audit(actor.actor_id, "seed_plans", payload={"created": created})
    return {"created": created}


# ============================================================================
# Subscribers
# ============================================================================

@router.get("")
def admin_list_subscriptions(
    plan_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    actor: AdminActor = Depends(require_admin),
):
    subscriptions = admin_service.list_subscribers(plan_id=plan_id, status=status, limit=limit, offset=offset)
    return {"subscriptions": subscriptions, "count": len(subscriptions)}


@router.get("/stats")
def admin_stats(actor: AdminActor = Depends(require_admin)):
    return admin_service.get_subscription_stats()


@router.get("/audit")
def admin_audit_log(
    action: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    actor: AdminActor = Depends(require_admin),
):
    return {"entries": admin_service.list_admin_audit(limit=limit, action=action)}


@router.post("/grant")
def admin_grant(body: GrantRequest, actor: AdminActor = Depends(require_admin)):
    return admin_service.grant_subscription(
        actor.actor_id,
        body.user_id,
        body.plan_id,
        billing_cycle=body.billing_cycle,
        duration_days=body.duration_days,
        note=body.note,
    )


@router.get("/users/{user_id}")
def admin_user_detail(user_id: str, actor: AdminActor = Depends(require_admin)):
    return {
        "user_id": user_id,
        "subscriptions": [serialize_subscription(s) for s in lifecycle.list_user_subscriptions(user_id)],
        "storage": get_storage_summary(user_id),
    }


@router.get("/users/{user_id}/locked-content")
def admin_locked_content(user_id: str, actor: AdminActor = Depends(require_admin)):
    return get_locked_content(user_id)


@router.post("/users/{user_id}/refresh-entitlements")
def admin_refresh_entitlements(user_id: str, actor: AdminActor = Depends(require_admin)):
    entitlements = refresh_entitlement_cache(user_id)
    return entitlements.model_dump(mode="json")


# ============================================================================
# Jobs and webhooks
# ============================================================================

@router.get("/jobs")
def admin_list_jobs(
    status: Optional[str] = Query(None),
    job_type: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    actor: AdminActor = Depends(require_admin),
):
    return {
        "counts": count_by_status(),
        "jobs": [j.model_dump(mode="json") for j in list_jobs(status=status, job_type=job_type, limit=limit)],
    }


@router.post("/jobs/process")
def admin_process_jobs(limit: int = Query(10, ge=1, le=100), actor: AdminActor = Depends(require_admin)):
    return process_queue(limit=limit, worker_id=f"admin-{actor.actor_id}")


@router.post("/jobs/{job_id}/retry")
def admin_retry_job(job_id: int, actor: AdminActor = Depends(require_admin)):
    job = retry_failed_job(job_id)
    admin_service.record_admin_audit(actor.actor_id, "retry_job", target_resource=str(job_id))
    return job.model_dump(mode="json")


@router.get("/webhook-logs")
def admin_webhook_logs(
    status: Optional[str] = Query(None),
    event: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    actor: AdminActor = Depends(require_admin),
):
    return {"logs": list_webhook_logs(limit=limit, status=status, event=event)}


# Parametrised routes last so they never shadow the fixed paths above

@router.get("/{subscription_id}")
def admin_get_subscription(subscription_id: str, actor: AdminActor = Depends(require_admin)):
    return serialize_subscription(lifecycle.require_subscription(subscription_id))


@router.post("/{subscription_id}/extend")
def admin_extend(subscription_id: str, body: ExtendRequest, actor: AdminActor = Depends(require_admin)):
    return admin_service.extend_subscription(actor.actor_id, subscription_id, body.days)


@router.post("/{subscription_id}/cancel")
def admin_cancel(subscription_id: str, body: AdminCancelRequest, actor: AdminActor = Depends(require_admin)):
    return admin_service.cancel_subscription(
        actor.actor_id, subscription_id, immediate=body.immediate, reason=body.reason
    )


# ============================================================================
# Cron
# ============================================================================

@cron_router.post("/run")
def admin_run_all_sweeps(actor: AdminActor = Depends(require_admin)) -> Dict[str, Any]:
    results = sweeps.run_all_sweeps()
    admin_service.record_admin_audit(actor.actor_id, "cron_run", target_resource="all")
    return results


@cron_router.get("/runs")
def admin_cron_runs(
    job_name: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=200),
    actor: AdminActor = Depends(require_admin),
):
    return {"runs": sweeps.list_job_runs(limit=limit, job_name=job_name)}


@cron_router.post("/{sweep}")
def admin_run_sweep(sweep: str, actor: AdminActor = Depends(require_admin)):
    runner = sweeps.SWEEPS.get(sweep)
    if runner is None:
        raise NotFoundError(f"Unknown sweep: {sweep}", details={"available": sorted(sweeps.SWEEPS)})
    result = runner(None)
    admin_service.record_admin_audit(actor.actor_id, "cron_run", target_resource=sweep)
    return result
