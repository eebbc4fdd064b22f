"""
jerkyrank.api.routes.engagement - Public and inbound endpoints
===============================================================
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from jerkyrank.api.deps import get_runtime
from jerkyrank.services.engagement_service import EngagementRuntime

router = APIRouter(tags=["engagement"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class ActivityIn(BaseModel):
    user_id: int
    event_type: str
    payload: dict[str, Any] | None = None
    immediate: bool = False
    event_key: str | None = None


class RankingIn(BaseModel):
    user_id: int
    product_id: str
    rank: int
    list_id: str = "default"


class OrderItem(BaseModel):
    productId: str | None = None
    quantity: int = 1


class OrderWebhook(BaseModel):
    user_id: int
    order_id: str | None = None
    items: list[OrderItem] = Field(default_factory=list)


class ProfileUpdate(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    handle: str | None = None
    hide_name_privacy: bool | None = None
    avatar_url: str | None = None


# ---------------------------------------------------------------------------
# Leaderboard
# ---------------------------------------------------------------------------
@router.get("/leaderboard/{period}")
def get_leaderboard(
    period: str,
    limit: int | None = Query(None, le=500),
    runtime: EngagementRuntime = Depends(get_runtime),
):
    """Ranked entries for ``week`` / ``month`` / ``all_time``."""
    entries = runtime.get_leaderboard(period, limit)
    return {"period": period, "entries": [e.to_dict() for e in entries]}


@router.get("/leaderboard/{period}/position/{user_id}")
def get_position(
    period: str,
    user_id: int,
    runtime: EngagementRuntime = Depends(get_runtime),
):
    return runtime.get_position(user_id, period).to_dict()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
@router.get("/users/{user_id}/closest-achievement")
def get_closest_achievement(
    user_id: int,
    category: str | None = None,
    runtime: EngagementRuntime = Depends(get_runtime),
):
    """The unearned coin or tier upgrade nearest to completion."""
    closest = runtime.get_closest_achievement(user_id, category)
    return {"achievement": closest.to_dict() if closest else None}


@router.get("/users/{user_id}/achievements")
def list_achievements(user_id: int, runtime: EngagementRuntime = Depends(get_runtime)):
    items = runtime.list_achievements(user_id)
    return {
        "achievements": [a.to_dict() for a in items],
        "earned": sum(1 for a in items if a.earned),
        "total": len(items),
    }


@router.get("/users/{user_id}/scores")
def get_scores(user_id: int, runtime: EngagementRuntime = Depends(get_runtime)):
    snapshot = runtime.get_scores(user_id)
    if snapshot is None:
        raise HTTPException(404, "No engagement recorded for this user")
    return snapshot.to_dict()


@router.get("/users/{user_id}/activity-summary")
def get_activity_summary(
    user_id: int,
    days: int = Query(7, ge=1, le=365),
    runtime: EngagementRuntime = Depends(get_runtime),
):
    return {"user_id": user_id, "days": days, "counts": runtime.activity_summary(user_id, days)}


@router.patch("/users/{user_id}/profile")
def update_profile(
    user_id: int,
    body: ProfileUpdate,
    runtime: EngagementRuntime = Depends(get_runtime),
):
    fields = body.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(400, "No fields to update")
    changed = runtime.update_profile(user_id, **fields)
    return {"user_id": user_id, "changed": sorted(changed)}


# ---------------------------------------------------------------------------
# Inbound events
# ---------------------------------------------------------------------------
@router.post("/activity", status_code=202)
def track_activity(body: ActivityIn, runtime: EngagementRuntime = Depends(get_runtime)):
    written = runtime.ingest_activity(
        body.user_id,
        body.event_type,
        body.payload,
        body.immediate,
        event_key=body.event_key,
    )
    return {"accepted": True, "written": written}


@router.post("/rankings", status_code=201)
def save_ranking(body: RankingIn, runtime: EngagementRuntime = Depends(get_runtime)):
    result = runtime.record_ranking(body.user_id, body.product_id, body.rank, body.list_id)
    return result.to_dict()


@router.post("/logins/{user_id}")
def record_login(user_id: int, runtime: EngagementRuntime = Depends(get_runtime)):
    return {"user_id": user_id, "streak": runtime.record_login(user_id)}


@router.post("/webhooks/orders", status_code=202)
def order_webhook(body: OrderWebhook, runtime: EngagementRuntime = Depends(get_runtime)):
    """Order-paid webhook; replays of the same ``order_id`` are no-ops."""
    written = runtime.on_order_webhook(
        body.user_id,
        [item.model_dump() for item in body.items],
        body.order_id,
    )
    return {"accepted": True, "written": written}


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------
@router.get("/health")
def health(runtime: EngagementRuntime = Depends(get_runtime)):
    return runtime.health()
