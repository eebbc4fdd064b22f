"""
jerkyrank.api.routes.admin - Admin maintenance endpoints (JWT-protected)
=========================================================================
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from jerkyrank.api.deps import get_current_admin, get_runtime
from jerkyrank.services.engagement_service import EngagementRuntime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Achievements
# ---------------------------------------------------------------------------
@router.delete("/users/{user_id}/achievements")
def clear_user_achievements(
    user_id: int,
    admin: dict = Depends(get_current_admin),
    runtime: EngagementRuntime = Depends(get_runtime),
):
    result = runtime.clear_user_achievements(user_id)
    logger.info("Admin %s cleared achievements of user %d", admin.get("sub"), user_id)
    return {"user_id": user_id, **result}


@router.delete("/achievements")
def clear_all_achievements(
    admin: dict = Depends(get_current_admin),
    runtime: EngagementRuntime = Depends(get_runtime),
):
    """Wipe every award and the matching log rows."""
    result = runtime.clear_all_achievements(int(admin["sub"]))
    logger.warning("Admin %s cleared ALL achievements", admin.get("sub"))
    return result


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------
@router.post("/scores/reset/{period}")
def reset_scores(
    period: str,
    admin: dict = Depends(get_current_admin),
    runtime: EngagementRuntime = Depends(get_runtime),
):
    rows = runtime.reset_scores(period)
    return {"period": period, "rows_reset": rows}


@router.post("/scores/{user_id}/recalculate")
def recalculate_scores(
    user_id: int,
    admin: dict = Depends(get_current_admin),
    runtime: EngagementRuntime = Depends(get_runtime),
):
    return runtime.recalculate_user(user_id).to_dict()


@router.get("/engine/stats")
def engine_stats(
    admin: dict = Depends(get_current_admin),
    runtime: EngagementRuntime = Depends(get_runtime),
):
    return {
        "cache": runtime.cache.stats(),
        "queue": runtime.queue.stats(),
        "ingestor": runtime.ingestor.stats(),
        "webhook_ingestor": runtime.webhook_ingestor.stats(),
    }
