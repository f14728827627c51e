from fastapi import APIRouter, Depends

from gobbledata.core.auth import get_current_user_id
from gobbledata.dependencies import get_entitlement_engine
from gobbledata.features.entitlements.service import EntitlementEngine


router = APIRouter(tags=["entitlements"])


@router.get("/entitlements")
def get_entitlements(
    user_id: str = Depends(get_current_user_id),
    engine: EntitlementEngine = Depends(get_entitlement_engine),
):
    """Current plan, trial state and property capacity."""
    return engine.get_entitlements(user_id)
