"""Risk policy API routes — read and replace a user's exit policy."""

import logging

from fastapi import APIRouter, Depends

from app.api.auth import current_user_id
from app.api.trading import get_policy_store
from app.services.risk_policy import RiskPolicySettings, RiskPolicyStore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/settings", tags=["settings"])


@router.get("/risk-policy")
async def get_risk_policy(
    user_id: str = Depends(current_user_id),
    store: RiskPolicyStore = Depends(get_policy_store),
):
    """Saved policy, or the defaults when the user never saved one."""
    policy = await store.get(user_id)
    return {
        "saved": policy is not None,
        "policy": (policy or RiskPolicySettings()).model_dump(mode="json"),
    }


@router.put("/risk-policy")
async def save_risk_policy(
    policy: RiskPolicySettings,
    user_id: str = Depends(current_user_id),
    store: RiskPolicyStore = Depends(get_policy_store),
):
    """Replace the whole policy. Omitted fields fall back to defaults, not old values."""
    await store.save(user_id, policy)
    return {"saved": True, "policy": policy.model_dump(mode="json")}
