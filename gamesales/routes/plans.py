"""
Plan Routes
Pricing catalogue and the active tenant's plan, features and trial status
"""

from typing import Optional

from fastapi import APIRouter, Depends

from ..auth import get_active_company, get_current_user
from ..models import Company, Profile
from ..plan_limits import (
    PLAN_LABELS,
    effective_plan,
    get_catalogue,
    get_next_plan,
    get_plan_features,
    get_trial_info,
)

router = APIRouter(prefix="/plans", tags=["plans"])


@router.get("")
async def list_plans():
    return get_catalogue()


@router.get("/current")
async def get_current_plan(
    current_user: Profile = Depends(get_current_user),
    company: Optional[Company] = Depends(get_active_company),
):
    plan = effective_plan(company)
    features = get_plan_features(plan)
    if current_user.is_super_admin:
        features = {
            key: (True if isinstance(value, bool) else None) for key, value in features.items()
        }

    return {
        "plan": plan,
        "plan_label": PLAN_LABELS[plan],
        "company_plan": company.plan if company else None,
        "features": features,
        "trial": get_trial_info(company, is_super_admin=current_user.is_super_admin),
        "next_plan": get_next_plan(company.plan if company else None),
    }
