"""
Plan definitions, feature gating and trial status for companies.
"""

from datetime import datetime
from typing import Optional

PLAN_ORDER = ["starter", "plus", "pro", "enterprise"]

# Pricing catalogue only covers the self-service plans
PRICED_PLAN_ORDER = ["starter", "plus", "pro"]

FEATURE_KEYS = ("metas", "gamification", "calls", "reports", "integrations")

# None means unlimited
PLAN_FEATURES = {
    "starter": {
        "metas": False,
        "gamification": False,
        "calls": False,
        "reports": False,
        "integrations": False,
        "max_users": 2,
        "max_products": 3,
    },
    "plus": {
        "metas": True,
        "gamification": False,
        "calls": True,
        "reports": False,
        "integrations": False,
        "max_users": 10,
        "max_products": 10,
    },
    "pro": {
        "metas": True,
        "gamification": True,
        "calls": True,
        "reports": True,
        "integrations": False,
        "max_users": 25,
        "max_products": None,
    },
    "enterprise": {
        "metas": True,
        "gamification": True,
        "calls": True,
        "reports": True,
        "integrations": True,
        "max_users": None,
        "max_products": None,
    },
}

PLAN_LABELS = {
    "starter": "Starter",
    "plus": "Plus",
    "pro": "Pro",
    "enterprise": "Enterprise",
}

# Display names used in upgrade prompts
FEATURE_NAMES = {
    "metas": "Metas & Objetivos",
    "gamification": "Gamificação",
    "calls": "Performance de Calls",
    "reports": "Relatórios Avançados",
    "integrations": "Integrações (Hotmart, etc)",
}

PLANS = {
    "starter": {
        "id": "starter",
        "name": "Starter",
        "description": "Para validar sua operação",
        "monthly_price": 147,
        "annual_discount": 10,
        "features": [
            "Dashboard em tempo real",
            "Metas individuais",
            "Registro de vendas",
            "Performance de calls",
        ],
        "limits": {"sellers": 1, "admins": 1, "extra_seller_price": 0},
        "highlight": False,
        "badge": "Básico",
    },
    "plus": {
        "id": "plus",
        "name": "Plus",
        "description": "O mais popular",
        "monthly_price": 397,
        "annual_discount": 10,
        "features": [
            "Tudo do Starter",
            "Pipeline de vendas",
            "Ranking gamificado",
            "Relatórios completos",
            "Metas consolidadas",
        ],
        "limits": {"sellers": 3, "admins": 1, "extra_seller_price": 49.97},
        "highlight": True,
        "badge": "Popular",
    },
    "pro": {
        "id": "pro",
        "name": "Pro",
        "description": "Escala total",
        "monthly_price": 797,
        "annual_discount": 10,
        "features": [
            "Tudo do Plus",
            "CRM completo",
            "Integrações (Hotmart, Stripe)",
            "Multi-empresa",
            "API Access",
            "Suporte prioritário",
        ],
        "limits": {"sellers": 8, "admins": 3, "extra_seller_price": 48.99},
        "highlight": False,
        "badge": "Recomendado",
    },
}


def normalize_plan(plan: Optional[str]) -> str:
    """Unknown or missing plans are treated as starter"""
    if not plan:
        return "starter"
    plan = plan.strip().lower()
    return plan if plan in PLAN_FEATURES else "starter"


def get_plan_features(plan: Optional[str]) -> dict:
    return PLAN_FEATURES[normalize_plan(plan)]


def has_feature(plan: Optional[str], feature: str, is_super_admin: bool = False) -> bool:
    """Check whether a plan unlocks a feature. Super admins bypass every restriction."""
    if is_super_admin:
        return True
    return bool(get_plan_features(plan).get(feature, False))


def get_minimum_plan_for_feature(feature: str) -> str:
    for plan in PLAN_ORDER:
        if PLAN_FEATURES[plan].get(feature):
            return plan
    return "enterprise"


def get_user_limit(plan: Optional[str]) -> Optional[int]:
    """Returns None for unlimited"""
    return get_plan_features(plan)["max_users"]


def get_product_limit(plan: Optional[str]) -> Optional[int]:
    """Returns None for unlimited"""
    return get_plan_features(plan)["max_products"]


def can_add_user(plan: Optional[str], current_count: int) -> tuple:
    """
    Check if a company can add another user.
    Returns (can_add, error_message).
    """
    limit = get_user_limit(plan)
    if limit is None or current_count < limit:
        return (True, None)
    return (
        False,
        f"Seu plano permite até {limit} usuários. Faça upgrade para adicionar mais vendedores.",
    )


def can_add_product(plan: Optional[str], current_count: int) -> tuple:
    limit = get_product_limit(plan)
    if limit is None or current_count < limit:
        return (True, None)
    return (
        False,
        f"Seu plano permite até {limit} produtos. Faça upgrade para cadastrar mais produtos.",
    )


def get_annual_price(plan_id: str) -> float:
    """Yearly total with the annual discount applied"""
    plan = PLANS.get(plan_id)
    if not plan or plan["monthly_price"] == 0:
        return 0
    yearly_total = plan["monthly_price"] * 12
    discount = yearly_total * (plan["annual_discount"] / 100)
    return yearly_total - discount


def get_annual_monthly_equivalent(plan_id: str) -> float:
    return get_annual_price(plan_id) / 12


def get_next_plan(plan_id: Optional[str]) -> Optional[dict]:
    """Next self-service plan in the upgrade path, None at the top or for unknown plans"""
    if plan_id not in PRICED_PLAN_ORDER:
        return None
    index = PRICED_PLAN_ORDER.index(plan_id)
    if index == len(PRICED_PLAN_ORDER) - 1:
        return None
    return PLANS[PRICED_PLAN_ORDER[index + 1]]


def get_catalogue() -> list:
    """Pricing catalogue with the derived annual prices"""
    catalogue = []
    for plan_id in PRICED_PLAN_ORDER:
        plan = dict(PLANS[plan_id])
        plan["annual_price"] = get_annual_price(plan_id)
        plan["annual_monthly_equivalent"] = round(get_annual_monthly_equivalent(plan_id), 2)
        catalogue.append(plan)
    return catalogue


def _days_between(later: datetime, earlier: datetime) -> int:
    """Whole days between two datetimes, truncated toward zero"""
    return int((later - earlier).total_seconds() / 86400)


def get_trial_info(company, now: Optional[datetime] = None, is_super_admin: bool = False) -> dict:
    """
    Trial status of a company.

    Super admins never have trial restrictions. A trialing company whose
    trial end is still ahead (or today) has an active trial; once the end
    date is behind it the trial is expired.
    """
    now = now or datetime.utcnow()

    if is_super_admin:
        return {
            "days_remaining": 999,
            "is_trial_active": False,
            "is_expired": False,
            "plan_name": "Pro (Admin)",
            "subscription_status": "active",
            "trial_ends_at": None,
        }

    if company is None:
        return {
            "days_remaining": 0,
            "is_trial_active": False,
            "is_expired": False,
            "plan_name": "Starter",
            "subscription_status": "active",
            "trial_ends_at": None,
        }

    subscription_status = company.subscription_status or "active"
    trial_ends_at = company.trial_ends_at
    days_remaining = _days_between(trial_ends_at, now) if trial_ends_at else 0

    is_trial_active = subscription_status == "trialing" and days_remaining >= 0
    is_expired = subscription_status == "trialing" and days_remaining < 0

    plan = normalize_plan(company.plan)
    if is_trial_active:
        plan_name = "Pro (Trial)"
    elif plan == "pro":
        plan_name = "Pro"
    elif plan == "plus":
        plan_name = "Plus"
    else:
        plan_name = "Starter"

    return {
        "days_remaining": max(0, days_remaining),
        "is_trial_active": is_trial_active,
        "is_expired": is_expired,
        "plan_name": plan_name,
        "subscription_status": subscription_status,
        "trial_ends_at": trial_ends_at.isoformat() if trial_ends_at else None,
    }


def effective_plan(company, now: Optional[datetime] = None) -> str:
    """Plan used for gating: companies get pro features while their trial is active"""
    if company is None:
        return "starter"
    if get_trial_info(company, now)["is_trial_active"]:
        return "pro"
    return normalize_plan(company.plan)
