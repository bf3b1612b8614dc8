import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from jose import jwt as jose_jwt
from sqlalchemy.orm import Session

from .config import INTERNAL_JOBS_KEY, SUPABASE_JWT_AUDIENCE, SUPABASE_JWT_SECRET
from .database import get_db
from .models import Company, Profile
from .plan_limits import (
    FEATURE_NAMES,
    effective_plan,
    get_minimum_plan_for_feature,
    has_feature,
)
from .webhook_security import constant_time_compare

logger = logging.getLogger(__name__)

security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)

ALGORITHM = "HS256"


def decode_access_token(token: str) -> dict:
    """
    Verify an access token issued by the hosted auth provider.
    Tokens are HS256 JWTs signed with the project JWT secret.
    """
    if not SUPABASE_JWT_SECRET:
        logger.error("❌ SUPABASE_JWT_SECRET not configured")
        raise HTTPException(status_code=500, detail="Authentication not configured")

    try:
        return jose_jwt.decode(
            token,
            SUPABASE_JWT_SECRET,
            algorithms=[ALGORITHM],
            audience=SUPABASE_JWT_AUDIENCE,
        )
    except JWTError as e:
        logger.info(f"ℹ️ Rejected access token: {str(e)}")
        raise HTTPException(status_code=401, detail="Invalid or expired token") from e


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> Profile:
    """Get the profile of the authenticated user"""
    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Not authenticated. Please provide a valid Bearer token in the Authorization header.",
        )

    token = credentials.credentials
    if len(token.split(".")) != 3:
        logger.warning(f"⚠️ Malformed token received, length: {len(token)}")
        raise HTTPException(
            status_code=401, detail="Invalid token format. Expected a valid JWT token."
        )

    claims = decode_access_token(token)
    user_id = claims.get("sub")
    if not user_id:
        logger.error(f"❌ Token missing sub claim. Available claims: {list(claims.keys())}")
        raise HTTPException(status_code=401, detail="Invalid token claims")

    user = db.query(Profile).filter(Profile.id == user_id).first()
    if not user:
        logger.warning(f"⚠️ No profile for authenticated user {user_id}")
        raise HTTPException(status_code=401, detail="User profile not found")

    logger.debug(f"✅ User authenticated: {user.email}")
    return user


async def get_current_admin(user: Profile = Depends(get_current_user)) -> Profile:
    """Company admins and super admins only"""
    if not user.is_admin:
        logger.warning(f"⚠️ User {user.email} attempted to access an admin route")
        raise HTTPException(status_code=403, detail="Acesso restrito a administradores")
    return user


def get_active_company_id(
    user: Profile = Depends(get_current_user),
    x_company_id: Optional[str] = Header(None),
) -> Optional[str]:
    """
    Tenant the request acts on. Super admins may pick any company through the
    X-Company-Id header; everybody else is bound to their own company.
    """
    if user.is_super_admin and x_company_id:
        return x_company_id
    return user.company_id


def get_active_company(
    company_id: Optional[str] = Depends(get_active_company_id),
    db: Session = Depends(get_db),
) -> Optional[Company]:
    if not company_id:
        return None
    return db.query(Company).filter(Company.id == company_id).first()


def plan_upgrade_error(feature: str, current_plan: str) -> HTTPException:
    required_plan = get_minimum_plan_for_feature(feature)
    return HTTPException(
        status_code=403,
        detail={
            "message": f"O recurso {FEATURE_NAMES.get(feature, feature)} requer o plano {required_plan}.",
            "code": "PLAN_UPGRADE_REQUIRED",
            "required_plan": required_plan,
            "current_plan": current_plan,
        },
        headers={"X-Plan-Required": required_plan},
    )


def require_feature(feature: str):
    """
    Dependency factory that only lets users whose company plan unlocks
    the feature through. Super admins are never restricted.

    Example usage:
        @router.get("/ranking", dependencies=[Depends(require_feature("gamification"))])
    """

    async def feature_guard(
        user: Profile = Depends(get_current_user),
        company: Optional[Company] = Depends(get_active_company),
    ) -> Profile:
        plan = effective_plan(company)
        if not has_feature(plan, feature, is_super_admin=user.is_super_admin):
            logger.info(f"🔒 {user.email} blocked from {feature} on plan {plan}")
            raise plan_upgrade_error(feature, plan)
        return user

    return feature_guard


async def verify_internal_key(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security),
    x_internal_key: Optional[str] = Header(None),
) -> None:
    """Guard for scheduler-triggered jobs (service key as bearer token or X-Internal-Key)"""
    if not INTERNAL_JOBS_KEY:
        logger.error("❌ INTERNAL_JOBS_KEY not configured")
        raise HTTPException(status_code=500, detail="Internal jobs key not configured")

    provided = x_internal_key or (credentials.credentials if credentials else None)
    if not constant_time_compare(provided, INTERNAL_JOBS_KEY):
        raise HTTPException(status_code=401, detail="Unauthorized")
