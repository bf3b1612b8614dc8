"""
Seller Routes
Visible sellers and admin provisioning of new sellers
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth import get_active_company, get_active_company_id, get_current_admin, get_current_user
from ..database import get_db
from ..models import Company, Profile
from ..plan_limits import can_add_user, effective_plan
from ..schemas import SellerCreate, SellerResponse
from ..services import crm_service, supabase_admin
from ..services.supabase_admin import SupabaseAdminError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sellers", tags=["sellers"])


@router.get("", response_model=list[SellerResponse])
async def list_sellers(
    current_user: Profile = Depends(get_current_user),
    company_id: Optional[str] = Depends(get_active_company_id),
    db: Session = Depends(get_db),
):
    return crm_service.visible_sellers(db, current_user, company_id)


@router.post("")
async def create_seller(
    payload: SellerCreate,
    current_user: Profile = Depends(get_current_admin),
    company: Optional[Company] = Depends(get_active_company),
    db: Session = Depends(get_db),
):
    """
    Create a seller account in the admin's company.

    The auth user is created unconfirmed, an invite link is sent and the
    generated password is returned once so the admin can hand it over.
    """
    nome = (payload.nome or "").strip()
    email = (payload.email or "").strip().lower()
    if not nome or not email:
        raise HTTPException(status_code=400, detail="Nome e e-mail são obrigatórios")

    if company:
        current_count = (
            db.query(Profile)
            .filter(Profile.company_id == company.id, Profile.is_super_admin.is_(False))
            .count()
        )
        allowed, message = can_add_user(effective_plan(company), current_count)
        if not allowed:
            raise HTTPException(status_code=403, detail=message)

    password = supabase_admin.generate_password()

    try:
        created = await supabase_admin.create_auth_user(email, password, nome)
    except SupabaseAdminError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message) from e

    if payload.send_password:
        await supabase_admin.invite_user(email)

    user_id = created.get("id")
    if user_id:
        try:
            profile = db.query(Profile).filter(Profile.id == user_id).first()
            if profile:
                profile.nome = nome
                profile.email = email
            else:
                profile = Profile(id=user_id, nome=nome, email=email, role="vendedor")
                db.add(profile)
            profile.company_id = company.id if company else current_user.company_id
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"❌ Failed to save profile for {email}: {str(e)}")
            raise HTTPException(status_code=500, detail="Erro interno") from e

    logger.info(f"👤 Seller {email} created by {current_user.email}")
    return {"password": password}
