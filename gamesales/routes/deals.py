"""
CRM Deal Routes
Pipeline deals, stage changes and the activity timeline
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..auth import get_active_company_id, get_current_user
from ..database import get_db
from ..models import Deal, DealActivity, Profile
from ..schemas import (
    DealActivityResponse,
    DealCreate,
    DealDetailResponse,
    DealNoteCreate,
    DealResponse,
    DealUpdate,
)
from ..services import crm_service
from ..services.crm_service import DealRuleError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/deals", tags=["deals"])

EDITABLE_FIELDS = (
    "title",
    "customer_name",
    "customer_email",
    "customer_phone",
    "value",
    "probability",
    "notes",
    "product_id",
)


def _get_deal_or_404(db: Session, user: Profile, deal_id: str, company_id: Optional[str]) -> Deal:
    deal = crm_service.get_visible_deal(db, user, deal_id, company_id)
    if not deal:
        raise HTTPException(status_code=404, detail="Deal not found")
    return deal


@router.get("", response_model=list[DealResponse])
async def list_deals(
    stage: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None),
    current_user: Profile = Depends(get_current_user),
    company_id: Optional[str] = Depends(get_active_company_id),
    db: Session = Depends(get_db),
):
    """List deals visible to the current user"""
    query = crm_service.deals_query(db, current_user, company_id)
    if stage:
        query = query.filter(Deal.stage == stage)
    if user_id:
        query = query.filter(Deal.user_id == user_id)
    return query.order_by(Deal.created_at.desc()).all()


@router.post("", response_model=DealResponse, status_code=201)
async def create_deal(
    payload: DealCreate,
    current_user: Profile = Depends(get_current_user),
    company_id: Optional[str] = Depends(get_active_company_id),
    db: Session = Depends(get_db),
):
    if payload.stage == "closed_lost" and not (payload.loss_reason or "").strip():
        raise HTTPException(status_code=400, detail="A loss reason is required to close a deal as lost")

    deal = Deal(
        user_id=current_user.id,
        company_id=company_id,
        source="manual",
        **payload.model_dump(),
    )
    if deal.stage == "closed_won":
        deal.probability = 100
    elif deal.stage == "closed_lost":
        deal.probability = 0

    try:
        db.add(deal)
        db.flush()
        crm_service.record_activity(db, deal, current_user.id, "created", "Deal criado", None, deal.stage)
        db.commit()
        db.refresh(deal)
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Failed to create deal: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to create deal") from e

    if deal.stage == "closed_won":
        crm_service.sync_won_deal_to_sale(db, deal)

    logger.info(f"✅ Deal {deal.id} created by {current_user.email}")
    return deal


@router.get("/{deal_id}", response_model=DealDetailResponse)
async def get_deal(
    deal_id: str,
    current_user: Profile = Depends(get_current_user),
    company_id: Optional[str] = Depends(get_active_company_id),
    db: Session = Depends(get_db),
):
    deal = _get_deal_or_404(db, current_user, deal_id, company_id)
    activities = (
        db.query(DealActivity)
        .filter(DealActivity.deal_id == deal.id)
        .order_by(DealActivity.created_at.desc())
        .all()
    )
    response = DealDetailResponse.model_validate(deal)
    response.activities = [DealActivityResponse.model_validate(a) for a in activities]
    return response


@router.patch("/{deal_id}", response_model=DealResponse)
async def update_deal(
    deal_id: str,
    payload: DealUpdate,
    current_user: Profile = Depends(get_current_user),
    company_id: Optional[str] = Depends(get_active_company_id),
    db: Session = Depends(get_db),
):
    """Update deal fields; a stage change goes through the pipeline rules"""
    deal = _get_deal_or_404(db, current_user, deal_id, company_id)
    changes = payload.model_dump(exclude_unset=True)

    updated_fields = []
    for field in EDITABLE_FIELDS:
        if field in changes and getattr(deal, field) != changes[field]:
            setattr(deal, field, changes[field])
            updated_fields.append(field)

    if updated_fields:
        crm_service.record_activity(
            db,
            deal,
            current_user.id,
            "field_updated",
            f"Campos atualizados: {', '.join(updated_fields)}",
        )

    # Field edits and the stage change are committed together
    if changes.get("stage"):
        try:
            deal = crm_service.change_stage(
                db, deal, changes["stage"], current_user.id, changes.get("loss_reason")
            )
        except DealRuleError as e:
            db.rollback()
            raise HTTPException(status_code=400, detail=str(e)) from e

    db.commit()
    db.refresh(deal)
    return deal


@router.post("/{deal_id}/notes", response_model=DealActivityResponse, status_code=201)
async def add_deal_note(
    deal_id: str,
    payload: DealNoteCreate,
    current_user: Profile = Depends(get_current_user),
    company_id: Optional[str] = Depends(get_active_company_id),
    db: Session = Depends(get_db),
):
    deal = _get_deal_or_404(db, current_user, deal_id, company_id)
    activity = crm_service.record_activity(db, deal, current_user.id, "note", payload.content)
    db.commit()
    db.refresh(activity)
    return activity


@router.delete("/{deal_id}")
async def delete_deal(
    deal_id: str,
    current_user: Profile = Depends(get_current_user),
    company_id: Optional[str] = Depends(get_active_company_id),
    db: Session = Depends(get_db),
):
    deal = _get_deal_or_404(db, current_user, deal_id, company_id)
    db.delete(deal)
    db.commit()
    logger.info(f"🗑️ Deal {deal_id} deleted by {current_user.email}")
    return {"message": "Deal deleted successfully"}
