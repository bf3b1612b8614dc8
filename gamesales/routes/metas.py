"""
Metas Routes
Individual and consolidated monthly goals, goal ranking and points ranking
"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..auth import get_active_company_id, get_current_admin, require_feature
from ..database import get_db
from ..models import Meta, MetaConsolidada, Profile
from ..schemas import MetaConsolidadaUpsert, MetaUpsert
from ..services import crm_service, metas_service
from ..utils.dates import local_today, month_start

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/metas", tags=["metas"])
ranking_router = APIRouter(prefix="/ranking", tags=["ranking"])


def _month(mes: Optional[date]) -> date:
    return month_start(mes or local_today())


def _require_company(company_id: Optional[str]) -> str:
    if not company_id:
        raise HTTPException(status_code=400, detail="No active company")
    return company_id


@router.get("")
async def list_metas(
    mes: Optional[date] = Query(None),
    current_user: Profile = Depends(require_feature("metas")),
    company_id: Optional[str] = Depends(get_active_company_id),
    db: Session = Depends(get_db),
):
    """Progress of every visible seller's meta in the month"""
    sellers = {s.id: s for s in crm_service.visible_sellers(db, current_user, company_id)}
    if not sellers:
        return []

    metas = (
        db.query(Meta)
        .filter(Meta.mes_referencia == _month(mes), Meta.user_id.in_(list(sellers)))
        .all()
    )
    return [metas_service.meta_progress(db, meta, sellers[meta.user_id]) for meta in metas]


@router.put("")
async def upsert_meta(
    payload: MetaUpsert,
    current_user: Profile = Depends(get_current_admin),
    _: Profile = Depends(require_feature("metas")),
    db: Session = Depends(get_db),
):
    if not crm_service.can_view_user(db, current_user, payload.user_id):
        raise HTTPException(status_code=404, detail="Seller not found")

    seller = db.query(Profile).filter(Profile.id == payload.user_id).first()
    mes_referencia = month_start(payload.mes_referencia)

    meta = (
        db.query(Meta)
        .filter(Meta.user_id == payload.user_id, Meta.mes_referencia == mes_referencia)
        .first()
    )
    if meta:
        meta.valor_meta = payload.valor_meta
    else:
        meta = Meta(
            user_id=payload.user_id,
            company_id=seller.company_id,
            mes_referencia=mes_referencia,
            valor_meta=payload.valor_meta,
        )
        db.add(meta)
    db.commit()
    db.refresh(meta)

    logger.info(f"🎯 Meta {mes_referencia} set for {seller.email}: {payload.valor_meta}")
    return metas_service.meta_progress(db, meta, seller)


@router.get("/ranking")
async def get_metas_ranking(
    mes: Optional[date] = Query(None),
    current_user: Profile = Depends(require_feature("metas")),
    company_id: Optional[str] = Depends(get_active_company_id),
    db: Session = Depends(get_db),
):
    # Sellers rank against their whole company
    if current_user.is_admin:
        sellers = crm_service.visible_sellers(db, current_user, company_id)
    else:
        sellers = (
            db.query(Profile)
            .filter(Profile.company_id == current_user.company_id, Profile.is_super_admin.is_(False))
            .all()
        )
    return metas_service.metas_ranking(db, sellers, _month(mes))


@router.get("/consolidada")
async def get_consolidated_meta(
    mes: Optional[date] = Query(None),
    _: Profile = Depends(require_feature("metas")),
    company_id: Optional[str] = Depends(get_active_company_id),
    db: Session = Depends(get_db),
):
    company_id = _require_company(company_id)
    sellers = (
        db.query(Profile)
        .filter(Profile.company_id == company_id, Profile.is_super_admin.is_(False))
        .all()
    )
    progress = metas_service.consolidated_progress(db, company_id, sellers, _month(mes))
    if progress is None:
        raise HTTPException(status_code=404, detail="Nenhuma meta consolidada definida")
    return progress


@router.put("/consolidada")
async def upsert_consolidated_meta(
    payload: MetaConsolidadaUpsert,
    current_user: Profile = Depends(get_current_admin),
    _: Profile = Depends(require_feature("metas")),
    company_id: Optional[str] = Depends(get_active_company_id),
    db: Session = Depends(get_db),
):
    company_id = _require_company(company_id)
    mes_referencia = month_start(payload.mes_referencia)

    meta = (
        db.query(MetaConsolidada)
        .filter(
            MetaConsolidada.company_id == company_id,
            MetaConsolidada.mes_referencia == mes_referencia,
        )
        .first()
    )
    if meta:
        meta.valor_meta = payload.valor_meta
        meta.descricao = payload.descricao
    else:
        meta = MetaConsolidada(
            company_id=company_id,
            mes_referencia=mes_referencia,
            valor_meta=payload.valor_meta,
            descricao=payload.descricao,
        )
        db.add(meta)
    db.commit()
    db.refresh(meta)

    logger.info(f"🎯 Consolidated meta {mes_referencia} set by {current_user.email}")
    return {
        "id": meta.id,
        "company_id": meta.company_id,
        "mes_referencia": meta.mes_referencia.isoformat(),
        "valor_meta": meta.valor_meta,
        "descricao": meta.descricao,
    }


@ranking_router.get("/pontos")
async def get_points_ranking(
    current_user: Profile = Depends(require_feature("gamification")),
    company_id: Optional[str] = Depends(get_active_company_id),
    db: Session = Depends(get_db),
):
    query = db.query(Profile).filter(Profile.is_super_admin.is_(False))
    if company_id:
        query = query.filter(Profile.company_id == company_id)
    elif not current_user.is_super_admin:
        return metas_service.points_ranking([current_user])
    return metas_service.points_ranking(query.all())
