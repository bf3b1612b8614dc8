"""
CRM Service
Deal stage transitions, activity timeline, won-deal to venda sync and seller visibility
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from ..models import Deal, DealActivity, Profile, Venda
from ..utils.dates import local_today

logger = logging.getLogger(__name__)

DEAL_STAGES = ("lead", "qualification", "proposal", "negotiation", "closed_won", "closed_lost")
STAGE_LABELS = {
    "lead": "Lead",
    "qualification": "Qualificação",
    "proposal": "Proposta",
    "negotiation": "Negociação",
    "closed_won": "Ganho",
    "closed_lost": "Perdido",
}


class DealRuleError(Exception):
    """Deal update that breaks a pipeline rule"""

    pass


def sale_sync_marker(deal_id: str) -> str:
    return f"Sincronizado automaticamente do CRM (deal {deal_id})"


def sync_won_deal_to_sale(db: Session, deal: Deal) -> Optional[Venda]:
    """
    Create the approved venda of a won deal, once per deal and owner.
    Returns the new venda, or None when it already existed.
    """
    if not deal.id or not deal.user_id:
        return None

    marker = sale_sync_marker(deal.id)
    existing = (
        db.query(Venda)
        .filter(Venda.observacoes == marker, Venda.user_id == deal.user_id)
        .first()
    )
    if existing:
        logger.debug(f"ℹ️ Deal {deal.id} already synced to venda {existing.id}")
        return None

    venda = Venda(
        user_id=deal.user_id,
        company_id=deal.company_id,
        cliente_nome=deal.customer_name or deal.title or "Cliente",
        produto_id=deal.product_id,
        produto_nome=deal.title or "Deal CRM",
        valor=float(deal.value or 0),
        plataforma="Pix/Boleto",
        forma_pagamento="PIX",
        status="Aprovado",
        observacoes=marker,
        data_venda=local_today(),
    )
    db.add(venda)
    db.commit()
    db.refresh(venda)

    logger.info(f"💰 Won deal {deal.id} synced to venda {venda.id}")
    return venda


def record_activity(
    db: Session,
    deal: Deal,
    user_id: Optional[str],
    activity_type: str,
    description: str,
    old_value: Optional[str] = None,
    new_value: Optional[str] = None,
) -> DealActivity:
    activity = DealActivity(
        deal_id=deal.id,
        company_id=deal.company_id,
        user_id=user_id,
        activity_type=activity_type,
        description=description,
        old_value=old_value,
        new_value=new_value,
    )
    db.add(activity)
    return activity


def change_stage(
    db: Session,
    deal: Deal,
    new_stage: str,
    user_id: str,
    loss_reason: Optional[str] = None,
) -> Deal:
    """
    Move a deal to another pipeline stage. Winning sets probability to 100 and
    creates the venda; losing requires a reason and sets probability to 0.
    """
    if new_stage not in DEAL_STAGES:
        raise DealRuleError(f"Invalid stage: {new_stage}")

    old_stage = deal.stage
    if new_stage == old_stage:
        return deal

    if new_stage == "closed_lost":
        reason = loss_reason or deal.loss_reason
        if not reason or not reason.strip():
            raise DealRuleError("A loss reason is required to close a deal as lost")
        deal.loss_reason = reason.strip()
        deal.probability = 0
        activity_type = "lost"
        description = f"Deal perdido: {deal.loss_reason}"
    elif new_stage == "closed_won":
        deal.probability = 100
        activity_type = "won"
        description = "Deal ganho"
    else:
        activity_type = "stage_changed"
        description = f"Etapa alterada de {STAGE_LABELS.get(old_stage, old_stage)} para {STAGE_LABELS[new_stage]}"

    deal.stage = new_stage
    record_activity(db, deal, user_id, activity_type, description, old_stage, new_stage)
    db.commit()
    db.refresh(deal)

    if new_stage == "closed_won":
        sync_won_deal_to_sale(db, deal)

    return deal


def visible_sellers(db: Session, user: Profile, active_company_id: Optional[str] = None) -> list:
    """
    Profiles the user may see in seller lists and filters.

    Super admins see every company (or the selected one), company admins see
    their own company and sellers only see themselves. Super admin profiles
    are never listed.
    """
    if not user.is_admin:
        return [user]

    query = db.query(Profile).filter(Profile.is_super_admin.is_(False))

    if user.is_super_admin:
        if active_company_id:
            query = query.filter(Profile.company_id == active_company_id)
    elif user.company_id:
        query = query.filter(Profile.company_id == user.company_id)
    else:
        return []

    return query.order_by(Profile.nome).all()


def can_view_user(db: Session, user: Profile, target_user_id: Optional[str]) -> bool:
    """Whether user may see data (vendas, metas, calls) of another profile"""
    if not target_user_id:
        return False
    if target_user_id == user.id:
        return True

    target = db.query(Profile).filter(Profile.id == target_user_id).first()
    if not target or target.is_super_admin:
        return False
    if user.is_super_admin:
        return True
    if user.role == "admin" and user.company_id:
        return target.company_id == user.company_id
    return False


def deals_query(db: Session, user: Profile, active_company_id: Optional[str] = None):
    """Deals visible to the user: own deals for sellers, the company's for admins"""
    query = db.query(Deal)
    if user.is_super_admin:
        if active_company_id:
            query = query.filter(Deal.company_id == active_company_id)
        return query
    if user.role == "admin" and user.company_id:
        return query.filter(Deal.company_id == user.company_id)
    return query.filter(Deal.user_id == user.id)


def get_visible_deal(
    db: Session, user: Profile, deal_id: str, active_company_id: Optional[str] = None
) -> Optional[Deal]:
    return deals_query(db, user, active_company_id).filter(Deal.id == deal_id).first()
