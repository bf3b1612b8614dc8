"""
Metas Service
Monthly goal progress, rankings and the points leaderboard
"""
import logging
import math
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models import Meta, MetaConsolidada, Profile, Venda
from ..utils.dates import local_now, month_start, next_month_start

logger = logging.getLogger(__name__)

APPROVED_STATUS = "Aprovado"
USER_LEVELS = ("Bronze", "Prata", "Ouro", "Platina", "Diamante")


def percentage(achieved: float, target: float) -> float:
    if not target:
        return 0.0
    return round(achieved / target * 100, 2)


def meta_status(percent: float) -> str:
    if percent >= 100:
        return "atingida"
    if percent >= 80:
        return "em_andamento"
    return "nao_atingida"


def days_remaining_in_month(now: Optional[datetime] = None) -> int:
    """Days from now until the last day of the month, rounded up"""
    now = now or local_now()
    last_day = next_month_start(now.date()) - timedelta(days=1)
    remaining = datetime.combine(last_day, datetime.min.time()) - now
    return max(math.ceil(remaining / timedelta(days=1)), 0)


def approved_sales_by_user(
    db: Session, month: date, user_ids: Optional[List[str]] = None
) -> Dict[str, float]:
    """Sum of approved vendas per seller within the month"""
    start = month_start(month)
    query = db.query(Venda.user_id, func.coalesce(func.sum(Venda.valor), 0)).filter(
        Venda.status == APPROVED_STATUS,
        Venda.data_venda >= start,
        Venda.data_venda < next_month_start(start),
    )
    if user_ids is not None:
        query = query.filter(Venda.user_id.in_(user_ids))
    return {user_id: float(total) for user_id, total in query.group_by(Venda.user_id).all()}


def meta_progress(db: Session, meta: Meta, seller: Optional[Profile] = None) -> dict:
    achieved = approved_sales_by_user(db, meta.mes_referencia, [meta.user_id]).get(meta.user_id, 0.0)
    percent = percentage(achieved, meta.valor_meta)
    return {
        "meta_id": meta.id,
        "user_id": meta.user_id,
        "nome": seller.nome if seller else None,
        "avatar_url": seller.avatar_url if seller else None,
        "mes_referencia": meta.mes_referencia.isoformat(),
        "valor_meta": float(meta.valor_meta),
        "valor_atingido": achieved,
        "percentual": percent,
        "status": meta_status(percent),
    }


def metas_ranking(db: Session, sellers: List[Profile], month: date) -> List[dict]:
    """Sellers with a meta in the month, best percentage first"""
    by_id = {seller.id: seller for seller in sellers}
    if not by_id:
        return []

    metas = (
        db.query(Meta)
        .filter(Meta.mes_referencia == month_start(month), Meta.user_id.in_(list(by_id)))
        .all()
    )
    sales = approved_sales_by_user(db, month, list(by_id))

    entries = []
    for meta in metas:
        seller = by_id[meta.user_id]
        achieved = sales.get(meta.user_id, 0.0)
        percent = percentage(achieved, meta.valor_meta)
        entries.append(
            {
                "user_id": meta.user_id,
                "nome": seller.nome,
                "avatar_url": seller.avatar_url,
                "valor_meta": float(meta.valor_meta),
                "valor_atingido": achieved,
                "percentual": percent,
                "status": meta_status(percent),
            }
        )

    entries.sort(key=lambda entry: entry["percentual"], reverse=True)
    for position, entry in enumerate(entries, start=1):
        entry["posicao"] = position
    return entries


def consolidated_progress(
    db: Session,
    company_id: str,
    sellers: List[Profile],
    month: date,
    now: Optional[datetime] = None,
) -> Optional[dict]:
    """Company goal against the sum of seller contributions; None without a goal"""
    meta = (
        db.query(MetaConsolidada)
        .filter(
            MetaConsolidada.company_id == company_id,
            MetaConsolidada.mes_referencia == month_start(month),
        )
        .first()
    )
    if not meta:
        return None

    sales = approved_sales_by_user(db, month, [seller.id for seller in sellers])
    contributions = sorted(
        (
            {
                "user_id": seller.id,
                "nome": seller.nome,
                "avatar_url": seller.avatar_url,
                "contribuicao": sales.get(seller.id, 0.0),
                "percentual_contribuicao": percentage(sales.get(seller.id, 0.0), meta.valor_meta),
            }
            for seller in sellers
        ),
        key=lambda entry: entry["contribuicao"],
        reverse=True,
    )
    achieved = sum(entry["contribuicao"] for entry in contributions)
    percent = percentage(achieved, meta.valor_meta)

    return {
        "meta_id": meta.id,
        "mes_referencia": meta.mes_referencia.isoformat(),
        "descricao": meta.descricao,
        "valor_meta": float(meta.valor_meta),
        "valor_atingido": achieved,
        "percentual": percent,
        "status": meta_status(percent),
        "dias_restantes": days_remaining_in_month(now),
        "contribuicoes": contributions,
    }


def points_ranking(sellers: List[Profile]) -> List[dict]:
    ordered = sorted(sellers, key=lambda seller: seller.pontos or 0, reverse=True)
    return [
        {
            "posicao": position,
            "user_id": seller.id,
            "nome": seller.nome,
            "avatar_url": seller.avatar_url,
            "pontos": seller.pontos or 0,
            "nivel": seller.nivel if seller.nivel in USER_LEVELS else USER_LEVELS[0],
        }
        for position, seller in enumerate(ordered, start=1)
    ]
