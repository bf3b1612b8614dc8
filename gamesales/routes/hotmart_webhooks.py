"""
Hotmart Webhook Handler
Turns Hotmart purchase notifications into CRM deals and vendas
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..database import get_db
from ..models import Deal, IntegrationConfig, Profile, Venda, WebhookLog
from ..rate_limiter import create_rate_limiter
from ..utils.dates import local_today

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/hotmart", tags=["webhooks"])

hotmart_webhook_rate_limit = create_rate_limiter(limit=120, window_seconds=60, key_prefix="hotmart_webhook")

PLATFORM = "hotmart"
APPROVED_EVENTS = ("PURCHASE_APPROVED", "PURCHASE_COMPLETE")
LOST_EVENTS = {
    "PURCHASE_REFUNDED": "Reembolso solicitado",
    "PURCHASE_CHARGEBACK": "Chargeback",
    "PURCHASE_CANCELED": "Compra cancelada",
}


def _purchase_fields(payload: dict) -> dict:
    data = payload.get("data") or {}
    buyer = data.get("buyer") or {}
    purchase = data.get("purchase") or {}
    product = data.get("product") or {}
    return {
        "buyer_name": buyer.get("name") or "Cliente",
        "buyer_email": buyer.get("email"),
        "buyer_phone": buyer.get("checkout_phone"),
        "transaction": purchase.get("transaction"),
        "price": (purchase.get("price") or {}).get("value") or 0,
        "payment_type": (purchase.get("payment") or {}).get("type"),
        "product_name": product.get("name") or "Produto Hotmart",
    }


def resolve_owner(db: Session, config: IntegrationConfig) -> Optional[str]:
    """Deals belong to the configured user, or to the first profile of the company"""
    if config.user_id:
        return config.user_id
    profile = (
        db.query(Profile)
        .filter(Profile.company_id == config.company_id)
        .order_by(Profile.created_at)
        .first()
    )
    return profile.id if profile else None


def handle_purchase_approved(db: Session, config: IntegrationConfig, user_id: str, payload: dict) -> str:
    fields = _purchase_fields(payload)

    # Hotmart retries deliveries; one deal per transaction
    if fields["transaction"]:
        existing = (
            db.query(Deal)
            .filter(Deal.external_id == fields["transaction"], Deal.company_id == config.company_id)
            .first()
        )
        if existing:
            logger.info(f"ℹ️ Deal for transaction {fields['transaction']} already exists")
            return existing.id

    deal = Deal(
        title=f"{fields['product_name']} - {fields['buyer_name']}",
        customer_name=fields["buyer_name"],
        customer_email=fields["buyer_email"],
        customer_phone=fields["buyer_phone"],
        value=fields["price"],
        stage="closed_won",
        probability=100,
        notes=(
            f"Venda via Hotmart\n"
            f"Transação: {fields['transaction']}\n"
            f"Produto: {fields['product_name']}\n"
            f"Pagamento: {fields['payment_type']}"
        ),
        user_id=user_id,
        company_id=config.company_id,
        source=PLATFORM,
        external_id=fields["transaction"],
    )
    db.add(deal)
    db.flush()

    db.add(
        Venda(
            user_id=user_id,
            company_id=config.company_id,
            cliente_nome=fields["buyer_name"],
            produto_nome=fields["product_name"],
            valor=fields["price"],
            plataforma="Hotmart",
            forma_pagamento=fields["payment_type"] or "Desconhecido",
            status="Aprovado",
            observacoes=(
                f"Sincronizado via webhook Hotmart (deal {deal.id})\n"
                f"Transação: {fields['transaction']}"
            ),
            data_venda=local_today(),
        )
    )
    db.commit()

    logger.info(f"✅ Created deal {deal.id} and venda from Hotmart transaction {fields['transaction']}")
    return deal.id


def handle_purchase_lost(db: Session, config: IntegrationConfig, event: str, payload: dict) -> Optional[str]:
    fields = _purchase_fields(payload)
    if not fields["transaction"]:
        logger.warning(f"⚠️ Hotmart {event} without transaction id, no deal updated")
        return None

    deal = (
        db.query(Deal)
        .filter(Deal.external_id == fields["transaction"], Deal.company_id == config.company_id)
        .first()
    )
    if not deal:
        logger.info(f"ℹ️ No existing deal found for transaction: {fields['transaction']}")
        return None

    deal.stage = "closed_lost"
    deal.probability = 0
    deal.loss_reason = f"{LOST_EVENTS[event]} (Hotmart)"
    deal.notes = f"Status atualizado via webhook Hotmart\nEvento: {event}"
    db.commit()

    logger.info(f"📉 Deal {deal.id} marked as lost ({event})")
    return deal.id


@router.post("", dependencies=[Depends(hotmart_webhook_rate_limit)])
async def handle_hotmart_webhook(
    request: Request,
    x_hotmart_hottok: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    """Receive Hotmart purchase events for the company that owns the hottok"""
    try:
        payload = json.loads(await request.body())
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error(f"❌ Invalid Hotmart webhook body: {str(e)}")
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from e
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    event = payload.get("event")
    transaction = _purchase_fields(payload)["transaction"]
    logger.info(f"📥 Hotmart event {event} for transaction {transaction}")

    config = None
    if x_hotmart_hottok:
        config = (
            db.query(IntegrationConfig)
            .filter(
                IntegrationConfig.platform == PLATFORM,
                IntegrationConfig.hottok == x_hotmart_hottok,
                IntegrationConfig.is_active.is_(True),
            )
            .first()
        )

    if not config:
        logger.error("❌ Invalid or unknown HOTTOK")
        db.add(
            WebhookLog(
                platform=PLATFORM,
                event_type=event,
                external_reference=transaction,
                payload=payload,
                status="error",
                error_message="Invalid HOTTOK - no matching configuration found",
            )
        )
        db.commit()
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})

    user_id = resolve_owner(db, config)

    log = WebhookLog(
        company_id=config.company_id,
        platform=PLATFORM,
        event_type=event,
        external_reference=transaction,
        payload=payload,
        status="processing",
    )
    db.add(log)
    db.commit()

    try:
        deal_id = None
        if event in APPROVED_EVENTS:
            if not user_id:
                raise ValueError(f"Company {config.company_id} has no user to own Hotmart deals")
            deal_id = handle_purchase_approved(db, config, user_id, payload)
        elif event in LOST_EVENTS:
            deal_id = handle_purchase_lost(db, config, event, payload)
        else:
            logger.info(f"ℹ️ Unhandled Hotmart event type: {event}")

        log.status = "success"
        log.processed_deal_id = deal_id
        db.commit()

        return {"success": True, "event": event, "deal_id": deal_id}

    except Exception as e:
        db.rollback()
        logger.error(f"❌ Hotmart webhook error: {str(e)}")
        log.status = "error"
        log.error_message = str(e)
        db.commit()
        raise HTTPException(status_code=500, detail="Internal server error") from e
