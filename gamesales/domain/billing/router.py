"""Billing router - FastAPI endpoints for Mercado Pago subscriptions"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ...auth import get_active_company, get_current_admin, get_current_user
from ...config import MERCADOPAGO_WEBHOOK_SECRET
from ...database import get_db
from ...models import Company, Profile
from ...rate_limiter import create_rate_limiter
from ...webhook_security import verify_mercadopago_webhook
from .schemas import (
    CreateSubscriptionRequest,
    CreateSubscriptionResponse,
    SubscriptionStatusResponse,
)
from .subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])
webhooks_router = APIRouter(prefix="/webhooks", tags=["webhooks"])

mercadopago_webhook_rate_limit = create_rate_limiter(
    limit=120, window_seconds=60, key_prefix="mp_webhook", use_ip=False
)


def get_subscription_service(db: Session = Depends(get_db)) -> SubscriptionService:
    """Dependency injection for SubscriptionService"""
    return SubscriptionService(db)


@router.get("/subscription", response_model=SubscriptionStatusResponse)
async def get_subscription(
    user: Profile = Depends(get_current_user),
    company: Optional[Company] = Depends(get_active_company),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Get the subscription of the active company"""
    return service.get_subscription(company, user)


@router.post("/subscriptions", response_model=CreateSubscriptionResponse)
async def create_subscription(
    body: CreateSubscriptionRequest,
    user: Profile = Depends(get_current_admin),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Create a Mercado Pago subscription from a card token"""
    return await service.create_subscription(body, user)


@webhooks_router.post("/mercadopago", dependencies=[Depends(mercadopago_webhook_rate_limit)])
async def handle_mercadopago_webhook(
    request: Request,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Mercado Pago notifications (subscription_preapproval events update the company)"""
    _, raw_body = await verify_mercadopago_webhook(request, MERCADOPAGO_WEBHOOK_SECRET)

    try:
        event = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error(f"❌ Invalid Mercado Pago webhook body: {str(e)}")
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from e

    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    return await service.handle_webhook_event(event)
