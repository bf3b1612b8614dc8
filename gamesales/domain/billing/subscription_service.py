"""Subscription service - Business logic for Mercado Pago subscriptions"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...config import MERCADOPAGO_BACK_URL, MERCADOPAGO_TRIAL_DAYS
from ...models import Company, Profile
from ...plan_limits import get_trial_info, normalize_plan
from .mercadopago_service import MercadoPagoError, mercadopago_service
from .repository import BillingRepository
from .schemas import CreateSubscriptionRequest

logger = logging.getLogger(__name__)

WEBHOOK_PROVIDER = "mercadopago"
SUBSCRIPTION_EVENT_TYPE = "subscription_preapproval"
SUBSCRIPTION_REASON = "Assinatura Game Sales"

# Mercado Pago preapproval status -> company subscription_status
PREAPPROVAL_STATUS_MAP = {
    "authorized": "trialing",
    "pending": "trialing",
    "paused": "paused",
    "cancelled": "canceled",
    "finished": "canceled",
}

_FREQUENCY_DAYS = {"days": 1, "months": 30}


def _parse_provider_datetime(value: Optional[str]) -> Optional[datetime]:
    """Provider timestamps carry an offset; stored datetimes are naive UTC"""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def get_trial_end(preapproval: dict) -> Optional[datetime]:
    """End of the free trial: creation date plus the free_trial frequency"""
    free_trial = (preapproval.get("auto_recurring") or {}).get("free_trial") or {}
    frequency = free_trial.get("frequency")
    created = _parse_provider_datetime(preapproval.get("date_created"))
    if not frequency or not created:
        return None
    unit_days = _FREQUENCY_DAYS.get(free_trial.get("frequency_type"), 1)
    return created + timedelta(days=int(frequency) * unit_days)


def map_preapproval_status(preapproval: dict, now: Optional[datetime] = None) -> Optional[str]:
    """
    Company subscription status for a preapproval. Authorized subscriptions
    stay "trialing" until the free trial has elapsed, then become "active".
    Unknown provider statuses pass through unchanged.
    """
    provider_status = preapproval.get("status")
    status = PREAPPROVAL_STATUS_MAP.get(provider_status, provider_status)

    if provider_status == "authorized":
        now = now or datetime.utcnow()
        trial_end = get_trial_end(preapproval)
        # No free trial on the preapproval means billing already started
        if trial_end is None or now > trial_end:
            status = "active"

    return status


def build_preapproval_data(request: CreateSubscriptionRequest) -> dict:
    return {
        "preapproval_plan_id": request.plan_id,
        "reason": SUBSCRIPTION_REASON,
        "external_reference": request.company_id,
        "payer_email": request.email,
        "card_token_id": request.token,
        "auto_recurring": {
            "frequency": 1,
            "frequency_type": "months",
            "start_date": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            "end_date": None,
            "transaction_amount": None,
            "currency_id": "BRL",
            "free_trial": {"frequency": MERCADOPAGO_TRIAL_DAYS, "frequency_type": "days"},
        },
        "back_url": MERCADOPAGO_BACK_URL,
        "status": "authorized",
    }


class SubscriptionService:
    """Service for subscription management"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = BillingRepository()

    def get_subscription(self, company: Optional[Company], user: Profile) -> dict:
        """Current subscription fields and trial status of the active company"""
        trial = get_trial_info(company, is_super_admin=user.is_super_admin)
        return {
            "company_id": company.id if company else None,
            "plan": normalize_plan(company.plan if company else None),
            "subscription_status": trial["subscription_status"],
            "trial_ends_at": trial["trial_ends_at"],
            "mp_subscription_id": company.mp_subscription_id if company else None,
            "mp_customer_id": company.mp_customer_id if company else None,
            "days_remaining": trial["days_remaining"],
            "is_trial_active": trial["is_trial_active"],
            "is_expired": trial["is_expired"],
            "plan_name": trial["plan_name"],
        }

    async def create_subscription(self, request: CreateSubscriptionRequest, user: Profile) -> dict:
        """Create a Mercado Pago subscription with a free trial for a company"""
        if not request.token or not request.email or not request.plan_id or not request.company_id:
            raise HTTPException(
                status_code=400,
                detail="Missing required fields: token, email, planId, companyId",
            )

        if not user.is_super_admin and request.company_id != user.company_id:
            logger.warning(f"⚠️ {user.email} tried to subscribe company {request.company_id}")
            raise HTTPException(status_code=403, detail="Not allowed to manage this company")

        if not mercadopago_service.is_available():
            raise HTTPException(status_code=503, detail="Billing service temporarily unavailable")

        try:
            preapproval = await mercadopago_service.create_preapproval(build_preapproval_data(request))
        except MercadoPagoError as e:
            raise HTTPException(status_code=400, detail=e.message) from e

        subscription_id = preapproval.get("id")
        logger.info(f"✅ Created subscription {subscription_id} for company {request.company_id}")

        # The subscription exists at the provider; a failed local update must not fail the call
        try:
            company = self.repo.get_company(self.db, request.company_id)
            if company:
                self.repo.update_company_subscription(
                    self.db,
                    company,
                    subscription_status="trialing",
                    mp_subscription_id=subscription_id,
                    mp_customer_id=str(preapproval["payer_id"]) if preapproval.get("payer_id") else None,
                    trial_ends_at=get_trial_end(preapproval)
                    or datetime.utcnow() + timedelta(days=MERCADOPAGO_TRIAL_DAYS),
                )
            else:
                logger.error(f"❌ Company {request.company_id} not found after subscription")
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ Failed to store subscription on company {request.company_id}: {e}")

        return {
            "success": True,
            "subscription_id": subscription_id,
            "status": preapproval.get("status"),
        }

    async def handle_webhook_event(self, event: dict) -> dict:
        """
        Process a verified Mercado Pago notification.

        Events are deduplicated by their notification id and only recorded as
        processed once handled, so a failed attempt can be retried by the provider.
        """
        event_id = event.get("id")
        if event_id is None or event_id == "":
            logger.info("ℹ️ Mercado Pago notification without id, ignoring")
            return {"received": True, "processed": False, "reason": "missing_id"}
        event_id = str(event_id)

        if self.repo.is_event_processed(self.db, WEBHOOK_PROVIDER, event_id):
            logger.info(f"ℹ️ Mercado Pago event {event_id} already processed")
            return {"received": True, "processed": False, "reason": "duplicate"}

        event_type = event.get("type")
        if event_type == SUBSCRIPTION_EVENT_TYPE:
            await self._handle_subscription_event(event)
        else:
            logger.info(f"ℹ️ Ignoring Mercado Pago event type: {event_type}")

        if not self.repo.mark_event_processed(self.db, WEBHOOK_PROVIDER, event_id):
            return {"received": True, "processed": False, "reason": "duplicate"}
        return {"received": True, "processed": event_type == SUBSCRIPTION_EVENT_TYPE}

    async def _handle_subscription_event(self, event: dict) -> None:
        subscription_id = (event.get("data") or {}).get("id")
        if not subscription_id:
            logger.warning("⚠️ Subscription event without data.id")
            return

        # Subscription state comes from the provider, not from the notification body
        try:
            preapproval = await mercadopago_service.get_preapproval(str(subscription_id))
        except MercadoPagoError as e:
            logger.error(f"❌ Failed to fetch subscription {subscription_id}: {e.message}")
            raise HTTPException(status_code=502, detail="Failed to fetch subscription") from e

        new_status = map_preapproval_status(preapproval)

        company_id = preapproval.get("external_reference")
        if not company_id:
            logger.error(f"❌ Subscription {subscription_id} has no external_reference")
            return

        company = self.repo.get_company(self.db, company_id)
        if not company:
            logger.error(f"❌ Company {company_id} from subscription {subscription_id} not found")
            return

        self.repo.update_company_subscription(
            self.db,
            company,
            subscription_status=new_status,
            mp_subscription_id=str(subscription_id),
            trial_ends_at=get_trial_end(preapproval),
        )
        logger.info(f"✅ Updated company {company_id} to status: {new_status}")
