"""Billing repository - Database operations for billing"""

from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models import Company, ProcessedWebhookEvent


class BillingRepository:
    """Repository for billing database operations"""

    @staticmethod
    def get_company(db: Session, company_id: str) -> Optional[Company]:
        return db.query(Company).filter(Company.id == company_id).first()

    @staticmethod
    def update_company_subscription(
        db: Session,
        company: Company,
        subscription_status: Optional[str] = None,
        mp_subscription_id: Optional[str] = None,
        mp_customer_id: Optional[str] = None,
        trial_ends_at: Optional[datetime] = None,
    ) -> Company:
        """Update company billing information"""
        if subscription_status is not None:
            company.subscription_status = subscription_status
        if mp_subscription_id is not None:
            company.mp_subscription_id = mp_subscription_id
        if mp_customer_id is not None:
            company.mp_customer_id = mp_customer_id
        if trial_ends_at is not None:
            company.trial_ends_at = trial_ends_at

        db.commit()
        db.refresh(company)
        return company

    @staticmethod
    def is_event_processed(db: Session, provider: str, event_id: str) -> bool:
        return (
            db.query(ProcessedWebhookEvent)
            .filter(
                ProcessedWebhookEvent.provider == provider,
                ProcessedWebhookEvent.event_id == event_id,
            )
            .first()
            is not None
        )

    @staticmethod
    def mark_event_processed(db: Session, provider: str, event_id: str) -> bool:
        """Record a handled event. Returns False when another worker recorded it first."""
        db.add(ProcessedWebhookEvent(provider=provider, event_id=event_id))
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            return False
        return True
