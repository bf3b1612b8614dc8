"""Billing domain schemas - Pydantic models for validation"""

from typing import Optional

from pydantic import AliasChoices, BaseModel, Field


class CreateSubscriptionRequest(BaseModel):
    """Card token checkout; presence of the four ids is checked by the service"""

    token: Optional[str] = None
    email: Optional[str] = None
    plan_id: Optional[str] = Field(None, validation_alias=AliasChoices("plan_id", "planId"))
    company_id: Optional[str] = Field(None, validation_alias=AliasChoices("company_id", "companyId"))
    payer_info: Optional[dict] = Field(None, validation_alias=AliasChoices("payer_info", "payerInfo"))


class CreateSubscriptionResponse(BaseModel):
    success: bool
    subscription_id: str
    status: Optional[str] = None


class SubscriptionStatusResponse(BaseModel):
    company_id: Optional[str] = None
    plan: str
    subscription_status: Optional[str] = None
    trial_ends_at: Optional[str] = None
    mp_subscription_id: Optional[str] = None
    mp_customer_id: Optional[str] = None
    days_remaining: int
    is_trial_active: bool
    is_expired: bool
    plan_name: str
