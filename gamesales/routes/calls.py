"""
Deal Call Routes
Click-to-call from a deal (demo or Twilio) and transcript insights
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth import get_active_company_id, get_current_user, plan_upgrade_error
from ..database import get_db
from ..models import Company, Deal, Profile
from ..models_calls import DealCall, DealCallInsight
from ..plan_limits import effective_plan, has_feature
from ..schemas import CallInitiateRequest, CallInsightResponse, CallInsightsRequest, CallResponse
from ..services import call_insights, crm_service, twilio_service
from ..services.twilio_service import TwilioError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calls", tags=["calls"])


def _record_call_activity(db: Session, deal: Deal, user_id: str, description: str, new_value: str) -> None:
    """Timeline entry for a call; a failure never breaks the call itself"""
    try:
        crm_service.record_activity(db, deal, user_id, "call", description, None, new_value)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning(f"⚠️ Could not record call activity on deal {deal.id}: {str(e)}")


def _check_calls_feature(db: Session, user: Profile, deal: Deal) -> None:
    if user.is_super_admin:
        return
    company = db.query(Company).filter(Company.id == deal.company_id).first() if deal.company_id else None
    plan = effective_plan(company)
    if not has_feature(plan, "calls"):
        raise plan_upgrade_error("calls", plan)


def _serialize_call(call: DealCall) -> dict:
    data = CallResponse.model_validate(call).model_dump()
    data["metadata"] = call.call_metadata or {}
    return data


@router.post("/initiate")
async def initiate_call(
    payload: CallInitiateRequest,
    current_user: Profile = Depends(get_current_user),
    company_id: Optional[str] = Depends(get_active_company_id),
    db: Session = Depends(get_db),
):
    """
    Start a call with the customer of a deal.

    Demo mode stores a finished call with a sample transcript. Twilio mode
    dials the seller and the customer into the same conference.
    """
    if not payload.deal_id:
        raise HTTPException(status_code=400, detail="dealId is required")

    deal = crm_service.get_visible_deal(db, current_user, payload.deal_id, company_id)
    if not deal:
        raise HTTPException(status_code=404, detail="Deal not found or forbidden")

    _check_calls_feature(db, current_user, deal)

    seller_phone = twilio_service.normalize_phone(payload.seller_phone)
    customer_phone = twilio_service.normalize_phone(payload.customer_phone or deal.customer_phone)

    if not customer_phone and payload.mode != "demo":
        raise HTTPException(status_code=400, detail="Customer phone is required")
    if payload.mode == "twilio" and not seller_phone:
        raise HTTPException(status_code=400, detail="Seller phone is required for Twilio click-to-call")

    if payload.mode == "demo":
        transcript = twilio_service.build_demo_transcript(deal.customer_name, deal.title)
        duration = twilio_service.DEMO_CALL_DURATION
        ended_at = datetime.utcnow()
        call = DealCall(
            deal_id=deal.id,
            company_id=deal.company_id,
            user_id=current_user.id,
            provider="demo",
            status="demo",
            seller_phone=seller_phone,
            customer_phone=customer_phone,
            to_number=customer_phone,
            direction="outbound",
            started_at=ended_at - timedelta(seconds=duration),
            ended_at=ended_at,
            duration_seconds=duration,
            transcript_status="completed",
            transcript_language="pt-BR",
            transcript_preview=" ".join(transcript.split("\n")[:2]),
            transcript_text=transcript,
            call_metadata={"source": "deal-call-initiate", "mode": "demo"},
        )
        db.add(call)
        db.commit()
        db.refresh(call)

        _record_call_activity(
            db, deal, current_user.id, "Ligação (demo) registrada com transcrição", f"Duração: {duration}s"
        )
        return {
            "success": True,
            "mode": "demo",
            "message": "Chamada demo criada com transcrição",
            "call": _serialize_call(call),
        }

    call = DealCall(
        deal_id=deal.id,
        company_id=deal.company_id,
        user_id=current_user.id,
        provider="twilio",
        status="queued",
        seller_phone=seller_phone,
        customer_phone=customer_phone,
        to_number=customer_phone,
        direction="outbound",
        transcript_status="pending",
        call_metadata={"source": "deal-call-initiate", "mode": "twilio"},
    )
    db.add(call)
    db.commit()
    db.refresh(call)

    if not twilio_service.is_configured():
        logger.warning("⚠️ Twilio credentials not configured, call left queued")
        return {
            "success": False,
            "mode": "twilio",
            "requires_setup": True,
            "message": "Twilio não configurado (faltam envs). Use modo demo para validar o fluxo.",
            "call": _serialize_call(call),
        }

    conference = twilio_service.conference_name_for(call.id)
    try:
        seller_leg = await twilio_service.create_call(
            seller_phone,
            twilio_service.bridge_url(call.id, "seller", conference),
            twilio_service.status_callback_url(call.id, "seller"),
        )
        customer_leg = await twilio_service.create_call(
            customer_phone,
            twilio_service.bridge_url(call.id, "customer", conference),
            twilio_service.status_callback_url(call.id, "customer"),
        )
    except (TwilioError, httpx.HTTPError) as e:
        message = str(e) or "Twilio error"
        call.status = "failed"
        call.transcript_status = "not_requested"
        call.last_error = message
        call.call_metadata = {**(call.call_metadata or {}), "twilio_error": message}
        db.commit()
        raise HTTPException(status_code=500, detail={"error": message, "call_id": call.id}) from e

    call.provider_call_id = customer_leg.get("sid")
    call.status = "dialing"
    call.call_metadata = {
        **(call.call_metadata or {}),
        "twilio": {
            "conference_name": conference,
            "seller_call_sid": seller_leg.get("sid"),
            "customer_call_sid": customer_leg.get("sid"),
        },
    }
    db.commit()
    db.refresh(call)

    _record_call_activity(db, deal, current_user.id, "Ligação iniciada via Twilio", f"Cliente: {customer_phone}")
    logger.info(f"📞 Twilio call {call.id} dialing for deal {deal.id}")

    return {
        "success": True,
        "mode": "twilio",
        "message": "Ligação iniciada via Twilio",
        "call": _serialize_call(call),
        "twilio": {
            "seller_call_sid": seller_leg.get("sid"),
            "customer_call_sid": customer_leg.get("sid"),
        },
    }


@router.get("/deal/{deal_id}")
async def list_deal_calls(
    deal_id: str,
    current_user: Profile = Depends(get_current_user),
    company_id: Optional[str] = Depends(get_active_company_id),
    db: Session = Depends(get_db),
):
    deal = crm_service.get_visible_deal(db, current_user, deal_id, company_id)
    if not deal:
        raise HTTPException(status_code=404, detail="Deal not found or forbidden")
    calls = (
        db.query(DealCall)
        .filter(DealCall.deal_id == deal.id)
        .order_by(DealCall.created_at.desc())
        .all()
    )
    return [_serialize_call(call) for call in calls]


@router.post("/insights")
async def generate_call_insights(
    payload: CallInsightsRequest,
    current_user: Profile = Depends(get_current_user),
    company_id: Optional[str] = Depends(get_active_company_id),
    db: Session = Depends(get_db),
):
    """Extract summary, objections and next steps from a call transcript"""
    if not payload.call_id:
        raise HTTPException(status_code=400, detail="callId is required")

    call = db.query(DealCall).filter(DealCall.id == payload.call_id).first()
    deal = crm_service.get_visible_deal(db, current_user, call.deal_id, company_id) if call else None
    if not call or not deal:
        raise HTTPException(status_code=404, detail="Call not found or forbidden")

    if not call.transcript_text:
        raise HTTPException(status_code=400, detail="Call has no transcript yet")

    parsed = call_insights.extract_insights(call.transcript_text)

    insight = db.query(DealCallInsight).filter(DealCallInsight.call_id == call.id).first()
    if not insight:
        insight = DealCallInsight(call_id=call.id)
        db.add(insight)
    insight.deal_id = call.deal_id
    insight.company_id = call.company_id
    insight.user_id = current_user.id
    insight.status = "completed"
    insight.model = call_insights.INSIGHTS_MODEL
    insight.summary = parsed["summary"]
    insight.objections = parsed["objections"]
    insight.next_steps = parsed["next_steps"]
    insight.action_items = parsed["action_items"]
    insight.suggested_message = parsed["suggested_message"]
    insight.suggested_stage = parsed["suggested_stage"]
    insight.raw_output = parsed

    try:
        db.commit()
        db.refresh(insight)
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Failed to save call insights: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to save call insights") from e

    _record_call_activity(
        db, deal, current_user.id, "Insights da ligação gerados", "Resumo + objeções + próximos passos"
    )
    return {"success": True, "insight": CallInsightResponse.model_validate(insight)}
