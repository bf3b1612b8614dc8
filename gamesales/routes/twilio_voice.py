"""
Twilio Voice Callbacks
TwiML bridge and status/recording webhooks for click-to-call legs
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse, Response
from sqlalchemy.orm import Session

from ..database import get_db
from ..models import Deal
from ..models_calls import DealCall
from ..services import crm_service, twilio_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/twilio/voice", tags=["twilio"])

TWIML_MEDIA_TYPE = "text/xml; charset=utf-8"


async def _form_params(request: Request) -> dict:
    """Twilio posts application/x-www-form-urlencoded callbacks"""
    form = await request.form()
    return {key: str(value) for key, value in form.items()}


@router.api_route("/bridge", methods=["GET", "POST"])
async def voice_bridge(
    call_id: str = Query(""),
    leg: str = Query("customer"),
    conference: Optional[str] = Query(None),
):
    """TwiML that drops a leg into the call's conference"""
    try:
        twiml = twilio_service.build_bridge_twiml(call_id, leg, conference or f"deal-call-{call_id}")
    except Exception as e:
        logger.error(f"❌ Twilio bridge error: {str(e)}")
        twiml = twilio_service.HANGUP_TWIML
    return Response(content=twiml, media_type=TWIML_MEDIA_TYPE)


@router.post("/status")
async def voice_status(
    request: Request,
    call_id: Optional[str] = Query(None),
    leg: str = Query("unknown"),
    db: Session = Depends(get_db),
):
    if not call_id:
        return PlainTextResponse("missing call_id", status_code=400)

    try:
        params = await _form_params(request)
        call = db.query(DealCall).filter(DealCall.id == call_id).first()
        if not call:
            return PlainTextResponse("ok")

        twilio_service.apply_status_event(call, leg.lower(), params)
        db.commit()
        logger.info(f"📞 Call {call_id} {leg} leg: {params.get('CallStatus')} -> {call.status}")
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Twilio status webhook error: {str(e)}")

    # Twilio retries on anything but 2xx
    return PlainTextResponse("ok")


@router.post("/recording")
async def voice_recording(
    request: Request,
    call_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    if not call_id:
        return PlainTextResponse("missing call_id", status_code=400)

    try:
        params = await _form_params(request)
        call = db.query(DealCall).filter(DealCall.id == call_id).first()
        if not call:
            return PlainTextResponse("ok")

        twilio_service.apply_recording_event(call, params)
        db.commit()
        logger.info(f"🎙️ Recording ready for call {call_id}")

        deal = db.query(Deal).filter(Deal.id == call.deal_id).first()
        if deal:
            duration = params.get("RecordingDuration")
            crm_service.record_activity(
                db,
                deal,
                call.user_id,
                "call",
                "Gravação da ligação disponível",
                None,
                f"Duração: {duration}s" if duration else "Gravação pronta",
            )
            db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Twilio recording webhook error: {str(e)}")

    return PlainTextResponse("ok")
