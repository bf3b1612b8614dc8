"""
Twilio Voice Service
Click-to-call legs, conference bridge TwiML and call status bookkeeping
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import urlencode
from xml.sax.saxutils import escape as xml_escape
from xml.sax.saxutils import quoteattr

import httpx

from ..config import API_BASE_URL, TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_PHONE_NUMBER
from ..models_calls import DealCall

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"
HANGUP_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response><Hangup/></Response>'
FAILED_TWILIO_STATUSES = ("busy", "failed", "no-answer", "canceled")
DEMO_CALL_DURATION = 187


class TwilioError(Exception):
    pass


def _http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=10.0)


def is_configured() -> bool:
    return bool(TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN and TWILIO_PHONE_NUMBER)


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """
    Normalise a phone number to E.164.

    Numbers with 12+ digits already carry a country code; 10 or 11 digits are
    Brazilian local/mobile numbers and get +55.
    """
    if not phone:
        return None
    digits = re.sub(r"\D", "", str(phone))
    if not digits:
        return None
    if len(digits) >= 12:
        return f"+{digits}"
    if len(digits) in (10, 11):
        return f"+55{digits}"
    return phone if phone.startswith("+") else f"+{digits}"


def build_demo_transcript(customer_name: Optional[str], deal_title: Optional[str]) -> str:
    return "\n".join(
        [
            "Vendedor: Olá, tudo bem? Estou entrando em contato sobre sua negociação.",
            f"Cliente: Oi, tudo! Sim, sobre {deal_title or 'a proposta'}, eu queria entender melhor o valor.",
            "Vendedor: Perfeito. Posso te explicar o que está incluso e como funciona a implementação.",
            "Cliente: Meu ponto principal é prazo e se vocês oferecem suporte após a entrega.",
            "Vendedor: Sim, temos suporte e consigo te enviar uma proposta ajustada ainda hoje.",
            f"Cliente: Ótimo, {customer_name or 'eu'} vou analisar com o sócio e te respondo.",
            "Vendedor: Combinado, vou te mandar a proposta e retornamos amanhã para fechar os próximos passos.",
        ]
    )


def conference_name_for(call_id: str) -> str:
    return f"deal-call-{call_id}"


def sanitize_conference_name(raw: Optional[str], call_id: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9_-]", "", raw or "")[:64]
    return cleaned or conference_name_for(call_id)[:64]


def bridge_url(call_id: str, leg: str, conference: str) -> str:
    query = urlencode({"call_id": call_id, "leg": leg, "conference": conference})
    return f"{API_BASE_URL}/twilio/voice/bridge?{query}"


def status_callback_url(call_id: str, leg: str) -> str:
    return f"{API_BASE_URL}/twilio/voice/status?{urlencode({'call_id': call_id, 'leg': leg})}"


def recording_callback_url(call_id: str) -> str:
    return f"{API_BASE_URL}/twilio/voice/recording?{urlencode({'call_id': call_id})}"


def build_bridge_twiml(call_id: str, leg: str, conference: Optional[str]) -> str:
    """Conference TwiML for one leg; only the seller leg records"""
    name = sanitize_conference_name(conference, call_id)
    record_attrs = ""
    if leg.lower() == "seller":
        record_attrs = (
            ' record="record-from-start"'
            f" recordingStatusCallback={quoteattr(recording_callback_url(call_id))}"
            ' recordingStatusCallbackMethod="POST"'
        )

    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        "<Response><Dial>"
        '<Conference startConferenceOnEnter="true" endConferenceOnExit="true" beep="false"'
        f"{record_attrs}>{xml_escape(name)}</Conference>"
        "</Dial></Response>"
    )


async def create_call(to: str, twiml_url: str, status_callback: str) -> Dict[str, Any]:
    """Start one outbound call leg through the Twilio REST API"""
    logger.info(f"📞 Creating Twilio call leg to {to}")
    async with _http_client() as client:
        response = await client.post(
            f"{TWILIO_API_BASE}/Accounts/{TWILIO_ACCOUNT_SID}/Calls.json",
            auth=(TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN),
            data={
                "To": to,
                "From": TWILIO_PHONE_NUMBER,
                "Url": twiml_url,
                "Method": "POST",
                "StatusCallback": status_callback,
                "StatusCallbackMethod": "POST",
                "StatusCallbackEvent": "initiated ringing answered completed",
            },
        )

    try:
        body = response.json()
    except ValueError:
        body = {"raw": response.text}

    if response.status_code not in (200, 201):
        message = body.get("message") or f"Twilio call create failed ({response.status_code})"
        logger.error(f"❌ Twilio call create failed: {message}")
        raise TwilioError(message)
    return body


def map_call_status(twilio_status: Optional[str]) -> Optional[str]:
    status = (twilio_status or "").lower()
    if status == "queued":
        return "queued"
    if status in ("initiated", "ringing"):
        return "dialing"
    if status == "in-progress":
        return "in_progress"
    if status == "completed":
        return "completed"
    if status in FAILED_TWILIO_STATUSES:
        return "failed"
    return None


def _int_or_none(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value else None
    except ValueError:
        return None


def apply_status_event(call: DealCall, leg: str, params: Dict[str, str], now: Optional[datetime] = None) -> None:
    """Update a call from a Twilio status callback of one of its legs"""
    now = now or datetime.utcnow()
    twilio_status = params.get("CallStatus")
    duration = _int_or_none(params.get("CallDuration"))

    metadata = dict(call.call_metadata or {})
    twilio_meta = dict(metadata.get("twilio") or {})
    legs = dict(twilio_meta.get("legs") or {})
    leg_data = dict(legs.get(leg) or {})
    leg_data.update(
        {
            "call_sid": params.get("CallSid"),
            "status": twilio_status,
            "to": params.get("To"),
            "from": params.get("From"),
            "updated_at": now.isoformat(),
        }
    )
    if duration is not None:
        leg_data["duration_seconds"] = duration
    legs[leg] = leg_data

    twilio_meta["legs"] = legs
    twilio_meta["last_status_event"] = {"leg": leg, "twilio_status": twilio_status, "at": now.isoformat()}
    metadata["twilio"] = twilio_meta
    # Reassign so the JSON column is flagged dirty
    call.call_metadata = metadata

    call.status = map_call_status(twilio_status) or call.status

    if twilio_status == "in-progress" and not call.started_at:
        call.started_at = now

    if twilio_status == "completed":
        call.ended_at = now
        if duration is not None:
            call.duration_seconds = duration
        # Seller hung up first while the customer leg is still live
        if leg == "seller":
            customer_status = ((legs.get("customer") or {}).get("status") or "").lower()
            if customer_status and customer_status != "completed":
                call.status = "in_progress"

    if (twilio_status or "").lower() in FAILED_TWILIO_STATUSES:
        call.last_error = f"Twilio {leg} leg: {twilio_status}"


def apply_recording_event(call: DealCall, params: Dict[str, str], now: Optional[datetime] = None) -> None:
    now = now or datetime.utcnow()
    recording_url = params.get("RecordingUrl")
    if recording_url and not recording_url.endswith(".mp3"):
        recording_url = f"{recording_url}.mp3"
    duration = _int_or_none(params.get("RecordingDuration"))

    metadata = dict(call.call_metadata or {})
    twilio_meta = dict(metadata.get("twilio") or {})
    twilio_meta["recording"] = {
        "sid": params.get("RecordingSid"),
        "status": params.get("RecordingStatus"),
        "url": recording_url,
        "conference_sid": params.get("ConferenceSid"),
        "duration_seconds": duration,
        "updated_at": now.isoformat(),
    }
    metadata["twilio"] = twilio_meta
    call.call_metadata = metadata

    call.recording_url = recording_url
    call.status = "completed"
    call.transcript_status = "pending"
    call.ended_at = now
    if duration is not None:
        call.duration_seconds = duration
