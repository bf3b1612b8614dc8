"""
Google Calendar Integration Routes
Handles OAuth connection, event sync and Google push notifications
"""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import PlainTextResponse, RedirectResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..auth import get_current_user, verify_internal_key
from ..config import FRONTEND_URL, GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET
from ..database import get_db
from ..models import Agendamento, Profile
from ..models_google_calendar import GoogleCalendarIntegration
from ..rate_limiter import create_rate_limiter
from ..services import google_calendar_service as gcal
from ..services.google_calendar_service import GoogleCalendarError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/google-calendar", tags=["google-calendar"])
webhooks_router = APIRouter(prefix="/webhooks", tags=["webhooks"])

calendar_webhook_rate_limit = create_rate_limiter(
    limit=300, window_seconds=60, key_prefix="gcal_webhook", use_ip=False
)
oauth_callback_rate_limit = create_rate_limiter(limit=30, window_seconds=60, key_prefix="gcal_oauth")


class SyncRequest(BaseModel):
    action: Literal["create_event", "update_event", "delete_event", "sync_all"]
    agendamento_id: Optional[str] = None


def _integrations_redirect(query: str) -> RedirectResponse:
    return RedirectResponse(url=f"{FRONTEND_URL}/integracoes?{query}", status_code=302)


@router.get("/status")
async def get_google_calendar_status(
    current_user: Profile = Depends(get_current_user), db: Session = Depends(get_db)
):
    """Get Google Calendar connection status"""
    integration = (
        db.query(GoogleCalendarIntegration)
        .filter(GoogleCalendarIntegration.user_id == current_user.id)
        .first()
    )

    if not integration:
        return {"connected": False, "calendar_id": None, "auto_sync_enabled": None}

    return {
        "connected": True,
        "calendar_id": integration.google_calendar_id,
        "auto_sync_enabled": integration.auto_sync_enabled,
        "token_expires_at": integration.token_expires_at.isoformat(),
    }


@router.get("/connect")
async def initiate_google_calendar_oauth(current_user: Profile = Depends(get_current_user)):
    """Initiate Google Calendar OAuth flow"""
    if not GOOGLE_CLIENT_ID or not GOOGLE_CLIENT_SECRET:
        raise HTTPException(status_code=500, detail="Google Calendar not configured")

    logger.info(f"🔗 Google Calendar OAuth initiated for user: {current_user.email}")
    return {"auth_url": gcal.build_authorization_url(current_user.id)}


@router.get("/oauth/callback", dependencies=[Depends(oauth_callback_rate_limit)])
async def handle_google_calendar_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """Google redirects here after consent; the browser is sent back to the integrations page"""
    if error or not code or not state:
        logger.error(f"❌ Google OAuth callback error: {error or 'missing code/state'}")
        return _integrations_redirect("error=auth_failed")

    user_id = state
    try:
        profile = db.query(Profile).filter(Profile.id == user_id).first()
        if not profile:
            raise GoogleCalendarError("Unknown user in OAuth state", 400)

        tokens = await gcal.exchange_code_for_tokens(code)
        calendar = await gcal.get_primary_calendar(tokens["access_token"])
        calendar_id = calendar.get("id")

        gcal.save_integration(db, user_id, tokens, calendar_id)
        gcal.log_sync(db, user_id, "connect")

        # Push notifications are optional, the connection stands without them
        try:
            channel = await gcal.register_watch_channel(tokens["access_token"], calendar_id or "primary", user_id)
            if channel:
                integration = gcal.get_integration(db, user_id)
                integration.channel_resource_id = channel.get("resourceId")
                db.commit()
                gcal.log_sync(db, user_id, "webhook_registered")
                logger.info(f"📡 Calendar webhook registered for user {user_id}")
        except Exception as e:
            db.rollback()
            logger.error(f"❌ Calendar webhook registration error: {str(e)}")

        logger.info(f"✅ Google Calendar connected for user: {profile.email}")
        return _integrations_redirect("success=true")

    except Exception as e:
        db.rollback()
        logger.error(f"❌ Google Calendar callback error: {str(e)}")
        return _integrations_redirect("error=connection_failed")


@router.post("/sync")
async def sync_google_calendar(
    payload: SyncRequest,
    current_user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Create, update or delete the Google event of an agendamento, or import upcoming events"""
    agendamento = None
    if payload.agendamento_id:
        agendamento = (
            db.query(Agendamento)
            .filter(
                Agendamento.id == payload.agendamento_id,
                Agendamento.user_id == current_user.id,
            )
            .first()
        )
        if not agendamento:
            raise HTTPException(status_code=404, detail="Agendamento not found")

    try:
        return await gcal.run_sync_action(db, current_user.id, payload.action, agendamento)
    except GoogleCalendarError as e:
        db.rollback()
        raise HTTPException(status_code=e.status_code, detail=e.message) from e
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Google Calendar sync error: {str(e)}")
        raise HTTPException(status_code=500, detail="Google Calendar sync failed") from e


@router.post("/disconnect")
async def disconnect_google_calendar(
    current_user: Profile = Depends(get_current_user), db: Session = Depends(get_db)
):
    """Disconnect Google Calendar integration"""
    integration = (
        db.query(GoogleCalendarIntegration)
        .filter(GoogleCalendarIntegration.user_id == current_user.id)
        .first()
    )

    if not integration:
        raise HTTPException(status_code=404, detail="Google Calendar not connected")

    try:
        await gcal.revoke_token(gcal.decrypt_token(integration.access_token))
    except Exception as e:
        logger.warning(f"⚠️ Failed to revoke Google tokens: {str(e)}")

    db.delete(integration)
    db.commit()
    gcal.log_sync(db, current_user.id, "disconnect")

    logger.info(f"🔌 Google Calendar disconnected for user: {current_user.email}")
    return {"success": True, "message": "Google Calendar disconnected successfully"}


@router.post("/auto-sync", dependencies=[Depends(verify_internal_key)])
async def auto_sync_google_calendars(db: Session = Depends(get_db)):
    """Import upcoming events for every connected user (scheduler entry point)"""
    return await gcal.auto_sync_all(db)


@webhooks_router.post("/google-calendar", dependencies=[Depends(calendar_webhook_rate_limit)])
async def google_calendar_webhook(
    x_goog_resource_state: Optional[str] = Header(None),
    x_goog_channel_id: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    """Push notification endpoint registered through events/watch"""
    logger.info(f"📥 Calendar webhook: state={x_goog_resource_state} channel={x_goog_channel_id}")

    if x_goog_resource_state == "sync":
        return PlainTextResponse("Webhook verified")

    if x_goog_resource_state == "exists" and x_goog_channel_id:
        try:
            inserted = await gcal.handle_push_notification(db, x_goog_channel_id)
        except GoogleCalendarError as e:
            db.rollback()
            if e.status_code == 404:
                logger.error(f"❌ No integration for calendar channel {x_goog_channel_id}")
                return PlainTextResponse("Profile not found", status_code=404)
            raise HTTPException(status_code=e.status_code, detail=e.message) from e
        return {"success": True, "inserted": inserted}

    return {"success": True}
