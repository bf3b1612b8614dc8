"""
Google Calendar Service
OAuth token handling, event create/update/delete and import of calendar events as agendamentos
"""
import base64
import hashlib
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlencode
from zoneinfo import ZoneInfo

import httpx
from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.orm import Session

from ..config import (
    GOOGLE_CALENDAR_TIMEZONE,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    GOOGLE_REDIRECT_URI,
    GOOGLE_WEBHOOK_URL,
    SECRET_KEY,
)
from ..models import Agendamento, SyncLog
from ..models_google_calendar import GoogleCalendarIntegration

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105 - OAuth endpoint URL
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
GOOGLE_CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"

SYNC_WINDOW_DAYS = 30
TOKEN_REFRESH_SKEW = timedelta(minutes=5)
EVENT_SUMMARY_PREFIX = "Call com "
DEFAULT_IMPORT_DESCRIPTION = "Sincronizado do Google Calendar"
ALL_DAY_EVENT_TIME = "T09:00:00"
SYNC_ACTIONS = ("create_event", "update_event", "delete_event", "sync_all")


class GoogleCalendarError(Exception):
    """Google Calendar API or OAuth failure, carrying the HTTP status to surface"""

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=20.0)


def _get_cipher() -> Fernet:
    key = base64.urlsafe_b64encode(hashlib.sha256(SECRET_KEY.encode()).digest())
    return Fernet(key)


def encrypt_token(token: str) -> str:
    return _get_cipher().encrypt(token.encode()).decode()


def decrypt_token(token: str) -> str:
    return _get_cipher().decrypt(token.encode()).decode()


def _rfc3339(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


def build_authorization_url(user_id: str) -> str:
    """Google consent screen URL; the user id travels in the state parameter"""
    params = {
        "client_id": GOOGLE_CLIENT_ID,
        "redirect_uri": GOOGLE_REDIRECT_URI,
        "response_type": "code",
        "scope": GOOGLE_CALENDAR_SCOPE,
        "access_type": "offline",
        "prompt": "consent",
        "state": user_id,
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


def channel_id_for_calendar(calendar_id: str) -> str:
    """Push channel id derived from the calendar id, restricted to the characters Google accepts"""
    return re.sub(r"[^A-Za-z0-9\-_+/=]", "-", calendar_id)[:64]


async def exchange_code_for_tokens(code: str) -> Dict[str, Any]:
    async with _http_client() as client:
        response = await client.post(
            GOOGLE_TOKEN_URL,
            data={
                "code": code,
                "client_id": GOOGLE_CLIENT_ID,
                "client_secret": GOOGLE_CLIENT_SECRET,
                "redirect_uri": GOOGLE_REDIRECT_URI,
                "grant_type": "authorization_code",
            },
        )

    if response.status_code != 200:
        logger.error(f"❌ Token exchange failed: {response.text}")
        raise GoogleCalendarError("Failed to exchange code for tokens", 400)

    tokens = response.json()
    if not tokens.get("access_token"):
        raise GoogleCalendarError("No access token in token response", 400)
    return tokens


async def get_primary_calendar(access_token: str) -> Dict[str, Any]:
    async with _http_client() as client:
        response = await client.get(
            f"{GOOGLE_CALENDAR_API}/calendars/primary",
            headers={"Authorization": f"Bearer {access_token}"},
        )

    if response.status_code != 200:
        logger.error(f"❌ Failed to read primary calendar: {response.text}")
        raise GoogleCalendarError("Failed to read primary calendar")
    return response.json()


async def register_watch_channel(
    access_token: str, calendar_id: str, user_id: str
) -> Optional[Dict[str, Any]]:
    """
    Subscribe to push notifications for the user's calendar.
    Returns the channel data, or None when Google refused the subscription.
    """
    async with _http_client() as client:
        response = await client.post(
            f"{GOOGLE_CALENDAR_API}/calendars/primary/events/watch",
            headers={"Authorization": f"Bearer {access_token}"},
            json={
                "id": channel_id_for_calendar(calendar_id),
                "type": "web_hook",
                "address": GOOGLE_WEBHOOK_URL,
                "token": user_id,
            },
        )

    if response.status_code != 200:
        logger.error(f"❌ Failed to register calendar webhook: {response.text}")
        return None
    return response.json()


async def revoke_token(token: str) -> None:
    async with _http_client() as client:
        await client.post(GOOGLE_REVOKE_URL, params={"token": token})


def get_integration(db: Session, user_id: str) -> GoogleCalendarIntegration:
    integration = (
        db.query(GoogleCalendarIntegration)
        .filter(GoogleCalendarIntegration.user_id == user_id)
        .first()
    )
    if not integration:
        raise GoogleCalendarError("User not connected to Google", 401)
    return integration


def save_integration(
    db: Session, user_id: str, tokens: Dict[str, Any], calendar_id: Optional[str]
) -> GoogleCalendarIntegration:
    """Create or update the user's integration with freshly issued tokens"""
    integration = (
        db.query(GoogleCalendarIntegration)
        .filter(GoogleCalendarIntegration.user_id == user_id)
        .first()
    )
    expires_at = datetime.utcnow() + timedelta(seconds=tokens.get("expires_in", 3600))
    refresh_token = tokens.get("refresh_token")

    if integration:
        integration.access_token = encrypt_token(tokens["access_token"])
        # Google only sends a refresh token on consent; keep the previous one otherwise
        if refresh_token:
            integration.refresh_token = encrypt_token(refresh_token)
        integration.token_expires_at = expires_at
        integration.google_calendar_id = calendar_id
    else:
        integration = GoogleCalendarIntegration(
            user_id=user_id,
            access_token=encrypt_token(tokens["access_token"]),
            refresh_token=encrypt_token(refresh_token) if refresh_token else None,
            token_expires_at=expires_at,
            google_calendar_id=calendar_id,
        )
        db.add(integration)

    if calendar_id:
        integration.channel_id = channel_id_for_calendar(calendar_id)
    db.commit()
    db.refresh(integration)
    return integration


def log_sync(
    db: Session,
    user_id: str,
    action: str,
    success: bool = True,
    error_message: Optional[str] = None,
    resource_id: Optional[str] = None,
    google_event_id: Optional[str] = None,
) -> None:
    db.add(
        SyncLog(
            user_id=user_id,
            action=action,
            resource_type="google_calendar",
            resource_id=resource_id,
            google_event_id=google_event_id,
            success=success,
            error_message=error_message,
        )
    )
    db.commit()


async def refresh_access_token(integration: GoogleCalendarIntegration, db: Session) -> str:
    """Exchange the stored refresh token for a new access token and persist it"""
    if not integration.refresh_token:
        raise GoogleCalendarError("Failed to refresh token", 401)

    logger.info(f"🔄 Refreshing Google Calendar token for user {integration.user_id}")
    async with _http_client() as client:
        response = await client.post(
            GOOGLE_TOKEN_URL,
            data={
                "client_id": GOOGLE_CLIENT_ID,
                "client_secret": GOOGLE_CLIENT_SECRET,
                "refresh_token": decrypt_token(integration.refresh_token),
                "grant_type": "refresh_token",
            },
        )

    if response.status_code != 200:
        logger.error(f"❌ Token refresh failed: {response.text}")
        raise GoogleCalendarError("Failed to refresh token", 401)

    tokens = response.json()
    new_access_token = tokens.get("access_token")
    if not new_access_token:
        logger.error("❌ No access token in refresh response")
        raise GoogleCalendarError("Failed to refresh token", 401)

    integration.access_token = encrypt_token(new_access_token)
    integration.token_expires_at = datetime.utcnow() + timedelta(
        seconds=tokens.get("expires_in", 3600)
    )
    db.commit()

    logger.info("✅ Google Calendar token refreshed successfully")
    return new_access_token


async def get_valid_access_token(
    integration: GoogleCalendarIntegration, db: Session, force_refresh: bool = False
) -> str:
    """Current access token, refreshed first when it expires within the next 5 minutes"""
    if force_refresh or integration.token_expires_at <= datetime.utcnow() + TOKEN_REFRESH_SKEW:
        return await refresh_access_token(integration, db)
    return decrypt_token(integration.access_token)


async def calendar_request(
    integration: GoogleCalendarIntegration, db: Session, method: str, path: str, **kwargs
) -> httpx.Response:
    """
    Call the Calendar API on behalf of the integration's user.
    A 401 answer forces one token refresh and a single retry.
    Transport errors and unreadable stored tokens surface as GoogleCalendarError (502).
    """
    url = f"{GOOGLE_CALENDAR_API}{path}"

    try:
        access_token = await get_valid_access_token(integration, db)
        async with _http_client() as client:
            response = await client.request(
                method, url, headers={"Authorization": f"Bearer {access_token}"}, **kwargs
            )
            if response.status_code == 401:
                logger.info("🔄 Calendar API rejected the access token, retrying after refresh")
                access_token = await get_valid_access_token(integration, db, force_refresh=True)
                response = await client.request(
                    method, url, headers={"Authorization": f"Bearer {access_token}"}, **kwargs
                )
    except httpx.HTTPError as e:
        logger.error(f"❌ Calendar API request failed: {e}")
        raise GoogleCalendarError("Google Calendar unreachable", 502) from e
    except InvalidToken as e:
        logger.error(f"❌ Stored Google token for user {integration.user_id} could not be decrypted")
        raise GoogleCalendarError("Stored Google token is invalid", 502) from e

    return response


def _events_path(integration: GoogleCalendarIntegration, event_id: Optional[str] = None) -> str:
    calendar_id = integration.google_calendar_id or "primary"
    path = f"/calendars/{calendar_id}/events"
    return f"{path}/{event_id}" if event_id else path


def build_event_body(agendamento: Agendamento, include_reminders: bool = False) -> Dict[str, Any]:
    start = agendamento.data_agendamento
    end = start + timedelta(hours=1)
    event = {
        "summary": f"{EVENT_SUMMARY_PREFIX}{agendamento.cliente_nome}",
        "description": agendamento.observacoes or "",
        "start": {"dateTime": start.isoformat(), "timeZone": GOOGLE_CALENDAR_TIMEZONE},
        "end": {"dateTime": end.isoformat(), "timeZone": GOOGLE_CALENDAR_TIMEZONE},
    }
    if include_reminders:
        event["reminders"] = {
            "useDefault": False,
            "overrides": [
                {"method": "email", "minutes": 60},
                {"method": "popup", "minutes": 10},
            ],
        }
    return event


def parse_event_start(start: Dict[str, Any], allow_all_day: bool = True) -> Optional[datetime]:
    """
    Local start time of a Google event. Timed events are converted to the
    calendar timezone; all-day events start at 09:00.
    """
    if start.get("dateTime"):
        value = datetime.fromisoformat(start["dateTime"].replace("Z", "+00:00"))
        if value.tzinfo is not None:
            value = value.astimezone(ZoneInfo(GOOGLE_CALENDAR_TIMEZONE)).replace(tzinfo=None)
        return value
    if allow_all_day and start.get("date"):
        return datetime.fromisoformat(start["date"] + ALL_DAY_EVENT_TIME)
    return None


async def create_event(
    integration: GoogleCalendarIntegration, agendamento: Agendamento, db: Session
) -> Dict[str, Any]:
    response = await calendar_request(
        integration,
        db,
        "POST",
        _events_path(integration),
        json=build_event_body(agendamento, include_reminders=True),
    )
    if response.status_code not in (200, 201):
        logger.error(f"❌ Failed to create calendar event: {response.text}")
        raise GoogleCalendarError("Failed to create calendar event", 502)

    event = response.json()
    agendamento.google_event_id = event.get("id")
    agendamento.synced_with_google = True
    agendamento.last_synced_at = datetime.utcnow()
    db.commit()

    logger.info(f"✅ Google Calendar event created: {event.get('id')}")
    return {"event_id": event.get("id"), "html_link": event.get("htmlLink")}


async def update_event(
    integration: GoogleCalendarIntegration, agendamento: Agendamento, db: Session
) -> Dict[str, Any]:
    if not agendamento.google_event_id:
        raise GoogleCalendarError("Agendamento is not linked to a Google event", 400)

    response = await calendar_request(
        integration,
        db,
        "PUT",
        _events_path(integration, agendamento.google_event_id),
        json=build_event_body(agendamento),
    )
    if response.status_code != 200:
        logger.error(f"❌ Failed to update calendar event: {response.text}")
        raise GoogleCalendarError("Failed to update calendar event", 502)

    agendamento.last_synced_at = datetime.utcnow()
    db.commit()
    return {"event_id": response.json().get("id")}


async def delete_event(
    integration: GoogleCalendarIntegration, google_event_id: Optional[str], db: Session
) -> Dict[str, Any]:
    if not google_event_id:
        raise GoogleCalendarError("google_event_id is required", 400)

    response = await calendar_request(
        integration, db, "DELETE", _events_path(integration, google_event_id)
    )
    # Already gone on Google's side counts as deleted
    if response.status_code not in (200, 204, 404, 410):
        logger.error(f"❌ Failed to delete calendar event: {response.text}")
        raise GoogleCalendarError("Failed to delete calendar event", 502)

    logger.info(f"🗑️ Google Calendar event deleted: {google_event_id}")
    return {"success": True}


async def list_events(
    integration: GoogleCalendarIntegration,
    db: Session,
    time_min: datetime,
    time_max: Optional[datetime] = None,
) -> list:
    params = {
        "timeMin": _rfc3339(time_min),
        "singleEvents": "true",
        "orderBy": "startTime",
        "maxResults": 250,
    }
    if time_max:
        params["timeMax"] = _rfc3339(time_max)

    events = []
    while True:
        response = await calendar_request(integration, db, "GET", _events_path(integration), params=params)
        if response.status_code != 200:
            logger.error(f"❌ Failed to fetch calendar events: {response.text}")
            raise GoogleCalendarError("Failed to fetch calendar events", 502)

        data = response.json()
        events.extend(data.get("items", []))
        page_token = data.get("nextPageToken")
        if not page_token:
            return events
        params["pageToken"] = page_token


def _imported_event_ids(db: Session, user_id: str, event_ids: list) -> set:
    if not event_ids:
        return set()
    rows = (
        db.query(Agendamento.google_event_id)
        .filter(Agendamento.user_id == user_id, Agendamento.google_event_id.in_(event_ids))
        .all()
    )
    return {row[0] for row in rows}


async def sync_all_events(
    integration: GoogleCalendarIntegration, db: Session, now: Optional[datetime] = None
) -> Dict[str, int]:
    """Import the next 30 days of Google events that are not agendamentos yet"""
    now = now or datetime.utcnow()
    events = await list_events(integration, db, now, now + timedelta(days=SYNC_WINDOW_DAYS))
    if not events:
        return {"synced": 0, "inserted": 0}

    existing_ids = _imported_event_ids(db, integration.user_id, [e["id"] for e in events if e.get("id")])

    inserted = 0
    for event in events:
        start = parse_event_start(event.get("start") or {})
        if not event.get("summary") or start is None or event.get("id") in existing_ids:
            continue

        summary = event["summary"]
        if summary.startswith(EVENT_SUMMARY_PREFIX):
            summary = summary[len(EVENT_SUMMARY_PREFIX):]

        db.add(
            Agendamento(
                user_id=integration.user_id,
                cliente_nome=summary,
                data_agendamento=start,
                observacoes=event.get("description") or DEFAULT_IMPORT_DESCRIPTION,
                google_event_id=event["id"],
                synced_with_google=True,
                last_synced_at=datetime.utcnow(),
                status="agendado",
            )
        )
        existing_ids.add(event["id"])
        inserted += 1

    db.commit()
    logger.info(f"📅 Synced {len(events)} Google events for user {integration.user_id}, {inserted} new")
    return {"synced": len(events), "inserted": inserted}


async def run_sync_action(
    db: Session, user_id: str, action: str, agendamento: Optional[Agendamento] = None
) -> Dict[str, Any]:
    """Dispatch one sync action for a connected user"""
    if action not in SYNC_ACTIONS:
        raise GoogleCalendarError("Invalid action", 400)

    integration = get_integration(db, user_id)

    if action == "sync_all":
        return await sync_all_events(integration, db)

    if agendamento is None:
        raise GoogleCalendarError("agendamento_id is required", 400)

    if action == "create_event":
        return await create_event(integration, agendamento, db)
    if action == "update_event":
        return await update_event(integration, agendamento, db)

    result = await delete_event(integration, agendamento.google_event_id, db)
    agendamento.google_event_id = None
    agendamento.synced_with_google = False
    db.commit()
    return result


async def handle_push_notification(
    db: Session, channel_id: str, now: Optional[datetime] = None
) -> int:
    """
    Import timed events of the last 30 days after Google signals a calendar change.
    Returns the number of new agendamentos.
    """
    integration = (
        db.query(GoogleCalendarIntegration)
        .filter(GoogleCalendarIntegration.channel_id == channel_id)
        .first()
    )
    if not integration:
        raise GoogleCalendarError("Profile not found", 404)

    now = now or datetime.utcnow()
    events = await list_events(integration, db, now - timedelta(days=SYNC_WINDOW_DAYS))
    existing_ids = _imported_event_ids(db, integration.user_id, [e["id"] for e in events if e.get("id")])

    inserted = 0
    for event in events:
        start = parse_event_start(event.get("start") or {}, allow_all_day=False)
        if start is None or event.get("id") in existing_ids:
            continue

        db.add(
            Agendamento(
                user_id=integration.user_id,
                cliente_nome=event.get("summary") or "Sem título",
                data_agendamento=start,
                observacoes=event.get("description"),
                google_event_id=event["id"],
                synced_with_google=True,
                last_synced_at=datetime.utcnow(),
                status="agendado",
            )
        )
        existing_ids.add(event["id"])
        inserted += 1

    db.commit()
    log_sync(db, integration.user_id, "webhook_sync")
    logger.info(f"📥 Calendar webhook imported {inserted} events for user {integration.user_id}")
    return inserted


async def auto_sync_all(db: Session) -> Dict[str, Any]:
    """Run sync_all for every connected user, isolating per-user failures"""
    integrations = (
        db.query(GoogleCalendarIntegration)
        .filter(GoogleCalendarIntegration.auto_sync_enabled.is_(True))
        .all()
    )
    if not integrations:
        logger.info("ℹ️ No users with Google Calendar connected")
        return {"message": "No users to sync", "total_users": 0, "success_count": 0, "results": []}

    logger.info(f"🔄 Auto-sync starting for {len(integrations)} users")
    results = []
    for integration in integrations:
        try:
            result = await sync_all_events(integration, db)
            results.append({"user_id": integration.user_id, "success": True, **result})
        except Exception as e:
            db.rollback()
            logger.error(f"❌ Auto-sync failed for user {integration.user_id}: {str(e)}")
            results.append({"user_id": integration.user_id, "success": False, "error": str(e)})

    success_count = sum(1 for r in results if r["success"])
    logger.info(f"✅ Auto-sync completed: {success_count}/{len(integrations)} users synced")
    return {
        "message": "Auto-sync completed",
        "total_users": len(integrations),
        "success_count": success_count,
        "results": results,
    }
