from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from conftest import auth_headers, mock_http_client
from gamesales.models import Agendamento, SyncLog
from gamesales.models_google_calendar import GoogleCalendarIntegration
from gamesales.services import google_calendar_service as gcal
from gamesales.services.google_calendar_service import GoogleCalendarError


@pytest.fixture
def connect(db):
    def factory(user, calendar_id="primary", expires_in=timedelta(hours=1), channel_id=None):
        integration = GoogleCalendarIntegration(
            user_id=user.id,
            access_token=gcal.encrypt_token("access-1"),
            refresh_token=gcal.encrypt_token("refresh-1"),
            token_expires_at=datetime.utcnow() + expires_in,
            google_calendar_id=calendar_id,
            channel_id=channel_id,
        )
        db.add(integration)
        db.commit()
        db.refresh(integration)
        return integration

    return factory


class FakeGoogle(dict):
    """Scripted Google endpoints keyed by (method, path suffix)"""

    def __init__(self):
        super().__init__()
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        for (method, suffix), respond in self.items():
            if request.method == method and request.url.path.endswith(suffix):
                return respond(request)
        return httpx.Response(404, json={"error": "unexpected request"})


@pytest.fixture
def google(monkeypatch):
    fake = FakeGoogle()
    monkeypatch.setattr(gcal, "_http_client", mock_http_client(fake))
    return fake


def json_response(body, status=200):
    return lambda request: httpx.Response(status, json=body)


def token_endpoint(access_token="access-2"):
    return json_response({"access_token": access_token, "expires_in": 3600})


class TestHelpers:
    def test_token_encryption(self):
        encrypted = gcal.encrypt_token("ya29.secret")
        assert encrypted != "ya29.secret"
        assert gcal.decrypt_token(encrypted) == "ya29.secret"

    def test_channel_id_for_calendar(self):
        assert gcal.channel_id_for_calendar("vendedor@gmail.com") == "vendedor-gmail-com"
        assert len(gcal.channel_id_for_calendar("x" * 100)) == 64

    def test_authorization_url(self):
        query = parse_qs(urlparse(gcal.build_authorization_url("user-1")).query)
        assert query["client_id"] == ["google-client-id"]
        assert query["state"] == ["user-1"]
        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert query["redirect_uri"] == ["https://api.gamesales.test/google-calendar/oauth/callback"]

    def test_event_body(self):
        agendamento = Agendamento(cliente_nome="Maria", data_agendamento=datetime(2025, 3, 10, 14, 0))
        body = gcal.build_event_body(agendamento, include_reminders=True)
        assert body["summary"] == "Call com Maria"
        assert body["description"] == ""
        assert body["start"] == {"dateTime": "2025-03-10T14:00:00", "timeZone": "America/Sao_Paulo"}
        assert body["end"]["dateTime"] == "2025-03-10T15:00:00"
        assert body["reminders"]["useDefault"] is False

    def test_parse_event_start(self):
        assert gcal.parse_event_start({"dateTime": "2025-03-10T17:00:00Z"}) == datetime(2025, 3, 10, 14, 0)
        assert gcal.parse_event_start({"dateTime": "2025-03-10T10:30:00-03:00"}) == datetime(2025, 3, 10, 10, 30)
        assert gcal.parse_event_start({"date": "2025-03-12"}) == datetime(2025, 3, 12, 9, 0)
        assert gcal.parse_event_start({"date": "2025-03-12"}, allow_all_day=False) is None
        assert gcal.parse_event_start({}) is None


class TestTokens:
    async def test_valid_token_is_reused(self, db, make_profile, connect, google):
        integration = connect(make_profile())
        assert await gcal.get_valid_access_token(integration, db) == "access-1"
        assert google.calls == []

    async def test_expiring_token_is_refreshed(self, db, make_profile, connect, google):
        integration = connect(make_profile(), expires_in=timedelta(minutes=2))
        google[("POST", "/token")] = token_endpoint("access-2")

        assert await gcal.get_valid_access_token(integration, db) == "access-2"
        assert gcal.decrypt_token(integration.access_token) == "access-2"
        assert integration.token_expires_at > datetime.utcnow() + timedelta(minutes=50)

    async def test_refresh_failure(self, db, make_profile, connect, google):
        integration = connect(make_profile(), expires_in=timedelta(seconds=-1))
        google[("POST", "/token")] = json_response({"error": "invalid_grant"}, status=400)

        with pytest.raises(GoogleCalendarError) as exc:
            await gcal.get_valid_access_token(integration, db)
        assert exc.value.status_code == 401

    async def test_unauthorized_request_is_retried_once(self, db, make_profile, connect, google):
        integration = connect(make_profile())
        google[("POST", "/token")] = token_endpoint("access-2")
        answers = iter([httpx.Response(401), httpx.Response(200, json={"items": []})])
        google[("GET", "/events")] = lambda request: next(answers)

        response = await gcal.calendar_request(integration, db, "GET", "/calendars/primary/events")

        assert response.status_code == 200
        event_calls = [r for r in google.calls if r.url.path.endswith("/events")]
        assert [r.headers["Authorization"] for r in event_calls] == ["Bearer access-1", "Bearer access-2"]


class TestEvents:
    async def test_create_event_links_agendamento(self, db, make_profile, connect, google):
        user = make_profile()
        integration = connect(user)
        agendamento = Agendamento(user_id=user.id, cliente_nome="Paulo", data_agendamento=datetime(2025, 3, 10, 9))
        db.add(agendamento)
        db.commit()
        google[("POST", "/calendars/primary/events")] = json_response(
            {"id": "evt-1", "htmlLink": "https://calendar.google.com/evt-1"}
        )

        result = await gcal.create_event(integration, agendamento, db)

        assert result == {"event_id": "evt-1", "html_link": "https://calendar.google.com/evt-1"}
        assert agendamento.google_event_id == "evt-1"
        assert agendamento.synced_with_google is True

    async def test_create_event_failure(self, db, make_profile, connect, google):
        user = make_profile()
        integration = connect(user)
        agendamento = Agendamento(user_id=user.id, cliente_nome="Paulo", data_agendamento=datetime(2025, 3, 10, 9))
        google[("POST", "/events")] = json_response({"error": "boom"}, status=500)

        with pytest.raises(GoogleCalendarError) as exc:
            await gcal.create_event(integration, agendamento, db)
        assert exc.value.status_code == 502

    async def test_update_requires_linked_event(self, db, make_profile, connect):
        user = make_profile()
        agendamento = Agendamento(user_id=user.id, cliente_nome="Paulo", data_agendamento=datetime(2025, 3, 10, 9))
        with pytest.raises(GoogleCalendarError) as exc:
            await gcal.update_event(connect(user), agendamento, db)
        assert exc.value.status_code == 400

    async def test_delete_of_missing_event_succeeds(self, db, make_profile, connect, google):
        integration = connect(make_profile())
        google[("DELETE", "/events/evt-gone")] = json_response({}, status=410)
        assert await gcal.delete_event(integration, "evt-gone", db) == {"success": True}


class TestImport:
    async def test_sync_all_imports_new_events(self, db, make_profile, connect, google):
        user = make_profile()
        integration = connect(user)
        db.add(
            Agendamento(
                user_id=user.id,
                cliente_nome="Já importado",
                data_agendamento=datetime(2025, 3, 1, 9),
                google_event_id="evt-old",
            )
        )
        db.commit()

        pages = {
            None: {
                "items": [
                    {"id": "evt-1", "summary": "Call com João", "start": {"dateTime": "2025-03-10T13:00:00Z"}},
                    {"id": "evt-2", "start": {"dateTime": "2025-03-10T15:00:00Z"}},
                ],
                "nextPageToken": "page-2",
            },
            "page-2": {
                "items": [
                    {"id": "evt-3", "summary": "Reunião", "start": {"date": "2025-03-12"}},
                    {"id": "evt-old", "summary": "Call com X", "start": {"dateTime": "2025-03-01T12:00:00Z"}},
                ]
            },
        }
        google[("GET", "/events")] = lambda request: httpx.Response(
            200, json=pages[request.url.params.get("pageToken")]
        )

        result = await gcal.sync_all_events(integration, db)

        assert result == {"synced": 4, "inserted": 2}
        imported = {a.google_event_id: a for a in db.query(Agendamento).all()}
        assert imported["evt-1"].cliente_nome == "João"
        assert imported["evt-1"].data_agendamento == datetime(2025, 3, 10, 10, 0)
        assert imported["evt-3"].data_agendamento == datetime(2025, 3, 12, 9, 0)
        assert imported["evt-3"].observacoes == "Sincronizado do Google Calendar"
        assert "evt-2" not in imported

    async def test_push_notification_imports_timed_events(self, db, make_profile, connect, google):
        user = make_profile()
        connect(user, channel_id="vendedor-gmail-com")
        google[("GET", "/events")] = json_response(
            {
                "items": [
                    {"id": "evt-1", "start": {"dateTime": "2025-03-10T13:00:00Z"}},
                    {"id": "evt-2", "summary": "Dia todo", "start": {"date": "2025-03-11"}},
                ]
            }
        )

        inserted = await gcal.handle_push_notification(db, "vendedor-gmail-com")

        assert inserted == 1
        agendamento = db.query(Agendamento).one()
        assert agendamento.cliente_nome == "Sem título"
        assert db.query(SyncLog).filter(SyncLog.action == "webhook_sync").count() == 1

    async def test_push_notification_for_unknown_channel(self, db):
        with pytest.raises(GoogleCalendarError) as exc:
            await gcal.handle_push_notification(db, "nobody")
        assert exc.value.status_code == 404

    async def test_auto_sync_isolates_failures(self, db, make_profile, connect, google):
        connect(make_profile(), calendar_id="cal-a")
        connect(make_profile(), calendar_id="cal-b")
        google[("GET", "/calendars/cal-a/events")] = json_response({"error": "boom"}, status=500)
        google[("GET", "/calendars/cal-b/events")] = json_response({"items": []})

        summary = await gcal.auto_sync_all(db)

        assert summary["total_users"] == 2
        assert summary["success_count"] == 1
        assert [r["success"] for r in summary["results"]] == [False, True]


class TestRoutes:
    def test_status_when_not_connected(self, client, make_profile):
        user = make_profile()
        data = client.get("/google-calendar/status", headers=auth_headers(user)).json()
        assert data["connected"] is False

    def test_status_when_connected(self, client, make_profile, connect):
        user = make_profile()
        connect(user, calendar_id="vendedor@gmail.com")
        data = client.get("/google-calendar/status", headers=auth_headers(user)).json()
        assert data["connected"] is True
        assert data["calendar_id"] == "vendedor@gmail.com"

    def test_connect_returns_consent_url(self, client, make_profile):
        user = make_profile()
        data = client.get("/google-calendar/connect", headers=auth_headers(user)).json()
        assert data["auth_url"].startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        assert f"state={user.id}" in data["auth_url"]

    def test_callback_with_error(self, client):
        response = client.get(
            "/google-calendar/oauth/callback", params={"error": "access_denied"}, follow_redirects=False
        )
        assert response.status_code == 302
        assert response.headers["location"] == "https://app.gamesales.test/integracoes?error=auth_failed"

    def test_callback_connects_user(self, client, db, make_profile, google):
        user = make_profile()
        google[("POST", "/token")] = json_response(
            {"access_token": "access-1", "refresh_token": "refresh-1", "expires_in": 3600}
        )
        google[("GET", "/calendars/primary")] = json_response({"id": "vendedor@gmail.com"})
        google[("POST", "/events/watch")] = json_response({"id": "vendedor-gmail-com", "resourceId": "res-1"})

        response = client.get(
            "/google-calendar/oauth/callback",
            params={"code": "auth-code", "state": user.id},
            follow_redirects=False,
        )

        assert response.headers["location"] == "https://app.gamesales.test/integracoes?success=true"
        integration = db.query(GoogleCalendarIntegration).one()
        assert integration.google_calendar_id == "vendedor@gmail.com"
        assert integration.channel_id == "vendedor-gmail-com"
        assert integration.channel_resource_id == "res-1"
        assert gcal.decrypt_token(integration.refresh_token) == "refresh-1"
        actions = {log.action for log in db.query(SyncLog).all()}
        assert actions == {"connect", "webhook_registered"}

    def test_callback_keeps_connection_when_watch_fails(self, client, db, make_profile, google):
        user = make_profile()
        google[("POST", "/token")] = token_endpoint("access-1")
        google[("GET", "/calendars/primary")] = json_response({"id": "vendedor@gmail.com"})
        google[("POST", "/events/watch")] = json_response({"error": "forbidden"}, status=403)

        response = client.get(
            "/google-calendar/oauth/callback",
            params={"code": "auth-code", "state": user.id},
            follow_redirects=False,
        )

        assert response.headers["location"].endswith("success=true")
        assert db.query(GoogleCalendarIntegration).one().channel_resource_id is None

    def test_callback_for_unknown_user(self, client, google):
        response = client.get(
            "/google-calendar/oauth/callback",
            params={"code": "auth-code", "state": "ghost"},
            follow_redirects=False,
        )
        assert response.headers["location"].endswith("error=connection_failed")

    def test_sync_create_event(self, client, db, make_profile, connect, google):
        user = make_profile()
        connect(user)
        agendamento = Agendamento(user_id=user.id, cliente_nome="Rita", data_agendamento=datetime(2025, 3, 10, 9))
        db.add(agendamento)
        db.commit()
        google[("POST", "/events")] = json_response({"id": "evt-9"})

        response = client.post(
            "/google-calendar/sync",
            json={"action": "create_event", "agendamento_id": agendamento.id},
            headers=auth_headers(user),
        )

        assert response.status_code == 200
        assert response.json()["event_id"] == "evt-9"

    def test_sync_requires_connection(self, client, make_profile):
        user = make_profile()
        response = client.post("/google-calendar/sync", json={"action": "sync_all"}, headers=auth_headers(user))
        assert response.status_code == 401

    def test_sync_other_users_agendamento(self, client, db, make_profile, connect):
        user = make_profile()
        connect(user)
        foreign = Agendamento(user_id=make_profile().id, cliente_nome="X", data_agendamento=datetime(2025, 3, 10))
        db.add(foreign)
        db.commit()
        response = client.post(
            "/google-calendar/sync",
            json={"action": "update_event", "agendamento_id": foreign.id},
            headers=auth_headers(user),
        )
        assert response.status_code == 404

    def test_disconnect(self, client, db, make_profile, connect, google):
        user = make_profile()
        connect(user)
        google[("POST", "/revoke")] = json_response({})

        response = client.post("/google-calendar/disconnect", headers=auth_headers(user))

        assert response.json()["success"] is True
        assert db.query(GoogleCalendarIntegration).count() == 0
        assert client.post("/google-calendar/disconnect", headers=auth_headers(user)).status_code == 404

    def test_auto_sync_requires_internal_key(self, client):
        assert client.post("/google-calendar/auto-sync").status_code == 401
        assert client.post("/google-calendar/auto-sync", headers={"X-Internal-Key": "wrong"}).status_code == 401

        response = client.post("/google-calendar/auto-sync", headers={"X-Internal-Key": "internal-jobs-key"})
        assert response.json()["total_users"] == 0

    def test_webhook_sync_handshake(self, client):
        response = client.post("/webhooks/google-calendar", headers={"X-Goog-Resource-State": "sync"})
        assert response.text == "Webhook verified"

    def test_webhook_for_unknown_channel(self, client):
        response = client.post(
            "/webhooks/google-calendar",
            headers={"X-Goog-Resource-State": "exists", "X-Goog-Channel-Id": "nobody"},
        )
        assert response.status_code == 404
        assert response.text == "Profile not found"

    def test_webhook_imports_events(self, client, make_profile, connect, google):
        connect(make_profile(), channel_id="vendedor-gmail-com")
        google[("GET", "/events")] = json_response(
            {"items": [{"id": "evt-1", "summary": "Call", "start": {"dateTime": "2025-03-10T13:00:00Z"}}]}
        )
        response = client.post(
            "/webhooks/google-calendar",
            headers={"X-Goog-Resource-State": "exists", "X-Goog-Channel-Id": "vendedor-gmail-com"},
        )
        assert response.json() == {"success": True, "inserted": 1}
