from datetime import datetime, timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from conftest import auth_headers, mock_http_client
from gamesales.models import DealActivity
from gamesales.models_calls import DealCall, DealCallInsight
from gamesales.services import call_insights, twilio_service


@pytest.fixture
def plus_seller(make_company, make_profile):
    return make_profile(make_company(plan="plus"))


@pytest.fixture
def twilio_configured(monkeypatch):
    monkeypatch.setattr(twilio_service, "TWILIO_ACCOUNT_SID", "AC123")
    monkeypatch.setattr(twilio_service, "TWILIO_AUTH_TOKEN", "twilio-token")
    monkeypatch.setattr(twilio_service, "TWILIO_PHONE_NUMBER", "+5511000000000")


def twilio_answering(monkeypatch, status=201, body=None):
    requests = []

    def handler(request):
        requests.append(request)
        to = parse_qs(request.content.decode())["To"][0]
        payload = body if body is not None else {"sid": f"CA-{to[-4:]}", "status": "queued"}
        return httpx.Response(status, json=payload)

    monkeypatch.setattr(twilio_service, "_http_client", mock_http_client(handler))
    return requests


def initiate(client, user, **body):
    return client.post("/calls/initiate", json=body, headers=auth_headers(user))


class TestDemoCalls:
    def test_demo_call_is_recorded_with_transcript(self, client, db, plus_seller, make_deal):
        deal = make_deal(plus_seller, customer_name="Marcos")

        response = initiate(client, plus_seller, dealId=deal.id)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["mode"] == "demo"
        call = data["call"]
        assert call["status"] == "demo"
        assert call["provider"] == "demo"
        assert call["duration_seconds"] == 187
        assert call["transcript_status"] == "completed"
        assert call["metadata"] == {"source": "deal-call-initiate", "mode": "demo"}

        stored = db.query(DealCall).one()
        assert "Marcos" in stored.transcript_text
        assert stored.transcript_language == "pt-BR"
        activity = db.query(DealActivity).one()
        assert activity.activity_type == "call"

    def test_snake_case_body_is_accepted(self, client, plus_seller, make_deal):
        deal = make_deal(plus_seller)
        assert initiate(client, plus_seller, deal_id=deal.id).json()["mode"] == "demo"

    def test_deal_is_required(self, client, plus_seller):
        response = initiate(client, plus_seller)
        assert response.status_code == 400
        assert response.json()["detail"] == "dealId is required"

    def test_other_sellers_deal(self, client, plus_seller, make_profile, make_deal):
        colleague = make_profile(plus_seller.company)
        deal = make_deal(colleague)
        assert initiate(client, plus_seller, dealId=deal.id).status_code == 404

    def test_starter_plan_is_blocked(self, client, make_company, make_profile, make_deal):
        seller = make_profile(make_company(plan="starter"))
        deal = make_deal(seller)

        response = initiate(client, seller, dealId=deal.id)

        assert response.status_code == 403
        assert response.headers["X-Plan-Required"] == "plus"

    def test_trial_unlocks_calls(self, client, make_company, make_profile, make_deal):
        company = make_company(
            plan="starter",
            subscription_status="trialing",
            trial_ends_at=datetime.utcnow() + timedelta(days=3),
        )
        seller = make_profile(company)
        assert initiate(client, seller, dealId=make_deal(seller).id).status_code == 200

    def test_list_deal_calls(self, client, plus_seller, make_deal):
        deal = make_deal(plus_seller)
        initiate(client, plus_seller, dealId=deal.id)
        initiate(client, plus_seller, dealId=deal.id)

        calls = client.get(f"/calls/deal/{deal.id}", headers=auth_headers(plus_seller)).json()
        assert len(calls) == 2
        assert all(call["deal_id"] == deal.id for call in calls)


class TestTwilioCalls:
    def test_customer_phone_is_required(self, client, plus_seller, make_deal):
        deal = make_deal(plus_seller)
        response = initiate(client, plus_seller, dealId=deal.id, mode="twilio", sellerPhone="11988887777")
        assert response.status_code == 400
        assert response.json()["detail"] == "Customer phone is required"

    def test_seller_phone_is_required(self, client, plus_seller, make_deal):
        deal = make_deal(plus_seller, customer_phone="(11) 99999-0000")
        response = initiate(client, plus_seller, dealId=deal.id, mode="twilio")
        assert response.status_code == 400
        assert response.json()["detail"] == "Seller phone is required for Twilio click-to-call"

    def test_unconfigured_twilio_leaves_call_queued(self, client, db, plus_seller, make_deal):
        deal = make_deal(plus_seller, customer_phone="(11) 99999-0000")

        data = initiate(client, plus_seller, dealId=deal.id, mode="twilio", sellerPhone="11988887777").json()

        assert data["success"] is False
        assert data["requires_setup"] is True
        assert db.query(DealCall).one().status == "queued"

    def test_dials_both_legs(self, client, db, plus_seller, make_deal, twilio_configured, monkeypatch):
        deal = make_deal(plus_seller, customer_phone="(11) 99999-0000")
        requests = twilio_answering(monkeypatch)

        response = initiate(client, plus_seller, dealId=deal.id, mode="twilio", sellerPhone="11988887777")

        assert response.status_code == 200
        data = response.json()
        assert data["twilio"] == {"seller_call_sid": "CA-7777", "customer_call_sid": "CA-0000"}

        call = db.query(DealCall).one()
        assert call.status == "dialing"
        assert call.customer_phone == "+5511999990000"
        assert call.seller_phone == "+5511988887777"
        assert call.provider_call_id == "CA-0000"
        assert call.call_metadata["twilio"]["conference_name"] == f"deal-call-{call.id}"

        seller_leg, customer_leg = (parse_qs(r.content.decode()) for r in requests)
        assert seller_leg["To"] == ["+5511988887777"]
        assert customer_leg["To"] == ["+5511999990000"]
        assert seller_leg["From"] == ["+5511000000000"]
        assert "leg=seller" in seller_leg["Url"][0]
        assert customer_leg["StatusCallback"][0].startswith("https://api.gamesales.test/twilio/voice/status?")
        assert requests[0].url.path == "/2010-04-01/Accounts/AC123/Calls.json"
        assert requests[0].headers["Authorization"].startswith("Basic ")

    def test_twilio_error_marks_call_failed(self, client, db, plus_seller, make_deal, twilio_configured, monkeypatch):
        deal = make_deal(plus_seller, customer_phone="(11) 99999-0000")
        twilio_answering(monkeypatch, status=400, body={"message": "Invalid 'To' Phone Number"})

        response = initiate(client, plus_seller, dealId=deal.id, mode="twilio", sellerPhone="11988887777")

        assert response.status_code == 500
        call = db.query(DealCall).one()
        assert call.status == "failed"
        assert call.last_error == "Invalid 'To' Phone Number"
        assert call.transcript_status == "not_requested"


class TestInsights:
    def test_extract_insights_from_demo_transcript(self):
        transcript = twilio_service.build_demo_transcript("Marcos", "Plano anual")
        insights = call_insights.extract_insights(transcript)

        keys = {objection["key"] for objection in insights["objections"]}
        assert {"preco", "prazo", "suporte", "decisor"} <= keys
        assert insights["next_steps"][0] == "Enviar proposta personalizada"
        assert "Agendar follow-up para amanhã" in insights["next_steps"]
        assert insights["action_items"][0] == "Registrar resumo da call no deal"
        assert insights["suggested_stage"] == "proposal"
        assert insights["summary"].startswith("Vendedor: Olá")

    def test_empty_transcript(self):
        insights = call_insights.extract_insights("")
        assert insights["objections"] == []
        assert insights["next_steps"] == ["Registrar próximo contato e confirmar necessidade principal"]
        assert insights["suggested_stage"] is None

    def test_suggest_stage(self):
        assert call_insights.suggest_stage("vamos negociar o contrato") == "negotiation"
        assert call_insights.suggest_stage("quero entender melhor") == "qualification"

    def test_generate_and_regenerate(self, client, db, plus_seller, make_deal):
        deal = make_deal(plus_seller)
        call_id = initiate(client, plus_seller, dealId=deal.id).json()["call"]["id"]

        first = client.post("/calls/insights", json={"callId": call_id}, headers=auth_headers(plus_seller))
        second = client.post("/calls/insights", json={"call_id": call_id}, headers=auth_headers(plus_seller))

        assert first.status_code == 200
        insight = second.json()["insight"]
        assert insight["call_id"] == call_id
        assert insight["model"] == "heuristic-mvp-v1"
        assert insight["suggested_stage"] == "proposal"
        assert db.query(DealCallInsight).count() == 1

    def test_call_without_transcript(self, client, db, plus_seller, make_deal):
        deal = make_deal(plus_seller)
        call = DealCall(deal_id=deal.id, user_id=plus_seller.id, provider="twilio", status="queued")
        db.add(call)
        db.commit()

        response = client.post("/calls/insights", json={"callId": call.id}, headers=auth_headers(plus_seller))

        assert response.status_code == 400
        assert response.json()["detail"] == "Call has no transcript yet"

    def test_unknown_call(self, client, plus_seller):
        response = client.post("/calls/insights", json={"callId": "missing"}, headers=auth_headers(plus_seller))
        assert response.status_code == 404
