from datetime import datetime

import pytest

from gamesales.models import DealActivity
from gamesales.models_calls import DealCall
from gamesales.services import twilio_service

NOW = datetime(2025, 3, 10, 15, 0, 0)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("(11) 99999-0000", "+5511999990000"),
        ("1133334444", "+551133334444"),
        ("+55 11 99999-0000", "+5511999990000"),
        ("5511999990000", "+5511999990000"),
        ("", None),
        (None, None),
        ("abc", None),
    ],
)
def test_normalize_phone(raw, expected):
    assert twilio_service.normalize_phone(raw) == expected


@pytest.mark.parametrize(
    "twilio_status, status",
    [
        ("queued", "queued"),
        ("ringing", "dialing"),
        ("initiated", "dialing"),
        ("in-progress", "in_progress"),
        ("completed", "completed"),
        ("busy", "failed"),
        ("no-answer", "failed"),
        ("answered", None),
    ],
)
def test_map_call_status(twilio_status, status):
    assert twilio_service.map_call_status(twilio_status) == status


class TestBridgeTwiml:
    def test_seller_leg_records(self):
        twiml = twilio_service.build_bridge_twiml("call-1", "seller", "deal-call-call-1")
        assert "<Conference" in twiml
        assert ">deal-call-call-1</Conference>" in twiml
        assert 'record="record-from-start"' in twiml
        assert "https://api.gamesales.test/twilio/voice/recording?call_id=call-1" in twiml

    def test_customer_leg_does_not_record(self):
        twiml = twilio_service.build_bridge_twiml("call-1", "customer", "deal-call-call-1")
        assert "record=" not in twiml

    def test_conference_name_is_sanitized(self):
        assert twilio_service.sanitize_conference_name("<b>room 1</b>", "call-1") == "broom1b"
        assert twilio_service.sanitize_conference_name("%%%", "call-1") == "deal-call-call-1"


class TestStatusEvents:
    def call(self):
        return DealCall(deal_id="d1", user_id="u1", provider="twilio", status="dialing", call_metadata={})

    def test_in_progress_sets_start(self):
        call = self.call()
        twilio_service.apply_status_event(call, "customer", {"CallStatus": "in-progress", "CallSid": "CA1"}, NOW)
        assert call.status == "in_progress"
        assert call.started_at == NOW
        assert call.call_metadata["twilio"]["legs"]["customer"]["call_sid"] == "CA1"
        assert call.call_metadata["twilio"]["last_status_event"]["leg"] == "customer"

    def test_completed_sets_duration(self):
        call = self.call()
        twilio_service.apply_status_event(call, "customer", {"CallStatus": "completed", "CallDuration": "95"}, NOW)
        assert call.status == "completed"
        assert call.ended_at == NOW
        assert call.duration_seconds == 95

    def test_seller_hangup_while_customer_is_live(self):
        call = self.call()
        twilio_service.apply_status_event(call, "customer", {"CallStatus": "in-progress"}, NOW)
        twilio_service.apply_status_event(call, "seller", {"CallStatus": "completed"}, NOW)
        assert call.status == "in_progress"

    def test_failed_leg_records_error(self):
        call = self.call()
        twilio_service.apply_status_event(call, "customer", {"CallStatus": "busy"}, NOW)
        assert call.status == "failed"
        assert call.last_error == "Twilio customer leg: busy"

    def test_unknown_status_keeps_current(self):
        call = self.call()
        twilio_service.apply_status_event(call, "seller", {"CallStatus": "answered"}, NOW)
        assert call.status == "dialing"

    def test_recording(self):
        call = self.call()
        twilio_service.apply_recording_event(
            call,
            {"RecordingUrl": "https://api.twilio.com/rec/RE1", "RecordingSid": "RE1", "RecordingDuration": "120"},
            NOW,
        )
        assert call.recording_url == "https://api.twilio.com/rec/RE1.mp3"
        assert call.status == "completed"
        assert call.transcript_status == "pending"
        assert call.duration_seconds == 120
        assert call.call_metadata["twilio"]["recording"]["sid"] == "RE1"


class TestVoiceRoutes:
    @pytest.fixture
    def call(self, db, make_company, make_profile, make_deal):
        seller = make_profile(make_company(plan="plus"))
        deal = make_deal(seller)
        call = DealCall(
            deal_id=deal.id,
            company_id=deal.company_id,
            user_id=seller.id,
            provider="twilio",
            status="dialing",
            call_metadata={"mode": "twilio"},
        )
        db.add(call)
        db.commit()
        db.refresh(call)
        return call

    def test_bridge_returns_twiml(self, client):
        response = client.get(
            "/twilio/voice/bridge", params={"call_id": "c1", "leg": "customer", "conference": "deal-call-c1"}
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/xml")
        assert ">deal-call-c1</Conference>" in response.text

    def test_bridge_accepts_post(self, client):
        response = client.post("/twilio/voice/bridge?call_id=c1&leg=seller")
        assert ">deal-call-c1</Conference>" in response.text
        assert "record-from-start" in response.text

    def test_status_requires_call_id(self, client):
        response = client.post("/twilio/voice/status", data={"CallStatus": "ringing"})
        assert response.status_code == 400
        assert response.text == "missing call_id"

    def test_status_updates_call(self, client, db, call):
        response = client.post(
            f"/twilio/voice/status?call_id={call.id}&leg=customer",
            data={"CallSid": "CA1", "CallStatus": "in-progress", "To": "+5511999990000"},
        )

        assert response.status_code == 200
        assert response.text == "ok"
        db.refresh(call)
        assert call.status == "in_progress"
        assert call.started_at is not None
        assert call.call_metadata["mode"] == "twilio"
        assert call.call_metadata["twilio"]["legs"]["customer"]["to"] == "+5511999990000"

    def test_status_for_unknown_call_is_acknowledged(self, client):
        response = client.post("/twilio/voice/status?call_id=missing&leg=seller", data={"CallStatus": "completed"})
        assert response.status_code == 200

    def test_recording_completes_call(self, client, db, call):
        response = client.post(
            f"/twilio/voice/recording?call_id={call.id}",
            data={"RecordingUrl": "https://api.twilio.com/rec/RE1", "RecordingDuration": "42"},
        )

        assert response.text == "ok"
        db.refresh(call)
        assert call.status == "completed"
        assert call.recording_url.endswith("RE1.mp3")
        activity = db.query(DealActivity).one()
        assert activity.description == "Gravação da ligação disponível"
        assert activity.new_value == "Duração: 42s"

    def test_voice_callbacks_skip_security_headers(self, client):
        response = client.get("/twilio/voice/bridge", params={"call_id": "c1"})
        assert "X-Frame-Options" not in response.headers
